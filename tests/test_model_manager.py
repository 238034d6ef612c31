from __future__ import annotations

import hashlib
import io
import threading
import zipfile
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Iterator

import pytest
import requests

from config import JsonConfigStore
from errors import ModelError, ModelInstallError
from model_manager import (
    ModelManager,
    extract_archive,
    is_valid_model_directory,
    resolve_model_dir,
)
from models import InstallError, InstallProgress, ModelDescriptor, ModelSource, now_ms


def _zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        for name, data in files.items():
            bundle.writestr(name, data)
    return buffer.getvalue()


def _legacy_model(prefix: str) -> dict[str, bytes]:
    return {
        f"{prefix}conf/model.conf": b"--sample-frequency=16000\n",
        f"{prefix}am/final.mdl": b"\x00" * 64,
        f"{prefix}graph/Gr.fst": b"\x00" * 64,
    }


def _make_model(path: Path, layout: str = "legacy") -> Path:
    path.mkdir(parents=True, exist_ok=True)
    if layout == "legacy":
        (path / "conf").mkdir()
        (path / "am").mkdir()
    else:
        (path / "final.mdl").write_bytes(b"")
        (path / "HCLG.fst").write_bytes(b"")
    return path


class _Server:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.hits: list[str] = []
        server = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                server.hits.append(self.path)
                body = server.files.get(self.path)
                if body is None:
                    self.send_response(404)
                    self.end_headers()
                    return
                self.send_response(200)
                self.send_header("Content-Type", "application/zip")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: object) -> None:  # noqa: A002
                pass

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    @property
    def base_url(self) -> str:
        host, port = self.httpd.server_address[:2]
        return f"http://{host}:{port}"

    def publish(self, name: str, body: bytes) -> str:
        self.files[f"/{name}"] = body
        return f"{self.base_url}/{name}"


@pytest.fixture
def server() -> Iterator[_Server]:
    srv = _Server()
    srv.thread.start()
    try:
        yield srv
    finally:
        srv.httpd.shutdown()
        srv.httpd.server_close()


def _descriptor(model_id: str, url: str, sha256: str | None = None) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        language="en-US",
        label=f"Test {model_id}",
        source=ModelSource.REMOTE,
        size_mb=1,
        accuracy_hint="fast",
        url=url,
        sha256=sha256,
        default_sample_rate=16000,
    )


def _manager(tmp_path: Path, *descriptors: ModelDescriptor) -> ModelManager:
    session = requests.Session()
    session.trust_env = False
    return ModelManager(
        JsonConfigStore(tmp_path / "config.json"),
        models_root=tmp_path / "models",
        temp_dir=tmp_path / "tmp",
        catalog=tuple(descriptors),
        session=session,
    )


# ---------------------------------------------------------------
# Layout validation
# ---------------------------------------------------------------

@pytest.mark.parametrize(
    "folders,files,expected",
    [
        (["conf", "am"], [], True),
        (["conf", "graph"], [], True),
        (["conf"], [], False),
        (["am", "graph"], [], False),
        ([], ["final.mdl", "HCLr.fst"], True),
        ([], ["final.mdl", "HCLG.fst"], True),
        ([], ["final.mdl", "Gr.fst"], True),
        ([], ["final.mdl"], False),
        ([], ["HCLG.fst"], False),
    ],
)
def test_model_layouts(tmp_path: Path, folders: list[str], files: list[str], expected: bool) -> None:
    for name in folders:
        (tmp_path / name).mkdir()
    for name in files:
        (tmp_path / name).write_bytes(b"")
    assert is_valid_model_directory(tmp_path) is expected


def test_resolve_model_dir_prefers_shallowest(tmp_path: Path) -> None:
    shallow = _make_model(tmp_path / "a" / "model", layout="modern")
    _make_model(tmp_path / "a" / "b" / "c" / "deeper")

    assert resolve_model_dir(tmp_path) == shallow


def test_resolve_model_dir_skips_hidden_and_macos_metadata(tmp_path: Path) -> None:
    _make_model(tmp_path / "__MACOSX" / "model")
    _make_model(tmp_path / ".cache" / "model")

    with pytest.raises(ModelError, match="Could not locate a Vosk model"):
        resolve_model_dir(tmp_path)


def test_resolve_model_dir_depth_limit(tmp_path: Path) -> None:
    _make_model(tmp_path / "one" / "two" / "three")
    assert resolve_model_dir(tmp_path) == tmp_path / "one" / "two" / "three"

    _make_model(tmp_path / "deep" / "one" / "two" / "three" / "four")
    with pytest.raises(ModelError):
        resolve_model_dir(tmp_path / "deep")


def test_extract_archive_rejects_traversal(tmp_path: Path) -> None:
    archive = tmp_path / "evil.zip"
    archive.write_bytes(_zip({"../escaped.txt": b"x"}))

    with pytest.raises(ModelInstallError, match="escapes"):
        extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "escaped.txt").exists()


# ---------------------------------------------------------------
# install
# ---------------------------------------------------------------

def test_install_downloads_extracts_and_records(tmp_path: Path, server: _Server) -> None:
    body = _zip(_legacy_model("vosk-model-small-en-us-0.15/"))
    url = server.publish("small.zip", body)
    manager = _manager(tmp_path, _descriptor("small", url, hashlib.sha256(body).hexdigest().upper()))
    progress: list[InstallProgress] = []
    done: list[str] = []
    manager.on_install_progress(progress.append)
    manager.on_install_done(lambda event: done.append(event.install_path))

    installed = manager.install("small")

    expected = (tmp_path / "models" / "small" / "vosk-model-small-en-us-0.15").resolve()
    assert installed.install_path == str(expected)
    assert is_valid_model_directory(expected)
    assert [model.id for model in manager.list_installed()] == ["small"]
    assert manager.get_active_model_id() == "small"
    assert progress[-1].progress == 100
    assert [event.progress for event in progress] == sorted(event.progress for event in progress)
    assert done == [str(expected)]
    assert not (tmp_path / "tmp" / "small.zip").exists()


def test_install_nested_archive(tmp_path: Path, server: _Server) -> None:
    files = _legacy_model("outer/vosk-model-small-pt-0.3/")
    files["__MACOSX/outer/._junk"] = b""
    url = server.publish("nested.zip", _zip(files))
    manager = _manager(tmp_path, _descriptor("nested", url))

    installed = manager.install("nested")

    expected = tmp_path.resolve() / "models" / "nested" / "outer" / "vosk-model-small-pt-0.3"
    assert installed.install_path == str(expected)


def test_install_is_idempotent(tmp_path: Path, server: _Server) -> None:
    url = server.publish("small.zip", _zip(_legacy_model("")))
    manager = _manager(tmp_path, _descriptor("small", url))

    first = manager.install("small")
    second = manager.install("small")

    assert first == second
    assert server.hits == ["/small.zip"]


def test_install_keeps_existing_active_model(tmp_path: Path, server: _Server) -> None:
    first_url = server.publish("a.zip", _zip(_legacy_model("")))
    second_url = server.publish("b.zip", _zip(_legacy_model("")))
    manager = _manager(tmp_path, _descriptor("a", first_url), _descriptor("b", second_url))

    manager.install("a")
    manager.install("b")

    assert manager.get_active_model_id() == "a"


def test_checksum_mismatch_leaves_nothing_behind(tmp_path: Path, server: _Server) -> None:
    url = server.publish("small.zip", _zip(_legacy_model("")))
    manager = _manager(tmp_path, _descriptor("small", url, "0" * 64))
    errors: list[InstallError] = []
    manager.on_install_error(errors.append)

    with pytest.raises(ModelInstallError, match="SHA256 mismatch for model small"):
        manager.install("small")

    assert manager.list_installed() == []
    assert manager.get_active_model_id() == ""
    assert not (tmp_path / "tmp" / "small.zip").exists()
    assert not (tmp_path / "models" / "small").exists()
    assert errors == [InstallError("small", "SHA256 mismatch for model small")]


def test_http_error(tmp_path: Path, server: _Server) -> None:
    manager = _manager(tmp_path, _descriptor("missing", f"{server.base_url}/missing.zip"))

    with pytest.raises(ModelInstallError, match="HTTP 404"):
        manager.install("missing")
    assert manager.list_installed() == []


def test_corrupt_archive(tmp_path: Path, server: _Server) -> None:
    url = server.publish("broken.zip", b"this is not a zip archive")
    manager = _manager(tmp_path, _descriptor("broken", url))

    with pytest.raises(ModelInstallError, match="not a valid zip"):
        manager.install("broken")


def test_archive_without_model(tmp_path: Path, server: _Server) -> None:
    url = server.publish("empty.zip", _zip({"README.txt": b"nothing here"}))
    manager = _manager(tmp_path, _descriptor("empty", url))

    with pytest.raises(ModelError, match="Could not locate"):
        manager.install("empty")
    assert not (tmp_path / "models" / "empty").exists()


def test_unknown_model(tmp_path: Path) -> None:
    with pytest.raises(ModelError, match="Unknown model: nope"):
        _manager(tmp_path).install("nope")


# ---------------------------------------------------------------
# remove / import / active model
# ---------------------------------------------------------------

def test_remove_deletes_managed_model(tmp_path: Path, server: _Server) -> None:
    url = server.publish("small.zip", _zip(_legacy_model("")))
    manager = _manager(tmp_path, _descriptor("small", url))
    manager.install("small")

    manager.remove("small")

    assert manager.list_installed() == []
    assert manager.get_active_model_id() == ""
    assert not (tmp_path / "models" / "small").exists()


def test_remove_keeps_imported_directory(tmp_path: Path) -> None:
    external = _make_model(tmp_path / "elsewhere" / "vosk-model-small-de-0.15")
    manager = _manager(tmp_path)
    imported = manager.import_model(external)

    manager.remove(imported.id)

    assert external.is_dir()
    assert manager.list_installed() == []


def test_remove_unknown_is_noop(tmp_path: Path) -> None:
    _manager(tmp_path).remove("nope")


def test_import_model(tmp_path: Path) -> None:
    model_dir = _make_model(tmp_path / "download" / "vosk-model-small-pt-0.3", layout="modern")
    manager = _manager(tmp_path)

    before = now_ms()
    imported = manager.import_model(tmp_path / "download")

    assert imported.id == "custom-vosk-model-small-pt-0.3"
    assert imported.label == "Custom: vosk-model-small-pt-0.3"
    assert imported.language == "pt-BR"
    assert imported.source == ModelSource.LOCAL_PATH
    assert imported.default_sample_rate == 16000
    assert imported.install_path == str(model_dir.resolve())
    assert Path(imported.install_path).is_absolute()
    assert imported.installed_at >= before
    assert manager.import_model(model_dir) == imported
    assert len(manager.list_installed()) == 1


def test_import_relative_path_is_stored_absolute(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    work = tmp_path / "work"
    model_dir = _make_model(work / "vosk-model-small-en-us-0.15")
    manager = _manager(tmp_path)
    monkeypatch.chdir(work)

    imported = manager.import_model("vosk-model-small-en-us-0.15")

    assert imported.install_path == str(model_dir.resolve())
    assert imported.installed_at > 0
    monkeypatch.chdir(tmp_path)
    assert manager.get_installed(imported.id).install_path == str(model_dir.resolve())
    assert manager.import_model(model_dir) == imported
    assert manager.import_model(Path("work") / "vosk-model-small-en-us-0.15") == imported
    assert len(manager.list_installed()) == 1


def test_import_overrides(tmp_path: Path) -> None:
    model_dir = _make_model(tmp_path / "mine")
    manager = _manager(tmp_path)

    imported = manager.import_model(model_dir, id="my-model", language="es-ES", default_sample_rate=8000)

    assert imported.id == "my-model"
    assert imported.language == "es-ES"
    assert imported.default_sample_rate == 8000


def test_import_invalid_directory(tmp_path: Path) -> None:
    (tmp_path / "nothing").mkdir()
    with pytest.raises(ModelError):
        _manager(tmp_path).import_model(tmp_path / "nothing")


def test_set_active_model(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    with pytest.raises(ModelError, match="not installed"):
        manager.set_active_model("custom-mine")

    manager.import_model(_make_model(tmp_path / "mine"))
    manager.set_active_model("custom-mine")
    assert manager.get_active_model_id() == "custom-mine"

from __future__ import annotations

import json
from pathlib import Path

import pytest

import file_transcriber
import main as cli
from model_catalog import CATALOG
from wav_writer import WavWriter


class FakeRecognizer:
    def __init__(self, model: object, sample_rate: float) -> None:
        self.sample_rate = sample_rate

    def SetWords(self, value: bool) -> None:
        pass

    def AcceptWaveform(self, chunk: bytes) -> bool:
        return False

    def PartialResult(self) -> str:
        return json.dumps({"partial": "hello"})

    def FinalResult(self) -> str:
        return json.dumps({"text": "hello", "result": [{"word": "hello", "start": 0.25, "end": 0.6}]})


class FakeVosk:
    def __init__(self) -> None:
        self.model_paths: list[str] = []

    def Model(self, path: str) -> str:
        self.model_paths.append(path)
        return path

    def KaldiRecognizer(self, model: object, sample_rate: float) -> FakeRecognizer:
        return FakeRecognizer(model, sample_rate)


@pytest.fixture
def run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):  # noqa: ANN201
    monkeypatch.setattr(cli, "setup_logging", lambda config=None: None)
    monkeypatch.delenv("VOSKLIVE_RUN_AS_WORKER", raising=False)

    def invoke(*args: str) -> int:
        return cli.main(
            ["--config", str(tmp_path / "config.json"), "--models-root", str(tmp_path / "models"), *args]
        )

    return invoke


def test_catalog(run, capsys: pytest.CaptureFixture[str]) -> None:  # noqa: ANN001
    assert run("catalog") == 0
    output = capsys.readouterr().out
    for descriptor in CATALOG:
        assert descriptor.id in output


def test_list_without_models(run, capsys: pytest.CaptureFixture[str]) -> None:  # noqa: ANN001
    assert run("list") == 0
    assert "No models installed" in capsys.readouterr().out


def test_import_use_and_list(run, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:  # noqa: ANN001
    model_dir = tmp_path / "vosk-model-small-pt-0.3"
    (model_dir / "conf").mkdir(parents=True)
    (model_dir / "graph").mkdir()

    assert run("import", str(model_dir), "--id", "pt-small") == 0
    assert run("use", "pt-small") == 0
    capsys.readouterr()

    assert run("list") == 0
    line = capsys.readouterr().out.strip()
    assert line.startswith("> pt-small")
    assert "pt-BR" in line


def test_errors_are_reported(run, capsys: pytest.CaptureFixture[str]) -> None:  # noqa: ANN001
    assert run("use", "ghost") == 1
    assert "Model is not installed: ghost" in capsys.readouterr().err


def test_listen_requires_a_model(run, capsys: pytest.CaptureFixture[str]) -> None:  # noqa: ANN001
    assert run("listen", "--seconds", "0") == 1
    assert "No speech model selected" in capsys.readouterr().err


def test_set_key(run, tmp_path: Path) -> None:  # noqa: ANN001
    assert run("set-key", "sk-abc") == 0
    assert '"api_key": "sk-abc"' in (tmp_path / "config.json").read_text(encoding="utf-8")


def test_transcribe_writes_subtitles(
    run, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]  # noqa: ANN001
) -> None:
    vosk = FakeVosk()
    monkeypatch.setattr(file_transcriber, "load_vosk", lambda: vosk)
    model_dir = tmp_path / "vosk-model-small-en-us-0.15"
    (model_dir / "am").mkdir(parents=True)
    (model_dir / "conf").mkdir()
    wav_path = tmp_path / "talk.wav"
    with WavWriter(wav_path, sample_rate=16000) as writer:
        writer.write(b"\x00\x00" * 16000)

    assert run("import", str(model_dir), "--id", "en-small") == 0
    out_dir = tmp_path / "subs"
    assert run("transcribe", str(wav_path), "--model", "en-small", "--format", "srt", "--output-dir", str(out_dir)) == 0

    assert vosk.model_paths == [str(model_dir.resolve())]
    assert (out_dir / "talk.srt").read_text(encoding="utf-8") == "1\n00:00:00,250 --> 00:00:01,250\nhello\n"
    assert not (out_dir / "talk.vtt").exists()
    output = capsys.readouterr().out
    assert "1 segment(s) from 1.0s of audio" in output
    assert f"Wrote {out_dir / 'talk.srt'}" in output


def test_transcribe_requires_a_model(run, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:  # noqa: ANN001
    assert run("transcribe", str(tmp_path / "talk.wav")) == 1
    assert "No speech model selected" in capsys.readouterr().err

"""Catalog, download, install, import and removal of Vosk models."""

from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
import threading
import zipfile
from collections import deque
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from config import default_models_root
from errors import ModelError, ModelInstallError
from events import EventEmitter, Unsubscribe
from interfaces import ConfigStore
from model_catalog import CATALOG, find_descriptor
from models import (
    InstallDone,
    InstallError,
    InstallProgress,
    InstalledModel,
    ModelDescriptor,
    ModelSource,
    now_ms,
)
from recognizer_worker import guess_language

logger = logging.getLogger(__name__)

MAX_SEARCH_DEPTH = 3
DOWNLOAD_CHUNK_BYTES = 1024 * 1024
DOWNLOAD_TIMEOUT_S = 30
SKIPPED_DIRS = {"__MACOSX"}
LEGACY_DIRS = {"am", "graph"}
MODERN_GRAPHS = {"HCLr.fst", "HCLG.fst", "Gr.fst"}


def is_valid_model_directory(path: Path) -> bool:
    """True for either Vosk layout.

    Legacy: a ``conf`` folder plus ``am`` or ``graph``.
    Modern: ``final.mdl`` plus one of the decoding graphs at the top level.
    """
    if not path.is_dir():
        return False
    folders = {entry.name for entry in path.iterdir() if entry.is_dir()}
    files = {entry.name for entry in path.iterdir() if entry.is_file()}
    if "conf" in folders and folders & LEGACY_DIRS:
        return True
    return "final.mdl" in files and bool(files & MODERN_GRAPHS)


def validate_model_directory(path: Path) -> None:
    if not is_valid_model_directory(path):
        raise ModelError(f"Invalid model directory (unrecognised Vosk layout): {path}")


def resolve_model_dir(root: Path, max_depth: int = MAX_SEARCH_DEPTH) -> Path:
    """Breadth-first search for the first valid model directory under ``root``."""
    queue: deque[tuple[Path, int]] = deque([(Path(root), 0)])
    seen: set[Path] = set()
    while queue:
        current, depth = queue.popleft()
        resolved = current.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        if is_valid_model_directory(current):
            return current
        if depth >= max_depth or not current.is_dir():
            continue
        for child in sorted(current.iterdir()):
            if child.is_dir() and not child.name.startswith(".") and child.name not in SKIPPED_DIRS:
                queue.append((child, depth + 1))
    raise ModelError(f"Could not locate a Vosk model inside {root}")


def extract_archive(archive: Path, target: Path) -> None:
    """Extract a zip archive, refusing members that escape ``target``."""
    target.mkdir(parents=True, exist_ok=True)
    root = target.resolve()
    try:
        with zipfile.ZipFile(archive) as bundle:
            for member in bundle.infolist():
                destination = (root / member.filename).resolve()
                if destination != root and root not in destination.parents:
                    raise ModelInstallError(f"Archive member escapes target directory: {member.filename}")
            bundle.extractall(root)
    except zipfile.BadZipFile as exc:
        raise ModelInstallError(f"Downloaded archive is not a valid zip file: {exc}") from exc


class ModelManager:
    def __init__(
        self,
        config_store: ConfigStore,
        models_root: Optional[Path] = None,
        temp_dir: Optional[Path] = None,
        catalog: tuple[ModelDescriptor, ...] = CATALOG,
        session: Any = None,
    ) -> None:
        self._config_store = config_store
        self._models_root = Path(models_root).expanduser().resolve() if models_root else default_models_root()
        self._temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
        self._catalog = catalog
        self._session = session or requests.Session()
        self._emitter = EventEmitter()
        self._lock = threading.RLock()

    @property
    def models_root(self) -> Path:
        return self._models_root

    def get_catalog(self) -> list[ModelDescriptor]:
        return list(self._catalog)

    def list_installed(self) -> list[InstalledModel]:
        return self._config_store.get_installed_models()

    def get_installed(self, model_id: str) -> Optional[InstalledModel]:
        for model in self.list_installed():
            if model.id == model_id:
                return model
        return None

    def get_active_model_id(self) -> str:
        return self._config_store.get_config().model_id

    def set_active_model(self, model_id: str) -> None:
        if self.get_installed(model_id) is None:
            raise ModelError(f"Model is not installed: {model_id}")
        self._config_store.set_config(model_id=model_id)

    def install(self, model_id: str) -> InstalledModel:
        descriptor = find_descriptor(model_id, self._catalog)
        if descriptor is None:
            raise ModelError(f"Unknown model: {model_id}")

        with self._lock:
            existing = self.get_installed(model_id)
            if existing is not None:
                return existing
            if descriptor.source != ModelSource.REMOTE or not descriptor.url:
                raise ModelError(f"Model cannot be installed automatically: {model_id}")

            self._models_root.mkdir(parents=True, exist_ok=True)
            target = self._models_root / descriptor.id
            archive = self._temp_dir / f"{descriptor.id}.zip"
            try:
                self._download(descriptor, archive)
                shutil.rmtree(target, ignore_errors=True)
                extract_archive(archive, target)
                model_dir = resolve_model_dir(target)
                validate_model_directory(model_dir)

                installed = InstalledModel.from_descriptor(descriptor, str(model_dir))
                self._config_store.set_installed_models([*self.list_installed(), installed])
                if not self.get_active_model_id():
                    self._config_store.set_config(model_id=installed.id)
            except Exception as exc:
                message = exc.message if isinstance(exc, ModelError) else str(exc)
                logger.error("Failed to install model %s: %s", model_id, message)
                shutil.rmtree(target, ignore_errors=True)
                self._emitter.emit("install-error", InstallError(model_id, message))
                if isinstance(exc, ModelError):
                    raise
                raise ModelInstallError(message) from exc
            finally:
                try:
                    archive.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Failed to remove temporary archive %s: %s", archive, exc)

        logger.info("Installed model %s at %s", model_id, installed.install_path)
        self._emitter.emit("install-done", InstallDone(model_id, installed.install_path))
        return installed

    def remove(self, model_id: str) -> None:
        with self._lock:
            installed = self.get_installed(model_id)
            if installed is None:
                return
            path = Path(installed.install_path).resolve()
            root = self._models_root.resolve()
            # Imported models live outside the models root and are never deleted.
            if root in path.parents:
                shutil.rmtree(path, ignore_errors=True)
            remaining = [model for model in self.list_installed() if model.id != model_id]
            self._config_store.set_installed_models(remaining)
            if self.get_active_model_id() == model_id:
                self._config_store.set_config(model_id="")
        logger.info("Removed model %s", model_id)

    def import_model(self, path: str | Path, **overrides: Any) -> InstalledModel:
        model_dir = resolve_model_dir(Path(path).expanduser().resolve())
        validate_model_directory(model_dir)

        with self._lock:
            installed_models = self.list_installed()
            for model in installed_models:
                if Path(model.install_path).expanduser().resolve() == model_dir.resolve():
                    return model

            name = model_dir.name
            model_id = overrides.get("id") or f"custom-{name}"
            for model in installed_models:
                if model.id == model_id:
                    return model

            installed = InstalledModel(
                id=model_id,
                language=overrides.get("language") or guess_language(str(model_dir)),
                label=overrides.get("label") or f"Custom: {name}",
                source=ModelSource.LOCAL_PATH,
                size_mb=overrides.get("size_mb"),
                accuracy_hint=overrides.get("accuracy_hint"),
                default_sample_rate=overrides.get("default_sample_rate") or 16000,
                install_path=str(model_dir),
                installed_at=now_ms(),
            )
            self._config_store.set_installed_models([*installed_models, installed])
        logger.info("Imported model %s from %s", model_id, model_dir)
        return installed

    def on_install_progress(self, callback: Callable[[InstallProgress], None]) -> Unsubscribe:
        return self._emitter.on("install-progress", callback)

    def on_install_done(self, callback: Callable[[InstallDone], None]) -> Unsubscribe:
        return self._emitter.on("install-done", callback)

    def on_install_error(self, callback: Callable[[InstallError], None]) -> Unsubscribe:
        return self._emitter.on("install-error", callback)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _download(self, descriptor: ModelDescriptor, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Downloading model %s from %s", descriptor.id, descriptor.url)
        try:
            response = self._session.get(descriptor.url, stream=True, timeout=DOWNLOAD_TIMEOUT_S)
        except requests.RequestException as exc:
            raise ModelInstallError(f"Failed to download model: {exc}") from exc

        with response:
            if response.status_code != 200:
                raise ModelInstallError(f"Failed to download model: HTTP {response.status_code}")
            total = int(response.headers.get("content-length") or 0)
            received = 0
            last_progress = -1
            hasher = hashlib.sha256()
            try:
                with destination.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                        if not chunk:
                            continue
                        handle.write(chunk)
                        hasher.update(chunk)
                        received += len(chunk)
                        if total > 0:
                            progress = min(100, round(received * 100 / total))
                            if progress != last_progress:
                                last_progress = progress
                                self._emit_progress(descriptor.id, progress)
            except requests.RequestException as exc:
                raise ModelInstallError(f"Download interrupted: {exc}") from exc

        if descriptor.sha256 and hasher.hexdigest() != descriptor.sha256.lower():
            raise ModelInstallError(f"SHA256 mismatch for model {descriptor.id}")
        if last_progress != 100:
            self._emit_progress(descriptor.id, 100)

    def _emit_progress(self, model_id: str, progress: int) -> None:
        self._emitter.emit("install-progress", InstallProgress(model_id, progress))

"""Application entrypoint.

With ``VOSKLIVE_RUN_AS_WORKER=1`` the process runs the recognition worker loop
on stdin/stdout instead of the command-line interface.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

from audio_source import create_audio_source
from config import ENV_RUN_AS_WORKER, JsonConfigStore, env_flag
from credentials import ApiKeyPool
from errors import ConfigError, SttError
from file_transcriber import EXPORT_FORMATS, FileTranscriber, TranscribeProgress
from logging_setup import setup_logging
from model_manager import ModelManager
from models import InstallProgress, SessionState, SessionStatus, TranscriptEvent
from session_controller import STTController
from wav_writer import WavWriter

logger = logging.getLogger(__name__)


class App:
    def __init__(self, config_path: Optional[Path] = None, models_root: Optional[Path] = None) -> None:
        self.config_store = JsonConfigStore(config_path)
        self.model_manager = ModelManager(self.config_store, models_root=models_root)
        self.credentials = ApiKeyPool.from_config_store(self.config_store)
        self._source_kind: Optional[str] = None
        self.controller = STTController(
            model_manager=self.model_manager,
            config_store=self.config_store,
            credential_resolver=self.credentials,
            audio_source_factory=lambda: create_audio_source(self._source_kind),
        )
        self._recorder: Optional[WavWriter] = None
        self._partial_shown = False

    # ------------------------------------------------------------------
    # Model commands
    # ------------------------------------------------------------------

    def catalog(self) -> int:
        installed = {model.id for model in self.model_manager.list_installed()}
        for descriptor in self.model_manager.get_catalog():
            mark = "*" if descriptor.id in installed else " "
            print(
                f"{mark} {descriptor.id:<24} {descriptor.language:<6} {descriptor.size_mb or '?':>5} MB  "
                f"{descriptor.accuracy_hint or '':<5} {descriptor.label}"
            )
        return 0

    def list_models(self) -> int:
        active = self.model_manager.get_active_model_id()
        models = self.model_manager.list_installed()
        if not models:
            print("No models installed. Run `vosklive install <id>`.")
            return 0
        for model in models:
            mark = ">" if model.id == active else " "
            print(f"{mark} {model.id:<24} {model.language:<6} {model.install_path}")
        return 0

    def install(self, model_id: str) -> int:
        unsubscribe = self.model_manager.on_install_progress(self._print_progress)
        try:
            installed = self.model_manager.install(model_id)
        finally:
            unsubscribe()
        print(f"\nInstalled {installed.id} at {installed.install_path}")
        return 0

    def remove(self, model_id: str) -> int:
        self.model_manager.remove(model_id)
        print(f"Removed {model_id}")
        return 0

    def import_model(self, path: str, model_id: Optional[str], language: Optional[str]) -> int:
        installed = self.model_manager.import_model(path, id=model_id, language=language)
        print(f"Imported {installed.id} from {installed.install_path}")
        return 0

    def use(self, model_id: str) -> int:
        self.model_manager.set_active_model(model_id)
        print(f"Active model: {model_id}")
        return 0

    def set_key(self, key: str) -> int:
        self.config_store.set_api_key(key)
        print("API key saved.")
        return 0

    # ------------------------------------------------------------------
    # File transcription
    # ------------------------------------------------------------------

    def transcribe(
        self,
        wav_path: str,
        model_id: Optional[str],
        export_format: str,
        output_dir: Optional[Path],
    ) -> int:
        model_id = model_id or self.model_manager.get_active_model_id()
        if not model_id:
            raise ConfigError("No speech model selected; install or select a model first")
        model = self.model_manager.get_installed(model_id)
        if model is None:
            raise ConfigError(f"Model is not installed: {model_id}")

        transcriber = FileTranscriber(output_dir=output_dir)
        unsubscribe = transcriber.on_progress(self._print_transcribe_progress)
        try:
            result = transcriber.transcribe(wav_path, model.install_path, export_format)
        finally:
            unsubscribe()
        print(f"\n{len(result.segments)} segment(s) from {result.duration_ms / 1000:.1f}s of audio")
        for path in (result.srt_path, result.vtt_path):
            if path is not None:
                print(f"Wrote {path}")
        return 0

    # ------------------------------------------------------------------
    # Live transcription
    # ------------------------------------------------------------------

    def listen(
        self,
        provider: Optional[str],
        source: Optional[str],
        record: Optional[str],
        seconds: Optional[float],
    ) -> int:
        self._source_kind = source
        controller = self.controller
        controller.on_partial(self._on_partial)
        controller.on_final(self._on_final)
        controller.on_error(self._on_error)
        controller.on_status(self._on_status)
        controller.on_debug(lambda message: logger.debug("%s", message))

        if record:
            controller.on_audio(lambda chunk: self._record(record, chunk))

        overrides = {"provider": provider} if provider else None
        controller.start(overrides)

        done = threading.Event()
        controller.on_status(lambda status: done.set() if status.state == SessionState.ERROR else None)
        try:
            done.wait(seconds)
        except KeyboardInterrupt:
            pass
        finally:
            controller.stop()
            if self._recorder is not None:
                self._recorder.close()
        return 1 if controller.get_status().state == SessionState.ERROR else 0

    def _record(self, path: str, chunk: bytes) -> None:
        if self._recorder is None:
            config = self.controller.session_config or self.controller.get_config()
            self._recorder = WavWriter(path, sample_rate=config.sample_rate)
            self._recorder.open()
        self._recorder.write(chunk)

    def _on_partial(self, event: TranscriptEvent) -> None:
        sys.stdout.write(f"\r\033[K... {event.text}")
        sys.stdout.flush()
        self._partial_shown = True

    def _on_final(self, event: TranscriptEvent) -> None:
        prefix = "\r\033[K" if self._partial_shown else ""
        self._partial_shown = False
        if event.text:
            print(f"{prefix}{event.text}")
        elif prefix:
            sys.stdout.write(prefix)

    def _on_error(self, message: str) -> None:
        print(f"\nerror: {message}", file=sys.stderr)

    def _on_status(self, status: SessionStatus) -> None:
        logger.info("status: %s", status.to_dict())

    def _print_progress(self, event: InstallProgress) -> None:
        sys.stdout.write(f"\rDownloading {event.model_id}: {event.progress:3d}%")
        sys.stdout.flush()

    def _print_transcribe_progress(self, event: TranscribeProgress) -> None:
        sys.stdout.write(f"\rTranscribing: {event.percent:3d}%")
        sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vosklive", description="Real-time offline speech to text")
    parser.add_argument("--config", type=Path, default=None, help="config file path")
    parser.add_argument("--models-root", type=Path, default=None, help="model install directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="log to the console")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("catalog", help="list downloadable models")
    commands.add_parser("list", help="list installed models")
    commands.add_parser("install", help="download and install a model").add_argument("model_id")
    commands.add_parser("remove", help="remove an installed model").add_argument("model_id")
    commands.add_parser("use", help="select the active model").add_argument("model_id")
    commands.add_parser("set-key", help="store the DashScope API key").add_argument("key")

    importer = commands.add_parser("import", help="register a model directory")
    importer.add_argument("path")
    importer.add_argument("--id", dest="model_id", default=None)
    importer.add_argument("--language", default=None)

    listen = commands.add_parser("listen", help="transcribe live audio")
    listen.add_argument("--provider", choices=("vosk", "dashscope"), default=None)
    listen.add_argument("--source", choices=("command", "arecord", "parecord", "sounddevice"), default=None)
    listen.add_argument("--record", metavar="FILE", default=None, help="also write the audio to a WAV file")
    listen.add_argument("--seconds", type=float, default=None, help="stop after N seconds")

    transcribe = commands.add_parser("transcribe", help="transcribe a WAV file into subtitles")
    transcribe.add_argument("wav_path")
    transcribe.add_argument("--model", dest="model_id", default=None, help="installed model id")
    transcribe.add_argument("--format", dest="export_format", choices=EXPORT_FORMATS, default="both")
    transcribe.add_argument("--output-dir", type=Path, default=None, help="subtitle directory")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    if env_flag(ENV_RUN_AS_WORKER):
        import recognizer_worker

        return recognizer_worker.main()

    args = build_parser().parse_args(argv)
    setup_logging({"level": "DEBUG" if args.verbose else "INFO", "console_output": args.verbose})
    app = App(config_path=args.config, models_root=args.models_root)

    try:
        if args.command == "catalog":
            return app.catalog()
        if args.command == "list":
            return app.list_models()
        if args.command == "install":
            return app.install(args.model_id)
        if args.command == "remove":
            return app.remove(args.model_id)
        if args.command == "import":
            return app.import_model(args.path, args.model_id, args.language)
        if args.command == "use":
            return app.use(args.model_id)
        if args.command == "set-key":
            return app.set_key(args.key)
        if args.command == "transcribe":
            return app.transcribe(args.wav_path, args.model_id, args.export_format, args.output_dir)
        return app.listen(args.provider, args.source, args.record, args.seconds)
    except SttError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

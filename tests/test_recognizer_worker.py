"""Tests for the recognition worker with a fake Vosk binding."""

from __future__ import annotations

import json
from pathlib import Path
from queue import Queue
from types import SimpleNamespace
from typing import Any

import pytest

import protocol
from errors import NativeLoadError
from models import SessionConfig
from recognizer_worker import RecognitionWorker, guess_language, serve_queue

CHUNK = b"\x10\x00" * 1600  # 100 ms at 16 kHz


class FakeKaldiRecognizer:
    def __init__(self, model: Any, sample_rate: float) -> None:
        self.model = model
        self.sample_rate = sample_rate
        self.accept_results: list[bool] = []
        self.partial = ""
        self.pending = ""
        self.result_text = ""
        self.resets = 0
        self.chunks: list[bytes] = []

    def SetMaxAlternatives(self, value: int) -> None:
        pass

    def SetWords(self, value: bool) -> None:
        pass

    def AcceptWaveform(self, chunk: bytes) -> bool:
        self.chunks.append(chunk)
        return self.accept_results.pop(0) if self.accept_results else False

    def Result(self) -> str:
        return json.dumps({"text": self.result_text, "result": [{"conf": 0.9}, {"conf": 0.7}]})

    def PartialResult(self) -> str:
        return json.dumps({"partial": self.partial})

    def FinalResult(self) -> str:
        text, self.pending = self.pending, ""
        return json.dumps({"text": text})

    def Reset(self) -> None:
        self.resets += 1
        self.partial = ""


class FakeVosk:
    def __init__(self) -> None:
        self.recognizers: list[FakeKaldiRecognizer] = []

    def Model(self, path: str) -> tuple[str, str]:
        return ("model", path)

    def KaldiRecognizer(self, model: Any, sample_rate: float) -> FakeKaldiRecognizer:
        recognizer = FakeKaldiRecognizer(model, sample_rate)
        self.recognizers.append(recognizer)
        return recognizer


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _of_type(sent: list[dict], kind: str) -> list[dict]:
    return [msg for msg in sent if msg["type"] == kind]


def _init(worker: RecognitionWorker, model_dir: Path, **config: Any) -> None:
    worker.handle(protocol.init_message(SessionConfig(model_id="m", **config), str(model_dir)))


@pytest.fixture
def model_dir(tmp_path: Path) -> Path:
    path = tmp_path / "vosk-model-small-en-us-0.15"
    path.mkdir()
    return path


@pytest.fixture
def vosk() -> FakeVosk:
    return FakeVosk()


# ---------------------------------------------------------------
# init
# ---------------------------------------------------------------

def test_init_replies_ready_with_language(tmp_path: Path, vosk: FakeVosk) -> None:
    model_dir = tmp_path / "vosk-model-small-pt-0.3"
    model_dir.mkdir()
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)

    _init(worker, model_dir, sample_rate=8000)

    assert _of_type(sent, "ready") == [{"type": "ready", "payload": {"language": "pt-BR"}}]
    assert vosk.recognizers[0].sample_rate == 8000.0


def test_init_with_missing_model_path(tmp_path: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)

    _init(worker, tmp_path / "missing")

    errors = _of_type(sent, "error")
    assert len(errors) == 1
    assert errors[0]["payload"]["message"].startswith("Model path not found")
    assert not protocol.is_native_load_failure(errors[0]["payload"]["message"])


def test_init_reports_native_load_failure(model_dir: Path) -> None:
    sent: list[dict] = []

    def loader() -> Any:
        raise NativeLoadError("Failed to load vosk native binding: libvosk.so: cannot open shared object file")

    worker = RecognitionWorker(sent.append, loader=loader)
    _init(worker, model_dir)

    errors = _of_type(sent, "error")
    assert len(errors) == 1
    assert protocol.is_native_load_failure(errors[0]["payload"]["message"])
    assert _of_type(sent, "ready") == []


def test_invalid_config_is_rejected(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)

    worker.handle(protocol.message(protocol.INIT, {"config": {"provider": "vosk"}, "model_path": str(model_dir)}))

    assert _of_type(sent, "error")[0]["payload"]["message"].startswith("Invalid config")


def test_guess_language() -> None:
    assert guess_language("/m/vosk-model-small-en-us-0.15") == "en-US"
    assert guess_language("/m/vosk-model-fr-0.22/") == "fr-FR"
    assert guess_language("/m/custom") == "en-US"


# ---------------------------------------------------------------
# audio
# ---------------------------------------------------------------

def test_partials_are_debounced_and_deduplicated(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    clock = FakeClock()
    worker = RecognitionWorker(sent.append, loader=lambda: vosk, clock=clock)
    _init(worker, model_dir)
    recognizer = vosk.recognizers[0]

    recognizer.partial = "hel"
    worker.handle(protocol.audio_message(CHUNK))
    clock.now += 0.1
    recognizer.partial = "hello"
    worker.handle(protocol.audio_message(CHUNK))
    clock.now += 0.15
    worker.handle(protocol.audio_message(CHUNK))
    clock.now += 0.25
    worker.handle(protocol.audio_message(CHUNK))

    assert [msg["payload"]["text"] for msg in _of_type(sent, "partial")] == ["hel", "hello"]


def test_partials_disabled(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)
    _init(worker, model_dir, enable_partial=False)
    vosk.recognizers[0].partial = "hello"

    worker.handle(protocol.audio_message(CHUNK))

    assert _of_type(sent, "partial") == []


def test_natural_final_carries_confidence_and_timing(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)
    _init(worker, model_dir)
    recognizer = vosk.recognizers[0]
    recognizer.accept_results = [False, True]
    recognizer.result_text = "hello world"

    worker.handle(protocol.audio_message(CHUNK))
    worker.handle(protocol.audio_message(CHUNK))

    finals = _of_type(sent, "final")
    assert len(finals) == 1
    payload = finals[0]["payload"]
    assert payload["text"] == "hello world"
    assert payload["confidence"] == pytest.approx(0.8)
    assert payload["start"] == 0.0
    assert payload["end"] == pytest.approx(0.2)
    assert payload["forced"] is False
    assert worker.samples_since_final == 0


def test_forced_final_after_max_segment(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)
    _init(worker, model_dir, max_segment_seconds=6)
    recognizer = vosk.recognizers[0]
    recognizer.pending = "a very long sentence"

    for _ in range(59):
        worker.handle(protocol.audio_message(CHUNK))
    assert _of_type(sent, "final") == []

    worker.handle(protocol.audio_message(CHUNK))

    finals = _of_type(sent, "final")
    assert len(finals) == 1
    assert finals[0]["payload"]["text"] == "a very long sentence"
    assert finals[0]["payload"]["forced"] is True
    assert finals[0]["payload"]["end"] == pytest.approx(6.0)
    assert recognizer.resets == 1
    assert worker.samples_since_final == 0


def test_forced_final_is_emitted_on_silence(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)
    _init(worker, model_dir, max_segment_seconds=1)

    for _ in range(10):
        worker.handle(protocol.audio_message(CHUNK))

    finals = _of_type(sent, "final")
    assert [msg["payload"]["text"] for msg in finals] == [""]
    assert finals[0]["payload"]["forced"] is True


def test_audio_before_init_is_ignored(vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)

    assert worker.handle(protocol.audio_message(CHUNK))
    assert sent == []


# ---------------------------------------------------------------
# stop
# ---------------------------------------------------------------

def test_stop_flushes_pending_final(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append, loader=lambda: vosk)
    _init(worker, model_dir)
    vosk.recognizers[0].pending = "last words"
    worker.handle(protocol.audio_message(CHUNK))

    assert worker.handle(protocol.stop_message()) is False

    kinds = [msg["type"] for msg in sent]
    assert kinds[-1] == "stopped"
    finals = _of_type(sent, "final")
    assert [msg["payload"]["text"] for msg in finals] == ["last words"]
    assert kinds.index("final") < kinds.index("stopped")


def test_stop_without_init_still_replies_stopped() -> None:
    sent: list[dict] = []
    worker = RecognitionWorker(sent.append)

    worker.handle(protocol.stop_message())

    assert sent == [{"type": "stopped", "payload": {}}]


def test_serve_queue_runs_until_stop(model_dir: Path, vosk: FakeVosk) -> None:
    sent: list[dict] = []
    inbox: Queue = Queue()
    inbox.put(protocol.init_message(SessionConfig(model_id="m"), str(model_dir)))
    inbox.put(protocol.audio_message(CHUNK))
    inbox.put(protocol.stop_message())
    inbox.put(protocol.audio_message(CHUNK))

    serve_queue(inbox, sent.append, loader=lambda: vosk)

    assert [msg["type"] for msg in sent if msg["type"] != "debug"] == ["ready", "stopped"]
    assert inbox.qsize() == 1
    assert len(vosk.recognizers[0].chunks) == 1


def test_serve_queue_sentinel_ends_without_flush() -> None:
    sent: list[dict] = []
    inbox: Queue = Queue()
    inbox.put(None)

    serve_queue(inbox, sent.append, loader=lambda: SimpleNamespace())

    assert sent == []

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Optional

import pytest

import hosted_engine
from errors import EngineInitError
from hosted_engine import DashscopeRealtimeEngine
from models import SessionConfig, SessionState, TranscriptEvent


class FakeRecognition:
    instances: list["FakeRecognition"] = []

    def __init__(self, model: str, format: str, sample_rate: int, callback: Any) -> None:  # noqa: A002
        self.model = model
        self.format = format
        self.sample_rate = sample_rate
        self.callback = callback
        self.frames: list[bytes] = []
        self.started = False
        self.stopped = False
        FakeRecognition.instances.append(self)

    def start(self) -> None:
        self.started = True

    def send_audio_frame(self, frame: bytes) -> None:
        self.frames.append(frame)

    def stop(self) -> None:
        self.stopped = True


class FakeResult:
    def __init__(self, sentence: dict) -> None:
        self._sentence = sentence

    def get_sentence(self) -> dict:
        return self._sentence

    @staticmethod
    def is_sentence_end(sentence: dict) -> bool:
        return bool(sentence.get("sentence_end"))


class Clock:
    def __init__(self) -> None:
        self.now = 50.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def sdk(monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    module = SimpleNamespace(api_key=None)
    FakeRecognition.instances = []
    monkeypatch.setattr(hosted_engine, "dashscope", module)
    monkeypatch.setattr(hosted_engine, "Recognition", FakeRecognition)
    monkeypatch.setattr(hosted_engine, "RecognitionResult", FakeResult)
    return module


def _started(clock: Optional[Clock] = None, **config: Any) -> tuple[DashscopeRealtimeEngine, FakeRecognition]:
    engine = DashscopeRealtimeEngine(clock=clock or Clock())
    engine.start(SessionConfig(provider="dashscope", **config), "sk-test-9876", language="zh-CN")
    return engine, FakeRecognition.instances[-1]


def test_start_configures_sdk(sdk: SimpleNamespace) -> None:
    engine, recognition = _started(sample_rate=8000)

    assert sdk.api_key == "sk-test-9876"
    assert recognition.started
    assert recognition.model == "paraformer-realtime-v2"
    assert recognition.format == "pcm"
    assert recognition.sample_rate == 8000
    assert engine.get_status().state == SessionState.LISTENING
    assert engine.language == "zh-CN"


def test_start_without_key(sdk: SimpleNamespace) -> None:
    with pytest.raises(EngineInitError, match="No API key"):
        DashscopeRealtimeEngine().start(SessionConfig(provider="dashscope"), "")


def test_start_without_sdk(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(hosted_engine, "dashscope", None)
    with pytest.raises(EngineInitError, match="dashscope is not installed"):
        DashscopeRealtimeEngine().start(SessionConfig(provider="dashscope"), "sk-test")


def test_audio_is_streamed_while_listening(sdk: SimpleNamespace) -> None:
    engine, recognition = _started()
    engine.push_audio(bytearray(b"\x01\x02"))
    engine.stop()
    engine.push_audio(b"\x03\x04")

    assert recognition.frames == [b"\x01\x02"]
    assert recognition.stopped
    assert engine.get_status().state == SessionState.IDLE


def test_sentence_end_becomes_final(sdk: SimpleNamespace) -> None:
    engine, recognition = _started()
    finals: list[TranscriptEvent] = []
    engine.on_final(finals.append)

    recognition.callback.on_event(
        FakeResult({"text": "ni hao", "begin_time": 120, "end_time": 1870, "sentence_end": True})
    )

    assert finals[0].text == "ni hao"
    assert finals[0].metadata == {"provider": "dashscope", "language": "zh-CN", "start": 0.12, "end": 1.87}


def test_partials_are_debounced_and_deduplicated(sdk: SimpleNamespace) -> None:
    clock = Clock()
    engine, recognition = _started(clock=clock)
    partials: list[str] = []
    engine.on_partial(lambda event: partials.append(event.text))

    for offset, text in ((0.0, "ni"), (0.1, "ni hao"), (0.3, "ni hao"), (0.6, "ni hao"), (0.9, "ni hao ma")):
        clock.now = 50.0 + offset
        recognition.callback.on_event(FakeResult({"text": text}))

    assert partials == ["ni", "ni hao", "ni hao ma"]


def test_partials_disabled(sdk: SimpleNamespace) -> None:
    engine, recognition = _started(enable_partial=False)
    partials: list[str] = []
    engine.on_partial(lambda event: partials.append(event.text))

    recognition.callback.on_event(FakeResult({"text": "ni"}))
    assert partials == []


def test_sdk_error_is_reported(sdk: SimpleNamespace) -> None:
    engine, recognition = _started()
    errors: list[str] = []
    engine.on_error(errors.append)

    recognition.callback.on_error(SimpleNamespace(message="Throttling.RateQuota"))

    assert errors == ["DashScope recognition error: Throttling.RateQuota"]
    assert engine.get_status().state == SessionState.ERROR

"""Hosted recognition engine using DashScope realtime ASR.

Audio is streamed to ``dashscope.audio.asr.Recognition``; sentence-end results
become finals and in-progress sentences become partials.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from errors import EngineInitError
from events import EventEmitter, Unsubscribe
from models import (
    PROVIDER_DASHSCOPE,
    SessionConfig,
    SessionState,
    SessionStatus,
    TranscriptEvent,
    TranscriptKind,
    now_ms,
)

try:
    import dashscope
    from dashscope.audio.asr import Recognition, RecognitionCallback, RecognitionResult
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore
    Recognition = None  # type: ignore
    RecognitionCallback = object  # type: ignore
    RecognitionResult = None  # type: ignore

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "paraformer-realtime-v2"


class _CallbackBridge(RecognitionCallback):  # type: ignore[misc, valid-type]
    def __init__(self, engine: "DashscopeRealtimeEngine") -> None:
        super().__init__()
        self._engine = engine

    def on_open(self) -> None:
        self._engine._emit_debug("dashscope recognition opened")

    def on_close(self) -> None:
        self._engine._emit_debug("dashscope recognition closed")

    def on_complete(self) -> None:
        self._engine._emit_debug("dashscope recognition complete")

    def on_error(self, result: Any) -> None:
        message = getattr(result, "message", None) or str(result)
        self._engine._fail(f"DashScope recognition error: {message}")

    def on_event(self, result: Any) -> None:
        self._engine._handle_result(result)


class DashscopeRealtimeEngine:
    provider_id = PROVIDER_DASHSCOPE

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._model = model
        self._clock = clock
        self._emitter = EventEmitter()
        self._lock = threading.RLock()
        self._status = SessionStatus.idle()
        self._recognition: Any = None
        self._config: Optional[SessionConfig] = None
        self._language = "en-US"
        self._last_partial_text = ""
        self._last_partial_at: Optional[float] = None

    @property
    def language(self) -> str:
        return self._language

    def get_status(self) -> SessionStatus:
        return self._status

    def start(self, config: SessionConfig, target: str, language: Optional[str] = None) -> None:
        with self._lock:
            if self._recognition is not None:
                return
            if dashscope is None or Recognition is None:
                raise EngineInitError("dashscope is not installed")
            if not target:
                raise EngineInitError("No API key configured")
            self._status = SessionStatus.starting(self.provider_id)
            self._config = config
            self._language = language or self._language
            self._last_partial_text = ""
            self._last_partial_at = None
            dashscope.api_key = target
            recognition = Recognition(
                model=self._model,
                format="pcm",
                sample_rate=config.sample_rate,
                callback=_CallbackBridge(self),
            )
            try:
                recognition.start()
            except Exception as exc:
                self._status = SessionStatus.error(str(exc), self.provider_id)
                raise EngineInitError(f"Failed to start DashScope recognition: {exc}") from exc
            self._recognition = recognition
            self._status = SessionStatus.listening(self.provider_id, self._model, self._language)

    def push_audio(self, chunk: bytes) -> None:
        recognition = self._recognition
        if recognition is None or self._status.state != SessionState.LISTENING:
            return
        try:
            recognition.send_audio_frame(bytes(chunk))
        except Exception as exc:
            self._fail(f"Failed to send audio to DashScope: {exc}")

    def stop(self) -> None:
        with self._lock:
            recognition, self._recognition = self._recognition, None
            if recognition is None:
                return
            self._status = SessionStatus.stopping()
        try:
            recognition.stop()
        except Exception:
            logger.warning("Failed to stop DashScope recognition", exc_info=True)
        self._status = SessionStatus.idle()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _handle_result(self, result: Any) -> None:
        sentence = result.get_sentence()
        if not isinstance(sentence, dict):
            return
        text = str(sentence.get("text", ""))
        if RecognitionResult is not None and RecognitionResult.is_sentence_end(sentence):
            self._last_partial_text = ""
            self._last_partial_at = None
            metadata = {"provider": self.provider_id, "language": self._language}
            for key, name in (("begin_time", "start"), ("end_time", "end")):
                if sentence.get(key) is not None:
                    metadata[name] = sentence[key] / 1000.0
            self._emitter.emit(
                "final",
                TranscriptEvent(kind=TranscriptKind.FINAL, text=text, ts=now_ms(), metadata=metadata),
            )
            return

        config = self._config
        if config is None or not config.enable_partial or not text:
            return
        now = self._clock()
        if (
            self._last_partial_at is not None
            and (now - self._last_partial_at) * 1000.0 < config.partial_debounce_ms
        ):
            return
        self._last_partial_at = now
        if text == self._last_partial_text:
            return
        self._last_partial_text = text
        self._emitter.emit(
            "partial",
            TranscriptEvent(
                kind=TranscriptKind.PARTIAL,
                text=text,
                ts=now_ms(),
                metadata={"provider": self.provider_id, "language": self._language},
            ),
        )

    def _fail(self, message: str) -> None:
        logger.error("%s", message)
        self._status = SessionStatus.error(message, self.provider_id)
        self._emitter.emit("error", message)

    def _emit_debug(self, message: str) -> None:
        self._emitter.emit("debug", message)

    def on_partial(self, callback: Callable[[TranscriptEvent], None]) -> Unsubscribe:
        return self._emitter.on("partial", callback)

    def on_final(self, callback: Callable[[TranscriptEvent], None]) -> Unsubscribe:
        return self._emitter.on("final", callback)

    def on_error(self, callback: Callable[[str], None]) -> Unsubscribe:
        return self._emitter.on("error", callback)

    def on_debug(self, callback: Callable[[str], None]) -> Unsubscribe:
        return self._emitter.on("debug", callback)

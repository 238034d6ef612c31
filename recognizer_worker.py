"""Recognition worker driving the Vosk binding.

The same ``RecognitionWorker`` runs inside a thread of the host process
(messages are exchanged as dicts through queues) or in a re-executed host
process (``python -m recognizer_worker``) that speaks JSON lines on
stdin/stdout.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from queue import Queue
from typing import Any, Callable, Optional

import numpy as np

from errors import ConfigError, NativeLoadError
from models import SessionConfig, now_ms
import protocol

logger = logging.getLogger(__name__)

Send = Callable[[dict[str, Any]], None]

STATS_INTERVAL_S = 1.0

LANGUAGE_TAGS = {
    "en": "en-US",
    "us": "en-US",
    "pt": "pt-BR",
    "br": "pt-BR",
    "es": "es-ES",
    "fr": "fr-FR",
    "de": "de-DE",
    "it": "it-IT",
    "ru": "ru-RU",
    "nl": "nl-NL",
    "cn": "zh-CN",
    "ja": "ja-JP",
}


def load_vosk() -> Any:
    """Import the Vosk binding; loading failures become ``NativeLoadError``."""
    try:
        import vosk
    except (ImportError, OSError) as exc:
        raise NativeLoadError(f"Failed to load vosk native binding: {exc}") from exc
    set_log_level = getattr(vosk, "SetLogLevel", None)
    if set_log_level is not None:
        set_log_level(-1)
    return vosk


def guess_language(model_path: str) -> str:
    """Language tag inferred from a model directory name such as ``vosk-model-small-pt-0.3``."""
    tokens = re.split(r"[-_.\s]+", os.path.basename(os.path.normpath(model_path)).lower())
    for token in tokens:
        if token in LANGUAGE_TAGS:
            return LANGUAGE_TAGS[token]
    return "en-US"


def parse_result(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def _confidence(result: dict[str, Any]) -> Optional[float]:
    if "confidence" in result:
        return float(result["confidence"])
    words = result.get("result")
    if not isinstance(words, list) or not words:
        return None
    scores = [float(word["conf"]) for word in words if isinstance(word, dict) and "conf" in word]
    if not scores:
        return None
    return sum(scores) / len(scores)


class _AudioStats:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.bytes = 0
        self.samples = 0
        self.peak = 0
        self.sum_squares = 0.0
        self.accepted = 0
        self.partial = 0
        self.final = 0

    def add(self, chunk: bytes) -> None:
        self.bytes += len(chunk)
        usable = len(chunk) - (len(chunk) % 2)
        if usable < 2:
            return
        samples = np.frombuffer(chunk[:usable], dtype="<i2").astype(np.float64)
        self.samples += samples.size
        self.peak = max(self.peak, int(np.max(np.abs(samples))))
        self.sum_squares += float(np.sum(samples * samples))

    def summary(self) -> str:
        rms = (self.sum_squares / self.samples) ** 0.5 if self.samples else 0.0
        return (
            f"audio stats: bytes={self.bytes} samples={self.samples} rms={rms:.1f} "
            f"peak={self.peak} accepted={self.accepted} partial={self.partial} final={self.final}"
        )


class RecognitionWorker:
    """Handles ``init``/``audio``/``stop`` messages for one recognizer."""

    def __init__(
        self,
        send: Send,
        loader: Callable[[], Any] = load_vosk,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._send = send
        self._loader = loader
        self._clock = clock
        self._model: Any = None
        self._recognizer: Any = None
        self._config: Optional[SessionConfig] = None
        self._language = "en-US"
        self._last_partial_at: Optional[float] = None
        self._last_partial_text = ""
        self._samples_since_final = 0
        self._total_samples = 0
        self._stats = _AudioStats()
        self._stats_at = 0.0

    @property
    def samples_since_final(self) -> int:
        return self._samples_since_final

    def handle(self, msg: dict[str, Any]) -> bool:
        """Process one message; returns False once the worker has stopped."""
        kind = msg.get("type")
        try:
            if kind == protocol.INIT:
                self._init(msg.get("payload", {}))
            elif kind == protocol.AUDIO:
                self._accept(msg.get("payload", {}).get("chunk", b""))
            elif kind == protocol.STOP:
                self._stop()
                return False
            else:
                self._send(protocol.debug_message(f"unknown message type: {kind}"))
        except Exception as exc:
            logger.exception("Recognition worker failed on %s", kind)
            self._send(protocol.error_message(f"Recognition failed: {exc}"))
        return True

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    def _init(self, payload: dict[str, Any]) -> None:
        try:
            config = SessionConfig.from_dict(payload.get("config") or {})
        except ConfigError as exc:
            self._send(protocol.error_message(f"Invalid config: {exc.message}"))
            return
        model_path = str(payload.get("model_path") or "")
        if not model_path or not os.path.isdir(model_path):
            self._send(protocol.error_message(f"Model path not found: {model_path or '<empty>'}"))
            return

        try:
            vosk = self._loader()
        except NativeLoadError as exc:
            self._send(protocol.error_message(str(exc)))
            return

        self._send(protocol.debug_message(f"init model_path={model_path}"))
        try:
            model = vosk.Model(model_path)
            recognizer = vosk.KaldiRecognizer(model, float(config.sample_rate))
            recognizer.SetMaxAlternatives(0)
            recognizer.SetWords(True)
            if hasattr(recognizer, "SetPartialWords"):
                recognizer.SetPartialWords(True)
        except Exception as exc:
            self._send(protocol.error_message(f"Failed to initialise recognizer: {exc}"))
            return

        self._model = model
        self._recognizer = recognizer
        self._config = config
        self._language = str(payload.get("language") or guess_language(model_path))
        self._last_partial_at = None
        self._last_partial_text = ""
        self._samples_since_final = 0
        self._total_samples = 0
        self._stats.reset()
        self._stats_at = self._clock()
        self._send(protocol.message(protocol.READY, {"language": self._language}))

    def _accept(self, chunk: bytes) -> None:
        recognizer, config = self._recognizer, self._config
        if recognizer is None or config is None or not chunk:
            return
        chunk = bytes(chunk)
        self._stats.add(chunk)
        samples = len(chunk) // 2
        self._samples_since_final += samples
        self._total_samples += samples

        if recognizer.AcceptWaveform(chunk):
            self._stats.accepted += 1
            result = parse_result(recognizer.Result())
            if result.get("text"):
                self._emit_final(result, forced=False)
            self._start_segment()
        else:
            if config.enable_partial:
                self._maybe_emit_partial(recognizer, config)
            if self._samples_since_final >= config.max_segment_seconds * config.sample_rate:
                self._force_segment(recognizer)

        self._maybe_emit_stats()

    def _stop(self) -> None:
        recognizer = self._recognizer
        if recognizer is not None:
            result = parse_result(recognizer.FinalResult())
            text = result.get("text", "")
            if text:
                self._emit_final(result, forced=False)
                self._send(protocol.debug_message(f"final on stop len={len(text)}"))
            elif self._last_partial_text:
                self._send(
                    protocol.debug_message(
                        f"final on stop empty (last partial len={len(self._last_partial_text)})"
                    )
                )
            else:
                self._send(protocol.debug_message("final on stop empty"))
        self._recognizer = None
        self._model = None
        self._config = None
        self._send(protocol.message(protocol.STOPPED))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _maybe_emit_partial(self, recognizer: Any, config: SessionConfig) -> None:
        now = self._clock()
        if (
            self._last_partial_at is not None
            and (now - self._last_partial_at) * 1000.0 < config.partial_debounce_ms
        ):
            return
        text = parse_result(recognizer.PartialResult()).get("partial", "")
        if not text:
            return
        self._last_partial_at = now
        if text == self._last_partial_text:
            return
        self._last_partial_text = text
        self._stats.partial += 1
        self._send(protocol.message(protocol.PARTIAL, {"text": text, "ts": now_ms()}))

    def _force_segment(self, recognizer: Any) -> None:
        # FinalResult carries the pending partial; it closes this segment.
        result = parse_result(recognizer.FinalResult())
        self._emit_final(result, forced=True)
        recognizer.Reset()
        self._send(
            protocol.debug_message(f"forced segment boundary after {self._segment_seconds():.1f}s")
        )
        self._start_segment()

    def _emit_final(self, result: dict[str, Any], forced: bool) -> None:
        config = self._config
        rate = config.sample_rate if config else 16000
        end = self._total_samples / rate
        start = (self._total_samples - self._samples_since_final) / rate
        self._stats.final += 1
        self._send(
            protocol.message(
                protocol.FINAL,
                {
                    "text": result.get("text", ""),
                    "confidence": _confidence(result),
                    "ts": now_ms(),
                    "start": round(start, 3),
                    "end": round(end, 3),
                    "forced": forced,
                },
            )
        )

    def _start_segment(self) -> None:
        self._samples_since_final = 0
        self._last_partial_text = ""
        self._last_partial_at = None

    def _segment_seconds(self) -> float:
        rate = self._config.sample_rate if self._config else 16000
        return self._samples_since_final / rate

    def _maybe_emit_stats(self) -> None:
        now = self._clock()
        if now - self._stats_at < STATS_INTERVAL_S:
            return
        self._stats_at = now
        self._send(protocol.debug_message(self._stats.summary()))
        self._stats.reset()


def serve_queue(inbox: "Queue[Optional[dict[str, Any]]]", send: Send, loader=load_vosk) -> None:
    """Thread entry point; a ``None`` in the inbox ends the loop without a flush."""
    worker = RecognitionWorker(send, loader=loader)
    while True:
        msg = inbox.get()
        if msg is None:
            return
        if not worker.handle(msg):
            return


def main() -> int:
    """Process entry point speaking JSON lines on stdin/stdout."""
    logging.basicConfig(stream=sys.stderr, level=logging.WARNING)
    out = sys.stdout.buffer

    def send(msg: dict[str, Any]) -> None:
        out.write(protocol.encode_line(msg))
        out.flush()

    worker = RecognitionWorker(send)
    for raw in sys.stdin.buffer:
        msg = protocol.decode_line(raw)
        if msg is None:
            continue
        if not worker.handle(msg):
            return 0
    worker.handle(protocol.stop_message())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

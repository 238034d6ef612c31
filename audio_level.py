"""Audio level metering for UI meters."""

from __future__ import annotations

import time
from typing import Callable, Optional

import numpy as np

from models import LevelEvent

LEVEL_CEILING = 4000.0
SMOOTHING = 0.8
EMIT_INTERVAL_MS = 50


def pcm16_rms(chunk: bytes) -> float:
    """RMS over the complete little-endian 16-bit samples in ``chunk``."""
    usable = len(chunk) - (len(chunk) % 2)
    if usable < 2:
        return 0.0
    samples = np.frombuffer(chunk[:usable], dtype="<i2").astype(np.float64)
    return float(np.sqrt(np.mean(samples * samples)))


class LevelMeter:
    """Exponentially smoothed level, emitted at most once per ``interval_ms``."""

    def __init__(
        self,
        on_level: Callable[[LevelEvent], None],
        clock_ms: Optional[Callable[[], float]] = None,
        interval_ms: int = EMIT_INTERVAL_MS,
    ) -> None:
        self._on_level = on_level
        self._clock_ms = clock_ms or (lambda: time.monotonic() * 1000.0)
        self._interval_ms = interval_ms
        self.level = 0.0
        self._last_emit_ms: Optional[float] = None

    def update(self, chunk: bytes) -> None:
        if len(chunk) < 2:
            return
        rms = pcm16_rms(chunk)
        target = min(1.0, rms / LEVEL_CEILING)
        self.level = self.level * SMOOTHING + target * (1.0 - SMOOTHING)

        now = self._clock_ms()
        if self._last_emit_ms is None or now - self._last_emit_ms >= self._interval_ms:
            self._last_emit_ms = now
            self._on_level(LevelEvent(level=self.level, rms=rms, ts=int(time.time() * 1000)))

    def reset(self, emit: bool = True) -> None:
        self.level = 0.0
        self._last_emit_ms = None
        if emit:
            self._on_level(LevelEvent(level=0.0, rms=0.0, ts=int(time.time() * 1000)))

"""PCM16 WAV recording for captured sessions."""

from __future__ import annotations

import logging
import threading
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WavInfo:
    sample_rate: int
    channels: int
    sample_width: int
    data_bytes: int

    @property
    def duration_s(self) -> float:
        frame = self.channels * self.sample_width
        return self.data_bytes / frame / self.sample_rate if frame and self.sample_rate else 0.0


class WavWriter:
    def __init__(self, path: str | Path, sample_rate: int = 16000, channels: int = 1) -> None:
        self.path = Path(path)
        self.sample_rate = sample_rate
        self.channels = channels
        self._wav: Optional[wave.Wave_write] = None
        self._lock = threading.Lock()
        self._bytes_written = 0

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def is_open(self) -> bool:
        return self._wav is not None

    def open(self) -> None:
        with self._lock:
            if self._wav is not None:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            wav = wave.open(str(self.path), "wb")
            wav.setnchannels(self.channels)
            wav.setsampwidth(2)
            wav.setframerate(self.sample_rate)
            self._wav = wav
            self._bytes_written = 0

    def write(self, chunk: bytes) -> None:
        with self._lock:
            if self._wav is None:
                raise RuntimeError("WavWriter is not open")
            self._wav.writeframes(chunk)
            self._bytes_written += len(chunk)

    def close(self) -> None:
        with self._lock:
            wav, self._wav = self._wav, None
        if wav is None:
            return
        try:
            wav.close()
        except (OSError, wave.Error) as exc:
            logger.error("Failed to finalise %s: %s", self.path, exc)
            return
        logger.info("Wrote %d bytes of audio to %s", self._bytes_written, self.path)

    def __enter__(self) -> "WavWriter":
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def read_wav_info(path: str | Path) -> WavInfo:
    with wave.open(str(path), "rb") as wav:
        return WavInfo(
            sample_rate=wav.getframerate(),
            channels=wav.getnchannels(),
            sample_width=wav.getsampwidth(),
            data_bytes=wav.getnframes() * wav.getnchannels() * wav.getsampwidth(),
        )

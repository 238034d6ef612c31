"""Audio sources producing fixed-size s16le mono PCM chunks."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
from typing import IO, Any, Callable, Optional

from config import ENV_AUDIO_DEVICE, ENV_AUDIO_SOURCE
from errors import AudioSourceError, ConfigError
from events import EventEmitter, Unsubscribe
from models import chunk_bytes_for

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

SOURCE_COMMAND = "command"
SOURCE_FORWARDED = "forwarded"
SOURCE_SOUNDDEVICE = "sounddevice"

CAPTURE_BACKENDS = ("arecord", "parecord")
PREFERRED_VIRTUAL_DEVICES = ("pipewire", "pulse")

_HW_DEVICE_RE = re.compile(r"card\s+(\d+):.*?device\s+(\d+):", re.IGNORECASE)


class PcmChunker:
    """Re-frames an arbitrary byte stream into equally sized chunks."""

    def __init__(self, frame_bytes: int) -> None:
        self.frame_bytes = frame_bytes
        self._buffer = bytearray()

    def push(self, data: bytes) -> list[bytes]:
        if not data:
            return []
        self._buffer.extend(data)
        frames: list[bytes] = []
        while len(self._buffer) >= self.frame_bytes:
            frames.append(bytes(self._buffer[: self.frame_bytes]))
            del self._buffer[: self.frame_bytes]
        return frames

    def flush(self) -> bytes:
        remainder = bytes(self._buffer)
        self._buffer.clear()
        return remainder

    def clear(self) -> None:
        self._buffer.clear()

    @property
    def pending(self) -> int:
        return len(self._buffer)


class _BaseAudioSource:
    def __init__(self) -> None:
        self._emitter = EventEmitter()

    def on_data(self, callback: Callable[[bytes], None]) -> Unsubscribe:
        return self._emitter.on("data", callback)

    def on_error(self, callback: Callable[[Exception], None]) -> Unsubscribe:
        return self._emitter.on("error", callback)

    def _emit_data(self, chunk: bytes) -> None:
        self._emitter.emit("data", chunk)

    def _emit_error(self, error: Exception) -> None:
        self._emitter.emit("error", error)


# ----------------------------------------------------------------------
# Device capture through a command-line recorder
# ----------------------------------------------------------------------


def resolve_capture_backend() -> Optional[str]:
    for name in CAPTURE_BACKENDS:
        if shutil.which(name):
            return name
    return None


def _run_listing(args: list[str]) -> str:
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=5, check=False)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Device listing %s failed: %s", args, exc)
        return ""
    return result.stdout or ""


def resolve_preferred_device(listing: str) -> Optional[str]:
    """Pick a sound-server device from ``arecord -L`` output."""
    names = {line.strip() for line in listing.splitlines() if line and not line[0].isspace()}
    for name in PREFERRED_VIRTUAL_DEVICES:
        if name in names:
            return name
    return None


def resolve_hardware_device(listing: str) -> Optional[str]:
    """First ``plughw:card,device`` from ``arecord -l`` output."""
    match = _HW_DEVICE_RE.search(listing)
    if not match:
        return None
    return f"plughw:{match.group(1)},{match.group(2)}"


def build_capture_command(backend: str, sample_rate: int, device: Optional[str]) -> list[str]:
    if backend == "arecord":
        args = ["arecord"]
        if device:
            args += ["-D", device]
        return args + ["-f", "S16_LE", "-c", "1", "-r", str(sample_rate), "-t", "raw", "-q"]
    if backend == "parecord":
        args = ["parecord", "--raw", "--format=s16le", "--channels=1", f"--rate={sample_rate}"]
        if device:
            args.append(f"--device={device}")
        return args
    raise ConfigError(f"unsupported capture backend: {backend}")


def _is_stop_noise(text: str) -> bool:
    return "read error" in text.lower()


class CommandAudioSource(_BaseAudioSource):
    """Captures from a system device through an ``arecord``/``parecord`` child."""

    def __init__(self, backend: Optional[str] = None, device: Optional[str] = None) -> None:
        super().__init__()
        self._backend = backend
        self._device = device
        self._device_name = "default"
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._chunker: Optional[PcmChunker] = None
        self._stopping = False
        self._threads: list[threading.Thread] = []

    @property
    def device_name(self) -> str:
        return self._device_name

    def describe(self) -> str:
        return f"{self._backend or 'capture'} device={self._device_name}"

    def resolve_device(self) -> Optional[str]:
        if self._device:
            return self._device
        env_device = os.getenv(ENV_AUDIO_DEVICE)
        if env_device:
            return env_device
        if self._backend != "arecord":
            return None
        preferred = resolve_preferred_device(_run_listing(["arecord", "-L"]))
        if preferred:
            return preferred
        return resolve_hardware_device(_run_listing(["arecord", "-l"]))

    def start(self, sample_rate: int) -> None:
        with self._lock:
            if self._process is not None:
                return
            if self._backend is None:
                self._backend = resolve_capture_backend()
            if self._backend is None:
                raise AudioSourceError(
                    "No audio capture tool found (install alsa-utils or pulseaudio-utils)"
                )
            device = self.resolve_device()
            self._device_name = device or "default"
            args = build_capture_command(self._backend, sample_rate, device)
            logger.info(
                "Starting %s (device=%s, sample_rate=%s)", self._backend, self._device_name, sample_rate
            )
            try:
                process = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except OSError as exc:
                raise AudioSourceError(f"Failed to start {self._backend}: {exc}") from exc
            self._process = process
            self._stopping = False
            self._chunker = PcmChunker(chunk_bytes_for(sample_rate))
            self._threads = [
                threading.Thread(target=self._read_stdout, args=(process,), daemon=True),
                threading.Thread(target=self._read_stderr, args=(process,), daemon=True),
            ]
            for thread in self._threads:
                thread.start()

    def stop(self) -> None:
        with self._lock:
            process = self._process
            if process is None:
                return
            self._stopping = True
            try:
                process.terminate()
            except OSError as exc:
                logger.warning("Failed to signal %s: %s", self._backend, exc)
            self._process = None
            if self._chunker is not None:
                self._chunker.clear()
            threads, self._threads = self._threads, []
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=0.5)

    def _feed(self, process: subprocess.Popen, data: bytes) -> None:
        chunker = self._chunker
        if process is not self._process or chunker is None:
            return
        for frame in chunker.push(data):
            self._emit_data(frame)

    def _read_stdout(self, process: subprocess.Popen) -> None:
        stream: IO[bytes] = process.stdout  # type: ignore[assignment]
        reader = getattr(stream, "read1", stream.read)
        while True:
            try:
                data = reader(4096)
            except (OSError, ValueError):
                break
            if not data:
                break
            self._feed(process, data)
        code = process.wait()
        if process is self._process and not self._stopping and code != 0:
            self._emit_error(AudioSourceError(f"{self._backend} exited with code {code}"))
        with self._lock:
            if self._process is process:
                self._process = None

    def _read_stderr(self, process: subprocess.Popen) -> None:
        stream: IO[bytes] = process.stderr  # type: ignore[assignment]
        for raw in iter(stream.readline, b""):
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            deliberate_stop = self._stopping or process is not self._process
            if deliberate_stop and _is_stop_noise(text):
                logger.debug("Ignoring %s stderr during stop: %s", self._backend, text)
                continue
            self._emit_error(AudioSourceError(text))


# ----------------------------------------------------------------------
# Audio forwarded by the host layer
# ----------------------------------------------------------------------


class AudioChannel:
    """Channel the host layer pushes captured audio into."""

    def __init__(self) -> None:
        self._emitter = EventEmitter()

    def subscribe(self, callback: Callable[[Any], None]) -> Unsubscribe:
        return self._emitter.on("audio", callback)

    def push(self, payload: Any) -> None:
        self._emitter.emit("audio", payload)

    @property
    def subscriber_count(self) -> int:
        return self._emitter.listener_count("audio")


def _coerce_chunk(payload: Any) -> bytes:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if hasattr(payload, "tobytes"):
        return payload.tobytes()
    raise AudioSourceError(f"Unsupported audio payload type: {type(payload).__name__}")


class ForwardedAudioSource(_BaseAudioSource):
    def __init__(self, channel: AudioChannel) -> None:
        super().__init__()
        self._channel = channel
        self._unsubscribe: Optional[Unsubscribe] = None

    def describe(self) -> str:
        return "forwarded stream"

    def start(self, sample_rate: int) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._channel.subscribe(self._handle_payload)
        logger.info("Forwarded audio source listening (sample_rate=%s)", sample_rate)

    def stop(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

    def _handle_payload(self, payload: Any) -> None:
        if payload is None:
            return
        try:
            chunk = _coerce_chunk(payload)
        except AudioSourceError as exc:
            self._emit_error(exc)
            return
        if chunk:
            self._emit_data(chunk)


# ----------------------------------------------------------------------
# In-process PortAudio capture
# ----------------------------------------------------------------------


class SoundDeviceAudioSource(_BaseAudioSource):
    def __init__(self, device: Optional[Any] = None, chunk_ms: int = 100) -> None:
        super().__init__()
        self.device = device
        self.chunk_ms = chunk_ms
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._chunker: Optional[PcmChunker] = None

    def describe(self) -> str:
        return f"sounddevice device={self.device if self.device is not None else 'default'}"

    def start(self, sample_rate: int) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise AudioSourceError("sounddevice is not installed")
            self._chunker = PcmChunker(chunk_bytes_for(sample_rate))
            blocksize = int(sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    samplerate=sample_rate,
                    channels=1,
                    dtype="int16",
                    blocksize=blocksize,
                    device=self.device,
                    callback=self._on_audio,
                )
                self._stream.start()
            except Exception as exc:
                self._stream = None
                raise AudioSourceError(f"Failed to open input stream: {exc}") from exc
            self._running = True

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            stream, self._stream = self._stream, None
            if self._chunker is not None:
                self._chunker.clear()
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                logger.warning("Failed to close input stream: %s", exc)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._chunker is None or np is None:
            return
        if status:
            logger.debug("Input stream status: %s", status)
        payload = np.asarray(indata, dtype=np.int16).tobytes()
        for frame in self._chunker.push(payload):
            self._emit_data(frame)


def create_audio_source(kind: Optional[str] = None, channel: Optional[AudioChannel] = None):
    """Build the audio source for ``kind`` (defaults to ``$VOSKLIVE_STT_SOURCE``)."""
    kind = (kind or os.getenv(ENV_AUDIO_SOURCE) or SOURCE_COMMAND).strip().lower()
    if kind in (SOURCE_COMMAND, *CAPTURE_BACKENDS):
        backend = kind if kind in CAPTURE_BACKENDS else resolve_capture_backend()
        if backend is None and sd is not None:
            logger.info("No capture tool on PATH, using sounddevice")
            return SoundDeviceAudioSource()
        return CommandAudioSource(backend=backend)
    if kind == SOURCE_FORWARDED:
        if channel is None:
            raise ConfigError("forwarded audio source requires an audio channel")
        return ForwardedAudioSource(channel)
    if kind == SOURCE_SOUNDDEVICE:
        return SoundDeviceAudioSource()
    raise ConfigError(f"unknown audio source: {kind}")

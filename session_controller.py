"""STT session orchestration.

``STTController`` owns one recognition session at a time: it resolves the
model or credential, starts the recognition engine, then the audio source,
and republishes transcripts, status, errors, debug lines and audio levels.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from audio_level import LevelMeter
from audio_source import AudioChannel, create_audio_source
from errors import ConfigError, CredentialError, SttError
from events import EventEmitter, Unsubscribe
from hosted_engine import DashscopeRealtimeEngine
from interfaces import AudioSource, ConfigStore, CredentialResolver, RecognitionEngine
from model_manager import ModelManager
from models import (
    PROVIDER_DASHSCOPE,
    PROVIDER_VOSK,
    LevelEvent,
    SessionConfig,
    SessionState,
    SessionStatus,
    TranscriptEvent,
)
from recognizer import VoskRecognitionEngine

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], RecognitionEngine]
AudioSourceFactory = Callable[[], AudioSource]

MONITOR_INTERVAL_S = 1.0
BUSY_STATES = (SessionState.STARTING, SessionState.LISTENING, SessionState.FINALIZING)


def create_engine(provider: str) -> RecognitionEngine:
    if provider == PROVIDER_VOSK:
        return VoskRecognitionEngine()
    if provider == PROVIDER_DASHSCOPE:
        return DashscopeRealtimeEngine()
    raise ConfigError(f"unknown provider: {provider}")


class _SessionAbandoned(Exception):
    """The session was stopped while ``start`` was still running."""


class ThroughputMonitor:
    """Reports bytes received and time since the last chunk once per interval."""

    def __init__(
        self,
        on_report: Callable[[str], None],
        interval_s: float = MONITOR_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_report = on_report
        self._interval_s = interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._bytes = 0
        self._total_bytes = 0
        self._last_chunk_at: Optional[float] = None

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def record(self, size: int) -> None:
        with self._lock:
            self._bytes += size
            self._total_bytes += size
            self._last_chunk_at = self._clock()

    def tick(self) -> str:
        with self._lock:
            received, self._bytes = self._bytes, 0
            last = self._last_chunk_at
        since = "never" if last is None else f"{int((self._clock() - last) * 1000)}ms"
        report = f"audio throughput: {received} bytes in last {self._interval_s:g}s, last chunk {since} ago"
        self._on_report(report)
        return report

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="stt-throughput", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._interval_s)

    def _run(self) -> None:
        while not self._stop.wait(self._interval_s):
            self.tick()


class STTController:
    def __init__(
        self,
        model_manager: ModelManager,
        config_store: ConfigStore,
        credential_resolver: Optional[CredentialResolver] = None,
        engine_factory: EngineFactory = create_engine,
        audio_source_factory: Optional[AudioSourceFactory] = None,
        audio_channel: Optional[AudioChannel] = None,
        monitor_interval_s: float = MONITOR_INTERVAL_S,
        level_clock_ms: Optional[Callable[[], float]] = None,
    ) -> None:
        self._model_manager = model_manager
        self._config_store = config_store
        self._credentials = credential_resolver
        self._engine_factory = engine_factory
        self._audio_channel = audio_channel
        self._audio_source_factory = audio_source_factory or (
            lambda: create_audio_source(channel=self._audio_channel)
        )
        self._monitor_interval_s = monitor_interval_s

        self._emitter = EventEmitter()
        self._lock = threading.RLock()
        self._status = SessionStatus.idle()
        self._generation = 0
        self._engine: Optional[RecognitionEngine] = None
        self._source: Optional[AudioSource] = None
        self._monitor: Optional[ThroughputMonitor] = None
        self._subscriptions: list[Unsubscribe] = []
        self._credential: Optional[tuple[str, str]] = None
        self._latched_error: Optional[str] = None
        self._session_config: Optional[SessionConfig] = None
        self._level = LevelMeter(self._emit_level, clock_ms=level_clock_ms)

    # ------------------------------------------------------------------
    # Host API
    # ------------------------------------------------------------------

    def get_status(self) -> SessionStatus:
        return self._status

    def get_config(self) -> SessionConfig:
        return self._config_store.get_config()

    def update_config(self, **partial: Any) -> SessionConfig:
        return self._config_store.set_config(**partial)

    @property
    def session_config(self) -> Optional[SessionConfig]:
        """Effective config of the current or last session, after model coercion."""
        return self._session_config

    @property
    def level(self) -> float:
        return self._level.level

    def start(self, config_override: Optional[SessionConfig | dict[str, Any]] = None) -> None:
        with self._lock:
            if self._status.state in BUSY_STATES:
                return
            self._generation += 1
            generation = self._generation
            self._latched_error = None
            self._credential = None
            config = self._config_store.get_config()
            if isinstance(config_override, SessionConfig):
                config = config_override
            elif config_override:
                try:
                    config = config.merged(**config_override)
                except ConfigError as exc:
                    self._set_status(SessionStatus.error(exc.message, config.provider))
                    raise
            self._set_status(SessionStatus.starting(config.provider))

        try:
            config, target, language = self._resolve_session(config)
            self._session_config = config
            engine = self._engine_factory(config.provider)
            self._claim(generation, engine=engine)
            engine.start(config, target, language)
            self._ensure_current(generation)

            source = self._audio_source_factory()
            self._claim(generation, source=source)
            source.start(config.sample_rate)
            self._ensure_current(generation)

            monitor = ThroughputMonitor(self._debug_emitter(generation), self._monitor_interval_s)
            self._claim(generation, monitor=monitor)
            monitor.start()

            with self._lock:
                self._ensure_current(generation)
                self._set_status(
                    SessionStatus.listening(config.provider, config.model_id, language or engine.language)
                )
            logger.info("STT session started (%s, %s)", config.provider, source.describe())
            if self._credential is not None and self._credentials is not None:
                self._credentials.mark_success(*self._credential)
        except _SessionAbandoned:
            logger.debug("STT start abandoned after stop")
        except Exception as exc:
            with self._lock:
                if generation != self._generation or self._status.state != SessionState.STARTING:
                    logger.debug("Ignoring start failure of abandoned session: %s", exc)
                    return
            message = exc.message if isinstance(exc, SttError) else str(exc)
            logger.error("Failed to start STT session: %s", message)
            self._fail(message, config.provider)
            raise

    def stop(self) -> None:
        with self._lock:
            state = self._status.state
            if state in (SessionState.IDLE, SessionState.STOPPING, SessionState.FINALIZING):
                return
            self._latched_error = None
            self._set_status(SessionStatus.finalizing(self._status.provider))
            engine, source, monitor = self._engine, self._source, self._monitor
            self._engine = self._source = self._monitor = None

        self._teardown(source, engine, monitor)

        with self._lock:
            self._generation += 1
            self._unsubscribe_all()
            latched = self._latched_error
            self._set_status(SessionStatus.error(latched) if latched else SessionStatus.idle())
        logger.info("STT session stopped")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_partial(self, callback: Callable[[TranscriptEvent], None]) -> Unsubscribe:
        return self._emitter.on("partial", callback)

    def on_final(self, callback: Callable[[TranscriptEvent], None]) -> Unsubscribe:
        return self._emitter.on("final", callback)

    def on_status(self, callback: Callable[[SessionStatus], None]) -> Unsubscribe:
        return self._emitter.on("status", callback)

    def on_error(self, callback: Callable[[str], None]) -> Unsubscribe:
        return self._emitter.on("error", callback)

    def on_debug(self, callback: Callable[[str], None]) -> Unsubscribe:
        return self._emitter.on("debug", callback)

    def on_level(self, callback: Callable[[LevelEvent], None]) -> Unsubscribe:
        return self._emitter.on("level", callback)

    def on_audio(self, callback: Callable[[bytes], None]) -> Unsubscribe:
        """Raw PCM chunks as forwarded to the engine."""
        return self._emitter.on("audio", callback)

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    def _resolve_session(self, config: SessionConfig) -> tuple[SessionConfig, str, Optional[str]]:
        if config.is_model_backed:
            if not config.model_id:
                raise ConfigError("No speech model selected; install or select a model first")
            model = self._model_manager.get_installed(config.model_id)
            if model is None:
                raise ConfigError(f"Model is not installed: {config.model_id}")
            rate = model.default_sample_rate
            if rate and rate != config.sample_rate:
                logger.debug("Using model sample rate %d instead of %d", rate, config.sample_rate)
                config = config.merged(sample_rate=rate)
            return config, model.install_path, model.language

        if self._credentials is None:
            raise CredentialError(f"No credential resolver configured for {config.provider}")
        result = self._credentials.resolve(config.provider)
        if not result.ok:
            raise CredentialError(result.reason or f"No usable API key for {config.provider}")
        self._credential = (config.provider, str(result.api_key))
        return config, str(result.api_key), None

    def _claim(self, generation: int, **parts: Any) -> None:
        """Registers a session part, or stops it if the session was abandoned."""
        with self._lock:
            if generation == self._generation and self._status.state == SessionState.STARTING:
                for name, part in parts.items():
                    setattr(self, f"_{name}", part)
                    self._wire(generation, name, part)
                return
        for name, part in parts.items():
            self._safe_stop(name, part)
        raise _SessionAbandoned()

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation or self._status.state != SessionState.STARTING:
            raise _SessionAbandoned()

    def _wire(self, generation: int, name: str, part: Any) -> None:
        subscriptions = self._subscriptions
        if name == "engine":
            subscriptions.append(part.on_partial(self._forward(generation, "partial")))
            subscriptions.append(part.on_final(self._forward(generation, "final")))
            subscriptions.append(part.on_debug(self._debug_emitter(generation)))
            subscriptions.append(part.on_error(lambda message: self._runtime_error(generation, message)))
        elif name == "source":
            engine = self._engine
            subscriptions.append(part.on_data(lambda chunk: self._handle_chunk(generation, engine, chunk)))
            subscriptions.append(part.on_error(lambda exc: self._runtime_error(generation, _describe(exc))))

    def _forward(self, generation: int, event: str) -> Callable[[Any], None]:
        def forward(payload: Any) -> None:
            if generation == self._generation:
                self._emitter.emit(event, payload)

        return forward

    def _debug_emitter(self, generation: int) -> Callable[[str], None]:
        return self._forward(generation, "debug")

    def _handle_chunk(self, generation: int, engine: Optional[RecognitionEngine], chunk: bytes) -> None:
        if generation != self._generation or engine is None:
            return
        engine.push_audio(chunk)
        monitor = self._monitor
        if monitor is not None:
            monitor.record(len(chunk))
        self._level.update(chunk)
        self._emitter.emit("audio", chunk)

    # ------------------------------------------------------------------
    # Failure handling and teardown
    # ------------------------------------------------------------------

    def _runtime_error(self, generation: int, message: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            state = self._status.state
            provider = self._status.provider
            if state == SessionState.FINALIZING:
                logger.error("STT error during stop: %s", message)
                self._latched_error = message
                self._emitter.emit("error", message)
                return
            if state not in (SessionState.STARTING, SessionState.LISTENING):
                return
        logger.error("STT runtime error: %s", message)
        self._fail(message, provider)

    def _fail(self, message: str, provider: Optional[str]) -> None:
        with self._lock:
            self._generation += 1
            self._unsubscribe_all()
            engine, source, monitor = self._engine, self._source, self._monitor
            self._engine = self._source = self._monitor = None
            credential, self._credential = self._credential, None
        self._emitter.emit("error", message)
        self._teardown(source, engine, monitor)
        if credential is not None and self._credentials is not None:
            self._credentials.mark_failure(credential[0], credential[1], message)
        with self._lock:
            self._set_status(SessionStatus.error(message, provider))

    def _teardown(
        self,
        source: Optional[AudioSource],
        engine: Optional[RecognitionEngine],
        monitor: Optional[ThroughputMonitor],
    ) -> None:
        if source is not None:
            self._safe_stop("audio source", source)
        if engine is not None:
            self._safe_stop("recognition engine", engine)
        if monitor is not None:
            monitor.cancel()
        self._level.reset(emit=True)

    def _safe_stop(self, name: str, part: Any) -> None:
        stop = getattr(part, "stop", None)
        if stop is None:
            stop = getattr(part, "cancel", None)
        try:
            if stop is not None:
                stop()
        except Exception:
            logger.warning("Failed to stop %s", name, exc_info=True)

    def _unsubscribe_all(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for unsubscribe in subscriptions:
            unsubscribe()

    def _set_status(self, status: SessionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.debug("STT status: %s", status.state.value)
        self._emitter.emit("status", status)

    def _emit_level(self, event: LevelEvent) -> None:
        self._emitter.emit("level", event)


def _describe(exc: Exception) -> str:
    if isinstance(exc, SttError):
        return exc.message
    return str(exc) or exc.__class__.__name__

"""Offline recognition engine running Vosk in an isolated execution context.

Three execution contexts share one interface and are tried in order until one
reports ``ready``:

1. ``ThreadWorkerContext`` loads the binding in a worker thread of this process.
2. ``HostProcessContext`` re-executes the host interpreter (or frozen binary)
   as a plain worker runtime.
3. ``ExternalInterpreterContext`` runs ``FALLBACK_SCRIPT`` with another Python
   interpreter, typically a virtualenv that has its own ``vosk`` wheel.

Only failures that look like native-binding load problems move on to the next
context; anything else (bad model path, invalid config) is raised at once.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from collections import deque
from pathlib import Path
from queue import Queue
from typing import Any, Callable, Optional, Sequence

import protocol
from config import ENV_RUN_AS_WORKER, ENV_WORKER_EXECUTABLE
from errors import EngineInitError
from events import EventEmitter, Unsubscribe
from fallback_script import FALLBACK_SCRIPT, resolve_python_executable
from interfaces import ExecutionContext, Message
from models import (
    PROVIDER_VOSK,
    SessionConfig,
    SessionState,
    SessionStatus,
    TranscriptEvent,
    TranscriptKind,
    now_ms,
)
from recognizer_worker import load_vosk, serve_queue

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], None]
ExitCallback = Callable[[Optional[int]], None]
ContextFactory = Callable[[], ExecutionContext]

PROJECT_DIR = Path(__file__).resolve().parent
BACKLOG_WARNING = 50
KILL_GRACE_S = 1.0


class _BacklogMonitor:
    """Warns when messages pile up faster than the worker drains them."""

    def __init__(self, name: str, threshold: int = BACKLOG_WARNING, interval_s: float = 5.0) -> None:
        self._name = name
        self._threshold = threshold
        self._interval_s = interval_s
        self._warned_at: Optional[float] = None

    def check(self, depth: int) -> None:
        if depth < self._threshold:
            return
        now = time.monotonic()
        if self._warned_at is not None and now - self._warned_at < self._interval_s:
            return
        self._warned_at = now
        logger.warning("%s worker is falling behind: %d messages queued", self._name, depth)


class ThreadWorkerContext:
    name = "thread"

    def __init__(self, loader: Callable[[], Any] = load_vosk) -> None:
        self._loader = loader
        self._inbox: "Queue[Optional[Message]]" = Queue()
        self._thread: Optional[threading.Thread] = None
        self._done = threading.Event()
        self._on_message: Optional[MessageCallback] = None
        self._on_exit: Optional[ExitCallback] = None
        self._backlog = _BacklogMonitor(self.name)

    def start(self, on_message: MessageCallback, on_exit: ExitCallback) -> None:
        self._on_message = on_message
        self._on_exit = on_exit
        self._thread = threading.Thread(target=self._run, name="vosk-worker", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        code = 0
        try:
            serve_queue(self._inbox, self._dispatch, loader=self._loader)
        except Exception:
            logger.exception("Recognition worker thread crashed")
            code = 1
        finally:
            self._done.set()
            on_exit = self._on_exit
            if on_exit is not None:
                on_exit(code)

    def _dispatch(self, msg: Message) -> None:
        on_message = self._on_message
        if on_message is not None:
            on_message(msg)

    def send(self, message: Message) -> None:
        self._inbox.put(message)
        self._backlog.check(self._inbox.qsize())

    def wait(self, timeout: float) -> bool:
        return self._done.wait(timeout)

    def detach(self) -> None:
        self._on_message = None
        self._on_exit = None

    def terminate(self) -> None:
        # Threads cannot be killed; the sentinel ends the loop at the next message.
        self._inbox.put(None)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=KILL_GRACE_S)
            if thread.is_alive():
                logger.warning("Recognition worker thread did not exit; abandoning it")


class _ProcessContext:
    """Worker process speaking the JSON-lines protocol on stdin/stdout."""

    name = "process"

    def __init__(self) -> None:
        self._process: Optional[subprocess.Popen] = None
        self._outbox: "Queue[Optional[Message]]" = Queue()
        self._done = threading.Event()
        self._threads: list[threading.Thread] = []
        self._stderr_thread: Optional[threading.Thread] = None
        self._stderr_tail: deque[str] = deque(maxlen=20)
        self._on_message: Optional[MessageCallback] = None
        self._on_exit: Optional[ExitCallback] = None
        self._backlog = _BacklogMonitor(self.name)

    def command(self) -> list[str]:
        raise NotImplementedError

    def environment(self) -> dict[str, str]:
        return dict(os.environ)

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def start(self, on_message: MessageCallback, on_exit: ExitCallback) -> None:
        self._on_message = on_message
        self._on_exit = on_exit
        args = self.command()
        logger.debug("Spawning %s worker: %s", self.name, args[0])
        try:
            self._process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.environment(),
                cwd=str(PROJECT_DIR),
            )
        except OSError as exc:
            raise EngineInitError(f"Failed to spawn {self.name} worker ({args[0]}): {exc}") from exc

        self._stderr_thread = threading.Thread(target=self._read_stderr, daemon=True)
        self._threads = [
            threading.Thread(target=self._read_stdout, daemon=True),
            threading.Thread(target=self._write_loop, daemon=True),
            self._stderr_thread,
        ]
        for thread in self._threads:
            thread.start()

    def send(self, message: Message) -> None:
        if self._done.is_set():
            logger.error("Dropping %s message: %s worker has exited", message.get("type"), self.name)
            return
        self._outbox.put(message)
        self._backlog.check(self._outbox.qsize())

    def wait(self, timeout: float) -> bool:
        return self._done.wait(timeout)

    def detach(self) -> None:
        self._on_message = None
        self._on_exit = None

    def terminate(self) -> None:
        process = self._process
        if process is None:
            return
        self._outbox.put(None)
        if process.poll() is not None:
            return
        try:
            process.terminate()
            process.wait(timeout=KILL_GRACE_S)
        except subprocess.TimeoutExpired:
            logger.warning("%s worker ignored SIGTERM, killing pid %s", self.name, process.pid)
            try:
                process.kill()
                process.wait(timeout=KILL_GRACE_S)
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.error("Failed to kill %s worker: %s", self.name, exc)
        except OSError as exc:
            logger.warning("Failed to terminate %s worker: %s", self.name, exc)

    def _write_loop(self) -> None:
        process = self._process
        assert process is not None and process.stdin is not None
        while True:
            message = self._outbox.get()
            if message is None:
                break
            try:
                process.stdin.write(protocol.encode_line(message))
                process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                if not self._done.is_set():
                    logger.error("Failed to write to %s worker: %s", self.name, exc)
                break
        try:
            process.stdin.close()
        except (OSError, ValueError):
            pass

    def _read_stdout(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        for raw in iter(process.stdout.readline, b""):
            message = protocol.decode_line(raw)
            if message is None:
                logger.debug("%s worker stdout: %s", self.name, raw.decode("utf-8", errors="replace").rstrip())
                continue
            on_message = self._on_message
            if on_message is not None:
                on_message(message)
        code = process.wait()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=0.5)
        self._done.set()
        self._outbox.put(None)
        on_exit = self._on_exit
        if on_exit is not None:
            on_exit(code)

    def _read_stderr(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None
        for raw in iter(process.stderr.readline, b""):
            text = raw.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            self._stderr_tail.append(text)
            logger.debug("%s worker stderr: %s", self.name, text)
            on_message = self._on_message
            if on_message is not None:
                on_message(protocol.debug_message(f"{self.name} stderr: {text}"))


class HostProcessContext(_ProcessContext):
    """Re-executes the host as a plain worker runtime."""

    name = "host-process"

    def command(self) -> list[str]:
        override = os.getenv(ENV_WORKER_EXECUTABLE)
        if getattr(sys, "frozen", False) and not override:
            # A frozen build re-enters main(), which dispatches on the env flag.
            return [sys.executable]
        return [override or sys.executable, "-u", "-m", "recognizer_worker"]

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env[ENV_RUN_AS_WORKER] = "1"
        env["PYTHONUNBUFFERED"] = "1"
        existing = env.get("PYTHONPATH")
        env["PYTHONPATH"] = f"{PROJECT_DIR}{os.pathsep}{existing}" if existing else str(PROJECT_DIR)
        return env


class ExternalInterpreterContext(_ProcessContext):
    """Runs the standalone fallback script with another Python interpreter."""

    name = "external-python"

    def __init__(self, executable: Optional[str] = None) -> None:
        super().__init__()
        self.executable = executable or resolve_python_executable()

    def command(self) -> list[str]:
        return [self.executable, "-u", "-c", FALLBACK_SCRIPT]

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        for key in (ENV_RUN_AS_WORKER, "PYTHONPATH", "PYTHONHOME"):
            env.pop(key, None)
        env["PYTHONUNBUFFERED"] = "1"
        return env


DEFAULT_TIERS: tuple[ContextFactory, ...] = (
    ThreadWorkerContext,
    HostProcessContext,
    ExternalInterpreterContext,
)


class _PendingStart:
    def __init__(self, context: ExecutionContext) -> None:
        self.context = context
        self.ready = threading.Event()
        self.language: Optional[str] = None
        self.error: Optional[str] = None


class VoskRecognitionEngine:
    provider_id = PROVIDER_VOSK

    def __init__(
        self,
        tiers: Optional[Sequence[ContextFactory]] = None,
        ready_timeout_s: float = 30.0,
        stop_timeout_s: float = 2.0,
    ) -> None:
        self._tiers = tuple(tiers or DEFAULT_TIERS)
        self._ready_timeout_s = ready_timeout_s
        self._stop_timeout_s = stop_timeout_s
        self._emitter = EventEmitter()
        self._lock = threading.RLock()
        self._status = SessionStatus.idle()
        self._context: Optional[ExecutionContext] = None
        self._pending: Optional[_PendingStart] = None
        self._cancelled = threading.Event()
        self._language = "en-US"
        self.active_tier: Optional[str] = None

    @property
    def language(self) -> str:
        return self._language

    def get_status(self) -> SessionStatus:
        return self._status

    def start(self, config: SessionConfig, target: str, language: Optional[str] = None) -> None:
        with self._lock:
            if self._context is not None or self._status.state == SessionState.STARTING:
                return
            self._status = SessionStatus.starting(self.provider_id)
            self._cancelled.clear()

        for index, factory in enumerate(self._tiers):
            context = factory()
            try:
                self._language = self._start_context(context, config, target, language)
            except EngineInitError as exc:
                self._teardown(context)
                is_last = index == len(self._tiers) - 1
                if self._cancelled.is_set() or is_last or not protocol.is_native_load_failure(exc.message):
                    self._status = SessionStatus.error(exc.message, self.provider_id)
                    raise
                logger.warning("%s tier could not load the engine: %s", context.name, exc.message)
                self._emit_debug(f"fallback from {context.name} tier: {exc.message}")
                continue

            with self._lock:
                self._pending = None
                if self._cancelled.is_set():
                    self._teardown(context)
                    self._status = SessionStatus.idle()
                    raise EngineInitError("Recognition engine start was cancelled")
                self._context = context
                self.active_tier = context.name
                self._status = SessionStatus.listening(self.provider_id, config.model_id, self._language)
            self._emit_debug(f"recognition engine ready on {context.name} tier")
            return

    def _start_context(
        self,
        context: ExecutionContext,
        config: SessionConfig,
        target: str,
        language: Optional[str],
    ) -> str:
        pending = _PendingStart(context)
        with self._lock:
            if self._cancelled.is_set():
                raise EngineInitError("Recognition engine start was cancelled")
            self._pending = pending

        def on_message(msg: Message) -> None:
            if pending.ready.is_set():
                self._route(context, msg)
                return
            kind = msg.get("type")
            if kind == protocol.READY:
                pending.language = protocol.payload_text(msg, "language", language or "en-US")
                pending.ready.set()
            elif kind == protocol.ERROR:
                pending.error = protocol.payload_text(msg, default="Recognition engine error")
                pending.ready.set()
            elif kind == protocol.DEBUG:
                self._emit_debug(protocol.payload_text(msg, default="debug"))

        def on_exit(code: Optional[int]) -> None:
            if not pending.ready.is_set():
                tail = getattr(context, "stderr_tail", "")
                detail = f": {tail.splitlines()[-1]}" if tail else ""
                pending.error = f"{context.name} worker exited before becoming ready (code {code}){detail}"
                pending.ready.set()
                return
            self._handle_exit(context, code)

        context.start(on_message, on_exit)
        init = protocol.init_message(config, target)
        if language:
            init["payload"]["language"] = language
        context.send(init)

        if not pending.ready.wait(self._ready_timeout_s):
            raise EngineInitError(
                f"{context.name} worker did not become ready within {self._ready_timeout_s:.0f}s"
            )
        if self._cancelled.is_set():
            raise EngineInitError("Recognition engine start was cancelled")
        if pending.error is not None:
            raise EngineInitError(pending.error)
        return pending.language or language or "en-US"

    def push_audio(self, chunk: bytes) -> None:
        context = self._context
        if context is None or self._status.state != SessionState.LISTENING:
            return
        context.send(protocol.audio_message(chunk))

    def stop(self) -> None:
        with self._lock:
            self._cancelled.set()
            pending, self._pending = self._pending, None
            context = self._context
            if context is None:
                if pending is not None:
                    pending.ready.set()
                    self._teardown(pending.context)
                    self._status = SessionStatus.idle()
                return
            failed = self._status.state == SessionState.ERROR
            self._status = SessionStatus.stopping()

        if not failed:
            context.send(protocol.stop_message())
            if not context.wait(self._stop_timeout_s):
                logger.debug("%s worker stop timed out, forcing shutdown", context.name)
        self._teardown(context)
        with self._lock:
            self._context = None
            self.active_tier = None
            self._status = SessionStatus.idle()

    def _teardown(self, context: ExecutionContext) -> None:
        try:
            context.detach()
        except Exception:
            logger.debug("Failed to detach %s worker listeners", context.name, exc_info=True)
        try:
            context.terminate()
        except Exception:
            logger.warning("Failed to terminate %s worker", context.name, exc_info=True)

    def _route(self, context: ExecutionContext, msg: Message) -> None:
        kind = msg.get("type")
        payload = msg.get("payload", {})
        if kind == protocol.PARTIAL:
            self._emitter.emit("partial", self._transcript(TranscriptKind.PARTIAL, payload))
        elif kind == protocol.FINAL:
            self._emitter.emit("final", self._transcript(TranscriptKind.FINAL, payload))
        elif kind == protocol.ERROR:
            self._fail(protocol.payload_text(msg, default="Recognition engine error"))
        elif kind == protocol.DEBUG:
            self._emit_debug(protocol.payload_text(msg, default="debug"))
        elif kind == protocol.READY:
            self._language = protocol.payload_text(msg, "language", self._language)

    def _transcript(self, kind: TranscriptKind, payload: dict[str, Any]) -> TranscriptEvent:
        metadata: dict[str, Any] = {"provider": self.provider_id, "language": self._language}
        for key in ("start", "end", "forced"):
            if payload.get(key) is not None:
                metadata[key] = payload[key]
        confidence = payload.get("confidence")
        return TranscriptEvent(
            kind=kind,
            text=str(payload.get("text", "")),
            confidence=float(confidence) if confidence is not None else None,
            ts=int(payload.get("ts") or now_ms()),
            metadata=metadata,
        )

    def _handle_exit(self, context: ExecutionContext, code: Optional[int]) -> None:
        if context is not self._context or self._status.state == SessionState.STOPPING:
            return
        self._fail(f"Recognition worker ({context.name}) exited unexpectedly (code {code})")

    def _fail(self, message: str) -> None:
        logger.error("Recognition engine error: %s", message)
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

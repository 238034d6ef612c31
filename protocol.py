"""Recognition worker protocol.

Host to worker: ``init``, ``audio``, ``stop``.
Worker to host: ``ready``, ``partial``, ``final``, ``error``, ``debug``,
``stopped``.

Every message is a dict ``{"type": ..., "payload": {...}}``. Thread workers
exchange the dicts directly; process workers exchange them as one JSON
document per line, with audio chunks base64-encoded.
"""

from __future__ import annotations

import base64
import json
import re
from typing import Any, Optional

from models import SessionConfig

INIT = "init"
AUDIO = "audio"
STOP = "stop"

READY = "ready"
PARTIAL = "partial"
FINAL = "final"
ERROR = "error"
DEBUG = "debug"
STOPPED = "stopped"

NATIVE_FAILURE_MARKERS = (
    "dlopen",
    "self-register",
    "libffi",
    "cannot load library",
    "shared object",
    "undefined symbol",
    "invalid elf header",
    "wrong elf class",
    "no module named 'vosk'",
    "no module named vosk",
)


def message(kind: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    return {"type": kind, "payload": payload or {}}


def init_message(config: SessionConfig, model_path: str) -> dict[str, Any]:
    return message(INIT, {"config": config.to_dict(), "model_path": model_path})


def audio_message(chunk: bytes) -> dict[str, Any]:
    return message(AUDIO, {"chunk": chunk})


def stop_message() -> dict[str, Any]:
    return message(STOP)


def error_message(text: str) -> dict[str, Any]:
    return message(ERROR, {"message": text})


def debug_message(text: str) -> dict[str, Any]:
    return message(DEBUG, {"message": text})


def encode_line(msg: dict[str, Any]) -> bytes:
    """Serialise ``msg`` as one JSON line, base64-encoding audio chunks."""
    if msg.get("type") == AUDIO:
        chunk = msg["payload"]["chunk"]
        msg = message(AUDIO, {"chunk": base64.b64encode(bytes(chunk)).decode("ascii")})
    return (json.dumps(msg, ensure_ascii=False) + "\n").encode("utf-8")


def decode_line(line: bytes | str) -> Optional[dict[str, Any]]:
    """Parse one JSON line; returns ``None`` for blank or malformed lines."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        msg = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        return None
    payload = msg.get("payload")
    msg["payload"] = payload if isinstance(payload, dict) else {}
    if msg["type"] == AUDIO:
        try:
            msg["payload"]["chunk"] = base64.b64decode(msg["payload"].get("chunk", ""))
        except (ValueError, TypeError):
            return None
    return msg


def payload_text(msg: dict[str, Any], key: str = "message", default: str = "") -> str:
    value = msg.get("payload", {}).get(key)
    return str(value) if value else default


_NATIVE_WORD_RE = re.compile(r"\b(native|abi|c?ffi)\b", re.IGNORECASE)


def is_native_load_failure(text: str) -> bool:
    lowered = text.lower()
    if _NATIVE_WORD_RE.search(lowered):
        return True
    return any(marker in lowered for marker in NATIVE_FAILURE_MARKERS)

"""Standalone worker script for the external-interpreter tier.

The script is passed to another Python interpreter with ``-c`` so it must not
import anything from this project; it only needs the ``vosk`` package of that
interpreter. It speaks the same JSON-lines protocol as ``recognizer_worker``.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

from config import ENV_PYTHON_PATH

FALLBACK_SCRIPT = r'''
import base64, json, os, sys, time


def emit(kind, payload=None):
    sys.stdout.write(json.dumps({"type": kind, "payload": payload or {}}) + "\n")
    sys.stdout.flush()


def parse(raw):
    try:
        data = json.loads(raw)
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def now_ms():
    return int(time.time() * 1000)


def main():
    rec = None
    cfg = None
    last_partial_at = None
    last_partial = ""
    since_final = 0
    total = 0

    def final(result, forced):
        end = total / cfg["sampleRate"]
        start = (total - since_final) / cfg["sampleRate"]
        words = [w.get("conf") for w in result.get("result", []) if isinstance(w, dict) and "conf" in w]
        conf = sum(words) / len(words) if words else None
        emit("final", {"text": result.get("text", ""), "confidence": conf, "ts": now_ms(),
                       "start": round(start, 3), "end": round(end, 3), "forced": forced})

    for line in sys.stdin:
        msg = parse(line)
        kind = msg.get("type")
        payload = msg.get("payload") or {}
        if kind == "init":
            try:
                from vosk import Model, KaldiRecognizer, SetLogLevel
            except Exception as exc:
                emit("error", {"message": "python vosk is not installed in %s: %s" % (sys.executable, exc)})
                continue
            SetLogLevel(-1)
            cfg = payload.get("config") or {}
            path = payload.get("model_path") or ""
            if not os.path.isdir(path):
                emit("error", {"message": "Model path not found: %s" % path})
                continue
            try:
                rec = KaldiRecognizer(Model(path), float(cfg["sampleRate"]))
                rec.SetWords(True)
                try:
                    rec.SetPartialWords(True)
                except Exception:
                    pass
            except Exception as exc:
                emit("error", {"message": "Failed to initialise recognizer: %s" % exc})
                continue
            emit("ready", {"language": payload.get("language") or "en-US"})
        elif kind == "audio" and rec is not None:
            chunk = base64.b64decode(payload.get("chunk", ""))
            since_final += len(chunk) // 2
            total += len(chunk) // 2
            if rec.AcceptWaveform(chunk):
                result = parse(rec.Result())
                if result.get("text"):
                    final(result, False)
                since_final = 0
                last_partial = ""
                last_partial_at = None
                continue
            if cfg.get("enablePartial"):
                now = time.monotonic()
                if last_partial_at is None or (now - last_partial_at) * 1000 >= cfg.get("partialDebounceMs", 200):
                    text = parse(rec.PartialResult()).get("partial", "")
                    if text:
                        last_partial_at = now
                        if text != last_partial:
                            last_partial = text
                            emit("partial", {"text": text, "ts": now_ms()})
            if since_final >= cfg["maxSegmentSeconds"] * cfg["sampleRate"]:
                final(parse(rec.FinalResult()), True)
                rec.Reset()
                since_final = 0
                last_partial = ""
                last_partial_at = None
        elif kind == "stop":
            break

    if rec is not None:
        result = parse(rec.FinalResult())
        if result.get("text"):
            final(result, False)
    emit("stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
'''


def resolve_python_executable(cwd: Optional[Path] = None) -> str:
    """Interpreter for the fallback tier.

    Order: ``$VOSKLIVE_PYTHON_PATH``, the active virtualenv, ``.venv`` in the
    working directory or its parent, then ``python3`` on PATH.
    """
    override = os.getenv(ENV_PYTHON_PATH)
    if override and Path(override).exists():
        return override

    venv = os.getenv("VIRTUAL_ENV")
    if venv:
        candidate = Path(venv) / "bin" / "python"
        if candidate.exists():
            return str(candidate)

    base = cwd or Path.cwd()
    for candidate in (base / ".venv" / "bin" / "python", base.parent / ".venv" / "bin" / "python"):
        if candidate.exists():
            return str(candidate)

    return shutil.which("python3") or "python3"

"""Core data models for the speech-to-text subsystem."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Optional

from errors import ConfigError

PROVIDER_VOSK = "vosk"
PROVIDER_DASHSCOPE = "dashscope"

MODEL_PROVIDERS = frozenset({PROVIDER_VOSK})
HOSTED_PROVIDERS = frozenset({PROVIDER_DASHSCOPE})
PROVIDERS = MODEL_PROVIDERS | HOSTED_PROVIDERS

# Persisted keys use the camelCase names shared with the UI layer.
_CONFIG_KEYS = {
    "provider": "provider",
    "model_id": "modelId",
    "sample_rate": "sampleRate",
    "enable_partial": "enablePartial",
    "partial_debounce_ms": "partialDebounceMs",
    "max_segment_seconds": "maxSegmentSeconds",
}


def now_ms() -> int:
    return int(time.time() * 1000)


def chunk_bytes_for(sample_rate: int) -> int:
    """Byte size of one 100ms s16le mono chunk, never below 320 bytes."""
    return max(320, int(sample_rate * 0.1) * 2)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LISTENING = "listening"
    FINALIZING = "finalizing"
    STOPPING = "stopping"
    ERROR = "error"


class TranscriptKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"


class ModelSource(str, Enum):
    BUNDLED = "bundled"
    REMOTE = "remote"
    LOCAL_PATH = "localPath"


@dataclass(frozen=True)
class SessionConfig:
    provider: str = PROVIDER_VOSK
    model_id: str = ""
    sample_rate: int = 16000
    enable_partial: bool = True
    partial_debounce_ms: int = 200
    max_segment_seconds: int = 15

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ConfigError(f"unknown provider: {self.provider!r}")
        if not isinstance(self.model_id, str):
            raise ConfigError("modelId must be a string")
        if not _is_int(self.sample_rate) or self.sample_rate <= 0:
            raise ConfigError("sampleRate must be a positive integer")
        if not isinstance(self.enable_partial, bool):
            raise ConfigError("enablePartial must be a boolean")
        if not _is_int(self.partial_debounce_ms) or self.partial_debounce_ms < 0:
            raise ConfigError("partialDebounceMs must be an integer >= 0")
        if not _is_int(self.max_segment_seconds) or self.max_segment_seconds < 1:
            raise ConfigError("maxSegmentSeconds must be an integer >= 1")

    @property
    def is_model_backed(self) -> bool:
        return self.provider in MODEL_PROVIDERS

    def merged(self, **changes: Any) -> "SessionConfig":
        unknown = set(changes) - set(_CONFIG_KEYS)
        if unknown:
            raise ConfigError(f"unknown config fields: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {wire: getattr(self, attr) for attr, wire in _CONFIG_KEYS.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionConfig":
        """Build a config from the persisted shape; every field is required."""
        missing = [wire for wire in _CONFIG_KEYS.values() if wire not in data]
        if missing:
            raise ConfigError(f"missing config fields: {', '.join(missing)}")
        return cls(**{attr: data[wire] for attr, wire in _CONFIG_KEYS.items()})


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class SessionStatus:
    state: SessionState
    provider: Optional[str] = None
    model_id: Optional[str] = None
    language: Optional[str] = None
    message: Optional[str] = None
    debug: Optional[str] = None

    @classmethod
    def idle(cls) -> "SessionStatus":
        return cls(SessionState.IDLE)

    @classmethod
    def starting(cls, provider: str) -> "SessionStatus":
        return cls(SessionState.STARTING, provider=provider)

    @classmethod
    def listening(cls, provider: str, model_id: str, language: str) -> "SessionStatus":
        return cls(SessionState.LISTENING, provider=provider, model_id=model_id, language=language)

    @classmethod
    def finalizing(cls, provider: Optional[str]) -> "SessionStatus":
        return cls(SessionState.FINALIZING, provider=provider)

    @classmethod
    def stopping(cls) -> "SessionStatus":
        return cls(SessionState.STOPPING)

    @classmethod
    def error(
        cls, message: str, provider: Optional[str] = None, debug: Optional[str] = None
    ) -> "SessionStatus":
        return cls(SessionState.ERROR, provider=provider, message=message, debug=debug)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"state": self.state.value}
        for key in ("provider", "model_id", "language", "message", "debug"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class TranscriptEvent:
    kind: TranscriptKind
    text: str
    confidence: Optional[float] = None
    ts: int = field(default_factory=now_ms)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.kind == TranscriptKind.FINAL


@dataclass(frozen=True)
class LevelEvent:
    level: float
    rms: float
    ts: int


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    language: str
    label: str
    source: ModelSource = ModelSource.REMOTE
    size_mb: Optional[int] = None
    accuracy_hint: Optional[str] = None
    url: Optional[str] = None
    sha256: Optional[str] = None
    default_sample_rate: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["source"] = self.source.value
        return data


@dataclass(frozen=True)
class InstalledModel(ModelDescriptor):
    install_path: str = ""
    installed_at: int = 0
    installed: bool = True

    @classmethod
    def from_descriptor(
        cls, descriptor: ModelDescriptor, install_path: str, installed_at: Optional[int] = None
    ) -> "InstalledModel":
        base = {f.name: getattr(descriptor, f.name) for f in fields(ModelDescriptor)}
        return cls(
            **base,
            install_path=install_path,
            installed_at=installed_at if installed_at is not None else now_ms(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstalledModel":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        values["source"] = ModelSource(values.get("source", ModelSource.LOCAL_PATH.value))
        values["installed"] = True
        return cls(**values)


@dataclass(frozen=True)
class InstallProgress:
    model_id: str
    progress: int


@dataclass(frozen=True)
class InstallDone:
    model_id: str
    install_path: str


@dataclass(frozen=True)
class InstallError:
    model_id: str
    message: str


@dataclass(frozen=True)
class CredentialResult:
    api_key: Optional[str] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return bool(self.api_key)

"""Protocol interfaces used by STTController and the recognition engines."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

from models import (
    CredentialResult,
    InstalledModel,
    SessionConfig,
    SessionStatus,
    TranscriptEvent,
)

Unsubscribe = Callable[[], None]
Message = dict[str, Any]


class AudioSource(Protocol):
    def start(self, sample_rate: int) -> None: ...

    def stop(self) -> None: ...

    def on_data(self, callback: Callable[[bytes], None]) -> Unsubscribe: ...

    def on_error(self, callback: Callable[[Exception], None]) -> Unsubscribe: ...

    def describe(self) -> str: ...


class RecognitionEngine(Protocol):
    provider_id: str

    @property
    def language(self) -> str: ...

    def start(self, config: SessionConfig, target: str, language: Optional[str] = None) -> None: ...

    def push_audio(self, chunk: bytes) -> None: ...

    def stop(self) -> None: ...

    def get_status(self) -> SessionStatus: ...

    def on_partial(self, callback: Callable[[TranscriptEvent], None]) -> Unsubscribe: ...

    def on_final(self, callback: Callable[[TranscriptEvent], None]) -> Unsubscribe: ...

    def on_error(self, callback: Callable[[str], None]) -> Unsubscribe: ...

    def on_debug(self, callback: Callable[[str], None]) -> Unsubscribe: ...


class ExecutionContext(Protocol):
    """An isolation boundary hosting a recognition worker."""

    name: str

    def start(
        self,
        on_message: Callable[[Message], None],
        on_exit: Callable[[Optional[int]], None],
    ) -> None: ...

    def send(self, message: Message) -> None: ...

    def wait(self, timeout: float) -> bool: ...

    def detach(self) -> None: ...

    def terminate(self) -> None: ...


class ConfigStore(Protocol):
    def get_config(self) -> SessionConfig: ...

    def set_config(self, **partial: Any) -> SessionConfig: ...

    def get_installed_models(self) -> list[InstalledModel]: ...

    def set_installed_models(self, models: list[InstalledModel]) -> None: ...

    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...


class CredentialResolver(Protocol):
    def resolve(self, provider: str) -> CredentialResult: ...

    def mark_success(self, provider: str, key: str) -> None: ...

    def mark_failure(self, provider: str, key: str, message: str) -> Any: ...

"""Shared error codes, user-facing messages and exceptions."""

from __future__ import annotations

CONFIG_INVALID = "CONFIG_INVALID"
MODEL_NOT_INSTALLED = "MODEL_NOT_INSTALLED"
CREDENTIAL_UNAVAILABLE = "CREDENTIAL_UNAVAILABLE"
ENGINE_INIT_FAILED = "ENGINE_INIT_FAILED"
ENGINE_NATIVE_LOAD = "ENGINE_NATIVE_LOAD"
ENGINE_RUNTIME = "ENGINE_RUNTIME"
AUDIO_SOURCE_FAILED = "AUDIO_SOURCE_FAILED"
MODEL_INSTALL_FAILED = "MODEL_INSTALL_FAILED"
MODEL_INVALID = "MODEL_INVALID"
TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"

ERROR_MESSAGES = {
    CONFIG_INVALID: "Speech-to-text settings are invalid.",
    MODEL_NOT_INSTALLED: "No speech model is installed or selected.",
    CREDENTIAL_UNAVAILABLE: "No usable API key is available.",
    ENGINE_INIT_FAILED: "The speech engine failed to start.",
    ENGINE_NATIVE_LOAD: "The speech engine binding could not be loaded.",
    ENGINE_RUNTIME: "The speech engine stopped unexpectedly.",
    AUDIO_SOURCE_FAILED: "Audio capture failed.",
    MODEL_INSTALL_FAILED: "The speech model could not be installed.",
    MODEL_INVALID: "The directory does not contain a recognised speech model.",
    TRANSCRIPTION_FAILED: "The audio file could not be transcribed.",
}


class SttError(Exception):
    code = ENGINE_RUNTIME

    def __init__(self, message: str = "", code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message or ERROR_MESSAGES.get(self.code, self.code)
        super().__init__(self.message)


class ConfigError(SttError):
    code = CONFIG_INVALID


class CredentialError(ConfigError):
    code = CREDENTIAL_UNAVAILABLE


class EngineInitError(SttError):
    code = ENGINE_INIT_FAILED


class NativeLoadError(EngineInitError):
    code = ENGINE_NATIVE_LOAD


class AudioSourceError(SttError):
    code = AUDIO_SOURCE_FAILED


class ModelError(SttError):
    code = MODEL_INVALID


class ModelInstallError(ModelError):
    code = MODEL_INSTALL_FAILED


class TranscriptionError(SttError):
    code = TRANSCRIPTION_FAILED

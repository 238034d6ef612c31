"""API key pool for hosted recognition providers.

Keys are ``active``, ``cooldown`` (temporarily skipped after rate limits or
server errors) or ``disabled`` (quota exhausted or rejected credentials).
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from config import ENV_DASHSCOPE_API_KEY
from interfaces import ConfigStore
from models import PROVIDER_DASHSCOPE, CredentialResult

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_S = 10 * 60


class KeyStatus(str, Enum):
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"


class FailureKind(str, Enum):
    QUOTA = "quota"
    AUTH = "auth"
    TRANSIENT = "transient"
    OTHER = "other"


@dataclass
class ApiKey:
    provider: str
    key: str
    alias: str = ""
    status: KeyStatus = KeyStatus.ACTIVE
    cooldown_until: Optional[float] = None
    success_count: int = 0
    failure_count: int = 0
    last_error: str = ""

    @property
    def last4(self) -> str:
        return self.key[-4:]

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        return self.success_count / total if total else 0.0


def classify_failure(message: str, status_code: Optional[int] = None) -> FailureKind:
    """Map a provider error to the action the pool takes on the key."""
    low = message.lower()
    if "insufficient_quota" in low or "quota" in low or "arrearage" in low:
        return FailureKind.QUOTA
    if status_code in (401, 403) or "401" in low or "403" in low or "api key" in low or "auth" in low:
        return FailureKind.AUTH
    if status_code == 429 or (status_code is not None and status_code >= 500):
        return FailureKind.TRANSIENT
    if "429" in low or "rate limit" in low or "throttl" in low or "timeout" in low or "connection" in low:
        return FailureKind.TRANSIENT
    return FailureKind.OTHER


class ApiKeyPool:
    def __init__(
        self,
        cooldown_s: float = DEFAULT_COOLDOWN_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: list[ApiKey] = []

    @classmethod
    def from_config_store(cls, store: ConfigStore, **kwargs) -> "ApiKeyPool":
        """Pool seeded with the stored key and ``$DASHSCOPE_API_KEY``."""
        pool = cls(**kwargs)
        pool.add_key(PROVIDER_DASHSCOPE, store.get_api_key(), alias="config")
        pool.add_key(PROVIDER_DASHSCOPE, os.getenv(ENV_DASHSCOPE_API_KEY, ""), alias="env")
        return pool

    def add_key(self, provider: str, key: str, alias: str = "") -> Optional[ApiKey]:
        key = key.strip()
        if not key:
            return None
        with self._lock:
            for existing in self._keys:
                if existing.provider == provider and existing.key == key:
                    return existing
            entry = ApiKey(provider=provider, key=key, alias=alias)
            self._keys.append(entry)
        logger.debug("Added %s API key ...%s (%s)", provider, entry.last4, alias or "unnamed")
        return entry

    def keys(self, provider: str) -> list[ApiKey]:
        with self._lock:
            return [entry for entry in self._keys if entry.provider == provider]

    def available_keys(self, provider: str) -> list[ApiKey]:
        """Usable keys, most successful first; expired cooldowns are reactivated."""
        now = self._clock()
        available: list[ApiKey] = []
        with self._lock:
            for entry in self._keys:
                if entry.provider != provider or entry.status == KeyStatus.DISABLED:
                    continue
                if entry.status == KeyStatus.COOLDOWN:
                    if entry.cooldown_until is not None and entry.cooldown_until > now:
                        continue
                    entry.status = KeyStatus.ACTIVE
                    entry.cooldown_until = None
                available.append(entry)
        available.sort(key=lambda entry: entry.success_rate, reverse=True)
        return available

    def resolve(self, provider: str) -> CredentialResult:
        available = self.available_keys(provider)
        if available:
            return CredentialResult(api_key=available[0].key)

        keys = self.keys(provider)
        if not keys:
            return CredentialResult(reason=f"No API key configured for {provider}")
        if all(entry.status == KeyStatus.DISABLED for entry in keys):
            quota = any(entry.last_error == FailureKind.QUOTA.value for entry in keys)
            if quota:
                return CredentialResult(reason=f"All {provider} API keys are disabled (quota exhausted)")
            return CredentialResult(reason=f"All {provider} API keys are disabled")
        waits = [
            entry.cooldown_until - self._clock()
            for entry in keys
            if entry.status == KeyStatus.COOLDOWN and entry.cooldown_until is not None
        ]
        seconds = max(1, int(min(waits))) if waits else 0
        return CredentialResult(
            reason=f"All {provider} API keys are cooling down; retry in {seconds}s"
        )

    def mark_success(self, provider: str, key: str) -> None:
        entry = self._find(provider, key)
        if entry is None:
            logger.warning("API key not found for mark_success")
            return
        with self._lock:
            entry.success_count += 1
            entry.status = KeyStatus.ACTIVE
            entry.cooldown_until = None

    def mark_failure(self, provider: str, key: str, message: str, status_code: Optional[int] = None) -> KeyStatus:
        entry = self._find(provider, key)
        if entry is None:
            logger.warning("API key not found for mark_failure")
            return KeyStatus.DISABLED
        kind = classify_failure(message, status_code)
        with self._lock:
            entry.failure_count += 1
            entry.last_error = kind.value
            if kind in (FailureKind.QUOTA, FailureKind.AUTH):
                entry.status = KeyStatus.DISABLED
                entry.cooldown_until = None
            elif kind == FailureKind.TRANSIENT:
                entry.status = KeyStatus.COOLDOWN
                entry.cooldown_until = self._clock() + self._cooldown_s
        logger.warning(
            "Marked %s API key ...%s as failed (%s): %s", provider, entry.last4, kind.value, entry.status.value
        )
        return entry.status

    def _find(self, provider: str, key: str) -> Optional[ApiKey]:
        with self._lock:
            for entry in self._keys:
                if entry.provider == provider and entry.key == key:
                    return entry
        return None

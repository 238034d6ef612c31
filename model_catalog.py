"""Downloadable Vosk models."""

from __future__ import annotations

from typing import Optional

from models import ModelDescriptor, ModelSource

VOSK_MODELS_URL = "https://alphacephei.com/vosk/models"

CATALOG: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="vosk-en-us-small-0.15",
        language="en-US",
        label="English (US) - Small",
        source=ModelSource.REMOTE,
        size_mb=50,
        accuracy_hint="fast",
        url=f"{VOSK_MODELS_URL}/vosk-model-small-en-us-0.15.zip",
        default_sample_rate=16000,
    ),
    ModelDescriptor(
        id="vosk-en-us-0.22",
        language="en-US",
        label="English (US) - Large",
        source=ModelSource.REMOTE,
        size_mb=1800,
        accuracy_hint="best",
        url=f"{VOSK_MODELS_URL}/vosk-model-en-us-0.22.zip",
        default_sample_rate=16000,
    ),
    ModelDescriptor(
        id="vosk-pt-br-small-0.3",
        language="pt-BR",
        label="Portuguese (Brazil) - Small",
        source=ModelSource.REMOTE,
        size_mb=50,
        accuracy_hint="fast",
        url=f"{VOSK_MODELS_URL}/vosk-model-small-pt-0.3.zip",
        default_sample_rate=16000,
    ),
    ModelDescriptor(
        id="vosk-pt-br-0.3",
        language="pt-BR",
        label="Portuguese (Brazil) - Large (FalaBrasil)",
        source=ModelSource.REMOTE,
        size_mb=1600,
        accuracy_hint="best",
        url=f"{VOSK_MODELS_URL}/vosk-model-pt-fb-v0.1.1-20220516_2113.zip",
        default_sample_rate=16000,
    ),
)


def find_descriptor(model_id: str, catalog: tuple[ModelDescriptor, ...] = CATALOG) -> Optional[ModelDescriptor]:
    for descriptor in catalog:
        if descriptor.id == model_id:
            return descriptor
    return None

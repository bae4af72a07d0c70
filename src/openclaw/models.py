"""Model catalogue: platform-funded models and bring-your-own-key providers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PlatformModel:
    """A model served with the platform's own upstream credential."""

    id: str
    name: str
    upstream_id: str


PLATFORM_MODELS: tuple[PlatformModel, ...] = (
    PlatformModel(
        id="openclaw-pro",
        name="OpenClaw Pro",
        upstream_id="anthropic/claude-sonnet-4",
    ),
    PlatformModel(
        id="openclaw-fast",
        name="OpenClaw Fast",
        upstream_id="anthropic/claude-haiku-4",
    ),
)

BYOK_PROVIDERS: tuple[str, ...] = ("anthropic", "openai", "gemini")


def get_platform_model(model_id: str) -> PlatformModel | None:
    """Look up a platform model by its ID."""

    for model in PLATFORM_MODELS:
        if model.id == model_id:
            return model
    return None


def is_byok_provider(model_id: str) -> bool:
    return model_id in BYOK_PROVIDERS


__all__ = [
    "BYOK_PROVIDERS",
    "PLATFORM_MODELS",
    "PlatformModel",
    "get_platform_model",
    "is_byok_provider",
]

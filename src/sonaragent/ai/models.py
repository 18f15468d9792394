"""Default model identifiers and quota fallback selection."""

from __future__ import annotations

__all__ = [
    "DEFAULT_MODEL",
    "DEFAULT_REASONING_MODEL",
    "DEFAULT_FAST_MODEL",
    "get_effective_model",
]

DEFAULT_MODEL = "sonar-pro"
DEFAULT_REASONING_MODEL = "sonar-reasoning-pro"
DEFAULT_FAST_MODEL = "sonar"


def get_effective_model(requested_model: str, *, fallback_active: bool) -> str:
    """Return the model to use, downgrading to the fast model while in quota fallback.

    Models that are already lightweight are kept as requested.
    """
    if not fallback_active:
        return requested_model
    if "lite" in requested_model or requested_model == DEFAULT_FAST_MODEL:
        return requested_model
    return DEFAULT_FAST_MODEL

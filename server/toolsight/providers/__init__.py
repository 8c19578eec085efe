from __future__ import annotations

from typing import TYPE_CHECKING

from toolsight.providers.base import AsyncPolledAdapter, JobStyle, ProviderAdapter, SynchronousAdapter
from toolsight.providers.openai_compat import OpenAICompatibleProvider
from toolsight.providers.replicate import ReplicateProvider

if TYPE_CHECKING:
    from toolsight.config import ProviderConfig

_PROVIDERS: dict[str, type[ProviderAdapter]] = {
    "replicate": ReplicateProvider,
    "openai": OpenAICompatibleProvider,
}


def create_provider(config: ProviderConfig) -> ProviderAdapter:
    try:
        cls = _PROVIDERS[config.kind]
    except KeyError:
        raise ValueError(f"Unknown provider: {config.kind}") from None
    return cls(config)


__all__ = [
    "AsyncPolledAdapter",
    "JobStyle",
    "OpenAICompatibleProvider",
    "ProviderAdapter",
    "ReplicateProvider",
    "SynchronousAdapter",
    "create_provider",
]

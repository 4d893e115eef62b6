"""Provider factory and registration."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import ProviderConfig, ZapflowConfig, load_config
from .base import ProviderAdapter
from .evolution import EvolutionProvider
from .inmemory import InMemoryProvider
from .zapi import ZApiProvider

ProviderFactory = Callable[[ProviderConfig], ProviderAdapter]

PROVIDERS: Dict[str, ProviderFactory] = {
    "inmemory": lambda conf: InMemoryProvider(),
    "zapi": lambda conf: ZApiProvider(conf.zapi, timeout=conf.timeout),
    "evolution": lambda conf: EvolutionProvider(conf.evolution, timeout=conf.timeout),
}


def register_provider(name: str, factory: ProviderFactory) -> None:
    """Make a new provider backend available to :func:`get_provider`."""
    PROVIDERS[name.lower()] = factory


def get_provider(
    backend: Optional[str] = None, config: Optional[ZapflowConfig] = None
) -> ProviderAdapter:
    """Factory function to get the configured provider."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("ZAPFLOW_PROVIDER")
        or config.provider.backend
    ).lower()

    factory = PROVIDERS.get(backend)
    if factory is None:
        raise ValueError(f"Unsupported provider backend: {backend}")
    return factory(config.provider)


__all__ = [
    "EvolutionProvider",
    "InMemoryProvider",
    "PROVIDERS",
    "ProviderAdapter",
    "ZApiProvider",
    "get_provider",
    "register_provider",
]

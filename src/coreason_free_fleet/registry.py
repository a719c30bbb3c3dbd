# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import threading
from typing import Callable, Dict, List, Optional

import httpx

from coreason_free_fleet.adapters import (
    BaseAdapter,
    CerebrasAdapter,
    DeepSeekAdapter,
    GenericAdapter,
    GoogleAdapter,
    GroqAdapter,
    HuggingFaceAdapter,
    ModelScopeAdapter,
    OpenRouterAdapter,
)
from coreason_free_fleet.interfaces import ProviderAdapter
from coreason_free_fleet.models import ProviderConfig
from coreason_free_fleet.utils.logger import logger

AdapterFactory = Callable[[str, ProviderConfig, Optional[httpx.AsyncClient]], ProviderAdapter]


def _dedicated(adapter_cls: Callable[..., BaseAdapter]) -> AdapterFactory:
    def factory(provider_id: str, config: ProviderConfig, client: Optional[httpx.AsyncClient]) -> ProviderAdapter:
        return adapter_cls(config=config, client=client)

    return factory


def _generic(provider_id: str, config: ProviderConfig, client: Optional[httpx.AsyncClient]) -> ProviderAdapter:
    return GenericAdapter(provider_id, config=config, client=client)


BUILTIN_FACTORIES: Dict[str, AdapterFactory] = {
    "openrouter": _dedicated(OpenRouterAdapter),
    "groq": _dedicated(GroqAdapter),
    "cerebras": _dedicated(CerebrasAdapter),
    "google": _dedicated(GoogleAdapter),
    "deepseek": _dedicated(DeepSeekAdapter),
    "modelscope": _dedicated(ModelScopeAdapter),
    "huggingface": _dedicated(HuggingFaceAdapter),
}


class AdapterRegistry:
    """
    Maps provider ids to adapter factories.
    Unknown providers resolve to the generic OpenAI-compatible adapter.
    """

    def __init__(self, default_factory: AdapterFactory = _generic, include_builtins: bool = True) -> None:
        self._lock = threading.Lock()
        self._factories: Dict[str, AdapterFactory] = dict(BUILTIN_FACTORIES) if include_builtins else {}
        self._default_factory = default_factory

    def register(self, provider_id: str, factory: AdapterFactory) -> None:
        """
        Registers a factory for a provider id.
        If a factory already exists for the id, it is replaced.
        """
        with self._lock:
            self._factories[provider_id] = factory
            logger.debug(f"Registered adapter factory for provider: {provider_id}")

    def has(self, provider_id: str) -> bool:
        return provider_id in self._factories

    def list_providers(self) -> List[str]:
        with self._lock:
            return sorted(self._factories)

    def create(
        self,
        provider_id: str,
        config: Optional[ProviderConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> ProviderAdapter:
        with self._lock:
            factory = self._factories.get(provider_id)

        if factory is None:
            logger.warning(f"No adapter found for provider: {provider_id}, using generic adapter")
            factory = self._default_factory

        return factory(provider_id, config or ProviderConfig(), client)

    def clear(self) -> None:
        """
        Removes every registered factory (useful for testing).
        """
        with self._lock:
            self._factories.clear()
            logger.debug("AdapterRegistry cleared")

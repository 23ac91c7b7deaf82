"""Registry of capability providers addressable by dependency name.

Workflow steps name the dependency they call (``dependency: speech-to-text``);
the executor resolves that name here. Providers are registered once at start-up,
typically one adapter per external service.

Example:
    >>> registry = ProviderRegistry()
    >>> registry.register(CallableProvider("mandi-prices", fetch_prices))
    >>> provider = registry.get("mandi-prices")
    >>> status = await registry.get_provider_status()
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from .base import CapabilityProvider

logger = logging.getLogger(__name__)


class UnknownProviderError(KeyError):
    """Raised when no provider is registered under a dependency name."""


class ProviderRegistry:
    """Maps dependency names to capability provider adapters.

    Thread Safety:
        Registration and lookup are guarded by a lock; providers themselves
        must be safe to call concurrently from many workflow instances.
    """

    def __init__(self, providers: Optional[List[CapabilityProvider]] = None) -> None:
        self._providers: Dict[str, CapabilityProvider] = {}
        self._lock = Lock()
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: CapabilityProvider, name: Optional[str] = None) -> None:
        """Register a provider.

        Args:
            provider: Adapter implementing CapabilityProvider
            name: Dependency name; defaults to ``provider.name``
        """
        key = name or provider.name
        with self._lock:
            if key in self._providers:
                logger.warning(f"Replacing capability provider registered as {key}")
            self._providers[key] = provider
        logger.debug(f"Registered capability provider: {key}")

    def unregister(self, name: str) -> None:
        with self._lock:
            self._providers.pop(name, None)

    def get(self, name: str) -> CapabilityProvider:
        """Resolve a provider by dependency name.

        Raises:
            UnknownProviderError: If nothing is registered under ``name``
        """
        with self._lock:
            provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(f"No capability provider registered for '{name}'")
        return provider

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._providers

    def get_available_providers(self) -> List[str]:
        with self._lock:
            return sorted(self._providers)

    async def get_provider_status(self) -> Dict[str, Dict[str, Any]]:
        """Run health checks for every registered provider concurrently.

        Health check failures are reported, never raised.
        """
        with self._lock:
            providers = dict(self._providers)

        async def _check(provider: CapabilityProvider) -> Dict[str, Any]:
            try:
                return await provider.health_check_async()
            except Exception as e:
                logger.warning(f"Health check failed for {provider.name}: {e}")
                return {"healthy": False, "status": "error", "response_time_ms": 0.0, "details": {"error": str(e)}}

        names = list(providers)
        results = await asyncio.gather(*(_check(providers[name]) for name in names))
        return dict(zip(names, results))

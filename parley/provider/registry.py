"""Provider registry: one lazily created adapter per provider:model.

Example:
    registry = ProviderRegistry(config)
    provider = registry.get_for_profile("flash")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from parley.provider import create_provider

if TYPE_CHECKING:
    from parley.config.schema import Config
    from parley.core.interfaces import ProviderAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Manages adapter instances with lazy initialization.

    Adapters are created on first access, so a missing API key only fails
    the turn that needs it. The cache is keyed by provider_name:model_id.
    """

    def __init__(
        self,
        config: Config,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider registry.

        Args:
            config: The parley configuration.
            transport: Optional httpx transport shared by all HTTP adapters.
        """
        self._config = config
        self._transport = transport
        self._providers: dict[str, ProviderAdapter] = {}

    def get(
        self,
        provider_name: str,
        model_id: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ProviderAdapter:
        """Get or create the adapter for a provider/model pair.

        Raises:
            KeyError: If provider name not found in config.
            ConfigurationError: If the adapter cannot be created.
        """
        cache_key = f"{provider_name}:{model_id}"

        if cache_key not in self._providers:
            provider_config = self._config.get_provider_config(provider_name)
            kwargs = {}
            if provider_config.type != "offline":
                kwargs = {
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "transport": self._transport,
                }
            self._providers[cache_key] = create_provider(provider_config, model_id, **kwargs)
            logger.debug("Created provider %s", cache_key)
        return self._providers[cache_key]

    def get_for_profile(self, profile_name: str | None = None) -> ProviderAdapter:
        """Get the adapter for a profile (default profile when None)."""
        profile = self._config.get_profile(profile_name)
        return self.get(profile.provider, profile.model, profile.temperature, profile.max_tokens)

    def register(self, provider_name: str, model_id: str, provider: ProviderAdapter) -> None:
        """Install a ready-made adapter under provider_name:model_id."""
        self._providers[f"{provider_name}:{model_id}"] = provider

    @property
    def cached_providers(self) -> list[str]:
        """Cache keys of adapters created so far."""
        return list(self._providers.keys())

    async def aclose(self) -> None:
        """Close every cached adapter and clear the cache."""
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await provider.aclose()

"""LLM provider adapters for parley.

This module provides the factory function for creating adapters based on
configuration, plus the defaults for each supported provider type.

Supported providers:
- openai: Direct OpenAI API
- groq: Groq (OpenAI-compatible)
- deepseek: DeepSeek (OpenAI-compatible)
- openrouter: OpenRouter.ai (OpenAI-compatible)
- gemini: Google Gemini
- offline: canned replies, no network

Example:
    from parley.provider import create_provider
    from parley.config.schema import ProviderConfig

    config = ProviderConfig(type="groq", api_key_env="GROQ_API_KEY",
                            base_url="https://api.groq.com/openai/v1")
    provider = create_provider(config, "llama-3.3-70b-versatile")
"""

from typing import TYPE_CHECKING, Any

from parley.config.schema import AuthMethod
from parley.core.errors import ConfigurationError

if TYPE_CHECKING:
    from parley.config.schema import ProviderConfig
    from parley.core.interfaces import ProviderAdapter


# Provider type defaults - used for documentation and the CLI's provider list
PROVIDER_DEFAULTS: dict[str, dict[str, str | AuthMethod]] = {
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "api_key_env": "OPENAI_API_KEY",
        "auth_method": AuthMethod.BEARER,
    },
    "groq": {
        "base_url": "https://api.groq.com/openai/v1",
        "api_key_env": "GROQ_API_KEY",
        "auth_method": AuthMethod.BEARER,
    },
    "deepseek": {
        "base_url": "https://api.deepseek.com/v1",
        "api_key_env": "DEEPSEEK_API_KEY",
        "auth_method": AuthMethod.BEARER,
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "api_key_env": "OPENROUTER_API_KEY",
        "auth_method": AuthMethod.BEARER,
    },
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "api_key_env": "GEMINI_API_KEY",
        "auth_method": AuthMethod.X_GOOG_API_KEY,
    },
    "offline": {
        "base_url": "",
        "api_key_env": "",
        "auth_method": AuthMethod.NONE,
    },
}


def create_provider(
    config: "ProviderConfig",
    model_id: str,
    **kwargs: Any,
) -> "ProviderAdapter":
    """Create an adapter instance based on config.type.

    Args:
        config: Provider configuration. The 'type' field determines which
            adapter class is instantiated.
        model_id: The model ID to use for API requests.
        **kwargs: Passed to the adapter (temperature, max_tokens, transport).

    Returns:
        Adapter implementing the ProviderAdapter protocol.

    Raises:
        ConfigurationError: If the provider type is unknown or the adapter
            cannot be configured (e.g. missing API key).
    """
    provider_type = config.type.lower()

    if provider_type in ("openai", "groq", "deepseek", "openrouter"):
        from parley.provider.openai_compat import OpenAICompatProvider

        return OpenAICompatProvider(config, model_id, **kwargs)

    if provider_type == "gemini":
        from parley.provider.gemini import GeminiProvider

        return GeminiProvider(config, model_id, **kwargs)

    if provider_type == "offline":
        from parley.provider.offline import OfflineProvider

        return OfflineProvider()

    supported = ", ".join(PROVIDER_DEFAULTS.keys())
    raise ConfigurationError(
        f"Unknown provider type: '{provider_type}'. Supported: {supported}"
    )


from parley.provider.registry import ProviderRegistry  # noqa: E402

__all__ = [
    "create_provider",
    "ProviderRegistry",
    "PROVIDER_DEFAULTS",
]

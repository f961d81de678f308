from typing import Dict, Type

from .base import ProviderAdapter, ProviderCapabilities
from .openai import OpenAIAdapter
from .anthropic import AnthropicAdapter
from .gemini import GeminiAdapter
from .bedrock import BedrockAdapter
from .compatible import OpenAICompatibleAdapter
from ..errors import ConfigurationError

# Closed set of adapter variants, dispatched by provider tag
ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    OpenAIAdapter.kind: OpenAIAdapter,
    AnthropicAdapter.kind: AnthropicAdapter,
    GeminiAdapter.kind: GeminiAdapter,
    BedrockAdapter.kind: BedrockAdapter,
    OpenAICompatibleAdapter.kind: OpenAICompatibleAdapter,
}

# Accepted spellings for the provider tag in configuration
PROVIDER_ALIASES = {
    "claude": "anthropic",
    "google": "gemini",
    "aws": "bedrock",
    "compatible": "openai_compatible",
    "openai_compat": "openai_compatible",
    "deepseek": "openai_compatible",
    "huggingface": "openai_compatible",
}


def normalize_provider(provider: str) -> str:
    key = provider.strip().lower()
    return PROVIDER_ALIASES.get(key, key)


def create_adapter(provider: str) -> ProviderAdapter:
    """
    Instantiate the adapter variant for a provider tag.

    Raises:
        ConfigurationError: If the tag names no known adapter.
    """
    kind = normalize_provider(provider)
    if kind not in ADAPTERS:
        raise ConfigurationError(
            f"Unknown provider '{provider}'. Use one of: {', '.join(sorted(ADAPTERS))}"
        )
    return ADAPTERS[kind]()


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "BedrockAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "ProviderCapabilities",
    "create_adapter",
    "normalize_provider",
]

"""Read-only registry of configured providers."""

from types import MappingProxyType
from typing import Mapping, Optional

from loguru import logger

from .base import BaseProvider, ProviderType
from .claude import ClaudeProvider
from .gemini import GeminiProvider
from .openai_compat import OpenAICompatibleProvider


class ProviderFactory:
    """Maps a ProviderType to its provider instance; shared across sessions."""

    def __init__(self, providers: Mapping[ProviderType, BaseProvider]):
        self._providers = MappingProxyType(dict(providers))

    @property
    def providers(self) -> Mapping[ProviderType, BaseProvider]:
        return self._providers

    def get(self, provider_type: ProviderType) -> Optional[BaseProvider]:
        return self._providers.get(ProviderType(provider_type))

    def configured(self) -> list[ProviderType]:
        return [t for t, p in self._providers.items() if p.is_configured]

    @classmethod
    def from_settings(cls, settings) -> "ProviderFactory":
        """Build the default adapters from ``ProviderSettings``."""
        providers = {
            ProviderType.CLAUDE: ClaudeProvider(
                api_key=settings.api_key_for(ProviderType.CLAUDE),
                timeout=settings.timeout_seconds,
            ),
            ProviderType.OPENAI: OpenAICompatibleProvider(
                api_key=settings.api_key_for(ProviderType.OPENAI),
                base_url=settings.openai_base_url,
                timeout=settings.timeout_seconds,
            ),
            ProviderType.GEMINI: GeminiProvider(
                api_key=settings.api_key_for(ProviderType.GEMINI),
            ),
            ProviderType.QWEN: OpenAICompatibleProvider(
                api_key=settings.api_key_for(ProviderType.QWEN),
                base_url=settings.qwen_base_url,
                provider_type=ProviderType.QWEN,
                timeout=settings.timeout_seconds,
            ),
        }
        factory = cls(providers)
        logger.debug(f"Configured providers: {[t.value for t in factory.configured()]}")
        return factory

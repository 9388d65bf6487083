"""
Base LLM provider - abstract interface consumed by the engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from ..errors import GenerationError, Result
from ..models.generation import TokenUsage


class ProviderType(str, Enum):
    """Supported provider families"""
    CLAUDE = "claude"
    OPENAI = "openai"
    GEMINI = "gemini"
    QWEN = "qwen"


@dataclass(frozen=True)
class GenerationRequest:
    system_prompt: str
    user_prompt: str
    model: str
    max_tokens: int = 4096
    temperature: float = 0.7


@dataclass(frozen=True)
class ProviderResponse:
    content: str
    model: str
    usage: TokenUsage = TokenUsage()
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class StreamChunk:
    content: str
    is_final: bool = False
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


class BaseProvider(ABC):
    """
    Abstract base class for LLM providers.

    ``generate`` never raises for provider-side failures; it returns a failed
    Result carrying a GenerationError.
    """

    def __init__(self, api_key: str = "", base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        pass

    @property
    def name(self) -> str:
        return self.provider_type.value.capitalize()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    @abstractmethod
    def supports_streaming(self) -> bool:
        pass

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> Result[ProviderResponse]:
        """Run one buffered completion."""

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Stream a completion; providers without streaming raise."""
        raise GenerationError(f"{self.name} does not support streaming")
        yield  # pragma: no cover

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} configured={self.is_configured}>"

"""Character-based token estimation and context-window arithmetic."""

import math
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

CHARS_PER_TOKEN = 4
DEFAULT_CONTEXT_TOKENS = 8000
DEFAULT_MAX_OUTPUT_TOKENS = 4096
DEFAULT_RESERVED_OUTPUT = 4000
ELLIPSIS = "..."

DEFAULT_CONTEXT_SIZES = MappingProxyType({
    "claude-3-opus-20240229": 200000,
    "claude-3-5-sonnet-20241022": 200000,
    "claude-3-5-haiku-20241022": 200000,
    "claude-3-sonnet-20240229": 200000,
    "claude-3-haiku-20240307": 200000,
    "claude-sonnet-4-20250514": 200000,
    "claude-opus-4-20250514": 200000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 16385,
    "o1-preview": 128000,
    "o1-mini": 128000,
    "gemini-1.5-pro": 1000000,
    "gemini-1.5-flash": 1000000,
    "gemini-pro": 32000,
})

DEFAULT_MAX_OUTPUT = MappingProxyType({
    "claude-3-opus-20240229": 4096,
    "claude-3-5-sonnet-20241022": 8192,
    "claude-3-5-haiku-20241022": 8192,
    "claude-3-sonnet-20240229": 4096,
    "claude-3-haiku-20240307": 4096,
    "claude-sonnet-4-20250514": 8192,
    "claude-opus-4-20250514": 8192,
    "gpt-4o": 16384,
    "gpt-4o-mini": 16384,
    "gpt-4-turbo": 4096,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 4096,
    "o1-preview": 32768,
    "o1-mini": 65536,
    "gemini-1.5-pro": 8192,
    "gemini-1.5-flash": 8192,
    "gemini-pro": 8192,
})


class TokenEstimator:
    """Deterministic token arithmetic over injected, read-only model tables."""

    def __init__(
        self,
        context_sizes: Optional[Mapping[str, int]] = None,
        max_output: Optional[Mapping[str, int]] = None,
    ):
        sizes = DEFAULT_CONTEXT_SIZES if context_sizes is None else context_sizes
        outputs = DEFAULT_MAX_OUTPUT if max_output is None else max_output
        self._context_sizes = MappingProxyType({k.lower(): v for k, v in sizes.items()})
        self._max_output = MappingProxyType({k.lower(): v for k, v in outputs.items()})

    def estimate(self, text: Optional[str]) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def estimate_many(self, texts: Iterable[Optional[str]]) -> int:
        return sum(self.estimate(t) for t in texts)

    def get_max_context_tokens(self, model: Optional[str]) -> int:
        return self._context_sizes.get((model or "").lower(), DEFAULT_CONTEXT_TOKENS)

    def get_max_output_tokens(self, model: Optional[str]) -> int:
        return self._max_output.get((model or "").lower(), DEFAULT_MAX_OUTPUT_TOKENS)

    def get_remaining_output_tokens(self, model: Optional[str], input_tokens: int) -> int:
        available = self.get_max_context_tokens(model) - input_tokens
        return max(0, min(available, self.get_max_output_tokens(model)))

    def fits_in_context(
        self,
        text: Optional[str],
        model: Optional[str],
        reserved_output: int = DEFAULT_RESERVED_OUTPUT,
    ) -> bool:
        return self.estimate(text) + reserved_output <= self.get_max_context_tokens(model)

    def truncate_to_limit(self, text: Optional[str], max_tokens: int) -> str:
        """Cut ``text`` to ``max_tokens`` at a word boundary, ellipsis included.

        Text that already fits is returned unchanged.
        """
        if not text:
            return ""
        max_chars = max(0, max_tokens) * CHARS_PER_TOKEN
        if len(text) <= max_chars:
            return text
        if max_chars <= len(ELLIPSIS):
            return ""

        cut = max_chars - len(ELLIPSIS)
        truncated = text[:cut]
        last_space = truncated.rfind(" ")
        if last_space > cut * 0.8:
            truncated = truncated[:last_space]
        return truncated.rstrip() + ELLIPSIS

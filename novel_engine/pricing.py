"""Model selection by (provider, mode) and per-model cost estimation."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from .models.context import GenerationContext
from .models.generation import CostEstimate, GenerationMode, ModeInfo, TokenUsage
from .providers.base import ProviderType

TOKENS_PER_WORD = 1.3
OUTPUT_SAFETY_MULTIPLIER = 1.2
PREMIUM_INPUT_MULTIPLIER = 1.5
PREMIUM_OUTPUT_MULTIPLIER = 1.3

FALLBACK_MODEL = "claude-sonnet-4-20250514"
DEFAULT_PRICE = (0.003, 0.015)

DEFAULT_MODEL_MAPPINGS = MappingProxyType({
    (ProviderType.CLAUDE, GenerationMode.FAST): "claude-3-5-haiku-20241022",
    (ProviderType.CLAUDE, GenerationMode.STANDARD): "claude-sonnet-4-20250514",
    (ProviderType.CLAUDE, GenerationMode.HIGH_QUALITY): "claude-opus-4-20250514",
    (ProviderType.OPENAI, GenerationMode.FAST): "gpt-4o-mini",
    (ProviderType.OPENAI, GenerationMode.STANDARD): "gpt-4o",
    (ProviderType.OPENAI, GenerationMode.HIGH_QUALITY): "o1-preview",
    (ProviderType.GEMINI, GenerationMode.FAST): "gemini-1.5-flash",
    (ProviderType.GEMINI, GenerationMode.STANDARD): "gemini-1.5-pro",
    (ProviderType.GEMINI, GenerationMode.HIGH_QUALITY): "gemini-1.5-pro",
    (ProviderType.QWEN, GenerationMode.FAST): "qwen-turbo",
    (ProviderType.QWEN, GenerationMode.STANDARD): "qwen-plus",
    (ProviderType.QWEN, GenerationMode.HIGH_QUALITY): "qwen-max",
})

DEFAULT_PROVIDER_MODELS = MappingProxyType({
    ProviderType.CLAUDE: "claude-sonnet-4-20250514",
    ProviderType.OPENAI: "gpt-4o",
    ProviderType.GEMINI: "gemini-1.5-pro",
    ProviderType.QWEN: "qwen-plus",
})

# USD per 1K tokens: (input, output)
DEFAULT_PRICING = MappingProxyType({
    "claude-3-5-haiku-20241022": (0.00025, 0.00125),
    "claude-3-haiku-20240307": (0.00025, 0.00125),
    "claude-3-5-sonnet-20241022": (0.003, 0.015),
    "claude-3-sonnet-20240229": (0.003, 0.015),
    "claude-sonnet-4-20250514": (0.003, 0.015),
    "claude-3-opus-20240229": (0.015, 0.075),
    "claude-opus-4-20250514": (0.015, 0.075),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.005, 0.015),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4": (0.03, 0.06),
    "gpt-3.5-turbo": (0.0005, 0.0015),
    "o1-preview": (0.015, 0.06),
    "o1-mini": (0.003, 0.012),
    "gemini-1.5-pro": (0.0035, 0.0105),
    "gemini-1.5-flash": (0.00035, 0.00105),
    "gemini-pro": (0.00025, 0.0005),
})

AVAILABLE_MODES = (
    ModeInfo(
        mode=GenerationMode.FAST,
        name="Quick Draft",
        description="Fast generation using economical models. Best for drafts and exploration.",
        recommended_for="First drafts, brainstorming, experimentation",
        estimated_time="30-60 seconds",
        cost_indicator=1,
    ),
    ModeInfo(
        mode=GenerationMode.STANDARD,
        name="Standard",
        description="Balanced quality and speed using mid-tier models. Good for most chapters.",
        recommended_for="Regular chapter writing, dialogue, descriptions",
        estimated_time="1-2 minutes",
        cost_indicator=3,
    ),
    ModeInfo(
        mode=GenerationMode.HIGH_QUALITY,
        name="Premium",
        description="Highest quality using top-tier models with refinement pass. Best for important chapters.",
        recommended_for="Opening chapters, climactic scenes, final drafts",
        estimated_time="3-5 minutes",
        cost_indicator=5,
    ),
)


def _frozen(mapping: Optional[Mapping], default: Mapping) -> Mapping:
    return MappingProxyType(dict(default if mapping is None else mapping))


@dataclass(frozen=True)
class ModelCatalog:
    """Immutable model and pricing tables, injected into selector and estimator."""

    model_mappings: Mapping[tuple[ProviderType, GenerationMode], str] = field(
        default_factory=lambda: DEFAULT_MODEL_MAPPINGS
    )
    provider_defaults: Mapping[ProviderType, str] = field(
        default_factory=lambda: DEFAULT_PROVIDER_MODELS
    )
    pricing: Mapping[str, tuple[float, float]] = field(default_factory=lambda: DEFAULT_PRICING)
    fallback_model: str = FALLBACK_MODEL
    default_price: tuple[float, float] = DEFAULT_PRICE

    def __post_init__(self):
        object.__setattr__(self, "model_mappings", _frozen(self.model_mappings, {}))
        object.__setattr__(self, "provider_defaults", _frozen(self.provider_defaults, {}))
        object.__setattr__(
            self, "pricing", MappingProxyType({k.lower(): v for k, v in self.pricing.items()})
        )

    def with_overrides(
        self,
        model_mappings: Optional[Mapping] = None,
        provider_defaults: Optional[Mapping] = None,
        pricing: Optional[Mapping] = None,
    ) -> "ModelCatalog":
        """Return a new catalog with entries merged over this one."""
        return ModelCatalog(
            model_mappings={**self.model_mappings, **(model_mappings or {})},
            provider_defaults={**self.provider_defaults, **(provider_defaults or {})},
            pricing={**self.pricing, **(pricing or {})},
            fallback_model=self.fallback_model,
            default_price=self.default_price,
        )


class ModelSelector:
    def __init__(self, catalog: Optional[ModelCatalog] = None):
        self.catalog = catalog or ModelCatalog()

    def select(self, provider_type: ProviderType, mode: GenerationMode) -> str:
        """Resolve a model id; unknown pairs fall back to the provider default."""
        key = (ProviderType(provider_type), GenerationMode(mode))
        model = self.catalog.model_mappings.get(key)
        if model:
            return model
        return self.catalog.provider_defaults.get(key[0], self.catalog.fallback_model)


def max_output_tokens_for(target_words: int) -> int:
    return int(target_words * TOKENS_PER_WORD * OUTPUT_SAFETY_MULTIPLIER)


class CostEstimator:
    def __init__(self, catalog: Optional[ModelCatalog] = None):
        self.catalog = catalog or ModelCatalog()

    def price_for(self, model: str) -> tuple[float, float]:
        return self.catalog.pricing.get((model or "").lower(), self.catalog.default_price)

    def calculate(self, model: str, usage: TokenUsage) -> float:
        input_price, output_price = self.price_for(model)
        return (usage.input_tokens / 1000.0) * input_price + (
            usage.output_tokens / 1000.0
        ) * output_price

    def estimate(
        self,
        context: GenerationContext,
        mode: GenerationMode,
        model: str,
        target_words: Optional[int] = None,
    ) -> CostEstimate:
        """Estimate one chapter generation before any call is made."""
        words = target_words if target_words is not None else context.target_words
        input_tokens = context.total_tokens
        output_tokens = int(words * TOKENS_PER_WORD)
        if mode == GenerationMode.HIGH_QUALITY:
            input_tokens = int(input_tokens * PREMIUM_INPUT_MULTIPLIER)
            output_tokens = int(output_tokens * PREMIUM_OUTPUT_MULTIPLIER)

        input_price, output_price = self.price_for(model)
        return CostEstimate(
            model=model,
            mode=GenerationMode(mode),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            input_cost=(input_tokens / 1000.0) * input_price,
            output_cost=(output_tokens / 1000.0) * output_price,
        )

    @staticmethod
    def available_modes() -> tuple[ModeInfo, ...]:
        return AVAILABLE_MODES

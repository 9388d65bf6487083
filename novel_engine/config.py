import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .models.context import ContextOptions
from .models.generation import GenerationMode
from .models.session import GenerationOptions
from .pricing import ModelCatalog
from .providers.base import ProviderType

API_KEY_ENV = {
    ProviderType.CLAUDE: "ANTHROPIC_API_KEY",
    ProviderType.OPENAI: "OPENAI_API_KEY",
    ProviderType.GEMINI: "GEMINI_API_KEY",
    ProviderType.QWEN: "DASHSCOPE_API_KEY",
}

class GenerationSettings(BaseModel):
    mode: GenerationMode = Field(default=GenerationMode.STANDARD)
    provider: ProviderType = Field(default=ProviderType.CLAUDE)
    model: Optional[str] = Field(default=None)
    temperature: float = Field(default=0.7, ge=0, le=2)
    refinement_temperature: float = Field(default=0.4, ge=0, le=2)
    revision_temperature: float = Field(default=0.6, ge=0, le=2)
    max_attempts: int = Field(default=3, gt=0)
    min_quality_score: float = Field(default=70, ge=0, le=100)
    approval_threshold: float = Field(default=60, ge=0, le=100)
    auto_fix: bool = Field(default=True)
    auto_approve: bool = Field(default=True)
    max_revision_instructions: int = Field(default=5, gt=0)
    continuity_context_tokens: int = Field(default=600, gt=0)
    model_review: bool = Field(default=True)

class ContextSettings(BaseModel):
    preset: Literal["default", "minimal", "comprehensive"] = Field(default="default")
    max_total_tokens: Optional[int] = Field(default=None, gt=0)

    def to_options(self, model_id: Optional[str] = None) -> ContextOptions:
        overrides = {"model_id": model_id}
        if self.max_total_tokens:
            overrides["max_total_tokens"] = self.max_total_tokens
        return ContextOptions.preset(self.preset, **overrides)

class ProviderSettings(BaseModel):
    anthropic_api_key: str = Field(default="")
    openai_api_key: str = Field(default="")
    openai_base_url: Optional[str] = Field(default=None)
    gemini_api_key: str = Field(default="")
    qwen_api_key: str = Field(default="")
    qwen_base_url: str = Field(default="https://dashscope-intl.aliyuncs.com/compatible-mode/v1")
    timeout_seconds: float = Field(default=120.0, gt=0)

    def api_key_for(self, provider: ProviderType) -> str:
        """Configured key, falling back to the provider's environment variable."""
        configured = {
            ProviderType.CLAUDE: self.anthropic_api_key,
            ProviderType.OPENAI: self.openai_api_key,
            ProviderType.GEMINI: self.gemini_api_key,
            ProviderType.QWEN: self.qwen_api_key,
        }[ProviderType(provider)]
        return configured or os.environ.get(API_KEY_ENV[ProviderType(provider)], "")

class CatalogSettings(BaseModel):
    # provider -> mode -> model id
    models: dict[ProviderType, dict[GenerationMode, str]] = Field(default_factory=dict)
    provider_defaults: dict[ProviderType, str] = Field(default_factory=dict)
    # model id -> [input, output] USD per 1K tokens
    pricing: dict[str, tuple[float, float]] = Field(default_factory=dict)

    def build_catalog(self) -> ModelCatalog:
        mappings = {
            (provider, mode): model
            for provider, by_mode in self.models.items()
            for mode, model in by_mode.items()
        }
        return ModelCatalog().with_overrides(
            model_mappings=mappings,
            provider_defaults=self.provider_defaults,
            pricing=self.pricing,
        )

class Config(BaseModel):
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        return cls(**(data or {}))

    def to_yaml(self, path: Path):
        with open(path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)

    def generation_options(self, **overrides) -> GenerationOptions:
        """Session options seeded from the generation and context settings."""
        values = dict(
            mode=self.generation.mode,
            provider=self.generation.provider,
            model=self.generation.model,
            temperature=self.generation.temperature,
            auto_approve=self.generation.auto_approve,
            context_preset=self.context.preset,
            max_context_tokens=self.context.max_total_tokens,
        )
        values.update(overrides)
        return GenerationOptions(**values)

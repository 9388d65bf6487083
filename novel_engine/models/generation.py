"""Records produced by the generation executor and cost estimator."""

from dataclasses import dataclass
from enum import Enum


class GenerationMode(str, Enum):
    FAST = "fast"
    STANDARD = "standard"
    HIGH_QUALITY = "high_quality"
    CUSTOM = "custom"


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class PassUsage:
    """Usage billed by one completed provider call."""
    pass_name: str
    model: str
    usage: TokenUsage
    cost: float


@dataclass(frozen=True)
class GenerationResult:
    content: str
    word_count: int
    model: str
    mode: GenerationMode
    usage: TokenUsage
    cost: float
    passes: tuple[PassUsage, ...] = ()
    refined: bool = False
    finish_reason: str | None = None
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class CostEstimate:
    model: str
    mode: GenerationMode
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    chapter_number: int | None = None

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost


@dataclass(frozen=True)
class ModeInfo:
    mode: GenerationMode
    name: str
    description: str
    recommended_for: str
    estimated_time: str
    cost_indicator: int

"""Quality evaluation records."""

from dataclasses import dataclass, field
from enum import Enum

from .blueprint import CharacterProfile, ChapterPlan, StyleGuide


class QualityDimension(str, Enum):
    NARRATIVE = "narrative"
    CHARACTER = "character"
    PLOT = "plot"
    STYLE = "style"
    PACING = "pacing"
    DIALOGUE = "dialogue"


DIMENSION_WEIGHTS = {
    QualityDimension.NARRATIVE: 1.0,
    QualityDimension.CHARACTER: 1.2,
    QualityDimension.PLOT: 1.3,
    QualityDimension.STYLE: 1.0,
    QualityDimension.PACING: 0.9,
    QualityDimension.DIALOGUE: 0.8,
}


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    SUGGESTION = "suggestion"

    @property
    def weight(self) -> int:
        return {"critical": 4, "major": 3, "minor": 2, "suggestion": 1}[self.value]


class QualityVerdict(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    NEEDS_WORK = "needs_work"
    REGENERATE = "regenerate"

    @classmethod
    def from_score(cls, score: float) -> "QualityVerdict":
        if score >= 90:
            return cls.EXCELLENT
        if score >= 75:
            return cls.GOOD
        if score >= 60:
            return cls.ACCEPTABLE
        if score >= 40:
            return cls.NEEDS_WORK
        return cls.REGENERATE


@dataclass(frozen=True)
class QualityIssue:
    dimension: QualityDimension
    severity: IssueSeverity
    description: str
    suggested_fix: str = ""
    position: int | None = None  # character offset in the chapter text
    excerpt: str = ""
    auto_fixable: bool = False
    fix_kind: str = ""  # mechanical fixer name when auto_fixable
    score_impact: float = 0.0


@dataclass(frozen=True)
class DimensionScore:
    dimension: QualityDimension
    score: float
    issues: tuple[QualityIssue, ...] = ()
    strengths: tuple[str, ...] = ()
    explanation: str = ""
    model_reviewed: bool = False


@dataclass(frozen=True)
class ImprovementSuggestion:
    dimension: QualityDimension
    priority: int
    suggestion: str


@dataclass(frozen=True)
class QualityReport:
    dimension_scores: tuple[DimensionScore, ...]
    overall_score: float
    verdict: QualityVerdict
    suggestions: tuple[ImprovementSuggestion, ...] = ()

    @property
    def issues(self) -> tuple[QualityIssue, ...]:
        return tuple(i for d in self.dimension_scores for i in d.issues)

    @property
    def should_auto_revise(self) -> bool:
        return self.verdict in (QualityVerdict.NEEDS_WORK, QualityVerdict.REGENERATE)

    def score_for(self, dimension: QualityDimension) -> float | None:
        for d in self.dimension_scores:
            if d.dimension == dimension:
                return d.score
        return None


@dataclass(frozen=True)
class QualityComparison:
    """Score movement between two versions of the same chapter."""
    original_score: float
    revised_score: float
    dimension_deltas: tuple[tuple[QualityDimension, float], ...] = ()

    @property
    def score_delta(self) -> float:
        return round(self.revised_score - self.original_score, 1)

    @property
    def improved(self) -> bool:
        return self.score_delta > 0

    @property
    def dimensions_improved(self) -> tuple[QualityDimension, ...]:
        return tuple(d for d, delta in self.dimension_deltas if delta > 0)

    @property
    def dimensions_declined(self) -> tuple[QualityDimension, ...]:
        return tuple(d for d, delta in self.dimension_deltas if delta < 0)

    @property
    def recommendation(self) -> str:
        if self.improved:
            return "Keep revised version"
        if self.score_delta < 0:
            return "Consider restoring the previous version"
        return "Consider further revisions"


@dataclass(frozen=True)
class RevisionInstruction:
    priority: int
    category: str  # "Critical Fix", "Improvement", "Polish"
    instruction: str
    dimension: str = ""


@dataclass(frozen=True)
class AutoFixResult:
    content: str
    fixed: tuple[QualityIssue, ...] = ()
    unresolved: tuple[QualityIssue, ...] = ()


@dataclass(frozen=True)
class QualityReference:
    """What a chapter is judged against."""
    plan: ChapterPlan
    characters: tuple[CharacterProfile, ...] = ()
    style: StyleGuide = field(default_factory=StyleGuide)
    location_names: tuple[str, ...] = ()

    @property
    def target_words(self) -> int:
        return self.plan.target_words

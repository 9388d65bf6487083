from .blueprint import (
    Blueprint,
    ChapterPlan,
    CharacterProfile,
    CharacterRole,
    LocationProfile,
    PlotArchitecture,
    PlotSetup,
    PointOfView,
    StyleGuide,
    Subplot,
    Tense,
    TrackedObjectSeed,
)
from .chapter import ChapterStatus, GeneratedChapter, RegenerationOptions
from .context import BudgetSplit, ContextOptions, GenerationContext
from .continuity import (
    CharacterStateSnapshot,
    ContinuityCheck,
    ContinuityIssue,
    ContinuityIssueType,
    ContinuityLedger,
    ContinuityReport,
    ContinuityUpdate,
    KeyEvent,
    ObjectSighting,
    PlotThreadEntry,
    TimelineEntry,
)
from .generation import (
    CostEstimate,
    GenerationMode,
    GenerationResult,
    ModeInfo,
    PassUsage,
    TokenUsage,
)
from .quality import (
    AutoFixResult,
    DimensionScore,
    IssueSeverity,
    QualityDimension,
    QualityIssue,
    QualityReference,
    QualityReport,
    QualityVerdict,
    RevisionInstruction,
)
from .session import (
    GenerationOptions,
    GenerationPhase,
    GenerationStatistics,
    SessionState,
    SessionStatus,
)

__all__ = [
    "Blueprint",
    "ChapterPlan",
    "CharacterProfile",
    "CharacterRole",
    "LocationProfile",
    "PlotArchitecture",
    "PlotSetup",
    "PointOfView",
    "StyleGuide",
    "Subplot",
    "Tense",
    "TrackedObjectSeed",
    "ChapterStatus",
    "GeneratedChapter",
    "RegenerationOptions",
    "BudgetSplit",
    "ContextOptions",
    "GenerationContext",
    "CharacterStateSnapshot",
    "ContinuityCheck",
    "ContinuityIssue",
    "ContinuityIssueType",
    "ContinuityLedger",
    "ContinuityReport",
    "ContinuityUpdate",
    "KeyEvent",
    "ObjectSighting",
    "PlotThreadEntry",
    "TimelineEntry",
    "CostEstimate",
    "GenerationMode",
    "GenerationResult",
    "ModeInfo",
    "PassUsage",
    "TokenUsage",
    "AutoFixResult",
    "DimensionScore",
    "IssueSeverity",
    "QualityDimension",
    "QualityIssue",
    "QualityReference",
    "QualityReport",
    "QualityVerdict",
    "RevisionInstruction",
    "GenerationOptions",
    "GenerationPhase",
    "GenerationStatistics",
    "SessionState",
    "SessionStatus",
]

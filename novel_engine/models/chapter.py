"""Generated chapter records."""

from dataclasses import dataclass
from enum import Enum

from .continuity import ContinuityReport, ContinuityUpdate
from .generation import TokenUsage
from .quality import QualityComparison, QualityIssue, QualityReport


class ChapterStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    GENERATING = "generating"
    GENERATED = "generated"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"
    SKIPPED = "skipped"


# a chapter in one of these states no longer blocks the next one
TERMINAL_STATUSES = frozenset({
    ChapterStatus.GENERATED,
    ChapterStatus.APPROVED,
    ChapterStatus.NEEDS_REVISION,
    ChapterStatus.NEEDS_REVIEW,
    ChapterStatus.FAILED,
    ChapterStatus.SKIPPED,
})
FINALIZED_STATUSES = frozenset({
    ChapterStatus.GENERATED,
    ChapterStatus.APPROVED,
    ChapterStatus.NEEDS_REVISION,
    ChapterStatus.NEEDS_REVIEW,
})


@dataclass(frozen=True)
class GeneratedChapter:
    number: int
    title: str = ""
    content: str = ""
    word_count: int = 0
    quality_score: float = 0.0
    issues: tuple[QualityIssue, ...] = ()
    approved: bool = False
    attempt_count: int = 0
    status: ChapterStatus = ChapterStatus.PENDING
    model: str = ""
    usage: TokenUsage = TokenUsage()
    cost: float = 0.0
    generation_seconds: float = 0.0
    summary: str = ""
    detailed_summary: str = ""
    continuity: ContinuityUpdate = ContinuityUpdate()
    quality_report: QualityReport | None = None
    continuity_report: ContinuityReport | None = None
    comparison: QualityComparison | None = None  # against the version it replaced
    error: str = ""

    @property
    def is_finalized(self) -> bool:
        return self.status in FINALIZED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class RegenerationOptions:
    instructions: str = ""
    keep_elements: tuple[str, ...] = ()
    change_elements: tuple[str, ...] = ()
    model: str | None = None
    temperature: float | None = None
    preserve_dialogue: bool = False
    preserve_key_scenes: bool = False

    def to_instructions(self) -> str:
        lines = []
        if self.instructions:
            lines.append(self.instructions)
        if self.keep_elements:
            lines.append("Keep these elements: " + "; ".join(self.keep_elements))
        if self.change_elements:
            lines.append("Change these elements: " + "; ".join(self.change_elements))
        if self.preserve_dialogue:
            lines.append("Preserve the existing dialogue lines wherever possible.")
        if self.preserve_key_scenes:
            lines.append("Preserve the key scenes of the previous draft and their order.")
        return "\n".join(lines)

    @property
    def needs_previous_draft(self) -> bool:
        return self.preserve_dialogue or self.preserve_key_scenes or bool(self.keep_elements)

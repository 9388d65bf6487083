"""Session state machine, immutable checkpoints and statistics."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..providers.base import ProviderType
from .chapter import GeneratedChapter
from .continuity import ContinuityLedger
from .generation import GenerationMode


class GenerationPhase(str, Enum):
    INITIALIZING = "initializing"
    BUILDING_CONTEXT = "building_context"
    GENERATING = "generating"
    QUALITY_CHECK = "quality_check"
    CONTINUITY_VERIFICATION = "continuity_verification"
    REVISING = "revising"
    FINALIZING = "finalizing"
    COMPLETED = "completed"


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    GENERATING = "generating"
    EVALUATING = "evaluating"
    REVISING = "revising"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.ERROR, SessionStatus.CANCELLED)

    @property
    def is_running(self) -> bool:
        return self in (SessionStatus.GENERATING, SessionStatus.EVALUATING, SessionStatus.REVISING)


_RUNNING_EXITS = {
    SessionStatus.GENERATING,
    SessionStatus.EVALUATING,
    SessionStatus.REVISING,
    SessionStatus.PAUSED,
    SessionStatus.COMPLETE,
    SessionStatus.ERROR,
    SessionStatus.CANCELLED,
}

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.NOT_STARTED: frozenset(
        {SessionStatus.GENERATING, SessionStatus.COMPLETE, SessionStatus.ERROR, SessionStatus.CANCELLED}
    ),
    SessionStatus.GENERATING: frozenset(_RUNNING_EXITS),
    SessionStatus.EVALUATING: frozenset(_RUNNING_EXITS),
    SessionStatus.REVISING: frozenset(_RUNNING_EXITS),
    # resume is the only way back to GENERATING
    SessionStatus.PAUSED: frozenset({SessionStatus.GENERATING, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETE: frozenset(),
    SessionStatus.ERROR: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in SESSION_TRANSITIONS[current]


@dataclass(frozen=True)
class GenerationOptions:
    mode: GenerationMode = GenerationMode.STANDARD
    provider: ProviderType = ProviderType.CLAUDE
    model: str | None = None
    temperature: float | None = None
    start_from_chapter: int | None = None
    end_at_chapter: int | None = None
    skip_existing_chapters: bool = True
    existing_chapters: tuple[GeneratedChapter, ...] = ()
    dry_run: bool = False
    auto_approve: bool = True
    context_preset: str = "default"
    max_context_tokens: int | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class SessionState:
    """One immutable checkpoint of a generation session."""

    session_id: str
    version: int
    status: SessionStatus
    phase: GenerationPhase
    blueprint_title: str
    options: GenerationOptions
    chapters: tuple[GeneratedChapter, ...]
    ledger: ContinuityLedger = field(default_factory=ContinuityLedger)
    current_chapter: int | None = None
    words_generated: int = 0
    cost_so_far: float = 0.0
    elapsed_seconds: float = 0.0
    issues_found: int = 0
    issues_auto_fixed: int = 0
    total_revisions: int = 0
    estimated_cost: float = 0.0
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=datetime.now)

    def chapter(self, number: int) -> GeneratedChapter | None:
        for ch in self.chapters:
            if ch.number == number:
                return ch
        return None

    @property
    def next_pending_chapter(self) -> int | None:
        for ch in self.chapters:
            if not ch.is_terminal and self._in_range(ch.number):
                return ch.number
        return None

    @property
    def finalized_chapters(self) -> tuple[GeneratedChapter, ...]:
        return tuple(ch for ch in self.chapters if ch.is_finalized)

    @property
    def last_completed_chapter(self) -> int | None:
        done = [ch.number for ch in self.chapters if ch.is_finalized]
        return max(done) if done else None

    def _in_range(self, number: int) -> bool:
        start = self.options.start_from_chapter
        end = self.options.end_at_chapter
        return (start is None or number >= start) and (end is None or number <= end)

    def chapters_in_range(self) -> tuple[GeneratedChapter, ...]:
        return tuple(ch for ch in self.chapters if self._in_range(ch.number))


@dataclass(frozen=True)
class ChapterStatistics:
    number: int
    word_count: int
    quality_score: float
    generation_seconds: float
    cost: float
    attempt_count: int
    issues_found: int
    status: str


@dataclass(frozen=True)
class GenerationStatistics:
    session_id: str
    status: SessionStatus
    total_chapters: int
    completed_chapters: int
    failed_chapters: int
    total_words: int
    target_words: int
    words_generated: int
    average_quality_score: float
    total_cost: float
    total_revisions: int
    elapsed_seconds: float
    words_per_minute: float
    cost_per_word: float
    estimated_total_cost: float
    estimated_remaining_seconds: float
    chapters: tuple[ChapterStatistics, ...] = ()

    @property
    def progress_percentage(self) -> float:
        if not self.total_chapters:
            return 0.0
        return 100.0 * self.completed_chapters / self.total_chapters

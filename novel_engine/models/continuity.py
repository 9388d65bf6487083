"""Continuity history records and the append-only ledger that holds them."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from .blueprint import Blueprint
from .quality import IssueSeverity


class ContinuityCheck(str, Enum):
    CHARACTER = "character"
    PLOT = "plot"
    TIMELINE = "timeline"
    SETTING = "setting"
    OBJECT = "object"


class ContinuityIssueType(str, Enum):
    CHARACTER_KNOWLEDGE = "character_knowledge"
    CHARACTER_BEHAVIOR = "character_behavior"
    CHARACTER_APPEARANCE = "character_appearance"
    CHARACTER_LOCATION = "character_location"
    TIMELINE_ERROR = "timeline_error"
    SETTING_INCONSISTENCY = "setting_inconsistency"
    OBJECT_TRACKING = "object_tracking"
    PLOT_CONTRADICTION = "plot_contradiction"
    DIALOGUE_INCONSISTENCY = "dialogue_inconsistency"
    TONE_SHIFT = "tone_shift"


@dataclass(frozen=True)
class ContinuityIssue:
    check: ContinuityCheck
    issue_type: ContinuityIssueType
    severity: IssueSeverity
    description: str
    chapter_number: int
    subject: str = ""  # character name, object id or thread name
    excerpt: str = ""
    suggestion: str = ""


@dataclass(frozen=True)
class ContinuityReport:
    chapter_number: int
    issues_by_check: tuple[tuple[ContinuityCheck, tuple[ContinuityIssue, ...]], ...] = ()

    def issues_for(self, check: ContinuityCheck) -> tuple[ContinuityIssue, ...]:
        for c, issues in self.issues_by_check:
            if c == check:
                return issues
        return ()

    @property
    def issues(self) -> tuple[ContinuityIssue, ...]:
        return tuple(i for _, issues in self.issues_by_check for i in issues)

    @property
    def critical_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == IssueSeverity.CRITICAL)

    @property
    def score(self) -> int:
        critical = self.critical_count
        others = len(self.issues) - critical
        return max(0, min(100, 100 - 20 * critical - 5 * others))

    @property
    def passes(self) -> bool:
        return self.score >= 70 and self.critical_count == 0

    @property
    def is_empty(self) -> bool:
        return not self.issues


@dataclass(frozen=True)
class CharacterStateSnapshot:
    character_name: str
    chapter_number: int
    emotional_state: str = ""
    location: str = ""
    knowledge_gained: tuple[str, ...] = ()
    relationship_changes: tuple[tuple[str, str], ...] = ()
    arc_progress: str = ""
    is_alive: bool = True


@dataclass(frozen=True)
class PlotThreadEntry:
    thread: str
    chapter_number: int
    status: str = "active"  # active, resolved, dormant
    note: str = ""


@dataclass(frozen=True)
class TimelineEntry:
    chapter_number: int
    story_day: int | None = None
    is_flashback: bool = False
    note: str = ""


@dataclass(frozen=True)
class ObjectSighting:
    object_id: str
    chapter_number: int
    location: str = ""
    holder: str = ""
    moved: bool = False  # text shows the object being carried or moved
    excerpt: str = ""


@dataclass(frozen=True)
class KeyEvent:
    chapter_number: int
    description: str


@dataclass(frozen=True)
class ContinuityLedger:
    """Append-only story history; every append returns a new ledger."""

    character_states: tuple[CharacterStateSnapshot, ...] = ()
    plot_threads: tuple[PlotThreadEntry, ...] = ()
    timeline: tuple[TimelineEntry, ...] = ()
    object_sightings: tuple[ObjectSighting, ...] = ()
    key_events: tuple[KeyEvent, ...] = ()

    @classmethod
    def seeded(cls, blueprint: Blueprint) -> "ContinuityLedger":
        """Initial history from the blueprint (chapter 0 for object placements)."""
        return cls(
            plot_threads=tuple(
                PlotThreadEntry(
                    thread=s.name,
                    chapter_number=s.introduced_chapter,
                    status=s.status,
                    note=s.description,
                )
                for s in blueprint.plot.subplots
            ),
            object_sightings=tuple(
                ObjectSighting(
                    object_id=o.id,
                    chapter_number=0,
                    location=o.initial_location,
                    holder=o.holder,
                )
                for o in blueprint.tracked_objects
            ),
        )

    def append(
        self,
        character_states: Iterable[CharacterStateSnapshot] = (),
        plot_threads: Iterable[PlotThreadEntry] = (),
        timeline: Iterable[TimelineEntry] = (),
        object_sightings: Iterable[ObjectSighting] = (),
        key_events: Iterable[KeyEvent] = (),
    ) -> "ContinuityLedger":
        return ContinuityLedger(
            character_states=self.character_states + tuple(character_states),
            plot_threads=self.plot_threads + tuple(plot_threads),
            timeline=self.timeline + tuple(timeline),
            object_sightings=self.object_sightings + tuple(object_sightings),
            key_events=self.key_events + tuple(key_events),
        )

    def character_history(self, name: str) -> tuple[CharacterStateSnapshot, ...]:
        lowered = name.lower()
        return tuple(s for s in self.character_states if s.character_name.lower() == lowered)

    def latest_character_state(
        self, name: str, before_chapter: int | None = None
    ) -> CharacterStateSnapshot | None:
        history = [
            s for s in self.character_history(name)
            if before_chapter is None or s.chapter_number < before_chapter
        ]
        return history[-1] if history else None

    def known_characters(self) -> list[str]:
        seen = []
        for s in self.character_states:
            if s.character_name not in seen:
                seen.append(s.character_name)
        return seen

    def object_history(self, object_id: str) -> tuple[ObjectSighting, ...]:
        return tuple(s for s in self.object_sightings if s.object_id == object_id)

    def latest_sighting(
        self, object_id: str, before_chapter: int | None = None
    ) -> ObjectSighting | None:
        history = [
            s for s in self.object_history(object_id)
            if before_chapter is None or s.chapter_number < before_chapter
        ]
        return history[-1] if history else None

    def last_known_location(
        self, object_id: str, before_chapter: int | None = None
    ) -> str | None:
        """Where the object was last placed.

        None once a later sighting shows it being carried off to an unnamed
        place; it then travels with its holder until seen somewhere again.
        """
        for sighting in reversed(self.object_history(object_id)):
            if before_chapter is not None and sighting.chapter_number >= before_chapter:
                continue
            if sighting.location:
                return sighting.location
            if sighting.moved:
                return None
        return None

    def latest_story_day(self, before_chapter: int | None = None) -> int | None:
        for entry in reversed(self.timeline):
            if before_chapter is not None and entry.chapter_number >= before_chapter:
                continue
            if entry.story_day is not None and not entry.is_flashback:
                return entry.story_day
        return None

    def events_for(self, chapter_number: int) -> list[str]:
        return [e.description for e in self.key_events if e.chapter_number == chapter_number]

    def has_events_before(self, chapter_number: int) -> bool:
        return any(e.chapter_number < chapter_number for e in self.key_events)

    def thread_status(self) -> dict[str, PlotThreadEntry]:
        """Latest entry per plot thread."""
        latest: dict[str, PlotThreadEntry] = {}
        for entry in self.plot_threads:
            latest[entry.thread] = entry
        return latest

    def chapters_recorded(self) -> list[int]:
        return sorted({e.chapter_number for e in self.key_events} | {t.chapter_number for t in self.timeline})


@dataclass(frozen=True)
class ContinuityUpdate:
    """History entries extracted from one finalized chapter."""
    character_states: tuple[CharacterStateSnapshot, ...] = ()
    object_sightings: tuple[ObjectSighting, ...] = ()
    key_events: tuple[KeyEvent, ...] = ()
    timeline: tuple[TimelineEntry, ...] = ()
    plot_threads: tuple[PlotThreadEntry, ...] = field(default_factory=tuple)

    def apply_to(self, ledger: ContinuityLedger) -> ContinuityLedger:
        return ledger.append(
            character_states=self.character_states,
            plot_threads=self.plot_threads,
            timeline=self.timeline,
            object_sightings=self.object_sightings,
            key_events=self.key_events,
        )

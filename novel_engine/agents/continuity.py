"""Continuity verifier: checks a chapter against the story ledger and extracts its updates."""

import re
from typing import Optional

from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, field_validator

from ..control import ExecutionControl
from ..models.blueprint import Blueprint, ChapterPlan
from ..models.continuity import (
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
from ..models.quality import IssueSeverity
from ..pricing import CostEstimator
from ..providers.base import BaseProvider
from ..tokens import TokenEstimator
from ..utils.text import contains_term, split_paragraphs, split_sentences, truncate_text
from .base import BaseAgent, UsageListener

MOVEMENT = re.compile(
    r"\b(took|takes|taking|carried|carries|carrying|moved|moves|moving|brought|brings|"
    r"pocketed|grabbed|handed|hid|hides|placed|put|stole|retrieved|slipped|tucked|dropped)\b",
    re.IGNORECASE,
)
DEATH = re.compile(
    r"\b(died|dies|killed|was dead|lay dead|is dead|passed away|murdered|slain)\b",
    re.IGNORECASE,
)

RECENT_CHAPTERS = 3

_STOPWORDS = {
    "about", "after", "again", "their", "there", "these", "those", "which", "while",
    "where", "would", "could", "should", "other", "chapter", "finally", "later",
}

DEFAULT_ISSUE_TYPE = {
    ContinuityCheck.CHARACTER: ContinuityIssueType.CHARACTER_BEHAVIOR,
    ContinuityCheck.PLOT: ContinuityIssueType.PLOT_CONTRADICTION,
    ContinuityCheck.TIMELINE: ContinuityIssueType.TIMELINE_ERROR,
    ContinuityCheck.SETTING: ContinuityIssueType.SETTING_INCONSISTENCY,
    ContinuityCheck.OBJECT: ContinuityIssueType.OBJECT_TRACKING,
}

SEVERITY_ALIASES = {"high": "major", "medium": "minor", "low": "suggestion", "info": "suggestion"}

REVIEW_SYSTEM = """You are a meticulous continuity editor. Review the new chapter against the story so far for:
- Character consistency (knowledge, behavior, appearance, whereabouts)
- Plot contradictions with established events
- Timeline errors
- Setting inconsistencies
- Objects appearing where they cannot be

Return JSON with: issues (array of {check, type, severity, description, subject, excerpt, suggestion}).
check is one of character, plot, timeline, setting, object.
severity is one of critical, major, minor, suggestion.
Return an empty issues array when the chapter is consistent."""

STATES_SYSTEM = """You track character state across a novel.
For each character who appears in the chapter, report their state at the end of it.
Return JSON with: characters (array of {characterName, emotionalState, location,
knowledgeGained (array of strings), relationshipChanges (object of name -> change),
arcProgress, isAlive})."""

EVENTS_SYSTEM = """You record the key plot events of a chapter.
Return JSON with: events (array of short one-sentence strings, at most 6, in story order)."""


class ReviewedIssue(BaseModel):
    check: ContinuityCheck
    type: str = ""
    severity: IssueSeverity = IssueSeverity.MINOR
    description: str
    subject: str = ""
    excerpt: str = ""
    suggestion: str = ""

    @field_validator("check", "severity", mode="before")
    @classmethod
    def _lower(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return SEVERITY_ALIASES.get(value, value)
        return value


class ContinuityReview(BaseModel):
    issues: list[ReviewedIssue] = Field(default_factory=list)


class ExtractedState(BaseModel):
    character_name: str = Field(validation_alias=AliasChoices("character_name", "characterName", "name"))
    emotional_state: str = Field(
        default="", validation_alias=AliasChoices("emotional_state", "emotionalState", "emotion")
    )
    location: str = ""
    knowledge_gained: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("knowledge_gained", "knowledgeGained")
    )
    relationship_changes: dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("relationship_changes", "relationshipChanges")
    )
    arc_progress: str = Field(default="", validation_alias=AliasChoices("arc_progress", "arcProgress"))
    is_alive: bool = Field(default=True, validation_alias=AliasChoices("is_alive", "isAlive", "alive"))


class ExtractedStates(BaseModel):
    characters: list[ExtractedState] = Field(default_factory=list)


class ExtractedEvents(BaseModel):
    events: list[str] = Field(default_factory=list)


def _keywords(text: str) -> list[str]:
    words = re.findall(r"[A-Za-z][A-Za-z'-]{4,}", text)
    return [w for w in words if w.lower() not in _STOPWORDS]


def _first_location(sentence: str, location_names) -> str:
    for name in location_names:
        if contains_term(sentence, name):
            return name
    return ""


def _tracked_object_id(subject: str, description: str, blueprint: Blueprint) -> str:
    """Map a model's object reference (id, name or alias) to the tracked object's id."""
    wanted = subject.strip().lower()
    for obj in blueprint.tracked_objects:
        if wanted and wanted in (obj.id.lower(), *(n.lower() for n in obj.names)):
            return obj.id
    text = f"{subject} {description}"
    for obj in blueprint.tracked_objects:
        if any(contains_term(text, n) for n in obj.names) or contains_term(text, obj.id):
            return obj.id
    return ""


class ContinuityVerifier(BaseAgent):
    def __init__(
        self,
        provider: Optional[BaseProvider] = None,
        model: Optional[str] = None,
        costs: Optional[CostEstimator] = None,
        estimator: Optional[TokenEstimator] = None,
        model_review: bool = True,
    ):
        super().__init__("ContinuityVerifier", provider, model, costs, temperature=0.2, max_tokens=2048)
        self.estimator = estimator or TokenEstimator()
        self.model_review = model_review

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------

    async def verify_chapter(
        self,
        content: str,
        chapter_number: int,
        ledger: ContinuityLedger,
        blueprint: Blueprint,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> ContinuityReport:
        """Run every continuity check against the history before ``chapter_number``."""
        plan = blueprint.chapter(chapter_number) or ChapterPlan(number=chapter_number)
        found = {
            ContinuityCheck.CHARACTER: self.check_characters(content, plan, ledger, blueprint),
            ContinuityCheck.PLOT: self.check_plot(content, plan, ledger, blueprint),
            ContinuityCheck.TIMELINE: self.check_timeline(plan, ledger),
            ContinuityCheck.SETTING: self.check_setting(content, plan, blueprint),
            ContinuityCheck.OBJECT: self.check_objects(content, chapter_number, ledger, blueprint),
        }

        if self.model_review and self.uses_model and content:
            for issue in await self._review(content, plan, ledger, blueprint, control, on_usage):
                # deterministic findings already cover these objects
                if issue.check == ContinuityCheck.OBJECT and any(
                    i.subject.lower() == issue.subject.lower() for i in found[ContinuityCheck.OBJECT]
                ):
                    continue
                found[issue.check].append(issue)

        report = ContinuityReport(
            chapter_number=chapter_number,
            issues_by_check=tuple((check, tuple(issues)) for check, issues in found.items()),
        )
        if report.issues:
            logger.info(
                f"Chapter {chapter_number} continuity: {len(report.issues)} issue(s), score {report.score}"
            )
        return report

    def check_characters(
        self, content: str, plan: ChapterPlan, ledger: ContinuityLedger, blueprint: Blueprint
    ) -> list[ContinuityIssue]:
        if plan.is_flashback:
            return []
        issues = []
        for character in blueprint.characters:
            state = ledger.latest_character_state(character.name, before_chapter=plan.number)
            if state is None or state.is_alive:
                continue
            if any(contains_term(content, n) for n in character.names):
                issues.append(ContinuityIssue(
                    check=ContinuityCheck.CHARACTER,
                    issue_type=ContinuityIssueType.CHARACTER_BEHAVIOR,
                    severity=IssueSeverity.MAJOR,
                    description=(
                        f"{character.name} died in chapter {state.chapter_number} "
                        f"but appears in chapter {plan.number}"
                    ),
                    chapter_number=plan.number,
                    subject=character.name,
                    suggestion="Make the reference a memory, or remove the character.",
                ))
        return issues

    def check_plot(
        self, content: str, plan: ChapterPlan, ledger: ContinuityLedger, blueprint: Blueprint
    ) -> list[ContinuityIssue]:
        due = blueprint.plot.payoffs_due(plan.number)
        if not due and not ledger.has_events_before(plan.number):
            return []
        issues = []
        for setup in due:
            keywords = _keywords(setup.description)
            if keywords and not any(contains_term(content, k) for k in keywords):
                issues.append(ContinuityIssue(
                    check=ContinuityCheck.PLOT,
                    issue_type=ContinuityIssueType.PLOT_CONTRADICTION,
                    severity=IssueSeverity.MAJOR,
                    description=(
                        f"Setup from chapter {setup.setup_chapter} is due for payoff "
                        f"but not addressed: {setup.description}"
                    ),
                    chapter_number=plan.number,
                    subject=setup.description,
                    suggestion="Pay off the setup in this chapter.",
                ))
        return issues

    def check_timeline(self, plan: ChapterPlan, ledger: ContinuityLedger) -> list[ContinuityIssue]:
        if plan.story_day is None or plan.is_flashback:
            return []
        previous = ledger.latest_story_day(before_chapter=plan.number)
        if previous is None or plan.story_day >= previous:
            return []
        return [ContinuityIssue(
            check=ContinuityCheck.TIMELINE,
            issue_type=ContinuityIssueType.TIMELINE_ERROR,
            severity=IssueSeverity.MAJOR,
            description=(
                f"Chapter {plan.number} is set on day {plan.story_day}, "
                f"before day {previous} reached earlier"
            ),
            chapter_number=plan.number,
            suggestion="Mark the chapter as a flashback or fix the story day.",
        )]

    def check_setting(self, content: str, plan: ChapterPlan, blueprint: Blueprint) -> list[ContinuityIssue]:
        issues = []
        for name in plan.locations:
            if not contains_term(content, name):
                issues.append(ContinuityIssue(
                    check=ContinuityCheck.SETTING,
                    issue_type=ContinuityIssueType.SETTING_INCONSISTENCY,
                    severity=IssueSeverity.MINOR,
                    description=f"Planned location {name} is never mentioned",
                    chapter_number=plan.number,
                    subject=name,
                    suggestion=f"Establish the scene at {name}.",
                ))
        return issues

    def check_objects(
        self, content: str, chapter_number: int, ledger: ContinuityLedger, blueprint: Blueprint
    ) -> list[ContinuityIssue]:
        """At most one issue per tracked object seen somewhere it cannot be."""
        location_names = [loc.name for loc in blueprint.locations]
        sentences = split_sentences(content)
        issues = []
        for obj in blueprint.tracked_objects:
            known = ledger.last_known_location(obj.id, before_chapter=chapter_number)
            if not known:
                continue
            for sentence in sentences:
                if not any(contains_term(sentence, n) for n in obj.names):
                    continue
                if MOVEMENT.search(sentence):
                    # on the move from here on; later placements are expected
                    break
                if contains_term(sentence, known):
                    continue
                seen_at = _first_location(sentence, location_names)
                if seen_at and seen_at.lower() != known.lower():
                    issues.append(ContinuityIssue(
                        check=ContinuityCheck.OBJECT,
                        issue_type=ContinuityIssueType.OBJECT_TRACKING,
                        severity=IssueSeverity.MAJOR,
                        description=(
                            f"{obj.name} appears at {seen_at} but was last at {known} "
                            f"with no sign of being moved"
                        ),
                        chapter_number=chapter_number,
                        subject=obj.id,
                        excerpt=sentence[:200],
                        suggestion=f"Show how {obj.name} got to {seen_at}, or keep it at {known}.",
                    ))
                    break
        return issues

    async def _review(self, content, plan, ledger, blueprint, control, on_usage) -> list[ContinuityIssue]:
        history = self.build_continuity_context(ledger, 1500, before_chapter=plan.number)
        objects = "\n".join(f"- {obj.id}: {', '.join(obj.names)}" for obj in blueprint.tracked_objects)
        prompt = (
            f"## Story So Far\n{history or 'This is the opening of the story.'}\n\n"
            + (f"## Tracked Objects (use the id as subject)\n{objects}\n\n" if objects else "")
            + f"## Chapter {plan.number}: {plan.title}\n{truncate_text(content, 8000)}\n\n"
            f"List any continuity problems."
        )
        review = await self.call_json(
            REVIEW_SYSTEM, prompt, ContinuityReview, action="verify",
            control=control, on_usage=on_usage, list_key="issues",
        )
        if review is None:
            return []

        # plot review needs history or a due payoff to compare against
        skip_plot = not ledger.has_events_before(plan.number) and not blueprint.plot.payoffs_due(plan.number)
        issues = []
        for item in review.issues:
            if item.check == ContinuityCheck.PLOT and skip_plot:
                continue
            try:
                issue_type = ContinuityIssueType(item.type)
            except ValueError:
                issue_type = DEFAULT_ISSUE_TYPE[item.check]
            subject = item.subject
            if item.check == ContinuityCheck.OBJECT:
                subject = _tracked_object_id(item.subject, item.description, blueprint) or subject
            issues.append(ContinuityIssue(
                check=item.check,
                issue_type=issue_type,
                severity=item.severity,
                description=item.description,
                chapter_number=plan.number,
                subject=subject,
                excerpt=item.excerpt,
                suggestion=item.suggestion,
            ))
        return issues

    # ------------------------------------------------------------------
    # extraction
    # ------------------------------------------------------------------

    async def extract_character_states(
        self,
        content: str,
        chapter_number: int,
        blueprint: Blueprint,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> tuple[CharacterStateSnapshot, ...]:
        if self.uses_model and content:
            names = ", ".join(c.name for c in blueprint.characters)
            extracted = await self.call_json(
                STATES_SYSTEM,
                f"Known characters: {names}\n\n## Chapter {chapter_number}\n{truncate_text(content, 8000)}",
                ExtractedStates,
                action="extract_states",
                control=control,
                on_usage=on_usage,
                list_key="characters",
            )
            if extracted is not None and extracted.characters:
                return tuple(
                    CharacterStateSnapshot(
                        character_name=self._canonical(s.character_name, blueprint),
                        chapter_number=chapter_number,
                        emotional_state=s.emotional_state,
                        location=s.location,
                        knowledge_gained=tuple(s.knowledge_gained),
                        relationship_changes=tuple(sorted(s.relationship_changes.items())),
                        arc_progress=s.arc_progress,
                        is_alive=s.is_alive,
                    )
                    for s in extracted.characters
                    if s.character_name
                )
            logger.debug(f"Falling back to mention analysis for chapter {chapter_number} character states")
        return self._mentioned_states(content, chapter_number, blueprint)

    @staticmethod
    def _canonical(name: str, blueprint: Blueprint) -> str:
        profile = blueprint.character(name)
        return profile.name if profile else name

    def _mentioned_states(
        self, content: str, chapter_number: int, blueprint: Blueprint
    ) -> tuple[CharacterStateSnapshot, ...]:
        location_names = [loc.name for loc in blueprint.locations]
        sentences = split_sentences(content)
        states = []
        for character in blueprint.characters:
            mentions = [s for s in sentences if any(contains_term(s, n) for n in character.names)]
            if not mentions:
                continue
            location = ""
            for sentence in mentions:
                location = _first_location(sentence, location_names) or location
            alive = not any(DEATH.search(s) for s in mentions)
            states.append(CharacterStateSnapshot(
                character_name=character.name,
                chapter_number=chapter_number,
                location=location,
                is_alive=alive,
            ))
        return tuple(states)

    async def extract_key_events(
        self,
        content: str,
        chapter_number: int,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> tuple[KeyEvent, ...]:
        if self.uses_model and content:
            extracted = await self.call_json(
                EVENTS_SYSTEM,
                f"## Chapter {chapter_number}\n{truncate_text(content, 8000)}",
                ExtractedEvents,
                action="extract_events",
                control=control,
                on_usage=on_usage,
                list_key="events",
            )
            if extracted is not None and extracted.events:
                return tuple(KeyEvent(chapter_number, e.strip()) for e in extracted.events if e.strip())

        paragraphs = split_paragraphs(content)
        if not paragraphs:
            return ()
        picks = []
        for p in (paragraphs[0], paragraphs[len(paragraphs) // 2], paragraphs[-1]):
            sentences = split_sentences(p)
            if sentences and sentences[0] not in picks:
                picks.append(sentences[0])
        return tuple(KeyEvent(chapter_number, truncate_text(s, 200)) for s in picks)

    def find_object_sightings(
        self, content: str, chapter_number: int, blueprint: Blueprint
    ) -> tuple[ObjectSighting, ...]:
        """One sighting per tracked object mentioned, preferring the last placed mention."""
        location_names = [loc.name for loc in blueprint.locations]
        character_names = [(c.name, c.names) for c in blueprint.characters]
        sentences = split_sentences(content)
        sightings = []
        for obj in blueprint.tracked_objects:
            best = None
            for sentence in sentences:
                if not any(contains_term(sentence, n) for n in obj.names):
                    continue
                location = _first_location(sentence, location_names)
                moved = MOVEMENT.search(sentence) is not None
                holder = ""
                if moved:
                    holder = next(
                        (name for name, names in character_names
                         if any(contains_term(sentence, n) for n in names)),
                        "",
                    )
                candidate = ObjectSighting(
                    object_id=obj.id,
                    chapter_number=chapter_number,
                    location=location,
                    holder=holder,
                    moved=moved,
                    excerpt=sentence[:200],
                )
                # a later placement or pick-up supersedes an earlier placement
                if best is None or location or moved or not best.location:
                    best = candidate
            if best is not None:
                sightings.append(best)
        return tuple(sightings)

    def track_plot_threads(
        self, content: str, chapter_number: int, blueprint: Blueprint
    ) -> tuple[PlotThreadEntry, ...]:
        entries = []
        for subplot in blueprint.plot.subplots:
            if contains_term(content, subplot.name):
                entries.append(PlotThreadEntry(
                    thread=subplot.name,
                    chapter_number=chapter_number,
                    status="active",
                    note=f"Advanced in chapter {chapter_number}",
                ))
        return tuple(entries)

    async def extract_update(
        self,
        content: str,
        chapter_number: int,
        blueprint: Blueprint,
        summary_events: tuple[str, ...] = (),
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> ContinuityUpdate:
        """Everything a finalized chapter contributes to the ledger."""
        plan = blueprint.chapter(chapter_number) or ChapterPlan(number=chapter_number)
        states = await self.extract_character_states(content, chapter_number, blueprint, control, on_usage)
        if summary_events:
            events = tuple(KeyEvent(chapter_number, e) for e in summary_events)
        else:
            events = await self.extract_key_events(content, chapter_number, control, on_usage)
        return ContinuityUpdate(
            character_states=states,
            object_sightings=self.find_object_sightings(content, chapter_number, blueprint),
            key_events=events,
            timeline=(TimelineEntry(
                chapter_number=chapter_number,
                story_day=plan.story_day,
                is_flashback=plan.is_flashback,
                note=plan.title,
            ),),
            plot_threads=self.track_plot_threads(content, chapter_number, blueprint),
        )

    # ------------------------------------------------------------------
    # context
    # ------------------------------------------------------------------

    def build_continuity_context(
        self, ledger: ContinuityLedger, max_tokens: int, before_chapter: Optional[int] = None
    ) -> str:
        """Compact history for the next chapter's prompt."""

        def earlier(number: int) -> bool:
            return before_chapter is None or number < before_chapter

        sections = []

        chapters = sorted({e.chapter_number for e in ledger.key_events if earlier(e.chapter_number)})
        recent = chapters[-RECENT_CHAPTERS:]
        if recent:
            lines = [f"Chapter {n}: " + "; ".join(ledger.events_for(n)) for n in recent]
            sections.append("RECENT EVENTS:\n" + "\n".join(lines))

        status_lines = []
        for name in ledger.known_characters():
            state = ledger.latest_character_state(name, before_chapter=before_chapter)
            if state is None:
                continue
            parts = [p for p in (state.emotional_state, f"at {state.location}" if state.location else "") if p]
            if not state.is_alive:
                parts.append("deceased")
            status_lines.append(f"- {name}: {', '.join(parts) or 'present'}")
        if status_lines:
            sections.append("CHARACTER STATUS:\n" + "\n".join(status_lines))

        object_lines = []
        for object_id in dict.fromkeys(s.object_id for s in ledger.object_sightings):
            location = ledger.last_known_location(object_id, before_chapter=before_chapter)
            if location:
                object_lines.append(f"- {object_id}: {location}")
                continue
            sighting = ledger.latest_sighting(object_id, before_chapter=before_chapter)
            if sighting is not None and sighting.moved and sighting.holder:
                object_lines.append(f"- {object_id}: carried by {sighting.holder}")
        if object_lines:
            sections.append("OBJECTS:\n" + "\n".join(object_lines))

        latest_threads: dict[str, PlotThreadEntry] = {}
        for entry in ledger.plot_threads:
            if earlier(entry.chapter_number):
                latest_threads[entry.thread] = entry
        open_threads = [
            f"- {entry.thread}" + (f": {entry.note}" if entry.note else "")
            for entry in latest_threads.values()
            if entry.status != "resolved"
        ]
        if open_threads:
            sections.append("OPEN THREADS:\n" + "\n".join(open_threads))

        return self.estimator.truncate_to_limit("\n\n".join(sections), max_tokens)

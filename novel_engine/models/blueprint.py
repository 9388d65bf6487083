"""Blueprint data models: the approved plan chapters are generated from."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


class PointOfView(str, Enum):
    FIRST_PERSON = "first_person"
    SECOND_PERSON = "second_person"
    THIRD_PERSON_LIMITED = "third_person_limited"
    THIRD_PERSON_OMNISCIENT = "third_person_omniscient"
    MULTIPLE = "multiple"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class Tense(str, Enum):
    PAST = "past"
    PRESENT = "present"

    @property
    def label(self) -> str:
        return f"{self.value.title()} tense"


class CharacterRole(str, Enum):
    PROTAGONIST = "protagonist"
    DEUTERAGONIST = "deuteragonist"
    ANTAGONIST = "antagonist"
    LOVE_INTEREST = "love_interest"
    MENTOR = "mentor"
    SIDEKICK = "sidekick"
    CONFIDANT = "confidant"
    FOIL = "foil"
    COMIC_RELIEF = "comic_relief"
    SUPPORTING = "supporting"
    MINOR = "minor"
    NARRATOR = "narrator"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass(frozen=True)
class CharacterProfile:
    name: str
    role: CharacterRole = CharacterRole.SUPPORTING
    description: str = ""
    traits: tuple[str, ...] = ()
    goals: str = ""
    voice: str = ""
    aliases: tuple[str, ...] = ()

    @property
    def names(self) -> tuple[str, ...]:
        return (self.name,) + self.aliases


@dataclass(frozen=True)
class LocationProfile:
    name: str
    description: str = ""
    atmosphere: str = ""
    is_primary: bool = False


@dataclass(frozen=True)
class Subplot:
    name: str
    description: str = ""
    status: str = "active"  # active, resolved, dormant
    introduced_chapter: int = 1


@dataclass(frozen=True)
class PlotSetup:
    description: str
    setup_chapter: int
    payoff_chapter: int | None = None


@dataclass(frozen=True)
class PlotArchitecture:
    central_conflict: str = ""
    stakes: str = ""
    subplots: tuple[Subplot, ...] = ()
    setups: tuple[PlotSetup, ...] = ()
    plot_points: tuple[str, ...] = ()

    def active_setups(self, chapter_number: int) -> list[PlotSetup]:
        """Setups planted earlier whose payoff has not yet passed."""
        return [
            s for s in self.setups
            if s.setup_chapter < chapter_number
            and (s.payoff_chapter is None or s.payoff_chapter >= chapter_number)
        ]

    def payoffs_due(self, chapter_number: int) -> list[PlotSetup]:
        return [s for s in self.setups if s.payoff_chapter == chapter_number]


@dataclass(frozen=True)
class StyleGuide:
    voice: str = ""
    prose_style: str = ""
    dialogue_style: str = ""
    tone: str = ""
    words_to_avoid: tuple[str, ...] = ()

    @property
    def summary(self) -> str:
        parts = [p for p in (self.prose_style, self.tone) if p]
        return ", ".join(parts)


@dataclass(frozen=True)
class TrackedObjectSeed:
    id: str
    name: str
    aliases: tuple[str, ...] = ()
    initial_location: str = ""
    holder: str = ""

    @property
    def names(self) -> tuple[str, ...]:
        return (self.name,) + self.aliases


@dataclass(frozen=True)
class ChapterPlan:
    number: int
    title: str = ""
    act: int = 1
    outline: str = ""
    beats: tuple[str, ...] = ()
    pov_character: str = ""
    characters: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    target_words: int = 3000
    author_notes: str = ""
    purpose: str = ""
    pacing: str = ""
    opening_hook: str = ""
    must_include: tuple[str, ...] = ()
    must_avoid: tuple[str, ...] = ()
    end_with: str = ""
    emotional_journey: str = ""
    story_day: int | None = None
    is_flashback: bool = False


@dataclass(frozen=True)
class Blueprint:
    title: str
    premise: str = ""
    genre: str = ""
    target_audience: str = ""
    point_of_view: PointOfView = PointOfView.THIRD_PERSON_LIMITED
    tense: Tense = Tense.PAST
    target_word_count: int = 0
    chapters: tuple[ChapterPlan, ...] = ()
    characters: tuple[CharacterProfile, ...] = ()
    locations: tuple[LocationProfile, ...] = ()
    world_rules: tuple[str, ...] = ()
    plot: PlotArchitecture = field(default_factory=PlotArchitecture)
    style: StyleGuide = field(default_factory=StyleGuide)
    tracked_objects: tuple[TrackedObjectSeed, ...] = ()

    def chapter(self, number: int) -> ChapterPlan | None:
        for plan in self.chapters:
            if plan.number == number:
                return plan
        return None

    def character(self, name: str) -> CharacterProfile | None:
        lowered = name.lower()
        for c in self.characters:
            if lowered in (n.lower() for n in c.names):
                return c
        return None

    def location(self, name: str) -> LocationProfile | None:
        lowered = name.lower()
        for loc in self.locations:
            if loc.name.lower() == lowered:
                return loc
        return None

    def validate(self) -> list[str]:
        """Return the missing required fields; empty when generation can start."""
        problems = []
        if not self.title.strip():
            problems.append("title is required")
        if not self.chapters:
            problems.append("at least one chapter plan is required")
        numbers = [c.number for c in self.chapters]
        if len(numbers) != len(set(numbers)):
            problems.append("chapter numbers must be unique")
        return problems

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Blueprint":
        plot = data.get("plot") or {}
        return cls(
            title=data.get("title", ""),
            premise=data.get("premise", ""),
            genre=data.get("genre", ""),
            target_audience=data.get("target_audience", ""),
            point_of_view=PointOfView(data.get("point_of_view", PointOfView.THIRD_PERSON_LIMITED.value)),
            tense=Tense(data.get("tense", Tense.PAST.value)),
            target_word_count=data.get("target_word_count", 0),
            chapters=tuple(
                _build(ChapterPlan, c, ("beats", "characters", "locations", "must_include", "must_avoid"))
                for c in data.get("chapters", [])
            ),
            characters=tuple(
                _build(CharacterProfile, {**c, "role": CharacterRole(c.get("role", "supporting"))},
                       ("traits", "aliases"))
                for c in data.get("characters", [])
            ),
            locations=tuple(_build(LocationProfile, loc, ()) for loc in data.get("locations", [])),
            world_rules=tuple(data.get("world_rules", [])),
            plot=PlotArchitecture(
                central_conflict=plot.get("central_conflict", ""),
                stakes=plot.get("stakes", ""),
                subplots=tuple(_build(Subplot, s, ()) for s in plot.get("subplots", [])),
                setups=tuple(_build(PlotSetup, s, ()) for s in plot.get("setups", [])),
                plot_points=tuple(plot.get("plot_points", [])),
            ),
            style=_build(StyleGuide, data.get("style") or {}, ("words_to_avoid",)),
            tracked_objects=tuple(
                _build(TrackedObjectSeed, o, ("aliases",)) for o in data.get("tracked_objects", [])
            ),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Blueprint":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})


def _build(record_cls, data: dict, tuple_fields: tuple[str, ...]):
    known = record_cls.__dataclass_fields__
    kwargs = {k: v for k, v in data.items() if k in known}
    for name in tuple_fields:
        if name in kwargs:
            kwargs[name] = tuple(kwargs[name] or ())
    return record_cls(**kwargs)

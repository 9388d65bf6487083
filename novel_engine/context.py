"""Bounded, priority-ordered context assembly for one chapter."""

from dataclasses import replace
from types import MappingProxyType
from typing import Optional, Sequence

from loguru import logger

from .errors import ContextBuildError, Result
from .models.blueprint import Blueprint, ChapterPlan, CharacterProfile, CharacterRole, LocationProfile
from .models.chapter import GeneratedChapter
from .models.context import STORY_SO_FAR_HEADER, ContextOptions, GenerationContext
from .tokens import ELLIPSIS, TokenEstimator
from .utils.text import last_paragraphs

FIRST_CHAPTER_NOTE = "This is the first chapter of the book."
KEY_ROLES = (CharacterRole.PROTAGONIST, CharacterRole.ANTAGONIST)
MIN_TRUNCATED_SUMMARY_CHARS = 200
MAX_WORLD_RULES = 5


def format_character(character: CharacterProfile) -> str:
    lines = [f"**{character.name}** ({character.role.label})"]
    if character.description:
        lines.append(f"Description: {character.description}")
    if character.traits:
        lines.append(f"Traits: {', '.join(character.traits[:5])}")
    if character.goals:
        lines.append(f"Goals: {character.goals}")
    if character.voice:
        lines.append(f"Voice/Speech patterns: {character.voice}")
    return "\n".join(lines)


def format_location(location: LocationProfile) -> str:
    lines = [f"**{location.name}**"]
    if location.description:
        lines.append(f"Description: {location.description}")
    if location.atmosphere:
        lines.append(f"Atmosphere: {location.atmosphere}")
    return "\n".join(lines)


def format_summary(chapter: GeneratedChapter, fallback_chars: int = 200) -> str:
    summary = chapter.summary
    if not summary:
        content = chapter.content or ""
        summary = content[:fallback_chars] + (ELLIPSIS if len(content) > fallback_chars else "")
    title = f" ({chapter.title})" if chapter.title else ""
    return f"Chapter {chapter.number}{title}: {summary}"


class ContextAssembler:
    """Builds a GenerationContext that never exceeds ``options.max_total_tokens``."""

    def __init__(self, estimator: Optional[TokenEstimator] = None):
        self.estimator = estimator or TokenEstimator()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def assemble(
        self,
        blueprint: Blueprint,
        chapter_number: int,
        previous_chapters: Sequence[GeneratedChapter] = (),
        options: Optional[ContextOptions] = None,
        continuity_notes: str = "",
    ) -> Result[GenerationContext]:
        options = options or ContextOptions()
        if blueprint is None or not blueprint.title.strip():
            return Result.failure(ContextBuildError("Blueprint has no title", chapter_number))
        plan = blueprint.chapter(chapter_number)
        if plan is None:
            return Result.failure(
                ContextBuildError("Blueprint has no plan for this chapter", chapter_number)
            )

        base = GenerationContext(
            chapter_number=chapter_number,
            chapter_title=plan.title,
            book_title=blueprint.title,
            target_words=plan.target_words,
            metadata=self._build_metadata(blueprint),
            instructions=self._build_instructions(plan),
            max_tokens=options.max_total_tokens,
        )
        fixed_tokens = self.total_tokens(base)
        if fixed_tokens > options.max_total_tokens:
            return Result.failure(
                ContextBuildError(
                    f"Metadata and chapter instructions need {fixed_tokens} tokens, "
                    f"over the {options.max_total_tokens} token budget",
                    chapter_number,
                )
            )

        previous = sorted(
            (c for c in previous_chapters if c.number < chapter_number), key=lambda c: c.number
        )
        sections = self._first_pass(blueprint, plan, previous, options, continuity_notes,
                                    options.max_total_tokens - fixed_tokens)
        context = self._finish(replace(base, **sections), options)

        if context.total_tokens > options.max_total_tokens:
            logger.debug(
                f"Chapter {chapter_number} context at {context.total_tokens} tokens, "
                f"optimizing to {options.max_total_tokens}"
            )
            context = self.optimize(base, context, options)

        logger.debug(
            f"Assembled chapter {chapter_number} context: {context.total_tokens}/"
            f"{options.max_total_tokens} tokens, {len(context.included_characters)} characters"
        )
        return Result.success(context)

    def total_tokens(self, context: GenerationContext) -> int:
        return self.estimator.estimate(context.system_prompt) + self.estimator.estimate(
            context.user_prompt
        )

    def optimize(
        self, base: GenerationContext, full: GenerationContext, options: ContextOptions
    ) -> GenerationContext:
        """Rebuild from the fixed sections, re-adding material while it fits.

        The summary is truncated rather than dropped when it alone overflows.
        Returns a new context; ``full`` is left untouched.
        """
        budget = options.max_total_tokens
        current = base

        if full.story_so_far:
            candidate = replace(current, story_so_far=full.story_so_far)
            if self.total_tokens(candidate) <= budget:
                current = candidate
            else:
                allowed_chars = int((budget - self.total_tokens(current)) * 4 * 0.8)
                # the section header and its separators share the same room
                allowed_chars -= len(STORY_SO_FAR_HEADER) + 2
                if allowed_chars > MIN_TRUNCATED_SUMMARY_CHARS:
                    truncated = self.estimator.truncate_to_limit(
                        full.story_so_far, allowed_chars // 4
                    )
                    candidate = replace(current, story_so_far=truncated)
                    if self.total_tokens(candidate) <= budget:
                        current = candidate

        excerpts: list[str] = []
        names: list[str] = []
        for name, excerpt in zip(full.included_characters, full.character_excerpts):
            candidate = replace(
                current,
                character_excerpts=tuple(excerpts + [excerpt]),
                included_characters=tuple(names + [name]),
            )
            if self.total_tokens(candidate) > budget:
                break
            excerpts.append(excerpt)
            names.append(name)
            current = candidate

        locations: list[str] = []
        for excerpt in full.location_excerpts:
            candidate = replace(current, location_excerpts=tuple(locations + [excerpt]))
            if self.total_tokens(candidate) > budget:
                break
            locations.append(excerpt)
            current = candidate

        for field_name in ("continuity_notes", "plot_excerpt", "style_excerpt"):
            value = getattr(full, field_name)
            if not value:
                continue
            candidate = replace(current, **{field_name: value})
            if self.total_tokens(candidate) <= budget:
                current = candidate

        return self._finish(replace(current, optimized=True), options)

    # ------------------------------------------------------------------
    # first pass
    # ------------------------------------------------------------------

    def _first_pass(
        self,
        blueprint: Blueprint,
        plan: ChapterPlan,
        previous: list[GeneratedChapter],
        options: ContextOptions,
        continuity_notes: str,
        remaining: int,
    ) -> dict:
        sections: dict = {}

        if options.include_characters:
            candidates = [(c.name, format_character(c)) for c in self._select_characters(blueprint, plan, options)]
            taken, used = self._take([text for _, text in candidates], options.cap("characters"), remaining)
            remaining -= used
            sections["character_excerpts"] = tuple(taken)
            sections["included_characters"] = tuple(name for name, _ in candidates[: len(taken)])

        if options.include_locations:
            candidates = [format_location(loc) for loc in self._select_locations(blueprint, plan, options)]
            rules = list(blueprint.world_rules[:MAX_WORLD_RULES])
            if rules:
                candidates.append("World rules:\n" + "\n".join(f"- {r}" for r in rules))
            taken, used = self._take(candidates, options.cap("locations"), remaining)
            remaining -= used
            sections["location_excerpts"] = tuple(taken)

        if options.include_previous_summary:
            story, notes, used = self._narrative(previous, options, continuity_notes, remaining)
            remaining -= used
            sections["story_so_far"] = story
            sections["continuity_notes"] = notes

        if options.include_plot:
            taken, used = self._take(self._plot_lines(blueprint, plan, options), options.cap("plot"), remaining)
            remaining -= used
            sections["plot_excerpt"] = "\n".join(taken)

        if options.include_style:
            style = self._style_block(blueprint)
            taken, used = self._take([style] if style else [], options.cap("style"), remaining)
            remaining -= used
            sections["style_excerpt"] = "\n".join(taken)

        return sections

    def _take(self, candidates: list[str], cap: int, remaining: int) -> tuple[list[str], int]:
        """Take candidates in order until the first one that does not fit."""
        taken: list[str] = []
        used = 0
        limit = min(cap, remaining)
        for text in candidates:
            cost = self.estimator.estimate(text) + 1  # separator
            if used + cost > limit:
                break
            taken.append(text)
            used += cost
        return taken, used

    def _narrative(
        self,
        previous: list[GeneratedChapter],
        options: ContextOptions,
        continuity_notes: str,
        remaining: int,
    ) -> tuple[str, str, int]:
        if not previous:
            cost = self.estimator.estimate(FIRST_CHAPTER_NOTE) + 1
            if cost > min(options.cap("narrative"), remaining):
                return "", "", 0
            return FIRST_CHAPTER_NOTE, "", cost

        cap = min(options.cap("narrative"), remaining)
        candidates: list[tuple[str, str]] = [
            ("summary", format_summary(ch, options.summary_fallback_chars)) for ch in reversed(previous)
        ]
        ending = last_paragraphs(previous[-1].content, options.closing_paragraphs)
        if ending:
            candidates.append(("ending", "LAST CHAPTER ENDED WITH:\n" + ending))
        if continuity_notes:
            notes = self.estimator.truncate_to_limit(continuity_notes, max(1, cap // 2))
            candidates.append(("notes", notes))

        summaries: list[str] = []
        ending_text = ""
        notes_text = ""
        used = 0
        for kind, text in candidates:
            cost = self.estimator.estimate(text) + 1
            if used + cost > cap:
                break
            used += cost
            if kind == "summary":
                summaries.append(text)
            elif kind == "ending":
                ending_text = text
            else:
                notes_text = text

        parts = list(reversed(summaries))
        if ending_text:
            parts.append(ending_text)
        return "\n\n".join(parts), notes_text, used

    # ------------------------------------------------------------------
    # candidate selection
    # ------------------------------------------------------------------

    def _select_characters(
        self, blueprint: Blueprint, plan: ChapterPlan, options: ContextOptions
    ) -> list[CharacterProfile]:
        selected: list[CharacterProfile] = []

        def add(character: Optional[CharacterProfile]) -> None:
            if character is not None and character not in selected and len(selected) < options.max_characters:
                selected.append(character)

        if plan.pov_character:
            pov = blueprint.character(plan.pov_character)
            if pov is None:
                logger.debug(f"POV character {plan.pov_character!r} has no profile")
            add(pov)
        for name in plan.characters:
            add(blueprint.character(name))
        key = [c for c in blueprint.characters if c.role in KEY_ROLES]
        for character in key[: options.max_key_characters]:
            add(character)
        return selected

    def _select_locations(
        self, blueprint: Blueprint, plan: ChapterPlan, options: ContextOptions
    ) -> list[LocationProfile]:
        selected: list[LocationProfile] = []
        for name in plan.locations:
            loc = blueprint.location(name)
            if loc is not None and loc not in selected:
                selected.append(loc)
        for loc in blueprint.locations:
            if loc.is_primary and loc not in selected:
                selected.append(loc)
        return selected[: options.max_locations]

    def _plot_lines(self, blueprint: Blueprint, plan: ChapterPlan, options: ContextOptions) -> list[str]:
        plot = blueprint.plot
        lines = []
        if plot.central_conflict:
            lines.append(f"Central conflict: {plot.central_conflict}")
        if plot.stakes:
            lines.append(f"Stakes: {plot.stakes}")
        for setup in plot.payoffs_due(plan.number):
            lines.append(f"Pay off now (set up in chapter {setup.setup_chapter}): {setup.description}")
        active = [
            s for s in plot.subplots
            if s.status == "active" and s.introduced_chapter <= plan.number
        ]
        for subplot in active[: options.max_subplots]:
            lines.append(f"Active subplot - {subplot.name}: {subplot.description}")
        for setup in plot.active_setups(plan.number):
            if setup.payoff_chapter != plan.number:
                lines.append(f"Open setup (chapter {setup.setup_chapter}): {setup.description}")
        return lines

    @staticmethod
    def _style_block(blueprint: Blueprint) -> str:
        style = blueprint.style
        lines = []
        if style.voice:
            lines.append(f"Voice: {style.voice}")
        if style.prose_style:
            lines.append(f"Prose: {style.prose_style}")
        if style.dialogue_style:
            lines.append(f"Dialogue: {style.dialogue_style}")
        if style.tone:
            lines.append(f"Tone: {style.tone}")
        if style.words_to_avoid:
            lines.append(f"Avoid: {', '.join(style.words_to_avoid)}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # fixed sections
    # ------------------------------------------------------------------

    @staticmethod
    def _build_metadata(blueprint: Blueprint) -> str:
        lines = ["## BOOK INFORMATION", f"- Title: {blueprint.title}", f"- Genre: {blueprint.genre or 'General fiction'}"]
        if blueprint.target_audience:
            lines.append(f"- Target Audience: {blueprint.target_audience}")
        lines.append(f"- Point of View: {blueprint.point_of_view.label}")
        lines.append(f"- Tense: {blueprint.tense.label}")
        if blueprint.style.summary:
            lines.append(f"- Writing Style: {blueprint.style.summary}")
        return "\n".join(lines) + "\n"

    @staticmethod
    def _build_instructions(plan: ChapterPlan) -> str:
        parts = []
        outline = [plan.outline] if plan.outline else []
        outline += [f"- {beat}" for beat in plan.beats]
        if outline:
            parts.append("## CHAPTER OUTLINE/BEATS\n" + "\n".join(outline) + "\n")

        goals = []
        if plan.pov_character:
            goals.append(f"POV character: {plan.pov_character}")
        if plan.purpose:
            goals.append(f"Purpose: {plan.purpose}")
        if plan.pacing:
            goals.append(f"Pacing: {plan.pacing}")
        if plan.opening_hook:
            goals.append(f"Opening hook: {plan.opening_hook}")
        if plan.must_include:
            goals.append("MUST include:\n" + "\n".join(f"✓ {item}" for item in plan.must_include))
        if plan.must_avoid:
            goals.append("MUST avoid:\n" + "\n".join(f"✗ {item}" for item in plan.must_avoid))
        if plan.end_with:
            goals.append(f"End the chapter with: {plan.end_with}")
        if plan.emotional_journey:
            goals.append(f"Emotional journey: {plan.emotional_journey}")
        if goals:
            parts.append("## CHAPTER INSTRUCTIONS\n" + "\n".join(goals) + "\n")

        if plan.author_notes:
            parts.append("## AUTHOR NOTES\n" + plan.author_notes + "\n")
        return "\n".join(parts)

    def _finish(self, context: GenerationContext, options: ContextOptions) -> GenerationContext:
        est = self.estimator.estimate
        ledger = {
            "metadata": est(context.metadata),
            "instructions": est(context.instructions),
            "characters": self.estimator.estimate_many(context.character_excerpts),
            "locations": self.estimator.estimate_many(context.location_excerpts),
            "narrative": est(context.story_so_far),
            "continuity": est(context.continuity_notes),
            "plot": est(context.plot_excerpt),
            "style": est(context.style_excerpt),
        }
        total = self.total_tokens(context)
        return replace(
            context,
            token_ledger=MappingProxyType(ledger),
            total_tokens=total,
            max_tokens=options.max_total_tokens,
            available_output_tokens=self.estimator.get_remaining_output_tokens(options.model_id, total),
        )


def estimate_context_tokens(context: GenerationContext, estimator: Optional[TokenEstimator] = None) -> int:
    """Token estimate of the prompts a context renders to."""
    estimator = estimator or TokenEstimator()
    return estimator.estimate(context.system_prompt) + estimator.estimate(context.user_prompt)

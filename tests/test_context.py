from dataclasses import replace

import pytest

from novel_engine.context import FIRST_CHAPTER_NOTE, ContextAssembler, estimate_context_tokens
from novel_engine.errors import ContextBuildError
from novel_engine.models.blueprint import Blueprint, ChapterPlan
from novel_engine.models.chapter import ChapterStatus, GeneratedChapter
from novel_engine.models.context import STORY_SO_FAR_HEADER, ContextOptions
from novel_engine.tokens import ELLIPSIS

from conftest import chapter_text


@pytest.fixture
def assembler():
    return ContextAssembler()


def finished(number, summary=""):
    return GeneratedChapter(
        number=number,
        title=f"Night {number}",
        content=chapter_text(number),
        summary=summary or f"Mara keeps watch on night {number}.",
        status=ChapterStatus.APPROVED,
    )


class TestAssemble:
    def test_first_chapter(self, assembler, blueprint):
        result = assembler.assemble(blueprint, 1)
        assert result.ok
        context = result.value
        assert context.story_so_far == FIRST_CHAPTER_NOTE
        assert "Mara Quill" in context.included_characters
        assert "The Lantern Keeper" in context.system_prompt
        assert context.user_prompt.startswith('Write Chapter 1 of "The Lantern Keeper".')
        assert context.total_tokens <= context.max_tokens

    def test_pov_character_first(self, assembler, blueprint):
        context = assembler.assemble(blueprint, 2).value
        assert context.included_characters[0] == "Mara Quill"
        # antagonist is a key role, included after the planned cast
        assert context.included_characters[-1] == "Silas Crane"

    def test_previous_summaries_and_ending(self, assembler, blueprint):
        previous = [finished(1), finished(2)]
        context = assembler.assemble(blueprint, 3, previous).value
        assert "Chapter 1 (Night 1): Mara keeps watch on night 1." in context.story_so_far
        assert "Chapter 2 (Night 2)" in context.story_so_far
        assert "LAST CHAPTER ENDED WITH:" in context.story_so_far
        assert context.story_so_far.index("Chapter 1") < context.story_so_far.index("Chapter 2")

    def test_later_chapters_are_ignored(self, assembler, blueprint):
        context = assembler.assemble(blueprint, 2, [finished(1), finished(3)]).value
        assert "Chapter 3" not in context.story_so_far

    def test_summary_falls_back_to_content(self, assembler, blueprint):
        chapter = replace(finished(1), summary="")
        context = assembler.assemble(blueprint, 2, [chapter]).value
        assert "Mara Quill climbed the spiral stairs" in context.story_so_far

    def test_continuity_notes_included(self, assembler, blueprint):
        context = assembler.assemble(
            blueprint, 2, [finished(1)], continuity_notes="OBJECTS:\n- lantern: Harbor Lighthouse"
        ).value
        assert "lantern: Harbor Lighthouse" in context.continuity_notes
        assert "## CONTINUITY NOTES" in context.system_prompt

    def test_style_and_plot_sections(self, assembler, blueprint):
        context = assembler.assemble(blueprint, 1).value
        assert "Avoid: suddenly" in context.style_excerpt
        assert "Central conflict" in context.plot_excerpt
        assert "Active subplot - Smuggler Ring" in context.plot_excerpt

    def test_token_ledger(self, assembler, blueprint):
        context = assembler.assemble(blueprint, 1).value
        assert set(context.token_ledger) >= {"metadata", "instructions", "characters", "narrative"}
        assert context.total_tokens == estimate_context_tokens(context)
        with pytest.raises(TypeError):
            context.token_ledger["metadata"] = 0

    def test_minimal_preset_drops_locations(self, assembler, blueprint):
        context = assembler.assemble(blueprint, 1, options=ContextOptions.minimal()).value
        assert context.location_excerpts == ()
        assert context.max_tokens == 2000


class TestFailures:
    def test_missing_chapter_plan(self, assembler, blueprint):
        result = assembler.assemble(blueprint, 99)
        assert not result.ok
        assert isinstance(result.error, ContextBuildError)
        assert result.error.chapter_number == 99

    def test_missing_title(self, assembler):
        result = assembler.assemble(Blueprint(title="", chapters=(ChapterPlan(number=1),)), 1)
        assert isinstance(result.error, ContextBuildError)

    def test_fixed_sections_over_budget(self, assembler, blueprint):
        result = assembler.assemble(blueprint, 1, options=ContextOptions(max_total_tokens=50))
        assert not result.ok
        assert "token budget" in result.error.message


class TestBudget:
    @pytest.mark.parametrize("budget", [700, 900, 1200, 2000])
    def test_never_exceeds_budget(self, assembler, blueprint, budget):
        previous = [finished(n, summary="A long recap. " * 40) for n in (1, 2, 3)]
        result = assembler.assemble(
            blueprint, 4, previous, ContextOptions(max_total_tokens=budget), "NOTES " * 300
        )
        assert result.ok
        assert result.value.total_tokens <= budget

    def test_optimize_keeps_fixed_sections(self, assembler, blueprint):
        base = assembler.assemble(blueprint, 1, options=ContextOptions(
            include_characters=False, include_locations=False, include_previous_summary=False,
            include_plot=False, include_style=False,
        )).value
        full = assembler.assemble(blueprint, 1).value
        optimized = assembler.optimize(base, full, ContextOptions(max_total_tokens=base.total_tokens + 5))
        assert optimized.optimized
        assert optimized.instructions == full.instructions
        assert optimized.total_tokens <= base.total_tokens + 5

    def test_tight_budget_truncates_summary_with_its_header(self, assembler, blueprint):
        previous = [finished(n, summary="A long recap. " * 40) for n in (1, 2, 3)]
        base = assembler.assemble(blueprint, 4, previous, ContextOptions(
            include_characters=False, include_locations=False, include_previous_summary=False,
            include_plot=False, include_style=False,
        )).value
        full = assembler.assemble(blueprint, 4, previous).value
        budget = base.total_tokens + 70
        optimized = assembler.optimize(base, full, ContextOptions(max_total_tokens=budget))
        assert optimized.story_so_far.endswith(ELLIPSIS)
        assert STORY_SO_FAR_HEADER + optimized.story_so_far in optimized.system_prompt
        assert len(STORY_SO_FAR_HEADER) + len(optimized.story_so_far) + 2 <= int(70 * 4 * 0.8)
        assert optimized.total_tokens <= budget

    def test_more_budget_never_means_less_context(self, assembler, blueprint):
        previous = [finished(n) for n in (1, 2, 3)]
        small = assembler.assemble(blueprint, 4, previous, ContextOptions(max_total_tokens=900)).value
        large = assembler.assemble(blueprint, 4, previous, ContextOptions(max_total_tokens=8000)).value
        assert len(large.included_characters) >= len(small.included_characters)
        assert len(large.story_so_far) >= len(small.story_so_far)

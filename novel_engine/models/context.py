"""Generation context: the bounded prompt material for one chapter attempt."""

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping

from ..tokens import TokenEstimator

SYSTEM_PREAMBLE = (
    "You are an expert fiction writer with decades of experience crafting compelling narratives.\n\n"
    "Your task is to write a chapter for a novel with the following specifications:\n"
)

WRITING_GUIDELINES = (
    "## WRITING GUIDELINES\n"
    "1. Write vivid, sensory prose that immerses the reader\n"
    "2. Balance dialogue, action, and description appropriately\n"
    "3. Maintain consistent character voices and personalities\n"
    "4. Show don't tell - use actions and details to convey emotion\n"
    "5. End the chapter with appropriate tension or closure based on story position\n"
    "6. Use scene breaks (marked with ***) when shifting time or location significantly\n"
)

STORY_SO_FAR_HEADER = "## STORY SO FAR\n"


@dataclass(frozen=True)
class BudgetSplit:
    """Share of the total budget each optional category may occupy."""
    narrative: float = 0.25
    characters: float = 0.15
    locations: float = 0.10
    plot: float = 0.10
    style: float = 0.05


@dataclass(frozen=True)
class ContextOptions:
    include_previous_summary: bool = True
    include_characters: bool = True
    include_locations: bool = True
    include_plot: bool = True
    include_style: bool = True
    max_total_tokens: int = 8000
    max_characters: int = 10
    max_key_characters: int = 5
    max_locations: int = 5
    max_subplots: int = 3
    summary_fallback_chars: int = 200
    closing_paragraphs: int = 2
    budget: BudgetSplit = field(default_factory=BudgetSplit)
    model_id: str | None = None

    def cap(self, category: str) -> int:
        return int(self.max_total_tokens * getattr(self.budget, category))

    @classmethod
    def default(cls, **overrides) -> "ContextOptions":
        return cls(**overrides)

    @classmethod
    def minimal(cls, **overrides) -> "ContextOptions":
        values = dict(include_locations=False, max_total_tokens=2000)
        values.update(overrides)
        return cls(**values)

    @classmethod
    def comprehensive(cls, **overrides) -> "ContextOptions":
        values = dict(max_total_tokens=16000)
        values.update(overrides)
        return cls(**values)

    @classmethod
    def preset(cls, name: str, **overrides) -> "ContextOptions":
        builders = {"default": cls.default, "minimal": cls.minimal, "comprehensive": cls.comprehensive}
        if name not in builders:
            raise ValueError(f"Unknown context preset: {name}")
        return builders[name](**overrides)


@dataclass(frozen=True)
class GenerationContext:
    chapter_number: int
    chapter_title: str
    book_title: str
    target_words: int
    metadata: str
    instructions: str
    character_excerpts: tuple[str, ...] = ()
    included_characters: tuple[str, ...] = ()
    location_excerpts: tuple[str, ...] = ()
    story_so_far: str = ""
    continuity_notes: str = ""
    plot_excerpt: str = ""
    style_excerpt: str = ""
    additional_instructions: str = ""
    token_ledger: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    total_tokens: int = 0
    max_tokens: int = 0
    available_output_tokens: int = 0
    optimized: bool = False

    @property
    def system_prompt(self) -> str:
        parts = [SYSTEM_PREAMBLE, self.metadata]
        parts.append(
            f"## CHAPTER {self.chapter_number}\n"
            f"Target word count: approximately {self.target_words} words\n"
        )
        if self.character_excerpts:
            parts.append("## CHARACTERS\n" + "\n\n".join(self.character_excerpts) + "\n")
        if self.location_excerpts:
            parts.append("## LOCATIONS\n" + "\n\n".join(self.location_excerpts) + "\n")
        if self.story_so_far:
            parts.append(STORY_SO_FAR_HEADER + self.story_so_far + "\n")
        if self.continuity_notes:
            parts.append("## CONTINUITY NOTES\n" + self.continuity_notes + "\n")
        if self.plot_excerpt:
            parts.append("## PLOT\n" + self.plot_excerpt + "\n")
        if self.style_excerpt:
            parts.append("## STYLE GUIDE\n" + self.style_excerpt + "\n")
        parts.append(WRITING_GUIDELINES)
        return "\n".join(parts)

    @property
    def user_prompt(self) -> str:
        parts = [f'Write Chapter {self.chapter_number} of "{self.book_title}".\n']
        if self.instructions:
            parts.append(self.instructions)
        if self.additional_instructions:
            parts.append("## ADDITIONAL INSTRUCTIONS\n" + self.additional_instructions + "\n")
        parts.append(f"Write approximately {self.target_words} words. Begin the chapter now:")
        return "\n".join(parts)

    def with_additional_instructions(
        self, text: str, estimator: TokenEstimator | None = None
    ) -> "GenerationContext":
        """Return a copy carrying extra instructions, with totals recounted."""
        estimator = estimator or TokenEstimator()
        updated = replace(self, additional_instructions=text)
        total = estimator.estimate(updated.system_prompt) + estimator.estimate(updated.user_prompt)
        ledger = dict(self.token_ledger)
        ledger["additional"] = estimator.estimate(text)
        return replace(updated, total_tokens=total, token_ledger=MappingProxyType(ledger))

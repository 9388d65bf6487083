"""Chapter summarizer: brief and detailed summaries plus key events."""

from dataclasses import dataclass
from typing import Optional

from ..control import ExecutionControl
from ..models.blueprint import ChapterPlan
from ..pricing import CostEstimator
from ..providers.base import BaseProvider
from ..utils.text import split_sentences, truncate_text
from .base import BaseAgent, UsageListener

SYSTEM = "You are a precise literary assistant who writes faithful chapter summaries."

PROMPT = """Summarize this chapter:

{content}

Provide:
1. A brief 1-2 sentence summary
2. A detailed paragraph summary
3. List of 3-5 key events

Format:
BRIEF: [summary]
DETAILED: [summary]
EVENTS:
- [event 1]
- [event 2]
..."""


@dataclass(frozen=True)
class ChapterSummary:
    brief: str = ""
    detailed: str = ""
    key_events: tuple[str, ...] = ()


def parse_summary(response: str) -> ChapterSummary:
    brief, detailed, events = "", "", []
    for line in response.splitlines():
        line = line.strip()
        if line.upper().startswith("BRIEF:"):
            brief = line[6:].strip()
        elif line.upper().startswith("DETAILED:"):
            detailed = line[9:].strip()
        elif line.startswith("- "):
            events.append(line[2:].strip())
    return ChapterSummary(brief=brief, detailed=detailed or brief, key_events=tuple(e for e in events if e))


class ChapterSummarizer(BaseAgent):
    def __init__(
        self,
        provider: Optional[BaseProvider] = None,
        model: Optional[str] = None,
        costs: Optional[CostEstimator] = None,
    ):
        super().__init__("Summarizer", provider, model, costs, temperature=0.3, max_tokens=800)

    async def summarize(
        self,
        content: str,
        plan: Optional[ChapterPlan] = None,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> ChapterSummary:
        """Summarize with the model when available, else from the opening sentences."""
        if not content:
            return ChapterSummary()
        response = await self.call(
            SYSTEM, PROMPT.format(content=content[:6000]), "summarize", control=control, on_usage=on_usage
        )
        if response:
            summary = parse_summary(response)
            if summary.brief:
                return summary
        return self.fallback_summary(content)

    @staticmethod
    def fallback_summary(content: str) -> ChapterSummary:
        sentences = split_sentences(content)
        brief = truncate_text(" ".join(sentences[:2]), 200)
        return ChapterSummary(brief=brief, detailed=truncate_text(content, 1000))

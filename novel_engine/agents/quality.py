"""Quality evaluator: six scored dimensions, revision instructions and auto-fixes."""

import re
from typing import Optional, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from ..control import ExecutionControl
from ..models.quality import (
    DIMENSION_WEIGHTS,
    AutoFixResult,
    DimensionScore,
    ImprovementSuggestion,
    IssueSeverity,
    QualityComparison,
    QualityDimension,
    QualityIssue,
    QualityReference,
    QualityReport,
    QualityVerdict,
    RevisionInstruction,
)
from ..pricing import CostEstimator
from ..providers.base import BaseProvider
from ..utils.metrics import (
    avg_sentence_length,
    dialogue_ratio,
    paragraph_word_counts,
    repetition_rate,
    sentence_length_spread,
    sentence_lengths,
    unbalanced_quotes,
    vocabulary_diversity,
)
from ..utils.text import contains_term, count_words, truncate_text
from .base import BaseAgent, UsageListener

SEVERITY_PENALTY = {
    IssueSeverity.CRITICAL: 30,
    IssueSeverity.MAJOR: 15,
    IssueSeverity.MINOR: 5,
    IssueSeverity.SUGGESTION: 1,
}

DEFAULT_OVERALL_SCORE = 70.0
SUGGESTION_THRESHOLD = 80
SUGGESTION_PRIORITIES = (10, 7, 5)

# words legitimately doubled in English prose
_DOUBLING_ALLOWED = {"had", "that", "is", "very", "no", "bye", "knock", "ha"}

_DOUBLED_WORD = re.compile(r"\b(\w+)(?:\s+\1\b)+", re.IGNORECASE)
_EXTRA_SPACES = re.compile(r"(?<=\S) {2,}(?=\S)")
_SPACE_BEFORE_PUNCT = re.compile(r"(?<=\w) +([,.;:!?])")
_TRAILING_WHITESPACE = re.compile(r"[ \t]+$", re.MULTILINE)
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")

IMPROVEMENT_HINTS = {
    QualityDimension.NARRATIVE: "Tighten the narrative: vary phrasing and bring the length closer to the target.",
    QualityDimension.CHARACTER: "Keep the point-of-view character on the page and give each planned character a moment.",
    QualityDimension.PLOT: "Make sure every required plot element lands and nothing off-limits appears.",
    QualityDimension.STYLE: "Clean up the prose: remove banned words and mechanical slips.",
    QualityDimension.PACING: "Vary sentence and paragraph length to control the rhythm.",
    QualityDimension.DIALOGUE: "Balance dialogue against narration and keep quotations well formed.",
}

REVIEW_SYSTEM = """You are an experienced fiction editor reviewing a single chapter.
Score only the {dimension} of the chapter on a 0-100 scale.
Return JSON with: score (number 0-100), strengths (array of strings),
weaknesses (array of strings), explanation (string)."""

REVIEW_FOCUS = {
    QualityDimension.NARRATIVE: "narrative flow, clarity and scene construction",
    QualityDimension.CHARACTER: "characterisation, motivation and voice consistency",
    QualityDimension.PLOT: "plot progression and fulfilment of the chapter plan",
    QualityDimension.STYLE: "prose style against the style guide",
    QualityDimension.PACING: "pacing, tension and rhythm",
    QualityDimension.DIALOGUE: "dialogue naturalness and purpose",
}


class DimensionReview(BaseModel):
    score: Optional[float] = Field(default=None, ge=0, le=100)
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    explanation: str = ""


def _issue(
    dimension: QualityDimension,
    severity: IssueSeverity,
    description: str,
    suggested_fix: str = "",
    match: Optional[re.Match] = None,
    fix_kind: str = "",
) -> QualityIssue:
    return QualityIssue(
        dimension=dimension,
        severity=severity,
        description=description,
        suggested_fix=suggested_fix,
        position=match.start() if match else None,
        excerpt=match.group(0) if match else "",
        auto_fixable=bool(fix_kind),
        fix_kind=fix_kind,
        score_impact=SEVERITY_PENALTY[severity],
    )


def heuristic_score(issues: Sequence[QualityIssue]) -> float:
    penalty = sum(SEVERITY_PENALTY[i.severity] for i in issues)
    return float(max(0, min(100, 100 - penalty)))


def _doubled_words(text: str) -> list[re.Match]:
    return [m for m in _DOUBLED_WORD.finditer(text) if m.group(1).lower() not in _DOUBLING_ALLOWED]


def _fix_doubled(text: str) -> str:
    def repl(m: re.Match) -> str:
        return m.group(0) if m.group(1).lower() in _DOUBLING_ALLOWED else m.group(1)
    return _DOUBLED_WORD.sub(repl, text)


MECHANICAL_FIXERS = {
    "doubled_word": _fix_doubled,
    "extra_spaces": lambda t: _EXTRA_SPACES.sub(" ", t),
    "space_before_punctuation": lambda t: _SPACE_BEFORE_PUNCT.sub(r"\1", t),
    "trailing_whitespace": lambda t: _TRAILING_WHITESPACE.sub("", t),
    "excess_blank_lines": lambda t: _EXCESS_BLANK_LINES.sub("\n\n", t),
}


def find_mechanical_issues(text: str) -> list[QualityIssue]:
    """Defects the auto-fixer can repair without a model."""
    dim = QualityDimension.STYLE
    issues = []
    for m in _doubled_words(text):
        issues.append(_issue(dim, IssueSeverity.MINOR, f"Doubled word: '{m.group(0)}'",
                             f"Remove the repeated '{m.group(1)}'.", m, "doubled_word"))
    m = _EXTRA_SPACES.search(text)
    if m:
        issues.append(_issue(dim, IssueSeverity.SUGGESTION, "Multiple spaces between words",
                             "Collapse repeated spaces.", m, "extra_spaces"))
    m = _SPACE_BEFORE_PUNCT.search(text)
    if m:
        issues.append(_issue(dim, IssueSeverity.MINOR, "Space before punctuation",
                             "Remove the space before punctuation marks.", m, "space_before_punctuation"))
    m = _TRAILING_WHITESPACE.search(text)
    if m:
        issues.append(_issue(dim, IssueSeverity.SUGGESTION, "Trailing whitespace at line end",
                             "Strip trailing whitespace.", m, "trailing_whitespace"))
    m = _EXCESS_BLANK_LINES.search(text)
    if m:
        issues.append(_issue(dim, IssueSeverity.SUGGESTION, "More than one blank line between paragraphs",
                             "Use a single blank line between paragraphs.", m, "excess_blank_lines"))
    return issues


class QualityEvaluator(BaseAgent):
    """Scores a chapter on six weighted dimensions.

    The deterministic analysis always runs. With a configured provider each
    dimension is also reviewed by the model and the two scores are averaged.
    """

    def __init__(
        self,
        provider: Optional[BaseProvider] = None,
        model: Optional[str] = None,
        costs: Optional[CostEstimator] = None,
        model_review: bool = True,
    ):
        super().__init__("QualityEvaluator", provider, model, costs, temperature=0.3, max_tokens=1024)
        self.model_review = model_review

    # ------------------------------------------------------------------
    # dimensions
    # ------------------------------------------------------------------

    async def evaluate_narrative(self, content: str, reference: QualityReference, **kw) -> DimensionScore:
        dim = QualityDimension.NARRATIVE
        issues, strengths = [], []
        words = count_words(content)
        target = max(reference.target_words, 1)

        if words == 0:
            issues.append(_issue(dim, IssueSeverity.CRITICAL, "Chapter is empty",
                                 "Regenerate the chapter."))
        else:
            ratio = words / target
            if ratio < 0.5:
                issues.append(_issue(dim, IssueSeverity.MAJOR,
                                     f"Chapter has {words} words, far below the {target} word target",
                                     "Expand scenes with action, dialogue and sensory detail."))
            elif ratio < 0.8:
                issues.append(_issue(dim, IssueSeverity.MINOR,
                                     f"Chapter has {words} words, short of the {target} word target",
                                     "Develop the existing scenes further."))
            elif ratio > 1.5:
                issues.append(_issue(dim, IssueSeverity.MINOR,
                                     f"Chapter has {words} words, well over the {target} word target",
                                     "Cut redundant passages."))
            else:
                strengths.append("Length is close to the target")

            rate = repetition_rate(content)
            if rate > 0.15:
                issues.append(_issue(dim, IssueSeverity.MAJOR,
                                     f"Heavy phrase repetition ({rate:.0%} of 3-word sequences repeat)",
                                     "Rephrase repeated passages."))
            elif rate > 0.08:
                issues.append(_issue(dim, IssueSeverity.MINOR,
                                     f"Noticeable phrase repetition ({rate:.0%})",
                                     "Vary recurring phrasing."))

        return await self._finish(dim, content, reference, issues, strengths, **kw)

    async def evaluate_character(self, content: str, reference: QualityReference, **kw) -> DimensionScore:
        dim = QualityDimension.CHARACTER
        issues, strengths = [], []
        plan = reference.plan
        profiles = {c.name.lower(): c for c in reference.characters}

        def mentioned(name: str) -> bool:
            profile = profiles.get(name.lower())
            names = profile.names if profile else (name,)
            return any(contains_term(content, n) for n in names)

        if plan.pov_character:
            if mentioned(plan.pov_character):
                strengths.append(f"Point-of-view character {plan.pov_character} is present")
            else:
                issues.append(_issue(dim, IssueSeverity.MAJOR,
                                     f"Point-of-view character {plan.pov_character} never appears",
                                     f"Anchor the chapter in {plan.pov_character}'s perspective."))

        for name in plan.characters:
            if name == plan.pov_character:
                continue
            if not mentioned(name):
                issues.append(_issue(dim, IssueSeverity.MINOR,
                                     f"Planned character {name} does not appear",
                                     f"Give {name} a presence in the chapter."))

        return await self._finish(dim, content, reference, issues, strengths, **kw)

    async def evaluate_plot(self, content: str, reference: QualityReference, **kw) -> DimensionScore:
        dim = QualityDimension.PLOT
        issues, strengths = [], []
        plan = reference.plan

        for element in plan.must_include:
            if element.lower() not in content.lower():
                issues.append(_issue(dim, IssueSeverity.MAJOR,
                                     f"Required element missing: {element}",
                                     f"Include {element}."))
        for element in plan.must_avoid:
            idx = content.lower().find(element.lower())
            if idx >= 0:
                issues.append(QualityIssue(
                    dimension=dim,
                    severity=IssueSeverity.MAJOR,
                    description=f"Chapter contains an element it must avoid: {element}",
                    suggested_fix=f"Remove {element}.",
                    position=idx,
                    excerpt=content[idx:idx + len(element)],
                    score_impact=SEVERITY_PENALTY[IssueSeverity.MAJOR],
                ))
        if plan.must_include and not issues:
            strengths.append("All required plot elements are present")

        return await self._finish(dim, content, reference, issues, strengths, **kw)

    async def evaluate_style(self, content: str, reference: QualityReference, **kw) -> DimensionScore:
        dim = QualityDimension.STYLE
        issues, strengths = [], []

        for word in reference.style.words_to_avoid:
            m = re.search(rf"\b{re.escape(word)}\b", content, re.IGNORECASE)
            if m:
                issues.append(_issue(dim, IssueSeverity.MINOR,
                                     f"Uses a word the style guide avoids: '{word}'",
                                     f"Replace '{word}'.", m))

        issues.extend(find_mechanical_issues(content))

        if count_words(content) >= 200:
            diversity = vocabulary_diversity(content)
            if diversity < 0.2:
                issues.append(_issue(dim, IssueSeverity.MINOR,
                                     f"Limited vocabulary (type-token ratio {diversity:.2f})",
                                     "Use more varied word choice."))
        if not issues:
            strengths.append("Clean prose with no mechanical defects")

        return await self._finish(dim, content, reference, issues, strengths, **kw)

    async def evaluate_pacing(self, content: str, reference: QualityReference, **kw) -> DimensionScore:
        dim = QualityDimension.PACING
        issues, strengths = [], []

        if len(sentence_lengths(content)) >= 10 and sentence_length_spread(content) < 3:
            issues.append(_issue(dim, IssueSeverity.MINOR, "Sentence lengths are monotonous",
                                 "Mix short, punchy sentences with longer ones."))
        avg = avg_sentence_length(content)
        if avg > 30:
            issues.append(_issue(dim, IssueSeverity.MINOR,
                                 f"Long average sentence length ({avg:.0f} words)",
                                 "Break up long sentences."))
        if any(n > 250 for n in paragraph_word_counts(content)):
            issues.append(_issue(dim, IssueSeverity.MINOR, "Contains very dense paragraphs",
                                 "Split long paragraphs at beats or shifts in focus."))
        if content and not issues:
            strengths.append("Varied rhythm")

        return await self._finish(dim, content, reference, issues, strengths, **kw)

    async def evaluate_dialogue(self, content: str, reference: QualityReference, **kw) -> DimensionScore:
        dim = QualityDimension.DIALOGUE
        issues, strengths = [], []

        if unbalanced_quotes(content):
            issues.append(_issue(dim, IssueSeverity.MAJOR, "Unbalanced quotation marks",
                                 "Close every opened quotation."))
        ratio = dialogue_ratio(content)
        if ratio == 0 and len(reference.plan.characters) >= 2 and count_words(content) > 300:
            issues.append(_issue(dim, IssueSeverity.SUGGESTION,
                                 "No dialogue in a chapter with several characters",
                                 "Let the characters speak to each other."))
        elif ratio > 0.8:
            issues.append(_issue(dim, IssueSeverity.MINOR, "Chapter is almost entirely dialogue",
                                 "Ground the dialogue with action and setting."))
        elif ratio > 0:
            strengths.append("Dialogue is balanced with narration")

        return await self._finish(dim, content, reference, issues, strengths, **kw)

    async def _finish(
        self,
        dimension: QualityDimension,
        content: str,
        reference: QualityReference,
        issues: list[QualityIssue],
        strengths: list[str],
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> DimensionScore:
        score = heuristic_score(issues)
        explanation = ""
        reviewed = False

        if self.model_review and self.uses_model and content:
            review = await self._review(dimension, content, reference, control, on_usage)
            if review is not None and review.score is not None:
                score = round((score + review.score) / 2, 1)
                strengths.extend(review.strengths)
                issues.extend(
                    QualityIssue(
                        dimension=dimension,
                        severity=IssueSeverity.MINOR,
                        description=w,
                        score_impact=SEVERITY_PENALTY[IssueSeverity.MINOR],
                    )
                    for w in review.weaknesses
                )
                explanation = review.explanation
                reviewed = True
            elif review is not None:
                logger.warning(f"Model review of {dimension.value} returned no score; keeping heuristic score")

        return DimensionScore(
            dimension=dimension,
            score=score,
            issues=tuple(issues),
            strengths=tuple(strengths),
            explanation=explanation,
            model_reviewed=reviewed,
        )

    async def _review(self, dimension, content, reference, control, on_usage) -> Optional[DimensionReview]:
        plan = reference.plan
        prompt = (
            f"## Chapter Plan\nChapter {plan.number}: {plan.title}\n{plan.outline}\n"
            f"POV: {plan.pov_character or 'unspecified'}\n"
            f"Style: {reference.style.summary or 'unspecified'}\n\n"
            f"## Focus\n{REVIEW_FOCUS[dimension]}\n\n"
            f"## Chapter Text\n{truncate_text(content, 6000)}"
        )
        return await self.call_json(
            REVIEW_SYSTEM.format(dimension=dimension.value),
            prompt,
            DimensionReview,
            action=f"review_{dimension.value}",
            control=control,
            on_usage=on_usage,
        )

    # ------------------------------------------------------------------
    # report
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        content: str,
        reference: QualityReference,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> QualityReport:
        evaluators = (
            self.evaluate_narrative,
            self.evaluate_character,
            self.evaluate_plot,
            self.evaluate_style,
            self.evaluate_pacing,
            self.evaluate_dialogue,
        )
        scores = []
        for evaluator in evaluators:
            if control is not None:
                control.raise_if_cancelled()
            scores.append(await evaluator(content, reference, control=control, on_usage=on_usage))

        overall = self.overall_score(scores)
        report = QualityReport(
            dimension_scores=tuple(scores),
            overall_score=overall,
            verdict=QualityVerdict.from_score(overall),
            suggestions=self._suggestions(scores),
        )
        logger.debug(
            f"Chapter {reference.plan.number} quality {overall} ({report.verdict.value}), "
            f"{len(report.issues)} issue(s)"
        )
        return report

    @staticmethod
    def overall_score(scores: Sequence[DimensionScore]) -> float:
        if not scores:
            return DEFAULT_OVERALL_SCORE
        total_weight = sum(DIMENSION_WEIGHTS[s.dimension] for s in scores)
        weighted = sum(s.score * DIMENSION_WEIGHTS[s.dimension] for s in scores)
        return round(weighted / total_weight, 1)

    @staticmethod
    def compare(before: QualityReport, after: QualityReport) -> QualityComparison:
        """Per-dimension score deltas from ``before`` to ``after``."""
        deltas = []
        for scored in after.dimension_scores:
            previous = before.score_for(scored.dimension)
            if previous is not None:
                deltas.append((scored.dimension, round(scored.score - previous, 1)))
        return QualityComparison(
            original_score=before.overall_score,
            revised_score=after.overall_score,
            dimension_deltas=tuple(deltas),
        )

    @staticmethod
    def _suggestions(scores: Sequence[DimensionScore]) -> tuple[ImprovementSuggestion, ...]:
        weakest = sorted((s for s in scores if s.score < SUGGESTION_THRESHOLD), key=lambda s: s.score)
        suggestions = []
        for priority, s in zip(SUGGESTION_PRIORITIES, weakest):
            fixes = [i.suggested_fix for i in s.issues if i.suggested_fix]
            text = fixes[0] if fixes else IMPROVEMENT_HINTS[s.dimension]
            suggestions.append(ImprovementSuggestion(dimension=s.dimension, priority=priority, suggestion=text))
        return tuple(suggestions)

    def generate_revision_instructions(
        self, report: QualityReport, max_count: int = 5
    ) -> list[RevisionInstruction]:
        """Rank the report's issues into at most ``max_count`` instructions.

        Mechanical issues are left to ``auto_fix``. When no issue qualifies
        the improvement suggestions are used instead.
        """
        candidates = [i for i in report.issues if not i.auto_fixable]
        ranked = sorted(
            candidates,
            key=lambda i: i.severity.weight * max(i.score_impact, 1),
            reverse=True,
        )
        instructions = []
        for issue in ranked[:max_count]:
            if issue.severity == IssueSeverity.CRITICAL:
                category = "Critical Fix"
            elif issue.severity == IssueSeverity.MAJOR:
                category = "Improvement"
            else:
                category = "Polish"
            instructions.append(
                RevisionInstruction(
                    priority=int(issue.severity.weight * max(issue.score_impact, 1)),
                    category=category,
                    instruction=issue.suggested_fix or issue.description,
                    dimension=issue.dimension.value,
                )
            )
        if not instructions:
            instructions = [
                RevisionInstruction(
                    priority=s.priority,
                    category="Polish",
                    instruction=s.suggestion,
                    dimension=s.dimension.value,
                )
                for s in report.suggestions[:max_count]
            ]
        return instructions

    def rescore(self, report: QualityReport, fixed: Sequence[QualityIssue]) -> QualityReport:
        """Report with ``fixed`` issues removed and their penalties refunded."""
        if not fixed:
            return report
        fixed_ids = {id(i) for i in fixed}
        scores = []
        for s in report.dimension_scores:
            refunded = [i for i in s.issues if id(i) in fixed_ids]
            if not refunded:
                scores.append(s)
                continue
            refund = sum(SEVERITY_PENALTY[i.severity] for i in refunded)
            if s.model_reviewed:
                refund /= 2
            scores.append(DimensionScore(
                dimension=s.dimension,
                score=min(100.0, s.score + refund),
                issues=tuple(i for i in s.issues if id(i) not in fixed_ids),
                strengths=s.strengths,
                explanation=s.explanation,
                model_reviewed=s.model_reviewed,
            ))
        overall = self.overall_score(scores)
        return QualityReport(
            dimension_scores=tuple(scores),
            overall_score=overall,
            verdict=QualityVerdict.from_score(overall),
            suggestions=self._suggestions(scores),
        )

    def auto_fix(self, content: str, issues: Sequence[QualityIssue]) -> AutoFixResult:
        """Apply mechanical fixes; every issue not fixed is returned as unresolved."""
        fixed, unresolved = [], []
        applied = set()
        for issue in issues:
            fixer = MECHANICAL_FIXERS.get(issue.fix_kind) if issue.auto_fixable else None
            if fixer is None:
                unresolved.append(issue)
                continue
            if issue.fix_kind not in applied:
                content = fixer(content)
                applied.add(issue.fix_kind)
            fixed.append(issue)
        if fixed:
            logger.debug(f"Auto-fixed {len(fixed)} issue(s): {', '.join(sorted(applied))}")
        return AutoFixResult(content=content, fixed=tuple(fixed), unresolved=tuple(unresolved))

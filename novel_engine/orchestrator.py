"""Session orchestration: chapter-by-chapter generation with review, revision and checkpoints."""

import asyncio
import time
import uuid
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from loguru import logger

from .agents.continuity import ContinuityVerifier
from .agents.quality import QualityEvaluator
from .agents.summarizer import ChapterSummarizer
from .config import Config, GenerationSettings
from .context import ContextAssembler
from .control import ControlSignal, ExecutionControl, OperationCancelled, PauseRequested
from .errors import (
    ConfigurationError,
    ContextBuildError,
    EngineError,
    GenerationError,
    Result,
    SessionError,
)
from .events import EventChannel, EventKind, ProgressEvent
from .executor import GenerationExecutor
from .models.blueprint import Blueprint, ChapterPlan
from .models.chapter import ChapterStatus, GeneratedChapter, RegenerationOptions
from .models.context import ContextOptions, GenerationContext
from .models.continuity import ContinuityLedger, ContinuityReport
from .models.generation import CostEstimate, GenerationMode, PassUsage, TokenUsage
from .models.quality import IssueSeverity, QualityReference, QualityReport, RevisionInstruction
from .models.session import (
    ChapterStatistics,
    GenerationOptions,
    GenerationPhase,
    GenerationStatistics,
    SessionState,
    SessionStatus,
    can_transition,
)
from .pricing import CostEstimator, ModelSelector
from .providers.factory import ProviderFactory
from .tokens import TokenEstimator
from .utils.logger import session_logger
from .utils.text import count_words, truncate_text

PREVIOUS_DRAFT_CHARS = 6000

_CONTINUITY_PRIORITY = {
    IssueSeverity.CRITICAL: 12,
    IssueSeverity.MAJOR: 9,
    IssueSeverity.MINOR: 4,
    IssueSeverity.SUGGESTION: 1,
}


class CheckpointStore(Protocol):
    def save(self, state: SessionState) -> None: ...

    def load(self, session_id: str) -> Optional[SessionState]: ...


class InMemoryCheckpointStore:
    """Keeps every checkpoint of every session in process memory."""

    def __init__(self):
        self._history: dict[str, list[SessionState]] = {}

    def save(self, state: SessionState) -> None:
        self._history.setdefault(state.session_id, []).append(state)

    def load(self, session_id: str) -> Optional[SessionState]:
        history = self._history.get(session_id)
        return history[-1] if history else None

    def history(self, session_id: str) -> tuple[SessionState, ...]:
        return tuple(self._history.get(session_id, ()))


def _in_range(options: GenerationOptions, number: int) -> bool:
    start, end = options.start_from_chapter, options.end_at_chapter
    return (start is None or number >= start) and (end is None or number <= end)


def rebuild_ledger(blueprint: Blueprint, chapters: Sequence[GeneratedChapter]) -> ContinuityLedger:
    """Seeded ledger plus every finalized chapter's update, in chapter order."""
    ledger = ContinuityLedger.seeded(blueprint)
    for chapter in sorted(chapters, key=lambda c: c.number):
        if chapter.is_finalized:
            ledger = chapter.continuity.apply_to(ledger)
    return ledger


class _SessionRuntime:
    """Mutable per-session bookkeeping around the immutable checkpoints."""

    def __init__(self, blueprint: Blueprint, state: SessionState, reviewers: tuple):
        self.blueprint = blueprint
        # quality, continuity and summary agents bound to this session's provider
        self.quality, self.continuity, self.summarizer = reviewers
        self.checkpoints: list[SessionState] = [state]
        self.control = ExecutionControl()
        self.task: Optional[asyncio.Task] = None
        self.busy: set[int] = set()
        self.cost_so_far = state.cost_so_far
        self.elapsed_before = state.elapsed_seconds
        self.run_started: Optional[float] = None
        self.log = session_logger(state.session_id)

    @property
    def state(self) -> SessionState:
        return self.checkpoints[-1]

    def elapsed(self) -> float:
        if self.run_started is None:
            return self.elapsed_before
        return self.elapsed_before + time.monotonic() - self.run_started


class _ChapterRun:
    """Usage and counters for one chapter attempt."""

    def __init__(self, runtime: _SessionRuntime, publish: Callable[[str], None]):
        self.runtime = runtime
        self.publish = publish
        self.started = time.monotonic()
        self.billed: list[PassUsage] = []
        self.issues_found = 0
        self.issues_fixed = 0
        self.revisions = 0

    def on_usage(self, usage: PassUsage) -> None:
        self.billed.append(usage)
        self.runtime.cost_so_far += usage.cost
        self.publish(f"{usage.pass_name} on {usage.model}: ${usage.cost:.4f}")

    @property
    def cost(self) -> float:
        return sum(p.cost for p in self.billed)

    @property
    def usage(self) -> TokenUsage:
        total = TokenUsage()
        for p in self.billed:
            total = total + p.usage
        return total

    @property
    def seconds(self) -> float:
        return round(time.monotonic() - self.started, 3)


class SessionOrchestrator:
    """Runs generation sessions over a blueprint, one chapter at a time.

    Every state change produces a new versioned ``SessionState`` checkpoint.
    Public operations return a ``Result``; pause and cancellation are
    observed at checkpoints between phases and provider calls.
    """

    def __init__(
        self,
        executor: GenerationExecutor,
        assembler: Optional[ContextAssembler] = None,
        quality: Optional[QualityEvaluator] = None,
        continuity: Optional[ContinuityVerifier] = None,
        summarizer: Optional[ChapterSummarizer] = None,
        settings: Optional[GenerationSettings] = None,
        events: Optional[EventChannel] = None,
        review_providers: Optional[ProviderFactory] = None,
        store: Optional[CheckpointStore] = None,
    ):
        self.executor = executor
        self.assembler = assembler or ContextAssembler()
        self.quality = quality or QualityEvaluator()
        self.continuity = continuity or ContinuityVerifier(estimator=self.assembler.estimator)
        self.summarizer = summarizer or ChapterSummarizer()
        self.review_providers = review_providers
        self.settings = settings or GenerationSettings()
        self.events = events or EventChannel()
        self.store = store or InMemoryCheckpointStore()
        self._sessions: dict[str, _SessionRuntime] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        providers: Optional[ProviderFactory] = None,
        events: Optional[EventChannel] = None,
        store: Optional[CheckpointStore] = None,
    ) -> "SessionOrchestrator":
        providers = providers or ProviderFactory.from_settings(config.providers)
        catalog = config.catalog.build_catalog()
        selector = ModelSelector(catalog)
        costs = CostEstimator(catalog)
        settings = config.generation
        executor = GenerationExecutor(
            providers,
            selector,
            costs,
            temperature=settings.temperature,
            refinement_temperature=settings.refinement_temperature,
            revision_temperature=settings.revision_temperature,
        )
        estimator = TokenEstimator()
        return cls(
            executor,
            assembler=ContextAssembler(estimator),
            quality=QualityEvaluator(costs=costs, model_review=settings.model_review),
            continuity=ContinuityVerifier(costs=costs, estimator=estimator, model_review=settings.model_review),
            summarizer=ChapterSummarizer(costs=costs),
            settings=settings,
            events=events,
            store=store,
            review_providers=providers if settings.model_review else None,
        )

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(
        self, blueprint: Blueprint, options: Optional[GenerationOptions] = None
    ) -> Result[SessionState]:
        options = options or GenerationOptions()
        problems = blueprint.validate()
        if problems:
            return Result.failure(ConfigurationError("Invalid blueprint: " + "; ".join(problems)))
        try:
            ContextOptions.preset(options.context_preset)
        except ValueError as e:
            return Result.failure(ConfigurationError(str(e)))
        session_id = options.session_id or uuid.uuid4().hex[:12]
        if session_id in self._sessions:
            return Result.failure(SessionError(f"Session {session_id} already exists"))

        chapters = self._initial_chapters(blueprint, options)
        estimates = self._estimate(blueprint, options, chapters)
        state = SessionState(
            session_id=session_id,
            version=1,
            status=SessionStatus.NOT_STARTED,
            phase=GenerationPhase.INITIALIZING,
            blueprint_title=blueprint.title,
            options=replace(options, session_id=session_id),
            chapters=chapters,
            ledger=rebuild_ledger(blueprint, chapters),
            estimated_cost=round(sum(e.total_cost for e in estimates), 6),
        )
        state = replace(state, current_chapter=state.next_pending_chapter)
        runtime = _SessionRuntime(blueprint, state, self._reviewers(options))
        self._sessions[session_id] = runtime
        self.store.save(state)
        runtime.log.info(
            f"Created session for '{blueprint.title}': {len(state.chapters_in_range())} chapter(s), "
            f"estimated ${state.estimated_cost:.2f}"
        )
        return Result.success(state)

    async def start(self, session_id: str) -> Result[SessionState]:
        """Schedule ``run`` in the background and return immediately."""
        try:
            runtime = self._runtime(session_id)
            self._require_startable(runtime)
        except SessionError as e:
            return Result.failure(e)
        runtime.task = asyncio.create_task(self._execute(runtime))
        return Result.success(runtime.state)

    async def run(self, session_id: str) -> Result[SessionState]:
        """Generate every pending chapter in range; returns once the session stops.

        A paused or cancelled session is a successful outcome: inspect the
        returned state's status.
        """
        try:
            runtime = self._runtime(session_id)
            self._require_startable(runtime)
        except SessionError as e:
            return Result.failure(e)
        return await self._execute(runtime)

    async def wait(self, session_id: str) -> Result[SessionState]:
        """Await a session started with ``start``."""
        try:
            runtime = self._runtime(session_id)
        except SessionError as e:
            return Result.failure(e)
        if runtime.task is not None:
            return await runtime.task
        return Result.success(runtime.state)

    def pause(self, session_id: str) -> Result[SessionState]:
        """Request a pause, honored before the next chapter starts."""
        try:
            runtime = self._runtime(session_id)
            if not runtime.state.status.is_running:
                raise SessionError(f"Cannot pause a {runtime.state.status.value} session")
        except SessionError as e:
            return Result.failure(e)
        runtime.control.request_pause()
        runtime.log.info("Pause requested")
        return Result.success(runtime.state)

    async def resume(self, session_id: str) -> Result[SessionState]:
        """Continue a paused session from its next pending chapter."""
        try:
            runtime = self._runtime(session_id)
            if runtime.state.status != SessionStatus.PAUSED:
                raise SessionError(
                    f"Only paused sessions can resume; session is {runtime.state.status.value}"
                )
            if runtime.busy:
                raise SessionError("A chapter operation is still in progress")
        except SessionError as e:
            return Result.failure(e)
        runtime.control.clear_pause()
        runtime.log.info(f"Resuming from chapter {runtime.state.next_pending_chapter}")
        self._publish(runtime, EventKind.SESSION_RESUMED, "Resuming generation")
        return await self._execute(runtime)

    def cancel(self, session_id: str) -> Result[SessionState]:
        """Cancel the session; an in-flight provider call is aborted."""
        try:
            runtime = self._runtime(session_id)
            state = runtime.state
            if state.status.is_terminal and not runtime.busy:
                raise SessionError(f"Cannot cancel a {state.status.value} session")
        except SessionError as e:
            return Result.failure(e)

        runtime.control.cancel()
        if state.status in (SessionStatus.NOT_STARTED, SessionStatus.PAUSED):
            self._transition(runtime, SessionStatus.CANCELLED)
            runtime.log.info("Session cancelled")
            self._publish(runtime, EventKind.SESSION_CANCELLED, "Generation cancelled")
        else:
            runtime.log.info("Cancellation requested")
        return Result.success(runtime.state)

    def restore(self, state: SessionState, blueprint: Blueprint) -> Result[SessionState]:
        """Register a persisted checkpoint; a session caught mid-run comes back paused."""
        if state.session_id in self._sessions:
            return Result.failure(SessionError(f"Session {state.session_id} already exists"))
        chapters = tuple(
            replace(c, status=ChapterStatus.PENDING)
            if c.status in (ChapterStatus.GENERATING, ChapterStatus.QUEUED) else c
            for c in state.chapters
        )
        restored = replace(state, chapters=chapters, ledger=rebuild_ledger(blueprint, chapters))
        if state.status.is_running:
            restored = replace(
                restored,
                version=state.version + 1,
                status=SessionStatus.PAUSED,
                current_chapter=restored.next_pending_chapter,
            )
            self.store.save(restored)
        runtime = _SessionRuntime(blueprint, restored, self._reviewers(restored.options))
        self._sessions[state.session_id] = runtime
        runtime.log.info(f"Restored session at version {restored.version} ({restored.status.value})")
        return Result.success(restored)

    def _reviewers(self, options: GenerationOptions) -> tuple:
        """Review and extraction agents for a session, on its own provider when configured."""
        agents = (self.quality, self.continuity, self.summarizer)
        if self.review_providers is None:
            return agents
        provider = self.review_providers.get(options.provider)
        # reviews and extraction use the provider's cheapest model
        model = self.executor.resolve_model(options.provider, GenerationMode.FAST)
        return tuple(agent.with_provider(provider, model) for agent in agents)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_session_state(self, session_id: str) -> Result[SessionState]:
        try:
            return Result.success(self._runtime(session_id).state)
        except SessionError as e:
            return Result.failure(e)

    def get_checkpoints(self, session_id: str) -> Result[tuple[SessionState, ...]]:
        try:
            return Result.success(tuple(self._runtime(session_id).checkpoints))
        except SessionError as e:
            return Result.failure(e)

    def get_statistics(self, session_id: str) -> Result[GenerationStatistics]:
        try:
            runtime = self._runtime(session_id)
        except SessionError as e:
            return Result.failure(e)
        state = runtime.state
        in_range = state.chapters_in_range()
        finalized = [c for c in in_range if c.is_finalized]
        failed = [c for c in in_range if c.status == ChapterStatus.FAILED]
        scored = [c.quality_score for c in finalized if c.quality_score > 0]
        elapsed = runtime.elapsed()
        words = state.words_generated
        remaining = len(in_range) - len(finalized) - len(failed)

        if finalized:
            estimated_total = state.cost_so_far / len(finalized) * len(in_range)
            remaining_seconds = elapsed / len(finalized) * remaining
        else:
            estimated_total = state.estimated_cost
            remaining_seconds = 0.0

        return Result.success(GenerationStatistics(
            session_id=state.session_id,
            status=state.status,
            total_chapters=len(in_range),
            completed_chapters=len(finalized),
            failed_chapters=len(failed),
            total_words=sum(c.word_count for c in finalized),
            target_words=self._target_words(runtime.blueprint, in_range),
            words_generated=words,
            average_quality_score=round(sum(scored) / len(scored), 1) if scored else 0.0,
            total_cost=round(state.cost_so_far, 6),
            total_revisions=state.total_revisions,
            elapsed_seconds=round(elapsed, 3),
            words_per_minute=round(words / (elapsed / 60), 1) if elapsed > 0 else 0.0,
            cost_per_word=state.cost_so_far / words if words else 0.0,
            estimated_total_cost=round(estimated_total, 6),
            estimated_remaining_seconds=round(remaining_seconds, 1),
            chapters=tuple(
                ChapterStatistics(
                    number=c.number,
                    word_count=c.word_count,
                    quality_score=c.quality_score,
                    generation_seconds=c.generation_seconds,
                    cost=c.cost,
                    attempt_count=c.attempt_count,
                    issues_found=len(c.issues) + (len(c.continuity_report.issues) if c.continuity_report else 0),
                    status=c.status.value,
                )
                for c in in_range
            ),
        ))

    def estimate_session_cost(
        self, blueprint: Blueprint, options: Optional[GenerationOptions] = None
    ) -> Result[tuple[CostEstimate, ...]]:
        """Per-chapter estimates for the chapters a session would generate."""
        options = options or GenerationOptions()
        problems = blueprint.validate()
        if problems:
            return Result.failure(ConfigurationError("Invalid blueprint: " + "; ".join(problems)))
        chapters = self._initial_chapters(blueprint, options)
        return Result.success(tuple(self._estimate(blueprint, options, chapters)))

    # ------------------------------------------------------------------
    # chapter operations
    # ------------------------------------------------------------------

    async def generate_chapter(
        self, session_id: str, chapter_number: int, instructions: str = ""
    ) -> Result[GeneratedChapter]:
        """Generate (or generate again) a single chapter outside a running session."""
        try:
            runtime = self._runtime(session_id)
        except SessionError as e:
            return Result.failure(e)

        async def operation(run: _ChapterRun) -> GeneratedChapter:
            return await self._run_chapter(runtime, chapter_number, run, extra_instructions=instructions)

        return await self._chapter_operation(runtime, chapter_number, operation)

    async def regenerate_chapter(
        self, session_id: str, chapter_number: int, options: Optional[RegenerationOptions] = None
    ) -> Result[GeneratedChapter]:
        options = options or RegenerationOptions()
        try:
            runtime = self._runtime(session_id)
        except SessionError as e:
            return Result.failure(e)

        previous = runtime.state.chapter(chapter_number)
        instructions = options.to_instructions()
        if options.needs_previous_draft and previous is not None and previous.content:
            draft = truncate_text(previous.content, PREVIOUS_DRAFT_CHARS)
            instructions = f"{instructions}\n\nPREVIOUS DRAFT (for reference):\n{draft}".strip()

        async def operation(run: _ChapterRun) -> GeneratedChapter:
            return await self._run_chapter(
                runtime,
                chapter_number,
                run,
                model_override=options.model,
                temperature=options.temperature,
                extra_instructions=instructions,
                baseline=previous.quality_report if previous is not None else None,
            )

        runtime.log.info(f"Regenerating chapter {chapter_number}")
        return await self._chapter_operation(runtime, chapter_number, operation)

    async def request_revision(
        self, session_id: str, chapter_number: int, feedback: str
    ) -> Result[GeneratedChapter]:
        """Revise a finalized chapter with author feedback, then review it again."""
        try:
            runtime = self._runtime(session_id)
            chapter = self._finalized_chapter(runtime, chapter_number)
        except SessionError as e:
            return Result.failure(e)

        async def operation(run: _ChapterRun) -> GeneratedChapter:
            options = runtime.state.options
            context = self._build_context(runtime, chapter_number)
            instruction = RevisionInstruction(priority=10, category="Author Feedback", instruction=feedback)
            revised = await self.executor.revise(
                context, chapter.content, [instruction], options.provider, options.mode,
                options.model, runtime.control, run.on_usage,
            )
            if not revised.ok:
                raise revised.error
            run.revisions += 1
            return await self._review_and_finalize(
                runtime, context, revised.value.content, revised.value.model, run,
                baseline=chapter.quality_report,
            )

        runtime.log.info(f"Revising chapter {chapter_number} from feedback")
        return await self._chapter_operation(runtime, chapter_number, operation)

    def approve_chapter(self, session_id: str, chapter_number: int) -> Result[GeneratedChapter]:
        try:
            runtime = self._runtime(session_id)
            chapter = self._finalized_chapter(runtime, chapter_number)
        except SessionError as e:
            return Result.failure(e)
        approved = replace(chapter, status=ChapterStatus.APPROVED, approved=True)
        self._set_chapter(runtime, approved)
        runtime.log.info(f"Chapter {chapter_number} approved")
        return Result.success(approved)

    def reject_chapter(
        self, session_id: str, chapter_number: int, reason: str = ""
    ) -> Result[GeneratedChapter]:
        try:
            runtime = self._runtime(session_id)
            chapter = self._finalized_chapter(runtime, chapter_number)
        except SessionError as e:
            return Result.failure(e)
        rejected = replace(chapter, status=ChapterStatus.NEEDS_REVISION, approved=False)
        note = f"Chapter {chapter_number} rejected" + (f": {reason}" if reason else "")
        self._set_chapter(runtime, rejected, warnings=runtime.state.warnings + (note,))
        runtime.log.info(note)
        return Result.success(rejected)

    # ------------------------------------------------------------------
    # run loop
    # ------------------------------------------------------------------

    async def _execute(self, runtime: _SessionRuntime) -> Result[SessionState]:
        runtime.run_started = time.monotonic()
        state = runtime.state
        self._transition(
            runtime,
            SessionStatus.GENERATING,
            phase=GenerationPhase.INITIALIZING,
            ledger=rebuild_ledger(runtime.blueprint, state.chapters),
        )
        self._publish(runtime, EventKind.SESSION_STARTED, f"Generating '{runtime.blueprint.title}'")

        try:
            if state.options.dry_run:
                self._dry_run(runtime)
            else:
                while True:
                    runtime.control.check()
                    number = runtime.state.next_pending_chapter
                    if number is None:
                        break
                    run = self._new_run(runtime)
                    try:
                        await self._run_chapter(runtime, number, run)
                    except (GenerationError, ContextBuildError) as e:
                        self._fail_chapter(runtime, number, e, run)
        except PauseRequested:
            self._stop(runtime, SessionStatus.PAUSED)
            runtime.log.info(f"Session paused; next chapter {runtime.state.current_chapter}")
            self._publish(runtime, EventKind.SESSION_PAUSED, "Generation paused")
            return Result.success(runtime.state)
        except OperationCancelled:
            self._stop(runtime, SessionStatus.CANCELLED)
            runtime.log.info("Session cancelled")
            self._publish(runtime, EventKind.SESSION_CANCELLED, "Generation cancelled")
            return Result.success(runtime.state)
        except ConfigurationError as e:
            runtime.log.error(f"Session stopped: {e}")
            self._stop(runtime, SessionStatus.ERROR, error=str(e))
            self._publish(runtime, EventKind.SESSION_FAILED, str(e))
            return Result.failure(e)
        except Exception as e:
            runtime.log.exception(f"Unexpected failure: {e}")
            error = EngineError(f"Unexpected failure: {e}")
            self._stop(runtime, SessionStatus.ERROR, error=str(error))
            self._publish(runtime, EventKind.SESSION_FAILED, str(error))
            return Result.failure(error)

        self._stop(runtime, SessionStatus.COMPLETE, phase=GenerationPhase.COMPLETED)
        state = runtime.state
        runtime.log.success(
            f"Session complete: {len(state.finalized_chapters)} chapter(s), "
            f"{state.words_generated} words, ${state.cost_so_far:.4f}"
        )
        self._publish(runtime, EventKind.SESSION_COMPLETED, "Generation complete")
        return Result.success(state)

    def _dry_run(self, runtime: _SessionRuntime) -> None:
        """Assemble contexts and price every pending chapter without calling a provider."""
        state = runtime.state
        self._transition(runtime, SessionStatus.GENERATING, phase=GenerationPhase.BUILDING_CONTEXT)
        estimates = self._estimate(runtime.blueprint, state.options, state.chapters)
        for estimate in estimates:
            runtime.log.debug(
                f"Dry run: {estimate.model} {estimate.input_tokens} in / "
                f"{estimate.output_tokens} out, ${estimate.total_cost:.4f}"
            )
        self._checkpoint(runtime, estimated_cost=round(sum(e.total_cost for e in estimates), 6))

    def _stop(self, runtime: _SessionRuntime, status: SessionStatus, error: str = "", **changes) -> None:
        state = runtime.state
        chapters = tuple(
            replace(c, status=ChapterStatus.PENDING)
            if c.status in (ChapterStatus.GENERATING, ChapterStatus.QUEUED) else c
            for c in state.chapters
        )
        pending = replace(state, chapters=chapters).next_pending_chapter
        if error:
            changes["errors"] = state.errors + (error,)
        self._transition(runtime, status, chapters=chapters, current_chapter=pending, **changes)
        runtime.elapsed_before = runtime.elapsed()
        runtime.run_started = None

    def _fail_chapter(
        self, runtime: _SessionRuntime, number: int, error: EngineError, run: _ChapterRun
    ) -> None:
        runtime.log.error(str(error))
        chapter = runtime.state.chapter(number) or GeneratedChapter(number=number)
        failed = replace(
            chapter,
            status=ChapterStatus.FAILED,
            error=error.message,
            cost=run.cost,
            usage=run.usage,
            generation_seconds=run.seconds,
        )
        self._set_chapter(runtime, failed, errors=runtime.state.errors + (str(error),))
        self._publish(runtime, EventKind.CHAPTER_FAILED, str(error))

    # ------------------------------------------------------------------
    # chapter pipeline
    # ------------------------------------------------------------------

    def _new_run(self, runtime: _SessionRuntime) -> _ChapterRun:
        return _ChapterRun(runtime, lambda text: self._publish(runtime, EventKind.USAGE, text))

    async def _chapter_operation(
        self,
        runtime: _SessionRuntime,
        number: int,
        operation: Callable[[_ChapterRun], Awaitable[GeneratedChapter]],
    ) -> Result[GeneratedChapter]:
        """Run a single-chapter operation while the session itself is idle.

        On failure or cancellation the chapter is put back as it was.
        """
        state = runtime.state
        if state.status.is_running:
            return Result.failure(SessionError("Session is running; pause it first", number))
        if number in runtime.busy:
            return Result.failure(SessionError("Chapter is busy", number))
        if runtime.blueprint.chapter(number) is None:
            return Result.failure(ContextBuildError("Blueprint has no plan for this chapter", number))

        original = state.chapter(number) or GeneratedChapter(number=number)
        runtime.busy.add(number)
        runtime.control = ExecutionControl()
        run = self._new_run(runtime)
        try:
            return Result.success(await operation(run))
        except (GenerationError, ContextBuildError, ConfigurationError) as e:
            runtime.log.error(str(e))
            self._set_chapter(runtime, original)
            return Result.failure(e)
        except ControlSignal:
            self._set_chapter(runtime, original)
            raise
        finally:
            runtime.busy.discard(number)

    def _build_context(
        self, runtime: _SessionRuntime, number: int, model_override: Optional[str] = None
    ) -> GenerationContext:
        state = runtime.state
        options = state.options
        notes = self.continuity.build_continuity_context(
            state.ledger, self.settings.continuity_context_tokens, before_chapter=number
        )
        model = self.executor.resolve_model(options.provider, options.mode, model_override or options.model)
        built = self.assembler.assemble(
            runtime.blueprint,
            number,
            state.finalized_chapters,
            self._context_options(options, model),
            notes,
        )
        if not built.ok:
            raise built.error
        return built.value

    async def _run_chapter(
        self,
        runtime: _SessionRuntime,
        number: int,
        run: _ChapterRun,
        model_override: Optional[str] = None,
        temperature: Optional[float] = None,
        extra_instructions: str = "",
        baseline: Optional[QualityReport] = None,
    ) -> GeneratedChapter:
        control = runtime.control
        options = runtime.state.options
        plan = runtime.blueprint.chapter(number)
        if plan is None:
            raise ContextBuildError("Blueprint has no plan for this chapter", number)
        model_override = model_override or options.model
        temperature = options.temperature if temperature is None else temperature

        chapter = runtime.state.chapter(number) or GeneratedChapter(number=number, title=plan.title)
        self._set_chapter(runtime, replace(chapter, status=ChapterStatus.GENERATING, error=""),
                          current_chapter=number)
        self._enter(runtime, SessionStatus.GENERATING, GenerationPhase.BUILDING_CONTEXT)
        self._publish(runtime, EventKind.CHAPTER_STARTED, f"Building context for chapter {number}")

        context = self._build_context(runtime, number, model_override)
        if extra_instructions:
            context = context.with_additional_instructions(extra_instructions, self.assembler.estimator)
        control.raise_if_cancelled()

        self._enter(runtime, SessionStatus.GENERATING, GenerationPhase.GENERATING)
        self._publish(runtime, EventKind.PHASE_CHANGED, f"Writing chapter {number}: {plan.title}")
        generated = await self.executor.generate(
            context, options.mode, options.provider, model_override, control, run.on_usage, temperature
        )
        if not generated.ok:
            raise generated.error

        return await self._review_and_finalize(
            runtime, context, generated.value.content, generated.value.model, run, model_override, baseline
        )

    async def _review_and_finalize(
        self,
        runtime: _SessionRuntime,
        context: GenerationContext,
        content: str,
        model: str,
        run: _ChapterRun,
        model_override: Optional[str] = None,
        baseline: Optional[QualityReport] = None,
    ) -> GeneratedChapter:
        """Quality and continuity review, bounded revision loop, then commit."""
        control = runtime.control
        options = runtime.state.options
        blueprint = runtime.blueprint
        number = context.chapter_number
        plan = blueprint.chapter(number) or ChapterPlan(number=number)
        reference = QualityReference(
            plan=plan,
            characters=blueprint.characters,
            style=blueprint.style,
            location_names=tuple(loc.name for loc in blueprint.locations),
        )
        attempts = 1

        while True:
            control.raise_if_cancelled()
            self._enter(runtime, SessionStatus.EVALUATING, GenerationPhase.QUALITY_CHECK)
            report = await runtime.quality.evaluate(content, reference, control, run.on_usage)
            run.issues_found += len(report.issues)
            if self.settings.auto_fix:
                fix = self.quality.auto_fix(content, report.issues)
                if fix.fixed:
                    content = fix.content
                    run.issues_fixed += len(fix.fixed)
                    report = self.quality.rescore(report, fix.fixed)

            control.raise_if_cancelled()
            self._enter(runtime, SessionStatus.EVALUATING, GenerationPhase.CONTINUITY_VERIFICATION)
            continuity = await runtime.continuity.verify_chapter(
                content, number, runtime.state.ledger, blueprint, control, run.on_usage
            )
            run.issues_found += len(continuity.issues)

            if report.overall_score >= self.settings.min_quality_score and continuity.passes:
                break
            if attempts >= self.settings.max_attempts:
                runtime.log.warning(
                    f"Chapter {number} scored {report.overall_score} after {attempts} attempt(s); "
                    f"leaving it for review"
                )
                break

            control.raise_if_cancelled()
            self._enter(runtime, SessionStatus.REVISING, GenerationPhase.REVISING)
            self._publish(runtime, EventKind.PHASE_CHANGED, f"Revising chapter {number} (attempt {attempts + 1})")
            revised = await self.executor.revise(
                context,
                content,
                self._revision_instructions(report, continuity),
                options.provider,
                options.mode,
                model_override,
                control,
                run.on_usage,
            )
            if not revised.ok:
                if isinstance(revised.error, ConfigurationError):
                    raise revised.error
                runtime.log.warning(f"Revision of chapter {number} failed, keeping current draft: {revised.error}")
                break
            content = revised.value.content
            attempts += 1
            run.revisions += 1

        control.raise_if_cancelled()
        self._enter(runtime, SessionStatus.GENERATING, GenerationPhase.FINALIZING)
        summary = await runtime.summarizer.summarize(content, plan, control, run.on_usage)
        update = await runtime.continuity.extract_update(
            content, number, blueprint, summary.key_events, control, run.on_usage
        )
        status = self._final_status(report, continuity, options.auto_approve)
        comparison = self.quality.compare(baseline, report) if baseline is not None else None

        chapter = GeneratedChapter(
            number=number,
            title=plan.title,
            content=content,
            word_count=count_words(content),
            quality_score=report.overall_score,
            issues=report.issues,
            approved=status == ChapterStatus.APPROVED,
            attempt_count=attempts,
            status=status,
            model=model,
            usage=run.usage,
            cost=run.cost,
            generation_seconds=run.seconds,
            summary=summary.brief,
            detailed_summary=summary.detailed,
            continuity=update,
            quality_report=report,
            continuity_report=continuity,
            comparison=comparison,
        )
        self._commit_chapter(runtime, chapter, run)
        runtime.log.info(
            f"Chapter {number} {status.value}: {chapter.word_count} words, "
            f"quality {chapter.quality_score}, continuity {continuity.score}, ${chapter.cost:.4f}"
        )
        if comparison is not None:
            runtime.log.info(
                f"Chapter {number} moved {comparison.score_delta:+} points: {comparison.recommendation}"
            )
        self._publish(runtime, EventKind.CHAPTER_COMPLETED, f"Chapter {number} {status.value}")
        return chapter

    def _final_status(
        self, report: QualityReport, continuity: ContinuityReport, auto_approve: bool
    ) -> ChapterStatus:
        if report.overall_score < self.settings.approval_threshold or not continuity.passes:
            return ChapterStatus.NEEDS_REVIEW
        return ChapterStatus.APPROVED if auto_approve else ChapterStatus.GENERATED

    def _revision_instructions(
        self, report: QualityReport, continuity: ContinuityReport
    ) -> list[RevisionInstruction]:
        limit = self.settings.max_revision_instructions
        instructions = self.quality.generate_revision_instructions(report, limit)
        for issue in continuity.issues:
            instructions.append(RevisionInstruction(
                priority=_CONTINUITY_PRIORITY[issue.severity],
                category="Critical Fix" if issue.severity == IssueSeverity.CRITICAL else "Continuity",
                instruction=issue.suggestion or issue.description,
                dimension=f"continuity:{issue.check.value}",
            ))
        return sorted(instructions, key=lambda i: i.priority, reverse=True)[:limit]

    # ------------------------------------------------------------------
    # checkpoints
    # ------------------------------------------------------------------

    def _runtime(self, session_id: str) -> _SessionRuntime:
        runtime = self._sessions.get(session_id)
        if runtime is None:
            raise SessionError(f"Unknown session: {session_id}")
        return runtime

    @staticmethod
    def _require_startable(runtime: _SessionRuntime) -> None:
        state = runtime.state
        if state.status != SessionStatus.NOT_STARTED:
            raise SessionError(f"Session {state.session_id} is {state.status.value}, not startable")
        if runtime.busy or (runtime.task is not None and not runtime.task.done()):
            raise SessionError(f"Session {state.session_id} is already running")

    def _finalized_chapter(self, runtime: _SessionRuntime, number: int) -> GeneratedChapter:
        chapter = runtime.state.chapter(number)
        if chapter is None or not chapter.content:
            raise SessionError("Chapter has no generated content", number)
        if number in runtime.busy or (
            runtime.state.status.is_running and runtime.state.current_chapter == number
        ):
            raise SessionError("Chapter is busy", number)
        return chapter

    def _checkpoint(self, runtime: _SessionRuntime, **changes) -> SessionState:
        current = runtime.state
        state = replace(
            current,
            version=current.version + 1,
            cost_so_far=round(runtime.cost_so_far, 6),
            elapsed_seconds=round(runtime.elapsed(), 3),
            **changes,
        )
        runtime.checkpoints.append(state)
        self.store.save(state)
        return state

    def _transition(self, runtime: _SessionRuntime, target: SessionStatus, **changes) -> SessionState:
        current = runtime.state.status
        if current != target and not can_transition(current, target):
            raise SessionError(f"Cannot move session from {current.value} to {target.value}")
        return self._checkpoint(runtime, status=target, **changes)

    def _enter(self, runtime: _SessionRuntime, status: SessionStatus, phase: GenerationPhase) -> None:
        # single-chapter operations leave the session status alone
        if runtime.state.status.is_running:
            self._transition(runtime, status, phase=phase)

    def _set_chapter(self, runtime: _SessionRuntime, chapter: GeneratedChapter, **changes) -> SessionState:
        chapters = tuple(chapter if c.number == chapter.number else c for c in runtime.state.chapters)
        return self._checkpoint(runtime, chapters=chapters, **changes)

    def _commit_chapter(self, runtime: _SessionRuntime, chapter: GeneratedChapter, run: _ChapterRun) -> None:
        state = runtime.state
        chapters = tuple(chapter if c.number == chapter.number else c for c in state.chapters)
        self._checkpoint(
            runtime,
            chapters=chapters,
            ledger=rebuild_ledger(runtime.blueprint, chapters),
            words_generated=state.words_generated + chapter.word_count,
            issues_found=state.issues_found + run.issues_found,
            issues_auto_fixed=state.issues_auto_fixed + run.issues_fixed,
            total_revisions=state.total_revisions + run.revisions,
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _initial_chapters(blueprint: Blueprint, options: GenerationOptions) -> tuple[GeneratedChapter, ...]:
        existing = {c.number: c for c in options.existing_chapters}
        chapters = []
        for plan in sorted(blueprint.chapters, key=lambda p: p.number):
            prior = existing.get(plan.number)
            if prior is not None and prior.content and options.skip_existing_chapters:
                chapters.append(prior if prior.is_finalized else replace(prior, status=ChapterStatus.GENERATED))
            else:
                chapters.append(GeneratedChapter(number=plan.number, title=plan.title))
        return tuple(chapters)

    @staticmethod
    def _context_options(options: GenerationOptions, model: str) -> ContextOptions:
        overrides = {"model_id": model}
        if options.max_context_tokens:
            overrides["max_total_tokens"] = options.max_context_tokens
        return ContextOptions.preset(options.context_preset, **overrides)

    def _estimate(
        self, blueprint: Blueprint, options: GenerationOptions, chapters: Sequence[GeneratedChapter]
    ) -> list[CostEstimate]:
        model = self.executor.resolve_model(options.provider, options.mode, options.model)
        context_options = self._context_options(options, model)
        finalized = [c for c in chapters if c.is_finalized]
        ledger = rebuild_ledger(blueprint, chapters)
        estimates = []
        for chapter in chapters:
            if chapter.is_terminal or not _in_range(options, chapter.number):
                continue
            notes = self.continuity.build_continuity_context(
                ledger, self.settings.continuity_context_tokens, before_chapter=chapter.number
            )
            built = self.assembler.assemble(blueprint, chapter.number, finalized, context_options, notes)
            if not built.ok:
                logger.warning(f"Skipping estimate: {built.error}")
                continue
            estimate = self.executor.costs.estimate(built.value, options.mode, model)
            estimates.append(replace(estimate, chapter_number=chapter.number))
        return estimates

    @staticmethod
    def _target_words(blueprint: Blueprint, chapters: Sequence[GeneratedChapter]) -> int:
        total = 0
        for c in chapters:
            plan = blueprint.chapter(c.number)
            if plan is not None:
                total += plan.target_words
        return total

    def _publish(self, runtime: _SessionRuntime, kind: EventKind, operation: str = "") -> None:
        state = runtime.state
        in_range = state.chapters_in_range()
        total = len(in_range)
        done = sum(1 for c in in_range if c.is_terminal)
        scored = [c.quality_score for c in in_range if c.is_finalized and c.quality_score > 0]
        elapsed = runtime.elapsed()
        self.events.publish(ProgressEvent(
            session_id=state.session_id,
            kind=kind,
            phase=state.phase,
            status=state.status,
            operation=operation,
            overall_percentage=round(100.0 * done / total, 1) if total else 0.0,
            phase_percentage=_PHASE_PERCENT.get(state.phase, 0.0),
            current_chapter=state.current_chapter,
            total_chapters=total,
            words_generated=state.words_generated,
            target_words=self._target_words(runtime.blueprint, in_range),
            cost_so_far=round(runtime.cost_so_far, 6),
            elapsed=round(elapsed, 3),
            estimated_remaining=round(elapsed / done * (total - done), 1) if done else None,
            average_quality=round(sum(scored) / len(scored), 1) if scored else None,
            issues_found=state.issues_found,
            issues_auto_fixed=state.issues_auto_fixed,
        ))


# progress within the current chapter by phase
_PHASE_PERCENT = {
    GenerationPhase.INITIALIZING: 0.0,
    GenerationPhase.BUILDING_CONTEXT: 5.0,
    GenerationPhase.GENERATING: 20.0,
    GenerationPhase.QUALITY_CHECK: 60.0,
    GenerationPhase.CONTINUITY_VERIFICATION: 70.0,
    GenerationPhase.REVISING: 80.0,
    GenerationPhase.FINALIZING: 90.0,
    GenerationPhase.COMPLETED: 100.0,
}

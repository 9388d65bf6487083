import asyncio

import pytest

from novel_engine.config import Config
from novel_engine.errors import ConfigurationError, GenerationError, SessionError
from novel_engine.events import EventChannel, EventKind
from novel_engine.models.blueprint import Blueprint
from novel_engine.models.chapter import ChapterStatus, GeneratedChapter, RegenerationOptions
from novel_engine.models.session import GenerationOptions, SessionStatus
from novel_engine.orchestrator import InMemoryCheckpointStore, SessionOrchestrator
from novel_engine.providers.base import ProviderType
from novel_engine.providers.factory import ProviderFactory

from conftest import FakeProvider, chapter_of, chapter_text, is_draft, story_responder


def build(provider, config=None, events=None, store=None):
    return SessionOrchestrator.from_config(
        config or Config(generation={"model_review": False}),
        providers=ProviderFactory({ProviderType.CLAUDE: provider}),
        events=events,
        store=store,
    )


def new_session(orchestrator, blueprint, **options):
    return orchestrator.create_session(blueprint, GenerationOptions(**options)).unwrap().session_id


def statuses(state):
    return [c.status for c in state.chapters]


def drafting(number):
    return lambda request: is_draft(request) and chapter_of(request) == number


class TestCreateSession:
    def test_initial_state(self, orchestrator, blueprint):
        result = orchestrator.create_session(blueprint)
        assert result.ok
        state = result.value
        assert state.version == 1
        assert state.status == SessionStatus.NOT_STARTED
        assert statuses(state) == [ChapterStatus.PENDING] * 4
        assert state.current_chapter == 1
        assert state.estimated_cost > 0
        assert state.ledger.last_known_location("lantern") == "Harbor Lighthouse"

    def test_invalid_blueprint(self, orchestrator):
        result = orchestrator.create_session(Blueprint(title=""))
        assert isinstance(result.error, ConfigurationError)

    def test_unknown_preset(self, orchestrator, blueprint):
        result = orchestrator.create_session(blueprint, GenerationOptions(context_preset="huge"))
        assert isinstance(result.error, ConfigurationError)

    def test_duplicate_session_id(self, orchestrator, blueprint):
        orchestrator.create_session(blueprint, GenerationOptions(session_id="abc"))
        result = orchestrator.create_session(blueprint, GenerationOptions(session_id="abc"))
        assert isinstance(result.error, SessionError)

    def test_unknown_session(self, orchestrator):
        assert isinstance(orchestrator.get_session_state("missing").error, SessionError)

    def test_estimate_session_cost(self, orchestrator, blueprint):
        estimates = orchestrator.estimate_session_cost(blueprint).value
        assert [e.chapter_number for e in estimates] == [1, 2, 3, 4]
        ranged = orchestrator.estimate_session_cost(blueprint, GenerationOptions(start_from_chapter=3)).value
        assert [e.chapter_number for e in ranged] == [3, 4]


class TestRun:
    @pytest.mark.asyncio
    async def test_full_run(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)
        result = await orchestrator.run(sid)
        assert result.ok
        state = result.value
        assert state.status == SessionStatus.COMPLETE
        assert statuses(state) == [ChapterStatus.APPROVED] * 4
        assert [len(provider.drafts(n)) for n in (1, 2, 3, 4)] == [1, 1, 1, 1]
        assert state.current_chapter is None
        assert state.words_generated == sum(c.word_count for c in state.chapters)

        chapter = state.chapter(2)
        assert chapter.content == chapter_text(2)
        assert chapter.quality_score == 100.0
        assert chapter.attempt_count == 1
        assert chapter.approved
        assert chapter.summary

    @pytest.mark.asyncio
    async def test_previous_chapters_feed_context(self, orchestrator, provider, blueprint):
        await orchestrator.run(new_session(orchestrator, blueprint))
        prompt = provider.drafts(3)[0].system_prompt
        assert "Chapter 1 (Night 1)" in prompt
        assert "Chapter 2 (Night 2)" in prompt
        assert "Chapter 3 (Night 3)" not in prompt

    @pytest.mark.asyncio
    async def test_start_and_wait(self, orchestrator, blueprint):
        sid = new_session(orchestrator, blueprint)
        started = await orchestrator.start(sid)
        assert started.ok
        result = await orchestrator.wait(sid)
        assert result.value.status == SessionStatus.COMPLETE
        again = await orchestrator.run(sid)
        assert isinstance(again.error, SessionError)

    @pytest.mark.asyncio
    async def test_chapter_range(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint, start_from_chapter=2, end_at_chapter=3)
        state = (await orchestrator.run(sid)).value
        assert state.status == SessionStatus.COMPLETE
        assert statuses(state) == [
            ChapterStatus.PENDING, ChapterStatus.APPROVED, ChapterStatus.APPROVED, ChapterStatus.PENDING
        ]
        assert provider.drafts(1) == [] and provider.drafts(4) == []

    @pytest.mark.asyncio
    async def test_existing_chapters_are_skipped(self, orchestrator, provider, blueprint):
        existing = GeneratedChapter(
            number=1, title="Night 1", content=chapter_text(1), status=ChapterStatus.APPROVED
        )
        sid = new_session(orchestrator, blueprint, existing_chapters=(existing,))
        state = (await orchestrator.run(sid)).value
        assert provider.drafts(1) == []
        assert state.chapter(1).content == chapter_text(1)
        assert "Chapter 1 (Night 1)" in provider.drafts(2)[0].system_prompt

    @pytest.mark.asyncio
    async def test_dry_run(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint, dry_run=True)
        state = (await orchestrator.run(sid)).value
        assert provider.calls == []
        assert state.status == SessionStatus.COMPLETE
        assert state.estimated_cost > 0
        assert state.cost_so_far == 0
        assert statuses(state) == [ChapterStatus.PENDING] * 4

    @pytest.mark.asyncio
    async def test_manual_approval(self, orchestrator, blueprint):
        sid = new_session(orchestrator, blueprint, auto_approve=False)
        state = (await orchestrator.run(sid)).value
        assert statuses(state) == [ChapterStatus.GENERATED] * 4
        assert not state.chapter(1).approved


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_chapter_does_not_stop_session(self, orchestrator, provider, blueprint):
        base = story_responder()
        provider.responder = lambda r: GenerationError("model overloaded") if drafting(2)(r) else base(r)

        sid = new_session(orchestrator, blueprint)
        result = await orchestrator.run(sid)
        state = result.value
        assert result.ok
        assert state.status == SessionStatus.COMPLETE
        assert statuses(state) == [
            ChapterStatus.APPROVED, ChapterStatus.FAILED, ChapterStatus.APPROVED, ChapterStatus.APPROVED
        ]
        assert "model overloaded" in state.chapter(2).error
        assert state.errors
        assert orchestrator.get_statistics(sid).value.failed_chapters == 1

    @pytest.mark.asyncio
    async def test_unconfigured_provider_stops_session(self, blueprint):
        orchestrator = build(FakeProvider(api_key=""))
        sid = new_session(orchestrator, blueprint)
        result = await orchestrator.run(sid)
        assert isinstance(result.error, ConfigurationError)
        state = orchestrator.get_session_state(sid).value
        assert state.status == SessionStatus.ERROR
        assert state.chapter(1).status == ChapterStatus.PENDING
        assert any("not configured" in e for e in state.errors)


class TestRevisionLoop:
    @pytest.mark.asyncio
    async def test_low_score_triggers_revision(self, blueprint):
        provider = FakeProvider(story_responder(
            review_score=lambda r: 90 if "Morning light" in r.user_prompt else 20
        ))
        orchestrator = build(provider, Config(generation={"model_review": True}))
        sid = new_session(orchestrator, blueprint, end_at_chapter=1)
        state = (await orchestrator.run(sid)).value

        chapter = state.chapter(1)
        assert chapter.attempt_count == 2
        assert chapter.status == ChapterStatus.APPROVED
        assert chapter.quality_score == 95.0
        assert chapter.content == chapter_text(1, revised=True)
        assert chapter.summary == "Mara reports a black ship to Tobias."
        assert state.total_revisions == 1
        assert chapter.cost == pytest.approx(state.cost_so_far, abs=1e-5)

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, blueprint):
        provider = FakeProvider(story_responder(review_score=lambda r: 10))
        orchestrator = build(provider, Config(generation={"model_review": True}))
        sid = new_session(orchestrator, blueprint, end_at_chapter=1)
        state = (await orchestrator.run(sid)).value

        chapter = state.chapter(1)
        assert chapter.attempt_count == 3
        assert chapter.quality_score == 55.0
        assert chapter.status == ChapterStatus.NEEDS_REVIEW
        revisions = [c for c in provider.calls if "Revise the chapter below" in c.user_prompt]
        assert len(revisions) == 2
        assert state.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_reviews_use_the_session_provider(self, blueprint):
        claude = FakeProvider()
        openai = FakeProvider(provider_type=ProviderType.OPENAI)
        orchestrator = SessionOrchestrator.from_config(
            Config(generation={"model_review": True}),
            providers=ProviderFactory({ProviderType.CLAUDE: claude, ProviderType.OPENAI: openai}),
        )
        sid = new_session(orchestrator, blueprint, end_at_chapter=1, provider=ProviderType.OPENAI)
        state = (await orchestrator.run(sid)).value

        assert state.chapter(1).status == ChapterStatus.APPROVED
        assert claude.calls == []
        reviews = [c for c in openai.calls if "fiction editor reviewing a single chapter" in c.system_prompt]
        assert reviews
        assert all(c.model == "gpt-4o-mini" for c in reviews)
        assert any("faithful chapter summaries" in c.system_prompt for c in openai.calls)


class TestPauseCancel:
    @pytest.mark.asyncio
    async def test_pause_waits_for_the_chapter_boundary(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)
        requested = []

        async def pause_at_chapter_3(request):
            if drafting(3)(request) and not requested:
                requested.append(orchestrator.pause(sid))

        provider.hook = pause_at_chapter_3
        state = (await orchestrator.run(sid)).value
        assert requested[0].ok
        assert state.status == SessionStatus.PAUSED
        # chapter 3 was already under way, so it is finished rather than thrown away
        assert statuses(state) == [ChapterStatus.APPROVED] * 3 + [ChapterStatus.PENDING]
        assert state.current_chapter == 4
        assert state.cost_so_far == pytest.approx(sum(c.cost for c in state.chapters), abs=1e-5)

        resumed = await orchestrator.resume(sid)
        assert resumed.value.status == SessionStatus.COMPLETE
        assert statuses(resumed.value) == [ChapterStatus.APPROVED] * 4
        assert len(provider.drafts(3)) == 1
        assert len(provider.drafts(4)) == 1

        uninterrupted = FakeProvider()
        other = build(uninterrupted)
        await other.run(new_session(other, blueprint))
        assert provider.drafts(4)[0].system_prompt == uninterrupted.drafts(4)[0].system_prompt
        assert provider.drafts(4)[0].user_prompt == uninterrupted.drafts(4)[0].user_prompt

    @pytest.mark.asyncio
    async def test_pause_requires_running_session(self, orchestrator, blueprint):
        sid = new_session(orchestrator, blueprint)
        assert isinstance(orchestrator.pause(sid).error, SessionError)
        assert isinstance((await orchestrator.resume(sid)).error, SessionError)

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_chapter(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)

        async def cancel_at_chapter_2(request):
            if drafting(2)(request):
                orchestrator.cancel(sid)
                await asyncio.Event().wait()

        provider.hook = cancel_at_chapter_2
        result = await orchestrator.run(sid)
        state = result.value
        assert result.ok
        assert state.status == SessionStatus.CANCELLED
        assert state.chapter(1).status == ChapterStatus.APPROVED
        assert state.chapter(2).status == ChapterStatus.PENDING
        assert provider.drafts(3) == []
        assert isinstance((await orchestrator.resume(sid)).error, SessionError)

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)
        assert orchestrator.cancel(sid).value.status == SessionStatus.CANCELLED
        result = await orchestrator.run(sid)
        assert isinstance(result.error, SessionError)
        assert provider.calls == []
        assert isinstance(orchestrator.cancel(sid).error, SessionError)


class TestChapterOperations:
    @pytest.mark.asyncio
    async def test_regenerate_with_previous_draft(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)
        previous = (await orchestrator.run(sid)).value.chapter(2)
        assert previous.comparison is None

        options = RegenerationOptions(instructions="Make Tobias warmer", preserve_dialogue=True)
        result = await orchestrator.regenerate_chapter(sid, 2, options)
        assert result.ok
        assert result.value.status == ChapterStatus.APPROVED

        request = provider.drafts(2)[-1]
        prompt = request.system_prompt + request.user_prompt
        assert "ADDITIONAL INSTRUCTIONS" in prompt
        assert "Make Tobias warmer" in prompt
        assert "PREVIOUS DRAFT (for reference)" in prompt
        comparison = result.value.comparison
        assert comparison is not None
        assert comparison.original_score == previous.quality_score
        assert comparison.revised_score == result.value.quality_score
        assert len(comparison.dimension_deltas) == 6
        assert orchestrator.get_session_state(sid).value.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_generate_chapter_with_instructions(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint, end_at_chapter=1)
        await orchestrator.run(sid)
        result = await orchestrator.generate_chapter(sid, 2, "Open with the storm.")
        assert result.ok
        assert orchestrator.get_session_state(sid).value.chapter(2).status == ChapterStatus.APPROVED
        assert "Open with the storm." in provider.drafts(2)[0].system_prompt + provider.drafts(2)[0].user_prompt

    @pytest.mark.asyncio
    async def test_failed_operation_restores_chapter(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)
        original = (await orchestrator.run(sid)).value.chapter(1)

        provider.responder = lambda r: GenerationError("quota exceeded")
        result = await orchestrator.regenerate_chapter(sid, 1)
        assert isinstance(result.error, GenerationError)
        assert orchestrator.get_session_state(sid).value.chapter(1) == original

    @pytest.mark.asyncio
    async def test_operations_refused_while_running(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)
        attempts = []

        async def try_generate(request):
            if drafting(2)(request) and not attempts:
                attempts.append(await orchestrator.generate_chapter(sid, 3))
                attempts.append(orchestrator.approve_chapter(sid, 2))

        provider.hook = try_generate
        await orchestrator.run(sid)
        assert all(isinstance(a.error, SessionError) for a in attempts)
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_request_revision(self, orchestrator, provider, blueprint):
        sid = new_session(orchestrator, blueprint)
        previous = (await orchestrator.run(sid)).value.chapter(1)
        result = await orchestrator.request_revision(sid, 1, "Give Mara a scar")
        assert result.ok
        assert result.value.content == chapter_text(1, revised=True)
        assert "Give Mara a scar" in provider.calls[-1].user_prompt
        assert orchestrator.get_session_state(sid).value.total_revisions == 1
        assert result.value.comparison.original_score == previous.quality_score
        assert result.value.comparison.revised_score == result.value.quality_score

    @pytest.mark.asyncio
    async def test_approve_and_reject(self, orchestrator, blueprint):
        sid = new_session(orchestrator, blueprint, auto_approve=False)
        assert isinstance(orchestrator.approve_chapter(sid, 1).error, SessionError)
        await orchestrator.run(sid)

        approved = orchestrator.approve_chapter(sid, 1).value
        assert approved.status == ChapterStatus.APPROVED and approved.approved
        rejected = orchestrator.reject_chapter(sid, 2, "Too slow").value
        assert rejected.status == ChapterStatus.NEEDS_REVISION

        state = orchestrator.get_session_state(sid).value
        assert state.chapter(1).status == ChapterStatus.APPROVED
        assert "Chapter 2 rejected: Too slow" in state.warnings


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_versions_and_history(self, orchestrator, store, blueprint):
        sid = new_session(orchestrator, blueprint)
        await orchestrator.run(sid)
        checkpoints = orchestrator.get_checkpoints(sid).value
        assert [c.version for c in checkpoints] == list(range(1, len(checkpoints) + 1))
        assert store.history(sid) == checkpoints
        assert checkpoints[0].status == SessionStatus.NOT_STARTED
        assert statuses(checkpoints[0]) == [ChapterStatus.PENDING] * 4
        assert checkpoints[-1].status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_restore_mid_run_checkpoint(self, orchestrator, store, blueprint):
        sid = new_session(orchestrator, blueprint)
        await orchestrator.run(sid)
        mid = next(
            s for s in store.history(sid)
            if s.status.is_running and s.chapter(2).status == ChapterStatus.GENERATING
        )
        assert isinstance(orchestrator.restore(mid, blueprint).error, SessionError)

        fresh = FakeProvider()
        other = build(fresh, store=InMemoryCheckpointStore())
        restored = other.restore(mid, blueprint).value
        assert restored.status == SessionStatus.PAUSED
        assert restored.version == mid.version + 1
        assert restored.chapter(1).status == ChapterStatus.APPROVED
        assert restored.chapter(2).status == ChapterStatus.PENDING
        assert restored.current_chapter == 2

        result = await other.resume(sid)
        assert result.value.status == SessionStatus.COMPLETE
        assert fresh.drafts(1) == []
        assert len(fresh.drafts(2)) == 1


class TestProgress:
    @pytest.mark.asyncio
    async def test_event_stream(self, orchestrator, events, blueprint):
        queue = events.subscribe()
        await orchestrator.run(new_session(orchestrator, blueprint))
        received = []
        while not queue.empty():
            received.append(queue.get_nowait())
        kinds = [e.kind for e in received]
        assert kinds[0] == EventKind.SESSION_STARTED
        assert kinds[-1] == EventKind.SESSION_COMPLETED
        assert kinds.count(EventKind.CHAPTER_COMPLETED) == 4
        assert EventKind.USAGE in kinds
        assert received[-1].overall_percentage == 100.0
        assert received[-1].average_quality == 100.0

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, blueprint):
        events = EventChannel()

        def broken(event):
            raise RuntimeError("listener bug")

        events.add_listener(broken)
        orchestrator = build(FakeProvider(), events=events)
        result = await orchestrator.run(new_session(orchestrator, blueprint))
        assert result.value.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_statistics(self, orchestrator, blueprint):
        sid = new_session(orchestrator, blueprint)
        state = (await orchestrator.run(sid)).value
        stats = orchestrator.get_statistics(sid).value
        assert stats.total_chapters == 4
        assert stats.completed_chapters == 4
        assert stats.failed_chapters == 0
        assert stats.progress_percentage == 100.0
        assert stats.average_quality_score == 100.0
        assert stats.target_words == 480
        assert stats.total_words == state.words_generated
        assert stats.total_cost == pytest.approx(sum(c.cost for c in state.chapters), abs=1e-5)
        assert [c.number for c in stats.chapters] == [1, 2, 3, 4]

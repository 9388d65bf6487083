import asyncio

import pytest

from novel_engine.context import ContextAssembler
from novel_engine.control import ExecutionControl, OperationCancelled
from novel_engine.errors import ConfigurationError, GenerationError
from novel_engine.executor import GenerationExecutor
from novel_engine.models.generation import GenerationMode
from novel_engine.models.quality import RevisionInstruction
from novel_engine.providers.base import ProviderType
from novel_engine.providers.factory import ProviderFactory

from conftest import FakeProvider, chapter_text, story_responder


@pytest.fixture
def context(blueprint):
    return ContextAssembler().assemble(blueprint, 1).value


def executor_for(provider):
    return GenerationExecutor(ProviderFactory({provider.provider_type: provider}))


@pytest.mark.asyncio
async def test_standard_generation_is_single_pass(context):
    provider = FakeProvider()
    billed = []
    result = await executor_for(provider).generate(
        context, GenerationMode.STANDARD, ProviderType.CLAUDE, on_usage=billed.append
    )
    assert result.ok
    generated = result.value
    assert generated.content == chapter_text(1)
    assert generated.model == "claude-sonnet-4-20250514"
    assert not generated.refined
    assert len(provider.calls) == 1
    assert [p.pass_name for p in generated.passes] == ["draft"]
    assert billed == list(generated.passes)
    assert generated.cost == pytest.approx(billed[0].cost)
    assert generated.word_count > 100


@pytest.mark.asyncio
async def test_premium_generation_refines_draft(context):
    provider = FakeProvider()
    result = await executor_for(provider).generate(context, GenerationMode.HIGH_QUALITY, ProviderType.CLAUDE)
    generated = result.value
    assert generated.refined
    assert generated.model == "claude-opus-4-20250514"
    assert generated.content.endswith("The reef waited below.")
    assert [p.pass_name for p in generated.passes] == ["draft", "refinement"]
    refinement = provider.calls[1]
    assert "Original draft:" in refinement.user_prompt
    assert refinement.temperature == pytest.approx(0.4)
    assert generated.usage.total_tokens == sum(p.usage.total_tokens for p in generated.passes)


@pytest.mark.asyncio
async def test_pause_does_not_interrupt_refinement(context):
    control = ExecutionControl()

    async def pause_during_draft(request):
        control.request_pause()

    provider = FakeProvider(hook=pause_during_draft)
    result = await executor_for(provider).generate(
        context, GenerationMode.HIGH_QUALITY, ProviderType.CLAUDE, control=control
    )
    assert result.value.refined
    assert len(provider.calls) == 2
    assert control.pause_requested


@pytest.mark.asyncio
async def test_cancel_between_premium_passes(context):
    control = ExecutionControl()
    billed = []

    def cancel_after_draft(usage):
        billed.append(usage)
        control.cancel()

    provider = FakeProvider()
    with pytest.raises(OperationCancelled):
        await executor_for(provider).generate(
            context, GenerationMode.HIGH_QUALITY, ProviderType.CLAUDE, control=control, on_usage=cancel_after_draft
        )
    assert [p.pass_name for p in billed] == ["draft"]
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_failed_refinement_keeps_draft(context):
    base = story_responder()

    def responder(request):
        if "Original draft:" in request.user_prompt:
            return GenerationError("overloaded")
        return base(request)

    provider = FakeProvider(responder)
    result = await executor_for(provider).generate(context, GenerationMode.HIGH_QUALITY, ProviderType.CLAUDE)
    assert result.ok
    assert result.value.content == chapter_text(1)
    assert not result.value.refined
    assert len(result.value.passes) == 1


@pytest.mark.asyncio
async def test_model_override_and_temperature(context):
    provider = FakeProvider()
    await executor_for(provider).generate(
        context, GenerationMode.FAST, ProviderType.CLAUDE, model_override="claude-3-haiku-20240307",
        temperature=0.2,
    )
    assert provider.calls[0].model == "claude-3-haiku-20240307"
    assert provider.calls[0].temperature == pytest.approx(0.2)


@pytest.mark.asyncio
async def test_unconfigured_provider_is_configuration_error(context):
    provider = FakeProvider(api_key="")
    result = await executor_for(provider).generate(context, GenerationMode.STANDARD, ProviderType.CLAUDE)
    assert not result.ok
    assert isinstance(result.error, ConfigurationError)
    assert "Claude is not configured" in str(result.error)
    assert provider.calls == []


@pytest.mark.asyncio
async def test_missing_provider_is_configuration_error(context):
    result = await executor_for(FakeProvider()).generate(context, GenerationMode.STANDARD, ProviderType.GEMINI)
    assert isinstance(result.error, ConfigurationError)


@pytest.mark.asyncio
async def test_provider_failure_is_generation_error(context):
    provider = FakeProvider(lambda request: GenerationError("rate limited"))
    result = await executor_for(provider).generate(context, GenerationMode.STANDARD, ProviderType.CLAUDE)
    assert isinstance(result.error, GenerationError)
    assert result.error.chapter_number == 1
    assert "rate limited" in str(result.error)


@pytest.mark.asyncio
async def test_cancel_aborts_in_flight_call(context):
    control = ExecutionControl()

    async def hang(request):
        control.cancel()
        await asyncio.Event().wait()

    provider = FakeProvider(hook=hang)
    billed = []
    with pytest.raises(OperationCancelled):
        await executor_for(provider).generate(
            context, GenerationMode.STANDARD, ProviderType.CLAUDE, control=control, on_usage=billed.append
        )
    assert billed == []


@pytest.mark.asyncio
async def test_revise_orders_instructions_by_priority(context):
    provider = FakeProvider()
    instructions = [
        RevisionInstruction(priority=2, category="Polish", instruction="Trim adverbs"),
        RevisionInstruction(priority=12, category="Critical Fix", instruction="Bring Tobias on stage"),
    ]
    result = await executor_for(provider).revise(
        context, chapter_text(1), instructions, ProviderType.CLAUDE
    )
    assert result.ok
    prompt = provider.calls[0].user_prompt
    assert prompt.index("Bring Tobias on stage") < prompt.index("Trim adverbs")
    assert "1. [Critical Fix]" in prompt
    assert result.value.passes[0].pass_name == "revision"
    assert result.value.content == chapter_text(1, revised=True)


@pytest.mark.asyncio
async def test_refine_content_uses_editor_prompt():
    provider = FakeProvider()
    result = await executor_for(provider).refine_content(
        "Some text to tighten.", "Make it shorter", ProviderType.CLAUDE
    )
    assert result.ok
    assert result.value.content == "Edited text."
    assert "INSTRUCTIONS:\nMake it shorter" in provider.calls[0].user_prompt
    assert provider.calls[0].system_prompt.startswith("You are a skilled fiction editor")


@pytest.mark.asyncio
async def test_stream_yields_chunks_and_final_usage(context):
    provider = FakeProvider(streaming=True)
    billed = []
    chunks = [c async for c in executor_for(provider).generate_stream(
        context, GenerationMode.STANDARD, ProviderType.CLAUDE, on_usage=billed.append
    )]
    assert chunks[-1].is_final
    assert "".join(c.content for c in chunks) == chapter_text(1)
    assert len(billed) == 1


@pytest.mark.asyncio
async def test_stream_falls_back_to_buffered(context):
    provider = FakeProvider(streaming=False)
    chunks = [c async for c in executor_for(provider).generate_stream(
        context, GenerationMode.STANDARD, ProviderType.CLAUDE
    )]
    assert len(chunks) == 1
    assert chunks[0].is_final
    assert chunks[0].content == chapter_text(1)


@pytest.mark.asyncio
async def test_stream_reports_errors_as_final_chunk(context):
    provider = FakeProvider(lambda request: GenerationError("boom"))
    chunks = [c async for c in executor_for(provider).generate_stream(
        context, GenerationMode.STANDARD, ProviderType.CLAUDE
    )]
    assert chunks[-1].content.startswith("Error:")
    assert chunks[-1].finish_reason == "error"

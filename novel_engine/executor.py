"""Single-pass, premium two-pass and streaming chapter generation."""

import time
from typing import AsyncIterator, Callable, Optional, Sequence

from loguru import logger

from .control import ControlSignal, ExecutionControl
from .errors import ConfigurationError, GenerationError, Result
from .models.context import GenerationContext
from .models.generation import GenerationMode, GenerationResult, PassUsage, TokenUsage
from .models.quality import RevisionInstruction
from .pricing import CostEstimator, ModelSelector, max_output_tokens_for
from .providers.base import BaseProvider, GenerationRequest, ProviderType, StreamChunk
from .providers.factory import ProviderFactory
from .utils.text import count_words

UsageListener = Callable[[PassUsage], None]

REFINEMENT_SUFFIX = (
    "\n\nYou are now in editing mode. Refine and improve the draft while "
    "maintaining its core structure and voice."
)

REFINEMENT_PROMPT = """Review and improve the following chapter draft. Focus on:
1. Strengthening prose and word choice
2. Enhancing sensory details and atmosphere
3. Improving dialogue authenticity
4. Ensuring smooth pacing and transitions
5. Tightening any loose or redundant scenes

Original draft:
{draft}

Provide the improved version:"""

EDITOR_SYSTEM = (
    "You are a skilled fiction editor. Revise the text according to the "
    "instructions while keeping the author's voice, the plot and the characters intact. "
    "Return only the revised text."
)

REVISION_PROMPT = """Revise the chapter below. Apply these changes in order of priority:

{instructions}

CHAPTER:
{content}

Provide the fully revised chapter, keeping everything that already works."""


class GenerationExecutor:
    """Runs provider calls for a chapter and accounts usage and cost per pass."""

    def __init__(
        self,
        providers: ProviderFactory,
        selector: Optional[ModelSelector] = None,
        costs: Optional[CostEstimator] = None,
        temperature: float = 0.7,
        refinement_temperature: float = 0.4,
        revision_temperature: float = 0.6,
        editor_temperature: float = 0.5,
    ):
        self.providers = providers
        self.selector = selector or ModelSelector()
        self.costs = costs or CostEstimator(self.selector.catalog)
        self.temperature = temperature
        self.refinement_temperature = refinement_temperature
        self.revision_temperature = revision_temperature
        self.editor_temperature = editor_temperature

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def resolve_provider(self, provider_type: ProviderType) -> Result[BaseProvider]:
        provider = self.providers.get(provider_type)
        name = provider.name if provider is not None else ProviderType(provider_type).value.capitalize()
        if provider is None or not provider.is_configured:
            return Result.failure(
                ConfigurationError(f"{name} is not configured. Please add API key in settings.")
            )
        return Result.success(provider)

    def resolve_model(
        self, provider_type: ProviderType, mode: GenerationMode, model_override: Optional[str] = None
    ) -> str:
        return model_override or self.selector.select(provider_type, mode)

    async def _call(
        self,
        provider: BaseProvider,
        request: GenerationRequest,
        pass_name: str,
        control: Optional[ExecutionControl],
        on_usage: Optional[UsageListener],
    ):
        if control is not None:
            result = await control.guard(provider.generate(request))
        else:
            result = await provider.generate(request)
        if not result.ok:
            return result, None
        response = result.value
        billed = PassUsage(
            pass_name=pass_name,
            model=request.model,
            usage=response.usage,
            cost=self.costs.calculate(request.model, response.usage),
        )
        if on_usage is not None:
            on_usage(billed)
        return result, billed

    # ------------------------------------------------------------------
    # buffered generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        context: GenerationContext,
        mode: GenerationMode,
        provider_type: ProviderType,
        model_override: Optional[str] = None,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
        temperature: Optional[float] = None,
    ) -> Result[GenerationResult]:
        """Generate chapter content; premium mode adds a refinement pass.

        A failed refinement is not fatal: the draft is returned instead.
        """
        resolved = self.resolve_provider(provider_type)
        if not resolved.ok:
            return Result.failure(resolved.error)
        provider = resolved.value
        model = self.resolve_model(provider_type, mode, model_override)
        started = time.monotonic()

        request = GenerationRequest(
            system_prompt=context.system_prompt,
            user_prompt=context.user_prompt,
            model=model,
            max_tokens=max_output_tokens_for(context.target_words),
            temperature=self.temperature if temperature is None else temperature,
        )
        logger.info(f"Generating chapter {context.chapter_number} with {model} ({GenerationMode(mode).value})")
        draft_result, draft_usage = await self._call(provider, request, "draft", control, on_usage)
        if not draft_result.ok:
            return Result.failure(
                GenerationError(str(draft_result.error.message), context.chapter_number)
            )
        draft = draft_result.value
        passes = [draft_usage]

        content = draft.content
        finish_reason = draft.finish_reason
        refined = False

        if mode == GenerationMode.HIGH_QUALITY:
            if control is not None:
                control.raise_if_cancelled()
            refinement = GenerationRequest(
                system_prompt=context.system_prompt + REFINEMENT_SUFFIX,
                user_prompt=REFINEMENT_PROMPT.format(draft=draft.content),
                model=model,
                max_tokens=request.max_tokens,
                temperature=self.refinement_temperature,
            )
            logger.info(f"Refining chapter {context.chapter_number} draft")
            refine_result, refine_usage = await self._call(
                provider, refinement, "refinement", control, on_usage
            )
            if refine_result.ok:
                # the refined text replaces the draft without comparison
                content = refine_result.value.content
                finish_reason = refine_result.value.finish_reason
                passes.append(refine_usage)
                refined = True
            else:
                logger.warning(
                    f"Refinement of chapter {context.chapter_number} failed, keeping draft: "
                    f"{refine_result.error}"
                )

        return Result.success(self._result(content, model, mode, passes, refined, finish_reason, started))

    def _result(
        self,
        content: str,
        model: str,
        mode: GenerationMode,
        passes: Sequence[PassUsage],
        refined: bool,
        finish_reason: Optional[str],
        started: float,
    ) -> GenerationResult:
        usage = TokenUsage()
        for p in passes:
            usage = usage + p.usage
        return GenerationResult(
            content=content,
            word_count=count_words(content),
            model=model,
            mode=GenerationMode(mode),
            usage=usage,
            cost=sum(p.cost for p in passes),
            passes=tuple(passes),
            refined=refined,
            finish_reason=finish_reason,
            elapsed_seconds=round(time.monotonic() - started, 3),
        )

    async def revise(
        self,
        context: GenerationContext,
        content: str,
        instructions: Sequence[RevisionInstruction],
        provider_type: ProviderType,
        mode: GenerationMode = GenerationMode.STANDARD,
        model_override: Optional[str] = None,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> Result[GenerationResult]:
        """Rewrite a chapter following ranked revision instructions."""
        ranked = sorted(instructions, key=lambda i: i.priority, reverse=True)
        lines = "\n".join(
            f"{n}. [{i.category}] {i.instruction}" for n, i in enumerate(ranked, start=1)
        )
        return await self._single(
            system_prompt=context.system_prompt,
            user_prompt=REVISION_PROMPT.format(instructions=lines, content=content),
            target_words=context.target_words,
            temperature=self.revision_temperature,
            pass_name="revision",
            chapter_number=context.chapter_number,
            provider_type=provider_type,
            mode=mode,
            model_override=model_override,
            control=control,
            on_usage=on_usage,
        )

    async def refine_content(
        self,
        content: str,
        instructions: str,
        provider_type: ProviderType,
        mode: GenerationMode = GenerationMode.STANDARD,
        model_override: Optional[str] = None,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> Result[GenerationResult]:
        """Free-form editorial pass over existing text."""
        return await self._single(
            system_prompt=EDITOR_SYSTEM,
            user_prompt=f"INSTRUCTIONS:\n{instructions}\n\nTEXT:\n{content}",
            target_words=max(count_words(content), 100),
            temperature=self.editor_temperature,
            pass_name="edit",
            chapter_number=None,
            provider_type=provider_type,
            mode=mode,
            model_override=model_override,
            control=control,
            on_usage=on_usage,
        )

    async def _single(
        self,
        system_prompt: str,
        user_prompt: str,
        target_words: int,
        temperature: float,
        pass_name: str,
        chapter_number: Optional[int],
        provider_type: ProviderType,
        mode: GenerationMode,
        model_override: Optional[str],
        control: Optional[ExecutionControl],
        on_usage: Optional[UsageListener],
    ) -> Result[GenerationResult]:
        resolved = self.resolve_provider(provider_type)
        if not resolved.ok:
            return Result.failure(resolved.error)
        model = self.resolve_model(provider_type, mode, model_override)
        started = time.monotonic()
        request = GenerationRequest(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            model=model,
            max_tokens=max_output_tokens_for(target_words),
            temperature=temperature,
        )
        result, billed = await self._call(resolved.value, request, pass_name, control, on_usage)
        if not result.ok:
            return Result.failure(GenerationError(str(result.error.message), chapter_number))
        return Result.success(
            self._result(result.value.content, model, mode, [billed], False,
                         result.value.finish_reason, started)
        )

    # ------------------------------------------------------------------
    # streaming
    # ------------------------------------------------------------------

    async def generate_stream(
        self,
        context: GenerationContext,
        mode: GenerationMode,
        provider_type: ProviderType,
        model_override: Optional[str] = None,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a single-pass generation.

        Failures are yielded as a final ``Error: ...`` chunk rather than raised.
        """
        resolved = self.resolve_provider(provider_type)
        if not resolved.ok:
            yield StreamChunk(content=f"Error: {resolved.error}", is_final=True, finish_reason="error")
            return
        provider = resolved.value
        model = self.resolve_model(provider_type, mode, model_override)
        request = GenerationRequest(
            system_prompt=context.system_prompt,
            user_prompt=context.user_prompt,
            model=model,
            max_tokens=max_output_tokens_for(context.target_words),
            temperature=self.temperature,
        )

        if not provider.supports_streaming:
            result, _ = await self._call(provider, request, "draft", control, on_usage)
            if not result.ok:
                yield StreamChunk(content=f"Error: {result.error}", is_final=True, finish_reason="error")
                return
            response = result.value
            yield StreamChunk(
                content=response.content,
                is_final=True,
                finish_reason=response.finish_reason or "stop",
                usage=response.usage,
            )
            return

        try:
            async for chunk in provider.generate_stream(request):
                if control is not None:
                    control.raise_if_cancelled()
                if chunk.is_final and chunk.usage is not None and on_usage is not None:
                    on_usage(PassUsage("draft", model, chunk.usage, self.costs.calculate(model, chunk.usage)))
                yield chunk
        except ControlSignal:
            raise
        except GenerationError as e:
            yield StreamChunk(content=f"Error: {e}", is_final=True, finish_reason="error")
        except Exception as e:
            logger.error(f"Streaming generation failed: {e}")
            yield StreamChunk(content=f"Error: {e}", is_final=True, finish_reason="error")

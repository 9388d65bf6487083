"""OpenAI chat completions provider, also used for OpenAI-compatible endpoints (Qwen via DashScope)."""

from typing import AsyncIterator, Optional

from loguru import logger

from ..errors import GenerationError, Result
from ..models.generation import TokenUsage
from .base import BaseProvider, GenerationRequest, ProviderResponse, ProviderType, StreamChunk


class OpenAICompatibleProvider(BaseProvider):
    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        provider_type: ProviderType = ProviderType.OPENAI,
        timeout: float = 120.0,
    ):
        super().__init__(api_key, base_url)
        self._provider_type = provider_type
        self.timeout = timeout
        self._client = None

    @property
    def provider_type(self) -> ProviderType:
        return self._provider_type

    @property
    def name(self) -> str:
        return "OpenAI" if self._provider_type == ProviderType.OPENAI else "Qwen"

    @property
    def supports_streaming(self) -> bool:
        return True

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout
            )
        return self._client

    @staticmethod
    def _messages(request: GenerationRequest) -> list[dict]:
        return [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.user_prompt},
        ]

    @staticmethod
    def _is_reasoning_model(model: str) -> bool:
        return model.startswith("o1")

    def _request_kwargs(self, request: GenerationRequest) -> dict:
        kwargs = {"model": request.model, "messages": self._messages(request)}
        # o1 models take max_completion_tokens and reject temperature
        if self._is_reasoning_model(request.model):
            kwargs["max_completion_tokens"] = request.max_tokens
        else:
            kwargs["temperature"] = request.temperature
            kwargs["max_tokens"] = request.max_tokens
        return kwargs

    async def generate(self, request: GenerationRequest) -> Result[ProviderResponse]:
        try:
            response = await self._get_client().chat.completions.create(**self._request_kwargs(request))
        except Exception as e:
            logger.debug(f"{self.name} call failed: {e}")
            return Result.failure(GenerationError(f"{self.name} request failed: {e}"))

        choice = response.choices[0]
        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return Result.success(
            ProviderResponse(
                content=choice.message.content or "",
                model=response.model or request.model,
                usage=usage,
                finish_reason=choice.finish_reason,
            )
        )

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        if self._is_reasoning_model(request.model):
            # o1 models cannot stream; deliver one buffered chunk
            response = (await self.generate(request)).unwrap()
            yield StreamChunk(
                content=response.content,
                is_final=True,
                finish_reason=response.finish_reason or "stop",
                usage=response.usage,
            )
            return

        stream = await self._get_client().chat.completions.create(
            **self._request_kwargs(request),
            stream=True,
            stream_options={"include_usage": True},
        )
        finish_reason = None
        usage = None
        async for event in stream:
            if event.usage is not None:
                usage = TokenUsage(
                    input_tokens=event.usage.prompt_tokens or 0,
                    output_tokens=event.usage.completion_tokens or 0,
                )
            if not event.choices:
                continue
            choice = event.choices[0]
            if choice.finish_reason:
                finish_reason = choice.finish_reason
            if choice.delta and choice.delta.content:
                yield StreamChunk(content=choice.delta.content)
        yield StreamChunk(content="", is_final=True, finish_reason=finish_reason or "stop", usage=usage)

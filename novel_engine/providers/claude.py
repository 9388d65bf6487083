"""Anthropic Claude provider."""

from typing import AsyncIterator

from loguru import logger

from ..errors import GenerationError, Result
from ..models.generation import TokenUsage
from .base import BaseProvider, GenerationRequest, ProviderResponse, ProviderType, StreamChunk


class ClaudeProvider(BaseProvider):
    def __init__(self, api_key: str = "", base_url: str | None = None, timeout: float = 120.0):
        super().__init__(api_key, base_url)
        self.timeout = timeout
        self._client = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.CLAUDE

    @property
    def supports_streaming(self) -> bool:
        return True

    def _get_client(self):
        if self._client is None:
            import anthropic

            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout
            )
        return self._client

    async def generate(self, request: GenerationRequest) -> Result[ProviderResponse]:
        try:
            response = await self._get_client().messages.create(
                model=request.model,
                system=request.system_prompt,
                messages=[{"role": "user", "content": request.user_prompt}],
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except Exception as e:
            logger.debug(f"Claude call failed: {e}")
            return Result.failure(GenerationError(f"Claude request failed: {e}"))

        text = "".join(block.text for block in response.content if block.type == "text")
        return Result.success(
            ProviderResponse(
                content=text,
                model=response.model,
                usage=TokenUsage(
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                ),
                finish_reason=response.stop_reason,
            )
        )

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        async with self._get_client().messages.stream(
            model=request.model,
            system=request.system_prompt,
            messages=[{"role": "user", "content": request.user_prompt}],
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        ) as stream:
            async for text in stream.text_stream:
                yield StreamChunk(content=text)
            final = await stream.get_final_message()
        yield StreamChunk(
            content="",
            is_final=True,
            finish_reason=final.stop_reason,
            usage=TokenUsage(
                input_tokens=final.usage.input_tokens,
                output_tokens=final.usage.output_tokens,
            ),
        )

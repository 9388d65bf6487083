"""Gemini provider via the google-genai SDK (buffered only)."""

from loguru import logger

from ..errors import GenerationError, Result
from ..models.generation import TokenUsage
from .base import BaseProvider, GenerationRequest, ProviderResponse, ProviderType


class GeminiProvider(BaseProvider):
    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GEMINI

    @property
    def supports_streaming(self) -> bool:
        return False

    async def generate(self, request: GenerationRequest) -> Result[ProviderResponse]:
        from google import genai
        from google.genai import types

        try:
            client = genai.Client(api_key=self.api_key)
            response = await client.aio.models.generate_content(
                model=request.model,
                contents=request.user_prompt,
                config=types.GenerateContentConfig(
                    system_instruction=request.system_prompt,
                    temperature=request.temperature,
                    max_output_tokens=request.max_tokens,
                ),
            )
        except Exception as e:
            logger.debug(f"Gemini call failed: {e}")
            return Result.failure(GenerationError(f"Gemini request failed: {e}"))

        usage = TokenUsage()
        meta = getattr(response, "usage_metadata", None)
        if meta is not None:
            usage = TokenUsage(
                input_tokens=meta.prompt_token_count or 0,
                output_tokens=meta.candidates_token_count or 0,
            )
        finish_reason = None
        if response.candidates:
            reason = response.candidates[0].finish_reason
            finish_reason = str(getattr(reason, "name", reason)).lower() if reason else None
        return Result.success(
            ProviderResponse(
                content=response.text or "",
                model=request.model,
                usage=usage,
                finish_reason=finish_reason,
            )
        )

"""Base agent: optional model access for the review and extraction agents."""

import copy
import time
from dataclasses import dataclass
from typing import Callable, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel

from ..control import ExecutionControl
from ..models.generation import PassUsage
from ..pricing import CostEstimator
from ..providers.base import BaseProvider, GenerationRequest
from ..utils.schema import parse_structured

M = TypeVar("M", bound=BaseModel)
UsageListener = Callable[[PassUsage], None]


@dataclass
class AgentLog:
    agent_name: str = ""
    action: str = ""
    prompt_preview: str = ""
    response_preview: str = ""
    elapsed_seconds: float = 0.0
    ok: bool = True


class BaseAgent:
    """Wraps a provider for agents that also work without one.

    Every agent has a deterministic path; the provider, when configured,
    adds a model-assisted review on top of it.
    """

    def __init__(
        self,
        name: str,
        provider: Optional[BaseProvider] = None,
        model: Optional[str] = None,
        costs: Optional[CostEstimator] = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ):
        self.name = name
        self.provider = provider
        self.model = model
        self.costs = costs or CostEstimator()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.logs: list[AgentLog] = []

    def with_provider(self, provider: Optional[BaseProvider], model: Optional[str]):
        """A copy of this agent that calls ``provider`` with ``model``."""
        agent = copy.copy(self)
        agent.provider = provider
        agent.model = model
        return agent

    @property
    def uses_model(self) -> bool:
        return self.provider is not None and self.provider.is_configured and bool(self.model)

    async def call(
        self,
        system: str,
        prompt: str,
        action: str,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
        temperature: Optional[float] = None,
    ) -> Optional[str]:
        """Call the model; returns None when unavailable or the call failed."""
        if not self.uses_model:
            return None
        request = GenerationRequest(
            system_prompt=system,
            user_prompt=prompt,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature if temperature is None else temperature,
        )
        start = time.time()
        if control is not None:
            result = await control.guard(self.provider.generate(request))
        else:
            result = await self.provider.generate(request)

        if not result.ok:
            logger.warning(f"{self.name} {action} call failed: {result.error}")
            self._log(action, prompt, "", time.time() - start, ok=False)
            return None

        response = result.value
        if on_usage is not None:
            on_usage(
                PassUsage(
                    pass_name=f"{self.name}:{action}",
                    model=self.model,
                    usage=response.usage,
                    cost=self.costs.calculate(self.model, response.usage),
                )
            )
        self._log(action, prompt, response.content, time.time() - start)
        return response.content

    async def call_json(
        self,
        system: str,
        prompt: str,
        schema: Type[M],
        action: str,
        control: Optional[ExecutionControl] = None,
        on_usage: Optional[UsageListener] = None,
        list_key: Optional[str] = None,
    ) -> Optional[M]:
        """Call the model and parse its JSON into ``schema`` (partial on mismatch)."""
        raw = await self.call(
            system + "\n\nRespond with valid JSON only.",
            prompt,
            action,
            control=control,
            on_usage=on_usage,
        )
        if raw is None:
            return None
        return parse_structured(raw, schema, source=f"{self.name} {action}", list_key=list_key)

    def _log(self, action: str, prompt: str, response: str, elapsed: float, ok: bool = True) -> None:
        self.logs.append(
            AgentLog(
                agent_name=self.name,
                action=action,
                prompt_preview=prompt[:200],
                response_preview=response[:200] if response else "",
                elapsed_seconds=round(elapsed, 2),
                ok=ok,
            )
        )

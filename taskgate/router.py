"""
TASKGATE Router — Vendor-Agnostic Backend Adapter

Routes planner/analysis calls through LiteLLM so the control plane never
knows which vendor is answering. Every call is admitted by the rate
limiter first and reports its real token count afterwards.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from taskgate.config_loader import TaskGateConfig
from taskgate.rate_limiter import RateLimiter

CHARS_PER_TOKEN = 4


class BackendError(Exception):
    """The AI backend failed or returned nothing usable."""
    pass


class AICallLimitExceeded(BackendError):
    pass


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageTotals:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Session-wide token + dollar spend. Informational; the rate limiter does admission."""
    usage: UsageTotals = field(default_factory=UsageTotals)

    def record(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Unknown models have no price table entry
            logger.debug(f"[ROUTER] No cost data: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
        }


def estimate_tokens(messages: list[dict[str, str]], max_tokens: int) -> int:
    """Rough pre-call estimate: prompt characters / 4 plus the response allowance."""
    prompt_chars = sum(len(m.get("content", "")) for m in messages)
    return prompt_chars // CHARS_PER_TOKEN + max_tokens


def _supports_temperature(model: str) -> bool:
    """GPT-5 and o-series reasoning models reject arbitrary temperature."""
    normalized = model.lower().replace("openai/", "")
    return not normalized.startswith(("gpt-5", "o1", "o3", "o4"))


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    latency_ms: int = 0


class Router:
    """
    Callers use `await router.complete(role, messages)`.
    The router resolves the model, waits for rate-limit admission,
    and returns structured output.
    """

    def __init__(self, config: TaskGateConfig, rate_limiter: RateLimiter):
        self.config = config
        self.rate_limiter = rate_limiter
        self.budget = BudgetTracker()
        self._role_model_map = {
            "planner": config.routing.planner,
            "analysis": config.routing.analysis,
        }

        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        model = self._role_model_map.get(role)
        if not model:
            raise ValueError(f"Unknown role: {role}. Known: {list(self._role_model_map)}")
        return model

    async def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> RouterResponse:
        """Send one completion request through the rate limiter and LiteLLM.

        Raises:
            BackendError: The vendor call failed after retries or returned no content.
        """
        model = self.resolve_model(role)
        max_tokens = max_tokens or self.config.limits.max_response_tokens
        request_id = f"req_{uuid.uuid4().hex[:9]}"

        estimated = estimate_tokens(messages, max_tokens)
        await self.rate_limiter.check_rate_limit(estimated, request_id)

        kwargs: dict[str, Any] = {"model": model, "messages": messages, "max_tokens": max_tokens}
        if _supports_temperature(model):
            kwargs["temperature"] = temperature

        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages, ~{estimated} tokens)")
        start = time.monotonic()
        try:
            response = await self._acompletion(**kwargs)
        except Exception as e:
            raise BackendError(f"{model} call failed: {e}") from e
        elapsed_ms = int((time.monotonic() - start) * 1000)

        usage = getattr(response, "usage", None)
        actual = getattr(usage, "total_tokens", 0) or estimated
        self.rate_limiter.record_usage(actual, request_id)
        self.budget.record(response)

        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise BackendError(f"{model} returned an unexpected payload: {e}") from e

        logger.debug(f"[ROUTER] {role} complete — {actual} tokens, {elapsed_ms}ms")
        return RouterResponse(content=content, model=model, tokens_used=actual, latency_ms=elapsed_ms)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    async def _acompletion(self, **kwargs: Any) -> Any:
        return await litellm.acompletion(**kwargs)

from types import SimpleNamespace

import litellm
import pytest
from tenacity import wait_none

from taskgate.config_loader import RateLimitConfig, TaskGateConfig
from taskgate.rate_limiter import RateLimiter
from taskgate.router import BackendError, Router, _supports_temperature, estimate_tokens


def fake_response(content="[]", total_tokens=120):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=100, completion_tokens=20, total_tokens=total_tokens),
    )


def make_router():
    limiter = RateLimiter(RateLimitConfig(tokens_per_minute=100_000))
    return Router(TaskGateConfig(), limiter), limiter


def test_estimate_tokens():
    messages = [{"role": "user", "content": "x" * 400}]
    assert estimate_tokens(messages, 100) == 200


def test_supports_temperature():
    assert _supports_temperature("anthropic/claude-sonnet-4-20250514")
    assert not _supports_temperature("openai/o3-mini")
    assert not _supports_temperature("gpt-5")


def test_resolve_model_rejects_unknown_role():
    router, _ = make_router()
    assert router.resolve_model("planner") == TaskGateConfig().routing.planner
    with pytest.raises(ValueError):
        router.resolve_model("poet")


@pytest.mark.asyncio
async def test_complete_records_usage(monkeypatch):
    calls = []

    async def acompletion(**kwargs):
        calls.append(kwargs)
        return fake_response("hello", total_tokens=321)

    monkeypatch.setattr(litellm, "acompletion", acompletion)
    router, limiter = make_router()

    response = await router.complete("analysis", [{"role": "user", "content": "hi"}], max_tokens=50)

    assert response.content == "hello"
    assert response.tokens_used == 321
    assert calls[0]["max_tokens"] == 50
    assert calls[0]["temperature"] == 0.2
    assert limiter.get_current_usage().tokens == 321
    assert router.budget.summary()["call_count"] == 1
    assert router.budget.summary()["total_tokens"] == 321


@pytest.mark.asyncio
async def test_complete_wraps_vendor_failures(monkeypatch):
    attempts = []

    async def acompletion(**kwargs):
        attempts.append(1)
        raise ConnectionError("vendor down")

    monkeypatch.setattr(litellm, "acompletion", acompletion)
    monkeypatch.setattr(Router._acompletion.retry, "wait", wait_none())
    router, limiter = make_router()

    with pytest.raises(BackendError, match="vendor down"):
        await router.complete("planner", [{"role": "user", "content": "plan"}])

    assert len(attempts) == 3
    assert limiter.get_current_usage().requests == 0

import asyncio

import pytest

from smolbot.errors import CapacityError, GenerationFailed, ProviderError, RateLimitTimeout
from smolbot.llm.base import CompletionProvider
from smolbot.llm.fallback_router import ModelConfig, ModelFallbackRouter
from smolbot.rate_limiter import RateLimiter

CHAT = ModelConfig(primary="primary/model", fallback="fallback/model", instant_fallback="instant/model", max_retries=3)


class ScriptedProvider(CompletionProvider):
    """Raises the queued error for a model until its script runs out, then answers."""

    def __init__(self, scripts: dict | None = None, always: dict | None = None):
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.always = always or {}
        self.calls = []

    async def complete(self, model, prompt, kind="chat", *, max_tokens=None, temperature=None, context_fields=None):
        self.calls.append(model)
        if model in self.always:
            raise self.always[model]
        queue = self.scripts.get(model) or []
        if queue:
            raise queue.pop(0)
        return f"reply from {model}"


class DummyLimiter:
    def __init__(self, error=None):
        self.acquired = 0
        self.error = error
    async def acquire(self):
        if self.error is not None:
            raise self.error
        self.acquired += 1


def make_router(provider, limiter=None, configs=None):
    return ModelFallbackRouter(
        provider,
        limiter or DummyLimiter(),
        configs or {"chat": CHAT},
        retry_backoff_seconds=0,
    )


def test_tiers_collapse_duplicates():
    vision = ModelConfig(primary="v", fallback="v", instant_fallback="v")
    assert vision.tiers() == ["v"]
    assert CHAT.tiers(use_fallback=False) == ["primary/model", "instant/model"]
    assert CHAT.tiers(use_fallback=False, use_instant_fallback=False) == ["primary/model"]


def test_capacity_error_skips_to_fallback_without_retries():
    provider = ScriptedProvider(always={"primary/model": CapacityError("busy", status=503)})
    limiter = DummyLimiter()
    router = make_router(provider, limiter)
    result = asyncio.run(router.complete([{"role": "user", "content": "hi"}]))
    assert provider.calls == ["primary/model", "fallback/model"]
    assert result.text == "reply from fallback/model"
    assert result.tier == 1
    assert result.attempts == 2
    assert limiter.acquired == 2


def test_generic_error_retries_same_tier():
    provider = ScriptedProvider(scripts={"primary/model": [ProviderError("boom"), ProviderError("boom")]})
    router = make_router(provider)
    result = asyncio.run(router.complete([]))
    assert provider.calls == ["primary/model"] * 3
    assert result.model == "primary/model"
    assert result.tier == 0


def test_all_tiers_exhausted_raises_generation_failed():
    boom = ProviderError("boom")
    provider = ScriptedProvider(always={m: boom for m in CHAT.tiers()})
    router = make_router(provider)
    with pytest.raises(GenerationFailed) as exc:
        asyncio.run(router.complete([]))
    # each tier gets its first attempt plus max_retries retries
    assert len(provider.calls) == 3 * (CHAT.max_retries + 1)
    assert exc.value.last_error is boom
    assert exc.value.models == CHAT.tiers()


def test_single_effective_vision_tier():
    vision = ModelConfig(primary="v", fallback="v", instant_fallback="v", max_retries=2)
    provider = ScriptedProvider(always={"v": CapacityError("busy", status=429)})
    router = make_router(provider, configs={"chat": CHAT, "vision": vision})
    with pytest.raises(GenerationFailed):
        asyncio.run(router.complete([], "vision"))
    assert provider.calls == ["v"]


def test_fallback_tiers_are_explicit_arguments():
    provider = ScriptedProvider(always={"primary/model": CapacityError("busy")})
    router = make_router(provider)
    result = asyncio.run(router.complete([], use_fallback=False))
    assert provider.calls == ["primary/model", "instant/model"]
    assert result.model == "instant/model"


def test_limiter_timeout_propagates_unretried():
    provider = ScriptedProvider()
    router = make_router(provider, DummyLimiter(error=RateLimitTimeout(301.0, 300.0)))
    with pytest.raises(RateLimitTimeout):
        asyncio.run(router.complete([]))
    assert provider.calls == []


def test_unknown_kind_rejected():
    router = make_router(ScriptedProvider())
    with pytest.raises(ValueError):
        asyncio.run(router.complete([], "vision"))


def test_every_attempt_spends_a_limiter_token():
    async def _run():
        limiter = RateLimiter(max_tokens=10, window_seconds=60)
        provider = ScriptedProvider(scripts={"primary/model": [ProviderError("x")]})
        router = make_router(provider, limiter)
        await router.complete([])
        status = limiter.status()
        await limiter.aclose()
        return status

    assert asyncio.run(_run()).available_tokens == 8

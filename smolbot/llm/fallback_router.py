from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from ..errors import CapacityError, GenerationFailed
from ..logger_factory import get_logger
from ..rate_limiter import RateLimiter
from ..utils.logfmt import fmt
from .base import CompletionProvider, GenerationKind


@dataclass(frozen=True)
class ModelConfig:
    primary: str
    fallback: str = ""
    instant_fallback: str = ""
    max_retries: int = 3
    max_tokens: int = 256
    temperature: float = 0.7

    def tiers(self, *, use_fallback: bool = True, use_instant_fallback: bool = True) -> list[str]:
        """Return the effective model chain, collapsing repeated or empty ids."""
        chain = [self.primary]
        if use_fallback:
            chain.append(self.fallback)
        if use_instant_fallback:
            chain.append(self.instant_fallback)
        out: list[str] = []
        for m in chain:
            if m and m not in out:
                out.append(m)
        return out


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    tier: int
    attempts: int


class ModelFallbackRouter:
    """Runs a generation through primary → fallback → instant-fallback tiers.

    Every provider call first takes a token from the shared :class:`RateLimiter`.
    A capacity error skips straight to the next tier; any other error retries the same
    tier up to ``max_retries`` times. A limiter timeout is not retried and reaches the
    caller unchanged.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        limiter: RateLimiter,
        configs: Mapping[str, ModelConfig],
        *,
        retry_backoff_seconds: float = 0.25,
    ):
        self.provider = provider
        self.limiter = limiter
        self.configs = dict(configs)
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self.log = get_logger("FallbackRouter")

    def _backoff(self, attempt: int) -> float:
        if self.retry_backoff_seconds <= 0:
            return 0.0
        backoff = self.retry_backoff_seconds * (2 ** attempt)
        return backoff + backoff * (0.5 + random.random() * 0.5)

    async def complete(
        self,
        prompt: list[dict],
        kind: GenerationKind = "chat",
        *,
        use_fallback: bool = True,
        use_instant_fallback: bool = True,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        context_fields: Optional[dict] = None,
    ) -> Completion:
        cfg = self.configs.get(kind)
        if cfg is None:
            raise ValueError(f"No model configuration for kind {kind!r}")
        models = cfg.tiers(use_fallback=use_fallback, use_instant_fallback=use_instant_fallback)
        cf = context_fields or {}
        corr = cf.get("correlation")
        last_error: Optional[BaseException] = None
        attempts = 0

        for tier, model in enumerate(models):
            for attempt in range(cfg.max_retries + 1):
                await self.limiter.acquire()
                attempts += 1
                start = time.monotonic()
                self.log.debug(
                    f"[llm-start] {fmt('kind', kind)} {fmt('model', model)} {fmt('tier', tier)} "
                    f"{fmt('attempt', attempt + 1)} {fmt('correlation', corr)}"
                )
                try:
                    text = await self.provider.complete(
                        model,
                        prompt,
                        kind,
                        max_tokens=max_tokens if max_tokens is not None else cfg.max_tokens,
                        temperature=temperature if temperature is not None else cfg.temperature,
                        context_fields=cf,
                    )
                except CapacityError as e:
                    last_error = e
                    self.log.warning(
                        f"[llm-capacity] {fmt('kind', kind)} {fmt('model', model)} {fmt('tier', tier)} "
                        f"{fmt('correlation', corr)}"
                    )
                    break
                except Exception as e:
                    last_error = e
                    self.log.warning(
                        f"[llm-error] {fmt('kind', kind)} {fmt('model', model)} {fmt('tier', tier)} "
                        f"{fmt('attempt', attempt + 1)} {fmt('error', repr(e))} {fmt('correlation', corr)}"
                    )
                    if attempt < cfg.max_retries:
                        delay = self._backoff(attempt)
                        if delay:
                            await asyncio.sleep(delay)
                    continue
                dur_ms = int((time.monotonic() - start) * 1000)
                self.log.info(
                    f"[llm-finish] {fmt('kind', kind)} {fmt('model', model)} {fmt('tier', tier)} "
                    f"{fmt('attempts', attempts)} {fmt('duration_ms', dur_ms)} {fmt('correlation', corr)}"
                )
                return Completion(text=text, model=model, tier=tier, attempts=attempts)
            self.log.error(f"[llm-model-exhausted] {fmt('model', model)} {fmt('tier', tier)} {fmt('correlation', corr)}")

        raise GenerationFailed(kind, models, last_error)

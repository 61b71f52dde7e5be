from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from .channel_cache import ChannelConversationCache
from .config_service import InterjectionSettings
from .context_builder import ContextAssembler
from .dispatch_scheduler import DispatchJob, DispatchScheduler
from .errors import SmolBotError
from .llm.fallback_router import ModelFallbackRouter
from .logger_factory import get_logger
from .models import CachedMessage
from .ports import MessageSink
from .prompt_template_engine import PromptTemplateEngine
from .utils.correlation import make_correlation_id
from .utils.logfmt import fmt


class InterjectionService:
    """Per-channel timers that periodically enqueue an unprompted, low-priority message."""

    def __init__(
        self,
        cache: ChannelConversationCache,
        assembler: ContextAssembler,
        router: ModelFallbackRouter,
        templates: PromptTemplateEngine,
        sink: MessageSink,
        scheduler: DispatchScheduler,
        settings: InterjectionSettings,
        *,
        priority: int = 0,
        window_size: int = 15,
        use_fallback: bool = True,
        use_instant_fallback: bool = True,
    ):
        self.cache = cache
        self.assembler = assembler
        self.router = router
        self.templates = templates
        self.sink = sink
        self.scheduler = scheduler
        self.settings = settings
        self.priority = priority
        self.window_size = window_size
        self.use_fallback = use_fallback
        self.use_instant_fallback = use_instant_fallback
        self._timers: Dict[str, asyncio.Task] = {}
        self.log = get_logger("Interjections")

    def channels(self) -> List[str]:
        return [cid for cid, t in self._timers.items() if not t.done()]

    def start(self, channel_id: str) -> bool:
        if not self.settings.enabled:
            return False
        self.stop(channel_id)
        self._timers[channel_id] = asyncio.get_running_loop().create_task(self._timer(channel_id))
        self.log.info(f"[interject-start] {fmt('channel', channel_id)} {fmt('interval_s', self.settings.interval_seconds)}")
        return True

    def stop(self, channel_id: str) -> None:
        t = self._timers.pop(channel_id, None)
        if t is not None and not t.done():
            t.cancel()
            self.log.info(f"[interject-stop] {fmt('channel', channel_id)}")

    async def stop_all(self) -> None:
        tasks = list(self._timers.values())
        for cid in list(self._timers):
            self.stop(cid)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _timer(self, channel_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.interval_seconds)
            self.trigger(channel_id)

    def trigger(self, channel_id: str) -> Optional[DispatchJob]:
        if not self.cache.get(channel_id):
            self.log.debug(f"[interject-skip] {fmt('channel', channel_id)} reason=empty-cache")
            return None
        return self.scheduler.enqueue(
            lambda: self.interject(channel_id),
            channel_id,
            self.priority,
            label=make_correlation_id(channel_id),
        )

    async def interject(self, channel_id: str) -> Optional[str]:
        snapshot = self.cache.get(channel_id)
        if not snapshot:
            return None
        corr = make_correlation_id(channel_id)
        transcript = await self.assembler.build(channel_id, snapshot, None, window_size=self.window_size)
        prompt = self.templates.interjection_prompt(self.settings.prompt, transcript.render())
        try:
            completion = await self.router.complete(
                prompt,
                "chat",
                use_fallback=self.use_fallback,
                use_instant_fallback=self.use_instant_fallback,
                max_tokens=self.settings.max_tokens,
                temperature=self.settings.temperature,
                context_fields={"correlation": corr, "channel": channel_id},
            )
        except SmolBotError as e:
            self.log.warning(f"[interject-failed] {fmt('channel', channel_id)} {e}")
            return None
        sent = await self.sink.send(channel_id, completion.text)
        self.cache.append(channel_id, CachedMessage.from_raw(sent))
        self.log.info(f"[interject-sent] {fmt('channel', channel_id)} {fmt('model', completion.model)}")
        return completion.text

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Dict, Optional, Set

from .channel_cache import ChannelConversationCache
from .dispatch_scheduler import DispatchJob, DispatchScheduler
from .image_processor import ImageProcessor
from .interjection_service import InterjectionService
from .logger_factory import get_logger
from .models import CachedMessage, RawMessage
from .ports import TranscriptSource
from .response_pipeline import ResponsePipeline
from .utils.correlation import make_correlation_id
from .utils.logfmt import fmt


class MessageHandler:
    """Entry point for every inbound message.

    Caches the message (after first-time channel initialization) and, when the message
    mentions or replies to the assistant, enqueues a response job.
    """

    def __init__(
        self,
        cache: ChannelConversationCache,
        scheduler: DispatchScheduler,
        pipeline: ResponsePipeline,
        source: Optional[TranscriptSource],
        *,
        assistant_id: str,
        images: Optional[ImageProcessor] = None,
        interjections: Optional[InterjectionService] = None,
        mention_priority: int = 10,
        reply_priority: int = 5,
        ignore_bots: bool = True,
        seen_limit: int = 1000,
    ):
        self.cache = cache
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.source = source
        self.assistant_id = str(assistant_id)
        self.images = images
        self.interjections = interjections
        self.mention_priority = mention_priority
        self.reply_priority = reply_priority
        self.ignore_bots = ignore_bots
        self._seen_limit = max(1, seen_limit)
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._processing: Set[str] = set()
        self._initialized: Set[str] = set()
        self._init_locks: Dict[str, asyncio.Lock] = {}
        self.log = get_logger("MessageHandler")

    def _remember(self, message_id: str) -> None:
        self._seen[message_id] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)

    async def _annotate(self, raw: RawMessage) -> tuple:
        if self.images is None or not raw.image_urls:
            return ()
        return tuple(await self.images.annotate(raw, correlation=make_correlation_id(raw.channel_id, raw.id)))

    async def ensure_channel(self, channel_id: str) -> None:
        """Hydrate from the store once per channel and backfill from history if short."""
        if channel_id in self._initialized:
            return
        lock = self._init_locks.setdefault(channel_id, asyncio.Lock())
        async with lock:
            if channel_id in self._initialized:
                return
            size = await self.cache.hydrate(channel_id)
            if size < self.cache.max_size and self.source is not None:
                try:
                    recent = await self.source.fetch_recent(channel_id, self.cache.max_size)
                except Exception as e:
                    self.log.warning(f"[channel-backfill-error] {fmt('channel', channel_id)} {e!r}")
                    recent = []
                added = 0
                for raw in sorted(recent, key=lambda r: r.created_at):
                    if self.cache.contains(channel_id, raw.id):
                        continue
                    self.cache.append(channel_id, CachedMessage.from_raw(raw, await self._annotate(raw)))
                    added += 1
                self.log.info(f"[channel-backfill] {fmt('channel', channel_id)} {fmt('added', added)}")
            self._initialized.add(channel_id)
            if self.interjections is not None:
                self.interjections.start(channel_id)

    async def _is_reply_to_assistant(self, channel_id: str, ref_id: Optional[str]) -> bool:
        if not ref_id:
            return False
        target = self.cache.find_by_id(ref_id, channel_id)
        if target is not None:
            return target.author_id == self.assistant_id
        if self.source is None:
            return False
        try:
            fetched = await self.source.fetch_one(channel_id, ref_id)
        except Exception as e:
            self.log.debug(f"[reply-target-unavailable] {fmt('channel', channel_id)} {fmt('message', ref_id)} {e!r}")
            return False
        return fetched.author_id == self.assistant_id

    async def handle(self, raw: RawMessage) -> Optional[DispatchJob]:
        if raw.author_id == self.assistant_id:
            return None
        if raw.id in self._processing or raw.id in self._seen:
            self.log.debug(f"[message-duplicate] {fmt('message', raw.id)}")
            return None
        self._processing.add(raw.id)
        try:
            await self.ensure_channel(raw.channel_id)
            cached = self.cache.find_by_id(raw.id, raw.channel_id)
            if cached is None:
                cached = CachedMessage.from_raw(raw, await self._annotate(raw))
                self.cache.append(raw.channel_id, cached)
            self._remember(raw.id)

            if self.ignore_bots and raw.author_is_bot:
                return None
            mentioned = self.assistant_id in raw.mention_ids
            replied = await self._is_reply_to_assistant(raw.channel_id, raw.reference_id)
            if not (mentioned or replied):
                return None
            corr = make_correlation_id(raw.channel_id, raw.id)
            priority = self.mention_priority if mentioned else self.reply_priority
            self.log.info(
                f"[message-addressed] {fmt('channel', raw.channel_id)} {fmt('mention', mentioned)} "
                f"{fmt('reply', replied)} {fmt('priority', priority)} {fmt('correlation', corr)}"
            )
            return self.scheduler.enqueue(
                lambda: self.pipeline.respond(raw.channel_id, cached, raw, correlation=corr),
                raw.channel_id,
                priority,
                label=corr,
            )
        finally:
            self._processing.discard(raw.id)

    def forget_channel(self, channel_id: str) -> None:
        """Drop initialization state so the next message re-runs hydrate/backfill."""
        self._initialized.discard(channel_id)
        if self.interjections is not None:
            self.interjections.stop(channel_id)

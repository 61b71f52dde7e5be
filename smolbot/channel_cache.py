from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import replace
from typing import Deque, Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable

from .cache_store import CacheStore, NullCacheStore
from .errors import PersistenceFailure
from .logger_factory import get_logger
from .models import CachedMessage, ChannelCache
from .utils.logfmt import fmt


@runtime_checkable
class CacheObserver(Protocol):
    def on_message_added(self, channel_id: str, message: CachedMessage) -> None: ...

    def on_message_evicted(self, channel_id: str, message: CachedMessage) -> None: ...

    def on_cache_cleared(self, channel_id: str) -> None: ...


class ChannelConversationCache:
    """Bounded per-channel message log.

    ``append``/``clear`` are synchronous and complete before any observer or store work
    is scheduled. Persistence runs in background tasks; a store failure is logged and the
    in-memory copy stays authoritative.
    """

    def __init__(
        self,
        max_size: int = 20,
        store: Optional[CacheStore] = None,
        *,
        persist_on_append: bool = True,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = int(max_size)
        self.store = store or NullCacheStore()
        self.persist_on_append = persist_on_append
        self._channels: Dict[str, Deque[CachedMessage]] = {}
        self._last_ids: Dict[str, Optional[str]] = {}
        self._observers: List[CacheObserver] = []
        self._bg_tasks: Set[asyncio.Task] = set()
        self._sync_task: Optional[asyncio.Task] = None
        self._flush_locks: Dict[str, asyncio.Lock] = {}
        self.log = get_logger("ChannelCache")

    # observers

    def add_observer(self, observer: CacheObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: CacheObserver) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def _notify(self, event: str, channel_id: str, *args) -> None:
        for obs in list(self._observers):
            try:
                getattr(obs, event)(channel_id, *args)
            except Exception as e:
                self.log.error(f"[cache-observer-error] {fmt('event', event)} {fmt('channel', channel_id)} {e!r}")

    # mutation

    def append(self, channel_id: str, message: CachedMessage) -> Optional[CachedMessage]:
        """Insert at the tail; returns the evicted message, if any."""
        dq = self._channels.setdefault(channel_id, deque())
        dq.append(message)
        self._last_ids[channel_id] = message.id
        evicted: Optional[CachedMessage] = None
        if len(dq) > self.max_size:
            evicted = dq.popleft()
        self._notify("on_message_added", channel_id, message)
        if evicted is not None:
            self.log.debug(f"[cache-evict] {fmt('channel', channel_id)} {fmt('message', evicted.id)}")
            self._notify("on_message_evicted", channel_id, evicted)
        if self.persist_on_append:
            self._schedule(self.flush(channel_id))
        return evicted

    def set_detailed_description(
        self, message_id: str, url: str, text: str, channel_id: Optional[str] = None
    ) -> bool:
        """Store a detailed image description on the cached message that carries ``url``."""
        order = [channel_id] if channel_id in self._channels else []
        order += [c for c in self._channels if c != channel_id]
        for cid in order:
            dq = self._channels[cid]
            for i, m in enumerate(dq):
                if m.id != message_id:
                    continue
                if not any(img.url == url for img in m.images):
                    return False
                images = tuple(
                    replace(img, detailed_description=text) if img.url == url else img for img in m.images
                )
                dq[i] = replace(m, images=images)
                if self.persist_on_append:
                    self._schedule(self.flush(cid))
                return True
        return False

    def clear(self, channel_id: str) -> bool:
        existed = self._channels.pop(channel_id, None) is not None
        self._last_ids.pop(channel_id, None)
        self._notify("on_cache_cleared", channel_id)
        self._schedule(self._delete(channel_id))
        self.log.info(f"[cache-clear] {fmt('channel', channel_id)} {fmt('existed', existed)}")
        return existed

    # queries

    def get(self, channel_id: str) -> Optional[List[CachedMessage]]:
        dq = self._channels.get(channel_id)
        if dq is None:
            return None
        return list(dq)

    def has_channel(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def channels(self) -> List[str]:
        return list(self._channels.keys())

    def size(self, channel_id: str) -> int:
        return len(self._channels.get(channel_id, ()))

    def last_message_id(self, channel_id: str) -> Optional[str]:
        return self._last_ids.get(channel_id)

    def find_by_id(self, message_id: str, channel_id: Optional[str] = None) -> Optional[CachedMessage]:
        """Look up a message by id; ``channel_id`` is searched first when given."""
        order: Iterable[str] = self._channels.keys()
        if channel_id is not None and channel_id in self._channels:
            order = [channel_id] + [c for c in self._channels if c != channel_id]
        for cid in order:
            for m in self._channels[cid]:
                if m.id == message_id:
                    return m
        return None

    def contains(self, channel_id: str, message_id: str) -> bool:
        return any(m.id == message_id for m in self._channels.get(channel_id, ()))

    def snapshot(self, channel_id: str) -> ChannelCache:
        return ChannelCache(messages=list(self._channels.get(channel_id, ())), last_message_id=self._last_ids.get(channel_id))

    # persistence

    async def hydrate(self, channel_id: str) -> int:
        """Merge persisted messages under any already in memory. Returns the resulting size."""
        try:
            loaded = await self.store.load(channel_id)
        except Exception as e:
            failure = PersistenceFailure("load", channel_id, e)
            self.log.error(f"[cache-hydrate-error] {failure}")
            return self.size(channel_id)
        if loaded is None:
            return self.size(channel_id)
        current = self._channels.get(channel_id, deque())
        seen = {m.id for m in current}
        merged = [m for m in loaded.messages if m.id not in seen] + list(current)
        dq: Deque[CachedMessage] = deque(merged[-self.max_size:])
        self._channels[channel_id] = dq
        if channel_id not in self._last_ids or self._last_ids[channel_id] is None:
            self._last_ids[channel_id] = loaded.last_message_id or (dq[-1].id if dq else None)
        self.log.info(f"[cache-hydrate] {fmt('channel', channel_id)} {fmt('loaded', len(loaded.messages))} {fmt('size', len(dq))}")
        return len(dq)

    async def flush(self, channel_id: str) -> bool:
        """Persist the channel's current contents. Flushes of one channel run one at a time."""
        lock = self._flush_locks.setdefault(channel_id, asyncio.Lock())
        async with lock:
            # Snapshot under the lock: the last flush writes the newest state
            if channel_id not in self._channels:
                return False
            snap = self.snapshot(channel_id)
            try:
                await self.store.save(channel_id, snap)
            except Exception as e:
                failure = PersistenceFailure("save", channel_id, e)
                self.log.error(f"[cache-flush-error] {failure}")
                return False
            return True

    async def flush_all(self) -> int:
        ok = 0
        for cid in self.channels():
            if await self.flush(cid):
                ok += 1
        if ok:
            self.log.debug(f"[cache-sync] {fmt('channels', ok)}")
        return ok

    async def _delete(self, channel_id: str) -> None:
        lock = self._flush_locks.setdefault(channel_id, asyncio.Lock())
        async with lock:
            try:
                await self.store.delete(channel_id)
            except Exception as e:
                self.log.error(f"[cache-delete-error] {PersistenceFailure('delete', channel_id, e)}")

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: skip background persistence
            coro.close()
            return
        task = loop.create_task(coro)
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)

    def start_periodic_sync(self, interval_seconds: float = 300.0) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            return

        async def _loop():
            while True:
                await asyncio.sleep(interval_seconds)
                await self.flush_all()

        self._sync_task = asyncio.get_running_loop().create_task(_loop())
        self.log.info(f"[cache-sync-start] {fmt('interval_s', interval_seconds)}")

    async def drain(self) -> None:
        """Wait for pending background persistence to finish."""
        while self._bg_tasks:
            await asyncio.gather(*list(self._bg_tasks), return_exceptions=True)

    async def close(self) -> None:
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        await self.drain()
        await self.flush_all()

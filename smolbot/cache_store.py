from __future__ import annotations

import asyncio
import json
import os
import re
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .logger_factory import get_logger
from .models import CachedMessage, ChannelCache, ImageAnnotation
from .utils.time_utils import now_utc, parse_iso, to_iso


def _safe_channel_key(channel_id: str) -> str:
    key = re.sub(r"[^A-Za-z0-9_-]", "_", str(channel_id))
    return key[:96] or "channel"


class CacheStore(ABC):
    """Persistence for channel caches. Errors propagate; the cache decides what to do with them."""

    @abstractmethod
    async def save(self, channel_id: str, cache: ChannelCache) -> None:
        ...

    @abstractmethod
    async def load(self, channel_id: str) -> Optional[ChannelCache]:
        ...

    @abstractmethod
    async def delete(self, channel_id: str) -> None:
        ...

    async def aclose(self) -> None:
        return None


class NullCacheStore(CacheStore):
    async def save(self, channel_id: str, cache: ChannelCache) -> None:
        return None

    async def load(self, channel_id: str) -> Optional[ChannelCache]:
        return None

    async def delete(self, channel_id: str) -> None:
        return None


class JsonCacheStore(CacheStore):
    """One ``<channel>.json`` file per channel under ``base_path``."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.log = get_logger("JsonCacheStore")

    def _path(self, channel_id: str) -> Path:
        return self.base_path / f"{_safe_channel_key(channel_id)}.json"

    def _write(self, channel_id: str, data: dict) -> None:
        path = self._path(channel_id)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.base_path, prefix=f"{path.stem}.", suffix=".tmp", delete=False
        ) as f:
            tmp = f.name
            try:
                json.dump(data, f, indent=2, ensure_ascii=False)
            except Exception:
                f.close()
                os.unlink(tmp)
                raise
        os.replace(tmp, path)

    def _read(self, channel_id: str) -> Optional[dict]:
        path = self._path(channel_id)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    async def save(self, channel_id: str, cache: ChannelCache) -> None:
        await asyncio.to_thread(self._write, channel_id, cache.to_dict())
        self.log.debug(f"cache-saved channel={channel_id} messages={len(cache.messages)}")

    async def load(self, channel_id: str) -> Optional[ChannelCache]:
        data = await asyncio.to_thread(self._read, channel_id)
        if data is None:
            return None
        return ChannelCache.from_dict(data)

    async def delete(self, channel_id: str) -> None:
        await asyncio.to_thread(self._path(channel_id).unlink, True)
        self.log.debug(f"cache-deleted channel={channel_id}")


_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    content TEXT NOT NULL,
    author_id TEXT NOT NULL,
    author_name TEXT NOT NULL,
    author_is_bot INTEGER NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL,
    referenced_message_id TEXT,
    PRIMARY KEY (channel_id, id)
);
CREATE TABLE IF NOT EXISTS image_analyses (
    channel_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    url TEXT NOT NULL,
    light_analysis TEXT NOT NULL,
    detailed_analysis TEXT,
    PRIMARY KEY (channel_id, message_id, idx)
);
CREATE TABLE IF NOT EXISTS channels (
    channel_id TEXT PRIMARY KEY,
    last_message_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel_id, position);
"""


class SqliteCacheStore(CacheStore):
    """SQLite-backed store; each save replaces the channel's rows in one transaction."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.log = get_logger("SqliteCacheStore")
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _save_sync(self, channel_id: str, cache: ChannelCache) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM image_analyses WHERE channel_id = ?", (channel_id,))
                conn.execute("DELETE FROM messages WHERE channel_id = ?", (channel_id,))
                for pos, m in enumerate(cache.messages):
                    conn.execute(
                        "INSERT OR REPLACE INTO messages (id, channel_id, position, content, author_id, author_name, "
                        "author_is_bot, timestamp, referenced_message_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (m.id, channel_id, pos, m.content, m.author_id, m.author_name, int(m.author_is_bot),
                         to_iso(m.timestamp), m.referenced_message_id),
                    )
                    for idx, img in enumerate(m.images):
                        conn.execute(
                            "INSERT OR REPLACE INTO image_analyses (channel_id, message_id, idx, url, light_analysis, "
                            "detailed_analysis) VALUES (?, ?, ?, ?, ?, ?)",
                            (channel_id, m.id, idx, img.url, img.light_description, img.detailed_description),
                        )
                conn.execute(
                    "INSERT OR REPLACE INTO channels (channel_id, last_message_id) VALUES (?, ?)",
                    (channel_id, cache.last_message_id),
                )
        finally:
            conn.close()

    def _load_sync(self, channel_id: str) -> Optional[ChannelCache]:
        conn = self._connect()
        try:
            chan = conn.execute(
                "SELECT last_message_id FROM channels WHERE channel_id = ?", (channel_id,)
            ).fetchone()
            rows = conn.execute(
                "SELECT id, content, author_id, author_name, author_is_bot, timestamp, referenced_message_id "
                "FROM messages WHERE channel_id = ? ORDER BY position ASC",
                (channel_id,),
            ).fetchall()
            if chan is None and not rows:
                return None
            images: dict[str, list[ImageAnnotation]] = {}
            for mid, url, light, detailed in conn.execute(
                "SELECT message_id, url, light_analysis, detailed_analysis FROM image_analyses "
                "WHERE channel_id = ? ORDER BY message_id, idx",
                (channel_id,),
            ):
                images.setdefault(mid, []).append(
                    ImageAnnotation(url=url, light_description=light, detailed_description=detailed)
                )
        finally:
            conn.close()
        messages = [
            CachedMessage(
                id=mid,
                content=content,
                author_id=author_id,
                author_name=author_name,
                timestamp=parse_iso(ts) or now_utc(),
                images=tuple(images.get(mid, ())),
                referenced_message_id=ref,
                author_is_bot=bool(is_bot),
            )
            for (mid, content, author_id, author_name, is_bot, ts, ref) in rows
        ]
        return ChannelCache(messages=messages, last_message_id=chan[0] if chan else None)

    def _delete_sync(self, channel_id: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM image_analyses WHERE channel_id = ?", (channel_id,))
                conn.execute("DELETE FROM messages WHERE channel_id = ?", (channel_id,))
                conn.execute("DELETE FROM channels WHERE channel_id = ?", (channel_id,))
        finally:
            conn.close()

    async def save(self, channel_id: str, cache: ChannelCache) -> None:
        await asyncio.to_thread(self._save_sync, channel_id, cache)

    async def load(self, channel_id: str) -> Optional[ChannelCache]:
        cache = await asyncio.to_thread(self._load_sync, channel_id)
        if cache is not None:
            self.log.info(f"cache-loaded channel={channel_id} messages={len(cache.messages)}")
        return cache

    async def delete(self, channel_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, channel_id)


def build_cache_store(backend: str, *, data_dir: str | Path = "data", sqlite_path: str | Path | None = None) -> CacheStore:
    b = (backend or "none").strip().lower()
    if b == "json":
        return JsonCacheStore(Path(data_dir) / "channels")
    if b == "sqlite":
        return SqliteCacheStore(sqlite_path or Path(data_dir) / "cache.db")
    return NullCacheStore()

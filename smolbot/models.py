from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .utils.time_utils import ensure_aware, now_utc, parse_iso, to_iso


@dataclass(frozen=True)
class ImageAnnotation:
    url: str
    light_description: str
    detailed_description: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"url": self.url, "light_description": self.light_description}
        if self.detailed_description:
            data["detailed_description"] = self.detailed_description
        return data

    @classmethod
    def from_dict(cls, entry: dict) -> "ImageAnnotation":
        return cls(
            url=str(entry["url"]),
            light_description=str(entry.get("light_description", "")),
            detailed_description=entry.get("detailed_description"),
        )


@dataclass(frozen=True)
class CachedMessage:
    id: str
    content: str
    author_id: str
    author_name: str
    timestamp: datetime
    images: tuple[ImageAnnotation, ...] = ()
    referenced_message_id: Optional[str] = None
    author_is_bot: bool = False

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "content": self.content,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "timestamp": to_iso(self.timestamp),
            "images": [img.to_dict() for img in self.images],
            "author_is_bot": self.author_is_bot,
        }
        if self.referenced_message_id:
            data["referenced_message_id"] = self.referenced_message_id
        return data

    @classmethod
    def from_dict(cls, entry: dict) -> "CachedMessage":
        return cls(
            id=str(entry["id"]),
            content=entry.get("content") or "",
            author_id=str(entry.get("author_id", "")),
            author_name=entry.get("author_name") or "unknown",
            timestamp=parse_iso(entry.get("timestamp")) or now_utc(),
            images=tuple(ImageAnnotation.from_dict(i) for i in entry.get("images") or []),
            referenced_message_id=entry.get("referenced_message_id"),
            author_is_bot=bool(entry.get("author_is_bot", False)),
        )

    @classmethod
    def from_raw(cls, raw: "RawMessage", images: tuple[ImageAnnotation, ...] = ()) -> "CachedMessage":
        return cls(
            id=raw.id,
            content=raw.content,
            author_id=raw.author_id,
            author_name=raw.author_name,
            timestamp=ensure_aware(raw.created_at) or now_utc(),
            images=tuple(images),
            referenced_message_id=raw.reference_id,
            author_is_bot=raw.author_is_bot,
        )


@dataclass
class ChannelCache:
    """Point-in-time copy of one channel's messages, as exchanged with a cache store."""

    messages: list[CachedMessage] = field(default_factory=list)
    last_message_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "last_message_id": self.last_message_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChannelCache":
        msgs = [CachedMessage.from_dict(m) for m in data.get("messages") or []]
        return cls(messages=msgs, last_message_id=data.get("last_message_id"))


@dataclass(frozen=True)
class RawMessage:
    """Platform-neutral view of a chat message as delivered by the transcript source."""

    id: str
    channel_id: str
    content: str
    author_id: str
    author_name: str
    created_at: datetime
    author_is_bot: bool = False
    reference_id: Optional[str] = None
    mention_ids: tuple[str, ...] = ()
    image_urls: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChannelCapabilities:
    can_show_typing: bool = False

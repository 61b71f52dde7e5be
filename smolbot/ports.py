"""Contracts the conversation core consumes from the chat platform.

The Discord adapter implements all three; tests substitute small fakes.
"""

from __future__ import annotations

from typing import Optional, Protocol

from .models import ChannelCapabilities, RawMessage


class TranscriptSource(Protocol):
    """Read access to channel history, used to backfill caches and resolve reply targets."""

    async def fetch_recent(self, channel_id: str, limit: int) -> list[RawMessage]:
        ...

    async def fetch_one(self, channel_id: str, message_id: str) -> RawMessage:
        ...


class MessageSink(Protocol):
    async def send(self, channel_id: str, text: str, reply_to: Optional[str] = None) -> RawMessage:
        ...


class TypingIndicator(Protocol):
    def capabilities(self, channel_id: str) -> ChannelCapabilities:
        ...

    async def send_typing(self, channel_id: str) -> None:
        ...

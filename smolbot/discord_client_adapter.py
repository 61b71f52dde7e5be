from __future__ import annotations

from typing import Optional

import discord
from discord import Intents
from discord.ext import commands

from .image_processor import extract_image_urls
from .models import ChannelCapabilities, RawMessage
from .utils.text_split import split_for_discord


def to_raw(message: discord.Message) -> RawMessage:
    author = message.author
    ref_id = None
    if message.reference is not None and message.reference.message_id is not None:
        ref_id = str(message.reference.message_id)
    return RawMessage(
        id=str(message.id),
        channel_id=str(message.channel.id),
        content=message.content or "",
        author_id=str(author.id),
        author_name=getattr(author, "display_name", None) or author.name,
        created_at=message.created_at,
        author_is_bot=bool(author.bot),
        reference_id=ref_id,
        mention_ids=tuple(str(u.id) for u in message.mentions),
        image_urls=tuple(extract_image_urls(message)),
    )


class DiscordClientAdapter(commands.Bot):
    """discord.py bot that serves as transcript source, message sink and typing indicator.

    The message handler is attached after construction because the handler itself
    depends on this adapter.
    """

    def __init__(self, intents_cfg: dict, logger, *, char_limit: int = 2000, max_parts: int = 2):
        intents = Intents.default()
        intents.message_content = bool(intents_cfg.get("message_content", True))
        intents.members = bool(intents_cfg.get("members", False))
        super().__init__(command_prefix=commands.when_mentioned_or("!"), intents=intents)
        self.handler = None
        self.services = None
        self.char_limit = char_limit
        self.max_parts = max_parts
        self.log = logger

    def attach(self, handler, services=None) -> None:
        self.handler = handler
        self.services = services

    async def setup_hook(self) -> None:
        try:
            await self.load_extension("smolbot.cogs.admin")
        except commands.ExtensionError as e:
            self.log.error(f"Failed to load cog smolbot.cogs.admin: {e}")
        try:
            synced = await self.tree.sync()
            self.log.info(f"slash-commands-synced count={len(synced)}")
        except discord.HTTPException as e:
            self.log.error(f"Slash command sync failed: {e}")

    async def on_ready(self):
        if self.user is not None:
            self.log.info(f"Logged in as {self.user} (ID: {self.user.id})")

    async def on_message(self, message: discord.Message):
        await self.process_commands(message)
        if self.user is not None and message.author.id == self.user.id:
            return
        if self.handler is None:
            return
        try:
            await self.handler.handle(to_raw(message))
        except Exception as e:
            self.log.error(f"[on-message-error] channel={message.channel.id} message={message.id} {e!r}")

    # ---------- ports ----------

    async def _channel(self, channel_id: str):
        ch = self.get_channel(int(channel_id))
        if ch is None:
            ch = await self.fetch_channel(int(channel_id))
        return ch

    async def fetch_recent(self, channel_id: str, limit: int) -> list[RawMessage]:
        ch = await self._channel(channel_id)
        out: list[RawMessage] = []
        async for m in ch.history(limit=limit):
            out.append(to_raw(m))
        return out

    async def fetch_one(self, channel_id: str, message_id: str) -> RawMessage:
        ch = await self._channel(channel_id)
        m = await ch.fetch_message(int(message_id))
        return to_raw(m)

    async def send(self, channel_id: str, text: str, reply_to: Optional[str] = None) -> RawMessage:
        ch = await self._channel(channel_id)
        sent = None
        for i, part in enumerate(split_for_discord(text, self.char_limit, self.max_parts)):
            ref = None
            if i == 0 and reply_to:
                ref = discord.MessageReference(
                    message_id=int(reply_to), channel_id=int(channel_id), fail_if_not_exists=False
                )
            sent = await ch.send(part, reference=ref) if ref is not None else await ch.send(part)
        return to_raw(sent)

    def capabilities(self, channel_id: str) -> ChannelCapabilities:
        ch = self.get_channel(int(channel_id))
        return ChannelCapabilities(can_show_typing=isinstance(ch, discord.abc.Messageable))

    async def send_typing(self, channel_id: str) -> None:
        ch = await self._channel(channel_id)
        await ch.typing()

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from .channel_cache import ChannelConversationCache
from .errors import ReferenceUnavailable
from .logger_factory import get_logger
from .models import CachedMessage, ImageAnnotation, RawMessage
from .ports import TranscriptSource
from .utils.logfmt import fmt

Provenance = Literal["self", "participant", "automated"]

Annotator = Callable[[RawMessage], Awaitable[Sequence[ImageAnnotation]]]

CURRENT_HEADER = "=== Current Message ==="
UNAVAILABLE_REPLY = "[Replying to unavailable message]"


@dataclass(frozen=True)
class TranscriptEntry:
    message: CachedMessage
    provenance: Provenance
    text: str
    is_current: bool = False
    reply_unavailable: bool = False


@dataclass
class Transcript:
    entries: List[TranscriptEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    @property
    def message_ids(self) -> List[str]:
        return [e.message.id for e in self.entries]

    def render(self) -> str:
        parts: List[str] = []
        for e in self.entries:
            if e.is_current:
                parts.append(f"\n{CURRENT_HEADER}")
            parts.append(e.text)
        return "\n\n".join(parts)


def _identity(msg: CachedMessage) -> str:
    return f"<@{msg.author_id}> ({msg.author_name})"


def _image_lines(images: Sequence[ImageAnnotation]) -> List[str]:
    return [f"[Image: {img.light_description}]" for img in images]


class ContextAssembler:
    """Turns a cache snapshot plus the message being answered into a rendered transcript.

    Reply targets are resolved from the current message, then the cache, then a
    single-message fetch. A target that cannot be resolved renders as an
    "unavailable" marker; the reply relationship itself is always kept.
    """

    def __init__(
        self,
        cache: ChannelConversationCache,
        source: Optional[TranscriptSource],
        *,
        assistant_id: str,
        assistant_label: str = "SmolBot",
        annotate: Optional[Annotator] = None,
    ):
        self.cache = cache
        self.source = source
        self.assistant_id = str(assistant_id)
        self.assistant_label = assistant_label
        self.annotate = annotate
        self.log = get_logger("ContextAssembler")

    def provenance_of(self, msg: CachedMessage) -> Provenance:
        if msg.author_id == self.assistant_id:
            return "self"
        if msg.author_is_bot:
            return "automated"
        return "participant"

    def _label(self, prov: Provenance) -> str:
        if prov == "self":
            return f"[{self.assistant_label}]"
        if prov == "automated":
            return "[Bot]"
        return "[User]"

    async def build(
        self,
        channel_id: str,
        snapshot: Optional[Sequence[CachedMessage]],
        current: Optional[CachedMessage] = None,
        *,
        window_size: int = 15,
        exclude_current: bool = False,
    ) -> Transcript:
        # sorted() is stable, so equal timestamps keep insertion order
        ordered = sorted(snapshot or (), key=lambda m: m.timestamp)
        if window_size > 0:
            ordered = ordered[-window_size:]
        else:
            ordered = []
        if current is not None:
            ordered = [m for m in ordered if m.id != current.id]
            if not exclude_current:
                ordered.append(current)

        resolved: Dict[str, Optional[CachedMessage]] = {}
        entries: List[TranscriptEntry] = []
        for msg in ordered:
            is_current = current is not None and msg.id == current.id
            body = msg.content
            unavailable = False
            if msg.referenced_message_id:
                target = await self._resolve(channel_id, msg.referenced_message_id, current, resolved)
                if target is None:
                    body = f"{UNAVAILABLE_REPLY}: {msg.content}"
                    unavailable = True
                else:
                    body = f"{self._quote(target)}: {msg.content}"
            prov = self.provenance_of(msg)
            prefix = ">>> " if is_current else ""
            line = f"{self._label(prov)} {_identity(msg)}: {prefix}{body}"
            text = "\n".join([line, *_image_lines(msg.images)])
            entries.append(
                TranscriptEntry(message=msg, provenance=prov, text=text, is_current=is_current, reply_unavailable=unavailable)
            )
        self.log.debug(
            f"[context-build] {fmt('channel', channel_id)} {fmt('entries', len(entries))} "
            f"{fmt('has_current', current is not None and not exclude_current)}"
        )
        return Transcript(entries=entries)

    def _quote(self, target: CachedMessage) -> str:
        quoted = f"{_identity(target)}: {target.content}"
        imgs = _image_lines(target.images)
        if imgs:
            quoted = "\n".join([quoted, *imgs])
        return f"[Replying to {quoted}]"

    async def _resolve(
        self,
        channel_id: str,
        message_id: str,
        current: Optional[CachedMessage],
        memo: Dict[str, Optional[CachedMessage]],
    ) -> Optional[CachedMessage]:
        if message_id in memo:
            return memo[message_id]
        if current is not None and current.id == message_id:
            memo[message_id] = current
            return current
        found = self.cache.find_by_id(message_id, channel_id)
        if found is None:
            try:
                found = await self._fetch(channel_id, message_id)
            except ReferenceUnavailable as e:
                self.log.warning(f"[context-reply-unavailable] {e}")
                found = None
        memo[message_id] = found
        return found

    async def _fetch(self, channel_id: str, message_id: str) -> CachedMessage:
        if self.source is None:
            raise ReferenceUnavailable(channel_id, message_id, "no transcript source")
        try:
            raw = await self.source.fetch_one(channel_id, message_id)
        except Exception as e:
            raise ReferenceUnavailable(channel_id, message_id, repr(e)) from e
        images: Sequence[ImageAnnotation] = ()
        if self.annotate is not None and raw.image_urls:
            try:
                images = await self.annotate(raw)
            except Exception as e:
                self.log.warning(f"[context-annotate-error] {fmt('message', message_id)} {e!r}")
        fetched = CachedMessage.from_raw(raw, images=tuple(images))
        self.cache.append(channel_id, fetched)
        self.log.debug(f"[context-reply-fetched] {fmt('channel', channel_id)} {fmt('message', message_id)}")
        return fetched

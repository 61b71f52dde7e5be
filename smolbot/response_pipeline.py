from __future__ import annotations

import asyncio
import time
from typing import Optional, Tuple

from .channel_cache import ChannelConversationCache
from .context_builder import ContextAssembler
from .errors import SmolBotError
from .image_processor import ANALYSIS_FAILED, ImageProcessor
from .llm.fallback_router import Completion, ModelFallbackRouter
from .logger_factory import get_logger, is_full_enabled
from .models import CachedMessage, RawMessage
from .ports import MessageSink, TypingIndicator
from .prompt_template_engine import PromptTemplateEngine
from .utils.logfmt import fmt

APOLOGY_TEXT = "I encountered an error while processing your message."


class ResponsePipeline:
    """Builds context, generates and sends a reply for one addressed message.

    A terminal failure (all tiers exhausted, limiter ceiling hit, ``timeout_seconds``
    exceeded, job cancelled) produces exactly one apology reply. Only cancellation is
    re-raised to the scheduler.
    """

    def __init__(
        self,
        cache: ChannelConversationCache,
        assembler: ContextAssembler,
        router: ModelFallbackRouter,
        templates: PromptTemplateEngine,
        sink: MessageSink,
        typing: Optional[TypingIndicator] = None,
        images: Optional[ImageProcessor] = None,
        *,
        window_size: int = 20,
        use_fallback: bool = True,
        use_instant_fallback: bool = True,
        apology_text: str = APOLOGY_TEXT,
        timeout_seconds: Optional[float] = None,
    ):
        self.cache = cache
        self.assembler = assembler
        self.router = router
        self.templates = templates
        self.sink = sink
        self.typing = typing
        self.images = images
        self.window_size = window_size
        self.use_fallback = use_fallback
        self.use_instant_fallback = use_instant_fallback
        self.apology_text = apology_text
        self.timeout_seconds = timeout_seconds
        self.log = get_logger("ResponsePipeline")

    async def _show_typing(self, channel_id: str) -> None:
        if self.typing is None or not self.typing.capabilities(channel_id).can_show_typing:
            return
        try:
            await self.typing.send_typing(channel_id)
        except Exception as e:
            self.log.warning(f"[typing-failed] {fmt('channel', channel_id)} {e!r}")

    def _detail_target(
        self, channel_id: str, current: CachedMessage, raw: Optional[RawMessage]
    ) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(message_id, url)`` of the image to analyze in detail."""
        if raw is not None and raw.image_urls:
            return current.id, raw.image_urls[0]
        if current.images:
            return current.id, current.images[0].url
        if current.referenced_message_id:
            ref = self.cache.find_by_id(current.referenced_message_id, channel_id)
            if ref is not None and ref.images:
                return ref.id, ref.images[0].url
        return None, None

    async def _image_context(
        self, channel_id: str, current: CachedMessage, raw: Optional[RawMessage], correlation: Optional[str]
    ) -> Optional[str]:
        if self.images is None:
            return None
        message_id, url = self._detail_target(channel_id, current, raw)
        if not url:
            return None
        cached = self.cache.find_by_id(message_id, channel_id) if message_id else None
        if cached is not None:
            for img in cached.images:
                if img.url == url and img.detailed_description:
                    return img.detailed_description
        text = await self.images.analyze_detailed(url, correlation=correlation)
        if text != ANALYSIS_FAILED and message_id:
            self.cache.set_detailed_description(message_id, url, text, channel_id)
        return text

    async def _generate(
        self, channel_id: str, current: CachedMessage, raw: Optional[RawMessage], correlation: Optional[str]
    ) -> Completion:
        transcript = await self.assembler.build(
            channel_id,
            self.cache.get(channel_id) or [],
            current,
            window_size=self.window_size,
            exclude_current=True,
        )
        image_context = await self._image_context(channel_id, current, raw, correlation)
        history = transcript.render()
        if is_full_enabled():
            self.log.debug(f"[prompt-context] {fmt('correlation', correlation)} {fmt('history', history)}")
        prompt = self.templates.reply_prompt(history, current, image_context)
        return await self.router.complete(
            prompt,
            "chat",
            use_fallback=self.use_fallback,
            use_instant_fallback=self.use_instant_fallback,
            context_fields={"correlation": correlation, "channel": channel_id},
        )

    async def respond(
        self,
        channel_id: str,
        current: CachedMessage,
        raw: Optional[RawMessage] = None,
        *,
        correlation: Optional[str] = None,
    ) -> Optional[RawMessage]:
        start = time.monotonic()
        await self._show_typing(channel_id)
        try:
            if self.timeout_seconds:
                completion = await asyncio.wait_for(
                    self._generate(channel_id, current, raw, correlation), timeout=self.timeout_seconds
                )
            else:
                completion = await self._generate(channel_id, current, raw, correlation)
        except asyncio.TimeoutError:
            self.log.error(
                f"[respond-timeout] {fmt('channel', channel_id)} {fmt('correlation', correlation)} "
                f"{fmt('timeout_s', self.timeout_seconds)}"
            )
            await self._apologize(channel_id, current.id, correlation)
            return None
        except SmolBotError as e:
            self.log.error(f"[respond-failed] {fmt('channel', channel_id)} {fmt('correlation', correlation)} {e}")
            await self._apologize(channel_id, current.id, correlation)
            return None
        except asyncio.CancelledError:
            self.log.error(f"[respond-cancelled] {fmt('channel', channel_id)} {fmt('correlation', correlation)}")
            await self._apologize(channel_id, current.id, correlation)
            raise

        sent = await self.sink.send(channel_id, completion.text, reply_to=current.id)
        self.cache.append(channel_id, CachedMessage.from_raw(sent))
        self.log.info(
            f"[respond-sent] {fmt('channel', channel_id)} {fmt('model', completion.model)} "
            f"{fmt('tier', completion.tier)} {fmt('duration_ms', int((time.monotonic() - start) * 1000))} "
            f"{fmt('correlation', correlation)}"
        )
        return sent

    async def _apologize(self, channel_id: str, reply_to: str, correlation: Optional[str]) -> None:
        try:
            await self.sink.send(channel_id, self.apology_text, reply_to=reply_to)
        except Exception as e:
            self.log.error(f"[apology-failed] {fmt('channel', channel_id)} {fmt('correlation', correlation)} {e!r}")

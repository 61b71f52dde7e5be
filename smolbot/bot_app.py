from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .cache_store import CacheStore, build_cache_store
from .channel_cache import ChannelConversationCache
from .config_service import ConfigService
from .context_builder import ContextAssembler
from .discord_client_adapter import DiscordClientAdapter
from .dispatch_scheduler import DispatchScheduler
from .image_processor import ImageProcessor
from .interjection_service import InterjectionService
from .llm.base import CompletionProvider
from .llm.fallback_router import ModelFallbackRouter
from .llm.groq_client import GroqClient
from .logger_factory import configure_logging, get_logger
from .message_handler import MessageHandler
from .persona_service import PersonaService
from .ports import MessageSink, TranscriptSource, TypingIndicator
from .prompt_template_engine import PromptTemplateEngine
from .rate_limiter import RateLimiter
from .response_pipeline import ResponsePipeline
from .utils.logfmt import fmt_many


@dataclass
class AppServices:
    """The handler graph, built once at startup and passed by reference."""

    config: ConfigService
    store: CacheStore
    cache: ChannelConversationCache
    limiter: RateLimiter
    provider: CompletionProvider
    router: ModelFallbackRouter
    scheduler: DispatchScheduler
    assembler: ContextAssembler
    images: Optional[ImageProcessor]
    templates: PromptTemplateEngine
    pipeline: ResponsePipeline
    interjections: InterjectionService
    handler: MessageHandler

    async def aclose(self) -> None:
        await self.interjections.stop_all()
        await self.scheduler.close()
        await self.cache.close()
        await self.limiter.aclose()
        await self.provider.aclose()
        await self.store.aclose()


def build_app(
    config: ConfigService,
    *,
    assistant_id: str,
    source: Optional[TranscriptSource],
    sink: MessageSink,
    typing: Optional[TypingIndicator] = None,
    provider: Optional[CompletionProvider] = None,
    store: Optional[CacheStore] = None,
) -> AppServices:
    cache_cfg = config.cache()
    limits = config.rate_limits()
    sched = config.scheduler()
    use_fb = config.use_fallback()
    use_ifb = config.use_instant_fallback()

    store = store or build_cache_store(cache_cfg.backend, data_dir=cache_cfg.data_dir, sqlite_path=cache_cfg.sqlite_path)
    cache = ChannelConversationCache(max_size=cache_cfg.max_size, store=store)
    limiter = RateLimiter(limits.max_requests, limits.window_seconds, limits.max_wait_seconds)
    provider = provider or GroqClient(base_url=config.model_base_url(), timeout=config.model_timeout())
    router = ModelFallbackRouter(provider, limiter, config.model_configs())
    scheduler = DispatchScheduler(sched.max_concurrent, sched.min_delay_seconds, sched.job_timeout_seconds)

    images = None
    if config.vision_enabled():
        images = ImageProcessor(router, use_fallback=use_fb, use_instant_fallback=use_ifb)
    assembler = ContextAssembler(
        cache,
        source,
        assistant_id=assistant_id,
        assistant_label=config.assistant_label(),
        annotate=images.annotate if images is not None else None,
    )
    templates = PromptTemplateEngine(
        config.system_prompt_path(),
        PersonaService(config.persona_path()),
        assistant_id=assistant_id,
        assistant_label=config.assistant_label(),
    )
    pipeline = ResponsePipeline(
        cache,
        assembler,
        router,
        templates,
        sink,
        typing,
        images,
        window_size=config.mention_window_size(),
        use_fallback=use_fb,
        use_instant_fallback=use_ifb,
        timeout_seconds=sched.response_timeout_seconds or None,
    )
    interjections = InterjectionService(
        cache,
        assembler,
        router,
        templates,
        sink,
        scheduler,
        config.interjections(),
        priority=sched.interjection_priority,
        window_size=config.window_size(),
        use_fallback=use_fb,
        use_instant_fallback=use_ifb,
    )
    handler = MessageHandler(
        cache,
        scheduler,
        pipeline,
        source,
        assistant_id=assistant_id,
        images=images,
        interjections=interjections,
        mention_priority=sched.mention_priority,
        reply_priority=sched.reply_priority,
        ignore_bots=config.ignore_bots(),
    )
    return AppServices(
        config=config,
        store=store,
        cache=cache,
        limiter=limiter,
        provider=provider,
        router=router,
        scheduler=scheduler,
        assembler=assembler,
        images=images,
        templates=templates,
        pipeline=pipeline,
        interjections=interjections,
        handler=handler,
    )


def _copy_example(target: str, example: str) -> None:
    if not os.path.exists(target) and os.path.exists(example):
        shutil.copyfile(example, target)


async def main() -> None:
    _copy_example(".env", ".env.example")
    load_dotenv()
    _copy_example("config.yaml", "config.example.yaml")

    config = ConfigService("config.yaml")
    configure_logging(
        level=config.log_level(),
        tz=config.log_timezone(),
        lib_log_level=config.lib_log_level(),
        console_to_file=config.log_console(),
        error_file=config.log_errors(),
    )
    logger = get_logger("bot_app")

    token = os.getenv("DISCORD_TOKEN")
    client_id = os.getenv("DISCORD_CLIENT_ID")
    if not token:
        raise RuntimeError("Missing DISCORD_TOKEN in environment")
    if not client_id:
        raise RuntimeError("Missing DISCORD_CLIENT_ID in environment")

    client = DiscordClientAdapter(
        intents_cfg=config.discord_intents(),
        logger=get_logger("Discord"),
        char_limit=config.discord_message_char_limit(),
    )
    services = build_app(config, assistant_id=client_id, source=client, sink=client, typing=client)
    client.attach(services.handler, services)
    services.cache.start_periodic_sync(config.cache().sync_interval_seconds)

    cache_cfg = config.cache()
    sched = config.scheduler()
    logger.info(
        f"[startup] {fmt_many(cache_backend=cache_cfg.backend, cache_size=cache_cfg.max_size, max_concurrent=sched.max_concurrent, http=config.http_enabled())}"
    )

    tasks: list = [client.start(token)]
    if config.http_enabled():
        from .http_app import create_app
        import uvicorn

        server = uvicorn.Server(
            uvicorn.Config(create_app(services), host=config.html_host(), port=config.html_port(), log_level="info")
        )
        tasks.append(server.serve())
        logger.info(f"Status server: http://{config.html_host()}:{config.html_port()}")

    try:
        await asyncio.gather(*tasks)
    finally:
        logger.info("[shutdown] flushing caches")
        await services.aclose()
        if not client.is_closed():
            await client.close()


if __name__ == "__main__":
    asyncio.run(main())

from __future__ import annotations

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .logger_factory import get_logger
from .utils.time_utils import to_iso


class LimiterOut(BaseModel):
    max_tokens: int
    available_tokens: int
    queue_length: int
    window_remaining_seconds: float


class SchedulerOut(BaseModel):
    max_concurrent: int
    queued: int
    running: int
    completed: int
    failed: int


class CacheOut(BaseModel):
    max_size: int
    channels: dict[str, int]


class StatusOut(BaseModel):
    limiter: LimiterOut
    scheduler: SchedulerOut
    cache: CacheOut


class CachedMessageOut(BaseModel):
    id: str
    author_id: str
    author_name: str
    timestamp: str
    content: str
    images: int
    referenced_message_id: str | None = None


class ChannelOut(BaseModel):
    channel_id: str
    last_message_id: str | None = None
    messages: list[CachedMessageOut]


def create_app(services) -> FastAPI:
    """Read-only status surface over the running limiter, scheduler and caches."""
    app = FastAPI(title="smolbot status")
    log = get_logger("HTTP")

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/status", response_model=StatusOut)
    async def status():
        lim = services.limiter.status()
        sch = services.scheduler.status()
        cache = services.cache
        return StatusOut(
            limiter=LimiterOut(
                max_tokens=services.limiter.max_tokens,
                available_tokens=lim.available_tokens,
                queue_length=lim.queue_length,
                window_remaining_seconds=round(lim.window_remaining_seconds, 3),
            ),
            scheduler=SchedulerOut(
                max_concurrent=services.scheduler.max_concurrent,
                queued=sch.queued,
                running=sch.running,
                completed=sch.completed,
                failed=sch.failed,
            ),
            cache=CacheOut(
                max_size=cache.max_size,
                channels={cid: cache.size(cid) for cid in cache.channels()},
            ),
        )

    @app.get("/channels/{channel_id}", response_model=ChannelOut)
    async def channel(channel_id: str):
        msgs = services.cache.get(channel_id)
        if msgs is None:
            raise HTTPException(status_code=404, detail="Channel not cached")
        log.debug(f"channel-view channel={channel_id} messages={len(msgs)}")
        return ChannelOut(
            channel_id=channel_id,
            last_message_id=services.cache.last_message_id(channel_id),
            messages=[
                CachedMessageOut(
                    id=m.id,
                    author_id=m.author_id,
                    author_name=m.author_name,
                    timestamp=to_iso(m.timestamp),
                    content=m.content,
                    images=len(m.images),
                    referenced_message_id=m.referenced_message_id,
                )
                for m in msgs
            ],
        )

    return app

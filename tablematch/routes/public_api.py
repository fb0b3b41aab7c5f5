"""Public API routes: health check and the SSE notification stream."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from tablematch.broadcaster import Broadcaster, get_broadcaster
from tablematch.redis_client import ping

router = APIRouter(prefix="/api")


@router.get("/health")
async def health_check():
    redis_ok = await ping()
    return {"status": "ok" if redis_ok else "degraded", "redis": redis_ok}


@router.get("/stream")
async def stream(
    event_id: str | None = None,
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """SSE endpoint for group assignment notifications."""

    async def event_generator():
        yield ": connected\n\n"
        async for message in broadcaster.subscribe(event_id):
            yield message

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )

"""SSE fan-out of group assignment notifications."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import Request

logger = logging.getLogger(__name__)


class Broadcaster:
    """In-process pub/sub using one bounded asyncio queue per subscriber.

    Subscribers may follow a single event or, with `event_id=None`, every
    event. A subscriber whose queue is full is dropped and its stream ends.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: list[tuple[str | None, asyncio.Queue[str | None]]] = []

    async def subscribe(
        self, event_id: str | None = None, keepalive_seconds: int = 15
    ) -> AsyncGenerator[str, None]:
        """Yield SSE-formatted messages, with comment keepalives while idle."""
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self._queue_size)
        entry = (event_id, queue)
        self._subscribers.append(entry)
        try:
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if message is None:
                    return
                yield message
        except asyncio.CancelledError:
            pass
        finally:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

    async def broadcast(self, event: str, event_id: str, data: dict) -> None:
        """Push `data` as SSE event `event` to subscribers of `event_id`.

        The payload always carries `event_id` so stream-wide subscribers can
        route it.
        """
        payload = json.dumps({"event_id": event_id, **data}, default=str)
        message = f"event: {event}\ndata: {payload}\n\n"

        dropped = []
        for entry in self._subscribers:
            wanted, queue = entry
            if wanted is not None and wanted != event_id:
                continue
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                dropped.append(entry)

        for entry in dropped:
            self._subscribers.remove(entry)
            _close(entry[1])
        if dropped:
            logger.warning(f"Dropped {len(dropped)} slow SSE subscriber(s)")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


def _close(queue: asyncio.Queue[str | None]) -> None:
    """Replace a dropped subscriber's backlog with the end-of-stream marker."""
    while not queue.empty():
        queue.get_nowait()
    queue.put_nowait(None)


def get_broadcaster(request: Request) -> Broadcaster:
    """FastAPI dependency returning the app's broadcaster."""
    return request.app.state.broadcaster

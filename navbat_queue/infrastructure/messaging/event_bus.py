from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

log = logging.getLogger(__name__)


class AsyncEventBus:
    """
    In-process fan-out. A subscriber may restrict itself to one
    organization; events without an ``org_id`` reach every subscriber.
    Full queues drop their oldest event rather than block the publisher.
    """

    def __init__(self, default_queue_size: int) -> None:
        self._default_queue_size = default_queue_size
        self._subscribers: dict[asyncio.Queue[Any], str | None] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, maxsize: int | None = None, org_id: str | None = None) -> asyncio.Queue[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize or self._default_queue_size)
        async with self._lock:
            self._subscribers[queue] = org_id
            count = len(self._subscribers)
        log.info("Event bus subscribe org_id=%s subscribers=%s queue_size=%s", org_id, count, queue.maxsize)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[Any]) -> None:
        async with self._lock:
            self._subscribers.pop(queue, None)
            count = len(self._subscribers)
        log.info("Event bus unsubscribe subscribers=%s", count)

    async def publish(self, event: Any) -> None:
        event_org = getattr(event, "org_id", None)
        async with self._lock:
            targets = [
                queue
                for queue, org_filter in self._subscribers.items()
                if org_filter is None or event_org is None or org_filter == event_org
            ]
        dropped = 0
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    _ = queue.get_nowait()
                queue.put_nowait(event)
                dropped += 1
        if dropped:
            log.warning(
                "Event bus publish dropped_oldest=%s event_type=%s org_id=%s targets=%s",
                dropped,
                type(event).__name__,
                event_org,
                len(targets),
            )
        else:
            log.debug(
                "Event bus publish event_type=%s org_id=%s targets=%s",
                type(event).__name__,
                event_org,
                len(targets),
            )

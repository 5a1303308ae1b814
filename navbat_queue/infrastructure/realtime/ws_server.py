from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from navbat_queue.domain.events import TicketPromoted
from navbat_queue.infrastructure.messaging.event_bus import AsyncEventBus

log = logging.getLogger(__name__)


class PromotionStreamer:
    """Pushes one organization's promotion events to a WebSocket client."""

    def __init__(self, event_bus: AsyncEventBus, queue_size: int) -> None:
        self._event_bus = event_bus
        self._queue_size = queue_size

    async def serve(self, ws: WebSocket, org_id: str) -> None:
        queue = await self._event_bus.subscribe(maxsize=self._queue_size, org_id=org_id)
        try:
            await ws.accept()
            pump = asyncio.create_task(self._pump(ws, queue), name=f"ws-promotions-{org_id}")
            try:
                while True:
                    await ws.receive_text()
            except WebSocketDisconnect:
                log.info("WS promotions disconnected org_id=%s client=%s", org_id, ws.client)
            finally:
                pump.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pump
        finally:
            await self._event_bus.unsubscribe(queue)

    async def _pump(self, ws: WebSocket, queue: asyncio.Queue[Any]) -> None:
        while True:
            event = await queue.get()
            payload = _event_to_payload(event)
            if payload is None:
                continue
            try:
                await ws.send_json(payload)
            except Exception:  # noqa: BLE001
                log.warning("WS promotions send failed client=%s", ws.client, exc_info=True)
                return


def _event_to_payload(event: Any) -> dict[str, Any] | None:
    if isinstance(event, TicketPromoted):
        return event.to_dict()
    return None

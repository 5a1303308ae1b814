from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, status

from navbat_queue.application.ports import OrgCatalogPort
from navbat_queue.infrastructure.realtime.ws_server import PromotionStreamer

log = logging.getLogger(__name__)


def build_ws_router(streamer: PromotionStreamer, catalog: OrgCatalogPort) -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws/orgs/{org_id}")
    async def ws_promotions(ws: WebSocket, org_id: str) -> None:
        log.info("WS /ws/orgs/%s connect request client=%s", org_id, ws.client)
        # events carry the stripped id, so the subscription filter must too
        key = org_id.strip()
        if not key or not await catalog.is_valid_org(key):
            await ws.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await streamer.serve(ws, key)

    return router

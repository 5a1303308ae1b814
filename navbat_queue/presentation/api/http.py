from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from navbat_queue.application.services.queue_engine import QueueEngine
from navbat_queue.domain.models.ticket import TicketStatus

log = logging.getLogger(__name__)


class IssueTicketRequest(BaseModel):
    metadata: dict[str, str | int | float | bool | None] = Field(default_factory=dict)


def build_http_router(engine: QueueEngine) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health() -> dict:
        log.debug("HTTP GET /health")
        return {"ok": True, "status": "ok"}

    @router.post("/orgs/{org_id}/tickets")
    async def issue_ticket(org_id: str, req: IssueTicketRequest | None = None) -> dict:
        metadata: dict[str, Any] = req.metadata if req is not None else {}
        log.info("HTTP POST /orgs/%s/tickets platform=%s", org_id, metadata.get("platform"))
        result = await engine.issue_ticket(org_id, metadata)
        return {"ok": True, **result.to_dict()}

    @router.get("/orgs/{org_id}/queue")
    async def queue_snapshot(org_id: str, number: int | None = None) -> dict:
        log.debug("HTTP GET /orgs/%s/queue number=%s", org_id, number)
        snapshot = await engine.get_snapshot(org_id, number)
        return {"ok": True, **snapshot.to_dict()}

    @router.get("/orgs/{org_id}/tickets")
    async def list_tickets(org_id: str, status: TicketStatus | None = None) -> dict:
        log.debug("HTTP GET /orgs/%s/tickets status=%s", org_id, status)
        rows = await engine.list_tickets(org_id, status)
        return {"ok": True, "count": len(rows), "rows": [ticket.to_dict() for ticket in rows]}

    @router.get("/orgs/{org_id}/tickets/{ticket_id}")
    async def get_ticket(org_id: str, ticket_id: str) -> dict:
        log.debug("HTTP GET /orgs/%s/tickets/%s", org_id, ticket_id)
        view = await engine.get_ticket(org_id, ticket_id)
        return {"ok": True, "ticket": view.to_dict()}

    @router.post("/orgs/{org_id}/tickets/by-number/{number}/cancel")
    async def cancel_ticket(org_id: str, number: int) -> dict:
        log.info("HTTP POST /orgs/%s/tickets/by-number/%s/cancel", org_id, number)
        cancelled = await engine.cancel(org_id, number)
        return {"ok": True, "cancelled": cancelled}

    @router.post("/orgs/{org_id}/admin/advance")
    async def admin_advance(org_id: str) -> dict:
        log.info("HTTP POST /orgs/%s/admin/advance", org_id)
        result = await engine.admin_advance(org_id)
        return {"ok": True, **result.to_dict()}

    @router.post("/orgs/{org_id}/admin/tickets/{ticket_id}/skip")
    async def admin_skip(org_id: str, ticket_id: str) -> dict:
        log.info("HTTP POST /orgs/%s/admin/tickets/%s/skip", org_id, ticket_id)
        await engine.admin_skip(org_id, ticket_id)
        return {"ok": True}

    @router.post("/orgs/{org_id}/admin/tickets/{ticket_id}/serve")
    async def admin_serve(org_id: str, ticket_id: str) -> dict:
        log.info("HTTP POST /orgs/%s/admin/tickets/%s/serve", org_id, ticket_id)
        ticket = await engine.admin_serve(org_id, ticket_id)
        return {"ok": True, "ticket": ticket.to_dict()}

    @router.post("/orgs/{org_id}/admin/tickets/{ticket_id}/cancel")
    async def admin_cancel(org_id: str, ticket_id: str) -> dict:
        log.info("HTTP POST /orgs/%s/admin/tickets/%s/cancel", org_id, ticket_id)
        cancelled = await engine.admin_cancel(org_id, ticket_id)
        return {"ok": True, "cancelled": cancelled}

    @router.post("/orgs/{org_id}/admin/reset")
    async def admin_reset(org_id: str) -> dict:
        log.warning("HTTP POST /orgs/%s/admin/reset", org_id)
        cancelled = await engine.admin_reset(org_id)
        return {"ok": True, "cancelled_count": cancelled}

    return router

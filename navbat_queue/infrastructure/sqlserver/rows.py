from __future__ import annotations

import json
import logging
from typing import Any

from navbat_queue.domain.models.counter import OrgCounterState
from navbat_queue.domain.models.ticket import OrgId, Ticket, TicketId, TicketStatus

log = logging.getLogger(__name__)

TICKET_COLUMNS = (
    "id",
    "org_id",
    "cycle",
    "number",
    "status",
    "metadata_json",
    "created_at",
    "updated_at",
    "served_at",
)


def row_to_counter(row: dict[str, Any]) -> OrgCounterState:
    return OrgCounterState(
        org_id=OrgId(str(row["org_id"])),
        next_number=int(row["next_number"]),
        current_served_number=int(row["current_served_number"]),
        cycle=int(row["cycle"]),
        updated_at=row.get("updated_at"),
    )


def row_to_ticket(row: dict[str, Any]) -> Ticket:
    raw_metadata = row.get("metadata_json")
    metadata: dict[str, Any] = {}
    if raw_metadata:
        try:
            loaded = json.loads(raw_metadata)
            if isinstance(loaded, dict):
                metadata = loaded
        except json.JSONDecodeError:
            log.warning("Ticket metadata is not valid JSON ticket_id=%s", row.get("id"))
    return Ticket(
        id=TicketId(str(row["id"]).strip()),
        org_id=OrgId(str(row["org_id"])),
        number=int(row["number"]),
        cycle=int(row["cycle"]),
        status=TicketStatus(str(row["status"]).strip()),
        metadata=metadata,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        served_at=row.get("served_at"),
    )


def ticket_to_row(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": str(ticket.id),
        "org_id": str(ticket.org_id),
        "cycle": ticket.cycle,
        "number": ticket.number,
        "status": ticket.status.value,
        "metadata_json": json.dumps(ticket.metadata, ensure_ascii=False),
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
        "served_at": ticket.served_at,
    }

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from navbat_queue.domain.models.ticket import OrgId, Ticket


@dataclass(slots=True, frozen=True)
class TicketPromoted:
    """The serving pointer moved onto a pending ticket."""

    org_id: OrgId
    ticket: Ticket
    now_serving: int
    last_number: int
    occurred_at: datetime

    def to_dict(self) -> dict:
        return {
            "type": "TicketPromoted",
            "org_id": str(self.org_id),
            "ticket": self.ticket.to_dict(),
            "now_serving": self.now_serving,
            "last_number": self.last_number,
            "occurred_at": self.occurred_at.isoformat(),
        }

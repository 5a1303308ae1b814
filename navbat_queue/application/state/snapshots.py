from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from navbat_queue.domain.models.counter import OrgCounterState
from navbat_queue.domain.models.ticket import Ticket
from navbat_queue.domain.rules.estimator import eta_seconds


@dataclass(slots=True, frozen=True)
class TicketView:
    ticket: Ticket
    now_serving: int
    last_number: int
    remaining: int
    ahead: int
    eta_seconds: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.ticket.to_dict(),
            "now_serving": self.now_serving,
            "last_number": self.last_number,
            "remaining": self.remaining,
            "ahead": self.ahead,
            "eta_seconds": self.eta_seconds,
        }


@dataclass(slots=True, frozen=True)
class QueueSnapshot:
    org_id: str
    now_serving: int
    last_number: int
    current_served_number: int
    eta_avg_seconds: int | None
    ticket: TicketView | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "org_id": self.org_id,
            "now_serving": self.now_serving,
            "last_number": self.last_number,
            "current_served_number": self.current_served_number,
            "eta_avg_seconds": self.eta_avg_seconds,
            "ticket": self.ticket.to_dict() if self.ticket else None,
        }


@dataclass(slots=True, frozen=True)
class IssueResult:
    ticket: Ticket
    now_serving: int
    last_number: int
    eta_seconds: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticket": self.ticket.to_dict(),
            "now_serving": self.now_serving,
            "last_number": self.last_number,
            "eta_seconds": self.eta_seconds,
        }


@dataclass(slots=True, frozen=True)
class AdvanceResult:
    current_served_number: int
    now_serving: int
    last_number: int
    served: Ticket | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_served_number": self.current_served_number,
            "now_serving": self.now_serving,
            "last_number": self.last_number,
            "served": self.served.to_dict() if self.served else None,
        }


def build_ticket_view(
    ticket: Ticket,
    counter: OrgCounterState,
    avg_service_seconds: int | None,
    ahead: int,
) -> TicketView:
    if ticket.status.is_pending and ticket.cycle == counter.cycle:
        remaining = max(0, ticket.number - counter.now_serving)
        eta = eta_seconds(ticket.number, counter.now_serving, avg_service_seconds)
    else:
        remaining = 0
        eta = None
    return TicketView(
        ticket=ticket,
        now_serving=counter.now_serving,
        last_number=counter.last_number,
        remaining=remaining,
        ahead=ahead,
        eta_seconds=eta,
    )

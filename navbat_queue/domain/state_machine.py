from __future__ import annotations

from datetime import datetime

from navbat_queue.domain.errors import InvalidTransition
from navbat_queue.domain.models.ticket import Ticket, TicketStatus

_ALLOWED: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.WAITING: frozenset({TicketStatus.SERVED, TicketStatus.MISSED, TicketStatus.CANCELLED}),
    TicketStatus.MISSED: frozenset({TicketStatus.SERVED, TicketStatus.CANCELLED}),
    TicketStatus.SERVED: frozenset(),
    TicketStatus.CANCELLED: frozenset(),
}


class TicketStateMachine:
    def __init__(self, missed_threshold: int = 5) -> None:
        if missed_threshold < 0:
            raise ValueError("missed_threshold must be >= 0")
        self.missed_threshold = missed_threshold

    @staticmethod
    def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
        return target in _ALLOWED[current]

    def transition(self, ticket: Ticket, target: TicketStatus, at: datetime) -> None:
        if not self.can_transition(ticket.status, target):
            raise InvalidTransition(
                f"ticket {ticket.number} cannot move from {ticket.status.value} to {target.value}"
            )
        ticket.status = target
        ticket.updated_at = at
        if target is TicketStatus.SERVED:
            ticket.served_at = at

    def reconcile(self, ticket: Ticket, now_serving: int) -> TicketStatus | None:
        """
        Decides the lazy status for a ticket the serving pointer has passed.
        Returns the status to move to, or None when nothing changes.
        """
        behind = now_serving - ticket.number
        if behind <= 0:
            return None
        if behind <= self.missed_threshold:
            if ticket.status is TicketStatus.WAITING:
                return TicketStatus.MISSED
            return None
        if ticket.status.is_pending:
            return TicketStatus.CANCELLED
        return None

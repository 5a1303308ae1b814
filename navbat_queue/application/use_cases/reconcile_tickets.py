from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from navbat_queue.application.ports import QueueRepositoryPort
from navbat_queue.domain.models.ticket import Ticket, TicketStatus
from navbat_queue.domain.state_machine import TicketStateMachine

log = logging.getLogger(__name__)


class ReconcileTicketsUseCase:
    """
    Lazy status repair for tickets the serving pointer has passed.

    Each write is a per-ticket compare-and-set, so two readers reconciling
    the same ticket cannot lose an update; the loser sees a no-op. Write
    failures are logged and left for the next read.
    """

    def __init__(self, repo: QueueRepositoryPort, state_machine: TicketStateMachine) -> None:
        self._repo = repo
        self._state_machine = state_machine

    async def execute(self, ticket: Ticket, now_serving: int, at: datetime) -> Ticket:
        target = self._state_machine.reconcile(ticket, now_serving)
        if target is None:
            return ticket
        try:
            applied = await self._repo.compare_and_set_status(ticket.id, ticket.status, target, at)
        except Exception:  # noqa: BLE001
            log.warning(
                "Reconcile write failed org_id=%s ticket_id=%s number=%s target=%s",
                ticket.org_id,
                ticket.id,
                ticket.number,
                target.value,
                exc_info=True,
            )
            return ticket
        if not applied:
            log.debug(
                "Reconcile no-op org_id=%s ticket_id=%s number=%s expected=%s",
                ticket.org_id,
                ticket.id,
                ticket.number,
                ticket.status.value,
            )
            return await self._reload(ticket)
        log.info(
            "Reconciled ticket org_id=%s number=%s from=%s to=%s now_serving=%s",
            ticket.org_id,
            ticket.number,
            ticket.status.value,
            target.value,
            now_serving,
        )
        updated = ticket.clone()
        updated.status = target
        updated.updated_at = at
        return updated

    async def execute_many(self, tickets: Iterable[Ticket], now_serving: int, at: datetime) -> list[Ticket]:
        return [await self.execute(ticket, now_serving, at) for ticket in tickets]

    async def _reload(self, ticket: Ticket) -> Ticket:
        try:
            fresh = await self._repo.get_ticket(ticket.org_id, ticket.id)
        except Exception:  # noqa: BLE001
            log.warning("Reconcile reload failed ticket_id=%s", ticket.id, exc_info=True)
            return ticket
        return fresh if fresh is not None else ticket


def pending_behind(tickets: Iterable[Ticket], now_serving: int) -> list[Ticket]:
    return [
        ticket
        for ticket in tickets
        if ticket.status in (TicketStatus.WAITING, TicketStatus.MISSED) and ticket.number < now_serving
    ]

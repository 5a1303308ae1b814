from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from navbat_queue.application.ports import (
    ClockPort,
    NotifierPort,
    OrgCatalogPort,
    QueueRepositoryPort,
    QueueTransactionPort,
)
from navbat_queue.application.state.snapshots import (
    AdvanceResult,
    IssueResult,
    QueueSnapshot,
    TicketView,
    build_ticket_view,
)
from navbat_queue.application.use_cases.reconcile_tickets import ReconcileTicketsUseCase, pending_behind
from navbat_queue.domain.errors import ConflictRetryable, InvalidOrganization, NoPendingTicket, TicketNotFound
from navbat_queue.domain.events import TicketPromoted
from navbat_queue.domain.models.counter import OrgCounterState, normalize_counter, reset_counter
from navbat_queue.domain.models.ticket import (
    PENDING_STATUSES,
    OrgId,
    Ticket,
    TicketStatus,
    new_ticket_id,
    validate_metadata,
)
from navbat_queue.domain.rules.estimator import estimate_avg_service_seconds, eta_seconds
from navbat_queue.domain.state_machine import TicketStateMachine

log = logging.getLogger(__name__)

T = TypeVar("T")


class QueueEngine:
    """
    Per-organization ticket queue.

    Stateless apart from its collaborators: every mutation runs inside one
    repository transaction scoped to the organization, reads reconcile
    stale ticket statuses on the way out.
    """

    def __init__(
        self,
        repo: QueueRepositoryPort,
        catalog: OrgCatalogPort,
        clock: ClockPort,
        notifier: NotifierPort | None = None,
        *,
        missed_threshold: int = 5,
        eta_window_size: int = 6,
        eta_min_samples: int = 3,
        eta_min_interval_seconds: float = 5.0,
        eta_max_interval_seconds: float = 3 * 60 * 60.0,
        tx_max_attempts: int = 3,
        tx_retry_backoff_seconds: float = 0.05,
        metadata_max_fields: int = 16,
        metadata_max_value_length: int = 256,
    ) -> None:
        self._repo = repo
        self._catalog = catalog
        self._clock = clock
        self._notifier = notifier

        self._state_machine = TicketStateMachine(missed_threshold=missed_threshold)
        self._reconcile = ReconcileTicketsUseCase(repo, self._state_machine)

        self._eta_window_size = eta_window_size
        self._eta_min_samples = eta_min_samples
        self._eta_min_interval_seconds = eta_min_interval_seconds
        self._eta_max_interval_seconds = eta_max_interval_seconds
        self._tx_max_attempts = max(1, tx_max_attempts)
        self._tx_retry_backoff_seconds = max(0.0, tx_retry_backoff_seconds)
        self._metadata_max_fields = metadata_max_fields
        self._metadata_max_value_length = metadata_max_value_length

    async def issue_ticket(self, org_id: str, metadata: dict[str, Any] | None = None) -> IssueResult:
        org = await self._require_org(org_id)
        clean_metadata = validate_metadata(
            metadata,
            max_fields=self._metadata_max_fields,
            max_value_length=self._metadata_max_value_length,
        )

        async def _work(tx: QueueTransactionPort) -> tuple[Ticket, OrgCounterState]:
            counter = await self._normalized_counter(tx)
            now = self._clock.now()
            ticket = Ticket(
                id=new_ticket_id(),
                org_id=org,
                number=counter.next_number,
                cycle=counter.cycle,
                created_at=now,
                updated_at=now,
                metadata=dict(clean_metadata),
            )
            await tx.insert_ticket(ticket)
            counter.next_number += 1
            counter.updated_at = now
            await tx.save_counter(counter)
            return ticket, counter

        ticket, counter = await self._transact("issue", org, _work)
        avg = await self.estimate(org)
        log.info(
            "Ticket issued org_id=%s number=%s ticket_id=%s now_serving=%s last_number=%s",
            org,
            ticket.number,
            ticket.id,
            counter.now_serving,
            counter.last_number,
        )
        return IssueResult(
            ticket=ticket,
            now_serving=counter.now_serving,
            last_number=counter.last_number,
            eta_seconds=eta_seconds(ticket.number, counter.now_serving, avg),
        )

    async def get_snapshot(self, org_id: str, ticket_number: int | None = None) -> QueueSnapshot:
        org = await self._require_org(org_id)
        counter = await self._read_counter(org)
        now = self._clock.now()
        avg = await self.estimate(org)
        view: TicketView | None = None
        if ticket_number is not None:
            ticket = await self._repo.get_ticket_by_number(org, counter.cycle, ticket_number)
            if ticket is None:
                raise TicketNotFound(f"ticket number {ticket_number} not found")
            ticket = await self._reconcile.execute(ticket, counter.now_serving, now)
            view = await self._ticket_view(ticket, counter, avg)
        else:
            pending = await self._repo.list_tickets(org, PENDING_STATUSES, cycle=counter.cycle)
            await self._reconcile.execute_many(pending_behind(pending, counter.now_serving), counter.now_serving, now)
        log.debug(
            "Snapshot org_id=%s now_serving=%s last_number=%s eta_avg=%s number=%s",
            org,
            counter.now_serving,
            counter.last_number,
            avg,
            ticket_number,
        )
        return QueueSnapshot(
            org_id=org,
            now_serving=counter.now_serving,
            last_number=counter.last_number,
            current_served_number=counter.current_served_number,
            eta_avg_seconds=avg,
            ticket=view,
        )

    async def get_ticket(self, org_id: str, ticket_id: str) -> TicketView:
        org = await self._require_org(org_id)
        ticket = await self._repo.get_ticket(org, ticket_id)
        if ticket is None:
            raise TicketNotFound(f"ticket {ticket_id} not found")
        counter = await self._read_counter(org)
        if ticket.cycle == counter.cycle:
            ticket = await self._reconcile.execute(ticket, counter.now_serving, self._clock.now())
        avg = await self.estimate(org)
        return await self._ticket_view(ticket, counter, avg)

    async def list_tickets(self, org_id: str, status: TicketStatus | None = None) -> list[Ticket]:
        org = await self._require_org(org_id)
        counter = await self._read_counter(org)
        tickets = await self._repo.list_tickets(org, None, cycle=counter.cycle)
        stale = {ticket.id for ticket in pending_behind(tickets, counter.now_serving)}
        if stale:
            now = self._clock.now()
            tickets = [
                await self._reconcile.execute(ticket, counter.now_serving, now) if ticket.id in stale else ticket
                for ticket in tickets
            ]
        if status is not None:
            tickets = [ticket for ticket in tickets if ticket.status is status]
        tickets.sort(key=lambda item: item.number)
        return tickets

    async def admin_advance(self, org_id: str) -> AdvanceResult:
        org = await self._require_org(org_id)

        async def _work(tx: QueueTransactionPort) -> tuple[OrgCounterState, Ticket | None, Ticket | None]:
            counter = await self._normalized_counter(tx)
            if not counter.has_pending:
                raise NoPendingTicket(
                    f"nothing to advance: now_serving={counter.now_serving} last_number={counter.last_number}"
                )
            now = self._clock.now()
            served: Ticket | None = None
            current = await tx.get_ticket_by_number(counter.cycle, counter.now_serving)
            if current is not None and current.status.is_pending:
                self._state_machine.transition(current, TicketStatus.SERVED, now)
                await tx.update_ticket(current)
                served = current
            counter.current_served_number += 1
            counter.updated_at = now
            await tx.save_counter(counter)
            return counter, served, await self._promotion_candidate(tx, counter)

        counter, served, promoted = await self._transact("advance", org, _work)
        log.info(
            "Queue advanced org_id=%s served_number=%s now_serving=%s last_number=%s",
            org,
            served.number if served else None,
            counter.now_serving,
            counter.last_number,
        )
        await self._notify(org, promoted, counter)
        return AdvanceResult(
            current_served_number=counter.current_served_number,
            now_serving=counter.now_serving,
            last_number=counter.last_number,
            served=served,
        )

    async def admin_skip(self, org_id: str, ticket_id: str) -> bool:
        org = await self._require_org(org_id)

        async def _work(tx: QueueTransactionPort) -> tuple[Ticket, OrgCounterState, Ticket | None, bool]:
            counter = await self._normalized_counter(tx)
            ticket = await tx.get_ticket(ticket_id)
            if ticket is None:
                raise TicketNotFound(f"ticket {ticket_id} not found")
            now = self._clock.now()
            if ticket.status is TicketStatus.WAITING:
                self._state_machine.transition(ticket, TicketStatus.MISSED, now)
                await tx.update_ticket(ticket)
            advanced = ticket.cycle == counter.cycle and ticket.number == counter.now_serving
            promoted: Ticket | None = None
            if advanced:
                counter.current_served_number += 1
                counter.updated_at = now
                await tx.save_counter(counter)
                promoted = await self._promotion_candidate(tx, counter)
            return ticket, counter, promoted, advanced

        ticket, counter, promoted, advanced = await self._transact("skip", org, _work)
        log.info(
            "Ticket skipped org_id=%s number=%s status=%s advanced=%s now_serving=%s",
            org,
            ticket.number,
            ticket.status.value,
            advanced,
            counter.now_serving,
        )
        if advanced:
            await self._notify(org, promoted, counter)
        return True

    async def admin_serve(self, org_id: str, ticket_id: str) -> Ticket:
        org = await self._require_org(org_id)

        async def _work(tx: QueueTransactionPort) -> tuple[Ticket, OrgCounterState, Ticket | None, bool]:
            counter = await self._normalized_counter(tx)
            ticket = await tx.get_ticket(ticket_id)
            if ticket is None:
                raise TicketNotFound(f"ticket {ticket_id} not found")
            if ticket.status is TicketStatus.SERVED:
                return ticket, counter, None, False
            now = self._clock.now()
            self._state_machine.transition(ticket, TicketStatus.SERVED, now)
            await tx.update_ticket(ticket)
            advanced = ticket.cycle == counter.cycle and ticket.number == counter.now_serving
            promoted: Ticket | None = None
            if advanced:
                counter.current_served_number += 1
                counter.updated_at = now
                await tx.save_counter(counter)
                promoted = await self._promotion_candidate(tx, counter)
            return ticket, counter, promoted, advanced

        ticket, counter, promoted, advanced = await self._transact("serve", org, _work)
        log.info(
            "Ticket served org_id=%s number=%s advanced=%s now_serving=%s",
            org,
            ticket.number,
            advanced,
            counter.now_serving,
        )
        if advanced:
            await self._notify(org, promoted, counter)
        return ticket

    async def admin_cancel(self, org_id: str, ticket_id: str) -> bool:
        org = await self._require_org(org_id)

        async def _work(tx: QueueTransactionPort) -> tuple[Ticket, bool]:
            await self._normalized_counter(tx)
            ticket = await tx.get_ticket(ticket_id)
            if ticket is None:
                raise TicketNotFound(f"ticket {ticket_id} not found")
            if not ticket.status.is_pending:
                return ticket, False
            return await self._cancel_in_tx(tx, ticket), True

        ticket, cancelled = await self._transact("admin_cancel", org, _work)
        log.info("Admin cancel org_id=%s number=%s cancelled=%s", org, ticket.number, cancelled)
        return cancelled

    async def cancel(self, org_id: str, number: int) -> bool:
        org = await self._require_org(org_id)

        async def _work(tx: QueueTransactionPort) -> bool:
            counter = await self._normalized_counter(tx)
            ticket = await tx.get_ticket_by_number(counter.cycle, number)
            if ticket is None or not ticket.status.is_pending:
                return False
            await self._cancel_in_tx(tx, ticket)
            return True

        cancelled = await self._transact("cancel", org, _work)
        log.info("Self-service cancel org_id=%s number=%s cancelled=%s", org, number, cancelled)
        return cancelled

    async def admin_reset(self, org_id: str) -> int:
        org = await self._require_org(org_id)

        async def _work(tx: QueueTransactionPort) -> tuple[int, OrgCounterState]:
            counter = await self._normalized_counter(tx)
            now = self._clock.now()
            count = await tx.cancel_pending(now)
            fresh = reset_counter(counter, now)
            await tx.save_counter(fresh)
            return count, fresh

        count, counter = await self._transact("reset", org, _work)
        log.info("Queue reset org_id=%s cancelled=%s cycle=%s", org, count, counter.cycle)
        return count

    async def estimate(self, org_id: str) -> int | None:
        served_at = await self._repo.recent_served_at(org_id, self._eta_window_size)
        return estimate_avg_service_seconds(
            served_at,
            window_size=self._eta_window_size,
            min_samples=self._eta_min_samples,
            min_interval_seconds=self._eta_min_interval_seconds,
            max_interval_seconds=self._eta_max_interval_seconds,
        )

    async def _require_org(self, org_id: str) -> OrgId:
        key = (org_id or "").strip()
        if not key:
            raise InvalidOrganization("org_id must not be empty")
        if not await self._catalog.is_valid_org(key):
            raise InvalidOrganization(f"unknown organization {key}")
        return OrgId(key)

    async def _transact(
        self,
        action: str,
        org_id: str,
        work: Callable[[QueueTransactionPort], Awaitable[T]],
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._repo.transaction(org_id) as tx:
                    return await work(tx)
            except ConflictRetryable:
                if attempt >= self._tx_max_attempts:
                    log.warning(
                        "Transaction conflict giving up action=%s org_id=%s attempts=%s",
                        action,
                        org_id,
                        attempt,
                    )
                    raise
                delay = self._tx_retry_backoff_seconds * attempt
                log.warning(
                    "Transaction conflict retry action=%s org_id=%s attempt=%s delay_s=%s",
                    action,
                    org_id,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _normalized_counter(self, tx: QueueTransactionPort) -> OrgCounterState:
        counter = await tx.get_counter()
        max_issued = await tx.max_ticket_number(counter.cycle)
        normalized = normalize_counter(counter, max_issued)
        if normalized != counter:
            log.warning(
                "Counter drift repaired org_id=%s next_number=%s->%s current_served=%s max_issued=%s",
                counter.org_id,
                counter.next_number,
                normalized.next_number,
                normalized.current_served_number,
                max_issued,
            )
            normalized.updated_at = self._clock.now()
            await tx.save_counter(normalized)
        return normalized

    async def _read_counter(self, org_id: OrgId) -> OrgCounterState:
        counter = await self._repo.get_counter(org_id)
        if counter is None:
            counter = OrgCounterState(org_id=org_id)
        max_issued = await self._repo.max_ticket_number(org_id, counter.cycle)
        return normalize_counter(counter, max_issued)

    async def _promotion_candidate(self, tx: QueueTransactionPort, counter: OrgCounterState) -> Ticket | None:
        if not counter.has_pending:
            return None
        ticket = await tx.get_ticket_by_number(counter.cycle, counter.now_serving)
        if ticket is None or not ticket.status.is_pending:
            return None
        return ticket

    async def _cancel_in_tx(self, tx: QueueTransactionPort, ticket: Ticket) -> Ticket:
        if not ticket.status.is_pending:
            return ticket
        self._state_machine.transition(ticket, TicketStatus.CANCELLED, self._clock.now())
        await tx.update_ticket(ticket)
        return ticket

    async def _ticket_view(self, ticket: Ticket, counter: OrgCounterState, avg: int | None) -> TicketView:
        ahead = 0
        if ticket.status.is_pending and ticket.cycle == counter.cycle:
            pending = await self._repo.list_tickets(ticket.org_id, PENDING_STATUSES, cycle=counter.cycle)
            ahead = sum(1 for item in pending if counter.now_serving <= item.number < ticket.number)
        return build_ticket_view(ticket, counter, avg, ahead)

    async def _notify(self, org_id: OrgId, ticket: Ticket | None, counter: OrgCounterState) -> None:
        if self._notifier is None or ticket is None:
            return
        event = TicketPromoted(
            org_id=org_id,
            ticket=ticket,
            now_serving=counter.now_serving,
            last_number=counter.last_number,
            occurred_at=self._clock.now(),
        )
        try:
            await self._notifier.notify(event)
        except Exception:  # noqa: BLE001
            log.exception("Promotion notify failed org_id=%s number=%s", org_id, ticket.number)
        else:
            log.debug("Promotion notified org_id=%s number=%s", org_id, ticket.number)

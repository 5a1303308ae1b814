from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable
from datetime import datetime

from navbat_queue.domain.errors import ConflictRetryable
from navbat_queue.domain.models.counter import OrgCounterState
from navbat_queue.domain.models.ticket import OrgId, Ticket, TicketStatus

log = logging.getLogger(__name__)


class InMemoryQueueRepository:
    """
    Process-local ticket store.

    Mutations for one organization are serialized by that organization's
    lock and staged on a transaction object; nothing reaches the shared
    tables until the transaction body returns, so an exception or a
    cancelled request leaves the store untouched.
    """

    def __init__(self, lock_timeout_seconds: float = 5.0) -> None:
        self._lock_timeout_seconds = lock_timeout_seconds
        self._counters: dict[str, OrgCounterState] = {}
        self._tickets: dict[str, Ticket] = {}
        self._numbers: dict[tuple[str, int, int], str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @contextlib.asynccontextmanager
    async def transaction(self, org_id: str) -> AsyncIterator["_MemoryTransaction"]:
        lock = self._org_lock(org_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ConflictRetryable(f"organization {org_id} is busy") from exc
        tx = _MemoryTransaction(self, org_id)
        try:
            yield tx
            self._commit(tx)
        except BaseException:
            log.debug("Memory transaction rolled back org_id=%s staged=%s", org_id, tx.staged_count)
            raise
        finally:
            lock.release()

    async def get_counter(self, org_id: str) -> OrgCounterState | None:
        counter = self._counters.get(org_id)
        return counter.clone() if counter else None

    async def max_ticket_number(self, org_id: str, cycle: int) -> int:
        return max(
            (t.number for t in self._tickets.values() if t.org_id == org_id and t.cycle == cycle),
            default=0,
        )

    async def get_ticket(self, org_id: str, ticket_id: str) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        if ticket is None or ticket.org_id != org_id:
            return None
        return ticket.clone()

    async def get_ticket_by_number(self, org_id: str, cycle: int, number: int) -> Ticket | None:
        ticket_id = self._numbers.get((org_id, cycle, number))
        if ticket_id is None:
            return None
        return self._tickets[ticket_id].clone()

    async def list_tickets(
        self,
        org_id: str,
        statuses: Iterable[TicketStatus] | None = None,
        cycle: int | None = None,
    ) -> list[Ticket]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            ticket.clone()
            for ticket in self._tickets.values()
            if ticket.org_id == org_id
            and (cycle is None or ticket.cycle == cycle)
            and (wanted is None or ticket.status in wanted)
        ]
        rows.sort(key=lambda item: (item.cycle, item.number))
        return rows

    async def recent_served_at(self, org_id: str, limit: int) -> list[datetime]:
        stamps = [
            ticket.served_at
            for ticket in self._tickets.values()
            if ticket.org_id == org_id and ticket.status is TicketStatus.SERVED and ticket.served_at is not None
        ]
        stamps.sort(reverse=True)
        return stamps[: max(limit, 0)]

    async def compare_and_set_status(
        self,
        ticket_id: str,
        expected: TicketStatus,
        target: TicketStatus,
        at: datetime,
    ) -> bool:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            return False
        async with self._org_lock(ticket.org_id):
            ticket = self._tickets[ticket_id]
            if ticket.status is not expected:
                return False
            ticket.status = target
            ticket.updated_at = at
            if target is TicketStatus.SERVED:
                ticket.served_at = at
        return True

    def _org_lock(self, org_id: str) -> asyncio.Lock:
        lock = self._locks.get(org_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[org_id] = lock
        return lock

    def _commit(self, tx: "_MemoryTransaction") -> None:
        for ticket in tx.inserted.values():
            key = (ticket.org_id, ticket.cycle, ticket.number)
            owner = self._numbers.get(key)
            if owner is not None and owner != ticket.id:
                raise ConflictRetryable(f"ticket number {ticket.number} already issued for {ticket.org_id}")
        for ticket in tx.inserted.values():
            self._tickets[ticket.id] = ticket.clone()
            self._numbers[(ticket.org_id, ticket.cycle, ticket.number)] = ticket.id
        for ticket in tx.updated.values():
            self._tickets[ticket.id] = ticket.clone()
        if tx.counter is not None:
            self._counters[tx.org_id] = tx.counter.clone()
        log.debug(
            "Memory transaction committed org_id=%s inserted=%s updated=%s counter=%s",
            tx.org_id,
            len(tx.inserted),
            len(tx.updated),
            tx.counter.to_dict() if tx.counter else None,
        )


class _MemoryTransaction:
    def __init__(self, repo: InMemoryQueueRepository, org_id: str) -> None:
        self._repo = repo
        self.org_id = org_id
        self.counter: OrgCounterState | None = None
        self.inserted: dict[str, Ticket] = {}
        self.updated: dict[str, Ticket] = {}

    @property
    def staged_count(self) -> int:
        return len(self.inserted) + len(self.updated) + (1 if self.counter is not None else 0)

    async def get_counter(self) -> OrgCounterState:
        if self.counter is not None:
            return self.counter.clone()
        stored = self._repo._counters.get(self.org_id)
        if stored is None:
            return OrgCounterState(org_id=OrgId(self.org_id))
        return stored.clone()

    async def save_counter(self, counter: OrgCounterState) -> None:
        self.counter = counter.clone()

    async def max_ticket_number(self, cycle: int) -> int:
        committed = await self._repo.max_ticket_number(self.org_id, cycle)
        staged = max((t.number for t in self.inserted.values() if t.cycle == cycle), default=0)
        return max(committed, staged)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        staged = self.updated.get(ticket_id) or self.inserted.get(ticket_id)
        if staged is not None:
            return staged.clone()
        return await self._repo.get_ticket(self.org_id, ticket_id)

    async def get_ticket_by_number(self, cycle: int, number: int) -> Ticket | None:
        for ticket in self.inserted.values():
            if ticket.cycle == cycle and ticket.number == number:
                return ticket.clone()
        ticket = await self._repo.get_ticket_by_number(self.org_id, cycle, number)
        if ticket is None:
            return None
        staged = self.updated.get(ticket.id)
        return staged.clone() if staged else ticket

    async def insert_ticket(self, ticket: Ticket) -> None:
        if ticket.org_id != self.org_id:
            raise ValueError("ticket belongs to another organization")
        self.inserted[ticket.id] = ticket.clone()

    async def update_ticket(self, ticket: Ticket) -> None:
        if ticket.id in self.inserted:
            self.inserted[ticket.id] = ticket.clone()
            return
        self.updated[ticket.id] = ticket.clone()

    async def cancel_pending(self, at: datetime) -> int:
        pending = await self._repo.list_tickets(self.org_id, (TicketStatus.WAITING, TicketStatus.MISSED))
        candidates = {ticket.id: self.updated.get(ticket.id, ticket) for ticket in pending}
        candidates.update(self.inserted)
        count = 0
        for ticket in candidates.values():
            if not ticket.status.is_pending:
                continue
            cancelled = ticket.clone()
            cancelled.status = TicketStatus.CANCELLED
            cancelled.updated_at = at
            await self.update_ticket(cancelled)
            count += 1
        return count

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

from navbat_queue.domain.events import TicketPromoted
from navbat_queue.domain.models.counter import OrgCounterState
from navbat_queue.domain.models.ticket import Ticket, TicketStatus


class ClockPort(Protocol):
    def now(self) -> datetime: ...


class OrgCatalogPort(Protocol):
    async def is_valid_org(self, org_id: str) -> bool: ...


class NotifierPort(Protocol):
    async def notify(self, event: TicketPromoted) -> None: ...


class EventBusPort(Protocol):
    async def publish(self, event: Any) -> None: ...

    async def subscribe(self, maxsize: int | None = None, org_id: str | None = None) -> asyncio.Queue[Any]: ...

    async def unsubscribe(self, queue: asyncio.Queue[Any]) -> None: ...


class QueueTransactionPort(Protocol):
    """
    One organization's unit of work. Reads see a consistent snapshot,
    writes are staged and become visible together on commit.
    """

    async def get_counter(self) -> OrgCounterState: ...

    async def save_counter(self, counter: OrgCounterState) -> None: ...

    async def max_ticket_number(self, cycle: int) -> int: ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None: ...

    async def get_ticket_by_number(self, cycle: int, number: int) -> Ticket | None: ...

    async def insert_ticket(self, ticket: Ticket) -> None: ...

    async def update_ticket(self, ticket: Ticket) -> None: ...

    async def cancel_pending(self, at: datetime) -> int: ...


class QueueRepositoryPort(Protocol):
    def transaction(self, org_id: str) -> AbstractAsyncContextManager[QueueTransactionPort]: ...

    async def get_counter(self, org_id: str) -> OrgCounterState | None: ...

    async def max_ticket_number(self, org_id: str, cycle: int) -> int: ...

    async def get_ticket(self, org_id: str, ticket_id: str) -> Ticket | None: ...

    async def get_ticket_by_number(self, org_id: str, cycle: int, number: int) -> Ticket | None: ...

    async def list_tickets(
        self,
        org_id: str,
        statuses: Iterable[TicketStatus] | None = None,
        cycle: int | None = None,
    ) -> list[Ticket]: ...

    async def recent_served_at(self, org_id: str, limit: int) -> list[datetime]: ...

    async def compare_and_set_status(
        self,
        ticket_id: str,
        expected: TicketStatus,
        target: TicketStatus,
        at: datetime,
    ) -> bool: ...

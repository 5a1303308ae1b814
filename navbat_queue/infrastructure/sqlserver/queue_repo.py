from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from typing import Any

from navbat_queue.config import settings
from navbat_queue.domain.models.counter import OrgCounterState
from navbat_queue.domain.models.ticket import OrgId, Ticket, TicketStatus
from navbat_queue.infrastructure.sqlserver.connection import SQLServerConnection, SQLTransaction
from navbat_queue.infrastructure.sqlserver.rows import TICKET_COLUMNS, row_to_counter, row_to_ticket, ticket_to_row

log = logging.getLogger(__name__)

_TICKET_COLUMNS = ", ".join(TICKET_COLUMNS)
_PENDING_SQL = "('waiting', 'missed')"


class SqlServerQueueRepository:
    """
    Ticket store on SQL Server.

    A transaction takes an update/range lock on the organization's counter
    row first, so every mutation of one organization is serialized on that
    row while other organizations proceed independently.
    """

    def __init__(self, connection: SQLServerConnection, *, lock_timeout_seconds: float = 5.0) -> None:
        self._conn = connection
        self._counters = SQLServerConnection.table_name(settings.sql_schema, settings.counters_table)
        self._tickets = SQLServerConnection.table_name(settings.sql_schema, settings.tickets_table)
        self._lock_timeout_ms = max(1, int(lock_timeout_seconds * 1000))

    async def start(self) -> None:
        await self._conn.start()
        await self.ensure_schema()

    async def close(self) -> None:
        await self._conn.close()

    async def ensure_schema(self) -> None:
        counters_name = f"{settings.sql_schema}.{settings.counters_table}"
        tickets_name = f"{settings.sql_schema}.{settings.tickets_table}"
        await self._conn.execute(
            f"IF OBJECT_ID(N'{counters_name}', N'U') IS NULL "
            f"CREATE TABLE {self._counters} ("
            "org_id NVARCHAR(128) NOT NULL PRIMARY KEY, "
            "next_number INT NOT NULL, "
            "current_served_number INT NOT NULL, "
            "cycle INT NOT NULL, "
            "updated_at DATETIME2 NULL)",
            [],
        )
        await self._conn.execute(
            f"IF OBJECT_ID(N'{tickets_name}', N'U') IS NULL "
            f"CREATE TABLE {self._tickets} ("
            "id CHAR(32) NOT NULL PRIMARY KEY, "
            "org_id NVARCHAR(128) NOT NULL, "
            "cycle INT NOT NULL, "
            "number INT NOT NULL, "
            "status NVARCHAR(16) NOT NULL, "
            "metadata_json NVARCHAR(MAX) NULL, "
            "created_at DATETIME2 NOT NULL, "
            "updated_at DATETIME2 NOT NULL, "
            "served_at DATETIME2 NULL, "
            "CONSTRAINT uq_ticket_org_cycle_number UNIQUE (org_id, cycle, number))",
            [],
        )
        log.info("SQL schema ensured counters=%s tickets=%s", self._counters, self._tickets)

    @contextlib.asynccontextmanager
    async def transaction(self, org_id: str) -> AsyncIterator["_SqlServerTransaction"]:
        async with self._conn.transaction(self._lock_timeout_ms) as tx:
            yield _SqlServerTransaction(self, tx, org_id)

    async def get_counter(self, org_id: str) -> OrgCounterState | None:
        rows = await self._conn.query_rows(
            f"SELECT org_id, next_number, current_served_number, cycle, updated_at FROM {self._counters} "
            "WHERE org_id = ?",
            [org_id],
        )
        return row_to_counter(rows[0]) if rows else None

    async def max_ticket_number(self, org_id: str, cycle: int) -> int:
        rows = await self._conn.query_rows(
            f"SELECT COALESCE(MAX(number), 0) AS max_number FROM {self._tickets} WHERE org_id = ? AND cycle = ?",
            [org_id, cycle],
        )
        return int(rows[0]["max_number"]) if rows else 0

    async def get_ticket(self, org_id: str, ticket_id: str) -> Ticket | None:
        rows = await self._conn.query_rows(
            f"SELECT {_TICKET_COLUMNS} FROM {self._tickets} WHERE org_id = ? AND id = ?",
            [org_id, ticket_id],
        )
        return row_to_ticket(rows[0]) if rows else None

    async def get_ticket_by_number(self, org_id: str, cycle: int, number: int) -> Ticket | None:
        rows = await self._conn.query_rows(
            f"SELECT {_TICKET_COLUMNS} FROM {self._tickets} WHERE org_id = ? AND cycle = ? AND number = ?",
            [org_id, cycle, number],
        )
        return row_to_ticket(rows[0]) if rows else None

    async def list_tickets(
        self,
        org_id: str,
        statuses: Iterable[TicketStatus] | None = None,
        cycle: int | None = None,
    ) -> list[Ticket]:
        query = f"SELECT {_TICKET_COLUMNS} FROM {self._tickets} WHERE org_id = ?"
        params: list[Any] = [org_id]
        if cycle is not None:
            query += " AND cycle = ?"
            params.append(cycle)
        if statuses is not None:
            wanted = [status.value for status in statuses]
            if not wanted:
                return []
            query += f" AND status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        query += " ORDER BY cycle, number"
        rows = await self._conn.query_rows(query, params)
        return [row_to_ticket(row) for row in rows]

    async def recent_served_at(self, org_id: str, limit: int) -> list[datetime]:
        if limit <= 0:
            return []
        rows = await self._conn.query_rows(
            f"SELECT TOP (?) served_at FROM {self._tickets} "
            "WHERE org_id = ? AND status = 'served' AND served_at IS NOT NULL "
            "ORDER BY served_at DESC",
            [limit, org_id],
        )
        return [row["served_at"] for row in rows]

    async def compare_and_set_status(
        self,
        ticket_id: str,
        expected: TicketStatus,
        target: TicketStatus,
        at: datetime,
    ) -> bool:
        served_at = at if target is TicketStatus.SERVED else None
        affected = await self._conn.execute(
            f"UPDATE {self._tickets} SET status = ?, updated_at = ?, served_at = COALESCE(?, served_at) "
            "WHERE id = ? AND status = ?",
            [target.value, at, served_at, ticket_id, expected.value],
        )
        return affected == 1


class _SqlServerTransaction:
    def __init__(self, repo: SqlServerQueueRepository, tx: SQLTransaction, org_id: str) -> None:
        self._counters = repo._counters
        self._tickets = repo._tickets
        self._tx = tx
        self._org_id = org_id

    async def get_counter(self) -> OrgCounterState:
        rows = await self._tx.query_rows(
            f"SELECT org_id, next_number, current_served_number, cycle, updated_at "
            f"FROM {self._counters} WITH (UPDLOCK, HOLDLOCK, ROWLOCK) WHERE org_id = ?",
            [self._org_id],
        )
        if rows:
            return row_to_counter(rows[0])
        counter = OrgCounterState(org_id=OrgId(self._org_id))
        await self._tx.execute(
            f"INSERT INTO {self._counters} (org_id, next_number, current_served_number, cycle, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            [self._org_id, counter.next_number, counter.current_served_number, counter.cycle, None],
        )
        log.info("Counter row created org_id=%s", self._org_id)
        return counter

    async def save_counter(self, counter: OrgCounterState) -> None:
        await self._tx.execute(
            f"UPDATE {self._counters} SET next_number = ?, current_served_number = ?, cycle = ?, updated_at = ? "
            "WHERE org_id = ?",
            [counter.next_number, counter.current_served_number, counter.cycle, counter.updated_at, self._org_id],
        )

    async def max_ticket_number(self, cycle: int) -> int:
        rows = await self._tx.query_rows(
            f"SELECT COALESCE(MAX(number), 0) AS max_number FROM {self._tickets} WHERE org_id = ? AND cycle = ?",
            [self._org_id, cycle],
        )
        return int(rows[0]["max_number"]) if rows else 0

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        rows = await self._tx.query_rows(
            f"SELECT {_TICKET_COLUMNS} FROM {self._tickets} WITH (UPDLOCK, ROWLOCK) WHERE org_id = ? AND id = ?",
            [self._org_id, ticket_id],
        )
        return row_to_ticket(rows[0]) if rows else None

    async def get_ticket_by_number(self, cycle: int, number: int) -> Ticket | None:
        rows = await self._tx.query_rows(
            f"SELECT {_TICKET_COLUMNS} FROM {self._tickets} WITH (UPDLOCK, ROWLOCK) "
            "WHERE org_id = ? AND cycle = ? AND number = ?",
            [self._org_id, cycle, number],
        )
        return row_to_ticket(rows[0]) if rows else None

    async def insert_ticket(self, ticket: Ticket) -> None:
        row = ticket_to_row(ticket)
        await self._tx.execute(
            f"INSERT INTO {self._tickets} ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
            list(row.values()),
        )

    async def update_ticket(self, ticket: Ticket) -> None:
        await self._tx.execute(
            f"UPDATE {self._tickets} SET status = ?, updated_at = ?, served_at = ? WHERE org_id = ? AND id = ?",
            [ticket.status.value, ticket.updated_at, ticket.served_at, self._org_id, str(ticket.id)],
        )

    async def cancel_pending(self, at: datetime) -> int:
        return await self._tx.execute(
            f"UPDATE {self._tickets} SET status = 'cancelled', updated_at = ? "
            f"WHERE org_id = ? AND status IN {_PENDING_SQL}",
            [at, self._org_id],
        )

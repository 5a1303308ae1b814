from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from collections.abc import AsyncIterator
from typing import Any

import aioodbc

from navbat_queue.config import settings
from navbat_queue.domain.errors import QueueError, StorageUnavailable
from navbat_queue.infrastructure.sqlserver.errors import classify_error

log = logging.getLogger(__name__)
_DRIVER_VERSION_PATTERN = re.compile(r"^ODBC Driver (\d+) for SQL Server$", re.IGNORECASE)
_VALID_SQL_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLServerConnection:
    def __init__(self) -> None:
        self._pool: aioodbc.pool.Pool | None = None
        self._tx_pool: aioodbc.pool.Pool | None = None
        self._query_semaphore: asyncio.Semaphore | None = None

    async def start(self) -> None:
        if self._pool is not None:
            log.debug("SQL pools already open")
            return
        candidates = build_driver_candidates(settings.sql_driver)
        if not candidates:
            raise StorageUnavailable("no SQL Server ODBC driver installed; set SQL_DRIVER")
        log.info("Opening SQL pools drivers=%s", candidates)

        failures: dict[str, Exception] = {}
        for driver in candidates:
            try:
                await self._open_pools(driver)
            except Exception as exc:  # noqa: BLE001
                failures[driver] = exc
                await self._close_pools()
                log.warning("SQL pools failed driver=%s error=%r", driver, exc)
                continue
            if failures:
                log.warning("SQL driver fallback configured=%s using=%s", settings.sql_driver, driver)
            return

        installed = list_sql_server_drivers()
        last_error = list(failures.values())[-1]
        raise StorageUnavailable(
            f"cannot reach SQL Server; tried [{', '.join(failures)}], installed [{', '.join(installed) or '<none>'}]"
        ) from last_error

    async def _open_pools(self, driver: str) -> None:
        limit = max(1, int(settings.sql_max_concurrent_queries))
        maxsize = max(1, min(16, limit))
        dsn = settings.build_odbc_dsn(driver=driver)
        # reads and CAS updates autocommit; engine transactions commit explicitly
        self._pool = await aioodbc.create_pool(dsn=dsn, autocommit=True, minsize=1, maxsize=maxsize)
        self._tx_pool = await aioodbc.create_pool(dsn=dsn, autocommit=False, minsize=1, maxsize=maxsize)
        self._query_semaphore = asyncio.Semaphore(limit)
        log.info("SQL pools open driver=%s limit=%s maxsize=%s", driver, limit, maxsize)

    async def close(self) -> None:
        if self._pool is None:
            log.debug("SQL pool close skipped because pool is None")
            return
        log.info("Closing SQL pools")
        await self._close_pools()
        log.info("SQL pools closed")

    async def query_rows(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        pool, semaphore = self._require_started()
        query_preview = _compact_sql(query, max_chars=settings.log_sql_preview_chars)
        started_at = time.perf_counter()
        async with semaphore:
            async with pool.acquire() as conn:
                try:
                    async with conn.cursor() as cur:
                        cur.timeout = settings.sql_query_timeout_seconds
                        await cur.execute(query, params)
                        rows = await cur.fetchall()
                        cols = [col[0] for col in cur.description]
                except Exception as exc:  # noqa: BLE001
                    log.exception("SQL query failed params=%s sql=%s", len(params), query_preview)
                    raise classify_error(exc) from exc
        _log_elapsed(started_at, len(rows), len(params), query_preview)
        return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute(self, query: str, params: list[Any]) -> int:
        pool, semaphore = self._require_started()
        query_preview = _compact_sql(query, max_chars=settings.log_sql_preview_chars)
        started_at = time.perf_counter()
        async with semaphore:
            async with pool.acquire() as conn:
                try:
                    async with conn.cursor() as cur:
                        cur.timeout = settings.sql_query_timeout_seconds
                        await cur.execute(query, params)
                        affected = cur.rowcount
                except Exception as exc:  # noqa: BLE001
                    log.exception("SQL execute failed params=%s sql=%s", len(params), query_preview)
                    raise classify_error(exc) from exc
        _log_elapsed(started_at, affected, len(params), query_preview)
        return affected

    @contextlib.asynccontextmanager
    async def transaction(self, lock_timeout_ms: int) -> AsyncIterator["SQLTransaction"]:
        """
        One explicit transaction on a dedicated connection. Commits when the
        body returns, rolls back on any exception or cancellation.
        """
        if self._tx_pool is None or self._query_semaphore is None:
            raise StorageUnavailable("SQL connection has not started")
        async with self._query_semaphore:
            async with self._tx_pool.acquire() as conn:
                async with conn.cursor() as cur:
                    cur.timeout = settings.sql_query_timeout_seconds
                    tx = SQLTransaction(cur)
                    try:
                        await tx.execute(f"SET LOCK_TIMEOUT {int(lock_timeout_ms)}", [])
                        yield tx
                        await conn.commit()
                    except BaseException as exc:
                        with contextlib.suppress(Exception):
                            await conn.rollback()
                        log.debug("SQL transaction rolled back error=%r", exc)
                        if isinstance(exc, QueueError) or not isinstance(exc, Exception):
                            raise
                        raise classify_error(exc) from exc

    @staticmethod
    def table_name(schema: str, table: str) -> str:
        if not _VALID_SQL_IDENT.match(schema) or not _VALID_SQL_IDENT.match(table):
            raise ValueError("Invalid schema/table name")
        return f"[{schema}].[{table}]"

    def _require_started(self) -> tuple[aioodbc.pool.Pool, asyncio.Semaphore]:
        if self._pool is None:
            raise StorageUnavailable("SQL connection has not started")
        if self._query_semaphore is None:
            raise StorageUnavailable("SQL query semaphore is not initialized")
        return self._pool, self._query_semaphore

    async def _close_pools(self) -> None:
        for pool in (self._pool, self._tx_pool):
            if pool is None:
                continue
            pool.close()
            await pool.wait_closed()
        self._pool = None
        self._tx_pool = None
        self._query_semaphore = None


class SQLTransaction:
    def __init__(self, cursor: Any) -> None:
        self._cur = cursor

    async def query_rows(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        await self._cur.execute(query, params)
        rows = await self._cur.fetchall()
        cols = [col[0] for col in self._cur.description]
        return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute(self, query: str, params: list[Any]) -> int:
        await self._cur.execute(query, params)
        return self._cur.rowcount


def list_sql_server_drivers() -> list[str]:
    try:
        import pyodbc
    except Exception:
        return []
    return [driver for driver in pyodbc.drivers() if "SQL Server" in driver]


def build_driver_candidates(preferred_driver: str) -> list[str]:
    preferred = preferred_driver.strip()
    installed = sorted(list_sql_server_drivers(), key=_driver_sort_key, reverse=True)
    out: list[str] = []
    if preferred:
        out.append(preferred)
    for driver in installed:
        if driver not in out:
            out.append(driver)
    return out


def _driver_sort_key(driver: str) -> tuple[int, str]:
    match = _DRIVER_VERSION_PATTERN.match(driver.strip())
    if match:
        return int(match.group(1)), driver
    return -1, driver


def _log_elapsed(started_at: float, rows: int, params: int, query_preview: str) -> None:
    elapsed_ms = int((time.perf_counter() - started_at) * 1000)
    if elapsed_ms >= 2000:
        log.warning("SQL slow elapsed_ms=%s rows=%s params=%s sql=%s", elapsed_ms, rows, params, query_preview)
    else:
        log.debug("SQL done elapsed_ms=%s rows=%s params=%s", elapsed_ms, rows, params)


def _compact_sql(sql: str, *, max_chars: int) -> str:
    single_line = " ".join(sql.split())
    if len(single_line) <= max_chars:
        return single_line
    return f"{single_line[: max_chars - 3]}..."

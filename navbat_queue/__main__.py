from __future__ import annotations

import contextlib
import faulthandler
import logging
import logging.handlers
import os
import sys
import threading
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from navbat_queue.application.services.queue_engine import QueueEngine
from navbat_queue.config import settings
from navbat_queue.infrastructure.catalog.org_catalog import JsonOrgCatalog
from navbat_queue.infrastructure.memory.queue_repo import InMemoryQueueRepository
from navbat_queue.infrastructure.messaging.event_bus import AsyncEventBus
from navbat_queue.infrastructure.messaging.notifier import EventBusNotifier
from navbat_queue.infrastructure.realtime.ws_server import PromotionStreamer
from navbat_queue.infrastructure.sqlserver.connection import SQLServerConnection
from navbat_queue.infrastructure.sqlserver.queue_repo import SqlServerQueueRepository
from navbat_queue.presentation.api.app import create_app

log = logging.getLogger(__name__)


def _configure_logging() -> None:
    level_name = settings.log_level.upper().strip() or "INFO"
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    if settings.log_to_console:
        console_handler = logging.StreamHandler(stream=sys.stdout)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    log_path = settings.log_file.strip()
    if log_path:
        path = Path(log_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=path,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logging.captureWarnings(True)
    log.info(
        "Logging configured level=%s console=%s file=%s",
        level_name,
        settings.log_to_console,
        log_path or "<disabled>",
    )


def _install_crash_hooks() -> None:
    def _global_excepthook(exc_type, exc_value, exc_traceback) -> None:
        log.critical("Unhandled exception on main thread", exc_info=(exc_type, exc_value, exc_traceback))

    def _thread_excepthook(args) -> None:
        log.critical(
            "Unhandled exception on thread=%s",
            args.thread.name if args.thread else "<unknown>",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    sys.excepthook = _global_excepthook
    threading.excepthook = _thread_excepthook
    with contextlib.suppress(Exception):
        faulthandler.enable(all_threads=True)


class _SystemClock:
    def now(self) -> datetime:
        return datetime.now()


def build_app() -> FastAPI:
    if settings.storage_backend == "sqlserver":
        repo = SqlServerQueueRepository(
            SQLServerConnection(),
            lock_timeout_seconds=settings.tx_lock_timeout_seconds,
        )
        log.info("Storage backend sqlserver server=%s database=%s", settings.sql_server, settings.sql_database)
    else:
        repo = InMemoryQueueRepository(lock_timeout_seconds=settings.tx_lock_timeout_seconds)
        log.warning("Storage backend memory; tickets are lost on restart")

    catalog = JsonOrgCatalog(settings.catalog_file)
    event_bus = AsyncEventBus(default_queue_size=settings.event_queue_size)
    engine = QueueEngine(
        repo=repo,
        catalog=catalog,
        clock=_SystemClock(),
        notifier=EventBusNotifier(event_bus),
        missed_threshold=settings.missed_threshold,
        eta_window_size=settings.eta_window_size,
        eta_min_samples=settings.eta_min_samples,
        eta_min_interval_seconds=settings.eta_min_interval_seconds,
        eta_max_interval_seconds=settings.eta_max_interval_seconds,
        tx_max_attempts=settings.tx_max_attempts,
        tx_retry_backoff_seconds=settings.tx_retry_backoff_seconds,
        metadata_max_fields=settings.metadata_max_fields,
        metadata_max_value_length=settings.metadata_max_value_length,
    )

    @contextlib.asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        log.info("Runtime start begin")
        if isinstance(repo, SqlServerQueueRepository):
            await repo.start()
        log.info("Runtime start completed")
        try:
            yield
        finally:
            log.info("Runtime shutdown sequence started")
            if isinstance(repo, SqlServerQueueRepository):
                await repo.close()
            log.info("Runtime shutdown sequence completed")

    return create_app(
        engine,
        catalog=catalog,
        streamer=PromotionStreamer(event_bus, queue_size=settings.event_queue_size),
        title=settings.app_name,
        lifespan=_lifespan,
    )


def main() -> int:
    _configure_logging()
    _install_crash_hooks()
    log.info("Application starting pid=%s python=%s", os.getpid(), sys.version.split()[0])
    app = build_app()
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    log.info("Application stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

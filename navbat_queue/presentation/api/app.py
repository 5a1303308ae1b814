from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from navbat_queue.application.ports import OrgCatalogPort
from navbat_queue.application.services.queue_engine import QueueEngine
from navbat_queue.domain.errors import QueueError, StorageUnavailable
from navbat_queue.infrastructure.realtime.ws_server import PromotionStreamer
from navbat_queue.presentation.api.http import build_http_router
from navbat_queue.presentation.api.ws import build_ws_router

log = logging.getLogger(__name__)


class ErrorBody(BaseModel):
    kind: str
    message: str


class ErrorEnvelope(BaseModel):
    ok: bool = False
    error: ErrorBody


def error_response(status_code: int, kind: str, message: str) -> JSONResponse:
    envelope = ErrorEnvelope(error=ErrorBody(kind=kind, message=message))
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def create_app(
    engine: QueueEngine,
    *,
    catalog: OrgCatalogPort,
    streamer: PromotionStreamer | None = None,
    title: str = "Navbat Queue",
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    app = FastAPI(title=title, lifespan=lifespan)

    @app.exception_handler(QueueError)
    async def _queue_error(request: Request, exc: QueueError) -> JSONResponse:
        if isinstance(exc, StorageUnavailable):
            log.error("Request failed path=%s kind=%s message=%s", request.url.path, exc.kind, exc.message)
        else:
            log.info("Request rejected path=%s kind=%s message=%s", request.url.path, exc.kind, exc.message)
        return error_response(exc.status_code, exc.kind, exc.message)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        log.info("Request validation failed path=%s errors=%s", request.url.path, len(exc.errors()))
        return error_response(422, "validation_error", str(exc.errors()))

    app.include_router(build_http_router(engine))
    if streamer is not None:
        app.include_router(build_ws_router(streamer, catalog))
    return app

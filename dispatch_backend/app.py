"""
FastAPI application entry point for the dispatch backend.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dispatch_backend.config import get_settings
from dispatch_backend.constants import ErrorCode
from dispatch_backend.errors import ApiError, FetchCancelledError, StoreUnavailableError
from dispatch_backend.routes import router

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _error_response(request: Request, status_code: int, code: str, message: str):
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    app = FastAPI(title="Dispatch Backend (FastAPI)", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)

    @app.middleware("http")
    async def assign_request_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        logger.warning(
            "[%s] %s %s -> %s: %s",
            getattr(request.state, "request_id", None),
            request.method,
            request.url.path,
            exc.code,
            exc.message,
        )
        return _error_response(request, exc.status_code, exc.code, exc.message)

    @app.exception_handler(StoreUnavailableError)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error(
            "[%s] Store unavailable during %s %s: %s",
            getattr(request.state, "request_id", None),
            request.method,
            request.url.path,
            exc,
        )
        return _error_response(
            request, 503, ErrorCode.STORE_UNAVAILABLE, "Article store is unavailable"
        )

    @app.exception_handler(FetchCancelledError)
    async def handle_fetch_cancelled(request: Request, exc: FetchCancelledError):
        logger.warning(
            "[%s] Balanced fetch abandoned: %s",
            getattr(request.state, "request_id", None),
            exc,
        )
        return _error_response(request, 504, ErrorCode.FETCH_CANCELLED, str(exc))

    return app


app = create_app()

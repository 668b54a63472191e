from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings
from config.constants import APP_TITLE, APP_VERSION
from errors import INTERNAL_MESSAGE, ErrorCode, FlowError, error_body, validation_message
from routes import agent, claim, enrich, metrics, playback, root
from services import app_state
from services.rate_limit_service import rate_limit_middleware
from utils.metrics import FLOW_ERRORS
from utils.request_id import RequestIdMiddleware


log = logging.getLogger("medialink.http")


def _cors_origins() -> list[str]:
    raw = os.environ.get("CORS_ALLOW_ORIGINS") or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


async def _internal_error_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    try:
        return await call_next(request)
    except Exception:
        FLOW_ERRORS.inc(code=ErrorCode.INTERNAL.value)
        log.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500, content=error_body(ErrorCode.INTERNAL, INTERNAL_MESSAGE)
        )


def create_app(settings: Settings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
        await app_state.startup(app, settings)
        try:
            yield
        finally:
            await app_state.shutdown(app)

    app = FastAPI(title=APP_TITLE, version=APP_VERSION, lifespan=lifespan)

    @app.exception_handler(FlowError)
    async def _flow_error_handler(request: Request, exc: FlowError) -> JSONResponse:
        FLOW_ERRORS.inc(code=exc.code.value)
        log.info(
            "flow error path=%s code=%s status=%s message=%s",
            request.url.path,
            exc.code.value,
            exc.http_status,
            exc.message,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        _ = request
        FLOW_ERRORS.inc(code=ErrorCode.INVALID_ARGUMENT.value)
        return JSONResponse(
            status_code=400,
            content=error_body(ErrorCode.INVALID_ARGUMENT, validation_message(exc.errors())),
        )

    # Innermost, so unexpected errors still pass the request-id and rate-limit layers.
    app.middleware("http")(_internal_error_middleware)
    app.middleware("http")(rate_limit_middleware)

    cors_origins = list(settings.cors_allow_origins) if settings else _cors_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            # Starlette forbids credentials with wildcard origins.
            allow_credentials="*" not in cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Api-Key", "X-Request-Id"],
            expose_headers=["X-Request-Id"],
        )

    app.add_middleware(RequestIdMiddleware)

    app.include_router(root.router)
    app.include_router(claim.router)
    app.include_router(agent.router)
    app.include_router(playback.router)
    app.include_router(enrich.router)
    app.include_router(metrics.router)

    return app

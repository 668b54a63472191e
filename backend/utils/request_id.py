from __future__ import annotations

import contextvars
import logging
import time
import uuid
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp


REQUEST_ID_HEADER = "X-Request-Id"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"

_log = logging.getLogger("medialink.request")

_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "medialink_request_id", default="-"
)


def current_request_id() -> str:
    return _REQUEST_ID.get()


class RequestIdLogFilter(logging.Filter):
    """Stamps `record.request_id` so formatters can include it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = _REQUEST_ID.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(str(level or "INFO").upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    for handler in root.handlers:
        if not any(isinstance(f, RequestIdLogFilter) for f in handler.filters):
            handler.addFilter(RequestIdLogFilter())


def _new_request_id() -> str:
    return uuid.uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        *,
        header_name: str = REQUEST_ID_HEADER,
        generator: Optional[Callable[[], str]] = None,
        log_requests: bool = True,
    ) -> None:
        super().__init__(app)
        self._header_name = str(header_name or REQUEST_ID_HEADER)
        self._generator = generator or _new_request_id
        self._log_requests = bool(log_requests)

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        # Client-supplied ids are echoed back but capped to keep logs sane.
        rid = (request.headers.get(self._header_name) or "").strip()[:128] or self._generator()
        request.state.request_id = rid
        token = _REQUEST_ID.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            if self._log_requests:
                _log.exception(
                    "request failed method=%s path=%s duration_ms=%.3f",
                    request.method,
                    request.url.path,
                    (time.perf_counter() - start) * 1000.0,
                )
            raise
        finally:
            _REQUEST_ID.reset(token)

        response.headers[self._header_name] = rid
        if self._log_requests:
            _log.info(
                "request request_id=%s method=%s path=%s status_code=%s duration_ms=%.3f",
                rid,
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - start) * 1000.0,
            )
        return response

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from utils.metrics import OUTBOUND_FAILURES, OUTBOUND_REQUEST_DURATION, OUTBOUND_RETRIES


DEFAULT_RETRY_STATUS_CODES = (408, 425, 429, 500, 502, 503, 504)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 2
    backoff_base_s: float = 0.15
    backoff_max_s: float = 1.0
    retry_status_codes: tuple[int, ...] = DEFAULT_RETRY_STATUS_CODES

    def backoff_s(self, attempt: int) -> float:
        # Exponential with full jitter.
        cap = min(
            float(self.backoff_max_s),
            float(self.backoff_base_s) * (2.0 ** float(max(0, attempt - 1))),
        )
        return random.random() * max(0.0, cap)


def failure_reason(*, exc: Exception | None = None, status_code: int | None = None) -> str:
    if exc is not None:
        if isinstance(exc, httpx.TimeoutException):
            return "timeout"
        if isinstance(exc, httpx.TransportError):
            return "network"
        return "error"
    sc = int(status_code or 0)
    if 400 <= sc < 500:
        return "http_4xx"
    if 500 <= sc < 600:
        return "http_5xx"
    return "http_error"


async def request_with_retry(
    *,
    client: httpx.AsyncClient,
    method: str,
    url: str,
    target_kind: str,
    timeout_s: float,
    retry: RetryPolicy | None = None,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_body: Any = None,
) -> httpx.Response:
    """
    Outbound request with bounded retries on transient failures.

    Network errors, timeouts and `retry_status_codes` are retried; other HTTP
    errors are returned to the caller as-is. Latency, failures and retries are
    recorded per `target_kind` in the metrics registry.
    """
    pol = retry or RetryPolicy()
    attempts = max(1, int(pol.attempts))
    m = str(method).upper()
    start = time.perf_counter()

    def _elapsed() -> float:
        return max(0.0, time.perf_counter() - start)

    attempt = 0
    while True:
        attempt += 1
        try:
            resp = await client.request(
                method=m,
                url=str(url),
                params=params,
                json=json_body,
                headers=headers,
                timeout=float(timeout_s),
            )
        except Exception as e:
            reason = failure_reason(exc=e)
            if attempt < attempts and reason in ("timeout", "network"):
                OUTBOUND_RETRIES.inc(target_kind=target_kind, method=m)
                await asyncio.sleep(pol.backoff_s(attempt))
                continue
            OUTBOUND_FAILURES.inc(target_kind=target_kind, method=m, reason=reason)
            OUTBOUND_REQUEST_DURATION.observe(_elapsed(), target_kind=target_kind, method=m)
            raise

        if resp.status_code in pol.retry_status_codes and attempt < attempts:
            OUTBOUND_RETRIES.inc(target_kind=target_kind, method=m)
            await resp.aclose()
            await asyncio.sleep(pol.backoff_s(attempt))
            continue

        if resp.status_code >= 400:
            OUTBOUND_FAILURES.inc(
                target_kind=target_kind,
                method=m,
                reason=failure_reason(status_code=resp.status_code),
            )
        OUTBOUND_REQUEST_DURATION.observe(_elapsed(), target_kind=target_kind, method=m)
        return resp


def retry_policy_from_settings(settings: Any) -> RetryPolicy:
    codes = tuple(int(x) for x in (getattr(settings, "outbound_retry_status_codes", ()) or ()))
    return RetryPolicy(
        attempts=max(1, int(getattr(settings, "outbound_retry_attempts", 2))),
        backoff_base_s=max(0.0, float(getattr(settings, "outbound_retry_backoff_base_s", 0.15))),
        backoff_max_s=max(0.0, float(getattr(settings, "outbound_retry_backoff_max_s", 1.0))),
        retry_status_codes=codes or DEFAULT_RETRY_STATUS_CODES,
    )

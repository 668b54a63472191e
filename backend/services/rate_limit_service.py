from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse

from errors import ErrorCode, error_body
from services.auth_service import client_ip
from utils.metrics import RATE_LIMIT_REQUESTS


DEFAULT_EXEMPT_PREFIXES = (
    "/readyz",
    "/livez",
    "/v1/health",
    "/metrics",
    "/openapi.json",
    "/docs",
    "/favicon.ico",
)


@dataclass
class _Bucket:
    tokens: float
    updated_at: float
    last_seen: float


class TokenBucketLimiter:
    """Per-key token buckets refilled continuously at `rate_per_s` up to `burst`."""

    def __init__(
        self,
        *,
        rate_per_s: float,
        burst: int,
        bucket_ttl_s: float,
        cleanup_interval_s: float,
    ) -> None:
        self.rate_per_s = max(0.0, float(rate_per_s))
        self.burst = max(1, int(burst))
        self._bucket_ttl_s = max(1.0, float(bucket_ttl_s))
        self._cleanup_interval_s = max(1.0, float(cleanup_interval_s))
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = asyncio.Lock()
        self._last_cleanup = 0.0

    def __len__(self) -> int:
        return len(self._buckets)

    async def check(self, key: str, *, cost: float = 1.0) -> Tuple[bool, Optional[float], int]:
        """Returns (allowed, retry_after_s, remaining)."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.burst), updated_at=now, last_seen=now)
                self._buckets[key] = bucket

            elapsed = max(0.0, now - bucket.updated_at)
            bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.rate_per_s)
            bucket.updated_at = now
            bucket.last_seen = now

            retry_after: Optional[float] = None
            allowed = bucket.tokens >= cost
            if allowed:
                bucket.tokens -= cost
            elif self.rate_per_s > 0:
                retry_after = (cost - bucket.tokens) / self.rate_per_s

            if now - self._last_cleanup >= self._cleanup_interval_s:
                self._evict_idle(now)
                self._last_cleanup = now

            return allowed, retry_after, max(0, int(math.floor(bucket.tokens)))

    def _evict_idle(self, now: float) -> None:
        for k in [k for k, b in self._buckets.items() if now - b.last_seen > self._bucket_ttl_s]:
            self._buckets.pop(k, None)


def exempt_prefixes(extra: Iterable[str] | None) -> Tuple[str, ...]:
    out = list(DEFAULT_EXEMPT_PREFIXES)
    out.extend(s for s in (str(p or "").strip() for p in (extra or ())) if s)
    return tuple(out)


def _limiter_for(request: Request, settings: Any) -> TokenBucketLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = TokenBucketLimiter(
            rate_per_s=float(settings.rate_limit_requests_per_minute) / 60.0,
            burst=int(settings.rate_limit_burst),
            bucket_ttl_s=float(settings.rate_limit_bucket_ttl_s),
            cleanup_interval_s=float(settings.rate_limit_cleanup_interval_s),
        )
        request.app.state.rate_limiter = limiter
    return limiter


async def rate_limit_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    st = getattr(request.app.state, "medialink", None)
    settings = st.settings if st is not None else None
    if settings is None or not settings.rate_limit_enabled:
        return await call_next(request)
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    path = request.url.path or ""
    if any(path.startswith(pfx) for pfx in exempt_prefixes(settings.rate_limit_exempt_paths)):
        return await call_next(request)

    limiter = _limiter_for(request, settings)
    scope = str(settings.rate_limit_scope or "ip").strip().lower() or "ip"
    ip = client_ip(request, trust_proxy=bool(settings.rate_limit_trust_proxy_headers))
    key = ip if scope == "ip" else f"{ip}:{path}"

    allowed, retry_after, remaining = await limiter.check(key)
    RATE_LIMIT_REQUESTS.inc(scope=scope, decision="allowed" if allowed else "blocked")

    headers = {
        "X-RateLimit-Limit": str(int(settings.rate_limit_requests_per_minute)),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Burst": str(limiter.burst),
    }
    if not allowed:
        headers["Retry-After"] = str(max(1, int(math.ceil(float(retry_after or 1.0)))))
        return JSONResponse(
            status_code=429,
            content=error_body(ErrorCode.RESOURCE_EXHAUSTED, "Too many requests. Slow down."),
            headers=headers,
        )

    response = await call_next(request)
    response.headers.update(headers)
    return response

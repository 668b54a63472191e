from __future__ import annotations

from types import SimpleNamespace

from fastapi import FastAPI
from starlette.testclient import TestClient

from services import rate_limit_service
from utils.metrics import RATE_LIMIT_REQUESTS


def _settings(**overrides):
    base = dict(
        rate_limit_enabled=True,
        rate_limit_requests_per_minute=1,
        rate_limit_burst=1,
        rate_limit_scope="ip",
        rate_limit_exempt_paths=(),
        rate_limit_bucket_ttl_s=60.0,
        rate_limit_cleanup_interval_s=5.0,
        rate_limit_trust_proxy_headers=False,
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def _app(settings) -> FastAPI:
    app = FastAPI()
    app.state.medialink = SimpleNamespace(settings=settings)
    app.middleware("http")(rate_limit_service.rate_limit_middleware)

    @app.get("/test")
    async def _test():  # type: ignore[no-untyped-def]
        return {"ok": True}

    @app.get("/livez")
    async def _livez():  # type: ignore[no-untyped-def]
        return {"ok": True}

    return app


def test_rate_limit_headers_present() -> None:
    blocked_before = RATE_LIMIT_REQUESTS.value(scope="ip", decision="blocked")
    client = TestClient(_app(_settings()))

    first = client.get("/test")
    assert first.status_code == 200
    assert first.headers["X-RateLimit-Limit"] == "1"
    assert first.headers["X-RateLimit-Remaining"] == "0"
    assert first.headers["X-RateLimit-Burst"] == "1"

    second = client.get("/test")
    assert second.status_code == 429
    assert int(second.headers["Retry-After"]) >= 1
    assert "X-RateLimit-Limit" in second.headers
    assert "X-RateLimit-Remaining" in second.headers
    assert second.json() == {
        "error": {"status": "RESOURCE_EXHAUSTED", "message": "Too many requests. Slow down."}
    }
    assert RATE_LIMIT_REQUESTS.value(scope="ip", decision="blocked") == blocked_before + 1


def test_exempt_paths_and_disabled() -> None:
    client = TestClient(_app(_settings(rate_limit_exempt_paths=("/test",))))
    for _ in range(3):
        assert client.get("/test").status_code == 200
        assert client.get("/livez").status_code == 200

    client = TestClient(_app(_settings(rate_limit_enabled=False)))
    for _ in range(3):
        resp = client.get("/test")
        assert resp.status_code == 200
        assert "X-RateLimit-Limit" not in resp.headers


def test_path_scope_keeps_separate_buckets() -> None:
    app = _app(_settings(rate_limit_scope="path"))

    @app.get("/other")
    async def _other():  # type: ignore[no-untyped-def]
        return {"ok": True}

    client = TestClient(app)
    assert client.get("/test").status_code == 200
    assert client.get("/other").status_code == 200
    assert client.get("/test").status_code == 429

from __future__ import annotations

from typing import Any, Dict

from fastapi import Depends
from fastapi.responses import JSONResponse

from config.constants import APP_VERSION, SERVICE_NAME
from services.state import AppState, get_state


async def root() -> Dict[str, Any]:
    return {"ok": True, "service": SERVICE_NAME, "version": APP_VERSION}


async def livez() -> JSONResponse:
    return JSONResponse(status_code=200, content={"ok": True})


async def _checks(state: AppState) -> Dict[str, Any]:
    checks: Dict[str, Any] = {}
    h = await state.store.health()
    checks["store"] = {"ok": bool(h.ok), "detail": str(h.detail)}
    checks["hmac"] = {"ok": bool(state.settings.hmac_secret)}
    checks["tmdb"] = {"ok": True, "configured": state.tmdb is not None}
    return checks


async def health(state: AppState = Depends(get_state)) -> JSONResponse:
    checks = await _checks(state)
    ok = bool(checks["store"]["ok"])
    return JSONResponse(
        status_code=200 if ok else 503,
        content={
            "ok": ok,
            "service": SERVICE_NAME,
            "version": APP_VERSION,
            "uptime_s": round(state.uptime_s(), 3),
            "checks": checks,
        },
    )


async def readyz(state: AppState = Depends(get_state)) -> JSONResponse:
    # A missing HMAC key only breaks claiming; the service still serves agents.
    checks = await _checks(state)
    ok = bool(checks["store"]["ok"])
    return JSONResponse(status_code=200 if ok else 503, content={"ok": ok, "checks": checks})

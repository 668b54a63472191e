from __future__ import annotations

import logging

from fastapi import Depends, Request

from auth import AuthError
from errors import ErrorCode, FlowError
from services.state import AppState, get_state


log = logging.getLogger("medialink.auth")


def client_ip(request: Request | None, *, trust_proxy: bool = False) -> str:
    if request is None:
        return "unknown"
    if trust_proxy:
        raw = request.headers.get("x-forwarded-for") or ""
        if raw:
            return raw.split(",")[0].strip() or "unknown"
    try:
        if request.client and request.client.host:
            return str(request.client.host)
    except Exception:
        return "unknown"
    return "unknown"


def _bearer_from_request(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    parts = auth.strip().split(None, 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        tok = parts[1].strip()
        if tok:
            return tok
    return None


def agent_key_from_request(request: Request) -> str | None:
    """Agents send their key either as `X-Api-Key` or as a bearer token."""
    candidate = (request.headers.get("x-api-key") or "").strip()
    if candidate:
        return candidate
    return _bearer_from_request(request)


async def require_user(
    request: Request, state: AppState = Depends(get_state)
) -> str:
    tok = _bearer_from_request(request)
    if not tok:
        raise FlowError(ErrorCode.UNAUTHENTICATED, "Missing bearer ID token.")
    try:
        info = state.identity.verify(tok)
    except AuthError as e:
        log.info("id token rejected: %s", e)
        raise FlowError(ErrorCode.UNAUTHENTICATED, "Invalid or expired ID token.")
    uid = str(info.get("uid") or "").strip()
    if not uid:
        raise FlowError(ErrorCode.UNAUTHENTICATED, "Invalid or expired ID token.")
    request.state.uid = uid
    return uid

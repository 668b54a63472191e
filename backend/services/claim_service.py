from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends

from auth import hmac_sign, random_token
from doc_store import DocumentStore, Transaction
from errors import ErrorCode, FlowError
from services.auth_service import require_user
from services.state import AppState, get_state
from utils.metrics import CLAIM_TOKENS_ISSUED


log = logging.getLogger("medialink.claim")

# A missing server key is an operator problem, not the caller's.
CLAIM_TOKEN_STATUS_OVERRIDES = {ErrorCode.FAILED_PRECONDITION: 500}


def server_path(uid: str, server_id: str) -> str:
    return f"users/{uid}/servers/{server_id}"


def rate_limit_path(uid: str) -> str:
    return f"users/{uid}/servers_meta/rateLimit"


def claim_signature(key: str, claim_public_id: str, claim_secret: str) -> str:
    return hmac_sign(key, f"{claim_public_id}:{claim_secret}")


def iso_utc(ts: float) -> str:
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def create_claim_token(
    store: DocumentStore,
    *,
    uid: str,
    hmac_secret: Optional[str],
    ttl_s: int = 600,
    cooldown_s: int = 30,
) -> Dict[str, Any]:
    """
    Issue a single-use claim token for linking a new agent to `uid`.

    Only the HMAC of `"{claimPublicId}:{claimSecret}"` is persisted; the secret is
    handed back to the caller and never stored.
    """

    async def _issue(tx: Transaction) -> Dict[str, Any]:
        now = time.time()
        meta = await tx.get(rate_limit_path(uid))
        until = meta.get("rateLimitedUntil")
        if isinstance(until, (int, float)) and now < float(until):
            raise FlowError(
                ErrorCode.RESOURCE_EXHAUSTED,
                "A pending claim token was created recently. Please try again shortly.",
            )

        if not hmac_secret:
            log.error("HMAC_SECRET is not set; cannot issue claim tokens")
            raise FlowError(
                ErrorCode.FAILED_PRECONDITION, "Server configuration error."
            )

        server_id = str(uuid.uuid4())
        claim_public_id = "pub-" + random_token(12)
        claim_secret = "sec-" + random_token(16)
        expires_at = now + float(ttl_s)

        tx.set(
            server_path(uid, server_id),
            {
                "status": "pending",
                "serverId": server_id,
                "claimPublicId": claim_public_id,
                "claimSignature": claim_signature(
                    hmac_secret, claim_public_id, claim_secret
                ),
                "createdAt": now,
                "expiresAt": expires_at,
            },
        )
        tx.set(
            rate_limit_path(uid),
            {
                "lastTokenCreatedAt": now,
                "rateLimitedUntil": now + float(cooldown_s),
            },
        )
        return {
            "serverId": server_id,
            "claimPublicId": claim_public_id,
            "claimSecret": claim_secret,
            "expiresAtISO": iso_utc(expires_at),
        }

    out = await store.run_transaction(_issue)
    CLAIM_TOKENS_ISSUED.inc()
    log.info("claim token issued uid=%s server_id=%s", uid, out["serverId"])
    return out


async def claim_token(
    uid: str = Depends(require_user),
    state: AppState = Depends(get_state),
) -> Dict[str, Any]:
    settings = state.settings
    try:
        return await create_claim_token(
            state.store,
            uid=uid,
            hmac_secret=settings.hmac_secret,
            ttl_s=settings.claim_token_ttl_s,
            cooldown_s=settings.claim_rate_limit_s,
        )
    except FlowError as e:
        raise e.with_overrides(CLAIM_TOKEN_STATUS_OVERRIDES)

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import Depends, Request

from auth import constant_time_hex_equal, derive_key_hash_async, random_token
from doc_store import DocumentSnapshot, DocumentStore, Transaction
from errors import ErrorCode, FlowError
from models.requests import AgentClaimRequest
from services.auth_service import client_ip
from services.claim_service import claim_signature
from services.state import AppState, get_state
from utils.metrics import AGENTS_LINKED


log = logging.getLogger("medialink.claim")

API_KEY_PREFIX_LEN = 8
DEFAULT_AGENT_NAME = "New Agent"

# Expired tokens answer 410 Gone on this endpoint.
AGENT_CLAIM_STATUS_OVERRIDES = {ErrorCode.FAILED_PRECONDITION: 410}

_INVALID_TOKEN = "Invalid or already used claim token."


def receipt_path(uid: str, claim_public_id: str) -> str:
    return f"users/{uid}/claimReceipts/{claim_public_id}"


async def _find_claim(store: DocumentStore, claim_public_id: str) -> Optional[DocumentSnapshot]:
    pending = await store.collection_group(
        "servers",
        where=[("status", "pending"), ("claimPublicId", claim_public_id)],
        limit=1,
    )
    if pending:
        return pending[0]
    # A token that already linked a server is remembered by its receipt.
    receipts = await store.collection_group(
        "claimReceipts", where=[("claimPublicId", claim_public_id)], limit=1
    )
    return receipts[0] if receipts else None


async def claim_agent(
    store: DocumentStore,
    *,
    claim_public_id: str,
    claim_secret: str,
    hmac_secret: Optional[str],
    agent_name: Optional[str] = None,
    agent_version: Optional[str] = None,
    requester_ip: Optional[str] = None,
) -> Dict[str, str]:
    """
    Redeem a claim token and link the pending server to the calling agent.

    Returns the plaintext API key exactly once; only its scrypt hash is stored.
    """
    if not hmac_secret:
        log.error("HMAC_SECRET is not set; cannot verify claim tokens")
        raise FlowError(ErrorCode.INTERNAL, "Server configuration error.")

    snap = await _find_claim(store, claim_public_id)
    if snap is None:
        raise FlowError(ErrorCode.PERMISSION_DENIED, _INVALID_TOKEN)

    expected = str(snap.get("claimSignature") or "")
    presented = claim_signature(hmac_secret, claim_public_id, claim_secret)
    if not constant_time_hex_equal(presented, expected):
        raise FlowError(ErrorCode.PERMISSION_DENIED, _INVALID_TOKEN)

    expires_at = snap.get("expiresAt")
    if not isinstance(expires_at, (int, float)) or float(expires_at) <= time.time():
        raise FlowError(ErrorCode.FAILED_PRECONDITION, "This claim token has expired.")

    if snap.get("status") != "pending":
        raise FlowError(
            ErrorCode.ALREADY_EXISTS, "This claim token has already been used."
        )

    uid = snap.owner_uid
    if not uid:
        raise FlowError(ErrorCode.PERMISSION_DENIED, _INVALID_TOKEN)
    server_id = str(snap.get("serverId") or snap.id)

    agent_api_key = random_token(32)
    salt = random_token(16)
    api_key_hash = await derive_key_hash_async(agent_api_key, salt)

    async def _link(tx: Transaction) -> None:
        cur = await tx.get(snap.path)
        if (
            not cur.exists
            or cur.get("status") != "pending"
            or cur.get("claimPublicId") != claim_public_id
        ):
            raise FlowError(
                ErrorCode.ALREADY_EXISTS, "This claim token has already been used."
            )
        now = time.time()
        tx.update(
            snap.path,
            {
                "status": "linked",
                "name": agent_name or DEFAULT_AGENT_NAME,
                "agentVersion": agent_version,
                "ip": requester_ip,
                "apiKeyHash": api_key_hash,
                "salt": salt,
                "apiKeyPrefix": agent_api_key[:API_KEY_PREFIX_LEN],
                "linkedAt": now,
                "claimPublicId": None,
                "claimSignature": None,
                "expiresAt": None,
            },
        )
        tx.set(
            receipt_path(uid, claim_public_id),
            {
                "claimPublicId": claim_public_id,
                "claimSignature": expected,
                "expiresAt": float(expires_at),
                "serverId": server_id,
                "status": "linked",
                "consumedAt": now,
            },
        )

    await store.run_transaction(_link)
    AGENTS_LINKED.inc()
    log.info("agent linked uid=%s server_id=%s ip=%s", uid, server_id, requester_ip)
    return {"agentApiKey": agent_api_key, "serverId": server_id}


async def agent_claim(
    req: AgentClaimRequest,
    request: Request,
    state: AppState = Depends(get_state),
) -> Dict[str, Any]:
    settings = state.settings
    try:
        return await claim_agent(
            state.store,
            claim_public_id=req.claim_public_id,
            claim_secret=req.claim_secret,
            hmac_secret=settings.hmac_secret,
            agent_name=req.agent_name,
            agent_version=req.agent_version,
            requester_ip=client_ip(request, trust_proxy=settings.trust_proxy_headers),
        )
    except FlowError as e:
        raise e.with_overrides(AGENT_CLAIM_STATUS_OVERRIDES)

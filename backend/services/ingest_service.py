from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from auth import verify_key_hash
from doc_store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, MAX_BATCH_WRITES
from errors import ErrorCode, FlowError, validation_message
from models.requests import AgentIngestRequest, MediaItem
from services.agent_claim_service import API_KEY_PREFIX_LEN
from services.auth_service import agent_key_from_request
from services.state import AppState, get_state
from utils.metrics import INGEST_ITEMS


log = logging.getLogger("medialink.ingest")

DEFAULT_BATCH_SIZE = 450

_INVALID_KEY = "Invalid or unauthorized API key provided."


@dataclass(frozen=True)
class AgentIdentity:
    owner_uid: str
    server_id: str
    server_path: str


def stable_media_id(server_id: str, path: str) -> str:
    return hashlib.sha256(f"{server_id}:{path}".encode("utf-8")).hexdigest()


def media_path(uid: str, media_id: str) -> str:
    return f"users/{uid}/media/{media_id}"


def _auth_candidates(servers: Sequence[DocumentSnapshot], api_key: str) -> List[DocumentSnapshot]:
    # Records with a matching prefix first, then legacy records that never stored one.
    prefix = api_key[:API_KEY_PREFIX_LEN]
    matching: List[DocumentSnapshot] = []
    legacy: List[DocumentSnapshot] = []
    for snap in servers:
        stored = snap.get("apiKeyPrefix")
        if stored is None:
            legacy.append(snap)
        elif stored == prefix:
            matching.append(snap)
    return matching + legacy


async def authenticate_agent(store: DocumentStore, api_key: str) -> AgentIdentity:
    key = str(api_key or "").strip()
    if not key:
        raise FlowError(ErrorCode.PERMISSION_DENIED, _INVALID_KEY)
    servers = await store.collection_group("servers", where=[("status", "linked")])
    for snap in _auth_candidates(servers, key):
        key_hash = snap.get("apiKeyHash")
        salt = snap.get("salt")
        if not key_hash or not salt:
            continue
        if await verify_key_hash(key, str(salt), str(key_hash)):
            uid = snap.owner_uid
            if not uid:
                continue
            return AgentIdentity(
                owner_uid=uid,
                server_id=str(snap.get("serverId") or snap.id),
                server_path=snap.path,
            )
    raise FlowError(ErrorCode.PERMISSION_DENIED, _INVALID_KEY)


def touch_last_seen(state: AppState, identity: AgentIdentity) -> asyncio.Task[None]:
    """Record the agent heartbeat without holding up the response."""

    async def _touch() -> None:
        await state.store.update(identity.server_path, {"lastSeen": SERVER_TIMESTAMP})

    task = asyncio.create_task(_touch(), name=f"last_seen:{identity.server_id}")
    state.background_tasks.add(task)

    def _done(t: asyncio.Task[None]) -> None:
        state.background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.warning(
                "failed to update lastSeen server_id=%s: %s", identity.server_id, exc
            )

    task.add_done_callback(_done)
    return task


def _item_path(raw: Any) -> Optional[str]:
    if isinstance(raw, dict) and isinstance(raw.get("path"), str):
        return raw["path"]
    return None


def media_payload(item: MediaItem, *, media_id: str, server_id: str) -> Dict[str, Any]:
    data = item.model_dump(by_alias=True, exclude={"media_id", "added_at"})
    data["mediaId"] = media_id
    data["serverId"] = server_id
    data["status"] = "indexed"
    data["updatedAt"] = SERVER_TIMESTAMP
    added_at = item.added_at_epoch()
    if added_at is not None:
        data["addedAt"] = added_at
    return data


async def ingest_items(
    store: DocumentStore,
    *,
    identity: AgentIdentity,
    items: Sequence[Any],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> List[Dict[str, Any]]:
    """
    Validate and upsert agent items, returning one result per input item in order.

    Items are flushed in batches; when a batch fails to commit, every item it
    carried is reported as an error instead of `upserted`.
    """
    size = max(1, min(MAX_BATCH_WRITES, int(batch_size)))
    results: List[Dict[str, Any]] = []
    batch = store.batch()
    pending: List[int] = []

    async def _flush() -> None:
        nonlocal batch, pending
        if not pending:
            return
        try:
            await batch.commit()
        except Exception:
            log.exception(
                "ingest batch commit failed uid=%s server_id=%s items=%s",
                identity.owner_uid,
                identity.server_id,
                len(pending),
            )
            for idx in pending:
                results[idx] = {
                    "status": "error",
                    "message": "Failed to commit batch",
                    "path": results[idx].get("path"),
                }
        batch = store.batch()
        pending = []

    for raw in items:
        try:
            item = MediaItem.model_validate(raw)
        except ValidationError as e:
            results.append(
                {
                    "status": "error",
                    "message": validation_message(e.errors()),
                    "path": _item_path(raw),
                }
            )
            continue

        media_id = item.media_id or stable_media_id(identity.server_id, item.path)
        batch.set(
            media_path(identity.owner_uid, media_id),
            media_payload(item, media_id=media_id, server_id=identity.server_id),
            merge=True,
        )
        pending.append(len(results))
        results.append({"mediaId": media_id, "status": "upserted", "path": item.path})
        if len(pending) >= size:
            await _flush()

    await _flush()
    for r in results:
        INGEST_ITEMS.inc(status=r["status"])
    return results


def ingest_status_code(results: Sequence[Dict[str, Any]]) -> int:
    errors = sum(1 for r in results if r.get("status") == "error")
    if errors == 0:
        return 200
    if errors == len(results):
        return 400
    return 207


async def _read_body(request: Request, *, max_bytes: int) -> bytes:
    too_large = FlowError(
        ErrorCode.INVALID_ARGUMENT,
        f"Request body exceeds {max_bytes} bytes.",
        status_overrides={ErrorCode.INVALID_ARGUMENT: 413},
    )
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise too_large
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise too_large
    return bytes(body)


def parse_ingest_envelope(body: bytes) -> AgentIngestRequest:
    try:
        payload = json.loads(body.decode("utf-8") if body else "")
    except (ValueError, UnicodeDecodeError):
        raise FlowError(ErrorCode.INVALID_ARGUMENT, "Request body must be a JSON object.")
    try:
        return AgentIngestRequest.model_validate(payload)
    except ValidationError as e:
        raise FlowError(
            ErrorCode.INVALID_ARGUMENT,
            validation_message(e.errors(), prefix="Invalid payload structure: "),
        )


async def agent_ingest(
    request: Request, state: AppState = Depends(get_state)
) -> JSONResponse:
    # The body is read by hand so the API key is checked before any parsing.
    api_key = agent_key_from_request(request)
    if not api_key:
        raise FlowError(ErrorCode.UNAUTHENTICATED, "Missing agent API key.")

    settings = state.settings
    body = await _read_body(request, max_bytes=settings.ingest_max_body_bytes)
    envelope = parse_ingest_envelope(body)

    identity = await authenticate_agent(state.store, api_key)
    touch_last_seen(state, identity)

    results = await ingest_items(
        state.store,
        identity=identity,
        items=envelope.items,
        batch_size=settings.ingest_batch_size,
    )
    status_code = ingest_status_code(results)
    log.info(
        "agent ingest uid=%s server_id=%s items=%s status=%s",
        identity.owner_uid,
        identity.server_id,
        len(results),
        status_code,
    )
    return JSONResponse(status_code=status_code, content={"results": results})

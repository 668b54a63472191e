from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from fastapi import Depends
from pydantic import ValidationError

from doc_store import SERVER_TIMESTAMP, DocumentStore, Transaction
from errors import ErrorCode, FlowError
from models.requests import MAX_ENRICH_ITEMS, EnrichItem, EnrichRequest
from services.auth_service import require_user
from services.ingest_service import media_path
from services.state import AppState, get_state
from tmdb_client import AsyncTmdbClient, TmdbError, parse_details, tmdb_type_for
from utils.metrics import TMDB_ENRICH_ITEMS


log = logging.getLogger("medialink.tmdb")

BACKFILL_QUERY_LIMIT = 200
DEFAULT_RECHECK_S = 7 * 24 * 3600


def enrich_rate_limit_path(uid: str) -> str:
    return f"users/{uid}/integrations_meta/tmdbRateLimit"


def tmdb_cache_path(uid: str, key: str) -> str:
    return f"users/{uid}/tmdb_cache/{key}"


def cache_key(media_type: str, title: str, year: Optional[int] = None) -> str:
    base = f"{tmdb_type_for(media_type)}:{str(title).strip().lower()}:{'' if year is None else year}"
    return hashlib.sha1(base.encode("utf-8")).hexdigest()


def _cache_fresh(cached: Dict[str, Any], *, now: float, ttl_s: float) -> bool:
    at = cached.get("cachedAt")
    if not isinstance(at, (int, float)) or cached.get("tmdbId") is None:
        return False
    return now - float(at) < float(ttl_s)


async def _check_cooldown(store: DocumentStore, uid: str, cooldown_s: float) -> None:
    async def _apply(tx: Transaction) -> None:
        now = time.time()
        meta = await tx.get(enrich_rate_limit_path(uid))
        until = meta.get("rateLimitedUntil")
        if isinstance(until, (int, float)) and float(until) > now:
            raise FlowError(
                ErrorCode.RESOURCE_EXHAUSTED, "Please wait before enriching again."
            )
        tx.set(
            enrich_rate_limit_path(uid),
            {"lastCallAt": now, "rateLimitedUntil": now + float(cooldown_s)},
            merge=True,
        )

    await store.run_transaction(_apply)


async def _lookup(
    store: DocumentStore,
    tmdb: AsyncTmdbClient,
    *,
    uid: str,
    item: EnrichItem,
    cache_ttl_s: float,
) -> Optional[Dict[str, Any]]:
    key = cache_key(item.type, item.title, item.year)
    cached = await store.get(tmdb_cache_path(uid, key))
    if cached.exists and _cache_fresh(cached.to_dict(), now=time.time(), ttl_s=cache_ttl_s):
        return cached.to_dict()

    match = await tmdb.search(item.type, item.title, item.year)
    if match is None:
        return None
    details = await tmdb.details(match)
    if details is None:
        return None
    parsed = parse_details(details, tmdb_type=match.tmdb_type)
    parsed["cachedAt"] = SERVER_TIMESTAMP
    await store.set(tmdb_cache_path(uid, key), parsed, merge=True)
    return parsed


def _first(*vals: Any) -> Any:
    for v in vals:
        if v is not None:
            return v
    return None


def enrichment_payload(
    tmdb: AsyncTmdbClient, cached: Dict[str, Any], media: Dict[str, Any]
) -> Dict[str, Any]:
    return {
        "tmdbId": cached.get("tmdbId"),
        "tmdbType": cached.get("tmdbType"),
        "overview": _first(cached.get("overview"), media.get("overview")),
        "genres": _first(cached.get("genres"), media.get("genres")),
        "releaseDate": _first(cached.get("releaseDate"), media.get("releaseDate")),
        "firstAirDate": _first(cached.get("firstAirDate"), media.get("firstAirDate")),
        "posterUrl": _first(tmdb.image_url(cached.get("posterPath")), media.get("posterUrl")),
        "backdropUrl": _first(
            tmdb.image_url(cached.get("backdropPath")), media.get("backdropUrl")
        ),
        "voteAverage": _first(cached.get("voteAverage"), media.get("voteAverage")),
        "language": _first(cached.get("language"), media.get("language")),
        "updatedAt": SERVER_TIMESTAMP,
    }


async def enrich_media(
    store: DocumentStore,
    tmdb: Optional[AsyncTmdbClient],
    *,
    uid: str,
    items: Sequence[EnrichItem],
    cooldown_s: float = 10.0,
    cache_ttl_s: float = 30 * 24 * 3600,
) -> Dict[str, Any]:
    """
    Fill TMDB metadata (ids, artwork, overview, genres...) into a user's media.

    Each item reports `enriched`, `skipped`, `not_found` or `error`; TMDB failures
    never fail the whole call.
    """
    if tmdb is None:
        raise FlowError(ErrorCode.FAILED_PRECONDITION, "TMDB_API_KEY not set")
    await _check_cooldown(store, uid, cooldown_s)

    results: List[Dict[str, Any]] = []
    for item in items:
        media = await store.get(media_path(uid, item.media_id))
        if not media.exists:
            results.append(
                {"mediaId": item.media_id, "status": "error", "message": "media not found"}
            )
            continue
        if media.get("tmdbId") and (media.get("posterUrl") or media.get("backdropUrl")):
            results.append({"mediaId": item.media_id, "status": "skipped"})
            continue
        try:
            cached = await _lookup(store, tmdb, uid=uid, item=item, cache_ttl_s=cache_ttl_s)
            if cached is None:
                # Backfill skips media checked within its recheck window.
                await store.set(
                    media_path(uid, item.media_id),
                    {"tmdbCheckedAt": SERVER_TIMESTAMP},
                    merge=True,
                )
                results.append({"mediaId": item.media_id, "status": "not_found"})
                continue
            await store.set(
                media_path(uid, item.media_id),
                enrichment_payload(tmdb, cached, media.to_dict()),
                merge=True,
            )
        except TmdbError as e:
            log.warning("tmdb lookup failed uid=%s media_id=%s: %s", uid, item.media_id, e)
            results.append({"mediaId": item.media_id, "status": "error", "message": str(e)})
            continue
        except Exception as e:
            log.exception("tmdb enrichment failed uid=%s media_id=%s", uid, item.media_id)
            results.append(
                {"mediaId": item.media_id, "status": "error", "message": f"enrichment failed: {e}"}
            )
            continue
        results.append({"mediaId": item.media_id, "status": "enriched"})

    for r in results:
        TMDB_ENRICH_ITEMS.inc(status=r["status"])
    return {"results": results}


def _backfill_item(snap_id: str, data: Dict[str, Any]) -> Optional[EnrichItem]:
    try:
        return EnrichItem.model_validate(
            {
                "mediaId": snap_id,
                "type": "episode" if data.get("type") == "episode" else "movie",
                "title": data.get("title") or data.get("filename") or "unknown",
                "year": data.get("year"),
            }
        )
    except ValidationError:
        return None


async def backfill_sweep(
    store: DocumentStore,
    tmdb: Optional[AsyncTmdbClient],
    *,
    limit: int = BACKFILL_QUERY_LIMIT,
    cooldown_s: float = 10.0,
    cache_ttl_s: float = 30 * 24 * 3600,
    owner_delay_s: float = 1.0,
    recheck_s: float = DEFAULT_RECHECK_S,
) -> Dict[str, int]:
    """
    Enrich media that never got a TMDB match, across every user.

    Media TMDB had no match for within the last `recheck_s` seconds are left out,
    so the sweep reaches the rest of the table.
    """
    checked_before = time.time() - float(recheck_s)

    def _due(data: Dict[str, Any]) -> bool:
        at = data.get("tmdbCheckedAt")
        return not isinstance(at, (int, float)) or float(at) <= checked_before

    snaps = await store.collection_group(
        "media", where=[("tmdbId", None)], limit=limit, predicate=_due
    )
    by_owner: Dict[str, List[EnrichItem]] = {}
    for snap in snaps:
        uid = snap.owner_uid
        if not uid:
            continue
        item = _backfill_item(snap.id, snap.to_dict())
        if item is not None:
            by_owner.setdefault(uid, []).append(item)

    for uid, items in by_owner.items():
        try:
            await enrich_media(
                store,
                tmdb,
                uid=uid,
                items=items[:MAX_ENRICH_ITEMS],
                cooldown_s=cooldown_s,
                cache_ttl_s=cache_ttl_s,
            )
        except FlowError as e:
            log.warning("skipping tmdb backfill uid=%s: %s", uid, e.message)
        if owner_delay_s > 0:
            await asyncio.sleep(owner_delay_s)

    return {"ownersProcessed": len(by_owner)}


async def backfill_loop(state: AppState) -> None:
    interval = float(state.settings.tmdb_backfill_interval_s)
    while True:
        await asyncio.sleep(interval)
        try:
            out = await backfill_sweep(
                state.store,
                state.tmdb,
                limit=state.settings.tmdb_backfill_limit,
                cooldown_s=state.settings.tmdb_enrich_cooldown_s,
                cache_ttl_s=state.settings.tmdb_cache_ttl_s,
                recheck_s=state.settings.tmdb_recheck_s,
            )
            log.info("tmdb backfill done owners=%s", out["ownersProcessed"])
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("tmdb backfill sweep failed")


async def tmdb_enrich(
    req: EnrichRequest,
    uid: str = Depends(require_user),
    state: AppState = Depends(get_state),
) -> Dict[str, Any]:
    settings = state.settings
    return await enrich_media(
        state.store,
        state.tmdb,
        uid=uid,
        items=req.items,
        cooldown_s=settings.tmdb_enrich_cooldown_s,
        cache_ttl_s=settings.tmdb_cache_ttl_s,
    )

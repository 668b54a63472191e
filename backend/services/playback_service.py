from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, Optional

from fastapi import Depends

from doc_store import DocumentStore, Increment, Transaction
from errors import ErrorCode, FlowError
from models.requests import PlaybackReportRequest
from services.auth_service import require_user
from services.ingest_service import media_path
from services.state import AppState, get_state
from utils.metrics import PLAYBACK_REPORTS


log = logging.getLogger("medialink.playback")


def playback_path(uid: str, media_id: str) -> str:
    return f"users/{uid}/playback/{media_id}"


def finish_threshold(duration: float, ratio: float = 0.9) -> int:
    return max(1, int(math.floor(float(ratio) * float(duration))))


async def report_playback(
    store: DocumentStore,
    *,
    uid: str,
    media_id: str,
    position: float,
    duration: float,
    finished: Optional[bool] = None,
    finish_ratio: float = 0.9,
    debounce_s: float = 60.0,
) -> Dict[str, Any]:
    """
    Record watch progress, or count a completed play.

    A finished report bumps `playCount` at most once per `debounce_s` and clears
    the resume position.
    """
    pb_path = playback_path(uid, media_id)
    m_path = media_path(uid, media_id)
    is_finished = finished is True or position >= finish_threshold(duration, finish_ratio)

    async def _apply(tx: Transaction) -> bool:
        await tx.get(pb_path)
        media = await tx.get(m_path)
        if not media.exists:
            raise FlowError(ErrorCode.FAILED_PRECONDITION, "Media not found.")

        now = time.time()
        if not is_finished:
            tx.set(
                pb_path,
                {
                    "mediaId": media_id,
                    "lastPosition": float(position),
                    "duration": float(duration),
                    "lastPlayedAt": now,
                },
                merge=True,
            )
            return False

        last = media.get("lastFinishedAt")
        counted = not isinstance(last, (int, float)) or float(last) < now - float(debounce_s)
        update: Dict[str, Any] = {"lastFinishedAt": now}
        if counted:
            update["playCount"] = Increment(1)
        tx.update(m_path, update)
        tx.delete(pb_path)
        return counted

    counted = await store.run_transaction(_apply)
    if not is_finished:
        PLAYBACK_REPORTS.inc(outcome="progress")
    else:
        PLAYBACK_REPORTS.inc(outcome="counted" if counted else "debounced")
        log.info(
            "playback finished uid=%s media_id=%s counted=%s", uid, media_id, counted
        )
    return {"ok": True}


async def playback_report(
    req: PlaybackReportRequest,
    uid: str = Depends(require_user),
    state: AppState = Depends(get_state),
) -> Dict[str, Any]:
    settings = state.settings
    return await report_playback(
        state.store,
        uid=uid,
        media_id=req.media_id,
        position=req.position,
        duration=req.duration,
        finished=req.finished,
        finish_ratio=settings.playback_finish_ratio,
        debounce_s=settings.playback_debounce_s,
    )

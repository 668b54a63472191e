from __future__ import annotations

from fastapi import APIRouter

from services import playback_service


router = APIRouter(tags=["playback"])

router.add_api_route(
    "/v1/playbackReport", playback_service.playback_report, methods=["POST"]
)

from __future__ import annotations

from fastapi import APIRouter

from services import ingest_service


router = APIRouter(tags=["agent"])

router.add_api_route(
    "/v1/agentIngest",
    ingest_service.agent_ingest,
    methods=["POST"],
    responses={207: {"description": "Some items failed"}},
)

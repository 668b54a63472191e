from __future__ import annotations

from fastapi import APIRouter

from services import agent_claim_service, claim_service


router = APIRouter(tags=["claim"])

router.add_api_route("/v1/claimToken", claim_service.claim_token, methods=["POST"])
router.add_api_route(
    "/v1/agentClaim", agent_claim_service.agent_claim, methods=["POST"]
)

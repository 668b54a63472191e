from __future__ import annotations

from fastapi import APIRouter

from services import enrich_service


router = APIRouter(tags=["tmdb"])

router.add_api_route("/v1/tmdbEnrich", enrich_service.tmdb_enrich, methods=["POST"])

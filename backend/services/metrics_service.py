from __future__ import annotations

from fastapi import Depends, Request
from fastapi.responses import PlainTextResponse

from services.auth_service import require_user
from services.state import AppState, get_state
from utils.metrics import REGISTRY


PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


async def metrics(request: Request, state: AppState = Depends(get_state)) -> PlainTextResponse:
    if not state.settings.metrics_public:
        # Private metrics still accept any signed-in user.
        await require_user(request, state)
    lines = [
        "# HELP medialink_uptime_seconds Seconds since the service started.",
        "# TYPE medialink_uptime_seconds gauge",
        f"medialink_uptime_seconds {state.uptime_s():.3f}",
        "# HELP medialink_background_tasks In-flight background tasks.",
        "# TYPE medialink_background_tasks gauge",
        f"medialink_background_tasks {len(state.background_tasks)}",
    ]
    body = "\n".join(lines) + "\n" + REGISTRY.render()
    return PlainTextResponse(body, media_type=PROMETHEUS_CONTENT_TYPE)

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from fastapi import HTTPException, Request

from config import Settings


@dataclass
class AppState:
    settings: Settings
    started_at: float

    # Hierarchical document store (DocumentStore).
    store: Any = None

    # ID token verifier for signed-in users (IdTokenVerifier).
    identity: Any = None

    # Shared async HTTP client for outbound calls (TMDB).
    http: Optional[httpx.AsyncClient] = None

    # Optional TMDB client; None when TMDB_API_KEY is not configured.
    tmdb: Any = None  # AsyncTmdbClient

    # Fire-and-forget tasks (e.g. agent lastSeen touches), held until done.
    background_tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    # Long-running loops (e.g. TMDB backfill).
    maintenance_tasks: list[asyncio.Task[Any]] = field(default_factory=list)

    def uptime_s(self) -> float:
        return max(0.0, time.time() - float(self.started_at))


def get_state(request: Request) -> AppState:
    st = getattr(request.app.state, "medialink", None)
    if st is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return st

from __future__ import annotations

import asyncio
import logging
import time

import httpx
from fastapi import FastAPI

from auth import IdTokenVerifier
from config import Settings, load_settings
from config.constants import APP_VERSION, SERVICE_NAME
from doc_store import DocumentStore
from rate_limiter import AsyncCooldown
from services.state import AppState
from tmdb_client import AsyncTmdbClient
from utils.outbound_http import retry_policy_from_settings
from utils.request_id import configure_logging


log = logging.getLogger("medialink.app")

_STATE_LOCK = asyncio.Lock()


async def startup(app: FastAPI, settings: Settings | None = None) -> AppState:
    async with _STATE_LOCK:
        existing = getattr(app.state, "medialink", None)
        if existing is not None:
            return existing

        settings = settings or load_settings()

        store = DocumentStore(
            database_url=settings.database_url,
            echo=settings.db_echo,
            migrate_on_startup=settings.db_migrate_on_startup,
            transaction_attempts=settings.db_transaction_attempts,
        )
        try:
            await store.init()
        except Exception as e:
            await store.close()
            raise RuntimeError(f"Store init failed: {e}") from e
        # After migrations: alembic.ini applies its own logging config.
        configure_logging(settings.log_level)

        # Shared async HTTP client for all outbound calls.
        http = httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": f"{SERVICE_NAME}/{APP_VERSION}"},
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

        tmdb = None
        if settings.tmdb_api_key:
            tmdb = AsyncTmdbClient(
                api_key=settings.tmdb_api_key,
                client=http,
                base_url=settings.tmdb_base_url,
                image_base_url=settings.tmdb_image_base_url,
                timeout_s=settings.tmdb_http_timeout_s,
                retry=retry_policy_from_settings(settings),
                cooldown=AsyncCooldown(settings.tmdb_min_interval_ms),
            )

        if not settings.hmac_secret:
            log.warning("HMAC_SECRET is not set; claim tokens cannot be issued or redeemed")

        st = AppState(
            settings=settings,
            started_at=time.time(),
            store=store,
            identity=IdTokenVerifier(
                secret=settings.id_token_secret,
                issuer=settings.id_token_issuer,
                audience=settings.id_token_audience,
                leeway_s=settings.id_token_leeway_s,
            ),
            http=http,
            tmdb=tmdb,
        )

        if tmdb is not None and settings.tmdb_backfill_interval_s > 0:
            from services.enrich_service import backfill_loop

            st.maintenance_tasks.append(
                asyncio.create_task(backfill_loop(st), name="tmdb_backfill")
            )

        app.state.medialink = st
        log.info(
            "started %s %s tmdb=%s backfill_interval_s=%s",
            SERVICE_NAME,
            APP_VERSION,
            tmdb is not None,
            settings.tmdb_backfill_interval_s,
        )
        return st


async def shutdown(app: FastAPI) -> None:
    st: AppState | None = getattr(app.state, "medialink", None)
    if st is None:
        return

    tasks = list(st.maintenance_tasks)
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    # Let in-flight heartbeats land before the engine goes away.
    pending = list(st.background_tasks)
    if pending:
        await asyncio.wait(pending, timeout=5.0)

    if st.http is not None:
        await st.http.aclose()
    if st.store is not None:
        await st.store.close()
    app.state.medialink = None

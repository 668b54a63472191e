from __future__ import annotations

import os
from dataclasses import dataclass


def _as_int(val: str | None, default: int) -> int:
    try:
        return int(val) if val is not None and str(val).strip() != "" else default
    except Exception:
        return default


def _as_float(val: str | None, default: float) -> float:
    try:
        return float(val) if val is not None and str(val).strip() != "" else default
    except Exception:
        return default


def _as_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    s = str(val).strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default


def _as_str(val: str | None, default: str) -> str:
    if val is None:
        return default
    s = str(val).strip()
    return s if s else default


def _as_int_list(val: str | None) -> tuple[int, ...]:
    """Parse comma-separated ints, ignoring blanks/bad tokens."""
    if val is None:
        return tuple()
    out: list[int] = []
    for part in str(val).split(","):
        p = part.strip()
        if not p:
            continue
        try:
            out.append(int(p))
        except Exception:
            continue
    seen: set[int] = set()
    uniq: list[int] = []
    for x in out:
        if x in seen:
            continue
        seen.add(x)
        uniq.append(x)
    return tuple(uniq)


def _as_csv(val: str | None) -> tuple[str, ...]:
    """Parse comma-separated strings, ignoring blanks."""
    if val is None:
        return tuple()
    out: list[str] = []
    for part in str(val).split(","):
        p = part.strip()
        if not p:
            continue
        out.append(p)
    return tuple(out)


@dataclass(frozen=True)
class Settings:
    # Store
    database_url: str
    db_migrate_on_startup: bool
    db_echo: bool
    db_transaction_attempts: int

    # Identity provider (HS256 ID tokens)
    id_token_secret: str
    id_token_issuer: str | None
    id_token_audience: str | None
    id_token_leeway_s: int

    # Claim handshake
    hmac_secret: str | None
    claim_token_ttl_s: int
    claim_rate_limit_s: int

    # Agent ingest
    ingest_batch_size: int
    ingest_max_body_bytes: int

    # Playback
    playback_finish_ratio: float
    playback_debounce_s: float

    # TMDB enrichment
    tmdb_api_key: str | None
    tmdb_base_url: str
    tmdb_image_base_url: str
    tmdb_http_timeout_s: float
    tmdb_min_interval_ms: int
    tmdb_cache_ttl_s: int
    tmdb_enrich_cooldown_s: int
    tmdb_backfill_interval_s: int
    tmdb_backfill_limit: int
    tmdb_recheck_s: int

    # Outbound HTTP
    outbound_retry_attempts: int
    outbound_retry_backoff_base_s: float
    outbound_retry_backoff_max_s: float
    outbound_retry_status_codes: tuple[int, ...]

    # HTTP surface
    cors_allow_origins: tuple[str, ...]
    trust_proxy_headers: bool
    metrics_public: bool
    log_level: str

    # Per-IP request rate limiting
    rate_limit_enabled: bool
    rate_limit_requests_per_minute: int
    rate_limit_burst: int
    rate_limit_scope: str
    rate_limit_exempt_paths: tuple[str, ...]
    rate_limit_bucket_ttl_s: float
    rate_limit_cleanup_interval_s: float
    rate_limit_trust_proxy_headers: bool


def load_settings() -> Settings:
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is required (e.g. mysql://medialink:pw@db:3306/medialink or sqlite:////data/medialink.sqlite)"
        )
    db_migrate_on_startup = _as_bool(os.environ.get("DB_MIGRATE_ON_STARTUP"), True)
    db_echo = _as_bool(os.environ.get("DB_ECHO"), False)
    db_transaction_attempts = max(
        1, _as_int(os.environ.get("DB_TRANSACTION_ATTEMPTS"), 5)
    )

    id_token_secret = os.environ.get("ID_TOKEN_SECRET", "").strip()
    if not id_token_secret:
        raise RuntimeError("ID_TOKEN_SECRET is required to verify user ID tokens")
    id_token_issuer = os.environ.get("ID_TOKEN_ISSUER", "").strip() or None
    id_token_audience = os.environ.get("ID_TOKEN_AUDIENCE", "").strip() or None
    id_token_leeway_s = max(0, _as_int(os.environ.get("ID_TOKEN_LEEWAY_S"), 15))

    # Missing HMAC_SECRET is reported per request, not at boot.
    hmac_secret = os.environ.get("HMAC_SECRET", "").strip() or None
    claim_token_ttl_s = max(60, _as_int(os.environ.get("CLAIM_TOKEN_TTL_S"), 600))
    claim_rate_limit_s = max(0, _as_int(os.environ.get("CLAIM_RATE_LIMIT_S"), 30))

    ingest_batch_size = max(
        1, min(500, _as_int(os.environ.get("INGEST_BATCH_SIZE"), 450))
    )
    ingest_max_body_bytes = max(
        1024, _as_int(os.environ.get("INGEST_MAX_BODY_BYTES"), 5 * 1024 * 1024)
    )

    playback_finish_ratio = min(
        1.0, max(0.1, _as_float(os.environ.get("PLAYBACK_FINISH_RATIO"), 0.9))
    )
    playback_debounce_s = max(
        0.0, _as_float(os.environ.get("PLAYBACK_DEBOUNCE_S"), 60.0)
    )

    tmdb_api_key = os.environ.get("TMDB_API_KEY", "").strip() or None
    tmdb_base_url = _as_str(
        os.environ.get("TMDB_BASE_URL"), default="https://api.themoviedb.org/3"
    ).rstrip("/")
    tmdb_image_base_url = _as_str(
        os.environ.get("TMDB_IMAGE_BASE_URL"),
        default="https://image.tmdb.org/t/p/original",
    ).rstrip("/")
    tmdb_http_timeout_s = max(
        0.5, _as_float(os.environ.get("TMDB_HTTP_TIMEOUT_S"), 5.0)
    )
    tmdb_min_interval_ms = max(
        0, _as_int(os.environ.get("TMDB_MIN_INTERVAL_MS"), 50)
    )
    tmdb_cache_ttl_s = max(
        0, _as_int(os.environ.get("TMDB_CACHE_TTL_S"), 30 * 24 * 3600)
    )
    tmdb_enrich_cooldown_s = max(
        0, _as_int(os.environ.get("TMDB_ENRICH_COOLDOWN_S"), 10)
    )
    tmdb_backfill_interval_s = max(
        0, _as_int(os.environ.get("TMDB_BACKFILL_INTERVAL_S"), 0)
    )
    tmdb_backfill_limit = max(
        1, min(1000, _as_int(os.environ.get("TMDB_BACKFILL_LIMIT"), 200))
    )
    tmdb_recheck_s = max(
        0, _as_int(os.environ.get("TMDB_RECHECK_S"), 7 * 24 * 3600)
    )

    outbound_retry_attempts = max(
        1, _as_int(os.environ.get("OUTBOUND_RETRY_ATTEMPTS"), 2)
    )
    outbound_retry_backoff_base_s = max(
        0.01, _as_float(os.environ.get("OUTBOUND_RETRY_BACKOFF_BASE_S"), 0.15)
    )
    outbound_retry_backoff_max_s = max(
        float(outbound_retry_backoff_base_s),
        _as_float(os.environ.get("OUTBOUND_RETRY_BACKOFF_MAX_S"), 1.0),
    )
    outbound_retry_status_codes = _as_int_list(
        os.environ.get("OUTBOUND_RETRY_STATUS_CODES")
    )
    if not outbound_retry_status_codes:
        outbound_retry_status_codes = (408, 425, 429, 500, 502, 503, 504)

    cors_allow_origins = _as_csv(os.environ.get("CORS_ALLOW_ORIGINS"))
    trust_proxy_headers = _as_bool(os.environ.get("TRUST_PROXY_HEADERS"), False)
    metrics_public = _as_bool(os.environ.get("METRICS_PUBLIC"), True)
    log_level = _as_str(os.environ.get("LOG_LEVEL"), default="INFO").upper()

    rate_limit_enabled = _as_bool(os.environ.get("RATE_LIMIT_ENABLED"), True)
    rate_limit_requests_per_minute = max(
        1, _as_int(os.environ.get("RATE_LIMIT_REQUESTS_PER_MINUTE"), 600)
    )
    rate_limit_burst = max(1, _as_int(os.environ.get("RATE_LIMIT_BURST"), 120))
    rate_limit_scope = _as_str(
        os.environ.get("RATE_LIMIT_SCOPE"), default="ip"
    ).strip() or "ip"
    rate_limit_exempt_paths = _as_csv(os.environ.get("RATE_LIMIT_EXEMPT_PATHS"))
    rate_limit_bucket_ttl_s = max(
        30.0, _as_float(os.environ.get("RATE_LIMIT_BUCKET_TTL_S"), 600.0)
    )
    rate_limit_cleanup_interval_s = max(
        5.0, _as_float(os.environ.get("RATE_LIMIT_CLEANUP_INTERVAL_S"), 30.0)
    )
    rate_limit_trust_proxy_headers = _as_bool(
        os.environ.get("RATE_LIMIT_TRUST_PROXY_HEADERS"), trust_proxy_headers
    )

    return Settings(
        database_url=database_url,
        db_migrate_on_startup=db_migrate_on_startup,
        db_echo=db_echo,
        db_transaction_attempts=db_transaction_attempts,
        id_token_secret=id_token_secret,
        id_token_issuer=id_token_issuer,
        id_token_audience=id_token_audience,
        id_token_leeway_s=id_token_leeway_s,
        hmac_secret=hmac_secret,
        claim_token_ttl_s=claim_token_ttl_s,
        claim_rate_limit_s=claim_rate_limit_s,
        ingest_batch_size=ingest_batch_size,
        ingest_max_body_bytes=ingest_max_body_bytes,
        playback_finish_ratio=playback_finish_ratio,
        playback_debounce_s=playback_debounce_s,
        tmdb_api_key=tmdb_api_key,
        tmdb_base_url=tmdb_base_url,
        tmdb_image_base_url=tmdb_image_base_url,
        tmdb_http_timeout_s=tmdb_http_timeout_s,
        tmdb_min_interval_ms=tmdb_min_interval_ms,
        tmdb_cache_ttl_s=tmdb_cache_ttl_s,
        tmdb_enrich_cooldown_s=tmdb_enrich_cooldown_s,
        tmdb_backfill_interval_s=tmdb_backfill_interval_s,
        tmdb_backfill_limit=tmdb_backfill_limit,
        tmdb_recheck_s=tmdb_recheck_s,
        outbound_retry_attempts=outbound_retry_attempts,
        outbound_retry_backoff_base_s=outbound_retry_backoff_base_s,
        outbound_retry_backoff_max_s=outbound_retry_backoff_max_s,
        outbound_retry_status_codes=outbound_retry_status_codes,
        cors_allow_origins=cors_allow_origins,
        trust_proxy_headers=trust_proxy_headers,
        metrics_public=metrics_public,
        log_level=log_level,
        rate_limit_enabled=rate_limit_enabled,
        rate_limit_requests_per_minute=rate_limit_requests_per_minute,
        rate_limit_burst=rate_limit_burst,
        rate_limit_scope=rate_limit_scope,
        rate_limit_exempt_paths=rate_limit_exempt_paths,
        rate_limit_bucket_ttl_s=rate_limit_bucket_ttl_s,
        rate_limit_cleanup_interval_s=rate_limit_cleanup_interval_s,
        rate_limit_trust_proxy_headers=rate_limit_trust_proxy_headers,
    )

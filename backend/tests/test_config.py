from __future__ import annotations

import pytest

from config import load_settings


def _base_env(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("ID_TOKEN_SECRET", "secret")
    for name in ("HMAC_SECRET", "TMDB_API_KEY", "CLAIM_TOKEN_TTL_S", "INGEST_BATCH_SIZE", "CORS_ALLOW_ORIGINS"):
        monkeypatch.delenv(name, raising=False)


def test_database_url_and_id_token_secret_required(monkeypatch) -> None:
    _base_env(monkeypatch)
    monkeypatch.delenv("DATABASE_URL")
    with pytest.raises(RuntimeError):
        load_settings()

    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.delenv("ID_TOKEN_SECRET")
    with pytest.raises(RuntimeError):
        load_settings()


def test_defaults(monkeypatch) -> None:
    _base_env(monkeypatch)
    s = load_settings()
    assert s.hmac_secret is None
    assert s.tmdb_api_key is None
    assert s.tmdb_recheck_s == 7 * 24 * 3600
    assert s.claim_token_ttl_s == 600
    assert s.claim_rate_limit_s == 30
    assert s.ingest_batch_size == 450
    assert s.playback_finish_ratio == 0.9
    assert s.outbound_retry_status_codes == (408, 425, 429, 500, 502, 503, 504)
    assert s.cors_allow_origins == ()


def test_values_are_clamped_and_parsed(monkeypatch) -> None:
    _base_env(monkeypatch)
    monkeypatch.setenv("HMAC_SECRET", "  k  ")
    monkeypatch.setenv("CLAIM_TOKEN_TTL_S", "5")
    monkeypatch.setenv("INGEST_BATCH_SIZE", "9000")
    monkeypatch.setenv("PLAYBACK_FINISH_RATIO", "not-a-number")
    monkeypatch.setenv("OUTBOUND_RETRY_STATUS_CODES", "503, x, 503,429")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, ,https://b.example")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "off")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = load_settings()
    assert s.hmac_secret == "k"
    assert s.claim_token_ttl_s == 60
    assert s.ingest_batch_size == 500
    assert s.playback_finish_ratio == 0.9
    assert s.outbound_retry_status_codes == (503, 429)
    assert s.cors_allow_origins == ("https://a.example", "https://b.example")
    assert s.rate_limit_enabled is False
    assert s.log_level == "DEBUG"

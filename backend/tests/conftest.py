from __future__ import annotations

import sys
import time
from pathlib import Path


# Allow `import doc_store`, `import services...`, etc when running `pytest` from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest  # noqa: E402

from config import Settings, load_settings  # noqa: E402
from doc_store import DocumentStore  # noqa: E402


HMAC_SECRET = "test-hmac-secret"
ID_TOKEN_SECRET = "test-id-token-secret"


class Clock:
    def __init__(self, start: float) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock(monkeypatch) -> Clock:
    """Freezes `time.time()` at a known instant; tests move it with `advance()`."""
    c = Clock(1_700_000_000.0)
    monkeypatch.setattr(time, "time", c)
    return c


@pytest.fixture
async def store(tmp_path):
    s = DocumentStore(database_url=f"sqlite:///{tmp_path / 'store.db'}")
    await s.init()
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("ID_TOKEN_SECRET", ID_TOKEN_SECRET)
    monkeypatch.setenv("HMAC_SECRET", HMAC_SECRET)
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.delenv("TMDB_API_KEY", raising=False)
    return load_settings()


async def link_agent(store: DocumentStore, uid: str, *, name: str = "nas") -> dict:
    """Issue a claim token for `uid` and redeem it; returns the claim result."""
    from services.agent_claim_service import claim_agent
    from services.claim_service import create_claim_token

    tok = await create_claim_token(store, uid=uid, hmac_secret=HMAC_SECRET, cooldown_s=0)
    return await claim_agent(
        store,
        claim_public_id=tok["claimPublicId"],
        claim_secret=tok["claimSecret"],
        hmac_secret=HMAC_SECRET,
        agent_name=name,
    )

from __future__ import annotations

import pytest

from rate_limiter import AsyncCooldown


@pytest.mark.anyio
async def test_cooldown_paces_calls() -> None:
    now = [100.0]
    gate = AsyncCooldown(500, clock=lambda: now[0])
    assert gate.interval_s == 0.5
    assert gate.ready() is True

    await gate.wait()
    assert gate.ready() is False

    now[0] += 0.5
    assert gate.ready() is True
    await gate.wait()
    assert gate.ready() is False


@pytest.mark.anyio
async def test_zero_interval_never_blocks() -> None:
    gate = AsyncCooldown(0)
    for _ in range(5):
        await gate.wait()
    assert gate.ready() is True

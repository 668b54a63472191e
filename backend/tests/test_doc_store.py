from __future__ import annotations

import pytest

from doc_store import (
    MAX_BATCH_WRITES,
    SERVER_TIMESTAMP,
    DocumentNotFound,
    Increment,
    StoreError,
    owner_uid_from_path,
    split_path,
)


def test_split_path() -> None:
    assert split_path("users/u1/media/m1") == ("users/u1", "media", "m1")
    assert split_path("/users/u1/") == ("", "users", "u1")
    for bad in ("users", "users/u1/media", "", "users//media/m1"):
        with pytest.raises(ValueError):
            split_path(bad)
    assert owner_uid_from_path("users/u1/servers/s1") == "u1"
    assert owner_uid_from_path("other/x") is None


@pytest.mark.anyio
async def test_set_merge_update_delete(store, clock) -> None:
    path = "users/u1/media/m1"
    assert (await store.get(path)).exists is False

    await store.set(path, {"title": "Heat", "year": 1995, "at": SERVER_TIMESTAMP})
    snap = await store.get(path)
    assert snap.exists and snap.id == "m1" and snap.owner_uid == "u1"
    assert snap.get("at") == clock.now
    assert snap.version == 1

    await store.set(path, {"codec": "h264"}, merge=True)
    snap = await store.get(path)
    assert snap.to_dict() == {"title": "Heat", "year": 1995, "at": clock.now, "codec": "h264"}
    assert snap.version == 2

    await store.set(path, {"title": "Heat (1995)"})
    assert (await store.get(path)).to_dict() == {"title": "Heat (1995)"}

    await store.update(path, {"plays": Increment(2)})
    await store.update(path, {"plays": Increment(1)})
    assert (await store.get(path)).get("plays") == 3

    await store.delete(path)
    assert (await store.get(path)).exists is False
    await store.delete(path)  # deleting a missing document is a no-op

    with pytest.raises(DocumentNotFound):
        await store.update(path, {"plays": 1})


@pytest.mark.anyio
async def test_collection_group_and_list(store) -> None:
    await store.set("users/u1/servers/s1", {"status": "linked", "k": None})
    await store.set("users/u2/servers/s2", {"status": "pending", "k": 1})
    await store.set("users/u2/servers/s3", {"status": "linked"})
    await store.set("users/u2/media/s9", {"status": "linked"})

    linked = await store.collection_group("servers", where=[("status", "linked")])
    assert sorted(s.path for s in linked) == ["users/u1/servers/s1", "users/u2/servers/s3"]

    # A None filter only matches fields that are present and null.
    nulls = await store.collection_group("servers", where=[("k", None)])
    assert [s.path for s in nulls] == ["users/u1/servers/s1"]

    limited = await store.collection_group("servers", limit=1)
    assert len(limited) == 1

    # The limit counts matches, not scanned rows.
    first_linked = await store.collection_group("servers", where=[("status", "linked")], limit=1)
    assert [s.path for s in first_linked] == ["users/u1/servers/s1"]
    first_one = await store.collection_group("servers", where=[("k", 1)], limit=1)
    assert [s.path for s in first_one] == ["users/u2/servers/s2"]

    u2 = await store.list_collection("users/u2/servers")
    assert [s.id for s in u2] == ["s2", "s3"]
    with pytest.raises(ValueError):
        await store.list_collection("users/u2")


@pytest.mark.anyio
async def test_collection_group_filters_before_limit(store) -> None:
    for i in range(20):
        await store.set(f"users/u{i:02d}/media/m", {"tmdbId": i, "title": "x", "n": i})
    await store.set("users/u98/media/m", {"tmdbId": None, "title": "late", "n": 98})
    await store.set("users/u99/media/m", {"tmdbId": None, "title": "later", "n": 99})
    await store.set("users/u99/media/other", {"tmdbId": None, "title": "1", "n": 1})

    snaps = await store.collection_group("media", where=[("tmdbId", None)], limit=1)
    assert [s.get("title") for s in snaps] == ["late"]

    # String filters compare as strings only.
    snaps = await store.collection_group("media", where=[("title", "1")])
    assert [s.path for s in snaps] == ["users/u99/media/other"]
    assert await store.collection_group("media", where=[("n", "1")]) == []

    snaps = await store.collection_group(
        "media", where=[("tmdbId", None)], limit=1, predicate=lambda d: d["n"] > 98
    )
    assert [s.path for s in snaps] == ["users/u99/media/m"]

    snaps = await store.collection_group("media", where=[("title", "x")], limit=3)
    assert [s.get("n") for s in snaps] == [0, 1, 2]


@pytest.mark.anyio
async def test_batch_is_all_or_nothing(store) -> None:
    batch = store.batch()
    batch.set("users/u1/media/a", {"n": 1})
    batch.update("users/u1/media/missing", {"n": 2})
    with pytest.raises(DocumentNotFound):
        await batch.commit()
    assert (await store.get("users/u1/media/a")).exists is False

    with pytest.raises(StoreError):
        await batch.commit()


@pytest.mark.anyio
async def test_batch_write_cap(store) -> None:
    batch = store.batch()
    for i in range(MAX_BATCH_WRITES):
        batch.set(f"users/u1/media/m{i}", {"i": i})
    assert len(batch) == MAX_BATCH_WRITES
    with pytest.raises(StoreError):
        batch.set("users/u1/media/one-too-many", {})


@pytest.mark.anyio
async def test_transaction_retries_on_conflict(store) -> None:
    path = "users/u1/media/m1"
    await store.set(path, {"n": 1})
    attempts = 0

    async def _bump(tx):
        nonlocal attempts
        attempts += 1
        await tx.get(path)
        if attempts == 1:
            # Another writer sneaks in between our read and our commit.
            await store.set(path, {"n": 99}, merge=True)
        tx.update(path, {"n": Increment(1)})
        return attempts

    assert await store.run_transaction(_bump) == 2
    assert (await store.get(path)).get("n") == 100


@pytest.mark.anyio
async def test_transaction_rejects_reads_after_writes(store) -> None:
    async def _bad(tx):
        tx.set("users/u1/media/a", {"n": 1})
        await tx.get("users/u1/media/b")

    with pytest.raises(StoreError):
        await store.run_transaction(_bad)


@pytest.mark.anyio
async def test_transaction_create_conflicts_with_concurrent_create(store) -> None:
    path = "users/u1/media/new"
    attempts = 0

    async def _create(tx):
        nonlocal attempts
        attempts += 1
        snap = await tx.get(path)
        if attempts == 1:
            await store.set(path, {"who": "other"})
        if not snap.exists:
            tx.set(path, {"who": "me"})

    await store.run_transaction(_create)
    assert attempts == 2
    assert (await store.get(path)).get("who") == "other"


@pytest.mark.anyio
async def test_health(store) -> None:
    h = await store.health()
    assert h.ok is True

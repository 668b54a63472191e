from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from alembic import command
from alembic.config import Config as AlembicConfig
from sqlalchemy import Column, Index, delete, select as sa_select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession


log = logging.getLogger("medialink.store")

T = TypeVar("T")

MAX_BATCH_WRITES = 500


class DocumentRecord(SQLModel, table=True):
    """One document of the hierarchical store, addressed by its full path."""

    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_collection_parent", "collection", "parent"),
    )

    path: str = Field(primary_key=True, max_length=768)
    collection: str = Field(index=True, max_length=128)
    parent: str = Field(max_length=640)
    doc_id: str = Field(max_length=256)

    version: int = Field(default=1)
    created_at: float = Field(index=True)
    updated_at: float = Field(index=True)

    data: Dict[str, Any] = Field(sa_column=Column(JSON), default_factory=dict)


class StoreError(RuntimeError):
    pass


class DocumentNotFound(StoreError):
    pass


class TransactionConflict(StoreError):
    pass


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    amount: int | float = 1


def split_path(path: str) -> Tuple[str, str, str]:
    """
    Split a document path into (parent, collection, doc_id).

    `users/u1/media/m1` -> ("users/u1", "media", "m1"); `users/u1` -> ("", "users", "u1").
    """
    raw = str(path or "").strip().strip("/")
    segs = raw.split("/") if raw else []
    if len(segs) < 2 or len(segs) % 2 != 0 or any(not s for s in segs):
        raise ValueError(f"Invalid document path: {path!r}")
    return "/".join(segs[:-2]), segs[-2], segs[-1]


def owner_uid_from_path(path: str) -> Optional[str]:
    segs = str(path or "").strip("/").split("/")
    if len(segs) >= 2 and segs[0] == "users" and segs[1]:
        return segs[1]
    return None


def _resolve_value(value: Any, previous: Any, *, now: float) -> Any:
    if isinstance(value, _ServerTimestamp):
        return now
    if isinstance(value, Increment):
        if isinstance(previous, (int, float)) and not isinstance(previous, bool):
            return previous + value.amount
        return value.amount
    return value


def apply_fields(
    current: Optional[Dict[str, Any]],
    data: Dict[str, Any],
    *,
    merge: bool,
    now: float,
) -> Dict[str, Any]:
    base: Dict[str, Any] = dict(current or {}) if merge else {}
    for key, value in (data or {}).items():
        prev = (current or {}).get(key) if merge else None
        base[str(key)] = _resolve_value(value, prev, now=now)
    return base


@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    data: Optional[Dict[str, Any]]
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def id(self) -> str:
        return split_path(self.path)[2]

    @property
    def parent(self) -> str:
        return split_path(self.path)[0]

    @property
    def owner_uid(self) -> Optional[str]:
        return owner_uid_from_path(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return (self.data or {}).get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data or {})


@dataclass(frozen=True)
class _WriteOp:
    kind: str  # "set" | "update" | "delete"
    path: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


_UNSET: Any = object()


@dataclass(frozen=True)
class StoreHealth:
    ok: bool
    detail: str


def normalize_database_url_async(raw: str) -> str:
    """
    Normalize common DB URL variants to SQLAlchemy AsyncEngine-compatible URLs.

    - mysql://... -> mysql+aiomysql://...
    - mysql+pymysql://... -> mysql+aiomysql://...
    - sqlite:///... -> sqlite+aiosqlite:///...
    """
    url = str(raw or "").strip()
    if not url:
        raise ValueError("Empty database URL")
    if url.startswith("mysql://"):
        return "mysql+aiomysql://" + url[len("mysql://") :]
    if url.startswith("mysql+pymysql://"):
        return "mysql+aiomysql://" + url[len("mysql+pymysql://") :]
    if url.startswith("sqlite:") and not url.startswith("sqlite+aiosqlite:"):
        return "sqlite+aiosqlite:" + url[len("sqlite:") :]
    return url


def normalize_database_url_sync(raw: str) -> str:
    """Inverse of `normalize_database_url_async`, for alembic's sync engine."""
    url = str(raw or "").strip()
    for prefix, sync_prefix in (
        ("mysql://", "mysql+pymysql://"),
        ("mysql+aiomysql://", "mysql+pymysql://"),
        ("sqlite+aiosqlite:", "sqlite:"),
    ):
        if url.startswith(prefix):
            return sync_prefix + url[len(prefix) :]
    return url


class WriteBatch:
    """Collects writes and commits them all-or-nothing (at most 500 per batch)."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._ops: List[_WriteOp] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def _add(self, op: _WriteOp) -> "WriteBatch":
        if self._committed:
            raise StoreError("Batch already committed")
        if len(self._ops) >= MAX_BATCH_WRITES:
            raise StoreError(f"A batch holds at most {MAX_BATCH_WRITES} writes")
        split_path(op.path)
        self._ops.append(op)
        return self

    def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> "WriteBatch":
        return self._add(_WriteOp("set", path, dict(data or {}), bool(merge)))

    def update(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        return self._add(_WriteOp("update", path, dict(data or {}), True))

    def delete(self, path: str) -> "WriteBatch":
        return self._add(_WriteOp("delete", path))

    async def commit(self) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        self._committed = True
        if not self._ops:
            return
        await self._store._commit_with_retry(list(self._ops))


class Transaction:
    """
    Optimistic read-then-write unit. Every document read through the transaction is
    re-checked at commit; if another writer changed it meanwhile the whole
    transaction function is retried by `DocumentStore.run_transaction`.
    """

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._ops: List[_WriteOp] = []
        self._read_versions: Dict[str, Optional[int]] = {}

    async def get(self, path: str) -> DocumentSnapshot:
        if self._ops:
            raise StoreError("Transactions require all reads before writes")
        snap = await self._store.get(path)
        self._read_versions[snap.path] = snap.version if snap.exists else None
        return snap

    def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        split_path(path)
        self._ops.append(_WriteOp("set", path, dict(data or {}), bool(merge)))

    def update(self, path: str, data: Dict[str, Any]) -> None:
        split_path(path)
        self._ops.append(_WriteOp("update", path, dict(data or {}), True))

    def delete(self, path: str) -> None:
        split_path(path)
        self._ops.append(_WriteOp("delete", path))


class DocumentStore:
    """
    Hierarchical document store on SQLModel with an async API.

    Documents live in one table keyed by their full path; the collection name and
    parent path are denormalized so collection and collection-group queries need no
    knowledge of the owning user.
    """

    def __init__(
        self,
        *,
        database_url: str,
        echo: bool = False,
        migrate_on_startup: bool = True,
        transaction_attempts: int = 5,
    ) -> None:
        self.database_url = str(database_url).strip()
        self.migrate_on_startup = bool(migrate_on_startup)
        self.transaction_attempts = max(1, int(transaction_attempts))
        async_url = normalize_database_url_async(self.database_url)
        connect_args: Dict[str, Any] = {}
        if async_url.startswith("sqlite+aiosqlite:"):
            # SQLite driver uses a thread internally; disable same-thread checks.
            connect_args["check_same_thread"] = False
        self.engine: AsyncEngine = create_async_engine(
            async_url,
            echo=bool(echo),
            pool_pre_ping=True,
            connect_args=connect_args,
        )

    async def init(self) -> None:
        if not self.migrate_on_startup:
            health = await self.health()
            if not health.ok:
                raise RuntimeError(f"Store health check failed: {health.detail}")
            return
        for attempt in range(2):
            try:
                await self._run_migrations()
                break
            except Exception:
                if attempt >= 1:
                    raise
                await asyncio.sleep(0.25)

    def _alembic_config(self) -> AlembicConfig:
        base_dir = Path(__file__).resolve().parent
        cfg = AlembicConfig(str(base_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(base_dir / "alembic"))
        cfg.set_main_option("sqlalchemy.url", self.database_url)
        return cfg

    async def _run_migrations(self) -> None:
        cfg = self._alembic_config()
        await asyncio.to_thread(command.upgrade, cfg, "head")

    async def close(self) -> None:
        await self.engine.dispose()

    async def health(self) -> StoreHealth:
        try:
            async with AsyncSession(self.engine) as session:
                res = await session.exec(sa_select(1))
                _ = res.one()
            return StoreHealth(ok=True, detail="ok")
        except Exception as e:
            return StoreHealth(ok=False, detail=str(e))

    # ---- Reads ----

    async def get(self, path: str) -> DocumentSnapshot:
        split_path(path)
        p = str(path).strip("/")
        async with AsyncSession(self.engine) as session:
            stmt = sa_select(DocumentRecord.version, DocumentRecord.data).where(
                DocumentRecord.path == p
            )
            row = (await session.exec(stmt)).one_or_none()  # type: ignore[arg-type]
        if row is None:
            return DocumentSnapshot(path=p, data=None, version=0)
        return DocumentSnapshot(path=p, data=dict(row[1] or {}), version=int(row[0]))

    async def collection_group(
        self,
        name: str,
        *,
        where: Sequence[Tuple[str, Any]] = (),
        limit: Optional[int] = None,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[DocumentSnapshot]:
        """
        Equality query across every collection called `name`, whatever its parent.

        A `None` filter value matches documents whose field is explicitly null.
        String filters run in SQL; the others, and `predicate`, are applied while
        rows stream in, stopping once `limit` documents matched.
        """
        filters = [(str(k), v) for (k, v) in where]
        lim = int(limit) if limit is not None else None
        data_col = DocumentRecord.__table__.c.data  # type: ignore[attr-defined]
        stmt = sa_select(DocumentRecord.path, DocumentRecord.version, DocumentRecord.data).where(
            DocumentRecord.collection == str(name)
        )
        for key, value in filters:
            if isinstance(value, str):
                stmt = stmt.where(data_col[key].as_string() == value)
        if lim is not None and predicate is None and all(isinstance(v, str) for _, v in filters):
            stmt = stmt.limit(max(1, lim))
        stmt = stmt.order_by(DocumentRecord.path)

        out: List[DocumentSnapshot] = []
        async with AsyncSession(self.engine) as session:
            result = await session.stream(stmt)
            async for path, version, raw in result:
                data = dict(raw or {})
                if not all(k in data and data[k] == v for (k, v) in filters):
                    continue
                if predicate is not None and not predicate(data):
                    continue
                out.append(DocumentSnapshot(path=path, data=data, version=int(version)))
                if lim is not None and len(out) >= lim:
                    break
            await result.close()
        return out

    async def list_collection(
        self, collection_path: str, *, limit: Optional[int] = None
    ) -> List[DocumentSnapshot]:
        raw = str(collection_path or "").strip("/")
        segs = raw.split("/") if raw else []
        if not segs or len(segs) % 2 != 1:
            raise ValueError(f"Invalid collection path: {collection_path!r}")
        parent, name = "/".join(segs[:-1]), segs[-1]
        async with AsyncSession(self.engine) as session:
            stmt = (
                select(DocumentRecord)
                .where(DocumentRecord.collection == name, DocumentRecord.parent == parent)
                .order_by(DocumentRecord.path)
            )
            if limit is not None:
                stmt = stmt.limit(max(1, int(limit)))
            rows = (await session.exec(stmt)).all()
        return [
            DocumentSnapshot(path=r.path, data=dict(r.data or {}), version=int(r.version))
            for r in rows
        ]

    # ---- Writes ----

    async def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        await self.batch().set(path, data, merge=merge).commit()

    async def update(self, path: str, data: Dict[str, Any]) -> None:
        await self.batch().update(path, data).commit()

    async def delete(self, path: str) -> None:
        await self.batch().delete(path).commit()

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        attempts: Optional[int] = None,
    ) -> T:
        tries = max(1, int(attempts or self.transaction_attempts))
        for attempt in range(1, tries + 1):
            tx = Transaction(self)
            result = await fn(tx)
            try:
                await self._commit(tx._ops, expected=tx._read_versions)
                return result
            except TransactionConflict:
                if attempt >= tries:
                    raise
                log.debug("transaction conflict attempt=%s; retrying", attempt)
                await asyncio.sleep(random.random() * 0.02 * attempt)
        raise TransactionConflict("Transaction did not commit")

    async def _commit_with_retry(self, ops: List[_WriteOp]) -> None:
        for attempt in range(1, self.transaction_attempts + 1):
            try:
                await self._commit(ops, expected=None)
                return
            except TransactionConflict:
                if attempt >= self.transaction_attempts:
                    raise
                await asyncio.sleep(random.random() * 0.02 * attempt)

    async def _commit(
        self,
        ops: List[_WriteOp],
        *,
        expected: Optional[Dict[str, Optional[int]]],
    ) -> None:
        if not ops:
            return
        now = time.time()
        async with AsyncSession(self.engine) as session:
            try:
                for op in ops:
                    exp = _UNSET
                    p = op.path.strip("/")
                    if expected is not None and p in expected:
                        exp = expected[p]
                    await self._apply_op(session, op, now=now, expected_version=exp)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise TransactionConflict(str(e)) from e

    async def _apply_op(
        self,
        session: AsyncSession,
        op: _WriteOp,
        *,
        now: float,
        expected_version: Any,
    ) -> None:
        parent, collection, doc_id = split_path(op.path)
        p = op.path.strip("/")
        stmt = sa_select(DocumentRecord.version, DocumentRecord.data).where(
            DocumentRecord.path == p
        )
        row = (await session.exec(stmt)).one_or_none()  # type: ignore[arg-type]
        cur_version = int(row[0]) if row is not None else None
        cur_data = dict(row[1] or {}) if row is not None else None

        if expected_version is not _UNSET and expected_version != cur_version:
            raise TransactionConflict(f"Document changed concurrently: {p}")

        if op.kind == "delete":
            if cur_version is None:
                return
            res = await session.exec(  # type: ignore[call-overload]
                delete(DocumentRecord).where(
                    DocumentRecord.path == p, DocumentRecord.version == cur_version
                )
            )
            if int(getattr(res, "rowcount", 0) or 0) == 0:
                raise TransactionConflict(f"Document changed concurrently: {p}")
            return

        if op.kind == "update" and cur_data is None:
            raise DocumentNotFound(f"No document to update: {p}")

        new_data = apply_fields(cur_data, op.data, merge=op.merge, now=now)
        if cur_version is None:
            session.add(
                DocumentRecord(
                    path=p,
                    collection=collection,
                    parent=parent,
                    doc_id=doc_id,
                    version=1,
                    created_at=now,
                    updated_at=now,
                    data=new_data,
                )
            )
            await session.flush()
            return

        res = await session.exec(  # type: ignore[call-overload]
            update(DocumentRecord)
            .where(DocumentRecord.path == p, DocumentRecord.version == cur_version)
            .values(data=new_data, version=cur_version + 1, updated_at=now)
        )
        if int(getattr(res, "rowcount", 0) or 0) == 0:
            raise TransactionConflict(f"Document changed concurrently: {p}")

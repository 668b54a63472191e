from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path
from typing import Any, Dict

from alembic import context
from sqlalchemy import create_engine, pool
from sqlmodel import SQLModel


sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# Registers DocumentRecord on SQLModel.metadata.
from doc_store import normalize_database_url_sync  # noqa: E402

cfg = context.config
if cfg.config_file_name and os.path.exists(cfg.config_file_name):
    fileConfig(cfg.config_file_name, disable_existing_loggers=False)


def _database_url() -> str:
    raw = cfg.get_main_option("sqlalchemy.url") or os.environ.get("DATABASE_URL") or ""
    url = normalize_database_url_sync(raw)
    if not url:
        raise RuntimeError("No database URL: set sqlalchemy.url or DATABASE_URL")
    return url


def _configure(**kwargs: Any) -> None:
    opts: Dict[str, Any] = {"target_metadata": SQLModel.metadata, "compare_type": True}
    opts.update(kwargs)
    context.configure(**opts)
    with context.begin_transaction():
        context.run_migrations()


def main() -> None:
    url = _database_url()
    if context.is_offline_mode():
        _configure(url=url, literal_binds=True)
        return
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as conn:
            _configure(connection=conn)
    finally:
        engine.dispose()


main()

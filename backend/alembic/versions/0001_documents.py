"""Document store table."""

from alembic import op
from sqlmodel import SQLModel

import doc_store  # noqa: F401


revision = "0001_documents"
down_revision = None
branch_labels = None
depends_on = None

TABLES = {"documents"}


def upgrade() -> None:
    bind = op.get_bind()
    tables = [t for t in SQLModel.metadata.sorted_tables if t.name in TABLES]
    SQLModel.metadata.create_all(bind=bind, tables=tables)


def downgrade() -> None:
    bind = op.get_bind()
    tables = [t for t in SQLModel.metadata.sorted_tables if t.name in TABLES]
    SQLModel.metadata.drop_all(bind=bind, tables=tables)

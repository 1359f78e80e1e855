"""Add the cross-process lease columns to optimizer_snapshots.

Revision ID: 202610190001
Revises: 202610180002
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = "202610180002"
branch_labels = None
depends_on = None


def _column_names(table_name: str) -> set[str]:
    inspector = sa.inspect(op.get_bind())
    if table_name not in set(inspector.get_table_names()):
        return set()
    return {col["name"] for col in inspector.get_columns(table_name)}


def upgrade() -> None:
    existing = _column_names("optimizer_snapshots")
    if not existing:
        return
    if "lease_owner" not in existing:
        op.add_column("optimizer_snapshots", sa.Column("lease_owner", sa.String(), nullable=True))
    if "lease_expires_at" not in existing:
        op.add_column("optimizer_snapshots", sa.Column("lease_expires_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    # Column drops are not supported on SQLite without table rebuilds.
    pass

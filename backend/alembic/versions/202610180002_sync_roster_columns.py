"""Add any columns present on the roster models but missing from the DB.

Databases created before a model gained a column (workspace settings,
allocation metric snapshots) pick it up here. Guarded by
``_column_names()`` so re-running is a no-op.

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 12:00:00.000000
"""

from __future__ import annotations

import sys
from pathlib import Path

from alembic import op
import sqlalchemy as sa

BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


# revision identifiers, used by Alembic.
revision = "202610180002"
down_revision = "202610180001"
branch_labels = None
depends_on = None


def _column_names(table_name: str) -> set[str]:
    inspector = sa.inspect(op.get_bind())
    if table_name not in set(inspector.get_table_names()):
        return set()
    return {col["name"] for col in inspector.get_columns(table_name)}


def _server_default(column):
    if column.default is None or not column.default.is_scalar:
        return None
    value = column.default.arg
    if isinstance(value, bool):
        return sa.text("1" if value else "0")
    if isinstance(value, (int, float)):
        return sa.text(str(value))
    if isinstance(value, str):
        return sa.text(f"'{value}'")
    return None


def upgrade() -> None:
    from models.database import Workspace, WalletAllocation, RotationHistory
    from models.model_registry import register_all_models

    register_all_models()

    for model in (Workspace, WalletAllocation, RotationHistory):
        table_name = model.__tablename__
        existing = _column_names(table_name)
        if not existing:
            # Table doesn't exist yet; the baseline create_all handles it.
            continue
        for column in sa.inspect(model).columns:
            if column.name in existing:
                continue
            op.add_column(
                table_name,
                sa.Column(
                    column.name,
                    column.type.copy(),
                    nullable=True if column.nullable is None else column.nullable,
                    server_default=_server_default(column),
                ),
            )


def downgrade() -> None:
    # Column drops are not supported on SQLite without table rebuilds.
    pass

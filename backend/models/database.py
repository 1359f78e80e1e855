from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
import logging
import os
import uuid

from config import settings
from models.types import Percent, PreciseFloat as Float

logger = logging.getLogger(__name__)

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


# ==================== WORKSPACES ====================


class Workspace(Base):
    """Copy-trading workspace plus its optimizer and scanner settings."""

    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False, default="Default")
    copy_trading_enabled = Column(Boolean, default=True)

    # Rotation optimizer
    auto_optimize_enabled = Column(Boolean, default=True)
    auto_select_enabled = Column(Boolean, default=True)
    auto_demote_enabled = Column(Boolean, default=True)
    optimization_interval_hours = Column(Integer, default=12)
    min_roi_30d = Column(Float, nullable=True)
    min_sharpe = Column(Float, nullable=True)
    min_win_rate = Column(Float, nullable=True)
    min_trades_30d = Column(Integer, nullable=True)
    max_drawdown_pct = Column(Float, nullable=True)
    probation_days = Column(Integer, nullable=True)
    max_pinned_wallets = Column(Integer, default=3)
    allocation_strategy = Column(String, default="risk_weighted")
    replacement_margin = Column(Float, nullable=True)
    last_optimization_at = Column(DateTime, nullable=True)
    requested_run_at = Column(DateTime, nullable=True)

    # Opportunity scanner
    scanner_enabled = Column(Boolean, default=True)
    scanner_aggressiveness = Column(String, nullable=True)
    scanner_exploration_slots = Column(Integer, nullable=True)
    scanner_max_markets_cap = Column(Integer, nullable=True)
    scanner_last_run_at = Column(DateTime, nullable=True)
    scanner_requested_run_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ==================== ROSTER ====================


class WalletAllocation(Base):
    """One copy-trading roster slot (active or bench) for a wallet."""

    __tablename__ = "wallet_allocations"

    id = Column(String, primary_key=True, default=_new_id)
    workspace_id = Column(String, nullable=False, index=True)
    wallet_address = Column(String, nullable=False)
    label = Column(String, nullable=True)
    strategy = Column(String, nullable=True)
    tier = Column(String, nullable=False, default="bench")
    allocation_pct = Column(Percent, default=0.0)
    max_position_size = Column(Float, nullable=True)
    copy_behavior = Column(String, default="copy_all")

    pinned = Column(Boolean, default=False)
    pinned_at = Column(DateTime, nullable=True)
    pinned_by = Column(String, nullable=True)

    probation_until = Column(DateTime, nullable=True)
    probation_allocation_pct = Column(Float, nullable=True)
    grace_period_started_at = Column(DateTime, nullable=True)
    grace_period_reason = Column(String, nullable=True)
    consecutive_losses = Column(Integer, default=0)
    last_loss_at = Column(DateTime, nullable=True)

    confidence_score = Column(Float, nullable=True)
    composite_score = Column(Float, nullable=True)
    auto_assigned = Column(Boolean, default=False)
    auto_assigned_reason = Column(Text, nullable=True)

    # Last metric snapshot seen by the optimizer
    roi_30d = Column(Float, nullable=True)
    sharpe = Column(Float, nullable=True)
    win_rate = Column(Float, nullable=True)
    max_drawdown = Column(Float, nullable=True)
    metrics_as_of = Column(DateTime, nullable=True)

    added_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("workspace_id", "wallet_address", name="uq_wallet_allocation_workspace_wallet"),
        Index("idx_wallet_allocation_workspace_tier", "workspace_id", "tier"),
    )


class WalletBan(Base):
    __tablename__ = "wallet_bans"

    id = Column(String, primary_key=True, default=_new_id)
    workspace_id = Column(String, nullable=False)
    wallet_address = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    banned_by = Column(String, nullable=True)
    banned_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("workspace_id", "wallet_address", name="uq_wallet_ban_workspace_wallet"),
        Index("idx_wallet_ban_expires", "expires_at"),
    )


class RotationHistory(Base):
    """Append-only audit record of roster transitions."""

    __tablename__ = "rotation_history"

    id = Column(String, primary_key=True, default=_new_id)
    workspace_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    wallet_in = Column(String, nullable=True)
    wallet_out = Column(String, nullable=True)
    reason = Column(Text, nullable=True)
    evidence = Column(JSON, default=dict)
    is_automatic = Column(Boolean, default=True)
    trigger = Column(String, nullable=True)  # scheduled, manual, event, api
    acknowledged = Column(Boolean, default=False)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String, nullable=True)
    undo_expires_at = Column(DateTime, nullable=True)
    undoes_entry_id = Column(String, nullable=True)  # set on undo entries only
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_rotation_history_workspace_created", "workspace_id", "created_at"),
        Index("idx_rotation_history_workspace_ack", "workspace_id", "acknowledged"),
    )


# ==================== MARKET SCANNER ====================


class MarketSelection(Base):
    """Latest applied core/exploration assignment for a market."""

    __tablename__ = "market_selections"

    id = Column(String, primary_key=True, default=_new_id)
    workspace_id = Column(String, nullable=False)
    market_id = Column(String, nullable=False)
    question = Column(Text, nullable=True)
    tier = Column(String, nullable=False)
    total_score = Column(Float, default=0.0)
    exploration_score = Column(Float, default=0.0)
    scores_json = Column(JSON, default=dict)
    consecutive_selections = Column(Integer, default=0)
    first_selected_at = Column(DateTime, default=datetime.utcnow)
    selected_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "market_id", name="uq_market_selection_workspace_market"),
        Index("idx_market_selection_workspace_tier", "workspace_id", "tier"),
    )


class TunerGovernance(Base):
    """Governance overlay written by the external tuner; read-only here."""

    __tablename__ = "tuner_governance"

    workspace_id = Column(String, primary_key=True)
    mode = Column(String, default="apply")  # apply, shadow
    frozen = Column(Boolean, default=False)
    freeze_reason = Column(Text, nullable=True)
    current_regime = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OptimizerSnapshot(Base):
    """Latest loop status per workspace. Written by workers, read by API/UI."""

    __tablename__ = "optimizer_snapshots"

    workspace_id = Column(String, primary_key=True)
    loop = Column(String, primary_key=True)  # rotation, scanner
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_run_at = Column(DateTime, nullable=True)
    running = Column(Boolean, default=False)
    last_status = Column(String, nullable=True)  # ok, no_candidates, skipped, shadow, error
    last_error = Column(Text, nullable=True)
    current_activity = Column(String, nullable=True)
    candidates_found_last_run = Column(Integer, default=0)
    actions_last_run = Column(Integer, default=0)
    stats_json = Column(JSON, default=dict)
    lease_owner = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent access between the two loops."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


def _sqlite_file_path() -> Path | None:
    url = settings.DATABASE_URL
    for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
        if url.startswith(prefix):
            path_part = url[len(prefix) :]
            if not path_part or path_part == ":memory:":
                return None
            return Path(path_part)
    return None


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades across worker processes for SQLite."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    try:
        lock_file = lock_path.open("a", encoding="utf-8")
    except OSError:
        logger.warning("Cannot open migration lock file, proceeding without lock")
        yield
        return

    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


async def init_database():
    """Initialize database and apply Alembic migrations."""
    from models.model_registry import register_all_models

    register_all_models()
    db_path = _sqlite_file_path()
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)

"""Shared DB state for the rotation/scanner workers and the API layer."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import OptimizerSnapshot, Workspace
from models.roster import OptimizerCriteria
from services.roster_errors import WorkspaceNotFound
from services.workspace_locks import ROTATION_LOOP, SCANNER_LOOP  # noqa: F401
from utils.utcnow import format_iso_utc_z, utcnow


def criteria_for_workspace(workspace: Workspace) -> OptimizerCriteria:
    def pick(value, default):
        return default if value is None else value

    return OptimizerCriteria(
        min_roi_30d=pick(workspace.min_roi_30d, settings.DEFAULT_MIN_ROI_30D),
        min_sharpe=pick(workspace.min_sharpe, settings.DEFAULT_MIN_SHARPE),
        min_win_rate=pick(workspace.min_win_rate, settings.DEFAULT_MIN_WIN_RATE),
        min_trades_30d=int(pick(workspace.min_trades_30d, settings.DEFAULT_MIN_TRADES_30D)),
        max_drawdown=pick(workspace.max_drawdown_pct, settings.DEFAULT_MAX_DRAWDOWN),
    )


def interval_hours_for(workspace: Workspace) -> int:
    return int(max(1, min(168, workspace.optimization_interval_hours or settings.OPTIMIZER_INTERVAL_HOURS)))


def next_run_at(workspace: Workspace) -> Optional[datetime]:
    if workspace.last_optimization_at is None:
        return None
    return workspace.last_optimization_at + timedelta(hours=interval_hours_for(workspace))


def rotation_is_due(workspace: Workspace, now: datetime) -> bool:
    if workspace.requested_run_at is not None:
        return True
    if not workspace.auto_optimize_enabled or workspace.copy_trading_enabled is False:
        return False
    due_at = next_run_at(workspace)
    return due_at is None or now >= due_at


def scanner_is_due(workspace: Workspace, now: datetime) -> bool:
    if workspace.scanner_requested_run_at is not None:
        return True
    if workspace.scanner_enabled is False:
        return False
    if workspace.scanner_last_run_at is None:
        return True
    return now >= workspace.scanner_last_run_at + timedelta(seconds=settings.SCANNER_INTERVAL_SECONDS)


async def get_workspace(session: AsyncSession, workspace_id: str) -> Workspace:
    workspace = await session.get(Workspace, workspace_id)
    if workspace is None:
        raise WorkspaceNotFound(f"Workspace {workspace_id} not found", workspace_id=workspace_id)
    return workspace


async def list_workspace_ids(session: AsyncSession) -> list[str]:
    result = await session.execute(select(Workspace.id).order_by(Workspace.created_at, Workspace.id))
    return list(result.scalars().all())


async def request_rotation_run(session: AsyncSession, workspace_id: str) -> None:
    """Ask the optimizer worker to run a manual pass on its next poll."""
    workspace = await get_workspace(session, workspace_id)
    workspace.requested_run_at = utcnow()
    await session.commit()


async def request_scanner_run(session: AsyncSession, workspace_id: str) -> None:
    workspace = await get_workspace(session, workspace_id)
    workspace.scanner_requested_run_at = utcnow()
    await session.commit()


async def _ensure_snapshot_row(session: AsyncSession, workspace_id: str, loop: str) -> None:
    # Both processes may create the row; the loser of the insert is a no-op.
    stmt = sqlite_insert(OptimizerSnapshot).values(workspace_id=workspace_id, loop=loop, updated_at=utcnow())
    await session.execute(stmt.on_conflict_do_nothing(index_elements=["workspace_id", "loop"]))


async def try_acquire_lease(
    session: AsyncSession,
    workspace_id: str,
    loop: str,
    owner: str,
    ttl_seconds: float,
) -> bool:
    """Try to acquire/renew the cross-process lease for one loop. Returns True if owned."""
    await _ensure_snapshot_row(session, workspace_id, loop)
    now = utcnow()
    stmt = (
        update(OptimizerSnapshot)
        .where(OptimizerSnapshot.workspace_id == workspace_id, OptimizerSnapshot.loop == loop)
        .where(
            (OptimizerSnapshot.lease_owner.is_(None))
            | (OptimizerSnapshot.lease_owner == owner)
            | (OptimizerSnapshot.lease_expires_at.is_(None))
            | (OptimizerSnapshot.lease_expires_at < now)
        )
        .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=max(1.0, ttl_seconds)))
    )
    result = await session.execute(stmt)
    await session.commit()
    return (result.rowcount or 0) > 0


async def release_lease(session: AsyncSession, workspace_id: str, loop: str, owner: str) -> None:
    await session.execute(
        update(OptimizerSnapshot)
        .where(
            OptimizerSnapshot.workspace_id == workspace_id,
            OptimizerSnapshot.loop == loop,
            OptimizerSnapshot.lease_owner == owner,
        )
        .values(lease_owner=None, lease_expires_at=None)
    )
    await session.commit()


def _default_snapshot() -> dict[str, Any]:
    return {
        "running": False,
        "last_run_at": None,
        "last_status": None,
        "last_error": None,
        "current_activity": "Waiting for worker.",
        "candidates_found_last_run": 0,
        "actions_last_run": 0,
        "stats": {},
    }


async def write_snapshot(
    session: AsyncSession,
    workspace_id: str,
    loop: str,
    status: dict[str, Any],
) -> None:
    await _ensure_snapshot_row(session, workspace_id, loop)
    row = await session.get(OptimizerSnapshot, (workspace_id, loop))

    row.updated_at = utcnow()
    last_run = status.get("last_run_at")
    if isinstance(last_run, datetime):
        row.last_run_at = last_run
    row.running = bool(status.get("running", row.running or False))
    row.last_status = status.get("last_status", row.last_status)
    if "last_error" in status:
        row.last_error = status["last_error"]
    row.current_activity = status.get("current_activity", row.current_activity)
    row.candidates_found_last_run = int(status.get("candidates_found_last_run", row.candidates_found_last_run or 0))
    row.actions_last_run = int(status.get("actions_last_run", row.actions_last_run or 0))
    if "stats" in status:
        row.stats_json = status["stats"]
    await session.commit()


async def read_snapshot(session: AsyncSession, workspace_id: str, loop: str) -> dict[str, Any]:
    row = await session.get(OptimizerSnapshot, (workspace_id, loop))
    if row is None:
        return _default_snapshot()
    lease_held = row.lease_owner is not None and row.lease_expires_at is not None and row.lease_expires_at > utcnow()
    return {
        "running": bool(row.running) or lease_held,
        "last_run_at": format_iso_utc_z(row.last_run_at),
        "last_status": row.last_status,
        "last_error": row.last_error,
        "current_activity": row.current_activity or _default_snapshot()["current_activity"],
        "candidates_found_last_run": int(row.candidates_found_last_run or 0),
        "actions_last_run": int(row.actions_last_run or 0),
        "stats": row.stats_json or {},
    }

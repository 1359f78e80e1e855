"""Append-only rotation audit log."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import RotationHistory
from models.roster import RotationAction
from services.roster_errors import RotationEntryNotFound
from utils.utcnow import format_iso_utc_z, utcnow
from utils.validation import validate_limit

DEFAULT_LIMIT = 50
MAX_LIMIT = 100

UNDOABLE_ACTIONS = frozenset(
    {
        RotationAction.ADD,
        RotationAction.PROMOTE,
        RotationAction.DEMOTE,
        RotationAction.REPLACE,
        RotationAction.PROBATION_START,
        RotationAction.PROBATION_FAIL,
        RotationAction.GRACE_PERIOD_DEMOTE,
        RotationAction.EMERGENCY_DEMOTE,
        RotationAction.PIN,
        RotationAction.UNPIN,
    }
)


async def record(
    session: AsyncSession,
    *,
    workspace_id: str,
    action: RotationAction,
    reason: str,
    wallet_in: Optional[str] = None,
    wallet_out: Optional[str] = None,
    evidence: Optional[dict[str, Any]] = None,
    is_automatic: bool = True,
    trigger: Optional[str] = None,
    undoes_entry_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RotationHistory:
    """Add one entry to the caller's transaction (flushed, not committed)."""
    now = now or utcnow()
    action = RotationAction(action)
    undo_expires_at = None
    if action in UNDOABLE_ACTIONS:
        undo_expires_at = now + timedelta(minutes=settings.UNDO_WINDOW_MINUTES)
    entry = RotationHistory(
        workspace_id=workspace_id,
        action=action.value,
        wallet_in=wallet_in,
        wallet_out=wallet_out,
        reason=reason,
        evidence=evidence or {},
        is_automatic=is_automatic,
        trigger=trigger,
        acknowledged=False,
        undo_expires_at=undo_expires_at,
        undoes_entry_id=undoes_entry_id,
        created_at=now,
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_entries(
    session: AsyncSession,
    workspace_id: str,
    *,
    limit: Optional[int] = None,
    unacknowledged_only: bool = False,
) -> list[RotationHistory]:
    query = select(RotationHistory).where(RotationHistory.workspace_id == workspace_id)
    if unacknowledged_only:
        query = query.where(RotationHistory.acknowledged.is_(False))
    query = query.order_by(RotationHistory.created_at.desc(), RotationHistory.id.desc())
    query = query.limit(validate_limit(limit, default=DEFAULT_LIMIT, max_limit=MAX_LIMIT))
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_entry(session: AsyncSession, entry_id: str, workspace_id: Optional[str] = None) -> RotationHistory:
    entry = await session.get(RotationHistory, entry_id)
    if entry is None or (workspace_id is not None and entry.workspace_id != workspace_id):
        raise RotationEntryNotFound(f"Rotation entry {entry_id} not found", workspace_id=workspace_id)
    return entry


async def acknowledge(
    session: AsyncSession,
    entry_id: str,
    *,
    workspace_id: Optional[str] = None,
    acknowledged_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RotationHistory:
    """Mark an entry acknowledged. Idempotent; the first timestamp wins."""
    entry = await get_entry(session, entry_id, workspace_id)
    if not entry.acknowledged:
        entry.acknowledged = True
        entry.acknowledged_at = now or utcnow()
        entry.acknowledged_by = acknowledged_by
        await session.flush()
    return entry


def serialize(entry: RotationHistory) -> dict[str, Any]:
    return {
        "id": entry.id,
        "workspace_id": entry.workspace_id,
        "action": entry.action,
        "wallet_in": entry.wallet_in,
        "wallet_out": entry.wallet_out,
        "reason": entry.reason,
        "evidence": entry.evidence or {},
        "is_automatic": bool(entry.is_automatic),
        "trigger": entry.trigger,
        "acknowledged": bool(entry.acknowledged),
        "acknowledged_at": format_iso_utc_z(entry.acknowledged_at),
        "acknowledged_by": entry.acknowledged_by,
        "undo_expires_at": format_iso_utc_z(entry.undo_expires_at),
        "undoes_entry_id": entry.undoes_entry_id,
        "created_at": format_iso_utc_z(entry.created_at),
    }

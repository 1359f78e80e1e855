"""Read-only view of the tuner governance overlay shared by both loops.

The overlay (``mode``, ``frozen``, ``freeze_reason``, ``current_regime``)
is written by the external tuner process. The rotation optimizer and the
opportunity scanner only read it: in shadow mode or while frozen they
compute and log recommendations without applying them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.database import TunerGovernance
from models.roster import GovernanceMode
from utils.logger import get_logger
from utils.utcnow import format_iso_utc_z

logger = get_logger("tuner_governance")


@dataclass(frozen=True)
class GovernanceState:
    mode: GovernanceMode = GovernanceMode.APPLY
    frozen: bool = False
    freeze_reason: Optional[str] = None
    current_regime: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def applies(self) -> bool:
        return self.mode == GovernanceMode.APPLY and not self.frozen

    @property
    def hold_reason(self) -> Optional[str]:
        if self.frozen:
            return f"frozen: {self.freeze_reason or 'no reason given'}"
        if self.mode == GovernanceMode.SHADOW:
            return "shadow mode"
        return None

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "frozen": self.frozen,
            "freeze_reason": self.freeze_reason,
            "current_regime": self.current_regime,
            "updated_at": format_iso_utc_z(self.updated_at),
        }


async def read_governance(session: AsyncSession, workspace_id: str) -> GovernanceState:
    row = await session.get(TunerGovernance, workspace_id)
    if row is None:
        return GovernanceState()
    try:
        mode = GovernanceMode(str(row.mode or GovernanceMode.APPLY.value).strip().lower())
    except ValueError:
        # An unreadable mode must never unlock writes.
        logger.warning("Unknown governance mode, treating as shadow", workspace_id=workspace_id, mode=row.mode)
        mode = GovernanceMode.SHADOW
    return GovernanceState(
        mode=mode,
        frozen=bool(row.frozen),
        freeze_reason=row.freeze_reason,
        current_regime=row.current_regime,
        updated_at=row.updated_at,
    )

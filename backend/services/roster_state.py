"""Roster state machine: validated lifecycle transitions for copied wallets.

States per wallet within a workspace::

    (absent) -> bench -> probation -> active -> grace_period -> bench
                                        ^-------------'   (recovery)
    any state -> banned -> (absent)    (explicit unban only)

``pinned`` is an orthogonal flag on a bench or active row. It suppresses
automatic demotions; manual demotion and banning still apply.

Every method works inside the caller's session and never commits, so a
rotation pass can apply many transitions as one transaction. Each
transition appends exactly one rotation history entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.database import RotationHistory, WalletAllocation, WalletBan, Workspace
from models.roster import (
    CompositeScore,
    CopyBehavior,
    DemotionTrigger,
    RosterState,
    RotationAction,
    Tier,
    WalletMetrics,
)
from services import rotation_history
from services.roster_errors import (
    InvalidTierTransition,
    PersistenceConflict,
    PinLimitExceeded,
    RosterFull,
    RosterInvariantViolation,
    UndoNotAllowed,
    WalletBanned,
    WalletNotFound,
)
from utils.logger import get_logger
from utils.utcnow import as_naive_utc, format_iso_utc_z, utcnow

logger = get_logger("roster_state")

_IN_ROSTER = frozenset({RosterState.BENCH, RosterState.PROBATION, RosterState.ACTIVE, RosterState.GRACE_PERIOD})
_ACTIVE_TIER = frozenset({RosterState.PROBATION, RosterState.ACTIVE, RosterState.GRACE_PERIOD})


@dataclass(frozen=True)
class Transition:
    allowed_from: frozenset  # RosterState members, None for "not in roster"
    to_state: Optional[RosterState]
    changes_state: bool = True


# Closed mapping over every RotationAction; checked for completeness below.
TRANSITIONS: dict[RotationAction, Transition] = {
    RotationAction.ADD: Transition(frozenset({None}), RosterState.BENCH),
    RotationAction.REMOVE: Transition(_IN_ROSTER, None),
    RotationAction.PROBATION_START: Transition(frozenset({None, RosterState.BENCH}), RosterState.PROBATION),
    RotationAction.PROBATION_GRADUATE: Transition(frozenset({RosterState.PROBATION}), RosterState.ACTIVE),
    RotationAction.PROBATION_FAIL: Transition(frozenset({RosterState.PROBATION}), RosterState.BENCH),
    RotationAction.GRACE_PERIOD_START: Transition(frozenset({RosterState.ACTIVE}), RosterState.GRACE_PERIOD),
    RotationAction.GRACE_PERIOD_DEMOTE: Transition(frozenset({RosterState.GRACE_PERIOD}), RosterState.BENCH),
    RotationAction.EMERGENCY_DEMOTE: Transition(_ACTIVE_TIER, RosterState.BENCH),
    RotationAction.PROMOTE: Transition(
        frozenset({None, RosterState.BENCH, RosterState.PROBATION, RosterState.GRACE_PERIOD}),
        RosterState.ACTIVE,
    ),
    RotationAction.DEMOTE: Transition(_ACTIVE_TIER, RosterState.BENCH),
    RotationAction.REPLACE: Transition(
        frozenset({RosterState.ACTIVE, RosterState.GRACE_PERIOD, RosterState.PROBATION}),
        RosterState.BENCH,
    ),
    RotationAction.PIN: Transition(_IN_ROSTER, None, changes_state=False),
    RotationAction.UNPIN: Transition(_IN_ROSTER, None, changes_state=False),
    RotationAction.BAN: Transition(frozenset({None, RosterState.BANNED}) | _IN_ROSTER, RosterState.BANNED),
    RotationAction.UNBAN: Transition(frozenset({RosterState.BANNED}), None),
    RotationAction.ALLOCATION_ADJUSTMENT: Transition(_IN_ROSTER, None, changes_state=False),
    RotationAction.UNDO: Transition(frozenset({None}) | _IN_ROSTER, None, changes_state=False),
}

_missing = set(RotationAction) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Unmapped rotation actions: {sorted(a.value for a in _missing)}")


def state_of(row: Optional[WalletAllocation], ban: Optional[WalletBan] = None) -> Optional[RosterState]:
    """Derive the lifecycle state of a wallet; ``None`` means not in the roster."""
    if ban is not None:
        return RosterState.BANNED
    if row is None:
        return None
    if row.tier == Tier.BENCH.value:
        return RosterState.BENCH
    if row.probation_until is not None:
        return RosterState.PROBATION
    if row.grace_period_started_at is not None:
        return RosterState.GRACE_PERIOD
    return RosterState.ACTIVE


def serialize_allocation(row: WalletAllocation) -> dict[str, Any]:
    state = state_of(row)
    return {
        "id": row.id,
        "workspace_id": row.workspace_id,
        "wallet_address": row.wallet_address,
        "label": row.label,
        "strategy": row.strategy,
        "tier": row.tier,
        "state": state.value if state else None,
        "allocation_pct": float(row.allocation_pct or 0.0),
        "max_position_size": row.max_position_size,
        "copy_behavior": row.copy_behavior,
        "pinned": bool(row.pinned),
        "pinned_at": format_iso_utc_z(row.pinned_at),
        "probation_until": format_iso_utc_z(row.probation_until),
        "grace_period_started_at": format_iso_utc_z(row.grace_period_started_at),
        "grace_period_reason": row.grace_period_reason,
        "consecutive_losses": int(row.consecutive_losses or 0),
        "confidence_score": row.confidence_score,
        "composite_score": row.composite_score,
        "auto_assigned": bool(row.auto_assigned),
        "added_at": format_iso_utc_z(row.added_at),
        "updated_at": format_iso_utc_z(row.updated_at),
    }


class RosterStateMachine:
    """Transitions for one workspace inside one open transaction."""

    def __init__(
        self,
        session: AsyncSession,
        workspace: Workspace,
        *,
        now: Optional[datetime] = None,
        trigger: str = "api",
    ):
        self.session = session
        self.workspace = workspace
        self.now = now or utcnow()
        self.trigger = trigger
        self.log = logger.with_context(workspace_id=workspace.id)
        self.recorded: list[RotationHistory] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def max_active(self) -> int:
        return settings.ROSTER_MAX_ACTIVE

    @property
    def max_pinned(self) -> int:
        configured = self.workspace.max_pinned_wallets
        if configured is None:
            return settings.ROSTER_MAX_PINNED
        return max(0, min(settings.ROSTER_MAX_PINNED, int(configured)))

    @property
    def probation_window(self) -> timedelta:
        days = self.workspace.probation_days
        if days is None:
            days = settings.PROBATION_DAYS
        return timedelta(days=max(0, int(days)))

    async def rows(self, tier: Optional[str] = None) -> list[WalletAllocation]:
        query = select(WalletAllocation).where(WalletAllocation.workspace_id == self.workspace.id)
        if tier is not None:
            query = query.where(WalletAllocation.tier == tier)
        result = await self.session.execute(query.order_by(WalletAllocation.added_at, WalletAllocation.wallet_address))
        return list(result.scalars().all())

    async def get_row(self, address: str) -> Optional[WalletAllocation]:
        result = await self.session.execute(
            select(WalletAllocation).where(
                WalletAllocation.workspace_id == self.workspace.id,
                WalletAllocation.wallet_address == address,
            )
        )
        return result.scalar_one_or_none()

    async def require_row(self, address: str) -> WalletAllocation:
        row = await self.get_row(address)
        if row is None:
            await self._ensure_not_banned(address)
            raise WalletNotFound(f"Wallet {address} is not in the roster", workspace_id=self.workspace.id)
        return row

    async def active_ban(self, address: str) -> Optional[WalletBan]:
        result = await self.session.execute(
            select(WalletBan).where(
                WalletBan.workspace_id == self.workspace.id,
                WalletBan.wallet_address == address,
            )
        )
        ban = result.scalar_one_or_none()
        if ban is None:
            return None
        if ban.expires_at is not None and ban.expires_at <= self.now:
            return None
        return ban

    async def banned_addresses(self) -> set[str]:
        result = await self.session.execute(
            select(WalletBan.wallet_address).where(
                WalletBan.workspace_id == self.workspace.id,
                (WalletBan.expires_at.is_(None)) | (WalletBan.expires_at > self.now),
            )
        )
        return set(result.scalars().all())

    async def state(self, address: str) -> Optional[RosterState]:
        return state_of(await self.get_row(address), await self.active_ban(address))

    async def active_count(self) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(WalletAllocation)
            .where(WalletAllocation.workspace_id == self.workspace.id, WalletAllocation.tier == Tier.ACTIVE.value)
        )
        return int(result.scalar_one())

    async def pinned_count(self) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(WalletAllocation)
            .where(WalletAllocation.workspace_id == self.workspace.id, WalletAllocation.pinned.is_(True))
        )
        return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check(self, action: RotationAction, current: Optional[RosterState], address: str) -> Transition:
        transition = TRANSITIONS[action]
        if current not in transition.allowed_from:
            raise InvalidTierTransition(
                f"Cannot {action.value} wallet {address} from state {current.value if current else 'absent'}",
                workspace_id=self.workspace.id,
                wallet_address=address,
                action=action.value,
                state=current.value if current else None,
            )
        return transition

    async def _ensure_not_banned(self, address: str) -> None:
        ban = await self.active_ban(address)
        if ban is not None:
            raise WalletBanned(
                f"Wallet {address} is banned",
                workspace_id=self.workspace.id,
                wallet_address=address,
                reason=ban.reason,
                expires_at=format_iso_utc_z(ban.expires_at),
            )

    async def _ensure_capacity(self, address: str) -> None:
        count = await self.active_count()
        if count >= self.max_active:
            raise RosterFull(
                f"Active roster is full ({count}/{self.max_active})",
                workspace_id=self.workspace.id,
                wallet_address=address,
                active_count=count,
            )

    def _ensure_unpinned_for_automatic(self, row: WalletAllocation, action: RotationAction) -> None:
        if row.pinned:
            raise InvalidTierTransition(
                f"Pinned wallet {row.wallet_address} is exempt from automatic {action.value}",
                workspace_id=self.workspace.id,
                wallet_address=row.wallet_address,
                action=action.value,
            )

    async def _flush(self) -> None:
        try:
            await self.session.flush()
        except StaleDataError as exc:
            raise PersistenceConflict(
                "Roster row changed concurrently",
                workspace_id=self.workspace.id,
            ) from exc

    async def _record(
        self,
        action: RotationAction,
        reason: str,
        *,
        wallet_in: Optional[str] = None,
        wallet_out: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
        is_automatic: bool,
        undoes_entry_id: Optional[str] = None,
    ) -> RotationHistory:
        entry = await rotation_history.record(
            self.session,
            workspace_id=self.workspace.id,
            action=action,
            reason=reason,
            wallet_in=wallet_in,
            wallet_out=wallet_out,
            evidence=evidence,
            is_automatic=is_automatic,
            trigger=self.trigger,
            undoes_entry_id=undoes_entry_id,
            now=self.now,
        )
        self.recorded.append(entry)
        self.log.info(
            "Roster transition",
            action=action.value,
            wallet_in=wallet_in,
            wallet_out=wallet_out,
            is_automatic=is_automatic,
            reason=reason,
        )
        return entry

    # ------------------------------------------------------------------
    # Row mutation helpers
    # ------------------------------------------------------------------

    def _snapshot_metrics(
        self,
        row: WalletAllocation,
        metrics: Optional[WalletMetrics],
        score: Optional[CompositeScore],
    ) -> None:
        if metrics is not None:
            row.roi_30d = metrics.roi_30d
            row.sharpe = metrics.sharpe
            row.win_rate = metrics.win_rate
            row.max_drawdown = metrics.max_drawdown
            row.metrics_as_of = as_naive_utc(metrics.as_of) if metrics.as_of else self.now
            if metrics.strategy and not row.strategy:
                row.strategy = metrics.strategy
        if score is not None:
            row.composite_score = score.score
            row.confidence_score = score.confidence_score

    def update_metrics(self, row: WalletAllocation, metrics: WalletMetrics) -> None:
        self._snapshot_metrics(row, metrics, None)

    def _to_bench(self, row: WalletAllocation) -> None:
        row.tier = Tier.BENCH.value
        row.allocation_pct = 0.0
        row.probation_until = None
        row.probation_allocation_pct = None
        row.grace_period_started_at = None
        row.grace_period_reason = None
        row.consecutive_losses = 0
        row.updated_at = self.now

    def _to_active(self, row: WalletAllocation) -> None:
        row.tier = Tier.ACTIVE.value
        row.probation_until = None
        row.probation_allocation_pct = None
        row.grace_period_started_at = None
        row.grace_period_reason = None
        row.updated_at = self.now

    def _to_probation(self, row: WalletAllocation) -> None:
        row.tier = Tier.ACTIVE.value
        row.allocation_pct = 0.0
        row.probation_until = self.now + self.probation_window
        row.probation_allocation_pct = settings.PROBATION_ALLOCATION_PCT
        row.grace_period_started_at = None
        row.grace_period_reason = None
        row.consecutive_losses = 0
        row.updated_at = self.now

    def _new_row(self, address: str, *, auto_assigned: bool, **fields: Any) -> WalletAllocation:
        row = WalletAllocation(
            workspace_id=self.workspace.id,
            wallet_address=address,
            tier=Tier.BENCH.value,
            allocation_pct=0.0,
            copy_behavior=fields.pop("copy_behavior", CopyBehavior.COPY_ALL.value),
            max_position_size=fields.pop("max_position_size", None) or settings.DEFAULT_MAX_POSITION_SIZE,
            pinned=False,
            consecutive_losses=0,
            auto_assigned=auto_assigned,
            added_at=self.now,
            updated_at=self.now,
            **fields,
        )
        self.session.add(row)
        return row

    @staticmethod
    def _prior(row: Optional[WalletAllocation], state: Optional[RosterState]) -> dict[str, Any]:
        return {
            "previous_state": state.value if state else None,
            "previous_allocation_pct": float(row.allocation_pct or 0.0) if row is not None else None,
            "previous_pinned": bool(row.pinned) if row is not None else None,
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def add_wallet(
        self,
        address: str,
        *,
        label: Optional[str] = None,
        strategy: Optional[str] = None,
        copy_behavior: CopyBehavior = CopyBehavior.COPY_ALL,
        max_position_size: Optional[float] = None,
        is_automatic: bool = False,
        reason: Optional[str] = None,
    ) -> WalletAllocation:
        await self._ensure_not_banned(address)
        row = await self.get_row(address)
        self._check(RotationAction.ADD, state_of(row), address)
        row = self._new_row(
            address,
            auto_assigned=is_automatic,
            label=label,
            strategy=strategy,
            copy_behavior=CopyBehavior(copy_behavior).value,
            max_position_size=max_position_size,
        )
        await self._flush()
        await self._record(
            RotationAction.ADD,
            reason or "Added to bench",
            wallet_in=address,
            evidence={"previous_state": None, "tier": Tier.BENCH.value},
            is_automatic=is_automatic,
        )
        return row

    async def remove_wallet(self, address: str, *, reason: Optional[str] = None, is_automatic: bool = False) -> None:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.REMOVE, state, address)
        evidence = self._prior(row, state)
        await self.session.delete(row)
        await self._flush()
        await self._record(
            RotationAction.REMOVE,
            reason or "Removed from roster",
            wallet_out=address,
            evidence=evidence,
            is_automatic=is_automatic,
        )

    async def start_probation(
        self,
        address: str,
        *,
        metrics: Optional[WalletMetrics] = None,
        score: Optional[CompositeScore] = None,
        reason: str = "Selected as promotion candidate",
        evidence: Optional[dict[str, Any]] = None,
        is_automatic: bool = True,
    ) -> WalletAllocation:
        await self._ensure_not_banned(address)
        row = await self.get_row(address)
        state = state_of(row)
        self._check(RotationAction.PROBATION_START, state, address)
        await self._ensure_capacity(address)
        prior = self._prior(row, state)
        if row is None:
            row = self._new_row(address, auto_assigned=is_automatic)
        row.auto_assigned = row.auto_assigned or is_automatic
        if is_automatic:
            row.auto_assigned_reason = reason
        self._to_probation(row)
        self._snapshot_metrics(row, metrics, score)
        await self._flush()
        await self._record(
            RotationAction.PROBATION_START,
            reason,
            wallet_in=address,
            evidence={
                **prior,
                "probation_until": format_iso_utc_z(row.probation_until),
                "probation_allocation_pct": row.probation_allocation_pct,
                "score": score.evidence() if score else None,
                **(evidence or {}),
            },
            is_automatic=is_automatic,
        )
        return row

    async def graduate_probation(
        self,
        address: str,
        *,
        reason: str = "Metrics held above criteria through probation",
        evidence: Optional[dict[str, Any]] = None,
        is_automatic: bool = True,
    ) -> WalletAllocation:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.PROBATION_GRADUATE, state, address)
        prior = self._prior(row, state)
        self._to_active(row)
        await self._flush()
        await self._record(
            RotationAction.PROBATION_GRADUATE,
            reason,
            wallet_in=address,
            evidence={**prior, **(evidence or {})},
            is_automatic=is_automatic,
        )
        return row

    async def fail_probation(
        self,
        address: str,
        *,
        reason: str,
        evidence: Optional[dict[str, Any]] = None,
        is_automatic: bool = True,
    ) -> WalletAllocation:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.PROBATION_FAIL, state, address)
        if is_automatic:
            self._ensure_unpinned_for_automatic(row, RotationAction.PROBATION_FAIL)
        prior = self._prior(row, state)
        self._to_bench(row)
        await self._flush()
        await self._record(
            RotationAction.PROBATION_FAIL,
            reason,
            wallet_out=address,
            evidence={**prior, "trigger": DemotionTrigger.PROBATION_FAILED.value, **(evidence or {})},
            is_automatic=is_automatic,
        )
        return row

    async def start_grace_period(
        self,
        address: str,
        *,
        trigger: DemotionTrigger,
        reason: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
        is_automatic: bool = True,
    ) -> WalletAllocation:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.GRACE_PERIOD_START, state, address)
        if is_automatic:
            self._ensure_unpinned_for_automatic(row, RotationAction.GRACE_PERIOD_START)
        prior = self._prior(row, state)
        row.grace_period_started_at = self.now
        row.grace_period_reason = trigger.value
        row.updated_at = self.now
        await self._flush()
        await self._record(
            RotationAction.GRACE_PERIOD_START,
            reason or f"Grace period started: {trigger.value}",
            wallet_out=address,
            evidence={
                **prior,
                "trigger": trigger.value,
                "grace_period_hours": settings.GRACE_PERIOD_HOURS,
                "consecutive_losses": int(row.consecutive_losses or 0),
                **(evidence or {}),
            },
            is_automatic=is_automatic,
        )
        return row

    async def recover_from_grace(
        self,
        address: str,
        *,
        reason: str = "Recovered within grace period",
        evidence: Optional[dict[str, Any]] = None,
    ) -> WalletAllocation:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.PROMOTE, state, address)
        if state != RosterState.GRACE_PERIOD:
            raise InvalidTierTransition(
                f"Wallet {address} is not in a grace period",
                workspace_id=self.workspace.id,
                wallet_address=address,
            )
        prior = self._prior(row, state)
        self._to_active(row)
        row.consecutive_losses = 0
        await self._flush()
        await self._record(
            RotationAction.PROMOTE,
            reason,
            wallet_in=address,
            evidence={**prior, "recovered_from": RosterState.GRACE_PERIOD.value, **(evidence or {})},
            is_automatic=True,
        )
        return row

    async def grace_period_demote(
        self,
        address: str,
        *,
        reason: str = "Grace period expired without recovery",
        evidence: Optional[dict[str, Any]] = None,
    ) -> WalletAllocation:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.GRACE_PERIOD_DEMOTE, state, address)
        self._ensure_unpinned_for_automatic(row, RotationAction.GRACE_PERIOD_DEMOTE)
        prior = self._prior(row, state)
        self._to_bench(row)
        await self._flush()
        await self._record(
            RotationAction.GRACE_PERIOD_DEMOTE,
            reason,
            wallet_out=address,
            evidence={**prior, "trigger": DemotionTrigger.GRACE_EXPIRED.value, **(evidence or {})},
            is_automatic=True,
        )
        return row

    async def emergency_demote(
        self,
        address: str,
        *,
        trigger: DemotionTrigger,
        reason: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
    ) -> WalletAllocation:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.EMERGENCY_DEMOTE, state, address)
        self._ensure_unpinned_for_automatic(row, RotationAction.EMERGENCY_DEMOTE)
        prior = self._prior(row, state)
        losses = int(row.consecutive_losses or 0)
        self._to_bench(row)
        await self._flush()
        await self._record(
            RotationAction.EMERGENCY_DEMOTE,
            reason or f"Emergency demotion: {trigger.value}",
            wallet_out=address,
            evidence={**prior, "trigger": trigger.value, "consecutive_losses": losses, **(evidence or {})},
            is_automatic=True,
        )
        return row

    async def promote(
        self,
        address: str,
        *,
        reason: str = "Manually promoted",
        is_automatic: bool = False,
        evidence: Optional[dict[str, Any]] = None,
    ) -> WalletAllocation:
        """Direct promotion to active, skipping probation."""
        await self._ensure_not_banned(address)
        row = await self.get_row(address)
        state = state_of(row)
        self._check(RotationAction.PROMOTE, state, address)
        if state not in _ACTIVE_TIER:
            await self._ensure_capacity(address)
        prior = self._prior(row, state)
        if row is None:
            row = self._new_row(address, auto_assigned=is_automatic)
        self._to_active(row)
        await self._flush()
        await self._record(
            RotationAction.PROMOTE,
            reason,
            wallet_in=address,
            evidence={**prior, **(evidence or {})},
            is_automatic=is_automatic,
        )
        return row

    async def demote(
        self,
        address: str,
        *,
        reason: str = "Manually demoted",
        is_automatic: bool = False,
        evidence: Optional[dict[str, Any]] = None,
    ) -> WalletAllocation:
        row = await self.require_row(address)
        state = state_of(row)
        self._check(RotationAction.DEMOTE, state, address)
        if is_automatic:
            self._ensure_unpinned_for_automatic(row, RotationAction.DEMOTE)
        prior = self._prior(row, state)
        self._to_bench(row)
        await self._flush()
        await self._record(
            RotationAction.DEMOTE,
            reason,
            wallet_out=address,
            evidence={**prior, "trigger": DemotionTrigger.MANUAL_DEMOTE.value, **(evidence or {})},
            is_automatic=is_automatic,
        )
        return row

    async def replace(
        self,
        outgoing: str,
        incoming: str,
        *,
        reason: str,
        metrics: Optional[WalletMetrics] = None,
        score: Optional[CompositeScore] = None,
        evidence: Optional[dict[str, Any]] = None,
        is_automatic: bool = True,
    ) -> WalletAllocation:
        """Swap the outgoing active wallet for a probationary incoming one."""
        await self._ensure_not_banned(incoming)
        out_row = await self.require_row(outgoing)
        out_state = state_of(out_row)
        self._check(RotationAction.REPLACE, out_state, outgoing)
        if out_row.pinned:
            raise InvalidTierTransition(
                f"Pinned wallet {outgoing} cannot be replaced",
                workspace_id=self.workspace.id,
                wallet_address=outgoing,
                action=RotationAction.REPLACE.value,
            )
        in_row = await self.get_row(incoming)
        in_state = state_of(in_row)
        self._check(RotationAction.PROBATION_START, in_state, incoming)

        out_prior = self._prior(out_row, out_state)
        in_prior = self._prior(in_row, in_state)
        self._to_bench(out_row)
        if in_row is None:
            in_row = self._new_row(incoming, auto_assigned=is_automatic)
        in_row.auto_assigned = in_row.auto_assigned or is_automatic
        if is_automatic:
            in_row.auto_assigned_reason = reason
        self._to_probation(in_row)
        self._snapshot_metrics(in_row, metrics, score)
        await self._flush()
        await self._record(
            RotationAction.REPLACE,
            reason,
            wallet_in=incoming,
            wallet_out=outgoing,
            evidence={
                "outgoing": out_prior,
                "incoming": in_prior,
                "probation_until": format_iso_utc_z(in_row.probation_until),
                "score": score.evidence() if score else None,
                **(evidence or {}),
            },
            is_automatic=is_automatic,
        )
        return in_row

    async def pin(self, address: str, *, pinned_by: Optional[str] = None) -> WalletAllocation:
        row = await self.require_row(address)
        self._check(RotationAction.PIN, state_of(row), address)
        if row.pinned:
            return row
        count = await self.pinned_count()
        if count >= self.max_pinned:
            raise PinLimitExceeded(
                f"Pin limit reached ({count}/{self.max_pinned})",
                workspace_id=self.workspace.id,
                wallet_address=address,
                pinned_count=count,
            )
        row.pinned = True
        row.pinned_at = self.now
        row.pinned_by = pinned_by
        row.updated_at = self.now
        await self._flush()
        await self._record(
            RotationAction.PIN,
            "Pinned; exempt from automatic demotion",
            wallet_in=address,
            evidence={"pinned_by": pinned_by, "pinned_count": count + 1},
            is_automatic=False,
        )
        return row

    async def unpin(self, address: str) -> WalletAllocation:
        row = await self.require_row(address)
        self._check(RotationAction.UNPIN, state_of(row), address)
        if not row.pinned:
            return row
        pinned_at = row.pinned_at
        row.pinned = False
        row.pinned_at = None
        row.pinned_by = None
        row.updated_at = self.now
        await self._flush()
        await self._record(
            RotationAction.UNPIN,
            "Unpinned",
            wallet_out=address,
            evidence={"pinned_at": format_iso_utc_z(pinned_at)},
            is_automatic=False,
        )
        return row

    async def ban(
        self,
        address: str,
        *,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        banned_by: Optional[str] = None,
    ) -> WalletBan:
        """Ban a wallet; it leaves the roster entirely, pinned or not."""
        if expires_at is not None and expires_at <= self.now:
            raise ValueError("Ban expiry must be in the future")
        existing = await self.active_ban(address)
        row = await self.get_row(address)
        state = state_of(row, existing)
        self._check(RotationAction.BAN, state, address)
        prior = self._prior(row, state)
        if row is not None:
            await self.session.delete(row)

        result = await self.session.execute(
            select(WalletBan).where(
                WalletBan.workspace_id == self.workspace.id,
                WalletBan.wallet_address == address,
            )
        )
        ban = result.scalar_one_or_none()
        if ban is None:
            ban = WalletBan(workspace_id=self.workspace.id, wallet_address=address)
            self.session.add(ban)
        ban.reason = reason
        ban.banned_by = banned_by
        ban.banned_at = self.now
        ban.expires_at = expires_at
        await self._flush()
        await self._record(
            RotationAction.BAN,
            reason or "Banned",
            wallet_out=address,
            evidence={**prior, "expires_at": format_iso_utc_z(expires_at), "banned_by": banned_by},
            is_automatic=False,
        )
        return ban

    async def unban(self, address: str) -> None:
        ban = await self.active_ban(address)
        self._check(RotationAction.UNBAN, state_of(None, ban), address)
        await self.session.execute(
            delete(WalletBan).where(
                WalletBan.workspace_id == self.workspace.id,
                WalletBan.wallet_address == address,
            )
        )
        await self._flush()
        await self._record(
            RotationAction.UNBAN,
            "Ban lifted",
            wallet_in=address,
            evidence={"reason": ban.reason, "banned_at": format_iso_utc_z(ban.banned_at)},
            is_automatic=False,
        )

    async def purge_expired_bans(self) -> int:
        result = await self.session.execute(
            delete(WalletBan).where(
                WalletBan.workspace_id == self.workspace.id,
                WalletBan.expires_at.is_not(None),
                WalletBan.expires_at <= self.now,
            )
        )
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Event-driven transitions
    # ------------------------------------------------------------------

    async def record_trade_outcome(
        self,
        address: str,
        *,
        won: bool,
        allow_demotion: bool = True,
    ) -> Optional[RotationAction]:
        """Track consecutive losses from a closed copied position.

        Crossing the grace threshold starts a grace period; crossing the
        emergency threshold demotes immediately. Both are skipped for
        pinned wallets and when auto-demotion is disabled.
        """
        row = await self.require_row(address)
        state = state_of(row)
        if won:
            if row.consecutive_losses:
                row.consecutive_losses = 0
                row.updated_at = self.now
                await self._flush()
            return None

        row.consecutive_losses = int(row.consecutive_losses or 0) + 1
        row.last_loss_at = self.now
        row.updated_at = self.now
        await self._flush()

        if not allow_demotion or row.pinned or self.workspace.auto_demote_enabled is False:
            return None
        if state not in _ACTIVE_TIER:
            return None
        losses = row.consecutive_losses
        if losses >= settings.EMERGENCY_CONSECUTIVE_LOSSES:
            await self.emergency_demote(
                address,
                trigger=DemotionTrigger.CONSECUTIVE_LOSSES,
                reason=f"{losses} consecutive losses",
            )
            return RotationAction.EMERGENCY_DEMOTE
        if losses >= settings.DEMOTION_MAX_CONSECUTIVE_LOSSES and state == RosterState.ACTIVE:
            await self.start_grace_period(address, trigger=DemotionTrigger.CONSECUTIVE_LOSSES)
            return RotationAction.GRACE_PERIOD_START
        return None

    async def handle_circuit_breaker_trip(self, address: str, *, reason: Optional[str] = None) -> bool:
        row = await self.get_row(address)
        if row is None or row.pinned or state_of(row) not in _ACTIVE_TIER:
            return False
        await self.emergency_demote(
            address,
            trigger=DemotionTrigger.CIRCUIT_BREAKER,
            reason=reason or "Circuit breaker tripped",
        )
        return True

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def undo(self, entry_id: str) -> RotationHistory:
        """Reverse one recent transition, recording an ``undo`` entry."""
        entry = await rotation_history.get_entry(self.session, entry_id, self.workspace.id)
        action = RotationAction(entry.action)
        if action not in rotation_history.UNDOABLE_ACTIONS:
            raise UndoNotAllowed(f"{action.value} cannot be undone", workspace_id=self.workspace.id)
        if entry.undo_expires_at is None or entry.undo_expires_at <= self.now:
            raise UndoNotAllowed("Undo window has expired", workspace_id=self.workspace.id, entry_id=entry_id)
        already = await self.session.execute(
            select(RotationHistory.id).where(
                RotationHistory.workspace_id == self.workspace.id,
                RotationHistory.undoes_entry_id == entry.id,
            )
        )
        if already.first() is not None:
            raise UndoNotAllowed("Entry was already undone", workspace_id=self.workspace.id, entry_id=entry_id)

        evidence = entry.evidence or {}
        if action in (RotationAction.ADD, RotationAction.PROBATION_START, RotationAction.PROMOTE):
            await self._restore(entry.wallet_in, evidence)
        elif action in (
            RotationAction.DEMOTE,
            RotationAction.PROBATION_FAIL,
            RotationAction.GRACE_PERIOD_DEMOTE,
            RotationAction.EMERGENCY_DEMOTE,
        ):
            await self._restore(entry.wallet_out, evidence)
        elif action == RotationAction.REPLACE:
            await self._restore(entry.wallet_in, evidence.get("incoming") or {})
            await self._restore(entry.wallet_out, evidence.get("outgoing") or {})
        elif action == RotationAction.PIN:
            row = await self.require_row(entry.wallet_in)
            row.pinned, row.pinned_at, row.pinned_by = False, None, None
        elif action == RotationAction.UNPIN:
            row = await self.require_row(entry.wallet_out)
            if not row.pinned:
                if await self.pinned_count() >= self.max_pinned:
                    raise PinLimitExceeded("Pin limit reached", workspace_id=self.workspace.id)
                row.pinned, row.pinned_at = True, self.now
        await self._flush()
        return await self._record(
            RotationAction.UNDO,
            f"Undid {action.value}",
            wallet_in=entry.wallet_out,
            wallet_out=entry.wallet_in,
            evidence={"undone_action": action.value, "undone_entry_id": entry.id},
            is_automatic=False,
            undoes_entry_id=entry.id,
        )

    async def _restore(self, address: Optional[str], prior: dict[str, Any]) -> None:
        """Put a wallet back into the state captured in ``prior``."""
        if not address:
            return
        row = await self.get_row(address)
        target = prior.get("previous_state")
        if target is None:
            if row is not None:
                await self.session.delete(row)
            return
        await self._ensure_not_banned(address)
        if row is None:
            row = self._new_row(address, auto_assigned=False)
        target_state = RosterState(target)
        if target_state == RosterState.BENCH:
            self._to_bench(row)
        else:
            if row.tier != Tier.ACTIVE.value:
                await self._ensure_capacity(address)
            self._to_active(row)
            if target_state == RosterState.PROBATION:
                self._to_probation(row)
            elif target_state == RosterState.GRACE_PERIOD:
                row.grace_period_started_at = self.now
            row.allocation_pct = float(prior.get("previous_allocation_pct") or 0.0)
        if prior.get("previous_pinned") is not None:
            row.pinned = bool(prior["previous_pinned"])
            row.pinned_at = self.now if row.pinned else None

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    async def check_invariants(self) -> None:
        """Raise if the roster breaks its size, pin or allocation limits."""
        await self._flush()
        rows = await self.rows()
        active = [r for r in rows if r.tier == Tier.ACTIVE.value]
        pinned = [r for r in rows if r.pinned]
        total = round(sum(float(r.allocation_pct or 0.0) for r in active), 4)
        problems: list[str] = []
        if len(active) > self.max_active:
            problems.append(f"{len(active)} active wallets > {self.max_active}")
        if len(pinned) > settings.ROSTER_MAX_PINNED:
            problems.append(f"{len(pinned)} pinned wallets > {settings.ROSTER_MAX_PINNED}")
        if total > 100.0 + 1e-6:
            problems.append(f"active allocation {total:.4f}% > 100%")
        if problems:
            raise RosterInvariantViolation(
                "Roster invariant violated: " + "; ".join(problems),
                workspace_id=self.workspace.id,
                problems=problems,
            )

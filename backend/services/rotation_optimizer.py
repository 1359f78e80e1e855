"""Rotation optimizer: the per-workspace control loop over the wallet roster.

One pass runs lifecycle maintenance (probation, grace periods, demotion
triggers), fills free active slots from the candidate pool, replaces the
weakest unpinned wallet when a candidate clearly beats it, and finally
recalculates active allocations. All roster writes of a pass share one
session and are committed together, or rolled back together when the
pass fails, times out, or is held by tuner governance.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.database import WalletAllocation, Workspace
from models.roster import (
    CompositeScore,
    DemotionTrigger,
    MAX_RELAXATION_ROUNDS,
    OptimizerCriteria,
    RosterState,
    RotationAction,
    Tier,
    WalletMetrics,
)
from services import rotation_history
from services.allocation_recalculator import AllocationRecalculator, metrics_from_row
from services.optimizer_context import WorkspaceOptimizerContext
from services.optimizer_shared_state import criteria_for_workspace, get_workspace, write_snapshot
from services.risk_scorer import NormalizationBounds, score_wallet
from services.roster_errors import PassTimeout, PersistenceConflict
from services.roster_state import RosterStateMachine, state_of
from services.tuner_governance import GovernanceState, read_governance
from services.workspace_locks import ROTATION_LOOP
from utils.logger import optimizer_logger as logger
from utils.retry import RetryConfig, with_retry

DIVERSITY_PENALTY_PER_DUPLICATE = 0.20
MAX_DIVERSITY_PENALTY = 0.60
MIN_SCORE_FRACTION_OF_TOP = 0.50
MIN_EXPLORATION_CONFIDENCE = 0.15
METRICS_UNAVAILABLE = "metrics_unavailable"

_PROMOTING = frozenset({RotationAction.PROBATION_START, RotationAction.REPLACE})
_DEMOTING = frozenset(
    {
        RotationAction.PROBATION_FAIL,
        RotationAction.GRACE_PERIOD_DEMOTE,
        RotationAction.EMERGENCY_DEMOTE,
        RotationAction.DEMOTE,
        RotationAction.REPLACE,
    }
)

_COMMIT_RETRY = RetryConfig(
    max_attempts=2,
    base_delay=0.05,
    max_delay=0.25,
    retryable_exceptions=(PersistenceConflict,),
)


class OptimizerEventType(str, Enum):
    POSITION_CLOSED = "position_closed"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    WORKSPACE_CREATED = "workspace_created"
    MANUAL_ACTION = "manual_action"
    METRICS_UPDATED = "metrics_updated"


@dataclass
class OptimizerEvent:
    type: OptimizerEventType
    wallet_address: Optional[str] = None
    won: Optional[bool] = None
    reason: Optional[str] = None


@dataclass
class OptimizationResult:
    workspace_id: str
    trigger: str
    candidates_found: int = 0
    wallets_promoted: int = 0
    wallets_demoted: int = 0
    replacements: int = 0
    actions: list[dict[str, Any]] = field(default_factory=list)
    thresholds: dict[str, Any] = field(default_factory=dict)
    applied: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None
    governance: Optional[dict[str, Any]] = None
    warnings: list[str] = field(default_factory=list)
    message: str = ""
    ran_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.governance is not None and not self.applied:
            return "shadow"
        if self.candidates_found == 0 and not self.actions:
            return "no_candidates"
        return "ok"

    def as_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "trigger": self.trigger,
            "status": self.status,
            "candidates_found": self.candidates_found,
            "wallets_promoted": self.wallets_promoted,
            "wallets_demoted": self.wallets_demoted,
            "replacements": self.replacements,
            "actions": list(self.actions),
            "thresholds": dict(self.thresholds),
            "applied": self.applied,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "governance": self.governance,
            "warnings": list(self.warnings),
            "message": self.message,
        }


def exploration_score(score: CompositeScore) -> float:
    """Upside-heavy blend that favours promising but less proven wallets."""
    c = score.components
    return (
        0.45 * c.roi_drawdown_ratio
        + 0.20 * c.sortino_normalized
        + 0.15 * c.win_rate
        + 0.10 * c.consistency
        + 0.10 * max(0.0, 1.0 - score.confidence_score)
    )


def select_for_slots(
    ranked: list[tuple[WalletMetrics, CompositeScore]],
    slots: int,
    existing_strategies: Optional[Counter] = None,
) -> list[tuple[WalletMetrics, CompositeScore]]:
    """Pick up to ``slots`` candidates from a ranking (best first).

    Core picks are penalised 20% per wallet already holding the same
    strategy (capped at 60%) and must keep at least half of the top
    ranking score. When two or more slots are free, one is reserved for
    the best exploration candidate among the rest.
    """
    if slots <= 0 or not ranked:
        return []

    exploration_slots = min(1, slots - 1)
    core_slots = slots - exploration_slots
    top = ranked[0][1].ranking_score
    counts: Counter = Counter(existing_strategies or {})

    selected: list[tuple[WalletMetrics, CompositeScore]] = []
    for metrics, score in ranked:
        if len(selected) >= core_slots:
            break
        strategy = metrics.strategy or "unknown"
        penalty = min(MAX_DIVERSITY_PENALTY, counts[strategy] * DIVERSITY_PENALTY_PER_DUPLICATE)
        adjusted = score.ranking_score * (1.0 - penalty)
        if adjusted >= top * MIN_SCORE_FRACTION_OF_TOP or not selected:
            selected.append((metrics, score))
            counts[strategy] += 1

    if exploration_slots:
        chosen = {m.address for m, _ in selected}
        pool = [
            (m, s)
            for m, s in ranked
            if m.address not in chosen and s.confidence_score >= MIN_EXPLORATION_CONFIDENCE
        ]
        pool.sort(key=lambda item: (-exploration_score(item[1]), item[0].address))
        selected.extend(pool[:exploration_slots])

    return selected[:slots]


class RotationOptimizer:
    """Runs rotation passes. Holds no roster state between calls."""

    def __init__(self, recalculator: Optional[AllocationRecalculator] = None):
        self.recalculator = recalculator or AllocationRecalculator()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_pass(
        self,
        ctx: WorkspaceOptimizerContext,
        *,
        trigger: str = "manual",
        dry_run: bool = False,
    ) -> OptimizationResult:
        """Run one pass under the workspace lock.

        Scheduled passes skip a busy workspace with ``PassAlreadyRunning``;
        every other trigger waits for the in-flight pass to finish.
        """
        wait = trigger != "scheduled"
        timeout = settings.OPTIMIZER_LOCK_WAIT_SECONDS if wait else None
        async with ctx.exclusive(ROTATION_LOOP, wait=wait, timeout=timeout):
            return await self._run_locked(ctx, trigger=trigger, dry_run=dry_run)

    async def handle_event(self, ctx: WorkspaceOptimizerContext, event: OptimizerEvent) -> OptimizationResult:
        event_type = OptimizerEventType(event.type)
        if event_type in (
            OptimizerEventType.WORKSPACE_CREATED,
            OptimizerEventType.MANUAL_ACTION,
            OptimizerEventType.METRICS_UPDATED,
        ):
            return await self.run_pass(ctx, trigger="event")

        if not event.wallet_address:
            raise ValueError(f"{event_type.value} event requires wallet_address")
        async with ctx.exclusive(
            ROTATION_LOOP,
            wait=True,
            timeout=settings.OPTIMIZER_LOCK_WAIT_SECONDS,
        ):
            return await self._with_retry_and_timeout(self._apply_event, ctx, event_type, event)

    # ------------------------------------------------------------------
    # Pass plumbing
    # ------------------------------------------------------------------

    async def _run_locked(self, ctx: WorkspaceOptimizerContext, *, trigger: str, dry_run: bool) -> OptimizationResult:
        log = logger.with_context(workspace_id=ctx.workspace_id, trigger=trigger)
        if not dry_run:
            async with ctx.session() as session:
                await write_snapshot(
                    session,
                    ctx.workspace_id,
                    ROTATION_LOOP,
                    {"running": True, "current_activity": f"Running {trigger} rotation pass"},
                )
        try:
            result = await self._with_retry_and_timeout(self._run_once, ctx, trigger, dry_run)
        except Exception as exc:
            log.error("Rotation pass failed", error=str(exc), error_type=type(exc).__name__)
            if not dry_run:
                async with ctx.session() as session:
                    await write_snapshot(
                        session,
                        ctx.workspace_id,
                        ROTATION_LOOP,
                        {
                            "running": False,
                            "last_status": "error",
                            "last_error": str(exc),
                            "current_activity": "Last rotation pass failed",
                        },
                    )
            raise

        if not dry_run:
            async with ctx.session() as session:
                await write_snapshot(
                    session,
                    ctx.workspace_id,
                    ROTATION_LOOP,
                    {
                        "running": False,
                        "last_run_at": result.ran_at,
                        "last_status": result.status,
                        "last_error": None,
                        "current_activity": result.message,
                        "candidates_found_last_run": result.candidates_found,
                        "actions_last_run": len(result.actions),
                        "stats": {
                            "wallets_promoted": result.wallets_promoted,
                            "wallets_demoted": result.wallets_demoted,
                            "replacements": result.replacements,
                            "applied": result.applied,
                        },
                    },
                )
        log.info(
            "Rotation pass finished",
            status=result.status,
            candidates_found=result.candidates_found,
            wallets_promoted=result.wallets_promoted,
            wallets_demoted=result.wallets_demoted,
            replacements=result.replacements,
            applied=result.applied,
        )
        return result

    async def _with_retry_and_timeout(self, func, *args):
        """Retry once on a version conflict; one pass timeout bounds all attempts."""

        @with_retry(_COMMIT_RETRY)
        async def attempt():
            return await func(*args)

        try:
            return await asyncio.wait_for(attempt(), timeout=settings.OPTIMIZER_PASS_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            workspace_id = args[0].workspace_id
            raise PassTimeout(
                f"Rotation pass exceeded {settings.OPTIMIZER_PASS_TIMEOUT_SECONDS:.0f}s and was rolled back",
                workspace_id=workspace_id,
            ) from exc

    async def _commit(self, session: AsyncSession, workspace_id: str) -> None:
        try:
            await session.commit()
        except StaleDataError as exc:
            await session.rollback()
            raise PersistenceConflict("Roster changed concurrently during commit", workspace_id=workspace_id) from exc

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    async def _run_once(self, ctx: WorkspaceOptimizerContext, trigger: str, dry_run: bool) -> OptimizationResult:
        now = ctx.now()
        result = OptimizationResult(workspace_id=ctx.workspace_id, trigger=trigger, ran_at=now)
        async with ctx.session() as session:
            workspace = await get_workspace(session, ctx.workspace_id)
            criteria = criteria_for_workspace(workspace)
            result.thresholds = criteria.as_thresholds()

            if trigger == "scheduled" and not workspace.auto_optimize_enabled:
                return self._skip(result, "auto_optimize_disabled")
            if trigger == "scheduled" and workspace.copy_trading_enabled is False:
                return self._skip(result, "copy_trading_disabled")

            governance = await read_governance(session, ctx.workspace_id)
            machine = RosterStateMachine(session, workspace, now=now, trigger=trigger)
            try:
                await machine.purge_expired_bans()
                metrics = await self._roster_metrics(ctx, machine, result)
                await self._maintain_lifecycle(machine, workspace, criteria, metrics)
                await self._fill_and_replace(ctx, machine, workspace, criteria, metrics, result)
                recalc = await self.recalculator.recalculate(
                    session,
                    workspace,
                    Tier.ACTIVE.value,
                    metrics,
                    auto_apply=True,
                    is_automatic=True,
                    trigger=trigger,
                    now=now,
                )
                await machine.check_invariants()
            except Exception:
                await session.rollback()
                raise

            self._summarize(result, machine, recalc.history_entry_id is not None)
            if dry_run or not governance.applies:
                await session.rollback()
                self._hold(result, governance, dry_run)
            else:
                workspace.last_optimization_at = now
                workspace.requested_run_at = None
                await self._commit(session, ctx.workspace_id)
                result.applied = True

            if not dry_run and not result.applied:
                # Held passes still count as a run for scheduling.
                workspace = await get_workspace(session, ctx.workspace_id)
                workspace.last_optimization_at = now
                workspace.requested_run_at = None
                await self._commit(session, ctx.workspace_id)

        if result.candidates_found == 0 and result.wallets_promoted == 0:
            result.message = "No wallets meet current thresholds"
        elif not result.message:
            result.message = f"{result.wallets_promoted} wallet(s) promoted"
        return result

    def _skip(self, result: OptimizationResult, reason: str) -> OptimizationResult:
        result.skipped = True
        result.skip_reason = reason
        result.message = f"Skipped: {reason.replace('_', ' ')}"
        return result

    def _hold(self, result: OptimizationResult, governance: GovernanceState, dry_run: bool) -> None:
        result.applied = False
        if dry_run:
            result.message = "Preview only; no changes applied"
            return
        result.governance = governance.as_dict()
        result.message = f"Recommendations held ({governance.hold_reason})"
        logger.info(
            "Rotation pass held by governance",
            workspace_id=result.workspace_id,
            hold_reason=governance.hold_reason,
            planned_actions=[a["action"] for a in result.actions],
        )

    def _summarize(self, result: OptimizationResult, machine: RosterStateMachine, adjusted: bool) -> None:
        for entry in machine.recorded:
            action = RotationAction(entry.action)
            if action in _PROMOTING:
                result.wallets_promoted += 1
            if action in _DEMOTING:
                result.wallets_demoted += 1
            if action == RotationAction.REPLACE:
                result.replacements += 1
            result.actions.append(rotation_history.serialize(entry))
        if adjusted:
            result.actions.append({"action": RotationAction.ALLOCATION_ADJUSTMENT.value})

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _roster_metrics(
        self,
        ctx: WorkspaceOptimizerContext,
        machine: RosterStateMachine,
        result: OptimizationResult,
    ) -> dict[str, WalletMetrics]:
        """Fresh metrics for every roster wallet; refreshes row snapshots."""
        metrics: dict[str, WalletMetrics] = {}
        for row in await machine.rows():
            try:
                fetched = await ctx.metrics_feed.get_wallet_metrics(row.wallet_address)
            except httpx.HTTPError as exc:
                logger.warning(
                    "Metrics fetch failed; using stored snapshot",
                    workspace_id=ctx.workspace_id,
                    wallet_address=row.wallet_address,
                    error=str(exc),
                )
                fetched = None
            if fetched is None:
                result.warnings.append(f"{METRICS_UNAVAILABLE}:{row.wallet_address}")
                continue
            metrics[row.wallet_address] = fetched
            machine.update_metrics(row, fetched)
        return metrics

    async def _maintain_lifecycle(
        self,
        machine: RosterStateMachine,
        workspace: Workspace,
        criteria: OptimizerCriteria,
        metrics: dict[str, WalletMetrics],
    ) -> None:
        if workspace.auto_demote_enabled is False:
            return
        now = machine.now
        grace_window = timedelta(hours=settings.GRACE_PERIOD_HOURS)
        for row in await machine.rows(Tier.ACTIVE.value):
            # Pinned rows still graduate and recover; only demotions are suppressed.
            pinned = bool(row.pinned)
            address = row.wallet_address
            state = state_of(row)
            m = metrics.get(address)
            losses = int(row.consecutive_losses or 0)

            if not pinned and m is not None and m.max_drawdown > settings.DEMOTION_MAX_DRAWDOWN:
                await machine.emergency_demote(
                    address,
                    trigger=DemotionTrigger.MAX_DRAWDOWN,
                    reason=f"Drawdown {m.max_drawdown:.1%} beyond {settings.DEMOTION_MAX_DRAWDOWN:.0%}",
                    evidence={"max_drawdown": m.max_drawdown},
                )
                continue
            if not pinned and losses >= settings.EMERGENCY_CONSECUTIVE_LOSSES:
                await machine.emergency_demote(
                    address,
                    trigger=DemotionTrigger.CONSECUTIVE_LOSSES,
                    reason=f"{losses} consecutive losses",
                )
                continue

            if state == RosterState.PROBATION:
                await self._review_probation(machine, row, criteria, m)
            elif state == RosterState.GRACE_PERIOD:
                if self._recovered(row, m):
                    await machine.recover_from_grace(address, evidence=_metric_evidence(m))
                elif not pinned and row.grace_period_started_at + grace_window <= now:
                    await machine.grace_period_demote(address, evidence=_metric_evidence(m))
            elif state == RosterState.ACTIVE and not pinned:
                trigger = self._grace_trigger(losses, m)
                if trigger is not None:
                    await machine.start_grace_period(address, trigger=trigger, evidence=_metric_evidence(m))

    async def _review_probation(
        self,
        machine: RosterStateMachine,
        row: WalletAllocation,
        criteria: OptimizerCriteria,
        m: Optional[WalletMetrics],
    ) -> None:
        failures = criteria.failures(m) if m is not None else []
        if failures:
            if not row.pinned:
                await machine.fail_probation(
                    row.wallet_address,
                    reason="Metrics below criteria during probation: " + "; ".join(failures),
                    evidence={"failures": failures, **_metric_evidence(m)},
                )
        elif row.probation_until is not None and row.probation_until <= machine.now:
            await machine.graduate_probation(row.wallet_address, evidence=_metric_evidence(m))

    @staticmethod
    def _recovered(row: WalletAllocation, m: Optional[WalletMetrics]) -> bool:
        if int(row.consecutive_losses or 0) >= settings.DEMOTION_MAX_CONSECUTIVE_LOSSES:
            return False
        if m is None:
            return False
        return m.roi_30d >= settings.GRACE_MIN_ROI_30D and m.sharpe >= settings.GRACE_MIN_SHARPE

    @staticmethod
    def _grace_trigger(losses: int, m: Optional[WalletMetrics]) -> Optional[DemotionTrigger]:
        if losses >= settings.DEMOTION_MAX_CONSECUTIVE_LOSSES:
            return DemotionTrigger.CONSECUTIVE_LOSSES
        if m is None:
            return None
        if m.roi_30d < settings.GRACE_MIN_ROI_30D:
            return DemotionTrigger.NEGATIVE_ROI
        if m.sharpe < settings.GRACE_MIN_SHARPE:
            return DemotionTrigger.LOW_SHARPE
        return None

    async def _candidate_pool(
        self,
        ctx: WorkspaceOptimizerContext,
        criteria: OptimizerCriteria,
        excluded: set[str],
    ) -> list[WalletMetrics]:
        fetched = await ctx.metrics_feed.list_candidate_wallets(criteria, limit=settings.CANDIDATE_FETCH_LIMIT)
        pool: dict[str, WalletMetrics] = {}
        for m in fetched:
            if not m.address or m.address in excluded or m.address in pool:
                continue
            if criteria.accepts(m):
                pool[m.address] = m
        return list(pool.values())

    async def _fill_and_replace(
        self,
        ctx: WorkspaceOptimizerContext,
        machine: RosterStateMachine,
        workspace: Workspace,
        criteria: OptimizerCriteria,
        metrics: dict[str, WalletMetrics],
        result: OptimizationResult,
    ) -> None:
        rows = {r.wallet_address: r for r in await machine.rows()}
        banned = await machine.banned_addresses()
        in_active_tier = {a for a, r in rows.items() if r.tier == Tier.ACTIVE.value or r.pinned}

        pool = await self._candidate_pool(ctx, criteria, banned | in_active_tier)
        result.candidates_found = len(pool)

        free_slots = max(0, machine.max_active - await machine.active_count())
        used = criteria
        if settings.THRESHOLD_RELAXATION_ENABLED and len(pool) < free_slots:
            for round_number in range(1, MAX_RELAXATION_ROUNDS + 1):
                used = criteria.relaxed(round_number)
                pool = await self._candidate_pool(ctx, used, banned | in_active_tier)
                if len(pool) >= free_slots:
                    break
            result.thresholds = used.as_thresholds()
            result.candidates_found = len(pool)

        if not pool or workspace.auto_select_enabled is False:
            return

        active_rows = [r for r in rows.values() if r.tier == Tier.ACTIVE.value]
        active_metrics = {r.wallet_address: metrics.get(r.wallet_address) or metrics_from_row(r) for r in active_rows}
        bounds = NormalizationBounds.from_pool(list(pool) + list(active_metrics.values()))
        scored = [(m, score_wallet(m, bounds, now=machine.now)) for m in pool]
        for m, s in scored:
            if s.warnings:
                result.warnings.extend(f"{w}:{m.address}" for w in s.warnings)
        ranked = sorted(scored, key=lambda item: (-item[1].ranking_score, item[0].address))

        existing = Counter((r.strategy or "unknown") for r in active_rows)
        picks = select_for_slots(ranked, free_slots, existing)
        entered: set[str] = set()
        for m, s in picks:
            await machine.start_probation(
                m.address,
                metrics=m,
                score=s,
                reason=f"Filled open slot (ranking {s.ranking_score:.3f})",
                evidence={"thresholds": used.as_thresholds()},
            )
            entered.add(m.address)

        if free_slots - len(picks) > 0:
            return
        await self._replace_weakest(machine, workspace, ranked, entered, active_metrics, bounds)

    async def _replace_weakest(
        self,
        machine: RosterStateMachine,
        workspace: Workspace,
        ranked: list[tuple[WalletMetrics, CompositeScore]],
        entered: set[str],
        active_metrics: dict[str, WalletMetrics],
        bounds: NormalizationBounds,
    ) -> None:
        margin = workspace.replacement_margin
        if margin is None:
            margin = settings.REPLACEMENT_SCORE_MARGIN

        incumbents: list[tuple[str, CompositeScore]] = []
        for row in await machine.rows(Tier.ACTIVE.value):
            if row.pinned or row.wallet_address in entered:
                continue
            m = active_metrics.get(row.wallet_address) or metrics_from_row(row)
            incumbents.append((row.wallet_address, score_wallet(m, bounds, now=machine.now)))
        incumbents.sort(key=lambda item: (item[1].ranking_score, item[0]))

        for m, s in ranked:
            if m.address in entered:
                continue
            if not incumbents:
                break
            outgoing, weakest = incumbents[0]
            if s.ranking_score < weakest.ranking_score + margin:
                break
            await machine.replace(
                outgoing,
                m.address,
                reason=(
                    f"Candidate ranking {s.ranking_score:.3f} beats weakest "
                    f"{weakest.ranking_score:.3f} by more than {margin:.2f}"
                ),
                metrics=m,
                score=s,
                evidence={"outgoing_score": weakest.evidence(), "margin": margin},
            )
            incumbents.pop(0)
            entered.add(m.address)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _apply_event(
        self,
        ctx: WorkspaceOptimizerContext,
        event_type: OptimizerEventType,
        event: OptimizerEvent,
    ) -> OptimizationResult:
        now = ctx.now()
        result = OptimizationResult(workspace_id=ctx.workspace_id, trigger="event", ran_at=now)
        async with ctx.session() as session:
            workspace = await get_workspace(session, ctx.workspace_id)
            governance = await read_governance(session, ctx.workspace_id)
            machine = RosterStateMachine(session, workspace, now=now, trigger="event")
            address = event.wallet_address.strip().lower()
            try:
                if event_type == OptimizerEventType.POSITION_CLOSED:
                    await machine.record_trade_outcome(
                        address,
                        won=bool(event.won),
                        allow_demotion=governance.applies,
                    )
                elif governance.applies:
                    await machine.handle_circuit_breaker_trip(address, reason=event.reason)
                recalc = None
                if machine.recorded:
                    metrics = await self._roster_metrics(ctx, machine, result)
                    recalc = await self.recalculator.recalculate(
                        session,
                        workspace,
                        Tier.ACTIVE.value,
                        metrics,
                        auto_apply=True,
                        is_automatic=True,
                        trigger="event",
                        now=now,
                    )
                await machine.check_invariants()
            except Exception:
                await session.rollback()
                raise
            self._summarize(result, machine, recalc is not None and recalc.history_entry_id is not None)
            await self._commit(session, ctx.workspace_id)
            result.applied = governance.applies

        if not governance.applies:
            result.governance = governance.as_dict()
            logger.info(
                "Event demotion held by governance",
                workspace_id=ctx.workspace_id,
                wallet_address=event.wallet_address,
                event=event_type.value,
            )
        result.message = f"Handled {event_type.value}"
        return result


def _metric_evidence(m: Optional[WalletMetrics]) -> dict[str, Any]:
    if m is None:
        return {}
    return {
        "roi_30d": m.roi_30d,
        "sharpe": m.sharpe,
        "win_rate": m.win_rate,
        "max_drawdown": m.max_drawdown,
        "trades_30d": m.trades_30d,
    }


rotation_optimizer = RotationOptimizer()

"""Turn composite scores into clamped, renormalized allocation percentages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.database import RotationHistory, WalletAllocation, Workspace
from models.roster import AllocationStrategy, CompositeScore, RotationAction, Tier, WalletMetrics
from services import rotation_history
from services.risk_scorer import NormalizationBounds, score_wallet
from services.roster_errors import PersistenceConflict
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("allocation_recalculator")

PCT_TOTAL = 100.0
_EPS = 1e-9
_CHANGE_EPS = 1e-4


@dataclass
class AllocationPreview:
    wallet_address: str
    tier: str
    current_pct: float
    recommended_pct: float
    change_pct: float
    composite_score: float
    confidence_score: float
    components: dict[str, float]
    pinned: bool = False
    on_probation: bool = False
    in_grace_period: bool = False
    clamped: Optional[str] = None  # "min" or "max"
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "tier": self.tier,
            "current_pct": self.current_pct,
            "recommended_pct": self.recommended_pct,
            "change_pct": self.change_pct,
            "composite_score": round(self.composite_score, 6),
            "confidence_score": round(self.confidence_score, 6),
            "components": {k: round(v, 6) for k, v in self.components.items()},
            "pinned": self.pinned,
            "on_probation": self.on_probation,
            "in_grace_period": self.in_grace_period,
            "clamped": self.clamped,
            "warnings": list(self.warnings),
        }


@dataclass
class RecalculationResult:
    previews: list[AllocationPreview]
    applied: bool
    wallet_count: int
    passes: int = 0
    history_entry_id: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "previews": [p.as_dict() for p in self.previews],
            "applied": self.applied,
            "wallet_count": self.wallet_count,
            "passes": self.passes,
            "history_entry_id": self.history_entry_id,
        }


@dataclass
class BandResult:
    allocations: dict[str, float]
    passes: int
    clamped: dict[str, str]


def _round_to_total(values: dict[str, float], total: float) -> dict[str, float]:
    rounded = {k: round(v, 4) for k, v in values.items()}
    overflow = round(sum(rounded.values()) - total, 4)
    if overflow > 0 and rounded:
        largest = max(rounded, key=lambda k: (rounded[k], k))
        rounded[largest] = round(rounded[largest] - overflow, 4)
    return rounded


def distribute_with_band(
    weights: dict[str, float],
    min_pct: float,
    max_pct: float,
    max_passes: int,
    total: float = PCT_TOTAL,
) -> BandResult:
    """Split ``total`` proportionally to ``weights`` inside ``[min_pct, max_pct]``.

    Each pass splits the unfixed remainder proportionally, then pins the
    worse side of the violations (over-cap or under-floor, whichever has
    the larger total excess) at its bound. Stops when nothing is clamped,
    when every wallet is fixed, or after ``max_passes``. The result never
    sums above ``total``.
    """
    addresses = sorted(weights)
    n = len(addresses)
    if n == 0:
        return BandResult({}, 0, {})

    if n * min_pct >= total:
        share = total / n
        return BandResult(_round_to_total({a: share for a in addresses}, total), 0, {})
    if n * max_pct <= total:
        return BandResult({a: round(max_pct, 4) for a in addresses}, 0, {a: "max" for a in addresses})

    positive = {a: max(0.0, float(weights[a])) for a in addresses}
    if sum(positive.values()) <= _EPS:
        positive = {a: 1.0 for a in addresses}

    fixed: dict[str, float] = {}
    clamped: dict[str, str] = {}
    alloc: dict[str, float] = {}
    passes = 0
    for passes in range(1, max(1, max_passes) + 1):
        free = [a for a in addresses if a not in fixed]
        if not free:
            break
        remaining = total - sum(fixed.values())
        free_weight = sum(positive[a] for a in free)
        for a in free:
            if free_weight > _EPS:
                alloc[a] = remaining * positive[a] / free_weight
            else:
                alloc[a] = remaining / len(free)
        alloc.update(fixed)

        over = [a for a in free if alloc[a] > max_pct + _EPS]
        under = [a for a in free if alloc[a] < min_pct - _EPS]
        if not over and not under:
            break
        excess = sum(alloc[a] - max_pct for a in over)
        deficit = sum(min_pct - alloc[a] for a in under)
        if excess >= deficit:
            for a in over:
                fixed[a] = max_pct
                clamped[a] = "max"
        else:
            for a in under:
                fixed[a] = min_pct
                clamped[a] = "min"

    alloc.update(fixed)
    final = {a: min(max_pct, max(min_pct, alloc.get(a, 0.0))) for a in addresses}
    current_total = sum(final.values())
    if current_total > total + _EPS:
        scale = total / current_total
        final = {a: v * scale for a, v in final.items()}
    return BandResult(_round_to_total(final, total), passes, clamped)


def strategy_weights(
    strategy: AllocationStrategy,
    scores: dict[str, CompositeScore],
    metrics: dict[str, WalletMetrics],
    volatility_scale: float,
) -> dict[str, float]:
    if strategy == AllocationStrategy.EQUAL:
        return {a: 1.0 for a in scores}
    if strategy == AllocationStrategy.CONFIDENCE_WEIGHTED:
        return {a: 0.5 + s.confidence_score for a, s in scores.items()}
    if strategy == AllocationStrategy.PERFORMANCE:
        weights = {a: max(0.0, metrics[a].roi_30d) for a in scores}
        if sum(weights.values()) <= _EPS:
            return {a: 1.0 for a in scores}
        return weights
    # Risk weighted: erratic wallets are compressed by their volatility.
    return {a: s.score / (1.0 + s.components.volatility * volatility_scale) for a, s in scores.items()}


def metrics_from_row(row: WalletAllocation) -> WalletMetrics:
    """Fallback metrics from the snapshot stored on the allocation row."""
    return WalletMetrics(
        address=row.wallet_address,
        roi_30d=row.roi_30d or 0.0,
        sharpe=row.sharpe or 0.0,
        win_rate=row.win_rate or 0.0,
        max_drawdown=row.max_drawdown or 0.0,
        strategy=row.strategy,
        as_of=row.metrics_as_of,
    )


def is_on_probation(row: WalletAllocation) -> bool:
    """Probation lasts until the optimizer graduates or fails the wallet."""
    return row.tier == Tier.ACTIVE.value and row.probation_until is not None


def is_in_grace_period(row: WalletAllocation) -> bool:
    return row.tier == Tier.ACTIVE.value and row.grace_period_started_at is not None


class AllocationRecalculator:
    def __init__(
        self,
        *,
        min_pct: Optional[float] = None,
        max_pct: Optional[float] = None,
        max_passes: Optional[int] = None,
        volatility_scale: Optional[float] = None,
        grace_allocation_pct: Optional[float] = None,
    ):
        self.min_pct = settings.ALLOCATION_MIN_PCT if min_pct is None else min_pct
        self.max_pct = settings.ALLOCATION_MAX_PCT if max_pct is None else max_pct
        self.max_passes = settings.ALLOCATION_MAX_PASSES if max_passes is None else max_passes
        self.volatility_scale = settings.ALLOCATION_VOLATILITY_SCALE if volatility_scale is None else volatility_scale
        self.grace_allocation_pct = (
            settings.GRACE_ALLOCATION_PCT if grace_allocation_pct is None else grace_allocation_pct
        )

    def compute(
        self,
        rows: Sequence[WalletAllocation],
        metrics: dict[str, WalletMetrics],
        *,
        strategy: AllocationStrategy = AllocationStrategy.RISK_WEIGHTED,
        now: Optional[datetime] = None,
    ) -> tuple[list[AllocationPreview], int]:
        """Pure preview for one tier's rows. Returns previews and passes used."""
        now = now or utcnow()
        if not rows:
            return [], 0

        pool = {row.wallet_address: metrics.get(row.wallet_address) or metrics_from_row(row) for row in rows}
        bounds = NormalizationBounds.from_pool(pool.values())
        scores = {a: score_wallet(m, bounds, now=now) for a, m in pool.items()}
        weights = strategy_weights(strategy, scores, pool, self.volatility_scale)
        band = distribute_with_band(weights, self.min_pct, self.max_pct, self.max_passes)

        previews: list[AllocationPreview] = []
        for row in sorted(rows, key=lambda r: r.wallet_address):
            address = row.wallet_address
            pct = band.allocations.get(address, 0.0)
            probation = is_on_probation(row)
            grace = is_in_grace_period(row)
            # Reduced trial/recovery weight; the freed share stays unallocated.
            if probation:
                scale = row.probation_allocation_pct
                if scale is None:
                    scale = settings.PROBATION_ALLOCATION_PCT
                pct = pct * scale / 100.0
            elif grace:
                pct = pct * self.grace_allocation_pct / 100.0
            pct = round(pct, 4)
            current = round(float(row.allocation_pct or 0.0), 4)
            score = scores[address]
            previews.append(
                AllocationPreview(
                    wallet_address=address,
                    tier=row.tier,
                    current_pct=current,
                    recommended_pct=pct,
                    change_pct=round(pct - current, 4),
                    composite_score=score.score,
                    confidence_score=score.confidence_score,
                    components=score.components.as_dict(),
                    pinned=bool(row.pinned),
                    on_probation=probation,
                    in_grace_period=grace,
                    clamped=band.clamped.get(address),
                    warnings=list(score.warnings),
                )
            )
        return previews, band.passes

    async def recalculate(
        self,
        session: AsyncSession,
        workspace: Workspace,
        tier: str,
        metrics: dict[str, WalletMetrics],
        *,
        auto_apply: bool,
        is_automatic: bool = False,
        trigger: str = "api",
        now: Optional[datetime] = None,
    ) -> RecalculationResult:
        """Preview or apply in the caller's transaction. The caller commits."""
        now = now or utcnow()
        tiers = _expand_tier(tier)
        strategy = _strategy_for(workspace)

        previews: list[AllocationPreview] = []
        passes = 0
        rows_by_address: dict[str, WalletAllocation] = {}
        for tier_value in tiers:
            rows = await load_tier_rows(session, workspace.id, tier_value)
            tier_previews, tier_passes = self.compute(rows, metrics, strategy=strategy, now=now)
            previews.extend(tier_previews)
            passes = max(passes, tier_passes)
            rows_by_address.update({r.wallet_address: r for r in rows})

        if not auto_apply:
            return RecalculationResult(previews=previews, applied=False, wallet_count=len(previews), passes=passes)

        changed = [p for p in previews if abs(p.change_pct) > _CHANGE_EPS]
        for preview in previews:
            row = rows_by_address[preview.wallet_address]
            row.composite_score = preview.composite_score
            row.confidence_score = preview.confidence_score
            if abs(preview.change_pct) > _CHANGE_EPS:
                row.allocation_pct = preview.recommended_pct
                row.updated_at = now
        try:
            await session.flush()
        except StaleDataError as exc:
            raise PersistenceConflict(
                "Allocation rows changed concurrently during apply",
                workspace_id=workspace.id,
            ) from exc

        entry: Optional[RotationHistory] = None
        if changed:
            entry = await rotation_history.record(
                session,
                workspace_id=workspace.id,
                action=RotationAction.ALLOCATION_ADJUSTMENT,
                reason=f"Recalculated {len(previews)} {tier} allocation(s) using {strategy.value}",
                evidence={
                    "strategy": strategy.value,
                    "band": {"min_pct": self.min_pct, "max_pct": self.max_pct},
                    "passes": passes,
                    "wallets": [p.as_dict() for p in previews],
                },
                is_automatic=is_automatic,
                trigger=trigger,
                now=now,
            )
        logger.info(
            "Allocations applied",
            workspace_id=workspace.id,
            tier=tier,
            wallet_count=len(previews),
            changed=len(changed),
        )
        return RecalculationResult(
            previews=previews,
            applied=True,
            wallet_count=len(previews),
            passes=passes,
            history_entry_id=entry.id if entry is not None else None,
        )


def _expand_tier(tier: str) -> list[str]:
    text = str(tier or "").strip().lower()
    if text == "all":
        return [Tier.ACTIVE.value, Tier.BENCH.value]
    try:
        return [Tier(text).value]
    except ValueError as exc:
        raise ValueError(f"Unknown tier: {tier!r}") from exc


def _strategy_for(workspace: Workspace) -> AllocationStrategy:
    try:
        return AllocationStrategy(workspace.allocation_strategy or AllocationStrategy.RISK_WEIGHTED.value)
    except ValueError:
        logger.warning(
            "Unknown allocation strategy, using risk_weighted",
            workspace_id=workspace.id,
            strategy=workspace.allocation_strategy,
        )
        return AllocationStrategy.RISK_WEIGHTED


async def load_tier_rows(session: AsyncSession, workspace_id: str, tier: str) -> list[WalletAllocation]:
    result = await session.execute(
        select(WalletAllocation)
        .where(WalletAllocation.workspace_id == workspace_id, WalletAllocation.tier == tier)
        .order_by(WalletAllocation.wallet_address)
    )
    return list(result.scalars().all())


def active_sum(rows: Iterable[WalletAllocation]) -> float:
    return round(sum(float(r.allocation_pct or 0.0) for r in rows if r.tier == Tier.ACTIVE.value), 4)

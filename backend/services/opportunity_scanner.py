"""Opportunity scanner: scores markets and splits them into core/exploration.

Runs beside the rotation optimizer with its own per-workspace lock. The
core set is the best ``max_markets_cap - exploration_slots`` markets by
total score; the exploration slots go to the remaining markets with the
best discovery profile (new, high upside, not recently watched).
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import MarketSelection, Workspace
from models.roster import Aggressiveness, MarketSelectionScore, MarketSignals, MarketTier
from services.optimizer_context import WorkspaceOptimizerContext
from services.optimizer_shared_state import get_workspace, write_snapshot
from services.roster_errors import PassTimeout
from services.tuner_governance import read_governance
from services.workspace_locks import SCANNER_LOOP
from utils.logger import scanner_logger as logger
from utils.utcnow import as_naive_utc

WEIGHT_BASELINE = 0.30
WEIGHT_OPPORTUNITY = 0.25
WEIGHT_HIT_RATE = 0.20
WEIGHT_FRESHNESS = 0.15
WEIGHT_STICKY = 0.10

WEIGHT_NOVELTY = 0.40
WEIGHT_UPSIDE = 0.30
WEIGHT_ROTATION = 0.30

LOG_SCALE_DECADES = 6.0  # $1M liquidity/volume saturates
WIDE_SPREAD = 0.10
OPPORTUNITY_SATURATION = 5.0
FRESHNESS_HALF_LIFE_HOURS = 6.0
NOVELTY_WINDOW_HOURS = 72.0
STICKY_SATURATION = 10
ROTATION_COOLDOWN = 5


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    if not math.isfinite(value):
        return lo
    return max(lo, min(hi, value))


def _hours_since(value: Optional[datetime], now: datetime) -> Optional[float]:
    if value is None:
        return None
    return max(0.0, (now - as_naive_utc(value)).total_seconds() / 3600.0)


def clamp_exploration_slots(slots: int, max_markets_cap: int) -> int:
    """Exploration must always leave at least one core slot."""
    return max(0, min(int(slots), int(max_markets_cap) - 1))


@dataclass(frozen=True)
class SelectionSettings:
    aggressiveness: Aggressiveness
    exploration_slots: int
    max_markets_cap: int

    @property
    def recommendation(self) -> str:
        return self.aggressiveness.recommendation

    def as_dict(self) -> dict[str, Any]:
        return {
            "aggressiveness": self.aggressiveness.value,
            "exploration_slots": self.exploration_slots,
            "max_markets_cap": self.max_markets_cap,
            "recommendation": self.recommendation,
        }


def selection_settings(workspace: Workspace) -> SelectionSettings:
    raw = workspace.scanner_aggressiveness or settings.SCANNER_AGGRESSIVENESS
    try:
        aggressiveness = Aggressiveness.parse(raw)
    except ValueError:
        logger.warning("Unknown aggressiveness, using balanced", workspace_id=workspace.id, value=raw)
        aggressiveness = Aggressiveness.BALANCED
    cap = workspace.scanner_max_markets_cap or settings.SCANNER_MAX_MARKETS_CAP
    cap = max(1, int(cap))
    slots = workspace.scanner_exploration_slots
    if slots is None:
        slots = aggressiveness.default_exploration_slots
    return SelectionSettings(
        aggressiveness=aggressiveness,
        exploration_slots=clamp_exploration_slots(slots, cap),
        max_markets_cap=cap,
    )


# ---------------------------------------------------------------------------
# Sub-scores (each in [0, 1])
# ---------------------------------------------------------------------------


def baseline_score(signals: MarketSignals) -> float:
    liquidity = _clamp(math.log10(1.0 + signals.liquidity) / LOG_SCALE_DECADES)
    volume = _clamp(math.log10(1.0 + signals.volume_24h) / LOG_SCALE_DECADES)
    spread_penalty = 0.5 * _clamp(signals.spread / WIDE_SPREAD)
    return _clamp((0.5 * liquidity + 0.5 * volume) * (1.0 - spread_penalty))


def opportunity_score(signals: MarketSignals) -> float:
    return _clamp(1.0 - math.exp(-signals.opportunity_count_24h / OPPORTUNITY_SATURATION))


def hit_rate_score(signals: MarketSignals) -> float:
    # Laplace smoothing keeps unseen markets at 0.5.
    hits = min(signals.hit_count, signals.signal_count)
    return _clamp((hits + 1.0) / (signals.signal_count + 2.0))


def freshness_score(signals: MarketSignals, now: datetime) -> float:
    age = _hours_since(signals.last_signal_at, now)
    if age is None:
        return 0.0
    return _clamp(0.5 ** (age / FRESHNESS_HALF_LIFE_HOURS))


def sticky_score(previous: Optional[MarketSelection]) -> float:
    if previous is None:
        return 0.0
    if previous.tier == MarketTier.CORE.value:
        streak = min(STICKY_SATURATION, int(previous.consecutive_selections or 0))
        return _clamp(0.5 + 0.5 * streak / STICKY_SATURATION)
    return 0.25


def novelty_score(signals: MarketSignals, now: datetime) -> float:
    age = _hours_since(signals.created_at, now)
    if age is None or age >= NOVELTY_WINDOW_HOURS:
        return 0.0
    return _clamp(1.0 - age / NOVELTY_WINDOW_HOURS)


def rotation_score(previous: Optional[MarketSelection]) -> float:
    if previous is None:
        return 1.0
    return _clamp(1.0 - int(previous.consecutive_selections or 0) / ROTATION_COOLDOWN)


def score_market(
    signals: MarketSignals,
    previous: Optional[MarketSelection],
    now: datetime,
) -> MarketSelectionScore:
    baseline = baseline_score(signals)
    opportunity = opportunity_score(signals)
    hit_rate = hit_rate_score(signals)
    freshness = freshness_score(signals, now)
    sticky = sticky_score(previous)
    total = (
        WEIGHT_BASELINE * baseline
        + WEIGHT_OPPORTUNITY * opportunity
        + WEIGHT_HIT_RATE * hit_rate
        + WEIGHT_FRESHNESS * freshness
        + WEIGHT_STICKY * sticky
    )
    novelty = novelty_score(signals, now)
    rotation = rotation_score(previous)
    upside = _clamp(signals.upside)
    discovery = WEIGHT_NOVELTY * novelty + WEIGHT_UPSIDE * upside + WEIGHT_ROTATION * rotation
    return MarketSelectionScore(
        market_id=signals.market_id,
        baseline_score=baseline,
        opportunity_score=opportunity,
        hit_rate_score=hit_rate,
        freshness_score=freshness,
        sticky_score=sticky,
        total_score=_clamp(total),
        novelty_score=novelty,
        rotation_score=rotation,
        upside_score=upside,
        exploration_score=_clamp(0.5 * total + 0.5 * discovery),
    )


def partition_markets(
    scores: list[MarketSelectionScore],
    exploration_slots: int,
    max_markets_cap: int,
) -> tuple[list[MarketSelectionScore], list[MarketSelectionScore]]:
    """Split scored markets into ``(core, exploration)`` under the cap."""
    exploration_slots = clamp_exploration_slots(exploration_slots, max_markets_cap)
    core_slots = max_markets_cap - exploration_slots

    by_total = sorted(scores, key=lambda s: (-s.total_score, s.market_id))
    core = by_total[:core_slots]
    core_ids = {s.market_id for s in core}
    rest = [s for s in scores if s.market_id not in core_ids]
    rest.sort(key=lambda s: (-s.exploration_score, s.market_id))
    exploration = rest[:exploration_slots]

    for s in core:
        s.tier = MarketTier.CORE
        s.reasons.append(f"top {core_slots} by total score")
    for s in exploration:
        s.tier = MarketTier.EXPLORATION
        if s.novelty_score:
            s.reasons.append("new market")
        if s.rotation_score == 1.0:
            s.reasons.append("not recently watched")
        s.reasons.append("exploration slot")
    return core, exploration


@dataclass
class ScanResult:
    workspace_id: str
    trigger: str
    selection: SelectionSettings
    markets_scored: int = 0
    core: list[MarketSelectionScore] = field(default_factory=list)
    exploration: list[MarketSelectionScore] = field(default_factory=list)
    applied: bool = False
    governance: Optional[dict[str, Any]] = None
    message: str = ""
    ran_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        if self.governance is not None and not self.applied:
            return "shadow"
        return "ok"

    def as_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "trigger": self.trigger,
            "status": self.status,
            **self.selection.as_dict(),
            "markets_scored": self.markets_scored,
            "core": [s.as_dict() for s in self.core],
            "exploration": [s.as_dict() for s in self.exploration],
            "applied": self.applied,
            "governance": self.governance,
            "message": self.message,
        }


async def _previous_selections(session: AsyncSession, workspace_id: str) -> dict[str, MarketSelection]:
    result = await session.execute(select(MarketSelection).where(MarketSelection.workspace_id == workspace_id))
    return {row.market_id: row for row in result.scalars().all()}


async def _persist_selection(
    session: AsyncSession,
    workspace_id: str,
    previous: dict[str, MarketSelection],
    chosen: list[MarketSelectionScore],
    questions: dict[str, Optional[str]],
    now: datetime,
) -> None:
    chosen_ids = {s.market_id for s in chosen}
    dropped = [market_id for market_id in previous if market_id not in chosen_ids]
    if dropped:
        await session.execute(
            delete(MarketSelection).where(
                MarketSelection.workspace_id == workspace_id,
                MarketSelection.market_id.in_(dropped),
            )
        )
    for s in chosen:
        row = previous.get(s.market_id)
        if row is None:
            row = MarketSelection(
                workspace_id=workspace_id,
                market_id=s.market_id,
                consecutive_selections=0,
                first_selected_at=now,
            )
            session.add(row)
        row.question = questions.get(s.market_id) or row.question
        row.tier = s.tier.value
        row.total_score = s.total_score
        row.exploration_score = s.exploration_score
        row.scores_json = s.as_dict()
        row.consecutive_selections = int(row.consecutive_selections or 0) + 1
        row.selected_at = now


class OpportunityScanner:
    async def run_scan(self, ctx: WorkspaceOptimizerContext, *, trigger: str = "manual") -> ScanResult:
        wait = trigger != "scheduled"
        timeout = settings.OPTIMIZER_LOCK_WAIT_SECONDS if wait else None
        async with ctx.exclusive(SCANNER_LOOP, wait=wait, timeout=timeout):
            try:
                result = await asyncio.wait_for(
                    self._scan(ctx, trigger),
                    timeout=settings.OPTIMIZER_PASS_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError as exc:
                raise PassTimeout("Scanner pass timed out and was rolled back", workspace_id=ctx.workspace_id) from exc

        async with ctx.session() as session:
            await write_snapshot(
                session,
                ctx.workspace_id,
                SCANNER_LOOP,
                {
                    "running": False,
                    "last_run_at": result.ran_at,
                    "last_status": result.status,
                    "last_error": None,
                    "current_activity": result.message,
                    "candidates_found_last_run": result.markets_scored,
                    "actions_last_run": len(result.core) + len(result.exploration),
                    "stats": {
                        "core": len(result.core),
                        "exploration": len(result.exploration),
                        "applied": result.applied,
                    },
                },
            )
        return result

    async def _scan(self, ctx: WorkspaceOptimizerContext, trigger: str) -> ScanResult:
        now = ctx.now()
        async with ctx.session() as session:
            workspace = await get_workspace(session, ctx.workspace_id)
            selection = selection_settings(workspace)
            result = ScanResult(workspace_id=ctx.workspace_id, trigger=trigger, selection=selection, ran_at=now)

            markets = await ctx.metrics_feed.list_markets(limit=settings.SCANNER_MARKET_FETCH_LIMIT)
            previous = await _previous_selections(session, ctx.workspace_id)
            unique: dict[str, MarketSignals] = {}
            for signals in markets:
                if signals.market_id and signals.market_id not in unique:
                    unique[signals.market_id] = signals
            scores = [score_market(s, previous.get(market_id), now) for market_id, s in unique.items()]
            result.markets_scored = len(scores)
            result.core, result.exploration = partition_markets(
                scores,
                selection.exploration_slots,
                selection.max_markets_cap,
            )

            governance = await read_governance(session, ctx.workspace_id)
            if governance.applies:
                questions = {market_id: s.question for market_id, s in unique.items()}
                await _persist_selection(
                    session,
                    ctx.workspace_id,
                    previous,
                    result.core + result.exploration,
                    questions,
                    now,
                )
                result.applied = True
                result.message = f"Selected {len(result.core)} core and {len(result.exploration)} exploration market(s)"
            else:
                result.governance = governance.as_dict()
                result.message = f"Selection held ({governance.hold_reason})"
                logger.info(
                    "Scanner selection held by governance",
                    workspace_id=ctx.workspace_id,
                    hold_reason=governance.hold_reason,
                    core=[s.market_id for s in result.core],
                    exploration=[s.market_id for s in result.exploration],
                )
            workspace.scanner_last_run_at = now
            workspace.scanner_requested_run_at = None
            await session.commit()

        logger.info(
            "Scanner pass finished",
            workspace_id=ctx.workspace_id,
            trigger=trigger,
            markets_scored=result.markets_scored,
            core=len(result.core),
            exploration=len(result.exploration),
            applied=result.applied,
        )
        return result


opportunity_scanner = OpportunityScanner()

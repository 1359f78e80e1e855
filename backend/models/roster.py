"""Domain value types for the wallet roster and market scanner."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    ACTIVE = "active"  # Copy-traded
    BENCH = "bench"  # Monitored only


class RosterState(str, Enum):
    """Lifecycle state derived from an allocation row (pinning is orthogonal)."""

    BENCH = "bench"
    PROBATION = "probation"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    BANNED = "banned"


class CopyBehavior(str, Enum):
    COPY_ALL = "copy_all"
    EVENTS_ONLY = "events_only"
    ARB_THRESHOLD = "arb_threshold"


class RotationAction(str, Enum):
    PROMOTE = "promote"
    DEMOTE = "demote"
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"
    PROBATION_START = "probation_start"
    PROBATION_GRADUATE = "probation_graduate"
    PROBATION_FAIL = "probation_fail"
    GRACE_PERIOD_START = "grace_period_start"
    GRACE_PERIOD_DEMOTE = "grace_period_demote"
    EMERGENCY_DEMOTE = "emergency_demote"
    PIN = "pin"
    UNPIN = "unpin"
    BAN = "ban"
    UNBAN = "unban"
    ALLOCATION_ADJUSTMENT = "allocation_adjustment"
    UNDO = "undo"


class DemotionTrigger(str, Enum):
    CONSECUTIVE_LOSSES = "consecutive_losses"
    MAX_DRAWDOWN = "max_drawdown"
    CIRCUIT_BREAKER = "circuit_breaker"
    NEGATIVE_ROI = "negative_roi"
    LOW_SHARPE = "low_sharpe"
    MANUAL_DEMOTE = "manual_demote"
    PROBATION_FAILED = "probation_failed"
    GRACE_EXPIRED = "grace_expired"


class AllocationStrategy(str, Enum):
    RISK_WEIGHTED = "risk_weighted"
    EQUAL = "equal"
    CONFIDENCE_WEIGHTED = "confidence_weighted"
    PERFORMANCE = "performance"


class GovernanceMode(str, Enum):
    SHADOW = "shadow"  # Compute and log only
    APPLY = "apply"


class MarketTier(str, Enum):
    CORE = "core"
    EXPLORATION = "exploration"


class Aggressiveness(str, Enum):
    STABLE = "stable"
    BALANCED = "balanced"
    DISCOVERY = "discovery"

    @property
    def default_exploration_slots(self) -> int:
        return _AGGRESSIVENESS_SLOTS[self]

    @property
    def recommendation(self) -> str:
        return _AGGRESSIVENESS_RECOMMENDATIONS[self]

    @classmethod
    def from_level(cls, level: float) -> "Aggressiveness":
        if level <= 0.5:
            return cls.STABLE
        if level >= 1.5:
            return cls.DISCOVERY
        return cls.BALANCED

    @classmethod
    def parse(cls, value: Any) -> "Aggressiveness":
        if isinstance(value, cls):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return cls.from_level(float(value))
        text = str(value or "").strip().lower()
        text = {"conservative": "stable", "aggressive": "discovery"}.get(text, text)
        try:
            return cls(text)
        except ValueError as exc:
            raise ValueError(f"Unknown aggressiveness: {value!r}") from exc


_AGGRESSIVENESS_SLOTS = {
    Aggressiveness.STABLE: 2,
    Aggressiveness.BALANCED: 5,
    Aggressiveness.DISCOVERY: 8,
}
_AGGRESSIVENESS_RECOMMENDATIONS = {
    Aggressiveness.STABLE: "Lower discovery, more stable execution.",
    Aggressiveness.BALANCED: "Balanced discovery and stability.",
    Aggressiveness.DISCOVERY: "Higher discovery, more rotation and churn.",
}


def _finite(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


def normalize_ratio(value: Any) -> float:
    """Feeds report ratios either as fractions or as percentages."""
    number = _finite(value)
    if abs(number) > 1.0:
        return number / 100.0
    return number


class WalletMetrics(BaseModel):
    """Trailing performance for one external wallet, as reported by the feed."""

    address: str
    roi_7d: float = 0.0
    roi_30d: float = 0.0
    roi_90d: float = 0.0
    sharpe: float = 0.0
    sortino: float = 0.0
    volatility: float = 0.0
    win_rate: float = 0.0
    max_drawdown: float = 0.0
    trades_30d: int = 0
    consistency: float = 0.0
    strategy: Optional[str] = None
    copy_win_rate: Optional[float] = None  # Realised win rate when copied
    last_trade_at: Optional[datetime] = None
    as_of: Optional[datetime] = None

    @field_validator("address", mode="before")
    @classmethod
    def _normalize_address(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("roi_7d", "roi_30d", "roi_90d", "sharpe", "sortino", mode="before")
    @classmethod
    def _finite_number(cls, value: Any) -> float:
        return _finite(value)

    @field_validator("win_rate", "max_drawdown", "consistency", "volatility", mode="before")
    @classmethod
    def _fractional(cls, value: Any) -> float:
        return abs(normalize_ratio(value))

    @field_validator("copy_win_rate", mode="before")
    @classmethod
    def _optional_fraction(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        return abs(normalize_ratio(value))

    @field_validator("trades_30d", mode="before")
    @classmethod
    def _non_negative_count(cls, value: Any) -> int:
        return max(0, int(_finite(value)))


# Relaxation rounds applied when the candidate pool is thinner than the free
# slots: (roi step, roi floor, sharpe step, win-rate step, win-rate floor,
# trades divisor, trades floor, drawdown step, drawdown ceiling)
_RELAXATION_ROUNDS = {
    1: (0.02, -0.10, 0.15, 0.05, 0.45, 2, 5, 0.10, 0.60),
    2: (0.05, -0.15, 0.30, 0.10, 0.42, 3, 3, 0.20, 0.70),
    3: (0.10, -0.25, 0.50, 0.15, 0.40, None, 1, 0.30, 0.80),
}
MAX_RELAXATION_ROUNDS = len(_RELAXATION_ROUNDS)


class OptimizerCriteria(BaseModel):
    """Thresholds a candidate must clear to be eligible for promotion."""

    min_roi_30d: float = 0.05
    min_sharpe: float = 1.0
    min_win_rate: float = 0.50
    min_trades_30d: int = Field(default=10, ge=0)
    max_drawdown: Optional[float] = 0.20
    relaxation_round: int = 0

    def failures(self, metrics: WalletMetrics) -> list[str]:
        reasons: list[str] = []
        if metrics.roi_30d < self.min_roi_30d:
            reasons.append(f"roi_30d {metrics.roi_30d:.4f} < {self.min_roi_30d:.4f}")
        if metrics.sharpe < self.min_sharpe:
            reasons.append(f"sharpe {metrics.sharpe:.2f} < {self.min_sharpe:.2f}")
        if metrics.win_rate < self.min_win_rate:
            reasons.append(f"win_rate {metrics.win_rate:.3f} < {self.min_win_rate:.3f}")
        if metrics.trades_30d < self.min_trades_30d:
            reasons.append(f"trades_30d {metrics.trades_30d} < {self.min_trades_30d}")
        if self.max_drawdown is not None and metrics.max_drawdown > self.max_drawdown:
            reasons.append(f"max_drawdown {metrics.max_drawdown:.3f} > {self.max_drawdown:.3f}")
        return reasons

    def accepts(self, metrics: WalletMetrics) -> bool:
        return not self.failures(metrics)

    def relaxed(self, round_number: int) -> "OptimizerCriteria":
        """Return a loosened copy for relaxation round 1..3."""
        if round_number not in _RELAXATION_ROUNDS:
            raise ValueError(f"Relaxation round must be 1..{MAX_RELAXATION_ROUNDS}")
        (roi_step, roi_floor, sharpe_step, wr_step, wr_floor, divisor, trades_floor, dd_step, dd_ceiling) = (
            _RELAXATION_ROUNDS[round_number]
        )
        trades = trades_floor if divisor is None else max(trades_floor, self.min_trades_30d // divisor)
        max_drawdown = None
        if self.max_drawdown is not None:
            max_drawdown = min(dd_ceiling, self.max_drawdown + dd_step)
        return OptimizerCriteria(
            min_roi_30d=max(roi_floor, self.min_roi_30d - roi_step),
            min_sharpe=max(0.0, self.min_sharpe - sharpe_step),
            min_win_rate=max(wr_floor, self.min_win_rate - wr_step),
            min_trades_30d=trades,
            max_drawdown=max_drawdown,
            relaxation_round=round_number,
        )

    def as_thresholds(self) -> dict[str, Any]:
        return {
            "min_roi_30d": self.min_roi_30d,
            "min_sharpe": self.min_sharpe,
            "min_win_rate": self.min_win_rate,
            "min_trades_30d": self.min_trades_30d,
            "max_drawdown": self.max_drawdown,
            "relaxation_round": self.relaxation_round,
        }


@dataclass(frozen=True)
class RiskComponents:
    sortino_normalized: float
    consistency: float
    roi_drawdown_ratio: float
    win_rate: float
    volatility: float

    def as_dict(self) -> dict[str, float]:
        return {
            "sortino_normalized": self.sortino_normalized,
            "consistency": self.consistency,
            "roi_drawdown_ratio": self.roi_drawdown_ratio,
            "win_rate": self.win_rate,
            "volatility": self.volatility,
        }


@dataclass(frozen=True)
class CompositeScore:
    address: str
    score: float
    components: RiskComponents
    confidence_score: float
    ranking_score: float
    warnings: tuple[str, ...] = ()

    def evidence(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "score": round(self.score, 6),
            "ranking_score": round(self.ranking_score, 6),
            "confidence_score": round(self.confidence_score, 6),
            "components": {k: round(v, 6) for k, v in self.components.as_dict().items()},
            "warnings": list(self.warnings),
        }


class MarketSignals(BaseModel):
    """Raw scoring factors for one market."""

    market_id: str
    question: Optional[str] = None
    liquidity: float = 0.0
    volume_24h: float = 0.0
    spread: float = 0.0
    opportunity_count_24h: int = 0
    hit_count: int = 0
    signal_count: int = 0
    upside: float = 0.0
    last_signal_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("liquidity", "volume_24h", "spread", "upside", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> float:
        return max(0.0, _finite(value))

    @field_validator("opportunity_count_24h", "hit_count", "signal_count", mode="before")
    @classmethod
    def _count(cls, value: Any) -> int:
        return max(0, int(_finite(value)))


@dataclass
class MarketSelectionScore:
    market_id: str
    baseline_score: float
    opportunity_score: float
    hit_rate_score: float
    freshness_score: float
    sticky_score: float
    total_score: float
    novelty_score: Optional[float] = None
    rotation_score: Optional[float] = None
    upside_score: Optional[float] = None
    exploration_score: float = 0.0
    tier: Optional[MarketTier] = None
    reasons: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "tier": self.tier.value if self.tier else None,
            "total_score": round(self.total_score, 6),
            "exploration_score": round(self.exploration_score, 6),
            "baseline_score": round(self.baseline_score, 6),
            "opportunity_score": round(self.opportunity_score, 6),
            "hit_rate_score": round(self.hit_rate_score, 6),
            "freshness_score": round(self.freshness_score, 6),
            "sticky_score": round(self.sticky_score, 6),
            "novelty_score": None if self.novelty_score is None else round(self.novelty_score, 6),
            "rotation_score": None if self.rotation_score is None else round(self.rotation_score, 6),
            "upside_score": None if self.upside_score is None else round(self.upside_score, 6),
            "reasons": list(self.reasons),
        }

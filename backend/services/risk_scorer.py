"""Composite risk scoring for copy-trading wallets.

Everything here is pure: a ``WalletMetrics`` snapshot plus pool-relative
normalization bounds go in, ``RiskComponents`` and a ``CompositeScore``
come out. Degenerate inputs (zero-variance pools, single candidates,
missing or non-finite values) are clamped into range, never raised.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from config import settings
from models.roster import CompositeScore, RiskComponents, WalletMetrics
from services.roster_errors import STALE_METRICS
from utils.utcnow import as_naive_utc, utcnow

WEIGHT_SORTINO = 0.30
WEIGHT_CONSISTENCY = 0.25
WEIGHT_ROI_DRAWDOWN = 0.25
WEIGHT_WIN_RATE = 0.20

# Absolute Sortino scale used when the pool gives no usable spread.
SORTINO_REFERENCE_MAX = 3.0
DRAWDOWN_FLOOR = 0.01
ROI_DRAWDOWN_SCALE = 2.0

STALENESS_DECAY_DAYS = 60.0
STALENESS_FLOOR = 0.5
COPY_DIVERGENCE_THRESHOLD = 0.15
COPY_DIVERGENCE_PENALTY = 0.90
STALE_CONFIDENCE_MULTIPLIER = 0.5

_EPS = 1e-9


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    if not math.isfinite(value):
        return lo
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class NormalizationBounds:
    """Sortino range used to rescale a wallet against its candidate pool."""

    sortino_min: float = 0.0
    sortino_max: float = SORTINO_REFERENCE_MAX

    @classmethod
    def from_pool(cls, pool: Iterable[WalletMetrics]) -> "NormalizationBounds":
        values = [m.sortino for m in pool if math.isfinite(m.sortino)]
        if not values:
            return cls()
        # The reference range is widened by outliers, never narrowed, so one
        # wallet's score does not swing when a weak peer joins the pool.
        return cls(
            sortino_min=min(0.0, min(values)),
            sortino_max=max(SORTINO_REFERENCE_MAX, max(values)),
        )

    def normalize_sortino(self, sortino: float) -> float:
        span = self.sortino_max - self.sortino_min
        if span < _EPS:
            return _clamp(sortino / SORTINO_REFERENCE_MAX)
        return _clamp((sortino - self.sortino_min) / span)


def compute_components(metrics: WalletMetrics, bounds: Optional[NormalizationBounds] = None) -> RiskComponents:
    bounds = bounds or NormalizationBounds()
    drawdown = max(abs(metrics.max_drawdown), DRAWDOWN_FLOOR)
    return RiskComponents(
        sortino_normalized=bounds.normalize_sortino(metrics.sortino),
        consistency=_clamp(metrics.consistency),
        roi_drawdown_ratio=_clamp((metrics.roi_30d / drawdown) / ROI_DRAWDOWN_SCALE),
        win_rate=_clamp(metrics.win_rate),
        volatility=_clamp(metrics.volatility),
    )


def composite_from_components(components: RiskComponents) -> float:
    """Weighted sum; ``volatility`` is informational and not included."""
    score = (
        WEIGHT_SORTINO * components.sortino_normalized
        + WEIGHT_CONSISTENCY * components.consistency
        + WEIGHT_ROI_DRAWDOWN * components.roi_drawdown_ratio
        + WEIGHT_WIN_RATE * components.win_rate
    )
    return _clamp(score)


def is_stale(metrics: WalletMetrics, now: Optional[datetime] = None, stale_after_hours: Optional[float] = None) -> bool:
    if metrics.as_of is None:
        return False
    now = now or utcnow()
    hours = settings.METRICS_STALE_HOURS if stale_after_hours is None else stale_after_hours
    age_hours = (now - as_naive_utc(metrics.as_of)).total_seconds() / 3600.0
    return age_hours > hours


def confidence_for(metrics: WalletMetrics, min_sample_trades: Optional[int] = None) -> float:
    """Sample-size factor times a metric-quality base; in [0, 1]."""
    sample = settings.MIN_SAMPLE_TRADES if min_sample_trades is None else min_sample_trades
    sample_factor = 1.0 if sample <= 0 else _clamp(metrics.trades_30d / float(sample))

    quality = 0.6
    if metrics.sharpe > 1.5:
        quality += 0.2
    elif metrics.sharpe > 1.0:
        quality += 0.1
    if metrics.win_rate > 0.6:
        quality += 0.2
    elif metrics.win_rate > 0.5:
        quality += 0.1
    return _clamp(sample_factor * quality)


def staleness_multiplier(metrics: WalletMetrics, now: Optional[datetime] = None) -> float:
    """Linear decay over 60 days since the wallet last traded, floored at 0.5."""
    if metrics.last_trade_at is None:
        return 1.0
    now = now or utcnow()
    days = max(0.0, (now - as_naive_utc(metrics.last_trade_at)).total_seconds() / 86400.0)
    return max(STALENESS_FLOOR, 1.0 - days / STALENESS_DECAY_DAYS)


def copy_divergence_multiplier(metrics: WalletMetrics) -> float:
    if metrics.copy_win_rate is None:
        return 1.0
    if metrics.win_rate - metrics.copy_win_rate > COPY_DIVERGENCE_THRESHOLD:
        return COPY_DIVERGENCE_PENALTY
    return 1.0


def score_wallet(
    metrics: WalletMetrics,
    bounds: Optional[NormalizationBounds] = None,
    *,
    now: Optional[datetime] = None,
    min_sample_trades: Optional[int] = None,
    stale_after_hours: Optional[float] = None,
) -> CompositeScore:
    """Score one wallet. Deterministic for a fixed ``now``."""
    now = now or utcnow()
    components = compute_components(metrics, bounds)
    score = composite_from_components(components)
    confidence = confidence_for(metrics, min_sample_trades)

    warnings: list[str] = []
    if is_stale(metrics, now, stale_after_hours):
        warnings.append(STALE_METRICS)
        confidence *= STALE_CONFIDENCE_MULTIPLIER

    # Low-confidence wallets are ranked lower, not discarded.
    ranking = score * (0.5 + 0.5 * confidence)
    ranking *= staleness_multiplier(metrics, now) * copy_divergence_multiplier(metrics)

    return CompositeScore(
        address=metrics.address,
        score=score,
        components=components,
        confidence_score=_clamp(confidence),
        ranking_score=_clamp(ranking),
        warnings=tuple(warnings),
    )


def score_pool(
    pool: Iterable[WalletMetrics],
    *,
    now: Optional[datetime] = None,
    bounds: Optional[NormalizationBounds] = None,
) -> dict[str, CompositeScore]:
    """Score a pool against bounds derived from the pool itself."""
    members = list(pool)
    bounds = bounds or NormalizationBounds.from_pool(members)
    now = now or utcnow()
    return {m.address: score_wallet(m, bounds, now=now) for m in members}

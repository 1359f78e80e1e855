"""Shared fixtures for wallet roster tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from datetime import datetime

from models.roster import MarketSignals, WalletMetrics


FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def make_metrics(now):
    """Factory for a healthy wallet that clears the default criteria."""

    def _make(address: str, **overrides) -> WalletMetrics:
        payload = {
            "address": address,
            "roi_7d": 0.05,
            "roi_30d": 0.20,
            "roi_90d": 0.45,
            "sharpe": 2.0,
            "sortino": 2.0,
            "volatility": 0.20,
            "win_rate": 0.65,
            "max_drawdown": 0.10,
            "trades_30d": 40,
            "consistency": 0.70,
            "strategy": "momentum",
            "last_trade_at": now,
            "as_of": now,
        }
        payload.update(overrides)
        return WalletMetrics(**payload)

    return _make


@pytest.fixture
def make_market(now):
    def _make(market_id: str, **overrides) -> MarketSignals:
        payload = {
            "market_id": market_id,
            "question": f"Market {market_id}?",
            "liquidity": 50_000.0,
            "volume_24h": 20_000.0,
            "spread": 0.02,
            "opportunity_count_24h": 3,
            "hit_count": 4,
            "signal_count": 8,
            "upside": 0.2,
            "last_signal_at": now,
            "created_at": datetime(2025, 1, 1),
        }
        payload.update(overrides)
        return MarketSignals(**payload)

    return _make

"""Analytics feed contract consumed by the roster optimizer and scanner.

Per-wallet performance metrics and per-market activity signals come from
an external analytics service; the optimizer never computes P&L itself.
"""

from __future__ import annotations

from typing import Optional, Protocol

from models.roster import MarketSignals, OptimizerCriteria, WalletMetrics


class MetricsFeed(Protocol):
    """Read-only metrics provider."""

    async def get_wallet_metrics(self, address: str) -> Optional[WalletMetrics]:
        """Trailing metrics for one wallet, or None when the feed has none."""

    async def list_candidate_wallets(self, criteria: OptimizerCriteria, limit: int = 200) -> list[WalletMetrics]:
        """Wallets the feed believes clear ``criteria`` (re-checked locally)."""

    async def get_market_signals(self, market_id: str) -> Optional[MarketSignals]:
        """Raw scoring factors for one market."""

    async def list_markets(self, limit: int = 1000) -> list[MarketSignals]:
        """Signals for every market eligible for monitoring."""

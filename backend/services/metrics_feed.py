"""Concrete analytics-feed adapters behind the ``MetricsFeed`` interface."""

from __future__ import annotations

from typing import Any, Iterable, Optional

import httpx
from pydantic import ValidationError

from config import settings
from models.roster import MarketSignals, OptimizerCriteria, WalletMetrics
from utils.logger import get_logger
from utils.retry import RetryableClient, RetryConfig

logger = get_logger("metrics_feed")


def _items(payload: Any, key: str) -> list[dict]:
    if isinstance(payload, dict):
        payload = payload.get(key) or payload.get("data") or []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


class HttpMetricsFeed:
    """HTTP client for the analytics service (retries 429/5xx/timeouts)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.base_url = (base_url or settings.METRICS_FEED_URL).rstrip("/")
        self._owns_client = client is None
        http_client = client or httpx.AsyncClient(timeout=settings.METRICS_FEED_TIMEOUT_SECONDS)
        self._client = RetryableClient(
            http_client,
            retry_config or RetryConfig(max_attempts=settings.METRICS_FEED_MAX_ATTEMPTS),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self._client.get_json(f"{self.base_url}{path}", params=params)

    async def get_wallet_metrics(self, address: str) -> Optional[WalletMetrics]:
        try:
            payload = await self._get(f"/wallets/{address}/metrics")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        if not isinstance(payload, dict):
            return None
        payload.setdefault("address", address)
        try:
            return WalletMetrics.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Discarding malformed wallet metrics", wallet_address=address, error=str(exc))
            return None

    async def list_candidate_wallets(self, criteria: OptimizerCriteria, limit: int = 200) -> list[WalletMetrics]:
        params = {k: v for k, v in criteria.as_thresholds().items() if v is not None}
        params["limit"] = limit
        payload = await self._get("/wallets/candidates", params=params)
        return self._parse_many(_items(payload, "wallets"), WalletMetrics)

    async def get_market_signals(self, market_id: str) -> Optional[MarketSignals]:
        try:
            payload = await self._get(f"/markets/{market_id}/signals")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        if not isinstance(payload, dict):
            return None
        payload.setdefault("market_id", market_id)
        try:
            return MarketSignals.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Discarding malformed market signals", market_id=market_id, error=str(exc))
            return None

    async def list_markets(self, limit: int = 1000) -> list[MarketSignals]:
        payload = await self._get("/markets/signals", params={"limit": limit})
        return self._parse_many(_items(payload, "markets"), MarketSignals)

    @staticmethod
    def _parse_many(items: Iterable[dict], model) -> list:
        parsed = []
        skipped = 0
        for item in items:
            try:
                parsed.append(model.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning("Skipped malformed feed rows", model=model.__name__, skipped=skipped)
        return parsed


class StaticMetricsFeed:
    """In-memory feed for tests, backfills and offline previews."""

    def __init__(
        self,
        wallets: Optional[Iterable[WalletMetrics]] = None,
        markets: Optional[Iterable[MarketSignals]] = None,
    ):
        self.wallets: dict[str, WalletMetrics] = {w.address: w for w in (wallets or [])}
        self.markets: dict[str, MarketSignals] = {m.market_id: m for m in (markets or [])}

    def upsert_wallet(self, metrics: WalletMetrics) -> None:
        self.wallets[metrics.address] = metrics

    async def get_wallet_metrics(self, address: str) -> Optional[WalletMetrics]:
        return self.wallets.get(address)

    async def list_candidate_wallets(self, criteria: OptimizerCriteria, limit: int = 200) -> list[WalletMetrics]:
        matching = [w for w in self.wallets.values() if criteria.accepts(w)]
        return matching[:limit]

    async def get_market_signals(self, market_id: str) -> Optional[MarketSignals]:
        return self.markets.get(market_id)

    async def list_markets(self, limit: int = 1000) -> list[MarketSignals]:
        return list(self.markets.values())[:limit]


def build_default_feed() -> HttpMetricsFeed:
    return HttpMetricsFeed()

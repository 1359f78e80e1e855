import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.roster import OptimizerCriteria
from services.metrics_feed import HttpMetricsFeed
from utils.retry import RetryConfig

ADDRESS = "0x" + "ab" * 20
_FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)


def _feed(handler) -> HttpMetricsFeed:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMetricsFeed("http://feed.test/", client=client, retry_config=_FAST_RETRY)


@pytest.mark.asyncio
async def test_wallet_metrics_retry_transient_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(503, json={"detail": "warming up"})
        return httpx.Response(
            200,
            json={"roi_30d": 12.5, "sharpe": "1.8", "win_rate": 62, "max_drawdown": 0.08, "trades_30d": 31},
        )

    feed = _feed(handler)
    try:
        metrics = await feed.get_wallet_metrics(ADDRESS)
    finally:
        await feed._client.aclose()

    assert len(calls) == 2
    assert calls[0] == f"/wallets/{ADDRESS}/metrics"
    assert metrics.address == ADDRESS
    assert metrics.sharpe == pytest.approx(1.8)
    assert metrics.win_rate == pytest.approx(0.62)
    assert metrics.trades_30d == 31


@pytest.mark.asyncio
async def test_unknown_wallet_returns_none():
    feed = _feed(lambda request: httpx.Response(404, json={"detail": "unknown wallet"}))
    try:
        assert await feed.get_wallet_metrics(ADDRESS) is None
    finally:
        await feed._client.aclose()


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"detail": "bad request"})

    feed = _feed(handler)
    try:
        with pytest.raises(httpx.HTTPStatusError):
            await feed.list_markets()
    finally:
        await feed._client.aclose()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_candidate_listing_sends_thresholds_and_skips_bad_rows():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        return httpx.Response(
            200,
            json={
                "wallets": [
                    {"address": ADDRESS, "roi_30d": 0.2, "sharpe": 2.0, "win_rate": 0.7, "trades_30d": 50},
                    {"address": "0x" + "cd" * 20, "last_trade_at": "not-a-date"},
                    "not-a-row",
                ]
            },
        )

    feed = _feed(handler)
    try:
        wallets = await feed.list_candidate_wallets(OptimizerCriteria(max_drawdown=None), limit=25)
    finally:
        await feed._client.aclose()

    assert [w.address for w in wallets] == [ADDRESS]
    assert seen["limit"] == "25"
    assert seen["min_sharpe"] == "1.0"
    assert "max_drawdown" not in seen


@pytest.mark.asyncio
async def test_market_signals_accept_bare_lists():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"market_id": "m1", "liquidity": 1000, "spread": -1}])

    feed = _feed(handler)
    try:
        markets = await feed.list_markets(limit=10)
    finally:
        await feed._client.aclose()

    assert len(markets) == 1
    assert markets[0].spread == 0.0

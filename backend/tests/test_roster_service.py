import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base
from services import roster_service
from services.metrics_feed import StaticMetricsFeed
from services.optimizer_context import WorkspaceOptimizerContext
from services.roster_errors import (
    InvalidTierTransition,
    PinLimitExceeded,
    RosterFull,
    RotationEntryNotFound,
    UndoNotAllowed,
    WalletBanned,
    WorkspaceNotFound,
)
from services.workspace_locks import WorkspaceLockRegistry


def wallet(n: int) -> str:
    return "0x" + format(n, "040x")


async def _build_context(tmp_path: Path, feed, now, workspace_id="ws-service"):
    db_path = tmp_path / "roster_service.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    ctx = WorkspaceOptimizerContext(
        workspace_id=workspace_id,
        session_factory=session_factory,
        metrics_feed=feed,
        locks=WorkspaceLockRegistry(),
        clock=lambda: now,
    )
    return engine, ctx


@pytest.mark.asyncio
async def test_fourth_pin_is_rejected_and_roster_is_unchanged(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        await roster_service.create_workspace(ctx)
        for i in range(1, 5):
            await roster_service.add_wallet(ctx, {"address": wallet(i), "label": f"trader {i}"})
        for i in range(1, 4):
            pinned = await roster_service.pin_wallet(ctx, wallet(i), pinned_by="ops")
            assert pinned["pinned"] is True

        before = await roster_service.list_roster(ctx)
        history_before = await roster_service.list_rotation_history(ctx)

        with pytest.raises(PinLimitExceeded):
            await roster_service.pin_wallet(ctx, wallet(4))

        assert await roster_service.list_roster(ctx) == before
        assert await roster_service.list_rotation_history(ctx) == history_before
        assert sum(1 for w in before["bench"] if w["pinned"]) == 3
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_manual_promotions_reallocate_and_respect_roster_size(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(i)) for i in range(1, 7)])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await roster_service.create_workspace(ctx)
        for i in range(1, 6):
            promoted = await roster_service.promote_wallet(ctx, wallet(i))
            assert promoted["state"] == "active"

        with pytest.raises(RosterFull):
            await roster_service.promote_wallet(ctx, wallet(6))

        roster = await roster_service.list_roster(ctx)
        assert len(roster["active"]) == 5
        assert roster["max_active"] == 5
        total = sum(w["allocation_pct"] for w in roster["active"])
        assert total == pytest.approx(100.0, abs=1e-3)

        demoted = await roster_service.demote_wallet(ctx, wallet(1))
        assert demoted["tier"] == "bench"
        assert demoted["allocation_pct"] == 0.0
        roster = await roster_service.list_roster(ctx)
        assert sum(w["allocation_pct"] for w in roster["active"]) == pytest.approx(100.0, abs=1e-3)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_invalid_inputs_are_rejected(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        with pytest.raises(WorkspaceNotFound):
            await roster_service.get_optimizer_status(ctx)

        await roster_service.create_workspace(ctx)
        with pytest.raises(ValueError):
            await roster_service.pin_wallet(ctx, "not-an-address")
        with pytest.raises(ValueError):
            await roster_service.add_wallet(ctx, {"address": "0x123"})
        await roster_service.add_wallet(ctx, {"address": wallet(1)})
        with pytest.raises(InvalidTierTransition):
            await roster_service.demote_wallet(ctx, wallet(1))
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_ban_removes_wallet_and_blocks_re_adding(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(1)), make_metrics(wallet(2))])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await roster_service.create_workspace(ctx)
        await roster_service.promote_wallet(ctx, wallet(1))
        await roster_service.promote_wallet(ctx, wallet(2))

        ban = await roster_service.ban_wallet(
            ctx,
            wallet(1),
            reason="copy slippage",
            expires_at=now + timedelta(days=7),
            banned_by="ops",
        )
        assert ban["wallet_address"] == wallet(1)

        roster = await roster_service.list_roster(ctx)
        assert [w["wallet_address"] for w in roster["active"]] == [wallet(2)]
        assert roster["banned"] == [wallet(1)]
        assert roster["active"][0]["allocation_pct"] == pytest.approx(60.0)

        with pytest.raises(WalletBanned):
            await roster_service.add_wallet(ctx, {"address": wallet(1)})

        await roster_service.unban_wallet(ctx, wallet(1))
        added = await roster_service.add_wallet(ctx, {"address": wallet(1)})
        assert added["state"] == "bench"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_history_listing_acknowledge_and_undo(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(1))])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await roster_service.create_workspace(ctx)
        result = await roster_service.trigger_optimization(ctx)
        assert result["wallets_promoted"] == 1

        history = await roster_service.list_rotation_history(ctx)
        actions = {e["action"] for e in history}
        assert {"probation_start", "allocation_adjustment"} <= actions
        assert len(await roster_service.list_rotation_history(ctx, limit=1)) == 1
        assert len(await roster_service.list_rotation_history(ctx, limit=1000)) == len(history)

        start = next(e for e in history if e["action"] == "probation_start")
        assert start["undo_expires_at"] is not None
        acked = await roster_service.acknowledge_rotation(ctx, start["id"], acknowledged_by="ops")
        assert acked["ok"] is True
        assert acked["entry"]["acknowledged"] is True
        again = await roster_service.acknowledge_rotation(ctx, start["id"], acknowledged_by="someone else")
        assert again["entry"]["acknowledged_by"] == "ops"

        unacked = await roster_service.list_rotation_history(ctx, unacknowledged_only=True)
        assert start["id"] not in {e["id"] for e in unacked}

        undo = await roster_service.undo_rotation(ctx, start["id"])
        assert undo["action"] == "undo"
        assert undo["undoes_entry_id"] == start["id"]
        roster = await roster_service.list_roster(ctx)
        assert roster["active"] == [] and roster["bench"] == []

        with pytest.raises(UndoNotAllowed):
            await roster_service.undo_rotation(ctx, start["id"])
        with pytest.raises(RotationEntryNotFound):
            await roster_service.acknowledge_rotation(ctx, "missing")
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_optimizer_status_and_settings(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        await roster_service.create_workspace(ctx)
        status = await roster_service.get_optimizer_status(ctx)
        assert status["enabled"] is True
        assert status["last_run_at"] is None
        assert status["next_run_at"] is None
        assert status["running"] is False
        assert status["governance"]["mode"] == "apply"
        assert status["criteria"]["min_sharpe"] == pytest.approx(1.0)

        updated = await roster_service.update_optimizer_settings(
            ctx,
            {"min_win_rate": 55, "optimization_interval_hours": 6, "allocation_strategy": "equal"},
        )
        assert updated["criteria"]["min_win_rate"] == pytest.approx(0.55)

        await roster_service.trigger_optimization(ctx)
        status = await roster_service.get_optimizer_status(ctx)
        assert status["last_run_at"] == now.isoformat() + "Z"
        assert status["next_run_at"] == (now + timedelta(hours=6)).isoformat() + "Z"
        assert status["last_status"] == "no_candidates"

        with pytest.raises(ValueError):
            await roster_service.update_optimizer_settings(ctx, {"optimization_interval_hours": 0})
    finally:
        await engine.dispose()

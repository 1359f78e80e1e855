import asyncio
import sys
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from config import settings
from models.database import (
    Base,
    OptimizerSnapshot,
    RotationHistory,
    TunerGovernance,
    WalletAllocation,
    WalletBan,
    Workspace,
)
from models.roster import DemotionTrigger, RosterState
from services import roster_service
from services.allocation_recalculator import active_sum
from services.metrics_feed import StaticMetricsFeed
from services.optimizer_context import WorkspaceOptimizerContext
from services.optimizer_shared_state import get_workspace, read_snapshot, write_snapshot
from services.roster_errors import PassAlreadyRunning, PassTimeout, PersistenceConflict
from services.roster_state import RosterStateMachine, state_of
from services.rotation_optimizer import (
    OptimizationResult,
    OptimizerEvent,
    OptimizerEventType,
    RotationOptimizer,
    select_for_slots,
)
from services.risk_scorer import score_pool
from services.workspace_locks import ROTATION_LOOP, SCANNER_LOOP, WorkspaceLockRegistry
from utils.utcnow import utcnow


def wallet(n: int) -> str:
    return "0x" + format(n, "040x")


async def _build_context(tmp_path: Path, feed, now, **workspace_fields):
    db_path = tmp_path / "rotation_optimizer.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    ctx = WorkspaceOptimizerContext(
        workspace_id="ws-rotation",
        session_factory=session_factory,
        metrics_feed=feed,
        locks=WorkspaceLockRegistry(),
        clock=lambda: now,
    )
    await roster_service.create_workspace(ctx, name="Rotation", **workspace_fields)
    return engine, ctx


async def _seed(ctx, now, *, active=(), probation=(), pinned=()):
    async with ctx.session() as session:
        workspace = await get_workspace(session, ctx.workspace_id)
        machine = RosterStateMachine(session, workspace, now=now)
        for address in active:
            await machine.promote(address)
        for address in probation:
            await machine.start_probation(address)
        for address in pinned:
            await machine.pin(address)
        await session.commit()


async def _states(ctx) -> dict:
    async with ctx.session() as session:
        rows = (await session.execute(select(WalletAllocation))).scalars().all()
        return {r.wallet_address: state_of(r) for r in rows}


async def _history(ctx, action=None) -> list:
    async with ctx.session() as session:
        query = select(RotationHistory).where(RotationHistory.workspace_id == ctx.workspace_id)
        if action is not None:
            query = query.where(RotationHistory.action == action)
        return list((await session.execute(query)).scalars().all())


def _full_roster(make_metrics):
    # Composite scores fall from wallet 1 to wallet 5.
    return [make_metrics(wallet(i), consistency=1.0 - 0.1 * i) for i in range(1, 6)]


def _strong_candidate(make_metrics, n=9, **overrides):
    payload = {"consistency": 1.0, "sortino": 3.0}
    payload.update(overrides)
    return make_metrics(wallet(n), **payload)


@pytest.mark.asyncio
async def test_strong_candidate_replaces_weakest_wallet(tmp_path, make_metrics, now):
    incumbents = _full_roster(make_metrics)
    feed = StaticMetricsFeed(incumbents + [_strong_candidate(make_metrics)])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await _seed(ctx, now, active=[m.address for m in incumbents])

        result = await RotationOptimizer().run_pass(ctx, trigger="manual")

        assert result.applied is True
        assert result.candidates_found == 1
        assert result.replacements == 1
        assert result.wallets_promoted == 1
        states = await _states(ctx)
        assert states[wallet(9)] == RosterState.PROBATION
        assert states[wallet(5)] == RosterState.BENCH
        assert sum(1 for s in states.values() if s != RosterState.BENCH) == 5

        replaced = await _history(ctx, "replace")
        assert len(replaced) == 1
        assert replaced[0].wallet_in == wallet(9)
        assert replaced[0].wallet_out == wallet(5)
        assert replaced[0].evidence["margin"] == pytest.approx(0.10)

        async with ctx.session() as session:
            rows = (await session.execute(select(WalletAllocation))).scalars().all()
            assert active_sum(rows) <= 100.0
            snapshot = await read_snapshot(session, ctx.workspace_id, ROTATION_LOOP)
        assert snapshot["last_status"] == "ok"
        assert snapshot["running"] is False
        assert snapshot["actions_last_run"] == len(result.actions)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_candidate_within_margin_does_not_replace(tmp_path, make_metrics, now):
    incumbents = _full_roster(make_metrics)
    close_call = make_metrics(wallet(9), consistency=0.85)
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(incumbents + [close_call]), now)
    try:
        await _seed(ctx, now, active=[m.address for m in incumbents])

        result = await RotationOptimizer().run_pass(ctx)

        assert result.candidates_found == 1
        assert result.replacements == 0
        assert await _history(ctx, "replace") == []
        assert wallet(9) not in await _states(ctx)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_pinned_weakest_wallet_is_never_replaced(tmp_path, make_metrics, now):
    incumbents = _full_roster(make_metrics)
    feed = StaticMetricsFeed(incumbents + [_strong_candidate(make_metrics)])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await _seed(ctx, now, active=[m.address for m in incumbents], pinned=[wallet(5)])

        result = await RotationOptimizer().run_pass(ctx)

        assert result.replacements == 1
        replaced = await _history(ctx, "replace")
        assert replaced[0].wallet_out == wallet(4)
        states = await _states(ctx)
        assert states[wallet(5)] == RosterState.ACTIVE
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_no_candidates_changes_nothing(tmp_path, make_metrics, now):
    weak = make_metrics(wallet(7), win_rate=0.30)
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed([weak]), now)
    try:
        result = await RotationOptimizer().run_pass(ctx)

        assert result.candidates_found == 0
        assert result.wallets_promoted == 0
        assert result.status == "no_candidates"
        assert result.message == "No wallets meet current thresholds"
        assert await _history(ctx) == []
        assert await _states(ctx) == {}

        async with ctx.session() as session:
            workspace = await session.get(Workspace, ctx.workspace_id)
            assert workspace.last_optimization_at == now
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_open_slots_are_filled_through_probation(tmp_path, make_metrics, now):
    candidates = [make_metrics(wallet(i)) for i in range(1, 4)]
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(candidates), now)
    try:
        result = await RotationOptimizer().run_pass(ctx)

        assert result.candidates_found == 3
        assert result.wallets_promoted == 3
        assert result.message == "3 wallet(s) promoted"
        states = await _states(ctx)
        assert set(states.values()) == {RosterState.PROBATION}
        assert len(await _history(ctx, "probation_start")) == 3

        async with ctx.session() as session:
            rows = (await session.execute(select(WalletAllocation))).scalars().all()
            for row in rows:
                assert row.probation_until == now + timedelta(days=settings.PROBATION_DAYS)
                assert float(row.allocation_pct) == pytest.approx(100.0 / 3 / 2, abs=1e-3)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_probation_fails_when_metrics_slip(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(1), win_rate=0.40)])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await _seed(ctx, now - timedelta(days=8), probation=[wallet(1)])

        result = await RotationOptimizer().run_pass(ctx)

        assert result.wallets_demoted == 1
        failed = await _history(ctx, "probation_fail")
        assert len(failed) == 1
        assert failed[0].wallet_out == wallet(1)
        assert (await _states(ctx))[wallet(1)] == RosterState.BENCH
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_probation_graduates_after_window(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(1))])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await _seed(ctx, now - timedelta(days=8), probation=[wallet(1)])

        await RotationOptimizer().run_pass(ctx)

        assert len(await _history(ctx, "probation_graduate")) == 1
        assert (await _states(ctx))[wallet(1)] == RosterState.ACTIVE
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_drawdown_breach_demotes_immediately(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(1), max_drawdown=0.55)])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await _seed(ctx, now, active=[wallet(1)])

        await RotationOptimizer().run_pass(ctx)

        demoted = await _history(ctx, "emergency_demote")
        assert len(demoted) == 1
        assert demoted[0].evidence["trigger"] == "max_drawdown"
        assert (await _states(ctx))[wallet(1)] == RosterState.BENCH
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_grace_period_expires_into_bench_or_recovers(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed(
        [
            make_metrics(wallet(1), roi_30d=-0.10),
            make_metrics(wallet(2)),
        ]
    )
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        started = now - timedelta(hours=settings.GRACE_PERIOD_HOURS + 1)
        async with ctx.session() as session:
            workspace = await get_workspace(session, ctx.workspace_id)
            machine = RosterStateMachine(session, workspace, now=started)
            for address in (wallet(1), wallet(2)):
                await machine.promote(address)
                await machine.start_grace_period(address, trigger=DemotionTrigger.NEGATIVE_ROI)
            await session.commit()

        await RotationOptimizer().run_pass(ctx)

        states = await _states(ctx)
        assert states[wallet(1)] == RosterState.BENCH
        assert states[wallet(2)] == RosterState.ACTIVE
        assert len(await _history(ctx, "grace_period_demote")) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_pinned_probation_wallet_graduates_but_never_fails(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed(
        [
            make_metrics(wallet(1)),
            make_metrics(wallet(2), win_rate=0.40),
        ]
    )
    engine, ctx = await _build_context(tmp_path, feed, now, auto_select_enabled=False)
    try:
        await _seed(ctx, now - timedelta(days=30), probation=[wallet(1), wallet(2)], pinned=[wallet(1), wallet(2)])

        await RotationOptimizer().run_pass(ctx)

        states = await _states(ctx)
        assert states[wallet(1)] == RosterState.ACTIVE
        assert states[wallet(2)] == RosterState.PROBATION
        assert len(await _history(ctx, "probation_graduate")) == 1
        assert await _history(ctx, "probation_fail") == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_pinned_grace_wallet_recovers_but_is_not_demoted(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed(
        [
            make_metrics(wallet(1)),
            make_metrics(wallet(2), roi_30d=-0.10),
        ]
    )
    engine, ctx = await _build_context(tmp_path, feed, now, auto_select_enabled=False)
    try:
        started = now - timedelta(days=10)
        async with ctx.session() as session:
            workspace = await get_workspace(session, ctx.workspace_id)
            machine = RosterStateMachine(session, workspace, now=started)
            for address in (wallet(1), wallet(2)):
                await machine.promote(address)
                await machine.start_grace_period(address, trigger=DemotionTrigger.NEGATIVE_ROI)
                await machine.pin(address)
            await session.commit()

        await RotationOptimizer().run_pass(ctx)

        states = await _states(ctx)
        assert states[wallet(1)] == RosterState.ACTIVE
        assert states[wallet(2)] == RosterState.GRACE_PERIOD
        assert await _history(ctx, "grace_period_demote") == []
    finally:
        await engine.dispose()

@pytest.mark.parametrize(
    "governance",
    [
        {"mode": "shadow", "frozen": False},
        {"mode": "apply", "frozen": True, "freeze_reason": "regime change"},
        {"mode": "something-else", "frozen": False},
    ],
)
@pytest.mark.asyncio
async def test_governance_hold_leaves_roster_untouched(tmp_path, make_metrics, now, governance):
    feed = StaticMetricsFeed([make_metrics(wallet(1)), make_metrics(wallet(2))])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        async with ctx.session() as session:
            session.add(TunerGovernance(workspace_id=ctx.workspace_id, **governance))
            await session.commit()

        result = await RotationOptimizer().run_pass(ctx)

        assert result.applied is False
        assert result.status == "shadow"
        assert result.governance is not None
        assert result.wallets_promoted == 2
        assert await _states(ctx) == {}
        assert await _history(ctx) == []

        async with ctx.session() as session:
            workspace = await session.get(Workspace, ctx.workspace_id)
            assert workspace.last_optimization_at == now
            snapshot = await read_snapshot(session, ctx.workspace_id, ROTATION_LOOP)
        assert snapshot["last_status"] == "shadow"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_failed_pass_rolls_back_every_change(tmp_path, make_metrics, now, monkeypatch):
    incumbents = _full_roster(make_metrics)
    feed = StaticMetricsFeed(incumbents + [_strong_candidate(make_metrics)])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await _seed(ctx, now, active=[m.address for m in incumbents])
        before_states = await _states(ctx)
        before_history = len(await _history(ctx))

        optimizer = RotationOptimizer()
        monkeypatch.setattr(optimizer.recalculator, "recalculate", AsyncMock(side_effect=RuntimeError("boom")))

        with pytest.raises(RuntimeError, match="boom"):
            await optimizer.run_pass(ctx)

        assert await _states(ctx) == before_states
        assert len(await _history(ctx)) == before_history
        async with ctx.session() as session:
            snapshot = await read_snapshot(session, ctx.workspace_id, ROTATION_LOOP)
        assert snapshot["last_status"] == "error"
        assert snapshot["last_error"] == "boom"
        assert snapshot["running"] is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_pass_timeout_rolls_back(tmp_path, make_metrics, now, monkeypatch):
    class SlowFeed(StaticMetricsFeed):
        async def list_candidate_wallets(self, criteria, limit=200):
            await asyncio.sleep(1.0)
            return await super().list_candidate_wallets(criteria, limit)

    engine, ctx = await _build_context(tmp_path, SlowFeed([make_metrics(wallet(1))]), now)
    monkeypatch.setattr(settings, "OPTIMIZER_PASS_TIMEOUT_SECONDS", 0.05)
    try:
        with pytest.raises(PassTimeout):
            await RotationOptimizer().run_pass(ctx)
        assert await _states(ctx) == {}
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_scheduled_pass_skips_busy_workspace(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        async with ctx.locks.acquire(ROTATION_LOOP, ctx.workspace_id, wait=False):
            with pytest.raises(PassAlreadyRunning):
                await RotationOptimizer().run_pass(ctx, trigger="scheduled")
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_manual_pass_waits_for_running_pass(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        lock = ctx.locks.lock_for(ROTATION_LOOP, ctx.workspace_id)
        await lock.acquire()
        task = asyncio.create_task(RotationOptimizer().run_pass(ctx, trigger="manual"))
        await asyncio.sleep(0.05)
        assert not task.done()

        lock.release()
        result = await asyncio.wait_for(task, timeout=5.0)
        assert result.trigger == "manual"
        assert result.status == "no_candidates"
    finally:
        await engine.dispose()


def _other_process(ctx) -> WorkspaceOptimizerContext:
    # Same database, separate lock registry: what a second worker process sees.
    return WorkspaceOptimizerContext(
        workspace_id=ctx.workspace_id,
        session_factory=ctx.session_factory,
        metrics_feed=ctx.metrics_feed,
        locks=WorkspaceLockRegistry(),
        clock=ctx.clock,
    )


@pytest.mark.asyncio
async def test_scheduled_pass_skips_workspace_leased_by_other_process(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        async with _other_process(ctx).exclusive(ROTATION_LOOP, wait=False):
            with pytest.raises(PassAlreadyRunning, match="another process"):
                await RotationOptimizer().run_pass(ctx, trigger="scheduled")
            async with ctx.session() as session:
                assert (await read_snapshot(session, ctx.workspace_id, ROTATION_LOOP))["running"] is True

        result = await RotationOptimizer().run_pass(ctx, trigger="scheduled")
        assert result.status == "no_candidates"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_manual_pass_waits_for_other_process_lease(tmp_path, now, monkeypatch):
    monkeypatch.setattr(settings, "WORKSPACE_LEASE_POLL_SECONDS", 0.01)
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        release = asyncio.Event()

        async def hold_lease():
            async with _other_process(ctx).exclusive(ROTATION_LOOP, wait=False):
                await release.wait()

        holder = asyncio.create_task(hold_lease())
        await asyncio.sleep(0.05)
        task = asyncio.create_task(RotationOptimizer().run_pass(ctx, trigger="manual"))
        await asyncio.sleep(0.1)
        assert not task.done()

        release.set()
        await holder
        result = await asyncio.wait_for(task, timeout=5.0)
        assert result.trigger == "manual"

        async with ctx.session() as session:
            row = await session.get(OptimizerSnapshot, (ctx.workspace_id, ROTATION_LOOP))
        assert row.lease_owner is None
        assert row.lease_expires_at is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_expired_lease_from_dead_process_is_taken_over(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        async with ctx.session() as session:
            session.add(
                OptimizerSnapshot(
                    workspace_id=ctx.workspace_id,
                    loop=ROTATION_LOOP,
                    updated_at=utcnow(),
                    lease_owner="crashed-host:4242:deadbeef",
                    lease_expires_at=utcnow() - timedelta(minutes=1),
                )
            )
            await session.commit()

        result = await RotationOptimizer().run_pass(ctx, trigger="scheduled")
        assert result.status == "no_candidates"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_passes_from_two_processes_never_collide(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(n)) for n in range(1, 4)])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        results = await asyncio.gather(
            RotationOptimizer().run_pass(ctx, trigger="manual"),
            RotationOptimizer().run_pass(_other_process(ctx), trigger="scheduled"),
            return_exceptions=True,
        )
        assert isinstance(results[0], OptimizationResult)
        assert isinstance(results[1], (OptimizationResult, PassAlreadyRunning))
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_first_snapshot_writes_do_not_conflict(tmp_path, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed(), now)
    try:
        async def write(activity):
            async with ctx.session() as session:
                await write_snapshot(session, ctx.workspace_id, SCANNER_LOOP, {"current_activity": activity})

        await asyncio.gather(write("first"), write("second"))

        async with ctx.session() as session:
            snapshot = await read_snapshot(session, ctx.workspace_id, SCANNER_LOOP)
        assert snapshot["current_activity"] in {"first", "second"}
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_scheduled_pass_respects_disabled_automation(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(1))])
    engine, ctx = await _build_context(tmp_path, feed, now, auto_optimize_enabled=False)
    try:
        result = await RotationOptimizer().run_pass(ctx, trigger="scheduled")
        assert result.skipped is True
        assert result.skip_reason == "auto_optimize_disabled"
        assert await _states(ctx) == {}

        manual = await RotationOptimizer().run_pass(ctx, trigger="manual")
        assert manual.wallets_promoted == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_expired_ban_does_not_block_promotion(tmp_path, make_metrics, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed([make_metrics(wallet(1))]), now)
    try:
        async with ctx.session() as session:
            session.add(
                WalletBan(
                    workspace_id=ctx.workspace_id,
                    wallet_address=wallet(1),
                    banned_at=now - timedelta(days=2),
                    expires_at=now - timedelta(hours=1),
                )
            )
            await session.commit()

        result = await RotationOptimizer().run_pass(ctx)

        assert result.wallets_promoted == 1
        async with ctx.session() as session:
            assert (await session.execute(select(WalletBan))).scalars().all() == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_relaxation_loosens_thresholds_when_enabled(tmp_path, make_metrics, now, monkeypatch):
    borderline = make_metrics(wallet(1), win_rate=0.47)
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed([borderline]), now)
    try:
        strict = await RotationOptimizer().run_pass(ctx, dry_run=True)
        assert strict.candidates_found == 0

        monkeypatch.setattr(settings, "THRESHOLD_RELAXATION_ENABLED", True)
        relaxed = await RotationOptimizer().run_pass(ctx)
        assert relaxed.wallets_promoted == 1
        assert relaxed.thresholds["relaxation_round"] >= 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_dry_run_preview_reports_without_writing(tmp_path, make_metrics, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed([make_metrics(wallet(1))]), now)
    try:
        preview = await roster_service.get_automation_preview(ctx)

        assert preview["wallets_promoted"] == 1
        assert preview["applied"] is False
        assert await _states(ctx) == {}
        assert await _history(ctx) == []
        async with ctx.session() as session:
            workspace = await session.get(Workspace, ctx.workspace_id)
            assert workspace.last_optimization_at is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_commit_conflict_is_retried_once():
    optimizer = RotationOptimizer()
    calls = []

    async def flaky(ctx):
        calls.append(ctx.workspace_id)
        if len(calls) == 1:
            raise PersistenceConflict("stale row", workspace_id=ctx.workspace_id)
        return "done"

    ctx = SimpleNamespace(workspace_id="ws-conflict")
    assert await optimizer._with_retry_and_timeout(flaky, ctx) == "done"
    assert len(calls) == 2

    async def always_conflicting(ctx):
        calls.append(ctx.workspace_id)
        raise PersistenceConflict("stale row", workspace_id=ctx.workspace_id)

    calls.clear()
    with pytest.raises(PersistenceConflict):
        await optimizer._with_retry_and_timeout(always_conflicting, ctx)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_pass_timeout_covers_retried_attempts(monkeypatch):
    monkeypatch.setattr(settings, "OPTIMIZER_PASS_TIMEOUT_SECONDS", 0.2)
    optimizer = RotationOptimizer()
    calls = []

    async def slow_then_conflicting(ctx):
        calls.append(ctx.workspace_id)
        await asyncio.sleep(0.15)
        if len(calls) == 1:
            raise PersistenceConflict("stale row", workspace_id=ctx.workspace_id)
        return "done"

    with pytest.raises(PassTimeout):
        await optimizer._with_retry_and_timeout(slow_then_conflicting, SimpleNamespace(workspace_id="ws-slow"))
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_consecutive_losses_event_starts_grace_period(tmp_path, make_metrics, now):
    feed = StaticMetricsFeed([make_metrics(wallet(1)), make_metrics(wallet(2))])
    engine, ctx = await _build_context(tmp_path, feed, now)
    try:
        await _seed(ctx, now, active=[wallet(1), wallet(2)], pinned=[wallet(2)])
        optimizer = RotationOptimizer()

        for _ in range(settings.DEMOTION_MAX_CONSECUTIVE_LOSSES):
            for address in (wallet(1), wallet(2)):
                result = await optimizer.handle_event(
                    ctx,
                    OptimizerEvent(type=OptimizerEventType.POSITION_CLOSED, wallet_address=address, won=False),
                )
                assert result.applied is True

        states = await _states(ctx)
        assert states[wallet(1)] == RosterState.GRACE_PERIOD
        assert states[wallet(2)] == RosterState.ACTIVE
        started = await _history(ctx, "grace_period_start")
        assert [e.wallet_out for e in started] == [wallet(1)]
        assert started[0].evidence["trigger"] == "consecutive_losses"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_loss_events_under_shadow_count_but_do_not_demote(tmp_path, make_metrics, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed([make_metrics(wallet(1))]), now)
    try:
        await _seed(ctx, now, active=[wallet(1)])
        async with ctx.session() as session:
            session.add(TunerGovernance(workspace_id=ctx.workspace_id, mode="shadow"))
            await session.commit()

        optimizer = RotationOptimizer()
        for _ in range(settings.DEMOTION_MAX_CONSECUTIVE_LOSSES):
            result = await optimizer.handle_event(
                ctx,
                OptimizerEvent(type=OptimizerEventType.POSITION_CLOSED, wallet_address=wallet(1), won=False),
            )
        assert result.applied is False
        assert result.governance["mode"] == "shadow"

        async with ctx.session() as session:
            row = (await session.execute(select(WalletAllocation))).scalar_one()
        assert row.consecutive_losses == settings.DEMOTION_MAX_CONSECUTIVE_LOSSES
        assert state_of(row) == RosterState.ACTIVE
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_circuit_breaker_event_demotes_active_wallet(tmp_path, make_metrics, now):
    engine, ctx = await _build_context(tmp_path, StaticMetricsFeed([make_metrics(wallet(1))]), now)
    try:
        await _seed(ctx, now, active=[wallet(1)])
        result = await RotationOptimizer().handle_event(
            ctx,
            OptimizerEvent(
                type=OptimizerEventType.CIRCUIT_BREAKER_TRIPPED,
                wallet_address=wallet(1),
                reason="daily loss limit",
            ),
        )
        assert result.wallets_demoted == 1
        assert (await _states(ctx))[wallet(1)] == RosterState.BENCH
    finally:
        await engine.dispose()


def test_exploration_slot_goes_to_less_proven_candidate(make_metrics, now):
    proven = [make_metrics(wallet(i), strategy="momentum") for i in range(1, 4)]
    upstart = make_metrics(wallet(9), trades_30d=4, roi_30d=0.50, strategy="event", consistency=0.4)
    scores = score_pool(proven + [upstart], now=now)
    ranked = sorted(
        [(m, scores[m.address]) for m in proven + [upstart]],
        key=lambda item: (-item[1].ranking_score, item[0].address),
    )

    picks = select_for_slots(ranked, 2)

    assert len(picks) == 2
    assert picks[0][0].address == ranked[0][0].address
    assert picks[1][0].address == wallet(9)
    assert select_for_slots(ranked, 0) == []
    assert len(select_for_slots(ranked, 1)) == 1

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base, RotationHistory, WalletAllocation, WalletBan, Workspace
from models.roster import DemotionTrigger, RosterState, RotationAction, Tier
from services.roster_errors import (
    InvalidTierTransition,
    PinLimitExceeded,
    RosterFull,
    RosterInvariantViolation,
    UndoNotAllowed,
    WalletBanned,
    WalletNotFound,
)
from services.roster_state import TRANSITIONS, RosterStateMachine, state_of


def wallet(n: int) -> str:
    return "0x" + format(n, "040x")


async def _build_session_factory(tmp_path: Path):
    db_path = tmp_path / "roster_state.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with session_factory() as session:
        session.add(Workspace(id="ws-state", name="State"))
        await session.commit()
    return engine, session_factory


async def _machine(session, now, trigger="api") -> RosterStateMachine:
    workspace = await session.get(Workspace, "ws-state")
    return RosterStateMachine(session, workspace, now=now, trigger=trigger)


async def _history_count(session) -> int:
    result = await session.execute(select(func.count()).select_from(RotationHistory))
    return int(result.scalar_one())


def test_every_rotation_action_has_a_transition():
    assert set(TRANSITIONS) == set(RotationAction)


def test_state_is_derived_from_row_fields(now):
    assert state_of(None) is None
    assert state_of(WalletAllocation(tier="bench")) == RosterState.BENCH
    assert state_of(WalletAllocation(tier="active")) == RosterState.ACTIVE
    assert state_of(WalletAllocation(tier="active", probation_until=now)) == RosterState.PROBATION
    assert state_of(WalletAllocation(tier="active", grace_period_started_at=now)) == RosterState.GRACE_PERIOD
    assert state_of(WalletAllocation(tier="bench"), WalletBan()) == RosterState.BANNED


@pytest.mark.asyncio
async def test_each_transition_appends_one_history_entry(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            await machine.add_wallet(wallet(1))
            await machine.start_probation(wallet(1))
            await machine.graduate_probation(wallet(1))
            await machine.start_grace_period(wallet(1), trigger=DemotionTrigger.NEGATIVE_ROI)
            await machine.grace_period_demote(wallet(1))
            await session.commit()

            assert await _history_count(session) == 5
            assert [e.action for e in machine.recorded] == [
                "add",
                "probation_start",
                "probation_graduate",
                "grace_period_start",
                "grace_period_demote",
            ]
            assert await machine.state(wallet(1)) == RosterState.BENCH
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_sixth_active_wallet_is_rejected_without_side_effects(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            for i in range(1, 6):
                await machine.promote(wallet(i))
            await machine.add_wallet(wallet(6))
            await session.commit()
            before = await _history_count(session)

            with pytest.raises(RosterFull):
                await machine.promote(wallet(6))
            with pytest.raises(RosterFull):
                await machine.start_probation(wallet(6))

            assert await _history_count(session) == before
            assert await machine.active_count() == 5
            assert await machine.state(wallet(6)) == RosterState.BENCH
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_fourth_pin_is_rejected(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            for i in range(1, 5):
                await machine.add_wallet(wallet(i))
            for i in range(1, 4):
                await machine.pin(wallet(i), pinned_by="ops")
            await session.commit()
            before = await _history_count(session)

            with pytest.raises(PinLimitExceeded):
                await machine.pin(wallet(4))

            assert await machine.pinned_count() == 3
            assert await _history_count(session) == before
            row = await machine.get_row(wallet(4))
            assert row.pinned is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_pinned_wallet_is_exempt_from_automatic_demotion_only(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now, trigger="scheduled")
            await machine.promote(wallet(1))
            await machine.promote(wallet(2))
            await machine.pin(wallet(1))

            with pytest.raises(InvalidTierTransition):
                await machine.replace(wallet(1), wallet(3), reason="better candidate")
            with pytest.raises(InvalidTierTransition):
                await machine.emergency_demote(wallet(1), trigger=DemotionTrigger.MAX_DRAWDOWN)
            assert await machine.handle_circuit_breaker_trip(wallet(1)) is False

            await machine.demote(wallet(1), reason="operator decision")
            assert await machine.state(wallet(1)) == RosterState.BENCH
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_invalid_transitions_are_rejected(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            await machine.add_wallet(wallet(1))

            with pytest.raises(InvalidTierTransition):
                await machine.demote(wallet(1))
            with pytest.raises(InvalidTierTransition):
                await machine.graduate_probation(wallet(1))
            with pytest.raises(InvalidTierTransition):
                await machine.add_wallet(wallet(1))
            with pytest.raises(WalletNotFound):
                await machine.pin(wallet(9))
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_banned_wallet_leaves_roster_and_cannot_return(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            await machine.promote(wallet(1))
            await machine.pin(wallet(1))
            await machine.ban(wallet(1), reason="wash trading")
            await session.commit()

            assert await machine.get_row(wallet(1)) is None
            assert await machine.state(wallet(1)) == RosterState.BANNED
            assert wallet(1) in await machine.banned_addresses()
            with pytest.raises(WalletBanned):
                await machine.add_wallet(wallet(1))
            with pytest.raises(WalletBanned):
                await machine.start_probation(wallet(1))

            await machine.unban(wallet(1))
            assert await machine.state(wallet(1)) is None
            await machine.add_wallet(wallet(1))
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_expired_ban_no_longer_applies_and_is_purged(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            await machine.ban(wallet(1), expires_at=now + timedelta(hours=1))
            with pytest.raises(ValueError):
                await machine.ban(wallet(2), expires_at=now - timedelta(minutes=1))
            await session.commit()

        async with session_factory() as session:
            later = await _machine(session, now + timedelta(hours=2))
            assert await later.state(wallet(1)) is None
            assert await later.purge_expired_bans() == 1
            await later.add_wallet(wallet(1))
            await session.commit()
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_consecutive_losses_start_grace_then_emergency_demote(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now, trigger="event")
            await machine.promote(wallet(1))

            outcomes = [await machine.record_trade_outcome(wallet(1), won=False) for _ in range(5)]
            assert outcomes[:4] == [None] * 4
            assert outcomes[4] == RotationAction.GRACE_PERIOD_START
            assert await machine.state(wallet(1)) == RosterState.GRACE_PERIOD

            outcomes = [await machine.record_trade_outcome(wallet(1), won=False) for _ in range(3)]
            assert outcomes[-1] == RotationAction.EMERGENCY_DEMOTE
            assert await machine.state(wallet(1)) == RosterState.BENCH
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_win_resets_loss_counter(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now, trigger="event")
            await machine.promote(wallet(1))
            for _ in range(4):
                await machine.record_trade_outcome(wallet(1), won=False)
            await machine.record_trade_outcome(wallet(1), won=True)
            await machine.record_trade_outcome(wallet(1), won=False)

            row = await machine.get_row(wallet(1))
            assert row.consecutive_losses == 1
            assert await machine.state(wallet(1)) == RosterState.ACTIVE
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_undo_reverses_demotion_and_is_single_use(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            await machine.promote(wallet(1))
            row = await machine.demote(wallet(1))
            demote_entry = machine.recorded[-1]
            await session.commit()

            undo_entry = await machine.undo(demote_entry.id)
            await session.commit()
            assert undo_entry.action == "undo"
            assert undo_entry.undoes_entry_id == demote_entry.id
            assert await machine.state(wallet(1)) == RosterState.ACTIVE
            assert row.tier == Tier.ACTIVE.value

            with pytest.raises(UndoNotAllowed):
                await machine.undo(demote_entry.id)
            with pytest.raises(UndoNotAllowed):
                await machine.undo(undo_entry.id)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_undo_window_expires(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            machine = await _machine(session, now)
            await machine.add_wallet(wallet(1))
            add_entry = machine.recorded[-1]
            await session.commit()

        async with session_factory() as session:
            later = await _machine(session, now + timedelta(minutes=61))
            with pytest.raises(UndoNotAllowed):
                await later.undo(add_entry.id)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_invariant_check_flags_overfull_roster(tmp_path, now):
    engine, session_factory = await _build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            for i in range(1, 7):
                session.add(
                    WalletAllocation(
                        workspace_id="ws-state",
                        wallet_address=wallet(i),
                        tier="active",
                        allocation_pct=20.0,
                    )
                )
            await session.flush()
            machine = await _machine(session, now)
            with pytest.raises(RosterInvariantViolation) as excinfo:
                await machine.check_invariants()
            assert len(excinfo.value.detail["problems"]) == 2
    finally:
        await engine.dispose()

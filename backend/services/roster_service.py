"""Workspace-scoped roster operations for the API/UI layer.

Every function takes a ``WorkspaceOptimizerContext``, opens its own
session and commits once. Mutations hold the rotation lock so they
serialize with running optimizer passes; errors surface as typed
``RosterError`` subclasses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.database import WalletBan, Workspace
from models.roster import Aggressiveness, Tier, WalletMetrics
from services import rotation_history
from services.allocation_recalculator import AllocationRecalculator
from services.opportunity_scanner import clamp_exploration_slots, selection_settings
from services.optimizer_context import WorkspaceOptimizerContext
from services.optimizer_shared_state import (
    criteria_for_workspace,
    get_workspace,
    next_run_at,
    read_snapshot,
    request_rotation_run,
    request_scanner_run,
)
from services.roster_errors import PersistenceConflict
from services.roster_state import RosterStateMachine, serialize_allocation
from services.rotation_optimizer import RotationOptimizer, rotation_optimizer
from services.tuner_governance import read_governance
from services.workspace_locks import ROTATION_LOOP, SCANNER_LOOP
from utils.logger import roster_logger as logger
from utils.utcnow import format_iso_utc_z
from utils.validation import (
    OpportunitySelectionUpdate,
    OptimizerSettingsUpdate,
    RosterWalletParams,
    validate_eth_address,
)

recalculator = AllocationRecalculator()


def _serialize_ban(ban: WalletBan) -> dict[str, Any]:
    return {
        "wallet_address": ban.wallet_address,
        "reason": ban.reason,
        "banned_by": ban.banned_by,
        "banned_at": format_iso_utc_z(ban.banned_at),
        "expires_at": format_iso_utc_z(ban.expires_at),
    }


async def _tier_metrics(ctx: WorkspaceOptimizerContext, machine: RosterStateMachine, tier: str) -> dict[str, WalletMetrics]:
    tiers = [Tier.ACTIVE.value, Tier.BENCH.value] if tier == "all" else [tier]
    metrics: dict[str, WalletMetrics] = {}
    for tier_value in tiers:
        for row in await machine.rows(tier_value):
            try:
                fetched = await ctx.metrics_feed.get_wallet_metrics(row.wallet_address)
            except httpx.HTTPError as exc:
                logger.warning(
                    "Metrics fetch failed; using stored snapshot",
                    workspace_id=ctx.workspace_id,
                    wallet_address=row.wallet_address,
                    error=str(exc),
                )
                continue
            if fetched is not None:
                metrics[row.wallet_address] = fetched
    return metrics


async def _commit(session: AsyncSession, workspace_id: str) -> None:
    try:
        await session.commit()
    except StaleDataError as exc:
        await session.rollback()
        raise PersistenceConflict("Roster changed concurrently", workspace_id=workspace_id) from exc


async def _mutate(
    ctx: WorkspaceOptimizerContext,
    operation: Callable[[RosterStateMachine], Awaitable[Any]],
    *,
    reallocate: bool = False,
) -> Any:
    """Run one manual transition under the rotation lock and commit it."""
    async with ctx.exclusive(
        ROTATION_LOOP,
        wait=True,
        timeout=settings.OPTIMIZER_LOCK_WAIT_SECONDS,
    ):
        async with ctx.session() as session:
            workspace = await get_workspace(session, ctx.workspace_id)
            machine = RosterStateMachine(session, workspace, now=ctx.now(), trigger="api")
            try:
                value = await operation(machine)
                if reallocate:
                    metrics = await _tier_metrics(ctx, machine, Tier.ACTIVE.value)
                    await recalculator.recalculate(
                        session,
                        workspace,
                        Tier.ACTIVE.value,
                        metrics,
                        auto_apply=True,
                        trigger="api",
                        now=machine.now,
                    )
                await machine.check_invariants()
            except Exception:
                await session.rollback()
                raise
            await _commit(session, ctx.workspace_id)
            return value


def _address(address: str) -> str:
    return validate_eth_address(address)


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


async def create_workspace(ctx: WorkspaceOptimizerContext, *, name: str = "Default", **fields: Any) -> dict[str, Any]:
    async with ctx.session() as session:
        workspace = Workspace(id=ctx.workspace_id, name=name, **fields)
        session.add(workspace)
        await session.commit()
    logger.info("Workspace created", workspace_id=ctx.workspace_id)
    return {"id": ctx.workspace_id, "name": name}


# ---------------------------------------------------------------------------
# Allocations
# ---------------------------------------------------------------------------


async def preview_recalculation(ctx: WorkspaceOptimizerContext, tier: str = "active") -> list[dict[str, Any]]:
    """Dry-run recalculation; nothing is written."""
    async with ctx.session() as session:
        workspace = await get_workspace(session, ctx.workspace_id)
        machine = RosterStateMachine(session, workspace, now=ctx.now())
        metrics = await _tier_metrics(ctx, machine, tier)
        result = await recalculator.recalculate(
            session,
            workspace,
            tier,
            metrics,
            auto_apply=False,
            now=machine.now,
        )
        return [p.as_dict() for p in result.previews]


async def apply_recalculation(ctx: WorkspaceOptimizerContext, tier: str = "active") -> dict[str, Any]:
    async def apply(machine: RosterStateMachine):
        metrics = await _tier_metrics(ctx, machine, tier)
        return await recalculator.recalculate(
            machine.session,
            machine.workspace,
            tier,
            metrics,
            auto_apply=True,
            trigger="api",
            now=machine.now,
        )

    result = await _mutate(ctx, apply)
    return {
        "applied": True,
        "wallet_count": result.wallet_count,
        "history_entry_id": result.history_entry_id,
        "previews": [p.as_dict() for p in result.previews],
    }


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------


async def trigger_optimization(
    ctx: WorkspaceOptimizerContext,
    optimizer: Optional[RotationOptimizer] = None,
) -> dict[str, Any]:
    """Run Now: waits for any in-flight pass, then runs a manual pass."""
    result = await (optimizer or rotation_optimizer).run_pass(ctx, trigger="manual")
    return result.as_dict()


async def request_optimization(ctx: WorkspaceOptimizerContext) -> dict[str, Any]:
    """Queue a manual pass for the optimizer worker instead of running it inline."""
    async with ctx.session() as session:
        await request_rotation_run(session, ctx.workspace_id)
    logger.info("Rotation pass requested", workspace_id=ctx.workspace_id)
    return {"status": "queued", "workspace_id": ctx.workspace_id}


async def get_automation_preview(
    ctx: WorkspaceOptimizerContext,
    optimizer: Optional[RotationOptimizer] = None,
) -> dict[str, Any]:
    """What the next pass would do, computed and rolled back."""
    result = await (optimizer or rotation_optimizer).run_pass(ctx, trigger="manual", dry_run=True)
    return result.as_dict()


async def get_optimizer_status(ctx: WorkspaceOptimizerContext) -> dict[str, Any]:
    async with ctx.session() as session:
        workspace = await get_workspace(session, ctx.workspace_id)
        machine = RosterStateMachine(session, workspace, now=ctx.now())
        rows = await machine.rows()
        snapshot = await read_snapshot(session, ctx.workspace_id, ROTATION_LOOP)
        governance = await read_governance(session, ctx.workspace_id)
        return {
            "enabled": bool(workspace.auto_optimize_enabled),
            "last_run_at": format_iso_utc_z(workspace.last_optimization_at),
            "next_run_at": format_iso_utc_z(next_run_at(workspace)),
            "criteria": criteria_for_workspace(workspace).as_thresholds(),
            "active_wallet_count": sum(1 for r in rows if r.tier == Tier.ACTIVE.value),
            "bench_wallet_count": sum(1 for r in rows if r.tier == Tier.BENCH.value),
            "pinned_wallet_count": sum(1 for r in rows if r.pinned),
            "running": ctx.locks.is_locked(ROTATION_LOOP, ctx.workspace_id) or snapshot["running"],
            "last_status": snapshot["last_status"],
            "last_error": snapshot["last_error"],
            "governance": governance.as_dict(),
        }


async def update_optimizer_settings(
    ctx: WorkspaceOptimizerContext,
    update: Union[OptimizerSettingsUpdate, dict[str, Any]],
) -> dict[str, Any]:
    if isinstance(update, dict):
        update = OptimizerSettingsUpdate(**update)
    changes = update.model_dump(exclude_unset=True)
    async with ctx.session() as session:
        workspace = await get_workspace(session, ctx.workspace_id)
        for key, value in changes.items():
            if key == "allocation_strategy" and value is not None:
                value = value.value
            setattr(workspace, key, value)
        await session.commit()
    logger.info("Optimizer settings updated", workspace_id=ctx.workspace_id, fields=sorted(changes))
    return await get_optimizer_status(ctx)


# ---------------------------------------------------------------------------
# Manual roster transitions
# ---------------------------------------------------------------------------


async def add_wallet(
    ctx: WorkspaceOptimizerContext,
    params: Union[RosterWalletParams, dict[str, Any]],
) -> dict[str, Any]:
    if isinstance(params, dict):
        params = RosterWalletParams(**params)

    async def add(machine: RosterStateMachine):
        return await machine.add_wallet(
            params.address,
            label=params.label,
            strategy=params.strategy,
            copy_behavior=params.copy_behavior,
            max_position_size=params.max_position_size,
        )

    return serialize_allocation(await _mutate(ctx, add))


async def remove_wallet(ctx: WorkspaceOptimizerContext, address: str, *, reason: Optional[str] = None) -> dict[str, Any]:
    address = _address(address)

    async def remove(machine: RosterStateMachine):
        await machine.remove_wallet(address, reason=reason)

    await _mutate(ctx, remove, reallocate=True)
    return {"removed": True, "wallet_address": address}


async def promote_wallet(ctx: WorkspaceOptimizerContext, address: str, *, reason: Optional[str] = None) -> dict[str, Any]:
    address = _address(address)

    async def promote(machine: RosterStateMachine):
        return await machine.promote(address, reason=reason or "Manually promoted")

    return serialize_allocation(await _mutate(ctx, promote, reallocate=True))


async def demote_wallet(ctx: WorkspaceOptimizerContext, address: str, *, reason: Optional[str] = None) -> dict[str, Any]:
    address = _address(address)

    async def demote(machine: RosterStateMachine):
        return await machine.demote(address, reason=reason or "Manually demoted")

    return serialize_allocation(await _mutate(ctx, demote, reallocate=True))


async def pin_wallet(ctx: WorkspaceOptimizerContext, address: str, *, pinned_by: Optional[str] = None) -> dict[str, Any]:
    address = _address(address)

    async def pin(machine: RosterStateMachine):
        return await machine.pin(address, pinned_by=pinned_by)

    return serialize_allocation(await _mutate(ctx, pin))


async def unpin_wallet(ctx: WorkspaceOptimizerContext, address: str) -> dict[str, Any]:
    address = _address(address)

    async def unpin(machine: RosterStateMachine):
        return await machine.unpin(address)

    return serialize_allocation(await _mutate(ctx, unpin))


async def ban_wallet(
    ctx: WorkspaceOptimizerContext,
    address: str,
    *,
    reason: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    banned_by: Optional[str] = None,
) -> dict[str, Any]:
    address = _address(address)

    async def ban(machine: RosterStateMachine):
        return await machine.ban(address, reason=reason, expires_at=expires_at, banned_by=banned_by)

    return _serialize_ban(await _mutate(ctx, ban, reallocate=True))


async def unban_wallet(ctx: WorkspaceOptimizerContext, address: str) -> dict[str, Any]:
    address = _address(address)

    async def unban(machine: RosterStateMachine):
        await machine.unban(address)

    await _mutate(ctx, unban)
    return {"unbanned": True, "wallet_address": address}


async def list_roster(ctx: WorkspaceOptimizerContext, tier: Optional[str] = None) -> dict[str, Any]:
    async with ctx.session() as session:
        workspace = await get_workspace(session, ctx.workspace_id)
        machine = RosterStateMachine(session, workspace, now=ctx.now())
        rows = await machine.rows(Tier(tier).value if tier else None)
        banned = await machine.banned_addresses()
        return {
            "active": [serialize_allocation(r) for r in rows if r.tier == Tier.ACTIVE.value],
            "bench": [serialize_allocation(r) for r in rows if r.tier == Tier.BENCH.value],
            "banned": sorted(banned),
            "max_active": machine.max_active,
            "max_pinned": machine.max_pinned,
        }


# ---------------------------------------------------------------------------
# Rotation history
# ---------------------------------------------------------------------------


async def list_rotation_history(
    ctx: WorkspaceOptimizerContext,
    limit: Optional[int] = None,
    unacknowledged_only: bool = False,
) -> list[dict[str, Any]]:
    async with ctx.session() as session:
        entries = await rotation_history.list_entries(
            session,
            ctx.workspace_id,
            limit=limit,
            unacknowledged_only=unacknowledged_only,
        )
        return [rotation_history.serialize(e) for e in entries]


async def acknowledge_rotation(
    ctx: WorkspaceOptimizerContext,
    entry_id: str,
    acknowledged_by: Optional[str] = None,
) -> dict[str, Any]:
    async with ctx.session() as session:
        entry = await rotation_history.acknowledge(
            session,
            entry_id,
            workspace_id=ctx.workspace_id,
            acknowledged_by=acknowledged_by,
            now=ctx.now(),
        )
        await session.commit()
        return {"ok": True, "entry": rotation_history.serialize(entry)}


async def undo_rotation(ctx: WorkspaceOptimizerContext, entry_id: str) -> dict[str, Any]:
    async def undo(machine: RosterStateMachine):
        return await machine.undo(entry_id)

    entry = await _mutate(ctx, undo, reallocate=True)
    return rotation_history.serialize(entry)


# ---------------------------------------------------------------------------
# Opportunity selection
# ---------------------------------------------------------------------------


async def get_opportunity_selection(ctx: WorkspaceOptimizerContext) -> dict[str, Any]:
    async with ctx.session() as session:
        workspace = await get_workspace(session, ctx.workspace_id)
        payload = selection_settings(workspace).as_dict()
        snapshot = await read_snapshot(session, ctx.workspace_id, SCANNER_LOOP)
        payload["last_run_at"] = snapshot["last_run_at"]
        payload["last_status"] = snapshot["last_status"]
        return payload


async def request_opportunity_scan(ctx: WorkspaceOptimizerContext) -> dict[str, Any]:
    async with ctx.session() as session:
        await request_scanner_run(session, ctx.workspace_id)
    logger.info("Opportunity scan requested", workspace_id=ctx.workspace_id)
    return {"status": "queued", "workspace_id": ctx.workspace_id}


async def update_opportunity_selection(
    ctx: WorkspaceOptimizerContext,
    aggressiveness: Optional[str] = None,
    exploration_slots: Optional[int] = None,
    max_markets_cap: Optional[int] = None,
) -> dict[str, Any]:
    """Change the scanner preset.

    A new aggressiveness without explicit slots resets the slots to that
    preset's default. Explicit slots must leave at least one core slot.
    """
    update = OpportunitySelectionUpdate(
        aggressiveness=aggressiveness,
        exploration_slots=exploration_slots,
        max_markets_cap=max_markets_cap,
    )
    async with ctx.exclusive(SCANNER_LOOP, wait=True, timeout=settings.OPTIMIZER_LOCK_WAIT_SECONDS):
        async with ctx.session() as session:
            workspace = await get_workspace(session, ctx.workspace_id)
            current = selection_settings(workspace)
            cap = update.max_markets_cap or current.max_markets_cap
            preset = current.aggressiveness
            if update.aggressiveness is not None:
                preset = Aggressiveness.parse(update.aggressiveness)
                workspace.scanner_aggressiveness = preset.value
            if update.exploration_slots is not None:
                if update.exploration_slots >= cap:
                    raise ValueError(f"exploration_slots ({update.exploration_slots}) must be below max_markets_cap ({cap})")
                workspace.scanner_exploration_slots = update.exploration_slots
            elif update.aggressiveness is not None:
                workspace.scanner_exploration_slots = clamp_exploration_slots(preset.default_exploration_slots, cap)
            elif workspace.scanner_exploration_slots is not None:
                workspace.scanner_exploration_slots = clamp_exploration_slots(workspace.scanner_exploration_slots, cap)
            workspace.scanner_max_markets_cap = cap
            await session.commit()
    logger.info(
        "Opportunity selection updated",
        workspace_id=ctx.workspace_id,
        aggressiveness=aggressiveness,
        exploration_slots=exploration_slots,
        max_markets_cap=max_markets_cap,
    )
    return await get_opportunity_selection(ctx)

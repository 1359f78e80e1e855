"""
Optimizer worker: runs the rotation optimizer for every due workspace.
Passes are due on each workspace's interval or when "Run Now" set
requested_run_at. Status goes to optimizer_snapshots for the API/UI.
Run from backend: python -m workers.optimizer_worker
"""

import asyncio
import os
import sys
from typing import Optional

# Ensure backend is on path when run as python -m workers.optimizer_worker from project root
_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from config import settings
from interfaces import MetricsFeed
from models.database import AsyncSessionLocal, init_database
from services.metrics_feed import build_default_feed
from services.optimizer_context import WorkspaceOptimizerContext
from services.optimizer_shared_state import get_workspace, list_workspace_ids, rotation_is_due
from services.roster_errors import PassAlreadyRunning, RosterError
from services.rotation_optimizer import RotationOptimizer, rotation_optimizer
from utils.logger import get_logger, setup_logging

logger = get_logger("optimizer_worker")


async def run_cycle(ctx: WorkspaceOptimizerContext, optimizer: Optional[RotationOptimizer] = None) -> int:
    """Run every due workspace once. Returns the number of passes started.

    ``ctx`` supplies the session factory, feed, locks and clock; its
    workspace_id is replaced per workspace.
    """
    optimizer = optimizer or rotation_optimizer
    async with ctx.session() as session:
        workspace_ids = await list_workspace_ids(session)

    started = 0
    for workspace_id in workspace_ids:
        workspace_ctx = ctx.for_workspace(workspace_id)
        async with workspace_ctx.session() as session:
            workspace = await get_workspace(session, workspace_id)
            requested = workspace.requested_run_at is not None
            due = rotation_is_due(workspace, workspace_ctx.now())
        if not due:
            continue
        started += 1
        try:
            await optimizer.run_pass(workspace_ctx, trigger="manual" if requested else "scheduled")
        except PassAlreadyRunning:
            logger.info("Rotation pass already running; skipping", workspace_id=workspace_id)
        except RosterError as exc:
            logger.warning(
                "Rotation pass failed",
                workspace_id=workspace_id,
                error=exc.code,
                retryable=exc.retryable,
                detail=exc.message,
            )
        except Exception as exc:
            # One failing workspace must not stop the others.
            logger.exception("Rotation pass crashed", workspace_id=workspace_id, error=str(exc))
    return started


async def _run_loop(feed: MetricsFeed) -> None:
    ctx = WorkspaceOptimizerContext(workspace_id="", session_factory=AsyncSessionLocal, metrics_feed=feed)
    while True:
        try:
            await run_cycle(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Optimizer cycle failed", error=str(exc))
        await asyncio.sleep(max(1.0, settings.WORKER_POLL_SECONDS))


async def main() -> None:
    """Init DB and run the optimizer loop."""
    setup_logging()
    await init_database()
    logger.info("Database initialized")
    feed = build_default_feed()
    try:
        await _run_loop(feed)
    except asyncio.CancelledError:
        logger.info("Optimizer worker shutting down")
    finally:
        await feed.close()


if __name__ == "__main__":
    asyncio.run(main())

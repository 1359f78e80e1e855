"""
Scanner worker: re-scores markets and refreshes core/exploration selections.
Each workspace scans on SCANNER_INTERVAL_SECONDS or when a scan was requested.
Run from backend: python -m workers.scanner_worker
"""

import asyncio
import os
import sys
from typing import Optional

# Ensure backend is on path when run as python -m workers.scanner_worker from project root
_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from config import settings
from interfaces import MetricsFeed
from models.database import AsyncSessionLocal, init_database
from services.metrics_feed import build_default_feed
from services.opportunity_scanner import OpportunityScanner, opportunity_scanner
from services.optimizer_context import WorkspaceOptimizerContext
from services.optimizer_shared_state import get_workspace, list_workspace_ids, scanner_is_due, write_snapshot
from services.roster_errors import PassAlreadyRunning
from services.workspace_locks import SCANNER_LOOP
from utils.logger import get_logger, setup_logging

logger = get_logger("scanner_worker")


async def run_cycle(ctx: WorkspaceOptimizerContext, scanner: Optional[OpportunityScanner] = None) -> int:
    """Scan every due workspace once. Returns the number of scans started."""
    scanner = scanner or opportunity_scanner
    async with ctx.session() as session:
        workspace_ids = await list_workspace_ids(session)

    started = 0
    for workspace_id in workspace_ids:
        workspace_ctx = ctx.for_workspace(workspace_id)
        async with workspace_ctx.session() as session:
            workspace = await get_workspace(session, workspace_id)
            requested = workspace.scanner_requested_run_at is not None
            due = scanner_is_due(workspace, workspace_ctx.now())
        if not due:
            continue
        started += 1
        try:
            await scanner.run_scan(workspace_ctx, trigger="manual" if requested else "scheduled")
        except PassAlreadyRunning:
            logger.info("Scanner pass already running; skipping", workspace_id=workspace_id)
        except Exception as exc:
            logger.exception("Scanner pass failed", workspace_id=workspace_id, error=str(exc))
            async with workspace_ctx.session() as session:
                await write_snapshot(
                    session,
                    workspace_id,
                    SCANNER_LOOP,
                    {
                        "running": False,
                        "last_status": "error",
                        "last_error": str(exc),
                        "current_activity": f"Last scan error: {exc}",
                    },
                )
    return started


async def _run_scan_loop(feed: MetricsFeed) -> None:
    ctx = WorkspaceOptimizerContext(workspace_id="", session_factory=AsyncSessionLocal, metrics_feed=feed)
    while True:
        try:
            await run_cycle(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Scanner cycle failed", error=str(exc))
        await asyncio.sleep(max(1.0, settings.WORKER_POLL_SECONDS))


async def main() -> None:
    """Init DB and run scan loop."""
    setup_logging()
    await init_database()
    logger.info("Database initialized")
    feed = build_default_feed()
    try:
        await _run_scan_loop(feed)
    except asyncio.CancelledError:
        logger.info("Scanner worker shutting down")
    finally:
        await feed.close()


if __name__ == "__main__":
    asyncio.run(main())

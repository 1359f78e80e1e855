"""Explicit per-workspace context passed into every roster operation."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from config import settings
from interfaces import MetricsFeed
from services.optimizer_shared_state import release_lease, try_acquire_lease
from services.roster_errors import PassAlreadyRunning
from services.workspace_locks import WorkspaceLockRegistry
from utils.utcnow import utcnow

# Shared by every context built in this process so manual and scheduled
# passes contend on the same per-workspace locks.
default_lock_registry = WorkspaceLockRegistry()


@dataclass
class WorkspaceOptimizerContext:
    workspace_id: str
    session_factory: sessionmaker
    metrics_feed: MetricsFeed
    locks: WorkspaceLockRegistry = field(default_factory=lambda: default_lock_registry)
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()

    def session(self) -> AsyncSession:
        return self.session_factory()

    def for_workspace(self, workspace_id: str) -> "WorkspaceOptimizerContext":
        return WorkspaceOptimizerContext(
            workspace_id=workspace_id,
            session_factory=self.session_factory,
            metrics_feed=self.metrics_feed,
            locks=self.locks,
            clock=self.clock,
        )

    @asynccontextmanager
    async def exclusive(
        self,
        loop: str,
        *,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[None]:
        """Hold the in-process lock and the DB lease for ``loop`` on this workspace.

        ``wait=False`` raises ``PassAlreadyRunning`` as soon as either is
        taken; otherwise both are awaited within one ``timeout`` budget.
        """
        clock = asyncio.get_running_loop().time
        deadline = None if timeout is None else clock() + timeout
        async with self.locks.acquire(loop, self.workspace_id, wait=wait, timeout=timeout):
            await self._acquire_lease(loop, wait=wait, deadline=deadline, clock=clock)
            try:
                yield
            finally:
                async with self.session() as session:
                    await release_lease(session, self.workspace_id, loop, self.locks.owner)

    async def _acquire_lease(self, loop: str, *, wait: bool, deadline: Optional[float], clock) -> None:
        while True:
            async with self.session() as session:
                if await try_acquire_lease(
                    session,
                    self.workspace_id,
                    loop,
                    self.locks.owner,
                    settings.WORKSPACE_LEASE_TTL_SECONDS,
                ):
                    return
            if not wait:
                raise PassAlreadyRunning(
                    f"A {loop} pass is already running in another process",
                    workspace_id=self.workspace_id,
                    loop=loop,
                )
            if deadline is not None and clock() >= deadline:
                raise PassAlreadyRunning(
                    f"Timed out waiting for the {loop} pass running in another process",
                    workspace_id=self.workspace_id,
                    loop=loop,
                )
            await asyncio.sleep(settings.WORKSPACE_LEASE_POLL_SECONDS)

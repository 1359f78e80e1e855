"""Per-workspace mutual exclusion for the two control loops.

The in-process locks here serialize passes inside one process. Passes in
different processes (the workers and whoever calls the roster service)
are serialized by the DB lease in ``optimizer_shared_state``; see
``WorkspaceOptimizerContext.exclusive``.
"""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from services.roster_errors import PassAlreadyRunning

ROTATION_LOOP = "rotation"
SCANNER_LOOP = "scanner"


class WorkspaceLockRegistry:
    """One ``asyncio.Lock`` per (loop, workspace).

    Scheduled runs use ``wait=False`` and skip a busy workspace; manual
    triggers wait (optionally bounded by ``timeout``) for the in-flight
    pass to finish. ``owner`` names this registry as a lease holder.
    """

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    def lock_for(self, loop: str, workspace_id: str) -> asyncio.Lock:
        key = (loop, workspace_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, loop: str, workspace_id: str) -> bool:
        lock = self._locks.get((loop, workspace_id))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def acquire(
        self,
        loop: str,
        workspace_id: str,
        *,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[None]:
        lock = self.lock_for(loop, workspace_id)
        if not wait:
            if lock.locked():
                raise PassAlreadyRunning(
                    f"A {loop} pass is already running",
                    workspace_id=workspace_id,
                    loop=loop,
                )
            await lock.acquire()
        elif timeout is None:
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise PassAlreadyRunning(
                    f"Timed out waiting for the running {loop} pass",
                    workspace_id=workspace_id,
                    loop=loop,
                    waited_seconds=timeout,
                ) from exc
        try:
            yield
        finally:
            lock.release()

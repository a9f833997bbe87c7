"""Deferred workspace deletion.

Removing a workspace right after its dev server was killed can fail while
file handles are still being released (notably on Windows). Such paths are
parked in a pending set and retried by a periodic background sweep, so
cleanup never blocks or fails a caller. At startup, workspaces abandoned for
a long time are removed as well.
"""

import asyncio
import time
from collections.abc import Callable
from pathlib import Path

import structlog

from devserver.workspace import WorkspaceStore

logger = structlog.get_logger()

SECONDS_PER_HOUR = 3600.0


class CleanupScheduler:
    """Tracks workspaces pending deletion and sweeps them.

    Attributes:
        store: The workspace store whose directories are cleaned.
        interval_seconds: Period of the pending-deletion sweep.
        stale_max_age_hours: Startup sweep age for persistent workspaces.
        legacy_max_age_hours: Startup sweep age for legacy timestamped workspaces.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        is_in_use: Callable[[Path], bool] | None = None,
        interval_seconds: float = 300.0,
        stale_max_age_hours: float = 168.0,
        legacy_max_age_hours: float = 1.0,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.stale_max_age_hours = stale_max_age_hours
        self.legacy_max_age_hours = legacy_max_age_hours
        self._is_in_use = is_in_use or (lambda path: False)
        self._pending: set[Path] = set()
        self._claims: dict[Path, asyncio.Lock] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> frozenset[Path]:
        return frozenset(self._pending)

    def schedule(self, path: Path) -> None:
        """Mark a workspace for deferred deletion."""
        self._pending.add(path)
        logger.debug("workspace_cleanup_scheduled", path=str(path))

    def discard(self, path: Path) -> None:
        """Cancel a pending deletion, e.g. when the session is started again."""
        self._pending.discard(path)

    def claim(self, path: Path) -> asyncio.Lock:
        """Return the lock that serializes removal of ``path`` with its reuse.

        The sweep removes a path only while holding its lock, and callers
        that are about to write into the directory take it to mark the path
        in use.
        """
        lock = self._claims.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._claims[path] = lock
        return lock

    def remove_now(self, path: Path) -> bool:
        """Try to remove a workspace, deferring it on failure.

        Returns:
            True if the directory is gone, False if removal was deferred.
        """
        if self._is_in_use(path) or not self._try_remove(path):
            self.schedule(path)
            return False
        self._pending.discard(path)
        return True

    async def sweep_pending(self) -> int:
        """Retry every pending deletion once.

        The in-use check runs on the event loop under the path's claim, so a
        session being started concurrently is never removed from under it.
        Paths still locked, or belonging to a running session, stay pending.

        Returns:
            Number of workspaces removed.
        """
        loop = asyncio.get_running_loop()
        removed = 0
        for path in list(self._pending):
            async with self.claim(path):
                if path not in self._pending or self._is_in_use(path):
                    continue
                if not await loop.run_in_executor(None, self._try_remove, path):
                    continue
                self._pending.discard(path)
            removed += 1
        if removed:
            logger.info(
                "workspace_cleanup_sweep",
                removed=removed,
                still_pending=len(self._pending),
            )
        return removed

    def startup_sweep(self, now: float | None = None) -> int:
        """Remove abandoned workspaces older than the configured ages.

        Legacy timestamped directories use the short threshold, persistent
        workspaces the long one. Failures are deferred to the periodic sweep.

        Returns:
            Number of workspaces removed.
        """
        now = now if now is not None else time.time()
        removed = 0
        for entry in self.store.list_workspaces():
            if self._is_in_use(entry.path):
                continue
            max_age_hours = (
                self.legacy_max_age_hours if entry.legacy else self.stale_max_age_hours
            )
            if entry.age_seconds(now) <= max_age_hours * SECONDS_PER_HOUR:
                continue
            if self.remove_now(entry.path):
                removed += 1
        logger.info(
            "workspace_startup_sweep_completed",
            removed=removed,
            pending=len(self._pending),
        )
        return removed

    def start_sweep_loop(self) -> asyncio.Task[None]:
        """Start the periodic pending-deletion sweep.

        The task runs until cancelled (typically at application shutdown).

        Returns:
            The background asyncio.Task.
        """

        async def _loop() -> None:
            logger.info(
                "workspace_cleanup_loop_started",
                interval_seconds=self.interval_seconds,
            )
            while True:
                try:
                    await asyncio.sleep(self.interval_seconds)
                    if self._pending:
                        await self.sweep_pending()
                except asyncio.CancelledError:
                    logger.info("workspace_cleanup_loop_stopped")
                    return
                except Exception as e:
                    logger.error("workspace_cleanup_loop_error", error=str(e))

        if self._task is None or self._task.done():
            self._task = asyncio.create_task(_loop(), name="workspace_cleanup")
        return self._task

    async def stop_sweep_loop(self) -> None:
        """Cancel the periodic sweep and wait for it to exit."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _try_remove(self, path: Path) -> bool:
        try:
            self.store.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug("workspace_removal_deferred", path=str(path), error=str(e))
            return False
        return True

"""Dev server orchestration.

``DevServerManager`` is the session registry and the entry point for the
five operations exposed to callers: start, stop, status, update_files and
delete. It owns the in-memory session records and composes the workspace
store, port allocator, process runner and cleanup scheduler.

Lifecycle of a session:
    ABSENT -> STARTING -> RUNNING -> STOPPING -> ABSENT
    RUNNING -> ABSENT on unexpected exit (crash)
    STARTING -> ABSENT on install or spawn failure

Concurrency: a registry lock makes port allocation and registry mutation
atomic across sessions; a per-session lock serializes operations on the
same session ID.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from devserver.cleanup import CleanupScheduler
from devserver.errors import (
    NotRunningError,
    StartFailedError,
    WorkspaceConflictError,
    WorkspaceNotFoundError,
)
from devserver.ports import PortAllocator
from devserver.process import ProcessHandle, ProcessRunner
from devserver.termination import get_process_tree_terminator
from devserver.urls import resolve_url
from devserver.workspace import ProjectFile, WorkspaceStore

logger = structlog.get_logger()

# Hook applied to a file tree before it is written: (files, host_prefix, port) -> files.
FileTransform = Callable[[list[ProjectFile], str, int], list[ProjectFile]]


class DevServerState(StrEnum):
    """Lifecycle state of a recorded dev server."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class DevServerInfo:
    """The registry record of a session's dev server."""

    session_id: str
    port: int
    url: str
    workspace_path: Path
    handle: ProcessHandle
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: DevServerState = DevServerState.STARTING


@dataclass
class DevServerStatus:
    """Point-in-time view of a session, as reported to callers."""

    running: bool
    url: str | None = None
    port: int | None = None
    pid: int | None = None
    started_at: datetime | None = None


class DevServerManager:
    """Runs one dev server per session on a single node.

    Attributes:
        store: Workspace store.
        ports: Port allocator.
        runner: Install/run/terminate implementation.
        cleanup: Deferred workspace deletion.
        host_prefix: Host prefix used to build preview URLs.
        serve_domain: Domain used to template raw-IPv4 prefixes.
        start_grace_seconds: Wait after spawn before checking for an early exit.
        port_release_delay_seconds: Wait after termination before the port is freed.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        ports: PortAllocator,
        runner: ProcessRunner,
        host_prefix: str = "http://localhost",
        serve_domain: str = "",
        start_grace_seconds: float = 3.0,
        port_release_delay_seconds: float = 0.5,
        cleanup_interval_seconds: float = 300.0,
        stale_workspace_max_age_hours: float = 168.0,
        legacy_workspace_max_age_hours: float = 1.0,
        file_transform: FileTransform | None = None,
    ) -> None:
        self.store = store
        self.ports = ports
        self.runner = runner
        self.host_prefix = host_prefix
        self.serve_domain = serve_domain
        self.start_grace_seconds = start_grace_seconds
        self.port_release_delay_seconds = port_release_delay_seconds
        self.file_transform = file_transform
        self.cleanup = CleanupScheduler(
            store,
            is_in_use=self._is_workspace_in_use,
            interval_seconds=cleanup_interval_seconds,
            stale_max_age_hours=stale_workspace_max_age_hours,
            legacy_max_age_hours=legacy_workspace_max_age_hours,
        )
        self._servers: dict[str, DevServerInfo] = {}
        self._starting: set[Path] = set()
        self._registry_lock = asyncio.Lock()
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._watchers: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls, settings: Any, file_transform: FileTransform | None = None
    ) -> "DevServerManager":
        """Build a manager from application settings."""
        terminator = get_process_tree_terminator(settings.process_kill_strategy)
        return cls(
            store=WorkspaceStore(settings.workspace_root, settings.workspace_prefix),
            ports=PortAllocator(settings.dev_server_port_min, settings.dev_server_port_max),
            runner=ProcessRunner(
                terminator,
                package_manager=settings.package_manager,
                install_args=settings.install_args,
                install_timeout=settings.install_timeout_seconds,
                terminate_timeout=settings.terminate_timeout_seconds,
            ),
            host_prefix=settings.dev_server_host_prefix,
            serve_domain=settings.iframe_serve_domain,
            start_grace_seconds=settings.start_grace_seconds,
            port_release_delay_seconds=settings.port_release_delay_seconds,
            cleanup_interval_seconds=settings.cleanup_interval_seconds,
            stale_workspace_max_age_hours=settings.stale_workspace_max_age_hours,
            legacy_workspace_max_age_hours=settings.legacy_workspace_max_age_hours,
            file_transform=file_transform,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    async def start(self, session_id: str, files: list[ProjectFile]) -> str:
        """Start (or reuse) the dev server of a session.

        If the session is already running, the files are synced and the
        existing URL is returned without spawning a second process.

        Args:
            session_id: The session to start.
            files: The complete project tree to materialize.

        Returns:
            The preview URL.

        Raises:
            ValueError: If the session ID or a file path is invalid.
            WorkspaceConflictError: If the workspace belongs to another session.
            ResourceExhaustedError: If no port is free.
            InstallFailedError: If dependency installation fails.
            StartFailedError: If the dev server exits within the grace period.
        """
        workspace_path = self.store.path_for(session_id)

        async with self._session_lock(session_id):
            info = self._servers.get(session_id)
            if info is not None and info.handle.is_running:
                await self._write_files(info.workspace_path, files, info.port)
                logger.info(
                    "dev_server_already_running",
                    session_id=session_id,
                    port=info.port,
                    url=info.url,
                )
                return info.url
            if info is not None:
                await self._discard_dead(info)

            # Claimed on the loop so an in-flight sweep either finishes
            # removing the directory first or sees it in use.
            async with self.cleanup.claim(workspace_path):
                self._starting.add(workspace_path)
                self.cleanup.discard(workspace_path)
            try:
                return await self._start_locked(session_id, files)
            finally:
                self._starting.discard(workspace_path)

    async def stop(self, session_id: str) -> None:
        """Stop a session's dev server, keeping its workspace.

        Raises:
            NotRunningError: If the session has no live dev server.
        """
        async with self._session_lock(session_id):
            await self._stop_locked(session_id)

    def status(self, session_id: str) -> DevServerStatus:
        """Report whether a session's dev server is running.

        A record whose process was killed or has exited counts as not
        running even before the exit watcher prunes it.
        """
        info = self._servers.get(session_id)
        if info is None or not info.handle.is_running:
            return DevServerStatus(running=False)
        return DevServerStatus(
            running=True,
            url=info.url,
            port=info.port,
            pid=info.handle.pid,
            started_at=info.started_at,
        )

    async def update_files(self, session_id: str, files: list[ProjectFile]) -> int:
        """Sync files into a running session without restarting it.

        Returns:
            Number of files whose content changed on disk.

        Raises:
            NotRunningError: If the session has no live dev server.
            ValueError: If a file path is invalid.
        """
        async with self._session_lock(session_id):
            info = self._servers.get(session_id)
            if info is None or not info.handle.is_running:
                raise NotRunningError(session_id)
            written = await self._write_files(info.workspace_path, files, info.port)
            logger.info(
                "dev_server_files_updated",
                session_id=session_id,
                total=len(files),
                written=written,
            )
            return written

    async def delete(self, session_id: str) -> bool:
        """Stop a session if running, then remove its workspace.

        Removal that fails (e.g. files still locked) is deferred to the
        cleanup sweep rather than reported.

        Returns:
            True if the workspace was removed immediately, False if deferred.

        Raises:
            ValueError: If the session ID is invalid.
            WorkspaceNotFoundError: If the session has no workspace on disk.
            WorkspaceConflictError: If the directory belongs to another session.
        """
        workspace_path = self.store.path_for(session_id)
        loop = asyncio.get_running_loop()

        async with self._session_lock(session_id):
            info = self._servers.get(session_id)
            if info is not None and info.handle.is_running:
                await self._stop_locked(session_id)
            elif info is not None:
                await self._discard_dead(info)

            if not await loop.run_in_executor(None, workspace_path.is_dir):
                raise WorkspaceNotFoundError(session_id)
            owner = await loop.run_in_executor(None, self.store.read_owner, workspace_path)
            if owner is not None and owner != session_id:
                raise WorkspaceConflictError(session_id, owner)

            async with self.cleanup.claim(workspace_path):
                removed = await loop.run_in_executor(
                    None, self.cleanup.remove_now, workspace_path
                )
            async with self._registry_lock:
                self.ports.forget(session_id)

        logger.info(
            "workspace_deleted",
            session_id=session_id,
            path=str(workspace_path),
            deferred=not removed,
        )
        return removed

    # =========================================================================
    # Service lifecycle
    # =========================================================================

    async def startup(self) -> None:
        """Sweep stale workspaces and start the periodic cleanup loop."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.cleanup.startup_sweep)
        except OSError as e:
            logger.warning("workspace_startup_sweep_failed", error=str(e))
        self.cleanup.start_sweep_loop()

    async def shutdown(self) -> None:
        """Stop every running dev server and the cleanup loop."""
        await self.cleanup.stop_sweep_loop()

        session_ids = list(self._servers)
        results = await asyncio.gather(
            *(self._shutdown_session(session_id) for session_id in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "dev_server_shutdown_failed",
                    session_id=session_id,
                    error=str(result),
                )

        # Watchers of crashed servers may still be killing leftover trees.
        if self._watchers:
            _, pending = await asyncio.wait(
                set(self._watchers), timeout=self.runner.terminate_timeout + 1.0
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("dev_server_manager_shutdown", stopped=len(session_ids))

    def get_active_count(self) -> int:
        """Return the number of running dev servers."""
        return sum(1 for info in self._servers.values() if info.handle.is_running)

    def get_active_session_ids(self) -> list[str]:
        """Return the IDs of sessions with a running dev server."""
        return [
            session_id
            for session_id, info in self._servers.items()
            if info.handle.is_running
        ]

    def get_pending_cleanup_count(self) -> int:
        return len(self.cleanup.pending)

    # =========================================================================
    # Internals
    # =========================================================================

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def _shutdown_session(self, session_id: str) -> None:
        async with self._session_lock(session_id):
            info = self._servers.get(session_id)
            if info is None:
                return
            if info.handle.is_running:
                await self._stop_locked(session_id)
            else:
                await self._discard_dead(info)

    def _is_workspace_in_use(self, path: Path) -> bool:
        if path in self._starting:
            return True
        return any(info.workspace_path == path for info in list(self._servers.values()))

    async def _start_locked(self, session_id: str, files: list[ProjectFile]) -> str:
        loop = asyncio.get_running_loop()
        workspace_path, is_first_time = await loop.run_in_executor(
            None, self.store.ensure, session_id
        )

        async with self._registry_lock:
            port = self.ports.allocate(session_id)

        try:
            await self._write_files(workspace_path, files, port)
            if is_first_time:
                await loop.run_in_executor(
                    None, self.store.clear_install_stamp, workspace_path
                )
                await self.runner.install(workspace_path, port, session_id)
                await loop.run_in_executor(None, self.store.mark_installed, workspace_path)
            handle = await self.runner.run(workspace_path, port, session_id)
        except BaseException:
            async with self._registry_lock:
                self.ports.release(session_id)
            raise

        url = resolve_url(self.host_prefix, port, self.serve_domain)
        info = DevServerInfo(
            session_id=session_id,
            port=port,
            url=url,
            workspace_path=workspace_path,
            handle=handle,
        )
        async with self._registry_lock:
            self._servers[session_id] = info
        self._watch(info)

        # Heuristic liveness check, not a readiness probe.
        await asyncio.sleep(self.start_grace_seconds)
        if not handle.is_running:
            await handle.drain()
            async with self._registry_lock:
                if self._servers.get(session_id) is info:
                    del self._servers[session_id]
                self.ports.release(session_id)
            excerpt = handle.stderr_excerpt() or handle.stdout_excerpt()
            logger.error(
                "dev_server_start_failed",
                session_id=session_id,
                exit_code=handle.exit_code,
                stderr=excerpt,
            )
            raise StartFailedError(exit_code=handle.exit_code, stderr_excerpt=excerpt)

        info.state = DevServerState.RUNNING
        logger.info(
            "dev_server_started",
            session_id=session_id,
            port=port,
            url=url,
            pid=handle.pid,
            first_install=is_first_time,
        )
        return url

    async def _stop_locked(self, session_id: str) -> None:
        info = self._servers.get(session_id)
        if info is None or not info.handle.is_running:
            if info is not None:
                await self._discard_dead(info)
            raise NotRunningError(session_id)

        info.state = DevServerState.STOPPING
        await self.runner.terminate(info.handle)
        if self.port_release_delay_seconds > 0:
            await asyncio.sleep(self.port_release_delay_seconds)

        async with self._registry_lock:
            if self._servers.get(session_id) is info:
                del self._servers[session_id]
            self.ports.release(session_id)

        logger.info(
            "dev_server_stopped",
            session_id=session_id,
            port=info.port,
            exit_code=info.handle.exit_code,
        )

    async def _discard_dead(self, info: DevServerInfo) -> None:
        """Drop a record whose process already exited.

        The tree is terminated first: descendants may still hold the port,
        which must not be handed out again until they are gone.
        """
        await self.runner.terminate(info.handle)
        await self._forget(info)

    async def _forget(self, info: DevServerInfo) -> None:
        async with self._registry_lock:
            if self._servers.get(info.session_id) is info:
                del self._servers[info.session_id]
                self.ports.release(info.session_id)

    async def _write_files(
        self, workspace_path: Path, files: list[ProjectFile], port: int
    ) -> int:
        if self.file_transform is not None:
            files = self.file_transform(list(files), self.host_prefix, port)
        return await asyncio.get_running_loop().run_in_executor(
            None, self.store.write, workspace_path, files
        )

    def _watch(self, info: DevServerInfo) -> None:
        task = asyncio.create_task(
            self._watch_exit(info), name=f"dev_server_watch_{info.session_id}"
        )
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _watch_exit(self, info: DevServerInfo) -> None:
        """Prune the record when a dev server exits on its own."""
        exit_code = await info.handle.wait()
        if info.handle.killed:
            return

        await self._discard_dead(info)
        logger.warning(
            "dev_server_exited",
            session_id=info.session_id,
            exit_code=exit_code,
            port=info.port,
            output=info.handle.output_tail(500),
        )

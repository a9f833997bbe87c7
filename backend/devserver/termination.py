"""Process tree termination strategies.

A dev server is usually a package manager wrapper that forks the real
server binary, so killing only the spawned PID leaks the child (and the
port it listens on). Each strategy decides how children are spawned so the
whole tree can later be terminated, and how that termination happens:

- POSIX: the child leads a new session/process group; the group is sent
  SIGTERM, then SIGKILL once the bounded wait elapses.
- Windows: the child gets a new process group; ``taskkill /T`` ends the
  tree, then ``taskkill /T /F`` forces it.
"""

import asyncio
import os
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger()

# Poll interval while waiting for a process group to empty.
GROUP_POLL_INTERVAL_SECONDS = 0.05

# Extra wait for the kernel to tear down a group after SIGKILL.
FORCE_KILL_CONFIRM_SECONDS = 1.0

# Poll interval while waiting for a single process to exit.
EXIT_POLL_INTERVAL_SECONDS = 0.05


async def wait_for_exit(
    process: asyncio.subprocess.Process, timeout: float | None = None
) -> int | None:
    """Wait until ``process`` itself has exited.

    ``Process.wait()`` only resolves once the stdout/stderr pipes are closed
    as well, which never happens while a descendant still holds them. The
    return code is set as soon as the process is reaped, so poll that.

    Returns:
        The exit code, or None if ``timeout`` elapsed first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while process.returncode is None:
        if deadline is not None and time.monotonic() >= deadline:
            return None
        await asyncio.sleep(EXIT_POLL_INTERVAL_SECONDS)
    return process.returncode


class ProcessTreeTerminator(ABC):
    """Strategy for spawning and terminating a process together with its descendants."""

    name: str = "base"

    @abstractmethod
    def spawn_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``asyncio.create_subprocess_exec``."""

    @abstractmethod
    async def terminate(
        self, process: asyncio.subprocess.Process, timeout: float
    ) -> None:
        """Terminate ``process`` and all of its descendants.

        Sends a graceful stop first, waits up to ``timeout`` seconds, then
        forces the kill. Returns once the tree is gone or the bounded waits
        have elapsed.
        """


class PosixProcessGroupTerminator(ProcessTreeTerminator):
    """Kill the process group created by ``start_new_session=True``."""

    name = "posix"

    def spawn_kwargs(self) -> dict[str, Any]:
        return {"start_new_session": True}

    async def terminate(
        self, process: asyncio.subprocess.Process, timeout: float
    ) -> None:
        # The child is the session leader, so its PID is the group ID. The
        # group outlives the leader while any descendant is still alive.
        pgid = process.pid

        if not self._signal_group(pgid, signal.SIGTERM):
            await wait_for_exit(process, timeout)
            return

        if await self._wait_group_gone(process, pgid, timeout):
            logger.debug("process_tree_terminated", pid=pgid, forced=False)
            return

        logger.warning("process_tree_force_kill", pid=pgid, timeout=timeout)
        self._signal_group(pgid, signal.SIGKILL)
        if not await self._wait_group_gone(process, pgid, FORCE_KILL_CONFIRM_SECONDS):
            logger.error("process_tree_kill_unconfirmed", pid=pgid)
            return
        logger.debug("process_tree_terminated", pid=pgid, forced=True)

    @staticmethod
    def _signal_group(pgid: int, sig: int) -> bool:
        """Signal a process group. Returns False if the group no longer exists."""
        try:
            os.killpg(pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning("process_group_signal_denied", pid=pgid, error=str(e))
            return True

    @staticmethod
    def _group_alive(pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def _wait_group_gone(
        self, process: asyncio.subprocess.Process, pgid: int, timeout: float
    ) -> bool:
        deadline = time.monotonic() + timeout
        await wait_for_exit(process, timeout)

        while self._group_alive(pgid):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(GROUP_POLL_INTERVAL_SECONDS)
        return process.returncode is not None


class WindowsTaskkillTerminator(ProcessTreeTerminator):
    """Kill the process tree with ``taskkill /T``."""

    name = "windows"

    def spawn_kwargs(self) -> dict[str, Any]:
        return {
            "creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0x00000200)
        }

    async def terminate(
        self, process: asyncio.subprocess.Process, timeout: float
    ) -> None:
        if process.returncode is not None:
            return

        await self._taskkill(process.pid, force=False)
        if await wait_for_exit(process, timeout) is not None:
            logger.debug("process_tree_terminated", pid=process.pid, forced=False)
            return

        logger.warning("process_tree_force_kill", pid=process.pid, timeout=timeout)
        await self._taskkill(process.pid, force=True)
        if await wait_for_exit(process, timeout) is None:
            logger.error("process_tree_kill_unconfirmed", pid=process.pid)
            return
        logger.debug("process_tree_terminated", pid=process.pid, forced=True)

    @staticmethod
    async def _taskkill(pid: int, force: bool) -> int | None:
        cmd = ["taskkill", "/PID", str(pid), "/T"]
        if force:
            cmd.append("/F")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await asyncio.wait_for(proc.wait(), timeout=10)
        except (OSError, TimeoutError) as e:
            logger.warning("taskkill_failed", pid=pid, force=force, error=str(e))
            return None


def get_process_tree_terminator(strategy: str = "auto") -> ProcessTreeTerminator:
    """Select the termination strategy for this platform.

    Args:
        strategy: ``auto`` (by platform), ``posix`` or ``windows``.

    Raises:
        ValueError: If the strategy is unknown or unsupported on this platform.
    """
    if strategy == "auto":
        strategy = "windows" if os.name == "nt" else "posix"

    if strategy == "posix":
        if not hasattr(os, "killpg"):
            raise ValueError("posix process kill strategy is not supported on this platform")
        return PosixProcessGroupTerminator()
    if strategy == "windows":
        return WindowsTaskkillTerminator()
    raise ValueError(f"Unknown process kill strategy: {strategy}")

"""Dependency installation and dev server processes.

``ProcessRunner`` shells out to the configured package manager. Install runs
to completion and fails loudly; the dev server is spawned in its own process
group (see ``devserver.termination``) with stdin detached and stdout/stderr
relayed to the log only.
"""

import asyncio
import json
import os
import re
import shutil
from collections import deque
from pathlib import Path

import structlog

from devserver.errors import InstallFailedError, StartFailedError
from devserver.security import sanitize_output, tail_excerpt
from devserver.termination import ProcessTreeTerminator, wait_for_exit

logger = structlog.get_logger()

VITE_CONFIG_NAMES = (
    "vite.config.ts",
    "vite.config.js",
    "vite.config.mjs",
    "vite.config.mts",
    "vite.config.cjs",
)

READ_CHUNK_SIZE = 4096
OUTPUT_TAIL_CHUNKS = 32

# Output chunks worth surfacing above debug level.
HMR_PATTERN = re.compile(r"hmr|websocket|\[vite\]", re.IGNORECASE)
ERROR_PATTERN = re.compile(r"error|failed", re.IGNORECASE)


def resolve_executable(name: str) -> str:
    """Resolve a command on PATH (``npm`` becomes ``npm.cmd`` on Windows)."""
    return shutil.which(name) or name


def build_env(port: int) -> dict[str, str]:
    """Environment for install and run: inherited plus PORT and NODE_ENV."""
    env = dict(os.environ)
    env["PORT"] = str(port)
    env["NODE_ENV"] = "development"
    return env


def _read_manifest(workspace_path: Path) -> str:
    try:
        return (workspace_path / "package.json").read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


def is_vite_project(workspace_path: Path) -> bool:
    """Return True if the project is served by Vite."""
    if any((workspace_path / name).is_file() for name in VITE_CONFIG_NAMES):
        return True
    return "vite" in _read_manifest(workspace_path)


def detect_start_command(
    workspace_path: Path, port: int, package_manager: str = "npm"
) -> list[str]:
    """Pick the command that starts the project's dev server.

    - Vite projects: ``<pm> run dev -- --port <port> --host``.
    - Otherwise ``<pm> run start`` when the manifest has a ``start`` script,
      falling back to ``<pm> run dev``.

    Args:
        workspace_path: The workspace directory.
        port: The port the server must listen on.
        package_manager: Package manager executable.

    Returns:
        The argv of the dev server command.
    """
    if is_vite_project(workspace_path):
        return [package_manager, "run", "dev", "--", "--port", str(port), "--host"]

    scripts: dict[str, object] = {}
    manifest = _read_manifest(workspace_path)
    if manifest:
        try:
            data = json.loads(manifest)
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict) and isinstance(data.get("scripts"), dict):
            scripts = data["scripts"]

    script = "start" if "start" in scripts else "dev"
    return [package_manager, "run", script]


class ProcessHandle:
    """A running dev server process owned by one session.

    Stdout and stderr are consumed by background reader tasks so the pipes
    never fill up; the last chunks of each stream are kept for diagnostics.

    Attributes:
        process: The underlying asyncio subprocess.
        session_id: Session that owns the process.
        command: The argv the process was started with.
        killed: Set once termination of the process tree was requested.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        session_id: str,
        command: list[str],
    ) -> None:
        self.process = process
        self.session_id = session_id
        self.command = command
        self.killed = False
        self._stdout_tail: deque[str] = deque(maxlen=OUTPUT_TAIL_CHUNKS)
        self._stderr_tail: deque[str] = deque(maxlen=OUTPUT_TAIL_CHUNKS)
        self._readers = [
            asyncio.create_task(
                self._pump(process.stdout, "stdout", self._stdout_tail),
                name=f"dev_server_stdout_{session_id}",
            ),
            asyncio.create_task(
                self._pump(process.stderr, "stderr", self._stderr_tail),
                name=f"dev_server_stderr_{session_id}",
            ),
        ]

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode

    @property
    def is_running(self) -> bool:
        return not self.killed and self.process.returncode is None

    async def wait(self) -> int | None:
        """Wait for the spawned process to exit, even if descendants linger."""
        return await wait_for_exit(self.process)

    async def drain(self, timeout: float = 1.0) -> None:
        """Wait for the output readers to reach end of stream."""
        _, pending = await asyncio.wait(self._readers, timeout=timeout)
        for task in pending:
            task.cancel()

    def stderr_excerpt(self, max_length: int = 200) -> str:
        return tail_excerpt("".join(self._stderr_tail), max_length)

    def stdout_excerpt(self, max_length: int = 200) -> str:
        return tail_excerpt("".join(self._stdout_tail), max_length)

    def output_tail(self, max_length: int = 2000) -> str:
        """Combined recent output, bounded for logging."""
        return sanitize_output(
            "".join(self._stdout_tail) + "".join(self._stderr_tail), max_length
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        stream_name: str,
        tail: deque[str],
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            tail.append(text)
            self._log_output(stream_name, text)

    def _log_output(self, stream_name: str, text: str) -> None:
        output = text.replace("\x00", "").strip()
        if not output:
            return
        if HMR_PATTERN.search(output):
            if ERROR_PATTERN.search(output):
                logger.warning(
                    "dev_server_hmr_error",
                    session_id=self.session_id,
                    stream=stream_name,
                    output=output,
                )
            else:
                logger.info(
                    "dev_server_hmr_output",
                    session_id=self.session_id,
                    stream=stream_name,
                    output=output,
                )
            return
        logger.debug(
            "dev_server_output",
            session_id=self.session_id,
            stream=stream_name,
            output=output,
        )


class ProcessRunner:
    """Runs the install step and spawns and terminates dev servers.

    Attributes:
        terminator: Strategy used to spawn and kill process trees.
        package_manager: Package manager executable name.
        install_args: Arguments of the install invocation.
        install_timeout: Optional cap on install, in seconds.
        terminate_timeout: Wait between graceful and forced termination.
    """

    def __init__(
        self,
        terminator: ProcessTreeTerminator,
        package_manager: str = "npm",
        install_args: list[str] | None = None,
        install_timeout: float | None = None,
        terminate_timeout: float = 2.0,
    ) -> None:
        self.terminator = terminator
        self.package_manager = package_manager
        self.install_args = (
            list(install_args)
            if install_args is not None
            else ["install", "--legacy-peer-deps"]
        )
        self.install_timeout = install_timeout
        self.terminate_timeout = terminate_timeout

    async def install(self, workspace_path: Path, port: int, session_id: str) -> None:
        """Install dependencies, waiting for the package manager to finish.

        Raises:
            InstallFailedError: On a non-zero exit, a missing executable or
                when the optional install timeout elapses.
        """
        command = [resolve_executable(self.package_manager), *self.install_args]
        logger.info(
            "dependency_install_started",
            session_id=session_id,
            command=" ".join(command),
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace_path),
                env=build_env(port),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self.terminator.spawn_kwargs(),
            )
        except FileNotFoundError as e:
            logger.error("dependency_install_failed", session_id=session_id, error=str(e))
            raise InstallFailedError(127, f"command not found: {self.package_manager}") from e
        except OSError as e:
            logger.error("dependency_install_failed", session_id=session_id, error=str(e))
            raise InstallFailedError(None, str(e)) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self.install_timeout
            )
        except TimeoutError as e:
            await self.terminator.terminate(process, self.terminate_timeout)
            logger.error(
                "dependency_install_timeout",
                session_id=session_id,
                timeout=self.install_timeout,
            )
            raise InstallFailedError(
                None, f"timed out after {self.install_timeout}s"
            ) from e

        if process.returncode != 0:
            stderr_text = stderr_bytes.decode("utf-8", errors="replace")
            stdout_text = stdout_bytes.decode("utf-8", errors="replace")
            excerpt = tail_excerpt(stderr_text or stdout_text)
            logger.error(
                "dependency_install_failed",
                session_id=session_id,
                exit_code=process.returncode,
                stderr=excerpt,
            )
            raise InstallFailedError(process.returncode, excerpt)

        logger.info("dependency_install_completed", session_id=session_id)

    async def run(self, workspace_path: Path, port: int, session_id: str) -> ProcessHandle:
        """Spawn the dev server for a workspace.

        Raises:
            StartFailedError: If the process could not be launched.
        """
        command = detect_start_command(
            workspace_path, port, resolve_executable(self.package_manager)
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace_path),
                env=build_env(port),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self.terminator.spawn_kwargs(),
            )
        except OSError as e:
            logger.error("dev_server_spawn_failed", session_id=session_id, error=str(e))
            raise StartFailedError(f"Failed to launch dev server: {e}") from e

        logger.info(
            "dev_server_spawned",
            session_id=session_id,
            pid=process.pid,
            port=port,
            command=" ".join(command),
        )
        return ProcessHandle(process, session_id, command)

    async def terminate(self, handle: ProcessHandle) -> None:
        """Terminate a dev server and all of its descendants."""
        handle.killed = True
        await self.terminator.terminate(handle.process, self.terminate_timeout)
        await handle.drain()

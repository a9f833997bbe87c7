"""Shared test fixtures for backend tests.

Provides a fake package manager (a Python script standing in for ``npm``),
workspace/manager factories and OS process inspection helpers, so tests
never need a Node.js toolchain.
"""

import asyncio
import json
import os
import stat
import sys
import time
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from devserver.ports import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from devserver.manager import DevServerManager  # noqa: E402
from devserver.ports import PortAllocator  # noqa: E402
from devserver.process import ProcessRunner  # noqa: E402
from devserver.termination import get_process_tree_terminator  # noqa: E402
from devserver.workspace import ProjectFile, WorkspaceStore  # noqa: E402

# ---------------------------------------------------------------------------
# Fake package manager
# ---------------------------------------------------------------------------

# Behaviour is driven by marker files in the project tree:
#   FAIL_INSTALL -> "install" exits 1 with an npm-like error on stderr
#   CRASH        -> "run" exits 3 right away
# Otherwise "run" forks a long-lived child (the real "server") and records
# "<leader pid> <child pid>" in $FAKE_NPM_STATE/<workspace name>.pids.
FAKE_NPM_SOURCE = '''
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

state = Path(os.environ["FAKE_NPM_STATE"])
cwd = Path.cwd()
args = sys.argv[1:]

with open(state / "calls.log", "a", encoding="utf-8") as log:
    log.write(f"{cwd.name} {' '.join(args)}\\n")

if args and args[0] in ("install", "ci"):
    if (cwd / "FAIL_INSTALL").exists():
        sys.stderr.write("npm ERR! code E404\\nnpm ERR! install failed on purpose\\n")
        sys.exit(1)
    (cwd / "node_modules").mkdir(exist_ok=True)
    sys.exit(0)

if (cwd / "CRASH").exists():
    sys.stderr.write("Error: dev server crashed on purpose\\n")
    sys.exit(3)

child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(600)"])


def _stop(signum, frame):
    try:
        child.wait(timeout=5)
    except subprocess.TimeoutExpired:
        child.kill()
        child.wait()
    sys.exit(0)


signal.signal(signal.SIGTERM, _stop)
print(f"[vite] dev server running on port {os.environ.get('PORT')}", flush=True)
(state / f"{cwd.name}.pids").write_text(f"{os.getpid()} {child.pid}", encoding="utf-8")
while True:
    time.sleep(1)
'''


@dataclass
class FakeNpm:
    """Handle on the fake package manager installed for a test."""

    executable: str
    state_dir: Path

    def calls(self) -> list[str]:
        log = self.state_dir / "calls.log"
        if not log.exists():
            return []
        return log.read_text(encoding="utf-8").splitlines()

    def count(self, workspace_name: str, command: str) -> int:
        return sum(
            1 for line in self.calls() if line.startswith(f"{workspace_name} {command}")
        )

    async def pids(self, workspace_name: str, timeout: float = 5.0) -> tuple[int, int]:
        """Wait for the running fake server to report its (leader, child) pids."""
        pid_file = self.state_dir / f"{workspace_name}.pids"
        await wait_until(lambda: pid_file.exists() and pid_file.read_text().strip(), timeout)
        leader, child = pid_file.read_text(encoding="utf-8").split()
        return int(leader), int(child)


@pytest.fixture()
def fake_npm(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeNpm:
    """Install an executable fake ``npm`` and point it at a state directory."""
    state_dir = tmp_path / "npm-state"
    state_dir.mkdir()
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "npm"
    script.write_text(f"#!{sys.executable}\n{FAKE_NPM_SOURCE}", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("FAKE_NPM_STATE", str(state_dir))
    return FakeNpm(executable=str(script), state_dir=state_dir)


# ---------------------------------------------------------------------------
# Manager factory
# ---------------------------------------------------------------------------


@pytest.fixture()
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture()
def make_manager(
    fake_npm: FakeNpm, workspace_root: Path
) -> Callable[..., DevServerManager]:
    """Build DevServerManagers wired to the fake package manager."""

    def _make(
        port_min: int = 5173,
        port_max: int = 5178,
        start_grace_seconds: float = 0.5,
        **kwargs: object,
    ) -> DevServerManager:
        runner = ProcessRunner(
            get_process_tree_terminator("posix"),
            package_manager=fake_npm.executable,
            terminate_timeout=2.0,
        )
        return DevServerManager(
            store=WorkspaceStore(workspace_root),
            ports=PortAllocator(port_min, port_max),
            runner=runner,
            start_grace_seconds=start_grace_seconds,
            port_release_delay_seconds=0.0,
            **kwargs,  # type: ignore[arg-type]
        )

    return _make


@pytest.fixture()
async def manager(
    make_manager: Callable[..., DevServerManager],
) -> AsyncGenerator[DevServerManager, None]:
    """A DevServerManager that is shut down (all trees killed) after the test."""
    mgr = make_manager()
    yield mgr
    await mgr.shutdown()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_files(extra: dict[str, str] | None = None) -> list[ProjectFile]:
    """A minimal Vite project tree, plus optional extra files."""
    files = {
        "package.json": json.dumps(
            {"name": "preview", "private": True, "scripts": {"dev": "vite"}}
        ),
        "index.html": "<!doctype html><html><body><div id=\"root\"></div></body></html>",
    }
    files.update(extra or {})
    return [ProjectFile(path=path, content=content) for path, content in files.items()]


def pid_alive(pid: int) -> bool:
    """Return True if ``pid`` is a live (non-zombie) process."""
    if Path("/proc/self").exists():
        try:
            for line in Path(f"/proc/{pid}/status").read_text().splitlines():
                if line.startswith("State:"):
                    return "Z" not in line.split()[1]
        except OSError:
            return False
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def wait_until(
    predicate: Callable[[], object], timeout: float = 5.0, interval: float = 0.05
) -> None:
    """Poll ``predicate`` until truthy or fail the test after ``timeout``."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            pytest.fail(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)

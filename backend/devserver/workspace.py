"""Per-session workspace directories.

Each session gets one persistent directory, ``<root>/<prefix><session_id>``.
The directory survives dev server stops so that installed dependencies are
reused on the next start. Orchestrator bookkeeping is kept in a reserved
``.devserver/`` subdirectory:

- ``.devserver/session``: the session ID that owns the directory.
- ``.devserver/install.done``: written after a successful dependency install.
"""

import os
import re
import shutil
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog

from devserver.errors import WorkspaceConflictError
from devserver.security import RESERVED_DIR_NAME, validate_path, validate_session_id

logger = structlog.get_logger()

OWNER_STAMP_PATH = f"{RESERVED_DIR_NAME}/session"
INSTALL_STAMP_PATH = f"{RESERVED_DIR_NAME}/install.done"
DEPENDENCIES_DIR_NAME = "node_modules"

# Older deployments created one directory per start, suffixed with a
# millisecond timestamp.
LEGACY_SUFFIX_PATTERN = re.compile(r"-\d{13}$")


@dataclass(frozen=True)
class ProjectFile:
    """A single file of a project tree, relative to the workspace root."""

    path: str
    content: str


@dataclass
class WorkspaceEntry:
    """A workspace directory found on disk during a sweep."""

    path: Path
    name: str
    owner: str | None
    legacy: bool
    modified_at: float

    def age_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.modified_at


class WorkspaceStore:
    """Creates, fills and enumerates session workspaces.

    All methods are blocking; the manager calls them through the default
    executor.

    Attributes:
        root: Directory holding every workspace.
        prefix: Name prefix of each workspace directory.
    """

    def __init__(self, root: str | Path, prefix: str = "devserver-") -> None:
        self.root = Path(root)
        self.prefix = prefix

    def path_for(self, session_id: str) -> Path:
        """Return the deterministic workspace path of a session.

        Raises:
            ValueError: If the session ID is not usable as a directory name.
        """
        is_valid, error = validate_session_id(session_id)
        if not is_valid:
            raise ValueError(error)
        return self.root / f"{self.prefix}{session_id}"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).is_dir()

    def ensure(self, session_id: str) -> tuple[Path, bool]:
        """Create or locate a session's workspace.

        Args:
            session_id: The owning session.

        Returns:
            A tuple of (workspace_path, is_first_time). ``is_first_time`` is
            True unless dependencies were already installed successfully.

        Raises:
            ValueError: If the session ID is invalid.
            WorkspaceConflictError: If the directory belongs to another session.
        """
        path = self.path_for(session_id)
        path.mkdir(parents=True, exist_ok=True)

        owner = self.read_owner(path)
        if owner is None:
            owner_stamp = path / OWNER_STAMP_PATH
            owner_stamp.parent.mkdir(parents=True, exist_ok=True)
            owner_stamp.write_text(session_id, encoding="utf-8")
        elif owner != session_id:
            raise WorkspaceConflictError(session_id, owner)

        # Keep active workspaces clear of the age-based sweep.
        os.utime(path)

        is_first_time = not self.is_installed(path)
        logger.debug(
            "workspace_ensured",
            session_id=session_id,
            path=str(path),
            is_first_time=is_first_time,
        )
        return path, is_first_time

    def write(self, path: Path, files: list[ProjectFile]) -> int:
        """Materialize a file tree into a workspace.

        Every path is validated before anything is written, so an invalid
        entry leaves the workspace untouched. Files whose content is already
        identical on disk are skipped, leaving their modification time alone.
        Files absent from ``files`` are never deleted.

        Args:
            path: The workspace directory.
            files: The files to write.

        Returns:
            Number of files actually written.

        Raises:
            ValueError: If any file path escapes the workspace or is reserved.
        """
        resolved: list[tuple[Path, str]] = []
        for project_file in files:
            is_valid, error, target = validate_path(str(path), project_file.path)
            if not is_valid:
                raise ValueError(f"{error} ({project_file.path})")
            resolved.append((Path(target), project_file.content))

        written = 0
        for target, content in resolved:
            if target.is_file() and _read_text(target) == content:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8", newline="")
            written += 1

        logger.debug(
            "workspace_files_written",
            path=str(path),
            total=len(files),
            written=written,
        )
        return written

    def is_installed(self, path: Path) -> bool:
        """Return True if dependencies were installed and are still present."""
        return (path / INSTALL_STAMP_PATH).is_file() and (
            path / DEPENDENCIES_DIR_NAME
        ).is_dir()

    def mark_installed(self, path: Path) -> None:
        stamp = path / INSTALL_STAMP_PATH
        stamp.parent.mkdir(parents=True, exist_ok=True)
        stamp.write_text(datetime.now(UTC).isoformat(), encoding="utf-8")

    def clear_install_stamp(self, path: Path) -> None:
        """Forget a previous install so an interrupted one is retried."""
        (path / INSTALL_STAMP_PATH).unlink(missing_ok=True)

    def read_owner(self, path: Path) -> str | None:
        stamp = path / OWNER_STAMP_PATH
        if not stamp.is_file():
            return None
        owner = _read_text(stamp)
        return owner.strip() if owner else None

    def remove(self, path: Path) -> None:
        """Remove a workspace directory.

        Raises:
            OSError: If the directory (or a file in it) cannot be removed.
        """
        shutil.rmtree(path)
        logger.info("workspace_removed", path=str(path))

    def list_workspaces(self) -> list[WorkspaceEntry]:
        """Enumerate workspace directories under the root."""
        if not self.root.is_dir():
            return []

        entries: list[WorkspaceEntry] = []
        for child in self.root.iterdir():
            if not child.name.startswith(self.prefix):
                continue
            try:
                if not child.is_dir() or child.is_symlink():
                    continue
                modified_at = child.stat().st_mtime
            except OSError:
                continue
            owner = self.read_owner(child)
            entries.append(
                WorkspaceEntry(
                    path=child,
                    name=child.name,
                    owner=owner,
                    legacy=owner is None
                    and bool(LEGACY_SUFFIX_PATTERN.search(child.name)),
                    modified_at=modified_at,
                )
            )
        return entries


def _read_text(path: Path) -> str | None:
    try:
        with open(path, encoding="utf-8", newline="") as f:
            return f.read()
    except (OSError, UnicodeDecodeError):
        return None

"""Dev server orchestration module.

This module provides the DevServerManager class that materializes a session's
project on disk, installs its dependencies and runs its preview server as a
local child process.
"""

from devserver.errors import (
    DevServerError,
    InstallFailedError,
    NotRunningError,
    ResourceExhaustedError,
    StartFailedError,
    WorkspaceConflictError,
    WorkspaceNotFoundError,
)
from devserver.manager import DevServerManager, DevServerStatus
from devserver.workspace import ProjectFile

__all__ = [
    "DevServerError",
    "DevServerManager",
    "DevServerStatus",
    "InstallFailedError",
    "NotRunningError",
    "ProjectFile",
    "ResourceExhaustedError",
    "StartFailedError",
    "WorkspaceConflictError",
    "WorkspaceNotFoundError",
]

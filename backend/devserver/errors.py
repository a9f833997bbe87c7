"""Typed errors raised by the dev server orchestrator.

Every failure the orchestrator reports to its caller is a ``DevServerError``
subclass carrying a stable ``code``. Callers (e.g. the HTTP layer) translate
these into their own response format.
"""


class DevServerError(Exception):
    """Base class for orchestrator failures reported to the caller."""

    code = "dev_server_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ResourceExhaustedError(DevServerError):
    """No port is free in the configured range."""

    code = "resource_exhausted"


class InstallFailedError(DevServerError):
    """Dependency installation exited with a non-zero status."""

    code = "install_failed"

    def __init__(self, exit_code: int | None, stderr_excerpt: str = "") -> None:
        message = f"Dependency installation failed with code {exit_code}"
        if stderr_excerpt:
            message = f"{message}: {stderr_excerpt}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt


class StartFailedError(DevServerError):
    """The dev server process exited within the grace period or never launched."""

    code = "start_failed"

    def __init__(
        self,
        message: str = "Dev server failed to start",
        *,
        exit_code: int | None = None,
        stderr_excerpt: str = "",
    ) -> None:
        if stderr_excerpt:
            message = f"{message}: {stderr_excerpt}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt


class NotRunningError(DevServerError):
    """The session has no live dev server."""

    code = "not_running"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Dev server not running for session '{session_id}'")
        self.session_id = session_id


class WorkspaceNotFoundError(DevServerError):
    """The session has no workspace directory on disk."""

    code = "not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Workspace does not exist for session '{session_id}'")
        self.session_id = session_id


class WorkspaceConflictError(DevServerError):
    """A workspace directory is owned by a different session ID."""

    code = "workspace_conflict"

    def __init__(self, session_id: str, owner: str) -> None:
        super().__init__(
            f"Workspace for session '{session_id}' is already owned by session '{owner}'"
        )
        self.session_id = session_id
        self.owner = owner

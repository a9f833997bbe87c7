"""HTTP API routes for the dev server orchestrator.

This module exposes the five dev server operations and a health check. The
routes perform no authorization: callers must verify that the requester may
operate on a session before forwarding the request here.
"""

from __future__ import annotations

import time
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Path, Request, status
from fastapi.responses import JSONResponse

from devserver.errors import (
    DevServerError,
    InstallFailedError,
    NotRunningError,
    ResourceExhaustedError,
    StartFailedError,
    WorkspaceConflictError,
    WorkspaceNotFoundError,
)
from devserver.manager import DevServerManager
from devserver.workspace import ProjectFile
from models.schemas import (
    DevServerStartResponse,
    DevServerStatusResponse,
    HealthResponse,
    OperationResponse,
    ProjectFileModel,
    StartDevServerRequest,
    StopDevServerRequest,
    UpdateFilesRequest,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

_ERROR_STATUS_CODES: dict[type[DevServerError], int] = {
    WorkspaceNotFoundError: status.HTTP_404_NOT_FOUND,
    NotRunningError: status.HTTP_409_CONFLICT,
    WorkspaceConflictError: status.HTTP_409_CONFLICT,
    ResourceExhaustedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InstallFailedError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    StartFailedError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def get_dev_server_manager(request: Request) -> DevServerManager:
    """Get the dev server manager owned by the application.

    Raises:
        RuntimeError: If the manager has not been configured.
    """
    manager = getattr(request.app.state, "dev_server_manager", None)
    if manager is None:
        logger.error("dev_server_manager_not_configured")
        raise RuntimeError("DevServerManager not configured. It is created during startup.")
    return manager


ManagerDep = Annotated[DevServerManager, Depends(get_dev_server_manager)]


def _to_project_files(files: list[ProjectFileModel]) -> list[ProjectFile]:
    return [ProjectFile(path=f.path, content=f.content) for f in files]


def _error_response(
    error: Exception, model: type[OperationResponse] = OperationResponse
) -> JSONResponse:
    """Translate an orchestrator error into a ``{success: false, error}`` body."""
    if isinstance(error, DevServerError):
        status_code = _ERROR_STATUS_CODES.get(
            type(error), status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        message = error.message
    elif isinstance(error, ValueError):
        status_code = status.HTTP_400_BAD_REQUEST
        message = str(error)
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        message = f"Internal error: {error}"
    body = model(success=False, error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# -----------------------------------------------------------------------------
# Dev server operations
# -----------------------------------------------------------------------------


@router.post(
    "/api/dev-server/start",
    response_model=DevServerStartResponse,
    response_model_exclude_none=True,
    summary="Start a dev server",
    description="Materialize the project, install dependencies on first start and run its dev server.",
)
async def start_dev_server(
    request: StartDevServerRequest, manager: ManagerDep
) -> DevServerStartResponse | JSONResponse:
    """Start a session's dev server, or return the URL of the running one.

    Args:
        request: Session ID and the complete project tree.
        manager: The application's dev server manager.

    Returns:
        DevServerStartResponse with the preview URL, or an error body.
    """
    try:
        url = await manager.start(request.session_id, _to_project_files(request.files))
    except Exception as e:
        logger.warning(
            "start_dev_server_failed",
            session_id=request.session_id,
            error=str(e),
        )
        return _error_response(e, DevServerStartResponse)

    return DevServerStartResponse(success=True, url=url)


@router.post(
    "/api/dev-server/stop",
    response_model=OperationResponse,
    response_model_exclude_none=True,
    summary="Stop a dev server",
    description="Terminate the session's dev server process tree. The workspace is kept.",
)
async def stop_dev_server(
    request: StopDevServerRequest, manager: ManagerDep
) -> OperationResponse | JSONResponse:
    """Stop a session's dev server."""
    try:
        await manager.stop(request.session_id)
    except Exception as e:
        logger.warning(
            "stop_dev_server_failed",
            session_id=request.session_id,
            error=str(e),
        )
        return _error_response(e)

    return OperationResponse(success=True)


@router.get(
    "/api/dev-server/status/{session_id}",
    response_model=DevServerStatusResponse,
    response_model_exclude_none=True,
    summary="Get dev server status",
)
async def get_dev_server_status(
    session_id: Annotated[str, Path(description="The session ID")],
    manager: ManagerDep,
) -> DevServerStatusResponse:
    """Report whether a session's dev server is running."""
    server_status = manager.status(session_id)
    return DevServerStatusResponse(
        running=server_status.running,
        url=server_status.url,
        port=server_status.port,
        started_at=server_status.started_at,
    )


@router.post(
    "/api/dev-server/update-files",
    response_model=OperationResponse,
    response_model_exclude_none=True,
    summary="Update dev server files",
    description="Write files into a running dev server's workspace without restarting it.",
)
async def update_dev_server_files(
    request: UpdateFilesRequest, manager: ManagerDep
) -> OperationResponse | JSONResponse:
    """Sync files into a running session."""
    try:
        await manager.update_files(request.session_id, _to_project_files(request.files))
    except Exception as e:
        logger.warning(
            "update_dev_server_files_failed",
            session_id=request.session_id,
            error=str(e),
        )
        return _error_response(e)

    return OperationResponse(success=True)


@router.delete(
    "/api/dev-server/delete/{session_id}",
    response_model=OperationResponse,
    response_model_exclude_none=True,
    summary="Delete a dev server workspace",
    description="Stop the dev server if running, then remove the session's workspace.",
)
async def delete_dev_server(
    session_id: Annotated[str, Path(description="The session ID")],
    manager: ManagerDep,
) -> OperationResponse | JSONResponse:
    """Delete a session's workspace."""
    try:
        await manager.delete(session_id)
    except Exception as e:
        logger.warning(
            "delete_dev_server_failed",
            session_id=session_id,
            error=str(e),
        )
        return _error_response(e)

    return OperationResponse(success=True)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with dev server and cleanup status.",
)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint with orchestrator status.

    Returns:
        HealthResponse with running dev servers and the cleanup backlog.
    """
    try:
        manager = get_dev_server_manager(request)
    except RuntimeError:
        # Manager not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_dev_servers=manager.get_active_count(),
        pending_cleanup=manager.get_pending_cleanup_count(),
    )

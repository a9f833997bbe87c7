"""Pydantic schemas for API request/response models.

This module defines the data models used by the dev server HTTP API.
All models use Pydantic v2 with strict type validation.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class ProjectFileModel(BaseModel):
    """A single file of the project tree to materialize."""

    path: str = Field(
        min_length=1,
        max_length=1024,
        description="Path relative to the workspace root",
        examples=["src/App.tsx", "package.json"],
    )
    content: str = Field(
        description="File content as UTF-8 string",
    )


class StartDevServerRequest(BaseModel):
    """Request body for starting a session's dev server."""

    session_id: str = Field(
        min_length=1,
        max_length=128,
        description="Caller-supplied session identifier, stable across restarts",
        examples=["doc_abc123"],
    )
    files: list[ProjectFileModel] = Field(
        min_length=1,
        description="The complete project tree",
    )


class StopDevServerRequest(BaseModel):
    """Request body for stopping a session's dev server."""

    session_id: str = Field(
        min_length=1,
        max_length=128,
        description="Session whose dev server should be stopped",
        examples=["doc_abc123"],
    )


class UpdateFilesRequest(BaseModel):
    """Request body for syncing files into a running dev server."""

    session_id: str = Field(
        min_length=1,
        max_length=128,
        description="Session whose workspace should be updated",
        examples=["doc_abc123"],
    )
    files: list[ProjectFileModel] = Field(
        description="Files to write; files not listed are left untouched",
    )


class OperationResponse(BaseModel):
    """Outcome of a dev server operation."""

    success: bool = Field(description="Whether the operation succeeded")
    error: str | None = Field(
        default=None,
        description="Error message when the operation failed",
    )


class DevServerStartResponse(OperationResponse):
    """Outcome of a start request."""

    url: str | None = Field(
        default=None,
        description="Preview URL of the running dev server",
        examples=["http://localhost:5173"],
    )


class DevServerStatusResponse(BaseModel):
    """Current status of a session's dev server."""

    running: bool = Field(description="True if a live dev server is recorded")
    url: str | None = Field(
        default=None,
        description="Preview URL when running",
    )
    port: int | None = Field(
        default=None,
        description="Allocated port when running",
    )
    started_at: datetime | None = Field(
        default=None,
        description="When the dev server was started",
    )


class HealthResponse(BaseModel):
    """Health check response with orchestrator status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_dev_servers: int = Field(
        default=0,
        description="Number of currently running dev servers",
    )
    pending_cleanup: int = Field(
        default=0,
        description="Workspaces waiting for deferred deletion",
    )

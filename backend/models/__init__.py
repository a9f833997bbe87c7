"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

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

__all__ = [
    "DevServerStartResponse",
    "DevServerStatusResponse",
    "HealthResponse",
    "OperationResponse",
    "ProjectFileModel",
    "StartDevServerRequest",
    "StopDevServerRequest",
    "UpdateFilesRequest",
]

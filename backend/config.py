"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the dev-server
orchestrator. All settings can be overridden via environment variables or a
.env file.
"""

import json
import logging
import tempfile
from typing import Any, Literal

import structlog
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        dev_server_host_prefix: Host prefix used to build preview URLs
            (e.g. http://localhost, http://10.0.0.5, https://preview.example.com).
        iframe_serve_domain: Domain that raw-IP host prefixes are rewritten to,
            with the dev server port as the leading subdomain label.
        dev_server_port_min: First port of the dev server range (inclusive).
        dev_server_port_max: End of the dev server range (exclusive).
        workspace_root: Directory holding one workspace per session.
        workspace_prefix: Name prefix of every workspace directory.
        package_manager: Executable used to install dependencies and run servers.
        install_args: Arguments passed to the package manager for installation.
        install_timeout_seconds: Optional cap on dependency installation.
        start_grace_seconds: Delay after spawn before checking for an early exit.
        terminate_timeout_seconds: Wait between graceful and forced termination.
        port_release_delay_seconds: Extra wait after a stop so the port is released.
        cleanup_interval_seconds: Interval of the pending-deletion sweep.
        stale_workspace_max_age_hours: Startup sweep age for persistent workspaces.
        legacy_workspace_max_age_hours: Startup sweep age for timestamped workspaces.
        process_kill_strategy: Process tree termination strategy (auto, posix, windows).
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Preview URL Configuration
    dev_server_host_prefix: str = "http://localhost"
    iframe_serve_domain: str = ""

    # Port Range
    dev_server_port_min: int = 5173
    dev_server_port_max: int = 6000

    # Workspace Configuration
    workspace_root: str = tempfile.gettempdir()
    workspace_prefix: str = "devserver-"

    # Package Manager
    package_manager: str = "npm"
    install_args: str | list[str] = ["install", "--legacy-peer-deps"]
    install_timeout_seconds: float | None = None

    # Process Lifecycle
    start_grace_seconds: float = 3.0
    terminate_timeout_seconds: float = 2.0
    port_release_delay_seconds: float = 0.5
    process_kill_strategy: Literal["auto", "posix", "windows"] = "auto"

    # Cleanup
    cleanup_interval_seconds: float = 300.0
    stale_workspace_max_age_hours: float = 168.0
    legacy_workspace_max_age_hours: float = 1.0

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", "install_args", mode="before")
    @classmethod
    def parse_string_list(cls, v: Any) -> list[str]:
        """Parse a list setting from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Space-separated for install_args: 'install --legacy-peer-deps'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            # Try JSON first
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            separator = "," if "," in v else None
            return [item.strip() for item in v.split(separator) if item.strip()]
        return []

    @model_validator(mode="after")
    def check_port_range(self) -> "Settings":
        """Reject empty or out-of-bounds port ranges."""
        if not 1 <= self.dev_server_port_min < self.dev_server_port_max <= 65536:
            raise ValueError(
                "dev_server_port_min must be lower than dev_server_port_max "
                "and both must fall within 1-65536"
            )
        return self

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

# Create a logger for this module
logger = structlog.get_logger(__name__)

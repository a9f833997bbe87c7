"""API module for HTTP routes.

This module exposes the FastAPI router for the dev server orchestrator.
"""

from api.routes import router

__all__ = ["router"]

"""
Health check endpoints.

Liveness only: the console holds no credentials of its own, so it cannot
probe the database without a user.
"""

from typing import Any

from fastapi import APIRouter, Request

from dbconsole import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/healthz")
async def healthcheck(request: Request) -> dict[str, Any]:
    settings = request.app.state.settings
    return {
        "status": "ok",
        "version": __version__,
        "environment": settings.environment,
        "sessions": len(request.app.state.session_registry),
    }

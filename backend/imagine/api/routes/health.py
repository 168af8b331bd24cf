"""Health check endpoint.

Always returns 200 so load balancers keep routing; configuration gaps are
reported in the body instead of failing the health check.
"""

from __future__ import annotations

from fastapi import APIRouter

from imagine.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Confirms the API process is alive and reports which models are wired."""
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "gemini": "configured" if settings.google_ai_api_key else "missing_key",
        "audit_backend": settings.audit_backend,
        "render_model": settings.render_model,
    }

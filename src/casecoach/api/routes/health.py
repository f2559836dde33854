"""Health check endpoints."""

from fastapi import APIRouter, Request

from casecoach import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Basic health check."""
    registry = getattr(request.app.state, "registry", None)
    return {
        "status": "healthy",
        "version": __version__,
        "liveQuestions": registry.get_stats()["live_questions"] if registry else 0,
    }


@router.get("/health/live")
async def liveness_check() -> dict:
    """Kubernetes liveness probe."""
    return {"status": "alive"}

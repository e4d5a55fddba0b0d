"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import engine
from services.generation import get_openai_client

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "ttl_store": "unknown",
        "workflow_storage": request.app.state.storage_provider.backend,
        "openai_api_key": "configured" if get_openai_client(settings.OPENAI_API_KEY) else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except (SQLAlchemyError, OSError) as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        store = request.app.state.ttl_store
        await store.set("genpire:health:ping", 1, 5)
        health_status["ttl_store"] = "up"
    except (RedisError, OSError) as e:
        health_status["ttl_store"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    missing = []
    if not get_openai_client(settings.OPENAI_API_KEY):
        missing.append("OPENAI_API_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}

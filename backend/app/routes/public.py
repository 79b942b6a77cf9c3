# /app/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from datetime import datetime

from app.config.settings import settings
from app.utils.dependencies import verify_api_key
from app.services.cache_service import cache_service
from app.services.flow_repository import flow_repository

# Public endpoints that need no credentials: the root banner and health
# probes. The /metrics endpoint is protected by the API key when one is set.

router = APIRouter()

@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "FunnelChat Flow Runtime",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }

@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.utcnow()}

@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe: storage and cache reachable, at least the flow list loads."""
    try:
        if settings.session_backend == "mongo":
            from app.services.db_service import db_service
            if not await db_service.health_check():
                raise RuntimeError("database unreachable")
        if cache_service.redis:
            await cache_service.redis.ping()
        active_flows = await flow_repository.list_active()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service not ready: {e}")
    return {"status": "ready", "active_flows": len(active_flows)}

@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_api_key)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")

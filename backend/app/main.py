# /app/main.py

import os
import time
import uuid
import asyncio
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.config.settings import settings
from app.utils.lifecycle import lifespan
from app.utils.metrics import response_time_histogram
from app.utils.rate_limiter import limiter
from app.routes import public, runtime, webhooks
from app.workflows.errors import FlowNotFoundError, SessionNotFoundError, SessionConflictError

API_PREFIX = f"/api/{settings.api_version}"
REQUEST_TIMEOUT_SECONDS = 30.0

log = structlog.get_logger(__name__)

app = FastAPI(
    title="FunnelChat Flow Runtime",
    version="1.0.0",
    description="Executes chat automation flows for WhatsApp contacts",
    lifespan=lifespan,
    openapi_url=f"{API_PREFIX}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"{API_PREFIX}/docs" if settings.environment != "production" else None,
    redoc_url=None,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Runtime errors ---
@app.exception_handler(FlowNotFoundError)
@app.exception_handler(SessionNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    log.warning("Runtime target not found", path=request.url.path, error=str(exc))
    return JSONResponse({"detail": str(exc)}, status_code=404)

@app.exception_handler(SessionConflictError)
async def conflict_handler(request: Request, exc: SessionConflictError):
    log.error("Session conflict", path=request.url.path, error=str(exc))
    return JSONResponse({"detail": str(exc)}, status_code=409)

# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SlowAPIMiddleware)

@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    # label by route template so /sessions/{address} does not create a series per contact
    route = request.scope.get("route")
    endpoint = getattr(route, "path", None) or "unmatched"
    response_time_histogram.labels(endpoint=endpoint).observe(process_time)
    response.headers["X-Process-Time"] = f"{process_time:.4f}"
    return response

@app.middleware("http")
async def timeout_middleware(request: Request, call_next):
    try:
        return await asyncio.wait_for(call_next(request), timeout=REQUEST_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        log.error("Request timed out", path=request.url.path)
        return JSONResponse({"detail": "Request timed out"}, status_code=504)

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

# --- API Routers ---
app.include_router(public.router)
app.include_router(webhooks.router, prefix=f"{API_PREFIX}/webhooks")
app.include_router(webhooks.integrations_router, prefix=API_PREFIX)
app.include_router(runtime.router, prefix=API_PREFIX)

if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=settings.environment == "development",
        workers=settings.workers if settings.environment == "production" else 1,
    )

"""
Main FastAPI application for the Game Lifecycle API.

The HTTP app exposes the operator surface; the recurring jobs are driven by
the separate ``run_scheduler.py`` process.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy import text

from app.api.routes import lifecycle
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.logging import configure_logging, get_logger
from app.core.middleware import CorrelationIdMiddleware
from app.services.lifecycle.job_lock import resolve_worker_id

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = get_logger(__name__)


def get_rate_limit_key(request: Request) -> str:
    """
    Get the rate limit key for a request.

    Uses IP address, with fallback to X-Forwarded-For for proxied requests.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=["60/minute"],
    storage_uri=settings.REDIS_URL if settings.RATE_LIMIT_STORAGE == "redis" else "memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan events."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

    missing = settings.validate_required_secrets()
    for problem in missing:
        logger.warning(f"⚠️ Configuration: {problem}")

    app.state.worker_id = resolve_worker_id()
    logger.info(f"Application started (worker {app.state.worker_id})")
    yield
    logger.info("Shutting down application")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Sports event lifecycle: discovery, sync, finalize, settlement and treasury",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Correlation ID middleware must be added before CORS for proper header handling
app.add_middleware(CorrelationIdMiddleware)

# Prometheus metrics must be initialized before routes are added
instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)
logger.info("Prometheus metrics initialized at /metrics")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API v1
app.include_router(lifecycle.router, prefix="/api/v1")


@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request):
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "leagues": settings.ENABLED_LEAGUES,
        "endpoints": {
            "api_version": "v1",
            "lifecycle": {
                "jobs": "/api/v1/lifecycle/jobs/{job}",
                "batch": "/api/v1/lifecycle/jobs/batch",
                "locks": "/api/v1/lifecycle/locks",
                "settlements": "/api/v1/lifecycle/settlements",
                "treasury": "/api/v1/lifecycle/treasury",
                "health": "/api/v1/lifecycle/health",
                "backfill": "/api/v1/lifecycle/backfill",
                "finalize_candidates": "/api/v1/lifecycle/finalize/candidates",
            },
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        },
    }


@app.get("/health")
@limiter.limit("120/minute")  # Higher limit for health checks
async def health_check(request: Request):
    """Liveness check including database connectivity."""
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "components": {}}

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        health_status["components"]["database"] = {"status": "connected"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "degraded"
        health_status["components"]["database"] = {"status": "unhealthy", "error": str(e)}
    finally:
        db.close()

    return health_status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)

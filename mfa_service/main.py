"""
Main FastAPI application for mfa_service
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mfa_service.core.config import settings, validate_settings
from mfa_service.core.database import dispose_db, init_db
from mfa_service.core.exceptions import MfaInfrastructureError
from mfa_service.core.logging_config import configure_logging
from mfa_service.core.redis_client import redis_client
from mfa_service.metrics import app_info

# Import routers
from mfa_service.api.v1.endpoints import mfa

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events
    """
    # Startup
    configure_logging()
    validate_settings(settings)
    app_info.info({'version': settings.VERSION, 'environment': settings.ENVIRONMENT})

    logger.info(f"Starting {settings.APP_NAME} v{settings.VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}, SMS provider: {settings.SMS_PROVIDER}")

    # Initialize database (in production, use migrations instead)
    if settings.ENVIRONMENT == "development":
        init_db()

    yield

    # Shutdown
    logger.info("Shutting down...")
    redis_client.close()
    dispose_db()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="MFA Service - TOTP, SMS, email and backup code second factors",
    lifespan=lifespan
)


@app.exception_handler(MfaInfrastructureError)
async def infrastructure_exception_handler(request: Request, exc: MfaInfrastructureError):
    """Store, channel and limiter outages surface as 503 so clients can retry"""
    logger.error(f"MFA infrastructure failure on {request.url.path} ({exc.operation}): {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "MFA service temporarily unavailable, try again later"},
    )


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    try:
        redis_client.ping()
        redis_status = "healthy"
    except Exception:
        redis_status = "unhealthy"

    return {
        "status": "healthy" if redis_status == "healthy" else "degraded",
        "version": settings.VERSION,
        "checks": {
            "redis": redis_status,
        }
    }


@app.get("/metrics")
async def get_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "docs_url": "/docs",
    }


# Include API routers
app.include_router(mfa.router, prefix=f"{settings.API_V1_PREFIX}/mfa", tags=["mfa"])

"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from outreach.api.v1.dependencies import get_supabase
from outreach.api.v1.routes import api_router
from outreach.core.config import get_settings
from outreach.core.tenant_middleware import TenantMiddleware
from outreach.infrastructure.connectors.sms import get_twilio_sms_provider

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup logs which persistence backend and SMS provider are active.
    Configuration gaps are warnings outside production.
    """
    logger.info("Starting Outreach Dispatch API...")

    strict_validation = settings.environment == "production"

    if not get_twilio_sms_provider().is_configured():
        message = "Twilio credentials not configured; SMS sends will be rejected"
        if strict_validation:
            logger.error(f"Startup failed: {message}")
            raise RuntimeError(message)
        logger.warning(message)

    if get_supabase() is None:
        if strict_validation:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in production")
        logger.warning(f"Persistence not configured (non-fatal in {settings.environment}): using in-memory storage")

    logger.info("Outreach Dispatch API started successfully")

    yield  # Application is running

    logger.info("Outreach Dispatch API shutdown complete")


app = FastAPI(
    title="Outreach Dispatch",
    description="Outbound SMS and call orchestration for multi-tenant lead contact",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# MULTI-TENANT: tenant from JWT claim or X-Tenant-ID
app.add_middleware(TenantMiddleware, api_prefix=settings.api_prefix)

# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {"message": "Outreach Dispatch API", "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "environment": settings.environment,
        "persistence": "supabase" if get_supabase() is not None else "memory",
        "sms_configured": get_twilio_sms_provider().is_configured(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

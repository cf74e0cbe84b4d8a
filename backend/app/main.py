"""
Billing Sync - FastAPI Application

Main entry point for the backend API.
Provides the billing webhook, usage quota and admin reconciliation endpoints.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    BillingSyncError,
    ConfigurationError,
    DatabaseError,
    NotFoundError,
    ProviderError,
    TransientStoreError,
    UnknownSubjectError,
    ValidationError,
    VerificationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Billing Sync starting in {settings.environment} mode...")

    if settings.database_url:
        try:
            from app.infrastructure.db.database import init_db
            await init_db()
            logger.info("SQLModel database connection pool initialized")
        except Exception as e:
            logger.warning(f"SQLModel database initialization skipped: {e}")
    else:
        logger.warning("DATABASE_URL not set; billing endpoints will answer 503")

    yield

    # Shutdown
    from app.api.dependencies import get_billing_services
    if get_billing_services.cache_info().currsize:
        await get_billing_services().projections.drain()

    if settings.database_url:
        try:
            from app.infrastructure.db.database import close_db
            await close_db()
            logger.info("SQLModel database connection pool closed")
        except Exception as e:
            logger.warning(f"SQLModel database shutdown error: {e}")

    logger.info("Billing Sync shutting down...")


app = FastAPI(
    title="Billing Sync",
    description="Keeps subscription entitlements in step with Stripe and enforces usage quotas",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError):
    """Rejected webhook: bad signature, payload or schema version."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters answer 400 like domain validation."""
    return JSONResponse(
        status_code=400,
        content={
            "error": "ValidationError",
            "message": "Invalid request",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(UnknownSubjectError)
async def unknown_subject_error_handler(request: Request, exc: UnknownSubjectError):
    """Subscription or user could not be resolved (direct calls only)."""
    return JSONResponse(
        status_code=422,
        content=exc.to_dict(),
    )


@app.exception_handler(TransientStoreError)
async def transient_store_error_handler(request: Request, exc: TransientStoreError):
    """Retryable storage failure."""
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
        headers={"Retry-After": str(exc.retry_after)},
    )


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    """Handle other database errors."""
    logger.error(f"Database error: {exc.message}")
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
        headers={"Retry-After": "5"},
    )


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    """Stripe unreachable or rejected the call."""
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Service is missing required configuration."""
    logger.error(f"Configuration error: {exc.message}")
    return JSONResponse(
        status_code=503,
        content=exc.to_dict(),
    )


@app.exception_handler(BillingSyncError)
async def general_error_handler(request: Request, exc: BillingSyncError):
    """Handle all other application errors."""
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "billing-sync"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Billing Sync API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import admin, subscriptions, usage, webhooks

app.include_router(webhooks.router, tags=["Webhooks"])
app.include_router(usage.router)
app.include_router(subscriptions.router)
app.include_router(admin.router)

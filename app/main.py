from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.core.exceptions import (
    BillingError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from app.database import init_db, async_session_factory
from app.jobs.scheduler import start_scheduler, shutdown_scheduler


logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Configure logging
    - Create tables
    - Start background scheduler (overdue / expiry sweeps)
    """
    # Startup
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()

    start_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    logger.info("Shutting down...")


# OpenAPI Tags
OPENAPI_TAGS = [
    {"name": "Estimations", "description": "Estimation to quotation conversion and status"},
    {"name": "Quotations", "description": "GST quotations and conversion to invoices"},
    {"name": "Invoices/E-Invoice", "description": "Tax invoices, IRN generation/cancellation and payments"},
    {"name": "GSTIN", "description": "GSTIN verification via the e-invoice portal"},
]

API_DESCRIPTION = """
## GST Billing Core

Estimation -> Quotation -> Invoice with India GST (CGST/SGST/IGST) per line,
e-invoice (IRN) registration with the NIC portal and a payment ledger.

### Error Codes

| Code | Description |
|------|-------------|
| 401 | Unauthorized - Invalid/expired token |
| 404 | Not Found - Document doesn't exist |
| 409 | Conflict - Already converted, IRN already generated, invalid status change |
| 422 | Unprocessable Entity - Validation failed (all failing fields listed) |
| 502 | Bad Gateway - E-invoice portal error (`error_cd`, `retryable`) |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


# ==================== Error handlers ====================

def _error_response(request: Request, status_code: int, exc: BillingError) -> JSONResponse:
    body = exc.to_dict()
    body["path"] = str(request.url.path)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(request, 422, exc)


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    return _error_response(request, 409, exc)


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    return _error_response(request, 404, exc)


@app.exception_handler(ExternalServiceError)
async def external_service_error_handler(request: Request, exc: ExternalServiceError):
    return _error_response(request, 502, exc)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    logger.error(f"Unhandled billing error on {request.method} {request.url.path}: {exc.message}")
    return _error_response(request, 400, exc)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }

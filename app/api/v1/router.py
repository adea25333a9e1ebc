from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Document pipeline
    estimations,
    quotations,
    invoices,
    # GST
    gstin,
)

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Estimations ====================
api_router.include_router(
    estimations.router,
    prefix="/estimations",
    tags=["Estimations"]
)

# ==================== Quotations ====================
api_router.include_router(
    quotations.router,
    prefix="/quotations",
    tags=["Quotations"]
)

# ==================== Invoices, E-Invoice & Payments ====================
api_router.include_router(
    invoices.router,
    prefix="/invoices",
    tags=["Invoices/E-Invoice"]
)

# ==================== GSTIN ====================
api_router.include_router(
    gstin.router,
    prefix="/gstin",
    tags=["GSTIN"]
)

"""API endpoints for invoices: status, e-invoice (IRN), payments and rendering context."""
from datetime import date, datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import Response

from app.api.deps import DB, CurrentActor, EInvoiceClient
from app.models.billing import Invoice
from app.schemas.billing import (
    InvoiceResponse,
    IRNResponse,
    IRNCancelRequest,
    IRNCancelResponse,
    PaymentCreate,
    PaymentResponse,
    PaymentRecordedResponse,
    OverdueSweepResponse,
)
from app.schemas.conversion import StatusChangeRequest, StatusChangeResponse
from app.services.document_service import DocumentService, build_invoice_render_context
from app.services.document_state_machine import DocumentKind
from app.services.gst_einvoice_service import GSTEInvoiceService
from app.services.payment_service import PaymentService

router = APIRouter()


# ==================== Sweeps ====================

@router.post("/mark-overdue", response_model=OverdueSweepResponse)
async def mark_overdue_invoices(
    db: DB,
    actor: CurrentActor,
    as_of: Optional[date] = Query(None, description="Defaults to today"),
):
    """Mark every unpaid invoice past its due date as OVERDUE."""
    today = as_of or datetime.now(timezone.utc).date()
    count = await PaymentService(db).mark_overdue_invoices(today)
    return OverdueSweepResponse(marked_overdue=count, as_of=today)


# ==================== Invoice ====================

@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: UUID,
    db: DB,
    actor: CurrentActor,
):
    """Get invoice by ID."""
    return await DocumentService(db).get_invoice(invoice_id)


@router.post("/{invoice_id}/status", response_model=StatusChangeResponse)
async def change_invoice_status(
    invoice_id: UUID,
    payload: StatusChangeRequest,
    db: DB,
    actor: CurrentActor,
):
    """
    Issue or cancel an invoice.

    An invoice with an active IRN cannot be cancelled until the IRN is.
    """
    invoice = await DocumentService(db).change_status(
        DocumentKind.INVOICE, invoice_id, payload.normalized(), actor
    )
    return StatusChangeResponse(id=invoice.id, status=invoice.status)


@router.get("/{invoice_id}/pdf")
async def get_invoice_render_context(
    invoice_id: UUID,
    db: DB,
    actor: CurrentActor,
):
    """Data for the invoice PDF: parties, items, tax split, totals and amount in words."""
    invoice = await DocumentService(db).get_invoice(invoice_id)
    return build_invoice_render_context(invoice)


# ==================== E-Invoice ====================

@router.post("/{invoice_id}/generate-irn", response_model=IRNResponse)
async def generate_einvoice_irn(
    invoice_id: UUID,
    db: DB,
    actor: CurrentActor,
    client: EInvoiceClient,
):
    """
    Generate IRN (Invoice Reference Number) from GST E-Invoice portal.

    - Authenticate with GST portal
    - Submit invoice data in prescribed JSON format
    - Receive IRN, ACK number, signed QR code

    Calling again after success returns the stored IRN without contacting
    the portal. Portal errors come back as 502 with the provider's error_cd.
    """
    service = GSTEInvoiceService(db, client)
    return await service.generate_irn(invoice_id, actor)


@router.post("/{invoice_id}/cancel-irn", response_model=IRNCancelResponse)
async def cancel_einvoice_irn(
    invoice_id: UUID,
    payload: IRNCancelRequest,
    db: DB,
    actor: CurrentActor,
    client: EInvoiceClient,
):
    """Cancel the invoice's IRN (within 24 hours of acknowledgement)."""
    service = GSTEInvoiceService(db, client)
    return await service.cancel_irn(invoice_id, payload.reason_code.value, payload.remarks, actor)


@router.get("/{invoice_id}/irn-details")
async def get_irn_details(
    invoice_id: UUID,
    db: DB,
    actor: CurrentActor,
    client: EInvoiceClient,
):
    """Get the portal's record of the invoice's IRN."""
    service = GSTEInvoiceService(db, client)
    details = await service.get_irn_details(invoice_id, actor)
    return {"invoice_id": invoice_id, "portal_details": details}


@router.get("/{invoice_id}/qr-code")
async def get_invoice_qr_code(
    invoice_id: UUID,
    db: DB,
    actor: CurrentActor,
    client: EInvoiceClient,
):
    """
    Get QR code image for an E-Invoice.

    Returns PNG image of the signed QR code.
    """
    service = GSTEInvoiceService(db, client)
    qr_image = await service.get_qr_code_png(invoice_id)
    return Response(
        content=qr_image,
        media_type="image/png",
        headers={"Content-Disposition": f"inline; filename=qr_{invoice_id}.png"},
    )


# ==================== Payments ====================

@router.get("/{invoice_id}/payments", response_model=List[PaymentResponse])
async def list_invoice_payments(
    invoice_id: UUID,
    db: DB,
    actor: CurrentActor,
):
    """List payments recorded against an invoice, oldest first."""
    return await PaymentService(db).list_payments(invoice_id)


@router.post(
    "/{invoice_id}/payments",
    response_model=PaymentRecordedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_invoice_payment(
    invoice_id: UUID,
    payload: PaymentCreate,
    db: DB,
    actor: CurrentActor,
):
    """
    Record a payment against an issued invoice.

    Overpayment is rejected (422) and leaves the invoice unchanged.
    """
    payment = await PaymentService(db).record_payment(
        invoice_id,
        payload.amount,
        payload.method,
        actor,
        payment_date=payload.payment_date,
        reference=payload.reference,
        notes=payload.notes,
    )
    invoice = await db.get(Invoice, invoice_id)
    return PaymentRecordedResponse(
        payment=PaymentResponse.model_validate(payment),
        invoice_id=invoice.id,
        invoice_status=invoice.status,
        paid_amount=invoice.paid_amount,
        outstanding_amount=invoice.outstanding_amount,
    )

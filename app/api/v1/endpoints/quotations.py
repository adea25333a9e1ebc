"""API endpoints for quotations."""
from uuid import UUID

from fastapi import APIRouter, status

from app.api.deps import DB, CurrentActor
from app.schemas.conversion import (
    QuotationConvertRequest,
    QuotationConvertResponse,
    StatusChangeRequest,
    StatusChangeResponse,
)
from app.schemas.quotation import QuotationResponse
from app.services.conversion_service import ConversionService
from app.services.document_service import DocumentService
from app.services.document_state_machine import DocumentKind

router = APIRouter()


@router.get("/{quotation_id}", response_model=QuotationResponse)
async def get_quotation(
    quotation_id: UUID,
    db: DB,
    actor: CurrentActor,
):
    """Get quotation with its taxed items."""
    return await DocumentService(db).get_quotation(quotation_id)


@router.post("/{quotation_id}/status", response_model=StatusChangeResponse)
async def change_quotation_status(
    quotation_id: UUID,
    payload: StatusChangeRequest,
    db: DB,
    actor: CurrentActor,
):
    """Mark a quotation SENT, APPROVED or EXPIRED."""
    quotation = await DocumentService(db).change_status(
        DocumentKind.QUOTATION, quotation_id, payload.normalized(), actor
    )
    return StatusChangeResponse(id=quotation.id, status=quotation.status)


@router.post(
    "/{quotation_id}/convert",
    response_model=QuotationConvertResponse,
    status_code=status.HTTP_201_CREATED,
)
async def convert_quotation(
    quotation_id: UUID,
    payload: QuotationConvertRequest,
    db: DB,
    actor: CurrentActor,
):
    """
    Convert a sent or approved quotation into a draft invoice.

    invoice_date defaults to today, due_date to 30 days after it.
    """
    invoice = await ConversionService(db).convert_quotation_to_invoice(
        quotation_id,
        actor,
        invoice_date=payload.invoice_date,
        due_date=payload.due_date,
        payment_terms=payload.payment_terms,
    )
    return QuotationConvertResponse(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
    )

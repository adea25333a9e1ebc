"""Document lookups, manual status changes, expiry sweep and the invoice rendering context."""
import uuid
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import BillingError, ConflictError, NotFoundError, ValidationError
from app.core.security import Actor
from app.models.billing import Invoice, InvoiceStatus, EInvoiceStatus
from app.models.estimation import Estimation, EstimationStatus
from app.models.quotation import Quotation, QuotationStatus
from app.services.document_state_machine import (
    DocumentKind,
    MANUAL_TRANSITIONS,
    transition_document,
)
from app.services.gst_validation import state_name
from app.services.payment_service import PaymentService
from app.services.tax_engine import amount_in_words


logger = logging.getLogger(__name__)

_MODELS = {
    DocumentKind.ESTIMATION: (Estimation, "Estimation"),
    DocumentKind.QUOTATION: (Quotation, "Quotation"),
    DocumentKind.INVOICE: (Invoice, "Invoice"),
}


def _today() -> date:
    return datetime.now(timezone.utc).date()


class DocumentService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get(self, kind: str, document_id: uuid.UUID, for_update: bool = False):
        model, label = _MODELS[kind]
        stmt = select(model).where(model.id == document_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        document = result.scalar_one_or_none()
        if not document:
            raise NotFoundError(label, document_id)
        return document

    async def get_quotation(self, quotation_id: uuid.UUID) -> Quotation:
        return await self._get(DocumentKind.QUOTATION, quotation_id)

    async def get_invoice(self, invoice_id: uuid.UUID, today: Optional[date] = None) -> Invoice:
        """Load an invoice, moving it to OVERDUE first if its due date has passed."""
        invoice = await self._get(DocumentKind.INVOICE, invoice_id)
        if PaymentService(self.db).refresh_overdue_status(invoice, today):
            await self.db.commit()
            logger.info(f"Invoice {invoice.invoice_number} is overdue")
        return invoice

    # ==================== STATUS ====================

    async def change_status(
        self,
        kind: str,
        document_id: uuid.UUID,
        new_status: str,
        actor: Actor,
    ):
        """
        Manual status change from the UI.

        Only statuses in MANUAL_TRANSITIONS may be requested; conversion,
        payment and overdue statuses are set by their own operations.
        """
        allowed = MANUAL_TRANSITIONS.get(kind, [])
        if new_status not in allowed:
            raise ValidationError.single(
                "status",
                f"Status must be one of {', '.join(allowed)}",
            )

        try:
            document = await self._get(kind, document_id, for_update=True)

            if (
                kind == DocumentKind.INVOICE
                and new_status == InvoiceStatus.CANCELLED.value
                and document.irn
                and document.e_invoice_status == EInvoiceStatus.GENERATED.value
            ):
                raise ConflictError(
                    "Cancel the IRN before cancelling the invoice",
                    current_state=document.status,
                    details={"e_invoice_status": document.e_invoice_status},
                )

            previous = document.status
            transition_document(document, kind, new_status, user_id=actor.id)
            await self.db.commit()
        except BillingError:
            await self.db.rollback()
            raise

        logger.info(f"{kind} {document_id} status {previous} -> {new_status} by {actor.id}")
        return document

    async def expire_stale_documents(self, today: Optional[date] = None) -> Dict[str, int]:
        """Expire estimations and quotations whose validity has run out."""
        today = today or _today()
        counts = {DocumentKind.ESTIMATION: 0, DocumentKind.QUOTATION: 0}

        result = await self.db.execute(
            select(Estimation)
            .where(Estimation.status.in_([EstimationStatus.DRAFT.value, EstimationStatus.SENT.value]))
            .with_for_update()
        )
        for estimation in result.scalars().all():
            if estimation.valid_until < today:
                transition_document(estimation, DocumentKind.ESTIMATION, EstimationStatus.EXPIRED.value)
                counts[DocumentKind.ESTIMATION] += 1

        result = await self.db.execute(
            select(Quotation)
            .where(
                Quotation.status.in_([
                    QuotationStatus.DRAFT.value,
                    QuotationStatus.SENT.value,
                    QuotationStatus.APPROVED.value,
                ]),
                Quotation.valid_until.is_not(None),
                Quotation.valid_until < today,
            )
            .with_for_update()
        )
        for quotation in result.scalars().all():
            transition_document(quotation, DocumentKind.QUOTATION, QuotationStatus.EXPIRED.value)
            counts[DocumentKind.QUOTATION] += 1

        await self.db.commit()
        if any(counts.values()):
            logger.info(
                f"Expired {counts[DocumentKind.ESTIMATION]} estimations and "
                f"{counts[DocumentKind.QUOTATION]} quotations as of {today}"
            )
        return counts


# ==================== RENDERING ====================

def build_invoice_render_context(invoice: Invoice) -> Dict[str, Any]:
    """
    Everything the PDF renderer needs for a tax invoice.

    Amounts stay Decimal; the renderer formats them.
    """
    seller = {
        "legal_name": settings.SELLER_LEGAL_NAME,
        "trade_name": settings.SELLER_TRADE_NAME or settings.SELLER_LEGAL_NAME,
        "gstin": invoice.seller_gstin,
        "address_line1": settings.SELLER_ADDRESS_LINE1,
        "address_line2": settings.SELLER_ADDRESS_LINE2,
        "city": settings.SELLER_CITY,
        "state_code": invoice.seller_state_code,
        "state": state_name(invoice.seller_state_code),
        "pincode": settings.SELLER_PINCODE,
        "phone": settings.SELLER_PHONE,
        "email": settings.SELLER_EMAIL,
    }
    buyer = {
        "name": invoice.buyer_name,
        "trade_name": invoice.buyer_trade_name,
        "gstin": invoice.buyer_gstin,
        "address_line1": invoice.buyer_address_line1,
        "address_line2": invoice.buyer_address_line2,
        "city": invoice.buyer_city,
        "state_code": invoice.buyer_state_code,
        "state": state_name(invoice.buyer_state_code),
        "pincode": invoice.buyer_pincode,
        "email": invoice.buyer_email,
        "phone": invoice.buyer_phone,
    }
    items = [
        {
            "sl_no": item.item_number,
            "description": item.description,
            "hsn_sac_code": item.hsn_sac_code,
            "is_service": item.is_service,
            "quantity": item.quantity,
            "unit": item.unit,
            "unit_price": item.unit_price,
            "taxable_value": item.taxable_value,
            "gst_rate": item.gst_rate,
            "cgst_amount": item.cgst_amount,
            "sgst_amount": item.sgst_amount,
            "igst_amount": item.igst_amount,
            "total_tax": item.total_tax,
            "line_total": item.line_total,
        }
        for item in invoice.items
    ]

    return {
        "document_title": "Tax Invoice",
        "invoice_number": invoice.invoice_number,
        "invoice_date": invoice.invoice_date,
        "due_date": invoice.due_date,
        "payment_terms": invoice.payment_terms,
        "invoice_type": invoice.invoice_type,
        "status": invoice.status,
        "place_of_supply": {
            "state_code": invoice.place_of_supply,
            "state": state_name(invoice.place_of_supply),
        },
        "is_interstate": invoice.is_interstate,
        "is_reverse_charge": invoice.is_reverse_charge,
        "seller": seller,
        "buyer": buyer,
        "items": items,
        "tax_summary": {
            "cgst_total": invoice.cgst_total,
            "sgst_total": invoice.sgst_total,
            "igst_total": invoice.igst_total,
            "tax_amount": invoice.tax_amount,
        },
        "totals": {
            "subtotal": invoice.subtotal,
            "discount": invoice.discount,
            "tax_amount": invoice.tax_amount,
            "total_with_gst": invoice.total_with_gst,
            "paid_amount": invoice.paid_amount,
            "outstanding_amount": invoice.outstanding_amount,
        },
        "amount_in_words": amount_in_words(invoice.total_with_gst),
        "e_invoice": {
            "status": invoice.e_invoice_status,
            "irn": invoice.irn,
            "ack_no": invoice.ack_no,
            "ack_date": invoice.ack_date,
            "signed_qr_code": invoice.signed_qr_code,
        },
    }

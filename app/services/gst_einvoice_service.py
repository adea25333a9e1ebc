"""
GST E-Invoice Service

IRN lifecycle on invoices, on top of GSTEInvoiceClient:
- IRN generation for issued B2B invoices
- IRN cancellation within the cancel window (24 hours from acknowledgement)
- IRN lookup and QR code image

generate_irn runs as three separate steps so no transaction or row lock is
held during the portal round trip:
1. Pre-check in a short transaction (returns stored IRN data if already set)
2. Portal call
3. Commit with a conditional UPDATE ... WHERE irn IS NULL, appending the
   IRNRecord and EInvoiceLog in the same transaction

Every portal exchange is written to einvoice_logs.
"""

import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    BillingError,
    ConflictError,
    EInvoicePortalError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from app.core.security import Actor
from app.models.billing import (
    Invoice,
    InvoiceStatus,
    EInvoiceStatus,
    EInvoiceAction,
    EInvoiceLog,
    IRNRecord,
    IRNCancelReason,
)
from app.services.document_state_machine import DocumentKind, validate_transition
from app.services.gst_einvoice_client import (
    GSTEInvoiceClient,
    SellerDetails,
    build_einvoice_payload,
    generate_qr_code_image,
)
from app.services.gst_validation import validate_gstin


logger = logging.getLogger(__name__)

# Portal limit on DocDtls.No
MAX_INVOICE_NUMBER_LENGTH = 16


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes come back naive from SQLite; they are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class GSTEInvoiceService:
    """IRN generation, cancellation and lookup for invoices."""

    def __init__(
        self,
        db: AsyncSession,
        client: GSTEInvoiceClient,
        seller: Optional[SellerDetails] = None,
        enabled: Optional[bool] = None,
        cancel_window_hours: Optional[int] = None,
    ):
        self.db = db
        self.client = client
        self.seller = seller or SellerDetails.from_settings()
        self.enabled = settings.EINVOICE_ENABLED if enabled is None else enabled
        self.cancel_window = timedelta(
            hours=cancel_window_hours if cancel_window_hours is not None else settings.EINVOICE_CANCEL_WINDOW_HOURS
        )

    async def _get_invoice(self, invoice_id: uuid.UUID) -> Invoice:
        result = await self.db.execute(
            select(Invoice).where(Invoice.id == invoice_id)
        )
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise ExternalServiceError(
                "E-Invoice is not enabled",
                error_code="EINVOICE_DISABLED",
                retryable=False,
            )

    @staticmethod
    def _irn_data(invoice: Invoice, already_generated: bool = False) -> Dict[str, Any]:
        return {
            "invoice_id": invoice.id,
            "irn": invoice.irn,
            "ack_no": invoice.ack_no,
            "ack_date": _as_utc(invoice.ack_date),
            "e_invoice_status": invoice.e_invoice_status,
            "signed_qr_code": invoice.signed_qr_code,
            "already_generated": already_generated,
        }

    def _log(
        self,
        invoice_id: uuid.UUID,
        action: EInvoiceAction,
        actor: Optional[Actor],
        success: bool,
        request_payload: Optional[Dict] = None,
        response_payload: Optional[Dict] = None,
        error: Optional[ExternalServiceError] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.db.add(EInvoiceLog(
            invoice_id=invoice_id,
            action=action.value,
            success=success,
            request_payload=request_payload,
            response_payload=response_payload,
            error_code=error.error_code if error else None,
            error_message=error.message if error else error_message,
            retryable=error.retryable if error else None,
            created_by=actor.id if actor else None,
        ))

    # ==================== PRE-CHECK ====================

    def _generation_errors(self, invoice: Invoice) -> list:
        """Every reason the invoice cannot be submitted, in one list."""
        errors = []

        if invoice.status == InvoiceStatus.DRAFT.value:
            errors.append({"field": "status", "message": "invoice must be issued before generating an IRN"})
        elif invoice.status == InvoiceStatus.CANCELLED.value:
            errors.append({"field": "status", "message": "invoice is cancelled"})

        if not invoice.is_b2b:
            errors.append({"field": "invoice_type", "message": "IRN applies only to B2B invoices"})

        errors.extend(validate_gstin(invoice.buyer_gstin, field="buyer_gstin"))

        if len(invoice.invoice_number) > MAX_INVOICE_NUMBER_LENGTH:
            errors.append({
                "field": "invoice_number",
                "message": f"Invoice number cannot exceed {MAX_INVOICE_NUMBER_LENGTH} characters for the portal",
            })

        errors.extend(validate_gstin(self.seller.gstin, field="seller_gstin"))
        return errors

    # ==================== GENERATE ====================

    async def generate_irn(self, invoice_id: uuid.UUID, actor: Actor) -> Dict[str, Any]:
        """
        Generate IRN for an invoice.

        Idempotent: when the invoice already has an IRN the stored data is
        returned and the portal is not contacted.

        Raises:
            ValidationError: invoice not eligible (all reasons listed)
            ExternalServiceError: portal unreachable or authentication failed
                (invoice untouched, safe to retry)
            EInvoicePortalError: portal rejected the invoice (e_invoice_status FAILED)
            ConflictError: a concurrent request stored an IRN first
        """
        # Step 1: pre-check
        invoice = await self._get_invoice(invoice_id)
        if invoice.irn:
            stored = self._irn_data(invoice, already_generated=True)
            logger.info(f"IRN already generated for invoice {invoice.invoice_number}, returning stored data")
            await self.db.rollback()
            return stored

        errors = self._generation_errors(invoice)
        if errors:
            await self.db.rollback()
            raise ValidationError(errors)
        self._require_enabled()

        read_status = invoice.e_invoice_status
        validate_transition(DocumentKind.E_INVOICE, read_status, EInvoiceStatus.GENERATED.value)
        payload = build_einvoice_payload(invoice, self.seller)
        invoice_number = invoice.invoice_number
        await self.db.commit()

        # Step 2: portal call, no transaction open
        try:
            result = await self.client.generate_irn(payload)
        except ExternalServiceError as e:
            await self._record_generation_failure(invoice_id, read_status, payload, e, actor)
            raise

        # Step 3: commit only if no IRN was stored meanwhile
        now = datetime.now(timezone.utc)
        try:
            update_result = await self.db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.irn.is_(None),
                    Invoice.e_invoice_status.in_([EInvoiceStatus.PENDING.value, EInvoiceStatus.FAILED.value]),
                )
                .values(
                    irn=result.irn,
                    ack_no=result.ack_no,
                    ack_date=_as_utc(result.ack_date),
                    signed_invoice=result.signed_invoice,
                    signed_qr_code=result.signed_qr_code,
                    irn_generated_at=now,
                    e_invoice_status=EInvoiceStatus.GENERATED.value,
                    einvoice_error_code=None,
                    einvoice_error_message=None,
                    updated_at=now,
                )
            )
            if update_result.rowcount != 1:
                raise ConflictError("IRN already generated", current_state=EInvoiceStatus.GENERATED.value)

            self.db.add(IRNRecord(
                invoice_id=invoice_id,
                irn=result.irn,
                ack_no=result.ack_no,
                ack_date=_as_utc(result.ack_date),
                signed_payload=result.signed_invoice,
                qr_code=result.signed_qr_code,
                created_by=actor.id,
            ))
            self._log(invoice_id, EInvoiceAction.GENERATE_IRN, actor, True,
                      request_payload=payload, response_payload=result.raw)
            await self.db.commit()
        except (ConflictError, IntegrityError):
            await self.db.rollback()
            logger.warning(
                f"IRN {result.irn} for invoice {invoice_number} discarded: another request stored an IRN first"
            )
            self._log(invoice_id, EInvoiceAction.GENERATE_IRN, actor, False,
                      request_payload=payload, response_payload=result.raw,
                      error_message="IRN already generated by a concurrent request")
            await self.db.commit()
            raise ConflictError("IRN already generated", current_state=EInvoiceStatus.GENERATED.value)

        invoice = await self._get_invoice(invoice_id)
        await self.db.refresh(invoice)
        logger.info(f"IRN generated for invoice {invoice_number}: ack {invoice.ack_no}")
        return self._irn_data(invoice)

    async def _record_generation_failure(
        self,
        invoice_id: uuid.UUID,
        read_status: str,
        payload: Dict,
        error: ExternalServiceError,
        actor: Actor,
    ) -> None:
        """
        Log the failed exchange. A portal rejection also marks the invoice
        FAILED with the provider's code; transport and auth errors leave it as is.
        """
        self._log(invoice_id, EInvoiceAction.GENERATE_IRN, actor, False,
                  request_payload=payload, error=error)

        if isinstance(error, EInvoicePortalError):
            validate_transition(DocumentKind.E_INVOICE, read_status, EInvoiceStatus.FAILED.value)
            await self.db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.irn.is_(None),
                    Invoice.e_invoice_status.in_([EInvoiceStatus.PENDING.value, EInvoiceStatus.FAILED.value]),
                )
                .values(
                    e_invoice_status=EInvoiceStatus.FAILED.value,
                    einvoice_error_code=error.error_code,
                    einvoice_error_message=error.message,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            logger.warning(f"IRN generation rejected for invoice {invoice_id}: {error.error_code} {error.message}")
        else:
            logger.error(f"IRN generation failed for invoice {invoice_id}: {error.error_code} {error.message}")

        await self.db.commit()

    # ==================== CANCEL ====================

    async def cancel_irn(
        self,
        invoice_id: uuid.UUID,
        reason_code: str,
        remarks: str,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Cancel IRN within the cancel window from its acknowledgement date.

        The IRN stays on the invoice; the IRNRecord is annotated with the
        cancellation and e_invoice_status becomes CANCELLED.
        """
        now = _as_utc(now) if now else datetime.now(timezone.utc)

        try:
            reason = IRNCancelReason(str(reason_code))
        except ValueError:
            raise ValidationError.single("reason_code", "Cancel reason must be 1, 2, 3 or 4")
        remarks = (remarks or "").strip()
        if len(remarks) > 100:
            raise ValidationError.single("remarks", "Remarks cannot exceed 100 characters")

        invoice = await self._get_invoice(invoice_id)
        e_invoice_status = invoice.e_invoice_status
        if not invoice.irn:
            await self.db.rollback()
            raise ConflictError("Invoice has no IRN to cancel", current_state=e_invoice_status)

        record_result = await self.db.execute(
            select(IRNRecord).where(IRNRecord.irn == invoice.irn)
        )
        record = record_result.scalar_one_or_none()
        if e_invoice_status == EInvoiceStatus.CANCELLED.value or (record and record.cancelled_at):
            await self.db.rollback()
            raise ConflictError("IRN already cancelled", current_state=e_invoice_status)
        validate_transition(DocumentKind.E_INVOICE, e_invoice_status, EInvoiceStatus.CANCELLED.value)

        ack_date = _as_utc(invoice.ack_date)
        if ack_date is None or now - ack_date > self.cancel_window:
            await self.db.rollback()
            hours = int(self.cancel_window.total_seconds() // 3600)
            raise ValidationError.single(
                "ack_date",
                f"IRN can only be cancelled within {hours} hours of its acknowledgement date",
            )
        self._require_enabled()

        irn = invoice.irn
        invoice_number = invoice.invoice_number
        request_payload = {"Irn": irn, "CnlRsn": reason.value, "CnlRem": remarks}
        await self.db.commit()

        try:
            response = await self.client.cancel_irn(irn, reason.value, remarks)
        except ExternalServiceError as e:
            self._log(invoice_id, EInvoiceAction.CANCEL_IRN, actor, False,
                      request_payload=request_payload, error=e)
            await self.db.commit()
            logger.warning(f"IRN cancellation failed for invoice {invoice_number}: {e.error_code} {e.message}")
            raise

        cancelled_at = _as_utc(response.get("cancel_date")) or now
        try:
            update_result = await self.db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.e_invoice_status == EInvoiceStatus.GENERATED.value,
                )
                .values(
                    e_invoice_status=EInvoiceStatus.CANCELLED.value,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if update_result.rowcount != 1:
                raise ConflictError("IRN already cancelled", current_state=EInvoiceStatus.CANCELLED.value)

            await self.db.execute(
                update(IRNRecord)
                .where(IRNRecord.irn == irn, IRNRecord.cancelled_at.is_(None))
                .values(
                    cancelled_at=cancelled_at,
                    cancel_reason_code=reason.value,
                    cancel_remarks=remarks,
                    cancelled_by=actor.id,
                )
            )
            self._log(invoice_id, EInvoiceAction.CANCEL_IRN, actor, True,
                      request_payload=request_payload,
                      response_payload={"Irn": irn, "CancelDate": cancelled_at.isoformat()})
            await self.db.commit()
        except BillingError:
            await self.db.rollback()
            raise

        logger.info(f"IRN cancelled for invoice {invoice_number} (reason {reason.value})")
        return {
            "invoice_id": invoice_id,
            "irn": irn,
            "e_invoice_status": EInvoiceStatus.CANCELLED.value,
            "cancelled_at": cancelled_at,
        }

    # ==================== LOOKUP ====================

    async def get_irn_details(self, invoice_id: uuid.UUID, actor: Optional[Actor] = None) -> Dict[str, Any]:
        """Fetch the portal's record of the invoice's IRN."""
        invoice = await self._get_invoice(invoice_id)
        if not invoice.irn:
            raise ConflictError("Invoice has no IRN", current_state=invoice.e_invoice_status)
        self._require_enabled()
        irn = invoice.irn
        await self.db.commit()

        try:
            data = await self.client.get_irn_details(irn)
        except ExternalServiceError as e:
            self._log(invoice_id, EInvoiceAction.GET_IRN, actor, False, request_payload={"Irn": irn}, error=e)
            await self.db.commit()
            raise

        self._log(invoice_id, EInvoiceAction.GET_IRN, actor, True,
                  request_payload={"Irn": irn},
                  response_payload={k: v for k, v in data.items() if k not in ("SignedInvoice", "SignedQRCode")})
        await self.db.commit()
        return data

    async def get_qr_code_png(self, invoice_id: uuid.UUID) -> bytes:
        invoice = await self._get_invoice(invoice_id)
        if not invoice.signed_qr_code:
            raise NotFoundError("QR code", invoice_id)
        return generate_qr_code_image(invoice.signed_qr_code)

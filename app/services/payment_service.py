"""
Payment ledger for invoices.

Payments are append-only. Recording one:
1. Reads the invoice row FOR UPDATE
2. Validates status and amount (0 < amount <= outstanding), reporting all problems
3. Writes paid/outstanding/status with a conditional UPDATE keyed on the
   paid_amount and status that were read, so a concurrent payment that
   slipped in between turns into a ConflictError instead of a lost update
4. Appends the Payment row in the same transaction

Invoice status is derived from the balance (document_state_machine.derive_payment_status)
and applied only through the state machine.
"""
import uuid
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError, NotFoundError, ValidationError, BillingError
from app.core.security import Actor
from app.models.billing import Invoice, InvoiceStatus, Payment, PaymentMethod
from app.services.document_state_machine import (
    DocumentKind,
    derive_payment_status,
    transition_document,
    validate_transition,
)
from app.services.tax_engine import round_money


logger = logging.getLogger(__name__)

OVERDUE_CANDIDATE_STATUSES = [InvoiceStatus.ISSUED.value, InvoiceStatus.PARTIALLY_PAID.value]


def _today() -> date:
    return datetime.now(timezone.utc).date()


class PaymentService:
    """Records payments and keeps invoice balances and statuses consistent."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_invoice(self, invoice_id: uuid.UUID, for_update: bool = False) -> Invoice:
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    def _validate_payment(self, invoice: Invoice, amount) -> Decimal:
        errors = []

        if invoice.status == InvoiceStatus.DRAFT.value:
            errors.append({"field": "invoice", "message": "invoice must be issued before recording payments"})
        elif invoice.status == InvoiceStatus.CANCELLED.value:
            errors.append({"field": "invoice", "message": "invoice is cancelled"})

        try:
            value = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            errors.append({"field": "amount", "message": f"Invalid amount: {amount}"})
            raise ValidationError(errors)

        if not value.is_finite() or value <= 0:
            errors.append({"field": "amount", "message": "Amount must be greater than zero"})
        elif round_money(value) != value:
            errors.append({"field": "amount", "message": "Amount cannot have more than 2 decimal places"})
        elif value > invoice.outstanding_amount:
            errors.append({
                "field": "amount",
                "message": f"Payment of {value} exceeds outstanding amount {invoice.outstanding_amount}",
            })

        if errors:
            raise ValidationError(errors)
        return value

    async def record_payment(
        self,
        invoice_id: uuid.UUID,
        amount,
        method: PaymentMethod,
        actor: Actor,
        payment_date: Optional[date] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Payment:
        """
        Record a payment against an issued invoice.

        Raises:
            NotFoundError: invoice does not exist
            ValidationError: draft/cancelled invoice, non-positive amount or overpayment
            ConflictError: the invoice balance changed concurrently
        """
        today = today or _today()
        try:
            method = PaymentMethod(method).value
        except ValueError:
            valid = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError.single("method", f"Payment method must be one of {valid}")

        try:
            invoice = await self._get_invoice(invoice_id, for_update=True)
            value = self._validate_payment(invoice, amount)

            read_paid = invoice.paid_amount
            read_status = invoice.status
            new_paid = read_paid + value
            new_outstanding = invoice.total_with_gst - new_paid
            new_status = derive_payment_status(invoice.total_with_gst, new_paid, invoice.due_date, today)
            if new_status != read_status:
                validate_transition(DocumentKind.INVOICE, read_status, new_status)

            result = await self.db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice.id,
                    Invoice.paid_amount == read_paid,
                    Invoice.status == read_status,
                )
                .values(
                    paid_amount=new_paid,
                    outstanding_amount=new_outstanding,
                    status=new_status,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount != 1:
                raise ConflictError(
                    "Invoice was updated by a concurrent payment, please retry",
                    current_state=read_status,
                )

            payment = Payment(
                invoice_id=invoice.id,
                amount=value,
                method=method,
                payment_date=payment_date or today,
                reference=reference,
                notes=notes,
                outstanding_after=new_outstanding,
                created_by=actor.id,
            )
            self.db.add(payment)
            await self.db.commit()
        except BillingError:
            await self.db.rollback()
            raise

        await self.db.refresh(invoice)
        logger.info(
            f"Recorded {method} payment of {value} on invoice {invoice.invoice_number}: "
            f"outstanding {invoice.outstanding_amount}, status {invoice.status}"
        )
        return payment

    async def list_payments(self, invoice_id: uuid.UUID) -> List[Payment]:
        await self._get_invoice(invoice_id)
        result = await self.db.execute(
            select(Payment)
            .where(Payment.invoice_id == invoice_id)
            .order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    def refresh_overdue_status(self, invoice: Invoice, today: Optional[date] = None) -> bool:
        """
        Move an unpaid invoice past its due date to OVERDUE (not committed).

        Returns True when the status changed.
        """
        today = today or _today()
        if (
            invoice.status in OVERDUE_CANDIDATE_STATUSES
            and invoice.due_date < today
            and not invoice.is_paid
        ):
            transition_document(invoice, DocumentKind.INVOICE, InvoiceStatus.OVERDUE.value)
            return True
        return False

    async def mark_overdue_invoices(self, today: Optional[date] = None) -> int:
        """Sweep: every issued or partially paid invoice past its due date becomes OVERDUE."""
        today = today or _today()
        result = await self.db.execute(
            select(Invoice)
            .where(
                Invoice.status.in_(OVERDUE_CANDIDATE_STATUSES),
                Invoice.due_date < today,
                Invoice.outstanding_amount > 0,
            )
            .with_for_update()
        )
        invoices = result.scalars().all()

        count = 0
        for invoice in invoices:
            if self.refresh_overdue_status(invoice, today):
                count += 1

        await self.db.commit()
        if count:
            logger.info(f"Marked {count} invoices overdue as of {today}")
        return count

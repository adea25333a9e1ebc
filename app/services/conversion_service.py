"""Conversion Service: Estimation -> Quotation -> Invoice.

Each conversion is one transaction:
1. Load and check the source document (state machine, not yet converted)
2. Validate every submitted line, collecting all problems
3. Tax each line (TaxEngine) and allocate the document number
4. Insert the new document and its items
5. Mark the source converted with a conditional UPDATE keyed on its
   still-unconverted state; zero rows means another request won the race

Unique constraints on quotations.estimation_id, invoices.quotation_id and
the converted_to_*_id columns back the conditional update, so at most one
derived document can ever exist per source.
"""
import uuid
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Dict

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError, BillingError
from app.core.security import Actor
from app.models.billing import Invoice, InvoiceItem, InvoiceType, InvoiceStatus, EInvoiceStatus
from app.models.estimation import Estimation, EstimationStatus
from app.models.quotation import Quotation, QuotationItem, QuotationStatus
from app.models.document_sequence import DocumentType
from app.schemas.conversion import EstimationItemTaxInput
from app.services import tax_engine
from app.services.document_sequence_service import DocumentSequenceService
from app.services.document_state_machine import DocumentKind, validate_transition
from app.services.gst_validation import (
    normalize_gstin,
    validate_gstin,
    is_valid_state_code,
    state_code_from_gstin,
)


logger = logging.getLogger(__name__)

WALK_IN_BUYER_NAME = "Walk-in Customer"


class ConversionService:
    """Estimation to quotation and quotation to invoice conversions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== LOADERS ====================

    async def _get_estimation(self, estimation_id: uuid.UUID) -> Estimation:
        result = await self.db.execute(
            select(Estimation).where(Estimation.id == estimation_id)
        )
        estimation = result.scalar_one_or_none()
        if not estimation:
            raise NotFoundError("Estimation", estimation_id)
        return estimation

    async def _get_quotation(self, quotation_id: uuid.UUID) -> Quotation:
        result = await self.db.execute(
            select(Quotation).where(Quotation.id == quotation_id)
        )
        quotation = result.scalar_one_or_none()
        if not quotation:
            raise NotFoundError("Quotation", quotation_id)
        return quotation

    # ==================== BUYER ====================

    def _resolve_buyer(self, estimation: Estimation) -> Dict:
        """
        Buyer from the project's client, else the estimation's client.

        State code comes from the client record, else the GSTIN prefix,
        else the seller's state (unregistered local buyer).
        """
        client = None
        if estimation.project and estimation.project.client:
            client = estimation.project.client
        elif estimation.client:
            client = estimation.client

        if client is None:
            return {
                "buyer_name": WALK_IN_BUYER_NAME,
                "buyer_gstin": None,
                "buyer_state_code": None,
            }

        gstin = normalize_gstin(client.gstin)
        state_code = client.state_code if is_valid_state_code(client.state_code) else None
        if not state_code:
            state_code = state_code_from_gstin(gstin)

        return {
            "client_id": client.id,
            "buyer_name": client.name,
            "buyer_trade_name": client.trade_name,
            "buyer_gstin": gstin,
            "buyer_state_code": state_code,
            "buyer_address_line1": client.address_line1,
            "buyer_address_line2": client.address_line2,
            "buyer_city": client.city,
            "buyer_pincode": client.pincode,
            "buyer_email": client.email,
            "buyer_phone": client.phone,
        }

    # ==================== ESTIMATION -> QUOTATION ====================

    def _match_items(
        self,
        estimation: Estimation,
        items: List[EstimationItemTaxInput],
    ) -> List[tax_engine.LineItemInput]:
        """
        Pair every estimation item with exactly one submitted tax assignment.

        Reports every unknown, duplicate, missing or invalid entry in one
        ValidationError so the form can be fixed in a single round trip.
        """
        errors = []
        by_id = {item.id: item for item in estimation.items}
        assigned: Dict[uuid.UUID, tuple] = {}

        if not estimation.items:
            errors.append({"field": "items", "message": "Estimation has no items to convert"})

        for index, entry in enumerate(items):
            if entry.item_id not in by_id:
                errors.append({
                    "field": f"items[{index}].item_id",
                    "message": f"Item {entry.item_id} does not belong to this estimation",
                })
            elif entry.item_id in assigned:
                errors.append({
                    "field": f"items[{index}].item_id",
                    "message": f"Item {entry.item_id} is listed more than once",
                })
            else:
                assigned[entry.item_id] = (index, entry)

        for est_item in estimation.items:
            if est_item.id not in assigned:
                errors.append({
                    "field": "items",
                    "message": f"Item #{est_item.item_number} ({est_item.description}) needs an HSN/SAC code and GST rate",
                })

        lines = []
        for est_item in estimation.items:
            if est_item.id not in assigned:
                continue
            index, entry = assigned[est_item.id]
            line = tax_engine.LineItemInput(
                description=est_item.description,
                category=est_item.category,
                quantity=Decimal(est_item.quantity),
                unit=est_item.unit,
                unit_price=Decimal(est_item.unit_price),
                hsn_sac_code=(entry.hsn_sac_code or "").strip(),
                gst_rate=entry.gst_rate,
                is_service=entry.is_service,
            )
            errors.extend(tax_engine.validate_line(line, field_prefix=f"items[{index}]."))
            lines.append((est_item, line))

        if errors:
            raise ValidationError(errors)
        return lines

    async def convert_estimation_to_quotation(
        self,
        estimation_id: uuid.UUID,
        items: List[EstimationItemTaxInput],
        actor: Actor,
        force_inter_state: bool = False,
    ) -> Quotation:
        """
        Create a tax-inclusive quotation from an estimation.

        Raises:
            NotFoundError: estimation does not exist
            ConflictError: estimation already converted
            InvalidTransitionError: estimation is expired
            ValidationError: items missing or invalid, or a discount above the document total (all problems listed)
        """
        estimation = await self._get_estimation(estimation_id)

        if estimation.converted_to_quotation_id or estimation.status == EstimationStatus.CONVERTED.value:
            raise ConflictError(
                "Estimation already converted",
                current_state=estimation.status,
                details={"quotation_id": str(estimation.converted_to_quotation_id)}
                if estimation.converted_to_quotation_id else None,
            )
        validate_transition(DocumentKind.ESTIMATION, estimation.status, EstimationStatus.CONVERTED.value)

        buyer = self._resolve_buyer(estimation)
        errors = []
        if buyer["buyer_gstin"]:
            errors.extend(validate_gstin(buyer["buyer_gstin"], field="client.gstin"))
        matched = None
        try:
            matched = self._match_items(estimation, items)
        except ValidationError as e:
            errors.extend(e.errors)

        seller_state_code = settings.SELLER_STATE_CODE
        buyer_state_code = buyer["buyer_state_code"] or seller_state_code
        supply_type = tax_engine.classify_supply(seller_state_code, buyer["buyer_state_code"], force_inter_state)

        if matched is not None:
            computed = [(est_item, tax_engine.compute_line(line, supply_type)) for est_item, line in matched]
            totals = tax_engine.summarize([c for _, c in computed], discount=estimation.discount)
            errors.extend(tax_engine.validate_discount(totals))
        if errors:
            raise ValidationError(errors)

        try:
            numbering = DocumentSequenceService(self.db)
            quotation_number = await numbering.get_next_number(DocumentType.QUOTATION.value)

            today = datetime.now(timezone.utc).date()
            quotation = Quotation(
                quotation_number=quotation_number,
                estimation_id=estimation.id,
                client_id=buyer.get("client_id") or estimation.client_id,
                project_id=estimation.project_id,
                title=estimation.title,
                status=QuotationStatus.DRAFT.value,
                quotation_type=InvoiceType.B2B.value if buyer["buyer_gstin"] else InvoiceType.B2C.value,
                valid_until=today + timedelta(days=settings.QUOTATION_VALIDITY_DAYS),
                buyer_name=buyer["buyer_name"],
                buyer_trade_name=buyer.get("buyer_trade_name"),
                buyer_gstin=buyer["buyer_gstin"],
                buyer_state_code=buyer_state_code,
                buyer_address_line1=buyer.get("buyer_address_line1"),
                buyer_address_line2=buyer.get("buyer_address_line2"),
                buyer_city=buyer.get("buyer_city"),
                buyer_pincode=buyer.get("buyer_pincode"),
                buyer_email=buyer.get("buyer_email"),
                buyer_phone=buyer.get("buyer_phone"),
                seller_gstin=settings.SELLER_GSTIN,
                seller_state_code=seller_state_code,
                is_interstate=supply_type == tax_engine.SupplyType.INTER,
                subtotal=totals.subtotal,
                cgst_total=totals.cgst_total,
                sgst_total=totals.sgst_total,
                igst_total=totals.igst_total,
                tax_amount=totals.tax_amount,
                discount=totals.discount,
                total_with_gst=totals.total_with_gst,
                notes=estimation.notes,
                created_by=actor.id,
            )
            for number, (est_item, line) in enumerate(computed, 1):
                quotation.items.append(QuotationItem(
                    estimation_item_id=est_item.id,
                    item_number=number,
                    category=line.item.category,
                    description=line.item.description,
                    hsn_sac_code=line.item.hsn_sac_code,
                    is_service=line.item.is_service,
                    quantity=line.item.quantity,
                    unit=line.item.unit,
                    unit_price=line.item.unit_price,
                    taxable_value=line.taxable_value,
                    gst_rate=line.gst_rate,
                    cgst_amount=line.cgst_amount,
                    sgst_amount=line.sgst_amount,
                    igst_amount=line.igst_amount,
                    total_tax=line.total_tax,
                    line_total=line.line_total,
                ))
            self.db.add(quotation)
            await self.db.flush()

            now = datetime.now(timezone.utc)
            result = await self.db.execute(
                update(Estimation)
                .where(
                    Estimation.id == estimation.id,
                    Estimation.converted_to_quotation_id.is_(None),
                    Estimation.status.in_([EstimationStatus.DRAFT.value, EstimationStatus.SENT.value]),
                )
                .values(
                    status=EstimationStatus.CONVERTED.value,
                    converted_to_quotation_id=quotation.id,
                    converted_at=now,
                    converted_by=actor.id,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise ConflictError("Estimation was changed by another request, please retry")

            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(f"Concurrent conversion of estimation {estimation_id} rejected")
            raise ConflictError("Estimation already converted")
        except BillingError:
            await self.db.rollback()
            raise

        logger.info(
            f"Converted estimation {estimation.estimation_number} to quotation {quotation.quotation_number} "
            f"({supply_type.value}, total {quotation.total_with_gst})"
        )
        return quotation

    # ==================== QUOTATION -> INVOICE ====================

    async def convert_quotation_to_invoice(
        self,
        quotation_id: uuid.UUID,
        actor: Actor,
        invoice_date: Optional[date] = None,
        due_date: Optional[date] = None,
        payment_terms: Optional[str] = None,
    ) -> Invoice:
        """
        Create a draft invoice from a sent or approved quotation.

        Items and tax splits are copied as computed on the quotation.
        invoice_date defaults to today and due_date to 30 days after it.
        """
        quotation = await self._get_quotation(quotation_id)

        if quotation.converted_to_invoice_id or quotation.status == QuotationStatus.CONVERTED.value:
            raise ConflictError(
                "Quotation already converted",
                current_state=quotation.status,
                details={"invoice_id": str(quotation.converted_to_invoice_id)}
                if quotation.converted_to_invoice_id else None,
            )
        validate_transition(DocumentKind.QUOTATION, quotation.status, QuotationStatus.CONVERTED.value)

        invoice_date = invoice_date or datetime.now(timezone.utc).date()
        due_date = due_date or invoice_date + timedelta(days=30)
        if due_date < invoice_date:
            raise ValidationError.single("due_date", "Due date cannot be before the invoice date")

        try:
            numbering = DocumentSequenceService(self.db)
            invoice_number = await numbering.get_next_number(DocumentType.INVOICE.value, on=invoice_date)

            invoice = Invoice(
                invoice_number=invoice_number,
                quotation_id=quotation.id,
                client_id=quotation.client_id,
                project_id=quotation.project_id,
                invoice_type=InvoiceType.B2B.value if quotation.is_b2b else InvoiceType.B2C.value,
                status=InvoiceStatus.DRAFT.value,
                invoice_date=invoice_date,
                due_date=due_date,
                payment_terms=payment_terms or settings.DEFAULT_PAYMENT_TERMS,
                buyer_name=quotation.buyer_name,
                buyer_trade_name=quotation.buyer_trade_name,
                buyer_gstin=quotation.buyer_gstin,
                buyer_state_code=quotation.buyer_state_code,
                buyer_address_line1=quotation.buyer_address_line1,
                buyer_address_line2=quotation.buyer_address_line2,
                buyer_city=quotation.buyer_city,
                buyer_pincode=quotation.buyer_pincode,
                buyer_email=quotation.buyer_email,
                buyer_phone=quotation.buyer_phone,
                seller_gstin=quotation.seller_gstin,
                seller_state_code=quotation.seller_state_code,
                place_of_supply=quotation.buyer_state_code,
                is_interstate=quotation.is_interstate,
                subtotal=quotation.subtotal,
                cgst_total=quotation.cgst_total,
                sgst_total=quotation.sgst_total,
                igst_total=quotation.igst_total,
                tax_amount=quotation.tax_amount,
                discount=quotation.discount,
                total_with_gst=quotation.total_with_gst,
                paid_amount=Decimal("0"),
                outstanding_amount=quotation.total_with_gst,
                e_invoice_status=EInvoiceStatus.PENDING.value,
                notes=quotation.notes,
                created_by=actor.id,
            )
            for q_item in quotation.items:
                invoice.items.append(InvoiceItem(
                    quotation_item_id=q_item.id,
                    item_number=q_item.item_number,
                    category=q_item.category,
                    description=q_item.description,
                    hsn_sac_code=q_item.hsn_sac_code,
                    is_service=q_item.is_service,
                    quantity=q_item.quantity,
                    unit=q_item.unit,
                    unit_price=q_item.unit_price,
                    taxable_value=q_item.taxable_value,
                    gst_rate=q_item.gst_rate,
                    cgst_amount=q_item.cgst_amount,
                    sgst_amount=q_item.sgst_amount,
                    igst_amount=q_item.igst_amount,
                    total_tax=q_item.total_tax,
                    line_total=q_item.line_total,
                ))
            self.db.add(invoice)
            await self.db.flush()

            now = datetime.now(timezone.utc)
            result = await self.db.execute(
                update(Quotation)
                .where(
                    Quotation.id == quotation.id,
                    Quotation.converted_to_invoice_id.is_(None),
                    Quotation.status.in_([QuotationStatus.SENT.value, QuotationStatus.APPROVED.value]),
                )
                .values(
                    status=QuotationStatus.CONVERTED.value,
                    converted_to_invoice_id=invoice.id,
                    converted_at=now,
                    converted_by=actor.id,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise ConflictError("Quotation was changed by another request, please retry")

            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(f"Concurrent conversion of quotation {quotation_id} rejected")
            raise ConflictError("Quotation already converted")
        except BillingError:
            await self.db.rollback()
            raise

        logger.info(
            f"Converted quotation {quotation.quotation_number} to invoice {invoice.invoice_number} "
            f"({invoice.invoice_type}, total {invoice.total_with_gst})"
        )
        return invoice

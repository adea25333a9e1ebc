"""Billing models with GST e-Invoice compliance.

Supports:
- Tax Invoice (B2B, B2C) created from a quotation
- E-Invoice with IRN (Invoice Reference Number) and its audit trail
- Payment receipts against an invoice
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Date
from sqlalchemy import Index, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.exceptions import ConflictError
from app.database import Base
from app.db_types import UUIDType, JSONType, MoneyType, QuantityType, RateType


class InvoiceType(str, Enum):
    """Invoice type enumeration."""
    B2B = "B2B"  # Buyer has GSTIN, IRN mandatory
    B2C = "B2C"  # Unregistered buyer, IRN not required


class InvoiceStatus(str, Enum):
    """Invoice status enumeration."""
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    FULLY_PAID = "FULLY_PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class EInvoiceStatus(str, Enum):
    """E-invoice registration status on the GST portal."""
    PENDING = "PENDING"
    GENERATED = "GENERATED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    """Payment mode enumeration."""
    CASH = "CASH"
    CHEQUE = "CHEQUE"
    NEFT = "NEFT"
    RTGS = "RTGS"
    IMPS = "IMPS"
    UPI = "UPI"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    OTHER = "OTHER"


class IRNCancelReason(str, Enum):
    """Cancellation reason codes accepted by the portal."""
    DUPLICATE = "1"
    DATA_ENTRY_MISTAKE = "2"
    ORDER_CANCELLED = "3"
    OTHERS = "4"


class EInvoiceAction(str, Enum):
    GENERATE_IRN = "GENERATE_IRN"
    CANCEL_IRN = "CANCEL_IRN"
    GET_IRN = "GET_IRN"


class Invoice(Base):
    """
    Tax Invoice created from an approved/sent quotation.
    Items and tax split are frozen at creation; status, payment
    and e-invoice fields change afterwards.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_invoice_date", "invoice_date"),
        Index("ix_invoices_due_date", "due_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    # Invoice Identification
    invoice_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique invoice number e.g., INV/25-26/00001"
    )
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("quotations.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True, index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    # Type & Status
    invoice_type: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="B2B, B2C"
    )
    status: Mapped[str] = mapped_column(
        String(50),
        default=InvoiceStatus.DRAFT.value,
        nullable=False,
        index=True,
        comment="DRAFT, ISSUED, PARTIALLY_PAID, FULLY_PAID, OVERDUE, CANCELLED"
    )

    # Dates
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_terms: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Buyer Details (denormalized for invoice permanence)
    buyer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    buyer_trade_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    buyer_gstin: Mapped[Optional[str]] = mapped_column(
        String(15),
        nullable=True,
        comment="Buyer GSTIN, required for B2B"
    )
    buyer_state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    buyer_address_line1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_address_line2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    buyer_pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    buyer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Seller / Place of Supply
    seller_gstin: Mapped[str] = mapped_column(String(15), nullable=False)
    seller_state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    place_of_supply: Mapped[str] = mapped_column(
        String(2),
        nullable=False,
        comment="State code for place of supply"
    )
    is_interstate: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="True if interstate supply (IGST), False if intrastate (CGST+SGST)"
    )
    is_reverse_charge: Mapped[bool] = mapped_column(Boolean, default=False)

    # Amounts (in INR)
    subtotal: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Sum of line taxable values"
    )
    cgst_total: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    sgst_total: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    igst_total: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    discount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    total_with_gst: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Final invoice amount"
    )

    # Payment Status
    paid_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"), nullable=False)
    outstanding_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="total_with_gst - paid_amount, never negative"
    )

    # E-Invoice Fields (GST Portal)
    e_invoice_status: Mapped[str] = mapped_column(
        String(20),
        default=EInvoiceStatus.PENDING.value,
        nullable=False,
        comment="PENDING, GENERATED, CANCELLED, FAILED"
    )
    irn: Mapped[Optional[str]] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
        comment="Invoice Reference Number from GST Portal, immutable once set"
    )
    ack_no: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Acknowledgement number from GST Portal"
    )
    ack_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    irn_generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    signed_invoice: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Digitally signed invoice JWT"
    )
    signed_qr_code: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Signed QR code for e-invoice"
    )
    einvoice_error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    einvoice_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Audit
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    items: Mapped[List["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.item_number",
        lazy="selectin",
    )
    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="invoice",
        order_by="Payment.created_at",
    )

    @property
    def is_b2b(self) -> bool:
        """Check if B2B invoice (buyer has GSTIN)."""
        return self.invoice_type == InvoiceType.B2B.value

    @property
    def is_paid(self) -> bool:
        """Check if invoice is fully paid."""
        return self.outstanding_amount <= 0

    def __repr__(self) -> str:
        return f"<Invoice(number='{self.invoice_number}', status='{self.status}')>"


class InvoiceItem(Base):
    """Invoice line item with HSN/SAC and tax breakup, copied from the quotation."""
    __tablename__ = "invoice_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    quotation_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    item_number: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    hsn_sac_code: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
        comment="HSN code for goods, SAC for services"
    )
    is_service: Mapped[bool] = mapped_column(Boolean, default=False)

    quantity: Mapped[Decimal] = mapped_column(QuantityType, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    taxable_value: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    gst_rate: Mapped[Decimal] = mapped_column(RateType, nullable=False, comment="GST rate (0, 5, 12, 18, 28)")
    cgst_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    sgst_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    igst_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    total_tax: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Taxable value + Tax"
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")

    def __repr__(self) -> str:
        return f"<InvoiceItem(hsn='{self.hsn_sac_code}', qty={self.quantity})>"


class Payment(Base):
    """Payment received against an invoice (append-only)."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="CASH, CHEQUE, NEFT, RTGS, IMPS, UPI, CARD, BANK_TRANSFER, OTHER"
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="UTR / cheque number / transaction id"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Balance snapshot after this payment
    outstanding_after: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="payments")

    def __repr__(self) -> str:
        return f"<Payment(amount={self.amount}, method='{self.method}')>"


class IRNRecord(Base):
    """
    Audit trail of registered IRNs (append-only).
    A record is only ever annotated with its cancellation.
    """
    __tablename__ = "irn_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    irn: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    ack_no: Mapped[str] = mapped_column(String(50), nullable=False)
    ack_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    signed_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason_code: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    cancel_remarks: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<IRNRecord(irn='{self.irn[:12]}...', cancelled={self.cancelled_at is not None})>"


class EInvoiceLog(Base):
    """Every exchange with the e-invoice portal, successful or not."""
    __tablename__ = "einvoice_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    action: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="GENERATE_IRN, CANCEL_IRN, GET_IRN"
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    request_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    response_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retryable: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )


@event.listens_for(InvoiceItem, "before_update")
def _invoice_items_are_frozen(mapper, connection, target):
    raise ConflictError("Invoice items cannot be modified after creation")

"""Quotation models.

Quotations are created only by the conversion pipeline. Items carry the
HSN/SAC code, GST rate and the per-line CGST/SGST/IGST split and are frozen
from creation; only status and conversion fields change afterwards.
"""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, Boolean, DateTime, Date, ForeignKey, Integer, Text
from sqlalchemy import event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.exceptions import ConflictError
from app.database import Base
from app.db_types import UUIDType, MoneyType, QuantityType, RateType


class QuotationStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    APPROVED = "APPROVED"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"


class Quotation(Base):
    __tablename__ = "quotations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    quotation_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="e.g., QT/25-26/00001"
    )

    # One quotation per estimation
    estimation_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("estimations.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True, index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default=QuotationStatus.DRAFT.value,
        nullable=False,
        index=True,
        comment="DRAFT, SENT, APPROVED, CONVERTED, EXPIRED"
    )
    quotation_type: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="B2B when the buyer has a GSTIN, else B2C"
    )
    valid_until: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Buyer (denormalized for document permanence)
    buyer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    buyer_trade_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    buyer_gstin: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    buyer_state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    buyer_address_line1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_address_line2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    buyer_pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    buyer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    seller_gstin: Mapped[str] = mapped_column(String(15), nullable=False)
    seller_state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    is_interstate: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="True if interstate supply (IGST), False if intrastate (CGST+SGST)"
    )

    # Amounts (in INR); tax totals are sums of rounded line values
    subtotal: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    cgst_total: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    sgst_total: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    igst_total: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    discount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    total_with_gst: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Conversion (set exactly once)
    converted_to_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        unique=True,
        nullable=True
    )
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
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

    items: Mapped[List["QuotationItem"]] = relationship(
        "QuotationItem",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="QuotationItem.item_number",
        lazy="selectin",
    )

    @property
    def is_b2b(self) -> bool:
        return bool(self.buyer_gstin)

    def __repr__(self) -> str:
        return f"<Quotation(number='{self.quotation_number}', status='{self.status}')>"


class QuotationItem(Base):
    """Quotation line item with HSN/SAC and tax breakup."""
    __tablename__ = "quotation_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("quotations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    estimation_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)

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

    gst_rate: Mapped[Decimal] = mapped_column(RateType, nullable=False, comment="0, 5, 12, 18, 28")
    cgst_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    sgst_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    igst_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    total_tax: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, comment="Taxable value + Tax")

    quotation: Mapped["Quotation"] = relationship("Quotation", back_populates="items")

    def __repr__(self) -> str:
        return f"<QuotationItem(hsn='{self.hsn_sac_code}', qty={self.quantity})>"


@event.listens_for(QuotationItem, "before_update")
def _quotation_items_are_frozen(mapper, connection, target):
    raise ConflictError("Quotation items cannot be modified after creation")

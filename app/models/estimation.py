"""Estimation models.

An estimation is the informal, tax-free costing sent to a client. It is
created and edited by the CRM screens and stays mutable until it is
converted into a quotation, after which `converted_to_quotation_id` is
set exactly once.
"""
import uuid
from datetime import datetime, date, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import UUIDType, MoneyType, QuantityType, RateType

if TYPE_CHECKING:
    from app.models.client import Client, Project


class EstimationStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"


class Estimation(Base):
    __tablename__ = "estimations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    estimation_number: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        index=True
    )

    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(50),
        default=EstimationStatus.DRAFT.value,
        nullable=False,
        index=True,
        comment="DRAFT, SENT, CONVERTED, EXPIRED"
    )

    # Amounts (tax free)
    subtotal: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    margin_percent: Mapped[Decimal] = mapped_column(
        RateType,
        nullable=False,
        default=Decimal("0"),
        comment="Margin already built into unit prices, informational"
    )
    total: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    validity_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Conversion (set exactly once)
    converted_to_quotation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
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

    items: Mapped[List["EstimationItem"]] = relationship(
        "EstimationItem",
        back_populates="estimation",
        cascade="all, delete-orphan",
        order_by="EstimationItem.item_number",
        lazy="selectin",
    )
    client: Mapped[Optional["Client"]] = relationship("Client", lazy="selectin")
    project: Mapped[Optional["Project"]] = relationship("Project", lazy="selectin")

    @property
    def valid_until(self) -> date:
        return self.created_at.date() + timedelta(days=self.validity_days)

    def __repr__(self) -> str:
        return f"<Estimation(number='{self.estimation_number}', status='{self.status}')>"


class EstimationItem(Base):
    __tablename__ = "estimation_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    estimation_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("estimations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    item_number: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QuantityType, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="quantity * unit_price"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    estimation: Mapped["Estimation"] = relationship("Estimation", back_populates="items")

    def __repr__(self) -> str:
        return f"<EstimationItem(#{self.item_number}, qty={self.quantity})>"

"""
Document Sequence Model for atomic number generation.

Numbering is per document type and Indian financial year (April-March),
continuous within a year, with no daily reset.

Formats:
    QT:  QT/25-26/00001   (Quotation)
    INV: INV/25-26/00001  (Invoice)

A non-empty company code is inserted after the prefix:
    INV/APL/25-26/00001
"""

import uuid
from datetime import date, datetime, timezone
from typing import Optional
from enum import Enum

from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import UUIDType


class DocumentType(str, Enum):
    """Document types that use sequence numbering."""
    QUOTATION = "QT"
    INVOICE = "INV"


class DocumentSequence(Base):
    """
    One counter row per (document type, financial year).

    The row is read with SELECT ... FOR UPDATE by the sequence service so two
    concurrent transactions can never hand out the same number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        UniqueConstraint(
            "document_type", "financial_year",
            name="uq_document_type_fy"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    document_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        index=True,
        comment="QT, INV"
    )
    company_code: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="",
        comment="Optional company code in document number"
    )
    financial_year: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="e.g., 25-26 for FY 2025-26"
    )
    current_number: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Last used sequence number"
    )
    padding_length: Mapped[int] = mapped_column(
        Integer,
        default=5,
        comment="Zero padding for sequence (5 = 00001)"
    )

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

    def format_number(self, number: int) -> str:
        parts = [self.document_type]
        if self.company_code:
            parts.append(self.company_code)
        parts.append(self.financial_year)
        parts.append(str(number).zfill(self.padding_length))
        return "/".join(parts)

    def get_next_number(self) -> str:
        """
        Increment the counter and return the formatted number.

        Does NOT commit; the caller owns the transaction.
        """
        self.current_number += 1
        return self.format_number(self.current_number)

    def preview_next_number(self) -> str:
        return self.format_number(self.current_number + 1)

    @staticmethod
    def get_financial_year(on: Optional[date] = None) -> str:
        """
        Financial year string for a date.

        Indian financial year: April to March
        - Jan 2026 -> FY 25-26
        - Apr 2026 -> FY 26-27
        """
        on = on or datetime.now(timezone.utc).date()
        if on.month >= 4:
            fy_start = on.year
        else:
            fy_start = on.year - 1
        fy_end = fy_start + 1
        return f"{fy_start % 100:02d}-{fy_end % 100:02d}"

    def __repr__(self) -> str:
        return f"<DocumentSequence({self.document_type}/{self.financial_year}: {self.current_number})>"

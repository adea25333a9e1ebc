"""
Document Sequence Service for atomic number generation.

- Financial year based numbering (April-March)
- Continuous sequence within financial year
- Row locked with SELECT FOR UPDATE, allocated inside the caller's transaction
- Format: {PREFIX}[/{COMPANY_CODE}]/{FY}/{SEQUENCE}

USAGE:
    from app.services.document_sequence_service import DocumentSequenceService

    async def convert(db: AsyncSession):
        service = DocumentSequenceService(db)
        quotation_number = await service.get_next_number("QT")
        # Returns: QT/25-26/00001

A number is only consumed when the surrounding transaction commits. A failed
conversion rolls the increment back with everything else.
"""
import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import ConflictError
from app.models.document_sequence import DocumentSequence, DocumentType

logger = logging.getLogger(__name__)


DOCUMENT_METADATA = {
    DocumentType.QUOTATION.value: {"name": "Quotation", "padding": 5},
    DocumentType.INVOICE.value: {"name": "Tax Invoice", "padding": 5},
}


class DocumentSequenceService:
    """
    Service for generating atomic document numbers.

    Uses database-level locking (SELECT FOR UPDATE) so no duplicate numbers
    are generated under concurrent load. The unique document number columns
    on quotations and invoices are the final guard.
    """

    def __init__(self, db: AsyncSession, company_code: Optional[str] = None):
        self.db = db
        self.company_code = settings.COMPANY_CODE if company_code is None else company_code

    def _validate_type(self, document_type: str) -> str:
        doc_type = document_type.upper()
        if doc_type not in DOCUMENT_METADATA:
            valid_types = ", ".join(DOCUMENT_METADATA.keys())
            raise ValueError(f"Invalid document type '{doc_type}'. Valid types: {valid_types}")
        return doc_type

    async def get_next_number(
        self,
        document_type: str,
        on: Optional[date] = None
    ) -> str:
        """
        Get next document number with atomic increment.

        Args:
            document_type: Document type code (QT, INV)
            on: Document date; selects the financial year. Defaults to today.

        Returns:
            Formatted document number, e.g., INV/25-26/00001

        Raises:
            ValueError: If document_type is invalid
        """
        doc_type = self._validate_type(document_type)
        financial_year = DocumentSequence.get_financial_year(on)

        sequence = await self._get_or_create_sequence(doc_type, financial_year)
        doc_number = sequence.get_next_number()
        await self.db.flush()

        logger.debug(f"Allocated {doc_number}")
        return doc_number

    async def preview_next_number(
        self,
        document_type: str,
        on: Optional[date] = None
    ) -> str:
        """Preview what the next number would be without incrementing."""
        doc_type = self._validate_type(document_type)
        financial_year = DocumentSequence.get_financial_year(on)

        sequence = await self._find_sequence(doc_type, financial_year)
        if sequence is None:
            sequence = self._new_sequence(doc_type, financial_year)
        return sequence.preview_next_number()

    def _new_sequence(self, document_type: str, financial_year: str) -> DocumentSequence:
        return DocumentSequence(
            document_type=document_type,
            company_code=self.company_code,
            financial_year=financial_year,
            current_number=0,
            padding_length=DOCUMENT_METADATA[document_type]["padding"],
        )

    async def _find_sequence(
        self,
        document_type: str,
        financial_year: str,
        lock: bool = False
    ) -> Optional[DocumentSequence]:
        stmt = select(DocumentSequence).where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.financial_year == financial_year,
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_sequence(
        self,
        document_type: str,
        financial_year: str
    ) -> DocumentSequence:
        """
        Get existing sequence with row lock, or create a new one.

        Creating the first row of a financial year can race with another
        transaction. The unique (document_type, financial_year) constraint
        fails the loser, which is reported as a retryable numbering conflict.
        """
        sequence = await self._find_sequence(document_type, financial_year, lock=True)
        if sequence:
            return sequence

        sequence = self._new_sequence(document_type, financial_year)
        self.db.add(sequence)
        try:
            await self.db.flush()
        except IntegrityError:
            logger.warning(f"Lost race to start sequence {document_type}/{financial_year}")
            raise ConflictError(
                f"Another document took the first {document_type} number for {financial_year}, please retry",
                details={"retryable": True},
            )
        logger.info(f"Started sequence {document_type}/{financial_year}")
        return sequence

"""Request/response schemas for document conversions."""
from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.base import BaseCreateSchema


class EstimationItemTaxInput(BaseCreateSchema):
    """
    HSN/SAC and GST rate for one estimation item.

    Format and slab checks happen in the conversion service so that every
    failing item is reported together.
    """
    item_id: UUID
    hsn_sac_code: str = Field(..., max_length=20)
    gst_rate: Decimal
    is_service: bool = False


class EstimationConvertRequest(BaseCreateSchema):
    items: List[EstimationItemTaxInput] = Field(default_factory=list)
    force_inter_state: bool = Field(
        False,
        description="Treat the supply as inter-state (IGST) even without a buyer state code"
    )


class EstimationConvertResponse(BaseModel):
    quotation_id: UUID
    quotation_number: str


class QuotationConvertRequest(BaseCreateSchema):
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_terms: Optional[str] = Field(None, max_length=200)


class QuotationConvertResponse(BaseModel):
    invoice_id: UUID
    invoice_number: str


class StatusChangeRequest(BaseCreateSchema):
    status: str = Field(..., min_length=1, max_length=50)

    def normalized(self) -> str:
        return self.status.strip().upper()


class StatusChangeResponse(BaseModel):
    id: UUID
    status: str

"""Pydantic schemas for quotations."""
from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from app.schemas.base import BaseResponseSchema


class QuotationItemResponse(BaseResponseSchema):
    id: UUID
    item_number: int
    category: Optional[str] = None
    description: str
    hsn_sac_code: str
    is_service: bool
    quantity: Decimal
    unit: str
    unit_price: Decimal
    taxable_value: Decimal
    gst_rate: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    total_tax: Decimal
    line_total: Decimal


class QuotationResponse(BaseResponseSchema):
    id: UUID
    quotation_number: str
    estimation_id: UUID
    client_id: Optional[UUID] = None
    project_id: Optional[UUID] = None
    title: str
    status: str
    quotation_type: str
    valid_until: Optional[date] = None

    buyer_name: str
    buyer_gstin: Optional[str] = None
    buyer_state_code: str
    buyer_address_line1: Optional[str] = None
    buyer_city: Optional[str] = None
    buyer_pincode: Optional[str] = None

    seller_state_code: str
    is_interstate: bool

    subtotal: Decimal
    cgst_total: Decimal
    sgst_total: Decimal
    igst_total: Decimal
    tax_amount: Decimal
    discount: Decimal
    total_with_gst: Decimal

    converted_to_invoice_id: Optional[UUID] = None
    converted_at: Optional[datetime] = None
    created_at: datetime

    items: List[QuotationItemResponse] = []

"""Pydantic schemas for invoices, e-invoice (IRN) operations and payments."""
from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.base import BaseResponseSchema, BaseCreateSchema
from app.models.billing import PaymentMethod, IRNCancelReason


# ==================== Invoice Schemas ====================

class InvoiceItemResponse(BaseResponseSchema):
    """Response schema for InvoiceItem."""
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


class InvoiceResponse(BaseResponseSchema):
    """Response schema for Invoice."""
    id: UUID
    invoice_number: str
    quotation_id: UUID
    invoice_type: str
    status: str
    invoice_date: date
    due_date: date
    payment_terms: Optional[str] = None

    buyer_name: str
    buyer_gstin: Optional[str] = None
    buyer_state_code: str
    place_of_supply: str
    is_interstate: bool

    subtotal: Decimal
    cgst_total: Decimal
    sgst_total: Decimal
    igst_total: Decimal
    tax_amount: Decimal
    discount: Decimal
    total_with_gst: Decimal
    paid_amount: Decimal
    outstanding_amount: Decimal

    # E-Invoice
    e_invoice_status: str
    irn: Optional[str] = None
    ack_no: Optional[str] = None
    ack_date: Optional[datetime] = None
    irn_generated_at: Optional[datetime] = None
    einvoice_error_code: Optional[str] = None
    einvoice_error_message: Optional[str] = None

    created_at: datetime
    items: List[InvoiceItemResponse] = []


# ==================== E-Invoice Schemas ====================

class IRNResponse(BaseModel):
    """IRN details stored on the invoice."""
    invoice_id: UUID
    irn: str
    ack_no: Optional[str] = None
    ack_date: Optional[datetime] = None
    e_invoice_status: str
    signed_qr_code: Optional[str] = None
    already_generated: bool = False


class IRNCancelRequest(BaseCreateSchema):
    """
    Cancel reason codes:
        1 - Duplicate
        2 - Data entry mistake
        3 - Order cancelled
        4 - Others
    """
    reason_code: IRNCancelReason
    remarks: str = Field("", max_length=100)


class IRNCancelResponse(BaseModel):
    invoice_id: UUID
    irn: str
    e_invoice_status: str
    cancelled_at: datetime


# ==================== Payment Schemas ====================

class PaymentCreate(BaseCreateSchema):
    """Payment received against an invoice."""
    amount: Decimal = Field(..., description="Must be positive and not exceed the outstanding amount")
    method: PaymentMethod
    payment_date: Optional[date] = Field(None, alias="date")
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class PaymentResponse(BaseResponseSchema):
    id: UUID
    invoice_id: UUID
    amount: Decimal
    method: str
    payment_date: date
    reference: Optional[str] = None
    notes: Optional[str] = None
    outstanding_after: Decimal
    created_at: datetime


class PaymentRecordedResponse(BaseModel):
    """Recorded payment with the invoice balance after it."""
    payment: PaymentResponse
    invoice_id: UUID
    invoice_status: str
    paid_amount: Decimal
    outstanding_amount: Decimal


class OverdueSweepResponse(BaseModel):
    marked_overdue: int
    as_of: date

"""
Base classes for billing schemas.

Response schemas read straight from ORM rows. Money stays Decimal end to end
and is written to JSON as a string ("9440.00") so paise are never lost to
float rounding on the way to the renderer or the client.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Response read from an ORM model (quotation, invoice, payment).

    Usage:
        class PaymentResponse(BaseResponseSchema):
            id: UUID
            amount: Decimal
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            Decimal: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Request body. Surrounding whitespace is stripped and unknown fields are ignored."""
    model_config = ConfigDict(
        extra='ignore',
        str_strip_whitespace=True,
    )

"""GSTIN lookups: local format check, then the e-invoice portal's taxpayer record."""
from fastapi import APIRouter

from app.api.deps import CurrentActor, EInvoiceClient
from app.core.exceptions import ValidationError
from app.services.gst_validation import normalize_gstin, validate_gstin

router = APIRouter()


@router.get("/verify/{gstin}")
async def verify_gstin(
    gstin: str,
    actor: CurrentActor,
    client: EInvoiceClient,
):
    """
    Verify a GSTIN via the E-Invoice portal.

    Malformed GSTINs are rejected locally without a portal call.
    """
    gstin = normalize_gstin(gstin)
    errors = validate_gstin(gstin, field="gstin")
    if errors:
        raise ValidationError(errors)
    return await client.verify_gstin(gstin)

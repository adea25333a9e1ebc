"""
Billing Document State Machine

This module is the SINGLE SOURCE OF TRUTH for estimation, quotation,
invoice and e-invoice status transitions. `transition_document` is the only
place a status is assigned on a loaded entity; services issuing conditional
UPDATE statements call `validate_transition` first.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List

from app.core.exceptions import InvalidTransitionError
from app.models.billing import InvoiceStatus, EInvoiceStatus
from app.models.estimation import EstimationStatus
from app.models.quotation import QuotationStatus


# =============================================================================
# DOCUMENT KINDS
# =============================================================================

class DocumentKind:
    ESTIMATION = "estimation"
    QUOTATION = "quotation"
    INVOICE = "invoice"
    E_INVOICE = "e_invoice"


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ESTIMATION_TRANSITIONS: Dict[str, List[str]] = {
    EstimationStatus.DRAFT.value: [
        EstimationStatus.SENT.value,
        EstimationStatus.CONVERTED.value,
        EstimationStatus.EXPIRED.value,
    ],
    EstimationStatus.SENT.value: [
        EstimationStatus.CONVERTED.value,
        EstimationStatus.EXPIRED.value,
    ],
    EstimationStatus.CONVERTED.value: [],   # Terminal
    EstimationStatus.EXPIRED.value: [],     # Terminal
}

QUOTATION_TRANSITIONS: Dict[str, List[str]] = {
    QuotationStatus.DRAFT.value: [
        QuotationStatus.SENT.value,
        QuotationStatus.APPROVED.value,
        QuotationStatus.EXPIRED.value,
    ],
    QuotationStatus.SENT.value: [
        QuotationStatus.APPROVED.value,
        QuotationStatus.CONVERTED.value,
        QuotationStatus.EXPIRED.value,
    ],
    QuotationStatus.APPROVED.value: [
        QuotationStatus.CONVERTED.value,
        QuotationStatus.EXPIRED.value,
    ],
    QuotationStatus.CONVERTED.value: [],    # Terminal
    QuotationStatus.EXPIRED.value: [],      # Terminal
}

INVOICE_TRANSITIONS: Dict[str, List[str]] = {
    InvoiceStatus.DRAFT.value: [
        InvoiceStatus.ISSUED.value,
    ],
    InvoiceStatus.ISSUED.value: [
        InvoiceStatus.PARTIALLY_PAID.value,
        InvoiceStatus.FULLY_PAID.value,
        InvoiceStatus.OVERDUE.value,
        InvoiceStatus.CANCELLED.value,
    ],
    InvoiceStatus.PARTIALLY_PAID.value: [
        InvoiceStatus.FULLY_PAID.value,
        InvoiceStatus.OVERDUE.value,
        InvoiceStatus.CANCELLED.value,
    ],
    InvoiceStatus.OVERDUE.value: [
        InvoiceStatus.PARTIALLY_PAID.value,
        InvoiceStatus.FULLY_PAID.value,
        InvoiceStatus.CANCELLED.value,
    ],
    InvoiceStatus.FULLY_PAID.value: [],     # Terminal
    InvoiceStatus.CANCELLED.value: [],      # Terminal
}

E_INVOICE_TRANSITIONS: Dict[str, List[str]] = {
    EInvoiceStatus.PENDING.value: [
        EInvoiceStatus.GENERATED.value,
        EInvoiceStatus.FAILED.value,
    ],
    EInvoiceStatus.FAILED.value: [
        EInvoiceStatus.GENERATED.value,     # Retry succeeded
        EInvoiceStatus.FAILED.value,        # Retry rejected again
    ],
    EInvoiceStatus.GENERATED.value: [
        EInvoiceStatus.CANCELLED.value,
    ],
    EInvoiceStatus.CANCELLED.value: [],     # Terminal
}

TRANSITIONS: Dict[str, Dict[str, List[str]]] = {
    DocumentKind.ESTIMATION: ESTIMATION_TRANSITIONS,
    DocumentKind.QUOTATION: QUOTATION_TRANSITIONS,
    DocumentKind.INVOICE: INVOICE_TRANSITIONS,
    DocumentKind.E_INVOICE: E_INVOICE_TRANSITIONS,
}

# Statuses a user may set directly; the rest are driven by conversion,
# payments and the overdue sweep.
MANUAL_TRANSITIONS: Dict[str, List[str]] = {
    DocumentKind.ESTIMATION: [EstimationStatus.SENT.value, EstimationStatus.EXPIRED.value],
    DocumentKind.QUOTATION: [
        QuotationStatus.SENT.value,
        QuotationStatus.APPROVED.value,
        QuotationStatus.EXPIRED.value,
    ],
    DocumentKind.INVOICE: [InvoiceStatus.ISSUED.value, InvoiceStatus.CANCELLED.value],
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _table(kind: str) -> Dict[str, List[str]]:
    try:
        return TRANSITIONS[kind]
    except KeyError:
        raise ValueError(f"Unknown document kind: {kind}")


def can_transition(kind: str, current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in _table(kind).get(current_status, [])


def get_allowed_transitions(kind: str, current_status: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    return list(_table(kind).get(current_status, []))


def is_terminal(kind: str, status: str) -> bool:
    """Is this a terminal (final) state?"""
    return status in _table(kind) and not _table(kind)[status]


def validate_transition(kind: str, current_status: str, new_status: str) -> None:
    """
    Validate a status transition. Raises InvalidTransitionError if invalid.

    Unlike a no-op, a same-state request is rejected unless the table lists
    it explicitly (FAILED -> FAILED for e-invoice retries).
    """
    if not can_transition(kind, current_status, new_status):
        raise InvalidTransitionError(kind, current_status, new_status)


def derive_payment_status(
    total: Decimal,
    paid_amount: Decimal,
    due_date: date,
    today: date,
) -> str:
    """
    Status implied by an invoice's balance.

    FULLY_PAID when nothing is outstanding, OVERDUE when the due date has
    passed with a balance, PARTIALLY_PAID when something was paid, else ISSUED.
    """
    outstanding = total - paid_amount
    if outstanding <= 0:
        return InvoiceStatus.FULLY_PAID.value
    if due_date < today:
        return InvoiceStatus.OVERDUE.value
    if paid_amount > 0:
        return InvoiceStatus.PARTIALLY_PAID.value
    return InvoiceStatus.ISSUED.value


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

def transition_document(doc, kind: str, new_status: str, user_id=None) -> None:
    """
    Transition a document to a new status.

    This function:
    1. Validates the transition is allowed
    2. Updates the status (e_invoice_status for the e-invoice kind)
    3. Sets audit fields based on the transition

    Raises:
        InvalidTransitionError: If transition is not allowed
    """
    field = "e_invoice_status" if kind == DocumentKind.E_INVOICE else "status"
    current_status = getattr(doc, field)

    validate_transition(kind, current_status, new_status)
    setattr(doc, field, new_status)

    now = datetime.now(timezone.utc)

    if kind == DocumentKind.INVOICE:
        if new_status == InvoiceStatus.ISSUED.value:
            doc.issued_at = now
        elif new_status == InvoiceStatus.CANCELLED.value:
            doc.cancelled_at = now
            doc.cancelled_by = user_id

    elif kind == DocumentKind.E_INVOICE:
        if new_status == EInvoiceStatus.GENERATED.value:
            doc.irn_generated_at = now

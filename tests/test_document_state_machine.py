from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.exceptions import ConflictError, InvalidTransitionError
from app.services.document_state_machine import (
    DocumentKind,
    can_transition,
    derive_payment_status,
    get_allowed_transitions,
    is_terminal,
    transition_document,
    validate_transition,
)


class TestTransitionTable:
    def test_estimation_paths(self):
        assert can_transition(DocumentKind.ESTIMATION, "DRAFT", "SENT")
        assert can_transition(DocumentKind.ESTIMATION, "SENT", "CONVERTED")
        assert not can_transition(DocumentKind.ESTIMATION, "CONVERTED", "DRAFT")
        assert is_terminal(DocumentKind.ESTIMATION, "EXPIRED")

    def test_quotation_must_be_sent_or_approved_to_convert(self):
        assert not can_transition(DocumentKind.QUOTATION, "DRAFT", "CONVERTED")
        assert can_transition(DocumentKind.QUOTATION, "SENT", "CONVERTED")
        assert can_transition(DocumentKind.QUOTATION, "APPROVED", "CONVERTED")

    def test_invoice_cannot_skip_issue(self):
        assert get_allowed_transitions(DocumentKind.INVOICE, "DRAFT") == ["ISSUED"]
        assert not can_transition(DocumentKind.INVOICE, "DRAFT", "FULLY_PAID")

    def test_paid_and_cancelled_invoices_are_terminal(self):
        assert is_terminal(DocumentKind.INVOICE, "FULLY_PAID")
        assert is_terminal(DocumentKind.INVOICE, "CANCELLED")
        assert not is_terminal(DocumentKind.INVOICE, "OVERDUE")

    def test_e_invoice_retry_after_failure(self):
        assert can_transition(DocumentKind.E_INVOICE, "FAILED", "GENERATED")
        assert can_transition(DocumentKind.E_INVOICE, "FAILED", "FAILED")
        assert not can_transition(DocumentKind.E_INVOICE, "GENERATED", "GENERATED")
        assert not can_transition(DocumentKind.E_INVOICE, "PENDING", "CANCELLED")

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            can_transition("purchase_order", "DRAFT", "SENT")


def test_invalid_transition_is_a_conflict():
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(DocumentKind.INVOICE, "CANCELLED", "ISSUED")

    error = exc_info.value
    assert isinstance(error, ConflictError)
    assert error.current_state == "CANCELLED"
    assert error.to_dict()["details"] == {"requested_state": "ISSUED"}


def test_transition_document_sets_audit_fields():
    invoice = SimpleNamespace(status="ISSUED", issued_at=None, cancelled_at=None, cancelled_by=None)

    transition_document(invoice, DocumentKind.INVOICE, "CANCELLED", user_id="user-1")

    assert invoice.status == "CANCELLED"
    assert invoice.cancelled_at is not None
    assert invoice.cancelled_by == "user-1"


def test_transition_document_e_invoice_field():
    invoice = SimpleNamespace(status="ISSUED", e_invoice_status="PENDING", irn_generated_at=None)

    transition_document(invoice, DocumentKind.E_INVOICE, "GENERATED")

    assert invoice.e_invoice_status == "GENERATED"
    assert invoice.status == "ISSUED"
    assert invoice.irn_generated_at is not None


def test_failed_transition_leaves_document_untouched():
    quotation = SimpleNamespace(status="EXPIRED")

    with pytest.raises(InvalidTransitionError):
        transition_document(quotation, DocumentKind.QUOTATION, "SENT")

    assert quotation.status == "EXPIRED"


@pytest.mark.parametrize("paid,due,expected", [
    ("0", date(2026, 11, 1), "ISSUED"),
    ("400", date(2026, 11, 1), "PARTIALLY_PAID"),
    ("400", date(2026, 10, 1), "OVERDUE"),
    ("0", date(2026, 10, 18), "OVERDUE"),
    ("0", date(2026, 10, 19), "ISSUED"),
    ("1180", date(2026, 10, 1), "FULLY_PAID"),
])
def test_derive_payment_status(paid, due, expected):
    status = derive_payment_status(Decimal("1180"), Decimal(paid), due, today=date(2026, 10, 19))

    assert status == expected

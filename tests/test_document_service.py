import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from app.models.estimation import Estimation
from app.models.quotation import Quotation
from app.services.conversion_service import ConversionService
from app.services.document_service import DocumentService, build_invoice_render_context
from app.services.document_state_machine import DocumentKind

from tests.conftest import BUYER_GSTIN_KA, create_client, create_estimation, create_invoice, tax_inputs


class TestChangeStatus:
    async def test_estimation_sent(self, db, actor):
        estimation = await create_estimation(db)

        updated = await DocumentService(db).change_status(DocumentKind.ESTIMATION, estimation.id, "SENT", actor)

        assert updated.status == "SENT"

    async def test_conversion_status_cannot_be_set_by_hand(self, db, actor):
        estimation = await create_estimation(db)

        with pytest.raises(ValidationError) as exc_info:
            await DocumentService(db).change_status(DocumentKind.ESTIMATION, estimation.id, "CONVERTED", actor)

        assert exc_info.value.fields == ["status"]

    async def test_invoice_paid_status_cannot_be_set_by_hand(self, db, actor):
        invoice = await create_invoice(db, actor)
        invoice_id = invoice.id

        with pytest.raises(ValidationError):
            await DocumentService(db).change_status(DocumentKind.INVOICE, invoice_id, "FULLY_PAID", actor)

    async def test_draft_invoice_cannot_be_cancelled(self, db, actor):
        invoice = await create_invoice(db, actor, issue=False)
        invoice_id = invoice.id

        with pytest.raises(InvalidTransitionError):
            await DocumentService(db).change_status(DocumentKind.INVOICE, invoice_id, "CANCELLED", actor)

    async def test_issue_sets_audit_timestamp(self, db, actor):
        invoice = await create_invoice(db, actor)

        assert invoice.status == "ISSUED"
        assert invoice.issued_at is not None

    async def test_cancel_records_actor(self, db, actor):
        invoice = await create_invoice(db, actor)

        cancelled = await DocumentService(db).change_status(DocumentKind.INVOICE, invoice.id, "CANCELLED", actor)

        assert cancelled.cancelled_by == actor.id
        assert cancelled.cancelled_at is not None

    async def test_unknown_document(self, db, actor):
        with pytest.raises(NotFoundError):
            await DocumentService(db).change_status(DocumentKind.QUOTATION, uuid.uuid4(), "SENT", actor)


class TestExpiry:
    async def test_stale_estimations_and_quotations_expire(self, db, session_factory, actor):
        stale = await create_estimation(db)
        converted_source = await create_estimation(db)
        quotation = await ConversionService(db).convert_estimation_to_quotation(
            converted_source.id, tax_inputs(converted_source), actor
        )
        today = datetime.now(timezone.utc).date()

        counts = await DocumentService(db).expire_stale_documents(today=today + timedelta(days=31))

        assert counts == {"estimation": 1, "quotation": 1}
        async with session_factory() as other:
            assert (await other.get(Estimation, stale.id)).status == "EXPIRED"
            assert (await other.get(Estimation, converted_source.id)).status == "CONVERTED"
            assert (await other.get(Quotation, quotation.id)).status == "EXPIRED"

    async def test_valid_documents_are_kept(self, db, actor):
        await create_estimation(db)

        counts = await DocumentService(db).expire_stale_documents(today=datetime.now(timezone.utc).date())

        assert counts == {"estimation": 0, "quotation": 0}

    async def test_expired_quotation_cannot_convert(self, db, actor):
        estimation = await create_estimation(db)
        quotation = await ConversionService(db).convert_estimation_to_quotation(
            estimation.id, tax_inputs(estimation), actor
        )
        await DocumentService(db).change_status(DocumentKind.QUOTATION, quotation.id, "EXPIRED", actor)

        with pytest.raises(InvalidTransitionError):
            await ConversionService(db).convert_quotation_to_invoice(quotation.id, actor)


async def test_render_context_for_inter_state_invoice(db, actor):
    client = await create_client(db, gstin=BUYER_GSTIN_KA, state_code="29")
    invoice = await create_invoice(db, actor, client=client, invoice_date=date(2026, 10, 19))

    context = build_invoice_render_context(invoice)

    assert context["document_title"] == "Tax Invoice"
    assert context["place_of_supply"] == {"state_code": "29", "state": "Karnataka"}
    assert context["seller"]["state"] == "Maharashtra"
    assert context["seller"]["gstin"] == "27AAACB1234C1Z5"
    assert context["buyer"]["gstin"] == BUYER_GSTIN_KA
    assert context["is_interstate"] is True
    assert context["tax_summary"]["igst_total"] == Decimal("1440.00")
    assert context["totals"]["total_with_gst"] == Decimal("9440.00")
    assert context["amount_in_words"] == "Rupees Nine Thousand Four Hundred Forty Only"
    assert [item["sl_no"] for item in context["items"]] == [1, 2]
    assert context["e_invoice"]["irn"] is None

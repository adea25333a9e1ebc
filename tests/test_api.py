"""HTTP tests through the ASGI app with the database and portal client swapped for test doubles."""
import uuid
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from app.api.deps import get_einvoice_client
from app.core.security import create_access_token
from app.database import get_db
from app.main import app

from tests.conftest import FakePortal, create_client, create_estimation, portal_rejection


@pytest.fixture
def auth_headers(actor):
    return {"Authorization": f"Bearer {create_access_token(actor.id)}"}


@pytest_asyncio.fixture
async def api(session_factory, einvoice_client):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_einvoice_client] = lambda: einvoice_client
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _items_body(estimation, rate="18"):
    return {
        "items": [
            {"item_id": str(item.id), "hsn_sac_code": "998599", "gst_rate": rate, "is_service": True}
            for item in estimation.items
        ]
    }


async def _issued_invoice(api, db, auth_headers):
    """Drive the whole pipeline over HTTP and return the issued invoice id."""
    estimation = await create_estimation(db, client=await create_client(db))
    converted = await api.post(
        f"/api/v1/estimations/{estimation.id}/convert", json=_items_body(estimation), headers=auth_headers
    )
    quotation_id = converted.json()["quotation_id"]
    await api.post(f"/api/v1/quotations/{quotation_id}/status", json={"status": "sent"}, headers=auth_headers)
    invoiced = await api.post(
        f"/api/v1/quotations/{quotation_id}/convert",
        json={"invoice_date": "2026-10-19", "due_date": "2099-12-31"},
        headers=auth_headers,
    )
    invoice_id = invoiced.json()["invoice_id"]
    await api.post(f"/api/v1/invoices/{invoice_id}/status", json={"status": "ISSUED"}, headers=auth_headers)
    return invoice_id


async def test_health(api):
    response = await api.get("/health")

    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "connected"


async def test_invalid_token_is_unauthorized(api):
    response = await api.get(
        f"/api/v1/invoices/{uuid.uuid4()}", headers={"Authorization": "Bearer not-a-token"}
    )

    assert response.status_code == 401


class TestConversionEndpoints:
    async def test_convert_estimation_then_conflict(self, api, db, auth_headers):
        estimation = await create_estimation(db, client=await create_client(db))
        url = f"/api/v1/estimations/{estimation.id}/convert"

        first = await api.post(url, json=_items_body(estimation), headers=auth_headers)
        second = await api.post(url, json=_items_body(estimation), headers=auth_headers)

        assert first.status_code == 201
        assert first.json()["quotation_number"].startswith("QT/")
        assert second.status_code == 409
        assert second.json()["error_code"] == "CONFLICT"

        quotation = await api.get(f"/api/v1/quotations/{first.json()['quotation_id']}", headers=auth_headers)
        assert quotation.status_code == 200
        body = quotation.json()
        assert Decimal(body["subtotal"]) == Decimal("8000")
        assert Decimal(body["total_with_gst"]) == Decimal("9440")
        assert [item["hsn_sac_code"] for item in body["items"]] == ["998599", "998599"]

    async def test_invalid_items_listed(self, api, db, auth_headers):
        estimation = await create_estimation(db)

        response = await api.post(
            f"/api/v1/estimations/{estimation.id}/convert",
            json=_items_body(estimation, rate="15"),
            headers=auth_headers,
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert [e["field"] for e in body["errors"]] == ["items[0].gst_rate", "items[1].gst_rate"]

    async def test_unknown_estimation(self, api, auth_headers):
        response = await api.post(
            f"/api/v1/estimations/{uuid.uuid4()}/convert", json={"items": []}, headers=auth_headers
        )

        assert response.status_code == 404

    async def test_invalid_transition_is_conflict(self, api, db, auth_headers):
        estimation = await create_estimation(db)
        converted = await api.post(
            f"/api/v1/estimations/{estimation.id}/convert", json=_items_body(estimation), headers=auth_headers
        )

        response = await api.post(
            f"/api/v1/quotations/{converted.json()['quotation_id']}/convert", json={}, headers=auth_headers
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_TRANSITION"
        assert response.json()["current_state"] == "DRAFT"


class TestInvoiceEndpoints:
    async def test_invoice_and_render_context(self, api, db, auth_headers):
        invoice_id = await _issued_invoice(api, db, auth_headers)

        invoice = await api.get(f"/api/v1/invoices/{invoice_id}", headers=auth_headers)
        context = await api.get(f"/api/v1/invoices/{invoice_id}/pdf", headers=auth_headers)

        assert invoice.status_code == 200
        assert invoice.json()["invoice_number"] == "INV/26-27/00001"
        assert invoice.json()["status"] == "ISSUED"
        assert context.status_code == 200
        assert context.json()["amount_in_words"] == "Rupees Nine Thousand Four Hundred Forty Only"

    async def test_generate_irn_twice(self, api, db, auth_headers, portal):
        invoice_id = await _issued_invoice(api, db, auth_headers)
        url = f"/api/v1/invoices/{invoice_id}/generate-irn"

        first = await api.post(url, headers=auth_headers)
        second = await api.post(url, headers=auth_headers)

        assert first.status_code == 200
        assert first.json()["e_invoice_status"] == "GENERATED"
        assert second.json()["irn"] == first.json()["irn"]
        assert second.json()["already_generated"] is True
        assert len(portal.calls(FakePortal.GENERATE_PATH)) == 1

        qr = await api.get(f"/api/v1/invoices/{invoice_id}/qr-code", headers=auth_headers)
        assert qr.status_code == 200
        assert qr.headers["content-type"] == "image/png"

    async def test_portal_rejection_is_bad_gateway(self, api, db, auth_headers, portal):
        invoice_id = await _issued_invoice(api, db, auth_headers)
        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = portal_rejection("2150", "Duplicate IRN")

        response = await api.post(f"/api/v1/invoices/{invoice_id}/generate-irn", headers=auth_headers)

        assert response.status_code == 502
        assert response.json()["error_cd"] == "2150"
        assert response.json()["message"] == "Duplicate IRN"
        assert response.json()["retryable"] is False

        invoice = await api.get(f"/api/v1/invoices/{invoice_id}", headers=auth_headers)
        assert invoice.json()["e_invoice_status"] == "FAILED"
        assert invoice.json()["einvoice_error_code"] == "2150"

    async def test_cancel_irn_outside_window(self, api, db, auth_headers, portal):
        portal.ack_dt = "2020-01-01 10:00:00"
        invoice_id = await _issued_invoice(api, db, auth_headers)
        await api.post(f"/api/v1/invoices/{invoice_id}/generate-irn", headers=auth_headers)

        response = await api.post(
            f"/api/v1/invoices/{invoice_id}/cancel-irn",
            json={"reason_code": "2", "remarks": "Wrong rate"},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["errors"][0]["field"] == "ack_date"

    async def test_cancelled_invoice_generate_irn(self, api, db, auth_headers):
        invoice_id = await _issued_invoice(api, db, auth_headers)
        await api.post(f"/api/v1/invoices/{invoice_id}/status", json={"status": "CANCELLED"}, headers=auth_headers)

        response = await api.post(f"/api/v1/invoices/{invoice_id}/generate-irn", headers=auth_headers)

        assert response.status_code == 422
        assert "invoice is cancelled" in response.json()["error"]

    async def test_unknown_invoice(self, api, auth_headers):
        response = await api.get(f"/api/v1/invoices/{uuid.uuid4()}", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "Invoice not found"

    async def test_mark_overdue(self, api, db, auth_headers):
        invoice_id = await _issued_invoice(api, db, auth_headers)

        response = await api.post("/api/v1/invoices/mark-overdue?as_of=2100-01-01", headers=auth_headers)

        assert response.json() == {"marked_overdue": 1, "as_of": "2100-01-01"}
        invoice = await api.get(f"/api/v1/invoices/{invoice_id}", headers=auth_headers)
        assert invoice.json()["status"] == "OVERDUE"


class TestPaymentEndpoints:
    async def test_overpayment_then_partial_payment(self, api, db, auth_headers):
        invoice_id = await _issued_invoice(api, db, auth_headers)
        url = f"/api/v1/invoices/{invoice_id}/payments"

        rejected = await api.post(url, json={"amount": "10000", "method": "neft"}, headers=auth_headers)
        accepted = await api.post(
            url, json={"amount": "4000", "method": "neft", "reference": "UTR0001"}, headers=auth_headers
        )

        assert rejected.status_code == 422
        assert rejected.json()["errors"][0]["field"] == "amount"
        assert accepted.status_code == 201
        body = accepted.json()
        assert body["invoice_status"] == "PARTIALLY_PAID"
        assert Decimal(body["outstanding_amount"]) == Decimal("5440")
        assert body["payment"]["method"] == "NEFT"

        payments = await api.get(url, headers=auth_headers)
        assert [p["reference"] for p in payments.json()] == ["UTR0001"]

    async def test_unknown_method_rejected_by_schema(self, api, db, auth_headers):
        invoice_id = await _issued_invoice(api, db, auth_headers)

        response = await api.post(
            f"/api/v1/invoices/{invoice_id}/payments",
            json={"amount": "100", "method": "barter"},
            headers=auth_headers,
        )

        assert response.status_code == 422


class TestGSTINEndpoint:
    async def test_malformed_gstin_is_not_sent_to_portal(self, api, auth_headers, portal):
        response = await api.get("/api/v1/gstin/verify/29ABCDE1234", headers=auth_headers)

        assert response.status_code == 422
        assert portal.requests == []

    async def test_verify(self, api, auth_headers):
        response = await api.get("/api/v1/gstin/verify/29abcde1234f1z5", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["is_valid"] is True
        assert response.json()["gstin"] == "29ABCDE1234F1Z5"

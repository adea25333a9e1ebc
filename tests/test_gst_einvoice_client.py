import base64
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from app.core.exceptions import EInvoicePortalError, ExternalServiceError
from app.services.gst_einvoice_client import (
    GSTEInvoiceClient,
    SellerDetails,
    build_einvoice_payload,
    generate_qr_code_image,
    gst_unit_code,
    parse_portal_datetime,
)

from tests.conftest import PORTAL_IRN, FakePortal, portal_rejection


def _client(portal, **kwargs):
    options = dict(
        gstin="27AAACB1234C1Z5",
        username="api_user",
        password="api_password",
        client_id="client-id",
        client_secret="client-secret",
        base_url="https://einvoice.test",
    )
    options.update(kwargs)
    return GSTEInvoiceClient(transport=httpx.MockTransport(portal.handler), **options)


class TestAuthentication:
    async def test_token_is_reused(self, portal):
        client = _client(portal)

        await client.get_irn_details(PORTAL_IRN)
        await client.get_irn_details(PORTAL_IRN)

        assert len(portal.calls(FakePortal.AUTH_PATH)) == 1
        auth = portal.calls(FakePortal.AUTH_PATH)[0]
        assert auth.headers["gstin"] == "27AAACB1234C1Z5"
        assert auth.headers["client-id"] == "client-id"
        assert FakePortal.body(auth)["UserName"] == "api_user"
        lookup = portal.calls(f"{GSTEInvoiceClient.GET_IRN_PATH}/{PORTAL_IRN}")[-1]
        assert lookup.headers["auth-token"] == "token-1"

    async def test_expired_token_is_refreshed(self, portal):
        client = _client(portal, token_ttl=timedelta(0))

        await client.get_irn_details(PORTAL_IRN)
        await client.get_irn_details(PORTAL_IRN)

        assert len(portal.calls(FakePortal.AUTH_PATH)) == 2

    async def test_401_triggers_one_reauthentication(self, portal):
        path = f"{GSTEInvoiceClient.GET_IRN_PATH}/{PORTAL_IRN}"
        answers = iter([httpx.Response(401, json={"Status": 0})])

        def first_call_unauthorized(request):
            try:
                return next(answers)
            except StopIteration:
                return portal.default_response(request)

        portal.overrides[("GET", path)] = first_call_unauthorized
        client = _client(portal)

        details = await client.get_irn_details(PORTAL_IRN)

        assert details["Irn"] == PORTAL_IRN
        auths = portal.calls(FakePortal.AUTH_PATH)
        assert len(auths) == 2
        assert FakePortal.body(auths[1])["ForceRefreshAccessToken"] is True
        assert portal.calls(path)[-1].headers["auth-token"] == "token-2"

    async def test_repeated_401_is_not_retryable(self, portal):
        path = f"{GSTEInvoiceClient.GET_IRN_PATH}/{PORTAL_IRN}"
        portal.overrides[("GET", path)] = lambda request: httpx.Response(401, json={"Status": 0})
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_irn_details(PORTAL_IRN)

        assert exc_info.value.error_code == "AUTH_FAILED"
        assert exc_info.value.retryable is False
        assert len(portal.calls(path)) == 2

    async def test_rejected_credentials(self, portal):
        portal.overrides[("POST", FakePortal.AUTH_PATH)] = portal_rejection("GSP752", "Invalid login credentials")
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        error = exc_info.value
        assert not isinstance(error, EInvoicePortalError)
        assert error.error_code == "GSP752"
        assert error.message == "Invalid login credentials"
        assert error.retryable is False
        assert portal.calls(FakePortal.GENERATE_PATH) == []

    async def test_auth_server_error_is_retryable(self, portal):
        portal.overrides[("POST", FakePortal.AUTH_PATH)] = lambda request: httpx.Response(503)
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "HTTP_503"
        assert exc_info.value.retryable is True

    async def test_auth_response_without_token(self, portal):
        portal.overrides[("POST", FakePortal.AUTH_PATH)] = lambda request: httpx.Response(200, json={
            "Status": 1,
            "Data": {"TokenExpiry": "2026-10-19 17:30:00"},
        })
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert not isinstance(exc_info.value, EInvoicePortalError)
        assert exc_info.value.error_code == "INVALID_RESPONSE"
        assert client.has_valid_token is False
        assert portal.calls(FakePortal.GENERATE_PATH) == []

    async def test_auth_response_with_corrupt_sek(self, portal):
        portal.overrides[("POST", FakePortal.AUTH_PATH)] = lambda request: httpx.Response(200, json={
            "Status": 1,
            "Data": {"AuthToken": "token", "Sek": "not base64!"},
        })
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "INVALID_RESPONSE"


class TestGenerateIRN:
    async def test_parses_acknowledgement(self, portal):
        client = _client(portal)

        result = await client.generate_irn({"Version": "1.1"})

        assert result.irn == PORTAL_IRN
        assert result.ack_no == "112410000012345"
        assert result.ack_date == datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)
        assert result.signed_qr_code.endswith("signed-qr.sig")
        assert "SignedInvoice" not in result.raw
        assert FakePortal.body(portal.calls(FakePortal.GENERATE_PATH)[0]) == {"Version": "1.1"}

    async def test_iso_acknowledgement_date(self, portal):
        portal.ack_dt = "2026-10-19T11:30:00"
        client = _client(portal)

        result = await client.generate_irn({"Version": "1.1"})

        assert result.irn == PORTAL_IRN
        assert result.ack_date == datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)

    async def test_unreadable_acknowledgement_date_keeps_irn(self, portal):
        portal.ack_dt = "19/10/2026 11:30 AM"
        client = _client(portal)
        before = datetime.now(timezone.utc)

        result = await client.generate_irn({"Version": "1.1"})

        assert result.irn == PORTAL_IRN
        assert result.ack_no == "112410000012345"
        assert result.ack_date >= before
        assert result.raw["AckDt"] == "19/10/2026 11:30 AM"

    async def test_portal_rejection_keeps_provider_code(self, portal):
        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = portal_rejection("2150", "Duplicate IRN")
        client = _client(portal)

        with pytest.raises(EInvoicePortalError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        error = exc_info.value
        assert error.error_code == "2150"
        assert error.message == "Duplicate IRN"
        assert error.retryable is False
        assert error.to_dict()["error_cd"] == "2150"

    async def test_gsp_style_error(self, portal):
        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = lambda request: httpx.Response(
            400, json={"status_cd": "0", "error_cd": "GSP102", "message": "Invalid payload"}
        )
        client = _client(portal)

        with pytest.raises(EInvoicePortalError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "GSP102"

    async def test_server_error_is_retryable(self, portal):
        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = lambda request: httpx.Response(502, text="Bad Gateway")
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert not isinstance(exc_info.value, EInvoicePortalError)
        assert exc_info.value.error_code == "HTTP_502"
        assert exc_info.value.retryable is True

    async def test_timeout(self, portal):
        def slow(request):
            raise httpx.ReadTimeout("timed out", request=request)

        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = slow
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "TIMEOUT"
        assert exc_info.value.retryable is True

    async def test_unreachable(self, portal):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        portal.overrides[("POST", FakePortal.AUTH_PATH)] = refused
        client = _client(portal)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "NETWORK_ERROR"

    async def test_missing_irn_in_success_response(self, portal):
        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = lambda request: httpx.Response(
            200, json={"Status": 1, "Data": {"AckNo": 1}}
        )
        client = _client(portal)

        with pytest.raises(EInvoicePortalError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "INVALID_RESPONSE"

    async def test_encrypted_session(self, portal):
        key = os.urandom(32)
        portal.overrides[("POST", FakePortal.AUTH_PATH)] = lambda request: httpx.Response(200, json={
            "Status": 1,
            "Data": {"AuthToken": "secure-token", "Sek": base64.b64encode(key).decode()},
        })
        received = {}

        def encrypted_generate(request):
            body = FakePortal.body(request)
            received.update(GSTEInvoiceClient._decrypt_response(body["Data"], key))
            data = {"Irn": PORTAL_IRN, "AckNo": 42, "AckDt": "2026-10-19 11:30:00", "SignedQRCode": "qr"}
            return httpx.Response(200, json={"Status": 1, "Data": GSTEInvoiceClient._encrypt_request(data, key)})

        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = encrypted_generate
        client = _client(portal)

        result = await client.generate_irn({"Version": "1.1", "DocDtls": {"No": "INV/26-27/00001"}})

        assert received == {"Version": "1.1", "DocDtls": {"No": "INV/26-27/00001"}}
        assert result.irn == PORTAL_IRN
        assert result.ack_no == "42"

    async def test_undecryptable_response(self, portal):
        key = os.urandom(32)
        portal.overrides[("POST", FakePortal.AUTH_PATH)] = lambda request: httpx.Response(200, json={
            "Status": 1,
            "Data": {"AuthToken": "secure-token", "Sek": base64.b64encode(key).decode()},
        })
        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = lambda request: httpx.Response(200, json={
            "Status": 1,
            "Data": base64.b64encode(b"short").decode(),
        })
        client = _client(portal)

        with pytest.raises(EInvoicePortalError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "INVALID_RESPONSE"
        assert exc_info.value.retryable is False

    async def test_non_object_data(self, portal):
        portal.overrides[("POST", FakePortal.GENERATE_PATH)] = lambda request: httpx.Response(
            200, json={"Status": 1, "Data": "[1, 2]"}
        )
        client = _client(portal, encrypt_payload=False)

        with pytest.raises(EInvoicePortalError) as exc_info:
            await client.generate_irn({"Version": "1.1"})

        assert exc_info.value.error_code == "INVALID_RESPONSE"

    async def test_plain_body_when_encryption_disabled(self, portal):
        portal.overrides[("POST", FakePortal.AUTH_PATH)] = lambda request: httpx.Response(200, json={
            "Status": 1,
            "Data": {"AuthToken": "token", "Sek": base64.b64encode(os.urandom(32)).decode()},
        })
        client = _client(portal, encrypt_payload=False)

        await client.generate_irn({"Version": "1.1"})

        assert FakePortal.body(portal.calls(FakePortal.GENERATE_PATH)[0]) == {"Version": "1.1"}


class TestOtherOperations:
    async def test_cancel_irn(self, portal):
        client = _client(portal)

        result = await client.cancel_irn(PORTAL_IRN, "2", "Wrong buyer address")

        assert result["irn"] == PORTAL_IRN
        assert result["cancel_date"] == datetime(2026, 10, 20, 4, 30, tzinfo=timezone.utc)
        body = FakePortal.body(portal.calls(FakePortal.CANCEL_PATH)[0])
        assert body == {"Irn": PORTAL_IRN, "CnlRsn": "2", "CnlRem": "Wrong buyer address"}

    async def test_verify_gstin(self, portal):
        client = _client(portal)

        result = await client.verify_gstin("29ABCDE1234F1Z5")

        assert result["is_valid"] is True
        assert result["state_code"] == "29"
        assert result["legal_name"] == "Acme Builders LLP"

    async def test_verify_unknown_gstin(self, portal):
        path = f"{GSTEInvoiceClient.GET_GSTIN_PATH}/29ABCDE1234F1Z5"
        portal.overrides[("GET", path)] = portal_rejection("3028", "GSTIN is not present in the system")
        client = _client(portal)

        result = await client.verify_gstin("29ABCDE1234F1Z5")

        assert result == {
            "gstin": "29ABCDE1234F1Z5",
            "is_valid": False,
            "error": "GSTIN is not present in the system",
        }


def test_base_url_by_mode():
    assert GSTEInvoiceClient("g", "u", "p").base_url == GSTEInvoiceClient.SANDBOX_BASE_URL
    assert GSTEInvoiceClient("g", "u", "p", api_mode="PRODUCTION").base_url == GSTEInvoiceClient.PRODUCTION_BASE_URL
    assert GSTEInvoiceClient("g", "u", "p", base_url="https://gsp.example/").base_url == "https://gsp.example"


def test_parse_portal_datetime():
    assert parse_portal_datetime(None) is None
    parsed = parse_portal_datetime("2026-10-19 00:00:00")
    assert parsed.astimezone(timezone.utc) == datetime(2026, 10, 18, 18, 30, tzinfo=timezone.utc)
    iso = parse_portal_datetime("2026-10-19T11:30:00")
    assert iso.astimezone(timezone.utc) == datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)
    assert parse_portal_datetime("2026-10-19T11:30:00+00:00") == datetime(2026, 10, 19, 11, 30, tzinfo=timezone.utc)
    assert parse_portal_datetime("19/10/2026") is None


def test_unit_codes():
    assert gst_unit_code("pcs") == "NOS"
    assert gst_unit_code("SqFt") == "SQF"
    assert gst_unit_code("bundle") == "OTH"
    assert gst_unit_code(None) == "OTH"


def test_build_payload_from_invoice():
    item = SimpleNamespace(
        description="False ceiling work",
        is_service=True,
        hsn_sac_code="998599",
        quantity=Decimal("1.000"),
        unit="lot",
        unit_price=Decimal("10000.00"),
        taxable_value=Decimal("10000.00"),
        gst_rate=Decimal("18.00"),
        igst_amount=Decimal("0.00"),
        cgst_amount=Decimal("900.00"),
        sgst_amount=Decimal("900.00"),
        line_total=Decimal("11800.00"),
    )
    invoice = SimpleNamespace(
        invoice_number="INV/26-27/00001",
        invoice_date=date(2026, 10, 19),
        due_date=date(2026, 11, 18),
        invoice_type="B2B",
        is_reverse_charge=False,
        buyer_gstin="27AABCU9603R1ZM",
        buyer_name="Acme Builders LLP",
        buyer_trade_name=None,
        buyer_address_line1="Residency Road",
        buyer_address_line2=None,
        buyer_city="Mumbai",
        buyer_pincode="400001",
        buyer_state_code="27",
        buyer_phone=None,
        buyer_email=None,
        place_of_supply="27",
        subtotal=Decimal("10000.00"),
        cgst_total=Decimal("900.00"),
        sgst_total=Decimal("900.00"),
        igst_total=Decimal("0.00"),
        discount=Decimal("0.00"),
        total_with_gst=Decimal("11800.00"),
        payment_terms="Net 30",
        paid_amount=Decimal("0.00"),
        outstanding_amount=Decimal("11800.00"),
        items=[item],
    )
    seller = SellerDetails(
        gstin="27AAACB1234C1Z5",
        legal_name="Bharat Interiors Pvt Ltd",
        address_line1="12 Linking Road",
        city="Mumbai",
        state_code="27",
        pincode="400050",
    )

    payload = build_einvoice_payload(invoice, seller)

    assert payload["DocDtls"] == {"Typ": "INV", "No": "INV/26-27/00001", "Dt": "19/10/2026"}
    assert payload["SellerDtls"]["Pin"] == 400050
    assert payload["BuyerDtls"]["Gstin"] == "27AABCU9603R1ZM"
    assert payload["BuyerDtls"]["Pos"] == "27"
    assert payload["ValDtls"]["CgstVal"] == 900.0
    assert payload["ValDtls"]["RndOffAmt"] == 0.0
    assert payload["ValDtls"]["TotInvVal"] == 11800.0
    assert payload["ItemList"][0]["Unit"] == "LOT"
    assert payload["ItemList"][0]["IsServc"] == "Y"
    assert payload["PayDtls"]["CrDay"] == 30


def test_qr_code_png():
    image = generate_qr_code_image("eyJhbGciOiJSUzI1NiJ9.signed-qr.sig")

    assert image.startswith(b"\x89PNG")

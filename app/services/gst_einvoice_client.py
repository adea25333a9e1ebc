"""
GST E-Invoice Client

Wire protocol for the NIC (National Informatics Centre) E-Invoice Portal:
- Authentication and token management
- IRN (Invoice Reference Number) generation
- IRN cancellation
- IRN lookup and GSTIN verification
- QR Code image generation

The client never touches the database and never retries on its own, apart
from one re-authentication when the portal answers 401.

API Documentation: https://einvoice1.gst.gov.in/
Sandbox: https://einvoice1-sandbox.nic.in/
Production: https://einvoice1.gst.gov.in/
"""

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import BytesIO
from typing import Optional, Dict, Any

import httpx
import qrcode
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend

from app.config import Settings, settings as app_settings
from app.core.exceptions import ExternalServiceError, EInvoicePortalError

logger = logging.getLogger(__name__)


# Portal timestamps (AckDt, CancelDate) are Indian Standard Time
IST = timezone(timedelta(hours=5, minutes=30))
PORTAL_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Document units to GST Unit Quantity Codes (UQC)
UNIT_CODES = {
    "pcs": "NOS",
    "nos": "NOS",
    "sqft": "SQF",
    "sqm": "SQM",
    "rft": "RFT",
    "set": "SET",
    "lot": "LOT",
    "kg": "KGS",
    "ltr": "LTR",
    "mtr": "MTR",
}


def gst_unit_code(unit: Optional[str]) -> str:
    return UNIT_CODES.get((unit or "").strip().lower(), "OTH")


def parse_portal_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a portal timestamp. NIC sends "YYYY-MM-DD HH:MM:SS" in IST; ISO 8601
    is accepted too. Returns None for anything unreadable.
    """
    if not value:
        return None
    text = str(value).strip()
    try:
        return datetime.strptime(text, PORTAL_DATETIME_FORMAT).replace(tzinfo=IST)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Unreadable portal timestamp {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=IST)


def _money(value) -> float:
    return float(Decimal(value or 0))


@dataclass(frozen=True)
class SellerDetails:
    """The single registered seller entity that issues every invoice."""
    gstin: str
    legal_name: str
    address_line1: str
    city: str
    state_code: str
    pincode: str
    trade_name: Optional[str] = None
    address_line2: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_settings(cls, config: Settings = app_settings) -> "SellerDetails":
        return cls(
            gstin=config.SELLER_GSTIN,
            legal_name=config.SELLER_LEGAL_NAME,
            trade_name=config.SELLER_TRADE_NAME,
            address_line1=config.SELLER_ADDRESS_LINE1,
            address_line2=config.SELLER_ADDRESS_LINE2,
            city=config.SELLER_CITY,
            state_code=config.SELLER_STATE_CODE,
            pincode=config.SELLER_PINCODE,
            phone=config.SELLER_PHONE,
            email=config.SELLER_EMAIL,
        )


@dataclass
class IRNResult:
    irn: str
    ack_no: str
    ack_date: datetime
    signed_invoice: Optional[str]
    signed_qr_code: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


def build_einvoice_payload(invoice, seller: SellerDetails) -> Dict[str, Any]:
    """
    Build E-Invoice JSON payload as per NIC schema.
    Reference: https://einvoice1.gst.gov.in/Others/GSTINVSchemaV1.1.pdf

    Tax values are the invoice's stored, already rounded amounts. RndOffAmt
    absorbs any difference so AssVal + taxes - Discount + RndOffAmt == TotInvVal.
    """
    subtotal = Decimal(invoice.subtotal)
    cgst = Decimal(invoice.cgst_total or 0)
    sgst = Decimal(invoice.sgst_total or 0)
    igst = Decimal(invoice.igst_total or 0)
    discount = Decimal(invoice.discount or 0)
    total = Decimal(invoice.total_with_gst)
    round_off = total - (subtotal + cgst + sgst + igst - discount)

    payload = {
        "Version": "1.1",
        "TranDtls": {
            "TaxSch": "GST",
            "SupTyp": invoice.invoice_type,
            "RegRev": "Y" if invoice.is_reverse_charge else "N",
            "EcmGstin": None,
            "IgstOnIntra": "N"
        },
        "DocDtls": {
            "Typ": "INV",  # INV, CRN, DBN
            "No": invoice.invoice_number,
            "Dt": invoice.invoice_date.strftime("%d/%m/%Y")
        },
        "SellerDtls": {
            "Gstin": seller.gstin,
            "LglNm": seller.legal_name,
            "TrdNm": seller.trade_name or seller.legal_name,
            "Addr1": seller.address_line1,
            "Addr2": seller.address_line2 or "",
            "Loc": seller.city,
            "Pin": int(seller.pincode) if str(seller.pincode).isdigit() else 0,
            "Stcd": seller.state_code,
            "Ph": seller.phone or "",
            "Em": seller.email or ""
        },
        "BuyerDtls": {
            "Gstin": invoice.buyer_gstin or "URP",  # URP for unregistered
            "LglNm": invoice.buyer_name,
            "TrdNm": invoice.buyer_trade_name or invoice.buyer_name,
            "Pos": invoice.place_of_supply,
            "Addr1": invoice.buyer_address_line1 or "",
            "Addr2": invoice.buyer_address_line2 or "",
            "Loc": invoice.buyer_city or "",
            "Pin": int(invoice.buyer_pincode) if (invoice.buyer_pincode or "").isdigit() else 0,
            "Stcd": invoice.buyer_state_code,
            "Ph": invoice.buyer_phone or "",
            "Em": invoice.buyer_email or ""
        },
        "ItemList": [],
        "ValDtls": {
            "AssVal": _money(subtotal),
            "CgstVal": _money(cgst),
            "SgstVal": _money(sgst),
            "IgstVal": _money(igst),
            "CesVal": 0,
            "StCesVal": 0,
            "Discount": _money(discount),
            "OthChrg": 0,
            "RndOffAmt": _money(round_off),
            "TotInvVal": _money(total),
            "TotInvValFc": 0
        }
    }

    for idx, item in enumerate(invoice.items, 1):
        payload["ItemList"].append({
            "SlNo": str(idx),
            "PrdDesc": item.description,
            "IsServc": "Y" if item.is_service else "N",
            "HsnCd": item.hsn_sac_code,
            "Qty": float(item.quantity),
            "FreeQty": 0,
            "Unit": gst_unit_code(item.unit),
            "UnitPrice": _money(item.unit_price),
            "TotAmt": _money(item.taxable_value),
            "Discount": 0,
            "PreTaxVal": 0,
            "AssAmt": _money(item.taxable_value),
            "GstRt": float(item.gst_rate),
            "IgstAmt": _money(item.igst_amount),
            "CgstAmt": _money(item.cgst_amount),
            "SgstAmt": _money(item.sgst_amount),
            "CesRt": 0,
            "CesAmt": 0,
            "CesNonAdvlAmt": 0,
            "StateCesRt": 0,
            "StateCesAmt": 0,
            "StateCesNonAdvlAmt": 0,
            "OthChrg": 0,
            "TotItemVal": _money(item.line_total)
        })

    if invoice.payment_terms:
        payload["PayDtls"] = {
            "Nm": seller.legal_name,
            "PayTerm": invoice.payment_terms,
            "CrDay": (invoice.due_date - invoice.invoice_date).days,
            "PaidAmt": _money(invoice.paid_amount),
            "PaymtDue": _money(invoice.outstanding_amount),
        }

    return payload


class GSTEInvoiceClient:
    """
    Client for GST E-Invoice operations via NIC portal.

    One instance is shared per process so the auth token is reused until it
    nears expiry. `transport` lets tests plug in httpx.MockTransport.
    """

    # NIC API Endpoints
    SANDBOX_BASE_URL = "https://einvoice1-sandbox.nic.in"
    PRODUCTION_BASE_URL = "https://einvoice1.gst.gov.in"

    # API Paths
    AUTH_PATH = "/eivital/v1.04/auth"
    GENERATE_IRN_PATH = "/eicore/v1.03/Invoice"
    GET_IRN_PATH = "/eicore/v1.03/Invoice/irn"
    CANCEL_IRN_PATH = "/eicore/v1.03/Invoice/Cancel"
    GET_GSTIN_PATH = "/eivital/v1.03/Master/gstin"

    def __init__(
        self,
        gstin: str,
        username: str,
        password: str,
        client_id: str = "",
        client_secret: str = "",
        api_mode: str = "SANDBOX",
        base_url: Optional[str] = None,
        auth_timeout: float = 30.0,
        timeout: float = 60.0,
        token_ttl: timedelta = timedelta(hours=5, minutes=30),
        encrypt_payload: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.gstin = gstin
        self.username = username
        self._password = password
        self.client_id = client_id
        self._client_secret = client_secret
        self.api_mode = api_mode
        self._base_url = base_url
        self.auth_timeout = auth_timeout
        self.timeout = timeout
        self.token_ttl = token_ttl
        self.encrypt_payload = encrypt_payload
        self._transport = transport

        self._auth_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None
        self._sek: Optional[bytes] = None  # Session Encryption Key

    @classmethod
    def from_settings(
        cls,
        config: Settings = app_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GSTEInvoiceClient":
        return cls(
            gstin=config.SELLER_GSTIN,
            username=config.EINVOICE_USERNAME,
            password=config.EINVOICE_PASSWORD,
            client_id=config.EINVOICE_CLIENT_ID,
            client_secret=config.EINVOICE_CLIENT_SECRET,
            api_mode=config.EINVOICE_API_MODE,
            base_url=config.EINVOICE_BASE_URL,
            auth_timeout=config.EINVOICE_AUTH_TIMEOUT_SECONDS,
            timeout=config.EINVOICE_TIMEOUT_SECONDS,
            token_ttl=timedelta(minutes=config.EINVOICE_TOKEN_TTL_MINUTES),
            encrypt_payload=config.EINVOICE_ENCRYPT_PAYLOAD,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        """Get base URL based on API mode."""
        if self._base_url:
            return self._base_url.rstrip("/")
        if self.api_mode == "PRODUCTION":
            return self.PRODUCTION_BASE_URL
        return self.SANDBOX_BASE_URL

    @property
    def has_valid_token(self) -> bool:
        return bool(
            self._auth_token
            and self._token_expiry
            and datetime.now(timezone.utc) < self._token_expiry
        )

    def invalidate_token(self) -> None:
        self._auth_token = None
        self._token_expiry = None
        self._sek = None

    # ==================== ENCRYPTION ====================

    @staticmethod
    def _encrypt_request(data: Dict, key: bytes) -> str:
        """Encrypt request data using AES-256."""
        json_data = json.dumps(data).encode('utf-8')

        # Pad to 16 bytes (AES block size)
        padding_length = 16 - (len(json_data) % 16)
        padded_data = json_data + bytes([padding_length] * padding_length)

        iv = os.urandom(16)
        cipher = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend())
        encryptor = cipher.encryptor()
        encrypted = encryptor.update(padded_data) + encryptor.finalize()

        # Return base64 encoded: IV + encrypted data
        return base64.b64encode(iv + encrypted).decode('utf-8')

    @staticmethod
    def _decrypt_response(encrypted_data: str, key: bytes) -> Dict:
        """Decrypt response data using AES-256."""
        data = base64.b64decode(encrypted_data)

        # Extract IV (first 16 bytes)
        iv = data[:16]
        encrypted = data[16:]

        cipher = Cipher(algorithms.AES(key), modes.CBC(iv), backend=default_backend())
        decryptor = cipher.decryptor()
        decrypted = decryptor.update(encrypted) + decryptor.finalize()

        padding_length = decrypted[-1]
        decrypted = decrypted[:-padding_length]

        return json.loads(decrypted.decode('utf-8'))

    def _use_encryption(self) -> bool:
        return self.encrypt_payload and self._sek is not None

    def _encode_body(self, data: Dict) -> Dict:
        if self._use_encryption():
            return {"Data": self._encrypt_request(data, self._sek)}
        return data

    def _decode_data(self, data: Any) -> Dict:
        if isinstance(data, str):
            if self._use_encryption():
                data = self._decrypt_response(data, self._sek)
            else:
                data = json.loads(data)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        return data

    @staticmethod
    def _unreadable(action: str, error: Exception) -> EInvoicePortalError:
        logger.error(f"E-Invoice {action} returned data that could not be decoded: {error!r}")
        return EInvoicePortalError(
            f"E-Invoice portal returned an unreadable response during {action}",
            error_code="INVALID_RESPONSE",
        )

    # ==================== TRANSPORT ====================

    def _http_client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @staticmethod
    def _portal_error(result: Dict, default_message: str) -> EInvoicePortalError:
        """Build a rejection error carrying the provider's code verbatim."""
        details = result.get("ErrorDetails") or []
        if isinstance(details, list) and details:
            first = details[0] or {}
            return EInvoicePortalError(
                message=first.get("ErrorMessage") or default_message,
                error_code=first.get("ErrorCode"),
                details={"errors": details},
            )
        if result.get("error_cd") or result.get("message"):
            return EInvoicePortalError(
                message=result.get("message") or default_message,
                error_code=result.get("error_cd"),
            )
        return EInvoicePortalError(message=default_message)

    async def _send(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        body: Optional[Dict],
        timeout: float,
        action: str,
    ) -> httpx.Response:
        try:
            async with self._http_client(timeout) as client:
                return await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=body,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            logger.warning(f"E-Invoice {action} timed out: {e}")
            raise ExternalServiceError(
                f"E-Invoice portal timed out during {action}",
                error_code="TIMEOUT",
                retryable=True,
            )
        except httpx.RequestError as e:
            logger.warning(f"E-Invoice {action} request failed: {e}")
            raise ExternalServiceError(
                f"E-Invoice portal unreachable during {action}: {e}",
                error_code="NETWORK_ERROR",
                retryable=True,
            )

    def _parse_response(self, response: httpx.Response, action: str) -> Dict:
        if response.status_code >= 500:
            raise ExternalServiceError(
                f"E-Invoice portal error during {action}: HTTP {response.status_code}",
                error_code=f"HTTP_{response.status_code}",
                retryable=True,
            )

        try:
            result = response.json()
        except ValueError:
            raise ExternalServiceError(
                f"E-Invoice portal returned an unreadable response during {action}",
                error_code=f"HTTP_{response.status_code}",
                retryable=response.status_code < 400,
            )

        if response.status_code >= 400 or result.get("Status") != 1:
            raise self._portal_error(result, f"E-Invoice {action} failed")

        try:
            return self._decode_data(result.get("Data"))
        except (ValueError, KeyError, TypeError, IndexError) as e:
            raise self._unreadable(action, e)

    # ==================== AUTHENTICATION ====================

    async def authenticate(self, force: bool = False) -> str:
        """
        Authenticate with NIC E-Invoice portal and get auth token.
        Token is valid for 6 hours; cached for token_ttl (5.5 hours by default).
        """
        if not force and self.has_valid_token:
            return self._auth_token

        auth_data = {
            "UserName": self.username,
            "Password": self._password,
            "AppKey": base64.b64encode(os.urandom(32)).decode('utf-8'),
            "ForceRefreshAccessToken": force
        }
        headers = {
            "Content-Type": "application/json",
            "gstin": self.gstin,
            "client-id": self.client_id,
            "client-secret": self._client_secret,
        }

        response = await self._send("POST", self.AUTH_PATH, headers, auth_data, self.auth_timeout, "authentication")

        if response.status_code >= 500:
            raise ExternalServiceError(
                f"E-Invoice authentication failed: HTTP {response.status_code}",
                error_code=f"HTTP_{response.status_code}",
                retryable=True,
            )
        try:
            result = response.json()
        except ValueError:
            result = {}

        if response.status_code >= 400 or result.get("Status") != 1:
            rejection = self._portal_error(result, "Authentication failed")
            logger.error(f"E-Invoice authentication rejected: {rejection.error_code} {rejection.message}")
            raise ExternalServiceError(
                rejection.message,
                error_code=rejection.error_code or "AUTH_FAILED",
                retryable=False,
            )

        try:
            data = result.get("Data") or {}
            auth_token = data["AuthToken"]
            if not auth_token:
                raise KeyError("AuthToken")
            sek = base64.b64decode(data["Sek"]) if data.get("Sek") else None
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"E-Invoice authentication returned no usable token: {e!r}")
            raise ExternalServiceError(
                "E-Invoice portal returned an unreadable response during authentication",
                error_code="INVALID_RESPONSE",
                retryable=False,
            )

        self._auth_token = auth_token
        self._sek = sek
        self._token_expiry = datetime.now(timezone.utc) + self.token_ttl
        logger.info("E-Invoice portal authenticated")
        return self._auth_token

    async def _call(
        self,
        method: str,
        path: str,
        action: str,
        data: Optional[Dict] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict:
        """Authenticated call; re-authenticates once if the portal answers 401."""
        for attempt in range(2):
            await self.authenticate(force=attempt > 0)
            headers = {
                "Content-Type": "application/json",
                "gstin": self.gstin,
                "auth-token": self._auth_token,
                "user_name": self.username,
            }
            if extra_headers:
                headers.update(extra_headers)

            body = self._encode_body(data) if data is not None else None
            response = await self._send(method, path, headers, body, self.timeout, action)

            if response.status_code == 401:
                logger.info(f"E-Invoice token rejected during {action}, re-authenticating")
                self.invalidate_token()
                continue
            return self._parse_response(response, action)

        raise ExternalServiceError(
            f"E-Invoice portal rejected credentials during {action}",
            error_code="AUTH_FAILED",
            retryable=False,
        )

    # ==================== OPERATIONS ====================

    async def generate_irn(self, payload: Dict) -> IRNResult:
        """
        Submit an invoice payload for IRN registration.

        Returns:
            IRNResult with Irn, AckNo, AckDt, SignedInvoice, SignedQRCode
        """
        data = await self._call("POST", self.GENERATE_IRN_PATH, "IRN generation", data=payload)

        if not data.get("Irn"):
            raise EInvoicePortalError("Portal response is missing the IRN", error_code="INVALID_RESPONSE")
        logger.info(f"Portal issued IRN {data['Irn']} (ack {data.get('AckNo')}, {data.get('AckDt')})")

        return IRNResult(
            irn=data["Irn"],
            ack_no=str(data.get("AckNo")),
            ack_date=parse_portal_datetime(data.get("AckDt")) or datetime.now(timezone.utc),
            signed_invoice=data.get("SignedInvoice"),
            signed_qr_code=data.get("SignedQRCode"),
            raw={k: v for k, v in data.items() if k not in ("SignedInvoice", "SignedQRCode")},
        )

    async def cancel_irn(self, irn: str, reason_code: str, remarks: str = "") -> Dict:
        """
        Cancel an IRN.

        Args:
            reason_code: Cancel reason code (1-4)
                1 - Duplicate
                2 - Data entry mistake
                3 - Order cancelled
                4 - Others
        """
        cancel_payload = {
            "Irn": irn,
            "CnlRsn": str(reason_code),
            "CnlRem": remarks or f"Cancelled: {reason_code}"
        }
        data = await self._call("POST", self.CANCEL_IRN_PATH, "IRN cancellation", data=cancel_payload)
        return {
            "irn": data.get("Irn", irn),
            "cancel_date": parse_portal_datetime(data.get("CancelDate")),
        }

    async def get_irn_details(self, irn: str) -> Dict:
        """Get details of an existing IRN."""
        return await self._call(
            "GET",
            f"{self.GET_IRN_PATH}/{irn}",
            "IRN lookup",
            extra_headers={"irn": irn},
        )

    async def verify_gstin(self, gstin: str) -> Dict:
        """
        Verify a GSTIN via the E-Invoice portal.

        Returns taxpayer details; is_valid is False when the portal does not
        know the GSTIN or reports it inactive.
        """
        try:
            data = await self._call("GET", f"{self.GET_GSTIN_PATH}/{gstin}", "GSTIN verification")
        except EInvoicePortalError as e:
            return {"gstin": gstin, "is_valid": False, "error": e.message}

        return {
            "gstin": data.get("Gstin"),
            "legal_name": data.get("LegalName"),
            "trade_name": data.get("TradeName"),
            "address": data.get("AddrBnm"),
            "state_code": data.get("StateCode"),
            "pincode": data.get("AddrPncd"),
            "status": data.get("Status"),
            "is_valid": data.get("Status") == "ACT" or data.get("Status") == "Active"
        }


def generate_qr_code_image(signed_qr_code: str) -> bytes:
    """
    Generate QR code image from signed QR code data.

    Returns PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(signed_qr_code)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()

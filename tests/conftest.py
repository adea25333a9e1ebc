import os
import inspect
import json
import tempfile
import uuid
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

# Settings are read at import time
_TEST_DIR = tempfile.mkdtemp(prefix="gst-billing-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'app.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["SELLER_GSTIN"] = "27AAACB1234C1Z5"
os.environ["SELLER_LEGAL_NAME"] = "Bharat Interiors Pvt Ltd"
os.environ["SELLER_ADDRESS_LINE1"] = "12 Linking Road"
os.environ["SELLER_CITY"] = "Mumbai"
os.environ["SELLER_STATE_CODE"] = "27"
os.environ["SELLER_PINCODE"] = "400050"
os.environ["EINVOICE_ENABLED"] = "true"
os.environ["EINVOICE_BASE_URL"] = "https://einvoice.test"
os.environ["EINVOICE_USERNAME"] = "api_user"
os.environ["EINVOICE_PASSWORD"] = "api_password"
os.environ["EINVOICE_CLIENT_ID"] = "client-id"
os.environ["EINVOICE_CLIENT_SECRET"] = "client-secret"
os.environ["OVERDUE_SWEEP_ENABLED"] = "false"

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.models  # noqa: F401
from app.config import settings
from app.core.security import Actor
from app.database import Base, create_engine_for_url
from app.models.client import Client, Project
from app.models.estimation import Estimation, EstimationItem
from app.schemas.conversion import EstimationItemTaxInput
from app.services.conversion_service import ConversionService
from app.services.document_service import DocumentService
from app.services.document_state_machine import DocumentKind
from app.services.gst_einvoice_client import GSTEInvoiceClient


BUYER_GSTIN_MH = "27AABCU9603R1ZM"
BUYER_GSTIN_KA = "29ABCDE1234F1Z5"

PORTAL_IRN = "6b5d2f1e9a8c7b6d5e4f3a2b1c0d9e8f7a6b5c4d3e2f1a0b9c8d7e6f5a4b3c2d"
PORTAL_ACK_NO = 112410000012345
PORTAL_ACK_DT = "2026-10-19 11:30:00"


# ==================== Database ====================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def actor() -> Actor:
    return Actor(id=uuid.uuid4(), email="accounts@bharatinteriors.in")


# ==================== Fake NIC portal ====================

class FakePortal:
    """
    In-memory stand-in for the NIC e-invoice API, served through httpx.MockTransport.

    `overrides[(method, path)]` replaces the default answer for one endpoint;
    the callable may be sync or async and receives the request.
    """

    AUTH_PATH = GSTEInvoiceClient.AUTH_PATH
    GENERATE_PATH = GSTEInvoiceClient.GENERATE_IRN_PATH
    CANCEL_PATH = GSTEInvoiceClient.CANCEL_IRN_PATH

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.overrides: Dict[Tuple[str, str], Callable] = {}
        self.irn = PORTAL_IRN
        self.ack_no = PORTAL_ACK_NO
        self.ack_dt = PORTAL_ACK_DT
        self.token_count = 0

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> Dict:
        return json.loads(request.content) if request.content else {}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        override = self.overrides.get((request.method, request.url.path))
        if override is not None:
            response = override(request)
            if inspect.isawaitable(response):
                response = await response
            return response
        return self.default_response(request)

    def default_response(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == self.AUTH_PATH:
            self.token_count += 1
            return httpx.Response(200, json={
                "Status": 1,
                "Data": {"AuthToken": f"token-{self.token_count}", "TokenExpiry": "2026-10-19 17:30:00"},
            })
        if path == self.GENERATE_PATH:
            return httpx.Response(200, json={
                "Status": 1,
                "Data": {
                    "AckNo": self.ack_no,
                    "AckDt": self.ack_dt,
                    "Irn": self.irn,
                    "SignedInvoice": "eyJhbGciOiJSUzI1NiJ9.signed-invoice.sig",
                    "SignedQRCode": "eyJhbGciOiJSUzI1NiJ9.signed-qr.sig",
                    "Status": "ACT",
                },
            })
        if path == self.CANCEL_PATH:
            body = self.body(request)
            return httpx.Response(200, json={
                "Status": 1,
                "Data": {"Irn": body.get("Irn"), "CancelDate": "2026-10-20 10:00:00"},
            })
        if path.startswith(GSTEInvoiceClient.GET_IRN_PATH + "/"):
            return httpx.Response(200, json={
                "Status": 1,
                "Data": {
                    "Irn": path.rsplit("/", 1)[-1],
                    "AckNo": self.ack_no,
                    "AckDt": self.ack_dt,
                    "Status": "ACT",
                    "SignedInvoice": "eyJhbGciOiJSUzI1NiJ9.signed-invoice.sig",
                },
            })
        if path.startswith(GSTEInvoiceClient.GET_GSTIN_PATH + "/"):
            gstin = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={
                "Status": 1,
                "Data": {
                    "Gstin": gstin,
                    "LegalName": "Acme Builders LLP",
                    "TradeName": "Acme Builders",
                    "StateCode": gstin[:2],
                    "AddrPncd": 560001,
                    "Status": "ACT",
                },
            })
        return httpx.Response(404, json={
            "Status": 0,
            "ErrorDetails": [{"ErrorCode": "404", "ErrorMessage": f"No route for {path}"}],
        })


def portal_rejection(code: str, message: str) -> Callable:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "Status": 0,
            "ErrorDetails": [{"ErrorCode": code, "ErrorMessage": message}],
        })
    return respond


@pytest.fixture
def portal() -> FakePortal:
    return FakePortal()


@pytest.fixture
def einvoice_client(portal) -> GSTEInvoiceClient:
    return GSTEInvoiceClient.from_settings(settings, transport=httpx.MockTransport(portal.handler))


# ==================== Data builders ====================

async def create_client(
    db: AsyncSession,
    name: str = "Acme Builders LLP",
    gstin: Optional[str] = BUYER_GSTIN_MH,
    state_code: Optional[str] = "27",
) -> Client:
    client = Client(
        name=name,
        gstin=gstin,
        state_code=state_code,
        address_line1="4th Floor, Residency Road",
        city="Mumbai" if state_code == "27" else "Bengaluru",
        pincode="400001" if state_code == "27" else "560025",
        email="purchase@acme.example",
    )
    db.add(client)
    await db.commit()
    return client


async def create_estimation(
    db: AsyncSession,
    client: Optional[Client] = None,
    project: Optional[Project] = None,
    amounts=(Decimal("5000"), Decimal("3000")),
    discount: Decimal = Decimal("0"),
    status: str = "DRAFT",
) -> Estimation:
    subtotal = sum(amounts, Decimal("0"))
    estimation = Estimation(
        estimation_number=f"EST-{uuid.uuid4().hex[:8].upper()}",
        client_id=client.id if client else None,
        project_id=project.id if project else None,
        title="Living room interiors",
        status=status,
        subtotal=subtotal,
        discount=discount,
        total=subtotal - discount,
    )
    for number, amount in enumerate(amounts, 1):
        estimation.items.append(EstimationItem(
            item_number=number,
            category="Carpentry",
            description=f"Work package {number}",
            quantity=Decimal("1"),
            unit="lot",
            unit_price=amount,
            amount=amount,
        ))
    db.add(estimation)
    await db.commit()
    # Services reload documents with their relationships
    db.expunge_all()
    return estimation


def tax_inputs(estimation: Estimation, hsn: str = "998599", rate: str = "18", is_service: bool = True):
    return [
        EstimationItemTaxInput(item_id=item.id, hsn_sac_code=hsn, gst_rate=Decimal(rate), is_service=is_service)
        for item in estimation.items
    ]


async def create_invoice(
    db: AsyncSession,
    actor: Actor,
    client: Optional[Client] = None,
    amounts=(Decimal("5000"), Decimal("3000")),
    issue: bool = True,
    invoice_date: Optional[date] = None,
    due_date: Optional[date] = None,
):
    """Estimation -> quotation (SENT) -> invoice, optionally ISSUED."""
    estimation = await create_estimation(db, client=client, amounts=amounts)
    conversions = ConversionService(db)
    quotation = await conversions.convert_estimation_to_quotation(
        estimation.id, tax_inputs(estimation), actor
    )
    documents = DocumentService(db)
    await documents.change_status(DocumentKind.QUOTATION, quotation.id, "SENT", actor)
    invoice = await conversions.convert_quotation_to_invoice(
        quotation.id, actor, invoice_date=invoice_date, due_date=due_date
    )
    if issue:
        await documents.change_status(DocumentKind.INVOICE, invoice.id, "ISSUED", actor)
    return invoice


def run_after_load(monkeypatch, service_cls, loader: str, competitor: Callable):
    """
    Patch `service_cls.<loader>` so `competitor(document_id)` runs once, right
    after the first caller has read its document and before it writes.
    """
    original = getattr(service_cls, loader)
    state = {"ran": False}

    async def load_then_compete(self, document_id, *args, **kwargs):
        document = await original(self, document_id, *args, **kwargs)
        if not state["ran"]:
            state["ran"] = True
            await competitor(document_id)
        return document

    monkeypatch.setattr(service_cls, loader, load_then_compete)

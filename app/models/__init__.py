from app.models.client import Client, Project
from app.models.estimation import Estimation, EstimationItem, EstimationStatus
from app.models.quotation import Quotation, QuotationItem, QuotationStatus
from app.models.billing import (
    Invoice,
    InvoiceItem,
    InvoiceType,
    InvoiceStatus,
    EInvoiceStatus,
    EInvoiceAction,
    IRNCancelReason,
    Payment,
    PaymentMethod,
    IRNRecord,
    EInvoiceLog,
)
from app.models.document_sequence import DocumentSequence, DocumentType

__all__ = [
    "Client",
    "Project",
    "Estimation",
    "EstimationItem",
    "EstimationStatus",
    "Quotation",
    "QuotationItem",
    "QuotationStatus",
    "Invoice",
    "InvoiceItem",
    "InvoiceType",
    "InvoiceStatus",
    "EInvoiceStatus",
    "EInvoiceAction",
    "IRNCancelReason",
    "Payment",
    "PaymentMethod",
    "IRNRecord",
    "EInvoiceLog",
    "DocumentSequence",
    "DocumentType",
]

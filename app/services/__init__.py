# Services module
from app.services.conversion_service import ConversionService
from app.services.document_sequence_service import DocumentSequenceService
from app.services.document_service import DocumentService
from app.services.payment_service import PaymentService

# GST E-Invoice
from app.services.gst_einvoice_client import GSTEInvoiceClient
from app.services.gst_einvoice_service import GSTEInvoiceService

__all__ = [
    "ConversionService",
    "DocumentSequenceService",
    "DocumentService",
    "PaymentService",
    # E-Invoice
    "GSTEInvoiceClient",
    "GSTEInvoiceService",
]

"""
Billing Document Jobs

Background sweeps over billing documents:
- Issued or partially paid invoices past their due date -> OVERDUE
- Estimations and quotations past their validity -> EXPIRED
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from app.database import get_db_session

logger = logging.getLogger(__name__)


async def mark_overdue_invoices(today: Optional[date] = None) -> int:
    """Move unpaid invoices past their due date to OVERDUE."""
    from app.services.payment_service import PaymentService

    logger.info("Starting overdue invoice sweep...")
    start_time = datetime.now(timezone.utc)

    try:
        async with get_db_session() as session:
            count = await PaymentService(session).mark_overdue_invoices(today)
    except Exception as e:
        logger.error(f"Overdue invoice sweep failed: {e}")
        raise

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(f"Overdue invoice sweep completed: {count} invoices marked overdue in {elapsed:.2f}s")
    return count


async def expire_stale_documents(today: Optional[date] = None) -> Dict[str, int]:
    """Expire estimations and quotations that outlived their validity."""
    from app.services.document_service import DocumentService

    logger.info("Starting document expiry sweep...")

    try:
        async with get_db_session() as session:
            counts = await DocumentService(session).expire_stale_documents(today)
    except Exception as e:
        logger.error(f"Document expiry sweep failed: {e}")
        raise

    logger.info(f"Document expiry sweep completed: {counts}")
    return counts


async def run_document_sweeps() -> Dict[str, Any]:
    """Scheduler entry point; one failing sweep does not stop the other."""
    result: Dict[str, Any] = {}

    try:
        result["overdue_invoices"] = await mark_overdue_invoices()
    except Exception as e:
        result["overdue_invoices_error"] = str(e)

    try:
        result["expired"] = await expire_stale_documents()
    except Exception as e:
        result["expired_error"] = str(e)

    return result

"""
Background Jobs Module

Handles scheduled tasks for:
- Overdue invoice detection
- Estimation and quotation expiry
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from app.jobs.document_jobs import mark_overdue_invoices, expire_stale_documents

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "mark_overdue_invoices",
    "expire_stale_documents",
]

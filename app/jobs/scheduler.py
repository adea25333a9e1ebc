"""
APScheduler Configuration

Background job scheduler for the billing document sweeps (overdue invoices,
expired estimations and quotations). The sweeps are also reachable over HTTP,
so the scheduler is optional and controlled by OVERDUE_SWEEP_ENABLED.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone='Asia/Kolkata'
)


async def run_document_sweep_job():
    """Called by APScheduler; errors are logged, never raised into the scheduler."""
    from app.jobs.document_jobs import run_document_sweeps

    try:
        result = await run_document_sweeps()
        logger.info(f"Job 'document_sweeps' completed: {result}")
    except Exception as e:
        logger.error(f"Job 'document_sweeps' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not settings.OVERDUE_SWEEP_ENABLED:
        logger.info("Document sweeps disabled, scheduler not started")
        return

    if not scheduler.running:
        scheduler.add_job(
            run_document_sweep_job,
            'interval',
            minutes=settings.OVERDUE_SWEEP_INTERVAL_MINUTES,
            id='document_sweeps',
            name='Overdue Invoices and Document Expiry',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")

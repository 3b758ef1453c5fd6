"""Celery tasks for scheduled compliance work."""

import logging
from typing import Optional

from celery import Task
from sqlalchemy.orm import Session

from verifactu_api.db.session import SessionLocal, get_db
from verifactu_worker.celery_app import celery_app

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Task with database session."""

    _db: Optional[Session] = None

    @property
    def db(self) -> Session:
        """Get database session."""
        if self._db is None:
            self._db = next(get_db())
        return self._db

    def after_return(self, *args, **kwargs):
        """Close database session after task."""
        if self._db:
            self._db.close()
            self._db = None


@celery_app.task(bind=True, ignore_result=True)
def run_submission_tick(self):
    """Submit eligible registry entries for every auto-submitting tenant."""
    from verifactu_api.transmission.worker import SubmissionWorker

    # Each tenant gets its own session from the factory
    result = SubmissionWorker(session_factory=SessionLocal).tick()
    return result.as_dict()


@celery_app.task(bind=True)
def run_tenant_submission(self, tenant_id: int):
    """Submit one tenant's eligible entries now (operator trigger)."""
    from dataclasses import asdict

    from verifactu_api.transmission.worker import SubmissionWorker

    result = SubmissionWorker(session_factory=SessionLocal).run_tenant(tenant_id, manual=True)
    logger.info(
        f"Manual submission run for tenant {tenant_id} finished",
        extra={"task": "run_tenant_submission", "tenant_id": tenant_id},
    )
    return asdict(result)


@celery_app.task(base=DatabaseTask, bind=True, max_retries=3, autoretry_for=(ConnectionError,), retry_backoff=True)
def run_certificate_monitor(self):
    """Check certificate expiry for all enabled tenants and notify operators."""
    from verifactu_api.monitoring.certificate_monitor import CertificateMonitor

    monitor = CertificateMonitor(self.db)
    statuses = monitor.check_all()
    summary = monitor.summary(statuses)
    logger.info(
        f"Certificate check finished for {len(statuses)} tenant(s)",
        extra={"task": "run_certificate_monitor", "summary": summary},
    )
    return summary

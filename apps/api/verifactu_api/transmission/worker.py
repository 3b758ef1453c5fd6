"""Periodic submission of pending registry entries to the tax authority."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from verifactu_api.clock import Clock, system_clock
from verifactu_api.errors import TransientTransmissionFailure
from verifactu_api.ledger.states import TransmissionStatus, transition
from verifactu_api.models import RegistryEntry, TenantConfig, TransmissionEvent
from verifactu_api.monitoring.certificate_monitor import CertificateMonitor
from verifactu_api.settings import Settings, get_settings
from verifactu_api.transmission.backoff import BackoffPolicy
from verifactu_api.transmission.gateway import (
    AeatGateway,
    SubmissionBatch,
    SubmissionItem,
    SubmissionOutcome,
    TransmissionGateway,
)
from verifactu_api.utils import metrics

logger = logging.getLogger(__name__)

# Unsent, non-terminal states that block submission of higher sequence numbers
BARRIER_STATUSES = (TransmissionStatus.SENDING.value, TransmissionStatus.ERROR.value)

_submission_locks: dict[int, threading.Lock] = {}
_submission_locks_guard = threading.Lock()


def _submission_lock(tenant_id: int) -> threading.Lock:
    with _submission_locks_guard:
        lock = _submission_locks.get(tenant_id)
        if lock is None:
            lock = _submission_locks[tenant_id] = threading.Lock()
        return lock


@dataclass
class TenantRunResult:
    """What one tenant's batch did during a tick."""

    tenant_id: int
    skipped: Optional[str] = None  # disabled, manual_only, busy, throttled, nothing_eligible, failed
    recovered: int = 0
    requeued: int = 0
    submitted: int = 0
    sent: int = 0
    rejected: int = 0
    failed: int = 0
    blocked: int = 0


@dataclass
class TickResult:
    """Aggregate of one worker tick."""

    started_at: datetime
    tenants: list[TenantRunResult] = field(default_factory=list)

    def _total(self, name: str) -> int:
        return sum(getattr(tenant, name) for tenant in self.tenants)

    @property
    def submitted(self) -> int:
        return self._total("submitted")

    @property
    def sent(self) -> int:
        return self._total("sent")

    @property
    def rejected(self) -> int:
        return self._total("rejected")

    @property
    def failed(self) -> int:
        return self._total("failed")

    @property
    def blocked(self) -> int:
        return self._total("blocked")

    @property
    def throttled(self) -> int:
        return sum(1 for tenant in self.tenants if tenant.skipped == "throttled")

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "tenants": len(self.tenants),
            "submitted": self.submitted,
            "sent": self.sent,
            "rejected": self.rejected,
            "failed": self.failed,
            "blocked": self.blocked,
            "throttled": self.throttled,
        }


class SubmissionWorker:
    """One tick submits at most one in-order batch per tenant.

    Eligibility is ``pending`` with an elapsed (or absent) retry timer, below
    any earlier entry still ``sending`` or in ``error``, for a tenant whose
    flow-control window has passed. Gateway exceptions never leave this class:
    they become entry status changes and ``submission_attempt`` events.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        gateway: Optional[TransmissionGateway] = None,
        clock: Clock = system_clock,
        backoff: Optional[BackoffPolicy] = None,
        monitor: Optional[CertificateMonitor] = None,
        settings: Optional[Settings] = None,
        max_concurrent_tenants: Optional[int] = None,
    ):
        """Initialize submission worker."""
        self.settings = settings or get_settings()
        if session_factory is None:
            from verifactu_api.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.gateway = gateway or AeatGateway(self.settings)
        self.clock = clock
        self.backoff = backoff or BackoffPolicy.from_settings(self.settings)
        self.monitor = monitor or CertificateMonitor(clock=clock, settings=self.settings)
        self.max_concurrent_tenants = max_concurrent_tenants or self.settings.worker_max_concurrent_tenants

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def tick(self) -> TickResult:
        """Run one scheduling pass over all auto-submitting tenants."""
        result = TickResult(started_at=self.clock.now())
        metrics.worker_ticks.inc()

        db = self.session_factory()
        try:
            tenant_ids = [
                tenant_id
                for (tenant_id,) in db.query(TenantConfig.tenant_id)
                .filter(TenantConfig.enabled == True, TenantConfig.auto_submit == True)  # noqa: E712
                .order_by(TenantConfig.tenant_id.asc())
                .all()
            ]
        finally:
            db.close()

        if self.max_concurrent_tenants <= 1 or len(tenant_ids) <= 1:
            result.tenants = [self._run_contained(tenant_id) for tenant_id in tenant_ids]
        else:
            workers = min(self.max_concurrent_tenants, len(tenant_ids))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verifactu-submit") as pool:
                result.tenants = list(pool.map(self._run_contained, tenant_ids))

        logger.info("Submission tick finished", extra=result.as_dict())
        return result

    def run_tenant(self, tenant_id: int, manual: bool = False) -> TenantRunResult:
        """Process one tenant; ``manual`` also covers tenants with auto-submit off."""
        lock = _submission_lock(tenant_id)
        if not lock.acquire(blocking=False):
            return TenantRunResult(tenant_id=tenant_id, skipped="busy")
        db = self.session_factory()
        try:
            return self._process_tenant(db, tenant_id, manual)
        finally:
            db.close()
            lock.release()

    def _run_contained(self, tenant_id: int) -> TenantRunResult:
        try:
            return self.run_tenant(tenant_id)
        except Exception as e:
            # One tenant's failure must not stop the others
            logger.error(
                f"Submission run failed for tenant {tenant_id}: {e}",
                exc_info=True,
                extra={"tenant_id": tenant_id},
            )
            return TenantRunResult(tenant_id=tenant_id, skipped="failed")

    # ------------------------------------------------------------------
    # Tenant processing
    # ------------------------------------------------------------------

    def _event(self, db: Session, entry: RegistryEntry, event_type: str, details: dict, now: datetime) -> None:
        db.add(
            TransmissionEvent(
                tenant_id=entry.tenant_id,
                entry_id=entry.id,
                event_type=event_type,
                details=details,
                actor="submission_worker",
                created_at=now,
            )
        )

    def _schedule_retry(self, db: Session, entry: RegistryEntry, now: datetime, message: str, outcome: str) -> None:
        """``sending -> error`` with the next automatic retry time.

        After ``max_auto_retries`` failures no timer is set; only an operator
        retry puts the entry back in the pool.
        """
        transition(entry, TransmissionStatus.ERROR, now)
        entry.retry_count = (entry.retry_count or 0) + 1
        if entry.retry_count >= self.settings.max_auto_retries:
            entry.next_eligible_retry = None
            message = f"Maximum retries reached: {message}"
            metrics.retries_exhausted.inc()
            logger.warning(
                f"Entry {entry.id} needs an operator retry after {entry.retry_count} failed attempts",
                extra={"tenant_id": entry.tenant_id, "entry_id": entry.id, "sequence": entry.sequence_number},
            )
        else:
            entry.next_eligible_retry = self.backoff.next_eligible(now, entry.retry_count)
        entry.error_message = message
        self._event(
            db,
            entry,
            "submission_attempt",
            {
                "outcome": outcome,
                "error": message,
                "retry_count": entry.retry_count,
                "next_eligible_retry": (
                    entry.next_eligible_retry.isoformat() if entry.next_eligible_retry else None
                ),
            },
            now,
        )

    def _recover_stale(self, db: Session, tenant_id: int, now: datetime) -> int:
        """Entries left in ``sending`` by an interrupted run are never assumed sent."""
        cutoff = now - timedelta(seconds=self.settings.sending_stale_seconds)
        stale = (
            db.query(RegistryEntry)
            .filter(
                RegistryEntry.tenant_id == tenant_id,
                RegistryEntry.status == TransmissionStatus.SENDING.value,
                RegistryEntry.updated_at < cutoff,
            )
            .order_by(RegistryEntry.sequence_number.asc())
            .all()
        )
        for entry in stale:
            self._schedule_retry(db, entry, now, "Submission interrupted; outcome unknown", "interrupted")
            metrics.stale_sending_recovered.inc()
            logger.warning(
                f"Recovered stale sending entry {entry.id}",
                extra={"tenant_id": tenant_id, "entry_id": entry.id, "sequence": entry.sequence_number},
            )
        return len(stale)

    def _requeue_elapsed(self, db: Session, tenant_id: int, now: datetime) -> int:
        """``error -> pending`` for entries whose backoff timer has elapsed."""
        due = (
            db.query(RegistryEntry)
            .filter(
                RegistryEntry.tenant_id == tenant_id,
                RegistryEntry.status == TransmissionStatus.ERROR.value,
                RegistryEntry.unsignable == False,  # noqa: E712
                RegistryEntry.next_eligible_retry.isnot(None),
                RegistryEntry.next_eligible_retry <= now,
            )
            .order_by(RegistryEntry.sequence_number.asc())
            .all()
        )
        for entry in due:
            transition(entry, TransmissionStatus.PENDING, now)
            self._event(db, entry, "retry", {"reason": "backoff_elapsed", "retry_count": entry.retry_count}, now)
        return len(due)

    def _eligible(self, db: Session, config: TenantConfig, now: datetime) -> list[RegistryEntry]:
        # Any earlier entry still in flight or in error holds back later ones
        barrier = (
            db.query(func.min(RegistryEntry.sequence_number))
            .filter(
                RegistryEntry.tenant_id == config.tenant_id,
                RegistryEntry.status.in_(BARRIER_STATUSES),
            )
            .scalar()
        )
        query = db.query(RegistryEntry).filter(
            RegistryEntry.tenant_id == config.tenant_id,
            RegistryEntry.status == TransmissionStatus.PENDING.value,
            (RegistryEntry.next_eligible_retry.is_(None)) | (RegistryEntry.next_eligible_retry <= now),
        )
        if barrier is not None:
            query = query.filter(RegistryEntry.sequence_number < barrier)
        return (
            query.order_by(RegistryEntry.sequence_number.asc())
            .limit(config.max_records_per_submission)
            .all()
        )

    def _divert(self, db: Session, entries: list[RegistryEntry], now: datetime, message: str) -> None:
        """``pending -> sending -> error`` without contacting the authority."""
        for entry in entries:
            transition(entry, TransmissionStatus.SENDING, now)
            transition(entry, TransmissionStatus.ERROR, now)
            entry.error_message = message
            entry.next_eligible_retry = None
            self._event(db, entry, "certificate_blocked", {"error": message}, now)
            metrics.submission_attempts.labels(outcome="certificate_blocked").inc()

    def _process_tenant(self, db: Session, tenant_id: int, manual: bool) -> TenantRunResult:
        result = TenantRunResult(tenant_id=tenant_id)
        now = self.clock.now()
        log_extra = {"tenant_id": tenant_id}

        config = (
            db.query(TenantConfig)
            .filter(TenantConfig.tenant_id == tenant_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not config or not config.enabled:
            result.skipped = "disabled"
            db.rollback()
            return result
        if not manual and not config.auto_submit:
            result.skipped = "manual_only"
            db.rollback()
            return result

        result.recovered = self._recover_stale(db, tenant_id, now)
        result.requeued = self._requeue_elapsed(db, tenant_id, now)

        if config.last_submission_at is not None:
            window_ends = config.last_submission_at + timedelta(seconds=config.flow_control_seconds)
            if now < window_ends:
                result.skipped = "throttled"
                metrics.tenants_throttled.inc()
                db.commit()
                logger.debug(
                    f"Tenant {tenant_id} throttled until {window_ends.isoformat()}",
                    extra=log_extra,
                )
                return result

        entries = self._eligible(db, config, now)
        if not entries:
            result.skipped = "nothing_eligible"
            db.commit()
            return result

        certificate = self.monitor.status_for(config)
        if certificate.blocked:
            self._divert(db, entries, now, f"Certificate error: {certificate.message}")
            result.blocked = len(entries)
            db.commit()
            logger.warning(
                f"Diverted {len(entries)} entries for tenant {tenant_id}: {certificate.message}",
                extra=log_extra,
            )
            return result

        # Never submit past an entry that has nothing to send
        submittable = []
        for entry in entries:
            if entry.unsignable or not entry.signed_xml:
                self._divert(db, [entry], now, entry.error_message or "Certificate error: entry is not signed")
                result.blocked += 1
                break
            submittable.append(entry)
        if not submittable:
            db.commit()
            return result

        for entry in submittable:
            transition(entry, TransmissionStatus.SENDING, now)
        config.last_submission_at = now
        db.commit()

        batch = SubmissionBatch(
            tenant_id=tenant_id,
            mode=config.mode,
            environment=config.environment,
            items=[
                SubmissionItem(entry_id=entry.id, sequence_number=entry.sequence_number, signed_xml=entry.signed_xml)
                for entry in submittable
            ],
        )
        result.submitted = len(submittable)
        self._submit(db, batch, submittable, result)
        return result

    def _submit(
        self, db: Session, batch: SubmissionBatch, entries: list[RegistryEntry], result: TenantRunResult
    ) -> None:
        log_extra = {"tenant_id": batch.tenant_id, "records": len(entries)}
        try:
            outcomes = self.gateway.submit(batch)
        except TransientTransmissionFailure as e:
            self._fail_batch(db, entries, str(e), result)
            return
        except Exception as e:
            # Anything unexpected from the transport is treated as transient
            logger.error(f"Unexpected gateway failure: {e}", exc_info=True, extra=log_extra)
            self._fail_batch(db, entries, f"Unexpected transmission failure: {e}", result)
            return

        now = self.clock.now()
        by_entry = {outcome.entry_id: outcome for outcome in outcomes}
        for entry in entries:
            outcome = by_entry.get(entry.id)
            if outcome is None:
                self._schedule_retry(db, entry, now, "Authority returned no result for this record", "missing_result")
                result.failed += 1
                metrics.submission_attempts.labels(outcome="transient_error").inc()
            elif outcome.accepted:
                self._mark_sent(db, entry, outcome, now)
                result.sent += 1
            else:
                self._mark_rejected(db, entry, outcome, now)
                result.rejected += 1
        db.commit()
        logger.info(
            f"Batch for tenant {batch.tenant_id}: {result.sent} sent, {result.rejected} rejected",
            extra={**log_extra, "sent": result.sent, "rejected": result.rejected, "failed": result.failed},
        )

    def _fail_batch(self, db: Session, entries: list[RegistryEntry], message: str, result: TenantRunResult) -> None:
        now = self.clock.now()
        for entry in entries:
            self._schedule_retry(db, entry, now, message, "transient_failure")
            metrics.submission_attempts.labels(outcome="transient_error").inc()
        result.failed += len(entries)
        db.commit()
        logger.warning(
            f"Transient submission failure for tenant {entries[0].tenant_id}: {message}",
            extra={"tenant_id": entries[0].tenant_id, "records": len(entries)},
        )

    def _mark_sent(self, db: Session, entry: RegistryEntry, outcome: SubmissionOutcome, now: datetime) -> None:
        transition(entry, TransmissionStatus.SENT, now)
        entry.confirmation_code = outcome.confirmation_code
        entry.qr_url = outcome.qr_url or entry.qr_payload
        entry.sent_at = now
        entry.next_eligible_retry = None
        entry.error_message = outcome.warning
        self._event(
            db,
            entry,
            "submission_attempt",
            {"outcome": "sent", "confirmation_code": outcome.confirmation_code, "warning": outcome.warning},
            now,
        )
        metrics.submission_attempts.labels(outcome="sent").inc()

    def _mark_rejected(self, db: Session, entry: RegistryEntry, outcome: SubmissionOutcome, now: datetime) -> None:
        transition(entry, TransmissionStatus.REJECTED, now)
        entry.error_message = outcome.rejection.reason
        entry.next_eligible_retry = None
        self._event(
            db,
            entry,
            "submission_attempt",
            {"outcome": "rejected", "reason": outcome.rejection.reason, "code": outcome.rejection.code},
            now,
        )
        metrics.submission_attempts.labels(outcome="rejected").inc()
        logger.warning(
            f"Entry {entry.id} rejected by the authority: {outcome.rejection.reason}",
            extra={"tenant_id": entry.tenant_id, "entry_id": entry.id, "code": outcome.rejection.code},
        )

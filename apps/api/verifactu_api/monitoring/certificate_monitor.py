"""Signing certificate expiry monitoring.

Levels are computed from the certificate metadata stored on the tenant
configuration, so checks never decrypt key material. Notifications are
de-duplicated per tenant and level through the transmission event log.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from verifactu_api.clock import Clock, system_clock
from verifactu_api.models import TenantConfig, TransmissionEvent
from verifactu_api.settings import Settings, get_settings
from verifactu_api.utils import metrics
from verifactu_api.webhooks.service import Notifier, get_notifier

logger = logging.getLogger(__name__)

ALERT_EVENT = "certificate_alert"


class CertificateLevel:
    OK = "ok"
    WARNING = "warning"
    URGENT = "urgent"
    BLOCKED = "blocked"

    ALL = (OK, WARNING, URGENT, BLOCKED)


@dataclass(frozen=True)
class CertificateStatus:
    """Certificate health for one tenant."""

    tenant_id: int
    level: str
    days_until_expiration: Optional[int]
    not_after: Optional[datetime] = None
    subject: Optional[str] = None
    message: str = ""

    @property
    def blocked(self) -> bool:
        return self.level == CertificateLevel.BLOCKED

    def as_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "level": self.level,
            "days_until_expiration": self.days_until_expiration,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "subject": self.subject,
            "message": self.message,
        }


class CertificateMonitor:
    """Computes certificate levels and signals operators."""

    def __init__(
        self,
        db: Optional[Session] = None,
        clock: Clock = system_clock,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize certificate monitor."""
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()
        self._notifier = notifier

    @property
    def notifier(self) -> Notifier:
        if self._notifier is None:
            self._notifier = get_notifier(self.settings)
        return self._notifier

    def status_for(self, config: TenantConfig) -> CertificateStatus:
        """Level for one tenant configuration."""
        if not config.has_certificate or config.certificate_not_after is None:
            return CertificateStatus(
                tenant_id=config.tenant_id,
                level=CertificateLevel.BLOCKED,
                days_until_expiration=None,
                message="No signing certificate configured",
            )

        not_after = config.certificate_not_after
        days = (not_after - self.clock.now()).days
        if days <= 0:
            level = CertificateLevel.BLOCKED
            message = f"Signing certificate expired or expires today ({not_after.isoformat()})"
        elif days <= self.settings.certificate_urgent_days:
            level = CertificateLevel.URGENT
            message = f"Signing certificate expires in {days} day(s)"
        elif days < self.settings.certificate_warning_days:
            level = CertificateLevel.WARNING
            message = f"Signing certificate expires in {days} day(s)"
        else:
            level = CertificateLevel.OK
            message = "Signing certificate valid"

        return CertificateStatus(
            tenant_id=config.tenant_id,
            level=level,
            days_until_expiration=days,
            not_after=not_after,
            subject=config.certificate_subject,
            message=message,
        )

    def _require_db(self) -> Session:
        if self.db is None:
            raise RuntimeError("CertificateMonitor needs a database session for this operation")
        return self.db

    def _enabled_configs(self) -> list[TenantConfig]:
        return (
            self._require_db()
            .query(TenantConfig)
            .filter(TenantConfig.enabled == True)  # noqa: E712
            .order_by(TenantConfig.tenant_id.asc())
            .all()
        )

    def _recently_alerted(self, status: CertificateStatus) -> bool:
        since = self.clock.now() - timedelta(hours=self.settings.certificate_notification_dedupe_hours)
        recent = (
            self._require_db()
            .query(TransmissionEvent)
            .filter(
                TransmissionEvent.tenant_id == status.tenant_id,
                TransmissionEvent.event_type == ALERT_EVENT,
                TransmissionEvent.created_at >= since,
            )
            .all()
        )
        return any((event.details or {}).get("level") == status.level for event in recent)

    def _signal(self, status: CertificateStatus) -> bool:
        """Notify once per tenant and level within the de-duplication window."""
        if status.level == CertificateLevel.OK or self._recently_alerted(status):
            return False

        delivered = self.notifier.notify(status.tenant_id, f"certificate.{status.level}", status.as_dict())
        db = self._require_db()
        db.add(
            TransmissionEvent(
                tenant_id=status.tenant_id,
                entry_id=None,
                event_type=ALERT_EVENT,
                details={**status.as_dict(), "delivered": delivered},
                actor="certificate_monitor",
                created_at=self.clock.now(),
            )
        )
        db.commit()
        metrics.certificate_alerts.labels(level=status.level).inc()
        return True

    def statuses(self) -> list[CertificateStatus]:
        """Levels for all enabled tenants, without signaling."""
        return [self.status_for(config) for config in self._enabled_configs()]

    def check_all(self) -> list[CertificateStatus]:
        """Compute levels for all enabled tenants and emit signals."""
        statuses = self.statuses()
        for status in statuses:
            if status.level != CertificateLevel.OK:
                logger.warning(
                    f"Certificate {status.level} for tenant {status.tenant_id}: {status.message}",
                    extra={"tenant_id": status.tenant_id, "level": status.level, "days": status.days_until_expiration},
                )
            self._signal(status)

        metrics.certificates_blocked.set(sum(1 for status in statuses if status.blocked))
        return statuses

    def summary(self, statuses: Optional[list[CertificateStatus]] = None) -> dict:
        """Tenant counts per level, over ``statuses`` or a fresh look at all enabled tenants."""
        counts = {level: 0 for level in CertificateLevel.ALL}
        for status in statuses if statuses is not None else self.statuses():
            counts[status.level] += 1
        return counts

"""Tests for certificate expiry monitoring."""

from datetime import timedelta

import pytest

from verifactu_api.models import TransmissionEvent
from verifactu_api.monitoring.certificate_monitor import CertificateLevel, CertificateMonitor
from verifactu_api.webhooks.service import Notifier

from conftest import START


class RecordingNotifier(Notifier):
    def __init__(self, delivered=True):
        self.calls = []
        self.delivered = delivered

    def notify(self, tenant_id, event_type, payload):
        self.calls.append((tenant_id, event_type, payload))
        return self.delivered


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def monitor(db, clock, notifier, settings):
    return CertificateMonitor(db, clock=clock, notifier=notifier, settings=settings)


@pytest.fixture
def tenant_expiring(make_tenant):
    def factory(tenant_id=1, days=None, **overrides):
        if days is not None:
            overrides.update(
                certificate_ciphertext="ciphertext",
                certificate_password_ciphertext="password-ciphertext",
                certificate_subject="CN=Demo Facturacion SL",
                certificate_not_after=START + timedelta(days=days, hours=1),
            )
        return make_tenant(tenant_id=tenant_id, **overrides)

    return factory


@pytest.mark.parametrize(
    "days,level",
    [
        (365, CertificateLevel.OK),
        (30, CertificateLevel.OK),
        (29, CertificateLevel.WARNING),
        (8, CertificateLevel.WARNING),
        (7, CertificateLevel.URGENT),
        (1, CertificateLevel.URGENT),
        (0, CertificateLevel.BLOCKED),
        (-3, CertificateLevel.BLOCKED),
    ],
)
def test_levels(monitor, tenant_expiring, days, level):
    config = tenant_expiring(days=days)
    status = monitor.status_for(config)
    assert status.level == level
    assert status.days_until_expiration == days
    assert status.blocked == (level == CertificateLevel.BLOCKED)


def test_missing_certificate_is_blocked(monitor, tenant_expiring):
    status = monitor.status_for(tenant_expiring())
    assert status.blocked
    assert status.days_until_expiration is None
    assert "No signing certificate" in status.message


def test_check_all_signals_once_per_level(db, monitor, notifier, tenant_expiring, clock):
    tenant_expiring(tenant_id=1, days=20)
    tenant_expiring(tenant_id=2, days=200)

    statuses = monitor.check_all()

    assert [status.level for status in statuses] == [CertificateLevel.WARNING, CertificateLevel.OK]
    assert [(call[0], call[1]) for call in notifier.calls] == [(1, "certificate.warning")]
    assert notifier.calls[0][2]["days_until_expiration"] == 20

    clock.advance(hours=12)
    monitor.check_all()
    assert len(notifier.calls) == 1

    clock.advance(hours=13)
    monitor.check_all()
    assert len(notifier.calls) == 2

    alerts = db.query(TransmissionEvent).filter(TransmissionEvent.event_type == "certificate_alert").all()
    assert len(alerts) == 2
    assert all(alert.details["delivered"] for alert in alerts)


def test_escalation_signals_new_level(monitor, notifier, tenant_expiring, clock):
    tenant_expiring(days=8)
    monitor.check_all()
    clock.advance(days=1)
    monitor.check_all()

    assert [call[1] for call in notifier.calls] == ["certificate.warning", "certificate.urgent"]


def test_failed_delivery_is_recorded(db, clock, settings, tenant_expiring):
    tenant_expiring(days=-1)
    notifier = RecordingNotifier(delivered=False)
    CertificateMonitor(db, clock=clock, notifier=notifier, settings=settings).check_all()

    alert = db.query(TransmissionEvent).filter(TransmissionEvent.event_type == "certificate_alert").one()
    assert alert.details["level"] == CertificateLevel.BLOCKED
    assert alert.details["delivered"] is False
    assert alert.entry_id is None


def test_disabled_tenants_are_not_checked(monitor, notifier, tenant_expiring):
    tenant_expiring(days=2, enabled=False)
    assert monitor.check_all() == []
    assert notifier.calls == []


def test_expired_certificate_is_blocked(monitor, tenant_expiring):
    assert not monitor.status_for(tenant_expiring(tenant_id=1, days=100)).blocked
    assert monitor.status_for(tenant_expiring(tenant_id=2, days=-10)).blocked


def test_summary(monitor, tenant_expiring):
    tenant_expiring(tenant_id=1, days=100)
    tenant_expiring(tenant_id=2, days=15)
    tenant_expiring(tenant_id=3, days=3)
    tenant_expiring(tenant_id=4)

    assert monitor.summary() == {
        CertificateLevel.OK: 1,
        CertificateLevel.WARNING: 1,
        CertificateLevel.URGENT: 1,
        CertificateLevel.BLOCKED: 1,
    }


def test_summary_of_given_statuses(monitor, tenant_expiring):
    statuses = [monitor.status_for(tenant_expiring(tenant_id=1, days=3))]
    tenant_expiring(tenant_id=2, days=100)

    assert monitor.summary(statuses) == {
        CertificateLevel.OK: 0,
        CertificateLevel.WARNING: 0,
        CertificateLevel.URGENT: 1,
        CertificateLevel.BLOCKED: 0,
    }


def test_status_only_needs_no_session(clock, settings, tenant_expiring):
    config = tenant_expiring(days=45)
    detached = CertificateMonitor(clock=clock, settings=settings)
    assert detached.status_for(config).level == CertificateLevel.OK
    with pytest.raises(RuntimeError):
        detached.statuses()

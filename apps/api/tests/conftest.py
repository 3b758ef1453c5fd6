"""Pytest configuration and fixtures."""

import os

# Settings are cached on first import, so the test environment goes first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOCAL_ENCRYPTION_SALT", "dGVzdC1zYWx0LWZvci12ZXJpZmFjdHUtc3VpdGUhIQ==")
os.environ.setdefault("CERTIFICATE_ENCRYPTION_PROVIDER", "local")

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from verifactu_api.clock import FrozenClock
from verifactu_api.db.base import Base
from verifactu_api.ledger.certificates import CertificateStore
from verifactu_api.ledger.schema import InvoiceEvent
from verifactu_api.ledger.service import RegistryService
from verifactu_api.models import ComplianceMode, Environment, TenantConfig
from verifactu_api.monitoring.certificate_monitor import CertificateMonitor
from verifactu_api.security.encryption import EncryptionService
from verifactu_api.settings import get_settings
from verifactu_api.transmission.backoff import BackoffPolicy
from verifactu_api.transmission.gateway import SubmissionOutcome, TransmissionGateway
from verifactu_api.transmission.worker import SubmissionWorker
from verifactu_api.webhooks.service import LogNotifier

START = datetime(2025, 3, 1, 12, 0, 0)
CERT_PASSWORD = "s3cret-pass"


@pytest.fixture(scope="function")
def engine():
    """SQLite in-memory engine shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Session:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def encryption():
    return EncryptionService(
        provider="local",
        secret_key="test-secret-key",
        salt="dGVzdC1zYWx0LWZvci12ZXJpZmFjdHUtc3VpdGUhIQ==",
    )


# ----------------------------------------------------------------------
# Certificates
# ----------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_container(key, not_before, not_after, password=CERT_PASSWORD, common_name="Demo Facturacion SL"):
    """Self-signed PKCS#12 container."""
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "ES"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, "B12345678"),
        ]
    )
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        b"tenant-signing", key, certificate, None, BestAvailableEncryption(password.encode())
    )


@pytest.fixture
def make_container(rsa_key):
    def factory(not_before=START - timedelta(days=60), not_after=START + timedelta(days=365), **kwargs):
        return build_container(rsa_key, not_before, not_after, **kwargs)

    return factory


@pytest.fixture
def valid_container(make_container):
    return make_container()


@pytest.fixture
def certificate_store(db, encryption, clock):
    return CertificateStore(db, encryption=encryption, clock=clock)


# ----------------------------------------------------------------------
# Tenants, events and services
# ----------------------------------------------------------------------


@pytest.fixture
def make_tenant(db):
    def factory(tenant_id=1, **overrides):
        values = {
            "tenant_id": tenant_id,
            "tenant_name": f"Tenant {tenant_id} SL",
            "mode": ComplianceMode.LIVE,
            "environment": Environment.TESTING,
            "enabled": True,
            "auto_submit": True,
            "flow_control_seconds": 60,
            "max_records_per_submission": 10,
            "last_sequence": 0,
            "version": 1,
            "created_at": START,
            "updated_at": START,
        }
        values.update(overrides)
        config = TenantConfig(**values)
        db.add(config)
        db.commit()
        return config

    return factory


@pytest.fixture
def make_event():
    def factory(tenant_id=1, number=1, total="121.00", **overrides):
        values = {
            "tenant_id": tenant_id,
            "invoice_id": f"inv-{number}",
            "direction": "issued",
            "invoice_number": f"FAC-2025-{number:04d}",
            "issue_date": START.date(),
            "issuer": {"nif": "B12345678", "name": "Demo Facturacion SL"},
            "counterparty": {"nif": "12345678Z", "name": "Cliente Ejemplo"},
            "lines": [
                {
                    "description": "Consultoria",
                    "quantity": "1",
                    "unit_price": str(Decimal(total) / Decimal("1.21")),
                    "tax_rate": "21",
                }
            ],
            "totals": {
                "subtotal": str((Decimal(total) / Decimal("1.21")).quantize(Decimal("0.01"))),
                "tax_amount": str((Decimal(total) - Decimal(total) / Decimal("1.21")).quantize(Decimal("0.01"))),
                "total": total,
            },
            "payment_means": {"method": "transfer", "iban": "ES9121000418450200051332"},
        }
        values.update(overrides)
        return InvoiceEvent.model_validate(values)

    return factory


@pytest.fixture
def registry(db, clock, certificate_store):
    return RegistryService(db, clock=clock, certificate_store=certificate_store)


@pytest.fixture
def signed_tenant(make_tenant, registry, valid_container):
    """Enabled live tenant with a valid certificate."""
    config = make_tenant()
    registry.update_certificate(config.tenant_id, valid_container, CERT_PASSWORD)
    return config


# ----------------------------------------------------------------------
# Transmission
# ----------------------------------------------------------------------


class FakeGateway(TransmissionGateway):
    """Scripted gateway; accepts every record unless told otherwise."""

    def __init__(self):
        self.batches = []
        self._scripted = []

    def script(self, response):
        """Queue an exception instance or a ``batch -> outcomes`` callable."""
        self._scripted.append(response)

    def submit(self, batch):
        self.batches.append(batch)
        if self._scripted:
            response = self._scripted.pop(0)
            if isinstance(response, Exception):
                raise response
            return response(batch)
        return [
            SubmissionOutcome(entry_id=item.entry_id, confirmation_code=f"CSV{item.sequence_number:06d}")
            for item in batch.items
        ]


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def worker(session_factory, fake_gateway, clock, settings):
    return SubmissionWorker(
        session_factory=session_factory,
        gateway=fake_gateway,
        clock=clock,
        backoff=BackoffPolicy(base_seconds=60, factor=2, cap_seconds=3600),
        monitor=CertificateMonitor(clock=clock, notifier=LogNotifier(), settings=settings),
        settings=settings,
        max_concurrent_tenants=1,
    )

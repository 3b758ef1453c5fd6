"""Registry ledger and transmission audit models."""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from verifactu_api.db.base import Base
from verifactu_api.ledger.states import TransmissionStatus


class InvoiceDirection:
    ISSUED = "issued"
    RECEIVED = "received"

    ALL = (ISSUED, RECEIVED)


class RegistryEntry(Base):
    """Append-mostly, hash-chained ledger row; one per invoice event."""

    __tablename__ = "registry_entries"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence_number", name="uq_registry_tenant_sequence"),
        UniqueConstraint("tenant_id", "invoice_id", "direction", name="uq_registry_tenant_invoice"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    invoice_id = Column(String(255), nullable=False, index=True)
    direction = Column(String(20), nullable=False)  # issued, received

    # Chain (immutable once written)
    sequence_number = Column(BigInteger, nullable=False, index=True)
    previous_hash = Column(String(64), nullable=True)  # NULL for the tenant's genesis entry
    current_hash = Column(String(64), nullable=False, index=True)
    hash_version = Column(String(10), nullable=False, default="v1")
    canonical_fields = Column(JSON, nullable=False)
    document_json = Column(JSON, nullable=False)

    # Signed document
    signed_xml = Column(Text, nullable=True)
    signature_fingerprint = Column(String(128), nullable=True)
    unsignable = Column(Boolean, default=False, nullable=False)
    qr_payload = Column(Text, nullable=False)
    qr_url = Column(Text, nullable=True)  # As returned by the authority

    # Transmission bookkeeping (the only mutable surface)
    status = Column(String(20), nullable=False, default=TransmissionStatus.PENDING.value, index=True)
    confirmation_code = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    next_eligible_retry = Column(DateTime, nullable=True, index=True)
    activated_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    events = relationship(
        "TransmissionEvent",
        back_populates="entry",
        order_by="TransmissionEvent.id",
    )


class TransmissionEvent(Base):
    """Immutable audit trail row."""

    __tablename__ = "transmission_events"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    entry_id = Column(Integer, ForeignKey("registry_entries.id"), nullable=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)  # created, retry, requirement_activation, submission_attempt, ...
    details = Column(JSON, nullable=True)
    actor = Column(String(255), nullable=False, default="system")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    entry = relationship("RegistryEntry", back_populates="events")

"""Tenant VERI*FACTU configuration model."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text

from verifactu_api.db.base import Base


class ComplianceMode:
    LIVE = "live"
    REQUIREMENT = "requirement"

    ALL = (LIVE, REQUIREMENT)


class Environment:
    PRODUCTION = "production"
    TESTING = "testing"

    ALL = (PRODUCTION, TESTING)


class TenantConfig(Base):
    """One row per tenant; updated in place, superseded via ``version``."""

    __tablename__ = "tenant_configs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, unique=True, index=True)  # CRM business id
    tenant_name = Column(String(255), nullable=True)
    mode = Column(String(20), default=ComplianceMode.LIVE, nullable=False)  # live, requirement
    environment = Column(String(20), default=Environment.TESTING, nullable=False)  # production, testing
    enabled = Column(Boolean, default=False, nullable=False)
    auto_submit = Column(Boolean, default=True, nullable=False)
    flow_control_seconds = Column(Integer, default=60, nullable=False)
    max_records_per_submission = Column(Integer, default=10, nullable=False)

    # Certificate: encrypted-at-rest container and password, plus public metadata
    certificate_ciphertext = Column(Text, nullable=True)
    certificate_password_ciphertext = Column(Text, nullable=True)
    certificate_key_id = Column(String(255), nullable=True)  # KMS key ID or "local"
    certificate_subject = Column(String(512), nullable=True)
    certificate_issuer = Column(String(512), nullable=True)
    certificate_not_before = Column(DateTime, nullable=True)
    certificate_not_after = Column(DateTime, nullable=True, index=True)
    certificate_uploaded_at = Column(DateTime, nullable=True)

    # Counters
    last_sequence = Column(BigInteger, default=0, nullable=False)
    last_submission_at = Column(DateTime, nullable=True)

    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)  # Set by the service on configuration changes

    @property
    def has_certificate(self) -> bool:
        return bool(self.certificate_ciphertext and self.certificate_password_ciphertext)

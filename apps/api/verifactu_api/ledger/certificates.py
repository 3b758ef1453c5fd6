"""Tenant signing certificate storage.

Certificates arrive as PKCS#12 containers protected by a password. Both the
container and the password are stored encrypted; decrypted key material only
exists inside ``signing_material()``.
"""

import hashlib
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from sqlalchemy.orm import Session

from verifactu_api.clock import Clock, system_clock
from verifactu_api.errors import CertificateExpired, ComplianceDisabled, InvalidCertificate
from verifactu_api.models import TenantConfig
from verifactu_api.security.encryption import DecryptionError, EncryptionService, get_encryption_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificateInfo:
    """Public metadata of a signing certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint: str

    def is_expired(self, now: datetime) -> bool:
        return now > self.not_after

    @classmethod
    def from_x509(cls, certificate: x509.Certificate) -> "CertificateInfo":
        der = certificate.public_bytes(serialization.Encoding.DER)
        return cls(
            subject=certificate.subject.rfc4514_string(),
            issuer=certificate.issuer.rfc4514_string(),
            serial_number=format(certificate.serial_number, "x"),
            not_before=certificate.not_valid_before_utc.replace(tzinfo=None),
            not_after=certificate.not_valid_after_utc.replace(tzinfo=None),
            fingerprint=hashlib.sha256(der).hexdigest(),
        )


@dataclass
class SigningMaterial:
    """Decrypted key and certificate, valid only inside ``signing_material()``."""

    private_key: rsa.RSAPrivateKey
    certificate: x509.Certificate
    info: CertificateInfo


def parse_container(container_bytes: bytes, password: str):
    """Open a PKCS#12 container, returning ``(private_key, certificate)``."""
    if not container_bytes:
        raise InvalidCertificate("Certificate container is empty")
    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            container_bytes, password.encode() if password else None
        )
    except (ValueError, TypeError) as e:
        # Do not include the password or container in the message
        raise InvalidCertificate(f"Cannot open certificate container: {e.__class__.__name__}") from None
    if certificate is None or private_key is None:
        raise InvalidCertificate("Certificate container has no certificate or private key")
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise InvalidCertificate("Only RSA signing keys are supported")
    return private_key, certificate


class CertificateStore:
    """Load, validate and persist tenant certificates."""

    def __init__(
        self,
        db: Session,
        encryption: Optional[EncryptionService] = None,
        clock: Clock = system_clock,
    ):
        """Initialize certificate store."""
        self.db = db
        self.encryption = encryption or get_encryption_service()
        self.clock = clock

    def _get_config(self, tenant_id: int) -> TenantConfig:
        config = self.db.query(TenantConfig).filter(TenantConfig.tenant_id == tenant_id).first()
        if not config:
            raise ComplianceDisabled(f"Tenant {tenant_id} has no VERI*FACTU configuration")
        return config

    def _context(self, tenant_id: int, purpose: str) -> dict:
        return {"tenant_id": str(tenant_id), "purpose": purpose}

    def _decrypt(self, config: TenantConfig) -> tuple[bytes, str]:
        if not config.has_certificate:
            raise InvalidCertificate(f"Tenant {config.tenant_id} has no certificate configured")
        try:
            container = self.encryption.decrypt_bytes(json.loads(config.certificate_ciphertext))
            password = self.encryption.decrypt(json.loads(config.certificate_password_ciphertext))
        except (DecryptionError, ValueError) as e:
            raise InvalidCertificate(f"Stored certificate cannot be decrypted: {e}") from None
        return container, password

    def _check_validity(self, info: CertificateInfo) -> None:
        if info.is_expired(self.clock.now()):
            raise CertificateExpired(
                f"Certificate expired on {info.not_after.isoformat()}", not_after=info.not_after
            )

    def store(self, tenant_id: int, container_bytes: bytes, password: str) -> CertificateInfo:
        """Validate and persist a new certificate, replacing any previous one."""
        config = self._get_config(tenant_id)
        _, certificate = parse_container(container_bytes, password)
        info = CertificateInfo.from_x509(certificate)
        self._check_validity(info)

        container_ct = self.encryption.encrypt_bytes(
            container_bytes, self._context(tenant_id, "certificate_container")
        )
        password_ct = self.encryption.encrypt(password, self._context(tenant_id, "certificate_password"))

        now = self.clock.now()
        config.certificate_ciphertext = json.dumps(container_ct)
        config.certificate_password_ciphertext = json.dumps(password_ct)
        config.certificate_key_id = container_ct["key_id"]
        config.certificate_subject = info.subject
        config.certificate_issuer = info.issuer
        config.certificate_not_before = info.not_before
        config.certificate_not_after = info.not_after
        config.certificate_uploaded_at = now
        config.updated_at = now
        self.db.flush()

        logger.info(
            f"Certificate stored for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "not_after": info.not_after.isoformat(), "fingerprint": info.fingerprint},
        )
        return info

    def update_password(self, tenant_id: int, password: str) -> CertificateInfo:
        """Replace the stored password after checking it opens the stored container."""
        config = self._get_config(tenant_id)
        container, _ = self._decrypt(config)
        _, certificate = parse_container(container, password)
        info = CertificateInfo.from_x509(certificate)

        password_ct = self.encryption.encrypt(password, self._context(tenant_id, "certificate_password"))
        config.certificate_password_ciphertext = json.dumps(password_ct)
        config.updated_at = self.clock.now()
        self.db.flush()
        logger.info(f"Certificate password updated for tenant {tenant_id}", extra={"tenant_id": tenant_id})
        return info

    def load(self, tenant_id: int) -> CertificateInfo:
        """Decrypt and validate the tenant's certificate."""
        config = self._get_config(tenant_id)
        container, password = self._decrypt(config)
        _, certificate = parse_container(container, password)
        info = CertificateInfo.from_x509(certificate)
        self._check_validity(info)
        return info

    @contextmanager
    def signing_material(self, tenant_id: int) -> Iterator[SigningMaterial]:
        """Yield decrypted key material for the duration of one signing operation."""
        config = self._get_config(tenant_id)
        container, password = self._decrypt(config)
        private_key, certificate = parse_container(container, password)
        del container, password
        info = CertificateInfo.from_x509(certificate)
        self._check_validity(info)
        material = SigningMaterial(private_key=private_key, certificate=certificate, info=info)
        try:
            yield material
        finally:
            material.private_key = None
            del private_key

    def stored_info(self, tenant_id: int) -> Optional[dict]:
        """Certificate metadata from the configuration row, without decrypting."""
        config = self._get_config(tenant_id)
        if not config.has_certificate:
            return None
        return {
            "subject": config.certificate_subject,
            "issuer": config.certificate_issuer,
            "not_before": config.certificate_not_before,
            "not_after": config.certificate_not_after,
            "uploaded_at": config.certificate_uploaded_at,
        }

    def remove(self, tenant_id: int) -> None:
        """Forget the tenant's certificate."""
        config = self._get_config(tenant_id)
        config.certificate_ciphertext = None
        config.certificate_password_ciphertext = None
        config.certificate_key_id = None
        config.certificate_subject = None
        config.certificate_issuer = None
        config.certificate_not_before = None
        config.certificate_not_after = None
        config.certificate_uploaded_at = None
        config.updated_at = self.clock.now()
        self.db.flush()
        logger.info(f"Certificate removed for tenant {tenant_id}", extra={"tenant_id": tenant_id})

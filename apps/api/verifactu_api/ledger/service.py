"""Registry ledger service: append, operator commands and queries."""

import logging
from datetime import timedelta
from typing import Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from verifactu_api.clock import Clock, system_clock
from verifactu_api.errors import (
    CertificateExpired,
    ComplianceDisabled,
    EntryNotFound,
    InvalidCertificate,
    InvalidConfiguration,
    InvalidStateTransition,
    SequenceConflict,
    VerifactuError,
)
from verifactu_api.ledger import hash_chain
from verifactu_api.ledger.certificates import CertificateInfo, CertificateStore
from verifactu_api.ledger.qr import build_qr_payload
from verifactu_api.ledger.schema import InvoiceEvent
from verifactu_api.ledger.sequence import SequenceAllocator
from verifactu_api.ledger.signer import SignedDocument, XMLSigner
from verifactu_api.ledger.states import TransmissionStatus, transition
from verifactu_api.ledger.xml_builder import build_registration_xml
from verifactu_api.models import ComplianceMode, Environment, RegistryEntry, TenantConfig, TransmissionEvent
from verifactu_api.settings import Settings, get_settings
from verifactu_api.utils import metrics

logger = logging.getLogger(__name__)

CONFIG_FIELDS = (
    "tenant_name",
    "mode",
    "environment",
    "enabled",
    "auto_submit",
    "flow_control_seconds",
    "max_records_per_submission",
)
MAX_RECORDS_PER_SUBMISSION = 1000


class RegistryService:
    """Tamper-evident invoice registry with per-tenant hash chaining."""

    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        certificate_store: Optional[CertificateStore] = None,
        signer: Optional[XMLSigner] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize registry service."""
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()
        self.certificate_store = certificate_store or CertificateStore(db, clock=clock)
        self.signer = signer or XMLSigner()
        self.allocator = SequenceAllocator(db)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self, tenant_id: int) -> Optional[TenantConfig]:
        """Get tenant configuration."""
        return self.db.query(TenantConfig).filter(TenantConfig.tenant_id == tenant_id).first()

    def require_config(self, tenant_id: int) -> TenantConfig:
        """Get tenant configuration or fail if the tenant is not enabled."""
        config = self.get_config(tenant_id)
        if not config or not config.enabled:
            raise ComplianceDisabled(f"VERI*FACTU is not enabled for tenant {tenant_id}")
        return config

    def _validate_config(self, config: TenantConfig) -> None:
        if config.mode not in ComplianceMode.ALL:
            raise InvalidConfiguration(f"Unknown compliance mode '{config.mode}'")
        if config.environment not in Environment.ALL:
            raise InvalidConfiguration(f"Unknown environment '{config.environment}'")
        minimum = self.settings.aeat_min_flow_control_seconds if config.environment == Environment.PRODUCTION else 1
        if config.flow_control_seconds < minimum:
            raise InvalidConfiguration(
                f"flow_control_seconds must be at least {minimum} in {config.environment}"
            )
        if not 1 <= config.max_records_per_submission <= MAX_RECORDS_PER_SUBMISSION:
            raise InvalidConfiguration(
                f"max_records_per_submission must be between 1 and {MAX_RECORDS_PER_SUBMISSION}"
            )

    def update_config(self, tenant_id: int, actor: str = "system", **changes) -> TenantConfig:
        """Create or supersede the tenant's configuration."""
        unknown = set(changes) - set(CONFIG_FIELDS)
        if unknown:
            raise InvalidConfiguration(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

        config = self.get_config(tenant_id)
        created = config is None
        if created:
            config = TenantConfig(
                tenant_id=tenant_id,
                mode=ComplianceMode.LIVE,
                environment=Environment.TESTING,
                enabled=False,
                auto_submit=True,
                flow_control_seconds=self.settings.aeat_min_flow_control_seconds,
                max_records_per_submission=10,
                last_sequence=0,
                version=0,
                created_at=self.clock.now(),
            )

        before = {field: getattr(config, field) for field in CONFIG_FIELDS}
        for field, value in changes.items():
            if value is not None:
                setattr(config, field, value)
        try:
            self._validate_config(config)
        except InvalidConfiguration:
            if not created:
                self.db.refresh(config)
            raise

        config.version = (config.version or 0) + 1
        config.updated_at = self.clock.now()
        if created:
            self.db.add(config)
            self.db.flush()

        diff = {
            field: {"from": before[field], "to": getattr(config, field)}
            for field in CONFIG_FIELDS
            if before[field] != getattr(config, field)
        }
        self.record_event(tenant_id, "config_updated", {"version": config.version, "changes": diff}, actor=actor)
        self.db.commit()
        logger.info(
            f"VERI*FACTU configuration v{config.version} saved for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "changes": list(diff)},
        )
        return config

    def update_certificate(
        self, tenant_id: int, container_bytes: bytes, password: str, actor: str = "system"
    ) -> tuple[CertificateInfo, int]:
        """Store a new certificate and re-sign entries that were recorded without one."""
        info = self.certificate_store.store(tenant_id, container_bytes, password)
        self.record_event(
            tenant_id,
            "certificate_updated",
            {"subject": info.subject, "not_after": info.not_after.isoformat(), "fingerprint": info.fingerprint},
            actor=actor,
        )
        self.db.commit()

        resigned = 0
        config = self.get_config(tenant_id)
        unsignable = (
            self.db.query(RegistryEntry)
            .filter(
                RegistryEntry.tenant_id == tenant_id,
                RegistryEntry.unsignable == True,  # noqa: E712
                RegistryEntry.status == TransmissionStatus.ERROR.value,
            )
            .order_by(RegistryEntry.sequence_number.asc())
            .all()
        )
        for entry in unsignable:
            if self._resign(entry, config) is None:
                resigned += 1
        self.db.commit()
        return info, resigned

    def update_certificate_password(self, tenant_id: int, password: str, actor: str = "system") -> CertificateInfo:
        """Replace the stored certificate password."""
        info = self.certificate_store.update_password(tenant_id, password)
        self.record_event(tenant_id, "certificate_password_updated", {}, actor=actor)
        self.db.commit()
        return info

    def remove_certificate(self, tenant_id: int, actor: str = "system") -> None:
        """Forget the tenant's certificate; later entries are recorded unsignable."""
        self.certificate_store.remove(tenant_id)
        self.record_event(tenant_id, "certificate_removed", {}, actor=actor)
        self.db.commit()

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def record_event(
        self,
        tenant_id: int,
        event_type: str,
        details: Optional[dict] = None,
        entry_id: Optional[int] = None,
        actor: str = "system",
    ) -> TransmissionEvent:
        """Append an immutable transmission event."""
        event = TransmissionEvent(
            tenant_id=tenant_id,
            entry_id=entry_id,
            event_type=event_type,
            details=details or {},
            actor=actor,
            created_at=self.clock.now(),
        )
        self.db.add(event)
        self.db.flush()
        return event

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def _find_existing(self, tenant_id: int, invoice_id: str, direction: str) -> Optional[RegistryEntry]:
        return (
            self.db.query(RegistryEntry)
            .filter(
                RegistryEntry.tenant_id == tenant_id,
                RegistryEntry.invoice_id == invoice_id,
                RegistryEntry.direction == direction,
            )
            .first()
        )

    def chain_tip(self, tenant_id: int) -> Optional[RegistryEntry]:
        """Get the tenant's highest-sequence entry."""
        return (
            self.db.query(RegistryEntry)
            .filter(RegistryEntry.tenant_id == tenant_id)
            .order_by(RegistryEntry.sequence_number.desc())
            .first()
        )

    def _sign(
        self, event: InvoiceEvent, config: TenantConfig, sequence: int, current_hash: str, previous_hash: Optional[str]
    ) -> tuple[Optional[SignedDocument], Optional[VerifactuError]]:
        """Build and sign the document; returns ``(signed, certificate_error)``."""
        if not config.has_certificate:
            return None, InvalidCertificate("Certificate error: no signing certificate configured for this tenant")
        document = build_registration_xml(
            event,
            sequence_number=sequence,
            current_hash=current_hash,
            previous_hash=previous_hash,
            mode=config.mode,
            tenant_name=config.tenant_name,
        )
        try:
            with self.certificate_store.signing_material(config.tenant_id) as material:
                return self.signer.sign(document, material), None
        except CertificateExpired as e:
            return None, CertificateExpired(f"Certificate error: signing certificate expired ({e})", not_after=e.not_after)
        except InvalidCertificate as e:
            return None, InvalidCertificate(f"Certificate error: {e}")

    def _append_once(self, event: InvoiceEvent, config: TenantConfig) -> RegistryEntry:
        tenant_id = event.tenant_id
        sequence = self.allocator.next_sequence(tenant_id)

        tip = self.chain_tip(tenant_id)
        expected_previous = sequence - 1
        if (tip.sequence_number if tip else 0) != expected_previous:
            raise SequenceConflict(
                f"Tenant {tenant_id} counter allocated {sequence} but chain tip is "
                f"{tip.sequence_number if tip else 'empty'}"
            )
        previous_hash = tip.current_hash if tip else None

        fields = hash_chain.canonical_fields(event)
        current_hash = hash_chain.compute_hash(previous_hash, fields)
        qr_payload = build_qr_payload(
            fields, current_hash, self.settings.aeat_qr_base_url, verifiable=config.mode == ComplianceMode.LIVE
        )

        signed, sign_error = self._sign(event, config, sequence, current_hash, previous_hash)
        if sign_error:
            status = TransmissionStatus.ERROR
        elif config.mode == ComplianceMode.REQUIREMENT:
            status = TransmissionStatus.DORMANT
        else:
            status = TransmissionStatus.PENDING

        now = self.clock.now()
        entry = RegistryEntry(
            tenant_id=tenant_id,
            invoice_id=event.invoice_id,
            direction=event.direction,
            sequence_number=sequence,
            previous_hash=previous_hash,
            current_hash=current_hash,
            hash_version=hash_chain.HASH_FORMAT_VERSION,
            canonical_fields=fields,
            document_json=event.model_dump(mode="json"),
            signed_xml=signed.xml if signed else None,
            signature_fingerprint=signed.certificate_fingerprint if signed else None,
            unsignable=signed is None,
            qr_payload=qr_payload,
            status=status.value,
            error_message=str(sign_error) if sign_error else None,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(entry)
        self.db.flush()

        self.record_event(
            tenant_id,
            "created",
            {
                "invoice_id": event.invoice_id,
                "direction": event.direction,
                "sequence_number": sequence,
                "hash": current_hash,
                "status": status.value,
            },
            entry_id=entry.id,
        )
        if sign_error:
            self.record_event(tenant_id, "certificate_blocked", {"error": str(sign_error)}, entry_id=entry.id)
        return entry

    def append(self, invoice_event: Union[InvoiceEvent, dict]) -> RegistryEntry:
        """Record an invoice event in the tenant's chain.

        Certificate problems never block the append: the entry is stored in
        ``error`` with ``unsignable`` set and a certificate-specific message.
        Appending the same invoice twice returns the original entry.
        """
        event = invoice_event if isinstance(invoice_event, InvoiceEvent) else InvoiceEvent.model_validate(invoice_event)
        tenant_id = event.tenant_id
        config = self.require_config(tenant_id)

        existing = self._find_existing(tenant_id, event.invoice_id, event.direction)
        if existing:
            return existing

        attempts = max(1, self.settings.sequence_conflict_retries)
        with self.allocator.locked(tenant_id):
            for attempt in range(1, attempts + 1):
                try:
                    entry = self._append_once(event, config)
                    self.db.commit()
                except IntegrityError as e:
                    self.db.rollback()
                    existing = self._find_existing(tenant_id, event.invoice_id, event.direction)
                    if existing:
                        return existing
                    logger.warning(
                        f"Sequence conflict for tenant {tenant_id} (attempt {attempt}/{attempts})",
                        extra={"tenant_id": tenant_id, "error": str(e.orig)},
                    )
                    if attempt == attempts:
                        raise SequenceConflict(f"Could not allocate a sequence for tenant {tenant_id}") from e
                    config = self.require_config(tenant_id)
                    continue
                except SequenceConflict:
                    self.db.rollback()
                    logger.error(
                        f"Chain tip and counter disagree for tenant {tenant_id} (attempt {attempt}/{attempts})",
                        extra={"tenant_id": tenant_id},
                    )
                    if attempt == attempts:
                        raise
                    config = self.require_config(tenant_id)
                    continue

                metrics.entries_appended.labels(status=entry.status).inc()
                logger.info(
                    f"Registry entry {entry.sequence_number} appended for tenant {tenant_id}",
                    extra={
                        "tenant_id": tenant_id,
                        "entry_id": entry.id,
                        "sequence": entry.sequence_number,
                        "status": entry.status,
                    },
                )
                return entry
        raise SequenceConflict(f"Could not allocate a sequence for tenant {tenant_id}")

    def _resign(self, entry: RegistryEntry, config: TenantConfig) -> Optional[VerifactuError]:
        """Sign an entry that was recorded without a usable certificate; returns the failure, if any."""
        event = InvoiceEvent.model_validate(entry.document_json)
        signed, sign_error = self._sign(
            event, config, entry.sequence_number, entry.current_hash, entry.previous_hash
        )
        if sign_error:
            entry.error_message = str(sign_error)
            entry.updated_at = self.clock.now()
            return sign_error
        entry.signed_xml = signed.xml
        entry.signature_fingerprint = signed.certificate_fingerprint
        entry.unsignable = False
        entry.updated_at = self.clock.now()
        self.record_event(entry.tenant_id, "resigned", {"fingerprint": signed.certificate_fingerprint}, entry_id=entry.id)
        return None

    def resign(self, entry_id: int, actor: str = "system", tenant_id: Optional[int] = None) -> RegistryEntry:
        """Sign an unsignable entry with the tenant's current certificate."""
        entry = self.get_entry(entry_id, tenant_id, for_update=True)
        if not entry.unsignable:
            self.db.rollback()
            return entry
        failure = self._resign(entry, self.require_config(entry.tenant_id))
        self.db.commit()
        if failure is not None:
            raise failure
        logger.info(
            f"Registry entry {entry.id} re-signed",
            extra={"tenant_id": entry.tenant_id, "entry_id": entry.id, "actor": actor},
        )
        return entry

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: int, tenant_id: Optional[int] = None, for_update: bool = False) -> RegistryEntry:
        """Get a registry entry, optionally scoped to a tenant."""
        query = self.db.query(RegistryEntry).filter(RegistryEntry.id == entry_id)
        if tenant_id is not None:
            query = query.filter(RegistryEntry.tenant_id == tenant_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        entry = query.first()
        if not entry:
            raise EntryNotFound(f"Registry entry {entry_id} not found")
        return entry

    def activate(self, entry_id: int, actor: str = "system", tenant_id: Optional[int] = None) -> RegistryEntry:
        """Release a dormant requirement-mode entry for submission."""
        entry = self.get_entry(entry_id, tenant_id, for_update=True)
        now = self.clock.now()
        try:
            transition(entry, TransmissionStatus.PENDING, now)
        except InvalidStateTransition:
            self.db.rollback()
            raise
        entry.activated_at = now
        entry.next_eligible_retry = None
        self.record_event(
            entry.tenant_id,
            "requirement_activation",
            {"previous_status": TransmissionStatus.DORMANT.value},
            entry_id=entry.id,
            actor=actor,
        )
        self.db.commit()
        logger.info(
            f"Registry entry {entry.id} activated",
            extra={"tenant_id": entry.tenant_id, "entry_id": entry.id, "actor": actor},
        )
        return entry

    def mark_for_retry(self, entry_id: int, actor: str = "system", tenant_id: Optional[int] = None) -> RegistryEntry:
        """Put an ``error`` entry back in the eligible pool immediately.

        Entries recorded without a certificate are re-signed first; if that
        still fails the certificate error is raised and the entry stays put.
        """
        entry = self.get_entry(entry_id, tenant_id, for_update=True)
        if entry.status != TransmissionStatus.ERROR.value:
            self.db.rollback()
            raise InvalidStateTransition(entry.id, entry.status, TransmissionStatus.PENDING.value)

        if entry.unsignable:
            config = self.require_config(entry.tenant_id)
            failure = self._resign(entry, config)
            if failure is not None:
                self.db.commit()
                raise failure

        previous_status = entry.status
        transition(entry, TransmissionStatus.PENDING, self.clock.now())
        entry.next_eligible_retry = None
        self.record_event(
            entry.tenant_id,
            "retry",
            {"previous_status": previous_status, "retry_count": entry.retry_count},
            entry_id=entry.id,
            actor=actor,
        )
        self.db.commit()
        logger.info(
            f"Registry entry {entry.id} marked for retry",
            extra={"tenant_id": entry.tenant_id, "entry_id": entry.id, "actor": actor},
        )
        return entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_entries(
        self, tenant_id: int, page: int = 1, page_size: int = 20, status: Optional[str] = None
    ) -> tuple[list[RegistryEntry], int]:
        """Page through a tenant's entries, newest first."""
        page = max(1, page)
        page_size = max(1, min(page_size, 200))
        query = self.db.query(RegistryEntry).filter(RegistryEntry.tenant_id == tenant_id)
        if status:
            query = query.filter(RegistryEntry.status == TransmissionStatus(status).value)
        total = query.count()
        entries = (
            query.order_by(RegistryEntry.sequence_number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return entries, total

    def get_stats(self, tenant_id: int) -> dict:
        """Counts by status plus flow-control timing."""
        rows = (
            self.db.query(RegistryEntry.status, func.count(RegistryEntry.id))
            .filter(RegistryEntry.tenant_id == tenant_id)
            .group_by(RegistryEntry.status)
            .all()
        )
        counts = {status.value: 0 for status in TransmissionStatus}
        counts.update({status: count for status, count in rows})

        last_sent_at = (
            self.db.query(func.max(RegistryEntry.sent_at)).filter(RegistryEntry.tenant_id == tenant_id).scalar()
        )
        config = self.get_config(tenant_id)
        last_submission_at = config.last_submission_at if config else None
        next_eligible = None
        if config and last_submission_at:
            next_eligible = last_submission_at + timedelta(seconds=config.flow_control_seconds)
        return {
            "tenant_id": tenant_id,
            "counts": counts,
            "total": sum(counts.values()),
            "last_sent_at": last_sent_at,
            "last_submission_at": last_submission_at,
            "next_submission_eligible_at": next_eligible,
        }

    def verify_chain(self, tenant_id: int) -> tuple[bool, Optional[str]]:
        """Replay the tenant's chain from stored canonical fields."""
        entries = (
            self.db.query(RegistryEntry)
            .filter(RegistryEntry.tenant_id == tenant_id)
            .order_by(RegistryEntry.sequence_number.asc())
            .yield_per(500)
        )
        return hash_chain.verify_chain(hash_chain.ChainRecord.from_entry(entry) for entry in entries)

"""VERI*FACTU operator commands and query routes."""

import base64
import binascii
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from verifactu_api.db.session import get_db
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
from verifactu_api.ledger.schema import InvoiceEvent, InvoicePayload
from verifactu_api.ledger.service import RegistryService
from verifactu_api.ledger.states import TransmissionStatus
from verifactu_api.middleware.correlation import get_actor
from verifactu_api.models import TenantConfig
from verifactu_api.monitoring.certificate_monitor import CertificateMonitor
from verifactu_api.transmission.worker import SubmissionWorker

router = APIRouter(prefix="/v1/verifactu", tags=["verifactu"])


class EntryResponse(BaseModel):
    """Registry entry response."""

    id: int
    tenant_id: int
    invoice_id: str
    direction: str
    sequence_number: int
    previous_hash: Optional[str]
    current_hash: str
    status: str
    unsignable: bool
    retry_count: int
    next_eligible_retry: Optional[datetime]
    error_message: Optional[str]
    confirmation_code: Optional[str]
    qr_payload: str
    qr_url: Optional[str]
    created_at: datetime
    activated_at: Optional[datetime]
    sent_at: Optional[datetime]

    class Config:
        from_attributes = True


class EventResponse(BaseModel):
    """Transmission event response."""

    id: int
    event_type: str
    details: Optional[dict]
    actor: str
    created_at: datetime

    class Config:
        from_attributes = True


class EntryDetailResponse(EntryResponse):
    """Registry entry with its audit trail and signed document."""

    signed_xml: Optional[str]
    events: list[EventResponse]


class EntryListResponse(BaseModel):
    """Paged registry entries."""

    entries: list[EntryResponse]
    total: int
    page: int
    page_size: int


class ConfigUpdate(BaseModel):
    """Tenant configuration update; omitted fields are left unchanged."""

    tenant_name: Optional[str] = None
    mode: Optional[str] = None
    environment: Optional[str] = None
    enabled: Optional[bool] = None
    auto_submit: Optional[bool] = None
    flow_control_seconds: Optional[int] = None
    max_records_per_submission: Optional[int] = None


class ConfigResponse(BaseModel):
    """Tenant configuration response."""

    tenant_id: int
    tenant_name: Optional[str]
    mode: str
    environment: str
    enabled: bool
    auto_submit: bool
    flow_control_seconds: int
    max_records_per_submission: int
    has_certificate: bool
    certificate_not_after: Optional[datetime]
    last_sequence: int
    last_submission_at: Optional[datetime]
    version: int

    class Config:
        from_attributes = True


class CertificateUpload(BaseModel):
    """PKCS#12 container upload."""

    container_base64: str
    password: str


class CertificatePasswordUpdate(BaseModel):
    """Certificate password replacement."""

    password: str


class CertificateUploadResponse(BaseModel):
    """Stored certificate metadata."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint: str
    resigned_entries: int = 0


def get_registry_service(db: Session = Depends(get_db)) -> RegistryService:
    """Registry service bound to the request session."""
    return RegistryService(db)


def get_submission_worker() -> SubmissionWorker:
    """Submission worker for manual runs."""
    return SubmissionWorker()


def _http_error(error: VerifactuError) -> HTTPException:
    if isinstance(error, EntryNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, (ComplianceDisabled, InvalidStateTransition, SequenceConflict)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, (InvalidCertificate, CertificateExpired, InvalidConfiguration)):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------


@router.post(
    "/tenants/{tenant_id}/entries",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def append_entry(
    tenant_id: int,
    payload: InvoicePayload,
    service: RegistryService = Depends(get_registry_service),
):
    """Record an invoice event in the tenant's registry."""
    event = InvoiceEvent(tenant_id=tenant_id, **payload.model_dump())
    try:
        return service.append(event)
    except VerifactuError as e:
        raise _http_error(e) from e


@router.get("/tenants/{tenant_id}/entries", response_model=EntryListResponse)
async def list_entries(
    tenant_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    status_filter: Optional[TransmissionStatus] = Query(None, alias="status"),
    service: RegistryService = Depends(get_registry_service),
):
    """List registry entries, newest first."""
    entries, total = service.list_entries(
        tenant_id, page=page, page_size=page_size, status=status_filter.value if status_filter else None
    )
    return EntryListResponse(
        entries=[EntryResponse.model_validate(entry) for entry in entries],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/tenants/{tenant_id}/entries/{entry_id}", response_model=EntryDetailResponse)
async def get_entry(
    tenant_id: int,
    entry_id: int,
    service: RegistryService = Depends(get_registry_service),
):
    """Get one entry with its audit trail."""
    try:
        return service.get_entry(entry_id, tenant_id=tenant_id)
    except VerifactuError as e:
        raise _http_error(e) from e


@router.post("/entries/{entry_id}/retry", response_model=EntryResponse)
async def retry_entry(
    entry_id: int,
    request: Request,
    service: RegistryService = Depends(get_registry_service),
):
    """Return an entry in error to the submission pool."""
    try:
        return service.mark_for_retry(entry_id, actor=get_actor(request))
    except VerifactuError as e:
        raise _http_error(e) from e


@router.post("/entries/{entry_id}/activate", response_model=EntryResponse)
async def activate_entry(
    entry_id: int,
    request: Request,
    service: RegistryService = Depends(get_registry_service),
):
    """Release a dormant requirement-mode entry for submission."""
    try:
        return service.activate(entry_id, actor=get_actor(request))
    except VerifactuError as e:
        raise _http_error(e) from e


@router.get("/tenants/{tenant_id}/stats")
async def get_stats(
    tenant_id: int,
    service: RegistryService = Depends(get_registry_service),
):
    """Entry counts by status and flow-control timing."""
    return service.get_stats(tenant_id)


@router.get("/tenants/{tenant_id}/chain/verify")
async def verify_chain(
    tenant_id: int,
    service: RegistryService = Depends(get_registry_service),
):
    """Replay the tenant's hash chain."""
    valid, error = service.verify_chain(tenant_id)
    return {"tenant_id": tenant_id, "valid": valid, "error": error}


# ----------------------------------------------------------------------
# Configuration and certificates
# ----------------------------------------------------------------------


def _config_response(config: TenantConfig) -> ConfigResponse:
    return ConfigResponse.model_validate(config)


@router.get("/tenants/{tenant_id}/config", response_model=ConfigResponse)
async def get_config(
    tenant_id: int,
    service: RegistryService = Depends(get_registry_service),
):
    """Get the tenant's configuration."""
    config = service.get_config(tenant_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Tenant {tenant_id} is not configured")
    return _config_response(config)


@router.put("/tenants/{tenant_id}/config", response_model=ConfigResponse)
async def update_config(
    tenant_id: int,
    update: ConfigUpdate,
    request: Request,
    service: RegistryService = Depends(get_registry_service),
):
    """Create or update the tenant's configuration."""
    try:
        config = service.update_config(tenant_id, actor=get_actor(request), **update.model_dump(exclude_none=True))
    except VerifactuError as e:
        raise _http_error(e) from e
    return _config_response(config)


@router.post("/tenants/{tenant_id}/certificate", response_model=CertificateUploadResponse)
async def upload_certificate(
    tenant_id: int,
    upload: CertificateUpload,
    request: Request,
    service: RegistryService = Depends(get_registry_service),
):
    """Store a new signing certificate and re-sign entries recorded without one."""
    try:
        container = base64.b64decode(upload.container_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="container_base64 is not valid base64"
        )
    try:
        info, resigned = service.update_certificate(tenant_id, container, upload.password, actor=get_actor(request))
    except VerifactuError as e:
        raise _http_error(e) from e
    return CertificateUploadResponse(
        subject=info.subject,
        issuer=info.issuer,
        serial_number=info.serial_number,
        not_before=info.not_before,
        not_after=info.not_after,
        fingerprint=info.fingerprint,
        resigned_entries=resigned,
    )


@router.put("/tenants/{tenant_id}/certificate/password", response_model=CertificateUploadResponse)
async def update_certificate_password(
    tenant_id: int,
    update: CertificatePasswordUpdate,
    request: Request,
    service: RegistryService = Depends(get_registry_service),
):
    """Replace the stored certificate password."""
    try:
        info = service.update_certificate_password(tenant_id, update.password, actor=get_actor(request))
    except VerifactuError as e:
        raise _http_error(e) from e
    return CertificateUploadResponse(
        subject=info.subject,
        issuer=info.issuer,
        serial_number=info.serial_number,
        not_before=info.not_before,
        not_after=info.not_after,
        fingerprint=info.fingerprint,
    )


@router.delete("/tenants/{tenant_id}/certificate", status_code=status.HTTP_204_NO_CONTENT)
async def remove_certificate(
    tenant_id: int,
    request: Request,
    service: RegistryService = Depends(get_registry_service),
):
    """Forget the tenant's signing certificate."""
    try:
        service.remove_certificate(tenant_id, actor=get_actor(request))
    except VerifactuError as e:
        raise _http_error(e) from e


@router.get("/tenants/{tenant_id}/certificate")
async def get_certificate_status(
    tenant_id: int,
    db: Session = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
):
    """Certificate expiry level and stored metadata for the tenant."""
    config = db.query(TenantConfig).filter(TenantConfig.tenant_id == tenant_id).first()
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Tenant {tenant_id} is not configured")
    return {
        **CertificateMonitor(db).status_for(config).as_dict(),
        "certificate": service.certificate_store.stored_info(tenant_id),
    }


@router.get("/certificates/monitor")
async def certificate_monitor(db: Session = Depends(get_db)):
    """Certificate levels across enabled tenants."""
    monitor = CertificateMonitor(db)
    statuses = monitor.statuses()
    return {"summary": monitor.summary(statuses), "tenants": [item.as_dict() for item in statuses]}


# ----------------------------------------------------------------------
# Submission
# ----------------------------------------------------------------------


@router.post("/tenants/{tenant_id}/worker/run")
def run_worker(
    tenant_id: int,
    worker: SubmissionWorker = Depends(get_submission_worker),
):
    """Submit the tenant's eligible entries now, subject to flow control."""
    result = worker.run_tenant(tenant_id, manual=True)
    return asdict(result)

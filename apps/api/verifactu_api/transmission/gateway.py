"""Tax authority transmission gateway."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx
from lxml import etree

from verifactu_api.errors import AuthorityRejection, TransientTransmissionFailure
from verifactu_api.models import ComplianceMode, Environment
from verifactu_api.settings import Settings, get_settings
from verifactu_api.utils import metrics

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

STATUS_ACCEPTED = "Correcto"
STATUS_ACCEPTED_WITH_ERRORS = "AceptadoConErrores"
STATUS_REJECTED = "Incorrecto"


@dataclass(frozen=True)
class SubmissionItem:
    """One signed record in a batch."""

    entry_id: int
    sequence_number: int
    signed_xml: str


@dataclass(frozen=True)
class SubmissionBatch:
    """Ordered records for one tenant, sent in a single call."""

    tenant_id: int
    mode: str
    environment: str
    items: list[SubmissionItem] = field(default_factory=list)


@dataclass(frozen=True)
class SubmissionOutcome:
    """Authority verdict for one record."""

    entry_id: int
    confirmation_code: Optional[str] = None
    qr_url: Optional[str] = None
    warning: Optional[str] = None
    rejection: Optional[AuthorityRejection] = None

    @property
    def accepted(self) -> bool:
        return self.rejection is None


class TransmissionGateway(ABC):
    """Sends batches to the authority.

    Implementations return one outcome per accepted or rejected record and
    raise ``TransientTransmissionFailure`` for anything else (network errors,
    timeouts, server faults, responses that cannot be interpreted).
    """

    @abstractmethod
    def submit(self, batch: SubmissionBatch) -> list[SubmissionOutcome]:
        """Submit a batch."""


def _local(element) -> str:
    return etree.QName(element).localname


def _find_text(element, name: str) -> Optional[str]:
    for child in element.iter():
        if isinstance(child.tag, str) and _local(child) == name and child.text:
            return child.text.strip()
    return None


def _children(element, name: str) -> list:
    return [child for child in element.iter() if isinstance(child.tag, str) and _local(child) == name]


class AeatGateway(TransmissionGateway):
    """SOAP client for the AEAT VERI*FACTU web services."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        """Initialize gateway."""
        self.settings = settings or get_settings()
        self._client = client

    def endpoint_for(self, mode: str, environment: str) -> str:
        """Endpoint for the tenant's mode and environment."""
        production = environment == Environment.PRODUCTION
        if mode == ComplianceMode.REQUIREMENT:
            if production:
                return self.settings.aeat_requirement_production_url
            return self.settings.aeat_requirement_testing_url
        if production:
            return self.settings.aeat_live_production_url
        return self.settings.aeat_live_testing_url

    def build_envelope(self, batch: SubmissionBatch) -> bytes:
        """Wrap the signed documents, in sequence order, in a SOAP envelope."""
        envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"soapenv": SOAP_ENV_NS})
        etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
        body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
        parser = etree.XMLParser(remove_blank_text=False, resolve_entities=False)
        for item in batch.items:
            body.append(etree.fromstring(item.signed_xml.encode("utf-8"), parser))
        return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")

    def _make_client(self) -> httpx.Client:
        cert = None
        if self.settings.aeat_client_cert_path:
            cert = (self.settings.aeat_client_cert_path, self.settings.aeat_client_key_path)
        return httpx.Client(timeout=self.settings.aeat_timeout_seconds, cert=cert)

    def _post(self, url: str, payload: bytes) -> httpx.Response:
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": "",
            "Accept": "text/xml",
        }
        if self._client is not None:
            return self._client.post(url, content=payload, headers=headers)
        with self._make_client() as client:
            return client.post(url, content=payload, headers=headers)

    def submit(self, batch: SubmissionBatch) -> list[SubmissionOutcome]:
        """Submit a batch and interpret the authority response."""
        if not batch.items:
            return []
        url = self.endpoint_for(batch.mode, batch.environment)
        payload = self.build_envelope(batch)

        log_extra = {"tenant_id": batch.tenant_id, "records": len(batch.items), "endpoint": url}
        logger.info(f"Submitting {len(batch.items)} record(s) for tenant {batch.tenant_id}", extra=log_extra)

        try:
            with metrics.submission_duration.time():
                response = self._post(url, payload)
        except httpx.TimeoutException as e:
            raise TransientTransmissionFailure(f"Timeout contacting the authority: {e}") from e
        except httpx.HTTPError as e:
            raise TransientTransmissionFailure(f"Transport error contacting the authority: {e}") from e

        if response.status_code >= 500:
            raise TransientTransmissionFailure(
                f"Authority returned HTTP {response.status_code}: {response.text[:500]}"
            )
        if response.status_code >= 400:
            raise TransientTransmissionFailure(
                f"Authority refused the request with HTTP {response.status_code}: {response.text[:500]}"
            )

        return self.parse_response(batch, response.content)

    def parse_response(self, batch: SubmissionBatch, content: bytes) -> list[SubmissionOutcome]:
        """Map an authority response onto the batch's entries."""
        try:
            root = etree.fromstring(content, etree.XMLParser(resolve_entities=False))
        except etree.XMLSyntaxError as e:
            raise TransientTransmissionFailure(f"Unparseable authority response: {e}") from e

        fault = _children(root, "Fault")
        if fault:
            reason = _find_text(fault[0], "faultstring") or "SOAP fault"
            raise TransientTransmissionFailure(f"Authority fault: {reason}")

        batch_status = _find_text(root, "EstadoEnvio")
        batch_csv = _find_text(root, "CSV")
        lines = _children(root, "RespuestaLinea")

        if lines:
            if len(lines) != len(batch.items):
                raise TransientTransmissionFailure(
                    f"Authority answered {len(lines)} line(s) for {len(batch.items)} record(s)"
                )
            return [self._line_outcome(item, line, batch_csv) for item, line in zip(batch.items, lines)]

        if batch_status is None:
            raise TransientTransmissionFailure("Authority response has no submission status")

        # No per-record lines: the batch verdict applies to every record
        code = _find_text(root, "CodigoError")
        description = _find_text(root, "DescripcionError")
        return [self._outcome(item, batch_status, batch_csv, code, description) for item in batch.items]

    def _line_outcome(self, item: SubmissionItem, line, batch_csv: Optional[str]) -> SubmissionOutcome:
        status = _find_text(line, "EstadoRegistro")
        if status is None:
            raise TransientTransmissionFailure(f"Response line for entry {item.entry_id} has no status")
        code = _find_text(line, "CodigoErrorRegistro") or _find_text(line, "CodigoError")
        description = _find_text(line, "DescripcionErrorRegistro") or _find_text(line, "DescripcionError")
        csv = _find_text(line, "CSV") or batch_csv
        return self._outcome(item, status, csv, code, description)

    def _outcome(
        self,
        item: SubmissionItem,
        status: str,
        csv: Optional[str],
        code: Optional[str],
        description: Optional[str],
    ) -> SubmissionOutcome:
        if status == STATUS_ACCEPTED:
            return SubmissionOutcome(entry_id=item.entry_id, confirmation_code=csv)
        if status == STATUS_ACCEPTED_WITH_ERRORS:
            warning = f"[{code}] {description}" if code else description
            return SubmissionOutcome(entry_id=item.entry_id, confirmation_code=csv, warning=warning)
        if status == STATUS_REJECTED:
            reason = description or "Record rejected by the authority"
            return SubmissionOutcome(entry_id=item.entry_id, rejection=AuthorityRejection(reason, code=code))
        raise TransientTransmissionFailure(f"Unrecognized authority status '{status}'")

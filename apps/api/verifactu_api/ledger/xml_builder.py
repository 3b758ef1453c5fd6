"""Registration XML for invoice records."""

from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from lxml import etree

from verifactu_api.ledger.hash_chain import format_date
from verifactu_api.ledger.schema import InvoiceEvent
from verifactu_api.models import ComplianceMode, InvoiceDirection

SUMINISTRO_NS = (
    "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/"
    "aplicaciones/es/aeat/tike/cont/ws/SuministroLR.xsd"
)

REQUIRED_ELEMENTS = (
    "IDEmisorFactura",
    "NumSerieFacturaEmisor",
    "FechaExpedicionFacturaEmisor",
    "TipoFactura",
    "ClaveRegimenEspecialOTrascendencia",
    "ImporteTotal",
    "Desglose",
    "Huella",
)


def _amount(value) -> str:
    return str(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _sub(parent, tag: str, text: Optional[str] = None):
    element = etree.SubElement(parent, f"{{{SUMINISTRO_NS}}}{tag}")
    if text is not None:
        element.text = text
    return element


def tax_breakdown(event: InvoiceEvent) -> "OrderedDict[Decimal, dict]":
    """Group line bases and quotas by tax rate, in first-seen order."""
    groups: "OrderedDict[Decimal, dict]" = OrderedDict()
    for line in event.lines:
        group = groups.setdefault(line.tax_rate, {"base": Decimal("0"), "quota": Decimal("0")})
        group["base"] += line.taxable_base
        group["quota"] += line.tax_amount
    return groups


def build_registration_xml(
    event: InvoiceEvent,
    sequence_number: int,
    current_hash: str,
    previous_hash: Optional[str],
    mode: str = ComplianceMode.LIVE,
    tenant_name: Optional[str] = None,
) -> etree._Element:
    """Build the ``RegFactuSistemaFacturacion`` document for one record."""
    root = etree.Element(f"{{{SUMINISTRO_NS}}}RegFactuSistemaFacturacion", nsmap={None: SUMINISTRO_NS})

    # Header
    cabecera = _sub(root, "Cabecera")
    obligado = _sub(cabecera, "ObligadoEmision")
    obligated = event.issuer if event.direction == InvoiceDirection.ISSUED else event.counterparty
    _sub(obligado, "NIF", obligated.nif)
    _sub(obligado, "Nombre", tenant_name or obligated.name)
    if mode == ComplianceMode.REQUIREMENT:
        _sub(_sub(cabecera, "RemisionRequerimiento"), "RefRequerimiento", str(sequence_number))
    else:
        _sub(_sub(cabecera, "RemisionVoluntaria"), "FechaFinVeriFactu", format_date(event.issue_date))

    # Record
    registro = _sub(root, "RegistroFacturacion")
    _sub(registro, "NumRegistro", str(sequence_number))
    _sub(registro, "IDEmisorFactura", event.issuer.nif)
    _sub(registro, "NumSerieFacturaEmisor", event.invoice_number)
    _sub(registro, "FechaExpedicionFacturaEmisor", format_date(event.issue_date))
    _sub(registro, "TipoFactura", event.invoice_type)
    _sub(registro, "ClaveRegimenEspecialOTrascendencia", "01")
    if event.description:
        _sub(registro, "DescripcionOperacion", event.description)

    # Tax breakdown
    desglose = _sub(registro, "Desglose")
    desglose_iva = _sub(
        _sub(_sub(_sub(_sub(desglose, "DesgloseTipoOperacion"), "EntregasYServicios"), "Sujeta"), "NoExenta"),
        "DesgloseIVA",
    )
    groups = tax_breakdown(event)
    if groups:
        for rate, amounts in groups.items():
            detalle = _sub(desglose_iva, "DetalleIVA")
            _sub(detalle, "TipoImpositivo", _amount(rate))
            _sub(detalle, "BaseImponible", _amount(amounts["base"]))
            _sub(detalle, "CuotaRepercutida", _amount(amounts["quota"]))
    else:
        detalle = _sub(desglose_iva, "DetalleIVA")
        _sub(detalle, "BaseImponible", _amount(event.totals.subtotal))
        _sub(detalle, "CuotaRepercutida", _amount(event.totals.tax_amount))

    _sub(registro, "CuotaTotal", _amount(event.totals.tax_amount))
    _sub(registro, "ImporteTotal", _amount(event.totals.total))

    # Counterparty
    contraparte = _sub(registro, "Contraparte")
    _sub(contraparte, "NombreRazon", event.counterparty.name)
    if event.counterparty.country_code.upper() == "ES":
        _sub(contraparte, "NIF", event.counterparty.nif)
    else:
        id_otro = _sub(contraparte, "IDOtro")
        _sub(id_otro, "CodigoPais", event.counterparty.country_code.upper())
        _sub(id_otro, "ID", event.counterparty.nif)

    # Payment means
    if event.payment_means:
        medios = _sub(registro, "MediosPago")
        _sub(medios, "Medio", event.payment_means.method)
        if event.payment_means.iban:
            _sub(medios, "Cuenta", event.payment_means.iban)
        if event.payment_means.due_date:
            _sub(medios, "FechaVencimiento", format_date(event.payment_means.due_date))

    # Chain
    encadenamiento = _sub(registro, "Encadenamiento")
    if previous_hash:
        _sub(_sub(encadenamiento, "RegistroAnterior"), "HuellaAnterior", previous_hash)
    else:
        _sub(encadenamiento, "PrimerRegistro", "S")
    _sub(registro, "TipoHuella", "01")  # SHA-256
    _sub(registro, "Huella", current_hash)

    return root


def missing_required_elements(root: etree._Element) -> list[str]:
    """Names of mandatory record elements absent from ``root``."""
    return [
        name
        for name in REQUIRED_ELEMENTS
        if root.find(f".//{{{SUMINISTRO_NS}}}{name}") is None
    ]

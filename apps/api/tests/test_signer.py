"""Tests for registration XML and enveloped signatures."""

import pytest
from lxml import etree

from verifactu_api.ledger.hash_chain import canonical_fields, compute_hash
from verifactu_api.ledger.signer import DS_NS, XMLSigner, verify_signature
from verifactu_api.ledger.xml_builder import SUMINISTRO_NS, build_registration_xml, missing_required_elements, tax_breakdown
from verifactu_api.models import ComplianceMode

from conftest import CERT_PASSWORD


def _text(root, name):
    return root.find(f".//{{{SUMINISTRO_NS}}}{name}").text


def test_genesis_document(make_event):
    event = make_event()
    current = compute_hash(None, canonical_fields(event))
    root = build_registration_xml(event, 1, current, None)

    assert missing_required_elements(root) == []
    assert _text(root, "NumSerieFacturaEmisor") == "FAC-2025-0001"
    assert _text(root, "FechaExpedicionFacturaEmisor") == "20250301"
    assert _text(root, "ImporteTotal") == "121.00"
    assert _text(root, "PrimerRegistro") == "S"
    assert _text(root, "Huella") == current
    assert root.find(f".//{{{SUMINISTRO_NS}}}RemisionVoluntaria") is not None


def test_chained_requirement_document(make_event):
    event = make_event(number=2)
    root = build_registration_xml(event, 2, "B" * 64, "A" * 64, mode=ComplianceMode.REQUIREMENT)
    assert _text(root, "HuellaAnterior") == "A" * 64
    assert root.find(f".//{{{SUMINISTRO_NS}}}PrimerRegistro") is None
    assert root.find(f".//{{{SUMINISTRO_NS}}}RemisionRequerimiento") is not None


def test_foreign_counterparty_uses_other_id(make_event):
    event = make_event(counterparty={"nif": "FR12345678901", "name": "Client FR", "country_code": "fr"})
    root = build_registration_xml(event, 1, "A" * 64, None)
    assert _text(root, "CodigoPais") == "FR"
    assert root.find(f".//{{{SUMINISTRO_NS}}}Contraparte/{{{SUMINISTRO_NS}}}NIF") is None


def test_tax_breakdown_groups_by_rate(make_event):
    event = make_event(
        lines=[
            {"description": "a", "quantity": "2", "unit_price": "10", "tax_rate": "21"},
            {"description": "b", "quantity": "1", "unit_price": "50", "tax_rate": "10"},
            {"description": "c", "quantity": "1", "unit_price": "5", "tax_rate": "21"},
        ]
    )
    groups = tax_breakdown(event)
    assert [str(rate) for rate in groups] == ["21", "10"]
    assert groups[next(iter(groups))]["base"] == 25


def test_sign_and_verify(make_tenant, certificate_store, valid_container, make_event):
    config = make_tenant()
    certificate_store.store(config.tenant_id, valid_container, CERT_PASSWORD)
    document = build_registration_xml(make_event(), 1, "A" * 64, None)

    with certificate_store.signing_material(config.tenant_id) as material:
        signed = XMLSigner().sign(document, material)

    assert signed.xml.startswith("<?xml")
    assert document.find(f"{{{DS_NS}}}Signature") is None
    root = etree.fromstring(signed.xml.encode())
    assert root.find(f"{{{DS_NS}}}Signature") is not None

    check = verify_signature(signed.xml)
    assert check.is_valid, check.error
    assert signed.certificate_fingerprint == material.info.fingerprint
    algorithms = {node.get("Algorithm") for node in root.iter() if node.get("Algorithm")}
    assert "http://www.w3.org/2001/10/xml-exc-c14n#" in algorithms
    assert "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256" in algorithms
    assert "http://www.w3.org/2000/09/xmldsig#enveloped-signature" in algorithms
    assert signed.digest_value == root.find(f".//{{{DS_NS}}}DigestValue").text


def test_tampered_document_fails_verification(make_tenant, certificate_store, valid_container, make_event):
    config = make_tenant()
    certificate_store.store(config.tenant_id, valid_container, CERT_PASSWORD)
    with certificate_store.signing_material(config.tenant_id) as material:
        signed = XMLSigner().sign(build_registration_xml(make_event(), 1, "A" * 64, None), material)

    tampered = signed.xml.replace("121.00", "999.00")
    check = verify_signature(tampered)
    assert not check.is_valid
    assert check.error == "Digest mismatch"


def test_verify_signature_rejects_unsigned_and_malformed(make_event):
    unsigned = etree.tostring(build_registration_xml(make_event(), 1, "A" * 64, None))
    assert verify_signature(unsigned).error == "Document has no signature"
    assert not verify_signature("<broken").is_valid


def test_incomplete_document_is_not_signed(make_tenant, certificate_store, valid_container, make_event):
    config = make_tenant()
    certificate_store.store(config.tenant_id, valid_container, CERT_PASSWORD)
    document = build_registration_xml(make_event(), 1, "A" * 64, None)
    huella = document.find(f".//{{{SUMINISTRO_NS}}}Huella")
    huella.getparent().remove(huella)

    with certificate_store.signing_material(config.tenant_id) as material:
        with pytest.raises(ValueError, match="Huella"):
            XMLSigner().sign(document, material)

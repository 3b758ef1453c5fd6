"""Enveloped XML digital signatures for registration documents."""

import base64
import logging
from dataclasses import dataclass
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureMethod,
    XMLSigner as EnvelopedSigner,
    XMLVerifier,
    methods,
)
from signxml.exceptions import InvalidDigest, InvalidInput, InvalidSignature

from verifactu_api.ledger.certificates import SigningMaterial
from verifactu_api.ledger.xml_builder import missing_required_elements

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"


@dataclass(frozen=True)
class SignedDocument:
    """Signed registration document."""

    xml: str
    digest_value: str
    signature_value: str
    certificate_fingerprint: str


@dataclass(frozen=True)
class SignatureCheck:
    """Result of verifying a signed document."""

    is_valid: bool
    error: Optional[str] = None
    certificate: Optional[x509.Certificate] = None


def _ds_text(root: etree._Element, name: str) -> str:
    return root.find(f".//{{{DS_NS}}}{name}").text


def _certificate_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


class XMLSigner:
    """Enveloped RSA-SHA256 signatures with exclusive C14N; safe to share across threads."""

    def _signer(self) -> EnvelopedSigner:
        # Fresh signxml signer per call so threads share nothing
        return EnvelopedSigner(
            method=methods.enveloped,
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
            c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
        )

    def sign(self, document: etree._Element, material: SigningMaterial) -> SignedDocument:
        """Sign a copy of ``document`` with the tenant's key."""
        missing = missing_required_elements(document)
        if missing:
            raise ValueError(f"Registration document is missing {', '.join(missing)}")

        signed_root = self._signer().sign(
            document,
            key=material.private_key,
            cert=_certificate_pem(material.certificate),
        )
        xml = etree.tostring(signed_root, xml_declaration=True, encoding="UTF-8").decode("utf-8")
        return SignedDocument(
            xml=xml,
            digest_value=_ds_text(signed_root, "DigestValue"),
            signature_value=_ds_text(signed_root, "SignatureValue"),
            certificate_fingerprint=material.info.fingerprint,
        )


def verify_signature(signed_xml: Union[str, bytes]) -> SignatureCheck:
    """Check the digest and RSA signature against the certificate embedded in KeyInfo."""
    if isinstance(signed_xml, str):
        signed_xml = signed_xml.encode("utf-8")
    try:
        root = etree.fromstring(signed_xml)
    except etree.XMLSyntaxError as e:
        return SignatureCheck(False, f"Malformed XML: {e}")

    if root.find(f"{{{DS_NS}}}Signature") is None:
        return SignatureCheck(False, "Document has no signature")
    cert_node = root.find(f".//{{{DS_NS}}}X509Certificate")
    if cert_node is None or not cert_node.text:
        return SignatureCheck(False, "Signature is incomplete")

    try:
        certificate = x509.load_der_x509_certificate(base64.b64decode(cert_node.text))
    except ValueError as e:
        return SignatureCheck(False, f"Embedded certificate is invalid: {e}")

    # Tenant certificates are checked at upload; here only the signature is verified
    try:
        XMLVerifier().verify(root, x509_cert=_certificate_pem(certificate))
    except InvalidDigest:
        return SignatureCheck(False, "Digest mismatch", certificate)
    except InvalidSignature as e:
        return SignatureCheck(False, f"Signature value does not verify: {e}", certificate)
    except InvalidInput as e:
        return SignatureCheck(False, f"Signature is incomplete: {e}", certificate)

    return SignatureCheck(True, None, certificate)

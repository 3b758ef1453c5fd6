"""Tests for QR verification payloads."""

from urllib.parse import parse_qs, urlparse

from verifactu_api.ledger.qr import build_qr_payload

BASE_URL = "https://www2.agenciatributaria.gob.es/es13/h/qr"
FIELDS = {
    "issuer_nif": "B12345678",
    "invoice_number": "FAC-2025-0001",
    "issue_date": "20250301",
    "counterparty_nif": "12345678Z",
    "total": "1234,50",
}


def test_payload_parameters():
    payload = build_qr_payload(FIELDS, "abcdef0123456789" * 4, BASE_URL)
    query = parse_qs(urlparse(payload).query)
    assert query["nif"] == ["B12345678"]
    assert query["numserie"] == ["FAC-2025-0001"]
    assert query["fecha"] == ["20250301"]
    assert query["importe"] == ["1234.50"]
    assert query["hash"] == ["ABCDEF01"]
    assert query["ver"] == ["1"]
    assert payload.startswith(f"{BASE_URL}?")


def test_payload_is_deterministic():
    assert build_qr_payload(FIELDS, "A" * 64, BASE_URL) == build_qr_payload(dict(FIELDS), "A" * 64, BASE_URL)
    assert build_qr_payload(FIELDS, "A" * 64, BASE_URL, verifiable=False).endswith("ver=0")


def test_payload_escapes_series_characters():
    payload = build_qr_payload({**FIELDS, "invoice_number": "A/2025 01"}, "A" * 64, BASE_URL)
    assert "numserie=A%2F2025+01" in payload
    assert parse_qs(urlparse(payload).query)["numserie"] == ["A/2025 01"]

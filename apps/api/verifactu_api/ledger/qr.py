"""QR verification payload for printed invoices."""

from typing import Mapping
from urllib.parse import urlencode


def build_qr_payload(fields: Mapping[str, str], current_hash: str, base_url: str, verifiable: bool = True) -> str:
    """Build the authority verification URL for an entry.

    Deterministic in the invoice totals and the record hash; only the first
    eight hash characters are embedded.
    """
    params = {
        "nif": fields["issuer_nif"],
        "numserie": fields["invoice_number"],
        "fecha": fields["issue_date"],
        "importe": fields["total"].replace(",", "."),
        "hash": current_hash[:8].upper(),
        "ver": "1" if verifiable else "0",
    }
    return f"{base_url}?{urlencode(params)}"

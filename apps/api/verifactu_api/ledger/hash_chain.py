"""Record hash chaining.

Each registry entry hash is SHA-256 over a fixed, pipe-joined field sequence
that ends with the previous entry's hash (``INICIAL`` for a tenant's first
record). The field order is a versioned format: ``v1`` is

    ISSUER_NIF|INVOICE_NUMBER|YYYYMMDD|COUNTERPARTY_NIF|TOTAL|PREVIOUS_HASH

with NIFs upper-cased and stripped of spaces/dashes and the total written
with two decimals and a comma separator. Nothing here touches the database,
so a chain exported from the registry can be audited on its own.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional, Union

HASH_FORMAT_VERSION = "v1"
GENESIS_MARKER = "INICIAL"

CANONICAL_FIELD_ORDER = (
    "issuer_nif",
    "invoice_number",
    "issue_date",
    "counterparty_nif",
    "total",
)

_NIF_STRIP = re.compile(r"[-\s]")


def normalize_nif(nif: str) -> str:
    """Upper-case a tax id and drop spaces and dashes."""
    return _NIF_STRIP.sub("", nif or "").upper()


def format_amount(amount: Union[Decimal, str, int, float]) -> str:
    """Format an amount with two decimals and a comma separator."""
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{value:.2f}".replace(".", ",")


def format_date(value: Union[date, datetime, str]) -> str:
    """Format a date as YYYYMMDD."""
    if isinstance(value, str):
        value = date.fromisoformat(value[:10])
    return value.strftime("%Y%m%d")


def canonical_fields(event) -> dict:
    """Extract the hashed fields of an invoice event, already normalized."""
    return {
        "issuer_nif": normalize_nif(event.issuer.nif),
        "invoice_number": event.invoice_number.strip(),
        "issue_date": format_date(event.issue_date),
        "counterparty_nif": normalize_nif(event.counterparty.nif),
        "total": format_amount(event.totals.total),
    }


def hash_input(previous_hash: Optional[str], fields: Mapping[str, str]) -> str:
    """Build the exact string that is hashed."""
    missing = [name for name in CANONICAL_FIELD_ORDER if name not in fields]
    if missing:
        raise ValueError(f"Missing canonical fields: {', '.join(missing)}")
    components = [str(fields[name]) for name in CANONICAL_FIELD_ORDER]
    components.append(previous_hash or GENESIS_MARKER)
    return "|".join(components)


def compute_hash(previous_hash: Optional[str], fields: Mapping[str, str]) -> str:
    """Compute the upper-case hex SHA-256 of a record."""
    digest = hashlib.sha256(hash_input(previous_hash, fields).encode("utf-8"))
    return digest.hexdigest().upper()


def verify_entry(fields: Mapping[str, str], previous_hash: Optional[str], declared_hash: str) -> bool:
    """Recompute one record's hash against its declared previous hash."""
    return compute_hash(previous_hash, fields) == declared_hash


@dataclass(frozen=True)
class ChainRecord:
    """Minimal view of a registry entry needed to replay the chain."""

    sequence_number: int
    fields: Mapping[str, str]
    previous_hash: Optional[str]
    current_hash: str

    @classmethod
    def from_entry(cls, entry) -> "ChainRecord":
        return cls(
            sequence_number=entry.sequence_number,
            fields=entry.canonical_fields,
            previous_hash=entry.previous_hash,
            current_hash=entry.current_hash,
        )


def verify_chain(records: Iterable[ChainRecord]) -> tuple[bool, Optional[str]]:
    """Verify linkage, numbering and hashes of an ordered chain.

    Returns ``(is_valid, error)``; ``error`` names the first broken record.
    """
    previous: Optional[ChainRecord] = None
    for record in records:
        if previous is None:
            if record.previous_hash is not None:
                return False, f"Genesis record {record.sequence_number} has a previous hash"
        else:
            if record.sequence_number != previous.sequence_number + 1:
                return False, (
                    f"Sequence gap between {previous.sequence_number} and {record.sequence_number}"
                )
            if record.previous_hash != previous.current_hash:
                return False, f"Record {record.sequence_number} does not link to its predecessor"
        if not verify_entry(record.fields, record.previous_hash, record.current_hash):
            return False, f"Record {record.sequence_number} hash mismatch"
        previous = record
    return True, None

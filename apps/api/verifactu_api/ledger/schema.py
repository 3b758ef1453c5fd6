"""Invoice event shape consumed by the registry.

The CRM owns invoice business rules; this module only describes the fields
the compliance core reads from an invoice event.
"""

from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class Party(BaseModel):
    """Issuer or counterparty identification."""

    nif: str
    name: str
    address: Optional[str] = None
    country_code: str = "ES"


class InvoiceLine(BaseModel):
    """Invoice line item."""

    description: str = ""
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    tax_rate: Decimal = Decimal("21")  # Percent

    @property
    def taxable_base(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def tax_amount(self) -> Decimal:
        return self.taxable_base * self.tax_rate / Decimal("100")


class InvoiceTotals(BaseModel):
    """Invoice totals as computed by the CRM."""

    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


class PaymentMeans(BaseModel):
    """How the invoice is paid."""

    method: str = "transfer"  # transfer, card, cash, direct_debit
    iban: Optional[str] = None
    due_date: Optional[date] = None


class InvoicePayload(BaseModel):
    """Invoice fields of an event, without the tenant."""

    invoice_id: str
    direction: Literal["issued", "received"] = "issued"
    invoice_number: str
    issue_date: date
    invoice_type: str = "F1"
    issuer: Party
    counterparty: Party
    lines: List[InvoiceLine] = Field(default_factory=list)
    totals: InvoiceTotals
    payment_means: Optional[PaymentMeans] = None
    description: Optional[str] = None


class InvoiceEvent(InvoicePayload):
    """Invoice creation event emitted by the CRM."""

    tenant_id: int

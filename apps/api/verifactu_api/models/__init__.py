"""Database models - import all models here for metadata discovery."""

from verifactu_api.models.registry import InvoiceDirection, RegistryEntry, TransmissionEvent
from verifactu_api.models.tenant import ComplianceMode, Environment, TenantConfig

__all__ = [
    "ComplianceMode",
    "Environment",
    "InvoiceDirection",
    "RegistryEntry",
    "TenantConfig",
    "TransmissionEvent",
]

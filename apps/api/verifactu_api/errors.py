"""Compliance core exception taxonomy."""

from typing import Optional


class VerifactuError(Exception):
    """Base class for compliance core errors."""


class InvalidCertificate(VerifactuError):
    """Certificate container is missing, corrupt, or the password is wrong."""


class CertificateExpired(VerifactuError):
    """Certificate validity window has ended."""

    def __init__(self, message: str, not_after=None):
        super().__init__(message)
        self.not_after = not_after


class InvalidStateTransition(VerifactuError):
    """Status change outside the allowed edge set."""

    def __init__(self, entry_id, current: str, target: str):
        super().__init__(
            f"Registry entry {entry_id} cannot move from '{current}' to '{target}'"
        )
        self.entry_id = entry_id
        self.current = current
        self.target = target


class SequenceConflict(VerifactuError):
    """Sequence allocation collided with a concurrent writer; retry allocation."""


class TransientTransmissionFailure(VerifactuError):
    """Network, timeout or server-side failure talking to the authority."""


class AuthorityRejection(VerifactuError):
    """The authority explicitly rejected a record."""

    def __init__(self, reason: str, code: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code


class EntryNotFound(VerifactuError):
    """Registry entry does not exist."""


class ComplianceDisabled(VerifactuError):
    """Tenant has no enabled VERI*FACTU configuration."""


class InvalidConfiguration(VerifactuError):
    """Tenant configuration update violates a constraint."""

"""Registry entry transmission state machine."""

import enum

from verifactu_api.errors import InvalidStateTransition


class TransmissionStatus(str, enum.Enum):
    """Transmission status of a registry entry."""

    DORMANT = "dormant"  # requirement mode, waiting for activation
    PENDING = "pending"
    SENDING = "sending"  # owned by the submission worker
    SENT = "sent"
    ERROR = "error"
    REJECTED = "rejected"


ALLOWED_TRANSITIONS: dict[TransmissionStatus, frozenset[TransmissionStatus]] = {
    TransmissionStatus.DORMANT: frozenset({TransmissionStatus.PENDING}),
    TransmissionStatus.PENDING: frozenset({TransmissionStatus.SENDING}),
    TransmissionStatus.SENDING: frozenset(
        {TransmissionStatus.SENT, TransmissionStatus.ERROR, TransmissionStatus.REJECTED}
    ),
    TransmissionStatus.ERROR: frozenset({TransmissionStatus.PENDING}),
    TransmissionStatus.SENT: frozenset(),
    TransmissionStatus.REJECTED: frozenset(),
}


def can_transition(current, target) -> bool:
    """Return True if ``current -> target`` is an allowed edge."""
    return TransmissionStatus(target) in ALLOWED_TRANSITIONS[TransmissionStatus(current)]


def transition(entry, target, now=None) -> TransmissionStatus:
    """Move ``entry`` to ``target`` or raise without touching it.

    This is the only place that writes ``entry.status``.
    """
    target = TransmissionStatus(target)
    current = TransmissionStatus(entry.status)
    if not can_transition(current, target):
        raise InvalidStateTransition(entry.id, current.value, target.value)
    entry.status = target.value
    if now is not None:
        entry.updated_at = now
    return current

"""Tests for the transmission state machine."""

from types import SimpleNamespace

import pytest

from verifactu_api.errors import InvalidStateTransition
from verifactu_api.ledger.states import TransmissionStatus, can_transition, transition

ALLOWED = {
    ("dormant", "pending"),
    ("pending", "sending"),
    ("sending", "sent"),
    ("sending", "error"),
    ("sending", "rejected"),
    ("error", "pending"),
}


@pytest.mark.parametrize("current", [status.value for status in TransmissionStatus])
@pytest.mark.parametrize("target", [status.value for status in TransmissionStatus])
def test_only_allowed_edges(current, target):
    assert can_transition(current, target) == ((current, target) in ALLOWED)


def test_transition_updates_status():
    entry = SimpleNamespace(id=1, status="pending", updated_at=None)
    previous = transition(entry, TransmissionStatus.SENDING, now="now")
    assert previous == TransmissionStatus.PENDING
    assert entry.status == "sending"
    assert entry.updated_at == "now"


@pytest.mark.parametrize("current,target", [("rejected", "pending"), ("sent", "pending"), ("pending", "sent"), ("dormant", "sending")])
def test_invalid_transition_leaves_entry_unchanged(current, target):
    entry = SimpleNamespace(id=7, status=current, updated_at="before")
    with pytest.raises(InvalidStateTransition) as exc_info:
        transition(entry, target, now="after")
    assert entry.status == current
    assert entry.updated_at == "before"
    assert exc_info.value.current == current
    assert exc_info.value.target == target

"""Per-tenant gap-free sequence allocation."""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from verifactu_api.errors import ComplianceDisabled
from verifactu_api.models import TenantConfig

logger = logging.getLogger(__name__)

_tenant_locks: dict[int, threading.RLock] = {}
_tenant_locks_guard = threading.Lock()


def tenant_lock(tenant_id: int) -> threading.RLock:
    """Return the process-local writer lock for one tenant."""
    with _tenant_locks_guard:
        lock = _tenant_locks.get(tenant_id)
        if lock is None:
            lock = _tenant_locks[tenant_id] = threading.RLock()
        return lock


class SequenceAllocator:
    """Hands out strictly increasing sequence numbers per tenant.

    The counter lives on ``TenantConfig.last_sequence``. Within a process,
    writers for one tenant are serialized by ``locked()``; across processes the
    counter row is read ``FOR UPDATE``. The increment is only flushed, so a
    rolled back transaction gives the number back.
    """

    def __init__(self, db: Session):
        """Initialize allocator."""
        self.db = db

    @contextmanager
    def locked(self, tenant_id: int) -> Iterator[None]:
        """Hold the tenant's writer lock; other tenants are unaffected."""
        lock = tenant_lock(tenant_id)
        with lock:
            yield

    def next_sequence(self, tenant_id: int) -> int:
        """Allocate the next sequence number inside the caller's transaction."""
        config = (
            self.db.query(TenantConfig)
            .filter(TenantConfig.tenant_id == tenant_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not config:
            raise ComplianceDisabled(f"Tenant {tenant_id} has no VERI*FACTU configuration")

        config.last_sequence = (config.last_sequence or 0) + 1
        self.db.flush()
        logger.debug(
            f"Allocated sequence {config.last_sequence} for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "sequence": config.last_sequence},
        )
        return config.last_sequence

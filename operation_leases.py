"""
Per-domain operation leases
At most one in-flight operation owns a domain at a time; unrelated domains never contend.
All bookkeeping happens on the event loop thread with no await between lookup and insert.
"""

import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Any, Callable, Awaitable

from domain_models import OperationInProgressError, LeaseRevokedError

logger = logging.getLogger(__name__)


@dataclass
class OperationLease:
    domain_id: str
    operation: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    task: Optional[asyncio.Task] = None
    revoked: bool = False
    deleting: bool = False


class OperationLeaseArena:
    """Domain id -> active operation lease"""

    def __init__(self):
        self._leases: Dict[str, OperationLease] = {}
        self._deleting: set = set()

    def current(self, domain_id: str) -> Optional[OperationLease]:
        return self._leases.get(domain_id)

    def is_busy(self, domain_id: str, operation: Optional[str] = None) -> bool:
        lease = self._leases.get(domain_id)
        if lease is None:
            return False
        return operation is None or lease.operation == operation

    def active_count(self) -> int:
        return len(self._leases)

    async def run(self, domain_id: str, operation: str, factory: Callable[[], Awaitable[Any]],
                  coalesce: bool = False) -> Any:
        """
        Run factory() while holding the domain's lease

        Args:
            domain_id: Domain the operation works on
            operation: Operation name ('verify', 'deploy', ...)
            factory: Zero-argument callable returning the coroutine to run
            coalesce: Join an in-flight operation of the same name instead of failing

        Raises:
            OperationInProgressError: a different (or non-coalescing) operation holds the lease
            LeaseRevokedError: the lease was revoked while the operation ran
        """
        existing = self._leases.get(domain_id)
        if existing is not None:
            if coalesce and existing.operation == operation and existing.task is not None:
                logger.debug(f"🔗 Joining in-flight {operation} for domain {domain_id}")
                return await self._await_lease(existing, shielded=True)
            raise OperationInProgressError(domain_id, existing.operation)

        lease = OperationLease(domain_id=domain_id, operation=operation)
        self._leases[domain_id] = lease
        lease.task = asyncio.ensure_future(factory())
        try:
            return await self._await_lease(lease, shielded=False)
        finally:
            if self._leases.get(domain_id) is lease:
                del self._leases[domain_id]

    async def _await_lease(self, lease: OperationLease, shielded: bool) -> Any:
        try:
            if shielded:
                return await asyncio.shield(lease.task)
            return await lease.task
        except asyncio.CancelledError:
            if lease.revoked:
                raise LeaseRevokedError(lease.domain_id, lease.operation, deleted=lease.deleting)
            raise

    def revoke(self, domain_id: str) -> bool:
        """Cancel the domain's in-flight operation, if any"""
        lease = self._leases.pop(domain_id, None)
        if lease is None:
            return False
        lease.revoked = True
        if lease.task is not None and not lease.task.done():
            lease.task.cancel()
        logger.info(f"🛑 Revoked {lease.operation} lease for domain {domain_id}")
        return True

    def is_deleting(self, domain_id: str) -> bool:
        """Whether the domain's operation is being revoked because the domain is going away"""
        return domain_id in self._deleting

    async def revoke_and_wait(self, domain_id: str) -> bool:
        """
        Revoke ahead of deleting the domain and wait until the operation has unwound

        While it unwinds, is_deleting() is true so the operation knows not to restore
        the status it interrupted.
        """
        lease = self._leases.get(domain_id)
        if lease is None:
            return False
        lease.deleting = True
        self._deleting.add(domain_id)
        try:
            self.revoke(domain_id)
            if lease.task is not None:
                await asyncio.wait({lease.task})
        finally:
            self._deleting.discard(domain_id)
        return True

    async def revoke_all(self) -> int:
        """Revoke every lease and wait for the operations to put their domains back"""
        tasks = [lease.task for lease in self._leases.values() if lease.task is not None]
        count = 0
        for domain_id in list(self._leases):
            if self.revoke(domain_id):
                count += 1
        if tasks:
            await asyncio.wait(tasks)
        return count

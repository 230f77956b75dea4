"""
Operation lease tests
One in-flight operation per domain, coalescing and revocation on delete
"""

import asyncio

import pytest

from domain_models import OperationInProgressError, LeaseRevokedError
from operation_leases import OperationLeaseArena
from conftest import settle


@pytest.mark.asyncio
class TestOperationLeases:

    async def test_lease_released_after_success(self, leases):
        async def work():
            return 'done'

        assert await leases.run('d1', 'verify', work) == 'done'
        assert not leases.is_busy('d1')

    async def test_lease_released_after_failure(self, leases):
        async def work():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await leases.run('d1', 'deploy', work)
        assert leases.active_count() == 0

    async def test_conflicting_operation_rejected(self, leases):
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return 'deployed'

        running = asyncio.ensure_future(leases.run('d1', 'deploy', slow))
        await settle()
        assert leases.is_busy('d1', 'deploy')

        async def other():
            return 'verified'

        with pytest.raises(OperationInProgressError) as excinfo:
            await leases.run('d1', 'verify', other)
        assert excinfo.value.operation == 'deploy'

        gate.set()
        assert await running == 'deployed'

    async def test_other_domains_do_not_contend(self, leases):
        gate = asyncio.Event()

        async def slow():
            await gate.wait()

        running = asyncio.ensure_future(leases.run('d1', 'deploy', slow))
        await settle()

        async def quick():
            return 'ok'

        assert await leases.run('d2', 'deploy', quick) == 'ok'
        gate.set()
        await running

    async def test_coalesced_callers_share_one_run(self, leases):
        gate = asyncio.Event()
        calls = []

        async def verify():
            calls.append(1)
            await gate.wait()
            return {'verified': True}

        first = asyncio.ensure_future(leases.run('d1', 'verify', verify, coalesce=True))
        await settle()
        second = asyncio.ensure_future(leases.run('d1', 'verify', verify, coalesce=True))
        await settle()
        gate.set()

        assert await first == {'verified': True}
        assert await second == {'verified': True}
        assert len(calls) == 1

    async def test_revoke_cancels_in_flight_operation(self, leases):
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        running = asyncio.ensure_future(leases.run('d1', 'deploy', slow))
        await settle()

        assert await leases.revoke_and_wait('d1') is True
        assert cancelled.is_set()
        with pytest.raises(LeaseRevokedError):
            await running
        assert not leases.is_busy('d1')

    async def test_operation_sees_deletion_while_unwinding(self, leases):
        seen = []

        async def slow():
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                seen.append(leases.is_deleting('d1'))
                raise

        running = asyncio.ensure_future(leases.run('d1', 'deploy', slow))
        await settle()
        await leases.revoke_and_wait('d1')

        assert seen == [True]
        assert not leases.is_deleting('d1')
        with pytest.raises(LeaseRevokedError) as info:
            await running
        assert info.value.deleted is True

    async def test_revoke_without_lease(self, leases):
        assert leases.revoke('d1') is False
        assert await leases.revoke_and_wait('d1') is False

    async def test_new_operation_allowed_after_revoke(self, leases):
        async def slow():
            await asyncio.Event().wait()

        running = asyncio.ensure_future(leases.run('d1', 'verify', slow))
        await settle()
        leases.revoke('d1')

        async def quick():
            return 'ok'

        assert await leases.run('d1', 'deploy', quick) == 'ok'
        with pytest.raises(LeaseRevokedError):
            await running

    async def test_revoke_all(self):
        arena = OperationLeaseArena()

        async def slow():
            await asyncio.Event().wait()

        runs = [asyncio.ensure_future(arena.run(f"d{i}", 'verify', slow)) for i in range(3)]
        await settle()

        assert await arena.revoke_all() == 3
        assert not any(arena.is_deleting(f"d{i}") for i in range(3))
        results = await asyncio.gather(*runs, return_exceptions=True)
        assert all(isinstance(r, LeaseRevokedError) for r in results)
        assert not any(r.deleted for r in results)

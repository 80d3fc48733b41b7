"""SharedParentOrchestrator tests.

The in-memory parent API performs a racy read-modify-write of the
parent's child list, so lost updates show up whenever two mutations on
the same parent interleave.
"""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from reconciler.provisioning.errors import (
    DeadlineExceeded,
    RemoteCallFailed,
    RemoteNotFound,
    TransientAPIError,
)
from reconciler.provisioning.inmemory import (
    InMemorySharedParentAPI,
    InMemoryStateStore,
)
from reconciler.provisioning.models import ChildResource
from reconciler.provisioning.named_mutex import NamedMutex
from reconciler.provisioning.shared_parent import SharedParentOrchestrator
from reconciler.provisioning.workflow import OperationTimeouts

PARENT_ID = '113900000100'


class LockObservingAPI(InMemorySharedParentAPI):
    """Records whether the parent lock was held during each read."""

    def __init__(self, mutex: NamedMutex, **kwargs) -> None:
        super().__init__(**kwargs)
        self._mutex = mutex
        self.locked_during_read: list[bool] = []

    async def read_child(self, child_id: str) -> ChildResource:
        child = await super().read_child(child_id)
        self.locked_during_read.append(self._mutex.locked(child.parent_id))
        return child


def _operations(operation: str, result: str) -> float:
    return REGISTRY.get_sample_value(
        'reconciler_operations_total',
        {'kind': 'subnet', 'operation': operation, 'result': result},
    ) or 0.0


def _make_orchestrator(*, api=None, mutex=None, **kwargs):
    if mutex is None:
        mutex = NamedMutex()
    api = api or InMemorySharedParentAPI(mutate_delay=0.01)
    store = InMemoryStateStore()
    orchestrator = SharedParentOrchestrator(
        api=api, mutex=mutex, state_store=store, **kwargs,
    )
    return orchestrator, api, store


# ── Serialization ────────────────────────────────────────────────────


class TestSerialization:
    @pytest.mark.asyncio
    async def test_concurrent_creates_on_one_parent_do_not_lose_updates(self):
        orchestrator, api, store = _make_orchestrator()

        children = await asyncio.gather(*[
            orchestrator.create(PARENT_ID, {'netmask': 28, 'index': i})
            for i in range(5)
        ])

        assert api.overlaps == 0
        assert sorted(api.parents[PARENT_ID]) == sorted(c.id for c in children)
        assert len(store.records) == 5

    @pytest.mark.asyncio
    async def test_unserialized_api_loses_updates(self):
        """Sanity check of the fake: without the mutex, updates are lost."""
        api = InMemorySharedParentAPI(mutate_delay=0.01)

        await asyncio.gather(*[api.add_child(PARENT_ID, {}) for _ in range(3)])

        assert api.overlaps > 0
        assert len(api.parents[PARENT_ID]) < 3

    @pytest.mark.asyncio
    async def test_different_parents_proceed_in_parallel(self):
        orchestrator, api, _ = _make_orchestrator()

        await asyncio.gather(
            orchestrator.create('parent-a', {}),
            orchestrator.create('parent-b', {}),
        )

        assert api.overlaps == 0
        assert api.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_orchestrators_sharing_a_mutex_exclude_each_other(self):
        mutex = NamedMutex()
        api = InMemorySharedParentAPI(mutate_delay=0.01)
        first, _, _ = _make_orchestrator(api=api, mutex=mutex)
        second, _, _ = _make_orchestrator(api=api, mutex=mutex, kind='route')

        await asyncio.gather(
            first.create(PARENT_ID, {}),
            second.create(PARENT_ID, {}),
        )

        assert api.overlaps == 0
        assert len(api.parents[PARENT_ID]) == 2

    @pytest.mark.asyncio
    async def test_create_then_delete_interleaved(self):
        orchestrator, api, _ = _make_orchestrator()
        existing = await orchestrator.create(PARENT_ID, {})

        added, _ = await asyncio.gather(
            orchestrator.create(PARENT_ID, {}),
            orchestrator.delete(PARENT_ID, existing.id),
        )

        assert api.parents[PARENT_ID] == [added.id]

    @pytest.mark.asyncio
    async def test_lock_released_before_confirmatory_read(self):
        mutex = NamedMutex()
        api = LockObservingAPI(mutex)
        orchestrator, _, _ = _make_orchestrator(api=api, mutex=mutex)

        child = await orchestrator.create(PARENT_ID, {})
        await orchestrator.update(PARENT_ID, child.id, {'netmask': 27})

        assert api.locked_during_read == [False, False]


# ── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_publishes_child(self):
        orchestrator, api, store = _make_orchestrator()

        child = await orchestrator.create(PARENT_ID, {'netmask': 28})

        assert [name for name, _ in api.calls] == ['add_child', 'read_child']
        assert store.records[('subnet', child.id)] == {
            'id': child.id,
            'parent_id': PARENT_ID,
            'netmask': 28,
        }

    @pytest.mark.asyncio
    async def test_update_merges_attributes(self):
        orchestrator, _, store = _make_orchestrator()
        child = await orchestrator.create(PARENT_ID, {'netmask': 28})

        updated = await orchestrator.update(PARENT_ID, child.id, {'next_hop': '10.0.0.1'})

        assert dict(updated.attributes) == {'netmask': 28, 'next_hop': '10.0.0.1'}
        assert store.records[('subnet', child.id)]['next_hop'] == '10.0.0.1'

    @pytest.mark.asyncio
    async def test_delete_removes_child_and_state(self):
        orchestrator, api, store = _make_orchestrator()
        child = await orchestrator.create(PARENT_ID, {})

        await orchestrator.delete(PARENT_ID, child.id)

        assert api.parents[PARENT_ID] == []
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_delete_of_missing_child_is_noop(self):
        orchestrator, _, store = _make_orchestrator()

        await orchestrator.delete(PARENT_ID, 'gone')

        assert store.history[-1] == ('remove', 'subnet', 'gone')

    @pytest.mark.asyncio
    async def test_read_missing_child_returns_none(self):
        orchestrator, _, _ = _make_orchestrator()
        assert await orchestrator.read('gone') is None

    @pytest.mark.asyncio
    async def test_read_refreshes_state(self):
        orchestrator, api, store = _make_orchestrator()
        child = await orchestrator.create(PARENT_ID, {'netmask': 28})
        store.records.clear()

        assert await orchestrator.read(child.id) == child
        assert ('subnet', child.id) in store.records


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_mutation_releases_lock(self):
        mutex = NamedMutex()
        orchestrator, api, _ = _make_orchestrator(mutex=mutex)
        api.fail('add_child', TransientAPIError('409 conflict'))

        with pytest.raises(RemoteCallFailed) as exc_info:
            await orchestrator.create(PARENT_ID, {})

        assert exc_info.value.operation == 'create'
        assert exc_info.value.phase == 'add_child'
        assert not mutex.locked(PARENT_ID)

        await orchestrator.create(PARENT_ID, {})
        assert len(api.parents[PARENT_ID]) == 1

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_state(self):
        orchestrator, api, store = _make_orchestrator()
        child = await orchestrator.create(PARENT_ID, {})
        api.fail('delete_child', TransientAPIError('500'))

        with pytest.raises(RemoteCallFailed) as exc_info:
            await orchestrator.delete(PARENT_ID, child.id)

        assert exc_info.value.phase == 'delete_child'
        assert ('subnet', child.id) in store.records

    @pytest.mark.asyncio
    async def test_failed_read_is_reported(self):
        orchestrator, api, _ = _make_orchestrator()
        api.fail('read_child', TransientAPIError('500'))

        with pytest.raises(RemoteCallFailed) as exc_info:
            await orchestrator.read('anything')

        assert exc_info.value.operation == 'read'

    @pytest.mark.asyncio
    async def test_delete_not_found_during_mutation(self):
        orchestrator, api, _ = _make_orchestrator()
        api.fail('delete_child', RemoteNotFound('gone'))

        await orchestrator.delete(PARENT_ID, 'whatever')

    @pytest.mark.asyncio
    async def test_deadline_while_waiting_for_lock(self):
        mutex = NamedMutex()
        orchestrator, _, _ = _make_orchestrator(
            mutex=mutex,
            timeouts=OperationTimeouts(create_seconds=0.05),
        )
        await mutex.acquire(PARENT_ID)
        try:
            with pytest.raises(DeadlineExceeded) as exc_info:
                await orchestrator.create(PARENT_ID, {})
        finally:
            mutex.release(PARENT_ID)

        assert exc_info.value.phase == 'lock_parent'
        assert exc_info.value.operation == 'create'
        assert not mutex.locked(PARENT_ID)

    @pytest.mark.asyncio
    async def test_reads_are_counted_as_operations(self):
        orchestrator, api, _ = _make_orchestrator()
        child = await orchestrator.create(PARENT_ID, {})
        before_ok = _operations('read', 'succeeded')
        before_failed = _operations('read', 'failed')

        await orchestrator.read(child.id)
        api.fail('read_child', TransientAPIError('500'))
        with pytest.raises(RemoteCallFailed):
            await orchestrator.read(child.id)

        assert _operations('read', 'succeeded') == before_ok + 1
        assert _operations('read', 'failed') == before_failed + 1

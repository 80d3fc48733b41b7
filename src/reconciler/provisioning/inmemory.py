"""In-memory provider and state-store implementations.

They satisfy the ``ApplianceAPI``, ``SharedParentAPI`` and ``StateStore``
protocols without a network. Appliances converge instantly unless a
test scripts the responses of a read endpoint with ``script()``.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from dataclasses import replace
from typing import Any, Mapping

from .errors import RemoteNotFound
from .models import (
    JOB_TYPE_ADD_NODE,
    JOB_TYPE_SET_PARAMETER,
    JOB_TYPE_UPDATE,
    ApplianceRequest,
    Availability,
    ChildResource,
    HealthStatus,
    InstanceStatus,
    JobRecord,
    JobStatus,
    JobStatusFeed,
    RemoteApplianceState,
)

_UNSCRIPTED = object()


class InMemoryApplianceAPI:
    """Appliance endpoints backed by dicts.

    ``script(endpoint, id, *responses)`` queues responses for one of the
    read endpoints (``read_appliance``, ``read_health``,
    ``read_job_status``). Each call consumes one response; the last one
    repeats forever. Exception instances are raised instead of returned.
    ``fail(endpoint, exc)`` makes the next call of any endpoint raise.
    """

    def __init__(self, *, id_prefix: str = '1136') -> None:
        self.calls: list[tuple[str, str]] = []
        self.appliances: dict[str, RemoteApplianceState] = {}
        self.requests: dict[str, ApplianceRequest] = {}
        self.parameters: dict[str, dict[str, str]] = {}
        self._jobs: dict[str, list[str]] = {}
        self._scripted: dict[tuple[str, str], deque[Any]] = {}
        self._failures: dict[str, BaseException] = {}
        self._ids = (f'{id_prefix}{n:08d}' for n in itertools.count(1))

    # ── Test controls ────────────────────────────────────────────────

    def script(self, endpoint: str, appliance_id: str, *responses: Any) -> None:
        self._scripted[(endpoint, appliance_id)] = deque(responses)

    def fail(self, endpoint: str, exc: BaseException) -> None:
        self._failures[endpoint] = exc

    def seed(self, state: RemoteApplianceState) -> None:
        self.appliances[state.id] = state

    def calls_to(self, endpoint: str) -> list[str]:
        return [rid for name, rid in self.calls if name == endpoint]

    # ── Reads ────────────────────────────────────────────────────────

    async def read_appliance(self, appliance_id: str) -> RemoteApplianceState:
        self._record('read_appliance', appliance_id)
        scripted = self._next_scripted('read_appliance', appliance_id)
        if scripted is not _UNSCRIPTED:
            return scripted
        return self._existing(appliance_id)

    async def read_health(self, appliance_id: str) -> HealthStatus:
        self._record('read_health', appliance_id)
        scripted = self._next_scripted('read_health', appliance_id)
        if scripted is not _UNSCRIPTED:
            return scripted
        return self._existing(appliance_id).health_status

    async def read_job_status(self, appliance_id: str) -> JobStatusFeed:
        self._record('read_job_status', appliance_id)
        scripted = self._next_scripted('read_job_status', appliance_id)
        if scripted is not _UNSCRIPTED:
            return scripted
        self._existing(appliance_id)
        return JobStatusFeed(
            jobs=tuple(
                JobRecord(job_type=job_type, job_status=JobStatus.DONE)
                for job_type in self._jobs.get(appliance_id, [])
            ),
        )

    # ── Mutations ────────────────────────────────────────────────────

    async def create_appliance(self, request: ApplianceRequest) -> str:
        self._record('create_appliance', request.name)
        return self._provision(request)

    async def update_appliance(
        self, appliance_id: str, request: ApplianceRequest,
    ) -> None:
        self._record('update_appliance', appliance_id)
        self._existing(appliance_id)
        self.requests[appliance_id] = request

    async def apply_changes(self, appliance_id: str) -> None:
        self._record('apply_changes', appliance_id)
        self._existing(appliance_id)
        self._jobs.setdefault(appliance_id, []).append(JOB_TYPE_UPDATE)

    async def set_parameters(
        self, appliance_id: str, parameters: Mapping[str, str],
    ) -> None:
        self._record('set_parameters', appliance_id)
        self._existing(appliance_id)
        self.parameters[appliance_id] = dict(parameters)
        self._jobs.setdefault(appliance_id, []).append(JOB_TYPE_SET_PARAMETER)

    async def stop_instance(self, appliance_id: str) -> None:
        self._record('stop_instance', appliance_id)
        state = self._existing(appliance_id)
        self.appliances[appliance_id] = replace(
            state, instance_status=InstanceStatus.DOWN,
        )

    async def delete_appliance(self, appliance_id: str) -> None:
        self._record('delete_appliance', appliance_id)
        self._existing(appliance_id)
        del self.appliances[appliance_id]
        self._jobs.pop(appliance_id, None)

    async def add_nodes(self, primary_id: str, request: ApplianceRequest) -> str:
        self._record('add_nodes', primary_id)
        self._existing(primary_id)
        nodes_id = self._provision(request)
        self._jobs.setdefault(nodes_id, []).append(JOB_TYPE_ADD_NODE)
        return nodes_id

    # ── Internals ────────────────────────────────────────────────────

    def _provision(self, request: ApplianceRequest) -> str:
        appliance_id = next(self._ids)
        self.appliances[appliance_id] = RemoteApplianceState(
            id=appliance_id,
            availability=Availability.AVAILABLE,
            instance_status=InstanceStatus.UP,
            health_status=HealthStatus.HEALTHY,
        )
        self.requests[appliance_id] = request
        return appliance_id

    def _record(self, endpoint: str, resource_id: str) -> None:
        self.calls.append((endpoint, resource_id))
        exc = self._failures.pop(endpoint, None)
        if exc is not None:
            raise exc

    def _next_scripted(self, endpoint: str, appliance_id: str) -> Any:
        queue = self._scripted.get((endpoint, appliance_id))
        if not queue:
            return _UNSCRIPTED
        item = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def _existing(self, appliance_id: str) -> RemoteApplianceState:
        try:
            return self.appliances[appliance_id]
        except KeyError:
            raise RemoteNotFound(f'appliance {appliance_id} not found') from None


class InMemorySharedParentAPI:
    """Parent/child endpoints with a deliberately racy read-modify-write.

    ``add_child`` and ``delete_child`` copy the parent's child list, yield
    for ``mutate_delay`` seconds, then write the list back, so unserialized
    concurrent callers lose updates. ``overlaps`` counts mutations that
    started while another one on the same parent was still running.
    """

    def __init__(self, *, mutate_delay: float = 0.0, id_prefix: str = '1139') -> None:
        self.mutate_delay = mutate_delay
        self.parents: dict[str, list[str]] = {}
        self.children: dict[str, ChildResource] = {}
        self.calls: list[tuple[str, str]] = []
        self.overlaps = 0
        self.max_in_flight = 0
        self._active: dict[str, int] = {}
        self._failures: dict[str, BaseException] = {}
        self._ids = (f'{id_prefix}{n:08d}' for n in itertools.count(1))

    def fail(self, endpoint: str, exc: BaseException) -> None:
        self._failures[endpoint] = exc

    async def add_child(self, parent_id: str, attributes: Mapping[str, Any]) -> str:
        self._record('add_child', parent_id)
        child_id = next(self._ids)
        async with self._mutating(parent_id):
            siblings = list(self.parents.get(parent_id, []))
            await asyncio.sleep(self.mutate_delay)
            siblings.append(child_id)
            self.parents[parent_id] = siblings
            self.children[child_id] = ChildResource(
                id=child_id, parent_id=parent_id, attributes=dict(attributes),
            )
        return child_id

    async def update_child(
        self, parent_id: str, child_id: str, attributes: Mapping[str, Any],
    ) -> None:
        self._record('update_child', child_id)
        async with self._mutating(parent_id):
            child = self._existing(child_id)
            await asyncio.sleep(self.mutate_delay)
            self.children[child_id] = replace(
                child, attributes={**child.attributes, **attributes},
            )

    async def delete_child(self, parent_id: str, child_id: str) -> None:
        self._record('delete_child', child_id)
        async with self._mutating(parent_id):
            self._existing(child_id)
            siblings = list(self.parents.get(parent_id, []))
            await asyncio.sleep(self.mutate_delay)
            self.parents[parent_id] = [c for c in siblings if c != child_id]
            del self.children[child_id]

    async def read_child(self, child_id: str) -> ChildResource:
        self._record('read_child', child_id)
        return self._existing(child_id)

    def _record(self, endpoint: str, resource_id: str) -> None:
        self.calls.append((endpoint, resource_id))
        exc = self._failures.pop(endpoint, None)
        if exc is not None:
            raise exc

    def _existing(self, child_id: str) -> ChildResource:
        try:
            return self.children[child_id]
        except KeyError:
            raise RemoteNotFound(f'child {child_id} not found') from None

    def _mutating(self, parent_id: str) -> _InFlight:
        return _InFlight(self, parent_id)


class _InFlight:
    def __init__(self, api: InMemorySharedParentAPI, parent_id: str) -> None:
        self._api = api
        self._parent_id = parent_id

    async def __aenter__(self) -> None:
        active = self._api._active.get(self._parent_id, 0) + 1
        self._api._active[self._parent_id] = active
        if active > 1:
            self._api.overlaps += 1
        self._api.max_in_flight = max(
            self._api.max_in_flight, sum(self._api._active.values()),
        )

    async def __aexit__(self, *exc_info: object) -> None:
        self._api._active[self._parent_id] -= 1


class InMemoryStateStore:
    """Published state keyed by ``(kind, resource_id)``."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], dict[str, Any]] = {}
        self.history: list[tuple[str, str, str]] = []

    async def publish(
        self, kind: str, resource_id: str, payload: Mapping[str, Any],
    ) -> None:
        self.records[(kind, resource_id)] = dict(payload)
        self.history.append(('publish', kind, resource_id))

    async def remove(self, kind: str, resource_id: str) -> None:
        self.records.pop((kind, resource_id), None)
        self.history.append(('remove', kind, resource_id))

    async def get(self, kind: str, resource_id: str) -> Mapping[str, Any] | None:
        return self.records.get((kind, resource_id))

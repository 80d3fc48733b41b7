"""Appliance lifecycle orchestrator.

Sequences remote mutations and pollers into complete workflows:

  create     create -> wait ready -> [set parameters -> wait SetParameter]
             -> read -> publish
  update     update -> apply changes -> wait Update
             -> [set parameters -> wait SetParameter] -> read -> publish
  delete     [stop -> wait down] -> delete -> unpublish
  add_nodes  add nodes -> wait ready -> wait AddNode -> read -> publish

Any fatal poll outcome or failed call aborts the workflow with a
``ReconcileError``. Nothing is rolled back: the appliance may be left
partially provisioned and the error says which phase stopped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Protocol

from .backoff import Sleeper
from .errors import RemoteCallFailed, RemoteNotFound, TransientAPIError
from .models import (
    JOB_TYPE_ADD_NODE,
    JOB_TYPE_SET_PARAMETER,
    JOB_TYPE_UPDATE,
    ApplianceRequest,
    InstanceStatus,
    RemoteApplianceState,
)
from .pollers import ApplianceReader, DownPoller, JobCompletionPoller, ReadinessPoller
from .workflow import (
    OperationContext,
    OperationTimeouts,
    StateStore,
    call_remote,
    run_operation,
)

logger = logging.getLogger(__name__)

APPLIANCE_KIND = 'appliance'
ADDITIONAL_NODES_KIND = 'appliance_additional_nodes'

# Pause after publishing so the provider settles before the next operation.
DEFAULT_SETTLE_SECONDS = 10.0


class ApplianceAPI(ApplianceReader, Protocol):
    """Provider endpoints for managed appliances."""

    async def create_appliance(self, request: ApplianceRequest) -> str:
        ...

    async def update_appliance(
        self, appliance_id: str, request: ApplianceRequest,
    ) -> None:
        ...

    async def apply_changes(self, appliance_id: str) -> None:
        ...

    async def set_parameters(
        self, appliance_id: str, parameters: Mapping[str, str],
    ) -> None:
        ...

    async def stop_instance(self, appliance_id: str) -> None:
        ...

    async def delete_appliance(self, appliance_id: str) -> None:
        ...

    async def add_nodes(self, primary_id: str, request: ApplianceRequest) -> str:
        ...


class ApplianceOrchestrator:
    """Drives managed appliances through create/update/delete.

    Pollers are built from ``api`` unless supplied, which lets tests pass
    pollers with short policies and a fake ``sleep``.
    """

    def __init__(
        self,
        *,
        api: ApplianceAPI,
        state_store: StateStore,
        readiness: ReadinessPoller | None = None,
        down: DownPoller | None = None,
        jobs: JobCompletionPoller | None = None,
        timeouts: OperationTimeouts | None = None,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._api = api
        self._state = state_store
        self._readiness = readiness or ReadinessPoller(api)
        self._down = down or DownPoller(api)
        self._jobs = jobs or JobCompletionPoller(api)
        self._timeouts = timeouts or OperationTimeouts()
        self._settle_seconds = settle_seconds
        self._sleep = sleep

    async def create(self, request: ApplianceRequest) -> RemoteApplianceState:
        async with run_operation(
            APPLIANCE_KIND,
            'create',
            request.name,
            timeout_seconds=self._timeouts.create_seconds,
        ) as op:
            appliance_id = await call_remote(
                op, 'create_appliance', self._api.create_appliance, request,
            )
            op.resource_id = appliance_id

            op.phase = 'wait_ready'
            await self._readiness.wait(appliance_id)

            if request.parameters:
                await self._apply_parameters(op, appliance_id, request.parameters)

            return await self._publish_final(op, appliance_id, request)

    async def update(
        self,
        appliance_id: str,
        request: ApplianceRequest,
        *,
        previous_parameters: Mapping[str, str] | None = None,
    ) -> RemoteApplianceState:
        async with run_operation(
            APPLIANCE_KIND,
            'update',
            appliance_id,
            timeout_seconds=self._timeouts.update_seconds,
        ) as op:
            await call_remote(
                op, 'update_appliance', self._api.update_appliance,
                appliance_id, request,
            )
            await call_remote(
                op, 'apply_changes', self._api.apply_changes, appliance_id,
            )

            op.phase = f'wait_job:{JOB_TYPE_UPDATE}'
            await self._jobs.wait(appliance_id, JOB_TYPE_UPDATE)

            previous = dict(previous_parameters or {})
            if request.parameters and dict(request.parameters) != previous:
                await self._apply_parameters(op, appliance_id, request.parameters)

            return await self._publish_final(op, appliance_id, request)

    async def delete(self, appliance_id: str, *, kind: str = APPLIANCE_KIND) -> None:
        async with run_operation(
            kind,
            'delete',
            appliance_id,
            timeout_seconds=self._timeouts.delete_seconds,
        ) as op:
            op.phase = 'read_appliance'
            try:
                current = await self._api.read_appliance(appliance_id)
            except RemoteNotFound:
                logger.info(
                    'Appliance %s already deleted',
                    appliance_id,
                    extra={'resource_id': appliance_id},
                )
                await self._state.remove(kind, appliance_id)
                return
            except TransientAPIError as exc:
                raise RemoteCallFailed(
                    appliance_id, phase=op.phase, detail=str(exc),
                ) from exc

            if current.instance_status is not InstanceStatus.DOWN:
                await call_remote(
                    op, 'stop_instance', self._api.stop_instance, appliance_id,
                )
                op.phase = 'wait_down'
                await self._down.wait(appliance_id)

            await call_remote(
                op, 'delete_appliance', self._api.delete_appliance, appliance_id,
            )
            await self._state.remove(kind, appliance_id)

    async def add_nodes(
        self, primary_id: str, request: ApplianceRequest,
    ) -> RemoteApplianceState:
        """Attach additional nodes to ``primary_id``.

        The provider models the node group as its own appliance; its ID is
        the one polled and published.
        """
        async with run_operation(
            ADDITIONAL_NODES_KIND,
            'add_nodes',
            primary_id,
            timeout_seconds=self._timeouts.create_seconds,
        ) as op:
            nodes_id = await call_remote(
                op, 'add_nodes', self._api.add_nodes, primary_id, request,
            )
            op.resource_id = nodes_id

            op.phase = 'wait_ready'
            await self._readiness.wait(nodes_id)

            op.phase = f'wait_job:{JOB_TYPE_ADD_NODE}'
            await self._jobs.wait(nodes_id, JOB_TYPE_ADD_NODE)

            return await self._publish_final(
                op, nodes_id, request,
                kind=ADDITIONAL_NODES_KIND,
                extra={'primary_id': primary_id},
            )

    async def read(self, appliance_id: str) -> RemoteApplianceState | None:
        """Refresh published state; ``None`` when the appliance is gone."""
        async with run_operation(
            APPLIANCE_KIND,
            'read',
            appliance_id,
            timeout_seconds=self._timeouts.read_seconds,
        ) as op:
            op.phase = 'read_appliance'
            try:
                state = await self._api.read_appliance(appliance_id)
            except RemoteNotFound:
                await self._state.remove(APPLIANCE_KIND, appliance_id)
                return None
            except TransientAPIError as exc:
                raise RemoteCallFailed(
                    appliance_id, phase=op.phase, detail=str(exc),
                ) from exc

            previous = await self._state.get(APPLIANCE_KIND, appliance_id) or {}
            await self._state.publish(
                APPLIANCE_KIND,
                appliance_id,
                {**previous, **state.as_dict()},
            )
            return state

    async def _apply_parameters(
        self,
        op: OperationContext,
        appliance_id: str,
        parameters: Mapping[str, str],
    ) -> None:
        await call_remote(
            op, 'set_parameters', self._api.set_parameters,
            appliance_id, parameters,
        )
        op.phase = f'wait_job:{JOB_TYPE_SET_PARAMETER}'
        await self._jobs.wait(appliance_id, JOB_TYPE_SET_PARAMETER)

    async def _publish_final(
        self,
        op: OperationContext,
        appliance_id: str,
        request: ApplianceRequest,
        *,
        kind: str = APPLIANCE_KIND,
        extra: Mapping[str, str] | None = None,
    ) -> RemoteApplianceState:
        state = await call_remote(
            op, 'read_appliance', self._api.read_appliance, appliance_id,
        )
        await self._state.publish(
            kind,
            appliance_id,
            {
                **state.as_dict(),
                'name': request.name,
                'parameters': dict(request.parameters),
                **(extra or {}),
            },
        )
        if self._settle_seconds:
            op.phase = 'settle'
            await self._sleep(self._settle_seconds)
        return state

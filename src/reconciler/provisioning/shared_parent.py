"""Lifecycle of child resources living in a shared parent's child list.

Several independent resources (e.g. subnets of one internet router) add
to and remove from the same parent. Each structural mutation holds the
parent's ``NamedMutex`` key for exactly the one mutating call; the
confirmatory read runs after the key is released, so a concurrent reader
may briefly see the parent before the change is visible.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from typing import Any, Mapping, Protocol

from .errors import RemoteCallFailed, RemoteNotFound, TransientAPIError
from .models import ChildResource
from .named_mutex import NamedMutex
from .workflow import (
    OperationContext,
    OperationTimeouts,
    StateStore,
    call_remote,
    run_operation,
)

logger = logging.getLogger(__name__)

DEFAULT_CHILD_KIND = 'subnet'
DEFAULT_CHILD_TIMEOUTS = OperationTimeouts(
    create_seconds=60 * 60,
    update_seconds=60 * 60,
    delete_seconds=5 * 60,
)


class SharedParentAPI(Protocol):
    """Provider endpoints that mutate a parent's child list."""

    async def add_child(
        self, parent_id: str, attributes: Mapping[str, Any],
    ) -> str:
        ...

    async def update_child(
        self, parent_id: str, child_id: str, attributes: Mapping[str, Any],
    ) -> None:
        ...

    async def delete_child(self, parent_id: str, child_id: str) -> None:
        ...

    async def read_child(self, child_id: str) -> ChildResource:
        ...


class SharedParentOrchestrator:
    """Serializes child mutations per parent through an injected mutex."""

    def __init__(
        self,
        *,
        api: SharedParentAPI,
        mutex: NamedMutex,
        state_store: StateStore,
        kind: str = DEFAULT_CHILD_KIND,
        timeouts: OperationTimeouts | None = None,
    ) -> None:
        self._api = api
        self._mutex = mutex
        self._state = state_store
        self.kind = kind
        self._timeouts = timeouts or DEFAULT_CHILD_TIMEOUTS

    async def create(
        self, parent_id: str, attributes: Mapping[str, Any],
    ) -> ChildResource:
        async with run_operation(
            self.kind, 'create', parent_id,
            timeout_seconds=self._timeouts.create_seconds,
        ) as op:
            async with self._locked(op, parent_id):
                child_id = await call_remote(
                    op, 'add_child', self._api.add_child, parent_id, attributes,
                )
            op.resource_id = child_id
            return await self._publish(op, child_id)

    async def update(
        self, parent_id: str, child_id: str, attributes: Mapping[str, Any],
    ) -> ChildResource:
        async with run_operation(
            self.kind, 'update', child_id,
            timeout_seconds=self._timeouts.update_seconds,
        ) as op:
            async with self._locked(op, parent_id):
                await call_remote(
                    op, 'update_child', self._api.update_child,
                    parent_id, child_id, attributes,
                )
            return await self._publish(op, child_id)

    async def delete(self, parent_id: str, child_id: str) -> None:
        async with run_operation(
            self.kind, 'delete', child_id,
            timeout_seconds=self._timeouts.delete_seconds,
        ) as op:
            async with self._locked(op, parent_id):
                op.phase = 'delete_child'
                try:
                    await self._api.delete_child(parent_id, child_id)
                except RemoteNotFound:
                    logger.info(
                        '%s %s already removed from %s',
                        self.kind,
                        child_id,
                        parent_id,
                        extra={'resource_id': child_id, 'lock_key': parent_id},
                    )
                except TransientAPIError as exc:
                    raise RemoteCallFailed(
                        child_id, phase=op.phase, detail=str(exc),
                    ) from exc
            await self._state.remove(self.kind, child_id)

    async def read(self, child_id: str) -> ChildResource | None:
        """Refresh published state; ``None`` when the child is gone."""
        async with run_operation(
            self.kind, 'read', child_id,
            timeout_seconds=self._timeouts.read_seconds,
        ) as op:
            op.phase = 'read_child'
            try:
                child = await self._api.read_child(child_id)
            except RemoteNotFound:
                await self._state.remove(self.kind, child_id)
                return None
            except TransientAPIError as exc:
                raise RemoteCallFailed(
                    child_id, phase=op.phase, detail=str(exc),
                ) from exc
            await self._state.publish(self.kind, child_id, child.as_dict())
            return child

    def _locked(
        self, op: OperationContext, parent_id: str,
    ) -> AbstractAsyncContextManager[None]:
        op.phase = 'lock_parent'
        return self._mutex.hold(parent_id)

    async def _publish(self, op: OperationContext, child_id: str) -> ChildResource:
        child = await call_remote(op, 'read_child', self._api.read_child, child_id)
        await self._state.publish(self.kind, child_id, child.as_dict())
        return child

"""Plumbing shared by the appliance and shared-parent orchestrators.

Every lifecycle operation runs inside ``run_operation``, which:

  1. tags log records with a fresh operation ID,
  2. enforces the operation-level deadline,
  3. stamps the operation name onto any ``ReconcileError``,
  4. counts the result in ``reconciler_operations_total``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol

from reconciler.observability.logging import operation_id_ctx
from reconciler.observability.metrics import OPERATIONS_TOTAL

from .errors import DeadlineExceeded, ReconcileError, RemoteCallFailed, TransientAPIError

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    """Where converged resource state is published."""

    async def publish(
        self, kind: str, resource_id: str, payload: Mapping[str, Any],
    ) -> None:
        ...

    async def remove(self, kind: str, resource_id: str) -> None:
        ...

    async def get(self, kind: str, resource_id: str) -> Mapping[str, Any] | None:
        ...


@dataclass(frozen=True, slots=True)
class OperationTimeouts:
    """Wall-clock budgets for whole lifecycle operations, in seconds."""

    create_seconds: float = 60 * 60
    update_seconds: float = 60 * 60
    delete_seconds: float = 20 * 60
    read_seconds: float = 5 * 60


@dataclass(slots=True)
class OperationContext:
    """Mutable progress marker for one running operation."""

    kind: str
    operation: str
    resource_id: str
    phase: str = 'start'


@asynccontextmanager
async def run_operation(
    kind: str,
    operation: str,
    resource_id: str,
    *,
    timeout_seconds: float,
) -> AsyncIterator[OperationContext]:
    op = OperationContext(kind=kind, operation=operation, resource_id=resource_id)
    token = operation_id_ctx.set(uuid.uuid4().hex)
    deadline = asyncio.timeout(timeout_seconds)
    logger.info(
        'Starting %s %s for %s',
        kind,
        operation,
        resource_id,
        extra={'resource_id': resource_id, 'operation': operation},
    )
    try:
        async with deadline:
            yield op
    except TimeoutError:
        _count(op, 'failed')
        if not deadline.expired():
            raise
        logger.error(
            '%s %s for %s exceeded %gs during %s',
            kind,
            operation,
            op.resource_id,
            timeout_seconds,
            op.phase,
            extra={'resource_id': op.resource_id, 'operation': operation, 'phase': op.phase},
        )
        raise DeadlineExceeded(
            op.resource_id,
            phase=op.phase,
            operation=operation,
            timeout_seconds=timeout_seconds,
        ) from None
    except ReconcileError as exc:
        _count(op, 'failed')
        exc.with_operation(operation)
        logger.error(
            '%s %s failed: %s',
            kind,
            operation,
            exc,
            extra={'resource_id': exc.resource_id, 'operation': operation, 'phase': exc.phase},
        )
        raise
    except BaseException:
        _count(op, 'failed')
        raise
    else:
        _count(op, 'succeeded')
        logger.info(
            'Finished %s %s for %s',
            kind,
            operation,
            op.resource_id,
            extra={'resource_id': op.resource_id, 'operation': operation},
        )
    finally:
        operation_id_ctx.reset(token)


async def call_remote(
    op: OperationContext,
    phase: str,
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
) -> Any:
    """Await one provider call, converting its failure to ``RemoteCallFailed``."""
    op.phase = phase
    try:
        return await fn(*args)
    except TransientAPIError as exc:
        raise RemoteCallFailed(
            op.resource_id,
            phase=phase,
            detail=str(exc),
        ) from exc


def _count(op: OperationContext, result: str) -> None:
    OPERATIONS_TOTAL.labels(
        kind=op.kind, operation=op.operation, result=result,
    ).inc()

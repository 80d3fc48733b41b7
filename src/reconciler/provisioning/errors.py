"""Error taxonomy for reconciliation workflows.

Two families:

* ``TransientAPIError``: raised by API collaborators for any failed
  read/query/mutate call. Pollers count these against their error budget.
* ``ReconcileError``: the single typed failure an orchestrator surfaces.
  It names the resource, the lifecycle operation and the phase that
  failed so an operator can decide whether to retry or remediate.
"""

from __future__ import annotations


class TransientAPIError(Exception):
    """A provider call failed; may succeed if repeated."""


class RemoteNotFound(TransientAPIError):
    """The provider has no resource with the requested ID.

    Still transient while polling: a freshly created resource can be
    briefly invisible to an eventually consistent read endpoint.
    """


class ReconcileError(Exception):
    """Base for every failure surfaced by a reconciliation workflow."""

    reason = 'failed'

    def __init__(
        self,
        resource_id: str,
        *,
        phase: str,
        operation: str = '',
        detail: str = '',
    ) -> None:
        self.resource_id = resource_id
        self.phase = phase
        self.operation = operation
        self.detail = detail
        super().__init__(self._render())

    def _render(self) -> str:
        where = f'{self.operation}/{self.phase}' if self.operation else self.phase
        message = f'{where} {self.reason} for resource {self.resource_id!r}'
        if self.detail:
            message = f'{message}: {self.detail}'
        return message

    def with_operation(self, operation: str) -> ReconcileError:
        """Attach the enclosing lifecycle operation name, keeping the type."""
        if not self.operation:
            self.operation = operation
            self.args = (self._render(),)
        return self


class RemoteTerminalFailure(ReconcileError):
    """Provider reported a terminal failure state; never retried."""

    reason = 'reached terminal failure'


class ErrorBudgetExceeded(ReconcileError):
    """More errors than the poll budget allows within one invocation."""

    reason = 'exceeded error budget'

    def __init__(
        self,
        resource_id: str,
        *,
        phase: str,
        error_count: int,
        threshold: int,
        operation: str = '',
        detail: str = '',
    ) -> None:
        self.error_count = error_count
        self.threshold = threshold
        super().__init__(
            resource_id,
            phase=phase,
            operation=operation,
            detail=detail or f'{error_count} errors > limit {threshold}',
        )


class DeadlineExceeded(ReconcileError):
    """Wall-clock budget exhausted before the success condition."""

    reason = 'timed out'

    def __init__(
        self,
        resource_id: str,
        *,
        phase: str,
        timeout_seconds: float,
        operation: str = '',
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            resource_id,
            phase=phase,
            operation=operation,
            detail=f'deadline of {timeout_seconds:g}s exceeded',
        )


class RemoteCallFailed(ReconcileError):
    """A mutating call or the final confirmatory read failed."""

    reason = 'remote call failed'

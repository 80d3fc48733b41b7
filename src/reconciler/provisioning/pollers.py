"""Pollers that block until a remote appliance converges.

Each poller supplies only its probe (what to read and what counts as
converged); retry counting, sleeping and deadlines live in
``backoff.poll_until``.

  ReadinessPoller      available & up & healthy, fatal on ``failed``
  DownPoller           instance status ``down``
  JobCompletionPoller  a job of the requested type reports ``Done``
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from .backoff import (
    DOWN_POLICY,
    JOB_COMPLETION_POLICY,
    READINESS_POLICY,
    BackoffBudget,
    BackoffDecision,
    BackoffPolicy,
    Clock,
    PollOutcome,
    PollResult,
    Sleeper,
    poll_until,
)
from .errors import RemoteTerminalFailure
from .models import (
    Availability,
    HealthStatus,
    InstanceStatus,
    JobStatusFeed,
    RemoteApplianceState,
)

logger = logging.getLogger(__name__)


class ApplianceReader(Protocol):
    """Read-side of the provider API used while polling."""

    async def read_appliance(self, appliance_id: str) -> RemoteApplianceState:
        ...

    async def read_health(self, appliance_id: str) -> HealthStatus:
        ...

    async def read_job_status(self, appliance_id: str) -> JobStatusFeed:
        ...


class _Poller:
    kind = ''
    default_policy: BackoffPolicy

    def __init__(
        self,
        api: ApplianceReader,
        *,
        policy: BackoffPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._api = api
        self.policy = policy or self.default_policy
        self._sleep = sleep
        self._clock = clock


class ReadinessPoller(_Poller):
    """Wait for a created or updated appliance to become usable."""

    kind = 'readiness'
    default_policy = READINESS_POLICY

    async def wait(self, appliance_id: str) -> PollResult:
        async def probe(budget: BackoffBudget) -> RemoteApplianceState | None:
            state = await self._api.read_appliance(appliance_id)
            if state.availability is Availability.FAILED:
                logger.error(
                    'Appliance %s reported availability=failed',
                    appliance_id,
                    extra={'resource_id': appliance_id, 'phase': 'wait_ready'},
                )
                raise RemoteTerminalFailure(
                    appliance_id,
                    phase='wait_ready',
                    detail='provider reported availability=failed',
                )

            health = await self._api.read_health(appliance_id)
            if (
                state.availability is Availability.AVAILABLE
                and state.instance_status is InstanceStatus.UP
                and health is HealthStatus.HEALTHY
            ):
                return RemoteApplianceState(
                    id=state.id,
                    availability=state.availability,
                    instance_status=state.instance_status,
                    health_status=health,
                )
            return None

        return await poll_until(
            probe,
            policy=self.policy,
            resource_id=appliance_id,
            phase='wait_ready',
            poller=self.kind,
            success=PollOutcome.READY,
            sleep=self._sleep,
            clock=self._clock,
        )


class DownPoller(_Poller):
    """Wait for a stopped appliance to report ``down``."""

    kind = 'down'
    default_policy = DOWN_POLICY

    async def wait(self, appliance_id: str) -> PollResult:
        async def probe(budget: BackoffBudget) -> RemoteApplianceState | None:
            state = await self._api.read_appliance(appliance_id)
            if state.instance_status is InstanceStatus.DOWN:
                return state
            return None

        return await poll_until(
            probe,
            policy=self.policy,
            resource_id=appliance_id,
            phase='wait_down',
            poller=self.kind,
            success=PollOutcome.DOWN,
            sleep=self._sleep,
            clock=self._clock,
        )


class JobCompletionPoller(_Poller):
    """Wait for a server-side job of a given type to finish.

    Failed add-node records for the polled appliance are charged to the
    same error budget as failed reads, so a burst of failed nodes ends
    the poll even when every status read succeeds.
    """

    kind = 'job'
    default_policy = JOB_COMPLETION_POLICY

    async def wait(self, appliance_id: str, job_type: str) -> PollResult:
        phase = f'wait_job:{job_type}'

        async def probe(budget: BackoffBudget) -> JobStatusFeed | None:
            feed = await self._api.read_job_status(appliance_id)
            for node in feed.failed_nodes(appliance_id):
                if budget.next_on_error() is BackoffDecision.FATAL:
                    raise budget.error_budget_exceeded(
                        f'node {node.appliance_id} reported availability=failed'
                    )
                logger.warning(
                    'Node %s of %s job reported failed (error %d/%d)',
                    node.appliance_id,
                    job_type,
                    budget.error_count,
                    budget.policy.error_threshold,
                    extra={
                        'resource_id': appliance_id,
                        'phase': phase,
                        'error_count': budget.error_count,
                    },
                )
            if feed.is_done(job_type):
                return feed
            return None

        return await poll_until(
            probe,
            policy=self.policy,
            resource_id=appliance_id,
            phase=phase,
            poller=self.kind,
            success=PollOutcome.DONE,
            sleep=self._sleep,
            clock=self._clock,
        )

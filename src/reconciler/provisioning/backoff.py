"""Bounded retry/timeout budget and the poll loop shared by all pollers.

A poll invocation ends in exactly one of three ways:

  success        -> the probe returned a value
  error budget   -> more than ``error_threshold`` errors were counted
  deadline       -> ``timeout_seconds`` elapsed

The deadline is checked at every iteration boundary and is also enforced
by an ``asyncio.timeout`` around the whole loop, so an overrun interrupts
a sleep or an in-flight provider call instead of waiting for it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from reconciler.observability.metrics import POLL_ERRORS_TOTAL, POLL_OUTCOMES_TOTAL

from .errors import (
    DeadlineExceeded,
    ErrorBudgetExceeded,
    ReconcileError,
    RemoteTerminalFailure,
    TransientAPIError,
)

logger = logging.getLogger(__name__)

DEFAULT_ERROR_THRESHOLD = 5

Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class BackoffDecision(str, Enum):
    CONTINUE = 'continue'
    FATAL = 'fatal'


class PollOutcome(str, Enum):
    READY = 'ready'
    DOWN = 'down'
    DONE = 'done'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'
    ERROR_EXCEEDED = 'error_exceeded'


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Static limits for one poller kind."""

    timeout_seconds: float
    error_sleep_seconds: float = 10.0
    success_sleep_seconds: float = 30.0
    error_threshold: int = DEFAULT_ERROR_THRESHOLD

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError('timeout_seconds must be > 0')
        if self.error_threshold < 0:
            raise ValueError('error_threshold must be >= 0')
        if self.error_sleep_seconds < 0 or self.success_sleep_seconds < 0:
            raise ValueError('sleep durations must be >= 0')


READINESS_POLICY = BackoffPolicy(
    timeout_seconds=30 * 60,
    error_sleep_seconds=10.0,
    success_sleep_seconds=30.0,
)
DOWN_POLICY = BackoffPolicy(
    timeout_seconds=15 * 60,
    error_sleep_seconds=10.0,
    success_sleep_seconds=20.0,
)
JOB_COMPLETION_POLICY = BackoffPolicy(
    timeout_seconds=30 * 60,
    error_sleep_seconds=10.0,
    success_sleep_seconds=20.0,
)


class BackoffBudget:
    """Mutable counters for a single poll invocation.

    ``error_count`` only ever grows; a new invocation gets a new budget.
    """

    def __init__(
        self,
        policy: BackoffPolicy,
        *,
        resource_id: str,
        phase: str,
        poller: str,
        clock: Clock = time.monotonic,
    ) -> None:
        self.policy = policy
        self.resource_id = resource_id
        self.phase = phase
        self.poller = poller
        self.error_count = 0
        self._clock = clock
        self.deadline = clock() + policy.timeout_seconds

    def expired(self) -> bool:
        return self._clock() > self.deadline

    def next_on_error(self) -> BackoffDecision:
        self.error_count += 1
        POLL_ERRORS_TOTAL.labels(poller=self.poller).inc()
        if self.error_count > self.policy.error_threshold:
            return BackoffDecision.FATAL
        return BackoffDecision.CONTINUE

    def next_on_success_but_not_ready(self) -> BackoffDecision:
        if self.expired():
            return BackoffDecision.FATAL
        return BackoffDecision.CONTINUE

    def error_budget_exceeded(self, detail: str = '') -> ErrorBudgetExceeded:
        return ErrorBudgetExceeded(
            self.resource_id,
            phase=self.phase,
            error_count=self.error_count,
            threshold=self.policy.error_threshold,
            detail=detail,
        )

    def deadline_exceeded(self) -> DeadlineExceeded:
        return DeadlineExceeded(
            self.resource_id,
            phase=self.phase,
            timeout_seconds=self.policy.timeout_seconds,
        )


@dataclass(frozen=True, slots=True)
class PollResult:
    """Successful poll: the probe's value plus loop bookkeeping."""

    outcome: PollOutcome
    value: Any
    iterations: int
    sleeps: int
    error_count: int


Probe = Callable[[BackoffBudget], Awaitable[Any]]


async def poll_until(
    probe: Probe,
    *,
    policy: BackoffPolicy,
    resource_id: str,
    phase: str,
    poller: str,
    success: PollOutcome,
    sleep: Sleeper = asyncio.sleep,
    clock: Clock = time.monotonic,
) -> PollResult:
    """Run ``probe`` until it returns a non-None value.

    The probe raises ``TransientAPIError`` for failed reads (counted and
    retried after ``error_sleep_seconds``), returns ``None`` when the
    resource is not there yet (retried after ``success_sleep_seconds``),
    or raises a ``ReconcileError`` to stop immediately.
    """
    budget = BackoffBudget(
        policy,
        resource_id=resource_id,
        phase=phase,
        poller=poller,
        clock=clock,
    )
    deadline = asyncio.timeout(policy.timeout_seconds)
    try:
        async with deadline:
            result = await _loop(probe, budget, success=success, sleep=sleep)
    except TimeoutError:
        if not deadline.expired():
            raise
        _record_outcome(poller, PollOutcome.TIMED_OUT)
        logger.error(
            'Poll deadline interrupted %s for %s',
            phase,
            resource_id,
            extra={'resource_id': resource_id, 'phase': phase},
        )
        raise budget.deadline_exceeded() from None
    except ReconcileError as exc:
        _record_outcome(poller, _outcome_for(exc))
        raise

    _record_outcome(poller, success)
    return result


async def _loop(
    probe: Probe,
    budget: BackoffBudget,
    *,
    success: PollOutcome,
    sleep: Sleeper,
) -> PollResult:
    policy = budget.policy
    iterations = 0
    sleeps = 0
    while True:
        if budget.expired():
            raise budget.deadline_exceeded()

        iterations += 1
        try:
            value = await probe(budget)
        except TransientAPIError as exc:
            if budget.next_on_error() is BackoffDecision.FATAL:
                logger.error(
                    'Error budget exhausted during %s for %s: %s',
                    budget.phase,
                    budget.resource_id,
                    exc,
                    extra={
                        'resource_id': budget.resource_id,
                        'phase': budget.phase,
                        'error_count': budget.error_count,
                    },
                )
                raise budget.error_budget_exceeded(str(exc)) from exc
            logger.warning(
                '%s read failed for %s (error %d/%d), retrying in %.1fs: %s',
                budget.phase,
                budget.resource_id,
                budget.error_count,
                policy.error_threshold,
                policy.error_sleep_seconds,
                exc,
                extra={
                    'resource_id': budget.resource_id,
                    'phase': budget.phase,
                    'error_count': budget.error_count,
                },
            )
            delay = policy.error_sleep_seconds
        else:
            if value is not None:
                return PollResult(
                    outcome=success,
                    value=value,
                    iterations=iterations,
                    sleeps=sleeps,
                    error_count=budget.error_count,
                )
            if budget.next_on_success_but_not_ready() is BackoffDecision.FATAL:
                raise budget.deadline_exceeded()
            logger.debug(
                '%s not converged for %s, next check in %.1fs',
                budget.phase,
                budget.resource_id,
                policy.success_sleep_seconds,
                extra={'resource_id': budget.resource_id, 'phase': budget.phase},
            )
            delay = policy.success_sleep_seconds

        sleeps += 1
        await sleep(delay)


def _outcome_for(exc: ReconcileError) -> PollOutcome:
    if isinstance(exc, RemoteTerminalFailure):
        return PollOutcome.FAILED
    if isinstance(exc, DeadlineExceeded):
        return PollOutcome.TIMED_OUT
    return PollOutcome.ERROR_EXCEEDED


def _record_outcome(poller: str, outcome: PollOutcome) -> None:
    POLL_OUTCOMES_TOTAL.labels(poller=poller, outcome=outcome.value).inc()

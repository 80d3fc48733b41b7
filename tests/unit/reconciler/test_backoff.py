"""Backoff budget and shared poll loop tests."""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from reconciler.provisioning.backoff import (
    BackoffBudget,
    BackoffDecision,
    BackoffPolicy,
    PollOutcome,
    poll_until,
)
from reconciler.provisioning.errors import (
    DeadlineExceeded,
    ErrorBudgetExceeded,
    RemoteTerminalFailure,
    TransientAPIError,
)


def _policy(**overrides) -> BackoffPolicy:
    values = dict(
        timeout_seconds=600.0,
        error_sleep_seconds=10.0,
        success_sleep_seconds=30.0,
    )
    values.update(overrides)
    return BackoffPolicy(**values)


def _outcomes(poller: str, outcome: str) -> float:
    return REGISTRY.get_sample_value(
        'reconciler_poll_outcomes_total',
        {'poller': poller, 'outcome': outcome},
    ) or 0.0


class ScriptedProbe:
    """Probe returning/raising the queued items in order."""

    def __init__(self, *items) -> None:
        self.items = list(items)
        self.calls = 0

    async def __call__(self, budget: BackoffBudget):
        self.calls += 1
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, BaseException):
            raise item
        return item


async def _poll(probe, fake_time, **policy_overrides):
    return await poll_until(
        probe,
        policy=_policy(**policy_overrides),
        resource_id='113600000001',
        phase='wait_test',
        poller='test',
        success=PollOutcome.READY,
        sleep=fake_time.sleep,
        clock=fake_time.clock,
    )


# ── Policy validation ────────────────────────────────────────────────


class TestBackoffPolicy:
    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError, match='timeout_seconds'):
            BackoffPolicy(timeout_seconds=0)

    def test_rejects_negative_threshold(self):
        with pytest.raises(ValueError, match='error_threshold'):
            BackoffPolicy(timeout_seconds=1, error_threshold=-1)

    def test_rejects_negative_sleep(self):
        with pytest.raises(ValueError, match='sleep'):
            BackoffPolicy(timeout_seconds=1, error_sleep_seconds=-1)

    def test_default_threshold_is_five(self):
        assert BackoffPolicy(timeout_seconds=1).error_threshold == 5


# ── Budget ───────────────────────────────────────────────────────────


class TestBackoffBudget:
    def _budget(self, fake_time, **overrides) -> BackoffBudget:
        return BackoffBudget(
            _policy(**overrides),
            resource_id='r1',
            phase='wait_test',
            poller='test',
            clock=fake_time.clock,
        )

    def test_five_errors_continue_sixth_is_fatal(self, fake_time):
        budget = self._budget(fake_time)
        decisions = [budget.next_on_error() for _ in range(6)]
        assert decisions[:5] == [BackoffDecision.CONTINUE] * 5
        assert decisions[5] is BackoffDecision.FATAL
        assert budget.error_count == 6

    def test_error_count_never_decreases(self, fake_time):
        budget = self._budget(fake_time)
        budget.next_on_error()
        budget.next_on_success_but_not_ready()
        budget.next_on_success_but_not_ready()
        assert budget.error_count == 1

    def test_not_ready_is_fatal_only_after_deadline(self, fake_time):
        budget = self._budget(fake_time, timeout_seconds=60)
        fake_time.now = 60
        assert budget.next_on_success_but_not_ready() is BackoffDecision.CONTINUE
        fake_time.now = 60.5
        assert budget.next_on_success_but_not_ready() is BackoffDecision.FATAL

    def test_exceptions_carry_resource_and_phase(self, fake_time):
        budget = self._budget(fake_time)
        exc = budget.error_budget_exceeded('boom')
        assert exc.resource_id == 'r1'
        assert exc.phase == 'wait_test'
        assert exc.threshold == 5
        assert 'boom' in str(exc)
        deadline = budget.deadline_exceeded()
        assert deadline.timeout_seconds == 600.0


# ── Poll loop ────────────────────────────────────────────────────────


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_immediate_success_performs_no_sleep(self, fake_time):
        result = await _poll(ScriptedProbe('ok'), fake_time)
        assert result.value == 'ok'
        assert result.outcome is PollOutcome.READY
        assert result.iterations == 1
        assert result.sleeps == 0
        assert fake_time.sleeps == []

    @pytest.mark.asyncio
    async def test_not_ready_sleeps_success_interval(self, fake_time):
        result = await _poll(ScriptedProbe(None, None, 'ok'), fake_time)
        assert result.iterations == 3
        assert fake_time.sleeps == [30.0, 30.0]

    @pytest.mark.asyncio
    async def test_transient_error_sleeps_error_interval(self, fake_time):
        probe = ScriptedProbe(TransientAPIError('503'), None, 'ok')
        result = await _poll(probe, fake_time)
        assert fake_time.sleeps == [10.0, 30.0]
        assert result.error_count == 1

    @pytest.mark.asyncio
    async def test_six_consecutive_errors_exhaust_budget(self, fake_time):
        last = TransientAPIError('read failed #6')
        probe = ScriptedProbe(*[TransientAPIError('x')] * 5, last)

        with pytest.raises(ErrorBudgetExceeded) as exc_info:
            await _poll(probe, fake_time)

        assert probe.calls == 6
        assert exc_info.value.error_count == 6
        assert exc_info.value.__cause__ is last
        assert len(fake_time.sleeps) == 5

    @pytest.mark.asyncio
    async def test_error_budget_ignores_elapsed_time(self, fake_time):
        # Deadline far away and zero sleeps: only the count can stop it.
        probe = ScriptedProbe(TransientAPIError('x'))
        with pytest.raises(ErrorBudgetExceeded):
            await _poll(
                probe, fake_time,
                timeout_seconds=10_000,
                error_sleep_seconds=0,
            )
        assert fake_time.now == 0

    @pytest.mark.asyncio
    async def test_errors_need_not_be_consecutive(self, fake_time):
        err = TransientAPIError('x')
        probe = ScriptedProbe(err, None, err, None, err, err, err, err)
        with pytest.raises(ErrorBudgetExceeded):
            await _poll(probe, fake_time)
        assert probe.calls == 8

    @pytest.mark.asyncio
    async def test_deadline_checked_at_iteration_boundary(self, fake_time):
        probe = ScriptedProbe(None)
        with pytest.raises(DeadlineExceeded) as exc_info:
            await _poll(probe, fake_time, timeout_seconds=60)
        # Checks at t=0, 30, 60 are within budget; the sleep to 90 overruns.
        assert probe.calls == 3
        assert fake_time.now == 90
        assert exc_info.value.phase == 'wait_test'

    @pytest.mark.asyncio
    async def test_terminal_failure_propagates_without_retry(self, fake_time):
        failure = RemoteTerminalFailure('r1', phase='wait_test')
        probe = ScriptedProbe(failure)
        with pytest.raises(RemoteTerminalFailure):
            await _poll(probe, fake_time)
        assert probe.calls == 1
        assert fake_time.sleeps == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_not_counted(self, fake_time):
        probe = ScriptedProbe(KeyError('bug'))
        with pytest.raises(KeyError):
            await _poll(probe, fake_time)
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_real_deadline_interrupts_sleep(self):
        """The asyncio deadline fires mid-sleep instead of after it."""

        async def never_ready(budget):
            return None

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(DeadlineExceeded):
            await poll_until(
                never_ready,
                policy=BackoffPolicy(
                    timeout_seconds=0.05,
                    success_sleep_seconds=30.0,
                ),
                resource_id='r1',
                phase='wait_test',
                poller='test',
                success=PollOutcome.READY,
            )
        assert loop.time() - started < 5.0

    @pytest.mark.asyncio
    async def test_real_deadline_interrupts_hanging_probe(self):
        async def hangs(budget):
            await asyncio.Event().wait()

        with pytest.raises(DeadlineExceeded):
            await poll_until(
                hangs,
                policy=BackoffPolicy(timeout_seconds=0.05),
                resource_id='r1',
                phase='wait_test',
                poller='test',
                success=PollOutcome.READY,
            )

    @pytest.mark.asyncio
    async def test_records_outcome_metrics(self, fake_time):
        before_ok = _outcomes('test', 'ready')
        before_err = _outcomes('test', 'error_exceeded')

        await _poll(ScriptedProbe('ok'), fake_time)
        with pytest.raises(ErrorBudgetExceeded):
            await _poll(ScriptedProbe(TransientAPIError('x')), fake_time)

        assert _outcomes('test', 'ready') == before_ok + 1
        assert _outcomes('test', 'error_exceeded') == before_err + 1

"""Unit tests for bounded polling and retry budgets."""

from __future__ import annotations

import pytest

from src.cli.deployment.eks_deployer.probes import (
    Condition,
    failed,
    provisioning,
    ready,
)
from src.cli.deployment.eks_deployer.retry import (
    AwaitStatus,
    CancellationToken,
    RetryPolicy,
)
from tests.fixtures import FakeClock


def sequence_probe(*conditions: Condition):
    """Probe returning the given conditions in turn, then repeating the last."""
    remaining = list(conditions)
    calls: list[Condition] = []

    def probe() -> Condition:
        condition = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        calls.append(condition)
        return condition

    probe.calls = calls  # type: ignore[attr-defined]
    return probe


class TestRetryPolicyValidation:
    """Tests for policy bounds."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"poll_interval": 0},
            {"max_polls_per_attempt": 0},
            {"max_attempts": 0},
            {"max_total_wait": -1},
            {"progress_every": 0},
        ],
    )
    def test_rejects_invalid_bounds(self, kwargs: dict) -> None:
        """Non-positive bounds are rejected at construction."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_with_overrides_keeps_unset_fields(self) -> None:
        """None values in an override leave the default in place."""
        policy = RetryPolicy(5, 60, 2, 420)

        updated = policy.with_overrides(max_total_wait=900, poll_interval=None)

        assert updated.max_total_wait == 900
        assert updated.poll_interval == 5
        assert updated.max_attempts == 2


class TestAwaitCondition:
    """Tests for a single bounded wait."""

    def test_ready_on_first_poll_does_not_sleep(self, fake_clock: FakeClock) -> None:
        """A probe that is already Ready returns without waiting."""
        policy = RetryPolicy(poll_interval=5, max_polls_per_attempt=10)

        outcome = policy.await_condition(ready, policy.new_budget(fake_clock))

        assert outcome.status is AwaitStatus.READY
        assert outcome.polls == 1
        assert fake_clock.sleeps == []

    def test_polls_until_ready(self, fake_clock: FakeClock) -> None:
        """The probe is called afresh until it reports Ready."""
        probe = sequence_probe(provisioning("a"), provisioning("b"), ready())
        policy = RetryPolicy(poll_interval=5, max_polls_per_attempt=10)

        outcome = policy.await_condition(probe, policy.new_budget(fake_clock))

        assert outcome.status is AwaitStatus.READY
        assert outcome.polls == 3
        assert fake_clock.sleeps == [5, 5]

    def test_failed_returns_immediately(self, fake_clock: FakeClock) -> None:
        """A Failed condition stops polling at once."""
        probe = sequence_probe(provisioning("a"), failed("broken"))
        policy = RetryPolicy(poll_interval=5, max_polls_per_attempt=10)

        outcome = policy.await_condition(probe, policy.new_budget(fake_clock))

        assert outcome.status is AwaitStatus.FAILED
        assert outcome.condition == failed("broken")
        assert outcome.polls == 2

    def test_exhausts_after_max_polls(self, fake_clock: FakeClock) -> None:
        """The per-attempt poll ceiling ends the wait."""
        policy = RetryPolicy(poll_interval=5, max_polls_per_attempt=4, max_total_wait=1000)

        outcome = policy.await_condition(
            lambda: provisioning("still"), policy.new_budget(fake_clock)
        )

        assert outcome.status is AwaitStatus.EXHAUSTED
        assert outcome.polls == 4
        assert outcome.condition == provisioning("still")

    def test_total_wait_is_the_smaller_ceiling(self, fake_clock: FakeClock) -> None:
        """max_total_wait caps the wait even when polls remain."""
        policy = RetryPolicy(poll_interval=10, max_polls_per_attempt=100, max_total_wait=25)

        outcome = policy.await_condition(
            lambda: provisioning("still"), policy.new_budget(fake_clock)
        )

        assert outcome.status is AwaitStatus.EXHAUSTED
        assert outcome.elapsed == pytest.approx(25)
        assert fake_clock.sleeps == [10, 10, 5]

    def test_cancellation_between_polls(self, fake_clock: FakeClock) -> None:
        """Cancelling during a sleep ends the wait before the next poll."""
        token = CancellationToken()
        fake_clock.on_sleep = lambda clock: token.cancel()
        probe = sequence_probe(provisioning("waiting"))
        policy = RetryPolicy(poll_interval=5, max_polls_per_attempt=10)

        outcome = policy.await_condition(probe, policy.new_budget(fake_clock), cancel=token)

        assert outcome.status is AwaitStatus.CANCELLED
        assert len(probe.calls) == 1  # type: ignore[attr-defined]

    def test_reports_progress(self, fake_clock: FakeClock) -> None:
        """Progress is reported every ``progress_every`` polls."""
        reports = []
        policy = RetryPolicy(poll_interval=1, max_polls_per_attempt=7, progress_every=3)

        policy.await_condition(
            lambda: provisioning("x"),
            policy.new_budget(fake_clock),
            on_progress=reports.append,
            label="rollout",
        )

        assert [report.polls for report in reports] == [3, 6]
        assert reports[0].label == "rollout"


class TestAwaitWithRetries:
    """Tests for repeated attempts under one budget."""

    def test_retries_after_exhaustion(self, fake_clock: FakeClock) -> None:
        """A new attempt starts once an attempt runs out of polls."""
        retries = []
        probe = sequence_probe(*([provisioning("x")] * 3), ready())
        policy = RetryPolicy(poll_interval=1, max_polls_per_attempt=2, max_attempts=3)

        outcome = policy.await_with_retries(probe, clock=fake_clock, on_retry=retries.append)

        assert outcome.status is AwaitStatus.READY
        assert retries == [1]

    def test_gives_up_after_max_attempts(self, fake_clock: FakeClock) -> None:
        """The last exhausted attempt is returned as is."""
        policy = RetryPolicy(
            poll_interval=1, max_polls_per_attempt=2, max_attempts=2, max_total_wait=100
        )

        outcome = policy.await_with_retries(lambda: provisioning("x"), clock=fake_clock)

        assert outcome.status is AwaitStatus.EXHAUSTED

    def test_never_ready_check_stops_within_budget(self, fake_clock: FakeClock) -> None:
        """Three polls per attempt, two attempts, ten seconds: no more than that."""
        probe = sequence_probe(provisioning("still creating"))
        policy = RetryPolicy(
            poll_interval=1, max_polls_per_attempt=3, max_attempts=2, max_total_wait=10
        )

        outcome = policy.await_with_retries(probe, clock=fake_clock)

        assert outcome.status is AwaitStatus.EXHAUSTED
        assert len(probe.calls) <= 6  # type: ignore[attr-defined]
        assert outcome.elapsed <= 10
        assert sum(fake_clock.sleeps) <= 10

    def test_budget_elapsed_never_exceeds_total(self, fake_clock: FakeClock) -> None:
        """Across attempts the elapsed time stays within max_total_wait."""
        policy = RetryPolicy(
            poll_interval=7, max_polls_per_attempt=5, max_attempts=10, max_total_wait=50
        )

        outcome = policy.await_with_retries(lambda: provisioning("x"), clock=fake_clock)

        assert outcome.status is AwaitStatus.EXHAUSTED
        assert outcome.elapsed <= 50


class TestCancellationToken:
    def test_wait_returns_true_once_cancelled(self) -> None:
        """A cancelled token wakes sleepers immediately."""
        token = CancellationToken()
        token.cancel()

        assert token.cancelled
        assert token.wait(10) is True

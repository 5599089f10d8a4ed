"""Bounded waiting on eventually-consistent systems.

``RetryPolicy.await_condition`` polls a probe until it reports Ready or
Failed, or until the budget runs out. Two ceilings apply and the smaller
wins: ``max_polls_per_attempt`` bounds one wait, ``max_total_wait`` bounds
every attempt of a step combined.

Time is read through a ``Clock`` so tests can run waits in virtual time.
Cancellation interrupts a sleep immediately.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Protocol

from loguru import logger

from .probes import Condition


class CancellationToken:
    """Cooperative cancellation signal shared by one run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> None: ...


class MonotonicClock:
    """Wall clock backed by ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> None:
        if seconds <= 0:
            return
        if cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)


class AwaitStatus(StrEnum):
    READY = "ready"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressReport:
    label: str
    attempt: int
    polls: int
    elapsed: float
    condition: Condition | None


@dataclass(frozen=True)
class AwaitOutcome:
    status: AwaitStatus
    condition: Condition | None
    polls: int
    elapsed: float


@dataclass(frozen=True)
class RetryPolicy:
    """How long and how often to re-check an external system.

    Attributes:
        poll_interval: Seconds between two polls
        max_polls_per_attempt: Polls in one wait before it counts as exhausted
        max_attempts: Times a step's action may be (re-)run
        max_total_wait: Ceiling in seconds across all attempts of a step
        progress_every: Report progress every N polls
    """

    poll_interval: float = 5.0
    max_polls_per_attempt: int = 60
    max_attempts: int = 1
    max_total_wait: float = 300.0
    progress_every: int = 6

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.max_polls_per_attempt < 1 or self.max_attempts < 1:
            raise ValueError("max_polls_per_attempt and max_attempts must be >= 1")
        if self.max_total_wait <= 0:
            raise ValueError("max_total_wait must be positive")
        if self.progress_every < 1:
            raise ValueError("progress_every must be >= 1")

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        """Copy of the policy with the non-None fields replaced."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def new_budget(self, clock: Clock) -> RetryBudget:
        return RetryBudget(policy=self, clock=clock)

    def await_condition(
        self,
        probe: Callable[[], Condition],
        budget: RetryBudget,
        *,
        cancel: CancellationToken | None = None,
        on_progress: Callable[[ProgressReport], None] | None = None,
        label: str = "",
    ) -> AwaitOutcome:
        """Poll ``probe`` until Ready, Failed, cancellation or exhaustion.

        The probe is called afresh on every iteration; a Failed condition
        returns immediately instead of polling on.
        """
        clock = budget.clock
        polls = 0
        condition: Condition | None = None

        def outcome(status: AwaitStatus) -> AwaitOutcome:
            return AwaitOutcome(status, condition, polls, budget.elapsed)

        while True:
            if cancel is not None and cancel.cancelled:
                return outcome(AwaitStatus.CANCELLED)

            condition = probe()
            polls += 1
            budget.polls += 1
            logger.debug(f"{label or 'probe'} poll {polls}: {condition}")

            if condition.is_ready:
                return outcome(AwaitStatus.READY)
            if condition.is_failed:
                return outcome(AwaitStatus.FAILED)

            if on_progress is not None and polls % self.progress_every == 0:
                on_progress(
                    ProgressReport(label, budget.attempts, polls, budget.elapsed, condition)
                )

            remaining = budget.remaining
            if polls >= self.max_polls_per_attempt or remaining <= 0:
                return outcome(AwaitStatus.EXHAUSTED)

            clock.sleep(min(self.poll_interval, remaining), cancel)

    def await_with_retries(
        self,
        probe: Callable[[], Condition],
        *,
        clock: Clock,
        cancel: CancellationToken | None = None,
        on_retry: Callable[[int], None] | None = None,
        on_progress: Callable[[ProgressReport], None] | None = None,
        label: str = "",
    ) -> AwaitOutcome:
        """Repeat ``await_condition`` for up to ``max_attempts`` attempts.

        ``on_retry`` runs before every attempt after the first.
        """
        budget = self.new_budget(clock)
        while True:
            budget.begin_attempt()
            result = self.await_condition(
                probe, budget, cancel=cancel, on_progress=on_progress, label=label
            )
            if result.status is not AwaitStatus.EXHAUSTED or not budget.can_retry:
                return result
            clock.sleep(min(self.poll_interval, budget.remaining), cancel)
            if cancel is not None and cancel.cancelled:
                return AwaitOutcome(
                    AwaitStatus.CANCELLED, result.condition, result.polls, budget.elapsed
                )
            if on_retry is not None:
                on_retry(budget.attempts)


ONE_SHOT = RetryPolicy(
    poll_interval=1.0, max_polls_per_attempt=1, max_attempts=1, max_total_wait=60.0
)


@dataclass
class RetryBudget:
    """Attempts and elapsed time spent by one step."""

    policy: RetryPolicy
    clock: Clock
    attempts: int = 0
    polls: int = 0
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock.now()

    @property
    def elapsed(self) -> float:
        return self.clock.now() - self.started_at

    @property
    def remaining(self) -> float:
        return max(0.0, self.policy.max_total_wait - self.elapsed)

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.policy.max_attempts and self.remaining > 0

    def begin_attempt(self) -> int:
        self.attempts += 1
        return self.attempts

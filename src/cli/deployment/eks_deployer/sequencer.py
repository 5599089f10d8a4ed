"""Step sequencer.

Runs an ordered list of steps against one ``DeploymentSpec``. Each step
moves through ``StepStatus``:

    PENDING -> APPLYING -> WAITING -> READY -> COMPLETED
                  |           |
                  +-> RETRYING -> APPLYING | WAITING
                  +-> EXHAUSTED -> SKIPPED | FAILED

Steps run strictly in order; step N+1 starts only once step N reached
COMPLETED or SKIPPED. Cancellation is checked at every step boundary and
every poll. The run is not transactional: a fatal abort leaves resources
created by earlier steps in place, and re-running is safe because every
``apply`` is create-or-adopt.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from src.utils.console_like import ConsoleLike, coalesce_console

from .constants import DEFAULT_CONSTANTS, DeploymentConstants
from .errors import (
    ConfigurationError,
    ErrorKind,
    PipelineError,
    classify_error,
    condition_from_error,
)
from .models import DeploymentSpec, DeploymentState, Outcome, StepRecord, StepStatus
from .probes import Condition
from .retry import (
    AwaitOutcome,
    AwaitStatus,
    CancellationToken,
    Clock,
    MonotonicClock,
    ProgressReport,
    RetryBudget,
)
from .steps import FailurePolicy, Step, StepContext

if TYPE_CHECKING:
    from .clients import DeploymentClients
    from .diagnostics import DiagnosticsCollector


@dataclass
class PipelineRun:
    """What one sequencer run produced."""

    outcome: Outcome
    state: DeploymentState
    records: list[StepRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    error: PipelineError | None = None

    def record(self, name: str) -> StepRecord | None:
        return next((r for r in self.records if r.name == name), None)


class StepSequencer:
    """Executes steps in declared order under their retry policies."""

    def __init__(
        self,
        steps: Sequence[Step],
        *,
        clients: DeploymentClients,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
        console: ConsoleLike | None = None,
        clock: Clock | None = None,
        cancel: CancellationToken | None = None,
        diagnostics: DiagnosticsCollector | None = None,
    ) -> None:
        names = [step.name for step in steps]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate step names: {', '.join(sorted(duplicates))}")

        self.steps = list(steps)
        self.clients = clients
        self.constants = constants
        self.console = coalesce_console(console)
        self.clock = clock or MonotonicClock()
        self.cancel = cancel or CancellationToken()
        self.diagnostics = diagnostics

    def run(self, spec: DeploymentSpec, state: DeploymentState | None = None) -> PipelineRun:
        """Run every step.

        Args:
            spec: Deployment input
            state: Outputs of an earlier run to resume from

        Returns:
            The run outcome; ``error`` is set when the outcome is FAILED
        """
        state = state if state is not None else DeploymentState()
        ctx = StepContext(
            spec=spec,
            state=state,
            clients=self.clients,
            console=self.console,
            clock=self.clock,
            cancel=self.cancel,
            constants=self.constants,
        )
        run = PipelineRun(outcome=Outcome.SUCCESS, state=state)

        for step in self.steps:
            record = StepRecord(step.name)
            run.records.append(record)

            if self.cancel.cancelled:
                record.transition(StepStatus.CANCELLED, "Cancelled before start")
                logger.info(f"Run cancelled before step {step.name}")
                run.outcome = Outcome.CANCELLED
                return run

            if not step.applies(spec):
                record.transition(StepStatus.SKIPPED, "Not applicable")
                logger.debug(f"Step {step.name}: not applicable")
                continue

            missing = step.missing_inputs(state)
            if missing:
                message = f"Feature disabled: {', '.join(missing)} not available"
                record.transition(StepStatus.SKIPPED, message)
                logger.info(f"Step {step.name}: {message}")
                self.console.info(f"Skipping {step.description.lower()}: {message}")
                continue

            if step.already_satisfied(state) and not spec.force:
                record.transition(StepStatus.COMPLETED, "Already satisfied")
                logger.info(f"Step {step.name}: outputs already present, not re-run")
                continue

            status = self._run_step(step, ctx, record, run)
            if status is StepStatus.CANCELLED:
                logger.info(f"Run cancelled during step {step.name}")
                run.outcome = Outcome.CANCELLED
                return run
            if status is StepStatus.FAILED:
                run.outcome = Outcome.FAILED
                return run

        run.outcome = Outcome.DEGRADED if run.warnings else Outcome.SUCCESS
        return run

    # =========================================================================
    # Single Step
    # =========================================================================

    def _run_step(
        self, step: Step, ctx: StepContext, record: StepRecord, run: PipelineRun
    ) -> StepStatus:
        policy = step.retry_policy
        budget = policy.new_budget(self.clock)
        outputs: dict[str, Any] = {}
        phase = StepStatus.APPLYING

        logger.info(f"Step {step.name}: starting")
        self.console.info(f"{step.description}...")
        record.transition(StepStatus.APPLYING)

        while True:
            budget.begin_attempt()
            record.attempts = budget.attempts
            try:
                if phase is StepStatus.APPLYING:
                    outputs.update(step.apply(ctx) or {})
                result = self._wait(step, ctx, record, budget)
                if result.status is AwaitStatus.READY:
                    if step.collect is not None:
                        outputs.update(step.collect(ctx) or {})
                    self._record_outputs(step, ctx.state, outputs)
            except Exception as exc:
                record.elapsed = budget.elapsed
                record.polls = budget.polls
                kind = classify_error(exc)
                condition = condition_from_error(exc, kind)
                record.condition = condition
                logger.debug(f"Step {step.name}: {kind} error: {exc!r}")

                if kind is not ErrorKind.TRANSIENT:
                    return self._resolve(step, ctx, record, run, condition, cause=exc)

                next_phase = (
                    StepStatus.WAITING
                    if record.status is StepStatus.WAITING
                    else StepStatus.APPLYING
                )
                if budget.can_retry:
                    if not self._retry(step, record, condition, next_phase, budget):
                        return StepStatus.CANCELLED
                    phase = next_phase
                    continue
                record.transition(StepStatus.EXHAUSTED, condition.reason)
                return self._resolve(
                    step, ctx, record, run, condition, exhausted=True, cause=exc
                )

            record.elapsed = budget.elapsed
            record.polls = budget.polls
            record.condition = result.condition

            if result.status is AwaitStatus.READY:
                reason = result.condition.reason if result.condition else ""
                record.transition(StepStatus.READY, reason)
                record.transition(StepStatus.COMPLETED)
                logger.info(f"Step {step.name}: completed in {budget.elapsed:.1f}s")
                self.console.ok(f"{step.description}: done")
                return StepStatus.COMPLETED

            if result.status is AwaitStatus.CANCELLED:
                record.transition(StepStatus.CANCELLED, "Cancelled while waiting")
                return StepStatus.CANCELLED

            condition = result.condition
            if result.status is AwaitStatus.FAILED:
                if step.recover is not None and condition is not None and budget.can_retry:
                    logger.info(f"Step {step.name}: attempting recovery for {condition}")
                    try:
                        recovered = step.recover(ctx, condition)
                    except Exception as exc:
                        kind = classify_error(exc)
                        logger.warning(f"Step {step.name}: recovery failed ({kind}): {exc}")
                        return self._resolve(
                            step, ctx, record, run, condition_from_error(exc, kind), cause=exc
                        )
                    if recovered:
                        self.console.info(f"{step.description}: applied a fix, retrying")
                        if not self._retry(
                            step, record, condition, StepStatus.APPLYING, budget
                        ):
                            return StepStatus.CANCELLED
                        phase = StepStatus.APPLYING
                        continue
                return self._resolve(step, ctx, record, run, condition)

            # Exhausted: still converging when patience ran out
            if step.failure_policy is FailurePolicy.RETRYABLE and budget.can_retry:
                if not self._retry(step, record, condition, StepStatus.APPLYING, budget):
                    return StepStatus.CANCELLED
                phase = StepStatus.APPLYING
                continue
            reason = condition.reason if condition else "no status"
            record.transition(
                StepStatus.EXHAUSTED,
                f"Timed out after {budget.elapsed:.0f}s ({reason})",
            )
            return self._resolve(step, ctx, record, run, condition, exhausted=True)

    def _wait(
        self, step: Step, ctx: StepContext, record: StepRecord, budget: RetryBudget
    ) -> AwaitOutcome:
        if step.probe is None:
            return AwaitOutcome(AwaitStatus.READY, None, 0, budget.elapsed)
        if record.status is not StepStatus.WAITING:
            record.transition(StepStatus.WAITING)
        probe = step.probe
        return step.retry_policy.await_condition(
            lambda: probe(ctx),
            budget,
            cancel=self.cancel,
            on_progress=self._report_progress,
            label=step.name,
        )

    def _retry(
        self,
        step: Step,
        record: StepRecord,
        condition: Condition | None,
        next_phase: StepStatus,
        budget: RetryBudget,
    ) -> bool:
        """Move the step into RETRYING and pause; False if cancelled meanwhile."""
        reason = condition.reason if condition else ""
        record.transition(StepStatus.RETRYING, reason)
        logger.info(
            f"Step {step.name}: retrying (attempt {budget.attempts + 1}/"
            f"{step.retry_policy.max_attempts}): {reason}"
        )
        self.console.warn(f"{step.description}: {reason}; retrying")
        self.clock.sleep(min(step.retry_policy.poll_interval, budget.remaining), self.cancel)
        if self.cancel.cancelled:
            record.transition(StepStatus.CANCELLED, "Cancelled while retrying")
            return False
        record.transition(next_phase)
        return True

    def _resolve(
        self,
        step: Step,
        ctx: StepContext,
        record: StepRecord,
        run: PipelineRun,
        condition: Condition | None,
        *,
        exhausted: bool = False,
        cause: BaseException | None = None,
    ) -> StepStatus:
        """Apply the failure policy once a step cannot make further progress."""
        policy = step.failure_policy
        if exhausted and step.exhaustion_policy is not None:
            policy = step.exhaustion_policy
        if policy is FailurePolicy.RETRYABLE:
            # Attempts are used up; retryable steps fail like fatal ones
            policy = FailurePolicy.FATAL

        reason = (condition.reason if condition else "") or str(cause or "unknown error")

        if policy is FailurePolicy.SKIPPABLE:
            record.transition(StepStatus.SKIPPED, reason)
            warning = f"{step.description} skipped: {reason}"
            run.warnings.append(warning)
            hint = step.next_step_hint(ctx.spec)
            if isinstance(cause, ConfigurationError) and cause.remediation:
                hint = cause.remediation
            if hint:
                run.next_steps.append(hint)
            logger.warning(warning)
            self.console.warn(warning)
            return StepStatus.SKIPPED

        record.transition(StepStatus.FAILED, reason)
        logger.error(f"Step {step.name} failed: {reason}")
        report = None
        if self.diagnostics is not None:
            self.console.info("Collecting diagnostics...")
            subject = step.subject(ctx) if step.subject is not None else None
            report = self.diagnostics.collect(
                ctx.spec, step=step.name, condition=condition, subject=subject
            )
        run.error = PipelineError(step.name, condition, report, cause=cause)
        return StepStatus.FAILED

    # =========================================================================
    # Helpers
    # =========================================================================

    def _record_outputs(
        self, step: Step, state: DeploymentState, outputs: Mapping[str, Any]
    ) -> None:
        for name, value in outputs.items():
            if value is not None:
                state.set(name, value)
        missing = [name for name in step.produces if not state.is_set(name)]
        if missing:
            logger.warning(f"Step {step.name}: completed without setting {missing}")

    def _report_progress(self, report: ProgressReport) -> None:
        reason = report.condition.reason if report.condition else ""
        logger.info(
            f"{report.label}: waiting {report.elapsed:.0f}s "
            f"(attempt {report.attempt}, {report.polls} polls) {reason}"
        )
        self.console.info(f"  ...still waiting ({report.elapsed:.0f}s): {reason}")

"""Pipeline step definition.

A step is an idempotent ``apply`` action, an optional readiness ``probe``
polled under the step's ``RetryPolicy``, and a failure policy deciding
what happens when the probe reports Failed or the budget runs out.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from src.infra.k8s.controller import ResourceRef
from src.utils.console_like import ConsoleLike

from .constants import DEFAULT_CONSTANTS, DeploymentConstants
from .models import DeploymentSpec, DeploymentState
from .probes import Condition
from .retry import ONE_SHOT, CancellationToken, Clock, RetryPolicy

if TYPE_CHECKING:
    from .clients import DeploymentClients


class FailurePolicy(StrEnum):
    """What the sequencer does with a step that failed or ran out of budget.

    - RETRYABLE: re-run apply and wait while attempts remain, then fatal
    - SKIPPABLE: warn, leave the step's outputs unset and continue
    - FATAL: collect diagnostics and abort the pipeline
    """

    RETRYABLE = "retryable"
    SKIPPABLE = "skippable"
    FATAL = "fatal"


@dataclass
class StepContext:
    """Everything a step action can touch during one run."""

    spec: DeploymentSpec
    state: DeploymentState
    clients: DeploymentClients
    console: ConsoleLike
    clock: Clock
    cancel: CancellationToken
    constants: DeploymentConstants = DEFAULT_CONSTANTS
    # Step-private values that are not deployment outputs (e.g. a certificate
    # ARN still being validated).
    scratch: dict[str, Any] = field(default_factory=dict)

    @property
    def kubeconfig_path(self) -> Path:
        return self.spec.artifact_dir / self.constants.KUBECONFIG_FILE

    @property
    def manifest_path(self) -> Path:
        return self.spec.artifact_dir / self.constants.MANIFEST_DIR


StepAction = Callable[[StepContext], Mapping[str, Any] | None]


@dataclass(frozen=True)
class Step:
    """One named unit of the forward pipeline.

    Attributes:
        name: Stable identifier (used for timeout overrides and reports)
        description: Human readable label for console output
        apply: Idempotent action; returns outputs to record, if any
        probe: Fresh readiness check, polled after ``apply``
        collect: Reads outputs once the probe reports Ready
        recover: Corrective action for a Failed condition; True if it
            changed something worth another attempt
        failure_policy: Policy for Failed conditions and errors
        exhaustion_policy: Policy for budget exhaustion (defaults to
            ``failure_policy``)
        requires: State fields that must be set; otherwise the feature is
            treated as disabled and the step skipped
        produces: State fields this step is responsible for
        when: Whether the step applies to a spec at all
        retry_policy: Polling and attempt bounds
        guidance: Next-step hint shown when the step is skipped; formatted
            with ``app``, ``namespace``, ``service``, ``ingress``, ``hostname``,
            ``cluster`` and ``region``
        subject: Object the step converges; its events (and those of its
            pods) are added to the diagnostics when the step fails
    """

    name: str
    description: str
    apply: StepAction
    probe: Callable[[StepContext], Condition] | None = None
    collect: StepAction | None = None
    recover: Callable[[StepContext, Condition], bool] | None = None
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    exhaustion_policy: FailurePolicy | None = None
    requires: tuple[str, ...] = ()
    produces: tuple[str, ...] = ()
    when: Callable[[DeploymentSpec], bool] | None = None
    retry_policy: RetryPolicy = ONE_SHOT
    guidance: str = ""
    subject: Callable[[StepContext], ResourceRef] | None = None

    def applies(self, spec: DeploymentSpec) -> bool:
        return self.when is None or self.when(spec)

    def missing_inputs(self, state: DeploymentState) -> list[str]:
        return [name for name in self.requires if not state.is_set(name)]

    def already_satisfied(self, state: DeploymentState) -> bool:
        return bool(self.produces) and all(state.is_set(name) for name in self.produces)

    def next_step_hint(self, spec: DeploymentSpec) -> str:
        if not self.guidance:
            return ""
        return self.guidance.format(
            app=spec.app_name,
            namespace=spec.namespace,
            service=spec.service_name,
            ingress=spec.ingress_name,
            hostname=spec.hostname or "",
            cluster=spec.cluster.name,
            region=spec.cluster.region,
        )

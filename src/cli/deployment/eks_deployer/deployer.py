"""EKS deployer.

Entry points for the forward pipeline (``run_deployment``), the reversal
pipeline (``run_deletion``) and standalone diagnostics, plus the console
presentation used by the CLI.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from loguru import logger
from rich.panel import Panel
from rich.table import Table

from src.cli.deployment.base import BaseDeployer
from src.cli.shared.console import CLIConsole

from .clients import DeploymentClients, build_deployment_clients
from .constants import DEFAULT_CONSTANTS, DeploymentConstants
from .deletion import DeletionPipeline
from .diagnostics import DiagnosticReport, DiagnosticsCollector
from .errors import ConfigurationError
from .models import (
    CertificateState,
    DeletionResult,
    DeletionTarget,
    DeploymentResult,
    DeploymentSpec,
    DeploymentState,
    Outcome,
    StepStatus,
)
from .pipeline import build_forward_steps
from .probes import ConditionCause
from .retry import CancellationToken, Clock, RetryPolicy
from .sequencer import PipelineRun, StepSequencer

ClientsFactory = Callable[[DeploymentSpec, Path, DeploymentConstants], DeploymentClients]

_OUTCOME_STYLES = {
    Outcome.SUCCESS: "green",
    Outcome.DEGRADED: "yellow",
    Outcome.CANCELLED: "yellow",
    Outcome.FAILED: "red",
}


def certificate_state(spec: DeploymentSpec, run: PipelineRun) -> CertificateState:
    """Where the TLS certificate ended up after a run."""
    if not spec.ssl_enabled:
        return CertificateState.NOT_REQUESTED
    if run.state.certificate_arn:
        return CertificateState.ISSUED
    record = run.record("certificate")
    if record is None or record.attempts == 0:
        return CertificateState.NOT_REQUESTED
    if record.condition is not None and record.condition.cause is ConditionCause.CERTIFICATE_FAILED:
        return CertificateState.FAILED
    return CertificateState.PENDING


class EksDeployer(BaseDeployer):
    """Deploys one containerized application to an existing EKS cluster."""

    def __init__(
        self,
        console: CLIConsole,
        project_root: Path,
        *,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
        clients_factory: ClientsFactory = build_deployment_clients,
        clock: Clock | None = None,
        cancel: CancellationToken | None = None,
        policies: Mapping[str, RetryPolicy] | None = None,
    ) -> None:
        super().__init__(console, project_root)
        self.constants = constants
        self.clients_factory = clients_factory
        self.clock = clock
        self.cancel = cancel or CancellationToken()
        self.policies = dict(policies or {})

    # =========================================================================
    # Entry Points
    # =========================================================================

    def run_deployment(
        self, spec: DeploymentSpec, state: DeploymentState | None = None
    ) -> DeploymentResult:
        """Converge the cluster onto ``spec``.

        The state is written to the artifact directory whatever the outcome,
        so a later ``--resume`` run can pick it up.

        Raises:
            PipelineError: A fatal step failed (diagnostics attached)
        """
        clients = self.clients_factory(spec, self.project_root, self.constants)
        try:
            sequencer = StepSequencer(
                build_forward_steps(self.policies),
                clients=clients,
                constants=self.constants,
                console=self.console,
                clock=self.clock,
                cancel=self.cancel,
                diagnostics=DiagnosticsCollector(
                    clients.cluster, cloud=clients.cloud, constants=self.constants
                ),
            )
            run = sequencer.run(spec, state)
        finally:
            clients.close()

        self.save_state(spec, run.state)
        logger.info(f"Deployment of {spec.app_name} finished: {run.outcome}")
        if run.error is not None:
            raise run.error

        return DeploymentResult(
            outcome=run.outcome,
            state=run.state,
            service_name=spec.service_name,
            namespace=spec.namespace,
            hostname=spec.hostname,
            load_balancer_address=run.state.load_balancer_address,
            certificate_state=certificate_state(spec, run),
            created_resources=tuple(run.state.applied_resources or ()),
            steps=run.records,
            warnings=run.warnings,
            next_steps=run.next_steps,
        )

    def run_deletion(self, target: DeletionTarget, spec: DeploymentSpec) -> DeletionResult:
        """Remove what a deployment of ``spec`` created."""
        clients = self.clients_factory(spec, self.project_root, self.constants)
        try:
            self._ensure_kubeconfig(spec, clients)
            pipeline = DeletionPipeline(
                clients.cluster,
                dns=clients.dns,
                constants=self.constants,
                console=self.console,
                clock=self.clock,
                cancel=self.cancel,
            )
            return pipeline.run(target)
        finally:
            clients.close()

    def run_diagnostics(self, spec: DeploymentSpec) -> DiagnosticReport:
        """Collect a diagnostic report without changing anything."""
        clients = self.clients_factory(spec, self.project_root, self.constants)
        try:
            self._ensure_kubeconfig(spec, clients)
            collector = DiagnosticsCollector(
                clients.cluster, cloud=clients.cloud, constants=self.constants
            )
            return collector.collect(spec)
        finally:
            clients.close()

    def _ensure_kubeconfig(self, spec: DeploymentSpec, clients: DeploymentClients) -> None:
        path = spec.artifact_dir / self.constants.KUBECONFIG_FILE
        if path.exists():
            return
        result = clients.cloud.write_kubeconfig(spec.cluster.name, path)
        if not result.success:
            raise ConfigurationError(
                f"Could not write kubeconfig for cluster '{spec.cluster.name}'",
                details=result.stderr.strip() or None,
                remediation=(
                    f"aws eks update-kubeconfig --name {spec.cluster.name} "
                    f"--region {spec.cluster.region}"
                ),
            )

    # =========================================================================
    # State File
    # =========================================================================

    def state_path(self, spec: DeploymentSpec) -> Path:
        return spec.artifact_dir / self.constants.STATE_FILE

    def save_state(self, spec: DeploymentSpec, state: DeploymentState) -> Path:
        path = self.state_path(spec)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(state.to_dict(), f, indent=2)
        logger.debug(f"Wrote deployment state to {path}")
        return path

    def load_state(self, spec: DeploymentSpec) -> DeploymentState | None:
        path = self.state_path(spec)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        logger.debug(f"Loaded deployment state from {path}")
        return DeploymentState.from_dict(data)

    # =========================================================================
    # CLI Operations
    # =========================================================================

    def deploy(self, **kwargs: Any) -> None:
        """Deploy and print a summary.

        Args:
            spec: The DeploymentSpec to deploy
            resume: Continue from the state file of an earlier run
        """
        spec: DeploymentSpec = kwargs["spec"]
        resume = bool(kwargs.get("resume"))
        if resume and spec.force:
            # Forced steps write new outputs, which a resumed state would reject
            self.warning("--force starts from a fresh state; ignoring --resume")
            resume = False
        state = self.load_state(spec) if resume else None
        if state is not None:
            self.info(f"Resuming from {self.state_path(spec)}")

        result = self.run_deployment(spec, state)
        self.print_summary(result)

    def teardown(self, **kwargs: Any) -> None:
        """Delete the application's resources and print what happened.

        Args:
            spec: The DeploymentSpec that was deployed
            delete_namespace: Also delete a non-default namespace
        """
        spec: DeploymentSpec = kwargs["spec"]
        state = self.load_state(spec)
        target = DeletionTarget.from_spec(
            spec, state=state, delete_namespace=bool(kwargs.get("delete_namespace"))
        )
        result = self.run_deletion(target, spec)
        self.print_deletion(result)
        if result.outcome is Outcome.SUCCESS and state is not None:
            self.state_path(spec).unlink(missing_ok=True)

    def show_status(self, **kwargs: Any) -> None:
        """Collect and print a diagnostic report.

        Args:
            spec: The DeploymentSpec to inspect
        """
        spec: DeploymentSpec = kwargs["spec"]
        with self.create_progress() as progress:
            progress.add_task(f"Collecting diagnostics for {spec.app_name}...", total=None)
            report = self.run_diagnostics(spec)
        self.console.print(
            Panel(report.render(), title=f"Diagnostics: {spec.app_name}", border_style="blue")
        )

    # =========================================================================
    # Presentation
    # =========================================================================

    def print_summary(self, result: DeploymentResult) -> None:
        style = _OUTCOME_STYLES[result.outcome]
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Outcome", f"[{style}]{result.outcome.value}[/{style}]")
        table.add_row("Service", f"{result.service_name} ({result.namespace})")
        table.add_row("URL", result.url or "-")
        table.add_row("Load balancer", result.load_balancer_address or "-")
        table.add_row("Certificate", result.certificate_state.value)
        table.add_row("Image", result.state.image_ref or "-")
        self.console.print(Panel(table, title="Deployment Summary", border_style=style))

        steps = Table(show_header=True, header_style="bold")
        steps.add_column("Step")
        steps.add_column("Status")
        steps.add_column("Attempts", justify="right")
        steps.add_column("Elapsed", justify="right")
        steps.add_column("Detail")
        for record in result.steps:
            steps.add_row(
                record.name,
                _status_markup(record.status),
                str(record.attempts),
                f"{record.elapsed:.0f}s",
                record.message or "",
            )
        self.console.print(steps)

        if result.created_resources:
            self.console.print_subheader("Resources")
            for resource in result.created_resources:
                self.console.print(f"  • {resource}")
        if result.warnings:
            self.console.print_subheader("Warnings")
            for warning in result.warnings:
                self.warning(warning)
        if result.next_steps:
            self.console.print_subheader("Next steps")
            for hint in result.next_steps:
                self.console.print(f"  [cyan]{hint}[/cyan]")

    def print_deletion(self, result: DeletionResult) -> None:
        style = _OUTCOME_STYLES[result.outcome]
        table = Table(show_header=True, header_style="bold")
        table.add_column("Resource")
        table.add_column("Result")
        for name in result.deleted:
            table.add_row(name, "[green]deleted[/green]")
        for name in result.absent:
            table.add_row(name, "[dim]not found[/dim]")
        for name, error in result.failed.items():
            table.add_row(name, f"[red]failed: {error}[/red]")
        self.console.print(table)
        self.console.print(f"[{style}]Deletion {result.outcome.value}[/{style}]")


def _status_markup(status: StepStatus) -> str:
    colors = {
        StepStatus.COMPLETED: "green",
        StepStatus.SKIPPED: "yellow",
        StepStatus.FAILED: "red",
        StepStatus.CANCELLED: "yellow",
    }
    color = colors.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"

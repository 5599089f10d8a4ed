"""Unit tests for the EKS deployer entry points and presentation."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
from rich.console import Console

from src.cli.deployment.eks_deployer.clients import DeploymentClients
from src.cli.deployment.eks_deployer.deployer import EksDeployer, certificate_state
from src.cli.deployment.eks_deployer.errors import ConfigurationError
from src.cli.deployment.eks_deployer.models import (
    CertificateState,
    DeploymentSpec,
    DeploymentState,
    Outcome,
    StepRecord,
)
from src.cli.deployment.eks_deployer.probes import ConditionCause, failed
from src.cli.deployment.eks_deployer.sequencer import PipelineRun
from src.cli.shared.console import CLIConsole
from src.infra.k8s.controller import CommandResult, ResourceRef
from tests.fixtures import FakeClock, FakeCluster, build_fake_clients

SpecFactory = Callable[..., DeploymentSpec]
DOMAIN = {"domain": "example.com", "subdomain": "api"}


def recording_console() -> CLIConsole:
    return CLIConsole(Console(record=True, width=200, force_terminal=False))


def make_deployer(
    clients: DeploymentClients, root: Path, console: CLIConsole | None = None
) -> EksDeployer:
    return EksDeployer(
        console or recording_console(),
        root,
        clients_factory=lambda spec, project_root, constants: clients,
        clock=FakeClock(),
    )


class TestStateFile:
    """Tests for persisting run outputs between invocations."""

    def test_save_and_load(self, spec_factory: SpecFactory, tmp_path: Path) -> None:
        deployer = make_deployer(build_fake_clients(), tmp_path)
        spec = spec_factory()
        state = DeploymentState(image_ref="repo/app:1", manifest_dir=tmp_path / "m")

        path = deployer.save_state(spec, state)

        assert path == spec.artifact_dir / "state.json"
        assert json.loads(path.read_text())["manifest_dir"] == str(tmp_path / "m")
        loaded = deployer.load_state(spec)
        assert loaded is not None
        assert loaded.manifest_dir == tmp_path / "m"

    def test_missing_state_file(self, spec_factory: SpecFactory, tmp_path: Path) -> None:
        assert make_deployer(build_fake_clients(), tmp_path).load_state(spec_factory()) is None

    def test_secrets_never_reach_the_state_file(
        self, spec_factory: SpecFactory, tmp_path: Path
    ) -> None:
        spec = spec_factory(secrets={"API_KEY": "s3cr3t-value"})
        deployer = make_deployer(build_fake_clients(), tmp_path)

        deployer.run_deployment(spec)

        for path in spec.artifact_dir.rglob("*"):
            if path.is_file():
                assert "s3cr3t-value" not in path.read_text()


class TestDeploy:
    """Tests for the CLI-facing deploy operation."""

    def test_prints_summary(self, spec_factory: SpecFactory, tmp_path: Path) -> None:
        console = recording_console()
        deployer = make_deployer(build_fake_clients(), tmp_path, console)

        deployer.deploy(spec=spec_factory())

        output = console.console.export_text()
        assert "Deployment Summary" in output
        assert "app-service (default)" in output
        assert "rollout-wait" in output
        assert "Deployment/default/app" in output

    def test_resume_uses_saved_state(self, spec_factory: SpecFactory, tmp_path: Path) -> None:
        clients = build_fake_clients()
        console = recording_console()
        deployer = make_deployer(clients, tmp_path, console)
        spec = spec_factory()
        deployer.deploy(spec=spec)

        deployer.deploy(spec=spec, resume=True)

        assert "Resuming from" in console.console.export_text()
        assert len(clients.registry.pushed) == 1  # type: ignore[attr-defined]

    def test_force_ignores_resume(self, spec_factory: SpecFactory, tmp_path: Path) -> None:
        """A forced run starts fresh even when asked to resume."""
        clients = build_fake_clients()
        console = recording_console()
        deployer = make_deployer(clients, tmp_path, console)
        deployer.deploy(spec=spec_factory())

        deployer.deploy(spec=spec_factory(force=True), resume=True)

        output = console.console.export_text()
        assert "ignoring --resume" in output
        assert "Resuming from" not in output
        assert len(clients.registry.pushed) == 2  # type: ignore[attr-defined]

    def test_warnings_and_next_steps_are_printed(
        self, spec_factory: SpecFactory, tmp_path: Path
    ) -> None:
        cluster = FakeCluster()
        cluster.rollout_ready = False
        console = recording_console()

        make_deployer(build_fake_clients(cluster=cluster), tmp_path, console).deploy(
            spec=spec_factory()
        )

        output = console.console.export_text()
        assert "degraded" in output
        assert "Next steps" in output
        assert "kubectl rollout status deployment/app -n default" in output


class TestTeardown:
    """Tests for deletion through the deployer."""

    def test_deletes_recorded_resources_and_state(
        self, spec_factory: SpecFactory, tmp_path: Path
    ) -> None:
        cluster = FakeCluster()
        clients = build_fake_clients(cluster=cluster)
        deployer = make_deployer(clients, tmp_path)
        spec = spec_factory()
        deployer.run_deployment(spec)

        deployer.teardown(spec=spec)

        assert ResourceRef("Deployment", "default", "app") in cluster.deleted
        assert ResourceRef("Service", "default", "app-service") in cluster.deleted
        assert not deployer.state_path(spec).exists()

    def test_kubeconfig_written_when_missing(
        self, spec_factory: SpecFactory, tmp_path: Path
    ) -> None:
        clients = build_fake_clients()
        spec = spec_factory()

        make_deployer(clients, tmp_path).teardown(spec=spec)

        assert clients.cloud.kubeconfigs == [spec.artifact_dir / "kubeconfig"]  # type: ignore[attr-defined]

    def test_kubeconfig_failure(self, spec_factory: SpecFactory, tmp_path: Path) -> None:
        clients = build_fake_clients()
        clients.cloud.kubeconfig_result = CommandResult(  # type: ignore[attr-defined]
            success=False, stderr="cluster not found"
        )

        with pytest.raises(ConfigurationError, match="kubeconfig") as excinfo:
            make_deployer(clients, tmp_path).run_diagnostics(spec_factory())

        assert excinfo.value.remediation is not None
        assert "aws eks update-kubeconfig --name production" in excinfo.value.remediation


class TestStatus:
    def test_show_status_prints_report(self, spec_factory: SpecFactory, tmp_path: Path) -> None:
        console = recording_console()

        make_deployer(build_fake_clients(), tmp_path, console).show_status(spec=spec_factory())

        output = console.console.export_text()
        assert "Diagnostics: app" in output
        assert "Root cause:" in output


class TestCertificateState:
    """Tests for summarizing where the certificate ended up."""

    def run_with(self, record: StepRecord | None, arn: str | None = None) -> PipelineRun:
        run = PipelineRun(
            outcome=Outcome.DEGRADED, state=DeploymentState(certificate_arn=arn)
        )
        if record is not None:
            run.records.append(record)
        return run

    def test_without_tls(self, spec_factory: SpecFactory) -> None:
        assert certificate_state(spec_factory(), self.run_with(None)) is (
            CertificateState.NOT_REQUESTED
        )

    def test_issued(self, spec_factory: SpecFactory) -> None:
        spec = spec_factory(ingress_enabled=True, domain=DOMAIN)

        assert certificate_state(spec, self.run_with(None, "arn:cert")) is CertificateState.ISSUED

    def test_failed(self, spec_factory: SpecFactory) -> None:
        spec = spec_factory(ingress_enabled=True, domain=DOMAIN)
        record = StepRecord("certificate")
        record.attempts = 4
        record.condition = failed("VALIDATION_TIMED_OUT", ConditionCause.CERTIFICATE_FAILED)

        assert certificate_state(spec, self.run_with(record)) is CertificateState.FAILED

    def test_pending(self, spec_factory: SpecFactory) -> None:
        spec = spec_factory(ingress_enabled=True, domain=DOMAIN)
        record = StepRecord("certificate")
        record.attempts = 1

        assert certificate_state(spec, self.run_with(record)) is CertificateState.PENDING

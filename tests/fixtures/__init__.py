"""Shared fakes and fixtures for deployment tests.

The fakes keep in-memory state and record the calls made to them, so a
whole pipeline run can be driven without a cluster, an AWS account or a
DNS provider. Time is virtual: ``FakeClock.sleep`` only advances ``now``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from src.cli.deployment.eks_deployer.clients import DeploymentClients
from src.cli.deployment.eks_deployer.models import DeploymentSpec, DeploymentState
from src.cli.deployment.eks_deployer.retry import CancellationToken
from src.cli.deployment.eks_deployer.steps import StepContext
from src.cli.deployment.shell_commands.types import GitStatus
from src.infra.clients import (
    CertificateInfo,
    CertificateStatus,
    ClusterInfo,
    DnsRecord,
    NodegroupInfo,
    ValidationRecord,
)
from src.infra.k8s.controller import (
    CommandResult,
    DeploymentInfo,
    EndpointsInfo,
    EventInfo,
    IngressInfo,
    NodeInfo,
    PodInfo,
    ResourceRef,
    ServiceAccountInfo,
)

ECR_REGISTRY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"
LB_HOSTNAME = "k8s-app-ingress-1234.us-east-1.elb.amazonaws.com"

__all__ = [
    "ECR_REGISTRY",
    "LB_HOSTNAME",
    "FakeCertificates",
    "FakeCharts",
    "FakeClock",
    "FakeCloud",
    "FakeCluster",
    "FakeDns",
    "FakeGit",
    "FakeRegistry",
    "build_fake_clients",
    "fake_clients",
    "fake_clock",
    "make_context",
    "make_spec",
    "mock_console",
    "ok",
    "spec_factory",
]


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(success=True, stdout=stdout)


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Virtual clock; ``sleep`` advances time instantly.

    ``on_sleep`` runs after every sleep, which lets tests change the world
    (or cancel the run) between two polls.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self.current = start
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[FakeClock], None] | None = None

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        if self.on_sleep is not None:
            self.on_sleep(self)

    def advance(self, seconds: float) -> None:
        self.current += seconds


# =============================================================================
# Cluster
# =============================================================================


class FakeCluster:
    """In-memory stand-in for ``KubernetesControllerSync``.

    Applying a Deployment creates ready pods (unless ``rollout_ready`` is
    False); applying an Ingress assigns ``load_balancer_hostname``.
    """

    def __init__(self) -> None:
        self.nodes: list[NodeInfo] = [NodeInfo("node-1", ready=True)]
        self.namespaces: set[str] = {"default", "kube-system"}
        self.resources: dict[ResourceRef, dict[str, Any]] = {}
        self.deployments: dict[tuple[str, str], DeploymentInfo] = {}
        self.pods: dict[tuple[str, str | None], list[PodInfo]] = {}
        self.endpoints: dict[tuple[str, str], EndpointsInfo] = {}
        self.ingresses: dict[tuple[str, str], IngressInfo] = {}
        self.service_accounts: dict[tuple[str, str], ServiceAccountInfo] = {}
        self.events: dict[str, list[EventInfo]] = {}
        self.logs = "server listening on :3000"

        self.rollout_ready = True
        self.load_balancer_hostname = LB_HOSTNAME
        self.apply_errors: list[BaseException] = []
        # Pods added next to the healthy ones on every rollout
        self.stuck_pods: list[PodInfo] = []
        self.revision = 0

        self.applied: list[dict[str, Any]] = []
        self.deleted: list[ResourceRef] = []
        self.deleted_pods: list[str] = []
        self.restarts: list[tuple[str, str]] = []
        self.patches: list[tuple[str, str, str, dict[str, Any]]] = []
        self.calls: list[str] = []

    # -- reads ---------------------------------------------------------------

    def get_nodes(self) -> list[NodeInfo]:
        self.calls.append("get_nodes")
        return list(self.nodes)

    def namespace_exists(self, namespace: str) -> bool:
        return namespace in self.namespaces

    def get_deployment(self, namespace: str, name: str) -> DeploymentInfo | None:
        self.calls.append(f"get_deployment:{namespace}/{name}")
        return self.deployments.get((namespace, name))

    def get_pods(self, namespace: str, label_selector: str | None = None) -> list[PodInfo]:
        return list(self.pods.get((namespace, label_selector), []))

    def get_logs(self, namespace: str, pod: str, *, tail: int = 20) -> str:
        return self.logs

    def get_events(
        self,
        namespace: str,
        *,
        involved_kind: str | None = None,
        involved_name: str | None = None,
        limit: int = 20,
    ) -> list[EventInfo]:
        events = [
            event
            for event in self.events.get(namespace, [])
            if (involved_kind is None or event.involved_kind == involved_kind)
            and (involved_name is None or event.involved_name == involved_name)
        ]
        return events[-limit:]

    def get_endpoints(self, namespace: str, name: str) -> EndpointsInfo | None:
        return self.endpoints.get((namespace, name))

    def get_ingress(self, namespace: str, name: str) -> IngressInfo | None:
        return self.ingresses.get((namespace, name))

    def get_service_account(self, namespace: str, name: str) -> ServiceAccountInfo | None:
        return self.service_accounts.get((namespace, name))

    # -- writes --------------------------------------------------------------

    def create_namespace(self, name: str) -> bool:
        if name in self.namespaces:
            return False
        self.namespaces.add(name)
        return True

    def apply_resource(self, manifest: dict[str, Any]) -> ResourceRef:
        if self.apply_errors:
            raise self.apply_errors.pop(0)
        metadata = manifest["metadata"]
        ref = ResourceRef(manifest["kind"], metadata.get("namespace", ""), metadata["name"])
        self.resources[ref] = manifest
        self.applied.append(manifest)

        if ref.kind == "Deployment":
            self._roll_out(ref, manifest)
        elif ref.kind == "Ingress":
            existing = self.ingresses.get((ref.namespace, ref.name))
            self.ingresses[(ref.namespace, ref.name)] = IngressInfo(
                name=ref.name,
                namespace=ref.namespace,
                hostname=existing.hostname if existing else self.load_balancer_hostname,
                annotations=dict(metadata.get("annotations", {})),
            )
        return ref

    def _roll_out(self, ref: ResourceRef, manifest: dict[str, Any]) -> None:
        replicas = manifest["spec"]["replicas"]
        ready = replicas if self.rollout_ready else 0
        self.revision += 1
        template_hash = f"rev{self.revision}"
        self.deployments[(ref.namespace, ref.name)] = DeploymentInfo(
            name=ref.name,
            namespace=ref.namespace,
            replicas=replicas,
            ready_replicas=ready,
            updated_replicas=replicas,
            available_replicas=ready,
            generation=self.revision,
            observed_generation=self.revision,
            current_template_hash=template_hash,
        )
        # Stuck pods join the current revision unless they carry their own hash
        self.pods[(ref.namespace, f"app={ref.name}")] = [
            PodInfo(
                name=f"{ref.name}-{template_hash}-{index}",
                phase="Running",
                ready=self.rollout_ready,
                creation_timestamp=f"2026-01-01T00:00:0{index}Z",
                template_hash=template_hash,
            )
            for index in range(replicas)
        ] + [
            replace(pod, template_hash=pod.template_hash or template_hash)
            for pod in self.stuck_pods
        ]

    def patch_resource(
        self, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> None:
        self.patches.append((kind, namespace, name, patch))

    def annotate(
        self, kind: str, namespace: str, name: str, annotations: dict[str, str | None]
    ) -> None:
        self.patch_resource(
            kind, namespace, name, {"metadata": {"annotations": annotations}}
        )
        ingress = self.ingresses.get((namespace, name))
        if kind == "Ingress" and ingress is not None:
            for key, value in annotations.items():
                if value is None:
                    ingress.annotations.pop(key, None)
                else:
                    ingress.annotations[key] = value

    def delete_resource(self, kind: str, namespace: str, name: str) -> bool:
        ref = ResourceRef(kind, namespace, name)
        self.deleted.append(ref)
        if kind == "Ingress":
            self.ingresses.pop((namespace, name), None)
        if kind == "Namespace":
            existed = name in self.namespaces
            self.namespaces.discard(name)
            return existed
        return self.resources.pop(ref, None) is not None

    def delete_pod(self, namespace: str, name: str) -> bool:
        self.deleted_pods.append(name)
        for key, pods in self.pods.items():
            if key[0] == namespace:
                self.pods[key] = [pod for pod in pods if pod.name != name]
        return True

    def rollout_restart(self, namespace: str, name: str) -> None:
        self.restarts.append((namespace, name))

    # -- helpers -------------------------------------------------------------

    def install_controller(self, *, with_endpoints: bool = True) -> None:
        """Make the load balancer controller (and its webhook) present."""
        self.deployments[("kube-system", "aws-load-balancer-controller")] = DeploymentInfo(
            name="aws-load-balancer-controller",
            namespace="kube-system",
            replicas=2,
            ready_replicas=2,
            updated_replicas=2,
        )
        if with_endpoints:
            self.endpoints[("kube-system", "aws-load-balancer-webhook-service")] = (
                EndpointsInfo("aws-load-balancer-webhook-service", ["10.0.0.10"])
            )

    def add_event(self, namespace: str, event: EventInfo) -> None:
        self.events.setdefault(namespace, []).append(event)


# =============================================================================
# Cloud, Certificates, DNS
# =============================================================================


class FakeCloud:
    """In-memory stand-in for ``AwsCloudClient``."""

    def __init__(self) -> None:
        self.cluster: ClusterInfo | None = ClusterInfo(
            "production", "ACTIVE", endpoint="https://ABC.gr7.us-east-1.eks.amazonaws.com"
        )
        self.nodegroups: list[NodegroupInfo] = [
            NodegroupInfo("default-workers", "ACTIVE", desired_size=2, min_size=1, max_size=3)
        ]
        self.credentials: tuple[str, str] | None = ("AWS", "ecr-token")
        self.repositories: set[str] = set()
        self.attached: list[tuple[str, str]] = []
        self.scaled: list[tuple[str, int]] = []
        self.created_nodegroups: list[str] = []
        self.service_account_roles: list[str] = []
        self.kubeconfigs: list[Path] = []
        self.kubeconfig_result = ok()

    def describe_cluster(self, name: str) -> ClusterInfo | None:
        return self.cluster

    def write_kubeconfig(self, cluster_name: str, path: Path) -> CommandResult:
        self.kubeconfigs.append(path)
        if self.kubeconfig_result.success:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("apiVersion: v1\nkind: Config\n")
        return self.kubeconfig_result

    def list_nodegroups(self, cluster_name: str) -> list[NodegroupInfo]:
        return list(self.nodegroups)

    def scale_nodegroup(
        self,
        cluster_name: str,
        nodegroup: str,
        *,
        min_size: int,
        max_size: int,
        desired_size: int,
    ) -> None:
        self.scaled.append((nodegroup, desired_size))

    def create_nodegroup(
        self,
        cluster_name: str,
        nodegroup: str,
        *,
        instance_type: str,
        min_size: int,
        max_size: int,
        desired_size: int,
    ) -> CommandResult:
        self.created_nodegroups.append(nodegroup)
        return ok()

    def ensure_service_account_role(
        self,
        cluster_name: str,
        namespace: str,
        name: str,
        policy_arns: Sequence[str],
    ) -> CommandResult:
        self.service_account_roles.append(f"{namespace}/{name}")
        return ok()

    def attach_role_policy(self, role_arn: str, policy_arn: str) -> bool:
        self.attached.append((role_arn, policy_arn))
        return True

    def registry_credentials(self, registry: str) -> tuple[str, str] | None:
        return self.credentials

    def ensure_repository(self, registry: str, repository: str) -> bool:
        created = repository not in self.repositories
        self.repositories.add(repository)
        return created

    def caller_identity(self) -> dict[str, str]:
        return {
            "account": "123456789012",
            "arn": "arn:aws:iam::123456789012:user/deployer",
            "user_id": "AIDAEXAMPLE",
        }


@dataclass
class FakeCertificates:
    """ACM stand-in; ``statuses`` maps an ARN to the statuses it reports in turn.

    The last status of a sequence repeats.
    """

    statuses: dict[str, list[str]] = field(default_factory=dict)
    existing: list[CertificateInfo] = field(default_factory=list)
    requested: list[tuple[str, str | None]] = field(default_factory=list)
    next_statuses: list[list[str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._domains: dict[str, str] = {}

    def request_certificate(
        self,
        domain: str,
        *,
        alternative_names: Sequence[str] = (),
        idempotency_token: str | None = None,
    ) -> str:
        self.requested.append((domain, idempotency_token))
        arn = f"arn:aws:acm:us-east-1:123456789012:certificate/cert-{len(self.requested)}"
        if self.next_statuses:
            self.statuses[arn] = list(self.next_statuses.pop(0))
        else:
            self.statuses.setdefault(arn, [CertificateStatus.ISSUED])
        self._domains[arn] = domain
        return arn

    def describe_certificate(self, arn: str) -> CertificateInfo | None:
        sequence = self.statuses.get(arn)
        if sequence is None:
            return next((cert for cert in self.existing if cert.arn == arn), None)
        status = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        domain = self._domains.get(arn, "")
        return CertificateInfo(
            arn=arn,
            domain=domain,
            status=status,
            validation_records=[
                ValidationRecord(f"_abc.{domain}.", "CNAME", "_xyz.acm-validations.aws.")
            ],
        )

    def list_certificates(self) -> list[CertificateInfo]:
        return list(self.existing)


class FakeDns:
    """Cloudflare stand-in keyed by record name and type."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], DnsRecord] = {}
        self.caa_calls: list[str] = []
        self.upserts: list[DnsRecord] = []

    def upsert_record(
        self,
        zone_id: str,
        name: str,
        record_type: str,
        value: str,
        *,
        proxied: bool = False,
        ttl: int = 1,
    ) -> DnsRecord:
        key = (name, record_type)
        existing = self.records.get(key)
        record = DnsRecord(
            id=existing.id if existing else f"rec-{len(self.records) + 1}",
            zone_id=zone_id,
            name=name,
            type=record_type,
            content=value,
            proxied=proxied,
            ttl=ttl,
        )
        self.records[key] = record
        self.upserts.append(record)
        return record

    def list_records(
        self, zone_id: str, name: str, record_type: str | None = None
    ) -> list[DnsRecord]:
        return [
            record
            for (record_name, kind), record in self.records.items()
            if record_name == name and (record_type is None or kind == record_type)
        ]

    def delete_record(self, zone_id: str, record_id: str) -> bool:
        for key, record in list(self.records.items()):
            if record.id == record_id:
                del self.records[key]
                return True
        return False

    def ensure_caa_records(
        self, zone_id: str, domain: str, issuers: Sequence[str]
    ) -> list[DnsRecord]:
        self.caa_calls.append(domain)
        return []


# =============================================================================
# Build Tools
# =============================================================================


class FakeRegistry:
    def __init__(self) -> None:
        self.local_images: set[str] = set()
        self.built: list[str] = []
        self.pushed: list[str] = []
        self.logins: list[str] = []
        self.push_result = ok()

    def image_exists(self, image_ref: str) -> bool:
        return image_ref in self.local_images

    def build_image(
        self, dockerfile: Path, context: Path, image_ref: str, *, platform: str
    ) -> CommandResult:
        self.built.append(image_ref)
        self.local_images.add(image_ref)
        return ok()

    def login(self, registry: str, username: str, password: str) -> CommandResult:
        self.logins.append(registry)
        return ok()

    def push(self, image_ref: str) -> CommandResult:
        self.pushed.append(image_ref)
        return self.push_result


class FakeCharts:
    def __init__(self, cluster: FakeCluster | None = None) -> None:
        self.cluster = cluster
        self.repos: list[str] = []
        self.releases: list[tuple[str, dict[str, str]]] = []

    def add_repo(self, name: str, url: str) -> CommandResult:
        self.repos.append(name)
        return ok()

    def upgrade_install(
        self,
        release_name: str,
        chart: str | Path,
        namespace: str,
        *,
        set_values: dict[str, str] | None = None,
        timeout: str = "10m",
        wait: bool = True,
    ) -> CommandResult:
        self.releases.append((release_name, dict(set_values or {})))
        if self.cluster is not None:
            self.cluster.install_controller(with_endpoints=False)
        return ok()


class FakeGit:
    def __init__(self, status: GitStatus | None = None) -> None:
        self.status = status or GitStatus(is_git_repo=True, is_clean=True, short_sha="abc1234")

    def get_status(self, cwd: Path | None = None) -> GitStatus:
        return self.status


# =============================================================================
# Factories
# =============================================================================


def make_spec(tmp_path: Path, **overrides: Any) -> DeploymentSpec:
    """A valid spec whose Dockerfile and artifact directory live under tmp_path."""
    dockerfile = tmp_path / "Dockerfile"
    if not dockerfile.exists():
        dockerfile.write_text("FROM node:20-alpine\nCMD [\"node\", \"server.js\"]\n")
    values: dict[str, Any] = {
        "app_name": "app",
        "cluster": {"name": "production", "region": "us-east-1"},
        "registry": ECR_REGISTRY,
        "dockerfile": dockerfile,
        "build_context": tmp_path,
        "artifact_dir": tmp_path / "kubeship",
    }
    values.update(overrides)
    return DeploymentSpec.model_validate(values)


def build_fake_clients(
    *,
    cluster: FakeCluster | None = None,
    http_handler: Callable[[httpx.Request], httpx.Response] | None = None,
    dns: FakeDns | None = None,
    certificates: FakeCertificates | None = None,
) -> DeploymentClients:
    cluster = cluster or FakeCluster()
    handler = http_handler or (lambda request: httpx.Response(200, text="ok"))
    return DeploymentClients(
        cluster=cluster,  # type: ignore[arg-type]
        cloud=FakeCloud(),
        certificates=certificates or FakeCertificates(),
        registry=FakeRegistry(),
        charts=FakeCharts(cluster),
        git=FakeGit(),  # type: ignore[arg-type]
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        dns=dns,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    """Virtual clock starting at t=1000."""
    return FakeClock()


@pytest.fixture
def spec_factory(tmp_path: Path) -> Callable[..., DeploymentSpec]:
    """Build specs rooted in the test's tmp_path."""

    def factory(**overrides: Any) -> DeploymentSpec:
        return make_spec(tmp_path, **overrides)

    return factory


@pytest.fixture
def fake_clients() -> DeploymentClients:
    """Clients backed by in-memory fakes and an always-healthy HTTP endpoint."""
    return build_fake_clients()


@pytest.fixture
def mock_console() -> MagicMock:
    """A ConsoleLike that records calls."""
    return MagicMock()


def make_context(
    spec: DeploymentSpec,
    clients: DeploymentClients,
    *,
    state: DeploymentState | None = None,
    clock: FakeClock | None = None,
) -> StepContext:
    """A step context over fakes, for calling step actions directly."""
    return StepContext(
        spec=spec,
        state=state or DeploymentState(),
        clients=clients,
        console=MagicMock(),
        clock=clock or FakeClock(),
        cancel=CancellationToken(),
    )

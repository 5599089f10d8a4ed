"""Wiring of the external system clients for one deployment."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import httpx

from src.cli.deployment.shell_commands import ShellCommands
from src.cli.deployment.shell_commands.git import GitCommands
from src.infra.aws import AcmCertificateClient, AwsCloudClient
from src.infra.clients import (
    CertificateClient,
    ChartInstaller,
    CloudClient,
    DnsClient,
    RegistryClient,
)
from src.infra.dns import CloudflareDnsClient
from src.infra.k8s import KubernetesControllerSync
from src.infra.k8s.helpers import get_k8s_controller_sync, kubeconfig_key

from .constants import DEFAULT_CONSTANTS, DeploymentConstants
from .models import DeploymentSpec


@dataclass
class DeploymentClients:
    """Every external system a deployment talks to.

    Attributes:
        cluster: Kubernetes API (typed snapshots)
        cloud: EKS, IAM, ECR and STS operations
        certificates: Certificate authority (ACM)
        registry: Image build and push
        charts: Helm chart installer
        git: Repository state used for image tags
        http: Client for the public health check
        dns: DNS provider, when the deployment configures one
    """

    cluster: KubernetesControllerSync
    cloud: CloudClient
    certificates: CertificateClient
    registry: RegistryClient
    charts: ChartInstaller
    git: GitCommands
    http: httpx.Client
    dns: DnsClient | None = None

    def close(self) -> None:
        self.http.close()
        if isinstance(self.dns, CloudflareDnsClient):
            self.dns.close()


def build_deployment_clients(
    spec: DeploymentSpec,
    project_root: Path,
    constants: DeploymentConstants = DEFAULT_CONSTANTS,
) -> DeploymentClients:
    """Create the production clients for a spec.

    Credentials come from the DeploymentSpec and are passed to each client explicitly;
    the process environment is left untouched.
    """
    kubeconfig = spec.artifact_dir / constants.KUBECONFIG_FILE
    commands = ShellCommands(project_root, kubeconfig=kubeconfig)
    region = spec.cluster.region
    session = spec.credentials.boto3_session(region)

    dns: DnsClient | None = None
    if spec.domain is not None and spec.domain.dns is not None:
        dns = CloudflareDnsClient(spec.domain.dns.api_token.get_secret_value())

    return DeploymentClients(
        cluster=get_k8s_controller_sync(kubeconfig_key(kubeconfig)),
        cloud=AwsCloudClient(
            spec.credentials,
            region,
            eksctl=commands.eksctl,
            aws_cli=commands.aws,
            session=session,
        ),
        certificates=AcmCertificateClient(session, region),
        registry=commands.docker,
        charts=commands.helm,
        git=commands.git,
        http=httpx.Client(
            timeout=constants.HEALTH_TIMEOUT_SECONDS, follow_redirects=False
        ),
        dns=dns,
    )

"""Capability interfaces for the external systems a deployment drives.

Every client returns plain data and performs no retries of its own;
waiting and retrying belong to the deployment pipeline. The Kubernetes
side is ``src.infra.k8s.KubernetesControllerSync``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from src.infra.k8s.controller import CommandResult

# =============================================================================
# Data Types
# =============================================================================


class CertificateStatus(StrEnum):
    """ACM certificate lifecycle states."""

    PENDING_VALIDATION = "PENDING_VALIDATION"
    ISSUED = "ISSUED"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    VALIDATION_TIMED_OUT = "VALIDATION_TIMED_OUT"
    REVOKED = "REVOKED"
    FAILED = "FAILED"


@dataclass
class ValidationRecord:
    """DNS record proving domain ownership to the certificate authority."""

    name: str
    type: str
    value: str


@dataclass
class CertificateInfo:
    arn: str
    domain: str
    status: str
    validation_records: list[ValidationRecord] = field(default_factory=list)
    failure_reason: str = ""


@dataclass
class DnsRecord:
    id: str
    zone_id: str
    name: str
    type: str
    content: str
    proxied: bool = False
    ttl: int = 1


@dataclass
class ClusterInfo:
    """Managed control-plane description."""

    name: str
    status: str
    endpoint: str = ""
    version: str = ""


@dataclass
class NodegroupInfo:
    name: str
    status: str
    desired_size: int = 0
    min_size: int = 0
    max_size: int = 0
    instance_types: list[str] = field(default_factory=list)


# =============================================================================
# Interfaces
# =============================================================================


class CertificateClient(Protocol):
    def request_certificate(
        self,
        domain: str,
        *,
        alternative_names: Sequence[str] = (),
        idempotency_token: str | None = None,
    ) -> str: ...

    def describe_certificate(self, arn: str) -> CertificateInfo | None: ...

    def list_certificates(self) -> list[CertificateInfo]: ...


class DnsClient(Protocol):
    def upsert_record(
        self,
        zone_id: str,
        name: str,
        record_type: str,
        value: str,
        *,
        proxied: bool = False,
        ttl: int = 1,
    ) -> DnsRecord: ...

    def list_records(
        self, zone_id: str, name: str, record_type: str | None = None
    ) -> list[DnsRecord]: ...

    def delete_record(self, zone_id: str, record_id: str) -> bool: ...

    def ensure_caa_records(
        self, zone_id: str, domain: str, issuers: Sequence[str]
    ) -> list[DnsRecord]: ...


class RegistryClient(Protocol):
    def image_exists(self, image_ref: str) -> bool: ...

    def build_image(
        self, dockerfile: Path, context: Path, image_ref: str, *, platform: str
    ) -> CommandResult: ...

    def login(self, registry: str, username: str, password: str) -> CommandResult: ...

    def push(self, image_ref: str) -> CommandResult: ...


class ChartInstaller(Protocol):
    def add_repo(self, name: str, url: str) -> CommandResult: ...

    def upgrade_install(
        self,
        release_name: str,
        chart: str | Path,
        namespace: str,
        *,
        set_values: Mapping[str, str] | None = None,
        timeout: str = "10m",
        wait: bool = True,
    ) -> CommandResult: ...


class CloudClient(Protocol):
    """Cloud account operations around the managed cluster."""

    def describe_cluster(self, name: str) -> ClusterInfo | None: ...

    def write_kubeconfig(self, cluster_name: str, path: Path) -> CommandResult: ...

    def list_nodegroups(self, cluster_name: str) -> list[NodegroupInfo]: ...

    def scale_nodegroup(
        self,
        cluster_name: str,
        nodegroup: str,
        *,
        min_size: int,
        max_size: int,
        desired_size: int,
    ) -> None: ...

    def create_nodegroup(
        self,
        cluster_name: str,
        nodegroup: str,
        *,
        instance_type: str,
        min_size: int,
        max_size: int,
        desired_size: int,
    ) -> CommandResult: ...

    def ensure_service_account_role(
        self,
        cluster_name: str,
        namespace: str,
        name: str,
        policy_arns: Sequence[str],
    ) -> CommandResult: ...

    def attach_role_policy(self, role_arn: str, policy_arn: str) -> bool: ...

    def registry_credentials(self, registry: str) -> tuple[str, str] | None: ...

    def ensure_repository(self, registry: str, repository: str) -> bool: ...

    def caller_identity(self) -> dict[str, str]: ...

"""Data model for EKS deployments.

``DeploymentSpec`` is the immutable input of one run. ``DeploymentState``
accumulates the outputs steps produce; each of its fields is written at
most once per run. ``DeploymentResult`` and ``DeletionResult`` are what
the entry points hand back to the CLI.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from src.infra.aws.cloud import ECR_REGISTRY_PATTERN
from src.infra.aws.session import Credentials

from .constants import DEFAULT_CONSTANTS
from .errors import StateConflictError
from .probes import Condition

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def _validate_dns_label(value: str, what: str, max_length: int = 63) -> str:
    if len(value) > max_length or not _DNS_LABEL.match(value):
        raise ValueError(
            f"{what} must be lowercase alphanumeric or '-', start and end with an "
            f"alphanumeric character, and be at most {max_length} characters"
        )
    return value


# =============================================================================
# Deployment Spec
# =============================================================================


class ClusterTarget(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    region: str = Field(min_length=1)


class DnsProviderOptions(BaseModel):
    """Cloudflare zone the application hostname lives in."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    zone_id: str = Field(min_length=1)
    api_token: SecretStr
    proxied: bool = True


class DomainOptions(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    domain: str = Field(min_length=1)
    subdomain: str | None = None
    enable_ssl: bool = True
    certificate_arn: str | None = None
    dns: DnsProviderOptions | None = None

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        return value.strip().rstrip(".").lower()

    @property
    def hostname(self) -> str:
        if self.subdomain:
            return f"{self.subdomain}.{self.domain}"
        return self.domain


class ResourceSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    cpu_request: str = "250m"
    memory_request: str = "256Mi"
    cpu_limit: str = "500m"
    memory_limit: str = "512Mi"


class AutoscalingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    min_replicas: int = Field(default=2, ge=1)
    max_replicas: int = Field(default=10, ge=1)
    target_cpu: int = Field(default=70, ge=1, le=100)
    target_memory: int | None = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def _check_bounds(self) -> AutoscalingSettings:
        if self.max_replicas < self.min_replicas:
            raise ValueError("max_replicas must be >= min_replicas")
        return self


class NodegroupSettings(BaseModel):
    """Managed node group created when the cluster has no ready node."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "default-workers"
    instance_type: str = "t3.medium"
    min_size: int = Field(default=1, ge=0)
    max_size: int = Field(default=3, ge=1)
    desired_size: int = Field(default=2, ge=1)

    @model_validator(mode="after")
    def _check_sizes(self) -> NodegroupSettings:
        if not self.min_size <= self.desired_size <= self.max_size:
            raise ValueError("nodegroup sizes must satisfy min <= desired <= max")
        return self


class DeploymentSpec(BaseModel):
    """Everything one deployment run needs to know. Never mutated once loaded."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    app_name: str
    port: int = Field(default=3000, ge=1, le=65535)
    replicas: int = Field(default=2, ge=1)
    namespace: str = DEFAULT_CONSTANTS.DEFAULT_NAMESPACE
    cluster: ClusterTarget
    credentials: Credentials = Field(default_factory=Credentials)

    # Image
    registry: str | None = None
    image_tag: str | None = None
    dockerfile: Path = Path("Dockerfile")
    build_context: Path = Path(".")
    platform: str = "linux/amd64"

    # Networking
    ingress_enabled: bool = False
    domain: DomainOptions | None = None
    health_check_path: str = "/"

    # Workload
    resources: ResourceSettings = Field(default_factory=ResourceSettings)
    autoscaling: AutoscalingSettings = Field(default_factory=AutoscalingSettings)
    nodegroup: NodegroupSettings = Field(default_factory=NodegroupSettings)
    env: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, SecretStr] = Field(default_factory=dict)
    config_maps: dict[str, str] = Field(default_factory=dict)

    artifact_dir: Path = Path("kubeship")
    force: bool = False

    @field_validator("app_name")
    @classmethod
    def _check_app_name(cls, value: str) -> str:
        # "-service" and "-ingress" suffixes must still fit in 63 characters
        return _validate_dns_label(value, "app_name", max_length=53)

    @field_validator("namespace")
    @classmethod
    def _check_namespace(cls, value: str) -> str:
        return _validate_dns_label(value, "namespace")

    @field_validator("registry")
    @classmethod
    def _check_registry(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().removeprefix("https://").rstrip("/")
        if not re.match(DEFAULT_CONSTANTS.REGISTRY_PATTERN, value):
            raise ValueError(
                f"Invalid registry '{value}': expected host[:port][/path], "
                "e.g. 123456789012.dkr.ecr.us-east-1.amazonaws.com or ghcr.io/org"
            )
        return value

    @field_validator("health_check_path")
    @classmethod
    def _check_health_path(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @model_validator(mode="after")
    def _check_domain_needs_ingress(self) -> DeploymentSpec:
        if self.domain is not None and not self.ingress_enabled:
            raise ValueError("domain requires ingress_enabled: true")
        return self

    # -------------------------------------------------------------------------
    # Derived names
    # -------------------------------------------------------------------------

    @property
    def service_name(self) -> str:
        return f"{self.app_name}-service"

    @property
    def ingress_name(self) -> str:
        return f"{self.app_name}-ingress"

    @property
    def hpa_name(self) -> str:
        return f"{self.app_name}-hpa"

    @property
    def secret_name(self) -> str:
        return f"{self.app_name}-secrets"

    @property
    def config_map_name(self) -> str:
        return f"{self.app_name}-config"

    @property
    def label_selector(self) -> str:
        return f"app={self.app_name}"

    @property
    def hostname(self) -> str | None:
        return self.domain.hostname if self.domain else None

    @property
    def ssl_enabled(self) -> bool:
        return self.domain is not None and self.domain.enable_ssl

    @property
    def dns_enabled(self) -> bool:
        return self.domain is not None and self.domain.dns is not None

    @property
    def is_ecr_registry(self) -> bool:
        return bool(self.registry and ECR_REGISTRY_PATTERN.match(self.registry))

    @property
    def image_repository(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.app_name}"
        return self.app_name


# =============================================================================
# Deployment State
# =============================================================================


@dataclass
class DeploymentState:
    """Outputs accumulated by one run.

    Every field is write-once: setting it again to the same value is a
    no-op, setting it to a different value raises ``StateConflictError``.
    """

    cluster_endpoint: str | None = None
    image_ref: str | None = None
    pull_secret_name: str | None = None
    manifest_dir: Path | None = None
    applied_resources: tuple[str, ...] | None = None
    load_balancer_address: str | None = None
    certificate_arn: str | None = None
    https_enabled: bool | None = None
    dns_record_id: str | None = None
    health_status: str | None = None

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    def get(self, name: str) -> Any:
        self._check_name(name)
        return getattr(self, name)

    def is_set(self, name: str) -> bool:
        return self.get(name) is not None

    def set(self, name: str, value: Any) -> None:
        if isinstance(value, list):
            value = tuple(value)
        current = self.get(name)
        if current is None:
            setattr(self, name, value)
            return
        if current != value:
            raise StateConflictError(name, current, value)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, tuple):
                value = list(value)
            data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeploymentState:
        state = cls()
        for name, value in data.items():
            if name not in cls.field_names() or value is None:
                continue
            if name == "manifest_dir":
                value = Path(value)
            state.set(name, value)
        return state

    def _check_name(self, name: str) -> None:
        if name not in self.field_names():
            raise KeyError(f"Unknown deployment state field: {name}")


# =============================================================================
# Step Records
# =============================================================================


class StepStatus(StrEnum):
    PENDING = "pending"
    APPLYING = "applying"
    WAITING = "waiting"
    READY = "ready"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED, StepStatus.CANCELLED}
)

_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.APPLYING, StepStatus.SKIPPED, StepStatus.COMPLETED, StepStatus.CANCELLED}
    ),
    StepStatus.APPLYING: frozenset(
        {
            StepStatus.WAITING,
            StepStatus.READY,
            StepStatus.RETRYING,
            StepStatus.EXHAUSTED,
            StepStatus.SKIPPED,
            StepStatus.FAILED,
            StepStatus.CANCELLED,
        }
    ),
    StepStatus.WAITING: frozenset(
        {
            StepStatus.READY,
            StepStatus.RETRYING,
            StepStatus.EXHAUSTED,
            StepStatus.SKIPPED,
            StepStatus.FAILED,
            StepStatus.CANCELLED,
        }
    ),
    StepStatus.RETRYING: frozenset(
        {StepStatus.APPLYING, StepStatus.WAITING, StepStatus.CANCELLED}
    ),
    StepStatus.READY: frozenset({StepStatus.COMPLETED}),
    StepStatus.EXHAUSTED: frozenset({StepStatus.SKIPPED, StepStatus.FAILED}),
}


@dataclass
class StepRecord:
    """Progress of one step through its state machine."""

    name: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    elapsed: float = 0.0
    polls: int = 0
    condition: Condition | None = None
    message: str = ""
    history: list[StepStatus] = field(default_factory=lambda: [StepStatus.PENDING])

    def transition(self, status: StepStatus, message: str | None = None) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise ValueError(
                f"Step '{self.name}': invalid transition {self.status} -> {status}"
            )
        self.status = status
        self.history.append(status)
        if message is not None:
            self.message = message


# =============================================================================
# Results
# =============================================================================


class Outcome(StrEnum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CertificateState(StrEnum):
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    ISSUED = "issued"
    FAILED = "failed"


@dataclass
class DeploymentResult:
    """Summary of a finished (or cancelled) forward run."""

    outcome: Outcome
    state: DeploymentState
    service_name: str
    namespace: str
    hostname: str | None = None
    load_balancer_address: str | None = None
    certificate_state: CertificateState = CertificateState.NOT_REQUESTED
    created_resources: tuple[str, ...] = ()
    steps: list[StepRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    @property
    def url(self) -> str | None:
        host = self.hostname if self.state.dns_record_id else None
        host = host or self.load_balancer_address
        if host is None:
            return None
        scheme = "https" if self.state.https_enabled and self.hostname else "http"
        return f"{scheme}://{host}"


@dataclass
class DeletionTarget:
    """What the reversal pipeline removes."""

    app_name: str
    namespace: str = DEFAULT_CONSTANTS.DEFAULT_NAMESPACE
    delete_namespace: bool = False
    dns_zone_id: str | None = None
    hostname: str | None = None
    resources: tuple[str, ...] = ()

    @property
    def service_name(self) -> str:
        return f"{self.app_name}-service"

    @property
    def ingress_name(self) -> str:
        return f"{self.app_name}-ingress"

    @property
    def hpa_name(self) -> str:
        return f"{self.app_name}-hpa"

    @property
    def secret_name(self) -> str:
        return f"{self.app_name}-secrets"

    @property
    def config_map_name(self) -> str:
        return f"{self.app_name}-config"

    @classmethod
    def from_spec(
        cls,
        spec: DeploymentSpec,
        *,
        state: DeploymentState | None = None,
        delete_namespace: bool = False,
    ) -> DeletionTarget:
        zone_id = spec.domain.dns.zone_id if spec.domain and spec.domain.dns else None
        return cls(
            app_name=spec.app_name,
            namespace=spec.namespace,
            delete_namespace=delete_namespace,
            dns_zone_id=zone_id,
            hostname=spec.hostname,
            resources=tuple(state.applied_resources or ()) if state else (),
        )

    @classmethod
    def from_result(
        cls,
        result: DeploymentResult,
        spec: DeploymentSpec,
        *,
        delete_namespace: bool = False,
    ) -> DeletionTarget:
        return cls.from_spec(spec, state=result.state, delete_namespace=delete_namespace)


@dataclass
class DeletionResult:
    deleted: list[str] = field(default_factory=list)
    absent: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    outcome: Outcome = Outcome.SUCCESS

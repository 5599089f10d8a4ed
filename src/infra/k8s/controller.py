"""Abstract Kubernetes controller interface.

Defines the contract for the cluster operations the deployment pipeline
needs. Reads return typed snapshots (or ``None`` when the object does not
exist) so readiness probes never parse command output themselves.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .utils import run_sync

# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CommandResult:
    """Result of a command execution."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


@dataclass(frozen=True)
class ResourceRef:
    """Identifier of a namespaced (or cluster-scoped) Kubernetes object."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceRef:
        """Parse the ``Kind/namespace/name`` (or ``Kind/name``) form."""
        parts = value.split("/")
        if len(parts) == 3:
            return cls(parts[0], parts[1], parts[2])
        if len(parts) == 2:
            return cls(parts[0], "", parts[1])
        raise ValueError(f"Invalid resource reference: {value!r}")


@dataclass
class NodeInfo:
    """Information about a cluster node."""

    name: str
    ready: bool
    instance_type: str = ""
    zone: str = ""
    unschedulable: bool = False


@dataclass
class PodInfo:
    """Information about a Kubernetes pod."""

    name: str
    phase: str
    ready: bool = False
    restarts: int = 0
    wait_reason: str = ""
    wait_message: str = ""
    scheduled: bool = True
    schedule_message: str = ""
    creation_timestamp: str = ""
    node: str = ""
    ip: str = ""
    # pod-template-hash label; identifies the ReplicaSet revision
    template_hash: str = ""
    terminating: bool = False

    @property
    def status(self) -> str:
        """Most specific status: the container wait reason, else the phase."""
        return self.wait_reason or self.phase


@dataclass
class DeploymentInfo:
    """Rollout counters of a Deployment."""

    name: str
    namespace: str
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    available_replicas: int = 0
    generation: int = 0
    observed_generation: int = 0
    # pod-template-hash of the ReplicaSet for the current revision
    current_template_hash: str = ""


@dataclass
class EventInfo:
    """A Kubernetes event about some object."""

    type: str
    reason: str
    message: str
    involved_kind: str = ""
    involved_name: str = ""
    count: int = 1
    last_timestamp: str = ""

    @property
    def is_warning(self) -> bool:
        return self.type == "Warning"


@dataclass
class EndpointsInfo:
    """Resolved network endpoints behind a Service."""

    name: str
    addresses: list[str] = field(default_factory=list)
    not_ready_addresses: list[str] = field(default_factory=list)


@dataclass
class IngressInfo:
    """Ingress snapshot including the provisioned load-balancer address."""

    name: str
    namespace: str
    hostname: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    hosts: list[str] = field(default_factory=list)


@dataclass
class ServiceAccountInfo:
    """Service account with its annotations."""

    name: str
    namespace: str
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def role_arn(self) -> str | None:
        """IAM role bound through IRSA, if any."""
        return self.annotations.get("eks.amazonaws.com/role-arn")


# =============================================================================
# Abstract Controller
# =============================================================================


class KubernetesController(ABC):
    """Abstract base class for Kubernetes operations.

    All methods are async; use ``KubernetesControllerSync`` (or
    ``run_sync()``) from synchronous code. Reads return ``None`` or an empty
    list for absent objects; any other API failure propagates so callers can
    classify it.
    """

    # =========================================================================
    # Nodes & Namespaces
    # =========================================================================

    @abstractmethod
    async def get_nodes(self) -> list[NodeInfo]:
        """List cluster nodes with their readiness."""
        ...

    @abstractmethod
    async def namespace_exists(self, namespace: str) -> bool:
        """Check if a namespace exists."""
        ...

    @abstractmethod
    async def create_namespace(self, name: str) -> bool:
        """Create a namespace if it does not exist.

        Returns:
            True if the namespace was created, False if it already existed
        """
        ...

    # =========================================================================
    # Workloads
    # =========================================================================

    @abstractmethod
    async def get_deployment(self, namespace: str, name: str) -> DeploymentInfo | None:
        """Get rollout counters for a deployment, or None if absent."""
        ...

    @abstractmethod
    async def get_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodInfo]:
        """List pods in a namespace, optionally filtered by label selector."""
        ...

    @abstractmethod
    async def get_logs(self, namespace: str, pod: str, *, tail: int = 20) -> str:
        """Get the last ``tail`` log lines of a pod."""
        ...

    @abstractmethod
    async def delete_pod(self, namespace: str, name: str) -> bool:
        """Delete a pod so its controller recreates it.

        Returns:
            True if deleted, False if it did not exist
        """
        ...

    @abstractmethod
    async def rollout_restart(self, namespace: str, name: str) -> None:
        """Trigger a rolling restart of a deployment."""
        ...

    # =========================================================================
    # Events & Networking
    # =========================================================================

    @abstractmethod
    async def get_events(
        self,
        namespace: str,
        *,
        involved_kind: str | None = None,
        involved_name: str | None = None,
        limit: int = 20,
    ) -> list[EventInfo]:
        """List the most recent events, newest last.

        Args:
            namespace: Namespace to read events from
            involved_kind: Only events about objects of this kind
            involved_name: Only events about the object with this name
            limit: Maximum number of events returned
        """
        ...

    @abstractmethod
    async def get_endpoints(self, namespace: str, name: str) -> EndpointsInfo | None:
        """Get the endpoints behind a service, or None if absent."""
        ...

    @abstractmethod
    async def get_ingress(self, namespace: str, name: str) -> IngressInfo | None:
        """Get an ingress snapshot, or None if absent."""
        ...

    @abstractmethod
    async def get_service_account(
        self, namespace: str, name: str
    ) -> ServiceAccountInfo | None:
        """Get a service account, or None if absent."""
        ...

    # =========================================================================
    # Generic Resource Operations
    # =========================================================================

    @abstractmethod
    async def apply_resource(self, manifest: dict[str, Any]) -> ResourceRef:
        """Create the object, or patch it to the manifest if it already exists."""
        ...

    @abstractmethod
    async def patch_resource(
        self, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> None:
        """Apply a JSON merge patch to an existing object."""
        ...

    @abstractmethod
    async def delete_resource(self, kind: str, namespace: str, name: str) -> bool:
        """Delete an object.

        Returns:
            True if deleted, False if it did not exist
        """
        ...


class KubernetesControllerSync:
    """Blocking facade over a ``KubernetesController``.

    This is the cluster client the deployment pipeline talks to; every call
    runs the async implementation to completion via ``run_sync``.
    """

    def __init__(self, controller: KubernetesController) -> None:
        self._controller = controller

    def get_nodes(self) -> list[NodeInfo]:
        return run_sync(self._controller.get_nodes())

    def namespace_exists(self, namespace: str) -> bool:
        return run_sync(self._controller.namespace_exists(namespace))

    def create_namespace(self, name: str) -> bool:
        return run_sync(self._controller.create_namespace(name))

    def get_deployment(self, namespace: str, name: str) -> DeploymentInfo | None:
        return run_sync(self._controller.get_deployment(namespace, name))

    def get_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodInfo]:
        return run_sync(self._controller.get_pods(namespace, label_selector))

    def get_logs(self, namespace: str, pod: str, *, tail: int = 20) -> str:
        return run_sync(self._controller.get_logs(namespace, pod, tail=tail))

    def delete_pod(self, namespace: str, name: str) -> bool:
        return run_sync(self._controller.delete_pod(namespace, name))

    def rollout_restart(self, namespace: str, name: str) -> None:
        run_sync(self._controller.rollout_restart(namespace, name))

    def get_events(
        self,
        namespace: str,
        *,
        involved_kind: str | None = None,
        involved_name: str | None = None,
        limit: int = 20,
    ) -> list[EventInfo]:
        return run_sync(
            self._controller.get_events(
                namespace,
                involved_kind=involved_kind,
                involved_name=involved_name,
                limit=limit,
            )
        )

    def get_endpoints(self, namespace: str, name: str) -> EndpointsInfo | None:
        return run_sync(self._controller.get_endpoints(namespace, name))

    def get_ingress(self, namespace: str, name: str) -> IngressInfo | None:
        return run_sync(self._controller.get_ingress(namespace, name))

    def get_service_account(
        self, namespace: str, name: str
    ) -> ServiceAccountInfo | None:
        return run_sync(self._controller.get_service_account(namespace, name))

    def apply_resource(self, manifest: dict[str, Any]) -> ResourceRef:
        return run_sync(self._controller.apply_resource(manifest))

    def patch_resource(
        self, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> None:
        run_sync(self._controller.patch_resource(kind, namespace, name, patch))

    def annotate(
        self, kind: str, namespace: str, name: str, annotations: dict[str, str | None]
    ) -> None:
        """Set annotations; a ``None`` value removes the key."""
        self.patch_resource(
            kind, namespace, name, {"metadata": {"annotations": annotations}}
        )

    def delete_resource(self, kind: str, namespace: str, name: str) -> bool:
        return run_sync(self._controller.delete_resource(kind, namespace, name))

"""Readiness probes.

Each probe is a pure function from the latest snapshot of one resource to a
``Condition``. Probes never call external systems themselves and never
cache: the caller fetches a fresh snapshot for every poll.

Absent snapshots map to ``ABSENT`` (expected early in provisioning),
resources still converging to ``PROVISIONING``, resources stuck in a state
that will not resolve on its own to ``FAILED``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from src.infra.clients import CertificateInfo, CertificateStatus, ClusterInfo
from src.infra.k8s.controller import (
    DeploymentInfo,
    EndpointsInfo,
    EventInfo,
    IngressInfo,
    NodeInfo,
    PodInfo,
)


class ResourceCondition(StrEnum):
    ABSENT = "Absent"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    DEGRADED = "Degraded"
    FAILED = "Failed"


class ConditionCause(StrEnum):
    """Structured cause attached to a non-ready condition."""

    NO_NODES = "NoNodes"
    UNSCHEDULABLE = "Unschedulable"
    IMAGE_PULL_ERROR = "ImagePullError"
    CRASH_LOOP = "CrashLoop"
    CONTAINER_CONFIG_ERROR = "ContainerConfigError"
    WEBHOOK_UNREACHABLE = "WebhookUnreachable"
    CERTIFICATE_PENDING = "CertificatePending"
    CERTIFICATE_FAILED = "CertificateFailed"
    CERTIFICATE_INVALID = "CertificateInvalid"
    IAM_PERMISSION = "IamPermission"
    CLUSTER_UNAVAILABLE = "ClusterUnavailable"
    ENDPOINT_UNHEALTHY = "EndpointUnhealthy"


@dataclass(frozen=True)
class Condition:
    state: ResourceCondition
    reason: str = ""
    cause: ConditionCause | None = None

    @property
    def is_ready(self) -> bool:
        return self.state is ResourceCondition.READY

    @property
    def is_failed(self) -> bool:
        return self.state is ResourceCondition.FAILED

    def __str__(self) -> str:
        text = self.state.value
        if self.cause:
            text += f" ({self.cause.value})"
        if self.reason:
            text += f": {self.reason}"
        return text


def ready(reason: str = "") -> Condition:
    return Condition(ResourceCondition.READY, reason)


def absent(reason: str, cause: ConditionCause | None = None) -> Condition:
    return Condition(ResourceCondition.ABSENT, reason, cause)


def provisioning(reason: str, cause: ConditionCause | None = None) -> Condition:
    return Condition(ResourceCondition.PROVISIONING, reason, cause)


def degraded(reason: str, cause: ConditionCause | None = None) -> Condition:
    return Condition(ResourceCondition.DEGRADED, reason, cause)


def failed(reason: str, cause: ConditionCause | None = None) -> Condition:
    return Condition(ResourceCondition.FAILED, reason, cause)


# =============================================================================
# Message Classifiers
# =============================================================================

# Pod wait reasons that will not clear without intervention.
TERMINAL_WAIT_REASONS: dict[str, ConditionCause] = {
    "ErrImagePull": ConditionCause.IMAGE_PULL_ERROR,
    "ImagePullBackOff": ConditionCause.IMAGE_PULL_ERROR,
    "InvalidImageName": ConditionCause.IMAGE_PULL_ERROR,
    "CrashLoopBackOff": ConditionCause.CRASH_LOOP,
    "CreateContainerConfigError": ConditionCause.CONTAINER_CONFIG_ERROR,
}

_LOAD_BALANCER_ERROR_REASONS = ("FailedBuildModel", "FailedDeployModel")
_UNAUTHORIZED_MARKERS = ("unauthorizedoperation", "not authorized", "accessdenied")
_CERTIFICATE_MARKERS = (
    "certificate arn",
    "certificatenotfound",
    "unsupportedcertificate",
    "certificate not found",
)


def is_unauthorized_event(event: EventInfo) -> bool:
    """Load balancer controller event reporting missing IAM permissions."""
    message = event.message.lower()
    return (
        event.is_warning
        and event.reason in _LOAD_BALANCER_ERROR_REASONS
        and any(marker in message for marker in _UNAUTHORIZED_MARKERS)
    )


def is_certificate_event(event: EventInfo) -> bool:
    """Load balancer controller event rejecting the configured certificate."""
    message = event.message.lower()
    return (
        event.is_warning
        and event.reason in _LOAD_BALANCER_ERROR_REASONS
        and any(marker in message for marker in _CERTIFICATE_MARKERS)
    )


def pod_problem(pod: PodInfo) -> ConditionCause | None:
    if pod.wait_reason in TERMINAL_WAIT_REASONS:
        return TERMINAL_WAIT_REASONS[pod.wait_reason]
    if not pod.scheduled:
        if "no nodes available" in pod.schedule_message.lower():
            return ConditionCause.NO_NODES
        return ConditionCause.UNSCHEDULABLE
    return None


# =============================================================================
# Probes
# =============================================================================


def cluster_readiness(cluster: ClusterInfo | None) -> Condition:
    if cluster is None:
        return absent("Cluster not found", ConditionCause.CLUSTER_UNAVAILABLE)
    if cluster.status == "ACTIVE":
        return ready(f"Cluster {cluster.name} is active")
    if cluster.status in ("CREATING", "UPDATING"):
        return provisioning(f"Cluster is {cluster.status.lower()}")
    return failed(
        f"Cluster is {cluster.status or 'in an unknown state'}",
        ConditionCause.CLUSTER_UNAVAILABLE,
    )


def node_readiness(nodes: Sequence[NodeInfo]) -> Condition:
    """At least one node reporting Ready is enough to schedule onto."""
    if not nodes:
        return absent("No nodes registered with the cluster", ConditionCause.NO_NODES)
    ready_nodes = [node for node in nodes if node.ready]
    if ready_nodes:
        return ready(f"{len(ready_nodes)}/{len(nodes)} nodes ready")
    return provisioning(f"{len(nodes)} nodes registered, none ready yet", ConditionCause.NO_NODES)


def controller_readiness(deployment: DeploymentInfo | None) -> Condition:
    """A controller is up once a single replica is ready."""
    if deployment is None:
        return absent("Controller deployment not found")
    if deployment.ready_replicas >= 1:
        return ready(f"{deployment.ready_replicas}/{deployment.replicas} replicas ready")
    return provisioning(f"0/{deployment.replicas} replicas ready")


def webhook_readiness(
    deployment: DeploymentInfo | None, endpoints: EndpointsInfo | None
) -> Condition:
    """Controller ready and its admission webhook reachable.

    A ready controller whose webhook service has no endpoints still rejects
    ingress and service creation, so both must hold.
    """
    controller = controller_readiness(deployment)
    if not controller.is_ready:
        return controller
    if endpoints is None or not endpoints.addresses:
        return provisioning(
            "Controller ready but webhook service has no endpoints",
            ConditionCause.WEBHOOK_UNREACHABLE,
        )
    return ready(f"Webhook reachable at {len(endpoints.addresses)} endpoints")


def pod_scheduling_readiness(pods: Sequence[PodInfo]) -> Condition:
    if not pods:
        return absent("No pods created yet")

    for pod in pods:
        cause = pod_problem(pod)
        if cause in (
            ConditionCause.IMAGE_PULL_ERROR,
            ConditionCause.CRASH_LOOP,
            ConditionCause.CONTAINER_CONFIG_ERROR,
        ):
            detail = f": {pod.wait_message}" if pod.wait_message else ""
            return failed(f"Pod {pod.name} is {pod.wait_reason}{detail}", cause)

    unscheduled = [pod for pod in pods if not pod.scheduled]
    if unscheduled:
        pod = unscheduled[0]
        return degraded(
            f"Pod {pod.name} cannot be scheduled: {pod.schedule_message}",
            pod_problem(pod),
        )

    ready_pods = [pod for pod in pods if pod.ready]
    if len(ready_pods) == len(pods):
        return ready(f"{len(pods)} pods ready")
    return provisioning(f"{len(ready_pods)}/{len(pods)} pods ready")


def rollout_readiness(
    deployment: DeploymentInfo | None, pods: Sequence[PodInfo]
) -> Condition:
    """Deployment fully rolled out, with pod problems taking precedence.

    Only pods of the current revision are classified: a crash-looping pod of
    the previous ReplicaSet is being replaced and says nothing about the new
    one. Terminating pods are ignored for the same reason.
    """
    if deployment is None:
        return absent("Deployment not found")

    current = [pod for pod in pods if not pod.terminating]
    if deployment.current_template_hash:
        current = [
            pod for pod in current if pod.template_hash == deployment.current_template_hash
        ]

    scheduling = pod_scheduling_readiness(current)
    if (
        scheduling.is_failed
        and not deployment.current_template_hash
        and len(current) > deployment.replicas
    ):
        # Revision unknown and old pods still around: the failing pod may
        # belong to the ReplicaSet being scaled down.
        return provisioning(
            f"Rollout in progress, {scheduling.reason}", scheduling.cause
        )
    if scheduling.state in (ResourceCondition.FAILED, ResourceCondition.DEGRADED):
        return scheduling

    desired = deployment.replicas
    if (
        deployment.observed_generation >= deployment.generation
        and deployment.updated_replicas >= desired
        and deployment.ready_replicas >= desired
    ):
        return ready(f"{deployment.ready_replicas}/{desired} replicas ready")
    return provisioning(
        f"{deployment.ready_replicas}/{desired} replicas ready, "
        f"{deployment.updated_replicas} updated"
    )


def ingress_address_readiness(
    ingress: IngressInfo | None, events: Sequence[EventInfo] = ()
) -> Condition:
    if ingress is None:
        return absent("Ingress not found")
    if ingress.hostname:
        return ready(f"Load balancer at {ingress.hostname}")

    for event in reversed(events):
        if is_certificate_event(event):
            return failed(event.message, ConditionCause.CERTIFICATE_INVALID)
        if is_unauthorized_event(event):
            return failed(event.message, ConditionCause.IAM_PERMISSION)
    return provisioning("Waiting for the load balancer address")


def certificate_readiness(certificate: CertificateInfo | None) -> Condition:
    if certificate is None:
        return absent("Certificate not found")

    status = certificate.status
    if status == CertificateStatus.ISSUED:
        return ready("Certificate issued")
    if status == CertificateStatus.PENDING_VALIDATION:
        return provisioning("Waiting for DNS validation", ConditionCause.CERTIFICATE_PENDING)
    if status == CertificateStatus.INACTIVE:
        return degraded("Certificate is inactive", ConditionCause.CERTIFICATE_FAILED)
    if status in (
        CertificateStatus.FAILED,
        CertificateStatus.VALIDATION_TIMED_OUT,
        CertificateStatus.REVOKED,
        CertificateStatus.EXPIRED,
    ):
        detail = f" ({certificate.failure_reason})" if certificate.failure_reason else ""
        return failed(f"Certificate {status}{detail}", ConditionCause.CERTIFICATE_FAILED)
    return provisioning(f"Certificate status {status or 'unknown'}")


def http_readiness(status_code: int | None, error: str = "") -> Condition:
    """Classify one HTTP health check result (2xx/3xx is healthy)."""
    if status_code is None:
        return provisioning(error or "No response", ConditionCause.ENDPOINT_UNHEALTHY)
    if 200 <= status_code < 400:
        return ready(f"HTTP {status_code}")
    return provisioning(f"HTTP {status_code}", ConditionCause.ENDPOINT_UNHEALTHY)


def absence_readiness(snapshot: object | None, description: str) -> Condition:
    """Ready once the object is gone; used when waiting on deletions."""
    if snapshot is None:
        return ready(f"{description} deleted")
    return provisioning(f"{description} still terminating")

"""Failure diagnostics.

When a step aborts the pipeline, ``DiagnosticsCollector`` gathers what the
cluster looks like at that moment into a ``DiagnosticReport``. Every
section is collected independently: a section that cannot be fetched is
recorded in ``collection_errors`` and the rest of the report is still
built. ``collect`` itself never raises.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger

from src.infra.clients import CloudClient
from src.infra.k8s.controller import (
    EventInfo,
    KubernetesControllerSync,
    NodeInfo,
    PodInfo,
    ResourceRef,
)

from .constants import DEFAULT_CONSTANTS, DeploymentConstants
from .models import DeploymentSpec
from .probes import Condition, ConditionCause, is_certificate_event, is_unauthorized_event

UNKNOWN_CAUSE_SUMMARY = "Could not determine cause"


class RootCause(StrEnum):
    NO_NODES_AVAILABLE = "NoNodesAvailable"
    INSUFFICIENT_IAM_PERMISSION = "InsufficientIAMPermission"
    IMAGE_PULL_FAILURE = "ImagePullFailure"
    CERTIFICATE_INVALID = "CertificateInvalid"
    UNKNOWN = "Unknown"


_RECOMMENDATIONS: dict[RootCause, list[str]] = {
    RootCause.NO_NODES_AVAILABLE: [
        "No node is ready to run pods. Check the node groups: "
        "eksctl get nodegroup --cluster {cluster} --region {region}",
        "Scale a node group up: eksctl scale nodegroup --cluster {cluster} "
        "--name {nodegroup} --nodes 2 --region {region}",
    ],
    RootCause.INSUFFICIENT_IAM_PERMISSION: [
        "The load balancer controller role lacks permissions. Attach "
        "AmazonEC2ReadOnlyAccess and ElasticLoadBalancingFullAccess to it, then "
        "restart it: kubectl rollout restart deployment/aws-load-balancer-controller -n kube-system",
    ],
    RootCause.IMAGE_PULL_FAILURE: [
        "The cluster cannot pull the image. Check the image name and tag.",
        "Private registries need an imagePullSecret in namespace {namespace}.",
        "Node roles need AmazonEC2ContainerRegistryReadOnly to pull from ECR.",
    ],
    RootCause.CERTIFICATE_INVALID: [
        "The ingress references a certificate that is missing or not issued. "
        "Check it with: aws acm list-certificates --region {region}",
    ],
    RootCause.UNKNOWN: [
        "Inspect the pods: kubectl describe pods -l app={app} -n {namespace}",
    ],
}


@dataclass
class ComponentHealth:
    """Pod phases of one kube-system component."""

    name: str
    phases: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.phases:
            return "Not found"
        if all(phase == "Running" for phase in self.phases):
            return "OK"
        return "Unhealthy"


@dataclass
class DiagnosticReport:
    """Snapshot of the cluster around a failed step."""

    app_name: str
    namespace: str
    step: str | None = None
    condition: Condition | None = None
    subject: ResourceRef | None = None
    pods: list[PodInfo] = field(default_factory=list)
    controller_pods: list[PodInfo] = field(default_factory=list)
    system_components: list[ComponentHealth] = field(default_factory=list)
    events: list[EventInfo] = field(default_factory=list)
    log_pod: str | None = None
    logs: str = ""
    nodes: list[NodeInfo] = field(default_factory=list)
    identity: dict[str, str] = field(default_factory=dict)
    root_cause: RootCause = RootCause.UNKNOWN
    summary: str = UNKNOWN_CAUSE_SUMMARY
    recommendations: list[str] = field(default_factory=list)
    collection_errors: dict[str, str] = field(default_factory=dict)

    def render(self) -> str:
        """Plain-text report suitable for ``DeploymentError.details``."""
        lines: list[str] = []
        if self.step:
            lines.append(f"Failed step: {self.step}")
        if self.condition is not None:
            lines.append(f"Condition: {self.condition}")
        if self.subject is not None:
            lines.append(f"Object: {self.subject}")
        lines.append(f"Root cause: {self.root_cause.value} - {self.summary}")

        if self.nodes:
            lines.append("")
            lines.append("Nodes:")
            for node in self.nodes:
                status = "Ready" if node.ready else "NotReady"
                lines.append(f"  {node.name}  {status}  {node.instance_type}".rstrip())

        for title, pods in (("Pods", self.pods), ("Controller pods", self.controller_pods)):
            if pods:
                lines.append("")
                lines.append(f"{title}:")
                for pod in pods:
                    lines.append(
                        f"  {pod.name}  {pod.status}  restarts={pod.restarts}"
                        + (f"  {pod.wait_message}" if pod.wait_message else "")
                    )

        if self.system_components:
            lines.append("")
            lines.append("System components:")
            for component in self.system_components:
                lines.append(f"  {component.name}: {component.status}")

        if self.events:
            lines.append("")
            lines.append("Recent events:")
            for event in self.events:
                target = f"{event.involved_kind}/{event.involved_name}"
                lines.append(f"  {event.type}  {event.reason}  {target}: {event.message}")

        if self.logs:
            lines.append("")
            lines.append(f"Logs ({self.log_pod}):")
            lines.extend(f"  {line}" for line in self.logs.splitlines())

        if self.identity.get("arn"):
            lines.append("")
            lines.append(f"Identity: {self.identity['arn']}")

        if self.recommendations:
            lines.append("")
            lines.append("Recommendations:")
            lines.extend(f"  - {item}" for item in self.recommendations)

        if self.collection_errors:
            lines.append("")
            lines.append("Could not collect:")
            for section, error in self.collection_errors.items():
                lines.append(f"  {section}: {error}")

        return "\n".join(lines)


class DiagnosticsCollector:
    """Gathers a ``DiagnosticReport`` from the cluster and cloud account."""

    def __init__(
        self,
        cluster: KubernetesControllerSync,
        *,
        cloud: CloudClient | None = None,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
    ) -> None:
        self.cluster = cluster
        self.cloud = cloud
        self.constants = constants

    def collect(
        self,
        spec: DeploymentSpec,
        *,
        step: str | None = None,
        condition: Condition | None = None,
        subject: ResourceRef | None = None,
    ) -> DiagnosticReport:
        """Build the report; ``subject`` is the object the failed step was converging."""
        report = DiagnosticReport(
            app_name=spec.app_name,
            namespace=spec.namespace,
            step=step,
            condition=condition,
            subject=subject,
        )
        self._section(report, "pods", lambda: self._app_pods(spec, report))
        if spec.ingress_enabled:
            self._section(
                report,
                "controller_pods",
                lambda: self._controller_pods(report),
            )
        self._section(report, "system_components", lambda: self._components(report))
        self._section(report, "events", lambda: self._events(spec, report))
        self._section(report, "logs", lambda: self._logs(spec, report))
        self._section(report, "nodes", lambda: self._nodes(report))
        if self.cloud is not None:
            self._section(report, "identity", lambda: self._identity(report))

        self._classify(report, spec)
        logger.debug(
            f"Diagnostics for {spec.app_name}: {report.root_cause} "
            f"({len(report.collection_errors)} sections unavailable)"
        )
        return report

    # =========================================================================
    # Sections
    # =========================================================================

    def _section(self, report: DiagnosticReport, name: str, fetch: Callable[[], Any]) -> None:
        try:
            fetch()
        except Exception as e:
            logger.warning(f"Diagnostics: could not collect {name}: {e}")
            report.collection_errors[name] = str(e) or type(e).__name__

    def _app_pods(self, spec: DeploymentSpec, report: DiagnosticReport) -> None:
        report.pods = self.cluster.get_pods(spec.namespace, spec.label_selector)

    def _controller_pods(self, report: DiagnosticReport) -> None:
        c = self.constants
        report.controller_pods = self.cluster.get_pods(
            c.SYSTEM_NAMESPACE, f"app.kubernetes.io/name={c.CONTROLLER_NAME}"
        )

    def _components(self, report: DiagnosticReport) -> None:
        for name in self.constants.SYSTEM_COMPONENTS:
            pods = self.cluster.get_pods(self.constants.SYSTEM_NAMESPACE, f"k8s-app={name}")
            report.system_components.append(
                ComponentHealth(name, [pod.phase for pod in pods])
            )

    def _events(self, spec: DeploymentSpec, report: DiagnosticReport) -> None:
        limit = self.constants.EVENT_LIMIT
        events = [
            event
            for event in self.cluster.get_events(spec.namespace, limit=limit * 5)
            if _relevant(event, spec)
        ]
        subject = report.subject
        if subject is not None:
            # Last, so trimming to the limit keeps them
            events += [
                event
                for event in self.cluster.get_events(subject.namespace, limit=limit * 5)
                if _about(event, subject) and event not in events
            ]
        report.events = events[-limit:]

    def _logs(self, spec: DeploymentSpec, report: DiagnosticReport) -> None:
        if not report.pods:
            return
        newest = max(report.pods, key=lambda pod: pod.creation_timestamp)
        report.log_pod = newest.name
        report.logs = self.cluster.get_logs(
            spec.namespace, newest.name, tail=self.constants.LOG_TAIL_LINES
        )

    def _nodes(self, report: DiagnosticReport) -> None:
        report.nodes = self.cluster.get_nodes()

    def _identity(self, report: DiagnosticReport) -> None:
        if self.cloud is not None:
            report.identity = self.cloud.caller_identity()

    # =========================================================================
    # Root Cause
    # =========================================================================

    def _classify(self, report: DiagnosticReport, spec: DeploymentSpec) -> None:
        cause = report.condition.cause if report.condition else None
        events = report.events

        if (
            cause is ConditionCause.NO_NODES
            or ("nodes" not in report.collection_errors and not any(n.ready for n in report.nodes))
            or any("no nodes available" in pod.schedule_message.lower() for pod in report.pods)
        ):
            report.root_cause = RootCause.NO_NODES_AVAILABLE
            report.summary = "No ready nodes are available to schedule pods"
        elif cause is ConditionCause.IAM_PERMISSION or any(
            is_unauthorized_event(event) for event in events
        ):
            report.root_cause = RootCause.INSUFFICIENT_IAM_PERMISSION
            report.summary = "The load balancer controller is not authorized to call AWS"
        elif cause is ConditionCause.IMAGE_PULL_ERROR or any(
            pod.wait_reason in self.constants.IMAGE_PULL_REASONS for pod in report.pods
        ):
            report.root_cause = RootCause.IMAGE_PULL_FAILURE
            report.summary = "The cluster cannot pull the application image"
        elif cause in (
            ConditionCause.CERTIFICATE_INVALID,
            ConditionCause.CERTIFICATE_FAILED,
        ) or any(is_certificate_event(event) for event in events):
            report.root_cause = RootCause.CERTIFICATE_INVALID
            report.summary = "The TLS certificate is invalid or was not issued"
        else:
            report.root_cause = RootCause.UNKNOWN
            report.summary = UNKNOWN_CAUSE_SUMMARY

        values = {
            "app": spec.app_name,
            "namespace": spec.namespace,
            "cluster": spec.cluster.name,
            "region": spec.cluster.region,
            "nodegroup": spec.nodegroup.name,
        }
        report.recommendations = [
            item.format(**values) for item in _RECOMMENDATIONS[report.root_cause]
        ]
        if any(pod.wait_reason == "CreateContainerConfigError" for pod in report.pods):
            report.recommendations.append(
                "A ConfigMap or Secret referenced by the pod is missing."
            )
        unhealthy = [c.name for c in report.system_components if c.status == "Unhealthy"]
        if unhealthy:
            report.recommendations.append(
                f"Unhealthy system components ({', '.join(unhealthy)}) often cause "
                "stuck deployments; if aws-node fails, the node role may lack the CNI policy."
            )


# Kinds whose objects are named after their owner plus a generated suffix
_OWNED_KINDS = ("Pod", "ReplicaSet")


def _about(event: EventInfo, subject: ResourceRef) -> bool:
    """Events about ``subject`` itself or the pods it owns."""
    if event.involved_kind == subject.kind and event.involved_name == subject.name:
        return True
    return event.involved_kind in _OWNED_KINDS and event.involved_name.startswith(
        f"{subject.name}-"
    )


def _relevant(event: EventInfo, spec: DeploymentSpec) -> bool:
    """Events about the application's own objects and pods.

    Names match exactly so that a neighbouring ``app2`` does not leak into
    the report of ``app``.
    """
    names = {
        spec.app_name,
        spec.service_name,
        spec.ingress_name,
        spec.hpa_name,
        spec.secret_name,
        spec.config_map_name,
    }
    if event.involved_name in names:
        return True
    return event.involved_kind in _OWNED_KINDS and event.involved_name.startswith(
        f"{spec.app_name}-"
    )

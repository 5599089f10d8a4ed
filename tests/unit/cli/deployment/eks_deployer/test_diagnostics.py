"""Unit tests for failure diagnostics."""

from __future__ import annotations

from collections.abc import Callable

from src.cli.deployment.eks_deployer.diagnostics import (
    UNKNOWN_CAUSE_SUMMARY,
    DiagnosticsCollector,
    RootCause,
)
from src.cli.deployment.eks_deployer.models import DeploymentSpec
from src.cli.deployment.eks_deployer.probes import ConditionCause, failed
from src.infra.k8s.controller import EventInfo, NodeInfo, PodInfo, ResourceRef
from tests.fixtures import FakeCloud, FakeCluster

SpecFactory = Callable[..., DeploymentSpec]


class BrokenEventsCluster(FakeCluster):
    def get_events(self, namespace: str, **kwargs: object) -> list[EventInfo]:
        raise ConnectionError("API server unreachable")


class TestCollect:
    """Tests for section collection."""

    def test_collects_pods_logs_and_nodes(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        cluster.pods[("default", "app=app")] = [
            PodInfo("app-old", "Running", creation_timestamp="2026-01-01T00:00:00Z"),
            PodInfo("app-new", "Running", creation_timestamp="2026-01-02T00:00:00Z"),
        ]
        cluster.logs = "listening on :3000\nGET /health 200"

        report = DiagnosticsCollector(cluster, cloud=FakeCloud()).collect(spec_factory())

        assert [pod.name for pod in report.pods] == ["app-old", "app-new"]
        assert report.log_pod == "app-new"
        assert "GET /health 200" in report.logs
        assert report.nodes[0].name == "node-1"
        assert report.identity["account"] == "123456789012"
        assert [c.name for c in report.system_components] == ["aws-node", "coredns", "kube-proxy"]
        assert report.collection_errors == {}

    def test_failing_section_does_not_abort(self, spec_factory: SpecFactory) -> None:
        """One unreachable API leaves the rest of the report intact."""
        cluster = BrokenEventsCluster()

        report = DiagnosticsCollector(cluster).collect(spec_factory())

        assert report.collection_errors == {"events": "API server unreachable"}
        assert report.nodes
        assert "Could not collect:" in report.render()

    def test_only_application_events_are_kept(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        cluster.add_event("default", EventInfo("Warning", "BackOff", "x", "Pod", "app-1"))
        cluster.add_event("default", EventInfo("Warning", "BackOff", "y", "Pod", "other-1"))

        report = DiagnosticsCollector(cluster).collect(spec_factory())

        assert [event.involved_name for event in report.events] == ["app-1"]

    def test_similarly_named_application_is_excluded(self, spec_factory: SpecFactory) -> None:
        """Events of ``app2`` do not belong in the report of ``app``."""
        cluster = FakeCluster()
        for kind, name in [
            ("Deployment", "app"),
            ("Ingress", "app-ingress"),
            ("Pod", "app-5d8f7c-x2k"),
            ("Deployment", "app2"),
            ("Pod", "app2-7b9d4f-q8z"),
            ("Service", "app-backend"),
        ]:
            cluster.add_event("default", EventInfo("Warning", "Reason", "m", kind, name))

        report = DiagnosticsCollector(cluster).collect(spec_factory())

        assert [event.involved_name for event in report.events] == [
            "app",
            "app-ingress",
            "app-5d8f7c-x2k",
        ]

    def test_subject_events_from_its_own_namespace(self, spec_factory: SpecFactory) -> None:
        """A failing controller in kube-system brings its own events and its pods' events."""
        cluster = FakeCluster()
        cluster.add_event(
            "kube-system",
            EventInfo(
                "Warning",
                "FailedCreate",
                "serviceaccount aws-load-balancer-controller not found",
                "ReplicaSet",
                "aws-load-balancer-controller-6c9f",
            ),
        )
        cluster.add_event(
            "kube-system",
            EventInfo(
                "Warning",
                "ProgressDeadlineExceeded",
                "deployment exceeded its progress deadline",
                "Deployment",
                "aws-load-balancer-controller",
            ),
        )
        cluster.add_event(
            "kube-system", EventInfo("Warning", "BackOff", "x", "Pod", "coredns-1")
        )
        subject = ResourceRef("Deployment", "kube-system", "aws-load-balancer-controller")

        report = DiagnosticsCollector(cluster).collect(
            spec_factory(ingress_enabled=True), step="controller-install", subject=subject
        )

        assert [event.reason for event in report.events] == [
            "FailedCreate",
            "ProgressDeadlineExceeded",
        ]
        rendered = report.render()
        assert "Object: Deployment/kube-system/aws-load-balancer-controller" in rendered
        assert "serviceaccount aws-load-balancer-controller not found" in rendered

    def test_subject_events_survive_the_limit(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        for index in range(30):
            cluster.add_event("default", EventInfo("Normal", "Pulled", "ok", "Pod", f"app-{index}"))
        cluster.add_event(
            "kube-system",
            EventInfo("Warning", "FailedMount", "x", "Deployment", "aws-load-balancer-controller"),
        )
        subject = ResourceRef("Deployment", "kube-system", "aws-load-balancer-controller")

        report = DiagnosticsCollector(cluster).collect(spec_factory(), subject=subject)

        assert report.events[-1].reason == "FailedMount"

    def test_controller_pods_only_with_ingress(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        cluster.pods[("kube-system", "app.kubernetes.io/name=aws-load-balancer-controller")] = [
            PodInfo("alb-1", "Running", ready=True)
        ]

        without = DiagnosticsCollector(cluster).collect(spec_factory())
        with_ingress = DiagnosticsCollector(cluster).collect(spec_factory(ingress_enabled=True))

        assert without.controller_pods == []
        assert [pod.name for pod in with_ingress.controller_pods] == ["alb-1"]


class TestRootCause:
    """Tests for root-cause classification."""

    def test_no_ready_nodes(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        cluster.nodes = [NodeInfo("node-1", ready=False)]

        report = DiagnosticsCollector(cluster).collect(spec_factory())

        assert report.root_cause is RootCause.NO_NODES_AVAILABLE
        assert any("eksctl scale nodegroup" in item for item in report.recommendations)

    def test_image_pull(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        cluster.pods[("default", "app=app")] = [
            PodInfo("app-1", "Pending", wait_reason="ImagePullBackOff")
        ]

        report = DiagnosticsCollector(cluster).collect(spec_factory())

        assert report.root_cause is RootCause.IMAGE_PULL_FAILURE

    def test_iam_permission_from_events(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        cluster.add_event(
            "default",
            EventInfo(
                "Warning",
                "FailedDeployModel",
                "AccessDenied: not authorized to perform elasticloadbalancing:CreateLoadBalancer",
                "Ingress",
                "app-ingress",
            ),
        )

        report = DiagnosticsCollector(cluster).collect(spec_factory(ingress_enabled=True))

        assert report.root_cause is RootCause.INSUFFICIENT_IAM_PERMISSION

    def test_certificate_from_condition(self, spec_factory: SpecFactory) -> None:
        report = DiagnosticsCollector(FakeCluster()).collect(
            spec_factory(),
            step="certificate",
            condition=failed("timed out", ConditionCause.CERTIFICATE_FAILED),
        )

        assert report.root_cause is RootCause.CERTIFICATE_INVALID
        assert "Failed step: certificate" in report.render()

    def test_unknown(self, spec_factory: SpecFactory) -> None:
        report = DiagnosticsCollector(FakeCluster()).collect(spec_factory())

        assert report.root_cause is RootCause.UNKNOWN
        assert report.summary == UNKNOWN_CAUSE_SUMMARY
        assert report.recommendations == [
            "Inspect the pods: kubectl describe pods -l app=app -n default"
        ]

    def test_missing_config_adds_recommendation(self, spec_factory: SpecFactory) -> None:
        cluster = FakeCluster()
        cluster.pods[("default", "app=app")] = [
            PodInfo("app-1", "Pending", wait_reason="CreateContainerConfigError")
        ]

        report = DiagnosticsCollector(cluster).collect(spec_factory())

        assert any("ConfigMap or Secret" in item for item in report.recommendations)

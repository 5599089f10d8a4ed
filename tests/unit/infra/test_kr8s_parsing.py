"""Unit tests for converting raw Kubernetes objects into snapshots."""

from __future__ import annotations

import pytest
from kr8s.asyncio.objects import Deployment, Ingress

from src.infra.k8s.kr8s_controller import (
    current_template_hash,
    parse_deployment,
    parse_endpoints,
    parse_event,
    parse_ingress,
    parse_node,
    parse_pod,
    resource_class,
)


class TestParsePod:
    """Tests for pod status extraction."""

    def test_waiting_container(self) -> None:
        pod = parse_pod(
            {
                "metadata": {"name": "app-1", "creationTimestamp": "2026-01-01T00:00:00Z"},
                "spec": {"nodeName": "node-1"},
                "status": {
                    "phase": "Pending",
                    "containerStatuses": [
                        {
                            "restartCount": 0,
                            "state": {
                                "waiting": {
                                    "reason": "ImagePullBackOff",
                                    "message": "Back-off pulling image",
                                }
                            },
                        }
                    ],
                },
            }
        )

        assert pod.status == "ImagePullBackOff"
        assert pod.wait_message == "Back-off pulling image"
        assert pod.node == "node-1"
        assert not pod.ready

    def test_restarts_are_summed_and_first_reason_wins(self) -> None:
        pod = parse_pod(
            {
                "metadata": {"name": "app-1"},
                "status": {
                    "phase": "Running",
                    "containerStatuses": [
                        {"restartCount": 3, "state": {"waiting": {"reason": "CrashLoopBackOff"}}},
                        {"restartCount": 1, "state": {"terminated": {"reason": "Error"}}},
                    ],
                },
            }
        )

        assert pod.restarts == 4
        assert pod.wait_reason == "CrashLoopBackOff"

    def test_unschedulable(self) -> None:
        pod = parse_pod(
            {
                "metadata": {"name": "app-1"},
                "status": {
                    "phase": "Pending",
                    "conditions": [
                        {
                            "type": "PodScheduled",
                            "status": "False",
                            "message": "0/2 nodes are available: 2 Insufficient cpu.",
                        }
                    ],
                },
            }
        )

        assert not pod.scheduled
        assert "Insufficient cpu" in pod.schedule_message

    def test_ready_pod(self) -> None:
        pod = parse_pod(
            {
                "metadata": {"name": "app-1"},
                "status": {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]},
            }
        )

        assert pod.ready
        assert pod.status == "Running"

    def test_revision_and_termination(self) -> None:
        pod = parse_pod(
            {
                "metadata": {
                    "name": "app-5d8f7c-x2k",
                    "labels": {"app": "app", "pod-template-hash": "5d8f7c"},
                    "deletionTimestamp": "2026-01-01T00:01:00Z",
                },
                "status": {"phase": "Running"},
            }
        )

        assert pod.template_hash == "5d8f7c"
        assert pod.terminating

    def test_defaults_without_labels(self) -> None:
        pod = parse_pod({"metadata": {"name": "app-1"}, "status": {}})

        assert pod.template_hash == ""
        assert not pod.terminating


def test_parse_node() -> None:
    node = parse_node(
        {
            "metadata": {
                "name": "ip-10-0-1-5",
                "labels": {"node.kubernetes.io/instance-type": "t3.medium"},
            },
            "status": {"conditions": [{"type": "Ready", "status": "True"}]},
        }
    )

    assert node.ready
    assert node.instance_type == "t3.medium"
    assert not node.unschedulable


def test_parse_deployment() -> None:
    deployment = parse_deployment(
        {
            "metadata": {"name": "app", "namespace": "default", "generation": 3},
            "spec": {"replicas": 2},
            "status": {"readyReplicas": 1, "updatedReplicas": 2, "observedGeneration": 2},
        }
    )

    assert (deployment.replicas, deployment.ready_replicas) == (2, 1)
    assert deployment.generation == 3
    assert deployment.observed_generation == 2
    assert deployment.available_replicas == 0


def replicaset(name: str, revision: str, template_hash: str, owner: str = "app") -> dict:
    return {
        "metadata": {
            "name": name,
            "labels": {"pod-template-hash": template_hash},
            "annotations": {"deployment.kubernetes.io/revision": revision},
            "ownerReferences": [{"kind": "Deployment", "name": owner}],
        }
    }


class TestCurrentTemplateHash:
    """Tests for finding the ReplicaSet of the deployment's current revision."""

    DEPLOYMENT = {
        "metadata": {
            "name": "app",
            "annotations": {"deployment.kubernetes.io/revision": "2"},
        }
    }

    def test_matches_revision(self) -> None:
        replicasets = [
            replicaset("app-7b9d", "1", "7b9d"),
            replicaset("app-5d8f", "2", "5d8f"),
        ]

        assert current_template_hash(self.DEPLOYMENT, replicasets) == "5d8f"

    def test_ignores_other_owners(self) -> None:
        replicasets = [replicaset("app2-9c1e", "2", "9c1e", owner="app2")]

        assert current_template_hash(self.DEPLOYMENT, replicasets) == ""

    def test_no_revision_yet(self) -> None:
        deployment = {"metadata": {"name": "app"}}

        assert current_template_hash(deployment, [replicaset("app-5d8f", "1", "5d8f")]) == ""


def test_parse_event_timestamp_fallbacks() -> None:
    event = parse_event(
        {
            "type": "Warning",
            "reason": "FailedDeployModel",
            "message": "AccessDenied",
            "involvedObject": {"kind": "Ingress", "name": "app-ingress"},
            "count": None,
            "metadata": {"creationTimestamp": "2026-01-01T00:00:00Z"},
        }
    )

    assert event.is_warning
    assert event.count == 1
    assert event.last_timestamp == "2026-01-01T00:00:00Z"


def test_parse_endpoints() -> None:
    endpoints = parse_endpoints(
        {
            "metadata": {"name": "aws-load-balancer-webhook-service"},
            "subsets": [
                {"addresses": [{"ip": "10.0.0.1"}], "notReadyAddresses": [{"ip": "10.0.0.2"}]}
            ],
        }
    )

    assert endpoints.addresses == ["10.0.0.1"]
    assert endpoints.not_ready_addresses == ["10.0.0.2"]


def test_endpoints_without_subsets() -> None:
    assert parse_endpoints({"metadata": {"name": "svc"}, "subsets": None}).addresses == []


def test_parse_ingress() -> None:
    ingress = parse_ingress(
        {
            "metadata": {
                "name": "app-ingress",
                "namespace": "default",
                "annotations": {"alb.ingress.kubernetes.io/scheme": "internet-facing"},
            },
            "spec": {"rules": [{"host": "api.example.com"}, {"http": {}}]},
            "status": {"loadBalancer": {"ingress": [{"hostname": "lb.elb.amazonaws.com"}]}},
        }
    )

    assert ingress.hostname == "lb.elb.amazonaws.com"
    assert ingress.hosts == ["api.example.com"]
    assert ingress.annotations["alb.ingress.kubernetes.io/scheme"] == "internet-facing"


def test_ingress_without_address() -> None:
    assert parse_ingress({"metadata": {"name": "app-ingress"}, "status": {}}).hostname == ""


class TestResourceClass:
    def test_known_kinds(self) -> None:
        assert resource_class("Deployment") is Deployment
        assert resource_class("Ingress") is Ingress

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError, match="Unsupported resource kind: CronJob"):
            resource_class("CronJob")

"""Kubernetes infrastructure abstraction layer.

Typed, async access to the cluster API (kr8s backend) plus a blocking
facade for the synchronous deployment pipeline.

Example:
    from src.infra.k8s import get_k8s_controller_sync

    cluster = get_k8s_controller_sync("build/kubeconfig")
    ready = [node.name for node in cluster.get_nodes() if node.ready]
"""

from .controller import (
    CommandResult,
    DeploymentInfo,
    EndpointsInfo,
    EventInfo,
    IngressInfo,
    KubernetesController,
    KubernetesControllerSync,
    NodeInfo,
    PodInfo,
    ResourceRef,
    ServiceAccountInfo,
)
from .helpers import get_k8s_controller, get_k8s_controller_sync, kubeconfig_key
from .kr8s_controller import Kr8sController
from .utils import run_sync

__all__ = [
    # Controller classes
    "KubernetesController",
    "KubernetesControllerSync",
    "Kr8sController",
    # Data classes
    "CommandResult",
    "DeploymentInfo",
    "EndpointsInfo",
    "EventInfo",
    "IngressInfo",
    "NodeInfo",
    "PodInfo",
    "ResourceRef",
    "ServiceAccountInfo",
    # Utilities
    "get_k8s_controller",
    "get_k8s_controller_sync",
    "kubeconfig_key",
    "run_sync",
]

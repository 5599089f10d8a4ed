"""Kr8s-based implementation of KubernetesController.

Uses the kr8s library for native async Kubernetes operations. Raw API
objects are converted into the typed snapshots of ``controller.py`` by the
module-level ``parse_*`` functions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import kr8s
from kr8s.asyncio.objects import (
    APIObject,
    ConfigMap,
    Deployment,
    Endpoints,
    Event,
    HorizontalPodAutoscaler,
    Ingress,
    Namespace,
    Node,
    Pod,
    ReplicaSet,
    Secret,
    Service,
    ServiceAccount,
)
from loguru import logger

from .controller import (
    DeploymentInfo,
    EndpointsInfo,
    EventInfo,
    IngressInfo,
    KubernetesController,
    NodeInfo,
    PodInfo,
    ResourceRef,
    ServiceAccountInfo,
)

RESOURCE_CLASSES: dict[str, type[APIObject]] = {
    "ConfigMap": ConfigMap,
    "Deployment": Deployment,
    "HorizontalPodAutoscaler": HorizontalPodAutoscaler,
    "Ingress": Ingress,
    "Namespace": Namespace,
    "Pod": Pod,
    "Secret": Secret,
    "Service": Service,
    "ServiceAccount": ServiceAccount,
}

# Top-level manifest keys that may be merged into an existing object.
_PATCHABLE_KEYS = ("spec", "data", "stringData")


def resource_class(kind: str) -> type[APIObject]:
    """Look up the kr8s class for a manifest kind."""
    try:
        return RESOURCE_CLASSES[kind]
    except KeyError:
        raise ValueError(f"Unsupported resource kind: {kind}") from None


# =============================================================================
# Snapshot Parsing
# =============================================================================


def parse_node(raw: dict[str, Any]) -> NodeInfo:
    metadata = raw.get("metadata", {})
    labels = metadata.get("labels", {})
    conditions = raw.get("status", {}).get("conditions", [])
    ready = any(
        c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
    )
    return NodeInfo(
        name=metadata.get("name", ""),
        ready=ready,
        instance_type=labels.get("node.kubernetes.io/instance-type", ""),
        zone=labels.get("topology.kubernetes.io/zone", ""),
        unschedulable=bool(raw.get("spec", {}).get("unschedulable", False)),
    )


def parse_pod(raw: dict[str, Any]) -> PodInfo:
    """Convert a raw pod into PodInfo.

    The first waiting (or errored termination) reason across containers wins,
    mirroring what ``kubectl get pods`` shows in its STATUS column.
    """
    metadata = raw.get("metadata", {})
    spec = raw.get("spec", {})
    status = raw.get("status", {})

    wait_reason = ""
    wait_message = ""
    restarts = 0
    container_statuses = status.get("containerStatuses", [])
    for cs in container_statuses:
        restarts += cs.get("restartCount", 0)
        state = cs.get("state", {})
        if wait_reason:
            continue
        if "waiting" in state:
            wait_reason = state["waiting"].get("reason", "")
            wait_message = state["waiting"].get("message", "")
        elif "terminated" in state and state["terminated"].get("reason") == "Error":
            wait_reason = "Error"
            wait_message = state["terminated"].get("message", "")

    scheduled = True
    schedule_message = ""
    ready = False
    for condition in status.get("conditions", []):
        if condition.get("type") == "PodScheduled" and condition.get("status") == "False":
            scheduled = False
            schedule_message = condition.get("message", "")
        elif condition.get("type") == "Ready":
            ready = condition.get("status") == "True"

    return PodInfo(
        name=metadata.get("name", ""),
        phase=status.get("phase", "Unknown"),
        ready=ready,
        restarts=restarts,
        wait_reason=wait_reason,
        wait_message=wait_message,
        scheduled=scheduled,
        schedule_message=schedule_message,
        creation_timestamp=metadata.get("creationTimestamp", ""),
        node=spec.get("nodeName", ""),
        ip=status.get("podIP", ""),
        template_hash=(metadata.get("labels") or {}).get("pod-template-hash", ""),
        terminating=bool(metadata.get("deletionTimestamp")),
    )


def parse_deployment(raw: dict[str, Any]) -> DeploymentInfo:
    metadata = raw.get("metadata", {})
    status = raw.get("status", {})
    return DeploymentInfo(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        replicas=raw.get("spec", {}).get("replicas", 0),
        ready_replicas=status.get("readyReplicas", 0),
        updated_replicas=status.get("updatedReplicas", 0),
        available_replicas=status.get("availableReplicas", 0),
        generation=metadata.get("generation", 0),
        observed_generation=status.get("observedGeneration", 0),
    )


REVISION_ANNOTATION = "deployment.kubernetes.io/revision"


def current_template_hash(
    deployment: dict[str, Any], replicasets: list[dict[str, Any]]
) -> str:
    """pod-template-hash of the ReplicaSet the deployment currently rolls out.

    The deployment controller stamps the same revision annotation on the
    Deployment and on the ReplicaSet it owns for that revision.
    """
    metadata = deployment.get("metadata", {})
    revision = (metadata.get("annotations") or {}).get(REVISION_ANNOTATION)
    if not revision:
        return ""
    for rs in replicasets:
        rs_meta = rs.get("metadata", {})
        owners = rs_meta.get("ownerReferences") or []
        if not any(
            owner.get("kind") == "Deployment" and owner.get("name") == metadata.get("name")
            for owner in owners
        ):
            continue
        if (rs_meta.get("annotations") or {}).get(REVISION_ANNOTATION) == revision:
            return (rs_meta.get("labels") or {}).get("pod-template-hash", "")
    return ""


def parse_event(raw: dict[str, Any]) -> EventInfo:
    involved = raw.get("involvedObject", {})
    return EventInfo(
        type=raw.get("type", ""),
        reason=raw.get("reason", ""),
        message=raw.get("message", ""),
        involved_kind=involved.get("kind", ""),
        involved_name=involved.get("name", ""),
        count=raw.get("count") or 1,
        last_timestamp=raw.get("lastTimestamp")
        or raw.get("eventTime")
        or raw.get("metadata", {}).get("creationTimestamp", "")
        or "",
    )


def parse_endpoints(raw: dict[str, Any]) -> EndpointsInfo:
    addresses: list[str] = []
    not_ready: list[str] = []
    for subset in raw.get("subsets") or []:
        addresses.extend(a.get("ip", "") for a in subset.get("addresses") or [])
        not_ready.extend(a.get("ip", "") for a in subset.get("notReadyAddresses") or [])
    return EndpointsInfo(
        name=raw.get("metadata", {}).get("name", ""),
        addresses=addresses,
        not_ready_addresses=not_ready,
    )


def parse_ingress(raw: dict[str, Any]) -> IngressInfo:
    metadata = raw.get("metadata", {})
    lb_entries = raw.get("status", {}).get("loadBalancer", {}).get("ingress") or []
    hostname = ""
    if lb_entries:
        hostname = lb_entries[0].get("hostname") or lb_entries[0].get("ip") or ""
    hosts = [
        rule["host"] for rule in raw.get("spec", {}).get("rules") or [] if rule.get("host")
    ]
    return IngressInfo(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        hostname=hostname,
        annotations=dict(metadata.get("annotations") or {}),
        hosts=hosts,
    )


def _event_sort_key(event: EventInfo) -> str:
    return event.last_timestamp


class Kr8sController(KubernetesController):
    """Kubernetes controller using the kr8s library.

    Note: The kr8s API client is NOT cached because it's tied to the event loop
    that was running when created. ``run_sync()`` creates a new loop per call,
    so a fresh client is created for each operation.

    Args:
        kubeconfig: Optional kubeconfig path; defaults to the kr8s lookup
            (``KUBECONFIG`` or ``~/.kube/config``)
    """

    def __init__(self, kubeconfig: Path | str | None = None) -> None:
        self._kubeconfig = str(kubeconfig) if kubeconfig else None

    async def _get_api(self) -> Any:  # Returns kr8s._api.Api
        if self._kubeconfig and Path(self._kubeconfig).exists():
            return await kr8s.asyncio.api(kubeconfig=self._kubeconfig)
        return await kr8s.asyncio.api()

    # =========================================================================
    # Nodes & Namespaces
    # =========================================================================

    async def get_nodes(self) -> list[NodeInfo]:
        api = await self._get_api()
        return [parse_node(node.raw) async for node in Node.list(api=api)]

    async def namespace_exists(self, namespace: str) -> bool:
        api = await self._get_api()
        try:
            await Namespace.get(namespace, api=api)
        except kr8s.NotFoundError:
            return False
        return True

    async def create_namespace(self, name: str) -> bool:
        if await self.namespace_exists(name):
            return False
        api = await self._get_api()
        namespace = Namespace({"metadata": {"name": name}}, api=api)
        await namespace.create()
        logger.info(f"Created namespace {name}")
        return True

    # =========================================================================
    # Workloads
    # =========================================================================

    async def get_deployment(self, namespace: str, name: str) -> DeploymentInfo | None:
        api = await self._get_api()
        try:
            deployment = await Deployment.get(name, namespace=namespace, api=api)
        except kr8s.NotFoundError:
            return None
        info = parse_deployment(deployment.raw)
        selector = deployment.raw.get("spec", {}).get("selector", {}).get("matchLabels")
        if selector:
            replicasets = [
                rs.raw
                async for rs in ReplicaSet.list(
                    namespace=namespace, label_selector=selector, api=api
                )
            ]
            info.current_template_hash = current_template_hash(deployment.raw, replicasets)
        return info

    async def get_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodInfo]:
        api = await self._get_api()
        kwargs: dict[str, Any] = {"namespace": namespace, "api": api}
        if label_selector:
            kwargs["label_selector"] = label_selector
        return [parse_pod(pod.raw) async for pod in Pod.list(**kwargs)]

    async def get_logs(self, namespace: str, pod: str, *, tail: int = 20) -> str:
        api = await self._get_api()
        try:
            target = await Pod.get(pod, namespace=namespace, api=api)
        except kr8s.NotFoundError:
            return ""
        lines = [line async for line in target.logs(tail_lines=tail)]
        return "\n".join(lines)

    async def delete_pod(self, namespace: str, name: str) -> bool:
        return await self.delete_resource("Pod", namespace, name)

    async def rollout_restart(self, namespace: str, name: str) -> None:
        # Same template annotation `kubectl rollout restart` sets.
        restarted_at = datetime.now(UTC).isoformat()
        await self.patch_resource(
            "Deployment",
            namespace,
            name,
            {
                "spec": {
                    "template": {
                        "metadata": {
                            "annotations": {
                                "kubectl.kubernetes.io/restartedAt": restarted_at
                            }
                        }
                    }
                }
            },
        )

    # =========================================================================
    # Events & Networking
    # =========================================================================

    async def get_events(
        self,
        namespace: str,
        *,
        involved_kind: str | None = None,
        involved_name: str | None = None,
        limit: int = 20,
    ) -> list[EventInfo]:
        api = await self._get_api()
        selectors = []
        if involved_kind:
            selectors.append(f"involvedObject.kind={involved_kind}")
        if involved_name:
            selectors.append(f"involvedObject.name={involved_name}")
        kwargs: dict[str, Any] = {"namespace": namespace, "api": api}
        if selectors:
            kwargs["field_selector"] = ",".join(selectors)

        events = [parse_event(event.raw) async for event in Event.list(**kwargs)]
        events.sort(key=_event_sort_key)
        return events[-limit:]

    async def get_endpoints(self, namespace: str, name: str) -> EndpointsInfo | None:
        api = await self._get_api()
        try:
            endpoints = await Endpoints.get(name, namespace=namespace, api=api)
        except kr8s.NotFoundError:
            return None
        return parse_endpoints(endpoints.raw)

    async def get_ingress(self, namespace: str, name: str) -> IngressInfo | None:
        api = await self._get_api()
        try:
            ingress = await Ingress.get(name, namespace=namespace, api=api)
        except kr8s.NotFoundError:
            return None
        return parse_ingress(ingress.raw)

    async def get_service_account(
        self, namespace: str, name: str
    ) -> ServiceAccountInfo | None:
        api = await self._get_api()
        try:
            account = await ServiceAccount.get(name, namespace=namespace, api=api)
        except kr8s.NotFoundError:
            return None
        return ServiceAccountInfo(
            name=name,
            namespace=namespace,
            annotations=dict(account.raw.get("metadata", {}).get("annotations") or {}),
        )

    # =========================================================================
    # Generic Resource Operations
    # =========================================================================

    async def apply_resource(self, manifest: dict[str, Any]) -> ResourceRef:
        kind = manifest["kind"]
        metadata = manifest.get("metadata", {})
        name = metadata["name"]
        namespace = metadata.get("namespace", "")
        cls = resource_class(kind)
        ref = ResourceRef(kind, namespace, name)

        api = await self._get_api()
        try:
            existing = await cls.get(name, namespace=namespace or None, api=api)
        except kr8s.NotFoundError:
            await cls(manifest, api=api).create()
            logger.debug(f"Created {ref}")
            return ref

        patch: dict[str, Any] = {
            key: manifest[key] for key in _PATCHABLE_KEYS if key in manifest
        }
        patch["metadata"] = {
            "labels": metadata.get("labels", {}),
            "annotations": metadata.get("annotations", {}),
        }
        await existing.patch(patch)
        logger.debug(f"Patched {ref}")
        return ref

    async def patch_resource(
        self, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> None:
        api = await self._get_api()
        obj = await resource_class(kind).get(name, namespace=namespace or None, api=api)
        await obj.patch(patch)
        logger.debug(f"Patched {kind}/{namespace}/{name}")

    async def delete_resource(self, kind: str, namespace: str, name: str) -> bool:
        api = await self._get_api()
        try:
            obj = await resource_class(kind).get(
                name, namespace=namespace or None, api=api
            )
            await obj.delete()
        except kr8s.NotFoundError:
            logger.debug(f"{kind}/{namespace}/{name} already absent")
            return False
        logger.info(f"Deleted {kind}/{namespace}/{name}")
        return True

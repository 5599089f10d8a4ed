"""Kubernetes manifest generation.

Manifests are plain dicts rendered from the ``DeploymentSpec``. They are
written as numbered YAML files (``01-deployment.yaml``...) into the
artifact directory so they can be inspected or applied by hand; the apply
order is the file order.

The application Secret is never written to disk: it is rendered in memory
and applied directly.
"""

from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from .constants import DEFAULT_CONSTANTS, DeploymentConstants
from .models import DeploymentSpec

Manifest = dict[str, Any]

_MANIFEST_GLOB = "[0-9][0-9]-*.yaml"


def manifest_filename(index: int, manifest: Manifest) -> str:
    return f"{index:02d}-{manifest['kind'].lower()}.yaml"


def load_manifests(directory: Path) -> list[Manifest]:
    """Load manifests written by ``ManifestRenderer.write`` in apply order."""
    manifests: list[Manifest] = []
    for path in sorted(directory.glob(_MANIFEST_GLOB)):
        with open(path) as f:
            loaded = yaml.safe_load(f)
        if loaded:
            manifests.append(loaded)
    return manifests


class ManifestRenderer:
    """Renders the application's Kubernetes objects."""

    def __init__(
        self, spec: DeploymentSpec, constants: DeploymentConstants = DEFAULT_CONSTANTS
    ) -> None:
        self.spec = spec
        self.constants = constants

    def _metadata(self, name: str, **extra: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "name": name,
            "namespace": self.spec.namespace,
            "labels": {"app": self.spec.app_name},
        }
        metadata.update(extra)
        return metadata

    # =========================================================================
    # Objects
    # =========================================================================

    def namespace(self) -> Manifest | None:
        if self.spec.namespace == self.constants.DEFAULT_NAMESPACE:
            return None
        return {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": self.spec.namespace},
        }

    def secret(self) -> Manifest | None:
        if not self.spec.secrets:
            return None
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": self._metadata(self.spec.secret_name),
            "type": "Opaque",
            "stringData": {
                key: value.get_secret_value() for key, value in self.spec.secrets.items()
            },
        }

    def config_map(self) -> Manifest | None:
        if not self.spec.config_maps:
            return None
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self._metadata(self.spec.config_map_name),
            "data": dict(self.spec.config_maps),
        }

    def pull_secret(self, registry: str, username: str, password: str) -> Manifest:
        """Docker registry credentials secret referenced by ``imagePullSecrets``."""
        auth = base64.b64encode(f"{username}:{password}".encode()).decode()
        config = {
            "auths": {
                registry: {"username": username, "password": password, "auth": auth}
            }
        }
        encoded = base64.b64encode(json.dumps(config).encode()).decode()
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": self._metadata(self.constants.PULL_SECRET_NAME),
            "type": "kubernetes.io/dockerconfigjson",
            "data": {".dockerconfigjson": encoded},
        }

    def deployment(self, image_ref: str, pull_secret_name: str | None = None) -> Manifest:
        spec = self.spec
        env: list[dict[str, Any]] = [{"name": "PORT", "value": str(spec.port)}]
        env += [{"name": name, "value": value} for name, value in spec.env.items()]
        env += [
            {
                "name": key,
                "valueFrom": {"secretKeyRef": {"name": spec.secret_name, "key": key}},
            }
            for key in spec.secrets
        ]

        container: dict[str, Any] = {
            "name": spec.app_name,
            "image": image_ref,
            "ports": [{"containerPort": spec.port, "name": "http"}],
            "env": env,
            "resources": {
                "requests": {
                    "cpu": spec.resources.cpu_request,
                    "memory": spec.resources.memory_request,
                },
                "limits": {
                    "cpu": spec.resources.cpu_limit,
                    "memory": spec.resources.memory_limit,
                },
            },
            "livenessProbe": {
                "httpGet": {"path": spec.health_check_path, "port": spec.port},
                "initialDelaySeconds": 30,
                "periodSeconds": 10,
                "timeoutSeconds": 5,
                "failureThreshold": 3,
            },
            "readinessProbe": {
                "httpGet": {"path": spec.health_check_path, "port": spec.port},
                "initialDelaySeconds": 5,
                "periodSeconds": 5,
                "timeoutSeconds": 3,
                "failureThreshold": 3,
            },
        }
        if spec.config_maps:
            container["envFrom"] = [{"configMapRef": {"name": spec.config_map_name}}]

        pod_spec: dict[str, Any] = {"containers": [container]}
        if pull_secret_name:
            pod_spec["imagePullSecrets"] = [{"name": pull_secret_name}]

        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": self._metadata(spec.app_name),
            "spec": {
                "replicas": spec.replicas,
                "selector": {"matchLabels": {"app": spec.app_name}},
                "template": {
                    "metadata": {"labels": {"app": spec.app_name}},
                    "spec": pod_spec,
                },
            },
        }

    def service(self) -> Manifest:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self._metadata(self.spec.service_name),
            "spec": {
                "type": "ClusterIP",
                "ports": [
                    {
                        "port": 80,
                        "targetPort": self.spec.port,
                        "protocol": "TCP",
                        "name": "http",
                    }
                ],
                "selector": {"app": self.spec.app_name},
            },
        }

    def autoscaler(self) -> Manifest | None:
        scaling = self.spec.autoscaling
        if not scaling.enabled:
            return None
        metrics: list[dict[str, Any]] = [_utilization_metric("cpu", scaling.target_cpu)]
        if scaling.target_memory:
            metrics.append(_utilization_metric("memory", scaling.target_memory))
        return {
            "apiVersion": "autoscaling/v2",
            "kind": "HorizontalPodAutoscaler",
            "metadata": self._metadata(self.spec.hpa_name),
            "spec": {
                "scaleTargetRef": {
                    "apiVersion": "apps/v1",
                    "kind": "Deployment",
                    "name": self.spec.app_name,
                },
                "minReplicas": scaling.min_replicas,
                "maxReplicas": scaling.max_replicas,
                "metrics": metrics,
            },
        }

    def ingress(self) -> Manifest | None:
        """HTTP-only ALB ingress; HTTPS is enabled once a certificate is issued."""
        if not self.spec.ingress_enabled:
            return None
        c = self.constants
        rule: dict[str, Any] = {
            "http": {
                "paths": [
                    {
                        "path": "/",
                        "pathType": "Prefix",
                        "backend": {
                            "service": {
                                "name": self.spec.service_name,
                                "port": {"number": 80},
                            }
                        },
                    }
                ]
            }
        }
        if self.spec.hostname:
            rule = {"host": self.spec.hostname, **rule}
        annotations = {
            c.SCHEME_ANNOTATION: "internet-facing",
            c.TARGET_TYPE_ANNOTATION: "ip",
            c.LISTEN_PORTS_ANNOTATION: c.HTTP_LISTEN_PORTS,
            c.HEALTHCHECK_ANNOTATION: self.spec.health_check_path,
        }
        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": self._metadata(self.spec.ingress_name, annotations=annotations),
            "spec": {"ingressClassName": c.INGRESS_CLASS, "rules": [rule]},
        }

    # =========================================================================
    # Rendering
    # =========================================================================

    def render(self, image_ref: str, pull_secret_name: str | None = None) -> list[Manifest]:
        """Every object to write to disk, in apply order (the Secret excluded)."""
        candidates = [
            self.namespace(),
            self.config_map(),
            self.deployment(image_ref, pull_secret_name),
            self.service(),
            self.autoscaler(),
            self.ingress(),
        ]
        return [manifest for manifest in candidates if manifest is not None]

    def write(self, manifests: list[Manifest], directory: Path) -> list[Path]:
        """Write manifests as numbered files, replacing any from a previous run."""
        directory.mkdir(parents=True, exist_ok=True)
        for stale in directory.glob(_MANIFEST_GLOB):
            stale.unlink()

        paths = []
        for index, manifest in enumerate(manifests, start=1):
            path = directory / manifest_filename(index, manifest)
            with open(path, "w") as f:
                yaml.safe_dump(manifest, f, default_flow_style=False, sort_keys=False)
            paths.append(path)
        return paths


def _utilization_metric(resource: str, target: int) -> dict[str, Any]:
    return {
        "type": "Resource",
        "resource": {
            "name": resource,
            "target": {"type": "Utilization", "averageUtilization": target},
        },
    }

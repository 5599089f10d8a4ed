from __future__ import annotations

from pathlib import Path

from cachetools.func import lru_cache  # type: ignore

from src.infra.k8s.controller import KubernetesController, KubernetesControllerSync


@lru_cache(maxsize=4)
def get_k8s_controller(kubeconfig: str | None = None) -> KubernetesController:
    """Get a KubernetesController bound to a kubeconfig.

    Args:
        kubeconfig: Kubeconfig path, or None for the default lookup

    Returns:
        An instance of KubernetesController
    """
    from src.infra.k8s.kr8s_controller import Kr8sController

    return Kr8sController(kubeconfig)


@lru_cache(maxsize=4)
def get_k8s_controller_sync(kubeconfig: str | None = None) -> KubernetesControllerSync:
    """Get the blocking cluster client used by the deployment pipeline."""
    return KubernetesControllerSync(get_k8s_controller(kubeconfig))


def kubeconfig_key(path: Path | None) -> str | None:
    """Normalize a kubeconfig path into a cache key."""
    return str(path.resolve()) if path is not None else None

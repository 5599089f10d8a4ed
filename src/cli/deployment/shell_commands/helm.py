"""Helm command abstractions.

Used to install cluster add-ons such as the AWS Load Balancer Controller.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from .types import CommandResult

if TYPE_CHECKING:
    from .runner import CommandRunner


class HelmCommands:
    """Helm-related shell commands.

    Provides operations for:
    - Chart repositories (add, update)
    - Release management (install/upgrade)
    """

    def __init__(self, runner: CommandRunner, kubeconfig: Path | None = None) -> None:
        """Initialize Helm commands.

        Args:
            runner: Command runner for executing shell commands
            kubeconfig: Kubeconfig passed to every helm invocation
        """
        self._runner = runner
        self._kubeconfig = kubeconfig

    def _base(self, *args: str) -> list[str]:
        cmd = ["helm", *args]
        if self._kubeconfig is not None:
            cmd.extend(["--kubeconfig", str(self._kubeconfig)])
        return cmd

    # =========================================================================
    # Repositories
    # =========================================================================

    def add_repo(self, name: str, url: str) -> CommandResult:
        """Add (or refresh) a chart repository and update its index."""
        result = self._runner.run(self._base("repo", "add", name, url, "--force-update"))
        if not result.success:
            return result
        return self._runner.run(self._base("repo", "update", name))

    # =========================================================================
    # Release Management
    # =========================================================================

    def upgrade_install(
        self,
        release_name: str,
        chart: str | Path,
        namespace: str,
        *,
        set_values: Mapping[str, str] | None = None,
        timeout: str = "10m",
        wait: bool = True,
    ) -> CommandResult:
        """Deploy or upgrade a Helm release.

        Uses `helm upgrade --install` to idempotently deploy a chart.
        If the release doesn't exist, it will be installed. If it exists,
        it will be upgraded.

        Args:
            release_name: Name for the Helm release
            chart: Chart reference ("repo/chart") or path
            namespace: Kubernetes namespace for deployment
            set_values: Values passed with ``--set``
            timeout: Maximum time to wait for deployment
            wait: Whether to wait for resources to be ready

        Returns:
            CommandResult with deployment status

        Example:
            >>> helm.upgrade_install(
            ...     "aws-load-balancer-controller",
            ...     "eks/aws-load-balancer-controller",
            ...     "kube-system",
            ...     set_values={"clusterName": "prod"},
            ... )
        """
        cmd = self._base(
            "upgrade",
            "--install",
            release_name,
            str(chart),
            "--namespace",
            namespace,
        )
        if wait:
            cmd.append("--wait")
        cmd.extend(["--timeout", timeout])

        for key, value in (set_values or {}).items():
            cmd.extend(["--set", f"{key}={value}"])

        return self._runner.run(cmd)

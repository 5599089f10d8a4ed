"""eksctl command abstractions.

Covers the cluster-side AWS wiring that has no single boto3 call: OIDC
provider association, IRSA service accounts and managed node groups.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from .types import CommandResult

if TYPE_CHECKING:
    from .runner import CommandRunner


class EksctlCommands:
    """eksctl-related shell commands."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    def associate_oidc_provider(
        self, cluster: str, region: str, *, env: Mapping[str, str] | None = None
    ) -> CommandResult:
        """Associate the cluster's OIDC issuer with IAM (no-op if already done)."""
        return self._runner.run(
            [
                "eksctl",
                "utils",
                "associate-iam-oidc-provider",
                "--cluster",
                cluster,
                "--region",
                region,
                "--approve",
            ],
            env=env,
        )

    def create_iam_service_account(
        self,
        cluster: str,
        region: str,
        namespace: str,
        name: str,
        policy_arns: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Create an IAM role for a service account and annotate it.

        Existing service accounts are overridden, so the call is repeatable.
        """
        cmd = [
            "eksctl",
            "create",
            "iamserviceaccount",
            "--cluster",
            cluster,
            "--region",
            region,
            "--namespace",
            namespace,
            "--name",
            name,
        ]
        for arn in policy_arns:
            cmd.extend(["--attach-policy-arn", arn])
        cmd.extend(["--override-existing-serviceaccounts", "--approve"])
        return self._runner.run(cmd, env=env)

    def create_nodegroup(
        self,
        cluster: str,
        region: str,
        name: str,
        *,
        instance_type: str,
        min_size: int,
        max_size: int,
        desired_size: int,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Create a managed node group."""
        return self._runner.run(
            [
                "eksctl",
                "create",
                "nodegroup",
                "--cluster",
                cluster,
                "--region",
                region,
                "--name",
                name,
                "--node-type",
                instance_type,
                "--nodes",
                str(desired_size),
                "--nodes-min",
                str(min_size),
                "--nodes-max",
                str(max_size),
                "--managed",
            ],
            env=env,
        )

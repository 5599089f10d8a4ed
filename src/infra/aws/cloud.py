"""AWS account operations around an EKS cluster.

boto3 covers the read/update APIs; cluster-side IAM wiring and node group
creation go through eksctl, and kubeconfig generation through the aws CLI,
all with the deployment's explicit credentials.
"""

from __future__ import annotations

import base64
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import boto3
import yaml
from botocore.exceptions import ClientError
from loguru import logger

from src.infra.clients import ClusterInfo, NodegroupInfo
from src.infra.k8s.controller import CommandResult

from .session import Credentials

if TYPE_CHECKING:
    from src.cli.deployment.shell_commands.aws import AwsCliCommands
    from src.cli.deployment.shell_commands.eksctl import EksctlCommands

ECR_REGISTRY_PATTERN = re.compile(r"^(\d+)\.dkr\.ecr\.([\w-]+)\.amazonaws\.com$")


def ecr_registry_region(registry: str) -> str | None:
    """Region of an ECR registry host, or None for other registries."""
    match = ECR_REGISTRY_PATTERN.match(registry.split("/", 1)[0])
    return match.group(2) if match else None


def inject_exec_env(path: Path, env: Mapping[str, str]) -> None:
    """Pin credentials into the exec plugin entries of a kubeconfig.

    ``aws eks get-token`` otherwise reads whatever the ambient environment
    holds when kubectl or kr8s invokes it.
    """
    config = yaml.safe_load(path.read_text()) or {}
    for user in config.get("users") or []:
        exec_spec = (user.get("user") or {}).get("exec")
        if not exec_spec:
            continue
        merged = {entry["name"]: entry for entry in exec_spec.get("env") or []}
        for name, value in env.items():
            merged[name] = {"name": name, "value": value}
        exec_spec["env"] = list(merged.values())
    path.write_text(yaml.safe_dump(config, sort_keys=False))
    path.chmod(0o600)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class AwsCloudClient:
    """EKS, IAM, ECR and STS access for one region.

    Args:
        credentials: Deployment credentials
        region: Cluster region
        eksctl: eksctl command wrapper
        aws_cli: aws CLI command wrapper
        session: Optional pre-built boto3 session
    """

    def __init__(
        self,
        credentials: Credentials,
        region: str,
        *,
        eksctl: EksctlCommands,
        aws_cli: AwsCliCommands,
        session: boto3.Session | None = None,
    ) -> None:
        self._region = region
        self._session = session or credentials.boto3_session(region)
        self._env = credentials.as_env(region)
        self._eksctl = eksctl
        self._aws_cli = aws_cli
        self._eks = self._session.client("eks", region_name=region)
        self._iam = self._session.client("iam")
        self._sts = self._session.client("sts", region_name=region)

    # =========================================================================
    # Cluster
    # =========================================================================

    def describe_cluster(self, name: str) -> ClusterInfo | None:
        try:
            cluster = self._eks.describe_cluster(name=name)["cluster"]
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                return None
            raise
        return ClusterInfo(
            name=cluster["name"],
            status=cluster.get("status", ""),
            endpoint=cluster.get("endpoint", ""),
            version=cluster.get("version", ""),
        )

    def write_kubeconfig(self, cluster_name: str, path: Path) -> CommandResult:
        path.parent.mkdir(parents=True, exist_ok=True)
        result = self._aws_cli.update_kubeconfig(
            cluster_name, self._region, path, env=self._env
        )
        if result.success:
            inject_exec_env(path, self._env)
            logger.debug(f"Wrote kubeconfig for {cluster_name} to {path}")
        return result

    # =========================================================================
    # Node Groups
    # =========================================================================

    def list_nodegroups(self, cluster_name: str) -> list[NodegroupInfo]:
        nodegroups = []
        paginator = self._eks.get_paginator("list_nodegroups")
        for page in paginator.paginate(clusterName=cluster_name):
            for name in page.get("nodegroups", []):
                raw = self._eks.describe_nodegroup(
                    clusterName=cluster_name, nodegroupName=name
                )["nodegroup"]
                scaling = raw.get("scalingConfig", {})
                nodegroups.append(
                    NodegroupInfo(
                        name=name,
                        status=raw.get("status", ""),
                        desired_size=scaling.get("desiredSize", 0),
                        min_size=scaling.get("minSize", 0),
                        max_size=scaling.get("maxSize", 0),
                        instance_types=list(raw.get("instanceTypes") or []),
                    )
                )
        return nodegroups

    def scale_nodegroup(
        self,
        cluster_name: str,
        nodegroup: str,
        *,
        min_size: int,
        max_size: int,
        desired_size: int,
    ) -> None:
        self._eks.update_nodegroup_config(
            clusterName=cluster_name,
            nodegroupName=nodegroup,
            scalingConfig={
                "minSize": min_size,
                "maxSize": max_size,
                "desiredSize": desired_size,
            },
        )
        logger.info(f"Scaled node group {nodegroup} to {desired_size} nodes")

    def create_nodegroup(
        self,
        cluster_name: str,
        nodegroup: str,
        *,
        instance_type: str,
        min_size: int,
        max_size: int,
        desired_size: int,
    ) -> CommandResult:
        return self._eksctl.create_nodegroup(
            cluster_name,
            self._region,
            nodegroup,
            instance_type=instance_type,
            min_size=min_size,
            max_size=max_size,
            desired_size=desired_size,
            env=self._env,
        )

    # =========================================================================
    # IAM
    # =========================================================================

    def ensure_service_account_role(
        self,
        cluster_name: str,
        namespace: str,
        name: str,
        policy_arns: Sequence[str],
    ) -> CommandResult:
        """Bind an IAM role with the given policies to a service account."""
        oidc = self._eksctl.associate_oidc_provider(
            cluster_name, self._region, env=self._env
        )
        if not oidc.success:
            return oidc
        return self._eksctl.create_iam_service_account(
            cluster_name,
            self._region,
            namespace,
            name,
            policy_arns,
            env=self._env,
        )

    def attach_role_policy(self, role_arn: str, policy_arn: str) -> bool:
        """Attach a managed policy to a role.

        Returns:
            True if the policy was attached, False if it already was
        """
        role_name = role_arn.rsplit("/", 1)[-1]
        paginator = self._iam.get_paginator("list_attached_role_policies")
        for page in paginator.paginate(RoleName=role_name):
            if any(p["PolicyArn"] == policy_arn for p in page["AttachedPolicies"]):
                return False
        self._iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        logger.info(f"Attached {policy_arn} to role {role_name}")
        return True

    # =========================================================================
    # Registry & Identity
    # =========================================================================

    def registry_credentials(self, registry: str) -> tuple[str, str] | None:
        """Short-lived ECR login, or None for registries ECR does not serve."""
        region = ecr_registry_region(registry)
        if region is None:
            return None
        ecr = self._session.client("ecr", region_name=region)
        data = ecr.get_authorization_token()["authorizationData"][0]
        username, password = (
            base64.b64decode(data["authorizationToken"]).decode().split(":", 1)
        )
        return username, password

    def ensure_repository(self, registry: str, repository: str) -> bool:
        """Create the ECR repository an image is pushed to.

        Returns:
            True if it was created, False if it existed or the registry is not ECR
        """
        region = ecr_registry_region(registry)
        if region is None:
            return False
        ecr = self._session.client("ecr", region_name=region)
        try:
            ecr.create_repository(repositoryName=repository)
        except ClientError as e:
            if _error_code(e) == "RepositoryAlreadyExistsException":
                return False
            raise
        logger.info(f"Created ECR repository {repository}")
        return True

    def caller_identity(self) -> dict[str, str]:
        identity = self._sts.get_caller_identity()
        return {
            "account": identity.get("Account", ""),
            "arn": identity.get("Arn", ""),
            "user_id": identity.get("UserId", ""),
        }

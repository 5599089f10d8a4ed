"""Deployment module for shipping applications to Kubernetes.

This package provides the deployers:
- EksDeployer: Amazon EKS with the AWS Load Balancer Controller, ACM and
  an optional Cloudflare DNS binding

Each deployer follows the same interface (BaseDeployer).

The package is organized into subpackages for modularity:
- shell_commands: Abstractions for shell command execution
- eks_deployer: Step pipeline, readiness probes and diagnostics for EKS
"""

from .eks_deployer import DeploymentError, EksDeployer

__all__ = ["EksDeployer", "DeploymentError"]

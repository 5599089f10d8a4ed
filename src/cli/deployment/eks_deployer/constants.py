"""Constants for EKS deployments."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DeploymentConstants:
    """Names, annotation keys and fixed values used across the pipeline."""

    # Namespaces
    DEFAULT_NAMESPACE: str = "default"
    SYSTEM_NAMESPACE: str = "kube-system"

    # AWS Load Balancer Controller
    CONTROLLER_NAME: str = "aws-load-balancer-controller"
    CONTROLLER_SERVICE_ACCOUNT: str = "aws-load-balancer-controller"
    WEBHOOK_SERVICE_NAME: str = "aws-load-balancer-webhook-service"
    CONTROLLER_CHART_REPO_NAME: str = "eks"
    CONTROLLER_CHART_REPO_URL: str = "https://aws.github.io/eks-charts"
    CONTROLLER_CHART: str = "eks/aws-load-balancer-controller"
    CONTROLLER_POLICY_ARNS: tuple[str, ...] = (
        "arn:aws:iam::aws:policy/ElasticLoadBalancingFullAccess",
        "arn:aws:iam::aws:policy/AmazonEC2ReadOnlyAccess",
    )
    EC2_READ_POLICY_ARN: str = "arn:aws:iam::aws:policy/AmazonEC2ReadOnlyAccess"

    # Ingress annotations (ALB)
    INGRESS_CLASS: str = "alb"
    SCHEME_ANNOTATION: str = "alb.ingress.kubernetes.io/scheme"
    TARGET_TYPE_ANNOTATION: str = "alb.ingress.kubernetes.io/target-type"
    LISTEN_PORTS_ANNOTATION: str = "alb.ingress.kubernetes.io/listen-ports"
    CERTIFICATE_ANNOTATION: str = "alb.ingress.kubernetes.io/certificate-arn"
    SSL_REDIRECT_ANNOTATION: str = "alb.ingress.kubernetes.io/ssl-redirect"
    HEALTHCHECK_ANNOTATION: str = "alb.ingress.kubernetes.io/healthcheck-path"
    HTTP_LISTEN_PORTS: str = '[{"HTTP": 80}]'
    HTTPS_LISTEN_PORTS: str = '[{"HTTP": 80}, {"HTTPS": 443}]'

    # Registry
    PULL_SECRET_NAME: str = "ecr-registry-secret"
    REGISTRY_PATTERN: str = (
        r"^[a-zA-Z0-9][-a-zA-Z0-9.]*[a-zA-Z0-9](:[0-9]+)?(/[a-zA-Z0-9._-]+)*$"
    )
    IMAGE_PULL_REASONS: tuple[str, ...] = (
        "ErrImagePull",
        "ImagePullBackOff",
        "InvalidImageName",
    )

    # Certificates & DNS
    CAA_ISSUERS: tuple[str, ...] = (
        "amazon.com",
        "amazontrust.com",
        "awstrust.com",
        "amazonaws.com",
    )
    VALIDATION_RECORD_TTL: int = 300

    # Diagnostics
    SYSTEM_COMPONENTS: tuple[str, ...] = ("aws-node", "coredns", "kube-proxy")
    LOG_TAIL_LINES: int = 20
    EVENT_LIMIT: int = 20

    # Artifacts (relative to the deployment's artifact directory)
    KUBECONFIG_FILE: str = "kubeconfig"
    MANIFEST_DIR: str = "manifests"
    STATE_FILE: str = "state.json"
    LOG_FILE: str = "deploy.log"

    # Health check
    HEALTH_TIMEOUT_SECONDS: float = 10.0


DEFAULT_CONSTANTS = DeploymentConstants()

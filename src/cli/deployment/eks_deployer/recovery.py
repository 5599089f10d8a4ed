"""Corrective actions for known terminal conditions.

Each recovery is idempotent and returns True when it changed something
that makes another attempt of the step worthwhile. Steps reference them
through ``Step.recover``; the sequencer calls them only after a probe
reported Failed and while the step still has attempts left.
"""

from __future__ import annotations

from datetime import UTC, datetime

from loguru import logger

from .errors import ConfigurationError
from .manifests import ManifestRenderer
from .probes import Condition, ConditionCause, is_unauthorized_event
from .steps import StepContext


def _remediate_service_account(ctx: StepContext) -> str:
    c = ctx.constants
    policies = " ".join(f"--attach-policy-arn={arn}" for arn in c.CONTROLLER_POLICY_ARNS)
    return (
        f"eksctl create iamserviceaccount --cluster={ctx.spec.cluster.name} "
        f"--namespace={c.SYSTEM_NAMESPACE} --name={c.CONTROLLER_SERVICE_ACCOUNT} "
        f"{policies} --override-existing-serviceaccounts --approve "
        f"--region={ctx.spec.cluster.region}"
    )


# =============================================================================
# Load Balancer Controller
# =============================================================================


def reattach_controller_policy(ctx: StepContext, condition: Condition | None = None) -> bool:
    """Attach the EC2 read policy to the controller role and restart it.

    Without a condition, acts only when the ingress has events reporting
    unauthorized AWS calls.
    """
    c = ctx.constants
    spec = ctx.spec
    cluster = ctx.clients.cluster

    if condition is None or condition.cause is not ConditionCause.IAM_PERMISSION:
        events = cluster.get_events(
            spec.namespace,
            involved_kind="Ingress",
            involved_name=spec.ingress_name,
            limit=c.EVENT_LIMIT,
        )
        if not any(is_unauthorized_event(event) for event in events):
            return False

    account = cluster.get_service_account(c.SYSTEM_NAMESPACE, c.CONTROLLER_SERVICE_ACCOUNT)
    if account is None or not account.role_arn:
        raise ConfigurationError(
            "Load balancer controller service account has no IAM role",
            remediation=_remediate_service_account(ctx),
        )

    if ctx.clients.cloud.attach_role_policy(account.role_arn, c.EC2_READ_POLICY_ARN):
        ctx.console.info(f"Attached EC2 read permissions to {account.role_arn}")
    cluster.rollout_restart(c.SYSTEM_NAMESPACE, c.CONTROLLER_NAME)
    ctx.console.info("Restarted the load balancer controller")
    return True


# =============================================================================
# Ingress & Certificates
# =============================================================================


def strip_certificate_annotations(ctx: StepContext) -> bool:
    """Drop HTTPS settings from the ingress so the load balancer can be built."""
    c = ctx.constants
    ingress = ctx.clients.cluster.get_ingress(ctx.spec.namespace, ctx.spec.ingress_name)
    if ingress is None:
        return False
    if (
        c.CERTIFICATE_ANNOTATION not in ingress.annotations
        and c.SSL_REDIRECT_ANNOTATION not in ingress.annotations
    ):
        return False

    ctx.clients.cluster.annotate(
        "Ingress",
        ctx.spec.namespace,
        ctx.spec.ingress_name,
        {
            c.CERTIFICATE_ANNOTATION: None,
            c.SSL_REDIRECT_ANNOTATION: None,
            c.LISTEN_PORTS_ANNOTATION: c.HTTP_LISTEN_PORTS,
        },
    )
    ctx.console.warn("Removed an invalid certificate from the ingress; serving HTTP only")
    return True


def request_replacement_certificate(ctx: StepContext) -> bool:
    """Request a new certificate after the current one failed validation.

    The new ARN is kept in ``ctx.scratch``; the certificate step's apply
    then writes its validation records.
    """
    spec = ctx.spec
    hostname = spec.hostname
    if hostname is None or spec.domain is None:
        return False

    dns_options = spec.domain.dns
    if ctx.clients.dns is not None and dns_options is not None:
        ctx.clients.dns.ensure_caa_records(
            dns_options.zone_id, spec.domain.domain, ctx.constants.CAA_ISSUERS
        )

    # A fresh token so ACM does not hand back the failed request
    stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
    arn = ctx.clients.certificates.request_certificate(
        hostname, idempotency_token=f"{hostname}{stamp}"
    )
    previous = ctx.scratch.get("certificate_arn")
    ctx.scratch["certificate_arn"] = arn
    logger.info(f"Requested replacement certificate {arn} (previous: {previous})")
    ctx.console.info(f"Requested a new certificate for {hostname}")
    return True


def recover_ingress(ctx: StepContext, condition: Condition) -> bool:
    if condition.cause is ConditionCause.CERTIFICATE_INVALID:
        return strip_certificate_annotations(ctx)
    if condition.cause is ConditionCause.IAM_PERMISSION:
        return reattach_controller_policy(ctx, condition)
    return False


def recover_certificate(ctx: StepContext, condition: Condition) -> bool:
    if condition.cause is ConditionCause.CERTIFICATE_FAILED:
        return request_replacement_certificate(ctx)
    return False


# =============================================================================
# Image Pull
# =============================================================================


def ensure_pull_secret(ctx: StepContext) -> bool:
    """Create or refresh the ECR pull secret. False for other registries."""
    spec = ctx.spec
    if not spec.registry or not spec.is_ecr_registry:
        return False
    credentials = ctx.clients.cloud.registry_credentials(spec.registry)
    if credentials is None:
        raise ConfigurationError(
            f"Could not obtain registry credentials for {spec.registry}",
            remediation=f"aws ecr get-login-password --region {spec.cluster.region}",
        )
    username, password = credentials
    manifest = ManifestRenderer(spec, ctx.constants).pull_secret(
        spec.registry, username, password
    )
    ctx.clients.cluster.apply_resource(manifest)
    return True


def fix_image_pull(ctx: StepContext, condition: Condition) -> bool:
    """Refresh registry credentials and recreate pods stuck pulling the image."""
    if condition.cause is not ConditionCause.IMAGE_PULL_ERROR:
        return False

    spec = ctx.spec
    if "no match for platform" in condition.reason.lower():
        raise ConfigurationError(
            f"The image was not built for {spec.platform}",
            details=condition.reason,
            remediation=(
                f"docker buildx build --platform {spec.platform} "
                f"-f {spec.dockerfile} -t <image> --load {spec.build_context}"
            ),
        )

    refreshed = ensure_pull_secret(ctx)
    cluster = ctx.clients.cluster
    stuck = [
        pod
        for pod in cluster.get_pods(spec.namespace, spec.label_selector)
        if pod.wait_reason in ctx.constants.IMAGE_PULL_REASONS
    ]
    for pod in stuck:
        cluster.delete_pod(spec.namespace, pod.name)
    if stuck:
        ctx.console.info(f"Recreating {len(stuck)} pods stuck pulling the image")
    return refreshed or bool(stuck)

"""Forward deployment pipeline.

The fixed, ordered list of steps that converge a cluster onto a
``DeploymentSpec``. Every ``apply`` is create-or-adopt, so the whole list
can be re-run against a partially deployed application.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from src.infra.clients import CertificateInfo, CertificateStatus
from src.infra.k8s.controller import ResourceRef

from .errors import ConfigurationError, TransientError
from .manifests import ManifestRenderer, load_manifests
from .probes import (
    Condition,
    certificate_readiness,
    cluster_readiness,
    http_readiness,
    ingress_address_readiness,
    node_readiness,
    rollout_readiness,
    webhook_readiness,
)
from .recovery import (
    ensure_pull_secret,
    fix_image_pull,
    reattach_controller_policy,
    recover_certificate,
    recover_ingress,
)
from .retry import ONE_SHOT, RetryPolicy
from .steps import FailurePolicy, Step, StepContext

# Directories never hashed into a content tag
_IGNORED_DIRS = {".git", "node_modules", "__pycache__", ".venv", ".mypy_cache"}


def default_policies() -> dict[str, RetryPolicy]:
    """Retry policy of every step, keyed by step name."""
    return {
        "cluster-check": RetryPolicy(10, 30, 1, 300),
        "node-check": RetryPolicy(10, 60, 1, 600),
        "controller-install": RetryPolicy(5, 60, 3, 900),
        "build-push": RetryPolicy(5, 1, 2, 1800),
        "image-pull-secret": ONE_SHOT,
        "render-manifests": ONE_SHOT,
        "apply-manifests": RetryPolicy(3, 1, 5, 300),
        "rollout-wait": RetryPolicy(5, 60, 2, 420),
        "ingress-address": RetryPolicy(10, 60, 2, 900),
        "controller-permissions": ONE_SHOT,
        "certificate": RetryPolicy(10, 60, 4, 1200),
        "https-enable": RetryPolicy(3, 1, 3, 120),
        "dns-bind": RetryPolicy(3, 1, 3, 120),
        "health-check": RetryPolicy(10, 20, 1, 200),
    }


# =============================================================================
# Cluster & Nodes
# =============================================================================


def _check_cluster(ctx: StepContext) -> None:
    spec = ctx.spec
    if ctx.clients.cloud.describe_cluster(spec.cluster.name) is None:
        ng = spec.nodegroup
        raise ConfigurationError(
            f"Cluster '{spec.cluster.name}' not found in {spec.cluster.region}",
            remediation=(
                f"eksctl create cluster --name {spec.cluster.name} "
                f"--region {spec.cluster.region} --nodegroup-name {ng.name} "
                f"--node-type {ng.instance_type} --nodes {ng.desired_size} --managed"
            ),
        )


def _probe_cluster(ctx: StepContext) -> Condition:
    info = ctx.clients.cloud.describe_cluster(ctx.spec.cluster.name)
    ctx.scratch["cluster"] = info
    return cluster_readiness(info)


def _write_kubeconfig(ctx: StepContext) -> dict[str, Any]:
    spec = ctx.spec
    result = ctx.clients.cloud.write_kubeconfig(spec.cluster.name, ctx.kubeconfig_path)
    if not result.success:
        raise ConfigurationError(
            "Could not write kubeconfig",
            details=result.stderr.strip() or None,
            remediation=(
                f"aws eks update-kubeconfig --name {spec.cluster.name} "
                f"--region {spec.cluster.region}"
            ),
        )
    info = ctx.scratch.get("cluster")
    return {"cluster_endpoint": info.endpoint if info else None}


def _ensure_nodes(ctx: StepContext) -> None:
    spec = ctx.spec
    if node_readiness(ctx.clients.cluster.get_nodes()).is_ready:
        return

    cloud = ctx.clients.cloud
    settings = spec.nodegroup
    nodegroups = cloud.list_nodegroups(spec.cluster.name)
    scaled_down = [ng for ng in nodegroups if ng.desired_size < 1]
    if nodegroups and not scaled_down:
        ctx.console.info("Node groups exist; waiting for nodes to become ready")
        return

    if scaled_down:
        ng = scaled_down[0]
        ctx.console.info(f"Scaling node group {ng.name} to {settings.desired_size} nodes")
        cloud.scale_nodegroup(
            spec.cluster.name,
            ng.name,
            min_size=max(ng.min_size, 1),
            max_size=max(ng.max_size, settings.desired_size),
            desired_size=settings.desired_size,
        )
        return

    ctx.console.info(
        f"No node group found; creating {settings.name} "
        f"({settings.desired_size} x {settings.instance_type})"
    )
    result = cloud.create_nodegroup(
        spec.cluster.name,
        settings.name,
        instance_type=settings.instance_type,
        min_size=settings.min_size,
        max_size=settings.max_size,
        desired_size=settings.desired_size,
    )
    if not result.success:
        raise ConfigurationError(
            f"Could not create node group {settings.name}",
            details=result.stderr.strip() or None,
            remediation=(
                f"eksctl create nodegroup --cluster {spec.cluster.name} "
                f"--region {spec.cluster.region} --name {settings.name} "
                f"--node-type {settings.instance_type} --nodes {settings.desired_size} --managed"
            ),
        )


# =============================================================================
# Load Balancer Controller
# =============================================================================


def _install_controller(ctx: StepContext) -> None:
    c = ctx.constants
    spec = ctx.spec
    clients = ctx.clients

    if clients.cluster.get_deployment(c.SYSTEM_NAMESPACE, c.CONTROLLER_NAME) is not None:
        ctx.console.info("Load balancer controller already installed")
        return

    role = clients.cloud.ensure_service_account_role(
        spec.cluster.name,
        c.SYSTEM_NAMESPACE,
        c.CONTROLLER_SERVICE_ACCOUNT,
        c.CONTROLLER_POLICY_ARNS,
    )
    if not role.success:
        raise ConfigurationError(
            "Could not create the IAM service account for the load balancer controller",
            details=role.stderr.strip() or None,
            remediation=(
                f"eksctl utils associate-iam-oidc-provider --cluster {spec.cluster.name} "
                f"--region {spec.cluster.region} --approve"
            ),
        )

    repo = clients.charts.add_repo(c.CONTROLLER_CHART_REPO_NAME, c.CONTROLLER_CHART_REPO_URL)
    if not repo.success:
        raise TransientError("Could not add the eks chart repository", repo.stderr.strip())

    release = clients.charts.upgrade_install(
        c.CONTROLLER_NAME,
        c.CONTROLLER_CHART,
        c.SYSTEM_NAMESPACE,
        set_values={
            "clusterName": spec.cluster.name,
            "serviceAccount.create": "false",
            "serviceAccount.name": c.CONTROLLER_SERVICE_ACCOUNT,
            "region": spec.cluster.region,
        },
        wait=False,
    )
    if not release.success:
        raise TransientError(
            "Helm install of the load balancer controller failed", release.stderr.strip()
        )


def _probe_webhook(ctx: StepContext) -> Condition:
    c = ctx.constants
    cluster = ctx.clients.cluster
    return webhook_readiness(
        cluster.get_deployment(c.SYSTEM_NAMESPACE, c.CONTROLLER_NAME),
        cluster.get_endpoints(c.SYSTEM_NAMESPACE, c.WEBHOOK_SERVICE_NAME),
    )


def _check_controller_permissions(ctx: StepContext) -> None:
    reattach_controller_policy(ctx)


def _controller_ref(ctx: StepContext) -> ResourceRef:
    c = ctx.constants
    return ResourceRef("Deployment", c.SYSTEM_NAMESPACE, c.CONTROLLER_NAME)


# =============================================================================
# Image
# =============================================================================


def _context_digest(dockerfile: Path, context: Path, skip: Path) -> str:
    digest = hashlib.sha256(dockerfile.read_bytes())
    skip = skip.resolve()
    for path in sorted(p for p in context.rglob("*") if p.is_file()):
        relative = path.relative_to(context)
        if _IGNORED_DIRS.intersection(relative.parts) or path.resolve().is_relative_to(skip):
            continue
        digest.update(str(relative).encode())
        digest.update(path.read_bytes())
    return digest.hexdigest()[:12]


def image_tag(ctx: StepContext) -> str:
    """Content-addressed tag: the configured tag, else git SHA, else file hash."""
    spec = ctx.spec
    if spec.image_tag:
        return spec.image_tag

    status = ctx.clients.git.get_status(spec.build_context)
    if status.is_git_repo and status.is_clean and status.short_sha:
        return f"git-{status.short_sha}"
    try:
        return f"hash-{_context_digest(spec.dockerfile, spec.build_context, spec.artifact_dir)}"
    except OSError as e:
        logger.warning(f"Could not hash build context: {e}")
        return f"ts-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}"


def _build_and_push(ctx: StepContext) -> dict[str, Any]:
    spec = ctx.spec
    clients = ctx.clients
    if not spec.registry:
        raise ConfigurationError(
            "No image registry configured",
            remediation=(
                "Set deployment.registry, e.g. "
                f"<account>.dkr.ecr.{spec.cluster.region}.amazonaws.com"
            ),
        )
    if not spec.dockerfile.exists():
        raise ConfigurationError(f"Dockerfile not found: {spec.dockerfile}")

    image_ref = f"{spec.image_repository}:{image_tag(ctx)}"

    if clients.registry.image_exists(image_ref):
        ctx.console.info(f"Image {image_ref} already built")
    else:
        ctx.console.info(f"Building {image_ref} for {spec.platform}")
        build = clients.registry.build_image(
            spec.dockerfile, spec.build_context, image_ref, platform=spec.platform
        )
        if not build.success:
            raise ConfigurationError(
                "Image build failed",
                details=build.stderr.strip()[-2000:] or None,
                remediation=(
                    f"docker buildx build --platform {spec.platform} "
                    f"-f {spec.dockerfile} -t {image_ref} --load {spec.build_context}"
                ),
            )

    host = spec.registry.split("/", 1)[0]
    if spec.is_ecr_registry:
        repository = spec.image_repository.split("/", 1)[1]
        clients.cloud.ensure_repository(spec.registry, repository)
        credentials = clients.cloud.registry_credentials(spec.registry)
        if credentials is not None:
            login = clients.registry.login(host, *credentials)
            if not login.success:
                raise ConfigurationError(
                    f"Could not log in to {host}",
                    details=login.stderr.strip() or None,
                    remediation=(
                        f"aws ecr get-login-password --region {spec.cluster.region} | "
                        f"docker login --username AWS --password-stdin {host}"
                    ),
                )

    push = clients.registry.push(image_ref)
    if not push.success:
        stderr = push.stderr.strip()
        if "denied" in stderr.lower() or "unauthorized" in stderr.lower():
            raise ConfigurationError(
                f"Push to {host} was denied",
                details=stderr or None,
                remediation=f"docker login {host}",
            )
        raise TransientError(f"Push of {image_ref} failed", stderr or None)
    return {"image_ref": image_ref}


def _ensure_namespace(ctx: StepContext) -> None:
    namespace = ctx.spec.namespace
    if namespace == ctx.constants.DEFAULT_NAMESPACE:
        return
    if ctx.clients.cluster.create_namespace(namespace):
        ctx.console.info(f"Created namespace {namespace}")


def _create_pull_secret(ctx: StepContext) -> dict[str, Any]:
    _ensure_namespace(ctx)
    if not ensure_pull_secret(ctx):
        return {}
    return {"pull_secret_name": ctx.constants.PULL_SECRET_NAME}


# =============================================================================
# Manifests & Rollout
# =============================================================================


def _render_manifests(ctx: StepContext) -> dict[str, Any]:
    renderer = ManifestRenderer(ctx.spec, ctx.constants)
    manifests = renderer.render(ctx.state.image_ref or "", ctx.state.pull_secret_name)
    paths = renderer.write(manifests, ctx.manifest_path)
    logger.debug(f"Wrote {len(paths)} manifests to {ctx.manifest_path}")
    return {"manifest_dir": ctx.manifest_path}


def _apply_manifests(ctx: StepContext) -> dict[str, Any]:
    _ensure_namespace(ctx)
    cluster = ctx.clients.cluster
    applied: list[str] = []

    secret = ManifestRenderer(ctx.spec, ctx.constants).secret()
    if secret is not None:
        applied.append(str(cluster.apply_resource(secret)))

    manifest_dir = ctx.state.manifest_dir or ctx.manifest_path
    for manifest in load_manifests(manifest_dir):
        if manifest["kind"] == "Namespace":
            continue
        ref = cluster.apply_resource(manifest)
        logger.debug(f"Applied {ref}")
        applied.append(str(ref))
    return {"applied_resources": tuple(applied)}


def _app_ref(ctx: StepContext) -> ResourceRef:
    return ResourceRef("Deployment", ctx.spec.namespace, ctx.spec.app_name)


def _probe_rollout(ctx: StepContext) -> Condition:
    spec = ctx.spec
    cluster = ctx.clients.cluster
    return rollout_readiness(
        cluster.get_deployment(spec.namespace, spec.app_name),
        cluster.get_pods(spec.namespace, spec.label_selector),
    )


# =============================================================================
# Ingress, Certificate & DNS
# =============================================================================


def _ingress_ref(ctx: StepContext) -> ResourceRef:
    return ResourceRef("Ingress", ctx.spec.namespace, ctx.spec.ingress_name)


def _probe_ingress(ctx: StepContext) -> Condition:
    spec = ctx.spec
    cluster = ctx.clients.cluster
    ingress = cluster.get_ingress(spec.namespace, spec.ingress_name)
    ctx.scratch["ingress"] = ingress
    events = []
    if ingress is not None and not ingress.hostname:
        events = cluster.get_events(
            spec.namespace,
            involved_kind="Ingress",
            involved_name=spec.ingress_name,
            limit=ctx.constants.EVENT_LIMIT,
        )
    return ingress_address_readiness(ingress, events)


def _collect_address(ctx: StepContext) -> dict[str, Any]:
    ingress = ctx.scratch.get("ingress")
    return {"load_balancer_address": ingress.hostname if ingress else None}


def _covers(certificate: CertificateInfo, hostname: str) -> bool:
    domain = certificate.domain.lower()
    if domain == hostname:
        return True
    return domain.startswith("*.") and hostname.split(".", 1)[-1] == domain[2:]


def _find_certificate(ctx: StepContext, hostname: str) -> str | None:
    candidates = [
        cert for cert in ctx.clients.certificates.list_certificates() if _covers(cert, hostname)
    ]
    for status in (CertificateStatus.ISSUED, CertificateStatus.PENDING_VALIDATION):
        for cert in candidates:
            if cert.status == status:
                return cert.arn
    return None


def _ensure_certificate(ctx: StepContext) -> None:
    spec = ctx.spec
    domain = spec.domain
    hostname = spec.hostname
    if domain is None or hostname is None:
        return
    certificates = ctx.clients.certificates

    arn = ctx.scratch.get("certificate_arn") or domain.certificate_arn
    if arn is None:
        arn = _find_certificate(ctx, hostname)
        if arn is not None:
            ctx.console.info(f"Using existing certificate {arn}")
    if arn is None:
        arn = certificates.request_certificate(hostname, idempotency_token=hostname)
        ctx.console.info(f"Requested certificate for {hostname}")
    ctx.scratch["certificate_arn"] = arn

    info = certificates.describe_certificate(arn)
    if info is None:
        if arn == domain.certificate_arn:
            raise ConfigurationError(
                f"Configured certificate {arn} does not exist",
                remediation=f"aws acm list-certificates --region {spec.cluster.region}",
            )
        raise TransientError(f"Certificate {arn} is not visible yet")

    if info.status != CertificateStatus.PENDING_VALIDATION:
        return
    if not info.validation_records:
        raise TransientError("Certificate validation records are not available yet")

    dns = ctx.clients.dns
    if dns is None or domain.dns is None:
        records = ", ".join(f"{r.type} {r.name} -> {r.value}" for r in info.validation_records)
        ctx.console.warn(f"Add these DNS records to validate the certificate: {records}")
        return
    for record in info.validation_records:
        dns.upsert_record(
            domain.dns.zone_id,
            record.name.rstrip("."),
            record.type,
            record.value.rstrip("."),
            proxied=False,
            ttl=ctx.constants.VALIDATION_RECORD_TTL,
        )


def _probe_certificate(ctx: StepContext) -> Condition:
    arn = ctx.scratch.get("certificate_arn")
    info = ctx.clients.certificates.describe_certificate(arn) if arn else None
    return certificate_readiness(info)


def _collect_certificate(ctx: StepContext) -> dict[str, Any]:
    return {"certificate_arn": ctx.scratch.get("certificate_arn")}


def _enable_https(ctx: StepContext) -> dict[str, Any]:
    c = ctx.constants
    ctx.clients.cluster.annotate(
        "Ingress",
        ctx.spec.namespace,
        ctx.spec.ingress_name,
        {
            c.LISTEN_PORTS_ANNOTATION: c.HTTPS_LISTEN_PORTS,
            c.CERTIFICATE_ANNOTATION: ctx.state.certificate_arn,
            c.SSL_REDIRECT_ANNOTATION: "443",
        },
    )
    return {"https_enabled": True}


def _bind_dns(ctx: StepContext) -> dict[str, Any]:
    spec = ctx.spec
    dns = ctx.clients.dns
    if dns is None or spec.domain is None or spec.domain.dns is None or not spec.hostname:
        raise ConfigurationError("DNS provider is not configured")
    record = dns.upsert_record(
        spec.domain.dns.zone_id,
        spec.hostname,
        "CNAME",
        ctx.state.load_balancer_address or "",
        proxied=spec.domain.dns.proxied,
    )
    ctx.console.info(f"{spec.hostname} -> {ctx.state.load_balancer_address}")
    return {"dns_record_id": record.id}


def _probe_health(ctx: StepContext) -> Condition:
    spec = ctx.spec
    url = f"http://{ctx.state.load_balancer_address}{spec.health_check_path}"
    headers = {"Host": spec.hostname} if spec.hostname else {}
    try:
        response = ctx.clients.http.get(url, headers=headers)
    except httpx.HTTPError as e:
        condition = http_readiness(None, str(e) or type(e).__name__)
    else:
        condition = http_readiness(response.status_code)
    ctx.scratch["health_status"] = condition.reason
    return condition


def _collect_health(ctx: StepContext) -> dict[str, Any]:
    return {"health_status": ctx.scratch.get("health_status")}


def _noop(ctx: StepContext) -> None:
    return None


# =============================================================================
# Pipeline
# =============================================================================


def build_forward_steps(policies: Mapping[str, RetryPolicy] | None = None) -> list[Step]:
    """The forward pipeline in execution order.

    Args:
        policies: Per-step retry policy overrides, keyed by step name
    """
    resolved = default_policies()
    for name, policy in (policies or {}).items():
        if name not in resolved:
            raise ValueError(f"Unknown step '{name}' in timeout overrides")
        resolved[name] = policy

    steps = [
        Step(
            name="cluster-check",
            description="Checking cluster",
            apply=_check_cluster,
            probe=_probe_cluster,
            collect=_write_kubeconfig,
        ),
        Step(
            name="node-check",
            description="Checking worker nodes",
            apply=_ensure_nodes,
            probe=lambda ctx: node_readiness(ctx.clients.cluster.get_nodes()),
        ),
        Step(
            name="controller-install",
            description="Installing load balancer controller",
            apply=_install_controller,
            probe=_probe_webhook,
            failure_policy=FailurePolicy.RETRYABLE,
            when=lambda spec: spec.ingress_enabled,
            subject=_controller_ref,
        ),
        Step(
            name="build-push",
            description="Building and pushing image",
            apply=_build_and_push,
            produces=("image_ref",),
        ),
        Step(
            name="image-pull-secret",
            description="Creating image pull secret",
            apply=_create_pull_secret,
            failure_policy=FailurePolicy.SKIPPABLE,
            produces=("pull_secret_name",),
            when=lambda spec: spec.is_ecr_registry,
            guidance=(
                "kubectl create secret docker-registry ecr-registry-secret -n {namespace} "
                "--docker-server=<registry> --docker-username=AWS "
                "--docker-password=$(aws ecr get-login-password --region {region})"
            ),
        ),
        Step(
            name="render-manifests",
            description="Rendering manifests",
            apply=_render_manifests,
            requires=("image_ref",),
            produces=("manifest_dir",),
        ),
        Step(
            name="apply-manifests",
            description="Applying manifests",
            apply=_apply_manifests,
            failure_policy=FailurePolicy.RETRYABLE,
            requires=("manifest_dir",),
            produces=("applied_resources",),
            subject=_app_ref,
        ),
        Step(
            name="rollout-wait",
            description="Waiting for rollout",
            apply=_noop,
            probe=_probe_rollout,
            recover=fix_image_pull,
            failure_policy=FailurePolicy.FATAL,
            exhaustion_policy=FailurePolicy.SKIPPABLE,
            requires=("applied_resources",),
            guidance="kubectl rollout status deployment/{app} -n {namespace}",
            subject=_app_ref,
        ),
        Step(
            name="ingress-address",
            description="Waiting for load balancer",
            apply=_noop,
            probe=_probe_ingress,
            collect=_collect_address,
            recover=recover_ingress,
            failure_policy=FailurePolicy.SKIPPABLE,
            requires=("applied_resources",),
            produces=("load_balancer_address",),
            when=lambda spec: spec.ingress_enabled and spec.domain is not None,
            guidance="kubectl describe ingress {ingress} -n {namespace}",
            subject=_ingress_ref,
        ),
        Step(
            name="controller-permissions",
            description="Checking load balancer controller permissions",
            apply=_check_controller_permissions,
            requires=("applied_resources",),
            failure_policy=FailurePolicy.SKIPPABLE,
            when=lambda spec: spec.ingress_enabled,
            subject=_controller_ref,
        ),
        Step(
            name="certificate",
            description="Provisioning TLS certificate",
            apply=_ensure_certificate,
            probe=_probe_certificate,
            collect=_collect_certificate,
            recover=recover_certificate,
            failure_policy=FailurePolicy.SKIPPABLE,
            produces=("certificate_arn",),
            when=lambda spec: spec.ssl_enabled,
            guidance="aws acm list-certificates --region {region}",
        ),
        Step(
            name="https-enable",
            description="Enabling HTTPS",
            apply=_enable_https,
            failure_policy=FailurePolicy.SKIPPABLE,
            requires=("certificate_arn", "load_balancer_address"),
            produces=("https_enabled",),
            when=lambda spec: spec.ssl_enabled,
            guidance="kubectl describe ingress {ingress} -n {namespace}",
        ),
        Step(
            name="dns-bind",
            description="Binding DNS record",
            apply=_bind_dns,
            failure_policy=FailurePolicy.SKIPPABLE,
            requires=("load_balancer_address",),
            produces=("dns_record_id",),
            when=lambda spec: spec.dns_enabled,
            guidance="Create a CNAME record {hostname} pointing at the load balancer address",
        ),
        Step(
            name="health-check",
            description="Checking application health",
            apply=_noop,
            probe=_probe_health,
            collect=_collect_health,
            failure_policy=FailurePolicy.SKIPPABLE,
            requires=("load_balancer_address",),
            produces=("health_status",),
            guidance="kubectl logs -l app={app} -n {namespace} --tail=50",
        ),
    ]
    return [replace(step, retry_policy=resolved[step.name]) for step in steps]

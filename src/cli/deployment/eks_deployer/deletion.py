"""Reversal pipeline.

Deletes what the forward pipeline created. Every deletion is
delete-if-exists and retried on its own, so a delete interrupted at any
point can simply be run again.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import partial
from typing import TypeVar

from loguru import logger

from src.infra.clients import DnsClient
from src.infra.k8s import KubernetesControllerSync
from src.infra.k8s.controller import ResourceRef
from src.utils.console_like import ConsoleLike, coalesce_console

from .constants import DEFAULT_CONSTANTS, DeploymentConstants
from .errors import ErrorKind, classify_error
from .models import DeletionResult, DeletionTarget, Outcome
from .probes import absence_readiness
from .retry import (
    AwaitStatus,
    CancellationToken,
    Clock,
    MonotonicClock,
    RetryPolicy,
)

DELETE_POLICY = RetryPolicy(poll_interval=3.0, max_polls_per_attempt=1, max_attempts=3, max_total_wait=60.0)
INGRESS_GONE_POLICY = RetryPolicy(poll_interval=5.0, max_polls_per_attempt=36, max_attempts=1, max_total_wait=180.0)

T = TypeVar("T")


class DeletionPipeline:
    """Deletes one application's resources, then its namespace and DNS records."""

    def __init__(
        self,
        cluster: KubernetesControllerSync,
        *,
        dns: DnsClient | None = None,
        constants: DeploymentConstants = DEFAULT_CONSTANTS,
        console: ConsoleLike | None = None,
        clock: Clock | None = None,
        cancel: CancellationToken | None = None,
        policy: RetryPolicy = DELETE_POLICY,
        ingress_gone_policy: RetryPolicy = INGRESS_GONE_POLICY,
    ) -> None:
        self.cluster = cluster
        self.dns = dns
        self.constants = constants
        self.console = coalesce_console(console)
        self.clock = clock or MonotonicClock()
        self.cancel = cancel or CancellationToken()
        self.policy = policy
        self.ingress_gone_policy = ingress_gone_policy

    def plan(self, target: DeletionTarget) -> list[ResourceRef]:
        """Resources to delete, in order.

        Resources recorded by a previous deploy that are not part of the
        standard set (and are not namespaces) are appended at the end.
        """
        ns = target.namespace
        refs = [
            ResourceRef("HorizontalPodAutoscaler", ns, target.hpa_name),
            ResourceRef("Ingress", ns, target.ingress_name),
            ResourceRef("Service", ns, target.service_name),
            ResourceRef("Deployment", ns, target.app_name),
            ResourceRef("Secret", ns, target.secret_name),
            ResourceRef("ConfigMap", ns, target.config_map_name),
            ResourceRef("Secret", ns, self.constants.PULL_SECRET_NAME),
        ]
        for value in target.resources:
            ref = ResourceRef.parse(value)
            if ref.kind != "Namespace" and ref not in refs:
                refs.append(ref)
        return refs

    def run(self, target: DeletionTarget) -> DeletionResult:
        result = DeletionResult()
        logger.info(f"Deleting {target.app_name} from namespace {target.namespace}")

        for ref in self.plan(target):
            if self.cancel.cancelled:
                return self._cancelled(result)
            self._delete(ref, result)

        if target.delete_namespace and target.namespace != self.constants.DEFAULT_NAMESPACE:
            if self.cancel.cancelled:
                return self._cancelled(result)
            self._delete_namespace(target, result)

        if target.dns_zone_id and target.hostname:
            if self.cancel.cancelled:
                return self._cancelled(result)
            self._delete_dns(target.dns_zone_id, target.hostname, result)

        result.outcome = Outcome.DEGRADED if result.failed else Outcome.SUCCESS
        logger.info(
            f"Deletion finished: {len(result.deleted)} deleted, "
            f"{len(result.absent)} absent, {len(result.failed)} failed"
        )
        return result

    # =========================================================================
    # Deletions
    # =========================================================================

    def _retrying(self, label: str, action: Callable[[], T]) -> T:
        """Run ``action`` under the deletion policy, retrying transient errors.

        The last error is re-raised once the budget is spent, the error is not
        transient, or the run is cancelled.
        """
        budget = self.policy.new_budget(self.clock)
        while True:
            budget.begin_attempt()
            try:
                return action()
            except Exception as exc:
                if classify_error(exc) is not ErrorKind.TRANSIENT or not budget.can_retry:
                    raise
                logger.info(f"Retrying {label}: {exc}")
                self.clock.sleep(min(self.policy.poll_interval, budget.remaining), self.cancel)
                if self.cancel.cancelled:
                    raise

    def _delete(self, ref: ResourceRef, result: DeletionResult) -> None:
        try:
            removed = self._retrying(
                f"deletion of {ref}",
                lambda: self.cluster.delete_resource(ref.kind, ref.namespace, ref.name),
            )
        except Exception as exc:
            logger.warning(f"Could not delete {ref} ({classify_error(exc)}): {exc}")
            result.failed[str(ref)] = str(exc)
            self.console.warn(f"Could not delete {ref.kind} {ref.name}: {exc}")
            return

        if removed:
            result.deleted.append(str(ref))
            self.console.ok(f"Deleted {ref.kind} {ref.name}")
        else:
            result.absent.append(str(ref))

    def _delete_namespace(self, target: DeletionTarget, result: DeletionResult) -> None:
        ns = target.namespace
        ingress = f"Ingress {target.ingress_name}"
        self.console.info(f"Waiting for {ingress} to be removed before deleting namespace {ns}")
        outcome = self.ingress_gone_policy.await_with_retries(
            lambda: absence_readiness(self.cluster.get_ingress(ns, target.ingress_name), ingress),
            clock=self.clock,
            cancel=self.cancel,
            label="ingress-removal",
        )
        if outcome.status is AwaitStatus.CANCELLED:
            return
        if outcome.status is not AwaitStatus.READY:
            reason = outcome.condition.reason if outcome.condition else "ingress still present"
            logger.warning(f"Not deleting namespace {ns}: {reason}")
            result.failed[str(ResourceRef("Namespace", "", ns))] = reason
            self.console.warn(f"Namespace {ns} kept: {reason}")
            return
        self._delete(ResourceRef("Namespace", "", ns), result)

    def _delete_dns(self, zone_id: str, hostname: str, result: DeletionResult) -> None:
        if self.dns is None:
            logger.warning(f"No DNS client configured; leaving records for {hostname}")
            return
        dns = self.dns
        try:
            records = self._retrying(
                f"listing DNS records for {hostname}",
                lambda: dns.list_records(zone_id, hostname),
            )
        except Exception as exc:
            logger.warning(f"Could not list DNS records for {hostname}: {exc}")
            result.failed[f"DNS/{hostname}"] = str(exc)
            return

        if not records:
            result.absent.append(f"DNS/{hostname}")
            return
        for record in records:
            key = f"DNS/{record.type}/{record.name}"
            try:
                self._retrying(
                    f"deletion of DNS record {key}",
                    partial(dns.delete_record, zone_id, record.id),
                )
            except Exception as exc:
                logger.warning(f"Could not delete DNS record {key}: {exc}")
                result.failed[key] = str(exc)
                continue
            result.deleted.append(key)
            self.console.ok(f"Deleted DNS record {record.type} {record.name}")

    def _cancelled(self, result: DeletionResult) -> DeletionResult:
        logger.info("Deletion cancelled")
        result.outcome = Outcome.CANCELLED
        return result

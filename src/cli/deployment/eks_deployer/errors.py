"""Deployment errors and their classification.

Every exception a step raises is sorted into one of four kinds, which
decides how the sequencer reacts:

- TRANSIENT: still converging; retried under the step's retry policy
- TERMINAL: external system in a definitive bad state; needs recovery
- CONFIGURATION: credentials, permissions or prerequisites; never retried
- UNKNOWN: anything else; reported with its original exception attached
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx
import kr8s
from botocore.exceptions import ClientError, NoCredentialsError

from src.infra.dns.cloudflare import CloudflareError

from .probes import Condition, ConditionCause, failed, provisioning

if TYPE_CHECKING:
    from .diagnostics import DiagnosticReport


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class DeploymentError(Exception):
    """Raised when a deployment operation fails."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)


class TransientError(DeploymentError):
    """An external system is not ready yet; the operation may be retried."""


class TerminalExternalError(DeploymentError):
    """An external system reports a state retrying alone will not fix."""

    def __init__(
        self,
        message: str,
        details: str | None = None,
        cause: ConditionCause | None = None,
    ):
        super().__init__(message, details)
        self.cause = cause


class ConfigurationError(DeploymentError):
    """Missing permission, tool or setting. Carries the fix to run."""

    def __init__(
        self,
        message: str,
        details: str | None = None,
        remediation: str | None = None,
    ):
        if remediation:
            hint = f"Fix: {remediation}"
            details = f"{details}\n\n{hint}" if details else hint
        super().__init__(message, details)
        self.remediation = remediation


class StateConflictError(DeploymentError):
    """A write-once deployment state field was given a second, different value."""

    def __init__(self, field: str, current: Any, new: Any):
        super().__init__(
            f"Deployment state field '{field}' is already set",
            details=f"current={current!r}, attempted={new!r}",
        )
        self.field = field


class PipelineError(DeploymentError):
    """A fatal step failure, with the diagnostics collected at that point."""

    def __init__(
        self,
        step: str,
        condition: Condition | None,
        report: DiagnosticReport | None = None,
        cause: BaseException | None = None,
    ):
        reason = condition.reason if condition and condition.reason else str(cause or "")
        sections = []
        if isinstance(cause, DeploymentError) and cause.details:
            sections.append(cause.details)
        if report is not None:
            sections.append(report.render())
        super().__init__(f"Step '{step}' failed: {reason}", "\n\n".join(sections) or None)
        self.step = step
        self.condition = condition
        self.report = report
        self.cause = cause


# =============================================================================
# Classification
# =============================================================================

_TRANSIENT_MESSAGES = (
    "no endpoints available for service",
    "failed calling webhook",
    "connection refused",
    "i/o timeout",
    "tls handshake timeout",
)

_CONFIG_AWS_CODES = (
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "ExpiredTokenException",
    "SignatureDoesNotMatch",
)

_TRANSIENT_AWS_CODES = (
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
    "LimitExceededException",
)


def _http_status_kind(status: int | None) -> ErrorKind | None:
    if status in (401, 403):
        return ErrorKind.CONFIGURATION
    if status in (409, 429) or (status is not None and status >= 500):
        return ErrorKind.TRANSIENT
    return None


def _kr8s_status(error: kr8s.ServerError) -> int | None:
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


def classify_error(error: BaseException) -> ErrorKind:
    """Sort an exception into the deployment error taxonomy."""
    if isinstance(error, TransientError):
        return ErrorKind.TRANSIENT
    if isinstance(error, TerminalExternalError):
        return ErrorKind.TERMINAL
    if isinstance(error, ConfigurationError | NoCredentialsError):
        return ErrorKind.CONFIGURATION

    message = str(error).lower()
    if any(marker in message for marker in _TRANSIENT_MESSAGES):
        return ErrorKind.TRANSIENT

    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code in _CONFIG_AWS_CODES:
            return ErrorKind.CONFIGURATION
        if code in _TRANSIENT_AWS_CODES:
            return ErrorKind.TRANSIENT
        if code == "ResourceNotFoundException":
            return ErrorKind.TERMINAL
        return ErrorKind.UNKNOWN

    if isinstance(error, kr8s.ServerError):
        return _http_status_kind(_kr8s_status(error)) or ErrorKind.UNKNOWN

    if isinstance(error, CloudflareError):
        return _http_status_kind(error.status_code) or ErrorKind.UNKNOWN

    if isinstance(error, httpx.TransportError):
        return ErrorKind.TRANSIENT

    return ErrorKind.UNKNOWN


def condition_from_error(error: BaseException, kind: ErrorKind) -> Condition:
    """Condition recorded for a step whose action raised."""
    reason = getattr(error, "message", None) or str(error) or type(error).__name__
    if kind is ErrorKind.TRANSIENT:
        return provisioning(reason)
    cause = getattr(error, "cause", None)
    return failed(reason, cause if isinstance(cause, ConditionCause) else None)

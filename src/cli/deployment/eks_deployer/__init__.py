"""EKS deployment pipeline.

Converges an existing EKS cluster onto a ``DeploymentSpec``: cluster and
node checks, load balancer controller, image build and push, manifests,
rollout, load balancer, certificate, HTTPS, DNS and a final health check.
Each step is idempotent and polled under its own retry policy; fatal
failures carry a diagnostic report.
"""

from .deletion import DeletionPipeline
from .deployer import EksDeployer
from .diagnostics import DiagnosticReport, DiagnosticsCollector
from .errors import (
    ConfigurationError,
    DeploymentError,
    PipelineError,
    StateConflictError,
    TerminalExternalError,
    TransientError,
)
from .models import (
    DeletionResult,
    DeletionTarget,
    DeploymentResult,
    DeploymentSpec,
    DeploymentState,
    Outcome,
)
from .pipeline import build_forward_steps, default_policies
from .retry import CancellationToken, RetryPolicy
from .sequencer import StepSequencer

__all__ = [
    "CancellationToken",
    "ConfigurationError",
    "DeletionPipeline",
    "DeletionResult",
    "DeletionTarget",
    "DeploymentError",
    "DeploymentResult",
    "DeploymentSpec",
    "DeploymentState",
    "DiagnosticReport",
    "DiagnosticsCollector",
    "EksDeployer",
    "Outcome",
    "PipelineError",
    "RetryPolicy",
    "StateConflictError",
    "StepSequencer",
    "TerminalExternalError",
    "TransientError",
    "build_forward_steps",
    "default_policies",
]

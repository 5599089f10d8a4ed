"""EKS deployment commands.

This module provides the commands for deploying an application to an
existing EKS cluster, removing it again, and diagnosing a deployment.
"""

import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType
from typing import TYPE_CHECKING, Annotated, Any

import typer
from loguru import logger

from src.cli.context import get_cli_context
from src.cli.shared.console import console, with_error_handling

if TYPE_CHECKING:
    from src.cli.deployment.eks_deployer import CancellationToken, EksDeployer
    from src.runtime.config.config_loader import DeploymentConfig


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------


def configure_logging(log_dir: Path | None, *, verbose: bool = False) -> None:
    """Route loguru to stderr (warnings, or everything with --verbose) and a log file.

    Args:
        log_dir: Directory for ``deploy.log``; no file sink when None
        verbose: Log at DEBUG level on stderr
    """
    from src.cli.deployment.eks_deployer.constants import DEFAULT_CONSTANTS

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / DEFAULT_CONSTANTS.LOG_FILE,
            level="DEBUG",
            rotation="10 MB",
            retention=5,
        )


def _load_config(config: Path | None, **overrides: Any) -> "DeploymentConfig":
    """Load the deployment configuration, turning validation errors into CLI errors."""
    from src.cli.deployment.eks_deployer.errors import ConfigurationError
    from src.runtime.config.config_loader import load_deployment_config

    path = get_cli_context().config_path(config)
    try:
        return load_deployment_config(path, overrides=overrides or None)
    except FileNotFoundError:
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            remediation="Copy kubeship.example.yaml to kubeship.yaml and edit it",
        ) from None
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration in {path}", details=str(e)) from e


def _get_deployer(deployment: "DeploymentConfig", cancel: "CancellationToken") -> "EksDeployer":
    """Get the EKS deployer for a loaded configuration.

    Returns:
        EksDeployer instance configured for current project
    """
    from src.cli.deployment.eks_deployer import EksDeployer

    context = get_cli_context()
    return EksDeployer(
        context.console,
        deployment.source.parent,
        constants=context.constants,
        cancel=cancel,
        policies=deployment.retry_policies(),
    )


@contextmanager
def cancel_on_interrupt() -> Iterator["CancellationToken"]:
    """Turn the first Ctrl+C into a cancellation; a second one aborts."""
    from src.cli.deployment.eks_deployer import CancellationToken

    token = CancellationToken()

    def handler(signum: int, frame: FrameType | None) -> None:
        if token.cancelled:
            raise KeyboardInterrupt
        console.warn("Cancelling after the current operation (Ctrl+C again to abort)")
        token.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Deployment configuration file (default: kubeship.yaml)",
    ),
]
VerboseOption = Annotated[
    bool,
    typer.Option(
        "--verbose",
        "-v",
        help="Log every poll and external call to stderr",
    ),
]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@with_error_handling
def deploy(
    config: ConfigOption = None,
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Re-run steps whose outputs are already recorded",
        ),
    ] = False,
    resume: Annotated[
        bool,
        typer.Option(
            "--resume",
            help="Continue from the state file of the previous run",
        ),
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """Deploy the application to EKS.

    This command:
    - Checks the cluster and worker nodes
    - Installs the AWS Load Balancer Controller (with ingress)
    - Builds and pushes the image with a content-based tag
    - Renders and applies the manifests, then waits for the rollout
    - Waits for the load balancer, certificate and DNS record (with a domain)
    - Checks the public health endpoint

    Examples:
        kubeship deploy
        kubeship deploy -c staging.yaml
        kubeship deploy --resume
    """
    deployment = _load_config(config, force=force)
    configure_logging(deployment.spec.artifact_dir, verbose=verbose)
    console.print_header(f"Deploying {deployment.spec.app_name} to {deployment.spec.cluster.name}")

    with cancel_on_interrupt() as token:
        deployer = _get_deployer(deployment, token)
        deployer.deploy(spec=deployment.spec, resume=resume)
    if token.cancelled:
        raise typer.Exit(130)


@with_error_handling
def delete(
    config: ConfigOption = None,
    delete_namespace: Annotated[
        bool,
        typer.Option(
            "--delete-namespace",
            help="Also delete the namespace (never 'default')",
        ),
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """Remove the application from EKS.

    Deletes the autoscaler, ingress, service, deployment, secrets and
    config map, then optionally the namespace and the DNS record. Safe to
    re-run after an interrupted delete.

    Examples:
        kubeship delete
        kubeship delete --delete-namespace
    """
    deployment = _load_config(config)
    configure_logging(deployment.spec.artifact_dir, verbose=verbose)
    console.print_header(f"Removing {deployment.spec.app_name}")

    with cancel_on_interrupt() as token:
        deployer = _get_deployer(deployment, token)
        deployer.teardown(spec=deployment.spec, delete_namespace=delete_namespace)


@with_error_handling
def diagnose(
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show pods, events, logs and the likely root cause of a problem.

    Examples:
        kubeship diagnose
    """
    deployment = _load_config(config)
    configure_logging(deployment.spec.artifact_dir, verbose=verbose)
    console.print_header(f"Diagnosing {deployment.spec.app_name}")

    with cancel_on_interrupt() as token:
        deployer = _get_deployer(deployment, token)
        deployer.show_status(spec=deployment.spec)

"""CLI context and dependency container."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import click
import typer

from src.cli.deployment.eks_deployer.constants import (
    DEFAULT_CONSTANTS,
    DeploymentConstants,
)
from src.cli.shared.console import CLIConsole, console
from src.utils.paths import get_project_root


@dataclass(frozen=True)
class CLIContext:
    """Runtime dependencies for CLI commands."""

    console: CLIConsole
    project_root: Path
    constants: DeploymentConstants

    def config_path(self, path: Path | None) -> Path:
        """The configuration file to use: ``path`` or the project default."""
        if path is not None:
            return path
        return self.project_root / "kubeship.yaml"


def build_cli_context(start: Path | None = None) -> CLIContext:
    """Build a fresh CLIContext."""
    return CLIContext(
        console=console,
        project_root=get_project_root(start),
        constants=DEFAULT_CONSTANTS,
    )


def get_cli_context(ctx: typer.Context | None = None) -> CLIContext:
    """Return the CLIContext from Typer, falling back to a new instance."""
    context = ctx or click.get_current_context(silent=True)
    if context and isinstance(context.obj, CLIContext):
        return context.obj
    return build_cli_context()

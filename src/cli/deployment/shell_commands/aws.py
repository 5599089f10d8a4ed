"""AWS CLI command abstractions."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from .types import CommandResult

if TYPE_CHECKING:
    from .runner import CommandRunner


class AwsCliCommands:
    """aws CLI shell commands."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    def update_kubeconfig(
        self,
        cluster: str,
        region: str,
        kubeconfig: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Write cluster access configuration into a dedicated kubeconfig file."""
        return self._runner.run(
            [
                "aws",
                "eks",
                "update-kubeconfig",
                "--name",
                cluster,
                "--region",
                region,
                "--kubeconfig",
                str(kubeconfig),
            ],
            env=env,
        )

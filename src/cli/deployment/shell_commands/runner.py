"""Command runner for executing shell commands.

This module provides the base command execution functionality used by
all specialized command modules.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from loguru import logger

from .types import CommandResult


class CommandRunner:
    """Low-level command executor with consistent result handling.

    Extra environment entries are merged into a copy of the current
    environment for the child process only.
    """

    def __init__(self, project_root: Path) -> None:
        """Initialize the command runner.

        Args:
            project_root: Commands run from this directory by default.
        """
        self.project_root = project_root

    def run(
        self,
        cmd: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
        capture_output: bool = True,
    ) -> CommandResult:
        """Execute a command and return a structured result.

        A missing executable is reported as a failed result (return code 127)
        rather than an exception, like a shell would.

        Args:
            cmd: Command and arguments as a sequence
            cwd: Working directory (defaults to project_root)
            env: Extra environment variables for the child process
            input_text: Text written to the command's stdin
            capture_output: Whether to capture stdout/stderr

        Returns:
            CommandResult with success status, output, and return code
        """
        logger.debug(f"Running: {' '.join(cmd[:4])}{' ...' if len(cmd) > 4 else ''}")
        try:
            result = subprocess.run(
                list(cmd),
                cwd=cwd or self.project_root,
                env={**os.environ, **env} if env else None,
                input=input_text,
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            return CommandResult(
                success=False,
                stderr=f"{cmd[0]}: command not found",
                returncode=127,
            )
        return CommandResult(
            success=result.returncode == 0,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            returncode=result.returncode,
        )

"""Docker command abstractions.

Image build, registry login and push. Implements the registry client the
deployment pipeline uses.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from .types import CommandResult

if TYPE_CHECKING:
    from .runner import CommandRunner


class DockerCommands:
    """Docker-related shell commands.

    Provides operations for:
    - Image management (build, check existence)
    - Registry authentication and push
    """

    def __init__(self, runner: CommandRunner) -> None:
        """Initialize Docker commands.

        Args:
            runner: Command runner for executing shell commands
        """
        self._runner = runner

    # =========================================================================
    # Image Management
    # =========================================================================

    def image_exists(self, image_ref: str) -> bool:
        """Check if an image with the given reference exists locally.

        Example:
            >>> docker.image_exists("123.dkr.ecr.us-east-1.amazonaws.com/shop:git-abc1234")
            True
        """
        result = self._runner.run(["docker", "images", "-q", image_ref])
        return bool(result.stdout.strip())

    def buildx_available(self) -> bool:
        return self._runner.run(["docker", "buildx", "version"]).success

    def build_image(
        self,
        dockerfile: Path,
        context: Path,
        image_ref: str,
        *,
        platform: str,
    ) -> CommandResult:
        """Build an image for a target platform and load it locally.

        Uses buildx when available so images built on arm64 machines still
        run on amd64 nodes; plain ``docker build`` honours ``--platform``
        only for the host architecture.

        Args:
            dockerfile: Path to the Dockerfile
            context: Build context directory
            image_ref: Full reference to tag the image with
            platform: Target platform (e.g., "linux/amd64")

        Returns:
            CommandResult with build status
        """
        if self.buildx_available():
            cmd = ["docker", "buildx", "build", "--load"]
        else:
            cmd = ["docker", "build"]
        cmd.extend(
            [
                "--platform",
                platform,
                "-f",
                str(dockerfile),
                "-t",
                image_ref,
                str(context),
            ]
        )
        return self._runner.run(cmd, cwd=context)

    # =========================================================================
    # Registry
    # =========================================================================

    def login(self, registry: str, username: str, password: str) -> CommandResult:
        """Log in to a registry, passing the password on stdin."""
        return self._runner.run(
            ["docker", "login", "--username", username, "--password-stdin", registry],
            input_text=password,
        )

    def push(self, image_ref: str) -> CommandResult:
        """Push an image to its remote registry.

        Args:
            image_ref: Full image reference including registry
                      (e.g., "registry.example.com/app:v1")

        Returns:
            CommandResult with push status
        """
        return self._runner.run(["docker", "push", image_ref])

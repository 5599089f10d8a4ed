"""Git command abstractions.

Used to derive content-based image tags from the build context.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from .types import GitStatus

if TYPE_CHECKING:
    from .runner import CommandRunner


class GitCommands:
    """Git-related shell commands."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    def get_status(self, cwd: Path | None = None) -> GitStatus:
        """Get the repository status of a directory.

        Args:
            cwd: Directory to inspect (defaults to the runner's project root)

        Returns:
            GitStatus with repository state information

        Example:
            >>> status = git.get_status(Path("./app"))
            >>> if status.is_clean:
            ...     print(f"Clean repo at {status.short_sha}")
        """
        status_result = self._runner.run(["git", "status", "--porcelain"], cwd=cwd)
        if not status_result.success:
            return GitStatus(is_git_repo=False, is_clean=False, short_sha=None)

        is_clean = not bool(status_result.stdout.strip())
        sha_result = self._runner.run(["git", "rev-parse", "--short=7", "HEAD"], cwd=cwd)
        short_sha = sha_result.stdout.strip() if sha_result.success else None

        return GitStatus(is_git_repo=True, is_clean=is_clean, short_sha=short_sha)

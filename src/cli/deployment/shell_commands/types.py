"""Data types for shell command results."""

from __future__ import annotations

from dataclasses import dataclass

# Re-export from the canonical location
from src.infra.k8s.controller import CommandResult

__all__ = [
    "CommandResult",
    "GitStatus",
]


@dataclass
class GitStatus:
    """Git repository status information.

    Attributes:
        is_git_repo: Whether the directory is a git repository
        is_clean: Whether the working tree has no uncommitted changes
        short_sha: Short commit SHA (7 chars) of HEAD, or None if not available
    """

    is_git_repo: bool
    is_clean: bool
    short_sha: str | None

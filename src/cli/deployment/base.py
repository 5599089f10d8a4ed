"""Base deployer class with shared functionality."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from rich.progress import Progress, SpinnerColumn, TextColumn

from src.cli.shared.console import CLIConsole


class BaseDeployer(ABC):
    """Abstract base class for deployment targets.

    Subclasses implement the three CLI operations (deploy, teardown,
    status) for one platform and share the console helpers below.
    """

    def __init__(self, console: CLIConsole, project_root: Path):
        """Initialize the deployer.

        Args:
            console: CLI console for output
            project_root: Path to the project being deployed
        """
        self.console = console
        self.project_root = project_root

    @abstractmethod
    def deploy(self, **kwargs: Any) -> None:
        """Deploy the application.

        Args:
            **kwargs: Target-specific deployment options
        """

    @abstractmethod
    def teardown(self, **kwargs: Any) -> None:
        """Remove the application.

        Args:
            **kwargs: Target-specific teardown options
        """

    @abstractmethod
    def show_status(self, **kwargs: Any) -> None:
        """Display the current status of the deployment."""

    def create_progress(self, transient: bool = True) -> Progress:
        """Spinner for operations without a known length.

        Args:
            transient: Remove the spinner once the block exits

        Returns:
            Progress instance bound to the deployer's console
        """
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.console.console,
            transient=transient,
        )

    def warning(self, message: str) -> None:
        self.console.warn(message)

    def info(self, message: str) -> None:
        self.console.info(message)

"""Shell command abstractions for EKS deployment operations.

This package wraps the command-line tools used during deployment, one
module per tool:

- docker: image build, registry login and push
- helm: chart repositories and releases
- eksctl: IAM service accounts and node groups
- aws: kubeconfig generation
- git: repository state for image tagging

Usage:
    from src.cli.deployment.shell_commands import ShellCommands

    commands = ShellCommands(project_root=Path("."))
    if commands.docker.image_exists("registry/app:git-abc1234"):
        print("Image already built")
"""

from pathlib import Path

from .aws import AwsCliCommands
from .docker import DockerCommands
from .eksctl import EksctlCommands
from .git import GitCommands
from .helm import HelmCommands
from .runner import CommandRunner
from .types import CommandResult, GitStatus


class ShellCommands:
    """Unified interface for all shell command operations.

    Attributes:
        docker: Docker-related commands
        helm: Helm-related commands
        eksctl: eksctl commands
        aws: aws CLI commands
        git: Git repository commands

    Example:
        >>> commands = ShellCommands(Path("."), kubeconfig=Path("build/kubeconfig"))
        >>> commands.helm.add_repo("eks", "https://aws.github.io/eks-charts")
    """

    def __init__(self, project_root: Path, *, kubeconfig: Path | None = None) -> None:
        """Initialize the shell commands executor.

        Args:
            project_root: Commands run from this directory by default.
            kubeconfig: Kubeconfig used by cluster-facing tools
        """
        self._project_root = Path(project_root)
        self._runner = CommandRunner(self._project_root)

        self.docker = DockerCommands(self._runner)
        self.helm = HelmCommands(self._runner, kubeconfig)
        self.eksctl = EksctlCommands(self._runner)
        self.aws = AwsCliCommands(self._runner)
        self.git = GitCommands(self._runner)

    @property
    def project_root(self) -> Path:
        """Get the project root path."""
        return self._project_root


__all__ = [
    "ShellCommands",
    "CommandRunner",
    "CommandResult",
    "GitStatus",
    "DockerCommands",
    "HelmCommands",
    "EksctlCommands",
    "AwsCliCommands",
    "GitCommands",
]

import pytest
import typer
from rich.console import Console

from src.cli.deployment.eks_deployer.errors import ConfigurationError, DeploymentError
from src.cli.shared.console import CLIConsole, with_error_handling


def test_with_error_handling_handles_deployment_error():
    @with_error_handling
    def _command() -> None:
        raise DeploymentError("Boom", details="extra")

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 1


def test_with_error_handling_handles_subclasses():
    @with_error_handling
    def _command() -> None:
        raise ConfigurationError("No cluster", remediation="eksctl create cluster")

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 1


def test_with_error_handling_handles_keyboard_interrupt():
    @with_error_handling
    def _command() -> None:
        raise KeyboardInterrupt

    with pytest.raises(typer.Exit) as excinfo:
        _command()

    assert excinfo.value.exit_code == 130


def test_with_error_handling_lets_other_errors_through():
    @with_error_handling
    def _command() -> None:
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        _command()


def test_handle_error_prints_details_panel():
    """Details (including the remediation) are rendered before exiting."""
    recorder = Console(record=True, width=120)
    cli_console = CLIConsole(recorder)
    error = ConfigurationError("No cluster", remediation="eksctl create cluster")

    with pytest.raises(typer.Exit):
        cli_console.handle_error(error.message, error.details)

    output = recorder.export_text()
    assert "No cluster" in output
    assert "Fix: eksctl create cluster" in output

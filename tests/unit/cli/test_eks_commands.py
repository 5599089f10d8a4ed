"""Tests for the deploy, delete and diagnose commands."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from src.cli import app

runner = CliRunner()

CONFIG = """
deployment:
  app_name: my-api
  cluster:
    name: production
    region: us-east-1
timeouts:
  rollout-wait:
    max_total_wait: 900
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "kubeship.yaml"
    path.write_text(CONFIG)
    return path


@pytest.fixture
def deployer_cls():
    """Patch the deployer and the loguru sinks the commands configure."""
    with (
        patch("src.cli.deployment.eks_deployer.EksDeployer") as mock_cls,
        patch("src.cli.commands.eks.configure_logging"),
    ):
        yield mock_cls


def test_deploy_passes_spec_and_flags(config_file, deployer_cls):
    result = runner.invoke(app, ["deploy", "-c", str(config_file), "--force", "--resume"])

    assert result.exit_code == 0, result.output
    deployer: MagicMock = deployer_cls.return_value
    kwargs = deployer.deploy.call_args.kwargs
    assert kwargs["spec"].app_name == "my-api"
    assert kwargs["spec"].force
    assert kwargs["resume"]


def test_deploy_uses_config_directory_and_timeouts(config_file, deployer_cls):
    runner.invoke(app, ["deploy", "-c", str(config_file)])

    args, kwargs = deployer_cls.call_args
    assert args[1] == config_file.parent.resolve()
    assert kwargs["policies"]["rollout-wait"].max_total_wait == 900


def test_missing_config_file(tmp_path: Path, deployer_cls):
    result = runner.invoke(app, ["deploy", "-c", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 1
    assert "Configuration file not found" in result.output
    deployer_cls.assert_not_called()


def test_invalid_config(tmp_path: Path, deployer_cls):
    path = tmp_path / "kubeship.yaml"
    path.write_text("deployment:\n  app_name: my-api\n")

    result = runner.invoke(app, ["deploy", "-c", str(path)])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_delete_namespace_flag(config_file, deployer_cls):
    result = runner.invoke(app, ["delete", "-c", str(config_file), "--delete-namespace"])

    assert result.exit_code == 0, result.output
    kwargs = deployer_cls.return_value.teardown.call_args.kwargs
    assert kwargs["delete_namespace"] is True


def test_diagnose_shows_status(config_file, deployer_cls):
    result = runner.invoke(app, ["diagnose", "-c", str(config_file)])

    assert result.exit_code == 0, result.output
    deployer_cls.return_value.show_status.assert_called_once()


def test_no_arguments_prints_help():
    result = runner.invoke(app, [])

    assert "deploy" in result.output
    assert "diagnose" in result.output

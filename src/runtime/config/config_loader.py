"""Deployment configuration loading.

A configuration file looks like::

    deployment:
      app_name: my-api
      cluster:
        name: production
        region: us-east-1
      registry: 123456789012.dkr.ecr.us-east-1.amazonaws.com
      secrets:
        DATABASE_URL: ${DATABASE_URL:?set DATABASE_URL in .env}
    timeouts:
      rollout-wait:
        max_total_wait: 900
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from dotenv import dotenv_values
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.cli.deployment.eks_deployer.models import DeploymentSpec
from src.cli.deployment.eks_deployer.pipeline import default_policies
from src.cli.deployment.eks_deployer.retry import RetryPolicy
from src.runtime.config.config_utils import find_placeholders, substitute_env_vars
from src.utils.paths import resolve_relative

CONFIG_PATH = Path("kubeship.yaml")

# Spec fields holding filesystem paths, resolved against the config file's directory
_PATH_FIELDS = ("dockerfile", "build_context", "artifact_dir")


class TimeoutOverride(BaseModel):
    """Per-step retry policy override; unset fields keep the step default."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    poll_interval: float | None = Field(default=None, gt=0)
    max_polls_per_attempt: int | None = Field(default=None, ge=1)
    max_attempts: int | None = Field(default=None, ge=1)
    max_total_wait: float | None = Field(default=None, gt=0)


@dataclass(frozen=True)
class DeploymentConfig:
    """A validated configuration file."""

    spec: DeploymentSpec
    source: Path
    timeouts: dict[str, TimeoutOverride] = field(default_factory=dict)

    def retry_policies(self) -> dict[str, RetryPolicy]:
        """Overridden step policies, merged onto the step defaults."""
        defaults = default_policies()
        unknown = sorted(set(self.timeouts) - set(defaults))
        if unknown:
            raise ValueError(
                f"Unknown steps in timeouts: {', '.join(unknown)} "
                f"(known: {', '.join(defaults)})"
            )
        return {
            name: defaults[name].with_overrides(**override.model_dump())
            for name, override in self.timeouts.items()
        }


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "deployment"
        lines.append(f"  {location}: {item['msg']}")
    return "\n".join(lines)


def load_deployment_config(
    file_path: Path = CONFIG_PATH, *, overrides: dict[str, Any] | None = None
) -> DeploymentConfig:
    """
    Load a YAML deployment configuration with environment variable substitution.

    Variables come from the process environment, falling back to a ``.env``
    file next to the configuration; the process environment is never
    modified. Relative paths are resolved against the configuration file's
    directory.

    Args:
        file_path: Path to the YAML file (default: kubeship.yaml)
        overrides: Top-level spec fields to replace after loading (e.g. ``force``)

    Returns:
        The validated configuration

    Raises:
        ValueError: If required environment variables are missing, validation
            fails, or the YAML structure is invalid (missing 'deployment' key)
        FileNotFoundError: If the YAML file doesn't exist
    """
    file_path = file_path.resolve()
    base_dir = file_path.parent
    with open(file_path) as f:
        content = f.read()

    dotenv_path = base_dir / ".env"
    environ = {
        key: value
        for key, value in dotenv_values(dotenv_path).items()
        if value is not None
    }
    environ.update(os.environ)
    logger.debug(
        f"Loading {file_path} (.env present: {dotenv_path.exists()}, "
        f"variables referenced: {find_placeholders(content)})"
    )
    content = substitute_env_vars(content, environ)

    try:
        loaded = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML: {e}") from e
    if not isinstance(loaded, dict) or "deployment" not in loaded:
        raise ValueError("Invalid YAML structure: missing 'deployment' key")

    raw_spec = dict(loaded["deployment"] or {})
    for name in _PATH_FIELDS:
        if name in raw_spec and raw_spec[name] is not None:
            raw_spec[name] = resolve_relative(raw_spec[name], base_dir)
    for name in _PATH_FIELDS:
        raw_spec.setdefault(name, resolve_relative(_default_path(name), base_dir))
    raw_spec.update(overrides or {})

    try:
        spec = DeploymentSpec.model_validate(raw_spec)
        timeouts = {
            name: TimeoutOverride.model_validate(values or {})
            for name, values in (loaded.get("timeouts") or {}).items()
        }
    except ValidationError as e:
        raise ValueError(f"Invalid configuration:\n{_format_validation_error(e)}") from e

    config = DeploymentConfig(spec=spec, source=file_path, timeouts=timeouts)
    # Surface unknown step names at load time
    config.retry_policies()
    logger.info(f"Loaded deployment configuration for {spec.app_name} from {file_path}")
    return config


def _default_path(name: str) -> Path:
    default = DeploymentSpec.model_fields[name].default
    return Path(default)

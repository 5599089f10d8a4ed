"""Explicit AWS credentials.

Credentials travel from the deployment config into each client constructor
and into subprocess environments; the process environment is never modified.
"""

from __future__ import annotations

import boto3
from pydantic import BaseModel, ConfigDict, SecretStr


class Credentials(BaseModel):
    """AWS credentials for one deployment run.

    When neither keys nor a profile are given, boto3's default chain
    (environment, shared config, instance role) applies.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None
    session_token: SecretStr | None = None
    profile: str | None = None

    def boto3_session(self, region: str) -> boto3.Session:
        if self.profile:
            return boto3.Session(profile_name=self.profile, region_name=region)
        return boto3.Session(
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=_reveal(self.secret_access_key),
            aws_session_token=_reveal(self.session_token),
            region_name=region,
        )

    def as_env(self, region: str) -> dict[str, str]:
        """Environment entries for subprocesses (aws, eksctl, kubectl exec)."""
        env = {"AWS_REGION": region, "AWS_DEFAULT_REGION": region}
        if self.profile:
            env["AWS_PROFILE"] = self.profile
        if self.access_key_id:
            env["AWS_ACCESS_KEY_ID"] = self.access_key_id
        if self.secret_access_key:
            env["AWS_SECRET_ACCESS_KEY"] = self.secret_access_key.get_secret_value()
        if self.session_token:
            env["AWS_SESSION_TOKEN"] = self.session_token.get_secret_value()
        return env


def _reveal(secret: SecretStr | None) -> str | None:
    return secret.get_secret_value() if secret is not None else None

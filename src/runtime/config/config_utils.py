import os
import re
from collections.abc import Mapping

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def substitute_env_vars(text: str, environ: Mapping[str, str] | None = None) -> str:
    """
    Substitute environment variable placeholders in text.

    Supports formats:
    - ${VAR_NAME} - required variable (raises error if missing)
    - ${VAR_NAME:-default} - optional with default value
    - ${VAR_NAME:?error_message} - required with custom error message

    Args:
        text: Raw configuration text
        environ: Variables to read (defaults to ``os.environ``)
    """
    env = os.environ if environ is None else environ

    def replacer(match: re.Match[str]) -> str:
        var_expr = match.group(1)

        # Handle default values: ${VAR:-default}
        if ":-" in var_expr:
            var_name, default = var_expr.split(":-", 1)
            return env.get(var_name.strip(), default)

        # Handle error messages: ${VAR:?message}
        if ":?" in var_expr:
            var_name, error_msg = var_expr.split(":?", 1)
            value = env.get(var_name.strip())
            if value is None:
                raise ValueError(f"Required environment variable {var_name}: {error_msg}")
            return value

        # Handle required variables: ${VAR}
        var_name = var_expr.strip()
        value = env.get(var_name)
        if value is None:
            raise ValueError(f"Required environment variable {var_name} not set")
        return value

    return _PLACEHOLDER.sub(replacer, text)


def find_placeholders(text: str) -> list[str]:
    """Names of the variables referenced by placeholders in ``text``."""
    names = []
    for match in _PLACEHOLDER.finditer(text):
        name = re.split(r":[-?]", match.group(1), maxsplit=1)[0].strip()
        if name not in names:
            names.append(name)
    return names

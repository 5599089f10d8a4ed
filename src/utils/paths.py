from pathlib import Path

# Files that mark the root of the project being deployed
PROJECT_MARKERS = ("kubeship.yaml", "pyproject.toml", ".git")


def get_project_root(start: Path | None = None) -> Path:
    """Get the root directory of the project being deployed.

    Walks up from ``start`` (default: the working directory) to the first
    directory containing one of ``PROJECT_MARKERS``.

    Returns:
        Path to the project root directory, or ``start`` if none is found
    """
    current = (start or Path.cwd()).resolve()

    for parent in [current, *current.parents]:
        if any((parent / marker).exists() for marker in PROJECT_MARKERS):
            return parent

    return current


def resolve_relative(path: str | Path, base: Path) -> Path:
    """Resolve ``path`` against ``base`` unless it is already absolute."""
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate
    return (base / candidate).resolve()

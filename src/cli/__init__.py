"""Main CLI application module.

This module provides the main entry point for the kubeship CLI, which
ships a containerized application to an existing Amazon EKS cluster.

Commands:
- deploy: Build, push and roll out the application, then expose it
- delete: Remove what deploy created
- diagnose: Explain why a deployment is not healthy
"""

import typer

from .commands import delete, deploy, diagnose

# Create the main CLI application
app = typer.Typer(
    help="🚢 kubeship - Deploy containerized applications to Amazon EKS",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("deploy")(deploy)
app.command("delete")(delete)
app.command("diagnose")(diagnose)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()

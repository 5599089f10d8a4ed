"""CLI command modules.

Commands:
- deploy: Deploy the application to an EKS cluster
- delete: Remove the application's resources
- diagnose: Collect a diagnostic report for a deployment
"""

from .eks import delete, deploy, diagnose

__all__ = [
    "deploy",
    "delete",
    "diagnose",
]

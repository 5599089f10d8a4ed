"""AWS adapters: credentials, certificates and cluster account operations."""

from .acm import AcmCertificateClient
from .cloud import AwsCloudClient, ecr_registry_region
from .session import Credentials

__all__ = [
    "AcmCertificateClient",
    "AwsCloudClient",
    "Credentials",
    "ecr_registry_region",
]

"""DNS provider adapters."""

from .cloudflare import CloudflareDnsClient, CloudflareError

__all__ = ["CloudflareDnsClient", "CloudflareError"]

"""
DNS provider implementations for DNS-01 ACME challenges.

Supported providers:
- Cloudflare
"""

from .base import DNSProvider, DNSProviderError, TXTRecord
from .cloudflare import CloudflareDNS

__all__ = [
    "DNSProvider",
    "DNSProviderError",
    "TXTRecord",
    "CloudflareDNS",
    "get_dns_provider",
]


def get_dns_provider(provider_name: str, api_token: str = "", zone_id: str = "") -> DNSProvider:
    """
    Get a DNS provider instance by name.

    Raises:
        ValueError: If provider is not supported
    """
    provider_name = provider_name.lower().strip()

    if provider_name == "cloudflare":
        return CloudflareDNS(api_token=api_token, zone_id=zone_id)
    raise ValueError(f"Unsupported DNS provider: {provider_name}")

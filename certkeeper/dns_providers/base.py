"""
DNS provider interface for ACME DNS-01 challenges.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class DNSProviderError(Exception):
    """Error from a DNS provider operation."""

    pass


@dataclass(frozen=True)
class TXTRecord:
    """A published challenge record, enough to delete it again."""

    name: str
    value: str
    record_id: str
    zone_id: str


class DNSProvider(ABC):
    """
    Abstract base class for DNS providers.

    Implementations publish and remove the _acme-challenge TXT record
    that proves control of the domain.
    """

    @abstractmethod
    async def create_txt_record(
        self,
        name: str,
        value: str,
        ttl: int = 60,
    ) -> TXTRecord:
        """
        Create a TXT record for a DNS-01 challenge.

        Args:
            name: The record name (e.g., "_acme-challenge.example.com")
            value: The base64url-encoded challenge digest
            ttl: Time-to-live in seconds

        Returns:
            TXTRecord handle for later deletion

        Raises:
            DNSProviderError: If creation fails
        """
        pass

    @abstractmethod
    async def delete_txt_record(self, record: TXTRecord) -> bool:
        """
        Delete a TXT record after the challenge is done.

        Raises:
            DNSProviderError: If deletion fails
        """
        pass

    @abstractmethod
    async def get_zone_id(self, domain: str) -> Optional[str]:
        """
        Get the zone ID hosting a domain, or None if not found.

        Raises:
            DNSProviderError: If lookup fails
        """
        pass

"""
Certificate authority client interface.

The renewal core needs exactly one capability from the authority: obtain a
fresh certificate bundle for a domain. Account credentials, DNS provider and
timeouts are the implementation's business and are given at construction.
"""
from abc import ABC, abstractmethod

from .models import CertificateBundle


class CertificateAuthority(ABC):
    """Abstract source of certificates for one ACME account."""

    @abstractmethod
    async def obtain_certificate(self, domain: str) -> CertificateBundle:
        """
        Obtain a new certificate for a domain.

        Args:
            domain: The domain to certify

        Returns:
            CertificateBundle with leaf, private key and issuer PEMs

        Raises:
            AuthFailure: If account registration is rejected
            ChallengeFailure: If the DNS-01 challenge cannot be validated
            RateLimited: If the authority is throttling requests
            TransientNetworkError: If the authority cannot be reached
        """
        pass

"""
Cloudflare DNS provider for ACME DNS-01 challenges.
"""
import logging
import re
from typing import Optional

import httpx

from .base import DNSProvider, DNSProviderError, TXTRecord


logger = logging.getLogger(__name__)

# Cloudflare zone/record IDs are hex strings
_CF_ID_RE = re.compile(r"^[a-f0-9]{32}$")

CHALLENGE_PREFIX = "_acme-challenge."


def _validate_cf_id(value: str, label: str) -> str:
    """Validate a Cloudflare ID (zone_id or record_id) is a 32-char hex string."""
    if not _CF_ID_RE.match(value):
        raise DNSProviderError(f"Invalid {label} format")
    return value


class CloudflareDNS(DNSProvider):
    """
    Cloudflare DNS API implementation.

    Requires an API token with DNS:Edit permission for the zone.
    """

    BASE_URL = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        api_token: str,
        zone_id: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_token: Cloudflare API token with DNS:Edit permission
            zone_id: Optional zone ID (auto-detected from the domain if empty)
            transport: Optional httpx transport override
        """
        self.zone_id = zone_id
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers=self._headers,
            timeout=30.0,
            transport=self._transport,
        )

    def _parse_response(self, resp: httpx.Response) -> dict:
        """Check a Cloudflare response envelope for errors."""
        try:
            data = resp.json()
        except ValueError:
            raise DNSProviderError(
                f"Cloudflare API returned non-JSON response (HTTP {resp.status_code})"
            )
        if not data.get("success", False):
            errors = data.get("errors", [])
            error_msg = "; ".join(
                e.get("message", "Unknown error") for e in errors
            ) or f"HTTP {resp.status_code}"
            raise DNSProviderError(f"Cloudflare API error: {error_msg}")
        return data

    async def get_zone_id(self, domain: str) -> Optional[str]:
        """
        Get the zone ID for a domain.

        Walks from the full name towards the apex, so sub.example.com
        resolves to the example.com zone.
        """
        if self.zone_id:
            return self.zone_id

        parts = domain.split(".")
        try:
            async with self._client() as client:
                for i in range(len(parts) - 1):
                    zone_name = ".".join(parts[i:])
                    resp = await client.get("/zones", params={"name": zone_name})
                    zones = self._parse_response(resp).get("result", [])
                    if zones:
                        zone_id = zones[0]["id"]
                        logger.info("[CERT-CLOUDFLARE] Found zone: %s (%s)", zone_name, zone_id)
                        return zone_id
        except httpx.HTTPError as e:
            raise DNSProviderError(f"Failed to get zone ID: {e}") from e

        return None

    async def create_txt_record(
        self,
        name: str,
        value: str,
        ttl: int = 60,
    ) -> TXTRecord:
        """Create a TXT record; TTL is clamped to Cloudflare's 60s minimum."""
        domain = name[len(CHALLENGE_PREFIX):] if name.startswith(CHALLENGE_PREFIX) else name
        zone_id = await self.get_zone_id(domain)
        if not zone_id:
            raise DNSProviderError(f"Could not find zone for domain: {domain}")

        safe_zone_id = _validate_cf_id(zone_id, "zone_id")

        try:
            async with self._client() as client:
                resp = await client.post(f"/zones/{safe_zone_id}/dns_records", json={
                    "type": "TXT",
                    "name": name,
                    "content": value,
                    "ttl": max(60, ttl),
                })
                data = self._parse_response(resp)
        except httpx.HTTPError as e:
            raise DNSProviderError(f"Failed to create TXT record: {e}") from e

        record_id = data["result"]["id"]
        logger.info("[CERT-CLOUDFLARE] Created TXT record: %s (%s)", name, record_id)
        return TXTRecord(name=name, value=value, record_id=record_id, zone_id=zone_id)

    async def delete_txt_record(self, record: TXTRecord) -> bool:
        """Delete a TXT record; an already-missing record counts as deleted."""
        safe_zone_id = _validate_cf_id(record.zone_id, "zone_id")
        safe_record_id = _validate_cf_id(record.record_id, "record_id")

        try:
            async with self._client() as client:
                resp = await client.delete(f"/zones/{safe_zone_id}/dns_records/{safe_record_id}")
                self._parse_response(resp)
        except DNSProviderError as e:
            if "not found" in str(e).lower():
                logger.warning("[CERT-CLOUDFLARE] TXT record not found (already deleted?): %s", record.record_id)
                return True
            raise
        except httpx.HTTPError as e:
            raise DNSProviderError(f"Failed to delete TXT record: {e}") from e

        logger.info("[CERT-CLOUDFLARE] Deleted TXT record: %s", record.record_id)
        return True

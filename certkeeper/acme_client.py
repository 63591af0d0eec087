"""
ACME client for Let's Encrypt certificate issuance.

Implements the CertificateAuthority capability with the ACME protocol
(RFC 8555) and DNS-01 challenges published through a DNS provider.
Every failure is raised as one of the AuthorityError subclasses.
"""
import asyncio
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Literal, Optional, Sequence

import dns.asyncresolver
import dns.exception
import httpx
import josepy as jose
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.x509.oid import NameOID
from josepy import JWKRSA

from .authority import CertificateAuthority
from .dns_providers import DNSProvider, DNSProviderError, TXTRecord
from .errors import (
    AuthFailure,
    AuthorityError,
    ChallengeFailure,
    RateLimited,
    TransientNetworkError,
)
from .models import CertificateBundle
from .storage import _ensure_parent, _stage_private_file


logger = logging.getLogger(__name__)


# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

KeyType = Literal["rsa2048", "rsa4096", "ec256"]

_PEM_END = "-----END CERTIFICATE-----"

DEFAULT_DNS_RESOLVERS = ("1.1.1.1",)
DNS_QUERY_TIMEOUT = 10.0

# ACME problem types (urn:ietf:params:acme:error:<kind>)
_AUTH_PROBLEMS = {
    "unauthorized",
    "accountDoesNotExist",
    "userActionRequired",
    "badPublicKey",
    "invalidContact",
    "unsupportedContact",
    "externalAccountRequired",
}
_CHALLENGE_PROBLEMS = {"dns", "connection", "incorrectResponse", "caa", "rejectedIdentifier"}


def _problem_error(status: int, problem: dict, action: str) -> AuthorityError:
    """Map an ACME problem document to the matching AuthorityError."""
    kind = str(problem.get("type", "")).rsplit(":", 1)[-1]
    detail = problem.get("detail", "")
    message = f"ACME {action} failed: {status} {kind} {detail}".strip()

    if status == 429 or kind == "rateLimited":
        return RateLimited(message)
    if status >= 500 or kind == "serverInternal":
        return TransientNetworkError(message)
    if kind in _AUTH_PROBLEMS or status in (401, 403):
        return AuthFailure(message)
    if kind in _CHALLENGE_PROBLEMS:
        return ChallengeFailure(message)
    return AuthorityError(message)


def _split_chain(fullchain_pem: str) -> tuple[str, str]:
    """Split a PEM chain into (leaf, issuers)."""
    certs = [c.strip() + "\n" + _PEM_END + "\n" for c in fullchain_pem.split(_PEM_END) if c.strip()]
    if not certs:
        raise AuthorityError("ACME server returned no certificate")
    return certs[0], "".join(certs[1:])


class ACMEClient(CertificateAuthority):
    """
    ACME account client that obtains certificates via DNS-01.

    Each obtain_certificate() call registers (or looks up) the account,
    orders a certificate, solves the DNS challenge and downloads the chain.
    """

    def __init__(
        self,
        email: str,
        dns_provider: DNSProvider,
        staging: bool = False,
        account_key_path: Optional[Path] = None,
        key_type: KeyType = "rsa2048",
        propagation_delay: float = 120,
        dns_resolvers: Sequence[str] = DEFAULT_DNS_RESOLVERS,
        poll_interval: float = 2,
        poll_attempts: int = 30,
        directory_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            email: Contact email for the ACME account
            dns_provider: Publishes the _acme-challenge TXT record
            staging: Use Let's Encrypt staging environment
            account_key_path: Path to store/load the account key
            key_type: Key type for the issued certificate
            propagation_delay: Seconds to wait for the TXT record to become visible
            dns_resolvers: Nameservers queried for the TXT record (empty uses
                the system resolver)
            poll_interval: Seconds between authorization/order polls
            poll_attempts: Polls before giving up
            directory_url: Override the ACME directory (for other CAs)
            transport: Optional httpx transport override
            resolver: Optional DNS resolver override
            sleep: Coroutine used for all waits
        """
        self.email = email
        self.dns_provider = dns_provider
        self.directory_url = directory_url or (LETSENCRYPT_STAGING if staging else LETSENCRYPT_PRODUCTION)
        self.account_key_path = Path(account_key_path) if account_key_path else None
        self.key_type = key_type
        self.propagation_delay = propagation_delay
        self.dns_resolvers = tuple(dns_resolvers)
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._transport = transport
        self._dns_resolver = resolver
        self._sleep = sleep

        self.directory: dict = {}
        self.account_key: Optional[JWKRSA] = None
        self.account_url: Optional[str] = None
        self.nonce: Optional[str] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport)

    async def obtain_certificate(self, domain: str) -> CertificateBundle:
        """Obtain a certificate for domain; see CertificateAuthority."""
        try:
            async with self._client() as http:
                await self._initialize(http)

                logger.info("[CERT-ACME] Creating certificate order for %s", domain)
                resp = await self._acme_request(
                    http,
                    self.directory["newOrder"],
                    {"identifiers": [{"type": "dns", "value": domain}]},
                    action="new order",
                )
                order = resp.json()
                order_url = resp.headers.get("Location")
                if not order_url:
                    raise AuthorityError("ACME new order response has no Location")

                for auth_url in order["authorizations"]:
                    await self._authorize(http, auth_url, domain)

                return await self._finalize(http, order, order_url, domain)

        except httpx.TransportError as e:
            raise TransientNetworkError(f"ACME server unreachable: {e}") from e
        except (KeyError, ValueError) as e:
            raise AuthorityError(f"Unexpected ACME response: {e}") from e
        finally:
            self.nonce = None

    async def _initialize(self, http: httpx.AsyncClient) -> None:
        """Fetch directory, load/create the account key and register."""
        resp = await http.get(self.directory_url)
        if resp.status_code >= 400:
            raise _problem_error(resp.status_code, {}, "directory fetch")
        self.directory = resp.json()
        logger.debug("[CERT-ACME] Fetched ACME directory from %s", self.directory_url)

        if self.account_key is None:
            self.account_key = self._load_or_create_account_key()

        resp = await self._acme_request(
            http,
            self.directory["newAccount"],
            {"termsOfServiceAgreed": True, "contact": [f"mailto:{self.email}"]},
            use_jwk=True,
            action="account registration",
        )
        self.account_url = resp.headers.get("Location")
        if not self.account_url:
            raise AuthFailure("ACME account registration returned no account URL")
        logger.info("[CERT-ACME] ACME account registered/retrieved: %s", self.account_url)

    def _load_or_create_account_key(self) -> JWKRSA:
        """Load existing account key or create a new one."""
        if self.account_key_path and self.account_key_path.exists():
            try:
                private_key = serialization.load_pem_private_key(
                    self.account_key_path.read_bytes(), password=None,
                )
                logger.info("[CERT-ACME] Loaded existing ACME account key")
                return JWKRSA(key=private_key)
            except (OSError, ValueError, TypeError) as e:
                logger.warning("[CERT-ACME] Failed to load account key, creating new: %s", e)

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        if self.account_key_path:
            try:
                _ensure_parent(self.account_key_path)
                staged = _stage_private_file(self.account_key_path, private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                ))
                try:
                    os.replace(staged, self.account_key_path)
                except OSError:
                    staged.unlink(missing_ok=True)
                    raise
                logger.info("[CERT-ACME] Created and saved new ACME account key")
            except OSError as e:
                logger.warning("[CERT-ACME] Failed to save account key: %s", e)

        return JWKRSA(key=private_key)

    async def _get_nonce(self, http: httpx.AsyncClient) -> str:
        resp = await http.head(self.directory["newNonce"])
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise TransientNetworkError("ACME server returned no nonce")
        return nonce

    def _sign_request(self, url: str, payload: Optional[dict], use_jwk: bool = False) -> dict:
        """
        Build a flattened JWS for url.

        payload=None produces a POST-as-GET (empty payload).
        """
        if payload is None:
            payload_b64 = ""
        else:
            payload_b64 = jose.json_util.encode_b64jose(json.dumps(payload).encode("utf-8"))

        protected = {"alg": "RS256", "nonce": self.nonce, "url": url}
        if use_jwk:
            protected["jwk"] = self.account_key.public_key().to_partial_json()
        else:
            protected["kid"] = self.account_url

        protected_b64 = jose.json_util.encode_b64jose(json.dumps(protected).encode("utf-8"))
        signature = self.account_key.key.sign(
            f"{protected_b64}.{payload_b64}".encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": jose.json_util.encode_b64jose(signature),
        }

    async def _acme_request(
        self,
        http: httpx.AsyncClient,
        url: str,
        payload: Optional[dict] = None,
        use_jwk: bool = False,
        action: str = "request",
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        """
        Make a signed ACME request.

        A badNonce rejection is retried once with the fresh nonce.

        Raises:
            AuthorityError: Mapped from the ACME problem document
        """
        for attempt in range(2):
            if self.nonce is None:
                self.nonce = await self._get_nonce(http)

            resp = await http.post(
                url,
                json=self._sign_request(url, payload, use_jwk),
                headers={"Content-Type": "application/jose+json", **(headers or {})},
            )
            self.nonce = resp.headers.get("Replay-Nonce")

            if resp.status_code < 400:
                return resp

            try:
                problem = resp.json() if resp.content else {}
            except ValueError:
                problem = {}
            if attempt == 0 and str(problem.get("type", "")).endswith(":badNonce"):
                logger.debug("[CERT-ACME] Bad nonce, retrying %s", action)
                continue
            raise _problem_error(resp.status_code, problem, action)

        raise AuthorityError(f"ACME {action} failed: repeated bad nonce")

    def _key_authorization(self, token: str) -> str:
        thumbprint = self.account_key.public_key().thumbprint(hash_function=hashes.SHA256)
        return f"{token}.{jose.json_util.encode_b64jose(thumbprint)}"

    def dns_challenge_value(self, token: str) -> str:
        """TXT record value: base64url(sha256(key_authorization))."""
        digest = hashlib.sha256(self._key_authorization(token).encode("utf-8")).digest()
        return jose.json_util.encode_b64jose(digest)

    async def _poll(
        self,
        http: httpx.AsyncClient,
        url: str,
        action: str,
        timeout_error: type[AuthorityError] = AuthorityError,
    ) -> dict:
        """POST-as-GET url until its status leaves pending/processing."""
        for _ in range(self.poll_attempts):
            await self._sleep(self.poll_interval)
            body = (await self._acme_request(http, url, None, action=action)).json()
            if body.get("status") not in ("pending", "processing"):
                return body
        raise timeout_error(f"ACME {action} timed out")

    async def _authorize(self, http: httpx.AsyncClient, auth_url: str, domain: str) -> None:
        """Solve the DNS-01 challenge of one authorization."""
        auth = (await self._acme_request(http, auth_url, None, action="authorization fetch")).json()
        if auth.get("status") == "valid":
            logger.info("[CERT-ACME] Authorization already valid for %s", domain)
            return

        challenge = next((ch for ch in auth.get("challenges", []) if ch.get("type") == "dns-01"), None)
        if challenge is None:
            raise ChallengeFailure(f"No dns-01 challenge offered for {domain}")

        record_name = f"_acme-challenge.{domain}"
        value = self.dns_challenge_value(challenge["token"])
        try:
            record = await self.dns_provider.create_txt_record(record_name, value)
        except DNSProviderError as e:
            raise ChallengeFailure(f"DNS challenge record could not be published: {e}") from e

        try:
            await self._wait_for_propagation(record_name, value)

            logger.info("[CERT-ACME] Responding to dns-01 challenge for %s", domain)
            await self._acme_request(http, challenge["url"], {}, action="challenge response")

            auth = await self._poll(http, auth_url, "authorization", ChallengeFailure)
            if auth.get("status") != "valid":
                error = next(
                    (ch.get("error", {}) for ch in auth.get("challenges", []) if ch.get("type") == "dns-01"),
                    {},
                )
                raise ChallengeFailure(
                    f"Challenge failed for {domain}: {error.get('detail', auth.get('status', 'unknown'))}"
                )
            logger.info("[CERT-ACME] Authorization valid for %s", domain)
        finally:
            await self._cleanup_record(record)

    def _resolver(self) -> dns.asyncresolver.Resolver:
        if self._dns_resolver is not None:
            return self._dns_resolver
        # No explicit nameservers falls back to the system configuration
        resolver = dns.asyncresolver.Resolver(configure=not self.dns_resolvers)
        if self.dns_resolvers:
            resolver.nameservers = list(self.dns_resolvers)
        resolver.lifetime = DNS_QUERY_TIMEOUT
        return resolver

    async def _txt_visible(self, resolver: dns.asyncresolver.Resolver, record_name: str, value: str) -> bool:
        try:
            answer = await resolver.resolve(record_name, "TXT")
        except dns.exception.DNSException as e:
            logger.debug("[CERT-ACME] TXT lookup for %s not ready: %s", record_name, e)
            return False
        # TXT rdata carries a tuple of byte segments
        found = [b"".join(rdata.strings).decode("ascii", errors="replace") for rdata in answer]
        return value in found

    async def _wait_for_propagation(self, record_name: str, value: str) -> None:
        """
        Query the DNS resolvers until the challenge record is visible.

        Checks every poll_interval seconds for up to propagation_delay seconds.

        Raises:
            ChallengeFailure: If the record never shows up
        """
        try:
            resolver = self._resolver()
        except dns.exception.DNSException as e:
            raise ChallengeFailure(f"No DNS resolver available: {e}") from e
        logger.debug(
            "[CERT-ACME] Waiting up to %ss for %s to propagate (resolvers: %s)",
            self.propagation_delay, record_name, ", ".join(self.dns_resolvers) or "system",
        )

        waited = 0.0
        while not await self._txt_visible(resolver, record_name, value):
            if waited >= self.propagation_delay:
                raise ChallengeFailure(
                    f"TXT record {record_name} not visible after {self.propagation_delay}s"
                )
            await self._sleep(self.poll_interval)
            waited += self.poll_interval

        logger.info("[CERT-ACME] TXT record %s has propagated", record_name)

    async def _cleanup_record(self, record: TXTRecord) -> None:
        try:
            await self.dns_provider.delete_txt_record(record)
        except DNSProviderError as e:
            logger.warning("[CERT-ACME] Failed to delete DNS record %s: %s", record.name, e)

    def _generate_key(self):
        if self.key_type == "ec256":
            return ec.generate_private_key(ec.SECP256R1())
        key_size = 4096 if self.key_type == "rsa4096" else 2048
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    async def _finalize(
        self,
        http: httpx.AsyncClient,
        order: dict,
        order_url: str,
        domain: str,
    ) -> CertificateBundle:
        """Submit the CSR, wait for issuance and download the chain."""
        cert_key = self._generate_key()
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(cert_key, hashes.SHA256())
        )
        csr_b64 = jose.json_util.encode_b64jose(csr.public_bytes(serialization.Encoding.DER))

        logger.info("[CERT-ACME] Finalizing certificate order")
        order = (await self._acme_request(
            http, order["finalize"], {"csr": csr_b64}, action="order finalization",
        )).json()
        if order.get("status") != "valid":
            order = await self._poll(http, order_url, "order")
        if order.get("status") != "valid":
            raise AuthorityError(f"Order for {domain} ended in status {order.get('status')}")

        resp = await self._acme_request(
            http,
            order["certificate"],
            None,
            action="certificate download",
            headers={"Accept": "application/pem-certificate-chain"},
        )
        cert_pem, issuer_pem = _split_chain(resp.text)
        if not issuer_pem:
            raise AuthorityError("ACME server returned no issuer certificate")

        key_pem = cert_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

        logger.info("[CERT-ACME] Certificate issued for %s", domain)
        return CertificateBundle(
            cert_pem=cert_pem.encode("utf-8"),
            key_pem=key_pem,
            issuer_pem=issuer_pem.encode("utf-8"),
        )

"""
Shared fixtures: throwaway certificates and a fake certificate authority.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certkeeper.authority import CertificateAuthority
from certkeeper.models import CertificateBundle, CertificateRecord
from certkeeper.storage import CertificateSink, MetadataStore


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


class FakeAuthority(CertificateAuthority):
    """Returns a canned bundle (or raises a canned error) and counts calls."""

    def __init__(self, bundle=None, error=None):
        self.bundle = bundle
        self.error = error
        self.calls: list[str] = []

    async def obtain_certificate(self, domain: str) -> CertificateBundle:
        self.calls.append(domain)
        if self.error is not None:
            raise self.error
        return self.bundle


@pytest.fixture(scope="session")
def issuer():
    """A self-signed test CA (key, certificate)."""
    key = ec.generate_private_key(ec.SECP256R1())
    start = datetime(2020, 1, 1, tzinfo=timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name("Test Issuer"))
        .issuer_name(_name("Test Issuer"))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + timedelta(days=36500))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture
def make_bundle(issuer):
    """Factory: make_bundle(not_after, domain=..., validity=...) -> CertificateBundle."""
    issuer_key, issuer_cert = issuer

    def _make(
        not_after: datetime,
        domain: str = "example.com",
        validity: timedelta = timedelta(days=90),
    ) -> CertificateBundle:
        key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name(domain))
            .issuer_name(issuer_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_after - validity)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(issuer_key, hashes.SHA256())
        )
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return CertificateBundle(cert_pem=_pem(cert), key_pem=key_pem, issuer_pem=_pem(issuer_cert))

    return _make


@pytest.fixture
def fake_authority():
    """Factory for FakeAuthority instances."""
    return FakeAuthority


@pytest.fixture
def store(tmp_path: Path) -> MetadataStore:
    return MetadataStore(tmp_path / "cert.json")


@pytest.fixture
def sink(tmp_path: Path) -> CertificateSink:
    return CertificateSink(
        cert_path=tmp_path / "cert.pem",
        key_path=tmp_path / "key.pem",
        issuer_path=tmp_path / "ca.pem",
    )


@pytest.fixture
def make_record():
    """Factory: make_record(renew_time) -> CertificateRecord with a 30-day lead."""

    def _make(renew_time: datetime) -> CertificateRecord:
        not_after = renew_time + timedelta(days=30)
        return CertificateRecord(
            version=3,
            serial_number="123456789",
            signature_algorithm="ecdsa-with-SHA256",
            issuer="CN=Test Issuer",
            subject="CN=example.com",
            not_before=not_after - timedelta(days=90),
            not_after=not_after,
            renew_time=renew_time,
        )

    return _make

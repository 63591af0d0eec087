"""
Certificate storage.

MetadataStore keeps the single CertificateRecord for the managed domain.
CertificateSink writes the leaf, key and issuer PEM files. Both write through
temp files and os.replace so a reader never sees a half-written file.
"""
import logging
import os
import tempfile
from datetime import timedelta
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import SignatureAlgorithmOID
from pydantic import ValidationError

from .errors import FilesystemError, MetadataIOError, MetadataParseError
from .expiry import RENEWAL_LEAD, compute_renew_time
from .models import CertificateBundle, CertificateRecord


logger = logging.getLogger(__name__)


def _stage_private_file(target: Path, data: bytes) -> Path:
    """
    Write data to a temp file next to target with owner-only permissions.

    Returns:
        Path of the staged temp file (caller renames or removes it)
    """
    fd, tmp_name = tempfile.mkstemp(
        dir=target.parent,
        prefix=f".{target.name}.",
        suffix=".tmp",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), 0o600)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


def _ensure_parent(path: Path) -> None:
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(path.parent, 0o700)


class MetadataStore:
    """Reads and writes the metadata record for the managed certificate."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        """
        Check if a record is present.

        Raises:
            MetadataIOError: If the path cannot be inspected for reasons
                other than the file being absent
        """
        try:
            self.path.stat()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise MetadataIOError(f"Cannot stat metadata file {self.path}: {e}") from e
        return True

    def load(self) -> CertificateRecord:
        """
        Load the stored record.

        Raises:
            MetadataIOError: If the file cannot be read
            MetadataParseError: If the content is not a well-formed record
        """
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise MetadataIOError(f"Cannot read metadata file {self.path}: {e}") from e

        try:
            return CertificateRecord.model_validate_json(data)
        except ValidationError as e:
            raise MetadataParseError(f"Malformed metadata file {self.path}: {e}") from e

    def save(self, record: CertificateRecord) -> None:
        """
        Replace the stored record atomically.

        Raises:
            MetadataIOError: If the record cannot be written; the previous
                record is left in place
        """
        try:
            _ensure_parent(self.path)
            tmp_path = _stage_private_file(self.path, record.to_json().encode("utf-8"))
            try:
                os.replace(tmp_path, self.path)
            except OSError:
                tmp_path.unlink(missing_ok=True)
                raise
        except OSError as e:
            raise MetadataIOError(f"Cannot write metadata file {self.path}: {e}") from e

        logger.info(
            "[CERT-STORAGE] Metadata saved to %s (renew after %s)",
            self.path, record.renew_time.isoformat(),
        )


class CertificateSink:
    """Writes certificate artifacts to their configured locations."""

    def __init__(self, cert_path: Path, key_path: Path, issuer_path: Path):
        self.cert_path = Path(cert_path)
        self.key_path = Path(key_path)
        self.issuer_path = Path(issuer_path)

    def write(self, bundle: CertificateBundle) -> None:
        """
        Write leaf, key and issuer PEM files with mode 0600.

        All three are staged first; the live files are replaced only once
        every staged file is on disk.

        Raises:
            FilesystemError: If any artifact cannot be written
        """
        targets = [
            (self.cert_path, bundle.cert_pem),
            (self.key_path, bundle.key_pem),
            (self.issuer_path, bundle.issuer_pem),
        ]
        staged: list[tuple[Path, Path]] = []

        try:
            for target, data in targets:
                _ensure_parent(target)
                staged.append((_stage_private_file(target, data), target))
        except OSError as e:
            self._discard(staged)
            raise FilesystemError(f"Failed to stage certificate files: {e}") from e

        remaining = list(staged)
        try:
            while remaining:
                tmp_path, target = remaining[0]
                os.replace(tmp_path, target)
                remaining.pop(0)
        except OSError as e:
            self._discard(remaining)
            raise FilesystemError(f"Failed to install certificate files: {e}") from e

        logger.info("[CERT-STORAGE] Certificate saved to %s", self.cert_path)

    @staticmethod
    def _discard(staged: list[tuple[Path, Path]]) -> None:
        for tmp_path, _ in staged:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("[CERT-STORAGE] Could not remove staged file %s: %s", tmp_path, e)


# OpenSSL short names for the algorithms public CAs sign with
SIGNATURE_ALGORITHM_NAMES = {
    SignatureAlgorithmOID.RSA_WITH_SHA256: "sha256WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA384: "sha384WithRSAEncryption",
    SignatureAlgorithmOID.RSA_WITH_SHA512: "sha512WithRSAEncryption",
    SignatureAlgorithmOID.RSASSA_PSS: "RSASSA-PSS",
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: "ecdsa-with-SHA256",
    SignatureAlgorithmOID.ECDSA_WITH_SHA384: "ecdsa-with-SHA384",
    SignatureAlgorithmOID.ECDSA_WITH_SHA512: "ecdsa-with-SHA512",
    SignatureAlgorithmOID.ED25519: "ed25519",
    SignatureAlgorithmOID.ED448: "ed448",
}


def _signature_algorithm_name(cert: x509.Certificate) -> str:
    oid = cert.signature_algorithm_oid
    return SIGNATURE_ALGORITHM_NAMES.get(oid, oid.dotted_string)


def parse_certificate(cert_pem: bytes, lead: timedelta = RENEWAL_LEAD) -> CertificateRecord:
    """
    Build a metadata record from a PEM leaf certificate.

    The renewal deadline is fixed here, once, as not_after - lead.

    Raises:
        ValueError: If the PEM is not a parseable certificate
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    not_after = cert.not_valid_after_utc

    return CertificateRecord(
        version=cert.version.value + 1,
        serial_number=str(cert.serial_number),
        signature_algorithm=_signature_algorithm_name(cert),
        issuer=cert.issuer.rfc4514_string(),
        subject=cert.subject.rfc4514_string(),
        not_before=cert.not_valid_before_utc,
        not_after=not_after,
        renew_time=compute_renew_time(not_after, lead),
    )

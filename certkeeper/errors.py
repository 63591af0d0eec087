"""
Error taxonomy for certificate lifecycle management.

Every failure of a single renewal attempt is one of StorageError,
AuthorityError or FilesystemError. The lifecycle loop reports these and
keeps running; only ConfigError is fatal, and only at startup.
"""


class CertKeeperError(Exception):
    """Base class for all certkeeper errors."""

    pass


class ConfigError(CertKeeperError):
    """Configuration or logger could not be loaded at startup."""

    pass


class StorageError(CertKeeperError):
    """Metadata record could not be read, parsed or written."""

    pass


class MetadataIOError(StorageError):
    """Metadata record read/write failed at the filesystem level."""

    pass


class MetadataParseError(StorageError):
    """Metadata record exists but is not a well-formed record."""

    pass


class FilesystemError(CertKeeperError):
    """Certificate artifacts could not be written."""

    pass


class AuthorityError(CertKeeperError):
    """The certificate authority could not issue a certificate."""

    pass


class AuthFailure(AuthorityError):
    """Account registration or authentication was rejected."""

    pass


class ChallengeFailure(AuthorityError):
    """The DNS-01 challenge could not be published or validated."""

    pass


class RateLimited(AuthorityError):
    """The certificate authority is throttling requests."""

    pass


class TransientNetworkError(AuthorityError):
    """Network failure while talking to the certificate authority."""

    pass

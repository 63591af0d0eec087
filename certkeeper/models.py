"""
Certificate lifecycle data types.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CertificateRecord(BaseModel):
    """
    Persisted metadata for the currently installed certificate.

    Serialized with camelCase keys (serialNumber, notAfter, renewTime, ...).
    Only renew_time drives renewal; the other fields are informational.
    Records are immutable and replaced wholesale on re-issuance.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    version: int
    serial_number: str
    signature_algorithm: str
    issuer: str
    subject: str
    not_before: AwareDatetime
    not_after: AwareDatetime
    renew_time: AwareDatetime

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_layout(cls, data: Any) -> Any:
        """
        Read records written by older deployments.

        Those use PascalCase keys and nest the validity window, e.g.
        {"SerialNumber": ..., "Validity": {"NotBefore": ..., "NotAfter": ...},
        "RenewTime": ...}. The next save rewrites them in the current layout.
        """
        if not isinstance(data, dict) or "RenewTime" not in data:
            return data
        validity = data.get("Validity")
        if not isinstance(validity, dict):
            validity = {}
        return {
            "version": data.get("Version"),
            "serialNumber": data.get("SerialNumber"),
            "signatureAlgorithm": data.get("SignatureAlgorithm"),
            "issuer": data.get("Issuer"),
            "subject": data.get("Subject"),
            "notBefore": validity.get("NotBefore"),
            "notAfter": validity.get("NotAfter"),
            "renewTime": data.get("RenewTime"),
        }

    @field_validator("not_before", "not_after", "renew_time")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def check_window(self) -> "CertificateRecord":
        if self.renew_time >= self.not_after:
            raise ValueError("renewTime must be before notAfter")
        return self

    def to_json(self) -> str:
        """Render the record as indented JSON for the metadata file."""
        return self.model_dump_json(by_alias=True, indent=2)


@dataclass(frozen=True)
class CertificateBundle:
    """Artifacts from one successful issuance, all PEM encoded."""

    cert_pem: bytes
    key_pem: bytes
    issuer_pem: bytes

    def __repr__(self) -> str:
        # Never echo key material into logs
        return (
            f"CertificateBundle(cert_pem=<{len(self.cert_pem)} bytes>, "
            f"key_pem=<redacted>, issuer_pem=<{len(self.issuer_pem)} bytes>)"
        )

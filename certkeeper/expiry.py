"""
Renewal policy: when is a certificate due for renewal.
"""
from datetime import datetime, timedelta

from .models import CertificateRecord


# Renew when this much validity is left
RENEWAL_LEAD = timedelta(days=30)


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{name} must be timezone-aware")


def compute_renew_time(not_after: datetime, lead: timedelta = RENEWAL_LEAD) -> datetime:
    """Get the renewal deadline for a certificate expiring at not_after."""
    _require_aware(not_after, "not_after")
    if lead <= timedelta(0):
        raise ValueError("Renewal lead must be positive")
    return not_after - lead


def is_renewal_due(now: datetime, record: CertificateRecord) -> bool:
    """Check if now is strictly past the record's renewal deadline."""
    _require_aware(now, "now")
    return now > record.renew_time

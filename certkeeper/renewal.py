"""
Certificate renewal orchestration.

One RenewalOrchestrator.run() is one renewal attempt:

    CHECK_EXISTENCE -> EVALUATE -> SKIP
                                -> ACQUIRE -> PERSIST -> DONE

A missing metadata record goes straight to ACQUIRE. Every failure aborts
the attempt by raising; the previous record and certificate files stay
authoritative. Nothing is kept in memory between attempts.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from .authority import CertificateAuthority
from .errors import AuthorityError
from .expiry import RENEWAL_LEAD, is_renewal_due
from .models import CertificateRecord
from .storage import CertificateSink, MetadataStore, parse_certificate


logger = logging.getLogger(__name__)


class RenewalState(str, Enum):
    """States of a single renewal attempt."""

    CHECK_EXISTENCE = "check_existence"
    EVALUATE = "evaluate"
    SKIP = "skip"
    ACQUIRE = "acquire"
    PERSIST = "persist"
    DONE = "done"


@dataclass
class RenewalOutcome:
    """Result of a successful renewal attempt."""

    state: RenewalState
    renewed: bool = False
    record: Optional[CertificateRecord] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RenewalOrchestrator:
    """
    Runs renewal attempts for one domain.

    All collaborators are injected; the orchestrator owns no global state.
    """

    def __init__(
        self,
        domain: str,
        store: MetadataStore,
        sink: CertificateSink,
        authority: CertificateAuthority,
        lead: timedelta = RENEWAL_LEAD,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            domain: The managed domain
            store: Metadata record store
            sink: Certificate artifact writer
            authority: Certificate source
            lead: Renew this long before notAfter
            clock: Returns the current timezone-aware time
        """
        self.domain = domain
        self.store = store
        self.sink = sink
        self.authority = authority
        self.lead = lead
        self.clock = clock

    def _enter(self, state: RenewalState) -> RenewalState:
        logger.debug("[CERT-RENEWAL] %s: %s", self.domain, state.value)
        return state

    async def run(self) -> RenewalOutcome:
        """
        Run one renewal attempt.

        Returns:
            RenewalOutcome ending in SKIP (not due) or DONE (renewed)

        Raises:
            StorageError: If the existing record cannot be read or the new
                one cannot be saved
            AuthorityError: If the certificate authority fails
            FilesystemError: If certificate files cannot be written
        """
        self._enter(RenewalState.CHECK_EXISTENCE)

        if self.store.exists():
            record = self.store.load()

            self._enter(RenewalState.EVALUATE)
            now = self.clock()
            if not is_renewal_due(now, record):
                logger.info(
                    "[CERT-RENEWAL] Certificate for %s not due for renewal until %s",
                    self.domain, record.renew_time.isoformat(),
                )
                return RenewalOutcome(state=self._enter(RenewalState.SKIP))

            logger.info(
                "[CERT-RENEWAL] Certificate for %s passed its renewal time %s, renewing",
                self.domain, record.renew_time.isoformat(),
            )
        else:
            logger.info("[CERT-RENEWAL] No certificate metadata at %s, requesting new certificate", self.store.path)

        self._enter(RenewalState.ACQUIRE)
        try:
            bundle = await self.authority.obtain_certificate(self.domain)
        except AuthorityError:
            raise
        except Exception as e:
            raise AuthorityError(f"Certificate authority client failed: {e}") from e

        self._enter(RenewalState.PERSIST)
        try:
            new_record = parse_certificate(bundle.cert_pem, self.lead)
        except ValueError as e:
            raise AuthorityError(f"Issued certificate could not be parsed: {e}") from e

        # Certificate files first, so the record never points at missing files
        self.sink.write(bundle)
        self.store.save(new_record)

        logger.info(
            "[CERT-RENEWAL] Certificate for %s renewed, expires %s, next renewal after %s",
            self.domain, new_record.not_after.isoformat(), new_record.renew_time.isoformat(),
        )
        return RenewalOutcome(state=self._enter(RenewalState.DONE), renewed=True, record=new_record)

"""
Unit tests for the RenewalOrchestrator.
"""
import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from certkeeper.errors import (
    AuthFailure,
    AuthorityError,
    ChallengeFailure,
    FilesystemError,
    MetadataIOError,
    MetadataParseError,
    RateLimited,
    TransientNetworkError,
)
from certkeeper.models import CertificateBundle
from certkeeper.renewal import RenewalOrchestrator, RenewalState

UTC = timezone.utc
NOW = datetime(2024, 6, 1, tzinfo=UTC)


def _orchestrator(store, sink, authority, now=NOW, **kwargs):
    return RenewalOrchestrator(
        domain="example.com",
        store=store,
        sink=sink,
        authority=authority,
        clock=lambda: now,
        **kwargs,
    )


class TestFirstIssuance:
    """No metadata record yet."""

    @pytest.mark.asyncio
    async def test_absent_metadata_issues_and_records(self, store, sink, make_bundle, fake_authority):
        """notAfter 2025-03-01 yields renewTime 2025-01-30."""
        bundle = make_bundle(datetime(2025, 3, 1, tzinfo=UTC))
        authority = fake_authority(bundle=bundle)

        outcome = await _orchestrator(store, sink, authority).run()

        assert outcome.state == RenewalState.DONE
        assert outcome.renewed is True
        assert authority.calls == ["example.com"]
        assert sink.cert_path.read_bytes() == bundle.cert_pem
        assert sink.key_path.read_bytes() == bundle.key_pem
        assert sink.issuer_path.read_bytes() == bundle.issuer_pem

        record = store.load()
        assert record == outcome.record
        assert record.not_after == datetime(2025, 3, 1, tzinfo=UTC)
        assert record.renew_time == datetime(2025, 1, 30, tzinfo=UTC)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("now", [
        datetime(1999, 1, 1, tzinfo=UTC),
        datetime(2024, 6, 1, tzinfo=UTC),
        datetime(2099, 12, 31, tzinfo=UTC),
    ])
    async def test_absent_metadata_always_acquires(self, store, sink, make_bundle, fake_authority, now):
        authority = fake_authority(bundle=make_bundle(datetime(2025, 3, 1, tzinfo=UTC)))

        await _orchestrator(store, sink, authority, now=now).run()

        assert len(authority.calls) == 1

    @pytest.mark.asyncio
    async def test_absent_metadata_does_not_consult_clock(self, store, sink, make_bundle, fake_authority):
        clock = MagicMock(side_effect=AssertionError("clock should not be read"))
        authority = fake_authority(bundle=make_bundle(datetime(2025, 3, 1, tzinfo=UTC)))
        orchestrator = RenewalOrchestrator("example.com", store, sink, authority, clock=clock)

        outcome = await orchestrator.run()

        assert outcome.renewed is True
        clock.assert_not_called()


class TestExistingRecord:
    """A metadata record is present."""

    @pytest.mark.asyncio
    async def test_due_record_renews_once(self, store, sink, make_record, make_bundle, fake_authority):
        """renewTime 2024-01-01 at 2024-06-01 is due."""
        store.save(make_record(datetime(2024, 1, 1, tzinfo=UTC)))
        authority = fake_authority(bundle=make_bundle(datetime(2024, 8, 30, tzinfo=UTC)))

        outcome = await _orchestrator(store, sink, authority).run()

        assert outcome.state == RenewalState.DONE
        assert authority.calls == ["example.com"]
        assert store.load().renew_time == datetime(2024, 7, 31, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_not_due_record_skips(self, store, sink, make_record, fake_authority):
        """renewTime 2099-01-01 at 2024-06-01: zero CA calls, zero writes."""
        store.save(make_record(datetime(2099, 1, 1, tzinfo=UTC)))
        before = store.path.read_bytes()
        sink.write = MagicMock()
        store.save = MagicMock()
        authority = fake_authority()

        outcome = await _orchestrator(store, sink, authority).run()

        assert outcome.state == RenewalState.SKIP
        assert outcome.renewed is False
        assert outcome.record is None
        assert authority.calls == []
        sink.write.assert_not_called()
        store.save.assert_not_called()
        assert store.path.read_bytes() == before
        assert not sink.cert_path.exists()

    @pytest.mark.asyncio
    async def test_exactly_at_renew_time_skips(self, store, sink, make_record, fake_authority):
        store.save(make_record(NOW))
        authority = fake_authority()

        outcome = await _orchestrator(store, sink, authority).run()

        assert outcome.state == RenewalState.SKIP
        assert authority.calls == []

    @pytest.mark.asyncio
    async def test_skip_is_idempotent(self, store, sink, make_record, fake_authority):
        store.save(make_record(datetime(2099, 1, 1, tzinfo=UTC)))
        orchestrator = _orchestrator(store, sink, fake_authority())

        first = await orchestrator.run()
        second = await orchestrator.run()

        assert first.state == second.state == RenewalState.SKIP

    @pytest.mark.asyncio
    async def test_corrupt_record_aborts_without_reissuing(self, store, sink, fake_authority):
        store.path.write_text("{ broken")
        authority = fake_authority()

        with pytest.raises(MetadataParseError):
            await _orchestrator(store, sink, authority).run()

        assert authority.calls == []
        assert store.path.read_text() == "{ broken"

    @pytest.mark.asyncio
    async def test_unreadable_store_aborts(self, store, sink, fake_authority):
        store.exists = MagicMock(side_effect=MetadataIOError("permission denied"))
        authority = fake_authority()

        with pytest.raises(MetadataIOError):
            await _orchestrator(store, sink, authority).run()

        assert authority.calls == []


class TestFailures:
    """Failures abort the attempt and leave the prior record untouched."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        AuthFailure("account rejected"),
        ChallengeFailure("TXT record not found"),
        RateLimited("too many certificates"),
        TransientNetworkError("connection reset"),
    ])
    async def test_authority_failure_keeps_prior_record(self, store, sink, make_record, fake_authority, error):
        store.save(make_record(datetime(2024, 1, 1, tzinfo=UTC)))
        before = store.path.read_bytes()
        authority = fake_authority(error=error)

        with pytest.raises(type(error)):
            await _orchestrator(store, sink, authority).run()

        assert len(authority.calls) == 1
        assert store.path.read_bytes() == before
        assert not sink.cert_path.exists()

    @pytest.mark.asyncio
    async def test_unexpected_authority_exception_is_wrapped(self, store, sink, fake_authority):
        authority = fake_authority(error=RuntimeError("boom"))

        with pytest.raises(AuthorityError, match="boom"):
            await _orchestrator(store, sink, authority).run()

        assert not store.exists()

    @pytest.mark.asyncio
    async def test_unparseable_certificate_writes_nothing(self, store, sink, fake_authority):
        bundle = CertificateBundle(cert_pem=b"garbage", key_pem=b"key", issuer_pem=b"issuer")

        with pytest.raises(AuthorityError):
            await _orchestrator(store, sink, fake_authority(bundle=bundle)).run()

        assert not sink.cert_path.exists()
        assert not store.exists()

    @pytest.mark.asyncio
    async def test_sink_failure_skips_metadata_write(self, store, sink, make_record, make_bundle, fake_authority):
        store.save(make_record(datetime(2024, 1, 1, tzinfo=UTC)))
        before = store.path.read_bytes()
        sink.write = MagicMock(side_effect=FilesystemError("read-only filesystem"))
        authority = fake_authority(bundle=make_bundle(datetime(2024, 8, 30, tzinfo=UTC)))

        with pytest.raises(FilesystemError):
            await _orchestrator(store, sink, authority).run()

        assert store.path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_metadata_save_failure_propagates(self, store, sink, make_record, make_bundle, fake_authority):
        store.save(make_record(datetime(2024, 1, 1, tzinfo=UTC)))
        before = store.path.read_bytes()
        authority = fake_authority(bundle=make_bundle(datetime(2024, 8, 30, tzinfo=UTC)))

        with patch.object(store, "save", side_effect=MetadataIOError("disk full")):
            with pytest.raises(MetadataIOError):
                await _orchestrator(store, sink, authority).run()

        assert store.path.read_bytes() == before



class TestStateTrace:
    """Each attempt logs the states it passes through."""

    @staticmethod
    def _states(caplog):
        return [
            r.getMessage().rsplit(": ", 1)[-1]
            for r in caplog.records
            if r.name == "certkeeper.renewal" and r.levelno == logging.DEBUG
        ]

    @pytest.mark.asyncio
    async def test_issuance_path(self, store, sink, make_bundle, fake_authority, caplog):
        caplog.set_level(logging.DEBUG, logger="certkeeper.renewal")
        authority = fake_authority(bundle=make_bundle(datetime(2025, 3, 1, tzinfo=UTC)))

        await _orchestrator(store, sink, authority).run()

        assert self._states(caplog) == ["check_existence", "acquire", "persist", "done"]

    @pytest.mark.asyncio
    async def test_skip_path(self, store, sink, make_record, fake_authority, caplog):
        caplog.set_level(logging.DEBUG, logger="certkeeper.renewal")
        store.save(make_record(datetime(2099, 1, 1, tzinfo=UTC)))

        await _orchestrator(store, sink, fake_authority()).run()

        assert self._states(caplog) == ["check_existence", "evaluate", "skip"]

    @pytest.mark.asyncio
    async def test_failed_acquire_stops_trace(self, store, sink, fake_authority, caplog):
        caplog.set_level(logging.DEBUG, logger="certkeeper.renewal")

        with pytest.raises(RateLimited):
            await _orchestrator(store, sink, fake_authority(error=RateLimited("slow down"))).run()

        assert self._states(caplog) == ["check_existence", "acquire"]

"""Tests for the persistent job queue."""

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import JobKind, JobStatus
from catalog_ingest.db.models import IngestionJobDB
from catalog_ingest.errors import InvalidJobPayloadError, JobNotFoundError, UnknownJobKindError
from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.queue import (
    backoff_delay,
    claim,
    complete,
    enqueue,
    fail,
    get_job,
    heartbeat,
    list_jobs,
    peek_next,
    validate_payload,
)

BULK = JobKind.OFFERS_DETAIL_BULK.value
ONE = JobKind.OFFERS_DETAIL_ONE.value


class TestEnqueue:
    """Tests for enqueue and payload validation."""

    def test_enqueue_creates_queued_job(self, session: Session) -> None:
        """A new job is queued, runnable now, with zero attempts."""
        result = enqueue(session, BULK, {"limit": 10})

        assert result.deduped is False
        job = get_job(session, result.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.payload == {"limit": 10}
        assert job.run_after <= utc_now()

    def test_enqueue_same_key_is_deduplicated(self, session: Session) -> None:
        """A second enqueue with the same key returns the first job."""
        first = enqueue(session, BULK, {"limit": 10}, idempotency_key="k1")
        second = enqueue(session, BULK, {"limit": 99}, idempotency_key="k1")

        assert second.deduped is True
        assert second.id == first.id
        assert session.query(IngestionJobDB).count() == 1
        assert get_job(session, first.id).payload == {"limit": 10}

    def test_enqueue_lost_insert_race_returns_winner(
        self, session: Session, other_session: Session, before_next_flush
    ) -> None:
        """A key inserted by another worker after the pre-check is read back, not raised."""
        winner = {}

        def concurrent_enqueue() -> None:
            winner["result"] = enqueue(other_session, BULK, {"limit": 1}, idempotency_key="race")

        before_next_flush(session, concurrent_enqueue)
        result = enqueue(session, BULK, {"limit": 2}, idempotency_key="race")

        assert winner["result"].deduped is False
        assert result.deduped is True
        assert result.id == winner["result"].id
        assert session.query(IngestionJobDB).count() == 1
        assert get_job(session, result.id).payload == {"limit": 1}

    def test_enqueue_without_key_never_dedupes(self, session: Session) -> None:
        """Jobs without a key are always inserted."""
        enqueue(session, BULK, {})
        enqueue(session, BULK, {})
        assert session.query(IngestionJobDB).count() == 2

    def test_enqueue_unknown_kind(self, session: Session) -> None:
        """Unknown kinds are refused before insert."""
        with pytest.raises(UnknownJobKindError):
            enqueue(session, "offers.mystery", {})
        assert session.query(IngestionJobDB).count() == 0

    def test_enqueue_invalid_payload(self, session: Session) -> None:
        """Payloads are validated against the kind's schema."""
        with pytest.raises(InvalidJobPayloadError):
            enqueue(session, ONE, {})
        with pytest.raises(InvalidJobPayloadError):
            enqueue(session, BULK, {"limit": 0})

    def test_validate_payload_strips_offer_id(self) -> None:
        """Single-offer payloads trim the offer id."""
        payload = validate_payload(ONE, {"offer_id": "  abc  "})
        assert payload.offer_id == "abc"


class TestClaim:
    """Tests for claim ordering and exclusivity."""

    def test_claim_empty_queue(self, session: Session) -> None:
        """Nothing eligible yields None."""
        assert claim(session, "w1") is None

    def test_claim_marks_running(self, session: Session) -> None:
        """A claimed job is running and locked by the worker."""
        job_id = enqueue(session, BULK, {}).id

        job = claim(session, "w1")

        assert job.id == job_id
        assert job.status == JobStatus.RUNNING
        assert job.locked_by == "w1"
        assert job.locked_at is not None

    def test_claim_is_exclusive(self, session: Session) -> None:
        """A job claimed once is not handed out again."""
        enqueue(session, BULK, {})

        assert claim(session, "w1") is not None
        assert claim(session, "w2") is None

    def test_claim_orders_by_priority_then_run_after(self, session: Session) -> None:
        """Higher priority wins; ties go to the earliest run_after."""
        now = utc_now()
        low = enqueue(session, BULK, {}, priority=0, now=now - timedelta(minutes=10)).id
        high = enqueue(session, BULK, {}, priority=10, now=now).id
        older_low = enqueue(session, BULK, {}, priority=0, now=now - timedelta(minutes=20)).id

        assert claim(session, "w", now=now).id == high
        assert claim(session, "w", now=now).id == older_low
        assert claim(session, "w", now=now).id == low

    def test_claim_skips_future_jobs(self, session: Session) -> None:
        """Jobs whose run_after is in the future are not eligible."""
        now = utc_now()
        enqueue(session, BULK, {}, now=now + timedelta(minutes=5))

        assert claim(session, "w1", now=now) is None
        assert claim(session, "w1", now=now + timedelta(minutes=6)) is not None

    def test_peek_next_does_not_claim(self, session: Session) -> None:
        """Peeking leaves the job queued."""
        job_id = enqueue(session, BULK, {}).id

        peeked = peek_next(session)

        assert peeked.id == job_id
        assert get_job(session, job_id).status == JobStatus.QUEUED


class TestCompleteAndFail:
    """Tests for terminal and retry transitions."""

    def test_complete_running_job(self, session: Session) -> None:
        """Completing releases the lock and marks success."""
        job_id = enqueue(session, BULK, {}).id
        claim(session, "w1")

        assert complete(session, job_id) is True

        job = get_job(session, job_id)
        assert job.status == JobStatus.SUCCESS
        assert job.locked_by is None
        assert job.locked_at is None

    def test_complete_requires_running(self, session: Session) -> None:
        """A queued job cannot be completed."""
        job_id = enqueue(session, BULK, {}).id
        assert complete(session, job_id) is False
        assert get_job(session, job_id).status == JobStatus.QUEUED

    def test_fail_requeues_with_backoff(self, session: Session) -> None:
        """Below max_attempts a failure re-queues with a delayed run_after."""
        now = utc_now()
        job_id = enqueue(session, BULK, {}, now=now).id
        claim(session, "w1", now=now)

        job = fail(session, job_id, "boom", now=now)

        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert job.last_error == "boom"
        assert job.locked_by is None
        assert job.run_after >= now + timedelta(minutes=1) - timedelta(seconds=1)
        assert claim(session, "w1", now=now) is None

    def test_fail_at_max_attempts_is_terminal(self, session: Session) -> None:
        """The last allowed attempt fails the job permanently."""
        now = utc_now()
        job_id = enqueue(session, BULK, {}, max_attempts=2, now=now).id

        claim(session, "w1", now=now)
        fail(session, job_id, "first", now=now)
        later = now + timedelta(hours=2)
        claim(session, "w1", now=later)
        job = fail(session, job_id, "second", now=later)

        assert job.status == JobStatus.FAILED
        assert job.attempts == 2
        assert job.last_error == "second"
        assert claim(session, "w1", now=later + timedelta(days=1)) is None

    def test_fail_not_running_is_ignored(self, session: Session) -> None:
        """Failing a job nobody holds changes nothing."""
        job_id = enqueue(session, BULK, {}).id
        assert fail(session, job_id, "late") is None
        assert get_job(session, job_id).attempts == 0

    def test_fail_missing_job(self, session: Session) -> None:
        """Failing an unknown id raises."""
        with pytest.raises(JobNotFoundError):
            fail(session, "missing", "boom")

    def test_fail_truncates_long_errors(self, session: Session) -> None:
        """Stored errors are capped."""
        job_id = enqueue(session, BULK, {}).id
        claim(session, "w1")
        job = fail(session, job_id, "x" * 10000)
        assert len(job.last_error) == 4000

    def test_backoff_is_capped(self) -> None:
        """Backoff doubles per attempt up to an hour."""
        assert backoff_delay(1) == timedelta(minutes=1)
        assert backoff_delay(3) == timedelta(minutes=4)
        assert backoff_delay(20) == timedelta(minutes=60)


class TestHeartbeat:
    """Tests for lock renewal."""

    def test_heartbeat_renews_owned_lock(self, session: Session) -> None:
        """The owning worker can push locked_at forward."""
        now = utc_now()
        job_id = enqueue(session, BULK, {}, now=now).id
        claim(session, "w1", now=now)

        later = now + timedelta(minutes=30)
        assert heartbeat(session, job_id, "w1", now=later) is True
        assert get_job(session, job_id).locked_at >= later - timedelta(seconds=1)

    def test_heartbeat_rejects_other_worker(self, session: Session) -> None:
        """Another worker cannot renew the lock."""
        job_id = enqueue(session, BULK, {}).id
        claim(session, "w1")
        assert heartbeat(session, job_id, "w2") is False


class TestListJobs:
    """Tests for job listing."""

    def test_list_jobs_by_status(self, session: Session) -> None:
        """Listing can be filtered by status."""
        enqueue(session, BULK, {})
        enqueue(session, BULK, {})
        claim(session, "w1")

        assert len(list_jobs(session)) == 2
        assert len(list_jobs(session, status=JobStatus.RUNNING)) == 1
        assert len(list_jobs(session, status=JobStatus.FAILED)) == 0

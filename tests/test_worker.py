"""End-to-end tests for the ingestion worker against a mock transport."""

import json

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import JobKind, JobStatus, RunStatus
from catalog_ingest.db.models import (
    CanonicalEntityMappingDB,
    IngestionEntitySnapshotDB,
    IngestionJobDB,
    IngestionRunDB,
    OfferDB,
    PriceHistoryDB,
)
from catalog_ingest.ingestion.fetcher import Fetcher
from catalog_ingest.ingestion.queue import enqueue, get_job
from catalog_ingest.ingestion.worker import run_worker

PRODUCT_PAGE = (
    '<html><head><script type="application/ld+json">'
    + json.dumps(
        {
            "@type": "Product",
            "name": "Monstera",
            "offers": {
                "@type": "Offer",
                "price": "19.99",
                "priceCurrency": "USD",
                "availability": "https://schema.org/InStock",
            },
        }
    )
    + "</script></head><body></body></html>"
)


def _fetcher(handler) -> Fetcher:
    return Fetcher(transport=httpx.MockTransport(handler))


def _offer(session: Session, offer_id: str) -> OfferDB:
    return session.get(OfferDB, offer_id, populate_existing=True)


def _runs(session: Session) -> list[IngestionRunDB]:
    return list(session.execute(select(IngestionRunDB)).scalars().all())


class TestDetailRefresh:
    """Tests for detail refresh jobs."""

    @pytest.mark.asyncio
    async def test_bulk_refresh_updates_offer(self, session: Session, registry, make_offer) -> None:
        """A stale offer is fetched, logged, mapped and updated."""
        offer_id = make_offer(price_cents=1500)
        job_id = enqueue(session, JobKind.OFFERS_DETAIL_BULK.value, {"limit": 10}).id

        result = await run_worker(
            session,
            worker_id="w1",
            fetcher=_fetcher(lambda r: httpx.Response(200, text=PRODUCT_PAGE)),
            registry=registry,
        )

        assert (result.processed, result.succeeded, result.failed) == (1, 1, 0)
        assert get_job(session, job_id).status == JobStatus.SUCCESS

        offer = _offer(session, offer_id)
        assert offer.price_cents == 1999
        assert offer.last_checked_at is not None
        assert session.query(PriceHistoryDB).count() == 1
        assert session.query(IngestionEntitySnapshotDB).count() == 1
        mapping = session.query(CanonicalEntityMappingDB).one()
        assert mapping.canonical_id == offer_id

        [run] = _runs(session)
        assert run.status == RunStatus.SUCCESS.value
        stats = json.loads(run.stats_json)
        assert stats["scanned"] == 1
        assert stats["updated"] == 1

    @pytest.mark.asyncio
    async def test_transport_failure_leaves_offer_untouched(
        self, session: Session, registry, make_offer
    ) -> None:
        """An unreachable retailer is logged but never written to the offer."""
        offer_id = make_offer(price_cents=1500, in_stock=True)
        job_id = enqueue(session, JobKind.OFFERS_DETAIL_BULK.value, {}).id

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        result = await run_worker(session, worker_id="w1", fetcher=_fetcher(handler), registry=registry)

        assert result.succeeded == 1
        assert get_job(session, job_id).status == JobStatus.SUCCESS
        offer = _offer(session, offer_id)
        assert offer.in_stock is True
        assert offer.last_checked_at is None
        snapshot = session.query(IngestionEntitySnapshotDB).one()
        assert json.loads(snapshot.raw_json)["rejection"] == "transport_failure"

    @pytest.mark.asyncio
    async def test_single_offer_rejection_retries_job(
        self, session: Session, registry, make_offer
    ) -> None:
        """A rejected single-offer observation fails the attempt and re-queues the job."""
        offer_id = make_offer(price_cents=1500)
        job_id = enqueue(session, JobKind.OFFERS_DETAIL_ONE.value, {"offer_id": offer_id}).id

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/search":
                return httpx.Response(200, text=PRODUCT_PAGE)
            return httpx.Response(302, headers={"location": "https://plantshop.example/search?q=monstera"})

        result = await run_worker(session, worker_id="w1", fetcher=_fetcher(handler), registry=registry)

        assert result.failed == 1
        job = get_job(session, job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert "rejected" in job.last_error
        assert job.locked_by is None
        assert _offer(session, offer_id).price_cents == 1500
        [run] = _runs(session)
        assert run.status == RunStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_single_offer_missing_offer(self, session: Session, registry) -> None:
        """A single-offer job for a deleted offer has nothing to do."""
        job_id = enqueue(session, JobKind.OFFERS_DETAIL_ONE.value, {"offer_id": "gone"}).id

        result = await run_worker(
            session,
            worker_id="w1",
            fetcher=_fetcher(lambda r: httpx.Response(500)),
            registry=registry,
        )

        assert result.succeeded == 1
        assert get_job(session, job_id).status == JobStatus.SUCCESS


class TestHeadRefresh:
    """Tests for HEAD refresh jobs."""

    @pytest.mark.asyncio
    async def test_gone_offer_is_marked_out_of_stock(
        self, session: Session, registry, make_offer
    ) -> None:
        """A 404 on HEAD is an out-of-stock signal."""
        offer_id = make_offer(price_cents=1500, in_stock=True)
        enqueue(session, JobKind.OFFERS_HEAD_BULK.value, {})
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(404)

        result = await run_worker(session, worker_id="w1", fetcher=_fetcher(handler), registry=registry)

        assert result.succeeded == 1
        assert methods == ["HEAD"]
        offer = _offer(session, offer_id)
        assert offer.in_stock is False
        assert offer.price_cents == 1500

    @pytest.mark.asyncio
    async def test_live_offer_only_confirms_check(
        self, session: Session, registry, make_offer
    ) -> None:
        """A 200 on HEAD bumps last_checked_at and nothing else."""
        offer_id = make_offer(price_cents=1500, in_stock=False)
        enqueue(session, JobKind.OFFERS_HEAD_BULK.value, {})

        await run_worker(
            session,
            worker_id="w1",
            fetcher=_fetcher(lambda r: httpx.Response(200)),
            registry=registry,
        )

        offer = _offer(session, offer_id)
        assert offer.last_checked_at is not None
        assert offer.in_stock is False
        assert session.query(PriceHistoryDB).count() == 0

    @pytest.mark.asyncio
    async def test_throttled_offer_is_no_signal(self, session: Session, registry, make_offer) -> None:
        """A 429 on HEAD says nothing about the offer."""
        offer_id = make_offer(in_stock=True)
        enqueue(session, JobKind.OFFERS_HEAD_BULK.value, {})

        await run_worker(
            session,
            worker_id="w1",
            fetcher=_fetcher(lambda r: httpx.Response(429)),
            registry=registry,
        )

        offer = _offer(session, offer_id)
        assert offer.in_stock is True
        assert offer.last_checked_at is None


class TestWorkerLoop:
    """Tests for the claim and dispatch loop."""

    @pytest.mark.asyncio
    async def test_empty_queue(self, session: Session, registry) -> None:
        """Nothing eligible means nothing processed."""
        result = await run_worker(
            session, worker_id="w1", fetcher=_fetcher(lambda r: httpx.Response(200)), registry=registry
        )
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_dry_run_does_not_claim(self, session: Session) -> None:
        """Dry runs report the next job and leave it queued."""
        job_id = enqueue(session, JobKind.OFFERS_HEAD_BULK.value, {}).id

        result = await run_worker(session, dry_run=True)

        assert result.processed == 0
        assert result.next_job.id == job_id
        assert get_job(session, job_id).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_max_jobs(self, session: Session, registry) -> None:
        """The loop stops after max_jobs."""
        for _ in range(3):
            enqueue(session, JobKind.OFFERS_HEAD_BULK.value, {})

        result = await run_worker(
            session,
            worker_id="w1",
            max_jobs=2,
            fetcher=_fetcher(lambda r: httpx.Response(200)),
            registry=registry,
        )

        assert result.processed == 2
        queued = session.query(IngestionJobDB).filter(IngestionJobDB.status == "queued").count()
        assert queued == 1

    @pytest.mark.asyncio
    async def test_unknown_kind_fails_permanently(self, session: Session, registry) -> None:
        """A job kind with no handler exhausts its attempts."""
        job = IngestionJobDB(kind="plants.sync", payload_json="{}", status="queued", max_attempts=1)
        session.add(job)
        session.commit()
        job_id = job.id

        result = await run_worker(
            session, worker_id="w1", fetcher=_fetcher(lambda r: httpx.Response(200)), registry=registry
        )

        assert result.failed == 1
        failed = get_job(session, job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert "UnknownJobKindError" in failed.last_error

    @pytest.mark.asyncio
    async def test_invalid_payload_is_retried(self, session: Session, registry) -> None:
        """A stored payload that no longer validates fails the attempt."""
        job = IngestionJobDB(
            kind=JobKind.OFFERS_HEAD_BULK.value, payload_json='{"limit": 0}', status="queued"
        )
        session.add(job)
        session.commit()
        job_id = job.id

        result = await run_worker(
            session, worker_id="w1", fetcher=_fetcher(lambda r: httpx.Response(200)), registry=registry
        )

        assert result.failed == 1
        retried = get_job(session, job_id)
        assert retried.status == JobStatus.QUEUED
        assert retried.attempts == 1
        assert "InvalidJobPayloadError" in retried.last_error

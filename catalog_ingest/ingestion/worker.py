"""
Ingestion Worker Module
=======================

Claims jobs from the queue and runs them:

1. Claim the next eligible job (conditional update)
2. Validate the payload for the job kind
3. Ensure the job's ingestion source and open an IngestionRun
4. Dispatch to the sweep, renewing the lock between fetched chunks
5. Finish the run, then complete or fail the job

A failing job never stops the loop; it is logged and handed to `fail`,
which re-queues it with backoff until `max_attempts`.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import JobKind, RunStatus
from catalog_ingest.core.schema import (
    IngestionJob,
    OffersRefreshOnePayload,
    RefreshResult,
    WorkerResult,
)
from catalog_ingest.db.models import IngestionRunDB
from catalog_ingest.errors import IngestionError, UnknownJobKindError
from catalog_ingest.ingestion.fetcher import Fetcher
from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.queue import (
    claim,
    complete,
    fail,
    heartbeat,
    peek_next,
    validate_payload,
)
from catalog_ingest.ingestion.registry import SourceRegistry, get_default_registry
from catalog_ingest.ingestion.scheduler import ensure_scheduled_source, source_config_for_kind
from catalog_ingest.ingestion.sources import run_offers_detail_refresh, run_offers_head_refresh

logger = logging.getLogger(__name__)

JobHandler = Callable[..., Awaitable[RefreshResult]]

JOB_HANDLERS: dict[str, JobHandler] = {
    JobKind.OFFERS_DETAIL_BULK.value: run_offers_detail_refresh,
    JobKind.OFFERS_DETAIL_ONE.value: run_offers_detail_refresh,
    JobKind.OFFERS_HEAD_BULK.value: run_offers_head_refresh,
    JobKind.OFFERS_HEAD_ONE.value: run_offers_head_refresh,
}


def default_worker_id() -> str:
    """Worker identity stamped into `locked_by`: host and process id."""
    return f"{socket.gethostname()}:{os.getpid()}"


def create_fetcher(registry: SourceRegistry) -> Fetcher:
    """Fetcher configured from the registry's global settings."""
    config = registry.global_config
    return Fetcher(
        user_agent=config.user_agent,
        accept=config.accept,
        timeout=config.request_timeout,
    )


# ============================================================================
# Ingestion Runs
# ============================================================================


def create_run(session: Session, source_id: str, now: datetime | None = None) -> str:
    """Open a `running` ingestion run for a source."""
    now = now or utc_now()
    run = IngestionRunDB(
        source_id=source_id,
        status=RunStatus.RUNNING.value,
        started_at=now,
        created_at=now,
    )
    session.add(run)
    session.commit()
    return run.id


def finish_run(
    session: Session,
    run_id: str,
    status: RunStatus,
    stats: dict | None = None,
    error: str | None = None,
) -> None:
    """Close an ingestion run with its final status and stats."""
    session.execute(
        update(IngestionRunDB)
        .where(IngestionRunDB.id == run_id)
        .values(
            status=status.value,
            finished_at=utc_now(),
            stats_json=json.dumps(stats or {}, sort_keys=True),
            error=error,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()


# ============================================================================
# Dispatch
# ============================================================================


async def dispatch(
    session: Session,
    job: IngestionJob,
    fetcher: Fetcher,
    registry: SourceRegistry,
    worker_id: str,
) -> RefreshResult:
    """
    Run one claimed job inside an ingestion run.

    Raises:
        UnknownJobKindError: If no handler exists for the job kind
        InvalidJobPayloadError: If the payload does not validate
        IngestionError: If a single-offer job's observation failed
    """
    handler = JOB_HANDLERS.get(job.kind)
    if handler is None:
        raise UnknownJobKindError(job.kind)
    payload = validate_payload(job.kind, job.payload)

    source = source_config_for_kind(registry, job.kind)
    source_id = ensure_scheduled_source(session, source)
    run_id = create_run(session, source_id)

    def renew_lock() -> None:
        if not heartbeat(session, job.id, worker_id):
            logger.warning(f"Lost lock on job {job.id} while running")

    try:
        result = await handler(
            session,
            fetcher,
            registry,
            source_id,
            run_id,
            payload,
            on_progress=renew_lock,
        )
    except Exception as e:
        session.rollback()
        finish_run(session, run_id, RunStatus.FAILED, error=f"{type(e).__name__}: {e}")
        raise

    stats = result.model_dump()
    if isinstance(payload, OffersRefreshOnePayload) and result.failed:
        error = f"Offer {payload.offer_id} observation failed or was rejected"
        finish_run(session, run_id, RunStatus.FAILED, stats=stats, error=error)
        raise IngestionError(error)

    finish_run(session, run_id, RunStatus.SUCCESS, stats=stats)
    return result


async def run_worker(
    session: Session,
    worker_id: str | None = None,
    max_jobs: int = 25,
    dry_run: bool = False,
    fetcher: Fetcher | None = None,
    registry: SourceRegistry | None = None,
) -> WorkerResult:
    """
    Process up to `max_jobs` jobs, stopping early when the queue is empty.

    Args:
        session: Database session
        worker_id: Identity stamped into job locks
        max_jobs: Upper bound on jobs claimed in this call
        dry_run: Report the next eligible job without claiming it
        fetcher: HTTP client (built from the registry if omitted)
        registry: Configuration registry (default registry if omitted)

    Returns:
        WorkerResult counters
    """
    if dry_run:
        return WorkerResult(next_job=peek_next(session))

    registry = registry or get_default_registry()
    fetcher = fetcher or create_fetcher(registry)
    worker_id = worker_id or default_worker_id()

    result = WorkerResult()
    for _ in range(max_jobs):
        job = claim(session, worker_id)
        if job is None:
            break
        result.processed += 1

        try:
            stats = await dispatch(session, job, fetcher, registry, worker_id)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.error(
                f"Ingestion job {job.id} ({job.kind}) failed on attempt "
                f"{job.attempts + 1}/{job.max_attempts}: {message}"
            )
            try:
                session.rollback()
                fail(session, job.id, message)
            except SQLAlchemyError:
                logger.exception(f"Could not record failure for job {job.id}")
            result.failed += 1
            continue

        complete(session, job.id)
        result.succeeded += 1
        logger.info(f"Ingestion job {job.id} ({job.kind}) succeeded: {stats.model_dump()}")

    return result

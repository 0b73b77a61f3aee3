"""
Job Queue Module
================

Persistent, lockable work queue backed by the `ingestion_jobs` table.

Every state transition is a single-row conditional UPDATE guarded on the
current status, so concurrent workers never both own a job and a worker
that lost a race simply moves on. Each operation commits its own
transaction.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import JobKind, JobStatus
from catalog_ingest.core.schema import (
    EnqueueResult,
    IngestionJob,
    OffersRefreshBulkPayload,
    OffersRefreshOnePayload,
)
from catalog_ingest.db.models import IngestionJobDB
from catalog_ingest.errors import InvalidJobPayloadError, JobNotFoundError, UnknownJobKindError
from catalog_ingest.ingestion.hashing import as_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
MAX_BACKOFF_MINUTES = 60
CLAIM_RETRIES = 5

PAYLOAD_SCHEMAS: dict[str, type[BaseModel]] = {
    JobKind.OFFERS_DETAIL_BULK.value: OffersRefreshBulkPayload,
    JobKind.OFFERS_DETAIL_ONE.value: OffersRefreshOnePayload,
    JobKind.OFFERS_HEAD_BULK.value: OffersRefreshBulkPayload,
    JobKind.OFFERS_HEAD_ONE.value: OffersRefreshOnePayload,
}


def validate_payload(kind: str, payload: dict[str, Any] | None) -> BaseModel:
    """
    Validate a payload against its job kind's schema.

    Raises:
        UnknownJobKindError: If no schema is registered for the kind
        InvalidJobPayloadError: If the payload does not validate
    """
    schema = PAYLOAD_SCHEMAS.get(kind)
    if schema is None:
        raise UnknownJobKindError(kind)
    try:
        return schema.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidJobPayloadError(kind, str(e)) from e


def backoff_delay(attempts: int) -> timedelta:
    """Retry delay after the given number of failed attempts: 1, 2, 4 ... 60 minutes."""
    minutes = min(MAX_BACKOFF_MINUTES, 2 ** max(0, attempts - 1))
    return timedelta(minutes=minutes)


def _to_domain(db_item: IngestionJobDB) -> IngestionJob:
    return IngestionJob(
        id=db_item.id,
        kind=db_item.kind,
        payload=json.loads(db_item.payload_json or "{}"),
        idempotency_key=db_item.idempotency_key,
        priority=db_item.priority,
        status=JobStatus(db_item.status),
        attempts=db_item.attempts,
        max_attempts=db_item.max_attempts,
        run_after=as_utc(db_item.run_after),
        locked_at=as_utc(db_item.locked_at),
        locked_by=db_item.locked_by,
        last_error=db_item.last_error,
    )


def _job_id_for_key(session: Session, idempotency_key: str) -> str | None:
    stmt = select(IngestionJobDB.id).where(IngestionJobDB.idempotency_key == idempotency_key)
    return session.execute(stmt).scalar_one_or_none()


def enqueue(
    session: Session,
    kind: str,
    payload: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
    priority: int = 0,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    now: datetime | None = None,
) -> EnqueueResult:
    """
    Insert a queued job runnable immediately.

    If `idempotency_key` already exists the call is a no-op returning the
    existing job's id with `deduped=True`.

    Args:
        session: Database session
        kind: Job kind (see JobKind)
        payload: Kind-specific payload, validated before insert
        idempotency_key: Optional unique key
        priority: Higher runs first
        max_attempts: Attempts before the job is permanently failed
        now: Override the current time (for tests and schedulers)

    Returns:
        EnqueueResult
    """
    validated = validate_payload(kind, payload)
    now = now or utc_now()

    if idempotency_key:
        existing = _job_id_for_key(session, idempotency_key)
        if existing is not None:
            return EnqueueResult(id=existing, deduped=True)

    db_item = IngestionJobDB(
        kind=kind,
        payload_json=json.dumps(validated.model_dump(exclude_none=True)),
        idempotency_key=idempotency_key,
        priority=priority,
        status=JobStatus.QUEUED.value,
        attempts=0,
        max_attempts=max_attempts,
        run_after=now,
        created_at=now,
        updated_at=now,
    )
    session.add(db_item)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        if not idempotency_key:
            raise
        # Lost an insert race on the same key
        existing = _job_id_for_key(session, idempotency_key)
        return EnqueueResult(id=existing, deduped=True)

    logger.debug(f"Enqueued job {db_item.id} ({kind}) key={idempotency_key}")
    return EnqueueResult(id=db_item.id, deduped=False)


def get_job(session: Session, job_id: str) -> IngestionJob | None:
    """Get a job by ID."""
    db_item = session.get(IngestionJobDB, job_id, populate_existing=True)
    return _to_domain(db_item) if db_item else None


def list_jobs(
    session: Session,
    status: JobStatus | None = None,
    limit: int = 50,
) -> list[IngestionJob]:
    """List jobs, most recently updated first."""
    stmt = select(IngestionJobDB).order_by(IngestionJobDB.updated_at.desc()).limit(limit)
    if status is not None:
        stmt = stmt.where(IngestionJobDB.status == status.value)
    return [_to_domain(j) for j in session.execute(stmt).scalars().all()]


def _eligible_stmt(now: datetime):
    return (
        select(IngestionJobDB.id)
        .where(
            IngestionJobDB.status == JobStatus.QUEUED.value,
            IngestionJobDB.run_after <= now,
        )
        .order_by(
            IngestionJobDB.priority.desc(),
            IngestionJobDB.run_after.asc(),
            IngestionJobDB.created_at.asc(),
        )
        .limit(1)
    )


def peek_next(session: Session, now: datetime | None = None) -> IngestionJob | None:
    """The job `claim` would take next, without claiming it."""
    job_id = session.execute(_eligible_stmt(now or utc_now())).scalar_one_or_none()
    return get_job(session, job_id) if job_id else None


def claim(
    session: Session,
    worker_id: str,
    now: datetime | None = None,
) -> IngestionJob | None:
    """
    Claim the next eligible queued job for a worker.

    Selects the best candidate then flips it to `running` with
    `WHERE id=? AND status='queued'`. If another worker won the row the
    update touches nothing and the next candidate is tried.

    Returns:
        The claimed job, or None if nothing is eligible
    """
    now = now or utc_now()

    for _ in range(CLAIM_RETRIES):
        job_id = session.execute(_eligible_stmt(now)).scalar_one_or_none()
        if job_id is None:
            return None

        result = session.execute(
            update(IngestionJobDB)
            .where(
                IngestionJobDB.id == job_id,
                IngestionJobDB.status == JobStatus.QUEUED.value,
            )
            .values(
                status=JobStatus.RUNNING.value,
                locked_at=now,
                locked_by=worker_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()

        if result.rowcount == 1:
            logger.debug(f"Worker {worker_id} claimed job {job_id}")
            return get_job(session, job_id)

        logger.debug(f"Worker {worker_id} lost claim race for job {job_id}")

    return None


def complete(session: Session, job_id: str, now: datetime | None = None) -> bool:
    """
    Mark a running job as succeeded and release its lock.

    Returns:
        True if the job was running and is now `success`
    """
    now = now or utc_now()
    result = session.execute(
        update(IngestionJobDB)
        .where(
            IngestionJobDB.id == job_id,
            IngestionJobDB.status == JobStatus.RUNNING.value,
        )
        .values(
            status=JobStatus.SUCCESS.value,
            finished_at=now,
            locked_at=None,
            locked_by=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()

    if result.rowcount != 1:
        logger.warning(f"Job {job_id} was not running; completion ignored")
        return False
    return True


def fail(
    session: Session,
    job_id: str,
    error: str,
    now: datetime | None = None,
) -> IngestionJob | None:
    """
    Record a failed attempt of a running job.

    Increments `attempts`. Below `max_attempts` the job returns to `queued`
    with exponential backoff; otherwise it becomes `failed`. `last_error`
    is recorded either way.

    Returns:
        The job after the transition, or None if it was no longer running

    Raises:
        JobNotFoundError: If the job does not exist
    """
    now = now or utc_now()
    db_item = session.get(IngestionJobDB, job_id, populate_existing=True)
    if db_item is None:
        raise JobNotFoundError(job_id)

    previous_attempts = db_item.attempts
    attempts = previous_attempts + 1

    if attempts < db_item.max_attempts:
        values: dict[str, Any] = {
            "status": JobStatus.QUEUED.value,
            "run_after": now + backoff_delay(attempts),
        }
    else:
        values = {"status": JobStatus.FAILED.value, "finished_at": now}

    values.update(
        attempts=attempts,
        last_error=error[:4000],
        locked_at=None,
        locked_by=None,
        updated_at=now,
    )

    result = session.execute(
        update(IngestionJobDB)
        .where(
            IngestionJobDB.id == job_id,
            IngestionJobDB.status == JobStatus.RUNNING.value,
            IngestionJobDB.attempts == previous_attempts,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()

    if result.rowcount != 1:
        logger.warning(f"Job {job_id} changed concurrently; failure not recorded")
        return None
    return get_job(session, job_id)


def heartbeat(
    session: Session,
    job_id: str,
    worker_id: str,
    now: datetime | None = None,
) -> bool:
    """
    Renew the lock of a running job owned by `worker_id`.

    Long bulk jobs call this between items so they are not mistaken for
    stuck jobs by the ops service.

    Returns:
        True if the lock was renewed
    """
    now = now or utc_now()
    result = session.execute(
        update(IngestionJobDB)
        .where(
            IngestionJobDB.id == job_id,
            IngestionJobDB.status == JobStatus.RUNNING.value,
            IngestionJobDB.locked_by == worker_id,
        )
        .values(locked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1

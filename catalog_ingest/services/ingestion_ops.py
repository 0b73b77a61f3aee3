"""Ingestion operations service.

This service provides the operator view of the ingestion pipeline:
- A point-in-time snapshot of queue health and catalog freshness
- Recovery actions that re-queue failed, stale or stuck jobs
- An on-demand freshness refresh that enqueues both bulk sweeps
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import JobKind, JobStatus, RecoveryAction
from catalog_ingest.core.schema import (
    FailedJobSummary,
    FreshnessStats,
    OpsSnapshot,
    QueueStats,
    RecentRun,
    RecoveryResult,
    RunStatusCount,
)
from catalog_ingest.db.models import (
    IngestionJobDB,
    IngestionRunDB,
    IngestionSourceDB,
    OfferDB,
    ProductDB,
)
from catalog_ingest.ingestion.hashing import as_utc, utc_now
from catalog_ingest.ingestion.mapper import count_unmapped_entities
from catalog_ingest.ingestion.queue import enqueue

logger = logging.getLogger(__name__)

DEFAULT_RECOVERY_LIMIT = 200
DEFAULT_STALE_QUEUED_MINUTES = 120
DEFAULT_STUCK_RUNNING_MINUTES = 45
DEFAULT_FRESHNESS_WINDOW_HOURS = 24
DEFAULT_FRESHNESS_SLO_PERCENT = 95.0

MAX_RECOVERY_LIMIT = 1000
MAX_RECOVERY_MINUTES = 24 * 60

RECENT_RUNS_LIMIT = 20
RECENT_FAILED_JOBS_LIMIT = 15
FRESHNESS_REFRESH_PRIORITY = 20

# Jobs enqueued by `enqueue_freshness_refresh`, keyed by result name
FRESHNESS_REFRESH_JOBS = {
    "head": (JobKind.OFFERS_HEAD_BULK.value, "offers-head"),
    "detail": (JobKind.OFFERS_DETAIL_BULK.value, "offers-detail"),
}


def compute_freshness_percent(checked_within_window: int, total: int) -> float:
    """Percentage of offers checked within the window, rounded to 2 places; 0 when empty."""
    if total <= 0:
        return 0.0
    return round(checked_within_window / total * 100, 2)


def clamp(value: int | None, default: int, upper: int, lower: int = 1) -> int:
    """Clamp an operator-supplied parameter into [lower, upper]."""
    if value is None:
        value = default
    return max(lower, min(upper, int(value)))


@dataclass
class RecoveryCandidates:
    """Job ids partitioned by the recovery action that applies to them."""

    stale_queued_ids: list[str] = field(default_factory=list)
    stuck_running_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


def classify_recovery_candidates(
    rows: Iterable[dict[str, Any]],
    now: datetime | None = None,
    stale_queued_minutes: int = DEFAULT_STALE_QUEUED_MINUTES,
    stuck_running_minutes: int = DEFAULT_STUCK_RUNNING_MINUTES,
) -> RecoveryCandidates:
    """
    Partition queue rows into recovery candidates.

    Each row needs `id`, `status`, `run_after` and `locked_at`. A failed job
    is always a candidate; a queued job is stale when its `run_after` is
    older than the stale cutoff; a running job is stuck when its lock is
    older than the stuck cutoff. Rows with missing timestamps are skipped.
    """
    now = as_utc(now or utc_now())
    stale_cutoff = now - timedelta(minutes=stale_queued_minutes)
    stuck_cutoff = now - timedelta(minutes=stuck_running_minutes)

    candidates = RecoveryCandidates()
    for row in rows:
        status = row.get("status")
        run_after = as_utc(row.get("run_after"))
        locked_at = as_utc(row.get("locked_at"))

        if status == JobStatus.FAILED.value:
            candidates.failed_ids.append(row["id"])
        elif status == JobStatus.QUEUED.value and run_after and run_after < stale_cutoff:
            candidates.stale_queued_ids.append(row["id"])
        elif status == JobStatus.RUNNING.value and locked_at and locked_at < stuck_cutoff:
            candidates.stuck_running_ids.append(row["id"])
    return candidates


class IngestionOpsService:
    """Service for ingestion pipeline health and recovery."""

    def __init__(
        self,
        session: Session,
        freshness_window_hours: int = DEFAULT_FRESHNESS_WINDOW_HOURS,
        freshness_slo_percent: float = DEFAULT_FRESHNESS_SLO_PERCENT,
    ):
        """
        Initialize the ingestion ops service.

        Args:
            session: SQLAlchemy session
            freshness_window_hours: Window within which an offer counts as fresh
            freshness_slo_percent: Target freshness percentage
        """
        self.session = session
        self.freshness_window_hours = freshness_window_hours
        self.freshness_slo_percent = freshness_slo_percent

    # =========================================================================
    # Snapshot
    # =========================================================================

    def get_snapshot(
        self,
        stale_queued_minutes: int = DEFAULT_STALE_QUEUED_MINUTES,
        stuck_running_minutes: int = DEFAULT_STUCK_RUNNING_MINUTES,
        now: datetime | None = None,
    ) -> OpsSnapshot:
        """
        Build a point-in-time view of queue health and offer freshness.

        Args:
            stale_queued_minutes: Age past `run_after` at which a queued job is stale
            stuck_running_minutes: Lock age at which a running job is stuck
            now: Override the current time

        Returns:
            OpsSnapshot
        """
        now = now or utc_now()
        return OpsSnapshot(
            generated_at=now,
            stale_queued_minutes=stale_queued_minutes,
            stuck_running_minutes=stuck_running_minutes,
            queue=self._queue_stats(now, stale_queued_minutes, stuck_running_minutes),
            freshness=self._freshness_stats(now),
            unmapped_entities=count_unmapped_entities(self.session),
            run_status_last_24h=self._run_status_counts(now),
            recent_runs=self._recent_runs(),
            recent_failed_jobs=self._recent_failed_jobs(),
        )

    def _count_jobs(self, *conditions) -> int:
        stmt = select(func.count()).select_from(IngestionJobDB).where(*conditions)
        return self.session.execute(stmt).scalar_one()

    def _queue_stats(
        self, now: datetime, stale_queued_minutes: int, stuck_running_minutes: int
    ) -> QueueStats:
        rows = self.session.execute(
            select(IngestionJobDB.status, func.count()).group_by(IngestionJobDB.status)
        ).all()
        by_status = {status: count for status, count in rows}

        queued = by_status.get(JobStatus.QUEUED.value, 0)
        running = by_status.get(JobStatus.RUNNING.value, 0)
        failed = by_status.get(JobStatus.FAILED.value, 0)
        success = by_status.get(JobStatus.SUCCESS.value, 0)
        total = sum(by_status.values())

        return QueueStats(
            total=total,
            queued=queued,
            running=running,
            failed=failed,
            success=success,
            other=max(0, total - (queued + running + failed + success)),
            ready_now=self._count_jobs(
                IngestionJobDB.status == JobStatus.QUEUED.value,
                IngestionJobDB.run_after <= now,
            ),
            stale_queued=self._count_jobs(
                IngestionJobDB.status == JobStatus.QUEUED.value,
                IngestionJobDB.run_after < now - timedelta(minutes=stale_queued_minutes),
            ),
            stuck_running=self._count_jobs(
                IngestionJobDB.status == JobStatus.RUNNING.value,
                IngestionJobDB.locked_at.is_not(None),
                IngestionJobDB.locked_at < now - timedelta(minutes=stuck_running_minutes),
            ),
        )

    def _freshness_stats(self, now: datetime) -> FreshnessStats:
        window_start = now - timedelta(hours=self.freshness_window_hours)

        def active_count(*conditions):
            return func.coalesce(
                func.sum(case((and_(ProductDB.status == "active", *conditions), 1), else_=0)),
                0,
            )

        row = self.session.execute(
            select(
                active_count(),
                active_count(
                    OfferDB.last_checked_at.is_not(None),
                    OfferDB.last_checked_at >= window_start,
                ),
                active_count(OfferDB.last_checked_at.is_(None)),
                active_count(OfferDB.in_stock.is_(True), OfferDB.price_cents.is_not(None)),
            )
            .select_from(OfferDB)
            .join(ProductDB, OfferDB.product_id == ProductDB.id)
        ).one()
        total, checked, missing, in_stock_priced = (int(v or 0) for v in row)

        percent = compute_freshness_percent(checked, total)
        return FreshnessStats(
            active_catalog_offers=total,
            active_checked_within_window=checked,
            active_stale_or_missing=max(0, total - checked),
            active_missing_check_timestamp=missing,
            active_in_stock_priced_offers=in_stock_priced,
            freshness_percent=percent,
            freshness_window_hours=self.freshness_window_hours,
            freshness_slo_percent=self.freshness_slo_percent,
            meets_slo=total > 0 and percent >= self.freshness_slo_percent,
        )

    def _run_status_counts(self, now: datetime) -> list[RunStatusCount]:
        rows = self.session.execute(
            select(IngestionRunDB.status, func.count())
            .where(IngestionRunDB.started_at >= now - timedelta(hours=24))
            .group_by(IngestionRunDB.status)
        ).all()
        counts = [RunStatusCount(status=status, count=count) for status, count in rows]
        return sorted(counts, key=lambda c: (-c.count, c.status))

    def _recent_runs(self) -> list[RecentRun]:
        rows = self.session.execute(
            select(IngestionRunDB, IngestionSourceDB.slug, IngestionSourceDB.name)
            .join(IngestionSourceDB, IngestionRunDB.source_id == IngestionSourceDB.id)
            .order_by(IngestionRunDB.started_at.desc())
            .limit(RECENT_RUNS_LIMIT)
        ).all()

        runs = []
        for run, slug, name in rows:
            started_at = as_utc(run.started_at)
            finished_at = as_utc(run.finished_at)
            duration_ms = None
            if finished_at is not None and started_at is not None:
                duration_ms = max(0, int((finished_at - started_at).total_seconds() * 1000))
            runs.append(
                RecentRun(
                    id=run.id,
                    source_slug=slug,
                    source_name=name,
                    status=run.status,
                    started_at=started_at,
                    finished_at=finished_at,
                    duration_ms=duration_ms,
                    error=run.error,
                )
            )
        return runs

    def _recent_failed_jobs(self) -> list[FailedJobSummary]:
        jobs = (
            self.session.execute(
                select(IngestionJobDB)
                .where(IngestionJobDB.status == JobStatus.FAILED.value)
                .order_by(IngestionJobDB.updated_at.desc())
                .limit(RECENT_FAILED_JOBS_LIMIT)
            )
            .scalars()
            .all()
        )
        return [
            FailedJobSummary(
                id=job.id,
                kind=job.kind,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                run_after=as_utc(job.run_after),
                last_error=job.last_error,
                updated_at=as_utc(job.updated_at),
            )
            for job in jobs
        ]

    # =========================================================================
    # Recovery
    # =========================================================================

    def _recovery_candidates(
        self,
        action: RecoveryAction,
        limit: int,
        stale_queued_minutes: int,
        stuck_running_minutes: int,
        now: datetime,
    ) -> list[str]:
        if action == RecoveryAction.RETRY_FAILED_JOBS:
            stmt = (
                select(IngestionJobDB.id)
                .where(IngestionJobDB.status == JobStatus.FAILED.value)
                .order_by(IngestionJobDB.updated_at.desc())
            )
        elif action == RecoveryAction.REQUEUE_STALE_QUEUED_JOBS:
            stmt = (
                select(IngestionJobDB.id)
                .where(
                    IngestionJobDB.status == JobStatus.QUEUED.value,
                    IngestionJobDB.run_after < now - timedelta(minutes=stale_queued_minutes),
                )
                .order_by(IngestionJobDB.run_after)
            )
        else:
            stmt = (
                select(IngestionJobDB.id)
                .where(
                    IngestionJobDB.status == JobStatus.RUNNING.value,
                    IngestionJobDB.locked_at.is_not(None),
                    IngestionJobDB.locked_at < now - timedelta(minutes=stuck_running_minutes),
                )
                .order_by(IngestionJobDB.locked_at)
            )
        return list(self.session.execute(stmt.limit(limit)).scalars().all())

    def _requeue(
        self,
        job_ids: list[str],
        expected_status: JobStatus,
        reset_attempts: bool,
        now: datetime,
    ) -> list[str]:
        """Re-queue jobs still in `expected_status`; returns the ids actually moved."""
        values: dict[str, Any] = {
            "status": JobStatus.QUEUED.value,
            "run_after": now,
            "locked_at": None,
            "locked_by": None,
            "finished_at": None,
            "last_error": None,
            "updated_at": now,
        }
        if reset_attempts:
            values["attempts"] = 0

        moved = []
        for job_id in job_ids:
            result = self.session.execute(
                update(IngestionJobDB)
                .where(
                    IngestionJobDB.id == job_id,
                    IngestionJobDB.status == expected_status.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                moved.append(job_id)
        self.session.commit()
        return moved

    def retry_failed_jobs(self, limit: int = DEFAULT_RECOVERY_LIMIT, now: datetime | None = None) -> list[str]:
        """Re-queue the most recently failed jobs with a fresh attempt budget."""
        now = now or utc_now()
        ids = self._recovery_candidates(RecoveryAction.RETRY_FAILED_JOBS, limit, 0, 0, now)
        return self._requeue(ids, JobStatus.FAILED, reset_attempts=True, now=now)

    def requeue_stale_queued_jobs(
        self,
        limit: int = DEFAULT_RECOVERY_LIMIT,
        stale_queued_minutes: int = DEFAULT_STALE_QUEUED_MINUTES,
        now: datetime | None = None,
    ) -> list[str]:
        """Make queued jobs whose `run_after` is long past runnable now, keeping attempts."""
        now = now or utc_now()
        ids = self._recovery_candidates(
            RecoveryAction.REQUEUE_STALE_QUEUED_JOBS, limit, stale_queued_minutes, 0, now
        )
        return self._requeue(ids, JobStatus.QUEUED, reset_attempts=False, now=now)

    def recover_stuck_running_jobs(
        self,
        limit: int = DEFAULT_RECOVERY_LIMIT,
        stuck_running_minutes: int = DEFAULT_STUCK_RUNNING_MINUTES,
        now: datetime | None = None,
    ) -> list[str]:
        """Release running jobs whose lock is older than the cutoff, keeping attempts."""
        now = now or utc_now()
        ids = self._recovery_candidates(
            RecoveryAction.RECOVER_STUCK_RUNNING_JOBS, limit, 0, stuck_running_minutes, now
        )
        return self._requeue(ids, JobStatus.RUNNING, reset_attempts=False, now=now)

    def enqueue_freshness_refresh(self, limit: int = DEFAULT_RECOVERY_LIMIT, now: datetime | None = None):
        """
        Enqueue a HEAD and a detail bulk sweep over offers older than the freshness window.

        Keys are bucketed by minute, so repeated clicks within a minute dedupe.

        Returns:
            Mapping of "head"/"detail" to EnqueueResult
        """
        now = now or utc_now()
        bucket = as_utc(now).strftime("%Y-%m-%dT%H:%M")
        payload = {"older_than_hours": self.freshness_window_hours, "limit": limit}

        enqueued = {}
        for name, (kind, key_name) in FRESHNESS_REFRESH_JOBS.items():
            enqueued[name] = enqueue(
                self.session,
                kind=kind,
                payload=payload,
                idempotency_key=f"admin-recovery:{key_name}:{bucket}",
                priority=FRESHNESS_REFRESH_PRIORITY,
                now=now,
            )
        return enqueued

    def run_recovery_action(
        self,
        action: RecoveryAction | str,
        limit: int | None = None,
        stale_queued_minutes: int | None = None,
        stuck_running_minutes: int | None = None,
        now: datetime | None = None,
    ) -> RecoveryResult:
        """
        Apply an operator recovery action.

        Parameters are clamped: `limit` to 1..1000, minutes to 1..1440.

        Raises:
            ValueError: If the action is not a known RecoveryAction
        """
        action = RecoveryAction(action)
        limit = clamp(limit, DEFAULT_RECOVERY_LIMIT, MAX_RECOVERY_LIMIT)
        stale_queued_minutes = clamp(
            stale_queued_minutes, DEFAULT_STALE_QUEUED_MINUTES, MAX_RECOVERY_MINUTES
        )
        stuck_running_minutes = clamp(
            stuck_running_minutes, DEFAULT_STUCK_RUNNING_MINUTES, MAX_RECOVERY_MINUTES
        )
        now = now or utc_now()

        enqueued = None
        if action == RecoveryAction.ENQUEUE_FRESHNESS_REFRESH:
            enqueued = self.enqueue_freshness_refresh(limit=limit, now=now)
            job_ids = [r.id for r in enqueued.values() if r.id is not None]
        elif action == RecoveryAction.RETRY_FAILED_JOBS:
            job_ids = self.retry_failed_jobs(limit=limit, now=now)
        elif action == RecoveryAction.REQUEUE_STALE_QUEUED_JOBS:
            job_ids = self.requeue_stale_queued_jobs(
                limit=limit, stale_queued_minutes=stale_queued_minutes, now=now
            )
        else:
            job_ids = self.recover_stuck_running_jobs(
                limit=limit, stuck_running_minutes=stuck_running_minutes, now=now
            )

        logger.info(f"Recovery action {action.value} affected {len(job_ids)} jobs")
        return RecoveryResult(
            action=action,
            affected_job_ids=job_ids,
            affected_count=len(job_ids),
            limit=limit,
            stale_queued_minutes=stale_queued_minutes,
            stuck_running_minutes=stuck_running_minutes,
            enqueued=enqueued,
        )

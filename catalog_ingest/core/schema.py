"""Pydantic v2 models for Catalog Ingest.

These models define the typed shapes that cross module boundaries:
- Job payloads (validated before a handler runs)
- IngestionJob (a claimed or listed queue row)
- EnqueueResult, RefreshResult (operation results)
- OpsSnapshot, RecoveryResult (operations dashboard read models)
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from catalog_ingest.core.enums import JobStatus, RecoveryAction


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


# ============================================================================
# Job Payloads
# ============================================================================


class OffersRefreshBulkPayload(BaseModel):
    """Payload for bulk offer refresh jobs (detail or HEAD)."""

    older_than_hours: int | None = Field(default=None, ge=0, le=24 * 365)
    older_than_days: int | None = Field(default=None, ge=0, le=365)
    limit: int = Field(default=30, ge=1, le=1000)
    timeout_ms: int | None = Field(default=None, ge=500, le=30000)


class OffersRefreshOnePayload(BaseModel):
    """Payload for single-offer refresh jobs (detail or HEAD)."""

    offer_id: str
    timeout_ms: int | None = Field(default=None, ge=500, le=30000)

    @field_validator("offer_id")
    @classmethod
    def offer_id_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("offer_id cannot be empty")
        return v.strip()


# ============================================================================
# Queue
# ============================================================================


class IngestionJob(BaseModel):
    """A persisted unit of scheduled work."""

    id: str
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    priority: int = 0
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 5
    run_after: datetime = Field(default_factory=_utc_now)
    locked_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None


class EnqueueResult(BaseModel):
    """Result of enqueueing a job; `deduped` is set on idempotency-key collisions."""

    id: str | None
    deduped: bool = False


class RefreshResult(BaseModel):
    """Counters returned by an offer refresh sweep."""

    scanned: int = 0
    updated: int = 0
    failed: int = 0
    rejected: int = 0
    snapshots_inserted: int = 0


class WorkerResult(BaseModel):
    """Counters returned by a worker loop."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    next_job: IngestionJob | None = None


# ============================================================================
# Operations Dashboard
# ============================================================================


class QueueStats(BaseModel):
    """Queue counts by status plus derived health counts."""

    total: int = 0
    queued: int = 0
    running: int = 0
    failed: int = 0
    success: int = 0
    other: int = 0
    ready_now: int = 0
    stale_queued: int = 0
    stuck_running: int = 0


class FreshnessStats(BaseModel):
    """Offer freshness over the active catalog."""

    active_catalog_offers: int = 0
    active_checked_within_window: int = 0
    active_stale_or_missing: int = 0
    active_missing_check_timestamp: int = 0
    active_in_stock_priced_offers: int = 0
    freshness_percent: float = 0.0
    freshness_window_hours: int = 24
    freshness_slo_percent: float = 95.0
    meets_slo: bool = False


class RunStatusCount(BaseModel):
    """Count of ingestion runs in one status."""

    status: str
    count: int


class RecentRun(BaseModel):
    """A recent ingestion run with its source."""

    id: str
    source_slug: str
    source_name: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None


class FailedJobSummary(BaseModel):
    """A recently failed job."""

    id: str
    kind: str
    attempts: int
    max_attempts: int
    run_after: datetime
    last_error: str | None = None
    updated_at: datetime


class OpsSnapshot(BaseModel):
    """Point-in-time health view of the ingestion queue and catalog freshness."""

    generated_at: datetime = Field(default_factory=_utc_now)
    stale_queued_minutes: int = 120
    stuck_running_minutes: int = 45
    queue: QueueStats = Field(default_factory=QueueStats)
    freshness: FreshnessStats = Field(default_factory=FreshnessStats)
    unmapped_entities: int = 0
    run_status_last_24h: list[RunStatusCount] = Field(default_factory=list)
    recent_runs: list[RecentRun] = Field(default_factory=list)
    recent_failed_jobs: list[FailedJobSummary] = Field(default_factory=list)


class RecoveryResult(BaseModel):
    """Outcome of an operator recovery action."""

    action: RecoveryAction
    affected_job_ids: list[str] = Field(default_factory=list)
    affected_count: int = 0
    limit: int
    stale_queued_minutes: int
    stuck_running_minutes: int
    enqueued: dict[str, EnqueueResult] | None = None

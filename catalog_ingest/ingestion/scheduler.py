"""
Scheduler Module
================

Enqueues the refresh job of every active scheduled source once per
cadence bucket. The idempotency key is derived from the bucket, so any
number of scheduler ticks (cron, operators, several hosts) within one
bucket enqueue exactly one job per source.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import JobKind
from catalog_ingest.db.models import IngestionSourceDB
from catalog_ingest.errors import IngestionError
from catalog_ingest.ingestion.hashing import as_utc, utc_now
from catalog_ingest.ingestion.mapper import ensure_source
from catalog_ingest.ingestion.queue import enqueue
from catalog_ingest.ingestion.registry import ScheduledSourceConfig, SourceRegistry

logger = logging.getLogger(__name__)

# Sources the worker attributes runs to when the registry configures none
DEFAULT_SCHEDULED_SOURCES = [
    ScheduledSourceConfig(
        slug="offers-head",
        name="Retailer offer HEAD checks",
        kind="offer_head",
        default_trust="retailer",
        schedule_every_minutes=60,
        job_kind=JobKind.OFFERS_HEAD_BULK.value,
        job_payload={"older_than_hours": 20, "limit": 75, "timeout_ms": 6000},
        idempotency_prefix="schedule:offers-head",
    ),
    ScheduledSourceConfig(
        slug="offers-detail",
        name="Retailer offer detail checks",
        kind="offer_detail",
        default_trust="retailer",
        schedule_every_minutes=120,
        job_kind=JobKind.OFFERS_DETAIL_BULK.value,
        job_payload={"older_than_hours": 20, "limit": 60, "timeout_ms": 12000},
        idempotency_prefix="schedule:offers-detail",
    ),
]

KIND_FAMILIES = {
    JobKind.OFFERS_HEAD_BULK.value: "head",
    JobKind.OFFERS_HEAD_ONE.value: "head",
    JobKind.OFFERS_DETAIL_BULK.value: "detail",
    JobKind.OFFERS_DETAIL_ONE.value: "detail",
}


@dataclass
class ScheduleResult:
    """Counters returned by a scheduler tick."""

    scanned: int = 0
    enqueued: int = 0
    deduped: int = 0
    skipped: int = 0
    errors: int = 0


def schedule_key(prefix: str, every_minutes: int, now: datetime) -> str:
    """Idempotency key for the cadence bucket containing `now`."""
    epoch_minutes = as_utc(now).timestamp() / 60
    return f"{prefix}:{math.floor(epoch_minutes / every_minutes)}"


def scheduled_sources(registry: SourceRegistry) -> list[ScheduledSourceConfig]:
    """Configured scheduled sources, or the built-in defaults when none are configured."""
    return registry.list_sources() or list(DEFAULT_SCHEDULED_SOURCES)


def source_config_for_kind(registry: SourceRegistry, job_kind: str) -> ScheduledSourceConfig:
    """
    The source a job's run is attributed to.

    Single-offer jobs share the source of their bulk counterpart.
    """
    family = KIND_FAMILIES.get(job_kind)
    if family is None:
        raise IngestionError(f"No ingestion source handles job kind {job_kind}")
    for source in scheduled_sources(registry):
        if KIND_FAMILIES.get(source.job_kind) == family:
            return source
    return next(s for s in DEFAULT_SCHEDULED_SOURCES if KIND_FAMILIES[s.job_kind] == family)


def ensure_scheduled_source(session: Session, source: ScheduledSourceConfig) -> str:
    """Upsert a scheduled source row; returns its id."""
    return ensure_source(
        session,
        slug=source.slug,
        name=source.name,
        kind=source.kind,
        default_trust=source.default_trust,
        schedule_every_minutes=source.schedule_every_minutes,
        config={
            "job_kind": source.job_kind,
            "job_payload": source.job_payload,
            "idempotency_prefix": source.idempotency_prefix,
            "priority": source.priority,
        },
        active=source.enabled,
    )


def sync_sources(session: Session, registry: SourceRegistry) -> list[str]:
    """
    Upsert every scheduled source from the registry into the database.

    Returns:
        Slugs that were synced
    """
    slugs = []
    for source in scheduled_sources(registry):
        ensure_scheduled_source(session, source)
        slugs.append(source.slug)
    return slugs


def enqueue_scheduled_jobs(
    session: Session,
    now: datetime | None = None,
    limit_sources: int = 50,
) -> ScheduleResult:
    """
    Enqueue the job of every active scheduled source for the current bucket.

    Sources with no cadence or an unusable config are skipped; an error on
    one source never stops the others.

    Returns:
        ScheduleResult counters
    """
    now = now or utc_now()
    sources = (
        session.execute(
            select(IngestionSourceDB)
            .where(
                IngestionSourceDB.active.is_(True),
                IngestionSourceDB.schedule_every_minutes.is_not(None),
            )
            .order_by(IngestionSourceDB.slug)
            .limit(limit_sources)
        )
        .scalars()
        .all()
    )
    # Plain tuples; enqueue commits and expires loaded rows
    rows = [(s.slug, s.schedule_every_minutes, s.config_json) for s in sources]

    result = ScheduleResult(scanned=len(rows))
    for slug, every_minutes, config_json in rows:
        if not every_minutes or every_minutes <= 0:
            result.skipped += 1
            continue
        try:
            config = json.loads(config_json or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Source {slug} has malformed config; skipping")
            result.skipped += 1
            continue
        job_kind = config.get("job_kind")
        if job_kind not in KIND_FAMILIES:
            result.skipped += 1
            continue

        prefix = config.get("idempotency_prefix") or f"schedule:{slug}"
        try:
            enqueued = enqueue(
                session,
                kind=job_kind,
                payload=config.get("job_payload") or {},
                idempotency_key=schedule_key(prefix, every_minutes, now),
                priority=int(config.get("priority", 0)),
                now=now,
            )
        except IngestionError as e:
            logger.warning(f"Failed to schedule source {slug}: {e}")
            result.errors += 1
            continue

        if enqueued.deduped:
            result.deduped += 1
        else:
            result.enqueued += 1

    logger.info(
        f"Scheduler tick: scanned={result.scanned} enqueued={result.enqueued} "
        f"deduped={result.deduped} skipped={result.skipped} errors={result.errors}"
    )
    return result

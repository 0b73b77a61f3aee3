"""
Observation Log Module
======================

Append-only, content-addressed record of every fetch+parse attempt.

The hash covers the raw observation plus the minute it was made, so
re-observing identical state within a minute yields no new row while a
later identical observation is still logged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import TrustLevel
from catalog_ingest.db.models import IngestionEntitySnapshotDB
from catalog_ingest.ingestion.hashing import (
    as_utc,
    content_hash,
    minute_bucket,
    stable_json_dumps,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class SnapshotWrite:
    """Outcome of `record_snapshot`."""

    content_hash: str
    inserted: bool


def build_extracted(
    observed: dict[str, Any],
    trust: TrustLevel | str = TrustLevel.RETAILER,
    meta: dict[str, Any] | None = None,
) -> tuple[dict[str, Any], dict[str, str]]:
    """
    Annotate observed field values with a trust tag.

    Fields with no value are left out.

    Returns:
        (extracted, trust) dicts for the snapshot row
    """
    tag = trust.value if isinstance(trust, TrustLevel) else str(trust)
    fields: dict[str, Any] = {}
    trust_fields: dict[str, str] = {}
    for name, value in observed.items():
        if value is None:
            continue
        fields[name] = {"value": value, "trust": tag}
        trust_fields[name] = tag

    extracted: dict[str, Any] = {"fields": fields}
    if meta:
        extracted["meta"] = meta
    return extracted, trust_fields


def observation_hash(raw: dict[str, Any], observed_at: datetime) -> tuple[dict[str, Any], str]:
    """
    Stamp a raw observation with its minute bucket and hash it.

    Returns:
        (stamped raw observation, SHA-256 hex digest)
    """
    stamped = dict(raw)
    stamped["observed_minute"] = minute_bucket(observed_at)
    return stamped, content_hash(stamped)


def record_snapshot(
    session: Session,
    entity_id: str,
    raw: dict[str, Any],
    extracted: dict[str, Any] | None = None,
    trust: dict[str, str] | None = None,
    run_id: str | None = None,
    http_status: int | None = None,
    content_type: str | None = None,
    fetched_at: datetime | None = None,
) -> SnapshotWrite:
    """
    Insert an observation unless an identical one exists for the entity.

    Args:
        session: Database session
        entity_id: Ingestion entity the observation belongs to
        raw: Raw response metadata and observed values (hashed)
        extracted: Extracted fields with trust annotations
        trust: Per-field trust tags
        run_id: Ingestion run that produced the observation
        http_status: Response status, None on transport failure
        content_type: Response content type
        fetched_at: Observation time (defaults to now)

    Returns:
        SnapshotWrite with the hash and whether a row was inserted
    """
    fetched_at = fetched_at or utc_now()
    stamped, digest = observation_hash(raw, fetched_at)

    exists = session.execute(
        select(IngestionEntitySnapshotDB.id).where(
            IngestionEntitySnapshotDB.entity_id == entity_id,
            IngestionEntitySnapshotDB.content_hash == digest,
        )
    ).first()
    if exists is not None:
        return SnapshotWrite(content_hash=digest, inserted=False)

    session.add(
        IngestionEntitySnapshotDB(
            entity_id=entity_id,
            run_id=run_id,
            fetched_at=fetched_at,
            http_status=http_status,
            content_type=content_type,
            raw_json=stable_json_dumps(stamped),
            extracted_json=stable_json_dumps(extracted or {}),
            trust_json=stable_json_dumps(trust or {}),
            content_hash=digest,
            created_at=utc_now(),
        )
    )
    try:
        session.commit()
    except IntegrityError:
        # A concurrent writer logged the same observation
        session.rollback()
        return SnapshotWrite(content_hash=digest, inserted=False)

    return SnapshotWrite(content_hash=digest, inserted=True)


def list_snapshots(session: Session, entity_id: str, limit: int = 50) -> list[dict[str, Any]]:
    """Snapshots of an entity, newest first, with JSON columns decoded."""
    stmt = (
        select(IngestionEntitySnapshotDB)
        .where(IngestionEntitySnapshotDB.entity_id == entity_id)
        .order_by(IngestionEntitySnapshotDB.fetched_at.desc())
        .limit(limit)
    )
    return [
        {
            "id": row.id,
            "run_id": row.run_id,
            "fetched_at": as_utc(row.fetched_at),
            "http_status": row.http_status,
            "content_type": row.content_type,
            "raw": json.loads(row.raw_json or "{}"),
            "extracted": json.loads(row.extracted_json or "{}"),
            "trust": json.loads(row.trust_json or "{}"),
            "content_hash": row.content_hash,
        }
        for row in session.execute(stmt).scalars().all()
    ]


def count_snapshots(session: Session, entity_id: str | None = None) -> int:
    """Number of snapshot rows, optionally for one entity."""
    stmt = select(func.count()).select_from(IngestionEntitySnapshotDB)
    if entity_id is not None:
        stmt = stmt.where(IngestionEntitySnapshotDB.entity_id == entity_id)
    return session.execute(stmt).scalar() or 0

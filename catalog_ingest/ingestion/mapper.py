"""
Canonical Mapper Module
=======================

Idempotent upserts for ingestion sources, entities and the mapping from
an entity to its canonical record.

Each upsert is "insert; on unique-constraint violation roll back, read
the winner and update it", committed per call.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import CanonicalType, EntityType, TrustLevel
from catalog_ingest.db.models import (
    CanonicalEntityMappingDB,
    IngestionEntityDB,
    IngestionSourceDB,
)
from catalog_ingest.ingestion.hashing import utc_now

logger = logging.getLogger(__name__)


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


# ============================================================================
# Sources
# ============================================================================


def ensure_source(
    session: Session,
    slug: str,
    name: str,
    kind: str,
    default_trust: TrustLevel | str = TrustLevel.RETAILER,
    schedule_every_minutes: int | None = None,
    config: dict[str, Any] | None = None,
    active: bool = True,
) -> str:
    """
    Create or refresh an ingestion source keyed by slug.

    Returns:
        The source id
    """
    values = {
        "name": name,
        "kind": kind,
        "default_trust": _enum_value(default_trust),
        "schedule_every_minutes": schedule_every_minutes,
        "config_json": json.dumps(config or {}, sort_keys=True),
        "active": active,
    }

    def _update_existing() -> str | None:
        source = session.execute(
            select(IngestionSourceDB).where(IngestionSourceDB.slug == slug)
        ).scalar_one_or_none()
        if source is None:
            return None
        for key, value in values.items():
            setattr(source, key, value)
        session.commit()
        return source.id

    source_id = _update_existing()
    if source_id is not None:
        return source_id

    source = IngestionSourceDB(slug=slug, **values)
    session.add(source)
    try:
        session.commit()
        return source.id
    except IntegrityError:
        session.rollback()
        source_id = _update_existing()
        if source_id is None:
            raise
        return source_id


def get_source_by_slug(session: Session, slug: str) -> IngestionSourceDB | None:
    """Get a source by slug."""
    stmt = select(IngestionSourceDB).where(IngestionSourceDB.slug == slug)
    return session.execute(stmt).scalar_one_or_none()


def list_sources(session: Session, active_only: bool = False) -> list[IngestionSourceDB]:
    """List ingestion sources ordered by slug."""
    stmt = select(IngestionSourceDB).order_by(IngestionSourceDB.slug)
    if active_only:
        stmt = stmt.where(IngestionSourceDB.active.is_(True))
    return list(session.execute(stmt).scalars().all())


# ============================================================================
# Entities
# ============================================================================


def ensure_entity(
    session: Session,
    source_id: str,
    entity_type: EntityType | str,
    source_entity_id: str,
    url: str | None = None,
    seen_at: datetime | None = None,
) -> str:
    """
    Upsert an entity on (source, entity_type, source_entity_id).

    A sighting always reactivates the entity and bumps `last_seen_at`; a
    changed URL updates the row rather than creating a new entity.

    Returns:
        The entity id
    """
    seen_at = seen_at or utc_now()
    type_value = _enum_value(entity_type)
    identity = and_(
        IngestionEntityDB.source_id == source_id,
        IngestionEntityDB.entity_type == type_value,
        IngestionEntityDB.source_entity_id == source_entity_id,
    )

    def _touch_existing() -> str | None:
        entity = session.execute(select(IngestionEntityDB).where(identity)).scalar_one_or_none()
        if entity is None:
            return None
        if url is not None:
            entity.url = url
        entity.active = True
        entity.last_seen_at = seen_at
        entity.updated_at = seen_at
        session.commit()
        return entity.id

    entity_id = _touch_existing()
    if entity_id is not None:
        return entity_id

    entity = IngestionEntityDB(
        source_id=source_id,
        entity_type=type_value,
        source_entity_id=source_entity_id,
        url=url,
        active=True,
        last_seen_at=seen_at,
        created_at=seen_at,
        updated_at=seen_at,
    )
    session.add(entity)
    try:
        session.commit()
        return entity.id
    except IntegrityError:
        session.rollback()
        entity_id = _touch_existing()
        if entity_id is None:
            raise
        return entity_id


def deactivate_unseen_entities(
    session: Session,
    source_id: str,
    entity_type: EntityType | str,
    not_seen_since: datetime,
) -> int:
    """
    Soft-deactivate entities of a source not sighted since a cutoff.

    Entities are never deleted; the next sighting reactivates them.

    Returns:
        Number of entities deactivated
    """
    result = session.execute(
        update(IngestionEntityDB)
        .where(
            IngestionEntityDB.source_id == source_id,
            IngestionEntityDB.entity_type == _enum_value(entity_type),
            IngestionEntityDB.active.is_(True),
            IngestionEntityDB.last_seen_at < not_seen_since,
        )
        .values(active=False, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount:
        logger.info(f"Deactivated {result.rowcount} unseen entities for source {source_id}")
    return result.rowcount


# ============================================================================
# Canonical Mappings
# ============================================================================


def ensure_mapping(
    session: Session,
    entity_id: str,
    canonical_type: CanonicalType | str,
    canonical_id: str,
    match_method: str,
    confidence: int = 100,
) -> str:
    """
    Upsert the canonical mapping of an entity.

    The first call creates the link; later calls refresh the target,
    match method, confidence and timestamp. An entity never has more than
    one mapping.

    Returns:
        The mapping id
    """
    if not 0 <= confidence <= 100:
        raise ValueError(f"Mapping confidence must be between 0 and 100, got {confidence}")

    now = utc_now()
    values = {
        "canonical_type": _enum_value(canonical_type),
        "canonical_id": canonical_id,
        "match_method": match_method,
        "confidence": confidence,
        "updated_at": now,
    }

    def _update_existing() -> str | None:
        mapping = session.execute(
            select(CanonicalEntityMappingDB).where(CanonicalEntityMappingDB.entity_id == entity_id)
        ).scalar_one_or_none()
        if mapping is None:
            return None
        for key, value in values.items():
            setattr(mapping, key, value)
        session.commit()
        return mapping.id

    mapping_id = _update_existing()
    if mapping_id is not None:
        return mapping_id

    mapping = CanonicalEntityMappingDB(entity_id=entity_id, created_at=now, **values)
    session.add(mapping)
    try:
        session.commit()
        return mapping.id
    except IntegrityError:
        session.rollback()
        mapping_id = _update_existing()
        if mapping_id is None:
            raise
        return mapping_id


def get_mapping(session: Session, entity_id: str) -> CanonicalEntityMappingDB | None:
    """Get the mapping of an entity, if any."""
    stmt = select(CanonicalEntityMappingDB).where(CanonicalEntityMappingDB.entity_id == entity_id)
    return session.execute(stmt).scalar_one_or_none()


def count_unmapped_entities(session: Session) -> int:
    """Active entities with no canonical mapping."""
    stmt = (
        select(func.count())
        .select_from(IngestionEntityDB)
        .outerjoin(
            CanonicalEntityMappingDB,
            CanonicalEntityMappingDB.entity_id == IngestionEntityDB.id,
        )
        .where(
            IngestionEntityDB.active.is_(True),
            CanonicalEntityMappingDB.id.is_(None),
        )
    )
    return session.execute(stmt).scalar() or 0

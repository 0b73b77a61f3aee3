"""Offer selection for refresh sweeps, plus entity tracking shared by sweeps."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import CanonicalType, EntityType
from catalog_ingest.db.models import OfferDB, RetailerDB
from catalog_ingest.ingestion.mapper import ensure_entity, ensure_mapping

DEFAULT_REFRESH_WINDOW_HOURS = 20
OFFER_MATCH_METHOD = "offer_id"


@dataclass
class OfferTarget:
    """An offer to refresh, with the retailer context the chains need."""

    id: str
    url: str
    retailer_slug: str
    currency: str | None = None


def refresh_cutoff(
    now: datetime,
    older_than_hours: int | None = None,
    older_than_days: int | None = None,
    default_hours: int = DEFAULT_REFRESH_WINDOW_HOURS,
) -> datetime:
    """
    Cutoff for "due for refresh".

    Hours win over days; with neither the default window applies.
    """
    if older_than_hours is not None:
        return now - timedelta(hours=older_than_hours)
    if older_than_days is not None:
        return now - timedelta(days=older_than_days)
    return now - timedelta(hours=default_hours)


def _target_stmt():
    return select(
        OfferDB.id,
        OfferDB.url,
        OfferDB.currency,
        RetailerDB.slug,
    ).join(RetailerDB, OfferDB.retailer_id == RetailerDB.id)


def select_offers_to_refresh(
    session: Session,
    cutoff: datetime,
    limit: int = 30,
) -> list[OfferTarget]:
    """
    Offers whose last check (or last update, if never checked) is older
    than the cutoff, oldest first.
    """
    last_touched = func.coalesce(OfferDB.last_checked_at, OfferDB.updated_at)
    stmt = (
        _target_stmt()
        .where(OfferDB.url.is_not(None), OfferDB.url != "", last_touched < cutoff)
        .order_by(last_touched.asc(), OfferDB.id)
        .limit(limit)
    )
    return [
        OfferTarget(id=row.id, url=row.url, retailer_slug=row.slug, currency=row.currency)
        for row in session.execute(stmt).all()
    ]


def get_offer_target(session: Session, offer_id: str) -> OfferTarget | None:
    """A single offer as a refresh target, or None if missing or URL-less."""
    row = session.execute(_target_stmt().where(OfferDB.id == offer_id)).one_or_none()
    if row is None or not row.url:
        return None
    return OfferTarget(id=row.id, url=row.url, retailer_slug=row.slug, currency=row.currency)


def track_offer_entity(
    session: Session,
    source_id: str,
    target: OfferTarget,
    seen_at: datetime,
) -> str:
    """
    Upsert the ingestion entity for an offer and map it to the offer.

    Returns:
        The entity id
    """
    entity_id = ensure_entity(
        session,
        source_id=source_id,
        entity_type=EntityType.OFFER,
        source_entity_id=target.id,
        url=target.url,
        seen_at=seen_at,
    )
    ensure_mapping(
        session,
        entity_id=entity_id,
        canonical_type=CanonicalType.OFFER,
        canonical_id=target.id,
        match_method=OFFER_MATCH_METHOD,
        confidence=100,
    )
    return entity_id


def chunked(items: list, size: int) -> Iterator[list]:
    """Split a list into consecutive chunks of at most `size` items."""
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]

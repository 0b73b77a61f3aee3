"""Tests for source, entity and canonical mapping upserts."""

import json
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import CanonicalType, EntityType
from catalog_ingest.db.models import CanonicalEntityMappingDB, IngestionEntityDB, IngestionSourceDB
from catalog_ingest.ingestion.hashing import as_utc, utc_now
from catalog_ingest.ingestion.mapper import (
    count_unmapped_entities,
    deactivate_unseen_entities,
    ensure_entity,
    ensure_mapping,
    ensure_source,
    get_mapping,
    get_source_by_slug,
    list_sources,
)


@pytest.fixture
def source_id(session: Session) -> str:
    """A test ingestion source."""
    return ensure_source(session, slug="offers-detail", name="Offers", kind="offer_detail")


class TestEnsureSource:
    """Tests for source upserts."""

    def test_ensure_source_is_idempotent(self, session: Session) -> None:
        """The same slug always maps to one row; later calls refresh it."""
        first = ensure_source(session, slug="s1", name="Old", kind="offer_head")
        second = ensure_source(
            session,
            slug="s1",
            name="New",
            kind="offer_head",
            schedule_every_minutes=60,
            config={"job_kind": "offers.head_refresh.bulk"},
        )

        assert first == second
        assert session.query(IngestionSourceDB).count() == 1
        source = get_source_by_slug(session, "s1")
        assert source.name == "New"
        assert source.schedule_every_minutes == 60
        assert json.loads(source.config_json) == {"job_kind": "offers.head_refresh.bulk"}

    def test_concurrent_source_insert_is_reused(
        self, session: Session, other_session: Session, before_next_flush
    ) -> None:
        """A slug created by another worker mid-upsert is refreshed instead of duplicated."""
        winner = {}

        def concurrent_upsert() -> None:
            winner["id"] = ensure_source(other_session, slug="s1", name="Theirs", kind="offer_head")

        before_next_flush(session, concurrent_upsert)
        source_id = ensure_source(session, slug="s1", name="Ours", kind="offer_head")

        assert source_id == winner["id"]
        assert session.query(IngestionSourceDB).count() == 1
        assert get_source_by_slug(session, "s1").name == "Ours"

    def test_list_sources_active_only(self, session: Session) -> None:
        """Inactive sources can be filtered out."""
        ensure_source(session, slug="a", name="A", kind="k")
        ensure_source(session, slug="b", name="B", kind="k", active=False)

        assert [s.slug for s in list_sources(session)] == ["a", "b"]
        assert [s.slug for s in list_sources(session, active_only=True)] == ["a"]


class TestEnsureEntity:
    """Tests for entity upserts and soft deactivation."""

    def test_ensure_entity_is_idempotent(self, session: Session, source_id: str) -> None:
        """One row per (source, type, source id); URL changes update it."""
        first = ensure_entity(session, source_id, EntityType.OFFER, "o1", url="https://a.example/1")
        second = ensure_entity(session, source_id, EntityType.OFFER, "o1", url="https://a.example/2")

        assert first == second
        assert session.query(IngestionEntityDB).count() == 1
        assert session.get(IngestionEntityDB, first).url == "https://a.example/2"

    def test_concurrent_entity_insert_is_reused(
        self, session: Session, other_session: Session, source_id: str, before_next_flush
    ) -> None:
        """Two workers sighting the same new entity end up with one row."""
        winner = {}

        def concurrent_sighting() -> None:
            winner["id"] = ensure_entity(other_session, source_id, EntityType.OFFER, "o1")

        before_next_flush(session, concurrent_sighting)
        entity_id = ensure_entity(session, source_id, EntityType.OFFER, "o1", url="https://a.example/1")

        assert entity_id == winner["id"]
        assert session.query(IngestionEntityDB).count() == 1
        assert session.get(IngestionEntityDB, entity_id, populate_existing=True).url == "https://a.example/1"

    def test_entity_types_are_distinct(self, session: Session, source_id: str) -> None:
        """The same source id under different types is a different entity."""
        offer = ensure_entity(session, source_id, EntityType.OFFER, "x")
        product = ensure_entity(session, source_id, EntityType.PRODUCT, "x")
        assert offer != product

    def test_deactivate_and_reactivate(self, session: Session, source_id: str) -> None:
        """Unseen entities are deactivated, never deleted; a sighting reactivates them."""
        now = utc_now()
        stale = ensure_entity(session, source_id, EntityType.OFFER, "old", seen_at=now - timedelta(days=40))
        fresh = ensure_entity(session, source_id, EntityType.OFFER, "new", seen_at=now)

        count = deactivate_unseen_entities(
            session, source_id, EntityType.OFFER, not_seen_since=now - timedelta(days=30)
        )

        assert count == 1
        assert session.get(IngestionEntityDB, stale, populate_existing=True).active is False
        assert session.get(IngestionEntityDB, fresh, populate_existing=True).active is True

        ensure_entity(session, source_id, EntityType.OFFER, "old", seen_at=now)
        entity = session.get(IngestionEntityDB, stale, populate_existing=True)
        assert entity.active is True
        assert as_utc(entity.last_seen_at) >= now - timedelta(seconds=1)


class TestEnsureMapping:
    """Tests for canonical mapping upserts."""

    def test_one_mapping_per_entity(self, session: Session, source_id: str) -> None:
        """Repeated mapping refreshes the single row."""
        entity_id = ensure_entity(session, source_id, EntityType.OFFER, "o1")

        first = ensure_mapping(session, entity_id, CanonicalType.OFFER, "offer-a", "offer_id", 80)
        second = ensure_mapping(session, entity_id, CanonicalType.OFFER, "offer-b", "url", 95)

        assert first == second
        assert session.query(CanonicalEntityMappingDB).count() == 1
        mapping = get_mapping(session, entity_id)
        assert mapping.canonical_id == "offer-b"
        assert mapping.match_method == "url"
        assert mapping.confidence == 95

    def test_concurrent_mapping_insert_is_reused(
        self, session: Session, other_session: Session, source_id: str, before_next_flush
    ) -> None:
        """A mapping created concurrently is updated in place; the entity keeps one mapping."""
        entity_id = ensure_entity(session, source_id, EntityType.OFFER, "o1")
        winner = {}

        def concurrent_mapping() -> None:
            winner["id"] = ensure_mapping(
                other_session, entity_id, CanonicalType.OFFER, "offer-a", "offer_id", 80
            )

        before_next_flush(session, concurrent_mapping)
        mapping_id = ensure_mapping(session, entity_id, CanonicalType.OFFER, "offer-b", "url", 95)

        assert mapping_id == winner["id"]
        assert session.query(CanonicalEntityMappingDB).count() == 1
        mapping = session.get(CanonicalEntityMappingDB, mapping_id, populate_existing=True)
        assert mapping.canonical_id == "offer-b"
        assert mapping.confidence == 95

    def test_confidence_out_of_range(self, session: Session, source_id: str) -> None:
        """Confidence is bounded to 0..100."""
        entity_id = ensure_entity(session, source_id, EntityType.OFFER, "o1")
        with pytest.raises(ValueError):
            ensure_mapping(session, entity_id, CanonicalType.OFFER, "offer-a", "offer_id", 101)

    def test_count_unmapped_entities(self, session: Session, source_id: str) -> None:
        """Only active entities without a mapping are counted."""
        mapped = ensure_entity(session, source_id, EntityType.OFFER, "mapped")
        ensure_mapping(session, mapped, CanonicalType.OFFER, "offer-a", "offer_id")
        ensure_entity(session, source_id, EntityType.OFFER, "unmapped")
        ensure_entity(
            session, source_id, EntityType.OFFER, "gone", seen_at=utc_now() - timedelta(days=90)
        )
        deactivate_unseen_entities(
            session, source_id, EntityType.OFFER, not_seen_since=utc_now() - timedelta(days=30)
        )

        assert count_unmapped_entities(session) == 1

"""SQLAlchemy ORM models for Catalog Ingest.

These models define the database tables for:
- RetailerDB, ProductDB, OfferDB, PriceHistoryDB (canonical catalog, read-mostly)
- IngestionSourceDB, IngestionRunDB, IngestionJobDB (scheduling and audit)
- IngestionEntityDB, IngestionEntitySnapshotDB, CanonicalEntityMappingDB (observations)

The unique constraints on entities, snapshots, mappings and job idempotency
keys are what make the ingestion writes idempotent.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Canonical Catalog
# ============================================================================


class RetailerDB(Base):
    """Database model for retailers that offers point at."""

    __tablename__ = "retailers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    website_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    offers: Mapped[list["OfferDB"]] = relationship("OfferDB", back_populates="retailer")

    def __repr__(self) -> str:
        return f"<RetailerDB(id={self.id}, slug='{self.slug}')>"


class ProductDB(Base):
    """
    Database model for catalog products.

    Only the fields the ingestion core needs are modelled here; `status`
    decides whether a product's offers count toward catalog freshness.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    slug: Mapped[str] = mapped_column(String(500), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    offers: Mapped[list["OfferDB"]] = relationship("OfferDB", back_populates="product")

    def __repr__(self) -> str:
        return f"<ProductDB(id={self.id}, slug='{self.slug}', status='{self.status}')>"


class OfferDB(Base):
    """
    Database model for canonical retailer offers.

    Owned by the catalog. Ingestion only mutates price/currency/stock/image
    fields through the reconciliation engine.
    """

    __tablename__ = "offers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    retailer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("retailers.id"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    in_stock: Mapped[bool] = mapped_column(Boolean, default=True)
    product_image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    product: Mapped["ProductDB"] = relationship("ProductDB", back_populates="offers")
    retailer: Mapped["RetailerDB"] = relationship("RetailerDB", back_populates="offers")

    def __repr__(self) -> str:
        return f"<OfferDB(id={self.id}, price_cents={self.price_cents}, in_stock={self.in_stock})>"


class PriceHistoryDB(Base):
    """Database model for price points recorded on meaningful offer changes."""

    __tablename__ = "price_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    offer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("offers.id"), nullable=False, index=True
    )
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    in_stock: Mapped[bool] = mapped_column(Boolean, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<PriceHistoryDB(offer_id={self.offer_id}, price_cents={self.price_cents})>"


# ============================================================================
# Ingestion Scheduling
# ============================================================================


class IngestionSourceDB(Base):
    """
    Database model for ingestion sources.

    A named origin of observations (a retailer sweep or feed). Scheduled
    sources carry their job kind and payload in `config_json`.
    """

    __tablename__ = "ingestion_sources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    default_trust: Mapped[str] = mapped_column(String(50), default="unknown")
    schedule_every_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    config_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    runs: Mapped[list["IngestionRunDB"]] = relationship("IngestionRunDB", back_populates="source")
    entities: Mapped[list["IngestionEntityDB"]] = relationship(
        "IngestionEntityDB", back_populates="source"
    )

    def __repr__(self) -> str:
        return f"<IngestionSourceDB(id={self.id}, slug='{self.slug}')>"


class IngestionRunDB(Base):
    """Database model for one execution of a source-level sweep."""

    __tablename__ = "ingestion_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ingestion_sources.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="running")  # running/success/failed
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    stats_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    source: Mapped["IngestionSourceDB"] = relationship("IngestionSourceDB", back_populates="runs")

    def __repr__(self) -> str:
        return f"<IngestionRunDB(id={self.id}, status='{self.status}')>"


class IngestionJobDB(Base):
    """
    Database model for the persistent work queue.

    Workers claim rows with a conditional update on `status`; the lock
    fields are the only crash signal (see `heartbeat`).
    """

    __tablename__ = "ingestion_jobs"
    __table_args__ = (
        Index("ix_ingestion_jobs_claim", "status", "run_after"),
        Index("ix_ingestion_jobs_locked_at", "status", "locked_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    kind: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="queued")  # queued/running/success/failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    run_after: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<IngestionJobDB(id={self.id}, kind='{self.kind}', status='{self.status}')>"


# ============================================================================
# Observations
# ============================================================================


class IngestionEntityDB(Base):
    """
    Database model for one trackable remote thing.

    Identity is (source, entity_type, source_entity_id); URL and title
    changes never create a new entity.
    """

    __tablename__ = "ingestion_entities"
    __table_args__ = (
        UniqueConstraint(
            "source_id", "entity_type", "source_entity_id", name="uq_ingestion_entities_identity"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ingestion_sources.id"), nullable=False, index=True
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)  # product/plant/offer
    source_entity_id: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    source: Mapped["IngestionSourceDB"] = relationship(
        "IngestionSourceDB", back_populates="entities"
    )
    snapshots: Mapped[list["IngestionEntitySnapshotDB"]] = relationship(
        "IngestionEntitySnapshotDB", back_populates="entity"
    )

    def __repr__(self) -> str:
        return f"<IngestionEntityDB(id={self.id}, type='{self.entity_type}', source_entity_id='{self.source_entity_id}')>"


class IngestionEntitySnapshotDB(Base):
    """
    Database model for the append-only observation log.

    One row per distinct (entity, content hash). Rows are never updated.
    """

    __tablename__ = "ingestion_entity_snapshots"
    __table_args__ = (
        UniqueConstraint("entity_id", "content_hash", name="uq_ingestion_snapshots_entity_hash"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    entity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ingestion_entities.id"), nullable=False, index=True
    )
    run_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ingestion_runs.id"), nullable=True, index=True
    )
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    raw_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    extracted_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    trust_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    entity: Mapped["IngestionEntityDB"] = relationship(
        "IngestionEntityDB", back_populates="snapshots"
    )

    def __repr__(self) -> str:
        return f"<IngestionEntitySnapshotDB(id={self.id}, hash='{self.content_hash[:12]}')>"


class CanonicalEntityMappingDB(Base):
    """Database model linking an ingested entity to exactly one canonical record."""

    __tablename__ = "canonical_entity_mappings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    entity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ingestion_entities.id"), nullable=False, unique=True
    )
    canonical_type: Mapped[str] = mapped_column(String(20), nullable=False)
    canonical_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    match_method: Mapped[str] = mapped_column(String(50), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, default=100)  # 0-100
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<CanonicalEntityMappingDB(entity_id={self.entity_id}, canonical={self.canonical_type}:{self.canonical_id})>"

"""Initial schema for Catalog Ingest.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Canonical catalog tables
    op.create_table(
        "retailers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(200), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("website_url", sa.String(500), nullable=True),
        sa.Column("active", sa.Boolean(), default=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_retailers_slug", "retailers", ["slug"], unique=True)

    op.create_table(
        "products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(500), nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("status", sa.String(20), default="active"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_products_slug", "products", ["slug"], unique=True)
    op.create_index("ix_products_status", "products", ["status"])

    op.create_table(
        "offers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("product_id", sa.String(36), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("retailer_id", sa.String(36), sa.ForeignKey("retailers.id"), nullable=False),
        sa.Column("url", sa.String(1000), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), default="USD"),
        sa.Column("in_stock", sa.Boolean(), default=True),
        sa.Column("product_image_url", sa.String(1000), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_offers_product_id", "offers", ["product_id"])
    op.create_index("ix_offers_retailer_id", "offers", ["retailer_id"])
    op.create_index("ix_offers_last_checked_at", "offers", ["last_checked_at"])

    op.create_table(
        "price_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("offer_id", sa.String(36), sa.ForeignKey("offers.id"), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("in_stock", sa.Boolean(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_price_history_offer_id", "price_history", ["offer_id"])

    # Scheduling tables
    op.create_table(
        "ingestion_sources",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(200), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("default_trust", sa.String(50), default="unknown"),
        sa.Column("schedule_every_minutes", sa.Integer(), nullable=True),
        sa.Column("config_json", sa.Text(), default="{}"),
        sa.Column("active", sa.Boolean(), default=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_ingestion_sources_slug", "ingestion_sources", ["slug"], unique=True)

    op.create_table(
        "ingestion_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "source_id", sa.String(36), sa.ForeignKey("ingestion_sources.id"), nullable=False
        ),
        sa.Column("status", sa.String(20), default="running"),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("stats_json", sa.Text(), default="{}"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_ingestion_runs_source_id", "ingestion_runs", ["source_id"])
    op.create_index("ix_ingestion_runs_started_at", "ingestion_runs", ["started_at"])

    op.create_table(
        "ingestion_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("kind", sa.String(100), nullable=False),
        sa.Column("payload_json", sa.Text(), default="{}"),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
        sa.Column("priority", sa.Integer(), default=0),
        sa.Column("status", sa.String(20), default="queued"),
        sa.Column("attempts", sa.Integer(), default=0),
        sa.Column("max_attempts", sa.Integer(), default=5),
        sa.Column("run_after", sa.DateTime(), nullable=False),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("locked_by", sa.String(200), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_ingestion_jobs_kind", "ingestion_jobs", ["kind"])
    op.create_index("ix_ingestion_jobs_claim", "ingestion_jobs", ["status", "run_after"])
    op.create_index("ix_ingestion_jobs_locked_at", "ingestion_jobs", ["status", "locked_at"])

    # Observation tables
    op.create_table(
        "ingestion_entities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "source_id", sa.String(36), sa.ForeignKey("ingestion_sources.id"), nullable=False
        ),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("source_entity_id", sa.String(500), nullable=False),
        sa.Column("url", sa.String(1000), nullable=True),
        sa.Column("active", sa.Boolean(), default=True),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "source_id", "entity_type", "source_entity_id", name="uq_ingestion_entities_identity"
        ),
    )
    op.create_index("ix_ingestion_entities_source_id", "ingestion_entities", ["source_id"])

    op.create_table(
        "ingestion_entity_snapshots",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "entity_id", sa.String(36), sa.ForeignKey("ingestion_entities.id"), nullable=False
        ),
        sa.Column("run_id", sa.String(36), sa.ForeignKey("ingestion_runs.id"), nullable=True),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("content_type", sa.String(200), nullable=True),
        sa.Column("raw_json", sa.Text(), default="{}"),
        sa.Column("extracted_json", sa.Text(), default="{}"),
        sa.Column("trust_json", sa.Text(), default="{}"),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "entity_id", "content_hash", name="uq_ingestion_snapshots_entity_hash"
        ),
    )
    op.create_index(
        "ix_ingestion_entity_snapshots_entity_id", "ingestion_entity_snapshots", ["entity_id"]
    )
    op.create_index(
        "ix_ingestion_entity_snapshots_run_id", "ingestion_entity_snapshots", ["run_id"]
    )
    op.create_index(
        "ix_ingestion_entity_snapshots_fetched_at", "ingestion_entity_snapshots", ["fetched_at"]
    )

    op.create_table(
        "canonical_entity_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "entity_id",
            sa.String(36),
            sa.ForeignKey("ingestion_entities.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("canonical_type", sa.String(20), nullable=False),
        sa.Column("canonical_id", sa.String(36), nullable=False),
        sa.Column("match_method", sa.String(50), nullable=False),
        sa.Column("confidence", sa.Integer(), default=100),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_canonical_entity_mappings_canonical_id", "canonical_entity_mappings", ["canonical_id"]
    )


def downgrade() -> None:
    op.drop_table("canonical_entity_mappings")
    op.drop_table("ingestion_entity_snapshots")
    op.drop_table("ingestion_entities")
    op.drop_table("ingestion_jobs")
    op.drop_table("ingestion_runs")
    op.drop_table("ingestion_sources")
    op.drop_table("price_history")
    op.drop_table("offers")
    op.drop_table("products")
    op.drop_table("retailers")

"""Application services for Catalog Ingest."""

from catalog_ingest.services.ingestion_ops import (
    IngestionOpsService,
    classify_recovery_candidates,
    compute_freshness_percent,
)

__all__ = [
    "IngestionOpsService",
    "classify_recovery_candidates",
    "compute_freshness_percent",
]

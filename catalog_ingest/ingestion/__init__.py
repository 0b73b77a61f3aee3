"""
Catalog Ingest Ingestion Core
=============================

Keeps canonical offer price, stock and image data fresh from retailer pages.

Pipeline Stages:
1. Queue - Scheduler and operators enqueue refresh jobs; workers claim them
2. Fetch - Bounded-timeout GET/HEAD with the landing URL preserved
3. Extract - Ordered commerce and image chains with confidence tiers
4. Log - Content-addressed, append-only observation snapshots
5. Map - Entities upserted and linked to their canonical offer
6. Reconcile - Trust gate, then a field-level merge into the offer row
"""

from catalog_ingest.ingestion.registry import (
    GlobalConfig,
    OpsConfig,
    RetailerPolicy,
    ScheduledSourceConfig,
    SourceRegistry,
    get_default_registry,
    reset_default_registry,
)
from catalog_ingest.ingestion.fetcher import Fetcher, FetchResult
from catalog_ingest.ingestion.queue import (
    claim,
    complete,
    enqueue,
    fail,
    heartbeat,
)
from catalog_ingest.ingestion.snapshots import record_snapshot
from catalog_ingest.ingestion.mapper import (
    deactivate_unseen_entities,
    ensure_entity,
    ensure_mapping,
    ensure_source,
)
from catalog_ingest.ingestion.reconcile import (
    ReconcileResult,
    TrustDecision,
    apply_offer_observation,
    evaluate_trust,
    reconcile_offer,
)
from catalog_ingest.ingestion.scheduler import enqueue_scheduled_jobs, sync_sources
from catalog_ingest.ingestion.worker import run_worker

__all__ = [
    # Registry
    "GlobalConfig",
    "OpsConfig",
    "RetailerPolicy",
    "ScheduledSourceConfig",
    "SourceRegistry",
    "get_default_registry",
    "reset_default_registry",
    # Fetch
    "Fetcher",
    "FetchResult",
    # Queue
    "enqueue",
    "claim",
    "complete",
    "fail",
    "heartbeat",
    # Observation log
    "record_snapshot",
    # Mapper
    "ensure_source",
    "ensure_entity",
    "ensure_mapping",
    "deactivate_unseen_entities",
    # Reconciliation
    "ReconcileResult",
    "TrustDecision",
    "evaluate_trust",
    "apply_offer_observation",
    "reconcile_offer",
    # Scheduling and workers
    "enqueue_scheduled_jobs",
    "sync_sources",
    "run_worker",
]

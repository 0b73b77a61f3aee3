"""Offer refresh sweeps run by the ingestion worker."""

from catalog_ingest.ingestion.sources.offers_detail import run_offers_detail_refresh
from catalog_ingest.ingestion.sources.offers_head import run_offers_head_refresh

__all__ = ["run_offers_detail_refresh", "run_offers_head_refresh"]

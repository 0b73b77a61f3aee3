"""
Offer Detail Refresh
====================

Fetches each offer page, runs both extraction chains, logs the
observation, and reconciles accepted facts into the canonical offer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from catalog_ingest.core.enums import RejectionReason, TrustLevel
from catalog_ingest.core.schema import (
    OffersRefreshBulkPayload,
    OffersRefreshOnePayload,
    RefreshResult,
)
from catalog_ingest.ingestion.extractors import (
    Document,
    ParsedOffer,
    extract_image,
    extract_offer,
    status_fallback,
)
from catalog_ingest.ingestion.fetcher import Fetcher, FetchResult
from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.reconcile import apply_offer_observation, evaluate_trust
from catalog_ingest.ingestion.registry import SourceRegistry
from catalog_ingest.ingestion.snapshots import build_extracted, record_snapshot
from catalog_ingest.ingestion.sources.refresh_window import (
    OfferTarget,
    chunked,
    get_offer_target,
    refresh_cutoff,
    select_offers_to_refresh,
    track_offer_entity,
)

logger = logging.getLogger(__name__)

DEFAULT_DETAIL_TIMEOUT_MS = 12000


@dataclass
class OfferObservationOutcome:
    """What happened to one offer during a sweep."""

    offer_id: str
    accepted: bool
    rejection: RejectionReason | None = None
    meaningful_change: bool = False
    snapshot_inserted: bool = False
    image_hydrated: bool = False


def parse_document(fetched: FetchResult, target: OfferTarget) -> tuple[ParsedOffer, Document | None]:
    """Commerce facts for a fetch; the status fallback applies when there is no body."""
    if fetched.transport_failed or not fetched.body:
        return status_fallback(fetched.status), None

    document = Document(
        html=fetched.body,
        url=target.url,
        final_url=fetched.final_url,
        status=fetched.status,
        retailer_slug=target.retailer_slug,
    )
    return extract_offer(document), document


def record_detail_observation(
    session: Session,
    registry: SourceRegistry,
    source_id: str,
    run_id: str | None,
    target: OfferTarget,
    fetched: FetchResult,
    default_trust: TrustLevel = TrustLevel.RETAILER,
) -> OfferObservationOutcome:
    """
    Log one fetched offer page and reconcile it if it passes the gate.

    Args:
        session: Database session
        registry: Supplies the retailer trust policy and image placeholders
        source_id: Ingestion source the observation belongs to
        run_id: Current ingestion run
        target: Offer that was fetched
        fetched: Fetch result for the offer URL
        default_trust: Trust tag recorded on extracted fields

    Returns:
        OfferObservationOutcome
    """
    checked_at = fetched.fetched_at
    parsed, document = parse_document(fetched, target)
    image_url = None
    if document is not None:
        image_url = extract_image(
            document, registry.global_config.placeholder_image_markers
        )

    policy = registry.get_retailer_policy(target.retailer_slug)
    decision = evaluate_trust(
        parsed,
        policy,
        landing_url=fetched.landing_url,
        html=fetched.body,
        transport_failed=fetched.transport_failed,
    )

    entity_id = track_offer_entity(session, source_id, target, checked_at)

    observed = parsed.observed()
    raw = {
        "url": target.url,
        "final_url": fetched.final_url,
        "status": fetched.status,
        "content_type": fetched.content_type,
        "parser": parsed.parser,
        "confidence": parsed.confidence.value,
        "observed": observed,
        "image_url": image_url,
        "accepted": decision.accepted,
        "rejection": decision.reason.value if decision.reason else None,
    }
    extracted, trust = build_extracted(
        {**observed, "product_image_url": image_url},
        trust=default_trust,
        meta={
            "parser": parsed.parser,
            "confidence": parsed.confidence.value,
            "retailer": target.retailer_slug,
        },
    )
    snapshot = record_snapshot(
        session,
        entity_id=entity_id,
        raw=raw,
        extracted=extracted,
        trust=trust,
        run_id=run_id,
        http_status=fetched.status,
        content_type=fetched.content_type,
        fetched_at=checked_at,
    )

    outcome = OfferObservationOutcome(
        offer_id=target.id,
        accepted=decision.accepted,
        rejection=decision.reason,
        snapshot_inserted=snapshot.inserted,
    )
    if not decision.accepted:
        logger.info(
            f"Offer {target.id} observation rejected ({decision.reason.value}); "
            f"landing={fetched.landing_url}"
        )
        return outcome

    applied = apply_offer_observation(
        session,
        target.id,
        parsed,
        checked_at=checked_at,
        image_url=image_url,
    )
    outcome.meaningful_change = applied.meaningful_change
    outcome.image_hydrated = applied.image_hydrated
    return outcome


async def run_offers_detail_refresh(
    session: Session,
    fetcher: Fetcher,
    registry: SourceRegistry,
    source_id: str,
    run_id: str | None,
    payload: OffersRefreshBulkPayload | OffersRefreshOnePayload,
    on_progress: Callable[[], None] | None = None,
) -> RefreshResult:
    """
    Refresh one offer or a window of stale offers.

    Per-offer exceptions are logged and counted as failed; they never
    abort the rest of the batch. Rejections are counted as failed too.

    Args:
        session: Database session
        fetcher: HTTP client
        registry: Configuration registry
        source_id: Ingestion source id
        run_id: Ingestion run id
        payload: Bulk or single-offer payload
        on_progress: Called after each fetched chunk (lock heartbeat)

    Returns:
        RefreshResult counters
    """
    global_config = registry.global_config
    timeout_ms = payload.timeout_ms or DEFAULT_DETAIL_TIMEOUT_MS

    if isinstance(payload, OffersRefreshOnePayload):
        target = get_offer_target(session, payload.offer_id)
        targets = [target] if target else []
    else:
        cutoff = refresh_cutoff(
            utc_now(),
            older_than_hours=payload.older_than_hours,
            older_than_days=payload.older_than_days,
            default_hours=global_config.refresh_window_hours,
        )
        targets = select_offers_to_refresh(session, cutoff, limit=payload.limit)

    result = RefreshResult(scanned=len(targets))

    for chunk in chunked(targets, global_config.fetch_concurrency):
        fetched_chunk = await fetcher.fetch_many(
            [t.url for t in chunk],
            timeout=timeout_ms / 1000,
            concurrency=global_config.fetch_concurrency,
        )

        for target, fetched in zip(chunk, fetched_chunk):
            try:
                outcome = record_detail_observation(
                    session, registry, source_id, run_id, target, fetched
                )
            except Exception as e:
                session.rollback()
                logger.warning(f"Offer {target.id} detail refresh failed: {e}")
                result.failed += 1
                continue

            if outcome.snapshot_inserted:
                result.snapshots_inserted += 1
            if not outcome.accepted:
                result.rejected += 1
                result.failed += 1
            elif outcome.meaningful_change:
                result.updated += 1

        if on_progress is not None:
            on_progress()

    logger.info(
        f"Detail refresh: scanned={result.scanned} updated={result.updated} "
        f"failed={result.failed} rejected={result.rejected}"
    )
    return result

"""
Offer HEAD Refresh
==================

Cheap liveness probe for offer URLs.

- 404/410: the listing is gone, an out-of-stock signal (medium confidence)
- 2xx/3xx: liveness confirmation, only `last_checked_at` moves
- anything else (403, 429, 5xx) or no response: no signal
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from catalog_ingest.core.enums import Confidence, RejectionReason, TrustLevel
from catalog_ingest.core.schema import (
    OffersRefreshBulkPayload,
    OffersRefreshOnePayload,
    RefreshResult,
)
from catalog_ingest.ingestion.extractors import ParsedOffer
from catalog_ingest.ingestion.fetcher import Fetcher, FetchResult
from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.reconcile import (
    apply_offer_observation,
    confirm_offer_checked,
    is_search_results_url,
)
from catalog_ingest.ingestion.registry import SourceRegistry
from catalog_ingest.ingestion.snapshots import build_extracted, record_snapshot
from catalog_ingest.ingestion.sources.offers_detail import OfferObservationOutcome
from catalog_ingest.ingestion.sources.refresh_window import (
    OfferTarget,
    chunked,
    get_offer_target,
    refresh_cutoff,
    select_offers_to_refresh,
    track_offer_entity,
)

logger = logging.getLogger(__name__)

DEFAULT_HEAD_TIMEOUT_MS = 6000
GONE_STATUSES = frozenset({404, 410})


def head_signal(status: int | None) -> ParsedOffer | None:
    """Stock signal carried by a HEAD status, if any."""
    if status in GONE_STATUSES:
        return ParsedOffer(in_stock=False, parser="http_head", confidence=Confidence.MEDIUM)
    return None


def record_head_observation(
    session: Session,
    registry: SourceRegistry,
    source_id: str,
    run_id: str | None,
    target: OfferTarget,
    fetched: FetchResult,
    default_trust: TrustLevel = TrustLevel.RETAILER,
) -> OfferObservationOutcome:
    """Log one HEAD probe and apply its signal, if it carries one."""
    checked_at = fetched.fetched_at
    policy = registry.get_retailer_policy(target.retailer_slug)
    signal = head_signal(fetched.status)

    if fetched.transport_failed:
        rejection = RejectionReason.TRANSPORT_FAILURE
    elif is_search_results_url(fetched.landing_url, policy):
        rejection = RejectionReason.SEARCH_RESULTS_PAGE
    elif signal is None and not fetched.ok:
        rejection = RejectionReason.NO_SIGNAL
    else:
        rejection = None

    entity_id = track_offer_entity(session, source_id, target, checked_at)

    observed = signal.observed() if signal else {"in_stock": None}
    raw = {
        "url": target.url,
        "final_url": fetched.final_url,
        "status": fetched.status,
        "content_type": fetched.content_type,
        "method": "HEAD",
        "ok": fetched.ok,
        "observed": observed,
        "accepted": rejection is None,
        "rejection": rejection.value if rejection else None,
    }
    extracted, trust = build_extracted(
        observed if rejection is None else {},
        trust=default_trust,
        meta={"parser": "http_head", "retailer": target.retailer_slug},
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
        accepted=rejection is None,
        rejection=rejection,
        snapshot_inserted=snapshot.inserted,
    )
    if rejection is not None:
        logger.info(f"Offer {target.id} HEAD probe rejected ({rejection.value})")
        return outcome

    if signal is not None:
        applied = apply_offer_observation(session, target.id, signal, checked_at=checked_at)
        outcome.meaningful_change = applied.meaningful_change
    else:
        confirm_offer_checked(session, target.id, checked_at)
    return outcome


async def run_offers_head_refresh(
    session: Session,
    fetcher: Fetcher,
    registry: SourceRegistry,
    source_id: str,
    run_id: str | None,
    payload: OffersRefreshBulkPayload | OffersRefreshOnePayload,
    on_progress: Callable[[], None] | None = None,
) -> RefreshResult:
    """
    HEAD-probe one offer or a window of stale offers.

    Counting follows the detail refresh: rejections and per-offer
    exceptions are failures, meaningful changes are updates.
    """
    global_config = registry.global_config
    timeout_ms = payload.timeout_ms or DEFAULT_HEAD_TIMEOUT_MS

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
            method="HEAD",
        )

        for target, fetched in zip(chunk, fetched_chunk):
            try:
                outcome = record_head_observation(
                    session, registry, source_id, run_id, target, fetched
                )
            except Exception as e:
                session.rollback()
                logger.warning(f"Offer {target.id} HEAD refresh failed: {e}")
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
        f"HEAD refresh: scanned={result.scanned} updated={result.updated} "
        f"failed={result.failed} rejected={result.rejected}"
    )
    return result

"""
Reconciliation Engine Module
============================

Trust-weighted write gate between observations and canonical offers.

An observation is always logged, but it only mutates the canonical
`offers` row when it passes the gate. Accepted observations are merged
field by field in a single compare-and-set UPDATE scoped to the offer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import parse_qsl, urlparse

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import Confidence, RejectionReason
from catalog_ingest.db.models import OfferDB, PriceHistoryDB
from catalog_ingest.errors import IngestionError
from catalog_ingest.ingestion.extractors.base import ParsedOffer
from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.registry import RetailerPolicy

logger = logging.getLogger(__name__)

NON_AUTHORITATIVE_PARSERS = frozenset({"text", "none", "http_status_fallback"})
CAS_RETRIES = 3


@dataclass
class TrustDecision:
    """Whether an observation may mutate canonical state."""

    accepted: bool
    reason: RejectionReason | None = None

    @classmethod
    def accept(cls) -> TrustDecision:
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: RejectionReason) -> TrustDecision:
        return cls(accepted=False, reason=reason)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one observation against one offer."""

    accepted: bool
    rejection: RejectionReason | None = None
    meaningful_change: bool = False
    changed_fields: list[str] = field(default_factory=list)
    price_history_appended: bool = False
    image_hydrated: bool = False


def is_search_results_url(url: str | None, policy: RetailerPolicy) -> bool:
    """
    True if a landing URL has the retailer's search-results shape.

    Matches either a non-empty search query parameter or a search path.
    """
    if not url:
        return False
    parsed = urlparse(url)

    params = {k.lower() for k, v in parse_qsl(parsed.query, keep_blank_values=False) if v.strip()}
    if params & {p.lower() for p in policy.search_query_params}:
        return True

    path = parsed.path or "/"
    return any(pattern.search(path) for pattern in policy.path_patterns)


def is_blocked_page(html: str | None, policy: RetailerPolicy) -> bool:
    """True if a document carries any of the retailer's anti-automation markers."""
    if not html:
        return False
    lowered = html.lower()
    return any(marker.lower() in lowered for marker in policy.block_markers)


def evaluate_trust(
    parsed: ParsedOffer,
    policy: RetailerPolicy,
    landing_url: str | None = None,
    html: str | None = None,
    transport_failed: bool = False,
) -> TrustDecision:
    """
    Decide whether an observation may mutate canonical state.

    Rejected when the fetch failed, the landing page is a search-results
    page or a block page, the parser is a non-authoritative fallback, the
    confidence is low, or nothing was extracted.
    """
    if transport_failed:
        return TrustDecision.reject(RejectionReason.TRANSPORT_FAILURE)
    if is_search_results_url(landing_url, policy):
        return TrustDecision.reject(RejectionReason.SEARCH_RESULTS_PAGE)
    if is_blocked_page(html, policy):
        return TrustDecision.reject(RejectionReason.BLOCKED_PAGE)
    if parsed.parser in NON_AUTHORITATIVE_PARSERS:
        return TrustDecision.reject(RejectionReason.NON_AUTHORITATIVE_PARSER)
    if parsed.confidence == Confidence.LOW:
        return TrustDecision.reject(RejectionReason.LOW_CONFIDENCE)
    if not parsed.has_signal:
        return TrustDecision.reject(RejectionReason.NO_SIGNAL)
    return TrustDecision.accept()


def _diff(parsed: ParsedOffer, current) -> dict[str, object]:
    """Observed values that differ from the canonical row; unobserved fields never differ."""
    changes: dict[str, object] = {}
    if parsed.price_cents is not None and parsed.price_cents != current.price_cents:
        changes["price_cents"] = parsed.price_cents
    if parsed.currency is not None and parsed.currency != current.currency:
        changes["currency"] = parsed.currency
    if parsed.in_stock is not None and parsed.in_stock != bool(current.in_stock):
        changes["in_stock"] = parsed.in_stock
    return changes


def apply_offer_observation(
    session: Session,
    offer_id: str,
    parsed: ParsedOffer,
    checked_at: datetime | None = None,
    image_url: str | None = None,
) -> ReconcileResult:
    """
    Merge an accepted observation into a canonical offer.

    Always bumps `last_checked_at`. On a meaningful change the changed
    fields and `updated_at` are written and a price-history point is
    appended when the resulting price is known. An observed image only
    fills an empty canonical image.

    The offer write is conditional on the values the diff was computed
    from; a concurrent writer causes a re-read and a fresh diff.

    Raises:
        IngestionError: If the offer does not exist or the row kept
            changing underneath every retry
    """
    checked_at = checked_at or utc_now()

    for _ in range(CAS_RETRIES):
        current = session.execute(
            select(
                OfferDB.price_cents,
                OfferDB.currency,
                OfferDB.in_stock,
            ).where(OfferDB.id == offer_id)
        ).one_or_none()
        if current is None:
            raise IngestionError(f"Offer not found: {offer_id}")

        changes = _diff(parsed, current)
        values: dict[str, object] = {"last_checked_at": checked_at, **changes}
        if changes:
            values["updated_at"] = checked_at

        result = session.execute(
            update(OfferDB)
            .where(
                OfferDB.id == offer_id,
                OfferDB.price_cents.is_not_distinct_from(current.price_cents),
                OfferDB.currency.is_not_distinct_from(current.currency),
                OfferDB.in_stock.is_not_distinct_from(current.in_stock),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            break
        session.rollback()
        logger.debug(f"Offer {offer_id} changed during reconciliation; retrying")
    else:
        raise IngestionError(f"Offer {offer_id} kept changing; observation not applied")

    outcome = ReconcileResult(
        accepted=True,
        meaningful_change=bool(changes),
        changed_fields=sorted(changes),
    )

    next_price = changes.get("price_cents", current.price_cents)
    if changes and next_price is not None:
        session.add(
            PriceHistoryDB(
                offer_id=offer_id,
                price_cents=next_price,
                in_stock=bool(changes.get("in_stock", current.in_stock)),
                recorded_at=checked_at,
            )
        )
        outcome.price_history_appended = True

    if image_url:
        hydrated = session.execute(
            update(OfferDB)
            .where(
                OfferDB.id == offer_id,
                or_(OfferDB.product_image_url.is_(None), OfferDB.product_image_url == ""),
            )
            .values(product_image_url=image_url)
            .execution_options(synchronize_session=False)
        )
        outcome.image_hydrated = hydrated.rowcount == 1

    session.commit()
    return outcome


def confirm_offer_checked(
    session: Session,
    offer_id: str,
    checked_at: datetime | None = None,
) -> bool:
    """
    Record a liveness confirmation: bump `last_checked_at` only.

    Returns:
        True if the offer exists
    """
    result = session.execute(
        update(OfferDB)
        .where(OfferDB.id == offer_id)
        .values(last_checked_at=checked_at or utc_now())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def reconcile_offer(
    session: Session,
    offer_id: str,
    parsed: ParsedOffer,
    policy: RetailerPolicy,
    landing_url: str | None = None,
    html: str | None = None,
    transport_failed: bool = False,
    checked_at: datetime | None = None,
    image_url: str | None = None,
) -> ReconcileResult:
    """
    Gate an observation and, if accepted, apply it to the offer.

    Rejected observations leave the offer row untouched.
    """
    decision = evaluate_trust(
        parsed,
        policy,
        landing_url=landing_url,
        html=html,
        transport_failed=transport_failed,
    )
    if not decision.accepted:
        logger.info(f"Observation for offer {offer_id} rejected: {decision.reason.value}")
        return ReconcileResult(accepted=False, rejection=decision.reason)

    return apply_offer_observation(
        session,
        offer_id,
        parsed,
        checked_at=checked_at,
        image_url=image_url,
    )

"""Tests for the reconciliation gate and offer merge."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog_ingest.core.enums import Confidence, RejectionReason
from catalog_ingest.db.models import OfferDB, PriceHistoryDB
from catalog_ingest.errors import IngestionError
from catalog_ingest.ingestion.extractors import ParsedOffer
from catalog_ingest.ingestion.hashing import as_utc, utc_now
from catalog_ingest.ingestion.reconcile import (
    apply_offer_observation,
    confirm_offer_checked,
    evaluate_trust,
    is_blocked_page,
    is_search_results_url,
    reconcile_offer,
)
from catalog_ingest.ingestion.registry import RetailerPolicy


def _jsonld(price_cents=1999, in_stock=True, currency="USD") -> ParsedOffer:
    return ParsedOffer(
        price_cents=price_cents,
        currency=currency,
        in_stock=in_stock,
        parser="jsonld",
        confidence=Confidence.HIGH,
    )


def _offer(session: Session, offer_id: str) -> OfferDB:
    return session.get(OfferDB, offer_id, populate_existing=True)


def _history(session: Session, offer_id: str) -> list[PriceHistoryDB]:
    stmt = select(PriceHistoryDB).where(PriceHistoryDB.offer_id == offer_id)
    return list(session.execute(stmt).scalars().all())


class TestSearchAndBlockDetection:
    """Tests for landing-page classification."""

    def test_search_query_param(self, registry) -> None:
        """Known search parameters with a value mark a search page."""
        policy = registry.get_retailer_policy("plantshop")
        assert is_search_results_url("https://plantshop.example/collections?q=fern", policy)
        assert not is_search_results_url("https://plantshop.example/collections?q=", policy)
        assert not is_search_results_url("https://plantshop.example/products/fern?variant=2", policy)

    def test_search_path(self, registry) -> None:
        """Search paths mark a search page without any query."""
        policy = registry.get_retailer_policy("plantshop")
        assert is_search_results_url("https://plantshop.example/search", policy)
        assert is_search_results_url("https://plantshop.example/s", policy)
        assert not is_search_results_url("https://plantshop.example/shop/fern", policy)

    def test_retailer_specific_params(self, registry) -> None:
        """Retailer policies extend the default parameters."""
        amazon = registry.get_retailer_policy("amazon")
        plantshop = registry.get_retailer_policy("plantshop")
        url = "https://www.amazon.com/s?k=monstera"
        assert is_search_results_url(url, amazon)
        assert is_search_results_url("https://www.amazon.com/b?k=monstera", amazon)
        assert not is_search_results_url("https://plantshop.example/b?k=monstera", plantshop)

    def test_block_page(self, registry) -> None:
        """Anti-automation interstitials are detected case-insensitively."""
        policy = registry.get_retailer_policy("amazon")
        assert is_blocked_page("<h4>Enter the characters you see below</h4>", policy)
        assert not is_blocked_page("<p>protected by recaptcha</p>", policy)
        assert not is_blocked_page(None, policy)


class TestEvaluateTrust:
    """Tests for the write gate's decision order."""

    @pytest.fixture
    def policy(self) -> RetailerPolicy:
        return RetailerPolicy(slug="plantshop")

    def test_accepts_authoritative_observation(self, policy) -> None:
        """A structured observation on a product page is accepted."""
        decision = evaluate_trust(_jsonld(), policy, landing_url="https://p.example/products/a")
        assert decision.accepted is True
        assert decision.reason is None

    def test_transport_failure(self, policy) -> None:
        """A transport failure is never a negative signal."""
        decision = evaluate_trust(_jsonld(), policy, transport_failed=True)
        assert decision.accepted is False
        assert decision.reason == RejectionReason.TRANSPORT_FAILURE

    def test_search_results_page(self, policy) -> None:
        """A redirect to search results is rejected even with a high-confidence parse."""
        decision = evaluate_trust(_jsonld(), policy, landing_url="https://p.example/search?q=fern")
        assert decision.reason == RejectionReason.SEARCH_RESULTS_PAGE

    def test_blocked_page(self, policy) -> None:
        """Block pages are rejected."""
        decision = evaluate_trust(
            _jsonld(), policy, landing_url="https://p.example/p/1", html="<title>Robot Check</title>"
        )
        assert decision.reason == RejectionReason.BLOCKED_PAGE

    def test_generic_denial_copy_is_not_a_default_marker(self) -> None:
        """Pages that merely mention "access denied" pass unless a retailer opts in."""
        html = "<script>var msg = 'Access denied';</script><h1>Fern</h1>"

        assert is_blocked_page(html, RetailerPolicy(slug="plantshop")) is False
        strict = RetailerPolicy.from_dict({"slug": "strict", "block_markers": ["access denied"]})
        assert is_blocked_page(html, strict) is True

    @pytest.mark.parametrize("parser", ["text", "none", "http_status_fallback"])
    def test_non_authoritative_parsers(self, policy, parser) -> None:
        """Fallback parsers never mutate canonical state."""
        parsed = ParsedOffer(in_stock=False, parser=parser, confidence=Confidence.MEDIUM)
        assert evaluate_trust(parsed, policy).reason == RejectionReason.NON_AUTHORITATIVE_PARSER

    def test_low_confidence(self, policy) -> None:
        """Low-confidence results are rejected."""
        parsed = ParsedOffer(price_cents=100, parser="custom", confidence=Confidence.LOW)
        assert evaluate_trust(parsed, policy).reason == RejectionReason.LOW_CONFIDENCE

    def test_no_signal(self, policy) -> None:
        """Results without any fact are rejected."""
        parsed = ParsedOffer(parser="jsonld", confidence=Confidence.HIGH)
        assert evaluate_trust(parsed, policy).reason == RejectionReason.NO_SIGNAL


class TestApplyOfferObservation:
    """Tests for the field-level merge into the offer row."""

    def test_price_change_is_meaningful(self, session: Session, make_offer) -> None:
        """A changed price is written and recorded in history."""
        offer_id = make_offer(price_cents=1500)
        checked_at = utc_now()

        result = apply_offer_observation(session, offer_id, _jsonld(price_cents=1999), checked_at=checked_at)

        assert result.meaningful_change is True
        assert result.changed_fields == ["price_cents"]
        assert result.price_history_appended is True
        offer = _offer(session, offer_id)
        assert offer.price_cents == 1999
        assert as_utc(offer.last_checked_at) >= checked_at - timedelta(seconds=1)
        assert as_utc(offer.updated_at) >= checked_at - timedelta(seconds=1)
        [point] = _history(session, offer_id)
        assert point.price_cents == 1999
        assert point.in_stock is True

    def test_unchanged_observation_only_bumps_checked(self, session: Session, make_offer) -> None:
        """Identical facts move last_checked_at but not updated_at."""
        old_updated = utc_now() - timedelta(days=2)
        offer_id = make_offer(price_cents=1999, updated_at=old_updated)

        result = apply_offer_observation(session, offer_id, _jsonld(price_cents=1999))

        assert result.meaningful_change is False
        assert result.price_history_appended is False
        offer = _offer(session, offer_id)
        assert offer.last_checked_at is not None
        assert as_utc(offer.updated_at) < utc_now() - timedelta(days=1)
        assert _history(session, offer_id) == []

    def test_unobserved_fields_are_untouched(self, session: Session, make_offer) -> None:
        """A stock-only observation leaves price and currency alone."""
        offer_id = make_offer(price_cents=1500, in_stock=True)
        parsed = ParsedOffer(in_stock=False, parser="meta", confidence=Confidence.MEDIUM)

        result = apply_offer_observation(session, offer_id, parsed)

        assert result.changed_fields == ["in_stock"]
        offer = _offer(session, offer_id)
        assert offer.price_cents == 1500
        assert offer.currency == "USD"
        assert offer.in_stock is False
        [point] = _history(session, offer_id)
        assert point.price_cents == 1500
        assert point.in_stock is False

    def test_no_history_without_price(self, session: Session, make_offer) -> None:
        """History needs a known price."""
        offer_id = make_offer(price_cents=None, in_stock=True)
        parsed = ParsedOffer(in_stock=False, parser="meta", confidence=Confidence.MEDIUM)

        result = apply_offer_observation(session, offer_id, parsed)

        assert result.meaningful_change is True
        assert result.price_history_appended is False

    def test_image_hydrates_only_empty(self, session: Session, make_offer) -> None:
        """An observed image fills an empty image but never overwrites one."""
        empty = make_offer(product_image_url=None)
        filled = make_offer(product_image_url="https://cdn.example/original.jpg")

        first = apply_offer_observation(session, empty, _jsonld(), image_url="https://cdn.example/new.jpg")
        second = apply_offer_observation(session, filled, _jsonld(), image_url="https://cdn.example/new.jpg")

        assert first.image_hydrated is True
        assert second.image_hydrated is False
        assert _offer(session, empty).product_image_url == "https://cdn.example/new.jpg"
        assert _offer(session, filled).product_image_url == "https://cdn.example/original.jpg"

    def test_missing_offer(self, session: Session) -> None:
        """Applying to an unknown offer raises."""
        with pytest.raises(IngestionError):
            apply_offer_observation(session, "missing", _jsonld())

    def test_confirm_offer_checked(self, session: Session, make_offer) -> None:
        """Liveness confirmation only bumps last_checked_at."""
        offer_id = make_offer(price_cents=1500)

        assert confirm_offer_checked(session, offer_id) is True
        offer = _offer(session, offer_id)
        assert offer.last_checked_at is not None
        assert offer.price_cents == 1500
        assert confirm_offer_checked(session, "missing") is False


class TestReconcileOffer:
    """Tests for gate-then-apply."""

    def test_rejected_observation_leaves_offer_untouched(
        self, session: Session, make_offer, registry
    ) -> None:
        """A search-page observation changes nothing, not even last_checked_at."""
        offer_id = make_offer(price_cents=1500, in_stock=True)
        policy = registry.get_retailer_policy("plantshop")

        result = reconcile_offer(
            session,
            offer_id,
            _jsonld(price_cents=999, in_stock=False),
            policy,
            landing_url="https://plantshop.example/search?q=monstera",
        )

        assert result.accepted is False
        assert result.rejection == RejectionReason.SEARCH_RESULTS_PAGE
        offer = _offer(session, offer_id)
        assert offer.price_cents == 1500
        assert offer.in_stock is True
        assert offer.last_checked_at is None

    def test_accepted_observation_is_applied(self, session: Session, make_offer, registry) -> None:
        """An accepted observation is merged."""
        offer_id = make_offer(price_cents=1500)
        policy = registry.get_retailer_policy("plantshop")

        result = reconcile_offer(
            session,
            offer_id,
            _jsonld(price_cents=1999),
            policy,
            landing_url="https://plantshop.example/products/monstera",
        )

        assert result.accepted is True
        assert result.meaningful_change is True
        assert _offer(session, offer_id).price_cents == 1999

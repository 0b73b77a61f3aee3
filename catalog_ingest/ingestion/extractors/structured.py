"""
Generic commerce extractors: JSON-LD, meta tags and free text.

These apply to every retailer; retailer-specific heuristics sit between
the meta-tag and free-text links of the chain.
"""

from __future__ import annotations

from catalog_ingest.core.enums import Confidence
from catalog_ingest.ingestion.extractors.base import BaseExtractor, Document, ParsedOffer
from catalog_ingest.ingestion.extractors.parsing import (
    DOLLAR_PRICE_RE,
    extract_jsonld_blocks,
    get_meta,
    keyword_stock_signal,
    node_types,
    normalize_currency,
    parse_availability,
    parse_price_cents,
    strip_markup,
    walk_nodes,
)


class JsonLdExtractor(BaseExtractor):
    """
    Structured offer data (schema.org Offer / AggregateOffer) in JSON-LD.

    Authoritative when present: the retailer generates it for machines.
    """

    EXTRACTOR_NAME = "jsonld"
    CONFIDENCE = Confidence.HIGH

    def try_extract(self, document: Document) -> ParsedOffer | None:
        for block in extract_jsonld_blocks(document.tree):
            for node in walk_nodes(block):
                if not any("offer" in t for t in node_types(node)):
                    continue

                price_cents = parse_price_cents(node.get("price"))
                if price_cents is None:
                    price_cents = parse_price_cents(node.get("lowPrice"))
                if price_cents is None:
                    price_cents = parse_price_cents(node.get("highPrice"))

                result = self._result(
                    price_cents,
                    normalize_currency(node.get("priceCurrency")),
                    parse_availability(node.get("availability")),
                )
                if result is not None:
                    return result
        return None


class MetaTagExtractor(BaseExtractor):
    """Open Graph / product meta tags."""

    EXTRACTOR_NAME = "meta"
    CONFIDENCE = Confidence.MEDIUM

    def try_extract(self, document: Document) -> ParsedOffer | None:
        tree = document.tree

        price_cents = parse_price_cents(get_meta(tree, "product:price:amount"))
        if price_cents is None:
            price_cents = parse_price_cents(get_meta(tree, "og:price:amount"))

        currency = normalize_currency(get_meta(tree, "product:price:currency"))
        if currency is None:
            currency = normalize_currency(get_meta(tree, "og:price:currency"))

        in_stock = parse_availability(get_meta(tree, "product:availability"))
        if in_stock is None:
            in_stock = parse_availability(get_meta(tree, "availability"))

        return self._result(price_cents, currency, in_stock)


class FreeTextExtractor(BaseExtractor):
    """Last resort: dollar-sign price and stock keywords over stripped markup."""

    EXTRACTOR_NAME = "text"
    CONFIDENCE = Confidence.LOW

    OUT_MARKERS = ("currently unavailable", "out of stock", "sold out")
    IN_MARKERS = ("in stock", "add to cart")

    def try_extract(self, document: Document) -> ParsedOffer | None:
        text = strip_markup(document.html)

        match = DOLLAR_PRICE_RE.search(text)
        price_cents = parse_price_cents(match.group(1)) if match else None
        in_stock = keyword_stock_signal(text, self.OUT_MARKERS, self.IN_MARKERS)

        return self._result(price_cents, None, in_stock)


def status_fallback(status: int | None) -> ParsedOffer:
    """
    Availability-only signal when no document body is available.

    A 4xx/5xx response suggests the listing is gone; a transport failure
    (no status) yields nothing. Never produces a price.
    """
    in_stock = False if status is not None and status >= 400 else None
    return ParsedOffer(
        price_cents=None,
        currency=None,
        in_stock=in_stock,
        parser="http_status_fallback",
        confidence=Confidence.LOW,
    )

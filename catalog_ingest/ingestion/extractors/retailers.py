"""
Retailer-specific extractors.

Used for sources whose pages lack usable structured data. Each class
covers both the commerce facts and the product image for its retailer.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any
from urllib.parse import parse_qs, urlparse

from selectolax.parser import HTMLParser

from catalog_ingest.core.enums import Confidence
from catalog_ingest.ingestion.extractors.base import (
    BaseExtractor,
    BaseImageExtractor,
    Document,
    ParsedOffer,
)
from catalog_ingest.ingestion.extractors.parsing import (
    DOLLAR_PRICE_RE,
    attribute,
    iter_scripts,
    keyword_stock_signal,
    parse_price_cents,
)

logger = logging.getLogger(__name__)

SHOPIFY_SECTION_TYPE = "static-product"


class AmazonExtractor(BaseExtractor):
    """Amazon product pages: offscreen price span and availability copy."""

    EXTRACTOR_NAME = "amazon_dom"
    CONFIDENCE = Confidence.MEDIUM

    OUT_MARKERS = ("currently unavailable", "out of stock")
    IN_MARKERS = ("in stock", "add to cart")

    def try_extract(self, document: Document) -> ParsedOffer | None:
        html = document.html

        price_cents = None
        for node in document.tree.css(".a-offscreen"):
            price_cents = parse_price_cents(node.text(strip=True))
            if price_cents is not None:
                break
        if price_cents is None:
            fallback = DOLLAR_PRICE_RE.search(html)
            price_cents = parse_price_cents(fallback.group(1)) if fallback else None

        in_stock = keyword_stock_signal(html, self.OUT_MARKERS, self.IN_MARKERS)
        if price_cents is None and in_stock is None:
            return None

        return self._result(price_cents, "USD", in_stock)


class AmazonImageExtractor(BaseImageExtractor):
    """
    Amazon landing image.

    Prefers `data-old-hires`, then the largest entry of the
    `data-a-dynamic-image` responsive map (`{"url": [width, height]}`).
    """

    EXTRACTOR_NAME = "amazon_image"

    def candidates(self, document: Document) -> list[str]:
        out: list[str] = []
        for node in document.tree.css("img"):
            if attribute(node, "id") != "landingImage" and "data-old-hires" not in node.attributes:
                continue
            hires = attribute(node, "data-old-hires")
            if hires:
                out.append(hires)
            out.extend(_dynamic_image_urls(attribute(node, "data-a-dynamic-image")))
            src = attribute(node, "src")
            if src:
                out.append(src)
        return out


def _dynamic_image_urls(raw: str | None) -> list[str]:
    """URLs of a `data-a-dynamic-image` map, largest area first."""
    if not raw:
        return []
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(mapping, dict):
        return []

    def area(dims: Any) -> int:
        if isinstance(dims, list) and len(dims) >= 2:
            try:
                return int(dims[0]) * int(dims[1])
            except (TypeError, ValueError):
                return 0
        return 0

    ranked = sorted(mapping.items(), key=lambda item: area(item[1]), reverse=True)
    return [url for url, _ in ranked if isinstance(url, str)]


def extract_shopify_product(source: str | HTMLParser) -> dict[str, Any] | None:
    """
    The product object of a Shopify `static-product` section script.

    Malformed inline scripts are skipped.
    """
    for body in iter_scripts(source, data_section_type=SHOPIFY_SECTION_TYPE):
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed static-product script")
            continue
        product = parsed.get("product") if isinstance(parsed, dict) else None
        if isinstance(product, dict) and isinstance(product.get("variants"), list):
            return product
    return None


def _variant_price_cents(value: Any) -> int | None:
    # Shopify section JSON carries integer cents; strings with a dot are major units
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and "." not in value:
        digits = re.sub(r"[^0-9]", "", value)
        return int(digits) if digits else None
    return parse_price_cents(value)


class ShopifyStaticProductExtractor(BaseExtractor):
    """
    Shopify storefronts that embed the product as section JSON.

    The variant selected by the `?variant=` query parameter wins; otherwise
    the first available variant, otherwise the first variant.
    """

    EXTRACTOR_NAME = "shopify_static_product"
    CONFIDENCE = Confidence.MEDIUM

    def try_extract(self, document: Document) -> ParsedOffer | None:
        product = extract_shopify_product(document.tree)
        if product is None:
            return None

        variants = [v for v in product["variants"] if isinstance(v, dict)]
        if not variants:
            return None

        wanted = parse_qs(urlparse(document.base_url).query).get("variant", [None])[0]
        variant = next((v for v in variants if str(v.get("id")) == wanted), None)
        if variant is None:
            variant = next((v for v in variants if v.get("available") is True), variants[0])

        available = variant.get("available")
        return self._result(
            _variant_price_cents(variant.get("price")),
            None,
            available if isinstance(available, bool) else None,
        )


class ShopifyImageExtractor(BaseImageExtractor):
    """Featured image of a Shopify static-product section."""

    EXTRACTOR_NAME = "shopify_image"

    def candidates(self, document: Document) -> list[str]:
        product = extract_shopify_product(document.tree)
        if product is None:
            return []
        out: list[str] = []
        featured = product.get("featured_image")
        if isinstance(featured, str):
            out.append(featured)
        for variant in product.get("variants", []):
            image = variant.get("featured_image") if isinstance(variant, dict) else None
            if isinstance(image, dict):
                src = image.get("src") or image.get("url")
                if isinstance(src, str):
                    out.append(src)
        return out

"""
Extractor Registry Module
=========================

Ordered extraction chains for commerce facts and product images.

Commerce chain, first link with any signal wins:
    JSON-LD (high) -> meta tags (medium) -> retailer-specific (medium)
    -> free text (low) -> none
When no document body is available the HTTP-status fallback applies.
"""

from __future__ import annotations

from typing import Type

from catalog_ingest.core.enums import Confidence
from catalog_ingest.ingestion.extractors.base import (
    BaseExtractor,
    BaseImageExtractor,
    Document,
    ParsedOffer,
)
from catalog_ingest.ingestion.extractors.images import (
    JsonLdImageExtractor,
    MetaImageExtractor,
    normalize_image_url,
    pick_image,
    sanitize_image_url,
)
from catalog_ingest.ingestion.extractors.retailers import (
    AmazonExtractor,
    AmazonImageExtractor,
    ShopifyImageExtractor,
    ShopifyStaticProductExtractor,
)
from catalog_ingest.ingestion.extractors.structured import (
    FreeTextExtractor,
    JsonLdExtractor,
    MetaTagExtractor,
    status_fallback,
)

# Retailer slug -> retailer-specific extractors, run after meta tags
EXTRACTOR_REGISTRY: dict[str, list[Type[BaseExtractor]]] = {
    "amazon": [AmazonExtractor],
    "buceplant": [ShopifyStaticProductExtractor],
}

IMAGE_EXTRACTOR_REGISTRY: dict[str, list[Type[BaseImageExtractor]]] = {
    "amazon": [AmazonImageExtractor],
    "buceplant": [ShopifyImageExtractor],
}


def register_extractor(
    retailer_slug: str,
    extractor_class: Type[BaseExtractor],
) -> None:
    """
    Register a retailer-specific commerce extractor.

    Args:
        retailer_slug: Retailer the extractor applies to
        extractor_class: Extractor class (must inherit from BaseExtractor)
    """
    if not issubclass(extractor_class, BaseExtractor):
        raise TypeError(f"{extractor_class} must inherit from BaseExtractor")
    EXTRACTOR_REGISTRY.setdefault(retailer_slug, []).append(extractor_class)


def register_image_extractor(
    retailer_slug: str,
    extractor_class: Type[BaseImageExtractor],
) -> None:
    """Register a retailer-specific image extractor."""
    if not issubclass(extractor_class, BaseImageExtractor):
        raise TypeError(f"{extractor_class} must inherit from BaseImageExtractor")
    IMAGE_EXTRACTOR_REGISTRY.setdefault(retailer_slug, []).append(extractor_class)


def commerce_chain(retailer_slug: str | None) -> list[BaseExtractor]:
    """The ordered commerce chain for a retailer."""
    specific = EXTRACTOR_REGISTRY.get(retailer_slug or "", [])
    return [
        JsonLdExtractor(),
        MetaTagExtractor(),
        *(cls() for cls in specific),
        FreeTextExtractor(),
    ]


def image_chain(retailer_slug: str | None) -> list[BaseImageExtractor]:
    """The ordered image chain for a retailer."""
    specific = IMAGE_EXTRACTOR_REGISTRY.get(retailer_slug or "", [])
    return [JsonLdImageExtractor(), MetaImageExtractor(), *(cls() for cls in specific)]


def extract_offer(document: Document) -> ParsedOffer:
    """
    Run the commerce chain against a document.

    Returns:
        The first link's result, or a `none` result at low confidence
    """
    for extractor in commerce_chain(document.retailer_slug):
        parsed = extractor.try_extract(document)
        if parsed is not None and parsed.has_signal:
            return parsed
    return ParsedOffer(parser="none", confidence=Confidence.LOW)


def extract_image(
    document: Document,
    placeholder_markers: list[str] | None = None,
) -> str | None:
    """Run the image chain against a document."""
    return pick_image(document, image_chain(document.retailer_slug), placeholder_markers)


def list_extractors() -> dict[str, list[str]]:
    """Registered retailer-specific extractor names by retailer."""
    return {
        slug: [cls.EXTRACTOR_NAME for cls in classes]
        for slug, classes in EXTRACTOR_REGISTRY.items()
    }


__all__ = [
    "EXTRACTOR_REGISTRY",
    "IMAGE_EXTRACTOR_REGISTRY",
    "register_extractor",
    "register_image_extractor",
    "commerce_chain",
    "image_chain",
    "extract_offer",
    "extract_image",
    "list_extractors",
    "status_fallback",
    "normalize_image_url",
    "sanitize_image_url",
    "BaseExtractor",
    "BaseImageExtractor",
    "Document",
    "ParsedOffer",
    "JsonLdExtractor",
    "MetaTagExtractor",
    "FreeTextExtractor",
    "AmazonExtractor",
    "ShopifyStaticProductExtractor",
]

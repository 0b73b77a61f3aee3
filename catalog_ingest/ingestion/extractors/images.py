"""
Product image chain.

Candidates are collected from structured data, then meta/link tags, then
retailer-specific markup. Each is normalized to an absolute http(s) URL
and sanitized before acceptance.
"""

from __future__ import annotations

from urllib.parse import urljoin, urlparse

from catalog_ingest.ingestion.extractors.base import BaseImageExtractor, Document
from catalog_ingest.ingestion.extractors.parsing import (
    extract_jsonld_blocks,
    get_link_href,
    get_meta,
    node_types,
    walk_nodes,
)

REJECTED_SCHEMES = ("data:", "blob:", "javascript:", "vbscript:", "file:", "about:")


def _image_values(value) -> list[str]:
    """Flatten a JSON-LD `image` value (string, ImageObject, or list of either)."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        url = value.get("url") or value.get("contentUrl")
        return [url] if isinstance(url, str) else []
    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            out.extend(_image_values(item))
        return out
    return []


class JsonLdImageExtractor(BaseImageExtractor):
    """`image` of schema.org Product nodes."""

    EXTRACTOR_NAME = "jsonld_image"

    def candidates(self, document: Document) -> list[str]:
        out: list[str] = []
        for block in extract_jsonld_blocks(document.tree):
            for node in walk_nodes(block):
                if any(t.endswith("product") for t in node_types(node)):
                    out.extend(_image_values(node.get("image")))
        return out


class MetaImageExtractor(BaseImageExtractor):
    """og:image, twitter:image and `<link rel="image_src">`."""

    EXTRACTOR_NAME = "meta_image"

    def candidates(self, document: Document) -> list[str]:
        tree = document.tree
        found = [
            get_meta(tree, "og:image:secure_url"),
            get_meta(tree, "og:image"),
            get_meta(tree, "twitter:image"),
            get_meta(tree, "twitter:image:src"),
            get_link_href(tree, "image_src"),
        ]
        return [c for c in found if c]


def normalize_image_url(value: str | None, base_url: str) -> str | None:
    """
    Resolve an image reference to an absolute http(s) URL.

    Protocol-relative references get https. Non-web schemes are rejected.
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if trimmed.lower().startswith(REJECTED_SCHEMES):
        return None

    if trimmed.startswith("//"):
        trimmed = f"https:{trimmed}"

    absolute = urljoin(base_url, trimmed)
    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute


def sanitize_image_url(value: str | None, placeholder_markers: list[str] | None = None) -> str | None:
    """Reject empty URLs, whitespace-bearing URLs and known placeholder images."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or any(ch.isspace() for ch in trimmed):
        return None
    lowered = trimmed.lower()
    for marker in placeholder_markers or []:
        if marker.lower() in lowered:
            return None
    return trimmed


def pick_image(
    document: Document,
    extractors: list[BaseImageExtractor],
    placeholder_markers: list[str] | None = None,
) -> str | None:
    """
    First candidate, in chain order, that survives normalization and sanitizing.

    Returns:
        Absolute image URL, or None
    """
    for extractor in extractors:
        for candidate in extractor.candidates(document):
            normalized = normalize_image_url(candidate, document.base_url)
            accepted = sanitize_image_url(normalized, placeholder_markers)
            if accepted:
                return accepted
    return None

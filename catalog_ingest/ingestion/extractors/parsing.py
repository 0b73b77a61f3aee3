"""
Markup helpers shared by extractors.

Documents are tokenized with selectolax, so unquoted, reordered or
entity-encoded attributes parse the same as the canonical form. Malformed
structured-data blocks degrade a single block, never the whole document.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterator

from selectolax.parser import HTMLParser, Node

logger = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_THOUSANDS_COMMA_RE = re.compile(r",(?=\d{3}(\D|$))")
_WHITESPACE_RE = re.compile(r"\s+")

JSONLD_TYPE = "application/ld+json"

DOLLAR_PRICE_RE = re.compile(r"\$\s*([0-9][0-9,]*(?:\.[0-9]{2})?)")

OUT_OF_STOCK_MARKERS = ("outofstock", "out of stock", "unavailable", "sold out")
IN_STOCK_MARKERS = ("instock", "in stock", "available", "add to cart")


def normalize_currency(value: Any) -> str | None:
    """Uppercase ISO-4217-shaped code, or None."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().upper()
    if not _CURRENCY_RE.match(normalized):
        return None
    return normalized


def _to_cents(amount: Decimal) -> int | None:
    if amount < 0:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_price_cents(value: Any) -> int | None:
    """
    Parse a price in major units into integer cents.

    Numbers are taken as-is. Strings are stripped of everything but digits
    and separators; thousands commas are dropped and a remaining comma is
    read as the decimal point ("1.299,00" style inputs are not supported).

    Examples:
        19.99 -> 1999
        "$1,299.00" -> 129900
        "12,50" -> 1250
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        if not amount.is_finite():
            return None
        return _to_cents(amount)

    if not isinstance(value, str):
        return None

    cleaned = re.sub(r"[^0-9.,]", "", value).strip()
    if not cleaned:
        return None

    normalized = _THOUSANDS_COMMA_RE.sub("", cleaned).replace(",", ".")
    # Keep only the first decimal point
    if normalized.count(".") > 1:
        head, _, tail = normalized.partition(".")
        normalized = f"{head}.{tail.replace('.', '')}"
    if normalized in ("", "."):
        return None

    try:
        amount = Decimal(normalized)
    except InvalidOperation:
        return None
    return _to_cents(amount)


def parse_availability(value: Any) -> bool | None:
    """
    Map an availability value to a stock signal.

    Out-of-stock markers are checked first since "unavailable" contains
    "available".
    """
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return None

    lowered = value.lower()
    if any(marker in lowered for marker in OUT_OF_STOCK_MARKERS):
        return False
    if any(marker in lowered for marker in IN_STOCK_MARKERS):
        return True
    return None


def parse_html(source: str | HTMLParser) -> HTMLParser:
    """Tokenize a document, passing an already parsed tree through."""
    if isinstance(source, HTMLParser):
        return source
    return HTMLParser(source)


def attribute(node: Node, name: str) -> str:
    """Stripped attribute value, empty for missing or valueless attributes."""
    return (node.attributes.get(name) or "").strip()


def iter_scripts(source: str | HTMLParser, **wanted: str) -> Iterator[str]:
    """
    Bodies of the `<script>` elements whose attributes match `wanted`.

    Keyword names use underscores for dashes (`data_section_type`) and
    values compare case-insensitively.
    """
    criteria = {name.replace("_", "-"): value.lower() for name, value in wanted.items()}
    for node in parse_html(source).css("script"):
        if all(attribute(node, name).lower() == value for name, value in criteria.items()):
            body = node.text(deep=True).strip()
            if body:
                yield body


def extract_jsonld_blocks(source: str | HTMLParser) -> list[Any]:
    """
    Parse every JSON-LD script block in a document.

    Invalid blocks are skipped individually.
    """
    blocks: list[Any] = []
    for body in iter_scripts(source, type=JSONLD_TYPE):
        try:
            blocks.append(json.loads(body))
        except json.JSONDecodeError as e:
            logger.debug(f"Skipping malformed JSON-LD block: {e}")
    return blocks


def node_types(node: dict[str, Any]) -> list[str]:
    """Lowercased `@type` values of a JSON-LD node."""
    raw = node.get("@type")
    if isinstance(raw, list):
        return [str(v).lower() for v in raw]
    return [str(raw or "").lower()]


def walk_nodes(value: Any):
    """Yield every dict nested anywhere inside a JSON-LD value."""
    if isinstance(value, list):
        for item in value:
            yield from walk_nodes(item)
    elif isinstance(value, dict):
        yield value
        for child in value.values():
            yield from walk_nodes(child)


def get_meta(source: str | HTMLParser, name: str) -> str | None:
    """Content of the first `<meta property|name=...>` tag matching `name`."""
    wanted = name.lower()
    for node in parse_html(source).css("meta"):
        key = (attribute(node, "property") or attribute(node, "name")).lower()
        if key == wanted:
            content = attribute(node, "content")
            if content:
                return content
    return None


def get_link_href(source: str | HTMLParser, rel: str) -> str | None:
    """Href of the first `<link rel=...>` tag matching `rel`."""
    wanted = rel.lower()
    for node in parse_html(source).css("link"):
        if wanted in attribute(node, "rel").lower().split():
            href = attribute(node, "href")
            if href:
                return href
    return None


def strip_markup(html: str) -> str:
    """Visible text approximation: scripts and styles dropped, whitespace collapsed."""
    tree = HTMLParser(html)
    tree.strip_tags(["script", "style", "noscript"])
    root = tree.body or tree.root
    if root is None:
        return ""
    return _WHITESPACE_RE.sub(" ", root.text(separator=" "))


def keyword_stock_signal(text: str, out_markers: tuple[str, ...], in_markers: tuple[str, ...]) -> bool | None:
    """Stock signal from keyword presence in free text."""
    lowered = text.lower()
    if any(marker in lowered for marker in out_markers):
        return False
    if any(marker in lowered for marker in in_markers):
        return True
    return None

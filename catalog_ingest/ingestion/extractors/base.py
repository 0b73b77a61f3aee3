"""
Extractor Base Module
=====================

Defines the document handed to extractors, the commerce signal they
produce, and the abstract base classes for the two extraction chains.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import cached_property
from typing import Any

from selectolax.parser import HTMLParser

from catalog_ingest.core.enums import Confidence


@dataclass
class Document:
    """A fetched page as seen by the extraction chains."""

    html: str
    url: str
    final_url: str | None = None
    status: int | None = None
    retailer_slug: str | None = None

    @property
    def base_url(self) -> str:
        """URL relative references resolve against."""
        return self.final_url or self.url

    @cached_property
    def tree(self) -> HTMLParser:
        """Parsed markup, shared by every link of both chains."""
        return HTMLParser(self.html)


@dataclass
class ParsedOffer:
    """
    Price/currency/stock facts derived from one document.

    `parser` names the chain link that produced the facts; it is recorded
    in the snapshot and checked by the reconciliation gate.
    """

    price_cents: int | None = None
    currency: str | None = None
    in_stock: bool | None = None
    parser: str = "none"
    confidence: Confidence = Confidence.LOW

    @property
    def has_signal(self) -> bool:
        """True if any commerce fact was extracted."""
        return (
            self.price_cents is not None
            or self.currency is not None
            or self.in_stock is not None
        )

    def observed(self) -> dict[str, Any]:
        """Observed field values keyed by canonical field name."""
        return {
            "price_cents": self.price_cents,
            "currency": self.currency,
            "in_stock": self.in_stock,
        }


class BaseExtractor(ABC):
    """
    One link in the commerce-facts chain.

    Subclasses set `EXTRACTOR_NAME` and `CONFIDENCE` and implement
    `try_extract`, returning None when the document carries no signal they
    recognise.
    """

    EXTRACTOR_NAME: str = "base"
    CONFIDENCE: Confidence = Confidence.LOW

    @abstractmethod
    def try_extract(self, document: Document) -> ParsedOffer | None:
        """
        Extract commerce facts from a document.

        Args:
            document: Fetched page

        Returns:
            ParsedOffer with at least one signal, or None
        """
        pass

    def _result(
        self,
        price_cents: int | None,
        currency: str | None,
        in_stock: bool | None,
        confidence: Confidence | None = None,
    ) -> ParsedOffer | None:
        parsed = ParsedOffer(
            price_cents=price_cents,
            currency=currency,
            in_stock=in_stock,
            parser=self.EXTRACTOR_NAME,
            confidence=confidence or self.CONFIDENCE,
        )
        return parsed if parsed.has_signal else None


class BaseImageExtractor(ABC):
    """One link in the product-image chain."""

    EXTRACTOR_NAME: str = "base_image"

    @abstractmethod
    def candidates(self, document: Document) -> list[str]:
        """
        Raw image URL candidates in preference order.

        Candidates may be relative; the chain normalizes and sanitizes them.
        """
        pass

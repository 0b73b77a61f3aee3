"""
Fetch Client Module
===================

Bounded-timeout HTTP retrieval of retailer offer pages. Redirects are
followed and the landing URL is kept, because trust decisions are made
against where the request ended up rather than where it started.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.registry import DEFAULT_ACCEPT, DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """
    Result of fetching a URL.

    A transport failure (DNS, connect, timeout) has `status=None` and no
    body. That is never a negative signal about the offer.
    """

    url: str
    status: int | None
    content_type: str | None = None
    final_url: str | None = None
    body: str | None = None
    fetched_at: datetime = field(default_factory=utc_now)
    error: str | None = None

    @property
    def transport_failed(self) -> bool:
        """True when no HTTP response was received."""
        return self.status is None

    @property
    def ok(self) -> bool:
        """True for 2xx/3xx responses."""
        return self.status is not None and 200 <= self.status < 400

    @property
    def landing_url(self) -> str:
        """The URL the request landed on after redirects."""
        return self.final_url or self.url


class Fetcher:
    """
    HTTP client for offer pages.

    Features:
    - Fixed identifying user agent and Accept header
    - Whole-request deadline; a slow server never blocks other fetches
    - Redirects followed with the final URL preserved
    - Bounded concurrency for batches
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        accept: str = DEFAULT_ACCEPT,
        timeout: float = 12.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.accept = accept
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent, "Accept": self.accept}

    async def fetch(
        self, url: str, timeout: float | None = None, method: str = "GET"
    ) -> FetchResult:
        """
        Fetch a URL once.

        Args:
            url: URL to fetch
            timeout: Deadline in seconds (defaults to the client timeout)
            method: "GET" for documents, "HEAD" for liveness probes

        Returns:
            FetchResult with status and body, or a transport failure
        """
        fetched_at = utc_now()
        deadline = timeout if timeout is not None else self.timeout

        try:
            # Overall deadline; httpx timeouts only bound each phase
            async with asyncio.timeout(deadline):
                async with httpx.AsyncClient(
                    timeout=deadline,
                    follow_redirects=True,
                    transport=self._transport,
                ) as client:
                    response = await client.request(method, url, headers=self._headers())

                    body = response.text if method != "HEAD" else None
                    return FetchResult(
                        url=url,
                        status=response.status_code,
                        content_type=response.headers.get("content-type"),
                        final_url=str(response.url) or None,
                        body=body,
                        fetched_at=fetched_at,
                    )

        except (TimeoutError, httpx.TimeoutException):
            logger.warning(f"Timeout fetching {url} after {deadline}s")
            error = f"Timeout after {deadline}s"
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"HTTP error fetching {url}: {e}")
            error = str(e) or e.__class__.__name__

        return FetchResult(url=url, status=None, fetched_at=fetched_at, error=error)

    async def head(self, url: str, timeout: float | None = None) -> FetchResult:
        """Issue a HEAD request (liveness probe)."""
        return await self.fetch(url, timeout=timeout, method="HEAD")

    async def fetch_many(
        self,
        urls: list[str],
        timeout: float | None = None,
        concurrency: int = 4,
        method: str = "GET",
    ) -> list[FetchResult]:
        """
        Fetch multiple URLs with controlled concurrency.

        Returns:
            List of FetchResults in the same order as input URLs
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def fetch_with_semaphore(url: str) -> FetchResult:
            async with semaphore:
                return await self.fetch(url, timeout=timeout, method=method)

        tasks = [fetch_with_semaphore(url) for url in urls]
        return await asyncio.gather(*tasks)

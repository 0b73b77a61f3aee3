"""Tests for the fetch client."""

import asyncio
import time

import httpx
import pytest

from catalog_ingest.ingestion.fetcher import Fetcher, FetchResult


def _transport(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


class TestFetchResult:
    """Tests for FetchResult properties."""

    def test_transport_failure(self) -> None:
        """No status means transport failure and not ok."""
        result = FetchResult(url="https://a.example/", status=None, error="boom")
        assert result.transport_failed is True
        assert result.ok is False
        assert result.landing_url == "https://a.example/"

    def test_ok_range(self) -> None:
        """2xx and 3xx are ok; 4xx is not."""
        assert FetchResult(url="u", status=200).ok is True
        assert FetchResult(url="u", status=301).ok is True
        assert FetchResult(url="u", status=404).ok is False


class TestFetcher:
    """Tests for Fetcher against a mock transport."""

    @pytest.mark.asyncio
    async def test_fetch_sends_identifying_headers(self) -> None:
        """User agent and Accept headers are sent on every request."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["ua"] = request.headers["user-agent"]
            seen["accept"] = request.headers["accept"]
            return httpx.Response(200, text="<html></html>", headers={"content-type": "text/html"})

        fetcher = Fetcher(user_agent="TestAgent/1.0", accept="text/html", transport=_transport(handler))
        result = await fetcher.fetch("https://shop.example/p/1")

        assert result.status == 200
        assert result.body == "<html></html>"
        assert result.content_type == "text/html"
        assert seen == {"ua": "TestAgent/1.0", "accept": "text/html"}

    @pytest.mark.asyncio
    async def test_fetch_follows_redirects_and_keeps_landing_url(self) -> None:
        """The final URL after redirects is preserved."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/p/1":
                return httpx.Response(302, headers={"location": "https://shop.example/search?q=fern"})
            return httpx.Response(200, text="results")

        fetcher = Fetcher(transport=_transport(handler))
        result = await fetcher.fetch("https://shop.example/p/1")

        assert result.status == 200
        assert result.url == "https://shop.example/p/1"
        assert result.landing_url == "https://shop.example/search?q=fern"

    @pytest.mark.asyncio
    async def test_fetch_error_status_is_not_transport_failure(self) -> None:
        """HTTP errors are responses, not transport failures."""
        fetcher = Fetcher(transport=_transport(lambda r: httpx.Response(404, text="gone")))
        result = await fetcher.fetch("https://shop.example/p/1")

        assert result.status == 404
        assert result.transport_failed is False
        assert result.body == "gone"

    @pytest.mark.asyncio
    async def test_fetch_timeout(self) -> None:
        """A timeout yields a transport failure with no body."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        fetcher = Fetcher(transport=_transport(handler))
        result = await fetcher.fetch("https://shop.example/p/1", timeout=0.5)

        assert result.transport_failed is True
        assert result.body is None
        assert "Timeout" in result.error

    @pytest.mark.asyncio
    async def test_fetch_connect_error(self) -> None:
        """Connection errors yield a transport failure."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        fetcher = Fetcher(transport=_transport(handler))
        result = await fetcher.fetch("https://shop.example/p/1")

        assert result.status is None
        assert result.error

    @pytest.mark.asyncio
    async def test_head_has_no_body(self) -> None:
        """HEAD requests use the HEAD method and keep no body."""
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200)

        fetcher = Fetcher(transport=_transport(handler))
        result = await fetcher.head("https://shop.example/p/1")

        assert methods == ["HEAD"]
        assert result.status == 200
        assert result.body is None

    @pytest.mark.asyncio
    async def test_fetch_many_preserves_order(self) -> None:
        """Results come back in input order, failures included."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/down":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, text=request.url.path)

        fetcher = Fetcher(transport=_transport(handler))
        urls = ["https://s.example/a", "https://s.example/down", "https://s.example/c"]
        results = await fetcher.fetch_many(urls, concurrency=2)

        assert [r.url for r in results] == urls
        assert results[0].body == "/a"
        assert results[1].transport_failed is True
        assert results[2].body == "/c"


class TestFetchDeadline:
    """Tests for the whole-request deadline."""

    @pytest.mark.asyncio
    async def test_slow_handler_hits_deadline(self) -> None:
        """A response that never arrives is a timeout, not a hang."""

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, text="late")

        fetcher = Fetcher(transport=_transport(handler))
        started = time.monotonic()
        result = await fetcher.fetch("https://shop.example/p/1", timeout=0.2)

        assert time.monotonic() - started < 1.0
        assert result.transport_failed is True
        assert "Timeout" in result.error

    @pytest.mark.asyncio
    async def test_trickling_body_hits_deadline(self, monkeypatch) -> None:
        """A server dribbling its body one byte at a time cannot outlast the deadline."""
        for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
            monkeypatch.delenv(name, raising=False)
        handlers: list[asyncio.Task] = []

        async def trickle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            handlers.append(asyncio.current_task())
            try:
                await reader.readuntil(b"\r\n\r\n")
                writer.write(
                    b"HTTP/1.1 200 OK\r\nContent-Type: text/html\r\nContent-Length: 20\r\n\r\n"
                )
                for _ in range(20):
                    writer.write(b"x")
                    await writer.drain()
                    await asyncio.sleep(0.25)
            except (ConnectionError, asyncio.IncompleteReadError):
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(trickle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            started = time.monotonic()
            result = await Fetcher().fetch(f"http://127.0.0.1:{port}/p/1", timeout=1.0)
            elapsed = time.monotonic() - started
        finally:
            for task in handlers:
                task.cancel()
            server.close()
            await server.wait_closed()

        assert elapsed < 1.5
        assert result.transport_failed is True
        assert result.body is None
        assert "Timeout" in result.error

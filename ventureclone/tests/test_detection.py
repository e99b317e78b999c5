"""Tests for first-party fetching and fingerprint technology detection."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from ventureclone.fetcher import (
    MAX_HTML_BYTES,
    FetchedPage,
    NotHtmlError,
    extract_first_party,
    fetch_first_party,
    fetch_page,
    fetch_with_page,
)
from ventureclone.tech_detection import TechDetectionService, detect_from_page

URL = "https://shop.example.com"

HTML = """\
<html>
<head>
  <title>  Acme   Widgets </title>
  <meta name="description" content="Hand-made widgets shipped worldwide.">
  <meta name="generator" content="WordPress 6.4.2">
  <script src="https://js.stripe.com/v3/"></script>
  <script>var noisy = "should not appear";</script>
</head>
<body>
  <nav>Home | Shop | About</nav>
  <h1>Widgets for everyone</h1>
  <main><p>Our widgets are built to last and ship in two days.</p></main>
  <footer>Copyright Acme</footer>
  <link href="/wp-content/themes/acme/style.css">
</body>
</html>"""


def _page(html: str = HTML, headers: dict | None = None, cookies: list | None = None) -> FetchedPage:
    return FetchedPage(url=URL, status_code=200, content_type="text/html", html=html,
                       headers=headers or {}, cookies=cookies or [])


def _mock_client(handler):
    real = httpx.AsyncClient

    def factory(**kwargs):
        return real(transport=httpx.MockTransport(handler), **kwargs)

    return patch("ventureclone.fetcher.httpx.AsyncClient", side_effect=factory)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class TestExtractFirstParty:
    def test_extracts_fields(self):
        data = extract_first_party(HTML, URL)
        assert data.title == "Acme Widgets"
        assert data.description == "Hand-made widgets shipped worldwide."
        assert data.h1 == "Widgets for everyone"
        assert data.text_snippet == "Our widgets are built to last and ship in two days."
        assert data.url == URL

    def test_description_falls_back_to_first_paragraph(self):
        html = "<html><body><p>A paragraph that is comfortably longer than twenty characters.</p></body></html>"
        data = extract_first_party(html, URL)
        assert data.description.startswith("A paragraph that is comfortably")
        assert data.title == "Untitled"

    def test_navigation_is_not_part_of_snippet(self):
        html = "<html><body><nav>Menu links here</nav><div>Plain body text for the page.</div></body></html>"
        data = extract_first_party(html, URL)
        assert "Menu" not in data.text_snippet
        assert data.text_snippet == "Plain body text for the page."

    def test_empty_document(self):
        assert extract_first_party("", URL) is None


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class TestFetchPage:
    @pytest.mark.asyncio
    async def test_follows_redirects_and_collects_headers(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": f"{URL}/new"})
            return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8",
                                                "X-Powered-By": "Express",
                                                "set-cookie": "session=abc; Path=/"},
                                  content=HTML.encode())

        with _mock_client(handler):
            page = await fetch_page(f"{URL}/old", timeout=5)
        assert page.url == f"{URL}/new"
        assert page.headers["x-powered-by"] == "Express"
        assert page.cookies == ["session"]
        assert "Widgets for everyone" in page.html

    @pytest.mark.asyncio
    async def test_large_body_is_truncated(self):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/html"},
                                  content=b"a" * (MAX_HTML_BYTES + 100))

        with _mock_client(handler):
            page = await fetch_page(URL, timeout=5)
        assert len(page.html) == MAX_HTML_BYTES

    @pytest.mark.asyncio
    async def test_non_html_is_rejected(self):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "application/pdf"}, content=b"%PDF")

        with _mock_client(handler):
            with pytest.raises(NotHtmlError):
                await fetch_page(URL, timeout=5)

    @pytest.mark.asyncio
    async def test_http_errors_give_none(self):
        def handler(request):
            return httpx.Response(404, headers={"content-type": "text/html"}, content=b"missing")

        with _mock_client(handler):
            assert await fetch_with_page(URL, timeout=5) == (None, None)

    @pytest.mark.asyncio
    async def test_timeout_gives_none(self):
        with patch("ventureclone.fetcher.fetch_page", new_callable=AsyncMock,
                   side_effect=httpx.ConnectTimeout("timed out")):
            assert await fetch_first_party(URL) is None

    @pytest.mark.asyncio
    async def test_success_returns_data_and_page(self):
        with patch("ventureclone.fetcher.fetch_page", new_callable=AsyncMock, return_value=_page()):
            data, page = await fetch_with_page(URL)
        assert data.title == "Acme Widgets"
        assert page.html == HTML


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetectFromPage:
    def test_meta_script_and_html_signatures(self):
        techs = {t.name: t for t in detect_from_page(_page())}
        assert techs["WordPress"].version == "6.4.2"
        assert techs["WordPress"].confidence == 100
        assert "Stripe" in techs
        assert techs["PHP"].confidence == 50
        assert techs["MySQL"].categories == ["Databases"]

    def test_header_signatures(self):
        techs = {t.name for t in detect_from_page(_page("<html></html>", headers={"x-powered-by": "Next.js 14.1"}))}
        assert {"Next.js", "React", "Node.js"} <= techs

    def test_nothing_detected(self):
        assert detect_from_page(_page("<html><body>plain</body></html>")) == []


class TestTechDetectionService:
    @pytest.mark.asyncio
    async def test_uses_prefetched_page(self):
        fetch = AsyncMock()
        service = TechDetectionService(fetch=fetch)
        result = await service.detect_technologies(URL, _page())
        assert result.success is True
        assert result.content_type == "text/html"
        fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_retries_once(self):
        fetch = AsyncMock(side_effect=[httpx.ConnectError("reset"), _page()])
        service = TechDetectionService(timeout=5, backoff=0, fetch=fetch)
        result = await service.detect_technologies(URL)
        assert result is not None
        assert fetch.await_count == 2
        assert any(t.name == "WordPress" for t in result.technologies)

    @pytest.mark.asyncio
    async def test_gives_up_after_retry(self):
        fetch = AsyncMock(side_effect=httpx.ConnectError("reset"))
        service = TechDetectionService(timeout=5, backoff=0, fetch=fetch)
        assert await service.detect_technologies(URL) is None
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_non_html_is_not_retried(self):
        fetch = AsyncMock(side_effect=NotHtmlError("pdf"))
        service = TechDetectionService(timeout=5, backoff=0, fetch=fetch)
        assert await service.detect_technologies(URL) is None
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_private_url_is_skipped(self):
        fetch = AsyncMock()
        service = TechDetectionService(fetch=fetch)
        assert await service.detect_technologies("http://192.168.1.1") is None
        fetch.assert_not_called()

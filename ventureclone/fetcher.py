"""First-party page fetch and extraction (httpx + lxml)."""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field

import httpx
from lxml import etree, html as lxml_html

from ventureclone.config import get_settings
from ventureclone.schemas import FirstPartyData

log = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; VentureClone/1.0)"
MAX_HTML_BYTES = 2 * 1024 * 1024
_WS_RE = re.compile(r"\s+")

_STRIP_TAGS = ("script", "style", "nav", "header", "footer", "aside", "noscript", "iframe")


def _has_class(name: str) -> str:
    return f"//*[contains(concat(' ', normalize-space(@class), ' '), ' {name} ')]"


_CONTENT_XPATHS = (
    "//main",
    "//*[@role='main']",
    _has_class("main-content"),
    _has_class("content"),
    "//article",
    _has_class("post-content"),
    _has_class("entry-content"),
    _has_class("article-content"),
)


class NotHtmlError(ValueError):
    """The response was not an HTML document."""


@dataclass
class FetchedPage:
    url: str
    status_code: int
    content_type: str
    html: str
    headers: dict[str, str] = field(default_factory=dict)
    cookies: list[str] = field(default_factory=list)


async def fetch_page(url: str, timeout: float | None = None) -> FetchedPage:
    """GET *url* following redirects; read at most 2 MB of an HTML body.

    Raises ``httpx.HTTPError`` on transport or status errors and
    :class:`NotHtmlError` for non-HTML responses.
    """
    timeout = timeout or get_settings().request_timeout
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(timeout),
        headers={"User-Agent": USER_AGENT, "Accept": "text/html,application/xhtml+xml"},
    ) as client:
        async with client.stream("GET", url) as resp:
            resp.raise_for_status()
            content_type = resp.headers.get("content-type", "")
            if "text/html" not in content_type.lower():
                raise NotHtmlError(f"Non-HTML content type for {url}: {content_type or '(none)'}")
            chunks: list[bytes] = []
            total = 0
            async for chunk in resp.aiter_bytes():
                total += len(chunk)
                if total > MAX_HTML_BYTES:
                    log.warning("HTML for %s exceeds %d bytes, truncating", url, MAX_HTML_BYTES)
                    chunks.append(chunk[: len(chunk) - (total - MAX_HTML_BYTES)])
                    break
                chunks.append(chunk)
            body = b"".join(chunks).decode(resp.encoding or "utf-8", errors="replace")
            return FetchedPage(
                url=str(resp.url),
                status_code=resp.status_code,
                content_type=content_type,
                html=body,
                headers={k.lower(): v for k, v in resp.headers.items()},
                cookies=list(resp.cookies.keys()),
            )


def _first_text(tree, xpath: str) -> str:
    nodes = tree.xpath(xpath)
    if not nodes:
        return ""
    node = nodes[0]
    text = node if isinstance(node, str) else node.text_content()
    return _WS_RE.sub(" ", text).strip()


def extract_first_party(raw_html: str, url: str) -> FirstPartyData | None:
    """Pull title, description, first h1 and a text snippet out of *raw_html*."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return None

    title = _first_text(tree, "//title") or _first_text(tree, "//h1") or "Untitled"
    description = (
        _first_text(tree, "//meta[@name='description']/@content")
        or _first_text(tree, "//meta[@property='og:description']/@content")
        or _first_text(tree, "//meta[@name='twitter:description']/@content")
    )
    if not description:
        first_p = _first_text(tree, "//p")
        if len(first_p) > 20:
            description = first_p[:200] + ("..." if len(first_p) > 200 else "")
    h1 = _first_text(tree, "//h1") or title

    for el in tree.xpath("|".join(f"//{t}" for t in _STRIP_TAGS)):
        el.drop_tree()

    snippet = ""
    for xpath in _CONTENT_XPATHS:
        snippet = _first_text(tree, xpath)
        if snippet:
            break
    if not snippet:
        snippet = " ".join(p.text_content() for p in tree.xpath("//p")[:5])
    if not snippet:
        body = tree.xpath("//body")
        snippet = body[0].text_content()[:1000] if body else ""
    snippet = _WS_RE.sub(" ", snippet).strip()[:500]
    if len(snippet) < 10:
        snippet = description or title or "No content available"

    return FirstPartyData(
        title=title[:200],
        description=description[:300],
        h1=h1[:200],
        text_snippet=snippet,
        url=url,
    )


async def fetch_first_party(url: str, timeout: float | None = None) -> FirstPartyData | None:
    """Fetch *url* and extract first-party data. Returns None on any failure."""
    data, _ = await fetch_with_page(url, timeout)
    return data


async def fetch_with_page(
    url: str, timeout: float | None = None,
) -> tuple[FirstPartyData | None, FetchedPage | None]:
    """Like :func:`fetch_first_party` but also hands back the fetched page."""
    start = time.monotonic()
    try:
        page = await fetch_page(url, timeout)
    except httpx.TimeoutException:
        log.warning("Timeout fetching %s after %.1fs", url, time.monotonic() - start)
        return None, None
    except httpx.HTTPStatusError as exc:
        log.warning("HTTP %d fetching %s", exc.response.status_code, url)
        return None, None
    except (httpx.HTTPError, NotHtmlError) as exc:
        log.warning("Failed to fetch %s: %s", url, exc)
        return None, None
    return extract_first_party(page.html, page.url), page

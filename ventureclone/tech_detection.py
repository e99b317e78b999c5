"""Fingerprint-based website technology detection.

A page is matched against a table of signatures (response headers, cookie
names, ``<meta name="generator">``, script ``src`` URLs and raw HTML
patterns). A regex group in a matching pattern is taken as the version.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from lxml import etree, html as lxml_html

from ventureclone.config import get_settings
from ventureclone.fetcher import FetchedPage, NotHtmlError, fetch_page
from ventureclone.schemas import DetectedTechnology, TechDetectionResult
from ventureclone.utils import sanitize_url, utcnow_iso

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Signature:
    name: str
    categories: tuple[str, ...]
    headers: dict[str, str] = field(default_factory=dict)
    cookies: tuple[str, ...] = ()
    meta: str | None = None
    scripts: tuple[str, ...] = ()
    html: tuple[str, ...] = ()
    implies: tuple[str, ...] = ()
    website: str | None = None


SIGNATURES: tuple[Signature, ...] = (
    # CMS and site builders
    Signature("WordPress", ("CMS", "Blogs"), meta=r"WordPress ?([\d.]+)?",
              html=(r"/wp-content/", r"/wp-includes/"), implies=("PHP", "MySQL"),
              website="https://wordpress.org"),
    Signature("Shopify", ("Ecommerce",), headers={"x-shopid": "", "x-shopify-stage": ""},
              html=(r"cdn\.shopify\.com", r"Shopify\.theme"), website="https://www.shopify.com"),
    Signature("Wix", ("CMS",), headers={"x-wix-request-id": ""}, meta=r"Wix\.com",
              html=(r"static\.wixstatic\.com",), website="https://www.wix.com"),
    Signature("Squarespace", ("CMS",), meta=r"Squarespace",
              html=(r"static1\.squarespace\.com", r"Static\.SQUARESPACE_CONTEXT"),
              website="https://www.squarespace.com"),
    Signature("Webflow", ("CMS",), meta=r"Webflow",
              html=(r"data-wf-page=", r"assets\.website-files\.com"), website="https://webflow.com"),
    Signature("Ghost", ("CMS", "Blogs"), meta=r"Ghost ?([\d.]+)?", implies=("Node.js",),
              website="https://ghost.org"),
    Signature("Drupal", ("CMS",), headers={"x-drupal-cache": "", "x-generator": r"Drupal ?(\d+)?"},
              meta=r"Drupal ?(\d+)?", implies=("PHP",), website="https://www.drupal.org"),
    Signature("Joomla", ("CMS",), meta=r"Joomla!? ?([\d.]+)?", implies=("PHP",),
              website="https://www.joomla.org"),
    # JavaScript frameworks
    Signature("React", ("JavaScript frameworks",),
              scripts=(r"react(?:-dom)?(?:\.production)?(?:\.min)?\.js",),
              html=(r"data-reactroot", r"data-reactid"), website="https://react.dev"),
    Signature("Next.js", ("Web frameworks", "JavaScript frameworks"),
              headers={"x-powered-by": r"Next\.js ?([\d.]+)?"},
              html=(r"__NEXT_DATA__", r"/_next/static/"), implies=("React", "Node.js"),
              website="https://nextjs.org"),
    Signature("Vue.js", ("JavaScript frameworks",),
              scripts=(r"vue(?:\.runtime)?(?:\.global)?(?:\.min)?\.js",),
              html=(r"data-v-[0-9a-f]{8}", r"data-server-rendered=\"true\""), website="https://vuejs.org"),
    Signature("Nuxt.js", ("Web frameworks", "JavaScript frameworks"),
              html=(r"window\.__NUXT__", r"/_nuxt/"), implies=("Vue.js", "Node.js"),
              website="https://nuxt.com"),
    Signature("Angular", ("JavaScript frameworks",),
              html=(r"ng-version=\"([\d.]+)\"",), website="https://angular.io"),
    Signature("AngularJS", ("JavaScript frameworks",), scripts=(r"angular(?:\.min)?\.js",),
              html=(r"\bng-app=",), website="https://angularjs.org"),
    Signature("Svelte", ("JavaScript frameworks",), html=(r"class=\"[^\"]*svelte-[a-z0-9]{5,}",),
              website="https://svelte.dev"),
    Signature("Gatsby", ("Static site generator",), meta=r"Gatsby ?([\d.]+)?",
              html=(r"id=\"___gatsby\"",), implies=("React",), website="https://www.gatsbyjs.com"),
    Signature("jQuery", ("JavaScript libraries",),
              scripts=(r"jquery[.-]?([\d.]+\d)?(?:\.slim)?(?:\.min)?\.js",), website="https://jquery.com"),
    Signature("Bootstrap", ("UI frameworks",), scripts=(r"bootstrap(?:\.bundle)?(?:\.min)?\.js",),
              html=(r"bootstrap(?:\.min)?\.css",), website="https://getbootstrap.com"),
    Signature("Tailwind CSS", ("UI frameworks",), html=(r"tailwindcss", r"cdn\.tailwindcss\.com"),
              website="https://tailwindcss.com"),
    # Backends and languages
    Signature("Express", ("Web frameworks",), headers={"x-powered-by": r"^Express$"},
              implies=("Node.js",), website="https://expressjs.com"),
    Signature("PHP", ("Programming languages",), headers={"x-powered-by": r"PHP/?([\d.]+)?"},
              cookies=(r"^PHPSESSID$",), website="https://www.php.net"),
    Signature("Laravel", ("Web frameworks",), cookies=(r"^laravel_session$",), implies=("PHP",),
              website="https://laravel.com"),
    Signature("Django", ("Web frameworks",), html=(r"csrfmiddlewaretoken",), cookies=(r"^django_language$",),
              implies=("Python",), website="https://www.djangoproject.com"),
    Signature("Ruby on Rails", ("Web frameworks",), headers={"x-powered-by": r"Phusion Passenger"},
              html=(r"<meta name=\"csrf-param\" content=\"authenticity_token\"",),
              implies=("Ruby",), website="https://rubyonrails.org"),
    Signature("ASP.NET", ("Web frameworks",),
              headers={"x-aspnet-version": r"([\d.]+)", "x-powered-by": r"^ASP\.NET"},
              cookies=(r"^ASP\.NET_SessionId$",), html=(r"__VIEWSTATE",), website="https://dotnet.microsoft.com"),
    Signature("Java", ("Programming languages",), cookies=(r"^JSESSIONID$",), website="https://www.java.com"),
    # Servers, CDNs, hosting
    Signature("Nginx", ("Web servers",), headers={"server": r"nginx(?:/([\d.]+))?"},
              website="https://nginx.org"),
    Signature("Apache HTTP Server", ("Web servers",), headers={"server": r"Apache(?:/([\d.]+))?"},
              website="https://httpd.apache.org"),
    Signature("Cloudflare", ("CDN",), headers={"cf-ray": "", "server": r"^cloudflare$"},
              website="https://www.cloudflare.com"),
    Signature("AWS CloudFront", ("CDN",), headers={"x-amz-cf-id": "", "via": r"CloudFront"},
              website="https://aws.amazon.com/cloudfront/"),
    Signature("AWS S3", ("CDN",), headers={"server": r"^AmazonS3$", "x-amz-request-id": ""},
              website="https://aws.amazon.com/s3/"),
    Signature("Google Cloud", ("PaaS",), headers={"via": r"google", "x-goog-generation": ""},
              html=(r"storage\.googleapis\.com",), website="https://cloud.google.com"),
    Signature("Azure", ("PaaS",), headers={"x-azure-ref": "", "x-ms-request-id": ""},
              website="https://azure.microsoft.com"),
    Signature("Vercel", ("PaaS",), headers={"x-vercel-id": "", "server": r"^Vercel$"},
              website="https://vercel.com"),
    Signature("Netlify", ("PaaS",), headers={"x-nf-request-id": "", "server": r"^Netlify$"},
              website="https://www.netlify.com"),
    Signature("Heroku", ("PaaS",), headers={"via": r"vegur"}, website="https://www.heroku.com"),
    Signature("Envoy", ("Reverse proxies",), headers={"server": r"^envoy$", "x-envoy-upstream-service-time": ""},
              website="https://www.envoyproxy.io"),
    # Third-party services
    Signature("Stripe", ("Payment processors",), scripts=(r"js\.stripe\.com",), website="https://stripe.com"),
    Signature("PayPal", ("Payment processors",), scripts=(r"paypal\.com/sdk/js", r"paypalobjects\.com"),
              website="https://www.paypal.com"),
    Signature("Firebase", ("Databases", "PaaS"), scripts=(r"firebase(?:app)?(?:-[a-z]+)?(?:\.min)?\.js",),
              html=(r"\.firebaseapp\.com", r"firebaseio\.com"), website="https://firebase.google.com"),
    Signature("Supabase", ("Databases", "PaaS"), html=(r"\.supabase\.co",), website="https://supabase.com"),
    Signature("Auth0", ("Authentication",), scripts=(r"cdn\.auth0\.com",), html=(r"\.auth0\.com",),
              website="https://auth0.com"),
    Signature("Google Analytics", ("Analytics",),
              scripts=(r"google-analytics\.com/(?:ga|analytics)\.js", r"googletagmanager\.com/gtag/js"),
              website="https://marketingplatform.google.com/about/analytics/"),
    Signature("Google Tag Manager", ("Tag managers",), scripts=(r"googletagmanager\.com/gtm\.js",),
              website="https://tagmanager.google.com"),
    Signature("Hotjar", ("Analytics",), scripts=(r"static\.hotjar\.com",), website="https://www.hotjar.com"),
    Signature("Segment", ("Analytics",), scripts=(r"cdn\.segment\.com",), website="https://segment.com"),
    Signature("Mixpanel", ("Analytics",), scripts=(r"cdn\.mxpnl\.com", r"mixpanel"), website="https://mixpanel.com"),
    Signature("Intercom", ("Live chat",), scripts=(r"widget\.intercom\.io", r"js\.intercomcdn\.com"),
              website="https://www.intercom.com"),
    Signature("HubSpot", ("Marketing automation",), scripts=(r"js\.hs-scripts\.com", r"js\.hsforms\.net"),
              website="https://www.hubspot.com"),
    Signature("SendGrid", ("Email",), html=(r"sendgrid\.net",), website="https://sendgrid.com"),
    Signature("Mailchimp", ("Email",), scripts=(r"chimpstatic\.com",), html=(r"list-manage\.com",),
              website="https://mailchimp.com"),
    Signature("Google Fonts", ("Font scripts",), html=(r"fonts\.googleapis\.com",), website="https://fonts.google.com"),
)

_SIGNATURES_BY_NAME = {s.name: s for s in SIGNATURES}

# implied technologies that have no signature of their own
_IMPLIED_CATEGORIES = {"MySQL": "Databases", "Python": "Programming languages", "Ruby": "Programming languages"}


def _search(pattern: str, value: str) -> tuple[bool, str | None]:
    """Match *pattern* against *value*; an empty pattern only asks for presence."""
    if not pattern:
        return True, None
    m = re.search(pattern, value, re.IGNORECASE)
    if not m:
        return False, None
    version = next((g for g in m.groups() if g), None) if m.groups() else None
    return True, version


def _page_parts(page: FetchedPage) -> tuple[list[str], list[str]]:
    """Return (meta generator values, script src values) of the page."""
    try:
        tree = lxml_html.fromstring(page.html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return [], []
    generators = [str(v) for v in tree.xpath("//meta[translate(@name, 'GENRATO', 'genrato')='generator']/@content")]
    scripts = [str(v) for v in tree.xpath("//script/@src")]
    return generators, scripts


def _match(sig: Signature, page: FetchedPage, generators: list[str], scripts: list[str]) -> tuple[bool, str | None]:
    for header, pattern in sig.headers.items():
        value = page.headers.get(header)
        if value is not None:
            ok, version = _search(pattern, value)
            if ok:
                return True, version
    for pattern in sig.cookies:
        if any(re.search(pattern, name) for name in page.cookies):
            return True, None
    if sig.meta:
        for gen in generators:
            ok, version = _search(sig.meta, gen)
            if ok:
                return True, version
    for pattern in sig.scripts:
        for src in scripts:
            ok, version = _search(pattern, src)
            if ok:
                return True, version
    for pattern in sig.html:
        ok, version = _search(pattern, page.html)
        if ok:
            return True, version
    return False, None


def detect_from_page(page: FetchedPage) -> list[DetectedTechnology]:
    """Run every signature against *page*; implied technologies are added after."""
    generators, scripts = _page_parts(page)
    found: dict[str, DetectedTechnology] = {}
    for sig in SIGNATURES:
        ok, version = _match(sig, page, generators, scripts)
        if ok:
            found[sig.name] = DetectedTechnology(
                name=sig.name, categories=list(sig.categories), confidence=100,
                version=version, website=sig.website,
            )
    pending = [name for tech in list(found) for name in _SIGNATURES_BY_NAME[tech].implies]
    while pending:
        name = pending.pop()
        if name in found:
            continue
        sig = _SIGNATURES_BY_NAME.get(name)
        found[name] = DetectedTechnology(
            name=name,
            categories=list(sig.categories) if sig else [_IMPLIED_CATEGORIES.get(name, "Programming languages")],
            confidence=50,
            website=sig.website if sig else None,
        )
        if sig:
            pending.extend(sig.implies)
    return list(found.values())


class TechDetectionService:
    """Detect technologies for a URL with one retry and an overall timeout."""

    def __init__(
        self,
        timeout: float | None = None,
        max_retries: int = 1,
        backoff: float = 1.0,
        fetch: Callable[[str], Awaitable[FetchedPage]] | None = None,
    ):
        self.timeout = timeout or get_settings().request_timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self._fetch = fetch or fetch_page

    async def _run(self, url: str) -> list[DetectedTechnology]:
        page = await self._fetch(url)
        return detect_from_page(page)

    async def detect_technologies(
        self, url: str, page: FetchedPage | None = None,
    ) -> TechDetectionResult | None:
        """Return a detection result, or None when detection fails."""
        start = time.monotonic()
        try:
            url = sanitize_url(url)
        except ValueError as exc:
            log.warning("Tech detection skipped for %r: %s", url, exc)
            return None

        if page is not None:
            techs = detect_from_page(page)
            log.info("Detected %d technologies on %s (prefetched)", len(techs), url)
            return TechDetectionResult(
                technologies=techs, content_type=page.content_type,
                detected_at=utcnow_iso(), success=True,
            )

        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                techs = await asyncio.wait_for(self._run(url), timeout=self.timeout)
            except NotHtmlError as exc:
                last_error = exc
                break
            except Exception as exc:
                last_error = exc
                if attempt == self.max_retries:
                    break
                log.warning("Tech detection retry %d for %s: %s", attempt + 1, url, exc)
                await asyncio.sleep(self.backoff * (attempt + 1))
                continue
            duration = time.monotonic() - start
            level = logging.WARNING if duration > 10 else logging.INFO
            log.log(level, "Detected %d technologies on %s in %.1fs", len(techs), url, duration)
            return TechDetectionResult(
                technologies=techs, content_type="text/html",
                detected_at=utcnow_iso(), success=True,
            )

        log.error("Tech detection failed for %s after %.1fs: %s",
                  url, time.monotonic() - start, last_error or "unknown error")
        return None


def detection_enabled() -> bool:
    return get_settings().enable_tech_detection

"""Technical SEO collector for a client's public website."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from ..orchestrator.exceptions import CollectionError
from ..orchestrator.models import AuditType
from .base import CollectionRequest, CollectionResult, Collector, gather_sub_fetches


logger = logging.getLogger(__name__)

USER_AGENT = "AsymAudit/1.0"
SITEMAP_PATHS = ("/sitemap_index.xml", "/sitemap.xml", "/wp-sitemap.xml")


class TechnicalSEOCollector(Collector):
    """Fetches the homepage, robots.txt, sitemap, redirects and headers.

    The five sub-fetches run concurrently; a failing sub-fetch leaves its
    section at a default value and is listed under ``unavailable`` in the
    raw data instead of failing the collection.
    """

    audit_type = AuditType.SEO_TECHNICAL

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def collect(self, request: CollectionRequest) -> CollectionResult:
        website_url = request.client.website_url
        if not website_url:
            raise CollectionError(f"Client {request.client_id} has no website URL")
        site_url = website_url.rstrip("/")
        logger.info(
            "Starting technical SEO collection",
            extra={"client_id": request.client_id, "run_id": request.run_id, "site_url": site_url},
        )

        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        ) as client:
            results = await gather_sub_fetches(
                {
                    "homepage": self._analyze_homepage(client, site_url),
                    "robots_txt": self._check_robots_txt(client, site_url),
                    "sitemap": self._check_sitemap(client, site_url),
                    "redirect_chain": self._check_redirect_chain(client, site_url),
                    "headers": self._check_headers(client, site_url),
                }
            )

        homepage = results["homepage"].value_or({})
        robots = results["robots_txt"].value_or({"found": False})
        sitemap = results["sitemap"].value_or({"found": False})
        redirects = results["redirect_chain"].value_or({})
        raw_data: Dict[str, Any] = {
            "homepage": homepage,
            "robots_txt": robots,
            "sitemap": sitemap,
            "redirect_chain": redirects,
            "headers": results["headers"].value_or({}),
            "site_url": site_url,
            "audit_timestamp": datetime.now(timezone.utc).isoformat(),
            "unavailable": {
                name: result.reason for name, result in results.items() if not result.ok
            },
        }
        if len(raw_data["unavailable"]) == len(results):
            raise CollectionError(f"All technical SEO checks failed for {site_url}")

        metrics = {
            "has_robots_txt": 1 if robots.get("found") else 0,
            "has_sitemap": 1 if sitemap.get("found") else 0,
            "has_ssl": 1 if site_url.startswith("https") else 0,
            "has_meta_description": 1 if homepage.get("has_meta_description") else 0,
            "has_canonical": 1 if homepage.get("has_canonical") else 0,
            "has_og_tags": 1 if homepage.get("has_og_tags") else 0,
            "h1_count": homepage.get("h1_count", 0),
            "image_alt_coverage": homepage.get("image_alt_coverage", 0),
            "redirect_correct": 1 if redirects.get("all_correct") else 0,
        }
        return CollectionResult(raw_data=raw_data, metrics=metrics)

    async def _analyze_homepage(self, client: httpx.AsyncClient, site_url: str) -> Dict[str, Any]:
        response = await client.get(site_url)
        response.raise_for_status()
        soup = BeautifulSoup(response.text, "html.parser")

        def _attr(tag_name: str, attr: str, **attrs: Any) -> Optional[str]:
            tag = soup.find(tag_name, attrs=attrs)
            value = tag.get(attr) if tag else None
            return value.strip() if isinstance(value, str) and value.strip() else None

        images = soup.find_all("img")
        images_with_alt = [img for img in images if (img.get("alt") or "").strip()]
        host = urlparse(site_url).netloc
        links = [a.get("href") or "" for a in soup.find_all("a")]
        internal = [
            href for href in links if href.startswith("/") or urlparse(href).netloc == host
        ]
        external = [
            href for href in links if href.startswith("http") and urlparse(href).netloc != host
        ]
        h1_tags = soup.find_all("h1")
        html_tag = soup.find("html")
        lang = html_tag.get("lang") if html_tag else None

        meta_description = _attr("meta", "content", name="description")
        canonical = _attr("link", "href", rel="canonical")
        return {
            "title": soup.title.get_text(strip=True) if soup.title else "",
            "has_meta_description": meta_description is not None,
            "meta_description": meta_description,
            "has_canonical": canonical is not None,
            "canonical": canonical,
            "has_og_tags": _attr("meta", "content", property="og:title") is not None,
            "has_twitter_card": _attr("meta", "content", name="twitter:card") is not None,
            "h1_count": len(h1_tags),
            "h1_text": h1_tags[0].get_text(strip=True) if h1_tags else "",
            "h2_count": len(soup.find_all("h2")),
            "total_images": len(images),
            "images_with_alt": len(images_with_alt),
            "image_alt_coverage": (
                round(len(images_with_alt) / len(images) * 100) if images else 100
            ),
            "has_structured_data": bool(soup.find("script", attrs={"type": "application/ld+json"})),
            "has_viewport": _attr("meta", "content", name="viewport") is not None,
            "has_lang": bool(lang),
            "lang": lang or None,
            "internal_links": len(internal),
            "external_links": len(external),
        }

    async def _check_robots_txt(self, client: httpx.AsyncClient, site_url: str) -> Dict[str, Any]:
        response = await client.get(f"{site_url}/robots.txt")
        if response.status_code != 200:
            return {"found": False}
        body = response.text
        return {
            "found": True,
            "has_sitemap": "sitemap" in body.lower(),
            "has_disallow": "Disallow" in body,
            "size": len(body),
        }

    async def _check_sitemap(self, client: httpx.AsyncClient, site_url: str) -> Dict[str, Any]:
        for path in SITEMAP_PATHS:
            url = f"{site_url}{path}"
            try:
                response = await client.get(url)
            except httpx.HTTPError as exc:
                logger.debug("Sitemap candidate unreachable", extra={"url": url, "error": str(exc)})
                continue
            if response.status_code == 200 and "<?xml" in response.text:
                return {"found": True, "url": url}
        return {"found": False}

    async def _check_redirect_chain(
        self, client: httpx.AsyncClient, site_url: str
    ) -> Dict[str, Any]:
        domain = urlparse(site_url).hostname or ""
        bare = domain[4:] if domain.startswith("www.") else domain
        variants = [
            f"http://{bare}",
            f"https://{bare}",
            f"http://www.{bare}",
            f"https://www.{bare}",
        ]
        results: List[Dict[str, Any]] = []
        for url in variants:
            try:
                response = await client.get(url, follow_redirects=False)
            except httpx.HTTPError:
                results.append({"url": url, "redirects_to": None, "status": 0})
                continue
            results.append(
                {
                    "url": url,
                    "redirects_to": response.headers.get("location"),
                    "status": response.status_code,
                }
            )
        all_correct = all(r["status"] == 301 or r["url"] == site_url for r in results)
        return {"variants": results, "all_correct": all_correct}

    async def _check_headers(self, client: httpx.AsyncClient, site_url: str) -> Dict[str, Any]:
        response = await client.head(site_url)
        headers = response.headers
        return {
            "server": headers.get("server"),
            "x_powered_by": headers.get("x-powered-by"),
            "cache_control": headers.get("cache-control"),
            "content_encoding": headers.get("content-encoding"),
            "x_content_type_options": headers.get("x-content-type-options"),
            "x_frame_options": headers.get("x-frame-options"),
            "hsts": headers.get("strict-transport-security"),
        }

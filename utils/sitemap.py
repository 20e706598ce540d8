import logging
import re
from typing import List
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from utils.http import fetch_with_timeout

logger = logging.getLogger(__name__)

MAX_SITEMAP_URLS = 50
NON_PAGE_RE = re.compile(r"\.(xml|jpg|png|pdf|css|js)$", re.IGNORECASE)
PAGE_SITEMAP_MARKER = "page-sitemap"


def sitemap_url_for(site_root_url: str) -> str:
    if site_root_url.endswith("/"):
        return f"{site_root_url}sitemap.xml"
    return f"{site_root_url}/sitemap.xml"


def is_page_url(url: str) -> bool:
    """False for assets and nested sitemaps; the query string is ignored."""
    return not NON_PAGE_RE.search(urlparse(url).path)


def parse_sitemap(xml: str, max_urls: int = MAX_SITEMAP_URLS) -> List[str]:
    """Extract page locators from a sitemap or sitemap index document.

    For an index, the first child sitemap whose <loc> mentions
    ``page-sitemap`` is returned alone so the caller can fetch it.
    """
    if not xml or not xml.strip():
        return []
    doc = BeautifulSoup(xml, "xml")

    for sitemap in doc.find_all("sitemap"):
        loc = sitemap.find("loc")
        text = loc.get_text(strip=True) if loc else ""
        if text and PAGE_SITEMAP_MARKER in text:
            return [text]

    urls = [loc.get_text(strip=True) for loc in doc.find_all("loc")]
    urls = [url for url in urls if url and is_page_url(url)]
    return urls[:max_urls]


async def resolve_urls(client: httpx.AsyncClient, site_root_url: str, timeout: float = 10.0,
                       max_urls: int = MAX_SITEMAP_URLS) -> List[str]:
    """Candidate page URLs for a site, falling back to the homepage alone."""
    sitemap_url = sitemap_url_for(site_root_url)
    try:
        response = await fetch_with_timeout(client, sitemap_url, timeout)
        if not response.is_success:
            logger.warning(f"Sitemap not found at {sitemap_url} ({response.status_code}), falling back to {site_root_url}")
            return [site_root_url]
        urls = parse_sitemap(response.text, max_urls)
    except Exception as e:
        logger.warning(f"Sitemap error for {sitemap_url}: {e}")
        return [site_root_url]

    if not urls:
        logger.warning(f"Sitemap at {sitemap_url} listed no pages, falling back to {site_root_url}")
        return [site_root_url]
    logger.info(f"Sitemap found at {sitemap_url}: {len(urls)} URLs")
    return urls


def is_sitemap_locator(urls: List[str]) -> bool:
    return len(urls) == 1 and urlparse(urls[0]).path.lower().endswith(".xml")


async def discover_pages(client: httpx.AsyncClient, site_root_url: str, timeout: float = 10.0,
                         max_urls: int = MAX_SITEMAP_URLS) -> List[str]:
    """resolve_urls plus the single hop through a sitemap index."""
    urls = await resolve_urls(client, site_root_url, timeout, max_urls)
    if not is_sitemap_locator(urls):
        return urls

    child_url = urls[0]
    try:
        response = await fetch_with_timeout(client, child_url, timeout)
        if response.is_success:
            pages = [url for url in parse_sitemap(response.text, max_urls) if is_page_url(url)]
            if pages:
                logger.info(f"Child sitemap {child_url}: {len(pages)} URLs")
                return pages[:max_urls]
        logger.warning(f"Child sitemap {child_url} unusable, falling back to {site_root_url}")
    except Exception as e:
        logger.warning(f"Child sitemap error for {child_url}: {e}")
    return [site_root_url]

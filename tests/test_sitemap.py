import asyncio

import httpx

from utils.sitemap import discover_pages, parse_sitemap, resolve_urls, sitemap_url_for
from conftest import FakeSite, SITE, sitemap_index_xml, sitemap_xml


def run_resolve(site, fn=resolve_urls, **kwargs):
    async def scenario():
        async with httpx.AsyncClient(transport=site.transport) as client:
            return await fn(client, SITE, **kwargs)
    return asyncio.run(scenario())


def test_sitemap_url_for():
    assert sitemap_url_for("https://example.com") == "https://example.com/sitemap.xml"
    assert sitemap_url_for("https://example.com/") == "https://example.com/sitemap.xml"


def test_index_returns_page_sitemap_locator_only():
    site = FakeSite({
        f"{SITE}/sitemap.xml": (200, sitemap_index_xml([
            f"{SITE}/post-sitemap.xml",
            f"{SITE}/page-sitemap.xml",
        ])),
    })
    assert run_resolve(site) == [f"{SITE}/page-sitemap.xml"]
    # Not recursively expanded
    assert len(site.requests) == 1


def test_timeout_falls_back_to_root():
    site = FakeSite({f"{SITE}/sitemap.xml": httpx.ReadTimeout("timed out")})
    assert run_resolve(site) == [SITE]


def test_not_found_falls_back_to_root():
    assert run_resolve(FakeSite()) == [SITE]


def test_empty_sitemap_falls_back_to_root():
    site = FakeSite({f"{SITE}/sitemap.xml": (200, sitemap_xml([]))})
    assert run_resolve(site) == [SITE]


def test_filters_assets_and_caps_results():
    urls = [f"{SITE}/page-{i}" for i in range(80)]
    assets = [f"{SITE}/a.JPG", f"{SITE}/b.pdf", f"{SITE}/c.css", f"{SITE}/d.js", f"{SITE}/e.png"]
    site = FakeSite({f"{SITE}/sitemap.xml": (200, sitemap_xml(assets + urls))})

    result = run_resolve(site)
    assert len(result) == 50
    assert result == urls[:50]


def test_asset_filter_ignores_query_string():
    xml = sitemap_xml([
        f"{SITE}/doc.pdf?v=1",
        f"{SITE}/style.css?ver=6.4",
        f"{SITE}/search?format=pdf",
        f"{SITE}/about",
    ])
    assert parse_sitemap(xml) == [f"{SITE}/search?format=pdf", f"{SITE}/about"]


def test_parse_sitemap_respects_custom_cap():
    xml = sitemap_xml([f"{SITE}/{i}" for i in range(10)])
    assert parse_sitemap(xml, max_urls=3) == [f"{SITE}/0", f"{SITE}/1", f"{SITE}/2"]
    assert parse_sitemap("") == []


def test_discover_pages_follows_one_hop():
    site = FakeSite({
        f"{SITE}/sitemap.xml": (200, sitemap_index_xml([f"{SITE}/page-sitemap.xml"])),
        f"{SITE}/page-sitemap.xml": (200, sitemap_xml([f"{SITE}/", f"{SITE}/about"])),
    })
    assert run_resolve(site, fn=discover_pages) == [f"{SITE}/", f"{SITE}/about"]


def test_discover_pages_broken_child_falls_back():
    site = FakeSite({
        f"{SITE}/sitemap.xml": (200, sitemap_index_xml([f"{SITE}/page-sitemap.xml"])),
    })
    assert run_resolve(site, fn=discover_pages) == [SITE]

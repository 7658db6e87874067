"""Tests for LinkDescriber — oEmbed, GitHub API, HTML metadata, caching."""

import httpx
import pytest

from lettacord.media.links import LinkDescriber, extract_urls, parse_html_metadata


# ── Helpers ──────────────────────────────────────────────────────────────


PAGE = """
<html><head>
<title>Short</title>
<meta property="og:title" content="A much longer page title">
<meta property="og:site_name" content="Example Site">
<meta name="description" content="Tom &amp; Jerry">
</head></html>
"""


def route(request: httpx.Request) -> httpx.Response:
    url = request.url
    if url.host == "www.youtube.com" and url.path == "/oembed":
        return httpx.Response(200, json={"title": "Never Gonna", "author_name": "Rick"})
    if url.host == "api.github.com":
        return httpx.Response(200, json={
            "full_name": "octo/repo",
            "description": "A repo",
            "stargazers_count": 42,
            "language": "Python",
        })
    if url.host == "example.com":
        return httpx.Response(200, text=PAGE, headers={"content-type": "text/html; charset=utf-8"})
    if url.host == "files.test":
        return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})
    return httpx.Response(503)


class Counting:
    def __init__(self):
        self.count = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.count += 1
        return route(request)


# ── Tests ────────────────────────────────────────────────────────────────


class TestExtract:
    def test_finds_urls(self):
        text = "see https://example.com/a?b=1 and http://www.test.org ok"
        assert extract_urls(text) == ["https://example.com/a?b=1", "http://www.test.org"]

    def test_no_urls(self):
        assert extract_urls("nothing here") == []


class TestParseHtml:
    def test_prefers_longer_og_title_and_decodes_entities(self):
        meta = parse_html_metadata(PAGE, "https://example.com", "example.com")
        assert meta.title == "A much longer page title"
        assert meta.site_name == "Example Site"
        assert meta.description == "Tom & Jerry"

    def test_description_capped(self):
        page = f'<meta name="description" content="{"d" * 300}">'
        meta = parse_html_metadata(page, "https://x.test", "x.test")
        assert len(meta.description) == 200
        assert meta.description.endswith("...")
        assert meta.title == "x.test"


class TestDescribe:
    @pytest.mark.asyncio
    async def test_no_links(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(route)) as http:
            assert await LinkDescriber(http)("plain text") == ""

    @pytest.mark.asyncio
    async def test_html_page(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(route)) as http:
            out = await LinkDescriber(http)("look https://example.com/post")
        assert out == ' [Links: Example Site: "A much longer page title": Tom & Jerry]'

    @pytest.mark.asyncio
    async def test_youtube(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(route)) as http:
            out = await LinkDescriber(http)("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
        assert out == ' [Links: YouTube: "Never Gonna": by Rick]'

    @pytest.mark.asyncio
    async def test_github_repo(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(route)) as http:
            out = await LinkDescriber(http)("https://github.com/octo/repo")
        assert out == ' [Links: GitHub: "octo/repo": A repo • ⭐ 42 • Python]'

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_domain(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(route)) as http:
            out = await LinkDescriber(http)("https://down.test/page and https://files.test/doc.pdf")
        assert out == " [Links: down.test | files.test]"

    @pytest.mark.asyncio
    async def test_cached(self):
        handler = Counting()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            describer = LinkDescriber(http)
            await describer("https://example.com/post")
            await describer("https://example.com/post again")
        assert handler.count == 1

    @pytest.mark.asyncio
    async def test_expired_cache_refetches(self):
        handler = Counting()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            describer = LinkDescriber(http, ttl=-1)
            await describer("https://example.com/post")
            await describer("https://example.com/post")
        assert handler.count == 2

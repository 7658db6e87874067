"""Link previews: summarize URLs found in a message.

YouTube goes through oEmbed, GitHub repositories through the public API,
everything else through the page's <title> and OpenGraph/Twitter meta tags.
Every fetch failure falls back to the bare domain.
"""

from __future__ import annotations

import html
import re
import time as _time
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from loguru import logger

URL_PATTERN = re.compile(
    r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b[-a-zA-Z0-9()@:%_+.~#?&/=]*"
)
_TITLE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_META = re.compile(r"<meta[^>]+>", re.IGNORECASE)
_META_PAIR = re.compile(
    r"""(?:property|name)=["']([^"']+)["'][^>]*content=["']([^"']*)["']""",
    re.IGNORECASE,
)
_YOUTUBE_ID = re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/)([^&\n?#]+)")
_GITHUB_REPO = re.compile(r"github\.com/([^/]+)/([^/?#]+)")

DESCRIPTION_LIMIT = 200
CACHE_TTL = 24 * 60 * 60

_BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; LinkPreview/1.0)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


@dataclass
class LinkMetadata:
    url: str
    domain: str
    title: str | None = None
    description: str | None = None
    site_name: str | None = None

    def format(self) -> str:
        parts = [self.site_name or self.domain]
        if self.title and self.title != self.domain:
            parts.append(f'"{self.title}"')
        if self.description:
            parts.append(self.description)
        return ": ".join(parts)


def extract_urls(text: str) -> list[str]:
    return URL_PATTERN.findall(text or "")


def parse_html_metadata(page: str, url: str, domain: str) -> LinkMetadata:
    """Pull title / description / site name out of raw HTML."""
    meta = LinkMetadata(url=url, domain=domain)

    title_match = _TITLE.search(page)
    if title_match:
        meta.title = html.unescape(title_match.group(1).strip())

    for tag in _META.findall(page):
        pair = _META_PAIR.search(tag)
        if not pair:
            continue
        prop = pair.group(1).lower()
        content = html.unescape(pair.group(2).strip())
        if not content:
            continue
        if prop in ("og:title", "twitter:title"):
            if not meta.title or len(content) > len(meta.title):
                meta.title = content
        elif prop in ("og:description", "twitter:description", "description"):
            if not meta.description or len(content) > len(meta.description):
                meta.description = content
        elif prop in ("og:site_name", "twitter:site"):
            meta.site_name = content.replace("@", "")

    if not meta.title:
        meta.title = domain
    if meta.description and len(meta.description) > DESCRIPTION_LIMIT:
        meta.description = meta.description[: DESCRIPTION_LIMIT - 3] + "..."
    return meta


class LinkDescriber:
    """Callable describer: ``await describer(text) -> str``."""

    def __init__(self, http: httpx.AsyncClient, ttl: float = CACHE_TTL):
        self._http = http
        self._ttl = ttl
        self._cache: dict[str, tuple[LinkMetadata, float]] = {}

    async def __call__(self, text: str) -> str:
        urls = extract_urls(text)
        if not urls:
            return ""
        descriptions = [(await self.describe(url)).format() for url in urls]
        return f" [Links: {' | '.join(descriptions)}]"

    async def describe(self, url: str) -> LinkMetadata:
        cached = self._cache.get(url)
        if cached and _time.monotonic() - cached[1] <= self._ttl:
            return cached[0]

        domain = (urlparse(url).hostname or url).lower()
        if "youtube.com" in domain or "youtu.be" in domain:
            meta = await self._youtube(url, domain)
        elif "github.com" in domain:
            meta = await self._github(url)
        else:
            meta = await self._page(url, domain)

        self._cache[url] = (meta, _time.monotonic())
        return meta

    async def _youtube(self, url: str, domain: str) -> LinkMetadata:
        try:
            if not _YOUTUBE_ID.search(url):
                raise ValueError("Invalid YouTube URL")
            response = await self._http.get(
                "https://www.youtube.com/oembed", params={"url": url, "format": "json"},
            )
            response.raise_for_status()
            data = response.json()
            return LinkMetadata(
                url=url,
                domain="youtube.com",
                title=data.get("title") or "Unknown Title",
                description=f"by {data.get('author_name') or 'Unknown Channel'}",
                site_name="YouTube",
            )
        except Exception as e:
            logger.error(f"Failed to get YouTube info: {e}")
            return LinkMetadata(url=url, domain=domain, title="YouTube video")

    async def _github(self, url: str) -> LinkMetadata:
        try:
            match = _GITHUB_REPO.search(url)
            if not match:
                raise ValueError("Invalid GitHub URL")
            owner, repo = match.groups()
            response = await self._http.get(f"https://api.github.com/repos/{owner}/{repo}")
            response.raise_for_status()
            data = response.json()
            return LinkMetadata(
                url=url,
                domain="github.com",
                title=data.get("full_name"),
                description=(
                    f"{data.get('description') or 'No description'} • "
                    f"⭐ {data.get('stargazers_count', 0)} • "
                    f"{data.get('language') or 'Multiple languages'}"
                ),
                site_name="GitHub",
            )
        except Exception as e:
            logger.error(f"Failed to get GitHub info: {e}")
            return await self._page(url, "github.com")

    async def _page(self, url: str, domain: str) -> LinkMetadata:
        try:
            response = await self._http.get(url, headers=_BROWSER_HEADERS, follow_redirects=True)
            response.raise_for_status()
            if "text/html" not in response.headers.get("content-type", ""):
                raise ValueError("Not an HTML page")
            return parse_html_metadata(response.text, url, domain)
        except Exception as e:
            logger.error(f"Failed to fetch metadata for {url}: {e}")
            return LinkMetadata(url=url, domain=domain, title=domain)

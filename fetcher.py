#!/usr/bin/env python3
"""
Actor listing page fetcher.

Fetches one page of an actor's works listing with aiohttp and parses the
entries with BeautifulSoup. Failures are raised as NetworkError,
FetchTimeoutError or ParseError; retries are left to the next scheduled run.
"""

from asyncio import TimeoutError, get_running_loop
from functools import partial
from typing import List, Optional, Sequence
from urllib.parse import quote, urljoin, urlparse
import re

from aiohttp import ClientSession, ClientError, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import NetworkError, FetchTimeoutError, ParseError
from models import RawItem
from telemetry import trace_span
from utils import parse_release_date

# Module-specific logger
logger = get_logger("fetcher")

HTTP_OK = 200

ITEM_SELECTOR = ".movie-list .item, .grid-item .item"
LISTING_MARKERS = ".movie-list, .grid-item, .empty-message"
_VIDEO_ID_RE = re.compile(r"/v/([^/?#]+)")
_CODE_RE = re.compile(r"^([A-Z]+-\d+)")


def build_actor_url(base_url: str, actor_id: str, category_filters: Sequence[str] = ()) -> str:
    """Build the first listing page URL for an actor.

    Category filters are passed as a comma separated `t` parameter, e.g.
    `/actors/x7Ab?t=s,d&sort_type=0`.
    """
    url = f"{base_url.rstrip('/')}/actors/{quote(actor_id, safe='')}"
    if category_filters:
        url += f"?t={','.join(category_filters)}&sort_type=0"
    return url


def page_url(first_page_url: str, page: int) -> str:
    """URL of listing page `page` (1-based), keeping existing query parameters."""
    if page <= 1:
        return first_page_url
    separator = "&" if "?" in first_page_url else "?"
    return f"{first_page_url}{separator}page={page}"


def parse_listing_html(html: str, page_url: str) -> List[RawItem]:
    """Parse a listing page into RawItems, in page order (newest first).

    Entries that cannot be read are skipped. A document without any listing
    container (for example a block or captcha page) raises ParseError.
    """
    soup = BeautifulSoup(html, "html.parser")
    nodes = soup.select(ITEM_SELECTOR)
    if not nodes and soup.select_one(LISTING_MARKERS) is None:
        raise ParseError(f"No works listing found at {page_url}", {"url": page_url})

    items: List[RawItem] = []
    for node in nodes:
        link = node.select_one('a[href*="/v/"]')
        href = link.get("href") if link else None
        match = _VIDEO_ID_RE.search(href or "")
        if not match:
            logger.debug(f"Skipping listing entry without a work link on {page_url}")
            continue
        video_id = match.group(1)

        title_node = node.select_one(".video-title, .title")
        title = title_node.get_text(" ", strip=True) if title_node else ""
        # The catalog code in the title is what the user's library is keyed on
        code = _CODE_RE.match(title)

        img = node.select_one("img")
        cover = (img.get("data-src") or img.get("src") or "") if img else ""

        meta = node.select_one(".meta, .video-meta")
        release_date = parse_release_date(meta.get_text(" ", strip=True) if meta else "")

        tags = [t.get_text(strip=True) for t in node.select(".tag, .genre") if t.get_text(strip=True)]

        items.append(RawItem(
            id=code.group(1) if code else video_id,
            title=title,
            release_date=release_date,
            url=urljoin(page_url, href),
            cover_image=cover,
            tags=tags,
            source_id=video_id,
        ))
    return items


class ActorPageFetcher:
    """Fetches and parses actor listing pages over HTTP."""

    def __init__(self, session: Optional[ClientSession] = None, user_agent: Optional[str] = None,
                 timeout: Optional[int] = None, proxy_url: Optional[str] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.proxy_url = proxy_url if proxy_url is not None else config.PROXY_URL

    async def __aenter__(self) -> "ActorPageFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _ensure_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={"User-Agent": self.user_agent})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @trace_span(
        "fetch_page",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch(self, url: str) -> List[RawItem]:
        """Fetch one listing page and return its entries.

        Raises:
            FetchTimeoutError: the request exceeded the HTTP timeout.
            NetworkError: connection failure or non-200 response.
            ParseError: the response is not a works listing.
        """
        session = self._ensure_session()
        request_kwargs = {
            "timeout": ClientTimeout(total=self.timeout),
            "max_redirects": config.MAX_REDIRECTS,
        }
        if self.proxy_url:
            request_kwargs["proxy"] = self.proxy_url
        try:
            async with session.get(url, **request_kwargs) as response:
                if response.status != HTTP_OK:
                    raise NetworkError(f"HTTP {response.status} fetching {url}", {"url": url, "status": response.status})
                content_type = response.headers.get("Content-Type", "")
                html = await response.text(errors="replace")
        except TimeoutError as e:
            raise FetchTimeoutError(f"Timed out after {self.timeout}s fetching {url}", {"url": url}) from e
        except ClientError as e:
            raise NetworkError(f"Network error fetching {url}: {self._format_client_error(e)}", {"url": url}) from e

        if content_type and "html" not in content_type.lower():
            raise ParseError(f"Unexpected content type '{content_type}' at {url}", {"url": url})

        loop = get_running_loop()
        items = await loop.run_in_executor(None, partial(parse_listing_html, html, url))
        logger.debug(f"Parsed {len(items)} works from {url}")
        return items

    def _format_client_error(self, error: ClientError) -> str:
        """Render aiohttp errors with the host they relate to."""
        host = getattr(getattr(error, "request_info", None), "url", None)
        host_str = urlparse(str(host)).netloc if host else ""
        detail = str(error) or error.__class__.__name__
        return f"{detail} ({host_str})" if host_str else detail

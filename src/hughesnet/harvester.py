"""Order id discovery on the portal's home page and secondary pages.

The home page embeds links to order detail pages; more orders hide behind
search pages (``SoSearch``), ``forms/`` pages and frames. Secondary pages
are crawled under the shared request budget, with bounded pagination and
a visited set so malformed "next" cycles always terminate.

Id extraction policy: the precise ``viewservice.jsp?...id=N`` pattern is
authoritative. The generic 8-digit ``id=`` pattern only runs when the
precise one finds nothing, which keeps unrelated 8-digit parameters
elsewhere on a page out of the order database.
"""

import asyncio
import html as html_lib
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urldefrag, urljoin

import httpx
from bs4 import BeautifulSoup

from src.errors import RequestLimitExceeded
from src.hughesnet.config import PortalConfig
from src.hughesnet.fetcher import PortalFetcher
from src.hughesnet.models import OrderDatabase

logger = logging.getLogger(__name__)

_PRECISE_ID = re.compile(r"viewservice\.jsp\?[^\"'\s<>]*?\bid=(\d+)", re.IGNORECASE)
_GENERIC_ID = re.compile(r"[?&]id=(\d{8})\b", re.IGNORECASE)
_NEXT_MARKERS = ("next", ">", "»")


@dataclass
class MenuLink:
    url: str
    text: str


@dataclass
class ScanOutcome:
    """Result of crawling one secondary page and its pagination."""

    start_url: str
    ids: list[str] = field(default_factory=list)
    pages: int = 0
    budget_exhausted: bool = False
    more_pages: bool = False
    error: str | None = None


@dataclass
class HarvestResult:
    """Ids found by a full harvest.

    ``truncated`` is True when some secondary page was skipped for budget
    reasons, left out by the page or pagination caps, or failed to load;
    such a result is not authoritative for pruning.
    """

    ids: set[str]
    pages_scanned: int = 0
    truncated: bool = False


def _unique(values):
    seen = set()
    out = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


def extract_ids(page_html: str) -> list[str]:
    """Order ids referenced by a page, in order of first appearance."""
    clean = html_lib.unescape(page_html)
    ids = _PRECISE_ID.findall(clean)
    if not ids:
        ids = _GENERIC_ID.findall(clean)
    return _unique(ids)


def extract_menu_links(page_html: str, base_url: str) -> list[MenuLink]:
    """Anchors pointing at ``.jsp`` pages or the search module."""
    soup = BeautifulSoup(page_html, "html.parser")
    links = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.lower().startswith("javascript"):
            continue
        if ".jsp" in href or "SoSearch" in href:
            links.append(MenuLink(url=urljoin(base_url, href), text=anchor.get_text(strip=True)))
    return links


def extract_frame_sources(page_html: str, base_url: str, frame_base_path: str = "/start/") -> list[str]:
    """``frame``/``iframe`` sources resolved against the portal's frameset directory."""
    soup = BeautifulSoup(page_html, "html.parser")
    frame_base = urljoin(base_url, frame_base_path)
    sources = []
    for frame in soup.find_all(["frame", "iframe"], src=True):
        src = frame["src"].strip()
        if src and not src.lower().startswith("javascript"):
            sources.append(urljoin(frame_base, src))
    return _unique(sources)


def extract_next_link(page_html: str, current_url: str) -> str | None:
    """First "next page" anchor on the page, resolved against ``current_url``."""
    soup = BeautifulSoup(page_html, "html.parser")
    for anchor in soup.find_all("a"):
        text = anchor.get_text().lower()
        if not any(marker in text for marker in _NEXT_MARKERS):
            continue
        href = (anchor.get("href") or "").strip()
        if not href or href.lower().startswith("javascript"):
            return None
        return urldefrag(urljoin(current_url, href)).url
    return None


def prune_missing(order_db: OrderDatabase, seen_ids: set[str]) -> list[str]:
    """Drop orders absent from a fresh harvest, keeping departure-incomplete ones.

    Returns:
        Ids that were removed.
    """
    removed = []
    for record in order_db.records():
        if record.id in seen_ids or record.departure_incomplete:
            continue
        order_db.remove(record.id)
        removed.append(record.id)
    return sorted(removed)


class Harvester:
    """Crawls portal pages for order ids under a ``SyncContext`` budget."""

    def __init__(self, fetcher: PortalFetcher, portal: PortalConfig | None = None) -> None:
        self._fetcher = fetcher
        self._portal = portal or PortalConfig()
        self._visited: set[str] = set()

    @property
    def ctx(self):
        return self._fetcher.ctx

    def harvest(self, home_html: str) -> set[str]:
        """Ids present on the home page itself."""
        return set(extract_ids(home_html))

    def secondary_targets(self, home_html: str) -> list[str]:
        """Priority menu links then frames, de-duplicated and not yet visited.

        Order detail links are not crawled here; they are fetched in the
        detail stage.
        """
        base = self._portal.base_url
        priority = [
            link.url for link in extract_menu_links(home_html, base)
            if ("SoSearch" in link.url or "forms/" in link.url)
            and not _PRECISE_ID.search(link.url)
        ]
        frames = extract_frame_sources(home_html, base, self._portal.frame_base_path)
        return [url for url in _unique(priority + frames) if url not in self._visited]

    async def scan(
        self,
        url: str,
        cookie: str,
        on_id_found: Callable[[str], None],
    ) -> ScanOutcome:
        """Crawl one secondary page and follow its pagination.

        Stops without raising when the budget is exhausted, a network error
        occurs, a page repeats, or the pagination limit is reached.
        """
        outcome = ScanOutcome(start_url=url)
        current: str | None = url
        while current and outcome.pages < self._portal.max_pagination_pages:
            if current in self._visited:
                logger.debug("Skipping already visited page %s", current)
                break
            if self._fetcher.budget.exhausted:
                outcome.budget_exhausted = True
                self.ctx.warn("Request budget exhausted; stopped scanning %s", url)
                break

            self._visited.add(current)
            try:
                response = await self._fetcher.fetch(current, headers={"Cookie": cookie})
            except RequestLimitExceeded:
                outcome.budget_exhausted = True
                self.ctx.warn("Request budget exhausted; stopped scanning %s", url)
                break
            except httpx.HTTPError as e:
                self.ctx.warn("Scan of %s failed: %s", current, e)
                outcome.error = str(e)
                break

            page_html = response.text
            for order_id in extract_ids(page_html):
                if order_id not in outcome.ids:
                    outcome.ids.append(order_id)
                    on_id_found(order_id)
            outcome.pages += 1
            current = extract_next_link(page_html, current)

        if current and outcome.pages >= self._portal.max_pagination_pages and current not in self._visited:
            outcome.more_pages = True
            self.ctx.warn("Pagination limit reached; %s has more pages", url)
        return outcome

    async def harvest_all(
        self,
        home_html: str,
        cookie: str,
        on_id_found: Callable[[str], None] | None = None,
    ) -> HarvestResult:
        """Home page ids plus those found on priority secondary pages."""
        ids = self.harvest(home_html)
        self._visited.add(self._portal.home_url)
        result = HarvestResult(ids=set(ids))

        def collect(order_id: str) -> None:
            result.ids.add(order_id)
            if on_id_found:
                on_id_found(order_id)

        if on_id_found:
            for order_id in sorted(ids):
                on_id_found(order_id)

        targets = self.secondary_targets(home_html)
        if not targets:
            return result

        budget = self._fetcher.budget
        if budget.used >= self._portal.harvest_start_ceiling:
            self.ctx.warn(
                "Skipping %d secondary pages; %d requests already used",
                len(targets), budget.used,
            )
            result.truncated = True
            return result

        cap = self._portal.max_secondary_pages
        if len(targets) > cap:
            self.ctx.warn("Scanning only %d of %d secondary pages", cap, len(targets))
            result.truncated = True
            targets = targets[:cap]

        self.ctx.info("Scanning %d secondary pages", len(targets))
        for index, target in enumerate(targets):
            if budget.used > self._portal.harvest_stop_ceiling:
                self.ctx.warn("Harvest stopped after %d requests", budget.used)
                result.truncated = True
                break
            if index and self._portal.scan_delay_seconds:
                await asyncio.sleep(self._portal.scan_delay_seconds)

            outcome = await self.scan(target, cookie, collect)
            result.pages_scanned += outcome.pages
            if outcome.budget_exhausted:
                result.truncated = True
                break
            if outcome.error or outcome.more_pages:
                result.truncated = True

        return result

"""Point-in-time view of a chat page: parsed HTML, probed props and tracked traffic."""

import logging
from dataclasses import dataclass, field

from bs4 import BeautifulSoup, Tag
from playwright.async_api import Page

from chatcapture.identifiers import MiningContext
from chatcapture.models import TrackedNetworkRecord
from chatcapture.network_tracker import NetworkActivityTracker
from chatcapture.props_probe import ProbeData, run_props_probe

logger = logging.getLogger(__name__)


@dataclass
class PageSnapshot:
    url: str
    title: str
    soup: BeautifulSoup
    probe: ProbeData = field(default_factory=ProbeData)
    records: list[TrackedNetworkRecord] = field(default_factory=list)
    ctx: MiningContext = field(default_factory=MiningContext)

    @classmethod
    def from_html(
        cls,
        html: str,
        url: str = "",
        title: str | None = None,
        records: list[TrackedNetworkRecord] | None = None,
        probe: ProbeData | None = None,
    ) -> "PageSnapshot":
        soup = BeautifulSoup(html or "", "html.parser")
        if title is None:
            title = soup.title.get_text().strip() if soup.title else ""
        records = list(records or [])
        ctx = MiningContext.from_document(soup, url, [record.url for record in records])
        return cls(url=url, title=title, soup=soup, probe=probe or ProbeData(), records=records, ctx=ctx)

    def root(self, *selectors: str) -> Tag:
        """First element matching one of ``selectors``, else ``<body>``, else the document."""
        for selector in selectors:
            node = self.soup.select_one(selector)
            if node is not None:
                return node
        return self.soup.body or self.soup

    @property
    def main(self) -> Tag:
        return self.root("main")


async def capture_snapshot(page: Page, tracker: NetworkActivityTracker | None = None) -> PageSnapshot:
    """Probe component props, then read the page HTML so the probe stamps are part of it."""
    probe = await run_props_probe(page)
    html = await page.content()
    try:
        title = await page.title()
    except Exception as e:
        logger.info("[snapshot] title unavailable: %s", e)
        title = None
    records = tracker.records_since(tracker.capture_window_start) if tracker is not None else []
    snapshot = PageSnapshot.from_html(html, page.url, title, records, probe)
    logger.info(
        "[snapshot] %s: %d chars, %d probed nodes, %d tracked requests",
        page.url, len(html), len(probe.nodes), len(records),
    )
    return snapshot

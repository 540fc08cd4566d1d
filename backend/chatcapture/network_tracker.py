"""
Network activity tracker.

Passively records every request a Playwright page issues (method, URL,
status, timing) into a capped, append-only buffer. One tracker per page,
installed once on first use and kept for the page's lifetime.

Downloads and popups are recorded too: a file tile that opens its blob in a
new tab or triggers a download never shows up as a fetch from the page.
"""

import asyncio
import logging
import time
import weakref

from playwright.async_api import Download, Page, Request, Response

from chatcapture.classify import is_likely_attachment_url
from chatcapture.config import get_settings
from chatcapture.errors import NetworkSettleTimeout
from chatcapture.models import TrackedNetworkRecord

logger = logging.getLogger(__name__)

MAX_SETTLE_LOOPS = 28


def now_ms() -> float:
    return time.monotonic() * 1000


class NetworkActivityTracker:
    """Capped ring of TrackedNetworkRecord plus an in-flight counter."""

    def __init__(self, capacity: int | None = None):
        self.capacity = capacity or get_settings().max_tracked_network_records
        self._records: list[TrackedNetworkRecord] = []
        self._started: dict[int, float] = {}
        self._in_flight = 0
        self._window_start = 0.0
        self._page = None

    # -- write side ---------------------------------------------------------

    def push(self, record: TrackedNetworkRecord):
        if not record.url:
            return
        self._records.append(record)
        overflow = len(self._records) - self.capacity
        if overflow > 0:
            del self._records[:overflow]

    def begin_capture_window(self):
        """Mark the start of a capture run; later reads can filter on it."""
        self._window_start = now_ms()

    # -- read side ----------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def capture_window_start(self) -> float:
        return self._window_start

    def __len__(self):
        return len(self._records)

    def records_since(self, since_ms: float = 0) -> list[TrackedNetworkRecord]:
        if since_ms <= 0:
            return list(self._records)
        return [record for record in self._records if record.started_at >= since_ms]

    def urls(self, since_ms: float = 0) -> list[str]:
        return [record.url for record in self.records_since(since_ms)]

    async def wait_for_settle(self, idle_rounds: int = 4, interval_ms: int = 240):
        """
        Wait until no request is in flight and the record count stops growing
        for ``idle_rounds`` consecutive checks. Raises NetworkSettleTimeout
        after MAX_SETTLE_LOOPS checks.
        """
        window = self._window_start
        previous = len(self.records_since(window))
        stable = 0
        for _ in range(MAX_SETTLE_LOOPS):
            await asyncio.sleep(interval_ms / 1000)
            current = len(self.records_since(window))
            if self._in_flight == 0 and current == previous:
                stable += 1
                if stable >= idle_rounds:
                    return
            else:
                stable = 0
                previous = current
        raise NetworkSettleTimeout(self._in_flight, len(self.records_since(window)))

    # -- Playwright wiring --------------------------------------------------

    def install(self, page: Page):
        if self._page is not None:
            return
        self._page = page
        page.on("request", self._on_request)
        page.on("response", self._on_response)
        page.on("requestfinished", self._on_request_done)
        page.on("requestfailed", self._on_request_failed)
        page.on("download", self._on_download)
        page.on("popup", self._on_popup)
        logger.debug("[tracker] installed on %s", page.url)

    def _on_request(self, request: Request):
        self._started[id(request)] = now_ms()
        self._in_flight += 1

    def _on_response(self, response: Response):
        request = response.request
        self.push(TrackedNetworkRecord(
            url=response.url or request.url,
            method=request.method.upper(),
            started_at=self._started.get(id(request), now_ms()),
            status=response.status,
            ok=response.ok,
        ))

    def _on_request_done(self, request: Request):
        self._started.pop(id(request), None)
        self._in_flight = max(0, self._in_flight - 1)

    def _on_request_failed(self, request: Request):
        self.push(TrackedNetworkRecord(
            url=request.url,
            method=request.method.upper(),
            started_at=self._started.get(id(request), now_ms()),
        ))
        self._on_request_done(request)

    def record_navigation_like(self, url: str):
        if url and is_likely_attachment_url(url):
            self.push(TrackedNetworkRecord(url=url, method="GET", started_at=now_ms(), status=200, ok=True))

    def _on_download(self, download: Download):
        self.record_navigation_like(download.url)

    def _on_popup(self, popup: Page):
        self.record_navigation_like(popup.url)


_trackers: "weakref.WeakKeyDictionary[Page, NetworkActivityTracker]" = weakref.WeakKeyDictionary()


def get_network_tracker(page: Page) -> NetworkActivityTracker:
    """The page's tracker, installing it on first use."""
    tracker = _trackers.get(page)
    if tracker is None:
        tracker = NetworkActivityTracker()
        tracker.install(page)
        _trackers[page] = tracker
    return tracker

"""Browser session: a persistent Chromium profile, so the operator's chat logins are reused."""

import logging
from contextlib import asynccontextmanager

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from chatcapture.config import get_settings
from chatcapture.errors import CaptureError
from chatcapture.network_tracker import get_network_tracker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_chat_page(url: str):
    """
    Yield a Playwright page showing ``url``.

    The network tracker is installed and its capture window opened before
    navigation, so the requests the page makes while loading (conversation
    API, file previews) are part of the capture.
    """
    settings = get_settings()
    async with async_playwright() as p:
        context = await p.chromium.launch_persistent_context(
            settings.user_data_dir,
            headless=settings.headless,
            viewport={"width": settings.viewport_width, "height": settings.viewport_height},
        )
        try:
            page = context.pages[0] if context.pages else await context.new_page()
            tracker = get_network_tracker(page)
            tracker.begin_capture_window()

            try:
                await page.goto(url, wait_until="networkidle", timeout=settings.page_load_timeout)
            except PlaywrightError as e:
                logger.info("[browser] networkidle not reached for %s (%s), retrying on domcontentloaded", url, e)
                try:
                    await page.goto(url, wait_until="domcontentloaded", timeout=settings.page_load_timeout)
                    await page.wait_for_timeout(2000)
                except PlaywrightError as e2:
                    raise CaptureError(f"Failed to load {url}: {e2}") from e2

            logger.info("[browser] loaded %s (%d requests tracked)", page.url, len(tracker))
            yield page
        finally:
            await context.close()

"""
Warmup: force a chat page to render its lazily-loaded content before capture.

Every host gets a bounded scroll sweep of its main scrollable region. ChatGPT
additionally needs its file tiles activated: a user upload's real download
URL is only requested by the page once the tile is opened, so each tile is
clicked and the tracker is watched for download evidence.

All waits are bounded. Timeouts are logged and the capture proceeds with
whatever the page revealed.
"""

import logging
import math
import re
from dataclasses import dataclass

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from chatcapture.attachments import file_name_extension, looks_like_attachment_file_name_label
from chatcapture.classify import is_image_extension
from chatcapture.errors import NetworkSettleTimeout, WarmupEvidenceTimeout
from chatcapture.network_tracker import NetworkActivityTracker, get_network_tracker

logger = logging.getLogger(__name__)

SCROLLER_ATTR = "data-capture-scroller"
TILE_ATTR = "data-capture-tile"
TILE_TARGET_ATTR = "data-capture-tile-target"

MAX_FILE_TILES = 12
EVIDENCE_ROUNDS = 8
CLICK_TIMEOUT_MS = 2000


@dataclass(frozen=True)
class WarmupConfig:
    down_steps: int  # max scroll rounds
    down_wait_ms: int
    up_wait_ms: int


WARMUP_CONFIGS = {
    "chatgpt": WarmupConfig(down_steps=16, down_wait_ms=90, up_wait_ms=55),
    "ai_studio": WarmupConfig(down_steps=40, down_wait_ms=130, up_wait_ms=80),
    "gemini": WarmupConfig(down_steps=40, down_wait_ms=95, up_wait_ms=55),
    "claude": WarmupConfig(down_steps=40, down_wait_ms=95, up_wait_ms=55),
}


# ---------------------------------------------------------------------------
# In-page snippets
# ---------------------------------------------------------------------------

_SCROLLER_METRICS_JS = '''(selector) => {
    const el = selector
        ? document.querySelector(selector)
        : (document.scrollingElement || document.documentElement);
    if (!el) return null;
    return {
        top: Math.round(el.scrollTop),
        max: Math.max(0, el.scrollHeight - el.clientHeight),
        height: el.scrollHeight,
    };
}'''

_SCROLL_TO_JS = '''([selector, top]) => {
    const el = selector
        ? document.querySelector(selector)
        : (document.scrollingElement || document.documentElement);
    if (!el) return null;
    if (selector) {
        el.scrollTop = top;
        el.dispatchEvent(new Event('scroll', { bubbles: true }));
    } else {
        window.scrollTo(0, top);
    }
    return {
        top: Math.round(el.scrollTop),
        max: Math.max(0, el.scrollHeight - el.clientHeight),
        height: el.scrollHeight,
    };
}'''

# Largest generic scrollable region, stamped so later snippets can address it.
_PICK_SCROLLABLE_JS = '''(attr) => {
    document.querySelectorAll('[' + attr + ']').forEach(n => n.removeAttribute(attr));
    const candidates = Array.from(document.querySelectorAll(
        "main, [role='main'], [class*='scroll'], [class*='conversation'], [class*='content']"
    )).filter(n => n instanceof HTMLElement && n.scrollHeight - n.clientHeight > 180);
    if (!candidates.length) return null;
    candidates.sort((a, b) => b.scrollHeight - a.scrollHeight);
    candidates[0].setAttribute(attr, 'area');
    return '[' + attr + '="area"]';
}'''

# ChatGPT conversation scrollers, best first. Ancestors of message nodes that
# scroll are ranked by how many messages they contain.
_COLLECT_CHATGPT_SCROLLERS_JS = '''(attr) => {
    document.querySelectorAll('[' + attr + ']').forEach(n => n.removeAttribute(attr));
    const main = document.querySelector('main');
    const CHROME = "aside, nav, [role='navigation'], [role='complementary']";
    const hintOf = n => ((typeof n.className === 'string' ? n.className : '') + ' ' +
        (n.getAttribute('data-testid') || '')).toLowerCase();
    const overflow = n => n.scrollHeight - n.clientHeight;
    const visible = n => {
        if (!n.isConnected) return false;
        const style = window.getComputedStyle(n);
        if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
        const rect = n.getBoundingClientRect();
        return rect.width > 0 && rect.height > 0;
    };
    const CONTAINER = [
        "[data-testid*='conversation']", "[data-testid*='thread']", "[class*='conversation']",
        "[class*='thread']", "[class*='message']", "[class*='overflow-y-auto']",
    ];

    const pickConversation = () => {
        if (!main) return null;
        const scores = new Map();
        for (const message of main.querySelectorAll('[data-message-author-role]')) {
            let current = message, depth = 0;
            while (current && current !== main && depth < 10) {
                if (overflow(current) > 120) scores.set(current, (scores.get(current) || 0) + 1);
                current = current.parentElement;
                depth += 1;
            }
        }
        const ranked = Array.from(scores.entries())
            .filter(([n]) => !n.closest(CHROME) && !/sidebar|drawer|panel|file|asset/.test(hintOf(n)))
            .sort((a, b) => (b[1] - a[1]) || (overflow(b[0]) - overflow(a[0])));
        if (ranked.length) return ranked[0][0];
        const fallback = Array.from(main.querySelectorAll(CONTAINER.concat(['[data-message-author-role]']).join(',')))
            .filter(n => overflow(n) > 120 && !n.closest(CHROME) && !/sidebar|drawer|panel|file|asset/.test(hintOf(n)))
            .sort((a, b) => overflow(b) - overflow(a));
        if (fallback.length) return fallback[0];
        return overflow(main) > 120 ? main : null;
    };
    const pickScrollable = () => {
        const candidates = Array.from(document.querySelectorAll(
            "main, [role='main'], [class*='scroll'], [class*='conversation'], [class*='content']"
        )).filter(n => overflow(n) > 180).sort((a, b) => b.scrollHeight - a.scrollHeight);
        return candidates[0] || null;
    };

    const out = [];
    const seen = new Set();
    const add = node => {
        if (!(node instanceof HTMLElement) || seen.has(node)) return;
        if (overflow(node) < 60 || !visible(node) || node.closest(CHROME)) return;
        if (/sidebar|drawer|panel|composer|input|textarea|toolbar|modal/.test(hintOf(node))) return;
        seen.add(node);
        out.push(node);
    };
    add(pickConversation());
    add(pickScrollable());
    add(document.scrollingElement);
    add(main);
    if (main) {
        for (const message of Array.from(main.querySelectorAll('[data-message-author-role]')).slice(0, 120)) {
            let current = message, depth = 0;
            while (current && depth < 14) {
                add(current);
                current = current.parentElement;
                depth += 1;
            }
        }
        const extra = CONTAINER.concat(["[class*='scroll']"]).join(',');
        for (const node of Array.from(main.querySelectorAll(extra)).slice(0, 180)) add(node);
    }
    out.sort((a, b) => overflow(b) - overflow(a));
    return out.slice(0, 6).map((node, index) => {
        node.setAttribute(attr, 'cg-' + index);
        return {
            selector: '[' + attr + '="cg-' + index + '"]',
            maxScroll: Math.max(0, overflow(node)),
            top: Math.round(node.scrollTop),
            tag: node.tagName.toLowerCase(),
            className: String(typeof node.className === 'string' ? node.className : '').slice(0, 120),
        };
    });
}'''

# Labelled buttons inside user messages (or main). The button, and the
# default-action wrapper that actually opens the tile, are stamped.
_COLLECT_FILE_TILES_JS = '''([tileAttr, targetAttr]) => {
    document.querySelectorAll('[' + tileAttr + '], [' + targetAttr + ']').forEach(n => {
        n.removeAttribute(tileAttr);
        n.removeAttribute(targetAttr);
    });
    const main = document.querySelector('main');
    if (!main) return [];
    const users = Array.from(main.querySelectorAll("[data-message-author-role='user']"));
    const roots = users.length ? users : [main];
    const out = [];
    for (const root of roots) {
        for (const button of root.querySelectorAll('button[aria-label], button[title]')) {
            if (out.length >= 400) break;
            if (button.disabled || button.closest("form, textarea, [contenteditable='true']")) continue;
            const style = window.getComputedStyle(button);
            if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') continue;
            const rect = button.getBoundingClientRect();
            if (rect.width <= 0 || rect.height <= 0) continue;
            const index = out.length;
            button.setAttribute(tileAttr, String(index));
            const target = button.closest("[data-default-action='true']") || button;
            target.setAttribute(targetAttr, String(index));
            out.push({
                index,
                label: (button.getAttribute('aria-label') || button.getAttribute('title') || '').trim(),
                top: Math.round(rect.top),
            });
        }
    }
    return out;
}'''

_CLICK_CLOSE_BUTTON_JS = '''() => {
    const close = document.querySelector(
        "button[aria-label='Close'], button[aria-label='关闭'], button[aria-label='关 闭'], button[data-testid*='close']"
    );
    if (close instanceof HTMLButtonElement && !close.disabled) {
        close.click();
        return true;
    }
    return false;
}'''


# ---------------------------------------------------------------------------
# Scrolling
# ---------------------------------------------------------------------------

@dataclass
class SlowMove:
    start_top: int
    end_top: int
    max_top_seen: int
    min_top_seen: int

    @property
    def moved_pixels(self) -> int:
        return max(
            abs(self.max_top_seen - self.start_top),
            abs(self.start_top - self.min_top_seen),
            abs(self.end_top - self.start_top),
        )


class Scroller:
    """A stamped scrollable element, or the window when ``selector`` is None."""

    def __init__(self, page: Page, selector: str | None = None):
        self.page = page
        self.selector = selector

    async def metrics(self) -> dict:
        result = await self.page.evaluate(_SCROLLER_METRICS_JS, self.selector)
        return result or {"top": 0, "max": 0, "height": 0}

    async def scroll_to(self, top: float) -> dict:
        result = await self.page.evaluate(_SCROLL_TO_JS, [self.selector, round(top)])
        return result or {"top": 0, "max": 0, "height": 0}

    async def move_slowly(self, from_top: float, to_top: float, steps: int, wait_ms: int) -> SlowMove:
        steps = max(1, steps)
        await self.scroll_to(from_top)
        await self.page.wait_for_timeout(max(24, round(wait_ms * 0.6)))
        start = (await self.metrics())["top"]
        highest = lowest = current = start
        for i in range(1, steps + 1):
            await self.scroll_to(from_top + (to_top - from_top) * i / steps)
            await self.page.wait_for_timeout(wait_ms)
            current = (await self.metrics())["top"]
            highest = max(highest, current)
            lowest = min(lowest, current)
        return SlowMove(start_top=start, end_top=current, max_top_seen=highest, min_top_seen=lowest)


async def _warmup_window(page: Page):
    window = Scroller(page)
    metrics = await window.metrics()
    origin, max_y = metrics["top"], metrics["max"]
    if max_y <= 24:
        await page.wait_for_timeout(180)
        return
    steps = max(4, min(10, math.ceil(max_y / 900)))
    for i in range(steps + 1):
        await window.scroll_to(max_y * i / steps)
        await page.wait_for_timeout(90)
    for i in range(steps, -1, -1):
        await window.scroll_to(max_y * i / steps)
        await page.wait_for_timeout(55)
    await window.scroll_to(origin)
    await page.wait_for_timeout(120)


async def warmup_scrollable_area(page: Page, config: WarmupConfig):
    """
    Scroll the page's main scrollable region to the bottom in rounds until its
    height stops growing (at most ``config.down_steps`` rounds), then ease
    back to where it started. Falls back to the window when nothing scrolls.
    """
    selector = await page.evaluate(_PICK_SCROLLABLE_JS, SCROLLER_ATTR)
    if not selector:
        logger.info("[warmup] no scrollable region, sweeping the window")
        await _warmup_window(page)
        return

    scroller = Scroller(page, selector)
    metrics = await scroller.metrics()
    origin = metrics["top"]
    last_height = metrics["height"]
    rounds = 0
    for rounds in range(1, config.down_steps + 1):
        max_scroll = (await scroller.metrics())["max"]
        if max_scroll < 24:
            break
        steps = min(5, max(2, math.ceil(max_scroll / 900)))
        for i in range(1, steps + 1):
            await scroller.scroll_to(max_scroll * i / steps)
            await page.wait_for_timeout(config.down_wait_ms)
        await page.wait_for_timeout(config.down_wait_ms * 2)
        height = (await scroller.metrics())["height"]
        if height <= last_height:
            break
        last_height = height

    current = (await scroller.metrics())["top"]
    for i in range(5, -1, -1):
        await scroller.scroll_to(origin + (current - origin) * i / 5)
        await page.wait_for_timeout(config.up_wait_ms)
    await scroller.scroll_to(origin)
    await page.wait_for_timeout(180)
    logger.info("[warmup] swept %s in %d rounds (height %d)", selector, rounds, last_height)


async def settle_network(tracker: NetworkActivityTracker, idle_rounds: int = 4, interval_ms: int = 240):
    try:
        await tracker.wait_for_settle(idle_rounds, interval_ms)
    except NetworkSettleTimeout as e:
        logger.info("[warmup] %s", e)


# ---------------------------------------------------------------------------
# ChatGPT file tiles
# ---------------------------------------------------------------------------

_BACKEND_DOWNLOAD_RE = re.compile(
    r"/backend-api/files/download/[a-z0-9_-]{8,}"
    r"|/backend-api/files/[a-z0-9_-]{8,}/download"
    r"|/backend-api/estuary/content\?[^#\s]*\bid=file[_-]",
    re.I,
)
_OAI_DOWNLOAD_RE = re.compile(
    r"[?&](download|filename|attachment|response-content-disposition)="
    r"|oaiusercontent\.com/[^?#]*file[-_][a-z0-9-]{4,}"
    r"|\.(pdf|doc|docx|xls|xlsx|ppt|pptx|csv|txt)\b",
    re.I,
)


@dataclass
class FileTile:
    index: int
    label: str
    top: int

    @property
    def selector(self) -> str:
        return f'[{TILE_ATTR}="{self.index}"]'

    @property
    def target(self) -> str:
        return f'[{TILE_TARGET_ATTR}="{self.index}"]'


def is_non_image_file_label(label: str) -> bool:
    ext = file_name_extension(label)
    return bool(ext) and not is_image_extension(ext)


def count_expected_non_image_tiles(labels: list[str]) -> int:
    unique = {
        label.strip().lower() for label in labels
        if looks_like_attachment_file_name_label(label.strip()) and is_non_image_file_label(label.strip())
    }
    return len(unique)


def count_download_hints(urls: list[str]) -> int:
    """Distinct URLs that look like a non-image file download."""
    seen = set()
    for raw in urls:
        url = (raw or "").strip()
        if not url:
            continue
        lower = url.lower()
        if _BACKEND_DOWNLOAD_RE.search(lower) or ("oaiusercontent.com" in lower and _OAI_DOWNLOAD_RE.search(lower)):
            seen.add(url)
    return len(seen)


async def collect_file_tiles(page: Page) -> list[FileTile]:
    raw = await page.evaluate(_COLLECT_FILE_TILES_JS, [TILE_ATTR, TILE_TARGET_ATTR]) or []
    tiles = []
    seen = set()
    for item in raw:
        label = (item.get("label") or "").strip()
        if not looks_like_attachment_file_name_label(label):
            continue
        key = (label.lower(), item.get("top", 0))
        if key in seen:
            continue
        seen.add(key)
        tiles.append(FileTile(index=item["index"], label=label, top=item.get("top", 0)))
    return tiles[:MAX_FILE_TILES]


async def dismiss_transient_layer(page: Page):
    await page.evaluate(_CLICK_CLOSE_BUTTON_JS)
    await page.keyboard.press("Escape")


async def prime_file_tiles(
    page: Page,
    tracker: NetworkActivityTracker,
    primed: set[str],
    max_clicks: int = 8,
    non_image_only: bool = False,
) -> int:
    """
    Open each file tile once so the page requests its download URL.

    A label is added to ``primed`` once clicked; with ``non_image_only`` only
    when new download evidence showed up afterwards, so it is retried later.
    Returns the number of tiles clicked.
    """
    tiles = sorted(await collect_file_tiles(page), key=lambda t: t.top)
    since = tracker.capture_window_start
    attempted = clicked = confirmed = 0
    for tile in tiles:
        label = tile.label.lower()
        if label in primed:
            continue
        if non_image_only and not is_non_image_file_label(label):
            continue
        attempted += 1
        before = count_download_hints(tracker.urls(since)) if non_image_only else 0
        try:
            await page.click(tile.target, timeout=CLICK_TIMEOUT_MS)
            await page.focus(tile.target, timeout=CLICK_TIMEOUT_MS)
            await page.keyboard.press("Enter")
            await page.wait_for_timeout(560)
            await dismiss_transient_layer(page)
            await page.wait_for_timeout(260)
        except PlaywrightError as e:
            logger.debug("[warmup] tile %r not activated: %s", tile.label, e)
            continue
        if not non_image_only or count_download_hints(tracker.urls(since)) > before:
            primed.add(label)
            confirmed += 1
        clicked += 1
        if clicked >= max(1, max_clicks):
            break

    if attempted:
        logger.info(
            "[warmup] file-tile prime: non_image_only=%s attempted=%d clicked=%d confirmed=%d primed=%d",
            non_image_only, attempted, clicked, confirmed, len(primed),
        )
    return clicked


async def wait_for_file_url_evidence(
    page: Page,
    tracker: NetworkActivityTracker,
    expected: int,
    primed: set[str],
    scroller: Scroller | None = None,
):
    """
    Re-prime non-image tiles until the tracker holds download evidence for
    ``min(expected, 2)`` files. Raises WarmupEvidenceTimeout after
    EVIDENCE_ROUNDS rounds.
    """
    if expected <= 0:
        return
    since = tracker.capture_window_start
    target = max(1, min(expected, 2))
    scroller = scroller or Scroller(page)
    for _ in range(EVIDENCE_ROUNDS):
        observed = count_download_hints(tracker.urls(since))
        if observed >= target:
            logger.info("[warmup] file-url evidence ready: %d/%d (expected %d)", observed, target, expected)
            return
        await scroller.scroll_to(0)
        await page.wait_for_timeout(260)
        await prime_file_tiles(page, tracker, primed, 10, non_image_only=True)
        await settle_network(tracker, 2, 280)
    raise WarmupEvidenceTimeout(count_download_hints(tracker.urls(since)), target)


async def warmup_chatgpt(page: Page, tracker: NetworkActivityTracker):
    primed: set[str] = set()
    scrollers = await page.evaluate(_COLLECT_CHATGPT_SCROLLERS_JS, SCROLLER_ATTR) or []
    if not scrollers:
        await warmup_scrollable_area(page, WARMUP_CONFIGS["chatgpt"])
        await prime_file_tiles(page, tracker, primed)
        return

    active = None
    for index, info in enumerate(scrollers):
        max_scroll = info.get("maxScroll", 0)
        if max_scroll < 60:
            continue
        logger.info(
            "[warmup] chatgpt scroller %d: max_scroll=%d top=%d <%s class=%r>",
            index, max_scroll, info.get("top", 0), info.get("tag", ""), info.get("className", ""),
        )
        scroller = Scroller(page, info["selector"])
        origin = max(0, info.get("top", 0))
        steps = max(4, min(24, math.ceil(max(origin, max_scroll * 0.2) / 280)))
        move = await scroller.move_slowly(origin, 0, steps, 85)
        await page.wait_for_timeout(220)
        if move.moved_pixels < 80 and max_scroll > 300:
            logger.info("[warmup] chatgpt scroller %d ignored, moved only %dpx", index, move.moved_pixels)
            continue
        active = scroller
        break

    if active is None:
        await warmup_scrollable_area(page, WARMUP_CONFIGS["chatgpt"])
    else:
        await active.scroll_to(0)
        await page.wait_for_timeout(260)
    await prime_file_tiles(page, tracker, primed, 10, non_image_only=True)

    expected = count_expected_non_image_tiles([tile.label for tile in await collect_file_tiles(page)])
    try:
        await wait_for_file_url_evidence(page, tracker, expected, primed, active)
    except WarmupEvidenceTimeout as e:
        logger.info("[warmup] %s, expected %d non-image uploads", e, expected)
    await settle_network(tracker, 3, 260)


async def warmup_source(page: Page, source: str, tracker: NetworkActivityTracker | None = None):
    """Load everything lazily rendered on a ``source`` chat page."""
    tracker = tracker or get_network_tracker(page)
    if source == "chatgpt":
        await warmup_chatgpt(page, tracker)
        return
    await warmup_scrollable_area(page, WARMUP_CONFIGS[source])

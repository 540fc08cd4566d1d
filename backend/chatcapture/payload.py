"""Payload assembly: canonical page URL, conversation title, source inference."""

import re
from urllib.parse import urlsplit, urlunsplit

from chatcapture.markdown import normalize_text
from chatcapture.models import CapturePayload, CaptureTurn
from chatcapture.snapshot import PageSnapshot

UNTITLED = "Untitled Conversation"
TITLE_FROM_TURN_CHARS = 60

# Hosts whose query strings are session noise (model pickers, tracking).
QUERY_STRIPPED_HOSTS = ("chatgpt.com", "gemini.google.com", "bard.google.com", "aistudio.google.com", "claude.ai")

_TITLE_SUFFIX_RE = re.compile(
    r"\s*\|\s*Google AI Studio$|\s*-\s*Gemini$|\s*-\s*ChatGPT$|\s*-\s*Claude$",
    re.I,
)
_BARE_PRODUCT_RE = re.compile(r"^(google gemini|gemini|chatgpt|google ai studio|claude)$", re.I)

TITLE_SELECTORS = {
    "gemini": "h1, h2, [data-test-id='conversation-title'], [aria-label*='title']",
    "ai_studio": "h1, h2, [data-testid='prompt-title'], [aria-label*='title'], [class*='title']",
    "claude": "h1, h2, [data-testid*='title'], [class*='title']",
}


def canonicalize_page_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    host = (parts.hostname or "").lower()
    query = "" if any(known in host for known in QUERY_STRIPPED_HOSTS) else parts.query
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", query, ""))


def title_from_turns(turns: list[CaptureTurn]) -> str:
    user = next((turn for turn in turns if turn.role == "user"), None)
    if user is None:
        return UNTITLED
    return normalize_text(user.content_markdown)[:TITLE_FROM_TURN_CHARS] or UNTITLED


def normalize_title(raw: str, fallback: str) -> str:
    cleaned = normalize_text(_TITLE_SUFFIX_RE.sub("", (raw or "").strip()))
    if not cleaned or _BARE_PRODUCT_RE.match(cleaned):
        return fallback
    return cleaned


def derive_title(source: str, snapshot: PageSnapshot, turns: list[CaptureTurn]) -> str:
    fallback = title_from_turns(turns)
    selector = TITLE_SELECTORS.get(source)
    if selector is None:
        return normalize_title(snapshot.title, fallback)
    heading = snapshot.main.select_one(selector)
    text = heading.get_text(" ") if heading is not None else ""
    return normalize_title(text.strip() or snapshot.title, fallback)


def infer_source_from_url(url: str) -> str:
    if "claude.ai" in url:
        return "claude"
    if "aistudio.google.com" in url:
        return "ai_studio"
    if "gemini.google.com" in url or "bard.google.com" in url:
        return "gemini"
    return "chatgpt"


def create_capture_payload(source: str, snapshot: PageSnapshot, turns: list[CaptureTurn]) -> CapturePayload:
    return CapturePayload(
        source=source,
        page_url=canonicalize_page_url(snapshot.url),
        title=derive_title(source, snapshot, turns),
        turns=turns,
    )

"""
Per-host turn extraction from a PageSnapshot.

Each extractor picks the turn elements with its host's selector vocabulary
and falls back, in order, to broader structural selectors, then to
plain-text role markers, then (ChatGPT, Claude) to one catch-all turn.
None of them raises; an empty list means nothing was recognized.
"""

import re

from bs4 import Tag

from chatcapture.discovery import attr_text
from chatcapture.markdown import normalize_markdown_text
from chatcapture.models import CaptureTurn
from chatcapture.snapshot import PageSnapshot
from chatcapture.turns import (
    build_turn,
    catch_all_turn,
    dedupe_turns,
    has_user_exchange,
    leaf_nodes,
    parse_by_claude_role_markers,
    parse_by_role_markers,
    role_from_attrs,
    sanitize_gemini_turn,
    visible_text,
)

CHATGPT_FALLBACK_SELECTOR = ", ".join([
    "article",
    "[data-testid*='conversation-turn']",
    "[data-testid*='message']",
    "[class*='conversation-turn']",
    "[class*='message']",
])
GEMINI_TURN_SELECTOR = ", ".join([
    "user-query",
    "model-response",
    "[data-test-id='user-query']",
    "[data-test-id='user-message']",
    "[data-test-id='model-response']",
    "[data-test-id='conversation-turn']",
    "[class*='user-query']",
    "[class*='model-response']",
    "[class*='response-content']",
])
AI_STUDIO_TURN_SELECTOR = ", ".join([
    "[data-role='user']",
    "[data-role='assistant']",
    "[data-role='model']",
    "[data-message-author-role]",
    "ms-chat-turn",
    "[data-testid*='chat-turn']",
    "[class*='chat-turn']",
    "[class*='conversation-turn']",
])
AI_STUDIO_ROOT_SCORE_SELECTOR = ", ".join([
    "[data-role='user']",
    "[data-role='assistant']",
    "[data-role='model']",
    "ms-chat-turn",
    "[data-testid*='chat-turn']",
    "[class*='chat-turn']",
])
CLAUDE_TURN_SELECTOR = ", ".join([
    "[data-message-author-role]",
    "[data-role='user']",
    "[data-role='assistant']",
    "[class*='conversation-turn']",
    "[class*='message']",
    "article",
])
_AI_STUDIO_NOISE_RE = re.compile(r"skip to main content|settings|get api key|developer_guide|documentation", re.I)


def _built(nodes: list[Tag], snapshot: PageSnapshot, role_of=role_from_attrs) -> list[CaptureTurn]:
    turns = []
    for node in nodes:
        turn = build_turn(node, snapshot, role_of(node))
        if turn is not None:
            turns.append(turn)
    return turns


# ---------------------------------------------------------------------------
# ChatGPT
# ---------------------------------------------------------------------------

def chatgpt_role(node: Tag) -> str:
    role = attr_text(node.get("data-message-author-role")).strip().lower()
    return role if role in ("user", "assistant", "system", "tool") else "assistant"


def extract_chatgpt_turns(snapshot: PageSnapshot) -> list[CaptureTurn]:
    main = snapshot.main
    primary = _built(main.select("[data-message-author-role]"), snapshot, chatgpt_role)
    if primary:
        return dedupe_turns(primary)

    fallback = _built(main.select(CHATGPT_FALLBACK_SELECTOR), snapshot)
    if fallback:
        return dedupe_turns(fallback)

    text = visible_text(main)
    markers = parse_by_role_markers(text)
    if markers:
        return dedupe_turns(markers)
    return dedupe_turns(catch_all_turn(text))


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

def gemini_role(node: Tag) -> str | None:
    role = role_from_attrs(node)
    if role:
        return role
    hint = f"{node.name} {attr_text(node.get('data-test-id'))} {attr_text(node.get('class'))}".lower()
    if re.search(r"user-query|user-message|query-input", hint):
        return "user"
    if re.search(r"model-response|response-content|response", hint):
        return "assistant"
    return None


def extract_gemini_turns(snapshot: PageSnapshot) -> list[CaptureTurn]:
    root = snapshot.root("main", "[role='main']")
    turns = []
    for turn in _built(leaf_nodes(root, GEMINI_TURN_SELECTOR), snapshot, gemini_role):
        sanitized = sanitize_gemini_turn(turn)
        if sanitized is not None:
            turns.append(sanitized)

    deduped = dedupe_turns(turns)
    if has_user_exchange(deduped):
        return deduped

    markers = [sanitize_gemini_turn(turn) for turn in parse_by_role_markers(visible_text(root))]
    return dedupe_turns([turn for turn in markers if turn is not None])


# ---------------------------------------------------------------------------
# AI Studio
# ---------------------------------------------------------------------------

def score_ai_studio_root(root: Tag) -> int:
    turn_count = len(root.select(AI_STUDIO_ROOT_SCORE_SELECTOR))
    penalty = 8 if _AI_STUDIO_NOISE_RE.search(normalize_markdown_text(visible_text(root))) else 0
    return turn_count * 5 - penalty


def pick_ai_studio_root(snapshot: PageSnapshot) -> Tag:
    candidates = []
    for selector in ("main", "[role='main']", "[data-testid*='conversation']", "[class*='conversation']"):
        node = snapshot.soup.select_one(selector)
        if node is not None:
            candidates.append(node)
    if not candidates:
        return snapshot.soup.body or snapshot.soup
    return max(candidates, key=score_ai_studio_root)


def _outside_chrome(node: Tag) -> bool:
    return node.css.closest("nav, header, aside, [role='navigation']") is None


def extract_ai_studio_turns(snapshot: PageSnapshot) -> list[CaptureTurn]:
    root = pick_ai_studio_root(snapshot)
    nodes = [node for node in leaf_nodes(root, AI_STUDIO_TURN_SELECTOR) if _outside_chrome(node)]
    deduped = dedupe_turns(_built(nodes, snapshot))
    if has_user_exchange(deduped):
        return deduped
    return dedupe_turns(parse_by_role_markers(visible_text(root)))


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------

def extract_claude_turns(snapshot: PageSnapshot) -> list[CaptureTurn]:
    root = snapshot.root("main", "[role='main']")
    deduped = dedupe_turns(_built(leaf_nodes(root, CLAUDE_TURN_SELECTOR), snapshot))
    if deduped and any(turn.role == "user" for turn in deduped):
        return deduped

    text = visible_text(root)
    markers = dedupe_turns([*parse_by_role_markers(text), *parse_by_claude_role_markers(text)])
    if markers:
        return markers
    return catch_all_turn(text)


EXTRACTORS = {
    "chatgpt": extract_chatgpt_turns,
    "gemini": extract_gemini_turns,
    "ai_studio": extract_ai_studio_turns,
    "claude": extract_claude_turns,
}


def extract_turns(source: str, snapshot: PageSnapshot) -> list[CaptureTurn]:
    return EXTRACTORS[source](snapshot)

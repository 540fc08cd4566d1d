"""
Host-independent turn building.

A turn element is cloned, its reasoning sub-elements are pulled out as
``thought_markdown``, the rest is rewritten to Markdown, and attachments
are collected from both markup and text. Per-host extractors pick the
elements and the role; everything else lives here.
"""

import copy
import re

from bs4 import Tag

from chatcapture.attachments import merge_turn_attachments
from chatcapture.discovery import attr_text, extract_attachments_from_markdown, extract_structural_attachments
from chatcapture.markdown import html_to_markdown, normalize_markdown_text
from chatcapture.models import ATTACHMENT_ONLY_PLACEHOLDER, CaptureTurn
from chatcapture.snapshot import PageSnapshot

THOUGHT_SELECTOR = "[data-testid*='thought'], [class*='thought'], [aria-label*='thought']"
THOUGHT_HEADINGS = ("thoughts", "model thoughts", "expand to view model thoughts")

GEMINI_BOILERPLATE_MARKERS = (
    "如果你想让我保存或删除我们对话中关于你的信息",
    "你需要先开启过往对话记录",
    "你也可以手动添加或更新你给gemini的指令",
    "从而定制gemini的回复",
    "ifyouwantmetosaveordeleteinformationfromourconversations",
    "youneedtoturnonchathistory",
    "youcanalsomanuallyaddorupdateyourinstructionsforgemini",
)

_ROLE_MARKER_RE = re.compile(r"(?:^|\n)(User|You|Assistant|Model|用户|我|AI)\s*[:：]?\s*(?=\n|$)", re.I)
_CLAUDE_USER_MARKER_RE = re.compile(r"^(you|user|human)\s*[:：]?$", re.I)
_CLAUDE_ASSISTANT_MARKER_RE = re.compile(r"^(assistant|claude|ai)\s*[:：]?$", re.I)

MIN_CONTENT_CHARS = 2
MIN_CATCH_ALL_CHARS = 20


def visible_text(node: Tag) -> str:
    """Rough ``innerText``: text with a newline between block boundaries."""
    return node.get_text("\n")


def leaf_nodes(root: Tag, selector: str) -> list[Tag]:
    """Matches of ``selector`` with no direct child that also matches."""
    out = []
    for node in root.select(selector):
        if not any(child.css.match(selector) for child in node.find_all(True, recursive=False)):
            out.append(node)
    return out


def role_from_attrs(node: Tag) -> str | None:
    attrs = " ".join(
        attr_text(node.get(name))
        for name in ("data-message-author-role", "data-role", "aria-label", "data-testid", "class")
    ).lower()
    if re.search(r"user|human|prompt|query", attrs):
        return "user"
    if re.search(r"assistant|claude|model|ai|response|bot", attrs):
        return "assistant"
    if "system" in attrs:
        return "system"
    if re.search(r"tool|function", attrs):
        return "tool"
    return None


def split_thoughts(raw: str) -> tuple[str, str | None]:
    """Split a textual "Thoughts ... User:" section off the content."""
    text = normalize_markdown_text(raw)
    if not text:
        return "", None

    lower = text.lower()
    if not ("model thoughts" in lower or lower.startswith("thoughts\n")):
        return text, None

    thought_lines: list[str] = []
    content_lines: list[str] = []
    in_thoughts = False
    for line in text.split("\n"):
        lower_line = line.strip().lower()
        if lower_line in THOUGHT_HEADINGS:
            in_thoughts = True
            continue
        if in_thoughts and re.match(r"^user[:：]?$", lower_line):
            in_thoughts = False
            content_lines.append(line)
            continue
        (thought_lines if in_thoughts else content_lines).append(line)

    thought = normalize_markdown_text("\n".join(thought_lines))
    content = normalize_markdown_text("\n".join(content_lines))
    if not content and thought:
        return thought, None
    return content, thought or None


def extract_node_text_and_thought(node: Tag, base_url: str = "") -> tuple[str, str | None]:
    cloned = copy.copy(node)
    extracted = []
    for thought_node in cloned.select(THOUGHT_SELECTOR):
        if thought_node.decomposed:
            continue
        text = normalize_markdown_text(html_to_markdown(thought_node, base_url))
        if text:
            extracted.append(text)
        thought_node.decompose()

    content, split_thought = split_thoughts(html_to_markdown(cloned, base_url) or visible_text(cloned))
    thought = normalize_markdown_text("\n\n".join([split_thought or "", *extracted]))
    return content, thought or None


def build_turn(node: Tag, snapshot: PageSnapshot, role: str | None = None) -> CaptureTurn | None:
    role = role or role_from_attrs(node)
    if not role:
        return None

    content, thought = extract_node_text_and_thought(node, snapshot.url)
    attachments = merge_turn_attachments(
        extract_structural_attachments(node, snapshot.ctx, snapshot.probe),
        extract_attachments_from_markdown(content, snapshot.ctx),
        snapshot.ctx,
    )
    if len(content) < MIN_CONTENT_CHARS and attachments:
        content = ATTACHMENT_ONLY_PLACEHOLDER
    if len(content) < MIN_CONTENT_CHARS:
        return None
    return CaptureTurn(role=role, content_markdown=content, thought_markdown=thought, attachments=attachments)


def normalize_for_dedupe(content: str) -> str:
    text = re.sub(r"^you said\s*", "", content, flags=re.I)
    text = re.sub(r"^显示思路\s*gemini said\s*", "", text, flags=re.I)
    text = re.sub(r"^gemini said\s*", "", text, flags=re.I)
    return re.sub(r"\s+", " ", text).strip().lower()


def dedupe_turns(turns: list[CaptureTurn]) -> list[CaptureTurn]:
    """
    Collapse turns with the same role and normalized content.

    Duplicates merge into the first occurrence: its attachments absorb the
    duplicate's, and missing thought / model / timestamp are backfilled.
    """
    index_by_key: dict[str, int] = {}
    out: list[CaptureTurn] = []
    for turn in turns:
        cleaned = normalize_markdown_text(turn.content_markdown)
        if not cleaned:
            continue
        key = f"{turn.role}:{normalize_for_dedupe(cleaned)}"
        if key in index_by_key:
            i = index_by_key[key]
            previous = out[i]
            out[i] = previous.model_copy(update={
                "thought_markdown": previous.thought_markdown or turn.thought_markdown,
                "model": previous.model or turn.model,
                "timestamp": previous.timestamp or turn.timestamp,
                "attachments": merge_turn_attachments(previous.attachments, turn.attachments),
            })
            continue
        index_by_key[key] = len(out)
        out.append(turn.model_copy(update={"content_markdown": cleaned}))
    return out


# ---------------------------------------------------------------------------
# Plain-text fallbacks
# ---------------------------------------------------------------------------

def parse_by_role_markers(text: str) -> list[CaptureTurn]:
    """Split text on standalone "User:" / "Assistant:" style lines; needs at least two markers."""
    normalized = normalize_markdown_text(text)
    if not normalized:
        return []
    matches = list(_ROLE_MARKER_RE.finditer(normalized))
    if len(matches) < 2:
        return []

    turns = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(normalized)
        name = match.group(1).lower()
        role = "assistant" if name in ("assistant", "model", "ai") else "user"
        content = normalize_markdown_text(normalized[match.end():end])
        if len(content) >= MIN_CONTENT_CHARS:
            turns.append(CaptureTurn(role=role, content_markdown=content))
    return turns


def parse_by_claude_role_markers(text: str) -> list[CaptureTurn]:
    turns = []
    role = None
    buffer: list[str] = []

    def flush():
        content = normalize_markdown_text("\n".join(buffer))
        if role and content:
            turns.append(CaptureTurn(role=role, content_markdown=content))
        buffer.clear()

    for line in re.split(r"\r?\n", text or ""):
        trimmed = line.strip()
        if _CLAUDE_USER_MARKER_RE.match(trimmed):
            flush()
            role = "user"
        elif _CLAUDE_ASSISTANT_MARKER_RE.match(trimmed):
            flush()
            role = "assistant"
        else:
            buffer.append(line)
    flush()
    return dedupe_turns(turns)


def catch_all_turn(text: str) -> list[CaptureTurn]:
    plain = normalize_markdown_text(text)
    if len(plain) >= MIN_CATCH_ALL_CHARS:
        return [CaptureTurn(role="assistant", content_markdown=plain)]
    return []


def has_user_exchange(turns: list[CaptureTurn]) -> bool:
    return len(turns) >= 2 and any(turn.role == "user" for turn in turns)


# ---------------------------------------------------------------------------
# Gemini text clean-up
# ---------------------------------------------------------------------------

def strip_gemini_boilerplate(text: str) -> str:
    kept = []
    for paragraph in re.split(r"\n{2,}", text):
        squashed = re.sub(r"\s+", "", paragraph).lower()
        if squashed and not any(marker in squashed for marker in GEMINI_BOILERPLATE_MARKERS):
            kept.append(paragraph)
    return "\n\n".join(kept).strip()


def strip_gemini_ui_prefixes(text: str) -> str:
    text = re.sub(r"^you said\s*", "", text, flags=re.I)
    text = re.sub(r"^gemini said\s*", "", text, flags=re.I)
    text = re.sub(r"^显示思路\s*id_?\s*", "", text, flags=re.I)
    return text.strip()


def sanitize_gemini_turn(turn: CaptureTurn) -> CaptureTurn | None:
    base = strip_gemini_ui_prefixes(turn.content_markdown)
    content = normalize_markdown_text(strip_gemini_boilerplate(base) if turn.role == "assistant" else base)
    if not content and turn.attachments:
        content = ATTACHMENT_ONLY_PLACEHOLDER
    if len(content) < MIN_CONTENT_CHARS:
        return None
    return turn.model_copy(update={"content_markdown": content, "thought_markdown": None})

"""
Attachment candidate discovery.

Three sources feed one AttachmentCollector per turn:

- markup: images, links, attachment chips, file-name tiles and file-ID
  attributes of the turn element;
- component props recovered by the props probe;
- the turn's Markdown text (image / link syntax and bare URLs).

Candidates are keyed by literal URL here; semantic dedup happens when the
turn's attachment lists are merged.
"""

import logging
import re
from urllib.parse import urlsplit

from bs4 import Tag

from chatcapture.attachments import (
    file_name_extension,
    looks_like_attachment_file_name_label,
    virtual_upload_attachment,
)
from chatcapture.classify import (
    infer_attachment_kind,
    infer_attachment_mime,
    infer_kind_from_mime_hint,
    is_image_extension,
    is_likely_attachment_url,
    is_likely_oai_attachment_url,
    kind_score,
    looks_like_file_url,
    looks_like_image_url,
    looks_like_pdf_url,
)
from chatcapture.identifiers import (
    MiningContext,
    extract_backend_file_id_from_url,
    extract_likely_conversation_ids,
    extract_likely_post_ids,
    looks_like_opaque_file_id,
)
from chatcapture.models import CaptureAttachment
from chatcapture.props_probe import ProbeData, scan_file_tile_props

logger = logging.getLogger(__name__)

ATTACHMENT_CANDIDATE_SELECTOR = ", ".join([
    "[data-testid*='attachment']",
    "[data-testid*='upload']",
    "[data-testid*='file']",
    "[aria-label*='attachment']",
    "[aria-label*='file']",
    "[aria-label*='文件']",
    "[role='group'][aria-label]",
    "[class*='attachment']",
    "[class*='uploaded']",
    "[class*='file-chip']",
])
FILE_LABEL_SELECTOR = "button[aria-label], button[title], [role='group'][aria-label], [data-default-action='true']"
FILE_ID_SELECTOR = ", ".join([
    "[data-file-id]",
    "[data-asset-id]",
    "[data-attachment-id]",
    "[data-upload-id]",
    "[data-testid*='file']",
    "[data-testid*='attachment']",
    "[data-testid*='upload']",
    "[data-asset-pointer]",
])
PROPS_NODE_SELECTOR = ", ".join([
    "[data-testid*='file']",
    "[data-testid*='attachment']",
    "[data-testid*='upload']",
    "[class*='attachment']",
    "[class*='file']",
    "[aria-label*='attachment']",
    "[aria-label*='file']",
    "a",
    "button",
])

_NAVIGATION_FILE_PATH_RE = re.compile(
    r"/backend-api/files/|/backend-api/estuary/content|/api/files/|/files/|/prompts/|googleusercontent\.com/gg/", re.I
)
_FILE_ID_SIGNAL_RE = re.compile(r"file-service://|/backend-api/files/|/backend-api/estuary/content", re.I)
_BACKEND_SIGNAL_RE = re.compile(r"/backend-api/estuary/content|/backend-api/files/", re.I)
_URL_IN_TEXT_RE = re.compile(r"https?://[^\s\"'<>]+", re.I)


def is_ui_asset(url: str) -> bool:
    return bool(re.search(r"avatar|icon|logo|sprite|favicon", url, re.I))


def is_navigation_url(url: str) -> bool:
    """True for in-app page links on the chat hosts (conversation links, settings, ...)."""
    try:
        parsed = urlsplit(url)
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    lower = url.lower()
    if "oaiusercontent.com" in host and not is_likely_oai_attachment_url(lower):
        return True
    if (
        _NAVIGATION_FILE_PATH_RE.search(lower)
        or looks_like_file_url(lower)
        or looks_like_image_url(lower)
        or looks_like_pdf_url(lower)
    ):
        return False
    return any(h in host for h in ("gemini.google.com", "bard.google.com", "chatgpt.com", "aistudio.google.com"))


def attr_text(value) -> str:
    if isinstance(value, list):
        return " ".join(str(v) for v in value)
    return str(value or "")


def element_text(tag: Tag) -> str:
    return re.sub(r"\s+", " ", tag.get_text(" ")).strip()


class AttachmentCollector:
    """Ordered, URL-keyed attachment candidates for one turn."""

    def __init__(self, ctx: MiningContext):
        self.ctx = ctx
        self._found: dict[str, CaptureAttachment] = {}

    def __len__(self):
        return len(self._found)

    def results(self) -> list[CaptureAttachment]:
        return list(self._found.values())

    def put(self, attachment: CaptureAttachment):
        self._found.setdefault(attachment.original_url, attachment)

    def put_direct(self, url: str, kind: str, mime: str | None = None):
        if url not in self._found:
            self._found[url] = CaptureAttachment(
                kind=kind, original_url=url, mime=mime if mime is not None else infer_attachment_mime(kind, url)
            )

    def add_candidate(self, raw_url: str, mime_hint: str | None = None, label: str = ""):
        absolute = self.ctx.to_absolute(raw_url) or raw_url
        if not absolute or is_navigation_url(absolute):
            return
        lower = absolute.lower()
        if "/backend-api/estuary/content" in lower and not self.ctx.extract_estuary_file_id(absolute):
            return
        if "/backend-api/files/" in lower and not extract_backend_file_id_from_url(absolute):
            return

        kind = infer_kind_from_mime_hint(mime_hint) or infer_attachment_kind(absolute, label)
        is_backend_file = "/backend-api/files/" in lower or "/backend-api/estuary/content" in lower
        if is_backend_file and re.search(r"/simple(?:[/?]|$)", absolute, re.I):
            return
        if (
            kind == "file"
            and not looks_like_file_url(absolute)
            and not absolute.startswith(("blob:", "data:"))
            and not is_backend_file
            and not is_likely_oai_attachment_url(lower)
        ):
            return

        mime = mime_hint or infer_attachment_mime(kind, absolute)
        previous = self._found.get(absolute)
        if previous is None:
            self._found[absolute] = CaptureAttachment(kind=kind, original_url=absolute, mime=mime)
        elif kind_score(kind) > kind_score(previous.kind):
            self._found[absolute] = previous.model_copy(update={"kind": kind, "mime": previous.mime or mime})
        elif not previous.mime and mime:
            self._found[absolute] = previous.model_copy(update={"mime": mime})

    def add_file_ids(
        self,
        raw: str,
        mime_hint: str | None = None,
        allow_uuid: bool = False,
        source_key: str = "",
        label: str = "",
        post_ids: list[str] | None = None,
        conversation_ids: list[str] | None = None,
    ):
        for file_id in self.ctx.extract_file_ids(raw, allow_uuid, source_key):
            for url in self.ctx.build_candidate_urls(file_id, post_ids, conversation_ids):
                self.add_candidate(url, mime_hint, label)


def extract_urls_from_element(tag: Tag, ctx: MiningContext) -> list[str]:
    out: list[str] = []

    def add(raw: str):
        absolute = ctx.to_absolute(raw)
        if absolute and absolute not in out:
            out.append(absolute)

    for name, value in tag.attrs.items():
        trimmed = attr_text(value).strip()
        if not trimmed:
            continue
        lower = name.lower()
        if lower in ("href", "src") or any(part in lower for part in ("url", "href", "src", "download")):
            add(trimmed)
        for match in _URL_IN_TEXT_RE.findall(trimmed):
            add(match)
    for match in _URL_IN_TEXT_RE.findall(tag.get_text(" ")):
        add(match)
    return out


def _usable_link(url: str) -> bool:
    return bool(url) and not url.lower().startswith("javascript:") and not is_navigation_url(url)


# ---------------------------------------------------------------------------
# Markup
# ---------------------------------------------------------------------------

def _collect_images_and_links(node: Tag, collector: AttachmentCollector):
    ctx = collector.ctx
    for img in node.select("img[src]"):
        src = ctx.to_absolute(attr_text(img.get("src")))
        if not src or is_ui_asset(src):
            continue
        if re.search(r"drive-thirdparty\.googleusercontent\.com/\d+/type/", src, re.I):
            continue
        if looks_like_image_url(src):
            collector.put_direct(src, "image")

    for link in node.select("a[href]"):
        href = ctx.to_absolute(attr_text(link.get("href")))
        if not _usable_link(href):
            continue
        kind = infer_attachment_kind(href, link.get_text().strip())
        if kind == "file" and not looks_like_file_url(href):
            continue
        collector.put_direct(href, kind)


def _collect_attachment_chips(node: Tag, collector: AttachmentCollector):
    ctx = collector.ctx
    for chip in node.select(ATTACHMENT_CANDIDATE_SELECTOR):
        label = element_text(chip)
        for url in extract_urls_from_element(chip, ctx):
            if not _usable_link(url):
                continue
            kind = infer_attachment_kind(url, label)
            if kind == "file" and not looks_like_file_url(url):
                continue
            collector.put_direct(url, kind)

        for name, value in chip.attrs.items():
            raw = attr_text(value)
            if not raw:
                continue
            if (
                re.search(r"file|asset|attachment|upload|document|id", name, re.I)
                or _FILE_ID_SIGNAL_RE.search(raw)
                or looks_like_opaque_file_id(raw)
            ):
                collector.add_file_ids(raw, allow_uuid=bool(_BACKEND_SIGNAL_RE.search(raw)), source_key=name)
        collector.add_file_ids(label)


def _collect_file_tiles(node: Tag, collector: AttachmentCollector, probe: ProbeData | None):
    ctx = collector.ctx
    for tile in node.select(FILE_LABEL_SELECTOR):
        label = re.sub(
            r"\s+", " ", attr_text(tile.get("aria-label")) or attr_text(tile.get("title")) or tile.get_text(" ")
        ).strip()
        if not looks_like_attachment_file_name_label(label):
            continue
        label_kind = infer_attachment_kind("", label)
        label_mime = infer_attachment_mime(label_kind, label)
        ext = file_name_extension(label)
        allow_label_uuid = bool(ext) and not is_image_extension(ext)

        scopes = [tile, *list(tile.parents)[:3]]
        for scope in scopes:
            if not isinstance(scope, Tag) or scope.name == "[document]":
                continue
            for url in extract_urls_from_element(scope, ctx):
                if _usable_link(url):
                    collector.add_candidate(url, None, label)
            for name, value in scope.attrs.items():
                raw = attr_text(value)
                if not raw:
                    continue
                if (
                    re.search(r"file|asset|attachment|upload|document|pointer|download|id", name, re.I)
                    or _FILE_ID_SIGNAL_RE.search(raw)
                    or looks_like_opaque_file_id(raw)
                ):
                    allow = bool(_BACKEND_SIGNAL_RE.search(raw)) or allow_label_uuid
                    collector.add_file_ids(raw, label_mime, allow_uuid=allow, source_key=name)
            scope_text = scope.get_text(" ").strip()
            if scope_text and (
                looks_like_attachment_file_name_label(scope_text)
                or re.search(r"file[-_]|backend-api|estuary|download", scope_text, re.I)
            ):
                allow = bool(re.search(r"backend-api|estuary", scope_text, re.I)) or allow_label_uuid
                collector.add_file_ids(scope_text, label_mime, allow_uuid=allow)

        collector.add_file_ids(label, label_mime, allow_uuid=allow_label_uuid)

        if probe is not None:
            found = scan_file_tile_props(probe.chain_for(tile), ctx)
            for raw_id in found:
                if re.match(r"^https?://", raw_id, re.I) or "/backend-api/" in raw_id.lower():
                    collector.add_candidate(raw_id, label_mime, label)
                else:
                    for candidate in ctx.build_candidate_urls(raw_id):
                        collector.add_candidate(candidate, label_mime, label)
            if found:
                logger.info("[discovery] file-tile props for %r: %s", label, found[:4])

        placeholder = virtual_upload_attachment(label)
        if placeholder is not None:
            collector.put(placeholder)


def _collect_file_id_nodes(node: Tag, collector: AttachmentCollector):
    own = [node] if node.css.match(FILE_ID_SELECTOR) else []
    for file_node in [*own, *node.select(FILE_ID_SELECTOR)]:
        for name, value in file_node.attrs.items():
            raw = attr_text(value)
            if raw:
                collector.add_file_ids(raw, allow_uuid=True, source_key=name)
        text = file_node.get_text(" ").strip()
        if text:
            collector.add_file_ids(text, allow_uuid=True)


def _collect_props_payloads(node: Tag, collector: AttachmentCollector, probe: ProbeData):
    payloads: list[dict] = []
    seen: set[int] = set()
    for tag in [node, *node.select(PROPS_NODE_SELECTOR)[:180]]:
        for props in probe.props_for(tag):
            if id(props) not in seen:
                seen.add(id(props))
                payloads.append(props)
    for payload in payloads:
        for attachment in extract_attachments_from_api_message(payload, collector.ctx, max_visited=800):
            collector.add_candidate(attachment.original_url, attachment.mime)


def extract_structural_attachments(
    node: Tag, ctx: MiningContext, probe: ProbeData | None = None
) -> list[CaptureAttachment]:
    """Attachment candidates found in a turn element's markup (and its probed props)."""
    collector = AttachmentCollector(ctx)
    _collect_images_and_links(node, collector)
    _collect_attachment_chips(node, collector)
    _collect_file_tiles(node, collector, probe)
    _collect_file_id_nodes(node, collector)
    if probe is not None:
        _collect_props_payloads(node, collector, probe)
    return collector.results()


# ---------------------------------------------------------------------------
# Markdown text
# ---------------------------------------------------------------------------

_MD_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
_BARE_URL_RE = re.compile(r"https?://[^\s<>\"')\]]+", re.I)


def trim_trailing_punctuation(url: str) -> str:
    return re.sub(r"[),.;!?]+$", "", url)


def extract_attachments_from_markdown(markdown: str, ctx: MiningContext) -> list[CaptureAttachment]:
    text = (markdown or "").strip()
    if not text:
        return []
    collector = AttachmentCollector(ctx)
    for match in _MD_IMAGE_RE.finditer(text):
        url = trim_trailing_punctuation(match.group(2).strip())
        if url:
            collector.add_candidate(url, None, match.group(1).strip())
    for match in _MD_LINK_RE.finditer(text):
        url = trim_trailing_punctuation(match.group(2).strip())
        if url:
            collector.add_candidate(url, None, match.group(1).strip())
    for match in _BARE_URL_RE.finditer(text):
        url = trim_trailing_punctuation(match.group(0).strip())
        if url:
            collector.add_candidate(url)
    return collector.results()


# ---------------------------------------------------------------------------
# API / props payloads
# ---------------------------------------------------------------------------

_RECORD_KEYS_RE = re.compile(
    r"(file|asset|attachment|upload|document|mime|filename|download|pointer|blob|content_type|contenttype)"
)
_KEY_SUGGESTS_FILE_RE = re.compile(r"(^|_)(file|asset|attachment|upload|document|pointer|blob)(_|$)", re.I)
_KEY_FILE_ID_RE = re.compile(r"(file|asset|attachment|upload|document)[_-]?id$", re.I)
_TYPE_KEY_RE = re.compile(r"(^|_)(type|kind|role|status|recipient)$", re.I)


def extract_attachments_from_api_message(
    message, ctx: MiningContext, max_visited: int = 2200
) -> list[CaptureAttachment]:
    """
    Mine attachment URLs and file IDs from an arbitrary JSON-like structure
    (a conversation-API message or a component props object).

    Walks lists and dicts with an explicit stack and stops after
    ``max_visited`` dicts. Each dict is read as one record: its mime / name /
    post / conversation keys parameterize the URLs built from its file IDs.
    """
    collector = AttachmentCollector(ctx)
    stack = [message]
    visited: set[int] = set()

    while stack:
        node = stack.pop()
        if isinstance(node, list):
            stack.extend(node)
            continue
        if not isinstance(node, dict) or id(node) in visited:
            continue
        visited.add(id(node))
        if len(visited) > max_visited:
            break

        record_like = bool(_RECORD_KEYS_RE.search(" ".join(str(k) for k in node).lower()))
        local_mime = None
        local_name = ""
        file_ids: list[str] = []
        post_ids: list[str] = []
        conversation_ids: list[str] = []
        urls: list[str] = []

        for key, value in node.items():
            key = str(key)
            if not isinstance(value, str):
                stack.append(value)
                continue
            trimmed = value.strip()
            if not trimmed:
                continue
            if re.search(r"mime|content[_-]?type", key, re.I) and re.match(r"^[a-z0-9.+-]+/[a-z0-9.+-]+", trimmed, re.I):
                local_mime = trimmed.split(";")[0].strip().lower()
            if re.search(r"(^|_)(name|filename|title)$", key, re.I):
                local_name = trimmed
            if re.search(r"post[_-]?id|message[_-]?id|node[_-]?id|turn[_-]?id|id", key, re.I):
                post_ids += [p for p in extract_likely_post_ids(trimmed, ctx.page_url) if p not in post_ids]
            if re.search(r"conversation|context|scope", key, re.I):
                conversation_ids += [
                    c for c in extract_likely_conversation_ids(trimmed, ctx.page_url) if c not in conversation_ids
                ]
            if is_likely_attachment_url(trimmed) and trimmed not in urls:
                urls.append(trimmed)
            if _TYPE_KEY_RE.search(key):
                continue

            key_suggests_file = bool(_KEY_SUGGESTS_FILE_RE.search(key) or _KEY_FILE_ID_RE.search(key))
            allow_uuid = key_suggests_file or (record_like and bool(re.search(r"(^id$|[_-]id$)", key, re.I)))
            ids = ctx.extract_file_ids(trimmed, allow_uuid, key)
            if ids and (
                key_suggests_file or allow_uuid or looks_like_opaque_file_id(trimmed)
                or "file-service://" in trimmed.lower()
            ):
                file_ids += [i for i in ids if i not in file_ids]
            else:
                inline_id = ctx.maybe_file_id(trimmed, allow_uuid, key)
                if inline_id and inline_id not in file_ids:
                    file_ids.append(inline_id)

        for url in urls:
            collector.add_candidate(url, local_mime, local_name)
        for file_id in file_ids:
            for candidate in ctx.build_candidate_urls(file_id, post_ids, conversation_ids):
                collector.add_candidate(candidate, local_mime, local_name)

    return collector.results()

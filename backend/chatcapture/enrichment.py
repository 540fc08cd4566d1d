"""
Post-extraction attachment enrichment.

ChatGPT
    The conversation API knows every message's attachments even when the
    DOM shows only a file name. Its per-role attachment buckets are
    assigned, in order, to the DOM turns of the same role. Attachment URLs
    the page fetched but no turn references are then handed to the turns
    whose text names matching files.

AI Studio
    Files picked from Google Drive are only visible as Drive v3 media
    requests; they attach to the first user turn as links.
"""

import logging
import re
from urllib.parse import quote, urlsplit

from chatcapture.attachments import (
    attachment_display_name,
    file_name_extension,
    find_likely_inline_file_names,
    is_virtual_upload_url,
    looks_like_attachment_file_name_label,
    merge_turn_attachments,
    name_stem,
    semantic_key,
)
from chatcapture.classify import is_image_extension, is_likely_oai_attachment_url
from chatcapture.discovery import AttachmentCollector, extract_attachments_from_api_message, is_ui_asset
from chatcapture.fetcher import AttachmentFetcher
from chatcapture.identifiers import parse_chatgpt_conversation_id
from chatcapture.models import CaptureAttachment, CaptureTurn, TrackedNetworkRecord
from chatcapture.snapshot import PageSnapshot
from chatcapture.turns import dedupe_turns

logger = logging.getLogger(__name__)

MAX_CONVERSATION_API_URLS = 20
MAX_CONVERSATION_IDS_TRIED = 8
_CONVERSATION_API_RE = re.compile(r"/backend-api/conversations?/", re.I)
_DRIVE_MEDIA_RE = re.compile(r"googleapis\.com/drive/v3/files/([^?]+)\?alt=media", re.I)


def _successful(records: list[TrackedNetworkRecord], last: int) -> list[TrackedNetworkRecord]:
    return [
        r for r in records[-last:]
        if r.method in ("GET", "POST") and (r.ok or r.status == 0)
    ]


# ---------------------------------------------------------------------------
# ChatGPT conversation API
# ---------------------------------------------------------------------------

def collect_conversation_api_urls(snapshot: PageSnapshot) -> list[str]:
    out: list[str] = []
    for record in _successful(snapshot.records, 1200):
        url = snapshot.ctx.to_absolute(record.url) or record.url
        if _CONVERSATION_API_RE.search(url) and url not in out:
            out.append(url)
    out = out[:MAX_CONVERSATION_API_URLS]
    if out:
        logger.info("[enrich] conversation api urls: %s", out[:6])
    return out


def role_from_api_value(raw) -> str | None:
    if not isinstance(raw, str):
        return None
    lower = raw.lower()
    if "assistant" in lower or "model" in lower or lower == "ai":
        return "assistant"
    if "user" in lower or "human" in lower:
        return "user"
    if "system" in lower:
        return "system"
    if "tool" in lower or "function" in lower:
        return "tool"
    return None


def extract_conversation_mapping(payload: dict) -> dict | None:
    for holder in (payload, payload.get("conversation"), payload.get("data")):
        if isinstance(holder, dict) and isinstance(holder.get("mapping"), dict):
            return holder["mapping"]
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("conversation"), dict):
        mapping = data["conversation"].get("mapping")
        if isinstance(mapping, dict):
            return mapping
    return None


async def fetch_conversation_payload(
    conversation_id: str, snapshot: PageSnapshot, fetcher: AttachmentFetcher
) -> dict | None:
    discovered = collect_conversation_api_urls(snapshot)
    base = f"/backend-api/conversation/{quote(conversation_id, safe='')}"
    requests = [*discovered, base]
    if not discovered:
        requests.append(f"{base}?tree=true")

    tried = []
    for raw in requests:
        url = snapshot.ctx.to_absolute(raw) or raw
        if url in tried:
            continue
        tried.append(url)
        payload = await fetcher.fetch_json(url)
        if payload is not None:
            return payload
    logger.info("[enrich] conversation api unavailable, tried %s", tried)
    return None


async def fetch_api_attachment_turns(
    snapshot: PageSnapshot, fetcher: AttachmentFetcher
) -> list[tuple[str, list[CaptureAttachment]]]:
    """(role, attachments) per API message that has attachments, by create_time."""
    conversation_ids = []
    for cid in [parse_chatgpt_conversation_id(snapshot.url), *snapshot.ctx.conversation_ids]:
        if cid and cid not in conversation_ids:
            conversation_ids.append(cid)
    if not conversation_ids:
        return []

    payload = None
    for conversation_id in conversation_ids[:MAX_CONVERSATION_IDS_TRIED]:
        payload = await fetch_conversation_payload(conversation_id, snapshot, fetcher)
        if payload is not None:
            break
    if payload is None:
        return []
    mapping = extract_conversation_mapping(payload)
    if mapping is None:
        return []

    items = []
    for node in mapping.values():
        message = node.get("message") if isinstance(node, dict) else None
        if not isinstance(message, dict):
            continue
        author = message.get("author") if isinstance(message.get("author"), dict) else {}
        role = role_from_api_value(author.get("role", message.get("role")))
        if not role:
            continue
        attachments = extract_attachments_from_api_message(message, snapshot.ctx)
        if not attachments:
            continue
        created = message.get("create_time")
        try:
            created_at = float(created) if created is not None else 0.0
        except (TypeError, ValueError):
            created_at = 0.0
        items.append((created_at, role, attachments))

    items.sort(key=lambda item: item[0])
    return [(role, attachments) for _, role, attachments in items]


def assign_api_attachments(
    turns: list[CaptureTurn], api_turns: list[tuple[str, list[CaptureAttachment]]]
) -> list[CaptureTurn]:
    buckets: dict[str, list[list[CaptureAttachment]]] = {}
    for role, attachments in api_turns:
        if attachments:
            buckets.setdefault(role, []).append(attachments)
    cursor: dict[str, int] = {}

    out = []
    for turn in turns:
        bucket = buckets.get(turn.role, [])
        i = cursor.get(turn.role, 0)
        if i >= len(bucket):
            out.append(turn)
            continue
        cursor[turn.role] = i + 1
        out.append(turn.model_copy(update={"attachments": merge_turn_attachments(turn.attachments, bucket[i])}))
    return out


# ---------------------------------------------------------------------------
# ChatGPT resource fallback
# ---------------------------------------------------------------------------

def extract_resource_attachments(snapshot: PageSnapshot) -> list[CaptureAttachment]:
    """Attachment-shaped requests the page made during the capture window."""
    ctx = snapshot.ctx
    collector = AttachmentCollector(ctx)
    for record in _successful(snapshot.records, 1400):
        url = ctx.to_absolute(record.url) or record.url
        try:
            host = (urlsplit(url).hostname or "").lower()
        except ValueError:
            continue
        if "chatgpt.com" not in host and "oaiusercontent.com" not in host:
            continue
        lower = url.lower()
        if is_ui_asset(lower):
            continue
        if not (
            "/backend-api/estuary/content" in lower
            or "/backend-api/files/" in lower
            or ("oaiusercontent.com" in host and is_likely_oai_attachment_url(lower))
        ):
            continue
        collector.add_candidate(url)
        estuary_id = ctx.extract_estuary_file_id(url)
        if estuary_id:
            for candidate in ctx.build_candidate_urls(estuary_id):
                collector.add_candidate(candidate)
    return collector.results()


def attachment_matches_inline_file_names(attachment: CaptureAttachment, names: list[str]) -> bool:
    if not names:
        return False
    attachment_name = attachment_display_name(attachment).strip().lower()
    attachment_stem = name_stem(attachment_name)
    mime = (attachment.mime or "").lower()
    attachment_ext = file_name_extension(attachment.original_url)

    for name in names:
        lowered = name.strip().lower()
        if lowered and attachment_name and lowered == attachment_name:
            return True
        ext = file_name_extension(name)
        if not ext:
            continue
        stem = name_stem(lowered)
        if stem and attachment_stem and stem == attachment_stem:
            return True
        if ext == "pdf" and (attachment.kind == "pdf" or "application/pdf" in mime or attachment_ext == "pdf"):
            return True
        if is_image_extension(ext) and (
            attachment.kind == "image" or mime.startswith("image/") or is_image_extension(attachment_ext)
        ):
            return True
        if not is_image_extension(ext) and ext != "pdf" and attachment_ext == ext and attachment_name:
            return True
    return False


def turn_file_name_hints(turn: CaptureTurn) -> list[str]:
    names = [name.strip() for name in find_likely_inline_file_names(turn.content_markdown) if name.strip()]
    for attachment in turn.attachments or []:
        if not is_virtual_upload_url(attachment.original_url):
            continue
        name = attachment_display_name(attachment).strip()
        if name and looks_like_attachment_file_name_label(name) and name not in names:
            names.append(name)
    return names


def apply_resource_fallback(turns: list[CaptureTurn], snapshot: PageSnapshot) -> list[CaptureTurn]:
    if not turns:
        return turns
    resources = extract_resource_attachments(snapshot)
    if not resources:
        return turns

    existing = set()
    existing_semantic = set()
    for turn in turns:
        for attachment in turn.attachments or []:
            existing.add(attachment.original_url.strip())
            existing_semantic.add(semantic_key(attachment.original_url, snapshot.ctx))
    pool = [
        a for a in resources
        if a.kind != "image"
        and a.original_url.strip() not in existing
        and semantic_key(a.original_url, snapshot.ctx) not in existing_semantic
    ]
    unique = merge_turn_attachments([], pool, snapshot.ctx) or []
    if not unique:
        return turns

    speaking = [i for i, t in enumerate(turns) if t.role in ("user", "assistant")]
    preferred = [
        i for i in speaking
        if any(is_virtual_upload_url(a.original_url) for a in turns[i].attachments or [])
        or find_likely_inline_file_names(turns[i].content_markdown)
    ]

    out = [t.model_copy(update={"attachments": merge_turn_attachments([], t.attachments or [])}) for t in turns]
    remaining = list(unique)
    for i in preferred:
        if not remaining:
            break
        names = turn_file_name_hints(out[i])
        matched = [a for a in remaining if attachment_matches_inline_file_names(a, names)]
        if not matched:
            continue
        consumed = {a.original_url for a in matched}
        remaining = [a for a in remaining if a.original_url not in consumed]
        out[i] = out[i].model_copy(update={"attachments": merge_turn_attachments(out[i].attachments, matched)})

    if remaining:
        if preferred:
            target = preferred[0]
        elif speaking:
            target = speaking[-1]
        else:
            target = len(turns) - 1
        out[target] = out[target].model_copy(
            update={"attachments": merge_turn_attachments(out[target].attachments, remaining)}
        )

    logger.info(
        "[enrich] resource fallback merged %d attachments (%d unmatched): %s",
        len(unique), len(remaining), [a.original_url[:220] for a in unique[:6]],
    )
    return out


async def enrich_chatgpt_turns(
    turns: list[CaptureTurn], snapshot: PageSnapshot, fetcher: AttachmentFetcher
) -> list[CaptureTurn]:
    if not turns:
        return turns
    api_turns = await fetch_api_attachment_turns(snapshot, fetcher)
    if api_turns:
        turns = assign_api_attachments(turns, api_turns)
    return dedupe_turns(apply_resource_fallback(turns, snapshot))


# ---------------------------------------------------------------------------
# AI Studio Drive files
# ---------------------------------------------------------------------------

def extract_drive_attachments(records: list[TrackedNetworkRecord]) -> list[CaptureAttachment]:
    found: dict[str, CaptureAttachment] = {}
    for record in records:
        if _DRIVE_MEDIA_RE.search(record.url) and record.url not in found:
            found[record.url] = CaptureAttachment(kind="file", original_url=record.url)
    return list(found.values())


def apply_drive_attachments(turns: list[CaptureTurn], snapshot: PageSnapshot) -> list[CaptureTurn]:
    drive = extract_drive_attachments(snapshot.records)
    if not drive:
        return turns
    first_user = next((i for i, t in enumerate(turns) if t.role == "user"), None)
    if first_user is None:
        return turns
    out = list(turns)
    out[first_user] = out[first_user].model_copy(
        update={"attachments": merge_turn_attachments(out[first_user].attachments, drive)}
    )
    logger.info("[enrich] %d drive attachments on the first user turn", len(drive))
    return out

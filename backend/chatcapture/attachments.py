"""
Attachment identity, naming and merging.

Attachments are deduplicated by *semantic* key: the backend file ID an URL
resolves to, else the inline-data prefix, else the literal URL. Merges never
downgrade: the more specific kind wins and a known mime is never cleared.
"""

import re
from urllib.parse import parse_qs, quote, unquote, urlsplit

from chatcapture.classify import (
    infer_attachment_mime,
    is_data_url,
    is_file_like_extension,
    is_image_extension,
    kind_score,
    looks_like_file_url,
    looks_like_image_url,
    looks_like_pdf_url,
)
from chatcapture.identifiers import MiningContext, extract_backend_file_id_from_url
from chatcapture.models import CaptureAttachment

VIRTUAL_UPLOAD_PREFIX = "chatcapture://upload/"
UNNAMED_FILE = "unnamed file"

_INLINE_FILE_NAME_RE = re.compile(
    r"[a-z0-9._-]+\.(pdf|doc|docx|ppt|pptx|xls|xlsx|csv|tsv|md|txt|png|jpg|jpeg|webp|gif|bmp|svg)\b", re.I
)


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

def file_name_extension(name: str) -> str:
    clean = name.strip().lower().split("?")[0].split("#")[0]
    return clean.rsplit(".", 1)[-1] if "." in clean else clean


def name_stem(name: str) -> str:
    return re.sub(r"\.[a-z0-9]{1,10}$", "", name, flags=re.I)


def looks_like_attachment_file_name_label(label: str) -> bool:
    trimmed = label.strip()
    if not trimmed or len(trimmed) > 260:
        return False
    ext = file_name_extension(trimmed)
    if not ext or not is_file_like_extension(ext):
        return False
    if re.search(r"\s{2,}", trimmed):
        return False
    return bool(re.search(r"[a-z0-9]", trimmed, re.I))


def find_likely_inline_file_names(text: str) -> list[str]:
    """File names mentioned in the first six non-empty lines of a turn."""
    lines = [line.strip() for line in re.split(r"\r?\n", text or "") if line.strip()][:6]
    out: list[str] = []
    for line in lines:
        match = _INLINE_FILE_NAME_RE.search(line)
        if match and match.group(0) not in out:
            out.append(match.group(0))
    return out


def parse_data_url_name(url: str) -> str:
    if not is_data_url(url):
        return ""
    meta = url.strip()[5:].split(",")[0]
    for part in (p.strip() for p in meta.split(";")):
        if not part.lower().startswith("name="):
            continue
        raw = part[5:].strip().strip("\"'")
        if raw:
            return unquote(raw) or raw
    return ""


# ---------------------------------------------------------------------------
# Virtual upload placeholders
# ---------------------------------------------------------------------------

def build_virtual_upload_url(name: str) -> str:
    return VIRTUAL_UPLOAD_PREFIX + quote(name.strip(), safe="")


def is_virtual_upload_url(url: str) -> bool:
    return url.strip().lower().startswith(VIRTUAL_UPLOAD_PREFIX)


def virtual_upload_name(url: str) -> str:
    if not is_virtual_upload_url(url):
        return ""
    raw = url.strip()[len(VIRTUAL_UPLOAD_PREFIX):].split("?")[0]
    if not raw:
        return UNNAMED_FILE
    return unquote(raw) or raw


def virtual_upload_attachment(label: str) -> CaptureAttachment | None:
    """Placeholder for a non-image file that is named on the page but never linked."""
    ext = file_name_extension(label)
    if not ext or is_image_extension(ext):
        return None
    kind = "pdf" if ext == "pdf" else "file"
    return CaptureAttachment(
        kind=kind,
        original_url=build_virtual_upload_url(label),
        mime=infer_attachment_mime(kind, label),
    )


def attachment_display_name(attachment: CaptureAttachment) -> str:
    virtual_name = virtual_upload_name(attachment.original_url)
    if virtual_name:
        return virtual_name

    raw = attachment.original_url.strip()
    if not raw:
        return "unnamed attachment"
    if is_data_url(raw):
        explicit = parse_data_url_name(raw)
        if explicit:
            return explicit
        return {"pdf": "PDF file", "image": "image file"}.get(attachment.kind, "file")

    try:
        parsed = urlsplit(raw)
    except ValueError:
        return raw[:64]
    segments = [segment for segment in parsed.path.split("/") if segment]
    segment = segments[-1] if segments else ""
    if segment and not re.match(r"^(content|download)$", segment, re.I):
        return unquote(segment)

    query = parse_qs(parsed.query)
    file_id = next((query[key][0] for key in ("id", "file_id", "fileId") if query.get(key)), "")
    base = unquote(file_id).strip()
    if base:
        mime = (attachment.mime or "").lower()
        ext = ""
        if attachment.kind == "pdf" or "application/pdf" in mime:
            ext = ".pdf"
        elif attachment.kind == "image" or mime.startswith("image/"):
            ext = ".jpg"
        return base + ext
    if segment:
        return unquote(segment)
    return raw[:64]


def is_generic_derived_attachment_name(name: str) -> bool:
    lower = name.strip().lower()
    if not lower or lower in ("content", "download"):
        return True
    if re.match(r"^file[_-][a-z0-9]+(?:\.[a-z0-9]{2,6})?$", lower):
        return True
    return bool(re.match(
        r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}(?:\.[a-z0-9]{2,6})?$", lower
    ))


def is_backend_attachment_url(url: str) -> bool:
    lower = url.strip().lower()
    return "/backend-api/files/" in lower or "/backend-api/estuary/content" in lower


def is_downloadable_reference(url: str) -> bool:
    url = url.strip()
    if not url or is_virtual_upload_url(url):
        return False
    return is_data_url(url) or looks_like_file_url(url) or looks_like_pdf_url(url) or looks_like_image_url(url)


# ---------------------------------------------------------------------------
# Semantic identity and merge
# ---------------------------------------------------------------------------

def semantic_key(url: str, ctx: MiningContext | None = None) -> str:
    raw = url.strip()
    if not raw:
        return ""
    ctx = ctx or MiningContext()
    file_id = extract_backend_file_id_from_url(raw) or ctx.extract_estuary_file_id(raw)
    if file_id:
        return f"fileid:{file_id.lower()}"
    if is_data_url(raw):
        return f"data:{raw[:128]}"
    return f"url:{raw}"


def merge_attachment(previous: CaptureAttachment, incoming: CaptureAttachment) -> CaptureAttachment:
    """
    Combine two attachments with the same semantic key.

    The higher-scoring kind wins; a mime known on either side survives; a
    settled status (cached / failed) is never reset to remote_only.
    """
    if kind_score(incoming.kind) > kind_score(previous.kind):
        status = incoming.status if previous.status == "remote_only" else previous.status
        return incoming.model_copy(update={"mime": incoming.mime or previous.mime, "status": status})
    update = {}
    if not previous.mime and incoming.mime:
        update["mime"] = incoming.mime
    if previous.status == "remote_only" and incoming.status != "remote_only":
        update["status"] = incoming.status
    return previous.model_copy(update=update) if update else previous


def merge_turn_attachments(
    current: list[CaptureAttachment] | None,
    incoming: list[CaptureAttachment] | None,
    ctx: MiningContext | None = None,
) -> list[CaptureAttachment] | None:
    merged: dict[str, CaptureAttachment] = {}
    for item in [*(current or []), *(incoming or [])]:
        if not item.original_url.strip():
            continue
        key = semantic_key(item.original_url, ctx)
        merged[key] = merge_attachment(merged[key], item) if key in merged else item
    return list(merged.values()) or None


# ---------------------------------------------------------------------------
# Turn-level clean-up
# ---------------------------------------------------------------------------

def strip_virtual_placeholders(attachments: list[CaptureAttachment]) -> list[CaptureAttachment]:
    """Drop placeholders whose file name (or stem) a real attachment already carries."""
    if len(attachments) < 2:
        return attachments
    real = [a for a in attachments if not is_virtual_upload_url(a.original_url)]
    if not real:
        return attachments

    real_names = {attachment_display_name(a).strip().lower() for a in real} - {""}
    real_stems = {name_stem(name) for name in real_names}

    stripped = []
    for attachment in attachments:
        if not is_virtual_upload_url(attachment.original_url):
            stripped.append(attachment)
            continue
        name = attachment_display_name(attachment).strip().lower()
        if not name or name in real_names:
            continue
        stem = name_stem(name)
        if stem and stem in real_stems:
            continue
        stripped.append(attachment)

    if not any(not is_virtual_upload_url(a.original_url) for a in stripped):
        return attachments
    return stripped


def strip_redundant_failed(attachments: list[CaptureAttachment]) -> list[CaptureAttachment]:
    """Prune failed backend attachments with generic names once a cached one of a compatible kind exists."""
    if len(attachments) < 2:
        return attachments
    cached_kinds = {a.kind for a in attachments if a.status == "cached"}
    if not cached_kinds:
        return attachments

    kept = []
    for attachment in attachments:
        if attachment.status != "failed" or not is_backend_attachment_url(attachment.original_url):
            kept.append(attachment)
            continue
        if not is_generic_derived_attachment_name(attachment_display_name(attachment)):
            kept.append(attachment)
            continue
        if attachment.kind != "pdf":
            continue
        if attachment.kind in cached_kinds or "file" in cached_kinds:
            continue
        kept.append(attachment)
    return kept

"""
Attachment classification.

Pure, total predicates over URLs / inline data references / labels. None of
these raise: malformed input simply classifies as a plain "file".
"""

import re


FILE_LIKE_EXTENSIONS = {
    "pdf", "doc", "docx", "ppt", "pptx", "xls", "xlsx", "csv", "txt",
    "zip", "rar", "7z", "json", "md",
    "png", "jpg", "jpeg", "webp", "gif", "bmp", "svg",
    "mp3", "mp4", "wav",
}
IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "webp", "gif", "bmp", "svg"}

IMAGE_MIME_BY_EXTENSION = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
}

KIND_SCORES = {"pdf": 2, "image": 1, "file": 0}

_DATA_MIME_RE = re.compile(r"^data:([^;,]+)[;,]", re.I)
_IMAGE_FORMAT_PARAMS = tuple(f"format={ext}" for ext in ("png", "jpg", "jpeg", "webp", "gif", "bmp", "svg"))
_ESTUARY_RE = re.compile(r"/backend-api/estuary/content", re.I)
_FILE_PATH_RE = re.compile(r"/backend-api/files/|/backend-api/estuary/content|/api/files/|/files/", re.I)
_DOWNLOAD_PARAM_RE = re.compile(r"[?&](download|filename|attachment)=", re.I)
_OAI_SANDBOX_RE = re.compile(r"web-sandbox\.oaiusercontent\.com/\?(?:[^#]*&)?app=chatgpt(?:[&#]|$)", re.I)
_OAI_ATTACHMENT_RE = re.compile(
    r"/backend-api/files/"
    r"|/(?:download|content|files?)/"
    r"|[?&](download|filename|attachment|response-content-disposition)="
    r"|oaiusercontent\.com/[^?#]*file[-_][a-z0-9-]{4,}",
    re.I,
)
_LABEL_KIND_EXT_RE = re.compile(r"\.(pdf|png|jpg|jpeg|webp|gif|bmp|svg)\b", re.I)


def is_file_like_extension(ext: str) -> bool:
    return ext.strip().lower() in FILE_LIKE_EXTENSIONS


def is_image_extension(ext: str) -> bool:
    return ext in IMAGE_EXTENSIONS


def is_data_url(url: str) -> bool:
    return url.strip().lower().startswith("data:")


def data_url_mime(url: str) -> str:
    if not url.startswith("data:"):
        return ""
    match = _DATA_MIME_RE.match(url)
    return match.group(1).lower() if match else ""


def url_extension(url: str) -> str:
    """Extension of the last dotted segment, ignoring query and fragment."""
    clean = url.split("?")[0].split("#")[0]
    return clean.rsplit(".", 1)[-1].lower() if "." in clean else clean.lower()


def looks_like_cloud_drive_file_url(url: str) -> bool:
    lower = url.lower()
    return (
        "drive.google.com/file/" in lower
        or "drive.google.com/open" in lower
        or "docs.google.com/document/" in lower
        or "docs.google.com/presentation/" in lower
        or "docs.google.com/spreadsheets/" in lower
    )


def looks_like_pdf_url(url: str) -> bool:
    if data_url_mime(url) == "application/pdf":
        return True
    lower = url.lower()
    return ".pdf" in lower or "format=pdf" in lower or "mime=application/pdf" in lower


def looks_like_image_url(url: str) -> bool:
    if data_url_mime(url).startswith("image/"):
        return True
    lower = url.lower()
    if _ESTUARY_RE.search(lower):
        return True
    if any(param in lower for param in _IMAGE_FORMAT_PARAMS) or "mime=image/" in lower:
        return True
    return url_extension(url) in IMAGE_EXTENSIONS


def looks_like_file_url(url: str) -> bool:
    if is_file_like_extension(url_extension(url)):
        return True
    if looks_like_image_url(url) or looks_like_pdf_url(url):
        return True
    if looks_like_cloud_drive_file_url(url):
        return True
    if re.search(r"googleusercontent\.com/gg/", url, re.I):
        return True
    if _FILE_PATH_RE.search(url):
        return True
    if re.search(r"/prompts/", url, re.I):
        return True
    return bool(_DOWNLOAD_PARAM_RE.search(url))


def is_likely_oai_attachment_url(url: str) -> bool:
    lower = url.lower()
    if "oaiusercontent.com" not in lower:
        return False
    if _OAI_SANDBOX_RE.search(lower) or "connector_openai_deep_research." in lower:
        return False
    if _OAI_ATTACHMENT_RE.search(lower):
        return True
    return looks_like_file_url(lower) or looks_like_pdf_url(lower) or looks_like_image_url(lower)


def is_likely_attachment_url(value: str) -> bool:
    """Absolute, inline or backend file reference worth keeping as a candidate."""
    lower = value.lower()
    return (
        lower.startswith(("http://", "https://", "blob:", "data:"))
        or "/backend-api/files/" in lower
        or "/backend-api/estuary/content" in lower
    )


def label_kind(label: str) -> str:
    """``pdf`` or ``image`` when the label carries that file extension, else ``""``."""
    match = _LABEL_KIND_EXT_RE.search(label)
    if match is None:
        return ""
    return "pdf" if match.group(1).lower() == "pdf" else "image"


def infer_attachment_kind(url: str, label: str = "") -> str:
    """Data-URL mime first, then the label's file extension, then the URL."""
    data_mime = data_url_mime(url)
    if data_mime == "application/pdf":
        return "pdf"
    if data_mime.startswith("image/"):
        return "image"

    named = label_kind(label)
    if named:
        return named

    lower_url = url.lower()
    if _ESTUARY_RE.search(lower_url):
        if "format=pdf" in lower_url or "mime=application/pdf" in lower_url:
            return "pdf"
        if any(param in lower_url for param in _IMAGE_FORMAT_PARAMS) or "mime=image/" in lower_url:
            return "image"
        return "file"

    if looks_like_pdf_url(url):
        return "pdf"
    if looks_like_image_url(url):
        return "image"
    return "file"


def infer_attachment_mime(kind: str, url: str) -> str | None:
    data_mime = data_url_mime(url)
    if data_mime:
        return data_mime
    if kind == "pdf" or looks_like_pdf_url(url):
        return "application/pdf"
    if not looks_like_image_url(url):
        return None
    return IMAGE_MIME_BY_EXTENSION.get(url_extension(url))


def infer_kind_from_mime_hint(mime_hint: str | None) -> str | None:
    normalized = (mime_hint or "").strip().lower()
    if normalized.startswith("application/pdf"):
        return "pdf"
    if normalized.startswith("image/"):
        return "image"
    return None


def kind_score(kind: str) -> int:
    return KIND_SCORES.get(kind, 0)

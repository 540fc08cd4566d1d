"""
File / post / conversation identifier mining.

Hosts rarely put a real download URL in markup. What they do expose is an
opaque file reference (``file-AbC123...``, a hex digest, sometimes a bare
UUID) in attributes, inline scripts, component props or lazily-issued
network requests. This module recognizes those references and expands each
one into the backend download URLs it could be served from, using the post
and conversation IDs found on the same page to parameterize the templates.

UUIDs are ambiguous: the same shape is used for conversation IDs. A UUID is
only accepted as a file ID when its source key or surrounding text says so,
and never when it matches the page's own conversation.
"""

import re
from dataclasses import dataclass, field
from urllib.parse import parse_qs, quote, unquote, urljoin, urlsplit

from bs4 import BeautifulSoup


UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
_UUID_ANYWHERE_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.I)

_FILE_PREFIX_RE = re.compile(r"\bfile[-_][a-z0-9-]{6,}\b(?!:)", re.I)
_FILE_SERVICE_RE = re.compile(r"file-service://([^/?#\"'&\s]+)", re.I)
_BACKEND_DOWNLOAD_RE = re.compile(r"/backend-api/files/download/([^/?#\"'&\s]+)", re.I)
_BACKEND_FILES_RE = re.compile(r"/backend-api/files/([^/?#\"'&\s]+)", re.I)
_ID_PARAM_RE = re.compile(r"[?&](?:id|file_id|fileId)=([^&#\"'&\s]+)", re.I)

_POST_ID_RE = re.compile(r"(?:post[_-]?id|message[_-]?id)\s*[:=/\"'\s]+([a-z0-9_-]{6,}|[0-9a-f-]{36})", re.I)
_MSG_ID_RE = re.compile(r"\b(msg_[a-z0-9_-]{6,})\b", re.I)
_CONVERSATION_ID_RE = re.compile(
    r"(?:conversation[_-]?id|ck_context_scopes_for_conversation_id)\s*[:=/\"'\s]+([a-z0-9_-]{20,}|[0-9a-f-]{36})",
    re.I,
)
_CHATGPT_CONVERSATION_PATH_RE = re.compile(r"/c/([a-z0-9-]+)", re.I)

MAX_CONTEXT_IDS = 6
MAX_DOCUMENT_POST_IDS = 8
MAX_DOCUMENT_CONVERSATION_IDS = 6


# ---------------------------------------------------------------------------
# Shape checks
# ---------------------------------------------------------------------------

def is_uuid(value: str) -> bool:
    return bool(UUID_RE.match(value.strip()))


def normalize_likely_post_id(raw: str) -> str | None:
    trimmed = raw.strip()
    if not trimmed or re.match(r"^file[-_]", trimmed, re.I):
        return None
    if UUID_RE.match(trimmed):
        return trimmed
    if re.match(r"^msg_[a-z0-9_-]{6,}$", trimmed, re.I):
        return trimmed
    if re.match(r"^[a-z0-9][a-z0-9_-]{16,}$", trimmed, re.I) and "." not in trimmed:
        return trimmed
    return None


def normalize_likely_conversation_id(raw: str) -> str | None:
    trimmed = raw.strip()
    if not trimmed:
        return None
    if UUID_RE.match(trimmed):
        return trimmed
    if re.match(r"^[a-z0-9][a-z0-9_-]{20,}$", trimmed, re.I) and "." not in trimmed:
        return trimmed
    return None


def looks_like_opaque_file_id(raw: str) -> bool:
    trimmed = raw.strip()
    if len(trimmed) < 8 or len(trimmed) > 128:
        return False
    if UUID_RE.match(trimmed):
        return False
    if re.match(r"^msg_[a-z0-9_-]{6,}$", trimmed, re.I):
        return False
    if re.match(r"^file[-_][a-z0-9-]{6,}$", trimmed, re.I):
        return True
    if re.match(r"^[a-f0-9]{24,64}$", trimmed, re.I):
        return True
    return bool(re.match(r"^[a-z0-9][a-z0-9_-]{12,}$", trimmed, re.I)) and "." not in trimmed


def source_key_suggests_file_identity(source_key: str) -> bool:
    lower = source_key.strip().lower()
    if not lower:
        return False
    return bool(
        re.search(r"(^|_)(file|asset|attachment|upload|document|pointer|blob)(_|$)", lower)
        or re.search(r"(file|asset|attachment|upload|document|pointer|blob)[_-]?id$", lower)
    )


def source_key_suggests_conversation_identity(source_key: str) -> bool:
    lower = source_key.strip().lower()
    return bool(lower) and bool(re.search(r"(conversation|context|scope|thread|session|dialog|chat)", lower))


def has_file_id_signal(raw: str) -> bool:
    lower = raw.lower()
    return bool(
        "file-service://" in lower
        or "/backend-api/files/" in lower
        or "/backend-api/estuary/content" in lower
        or re.search(r"(?:^|[?&])(file_id|fileid)=", lower)
        or re.search(r"\b(file|asset|attachment|upload|document|pointer)[_-]?id\b", lower)
    )


def has_conversation_id_signal(raw: str) -> bool:
    lower = raw.lower()
    return bool(
        re.search(r"/backend-api/conversations?/", lower)
        or re.search(
            r"(?:^|[?&])(conversation_id|conversationid|context_conversation_id|ck_context_scopes_for_conversation_id)=",
            lower,
        )
        or re.search(r"\b(conversation|context|scope|thread)[_-]?id\b", lower)
    )


def should_allow_uuid_as_file_id(raw: str, allow_uuid: bool = False, source_key: str = "") -> bool:
    """Decide whether a UUID-shaped value in ``raw`` may be read as a file ID."""
    if not allow_uuid:
        return False
    if source_key_suggests_conversation_identity(source_key):
        return False
    if source_key_suggests_file_identity(source_key):
        return True
    file_signal = has_file_id_signal(raw)
    if has_conversation_id_signal(raw) and not file_signal:
        return False
    return file_signal


def parse_chatgpt_conversation_id(url: str) -> str | None:
    try:
        path = urlsplit(url).path
    except ValueError:
        return None
    match = _CHATGPT_CONVERSATION_PATH_RE.search(path)
    return match.group(1) if match else None


def _query_values(text: str, base_url: str, *keys: str) -> list[str]:
    if any(ch.isspace() for ch in text):
        return []
    try:
        query = parse_qs(urlsplit(urljoin(base_url, text)).query)
    except ValueError:
        return []
    return [value for key in keys for value in query.get(key, [])[:1]]


def extract_likely_post_ids(raw: str, base_url: str = "") -> list[str]:
    text = raw.strip()
    out: list[str] = []
    if not text:
        return out

    def add(value: str):
        normalized = normalize_likely_post_id(unquote(value))
        if normalized and normalized not in out:
            out.append(normalized)

    post = _query_values(text, base_url, "post_id", "postId")
    message = _query_values(text, base_url, "message_id", "messageId")
    for value in post[:1] + message[:1]:
        add(value)
    for match in _POST_ID_RE.finditer(text):
        add(match.group(1))
    for match in _MSG_ID_RE.finditer(text):
        add(match.group(1))
    return out


def extract_likely_conversation_ids(raw: str, base_url: str = "") -> list[str]:
    text = raw.strip()
    out: list[str] = []
    if not text:
        return out

    def add(value: str):
        normalized = normalize_likely_conversation_id(unquote(value))
        if normalized and normalized not in out:
            out.append(normalized)

    from_path = parse_chatgpt_conversation_id(text)
    if from_path:
        add(from_path)
    direct = _query_values(text, base_url, "conversation_id", "conversationId")
    scoped = _query_values(text, base_url, "ck_context_scopes_for_conversation_id", "context_conversation_id")
    for value in direct[:1] + scoped[:1]:
        add(value)
    for match in _CONVERSATION_ID_RE.finditer(text):
        add(match.group(1))
    return out


def extract_backend_file_id_from_url(url: str) -> str | None:
    match = re.search(r"/backend-api/files/download/([^/?#]+)", url, re.I)
    if match:
        return unquote(match.group(1))
    match = re.search(r"/backend-api/files/([^/?#]+)", url, re.I)
    if match and match.group(1).lower() != "download":
        return unquote(match.group(1))
    return None


# ---------------------------------------------------------------------------
# Page context
# ---------------------------------------------------------------------------

@dataclass
class MiningContext:
    """
    What the miner knows about the page a capture is running on.

    ``tracked_urls`` is the URL list of the network tracker at snapshot time
    (oldest first); ``post_ids`` / ``conversation_ids`` are the IDs found in
    the document and are used to parameterize candidate URLs.
    """
    page_url: str = ""
    tracked_urls: list[str] = field(default_factory=list)
    post_ids: list[str] = field(default_factory=list)
    conversation_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_document(cls, soup: BeautifulSoup, page_url: str, tracked_urls: list[str] | None = None):
        tracked = list(tracked_urls or [])
        return cls(
            page_url=page_url,
            tracked_urls=tracked,
            post_ids=collect_document_post_ids(soup, page_url, tracked),
            conversation_ids=collect_document_conversation_ids(soup, page_url, tracked),
        )

    def to_absolute(self, raw: str) -> str:
        value = raw.strip()
        if not value:
            return ""
        if value.startswith(("data:", "blob:")):
            return value
        try:
            return urljoin(self.page_url, value) if self.page_url else value
        except ValueError:
            return ""

    def is_conversation_only_uuid(self, raw_id: str, conversation_ids: list[str] | None = None) -> bool:
        trimmed = raw_id.strip()
        if not UUID_RE.match(trimmed):
            return False
        lower = trimmed.lower()
        known = conversation_ids if conversation_ids is not None else self.conversation_ids
        if any(item.strip().lower() == lower for item in known):
            return True
        current = parse_chatgpt_conversation_id(self.page_url)
        if current and current.lower() == lower:
            return True

        escaped = re.escape(trimmed)
        matcher = re.compile(
            rf"(?:/backend-api/conversations?/{escaped}(?:[/?#]|$)"
            rf"|(?:conversation[_-]?id|ck_context_scopes_for_conversation_id|context_conversation_id)={escaped}(?:[&#]|$))",
            re.I,
        )
        return any(matcher.search(url) for url in self.tracked_urls[-1000:])

    def extract_file_ids(self, raw: str, allow_uuid: bool = False, source_key: str = "") -> list[str]:
        """All file IDs in ``raw``, in discovery order."""
        trimmed = raw.strip()
        if not trimmed:
            return []
        allow_by_context = should_allow_uuid_as_file_id(trimmed, allow_uuid, source_key)
        out: list[str] = []

        def add(value: str):
            decoded = unquote(value.strip())
            if not decoded:
                return
            opaque = looks_like_opaque_file_id(decoded)
            uuid_like = bool(UUID_RE.match(decoded))
            if not opaque and not (allow_by_context and uuid_like):
                return
            if uuid_like and not opaque and self.is_conversation_only_uuid(decoded):
                return
            if decoded not in out:
                out.append(decoded)

        for match in _FILE_PREFIX_RE.finditer(trimmed):
            add(match.group(0))
        for pattern in (_FILE_SERVICE_RE, _BACKEND_DOWNLOAD_RE, _BACKEND_FILES_RE, _ID_PARAM_RE):
            for match in pattern.finditer(trimmed):
                add(match.group(1))
        if allow_by_context:
            for match in _UUID_ANYWHERE_RE.finditer(trimmed):
                add(match.group(0))
        if looks_like_opaque_file_id(trimmed) or (allow_by_context and UUID_RE.match(trimmed)):
            add(trimmed)
        return out

    def maybe_file_id(self, raw: str, allow_uuid: bool = False, source_key: str = "") -> str | None:
        ids = self.extract_file_ids(raw, allow_uuid, source_key)
        return ids[0] if ids else None

    def extract_estuary_file_id(self, url: str) -> str | None:
        if "/backend-api/estuary/content" not in url.lower():
            return None
        for value in _query_values(url, self.page_url, "id", "file_id", "fileId"):
            found = self.maybe_file_id(value, allow_uuid=True, source_key="file_id")
            if found:
                return found
        return None

    def build_candidate_urls(
        self,
        file_id: str,
        post_ids: list[str] | None = None,
        conversation_ids: list[str] | None = None,
    ) -> list[str]:
        """
        Backend download URLs that may serve ``file_id``.

        Post and conversation IDs default to the document's own and are capped
        at MAX_CONTEXT_IDS each, so the set stays bounded (229 at most).
        """
        normalized = file_id.strip()
        if not normalized:
            return []
        posts = [
            pid for pid in (normalize_likely_post_id(raw) for raw in (self.post_ids if post_ids is None else post_ids))
            if pid
        ][:MAX_CONTEXT_IDS]
        conversations = [
            cid for cid in (
                normalize_likely_conversation_id(raw)
                for raw in (self.conversation_ids if conversation_ids is None else conversation_ids)
            )
            if cid
        ][:MAX_CONTEXT_IDS]
        if self.is_conversation_only_uuid(normalized, conversations):
            return []

        e = quote(normalized, safe="")
        estuary = f"/backend-api/estuary/content?id={e}"
        raw_candidates = [
            estuary,
            f"{estuary}&v=0",
            f"{estuary}&v=1",
            f"/backend-api/files/download/{e}",
            f"/backend-api/files/{e}/download",
            f"/backend-api/files/{e}",
            f"/backend-api/files/{e}/content",
        ]
        for post_id in posts:
            p = quote(post_id, safe="")
            raw_candidates += [
                f"/backend-api/files/download/{e}?post_id={p}",
                f"{estuary}&post_id={p}",
                f"{estuary}&post_id={p}&v=0",
            ]
        for conversation_id in conversations:
            c = quote(conversation_id, safe="")
            for param in ("conversation_id", "ck_context_scopes_for_conversation_id"):
                raw_candidates += [
                    f"/backend-api/files/download/{e}?{param}={c}",
                    f"/backend-api/files/{e}/download?{param}={c}",
                    f"/backend-api/files/{e}?{param}={c}",
                    f"{estuary}&{param}={c}",
                    f"{estuary}&{param}={c}&v=0",
                ]
        for post_id in posts:
            p = quote(post_id, safe="")
            for conversation_id in conversations[:3]:
                c = quote(conversation_id, safe="")
                for param in ("conversation_id", "ck_context_scopes_for_conversation_id"):
                    raw_candidates += [
                        f"/backend-api/files/download/{e}?post_id={p}&{param}={c}",
                        f"/backend-api/files/{e}/download?post_id={p}&{param}={c}",
                        f"/backend-api/files/{e}?post_id={p}&{param}={c}",
                    ]
                raw_candidates += [
                    f"{estuary}&post_id={p}&conversation_id={c}&v=0",
                    f"{estuary}&post_id={p}&ck_context_scopes_for_conversation_id={c}&v=0",
                ]

        out: list[str] = []
        for candidate in raw_candidates:
            absolute = self.to_absolute(candidate)
            if absolute and absolute not in out:
                out.append(absolute)
        return out


# ---------------------------------------------------------------------------
# Document-level context IDs
# ---------------------------------------------------------------------------

_POST_HINT_RE = re.compile(r"post_id|postId|message_id|messageId|msg_|backend-api/files/", re.I)
_CONVERSATION_HINT_RE = re.compile(r"conversation|ck_context_scopes_for_conversation_id|/c/", re.I)


def collect_document_post_ids(soup: BeautifulSoup, page_url: str, tracked_urls: list[str]) -> list[str]:
    out: list[str] = []

    def add_from(raw: str):
        for post_id in extract_likely_post_ids(raw, page_url):
            if post_id not in out:
                out.append(post_id)

    add_from(page_url)
    nodes = soup.select(
        "[data-post-id], [data-message-id], [data-id], [id], "
        "[data-testid*='attachment'], [data-testid*='file'], [data-testid*='upload']"
    )[:240]
    for node in nodes:
        for attr, value in node.attrs.items():
            value = " ".join(value) if isinstance(value, list) else str(value)
            if value and re.search(r"post|message|attachment|upload|file|id", attr, re.I):
                add_from(value)
        text = node.get_text(" ", strip=True)
        if text and re.search(r"post|message|attachment|upload|file|id|msg_", text, re.I):
            add_from(text)

    for script in soup.find_all("script")[-120:]:
        text = (script.string or script.get_text() or "").replace("\\/", "/")
        if text and _POST_HINT_RE.search(text):
            add_from(text)

    for url in tracked_urls[-800:]:
        if _POST_HINT_RE.search(url):
            add_from(url)
    return out[:MAX_DOCUMENT_POST_IDS]


def collect_document_conversation_ids(soup: BeautifulSoup, page_url: str, tracked_urls: list[str]) -> list[str]:
    out: list[str] = []

    def add_from(raw: str):
        for conversation_id in extract_likely_conversation_ids(raw, page_url):
            if conversation_id not in out:
                out.append(conversation_id)

    add_from(page_url)
    nodes = soup.select(
        "[data-conversation-id], [data-conversationid], [data-testid*='conversation'], "
        "[data-testid*='attachment'], [data-testid*='file']"
    )[:220]
    for node in nodes:
        for attr, value in node.attrs.items():
            value = " ".join(value) if isinstance(value, list) else str(value)
            if value and re.search(r"conversation|context|scope|id", attr, re.I):
                add_from(value)
        text = node.get_text(" ", strip=True)
        if text and re.search(r"conversation|context|scope|id|/c/", text, re.I):
            add_from(text)

    for url in tracked_urls[-800:]:
        if _CONVERSATION_HINT_RE.search(url):
            add_from(url)
    return out[:MAX_DOCUMENT_CONVERSATION_IDS]

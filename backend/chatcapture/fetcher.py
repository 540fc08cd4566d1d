"""
Credentialed attachment fetching.

An httpx client seeded with the browser context's cookies and user agent
stands in for the page's own ``fetch(..., {credentials: "include"})``.
``blob:`` URLs only exist inside the page, so those are read there.

- fetch_as_inline_data: body -> ``data:`` URL, with error pages, JSON
  envelopes (followed once they name a download URL) and oversized bodies
  rejected
- probe: HEAD, then a ranged GET; for diagnostics only, never raises
- fetch_json: conversation API reads
"""

import logging
import re
from dataclasses import dataclass, field
from urllib.parse import parse_qs, unquote, urljoin, urlsplit

import httpx
from playwright.async_api import Page

from chatcapture.config import get_settings
from chatcapture.image_utils import bytes_to_data_url, sniff_image_mime

logger = logging.getLogger(__name__)

MIME_BY_EXTENSION = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
    "txt": "text/plain",
    "md": "text/markdown",
    "csv": "text/csv",
    "tsv": "text/tab-separated-values",
    "json": "application/json",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}
GENERIC_MIMES = {"", "application/octet-stream", "binary/octet-stream", "application/binary", "unknown/unknown"}

REDIRECT_PRIORITY_KEYS = (
    "download_url", "downloadUrl", "download_link", "downloadLink",
    "signed_download_url", "signedDownloadUrl", "signed_url", "signedUrl",
    "presigned_url", "presignedUrl", "file_url", "fileUrl",
    "content_url", "contentUrl", "retrieval_url", "retrievalUrl",
    "href", "url", "link",
)
_REDIRECT_KEY_HINT_RE = re.compile(r"(url|link|href|download|signed|presign|content|asset|file|path)", re.I)
_POST_RETRY_PATH_RE = re.compile(r"/backend-api/(?:files/download/|files/[^/?#]+/download|estuary/content)", re.I)

MAX_ATTEMPTS_PER_URL = 12
MAX_REDIRECT_SCAN_NODES = 2600

_READ_BLOB_JS = '''async (url) => {
    const response = await fetch(url);
    if (!response.ok) return { ok: false, status: response.status };
    const blob = await response.blob();
    const dataUrl = await new Promise((resolve, reject) => {
        const reader = new FileReader();
        reader.onload = () => resolve(String(reader.result || ''));
        reader.onerror = () => reject(reader.error);
        reader.readAsDataURL(blob);
    });
    return { ok: true, dataUrl, mime: blob.type || '', size: blob.size };
}'''


@dataclass
class InlineFetchResult:
    ok: bool
    data_url: str | None = None
    mime: str | None = None
    file_name: str | None = None
    size: int = 0
    status: int = 0
    error: str | None = None
    tried: list[str] = field(default_factory=list)


@dataclass
class ProbeResult:
    ok: bool
    url: str
    method: str
    status: int = 0
    content_type: str = ""
    content_length: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Names and mime types
# ---------------------------------------------------------------------------

def normalize_mime(raw: str) -> str:
    return raw.split(";")[0].strip().lower() or "application/octet-stream"


def is_http_url(value: str) -> bool:
    return bool(re.match(r"^https?://", value, re.I))


def safe_unquote(value: str) -> str:
    return unquote(value.replace("+", "%20"))


def sanitize_file_name(name: str) -> str:
    trimmed = re.sub(r"^[\"']+|[\"']+$", "", name.strip())
    return re.sub(r"[\\/:*?\"<>|\x00-\x1f]+", "_", trimmed).strip()[:240]


def file_extension(name: str) -> str:
    clean = name.strip().lower()
    if "." not in clean:
        return ""
    ext = clean.rsplit(".", 1)[-1]
    return ext if re.match(r"^[a-z0-9]{1,10}$", ext) else ""


def mime_from_file_name(name: str) -> str | None:
    return MIME_BY_EXTENSION.get(file_extension(name))


def parse_content_disposition_file_name(raw: str) -> str | None:
    """``filename*=`` (RFC 5987) wins over ``filename=``."""
    parts = [part.strip() for part in (raw or "").split(";")]
    for part in parts:
        if part.lower().startswith("filename*="):
            value = re.sub(r"^[\"']+|[\"']+$", "", part[len("filename*="):].strip())
            encoded = value.split("''", 1)[1] if "''" in value else value
            name = sanitize_file_name(safe_unquote(encoded))
            if name:
                return name
    for part in parts:
        if part.lower().startswith("filename="):
            name = sanitize_file_name(safe_unquote(part[len("filename="):].strip()))
            if name:
                return name
    return None


def file_name_from_url(url: str) -> str | None:
    try:
        parsed = urlsplit(url)
    except ValueError:
        return None
    query = parse_qs(parsed.query)
    for key in ("filename", "file", "name"):
        if query.get(key):
            name = sanitize_file_name(query[key][0])
            if name:
                return name
    if query.get("response-content-disposition"):
        name = parse_content_disposition_file_name(query["response-content-disposition"][0])
        if name:
            return name
    segments = [segment for segment in parsed.path.split("/") if segment]
    last = sanitize_file_name(safe_unquote(segments[-1])) if segments else ""
    return last if "." in last else None


def resolve_mime(header_mime: str, file_name: str | None, body: bytes) -> str:
    mime = header_mime
    from_name = mime_from_file_name(file_name) if file_name else None
    if from_name:
        if mime in GENERIC_MIMES or (mime == "text/plain" and from_name != "text/plain"):
            mime = from_name
    if mime in GENERIC_MIMES:
        mime = sniff_image_mime(body) or mime
    return mime or "application/octet-stream"


# ---------------------------------------------------------------------------
# Redirect envelopes
# ---------------------------------------------------------------------------

def _to_absolute_http(raw: str, base_url: str) -> str | None:
    trimmed = raw.strip()
    if not trimmed:
        return None
    if is_http_url(trimmed):
        return trimmed
    if trimmed.startswith("backend-api/"):
        trimmed = "/" + trimmed
    if not trimmed.startswith("/"):
        return None
    try:
        absolute = urljoin(base_url, trimmed)
    except ValueError:
        return None
    return absolute if is_http_url(absolute) else None


def url_candidates_from_text(raw: str, base_url: str) -> list[str]:
    text = raw.replace("\\/", "/")
    out = []
    for match in re.findall(r"https?://[^\s\"'<>\\]+|/backend-api/[^\s\"'<>\\]+", text, re.I):
        url = _to_absolute_http(match, base_url)
        if url and url not in out:
            out.append(url)
    return out


def redirect_candidates_from_payload(payload, base_url: str) -> list[str]:
    """URLs a JSON envelope points at, priority keys first, breadth-first."""
    out: list[str] = []

    def add(value: str):
        url = _to_absolute_http(value, base_url)
        if url and url not in out:
            out.append(url)

    queue = [payload]
    visited: set[int] = set()
    index = 0
    while index < len(queue) and index < MAX_REDIRECT_SCAN_NODES:
        node = queue[index]
        index += 1
        if isinstance(node, str):
            add(node)
            for url in url_candidates_from_text(node, base_url):
                add(url)
        elif isinstance(node, list):
            queue.extend(node)
        elif isinstance(node, dict) and id(node) not in visited:
            visited.add(id(node))
            for key in REDIRECT_PRIORITY_KEYS:
                if isinstance(node.get(key), str):
                    add(node[key])
            for key, value in node.items():
                if isinstance(value, str):
                    if _REDIRECT_KEY_HINT_RE.search(str(key)):
                        add(value)
                    if "http://" in value or "https://" in value or "/backend-api/" in value:
                        for url in url_candidates_from_text(value, base_url):
                            add(url)
                else:
                    queue.append(value)
    return out


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

class _Attempt:
    def __init__(self, url: str):
        self.tried = [url]
        self.keys: set[str] = set()

    def claim(self, method: str, url: str) -> bool:
        key = f"{method} {url}"
        if key in self.keys or len(self.keys) >= MAX_ATTEMPTS_PER_URL:
            return False
        self.keys.add(key)
        if url not in self.tried:
            self.tried.append(url)
        return True


class AttachmentFetcher:
    """Fetches attachment bodies with the browser session's credentials."""

    def __init__(self, client: httpx.AsyncClient, page: Page | None = None, max_bytes: int | None = None):
        self.client = client
        self.page = page
        self.max_bytes = max_bytes or get_settings().max_inline_attachment_bytes

    @classmethod
    async def from_page(cls, page: Page) -> "AttachmentFetcher":
        settings = get_settings()
        cookies = httpx.Cookies()
        for cookie in await page.context.cookies():
            cookies.set(cookie["name"], cookie["value"], domain=cookie.get("domain", ""), path=cookie.get("path", "/"))
        user_agent = await page.evaluate("() => navigator.userAgent")
        client = httpx.AsyncClient(
            cookies=cookies,
            headers={"User-Agent": user_agent, "Referer": page.url},
            follow_redirects=True,
            timeout=httpx.Timeout(settings.attachment_fetch_timeout),
        )
        logger.info("[fetch] client ready with %d cookies", len(cookies.jar))
        return cls(client, page)

    async def aclose(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    # -- inline data ---------------------------------------------------------

    async def fetch_as_inline_data(self, url: str) -> InlineFetchResult:
        url = url.strip()
        if url.startswith("data:"):
            return InlineFetchResult(ok=True, data_url=url, tried=[url])
        if url.startswith("blob:"):
            return await self._read_blob(url)
        if not is_http_url(url):
            return InlineFetchResult(ok=False, error="only http(s) URLs can be downloaded", tried=[url])

        attempt = _Attempt(url)
        try:
            result = await self._fetch(url, attempt)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return InlineFetchResult(ok=False, error=str(e) or type(e).__name__, tried=attempt.tried)
        if result is not None:
            result.tried = attempt.tried
            return result
        return InlineFetchResult(ok=False, error="no downloadable attachment body found", tried=attempt.tried)

    async def _fetch(
        self, url: str, attempt: _Attempt, method: str = "GET", json_body: dict | None = None
    ) -> InlineFetchResult | None:
        if not attempt.claim(method, url):
            return None

        headers = {"Accept": "*/*"}
        if method == "POST":
            headers = {"Accept": "application/json, */*;q=0.8"}
        async with self.client.stream(method, url, headers=headers, json=json_body) as response:
            mime = normalize_mime(response.headers.get("content-type", ""))
            final_url = str(response.url)

            if not response.is_success:
                return await self._recover_from_error(response, url, final_url, mime, method, attempt)

            if "application/json" in mime:
                try:
                    await response.aread()
                    payload = response.json()
                except ValueError:
                    return None
                for candidate in redirect_candidates_from_payload(payload, final_url):
                    if candidate not in attempt.tried:
                        return await self._fetch(candidate, attempt)
                return None
            if mime.startswith("text/html"):
                return None

            declared = int(response.headers.get("content-length") or 0)
            if declared > self.max_bytes:
                return self._too_large(response.status_code, declared)

            chunks = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > self.max_bytes:
                    return self._too_large(response.status_code, size)
                chunks.append(chunk)
            body = b"".join(chunks)

        if not body:
            return None
        file_name = (
            parse_content_disposition_file_name(response.headers.get("content-disposition", ""))
            or file_name_from_url(final_url)
        )
        resolved = resolve_mime(mime, file_name, body)
        return InlineFetchResult(
            ok=True,
            data_url=bytes_to_data_url(body, resolved, file_name),
            mime=resolved,
            file_name=file_name,
            size=len(body),
            status=response.status_code,
        )

    async def _recover_from_error(self, response, url, final_url, mime, method, attempt) -> InlineFetchResult:
        await response.aread()
        if "application/json" in mime:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            for candidate in redirect_candidates_from_payload(payload, final_url):
                if candidate not in attempt.tried:
                    result = await self._fetch(candidate, attempt)
                    if result is not None:
                        return result
                    break

        if response.status_code in (400, 405, 422) and method == "GET" and _POST_RETRY_PATH_RE.search(url):
            result = await self._fetch(url, attempt, method="POST", json_body={})
            if result is not None:
                return result

        for candidate in url_candidates_from_text(response.text, final_url):
            if candidate not in attempt.tried:
                result = await self._fetch(candidate, attempt)
                if result is not None:
                    return result
        return InlineFetchResult(ok=False, status=response.status_code, error=f"HTTP {response.status_code}")

    def _too_large(self, status: int, size: int) -> InlineFetchResult:
        return InlineFetchResult(
            ok=False, status=status, error=f"attachment exceeds size limit ({round(size / 1024 / 1024)}MB)"
        )

    async def _read_blob(self, url: str) -> InlineFetchResult:
        if self.page is None:
            return InlineFetchResult(ok=False, error="blob URL outside a page", tried=[url])
        try:
            raw = await self.page.evaluate(_READ_BLOB_JS, url)
        except Exception as e:
            logger.info("[fetch] blob read failed for %s: %s", url[:120], e)
            return InlineFetchResult(ok=False, error=str(e), tried=[url])
        if not isinstance(raw, dict) or not raw.get("ok") or not raw.get("dataUrl"):
            status = raw.get("status", 0) if isinstance(raw, dict) else 0
            return InlineFetchResult(ok=False, status=status, error="blob read failed", tried=[url])
        if int(raw.get("size") or 0) > self.max_bytes:
            return InlineFetchResult(ok=False, error="attachment exceeds size limit", tried=[url])
        return InlineFetchResult(
            ok=True, data_url=raw["dataUrl"], mime=raw.get("mime") or None, size=int(raw.get("size") or 0), tried=[url]
        )

    # -- diagnostics -----------------------------------------------------------

    async def probe(self, url: str) -> ProbeResult:
        if not is_http_url(url):
            return ProbeResult(ok=False, url=url, method="GET", error="only http(s) URLs can be probed")

        def meta(response: httpx.Response) -> dict:
            return {
                "status": response.status_code,
                "content_type": response.headers.get("content-type", "").lower(),
                "content_length": int(response.headers.get("content-length") or 0),
            }

        try:
            head = await self.client.head(url, headers={"Accept": "*/*"})
            if head.is_success:
                return ProbeResult(ok=True, url=str(head.url), method="HEAD", **meta(head))
        except httpx.HTTPError as e:
            logger.debug("[fetch] HEAD %s failed: %s", url[:120], e)

        try:
            get = await self.client.get(url, headers={"Accept": "*/*", "Range": "bytes=0-1023"})
        except httpx.HTTPError as e:
            return ProbeResult(ok=False, url=url, method="GET", error=str(e) or type(e).__name__)
        return ProbeResult(
            ok=get.is_success,
            url=str(get.url),
            method="GET",
            error=None if get.is_success else f"HTTP {get.status_code}",
            **meta(get),
        )

    # -- JSON ------------------------------------------------------------------

    async def fetch_json(self, url: str) -> dict | None:
        try:
            response = await self.client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.info("[fetch] %s: %s", url[:160], e)
            return None
        if not response.is_success:
            logger.info("[fetch] %s: HTTP %d", url[:160], response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.info("[fetch] %s: payload is not JSON", url[:160])
            return None
        return payload if isinstance(payload, dict) else None

"""
Attachment materialization.

Turns come in with ``remote_only`` attachment candidates and leave with each
required one either inlined as a ``data:`` URL (``cached``) or marked
``failed``. Attachments are processed one at a time, in turn order then
discovery order, so a download can be correlated with the file ID that
triggered it.

Per attachment the candidate URLs are, in order:

1. URLs the page itself requested for the same file ID (tracked traffic);
2. the attachment URL;
3. backend URLs rebuilt from the file ID.

Strict runs raise AttachmentDownloadFailed when anything required is left
unresolved; tolerant runs log and return the best-effort turns.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable
from urllib.parse import quote

from chatcapture.attachments import (
    attachment_display_name,
    file_name_extension,
    find_likely_inline_file_names,
    is_downloadable_reference,
    is_virtual_upload_url,
    merge_turn_attachments,
    strip_redundant_failed,
    strip_virtual_placeholders,
)
from chatcapture.classify import (
    infer_attachment_kind,
    infer_attachment_mime,
    is_data_url,
    is_likely_oai_attachment_url,
    kind_score,
    looks_like_cloud_drive_file_url,
    looks_like_file_url,
    looks_like_image_url,
    looks_like_pdf_url,
)
from chatcapture.errors import AttachmentDownloadFailed, UnresolvedInlineReference
from chatcapture.fetcher import AttachmentFetcher
from chatcapture.identifiers import MiningContext, extract_backend_file_id_from_url
from chatcapture.models import CaptureAttachment, CaptureTurn, TrackedNetworkRecord
from chatcapture.network_tracker import now_ms
from chatcapture.turns import dedupe_turns

logger = logging.getLogger(__name__)

REASON_DOWNLOAD_FAILED = "download failed"
REASON_NAME_ONLY = "only a file name was found, no real link"

MAX_SEED_CANDIDATES = 40
MAX_CANDIDATES = 36
MAX_TRACKED_PER_FILE_ID = 14
MAX_HINTS_PER_FILE_ID = 24
HINT_WINDOW_MS = 8 * 60 * 1000
MAX_PROBED_URLS = 10

_DRIVE_V3_RE = re.compile(r"googleapis\.com/drive/v3/files/", re.I)
_RESOURCE_HINT_RE = re.compile(r"prompts|backend-api|googleusercontent|files|upload|download", re.I)
LINK_ONLY_SOURCES = ("gemini", "ai_studio", "claude")


@dataclass
class MaterializeProgress:
    processed: int
    total: int
    failed: int
    phase: str = "files"


ProgressCallback = Callable[[MaterializeProgress], None]


# ---------------------------------------------------------------------------
# Per-host policy
# ---------------------------------------------------------------------------

def keep_as_link_only(source: str, attachment: CaptureAttachment) -> bool:
    url = attachment.original_url.strip()
    if not url:
        return True
    if source in LINK_ONLY_SOURCES:
        return looks_like_cloud_drive_file_url(url) or bool(_DRIVE_V3_RE.search(url))
    return False


def should_require_download(source: str, turn: CaptureTurn, attachment: CaptureAttachment) -> bool:
    if turn.role not in ("user", "assistant"):
        return False
    url = attachment.original_url.strip()
    lower = url.lower()
    if not url or is_data_url(url) or keep_as_link_only(source, attachment) or is_virtual_upload_url(url):
        return False
    if "oaiusercontent.com" in lower and not is_likely_oai_attachment_url(lower):
        return False
    return bool(
        looks_like_file_url(url)
        or looks_like_image_url(url)
        or looks_like_pdf_url(url)
        or "/backend-api/files/" in lower
        or "googleusercontent.com/gg/" in lower
    )


def should_attempt_inline(url: str) -> bool:
    lower = url.lower()
    return (
        lower.startswith("blob:")
        or "/backend-api/files/" in lower
        or "/backend-api/estuary/content" in lower
        or "googleusercontent.com/gg/" in lower
        or is_likely_oai_attachment_url(lower)
        or "/prompts/" in lower
    )


def detect_unresolved_inline_names(turn: CaptureTurn, attachments: list[CaptureAttachment]) -> list[str]:
    """File names a user turn mentions that none of its attachments accounts for."""
    if turn.role != "user":
        return []
    names = find_likely_inline_file_names(turn.content_markdown)
    if not names:
        return []

    known = {attachment_display_name(a).strip().lower() for a in attachments} - {""}
    downloadable = sum(1 for a in attachments if is_downloadable_reference(a.original_url))
    if len(names) == 1 and downloadable:
        return []

    unresolved = [
        name for name in names
        if name.strip().lower() not in known and file_name_extension(name)
    ]
    if unresolved and downloadable >= len(unresolved):
        return []
    return unresolved


def count_materializable(turns: list[CaptureTurn]) -> int:
    return sum(len(merge_turn_attachments([], strip_virtual_placeholders(t.attachments or [])) or []) for t in turns)


# ---------------------------------------------------------------------------
# Materializer
# ---------------------------------------------------------------------------

class AttachmentMaterializer:
    def __init__(
        self,
        source: str,
        fetcher: AttachmentFetcher,
        ctx: MiningContext | None = None,
        records: list[TrackedNetworkRecord] | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.source = source
        self.fetcher = fetcher
        self.ctx = ctx or MiningContext()
        self.records = list(records or [])
        self.on_progress = on_progress
        self.failures: list[str] = []
        self.cached = 0
        self._probe_logged = False

    # -- candidate URLs ----------------------------------------------------------

    def _usable_records(self) -> list[TrackedNetworkRecord]:
        return [
            r for r in self.records
            if r.method in ("GET", "POST") and (r.ok or r.status == 0)
        ]

    def _tracked_file_id(self, url: str) -> str | None:
        lower = url.lower()
        attachment_like = (
            "/backend-api/files/" in lower
            or "/backend-api/estuary/content" in lower
            or ("oaiusercontent.com" in lower and is_likely_oai_attachment_url(lower))
        )
        if not attachment_like:
            return None
        return (
            extract_backend_file_id_from_url(url)
            or self.ctx.extract_estuary_file_id(url)
            or self.ctx.maybe_file_id(url, allow_uuid=True, source_key="file_id")
        )

    def tracked_urls_for_file_id(self, file_id: str) -> list[str]:
        """Attachment-shaped requests the page made for ``file_id``, oldest first."""
        expected = (self.ctx.maybe_file_id(file_id, allow_uuid=True, source_key="file_id") or "").lower()
        if not expected:
            return []
        out = []
        for record in self._usable_records()[-1400:]:
            url = self.ctx.to_absolute(record.url) or record.url
            candidate = self._tracked_file_id(url)
            if candidate and candidate.lower() == expected and url not in out:
                out.append(url)
        return out[:MAX_TRACKED_PER_FILE_ID]

    def hinted_urls_for_file_id(self, file_id: str) -> list[str]:
        """Recent requests for ``file_id``, newest first."""
        expected = file_id.strip().lower()
        cutoff = now_ms() - HINT_WINDOW_MS
        out = []
        for record in reversed(self.records):
            if record.started_at < cutoff:
                break
            candidate = self._tracked_file_id(record.url)
            if candidate and candidate.lower() == expected and record.url not in out:
                out.append(record.url)
                if len(out) >= MAX_HINTS_PER_FILE_ID:
                    break
        return out

    def build_inline_fetch_candidates(self, raw_url: str) -> list[str]:
        out: list[str] = []

        def add(candidate: str):
            absolute = self.ctx.to_absolute(candidate) or candidate
            if absolute and absolute not in out:
                out.append(absolute)

        add(raw_url)
        backend_id = extract_backend_file_id_from_url(raw_url)
        if backend_id:
            for url in self.tracked_urls_for_file_id(backend_id):
                add(url)
            encoded = quote(backend_id, safe="")
            base = self.ctx.to_absolute(f"/backend-api/files/{encoded}") or raw_url
            add(base)
            add(f"{base}/download")
            add(f"/backend-api/estuary/content?id={encoded}")
            add(f"/backend-api/estuary/content?id={encoded}&v=0")
            for url in self.ctx.build_candidate_urls(backend_id):
                add(url)

        estuary_id = self.ctx.extract_estuary_file_id(raw_url)
        if estuary_id:
            for url in self.tracked_urls_for_file_id(estuary_id):
                add(url)
            for url in self.ctx.build_candidate_urls(estuary_id):
                add(url)
            encoded = quote(estuary_id, safe="")
            add(f"/backend-api/estuary/content?id={encoded}")
            add(f"/backend-api/estuary/content?id={encoded}&v=0")
        return out

    def candidates_for(self, url: str) -> list[str]:
        seeds = self.build_inline_fetch_candidates(url)[:MAX_SEED_CANDIDATES]
        file_ids = []
        for file_id in (
            extract_backend_file_id_from_url(url),
            self.ctx.extract_estuary_file_id(url),
            self.ctx.maybe_file_id(url, allow_uuid=True, source_key="file_id"),
        ):
            if file_id and file_id not in file_ids:
                file_ids.append(file_id)
        hinted = [hint for file_id in file_ids for hint in self.hinted_urls_for_file_id(file_id)]
        if hinted:
            logger.info("[materialize] tracked hints for %s: %s", file_ids[:3], hinted[:6])

        out: list[str] = []
        for item in [*hinted, *seeds]:
            absolute = self.ctx.to_absolute(item) or item
            if absolute and absolute not in out:
                out.append(absolute)
                if len(out) >= MAX_CANDIDATES:
                    break
        return out

    # -- inlining ----------------------------------------------------------------

    async def maybe_inline(self, attachment: CaptureAttachment, force: bool = False) -> CaptureAttachment:
        target = attachment.original_url.strip()
        if not target or (not force and not should_attempt_inline(target)):
            return attachment

        candidates = self.candidates_for(target)
        for candidate in candidates:
            result = await self.fetcher.fetch_as_inline_data(candidate)
            if not result.ok or not result.data_url or not is_data_url(result.data_url):
                continue
            inferred = infer_attachment_kind(result.data_url)
            kind = inferred if kind_score(inferred) >= kind_score(attachment.kind) else attachment.kind
            mime = result.mime or attachment.mime or infer_attachment_mime(kind, result.data_url)
            logger.info("[materialize] inlined %s as %s from %s", attachment_display_name(attachment), kind, candidate[:180])
            return attachment.model_copy(update={"kind": kind, "original_url": result.data_url, "mime": mime})

        if force or "/backend-api/" in target.lower():
            logger.info("[materialize] could not inline %s after %d candidates", target[:180], len(candidates))
        return attachment

    # -- diagnostics -------------------------------------------------------------

    async def log_probe(self, turn: CaptureTurn, attachments: list[CaptureAttachment], names: list[str], reason: str):
        """One-time HEAD-style probe of a failing turn's URLs. Logged, never raised."""
        if self._probe_logged:
            return
        self._probe_logged = True
        urls = [a.original_url.strip() for a in attachments if re.match(r"^https?://", a.original_url.strip(), re.I)]
        results = []
        for url in urls[:MAX_PROBED_URLS]:
            results.append(await self.fetcher.probe(url))

        logger.info(
            "[probe] %s unresolved attachments (%s): names=%s turn=%r",
            self.source, reason, names, re.sub(r"\s+", " ", turn.content_markdown)[:180],
        )
        for a in attachments:
            logger.info(
                "[probe]   %s %s data=%s virtual=%s",
                a.kind, a.original_url[:220], is_data_url(a.original_url), is_virtual_upload_url(a.original_url),
            )
        for r in results:
            logger.info(
                "[probe]   %s %s -> ok=%s status=%s type=%s length=%s error=%s",
                r.method, r.url[:220], r.ok, r.status, r.content_type, r.content_length, r.error or "",
            )
        if not results:
            logger.info("[probe]   no probe results")
        hints = [url for url in (rec.url for rec in self.records) if _RESOURCE_HINT_RE.search(url)][-25:]
        logger.info("[probe]   resource hints: %s", hints)

    # -- driver ------------------------------------------------------------------

    async def report_unresolved_names(
        self, turn: CaptureTurn, final: list[CaptureAttachment], cleaned: list[CaptureAttachment]
    ):
        """Record file names a user turn mentions but no attachment accounts for (chatgpt, ai_studio)."""
        if self.source not in ("chatgpt", "ai_studio"):
            return
        unresolved = detect_unresolved_inline_names(turn, final)
        if unresolved:
            self.failures.extend(str(UnresolvedInlineReference(name)) for name in unresolved)
            await self.log_probe(turn, cleaned, unresolved, "unresolved_name")

    def _emit(self, processed: int, total: int, failed: int):
        if self.on_progress is not None:
            self.on_progress(MaterializeProgress(processed=processed, total=total, failed=failed))

    async def run(self, turns: list[CaptureTurn], strict: bool = False) -> list[CaptureTurn]:
        if not turns:
            return turns

        work = [merge_turn_attachments([], strip_virtual_placeholders(t.attachments or [])) or [] for t in turns]
        total = sum(len(items) for items in work)
        processed = 0
        failed = 0
        self._emit(0, total, 0)

        output: list[CaptureTurn] = []
        for turn, attachments in zip(turns, work):
            if not attachments:
                await self.report_unresolved_names(turn, [], [])
                output.append(turn)
                continue

            reasons: dict[str, str] = {}
            normalized: list[CaptureAttachment] = []
            pending = 0
            for attachment in attachments:
                required = should_require_download(self.source, turn, attachment)
                finalized = await self.maybe_inline(attachment, force=required)
                if is_data_url(finalized.original_url):
                    finalized = finalized.model_copy(update={"status": "cached"})
                    self.cached += 1
                elif required:
                    finalized = finalized.model_copy(update={"status": "failed"})
                    reasons[finalized.original_url.strip()] = (
                        REASON_NAME_ONLY if is_virtual_upload_url(attachment.original_url) else REASON_DOWNLOAD_FAILED
                    )
                    pending += 1
                normalized.append(finalized)
                processed += 1
                self._emit(processed, total, failed + pending)

            cleaned = strip_redundant_failed(merge_turn_attachments([], normalized, self.ctx) or [])
            final: list[CaptureAttachment] = []
            for attachment in strip_virtual_placeholders(cleaned):
                if is_virtual_upload_url(attachment.original_url):
                    reasons[attachment.original_url.strip()] = REASON_NAME_ONLY
                    attachment = attachment.model_copy(update={"status": "failed"})
                final.append(attachment)

            retained_failed = [a for a in final if a.status == "failed"]
            for attachment in retained_failed:
                reason = reasons.get(attachment.original_url.strip(), REASON_DOWNLOAD_FAILED)
                self.failures.append(f"{attachment_display_name(attachment)} ({reason})")
                failed += 1
            self._emit(processed, total, failed)

            output.append(turn.model_copy(update={"attachments": merge_turn_attachments([], final, self.ctx)}))

            await self.report_unresolved_names(turn, final, cleaned)
            if retained_failed:
                await self.log_probe(
                    turn, retained_failed, [attachment_display_name(a) for a in retained_failed], "download_failed"
                )

        if self.failures:
            if strict:
                raise AttachmentDownloadFailed(self.failures)
            logger.warning(
                "[materialize] %s: %d attachment failures, continuing: %s",
                self.source, len(self.failures), self.failures[:3],
            )
        return dedupe_turns(output)

"""
Capture flows.

One runner serves every host: warmup, snapshot, extraction, host-specific
enrichment, attachment materialization, payload assembly. Progress goes out
through an emitter as two phases, ``content`` then ``files``, each 0-100.

Tolerant runs (the default) never fail on attachments: if the attachment
stage blows up the capture degrades to text only and says so in the warning.
Strict runs let AttachmentDownloadFailed through.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Callable

from playwright.async_api import Page

from chatcapture.enrichment import apply_drive_attachments, enrich_chatgpt_turns
from chatcapture.errors import NoContentExtracted
from chatcapture.extractors import extract_turns
from chatcapture.fetcher import AttachmentFetcher
from chatcapture.materializer import AttachmentMaterializer, MaterializeProgress, count_materializable
from chatcapture.models import CapturePayload, CaptureTurn
from chatcapture.network_tracker import NetworkActivityTracker, get_network_tracker
from chatcapture.payload import create_capture_payload, infer_source_from_url
from chatcapture.snapshot import PageSnapshot, capture_snapshot
from chatcapture.warmup import warmup_source

logger = logging.getLogger(__name__)

MAX_WARNING_EXAMPLES = 3
EXTRACTION_PERCENT = {"chatgpt": 25, "gemini": 40, "ai_studio": 45, "claude": 40}


@dataclass
class CaptureProgress:
    phase: str  # "content" | "files"
    percent: int
    status: str
    processed: int | None = None
    total: int | None = None
    failed: int | None = None

    def to_event(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


ProgressEmitter = Callable[[CaptureProgress], None]


@dataclass
class CaptureResult:
    payload: CapturePayload
    warning: str | None = None


@dataclass
class AttachmentSummary:
    total: int = 0
    inlined: int = 0
    failed: int = 0


def _discard(progress: CaptureProgress):
    pass


def summarize_attachments(turns: list[CaptureTurn]) -> AttachmentSummary:
    summary = AttachmentSummary()
    for turn in turns:
        for attachment in turn.attachments or []:
            summary.total += 1
            if attachment.original_url.startswith("data:"):
                summary.inlined += 1
            if attachment.status == "failed":
                summary.failed += 1
    return summary


def build_warning(stage_error: str, summary: AttachmentSummary, failures: list[str]) -> str | None:
    parts = []
    if stage_error:
        parts.append(f"attachment stage error: {stage_error}")
    if summary.failed > 0 or failures:
        # unresolved file names are failures with no attachment behind them
        failed = max(summary.failed, len(failures))
        succeeded = max(0, summary.total - summary.failed)
        parts.append(f"attachment download failed {failed}, succeeded {succeeded}")
    if failures:
        parts.append("e.g. " + ", ".join(failures[:MAX_WARNING_EXAMPLES]))
    return "; ".join(parts) or None


async def enrich_turns(
    source: str,
    turns: list[CaptureTurn],
    snapshot: PageSnapshot,
    fetcher: AttachmentFetcher,
    emit: ProgressEmitter,
) -> list[CaptureTurn]:
    if source == "chatgpt":
        emit(CaptureProgress("content", 45, "Enriching conversation metadata"))
        return await enrich_chatgpt_turns(turns, snapshot, fetcher)
    if source == "ai_studio":
        emit(CaptureProgress("content", 70, "Linking attachment hints"))
        return apply_drive_attachments(turns, snapshot)
    return turns


async def capture_from_snapshot(
    source: str,
    snapshot: PageSnapshot,
    fetcher: AttachmentFetcher,
    emit: ProgressEmitter | None = None,
    strict: bool = False,
) -> CaptureResult:
    """Everything after the page has been read: extraction through payload."""
    emit = emit or _discard

    turns = extract_turns(source, snapshot)
    if not turns:
        raise NoContentExtracted(source)
    logger.info("[flow] %s: extracted %d turns", source, len(turns))

    turns = await enrich_turns(source, turns, snapshot, fetcher, emit)
    emit(CaptureProgress("content", 100, "Conversation content extracted"))

    estimated = count_materializable(turns)
    emit(CaptureProgress(
        "files", 0,
        f"Preparing attachment downloads ({estimated} attachments)" if estimated else "No attachments",
        processed=0, total=estimated, failed=0,
    ))

    def on_progress(progress: MaterializeProgress):
        percent = min(100, round(progress.processed / progress.total * 100)) if progress.total else 100
        emit(CaptureProgress(
            "files", percent, "Downloading attachments",
            processed=progress.processed, total=progress.total, failed=progress.failed,
        ))

    materializer = AttachmentMaterializer(source, fetcher, snapshot.ctx, snapshot.records, on_progress)
    stage_error = ""
    try:
        finalized = await materializer.run(turns, strict=strict)
    except Exception as e:
        if strict:
            raise
        stage_error = str(e)
        logger.warning("[flow] %s attachment stage failed, importing text only: %s", source, e)
        emit(CaptureProgress(
            "files", 100, "Attachment stage failed, importing text only",
            processed=0, total=estimated, failed=estimated,
        ))
        finalized = turns

    summary = summarize_attachments(finalized)
    emit(CaptureProgress(
        "files", 100,
        f"Attachments done, {summary.failed} failed" if summary.failed else "Attachments downloaded",
        processed=summary.total, total=summary.total, failed=summary.failed,
    ))

    warning = build_warning(stage_error, summary, materializer.failures)
    if warning:
        logger.warning("[flow] %s: %s", source, warning)
    return CaptureResult(payload=create_capture_payload(source, snapshot, finalized), warning=warning)


async def run_capture_flow(
    page: Page,
    source: str | None = None,
    emit: ProgressEmitter | None = None,
    strict: bool = False,
    tracker: NetworkActivityTracker | None = None,
) -> CaptureResult:
    """One capture run against an already loaded chat page."""
    emit = emit or _discard
    source = source or infer_source_from_url(page.url)
    tracker = tracker or get_network_tracker(page)
    if not tracker.capture_window_start:
        tracker.begin_capture_window()

    emit(CaptureProgress("content", 5, "Loading page content"))
    await warmup_source(page, source, tracker)
    emit(CaptureProgress("content", EXTRACTION_PERCENT[source], "Parsing conversation"))
    snapshot = await capture_snapshot(page, tracker)

    async with await AttachmentFetcher.from_page(page) as fetcher:
        return await capture_from_snapshot(source, snapshot, fetcher, emit, strict)

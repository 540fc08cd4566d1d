import pytest

from chatcapture import flows
from chatcapture.errors import AttachmentDownloadFailed, NoContentExtracted
from chatcapture.flows import (
    AttachmentSummary,
    CaptureProgress,
    build_warning,
    capture_from_snapshot,
    summarize_attachments,
)
from chatcapture.materializer import AttachmentMaterializer
from chatcapture.models import CaptureAttachment, CaptureTurn
from chatcapture.snapshot import PageSnapshot

from conftest import FakeFetcher


CHATGPT_PAGE = """
<html><head><title>Trip plan - ChatGPT</title></head><body><main>
<article data-testid="conversation-turn-1">
  <div data-message-author-role="user"><div>Plan a trip to Rome</div></div>
</article>
<article data-testid="conversation-turn-2">
  <div data-message-author-role="assistant"><div class="markdown"><p>Start at the Colosseum.</p></div></div>
</article>
</main></body></html>
"""

GOOD = "https://files.example.com/docs/a.pdf"
BAD = "https://files.example.com/docs/b.pdf"


def claude_snapshot():
    return PageSnapshot.from_html("<main></main>", url="https://claude.ai/chat/1", title="Recipes - Claude")


def turns_with_files():
    return [
        CaptureTurn(
            role="user",
            content_markdown="Compare these",
            attachments=[
                CaptureAttachment(kind="pdf", original_url=GOOD),
                CaptureAttachment(kind="pdf", original_url=BAD),
            ],
        ),
        CaptureTurn(role="assistant", content_markdown="They differ."),
    ]


@pytest.fixture
def extracted_with_files(monkeypatch):
    monkeypatch.setattr(flows, "extract_turns", lambda source, snapshot: turns_with_files())


async def test_text_only_chatgpt_capture():
    events = []
    snapshot = PageSnapshot.from_html(CHATGPT_PAGE, url="https://chatgpt.com/c/abc?model=x")

    result = await capture_from_snapshot("chatgpt", snapshot, FakeFetcher(), events.append)

    payload = result.payload
    assert result.warning is None
    assert payload.title == "Trip plan"
    assert payload.page_url == "https://chatgpt.com/c/abc"
    assert [t.role for t in payload.turns] == ["user", "assistant"]
    assert [e.status for e in events] == [
        "Enriching conversation metadata",
        "Conversation content extracted",
        "No attachments",
        "Downloading attachments",
        "Attachments downloaded",
    ]
    assert [e.phase for e in events] == ["content", "content", "files", "files", "files"]


async def test_assistant_image_is_inlined():
    image = "https://files.example.com/photo.png"
    html = (
        "<main>"
        '<div data-message-author-role="user"><div>Hello</div></div>'
        f'<div data-message-author-role="assistant"><p>Hi</p><img src="{image}" alt="photo"></div>'
        "</main>"
    )
    snapshot = PageSnapshot.from_html(html, url="https://chatgpt.com/c/abc")
    fetcher = FakeFetcher(bodies={image: ("image/png", b"png")})

    result = await capture_from_snapshot("chatgpt", snapshot, fetcher, strict=True)

    user, assistant = result.payload.turns
    assert user.content_markdown == "Hello"
    [attachment] = assistant.attachments
    assert attachment.status == "cached"
    assert attachment.kind == "image"
    assert result.warning is None


async def test_named_files_without_links_are_reported():
    html = (
        "<main>"
        '<div data-message-author-role="user"><p>summary.pdf</p><p>budget.xlsx</p><p>please compare</p></div>'
        '<div data-message-author-role="assistant"><p>I cannot see the files.</p></div>'
        "</main>"
    )
    snapshot = PageSnapshot.from_html(html, url="https://chatgpt.com/c/abc")

    result = await capture_from_snapshot("chatgpt", snapshot, FakeFetcher())

    assert result.warning == (
        "attachment download failed 2, succeeded 0; e.g. "
        "summary.pdf (only a file name was recognized, no downloadable link), "
        "budget.xlsx (only a file name was recognized, no downloadable link)"
    )
    with pytest.raises(AttachmentDownloadFailed):
        await capture_from_snapshot("chatgpt", snapshot, FakeFetcher(), strict=True)


async def test_partial_download_is_a_warning(extracted_with_files):
    events = []
    fetcher = FakeFetcher(bodies={GOOD: ("application/pdf", b"%PDF")})

    result = await capture_from_snapshot("claude", claude_snapshot(), fetcher, events.append)

    [user, _] = result.payload.turns
    assert [a.status for a in user.attachments] == ["cached", "failed"]
    assert result.payload.title == "Recipes"
    assert result.warning == "attachment download failed 1, succeeded 1; e.g. b.pdf (download failed)"
    files = [e for e in events if e.phase == "files"]
    assert files[0].status == "Preparing attachment downloads (2 attachments)"
    assert (files[-1].status, files[-1].processed, files[-1].failed) == ("Attachments done, 1 failed", 2, 1)
    assert max(e.percent for e in files) == 100


async def test_strict_capture_raises_on_failed_download(extracted_with_files):
    fetcher = FakeFetcher(bodies={GOOD: ("application/pdf", b"%PDF")})
    with pytest.raises(AttachmentDownloadFailed):
        await capture_from_snapshot("claude", claude_snapshot(), fetcher, strict=True)


async def test_attachment_stage_crash_degrades_to_text(extracted_with_files, monkeypatch):
    async def boom(self, turns, strict=False):
        raise RuntimeError("boom")

    monkeypatch.setattr(AttachmentMaterializer, "run", boom)
    events = []

    result = await capture_from_snapshot("claude", claude_snapshot(), FakeFetcher(), events.append)

    assert result.warning == "attachment stage error: boom"
    assert [a.status for a in result.payload.turns[0].attachments] == ["remote_only", "remote_only"]
    assert "Attachment stage failed, importing text only" in [e.status for e in events]

    with pytest.raises(RuntimeError):
        await capture_from_snapshot("claude", claude_snapshot(), FakeFetcher(), strict=True)


async def test_empty_page_has_no_content():
    snapshot = PageSnapshot.from_html("<html><body><main></main></body></html>", url="https://gemini.google.com/app/1")
    with pytest.raises(NoContentExtracted) as info:
        await capture_from_snapshot("gemini", snapshot, FakeFetcher())
    assert info.value.source == "gemini"


def test_summarize_attachments():
    turns = [
        CaptureTurn(role="user", content_markdown="x", attachments=[
            CaptureAttachment(kind="image", original_url="data:image/png;base64,AA", status="cached"),
            CaptureAttachment(kind="pdf", original_url=BAD, status="failed"),
        ]),
        CaptureTurn(role="assistant", content_markdown="y"),
    ]
    assert summarize_attachments(turns) == AttachmentSummary(total=2, inlined=1, failed=1)


def test_build_warning():
    assert build_warning("", AttachmentSummary(total=3), []) is None
    assert build_warning("", AttachmentSummary(), ["a.pdf (download failed)"]) == (
        "attachment download failed 1, succeeded 0; e.g. a.pdf (download failed)"
    )
    summary = AttachmentSummary(total=5, failed=4)
    failures = ["a", "b", "c", "d"]
    assert build_warning("timeout", summary, failures) == (
        "attachment stage error: timeout; attachment download failed 4, succeeded 1; e.g. a, b, c"
    )


def test_progress_event_drops_unset_counts():
    assert CaptureProgress("content", 5, "Loading page content").to_event() == {
        "phase": "content",
        "percent": 5,
        "status": "Loading page content",
    }
    assert CaptureProgress("files", 50, "Downloading attachments", 1, 2, 0).to_event()["failed"] == 0

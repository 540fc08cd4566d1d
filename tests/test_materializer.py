import pytest

from chatcapture.attachments import build_virtual_upload_url
from chatcapture.errors import AttachmentDownloadFailed
from chatcapture.identifiers import MiningContext
from chatcapture.materializer import (
    AttachmentMaterializer,
    count_materializable,
    detect_unresolved_inline_names,
    should_require_download,
)
from chatcapture.models import CaptureAttachment, CaptureTurn, TrackedNetworkRecord
from chatcapture.network_tracker import now_ms

from conftest import FakeFetcher


ONE = "https://files.example.com/img/one.png"
TWO = "https://files.example.com/docs/two.pdf"
THREE = "https://files.example.com/docs/three.csv"
FOUR = "https://files.example.com/img/four.png"
FIVE = "https://files.example.com/docs/five.pdf"


def att(url, kind="file"):
    return CaptureAttachment(kind=kind, original_url=url)


def five_attachment_turns():
    return [
        CaptureTurn(
            role="user",
            content_markdown="Here are my files",
            attachments=[att(ONE, "image"), att(TWO, "pdf"), att(THREE), att(FOUR, "image"), att(FIVE, "pdf")],
        ),
        CaptureTurn(role="assistant", content_markdown="Looks good"),
    ]


def three_of_five_fetcher():
    return FakeFetcher(bodies={
        ONE: ("image/png", b"png-one"),
        TWO: ("application/pdf", b"%PDF-two"),
        THREE: ("text/csv", b"csv-data"),
    })


async def test_tolerant_run_keeps_partial_results():
    progress = []
    fetcher = three_of_five_fetcher()
    materializer = AttachmentMaterializer("chatgpt", fetcher, on_progress=progress.append)

    out = await materializer.run(five_attachment_turns())

    attachments = out[0].attachments
    assert [a.status for a in attachments] == ["cached", "cached", "cached", "failed", "failed"]
    assert [a.kind for a in attachments] == ["image", "pdf", "file", "image", "pdf"]
    assert attachments[0].original_url.startswith("data:image/png;base64,")
    assert attachments[3].original_url == FOUR
    assert materializer.cached == 3
    assert materializer.failures == ["four.png (download failed)", "five.pdf (download failed)"]
    assert (progress[0].processed, progress[0].total) == (0, 5)
    assert (progress[-1].processed, progress[-1].total, progress[-1].failed) == (5, 5, 2)
    assert fetcher.probed == [FOUR, FIVE]


async def test_strict_run_raises_with_failures():
    materializer = AttachmentMaterializer("chatgpt", three_of_five_fetcher())
    with pytest.raises(AttachmentDownloadFailed) as info:
        await materializer.run(five_attachment_turns(), strict=True)
    assert info.value.failures == ["four.png (download failed)", "five.pdf (download failed)"]
    assert str(info.value).startswith("Attachment download failed: four.png")


async def test_name_only_placeholder_is_reported():
    turn = CaptureTurn(
        role="user",
        content_markdown="see notes.docx",
        attachments=[att(build_virtual_upload_url("notes.docx"))],
    )
    fetcher = FakeFetcher()
    materializer = AttachmentMaterializer("chatgpt", fetcher)

    [out] = await materializer.run([turn])

    assert out.attachments[0].status == "failed"
    assert materializer.failures == ["notes.docx (only a file name was found, no real link)"]
    assert fetcher.inline_calls == []


async def test_named_files_on_a_turn_without_attachments_are_reported():
    turn = CaptureTurn(role="user", content_markdown="a.pdf\nb.pdf\ncompare them")
    materializer = AttachmentMaterializer("chatgpt", FakeFetcher())

    [out] = await materializer.run([turn])

    assert out.attachments is None
    assert materializer.failures == [
        "a.pdf (only a file name was recognized, no downloadable link)",
        "b.pdf (only a file name was recognized, no downloadable link)",
    ]
    with pytest.raises(AttachmentDownloadFailed):
        await AttachmentMaterializer("chatgpt", FakeFetcher()).run([turn], strict=True)

    gemini = AttachmentMaterializer("gemini", FakeFetcher())
    await gemini.run([turn])
    assert gemini.failures == []


async def test_drive_links_stay_links_on_google_hosts():
    drive = "https://drive.google.com/file/d/1AbC/view"
    turn = CaptureTurn(role="user", content_markdown="my doc", attachments=[att(drive)])
    fetcher = FakeFetcher()
    materializer = AttachmentMaterializer("gemini", fetcher)

    [out] = await materializer.run([turn], strict=True)

    assert out.attachments[0].status == "remote_only"
    assert out.attachments[0].original_url == drive
    assert materializer.failures == []
    assert fetcher.inline_calls == []


async def test_tracked_traffic_is_tried_first():
    tracked_url = "https://chatgpt.com/backend-api/files/download/file-Trk1234567"
    estuary = "https://chatgpt.com/backend-api/estuary/content?id=file-Trk1234567"
    records = [TrackedNetworkRecord(url=tracked_url, method="GET", started_at=now_ms(), status=200, ok=True)]
    ctx = MiningContext(page_url="https://chatgpt.com/c/abc", tracked_urls=[tracked_url])
    fetcher = FakeFetcher(bodies={tracked_url: ("image/png", b"png")})
    turn = CaptureTurn(role="user", content_markdown="look", attachments=[att(estuary, "image")])

    [out] = await AttachmentMaterializer("chatgpt", fetcher, ctx, records).run([turn], strict=True)

    assert fetcher.inline_calls == [tracked_url]
    assert out.attachments[0].status == "cached"
    assert out.attachments[0].mime == "image/png"


async def test_inline_data_needs_no_download():
    data = "data:image/png;base64,AAAA"
    turn = CaptureTurn(role="assistant", content_markdown="chart", attachments=[att(data, "image")])
    fetcher = FakeFetcher()
    [out] = await AttachmentMaterializer("claude", fetcher).run([turn], strict=True)
    assert out.attachments[0].status == "cached"
    assert fetcher.inline_calls == []


async def test_empty_turns():
    assert await AttachmentMaterializer("chatgpt", FakeFetcher()).run([]) == []


def test_require_download_policy():
    user = CaptureTurn(role="user", content_markdown="x")
    tool = CaptureTurn(role="tool", content_markdown="x")
    assert should_require_download("chatgpt", user, att(FIVE, "pdf"))
    assert not should_require_download("chatgpt", tool, att(FIVE, "pdf"))
    assert not should_require_download("chatgpt", user, att("data:application/pdf;base64,AA", "pdf"))
    assert not should_require_download("gemini", user, att("https://drive.google.com/file/d/1/view"))
    assert not should_require_download("chatgpt", user, att("https://example.com/page"))


def test_count_materializable_ignores_shadowed_placeholders():
    turns = [
        CaptureTurn(
            role="user",
            content_markdown="a.pdf",
            attachments=[att(build_virtual_upload_url("a.pdf"), "pdf"), att("https://example.com/files/a.pdf", "pdf")],
        ),
        CaptureTurn(role="assistant", content_markdown="ok"),
    ]
    assert count_materializable(turns) == 1


def test_unresolved_inline_names():
    turn = CaptureTurn(role="user", content_markdown="a.pdf\nb.pdf")
    assert detect_unresolved_inline_names(turn, []) == ["a.pdf", "b.pdf"]
    known = [att("https://example.com/files/a.pdf", "pdf"), att("https://example.com/files/b.pdf", "pdf")]
    assert detect_unresolved_inline_names(turn, known) == []
    assistant = CaptureTurn(role="assistant", content_markdown="a.pdf")
    assert detect_unresolved_inline_names(assistant, []) == []

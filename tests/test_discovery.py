from bs4 import BeautifulSoup

from chatcapture.discovery import (
    extract_attachments_from_api_message,
    extract_attachments_from_markdown,
    extract_structural_attachments,
    is_navigation_url,
    is_ui_asset,
)
from chatcapture.identifiers import MiningContext


PAGE_URL = "https://chatgpt.com/c/abc"


def node(markup: str):
    return BeautifulSoup(markup, "html.parser").div


def urls(attachments):
    return [a.original_url for a in attachments]


def test_navigation_urls():
    assert is_navigation_url("https://chatgpt.com/c/other-thread")
    assert is_navigation_url("https://gemini.google.com/app/123abc")
    assert not is_navigation_url("https://chatgpt.com/backend-api/files/file-abc12345/download")
    assert not is_navigation_url("https://example.com/page")
    assert is_navigation_url("https://web-sandbox.oaiusercontent.com/?app=chatgpt")


def test_ui_assets():
    assert is_ui_asset("https://cdn.example.com/avatar.png")
    assert not is_ui_asset("https://cdn.example.com/chart.png")


def test_markdown_images_links_and_bare_urls():
    text = (
        "Look ![chart](https://cdn.example.com/chart.png) and [report](https://example.com/files/report.pdf). "
        "Also https://chatgpt.com/c/other-thread"
    )
    found = extract_attachments_from_markdown(text, MiningContext(page_url=PAGE_URL))
    assert [(a.kind, a.original_url, a.mime) for a in found] == [
        ("image", "https://cdn.example.com/chart.png", "image/png"),
        ("pdf", "https://example.com/files/report.pdf", "application/pdf"),
    ]


def test_markdown_empty():
    assert extract_attachments_from_markdown("   ", MiningContext()) == []


def test_structural_images_links_and_file_tiles():
    turn = node(
        '<div data-message-author-role="user">'
        '<img src="https://files.example.com/photo.png" alt="photo">'
        '<img src="https://cdn.example.com/avatar.png">'
        '<a href="https://example.com/docs/paper.pdf">paper</a>'
        '<a href="https://chatgpt.com/c/abc">conversation</a>'
        '<button aria-label="notes.docx">notes.docx</button>'
        "</div>"
    )
    found = extract_structural_attachments(turn, MiningContext(page_url=PAGE_URL))
    assert urls(found) == [
        "https://files.example.com/photo.png",
        "https://example.com/docs/paper.pdf",
        "chatcapture://upload/notes.docx",
    ]
    assert [a.kind for a in found] == ["image", "pdf", "file"]


def test_structural_file_id_attributes_become_backend_candidates():
    turn = node(
        '<div data-file-id="file-AbCdEf123456"><span>report.pdf</span></div>'
    )
    found = urls(extract_structural_attachments(turn, MiningContext(page_url=PAGE_URL)))
    assert "https://chatgpt.com/backend-api/estuary/content?id=file-AbCdEf123456" in found
    assert "https://chatgpt.com/backend-api/files/file-AbCdEf123456/download" in found


def test_nested_file_id_attributes_become_backend_candidates():
    turn = node(
        '<div><p>see attached</p><div data-asset-id="file-Nested987654"></div></div>'
    )
    found = urls(extract_structural_attachments(turn, MiningContext(page_url=PAGE_URL)))
    assert "https://chatgpt.com/backend-api/estuary/content?id=file-Nested987654" in found


def test_api_message_records():
    message = {
        "id": "node-1",
        "metadata": {
            "attachments": [
                {"id": "file-Report1234567", "name": "report.pdf", "mime_type": "application/pdf"},
            ],
        },
        "content": {
            "parts": [
                {"asset_pointer": "file-service://file-Image7654321", "content_type": "image_asset_pointer"},
            ],
        },
    }
    found = extract_attachments_from_api_message(message, MiningContext(page_url=PAGE_URL))
    report = [a for a in found if "file-Report1234567" in a.original_url]
    image = [a for a in found if "file-Image7654321" in a.original_url]
    assert report and all(a.kind == "pdf" and a.mime == "application/pdf" for a in report)
    assert image
    assert not any("id=file-service" in url for url in urls(found))


def test_api_message_direct_urls():
    message = [{"download_url": "https://files.example.com/data/sheet.xlsx", "file_name": "sheet.xlsx"}]
    found = extract_attachments_from_api_message(message, MiningContext(page_url=PAGE_URL))
    assert "https://files.example.com/data/sheet.xlsx" in urls(found)


def test_api_walk_stops_at_visit_limit():
    nested = [{"attachment": {"url": f"https://files.example.com/f{index}.pdf"}} for index in range(10)]
    found = extract_attachments_from_api_message(nested, MiningContext(), max_visited=3)
    assert 0 < len(found) < 10

import pytest

from chatcapture.classify import (
    infer_attachment_kind,
    infer_attachment_mime,
    infer_kind_from_mime_hint,
    is_likely_attachment_url,
    is_likely_oai_attachment_url,
    kind_score,
    looks_like_cloud_drive_file_url,
    looks_like_file_url,
    looks_like_image_url,
    looks_like_pdf_url,
)


ESTUARY = "https://chatgpt.com/backend-api/estuary/content?id=file_abc123456"


def test_inline_data_mime_wins_over_everything():
    assert infer_attachment_kind("data:application/pdf;base64,AAAA", "photo.png") == "pdf"
    assert infer_attachment_kind("data:image/webp;base64,AAAA", "notes.pdf") == "image"


def test_kind_from_url_extension():
    assert infer_attachment_kind("https://example.com/a/photo.PNG") == "image"
    assert infer_attachment_kind("https://example.com/a/paper.pdf?x=1") == "pdf"
    assert infer_attachment_kind("https://example.com/a/sheet.xlsx") == "file"


def test_label_extension_outranks_the_url():
    assert infer_attachment_kind("https://example.com/download/123", "Quarterly.pdf") == "pdf"
    assert infer_attachment_kind("https://x.example.com/files/abc123", "holiday.png") == "image"
    assert infer_attachment_kind("https://x.example.com/files/abc123", "report.pdf") == "pdf"
    assert infer_attachment_kind("https://example.com/share/deck.pdf", "cover.jpg") == "image"


def test_pdf_inside_a_word_is_not_an_extension():
    assert infer_attachment_kind("https://x.example.com/files/abc123", "pdf-export-guide.png") == "image"
    assert infer_attachment_kind("https://x.example.com/files/abc123", "pdf tips") == "file"
    assert infer_attachment_kind(ESTUARY, "pdf-export-guide.png") == "image"


def test_estuary_urls_use_label_and_params():
    assert infer_attachment_kind(ESTUARY, "report.pdf") == "pdf"
    assert infer_attachment_kind(ESTUARY, "diagram.png") == "image"
    assert infer_attachment_kind(ESTUARY + "&format=webp") == "image"
    assert infer_attachment_kind(ESTUARY) == "file"


def test_estuary_urls_look_like_images():
    assert looks_like_image_url(ESTUARY)


@pytest.mark.parametrize("value", ["", "data:", "::::", "http://[::1", "blob:", "   "])
def test_classifiers_are_total(value):
    assert infer_attachment_kind(value) == "file"
    assert isinstance(looks_like_file_url(value), bool)
    assert isinstance(looks_like_pdf_url(value), bool)
    assert isinstance(is_likely_oai_attachment_url(value), bool)


def test_specificity_scores():
    assert kind_score("pdf") > kind_score("image") > kind_score("file")
    assert kind_score("unknown") == 0


def test_mime_inference():
    assert infer_attachment_mime("image", "https://example.com/a.jpg") == "image/jpeg"
    assert infer_attachment_mime("pdf", "https://example.com/download") == "application/pdf"
    assert infer_attachment_mime("file", "https://example.com/a.docx") is None
    assert infer_attachment_mime("image", "data:image/gif;base64,R0lG") == "image/gif"


def test_mime_hint():
    assert infer_kind_from_mime_hint("application/pdf; charset=binary") == "pdf"
    assert infer_kind_from_mime_hint("IMAGE/PNG") == "image"
    assert infer_kind_from_mime_hint("text/plain") is None
    assert infer_kind_from_mime_hint(None) is None


def test_oai_attachment_urls():
    assert is_likely_oai_attachment_url("https://files.oaiusercontent.com/file-AbCd1234?se=2024")
    assert is_likely_oai_attachment_url("https://sdmntpr.oaiusercontent.com/x?download=1")
    assert not is_likely_oai_attachment_url("https://web-sandbox.oaiusercontent.com/?app=chatgpt")
    assert not is_likely_oai_attachment_url("https://example.com/file.pdf")


def test_cloud_drive_links():
    assert looks_like_cloud_drive_file_url("https://drive.google.com/file/d/abc/view")
    assert looks_like_cloud_drive_file_url("https://docs.google.com/document/d/abc/edit")
    assert not looks_like_cloud_drive_file_url("https://drive.google.com/drive/my-drive")


def test_likely_attachment_url():
    assert is_likely_attachment_url("https://example.com/x")
    assert is_likely_attachment_url("blob:https://chatgpt.com/123")
    assert is_likely_attachment_url("/backend-api/files/file-abc/download")
    assert not is_likely_attachment_url("about:blank")

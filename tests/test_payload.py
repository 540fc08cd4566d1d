import pytest

from chatcapture.models import CaptureTurn
from chatcapture.payload import (
    canonicalize_page_url,
    create_capture_payload,
    derive_title,
    infer_source_from_url,
    normalize_title,
    title_from_turns,
)
from chatcapture.snapshot import PageSnapshot


TURNS = [
    CaptureTurn(role="assistant", content_markdown="Welcome back"),
    CaptureTurn(role="user", content_markdown="How do I   bake\nsourdough bread at home without a proofing basket?"),
]


@pytest.mark.parametrize("url, expected", [
    ("https://chatgpt.com/c/abc?model=gpt-4o#top", "https://chatgpt.com/c/abc"),
    ("https://gemini.google.com/app/123?hl=en", "https://gemini.google.com/app/123"),
    ("https://aistudio.google.com/prompts/xyz?utm=1", "https://aistudio.google.com/prompts/xyz"),
    ("https://claude.ai/chat/abc?ref=share", "https://claude.ai/chat/abc"),
    ("https://chatgpt.com", "https://chatgpt.com/"),
    ("https://example.com/page?id=1#frag", "https://example.com/page?id=1"),
    ("/relative/path", "/relative/path"),
])
def test_canonicalize_page_url(url, expected):
    assert canonicalize_page_url(url) == expected


def test_title_from_first_user_turn():
    assert title_from_turns(TURNS) == "How do I bake sourdough bread at home without a proofing bas"
    assert title_from_turns([TURNS[0]]) == "Untitled Conversation"
    assert title_from_turns([]) == "Untitled Conversation"


@pytest.mark.parametrize("raw, expected", [
    ("Sourdough tips - ChatGPT", "Sourdough tips"),
    ("Sourdough tips - Gemini", "Sourdough tips"),
    ("Sourdough tips | Google AI Studio", "Sourdough tips"),
    ("Sourdough tips - Claude", "Sourdough tips"),
    ("ChatGPT", "fallback"),
    ("Google Gemini", "fallback"),
    ("   ", "fallback"),
])
def test_normalize_title(raw, expected):
    assert normalize_title(raw, "fallback") == expected


def test_chatgpt_title_comes_from_document_title():
    snapshot = PageSnapshot.from_html(
        "<html><head><title>Bread - ChatGPT</title></head><body><main><h1>Other</h1></main></body></html>",
        url="https://chatgpt.com/c/1",
    )
    assert derive_title("chatgpt", snapshot, TURNS) == "Bread"


def test_gemini_title_prefers_heading():
    snapshot = PageSnapshot.from_html(
        "<html><head><title>Gemini</title></head><body><main><h1> Bread  help </h1></main></body></html>"
    )
    assert derive_title("gemini", snapshot, TURNS) == "Bread help"


def test_title_falls_back_to_user_turn():
    snapshot = PageSnapshot.from_html("<html><head><title>Claude</title></head><body><main></main></body></html>")
    assert derive_title("claude", snapshot, TURNS).startswith("How do I bake sourdough")


@pytest.mark.parametrize("url, source", [
    ("https://claude.ai/chat/1", "claude"),
    ("https://aistudio.google.com/prompts/1", "ai_studio"),
    ("https://gemini.google.com/app/1", "gemini"),
    ("https://bard.google.com/chat/1", "gemini"),
    ("https://chatgpt.com/c/1", "chatgpt"),
    ("https://example.com/", "chatgpt"),
])
def test_infer_source_from_url(url, source):
    assert infer_source_from_url(url) == source


def test_payload_wire_shape():
    snapshot = PageSnapshot.from_html(
        "<html><head><title>Bread - ChatGPT</title></head><body></body></html>",
        url="https://chatgpt.com/c/1?model=x",
    )
    wire = create_capture_payload("chatgpt", snapshot, TURNS).to_wire()

    assert wire["source"] == "chatgpt"
    assert wire["pageUrl"] == "https://chatgpt.com/c/1"
    assert wire["title"] == "Bread"
    assert wire["version"] == "1.2.0"
    assert wire["capturedAt"].endswith("Z")
    assert wire["turns"][1]["role"] == "user"
    assert "contentMarkdown" in wire["turns"][1]
    assert wire["turns"][0]["attachments"] is None

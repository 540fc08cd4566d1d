import pytest

from chatcapture.extractors import extract_turns, pick_ai_studio_root
from chatcapture.snapshot import PageSnapshot


def pairs(turns):
    return [(turn.role, turn.content_markdown) for turn in turns]


CHATGPT_PAGE = """
<html><head><title>Trip plan - ChatGPT</title></head><body><main>
<article data-testid="conversation-turn-1">
  <div data-message-author-role="user"><div>Plan a trip to Rome</div></div>
</article>
<article data-testid="conversation-turn-2">
  <div data-message-author-role="assistant"><div class="markdown"><p>Day 1: <strong>Colosseum</strong></p></div></div>
</article>
</main></body></html>
"""

GEMINI_PAGE = """
<html><body><main>
<user-query><div class="query-text">You said What is 2+2?</div></user-query>
<model-response><div class="response-content"><div class="markdown">Gemini said 2+2 is 4.</div></div></model-response>
</main></body></html>
"""

AI_STUDIO_PAGE = """
<html><body>
<nav><a href="/settings">Settings</a></nav>
<main>
<ms-chat-turn><div data-role="user">Summarize this</div></ms-chat-turn>
<ms-chat-turn><div data-role="model">Here is the summary.</div></ms-chat-turn>
</main>
</body></html>
"""

CLAUDE_PAGE = """
<html><body><main>
<div class="user-message"><p>Explain recursion</p></div>
<div class="assistant-message"><p>Recursion is when a function calls itself.</p></div>
</main></body></html>
"""


def test_chatgpt_role_attributes():
    snapshot = PageSnapshot.from_html(CHATGPT_PAGE, url="https://chatgpt.com/c/abc")
    assert pairs(extract_turns("chatgpt", snapshot)) == [
        ("user", "Plan a trip to Rome"),
        ("assistant", "Day 1: **Colosseum**"),
    ]


def test_chatgpt_falls_back_to_role_markers():
    snapshot = PageSnapshot.from_html("<main><div>User:\nHi there\nAssistant:\nHello, friend</div></main>")
    assert pairs(extract_turns("chatgpt", snapshot)) == [("user", "Hi there"), ("assistant", "Hello, friend")]


def test_chatgpt_catch_all():
    snapshot = PageSnapshot.from_html("<main><p>Some long standalone text without any markers here.</p></main>")
    assert pairs(extract_turns("chatgpt", snapshot)) == [
        ("assistant", "Some long standalone text without any markers here."),
    ]


def test_gemini_custom_elements_and_prefixes():
    snapshot = PageSnapshot.from_html(GEMINI_PAGE, url="https://gemini.google.com/app/123abc")
    assert pairs(extract_turns("gemini", snapshot)) == [("user", "What is 2+2?"), ("assistant", "2+2 is 4.")]


def test_ai_studio_turns_ignore_navigation():
    snapshot = PageSnapshot.from_html(AI_STUDIO_PAGE, url="https://aistudio.google.com/prompts/abc")
    assert pairs(extract_turns("ai_studio", snapshot)) == [
        ("user", "Summarize this"),
        ("assistant", "Here is the summary."),
    ]


def test_ai_studio_root_prefers_turn_rich_container():
    snapshot = PageSnapshot.from_html(
        '<div role="main"><p>Settings</p></div>'
        '<main><ms-chat-turn>a</ms-chat-turn><ms-chat-turn>b</ms-chat-turn></main>'
    )
    assert pick_ai_studio_root(snapshot).name == "main"


def test_claude_message_classes():
    snapshot = PageSnapshot.from_html(CLAUDE_PAGE, url="https://claude.ai/chat/abc")
    assert pairs(extract_turns("claude", snapshot)) == [
        ("user", "Explain recursion"),
        ("assistant", "Recursion is when a function calls itself."),
    ]


def test_claude_plain_text_markers():
    snapshot = PageSnapshot.from_html("<main><div>You\nHi Claude\nClaude\nHello! How can I help?</div></main>")
    assert pairs(extract_turns("claude", snapshot)) == [
        ("user", "Hi Claude"),
        ("assistant", "Hello! How can I help?"),
    ]


@pytest.mark.parametrize("source", ["chatgpt", "gemini", "ai_studio", "claude"])
def test_empty_page_yields_no_turns(source):
    assert extract_turns(source, PageSnapshot.from_html("<html><body><main></main></body></html>")) == []

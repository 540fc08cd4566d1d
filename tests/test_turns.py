from bs4 import BeautifulSoup

from chatcapture.models import ATTACHMENT_ONLY_PLACEHOLDER, CaptureAttachment, CaptureTurn
from chatcapture.snapshot import PageSnapshot
from chatcapture.turns import (
    build_turn,
    catch_all_turn,
    dedupe_turns,
    extract_node_text_and_thought,
    has_user_exchange,
    leaf_nodes,
    parse_by_claude_role_markers,
    parse_by_role_markers,
    role_from_attrs,
    sanitize_gemini_turn,
    split_thoughts,
    strip_gemini_boilerplate,
)


PAGE_URL = "https://chatgpt.com/c/abc"


def first_div(markup: str):
    return BeautifulSoup(markup, "html.parser").div


def snapshot_with(markup: str) -> PageSnapshot:
    return PageSnapshot.from_html(markup, url=PAGE_URL)


def test_role_from_attrs():
    assert role_from_attrs(first_div('<div data-message-author-role="user"></div>')) == "user"
    assert role_from_attrs(first_div('<div data-role="model"></div>')) == "assistant"
    assert role_from_attrs(first_div('<div data-role="system"></div>')) == "system"
    assert role_from_attrs(first_div('<div data-testid="tool-output"></div>')) == "tool"
    assert role_from_attrs(first_div('<div class="xyz"></div>')) is None


def test_leaf_nodes_skip_wrappers():
    root = first_div('<div><div class="message"><div class="message">inner</div></div></div>')
    leaves = leaf_nodes(root, "[class*='message']")
    assert [leaf.get_text() for leaf in leaves] == ["inner"]


def test_split_textual_thoughts():
    content, thought = split_thoughts("Thoughts\nI should greet.\nUser:\nHello there")
    assert thought == "I should greet."
    assert content == "User:\nHello there"


def test_split_thoughts_without_heading():
    assert split_thoughts("Just an answer") == ("Just an answer", None)
    assert split_thoughts("") == ("", None)


def test_thought_elements_are_separated():
    node = first_div('<div><div class="thoughts-panel">Let me think</div><p>Answer text</p></div>')
    content, thought = extract_node_text_and_thought(node)
    assert content == "Answer text"
    assert thought == "Let me think"
    assert "Let me think" in node.get_text()


def test_build_turn_text():
    snapshot = snapshot_with('<div data-message-author-role="user"><p>Hello <em>there</em></p></div>')
    turn = build_turn(snapshot.soup.div, snapshot)
    assert turn.role == "user"
    assert turn.content_markdown == "Hello *there*"
    assert turn.attachments is None


def test_build_turn_attachment_only_gets_placeholder():
    snapshot = snapshot_with('<div data-message-author-role="user"><button aria-label="notes.docx"></button></div>')
    turn = build_turn(snapshot.soup.div, snapshot)
    assert turn.content_markdown == ATTACHMENT_ONLY_PLACEHOLDER
    assert [a.original_url for a in turn.attachments] == ["chatcapture://upload/notes.docx"]


def test_build_turn_rejects_empty_or_roleless():
    snapshot = snapshot_with('<div data-role="user">a</div><div class="xyz">Some text</div>')
    empty, roleless = snapshot.soup.find_all("div")
    assert build_turn(empty, snapshot) is None
    assert build_turn(roleless, snapshot) is None


def test_build_turn_collects_markdown_links():
    snapshot = snapshot_with(
        '<div data-message-author-role="assistant"><p>Download '
        '<a href="https://files.example.com/out/result.csv">result.csv</a></p></div>'
    )
    turn = build_turn(snapshot.soup.div, snapshot)
    assert [(a.kind, a.original_url) for a in turn.attachments] == [
        ("file", "https://files.example.com/out/result.csv"),
    ]


def test_dedupe_merges_into_first_occurrence():
    attachment = CaptureAttachment(kind="pdf", original_url="https://example.com/a.pdf")
    turns = [
        CaptureTurn(role="user", content_markdown="You said Hello"),
        CaptureTurn(role="user", content_markdown="hello"),
        CaptureTurn(role="assistant", content_markdown="Hi"),
        CaptureTurn(role="assistant", content_markdown="Hi", thought_markdown="greet", attachments=[attachment]),
        CaptureTurn(role="assistant", content_markdown="   "),
    ]
    deduped = dedupe_turns(turns)
    assert [(t.role, t.content_markdown) for t in deduped] == [("user", "You said Hello"), ("assistant", "Hi")]
    assert deduped[1].thought_markdown == "greet"
    assert deduped[1].attachments == [attachment]


def test_role_markers_need_two():
    turns = parse_by_role_markers("User:\nHello there\nAssistant:\nHi, how can I help?")
    assert [(t.role, t.content_markdown) for t in turns] == [
        ("user", "Hello there"),
        ("assistant", "Hi, how can I help?"),
    ]
    assert parse_by_role_markers("User:\nHello there") == []


def test_claude_role_markers():
    turns = parse_by_claude_role_markers("You\nHi Claude\nClaude\nHello! How can I help?")
    assert [(t.role, t.content_markdown) for t in turns] == [
        ("user", "Hi Claude"),
        ("assistant", "Hello! How can I help?"),
    ]


def test_catch_all_turn():
    assert catch_all_turn("too short") == []
    [turn] = catch_all_turn("A paragraph long enough to count as a turn.")
    assert turn.role == "assistant"


def test_user_exchange():
    user = CaptureTurn(role="user", content_markdown="q")
    assistant = CaptureTurn(role="assistant", content_markdown="a")
    assert has_user_exchange([user, assistant])
    assert not has_user_exchange([assistant, assistant])
    assert not has_user_exchange([user])


def test_gemini_boilerplate_removed():
    text = (
        "The answer is 4.\n\n"
        "If you want me to save or delete information from our conversations, you need to turn on chat history."
    )
    assert strip_gemini_boilerplate(text) == "The answer is 4."


def test_sanitize_gemini_turn():
    turn = sanitize_gemini_turn(CaptureTurn(role="assistant", content_markdown="Gemini said 2+2 is 4.", thought_markdown="t"))
    assert turn.content_markdown == "2+2 is 4."
    assert turn.thought_markdown is None

    attachment = CaptureAttachment(kind="image", original_url="https://example.com/a.png")
    only_file = sanitize_gemini_turn(CaptureTurn(role="user", content_markdown="You said", attachments=[attachment]))
    assert only_file.content_markdown == ATTACHMENT_ONLY_PLACEHOLDER
    assert sanitize_gemini_turn(CaptureTurn(role="user", content_markdown="You said")) is None

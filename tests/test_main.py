import json

import pytest
from fastapi.testclient import TestClient

from chatcapture import service
from chatcapture.errors import AttachmentDownloadFailed
from chatcapture.flows import CaptureResult
from chatcapture.main import app
from chatcapture.models import CapturePayload, CaptureTurn
from chatcapture.sse_utils import sse_event


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def calls(monkeypatch):
    seen = []

    async def fake_run_capture(url, emit=None, strict=False):
        seen.append((url, strict))
        if "broken" in url:
            raise AttachmentDownloadFailed(["a.pdf (download failed)"])
        if "crash" in url:
            raise RuntimeError("page crashed")
        return CaptureResult(
            payload=CapturePayload(
                source="chatgpt",
                page_url=url,
                title="Trip plan",
                turns=[CaptureTurn(role="user", content_markdown="Plan a trip")],
            ),
        )

    monkeypatch.setattr(service, "run_capture", fake_run_capture)
    return seen


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ping_lists_sources(client):
    body = client.get("/ping").json()
    assert body["ok"] is True
    assert body["engine"] == "chatcapture"
    assert body["sources"] == ["chatgpt", "gemini", "ai_studio", "claude"]


def test_capture_returns_wire_payload(client, calls):
    response = client.post("/capture", json={"url": "chatgpt.com/c/1"})
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["warning"] is None
    assert body["payload"]["pageUrl"] == "https://chatgpt.com/c/1"
    assert body["payload"]["turns"][0]["contentMarkdown"] == "Plan a trip"
    assert calls == [("https://chatgpt.com/c/1", False)]


def test_capture_honours_strict_flag(client, calls):
    client.post("/capture", json={"url": "https://chatgpt.com/c/2", "strict": True})
    assert calls == [("https://chatgpt.com/c/2", True)]


def test_strict_default_comes_from_settings(client, calls, monkeypatch):
    from chatcapture.config import get_settings

    monkeypatch.setenv("STRICT_ATTACHMENTS", "true")
    get_settings.cache_clear()
    client.post("/capture", json={"url": "https://chatgpt.com/c/3"})
    assert calls == [("https://chatgpt.com/c/3", True)]


def test_capture_errors_are_unprocessable(client, calls):
    response = client.post("/capture", json={"url": "https://chatgpt.com/c/broken"})
    assert response.status_code == 422
    assert response.json()["detail"].startswith("Attachment download failed")


def test_unexpected_errors_are_500(client, calls):
    response = client.post("/capture", json={"url": "https://chatgpt.com/c/crash"})
    assert response.status_code == 500
    assert response.json()["detail"] == "page crashed"


def test_empty_url_is_rejected(client, calls):
    assert client.post("/capture", json={"url": "   "}).status_code == 400
    assert calls == []


def test_stream_passes_run_id_and_relays_events(client, monkeypatch):
    seen = []

    async def fake_stream(url, run_id, strict=False):
        seen.append((url, run_id, strict))
        yield sse_event("progress", {"runId": run_id, "phase": "content", "percent": 5, "status": "Loading page content"})
        yield sse_event("done", {"runId": run_id, "payload": {}, "warning": None})

    monkeypatch.setattr(service, "run_capture_streaming", fake_stream)

    response = client.post("/capture/stream", json={"url": "https://claude.ai/chat/1", "captureRunId": "run-1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = [json.loads(line[len("data: "):]) for line in response.text.split("\n\n") if line]
    assert [e["type"] for e in events] == ["progress", "done"]
    assert seen == [("https://claude.ai/chat/1", "run-1", False)]

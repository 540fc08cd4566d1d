import pytest

from chatcapture.config import get_settings
from chatcapture.fetcher import InlineFetchResult, ProbeResult
from chatcapture.image_utils import bytes_to_data_url


class FakeFetcher:
    """Stands in for AttachmentFetcher: canned bodies by URL, everything else 404s."""

    def __init__(self, bodies: dict | None = None, json_payloads: dict | None = None):
        self.bodies = bodies or {}
        self.json_payloads = json_payloads or {}
        self.inline_calls: list[str] = []
        self.json_calls: list[str] = []
        self.probed: list[str] = []

    async def fetch_as_inline_data(self, url: str) -> InlineFetchResult:
        self.inline_calls.append(url)
        if url in self.bodies:
            mime, body = self.bodies[url]
            return InlineFetchResult(
                ok=True, data_url=bytes_to_data_url(body, mime), mime=mime, size=len(body), status=200, tried=[url]
            )
        return InlineFetchResult(ok=False, status=404, error="HTTP 404", tried=[url])

    async def probe(self, url: str) -> ProbeResult:
        self.probed.append(url)
        return ProbeResult(ok=False, url=url, method="GET", status=404, error="HTTP 404")

    async def fetch_json(self, url: str):
        self.json_calls.append(url)
        return self.json_payloads.get(url)

    async def aclose(self):
        pass


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    monkeypatch.setenv("STRICT_ATTACHMENTS", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()

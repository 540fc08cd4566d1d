from bs4 import BeautifulSoup

from chatcapture.identifiers import MiningContext
from chatcapture.props_probe import ProbeData, run_props_probe, scan_file_tile_props


class FailingPage:
    async def evaluate(self, script, arg=None):
        raise RuntimeError("Execution context was destroyed")


class ProbingPage:
    def __init__(self, result):
        self.result = result

    async def evaluate(self, script, arg=None):
        return self.result


def tagged(html: str):
    return BeautifulSoup(html, "html.parser").find(attrs={"data-capture-probe": True})


def test_probe_data_resolves_object_indexes():
    data = ProbeData(
        objects=[{"fileId": "file-Abc1234567"}, "not a dict", {"name": "report.pdf"}],
        nodes={"0": {"props": [0, 1, 9], "chain": [2]}},
    )
    node = tagged('<button data-capture-probe="0">report.pdf</button>')
    assert data.props_for(node) == [{"fileId": "file-Abc1234567"}]
    assert data.chain_for(node) == [{"name": "report.pdf"}]
    assert data.props_for(tagged('<span data-capture-probe="7"></span>')) == []


async def test_probe_failure_is_empty():
    data = await run_props_probe(FailingPage())
    assert data.objects == [] and data.nodes == {}


async def test_probe_result_is_type_checked():
    data = await run_props_probe(ProbingPage({"objects": [{"a": 1}], "nodes": ["wrong"]}))
    assert data.objects == [{"a": 1}]
    assert data.nodes == {}
    assert (await run_props_probe(ProbingPage(None))).nodes == {}


def test_scan_collects_ids_and_backend_urls():
    ctx = MiningContext(page_url="https://chatgpt.com/c/abc")
    chain = [
        {"file": {"id": "file-Abc1234567", "name": "report.pdf"}},
        {"href": "https://chatgpt.com/backend-api/files/file-Xyz7654321/download"},
        {"pointer": "file-service://file-Srv12345678"},
    ]
    found = scan_file_tile_props(chain, ctx)
    assert "file-Abc1234567" in found
    assert "https://chatgpt.com/backend-api/files/file-Xyz7654321/download" in found
    assert "file-Srv12345678" in found
    assert not any(value.startswith("file-service") for value in found)
    assert len(found) == len(set(found))


def test_scan_stops_following_unrelated_keys_when_deep():
    ctx = MiningContext()
    deep = {"a": {"b": {"c": {"zz": "file-Deep12345678"}}}}
    assert scan_file_tile_props([deep], ctx) == []
    related = {"a": {"b": {"c": {"attachment": "file-Deep12345678"}}}}
    assert scan_file_tile_props([related], ctx) == ["file-Deep12345678"]

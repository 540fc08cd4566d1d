"""
Best-effort component-props probe.

Some hosts keep the real file reference of an upload tile only in their UI
framework's component state (React props / fibers), never in markup. The
probe runs one bounded script in the page that

- stamps each candidate element with ``data-capture-probe="<n>"`` so the
  HTML snapshot taken right after can be joined back to it,
- returns JSON-safe clones of the props objects reachable from it.

Everything here is total: any failure yields an empty ProbeData.
"""

import logging
import re
from dataclasses import dataclass, field

from bs4 import Tag
from playwright.async_api import Page

from chatcapture.classify import is_likely_oai_attachment_url, looks_like_file_url
from chatcapture.identifiers import MiningContext

logger = logging.getLogger(__name__)

PROBE_ATTR = "data-capture-probe"
MAX_PROBE_NODES = 240

_PROBE_JS = '''(maxNodes) => {
    const SKIP = new Set(['_owner', 'return', 'alternate', 'sibling', 'child', 'stateNode',
                          'ref', '_store', '_debugOwner', '_debugSource']);
    const objects = [];
    const index = new Map();
    let budget = 4000;

    const clone = (value, depth) => {
        if (value === null || value === undefined) return null;
        const t = typeof value;
        if (t === 'string') return value.length > 2048 ? value.slice(0, 2048) : value;
        if (t === 'number' || t === 'boolean') return value;
        if (t !== 'object' || depth > 8 || budget <= 0) return null;
        if (typeof Node !== 'undefined' && value instanceof Node) return null;
        budget -= 1;
        if (Array.isArray(value)) return value.slice(0, 50).map((item) => clone(item, depth + 1));
        const out = {};
        let keys = [];
        try { keys = Object.keys(value); } catch (e) { return null; }
        for (const key of keys.slice(0, 80)) {
            if (SKIP.has(key)) continue;
            let item;
            try { item = value[key]; } catch (e) { continue; }
            if (typeof item === 'function' || typeof item === 'symbol') continue;
            out[key] = clone(item, depth + 1);
        }
        return out;
    };
    const intern = (value, out) => {
        if (!value || typeof value !== 'object' || budget <= 0) return;
        if (typeof Node !== 'undefined' && value instanceof Node) return;
        let id = index.get(value);
        if (id === undefined) {
            id = objects.length;
            index.set(value, id);
            objects.push(clone(value, 0));
        }
        if (!out.includes(id)) out.push(id);
    };
    const reactKeys = (el) => {
        try { return Object.getOwnPropertyNames(el).filter((k) => k.startsWith('__react')); }
        catch (e) { return []; }
    };

    const payloadIds = (el) => {
        const out = [];
        let current = el;
        for (let depth = 0; current && depth < 8; depth += 1) {
            for (const key of reactKeys(current)) {
                const value = current[key];
                if (key.startsWith('__reactProps$')) intern(value, out);
                if (key.startsWith('__reactFiber$') && value) {
                    intern(value.memoizedProps, out);
                    intern(value.pendingProps, out);
                    if (value.return) { intern(value.return.memoizedProps, out); intern(value.return.pendingProps, out); }
                    if (value.alternate) { intern(value.alternate.memoizedProps, out); intern(value.alternate.pendingProps, out); }
                }
            }
            current = current.parentElement;
        }
        return out;
    };

    const chainIds = (el) => {
        const out = [];
        let current = el;
        for (let depth = 0; current && depth < 14; depth += 1) {
            for (const key of reactKeys(current)) {
                if (key.startsWith('__reactFiber$') || key.startsWith('__reactInternalInstance$')) {
                    let fiber = current[key];
                    for (let up = 0; fiber && up < 16; up += 1) {
                        intern(fiber.memoizedProps, out);
                        intern(fiber.pendingProps, out);
                        intern(fiber.stateNode, out);
                        fiber = fiber.return;
                    }
                }
                if (key.startsWith('__reactProps$')) intern(current[key], out);
            }
            current = current.parentElement;
        }
        return out;
    };

    const LABEL_SELECTOR = "button[aria-label], button[title], [role='group'][aria-label], [data-default-action='true']";
    const SELECTOR = [
        LABEL_SELECTOR,
        "[data-message-author-role]", "article", "[data-testid*='conversation-turn']",
        "[data-testid*='file']", "[data-testid*='attachment']", "[data-testid*='upload']",
        "[class*='attachment']", "[class*='file']", "[aria-label*='attachment']", "[aria-label*='file']",
        "a", "button"
    ].join(', ');

    document.querySelectorAll('[data-capture-probe]').forEach((el) => el.removeAttribute('data-capture-probe'));
    const root = document.querySelector('main') || document.body;
    const nodes = Array.from(root.querySelectorAll(SELECTOR)).slice(0, maxNodes);
    const result = {};
    nodes.forEach((el, i) => {
        const props = payloadIds(el);
        const chain = el.matches(LABEL_SELECTOR) ? chainIds(el) : [];
        if (!props.length && !chain.length) return;
        el.setAttribute('data-capture-probe', String(i));
        result[String(i)] = { props, chain };
    });
    return { objects, nodes: result };
}'''


@dataclass
class ProbeData:
    objects: list = field(default_factory=list)
    nodes: dict = field(default_factory=dict)

    def _resolve(self, tag: Tag, slot: str) -> list[dict]:
        probe_id = tag.get(PROBE_ATTR) if isinstance(tag, Tag) else None
        entry = self.nodes.get(str(probe_id)) if probe_id is not None else None
        if not isinstance(entry, dict):
            return []
        out = []
        for idx in entry.get(slot) or []:
            if isinstance(idx, int) and 0 <= idx < len(self.objects) and isinstance(self.objects[idx], dict):
                out.append(self.objects[idx])
        return out

    def props_for(self, tag: Tag) -> list[dict]:
        return self._resolve(tag, "props")

    def chain_for(self, tag: Tag) -> list[dict]:
        return self._resolve(tag, "chain")


async def run_props_probe(page: Page, max_nodes: int = MAX_PROBE_NODES) -> ProbeData:
    try:
        raw = await page.evaluate(_PROBE_JS, max_nodes)
    except Exception as e:
        logger.info("[probe] props probe failed: %s", e)
        return ProbeData()
    if not isinstance(raw, dict):
        return ProbeData()
    objects = raw.get("objects")
    nodes = raw.get("nodes")
    data = ProbeData(
        objects=objects if isinstance(objects, list) else [],
        nodes=nodes if isinstance(nodes, dict) else {},
    )
    logger.debug("[probe] %d nodes, %d objects", len(data.nodes), len(data.objects))
    return data


# ---------------------------------------------------------------------------
# File-tile props visitor
# ---------------------------------------------------------------------------

_DESCEND_KEY_RE = re.compile(
    r"(file|asset|attachment|upload|document|pointer|download|content|id|url|href|src|name|mime|blob|metadata)"
)
_DESCEND_KEYS = {"children", "props", "memoizedprops", "pendingprops", "statenode"}
_BACKEND_FILE_RE = re.compile(r"/backend-api/(files|estuary/content)", re.I)

MAX_VISIT_DEPTH = 12
MAX_VISIT_OBJECTS = 1800


class FileTileVisitor:
    """
    Collect file references from a file tile's props chain.

    Walks only strings, lists and dicts. Near the top every key is followed;
    deeper down only keys that look file-related. Results are raw file IDs or
    absolute / backend URLs, in discovery order.
    """

    def __init__(self, ctx: MiningContext):
        self.ctx = ctx
        self.found: list[str] = []
        self._objects = 0

    def _add(self, value: str):
        if value and value not in self.found:
            self.found.append(value)

    def visit(self, value, depth: int = 0, source_key: str = ""):
        if depth > MAX_VISIT_DEPTH or self._objects > MAX_VISIT_OBJECTS:
            return
        if isinstance(value, str):
            self._visit_string(value.strip(), source_key)
        elif isinstance(value, list):
            for item in value:
                self.visit(item, depth + 1, source_key)
        elif isinstance(value, dict):
            self._objects += 1
            for key, item in value.items():
                lower = str(key).lower()
                if depth <= 2 or _DESCEND_KEY_RE.search(lower) or lower in _DESCEND_KEYS:
                    self.visit(item, depth + 1, str(key))

    def _visit_string(self, trimmed: str, source_key: str):
        if not trimmed:
            return
        lower = trimmed.lower()
        if re.match(r"^https?://", lower) and (
            is_likely_oai_attachment_url(lower) or looks_like_file_url(lower) or _BACKEND_FILE_RE.search(lower)
        ):
            self._add(trimmed)
        for file_id in self.ctx.extract_file_ids(trimmed, allow_uuid=True, source_key=source_key):
            self._add(file_id)
        if lower.startswith("file-service://"):
            file_id = re.split(r"[?#]", trimmed[len("file-service://"):])[0].strip()
            if len(file_id) >= 8:
                self._add(file_id)
            return
        if _BACKEND_FILE_RE.search(trimmed):
            self._add(trimmed)
            return
        if re.match(r"^(file|gizmo)[-_][a-z0-9-]{6,}$", trimmed, re.I) or re.match(r"^[a-f0-9]{24,64}$", trimmed, re.I):
            self._add(trimmed)


def scan_file_tile_props(chain: list[dict], ctx: MiningContext) -> list[str]:
    visitor = FileTileVisitor(ctx)
    for props in chain:
        visitor.visit(props)
    return visitor.found

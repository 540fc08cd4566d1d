"""
Rich-markup to Markdown normalization.

``html_to_markdown`` rewrites a turn's HTML (math, tables, links, images,
code, headings, emphasis, lists) into Markdown-ish text. ``normalize_markdown_text``
canonicalizes any text: entity decoding, whitespace and blank-line collapse,
UI-chrome noise-line removal and LaTeX delimiter repair.

Both are total. ``normalize_markdown_text`` is idempotent: normalizing its
own output returns it unchanged.
"""

import html
import logging
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup, NavigableString, Tag

logger = logging.getLogger(__name__)


NOISE_LINE_RE = re.compile(
    r"^(skip to main content|home|settings|menu_open|menu|share|compare_arrows|add|more_vert|edit"
    r"|chevron_right|chevron_left|trending_flat|developer_guide|documentation|expand_more"
    r"|expand to view model thoughts|model thoughts|token(s)?|get api key|application|content_copy"
    r"|thumb_up|thumb_down|volume_up|flag|restart_alt|stop|send|mic|attach_file|photo_camera"
    r"|light_mode|dark_mode|edit_note|arrow_drop_down|arrow_drop_up|close|check|done|info|warning"
    r"|error|search|filter_list|sort|visibility|visibility_off)$",
    re.I,
)
_REPEATED_ICON_LINE_RE = re.compile(r"^(more_vert|chevron_right|chevron_left)(\s+\1)*$", re.I)

DISPLAY_MATH_SELECTOR = ", ".join([
    ".katex-display",
    "[class*='katex-display']",
    "math[display='block']",
    "[data-display='block']",
    "mjx-container[display='true']",
    "mjx-container[jax='CHTML'][display='true']",
    "[class*='math-display']",
    "[class*='formula-display']",
])
INLINE_MATH_SELECTOR = ", ".join([
    ".katex",
    "math",
    "[data-tex]",
    "[data-latex]",
    "mjx-container",
    "[class*='math-inline']",
    "[class*='formula']",
])
ICON_SELECTOR = (
    ".material-icons, .material-symbols-outlined, .material-symbols-rounded, "
    "[class*='icon-button'], [aria-hidden='true']"
)

_BLOCK_TAGS = ("p", "div", "section", "article", "blockquote", "ul", "ol", "table", "thead", "tbody", "tr")
_HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")

_MAX_REPAIR_ROUNDS = 4
_MAX_UNESCAPE_ROUNDS = 8


# ---------------------------------------------------------------------------
# Text-level repair
# ---------------------------------------------------------------------------

def decode_entities(text: str) -> str:
    """Decode HTML entities until nothing changes (``&amp;lt;`` -> ``<``)."""
    for _ in range(_MAX_UNESCAPE_ROUNDS):
        decoded = html.unescape(text)
        if decoded == text:
            break
        text = decoded
    return text


def fix_dangling_math_delimiters(text: str) -> str:
    """
    Close a ``$$`` block that never ends.

    Fences are paired across lines, so a block opened on one line and closed
    on a later one is left alone. Only the last unpaired fence is repaired: a
    one-line formula is closed in place, anything else gets a closing line.
    """
    lines = text.split("\n")
    open_index = None
    for index, line in enumerate(lines):
        if line.count("$$") % 2 == 1:
            open_index = index if open_index is None else None
    if open_index is None:
        return text

    line = lines[open_index]
    trimmed = line.strip()
    has_latex = re.search(r"\\[a-zA-Z]+|[_^{}]", trimmed)
    if has_latex and line.count("$$") == 1:
        if trimmed.endswith("$$") and not trimmed.startswith("$$"):
            lines[open_index] = line.replace(trimmed, f"$${trimmed[:-2].strip()}$$")
            return "\n".join(lines)
        if trimmed.startswith("$$") and not trimmed.endswith("$$") and open_index == len(lines) - 1:
            lines[open_index] = line.replace(trimmed, f"$${trimmed[2:].strip()}$$")
            return "\n".join(lines)
    return "\n".join(lines) + "\n$$"


def _fix_matrix_body(match: re.Match) -> str:
    # A lone backslash before the next cell becomes a row break; an existing
    # "\\" is left alone.
    body = re.sub(r"(?<!\\)\\\s+(?=[^\s\\])", r"\\\\ ", match.group(1))
    rows = []
    for line in body.split("\n"):
        line = line.strip()
        if not line:
            continue
        if re.search(r"[^\\]\\$", line):
            line = line[:-1] + "\\\\"
        rows.append(line)
    fixed = [
        f"{row} \\\\" if index < len(rows) - 1 and not re.search(r"\\\\\s*$", row) else row
        for index, row in enumerate(rows)
    ]
    return "\\begin{pmatrix}\n" + "\n".join(fixed) + "\n\\end{pmatrix}"


def fix_matrix_rows(text: str) -> str:
    return re.sub(r"\\begin\{pmatrix\}([\s\S]*?)\\end\{pmatrix\}", _fix_matrix_body, text)


def wrap_standalone_latex_blocks(text: str) -> str:
    """Wrap bare ``\\begin{env}...\\end{env}`` blocks that sit outside ``$$`` in ``$$`` lines."""
    lines = text.split("\n")
    out = []
    in_display_math = False
    i = 0
    while i < len(lines):
        line = lines[i]
        if not in_display_math and re.match(r"^\s*\\begin\{[a-zA-Z*]+\}", line):
            block = [line]
            end_found = bool(re.search(r"\\end\{[a-zA-Z*]+\}", line))
            while not end_found and i + 1 < len(lines):
                i += 1
                block.append(lines[i])
                end_found = bool(re.search(r"\\end\{[a-zA-Z*]+\}", lines[i]))
            out.extend(["$$", *block, "$$"])
            i += 1
            continue

        out.append(line)
        if line.count("$$") % 2 == 1:
            in_display_math = not in_display_math
        i += 1
    return "\n".join(out)


def _is_noise_line(trimmed: str) -> bool:
    return bool(NOISE_LINE_RE.match(trimmed) or _REPEATED_ICON_LINE_RE.match(trimmed))


def _normalize_once(text: str) -> str:
    cleaned = decode_entities(text).replace("\u00a0", " ").replace("\r", "")
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"<br\s*/?>", "\n", cleaned, flags=re.I)
    cleaned = re.sub(r"</(p|div)>", "\n", cleaned, flags=re.I)

    kept = []
    for line in cleaned.split("\n"):
        line = line.rstrip(" \t")
        trimmed = line.strip()
        if trimmed and _is_noise_line(trimmed):
            continue
        kept.append(line)

    normalized = re.sub(r"\n{3,}", "\n\n", "\n".join(kept)).strip()
    return fix_dangling_math_delimiters(wrap_standalone_latex_blocks(fix_matrix_rows(normalized)))


def normalize_markdown_text(text: str | None) -> str:
    """Canonical Markdown for ``text``; running it twice changes nothing."""
    current = text or ""
    for _ in range(_MAX_REPAIR_ROUNDS):
        normalized = _normalize_once(current)
        if normalized == current:
            break
        current = normalized
    return current


def normalize_text(text: str | None) -> str:
    """Single-line form used for titles and comparisons."""
    value = (text or "").replace("\r\n", "\n").replace("\u00a0", " ")
    return re.sub(r"\s+", " ", value).strip()


# ---------------------------------------------------------------------------
# HTML -> Markdown
# ---------------------------------------------------------------------------

def read_latex(node: Tag) -> str:
    annotation = node.find("annotation")
    if annotation is not None:
        text = decode_entities(annotation.get_text()).strip()
        if text:
            return text
    for attr in ("data-tex", "data-latex", "aria-label"):
        value = node.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        value = decode_entities(value or "").strip()
        if value:
            return value
    return ""


def _attached(node: Tag, root: Tag) -> bool:
    return any(parent is root for parent in node.parents)


def replace_math_with_latex(root: Tag):
    for node in root.select(DISPLAY_MATH_SELECTOR):
        if not _attached(node, root):
            continue
        latex = read_latex(node)
        if latex:
            node.replace_with(NavigableString(f"\n$${latex}$$\n"))

    for node in root.select(INLINE_MATH_SELECTOR):
        if not _attached(node, root) or node.css.closest(DISPLAY_MATH_SELECTOR) is not None:
            continue
        latex = read_latex(node)
        if latex:
            node.replace_with(NavigableString(f"${latex}$"))
            continue
        text = node.get_text().strip()
        if text and node.name != "div":
            node.replace_with(NavigableString(f"${text}$"))


def _table_to_markdown(table: Tag) -> str:
    rows = []
    for index, row in enumerate(table.select("tr")):
        cells = [
            cell.get_text().strip().replace("|", "\\|").replace("\n", " ")
            for cell in row.select("th, td")
        ]
        rows.append("| " + " | ".join(cells) + " |")
        if index == 0:
            rows.append("| " + " | ".join("---" for _ in cells) + " |")
    return "\n" + "\n".join(rows) + "\n"


def _absolute(url: str, base_url: str) -> str:
    url = url.strip()
    if not base_url or not url:
        return url
    try:
        return urljoin(base_url, url)
    except ValueError:
        return url


def html_to_markdown(markup: "str | Tag", base_url: str = "") -> str:
    """
    Rewrite rich markup into Markdown-ish text.

    Math is read from annotations / data attributes before icons are removed
    (KaTeX renders its visual copy under ``aria-hidden``). Links and images
    resolve against ``base_url``.
    """
    inner = markup.decode_contents() if isinstance(markup, Tag) else (markup or "")
    soup = BeautifulSoup(f"<div>{inner}</div>", "html.parser")
    root = soup.div
    if root is None:
        return decode_entities(re.sub(r"<[^>]+>", " ", inner))

    replace_math_with_latex(root)
    for icon in root.select(ICON_SELECTOR):
        icon.decompose()
    for table in root.select("table"):
        if _attached(table, root):
            table.replace_with(NavigableString(_table_to_markdown(table)))
    for tag in root.find_all(["script", "style", "iframe", "svg"]):
        tag.decompose()

    for link in root.select("a[href]"):
        href = _absolute(str(link.get("href") or ""), base_url)
        label = re.sub(r"\s+", " ", link.get_text(" ")).strip() or href
        link.replace_with(NavigableString(f"[{label}]({href})"))
    for image in root.select("img[src]"):
        src = _absolute(str(image.get("src") or ""), base_url)
        alt = image.get("alt") or "image"
        image.replace_with(NavigableString(f"![{alt}]({src})"))

    for code in root.find_all("code"):
        plain = code.get_text().strip()
        if code.find_parent("pre") is not None:
            code.replace_with(NavigableString(code.get_text()))
        else:
            code.replace_with(NavigableString(f"`{plain}`" if plain else ""))
    for pre in root.find_all("pre"):
        pre.insert_before(NavigableString("\n```\n"))
        pre.insert_after(NavigableString("\n```\n"))
        pre.unwrap()

    for tag in root.find_all(True):
        name = tag.name
        if name in _HEADING_TAGS:
            tag.insert_before(NavigableString("\n" + "#" * int(name[1]) + " "))
            tag.insert_after(NavigableString("\n"))
        elif name in ("strong", "b"):
            tag.insert_before(NavigableString("**"))
            tag.insert_after(NavigableString("**"))
        elif name in ("em", "i"):
            tag.insert_before(NavigableString("*"))
            tag.insert_after(NavigableString("*"))
        elif name == "li":
            tag.insert_before(NavigableString("\n- "))
        elif name == "br":
            tag.insert_before(NavigableString("\n"))
        elif name in _BLOCK_TAGS:
            tag.insert_before(NavigableString("\n"))
            tag.insert_after(NavigableString("\n"))

    return root.get_text()

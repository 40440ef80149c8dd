"""Best-effort parsers for agent output.

Every function here is pure and total: it takes a string, never raises, and
returns an empty list/dict rather than ``None`` when nothing is found.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"^[ \t]*```([^\n`]*)\n(.*?)^[ \t]*```[ \t]*$", re.MULTILINE | re.DOTALL)
JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n\s*```", re.DOTALL)

LINE_MARKER_RE = re.compile(r"^[\d\-.*•)]+\s*")
MIN_REQUIREMENT_CHARS = 10

PATH_RE = re.compile(r"[A-Za-z0-9_.\-/\\]*[A-Za-z0-9_\-]\.[A-Za-z][A-Za-z0-9]{0,9}")
SOURCE_EXTENSIONS = {
    "html", "htm", "css", "scss", "sass", "less", "js", "mjs", "cjs", "ts", "tsx", "jsx",
    "json", "md", "mdx", "py", "yaml", "yml", "toml", "xml", "svg", "txt", "sh", "vue",
    "svelte", "bicep", "env", "ini", "cfg",
}

FILE_MARKER_RE = re.compile(r"^\s*(?:[-*]\s*)?(?:-{3}\s*)?FILE:\s*(.+?)\s*(?:-{3})?\s*$", re.IGNORECASE)
FENCE_PATH_RE = re.compile(r"^\s*[\w+#.-]*:(\S+)\s*$")
BOLD_MARKER_RE = re.compile(r"^\s*(?:[-*]\s+|\d+[.)]\s+)?\*\*(.+?):?\*\*:?\s*$")
HEADING_RE = re.compile(r"^\s*#{1,6}\s+(.+?)\s*#*\s*$")
LAST_RESORT_WINDOW = 200


# --- JSON -------------------------------------------------------------------


def _loads(candidate: str) -> Optional[Any]:
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        cleaned = re.sub(r",\s*([}\]])", r"\1", candidate)
        if cleaned == candidate:
            return None
        try:
            return json.loads(cleaned)
        except (json.JSONDecodeError, ValueError):
            return None


def _balanced_spans(text: str, opener: str, closer: str, limit: int = 20):
    """Yield balanced ``opener``..``closer`` spans, honoring JSON strings."""
    start = text.find(opener)
    tried = 0
    while start != -1 and tried < limit:
        tried += 1
        depth = 0
        in_string = False
        escape = False
        for i in range(start, len(text)):
            char = text[i]
            if escape:
                escape = False
                continue
            if char == "\\":
                escape = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    yield text[start:i + 1]
                    break
        start = text.find(opener, start + 1)


def _extract_json(text: str, opener: str, closer: str, kind: type) -> Any:
    """Shared strategy for arrays and objects.

    Tries in order:
    1. First ``opener`` to last ``closer`` (greedy span)
    2. A fenced ```json block
    3. Balanced-bracket scan from each ``opener``
    """
    if not text or not text.strip():
        return kind()

    first, last = text.find(opener), text.rfind(closer)
    if first != -1 and last > first:
        parsed = _loads(text[first:last + 1])
        if isinstance(parsed, kind):
            return parsed

    for match in JSON_FENCE_RE.finditer(text):
        block = match.group(1).strip()
        if block.startswith(opener):
            parsed = _loads(block)
            if isinstance(parsed, kind):
                return parsed

    for span in _balanced_spans(text, opener, closer):
        parsed = _loads(span)
        if isinstance(parsed, kind):
            return parsed

    return kind()


def extract_json_array(text: str) -> list:
    """Extract the JSON array embedded in ``text``; ``[]`` when there is none."""
    return _extract_json(text, "[", "]", list)


def extract_json_object(text: str) -> dict:
    """Extract the JSON object embedded in ``text``; ``{}`` when there is none."""
    return _extract_json(text, "{", "}", dict)


# --- Requirements -------------------------------------------------------------


def split_requirement_lines(text: str) -> list[str]:
    """Split free text into requirement lines.

    Leading bullet and numbering markers are stripped; lines of 10 characters
    or fewer are dropped.
    """
    lines = []
    for raw in (text or "").splitlines():
        line = LINE_MARKER_RE.sub("", raw.strip()).strip()
        if len(line) > MIN_REQUIREMENT_CHARS:
            lines.append(line)
    return lines


def _requirement_text(item: Any) -> str:
    if isinstance(item, dict):
        for key in ("text", "requirement", "description", "title"):
            if isinstance(item.get(key), str):
                return item[key].strip()
        return ""
    return str(item).strip() if item is not None else ""


def extract_requirements(text: str) -> tuple[list[str], dict]:
    """Extract the requirement list and meeting metadata from an agent reply.

    Tries a JSON object with a ``requirements`` list, then a bare JSON
    array, then line splitting.

    Args:
        text: Raw agent reply.

    Returns:
        Tuple of (requirement texts, metadata dict without ``requirements``).
    """
    obj = extract_json_object(text)
    if isinstance(obj.get("requirements"), list):
        requirements = [r for r in (_requirement_text(i) for i in obj["requirements"]) if r]
        meta = {k: v for k, v in obj.items() if k != "requirements"}
        if requirements:
            return requirements, meta

    array = extract_json_array(text)
    requirements = [r for r in (_requirement_text(i) for i in array) if r]
    if requirements:
        return requirements, {}

    return split_requirement_lines(text), {}


# --- File edits ---------------------------------------------------------------


@dataclass(frozen=True)
class _Block:
    info: str
    content: str
    preceding: str


def normalize_path(path: str) -> str:
    """Strip quoting and normalize separators of a path taken from agent text."""
    cleaned = path.strip().strip("`'\"*").strip()
    cleaned = cleaned.replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


def _trim_blank_lines(text: str) -> str:
    lines = text.split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(line.rstrip("\r") for line in lines)


def _is_path(token: str, require_known: bool = False) -> bool:
    token = normalize_path(token)
    if not token or " " in token or "://" in token or not PATH_RE.fullmatch(token):
        return False
    if require_known:
        extension = token.rsplit(".", 1)[-1].lower()
        return extension in SOURCE_EXTENSIONS or "/" in token
    return True


def _last_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line
    return ""


def _blocks(text: str) -> list[_Block]:
    blocks = []
    previous_end = 0
    for match in FENCE_RE.finditer(text):
        blocks.append(_Block(match.group(1).strip(), match.group(2), text[previous_end:match.start()]))
        previous_end = match.end()
    return blocks


def _file_marker_path(block: _Block) -> Optional[str]:
    match = FILE_MARKER_RE.match(_last_line(block.preceding))
    return match.group(1) if match and _is_path(match.group(1)) else None


def _fence_suffix_path(block: _Block) -> Optional[str]:
    match = FENCE_PATH_RE.match(block.info)
    return match.group(1) if match and _is_path(match.group(1)) else None


def _strip_label(text: str) -> str:
    return re.sub(r"^(?:file|path)\s*:\s*", "", text.strip(), flags=re.IGNORECASE)


def _bold_marker_path(block: _Block) -> Optional[str]:
    match = BOLD_MARKER_RE.match(_last_line(block.preceding))
    if not match:
        return None
    path = _strip_label(match.group(1))
    return path if _is_path(path) else None


def _heading_path(block: _Block) -> Optional[str]:
    match = HEADING_RE.match(_last_line(block.preceding))
    if not match:
        return None
    heading = _strip_label(match.group(1))
    return heading if _is_path(heading, require_known=True) else None


def _nearby_path(block: _Block) -> Optional[str]:
    window = block.preceding[-LAST_RESORT_WINDOW:]
    candidates = [t for t in re.split(r"[\s,;:()\[\]<>]+", window) if t]
    for token in reversed(candidates):
        token = token.strip("`'\"*").rstrip(".")
        if _is_path(token, require_known=True):
            return token
    return None


# Ranked patterns; the last one only runs when all others found nothing.
RANKED_PATTERNS = (_file_marker_path, _fence_suffix_path, _bold_marker_path, _heading_path)


def extract_file_edits(text: str) -> dict[str, str]:
    """Extract ``{path: content}`` file rewrites from agent text.

    Patterns, in priority order:
    1. ``FILE: <path>`` line followed by a fenced block
    2. Fenced block whose opening fence carries a ``lang:path`` suffix
    3. Bold path marker ``**path**`` followed by a fenced block
    4. Markdown heading naming a file path followed by a fenced block
    5. Any fenced block with a path-like token in the 200 characters
       before it (only when 1-4 found nothing)

    The first match for each normalized path wins and a block is used at
    most once.

    Args:
        text: Raw agent reply.

    Returns:
        Ordered mapping of normalized path to trimmed file content.
    """
    if not text:
        return {}

    blocks = _blocks(text)
    edits: dict[str, str] = {}
    used: set[int] = set()

    def collect(pattern) -> None:
        for i, block in enumerate(blocks):
            if i in used:
                continue
            path = pattern(block)
            if path is None:
                continue
            path = normalize_path(path)
            content = _trim_blank_lines(block.content)
            if not path or not content:
                continue
            used.add(i)
            if path not in edits:
                edits[path] = content

    for pattern in RANKED_PATTERNS:
        collect(pattern)
    if not edits:
        collect(_nearby_path)
        if edits:
            logger.debug(f"File edits recovered by nearby-path heuristic: {list(edits)}")
    return edits


def render_file_edits(edits: dict[str, str]) -> str:
    """Render a file-edit map in the ``FILE:`` form that ``extract_file_edits`` reads."""
    return "\n\n".join(f"FILE: {path}\n```\n{content}\n```" for path, content in edits.items())

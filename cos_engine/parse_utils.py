"""
Pure parsing helpers shared by the gateway, agent loop and conversation store.

Features:
- Balanced JSON object extraction (recovers concatenated streamed arguments)
- Schema-aware recovery of malformed tool arguments
- Key-reference extraction from local MCP tool results
- Workflow-suggestion index extraction from numbered responses
- Bounded JSON stringify / truncate helpers
"""
import json
import logging
import re
from typing import Any

from cos_engine.config import MAX_TOOL_RESULT_CHARS

logger = logging.getLogger("cos.engine.parse")

MAX_KEY_REFERENCE_ENTRIES = 50

_KEY_PATTERN = re.compile(r"\*{0,2}([^*\n(]+?)\*{0,2}\s*\(Key:\s*([A-Za-z0-9]+)\)")
_ITEM_KEY_PATTERN = re.compile(
    r"\*\*(?:Title|Name):\*\*\s*(.{1,200}?)[\n\r].*?\*\*(?:Item Key|Key):\*\*\s*`?([A-Za-z0-9]+)`?"
)
_WORKFLOW_LINE = re.compile(r"^\s*(?:#{1,6}\s+)?(\d+)\.\s+\*{0,2}([^*\n]+?)\*{0,2}\s*(?:[—:\-–].*)?$")
KEY_REFERENCE_PREFIX_RE = re.compile(r"^\[Key reference:[^\]]*\]\s*")
WORKFLOW_PREFIX_RE = re.compile(r"^\[Workflow suggestions:\s*([^\]]+)\]")


def safe_json_parse(text: Any) -> Any:
    """Parse JSON, returning None instead of raising."""
    if not isinstance(text, (str, bytes, bytearray)):
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def safe_json_stringify(value: Any, max_chars: int = MAX_TOOL_RESULT_CHARS) -> str:
    """Serialise ``value`` to JSON, truncating with a marker past ``max_chars``."""
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value or "")
    return text if len(text) <= max_chars else f"{text[:max_chars]}…[truncated]"


def truncate_for_context(value: Any, max_chars: int) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    return text if len(text) <= max_chars else f"{text[:max_chars]}…"


def extract_balanced_json_objects(raw: Any) -> list[tuple[Any, int, int]]:
    """
    Extract every top-level balanced JSON object from a string.

    Some providers concatenate the arguments of parallel tool calls into one
    slot (``{"a":1}{"b":2}``).  Returns ``(parsed, start, end)`` per object;
    malformed objects are skipped and scanning stops at the first unbalanced one.
    """
    if not raw or not isinstance(raw, str):
        return []
    text = raw.strip()
    results: list[tuple[Any, int, int]] = []
    pos = 0
    n = len(text)
    while pos < n:
        while pos < n and text[pos] != "{":
            pos += 1
        if pos >= n:
            break
        depth = 0
        in_string = False
        escape = False
        found_end = False
        for i in range(pos, n):
            ch = text[i]
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    parsed = safe_json_parse(text[pos:i + 1])
                    if parsed is not None:
                        results.append((parsed, pos, i + 1))
                    pos = i + 1
                    found_end = True
                    break
        if not found_end:
            break
    return results


def try_recover_json_args(raw: Any, tool_name: str = "", schema: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Recover tool arguments from a malformed JSON string.

    Picks the first balanced object; when a schema is known and several
    objects were concatenated, prefers the first whose keys all belong to the
    schema's properties.  Falls back to ``{}``.
    """
    candidates = [obj for obj, _, _ in extract_balanced_json_objects(raw) if isinstance(obj, dict)]
    if not candidates:
        logger.debug("No recoverable JSON object in arguments for %s", tool_name)
        return {}
    properties = (schema or {}).get("properties") if isinstance(schema, dict) else None
    if isinstance(properties, dict) and len(candidates) > 1:
        for obj in candidates:
            if obj and all(key in properties for key in obj):
                return obj
    if len(candidates) > 1:
        logger.debug("Recovered first of %d concatenated argument objects for %s", len(candidates), tool_name)
    return candidates[0]


def extract_mcp_key_reference(result_texts: list[str] | None) -> str:
    """
    Build a compact ``[Key reference: Name → KEY; …]`` line from tool result text.

    Recognises ``Name (Key: XYZ)`` and ``**Title:** … **Item Key:** XYZ`` shapes.
    Capped at 50 entries.
    """
    if not result_texts:
        return ""
    entries: list[str] = []
    seen: set[str] = set()

    def _add(name: str, key: str) -> None:
        ident = f"{name}::{key}"
        if name and key and ident not in seen:
            seen.add(ident)
            entries.append(f"{name} → {key}")

    for text in result_texts:
        if not text:
            continue
        for m in _KEY_PATTERN.finditer(text):
            _add(re.sub(r"^[-*\s]+", "", m.group(1).strip()), m.group(2))
        for m in _ITEM_KEY_PATTERN.finditer(text):
            _add(m.group(1).strip(), m.group(2))
    if not entries:
        return ""
    return f"[Key reference: {'; '.join(entries[:MAX_KEY_REFERENCE_ENTRIES])}]"


def strip_key_reference_prefix(text: str) -> str:
    return KEY_REFERENCE_PREFIX_RE.sub("", text or "", count=1)


def extract_workflow_suggestion_index(response_text: str) -> str:
    """Index numbered suggestions (``1. **Name** — …``) so follow-ups can refer to them by number."""
    if not response_text or len(response_text) < 200:
        return ""
    suggestions = []
    for line in response_text.split("\n"):
        m = _WORKFLOW_LINE.match(line)
        if not m:
            continue
        name = m.group(2).strip()
        if 3 < len(name) < 100:
            suggestions.append(f"{m.group(1)}. {name}")
    if len(suggestions) < 2:
        return ""
    return f"[Workflow suggestions: {'; '.join(suggestions)}]"


def normalise_workflow_suggestion_label(value: Any) -> str:
    text = str(value or "").lower()
    text = re.sub(r"[\"'“”‘’]", "", text)
    return re.sub(r"[^a-z0-9]+", " ", text).strip()


def parse_workflow_suggestions(assistant_text: str) -> list[dict[str, Any]]:
    m = WORKFLOW_PREFIX_RE.match(assistant_text or "")
    if not m:
        return []
    out = []
    for seg in re.split(r"\s*;\s*", m.group(1)):
        em = re.match(r"^\s*(\d+)\.\s+(.+?)\s*$", seg)
        if not em:
            continue
        name = em.group(2).strip()
        out.append({
            "number": int(em.group(1)),
            "name": name,
            "normalised_name": normalise_workflow_suggestion_label(name),
        })
    return out


def prompt_looks_like_workflow_draft_follow_up(prompt: str, suggestions: list[dict[str, Any]]) -> bool:
    text = str(prompt or "").strip()
    if not text or not re.search(r"\b(draft|create|set\s*up|write|save|add)\b", text, re.IGNORECASE):
        return False
    refs = {int(n) for n in re.findall(r"#(\d{1,2})\b", text)}
    refs |= {int(n) for n in re.findall(r"\b(\d{1,2})\.", text)}
    if any(s["number"] in refs for s in suggestions):
        return True
    norm = normalise_workflow_suggestion_label(text)
    if not norm:
        return False
    return any(
        s.get("normalised_name") and (s["normalised_name"] in norm or norm in s["normalised_name"])
        for s in suggestions
    )


def parse_tool_result_text(text: Any) -> Any:
    """Tool results are JSON when possible, else wrapped as ``{"text": …}``."""
    if isinstance(text, (dict, list)):
        return text
    parsed = safe_json_parse(text)
    if parsed is not None:
        return parsed
    return {"text": "" if text is None else str(text)}

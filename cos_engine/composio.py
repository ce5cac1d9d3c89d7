"""
Composio integration — remote toolkits over MCP streamable HTTP.

Features:
- One MCP session to the Composio endpoint (``x-api-key`` header, 30s connect
  timeout, backoff after a failed connect, concurrent connects deduplicated)
- Meta tools registered into the ToolRegistry: COMPOSIO_SEARCH_TOOLS,
  COMPOSIO_GET_TOOL_SCHEMAS, COMPOSIO_MULTI_EXECUTE_TOOL,
  COMPOSIO_MANAGE_CONNECTIONS and the local COMPOSIO_GET_CONNECTED_ACCOUNTS
- Toolkit schema registry (7-day TTL, newest 30 toolkits) with discovery via
  search queries and batched schema fetches, pinned per toolkit
- Slug canonicalisation and multi-execute argument normalisation
- Installed-tool records, install / deregister / test / auth refresh
- The "Connected Toolkit Schemas" system prompt section
"""
import asyncio
import json
import logging
import re
import time
from collections import deque
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from cos_engine.config import (
    COMPOSIO_INSTALLED_TOOLS_BFS_MAX_NODES,
    COMPOSIO_SAFE_SLUG_MAX,
    COMPOSIO_TOOLKIT_CATALOG_CACHE_TTL_SECONDS,
    COMPOSIO_TOOLKIT_CATALOG_MAX_SLUGS,
    COMPOSIO_TOOLKIT_SEARCH_BFS_MAX_NODES,
    TOOLKIT_SCHEMA_MAX_PROMPT_CHARS,
    TOOLKIT_SCHEMA_MAX_TOOLKITS,
    TOOLKIT_SCHEMA_REGISTRY_TTL_SECONDS,
    EngineConfig,
)
from cos_engine.mcp_client import SessionOpener, normalise_call_result, open_streamable_http_session
from cos_engine.schema_pin import SchemaPinStore
from cos_engine.security import StatRecorder, scan_tool_descriptions, wrap_untrusted_with_injection_scan
from cos_engine.store import KeyValueStore, SettingsKeys
from cos_engine.tool_registry import (
    COMPOSIO_MANAGE_CONNECTIONS,
    COMPOSIO_MULTI_EXECUTE,
    Tool,
    ToolOrigin,
    ToolRegistry,
)

logger = logging.getLogger("cos.engine.composio")

COMPOSIO_SEARCH_TOOLS = "COMPOSIO_SEARCH_TOOLS"
COMPOSIO_GET_TOOL_SCHEMAS = "COMPOSIO_GET_TOOL_SCHEMAS"
COMPOSIO_GET_CONNECTED_ACCOUNTS = "COMPOSIO_GET_CONNECTED_ACCOUNTS"

COMPOSIO_CONNECT_TIMEOUT_SECONDS = 30.0
COMPOSIO_CONNECT_BACKOFF_SECONDS = 30.0
INSTALLED_TOOLS_FETCH_TTL_SECONDS = 8.0
SCHEMA_FETCH_BATCH = 10
SCHEMA_FETCH_MAX = 20
DISCOVERY_CONCURRENCY = 5
RESULTS_FLOOR = 10
RESULTS_FLOOR_KEYS = ("max_results", "maxResults", "limit", "page_size", "pageSize")

COMPOSIO_SAFE_SLUG_SEED = (
    "GOOGLECALENDAR_EVENTS_LIST",
    "GOOGLECALENDAR_CALENDARS_LIST",
    "GMAIL_FETCH_EMAILS",
    "GMAIL_DELETE_MESSAGE",
    "GMAIL_TRASH_MESSAGE",
    "GMAIL_DELETE_EMAIL",
    "GMAIL_GET_PROFILE",
    "GMAIL_LIST_LABELS",
    "GMAIL_GET_LABEL",
    "TODOIST_GET_ALL_PROJECTS",
    "TODOIST_GET_ACTIVE_TASKS",
)
SLUG_ALIAS_BY_TOKEN = {"GMAILGETEVENTS": "GMAIL_FETCH_EMAILS"}

TOOLKIT_QUERY_HINTS = {
    "GMAIL": ["gmail", "gmail list read fetch send create"],
    "GOOGLECALENDAR": ["google calendar list events", "google calendar create update delete events"],
    "SLACK": ["slack send message", "slack list channels messages"],
    "TODOIST": ["todoist tasks projects", "todoist create complete tasks"],
    "GITHUB": ["github repos issues pull requests", "github create issue PR"],
    "NOTION": ["notion pages databases", "notion create update pages"],
    "GOOGLEDRIVE": ["google drive files folders", "google drive upload share"],
    "GOOGLESHEETS": ["google sheets read write", "google sheets create update"],
    "ASANA": ["asana tasks projects", "asana create update tasks"],
    "TRELLO": ["trello boards cards lists", "trello create move cards"],
    "LINEAR": ["linear issues projects", "linear create update issues"],
    "JIRA": ["jira issues projects", "jira create update issues"],
    "SEMANTICSCHOLAR": ["semantic scholar search papers authors", "semantic scholar paper details references citations"],
    "OPENWEATHER": ["openweather current weather forecast", "openweather air quality UV index"],
}

ACTION_VERBS = frozenset({
    "GET", "LIST", "FETCH", "SEARCH", "CREATE", "ADD", "DELETE", "REMOVE", "TRASH", "UPDATE", "PATCH",
    "SEND", "MOVE", "COPY", "STAR", "UNSTAR", "MARK", "ARCHIVE",
})
ALLOWLIST_READ_TOKENS = frozenset({
    "GET", "LIST", "FETCH", "SEARCH", "FIND", "READ", "QUERY", "DETAILS", "ABOUT", "SUGGEST",
})
ALLOWLIST_MUTATING_TOKENS = frozenset({
    "DELETE", "REMOVE", "SEND", "CREATE", "UPDATE", "MODIFY", "WRITE", "POST", "TRASH", "MOVE", "EXECUTE",
})
MULTI_EXECUTE_META_KEYS = frozenset({"tool_slug", "arguments", "parameters", "params", "toolkit"})
SCHEMA_SHAPE_KEYS = frozenset({"type", "description", "examples", "items", "properties", "required", "default", "enum"})
TOOLKIT_SEARCH_KEYS = ("toolkit_slug", "toolkit", "toolkitSlug", "app_slug", "app", "appName", "app_name")
DEREGISTER_ACTIONS = ("disconnect", "remove", "delete")

_INSTALLED_STATES = {"active", "connected", "completed", "complete", "success", "succeeded", "ready"}
_PENDING_STATES = {"initiated", "pending", "pending_completion", "in_progress", "authorizing", "awaiting_auth"}
_FAILED_STATES = {"failed", "error", "cancelled", "canceled", "disconnected"}

_TOOLKIT_PREFIX_RE = re.compile(r"^(GOOGLE[A-Z]*|[A-Z]+?)_")
_PITFALL_PREFIX_RE = re.compile(r"^\[[^\]]*\]\s*")
_FIRST_CLAUSE_RE = re.compile(r"[.\n]")


# ── Slug helpers ─────────────────────────────────────────────────────────────

def normalise_toolkit_slug(value: Any) -> str:
    slug = re.sub(r"[^A-Z0-9_]", "_", str(value or "").strip().upper())
    return re.sub(r"_+", "_", slug).strip("_")


def normalise_tool_slug_token(value: Any) -> str:
    return re.sub(r"[^A-Z0-9]", "", str(value or "").upper())


def infer_toolkit_from_slug(tool_slug: Any) -> str:
    slug = str(tool_slug or "").upper()
    match = _TOOLKIT_PREFIX_RE.match(slug)
    return match.group(1) if match else slug


def resolve_toolkit_slug_from_suggestions(requested_slug: Any, suggestions: Iterable[Any] = ()) -> dict[str, Any]:
    """Exact token match first, then a match on the requested slug's root token."""
    requested = normalise_toolkit_slug(requested_slug)
    known = [s for s in (normalise_toolkit_slug(v) for v in suggestions or []) if s]
    resolution = {"requested_slug": requested, "resolved_slug": requested, "suggestions": known}
    if not requested or not known:
        return resolution
    requested_token = normalise_tool_slug_token(requested)
    for slug in known:
        if normalise_tool_slug_token(slug) == requested_token:
            resolution["resolved_slug"] = slug
            return resolution
    root_token = normalise_tool_slug_token(requested.split("_")[0] or requested)
    for slug in known:
        if normalise_tool_slug_token(slug) == root_token:
            resolution["resolved_slug"] = slug
            return resolution
    return resolution


def slug_is_allowlist_read_only(slug: str) -> bool:
    tokens = set(slug.upper().split("_"))
    return bool(tokens & ALLOWLIST_READ_TOKENS) and not tokens & ALLOWLIST_MUTATING_TOKENS


# ── Response helpers ─────────────────────────────────────────────────────────

def map_composio_status_to_install_state(status_value: Any) -> str:
    status = str(status_value or "").lower()
    if status in _PENDING_STATES:
        return "pending_auth"
    if status in _FAILED_STATES:
        return "failed"
    return "installed"


def _bfs(root: Any, max_nodes: int) -> Iterable[dict[str, Any]]:
    """Breadth-first walk over the dict nodes of a JSON tree."""
    queue = deque([root])
    visited = 0
    while queue and visited < max_nodes:
        visited += 1
        current = queue.popleft()
        if not isinstance(current, dict):
            if isinstance(current, list):
                queue.extend(current)
            continue
        yield current
        for value in current.values():
            if isinstance(value, list):
                queue.extend(value)
            elif isinstance(value, dict):
                queue.append(value)


def extract_auth_redirect_urls(payload: Any) -> list[str]:
    urls: list[str] = []
    for node in _bfs(payload, COMPOSIO_INSTALLED_TOOLS_BFS_MAX_NODES):
        url = node.get("redirect_url")
        if isinstance(url, str) and url.strip() and url.strip() not in urls:
            urls.append(url.strip())
    return urls


def extract_candidate_toolkit_slugs(payload: Any) -> list[str]:
    slugs: list[str] = []
    for node in _bfs(payload, COMPOSIO_TOOLKIT_SEARCH_BFS_MAX_NODES):
        for key in TOOLKIT_SEARCH_KEYS:
            value = node.get(key)
            if not isinstance(value, str):
                continue
            slug = normalise_toolkit_slug(value)
            if slug and slug not in slugs:
                slugs.append(slug)
    return slugs


def normalise_installed_tool_record(raw: Any, now: float | None = None) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    slug = raw.get("slug").strip() if isinstance(raw.get("slug"), str) else ""
    if not slug:
        return None
    label = raw.get("label")
    updated_at = raw.get("updated_at")
    return {
        "slug": slug,
        "label": label.strip() if isinstance(label, str) and label.strip() else slug,
        "enabled": raw.get("enabled") is not False,
        "install_state": raw.get("install_state") if isinstance(raw.get("install_state"), str) else "installed",
        "last_error": raw.get("last_error") if isinstance(raw.get("last_error"), str) else "",
        "connection_id": raw.get("connection_id") if isinstance(raw.get("connection_id"), str) else "",
        "updated_at": updated_at if isinstance(updated_at, (int, float)) else (now if now is not None else time.time()),
    }


def extract_installed_tool_records(payload: Any) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    seen: set[str] = set()
    for node in _bfs(payload, COMPOSIO_INSTALLED_TOOLS_BFS_MAX_NODES):
        slug = next(
            (v for v in (node.get("toolkit_slug"), node.get("tool_slug"), node.get("toolkit"), node.get("app"))
             if isinstance(v, str) and v.strip()),
            None,
        )
        if not slug or slug in seen:
            continue
        seen.add(slug)
        label = next(
            (v for v in (node.get("toolkit_name"), node.get("tool_name"), node.get("app_name"), node.get("label"))
             if isinstance(v, str) and v.strip()),
            slug,
        )
        record = normalise_installed_tool_record({
            "slug": slug,
            "label": label,
            "install_state": map_composio_status_to_install_state(node.get("status")),
            "connection_id": node.get("id") if isinstance(node.get("id"), str) else "",
        })
        if record:
            records.append(record)
    return records


def composio_call_looks_successful(payload: Any) -> bool:
    if isinstance(payload, dict):
        if payload.get("success") is False or payload.get("successful") is False:
            return False
        error = payload.get("error")
        if error and str(error).strip():
            return False
    return True


def extract_session_id(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    session = payload.get("session") if isinstance(payload.get("session"), dict) else {}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for candidate in (payload.get("session_id"), session.get("id"), data.get("session_id")):
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return ""


def with_composio_session_args(tool_name: str, args: dict[str, Any] | None, session_id: str) -> dict[str, Any]:
    """Thread the Composio session id through every COMPOSIO_* meta call."""
    if not str(tool_name or "").upper().startswith("COMPOSIO_") or not session_id:
        return dict(args or {})
    next_args = dict(args or {})
    if not str(next_args.get("session_id") or "").strip():
        next_args["session_id"] = session_id
    existing = next_args.get("session") if isinstance(next_args.get("session"), dict) else {}
    if not str(existing.get("id") or "").strip():
        next_args["session"] = {**existing, "id": session_id}
    return next_args


# ── Toolkit schema registry ──────────────────────────────────────────────────

@dataclass
class ToolkitPlan:
    recommended_plan_steps: list[Any] = field(default_factory=list)
    known_pitfalls: list[str] = field(default_factory=list)
    execution_guidance: str = ""

    @property
    def size(self) -> int:
        return len(self.recommended_plan_steps) + len(self.known_pitfalls)


class ToolkitSchemaRegistry:
    """
    Cached per-toolkit tool schemas, persisted under ``toolkit-schema-registry``.

    Usage:
        schemas = ToolkitSchemaRegistry(store)
        schemas.tool_schema("GMAIL_FETCH_EMAILS")
        schemas.canonicalise_slug("gmail_fetch_email")   # → "GMAIL_FETCH_EMAILS"
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time,
                 record_stat: StatRecorder | None = None):
        self._store = store
        self._clock = clock
        self.record_stat = record_stat
        self._cache: dict[str, Any] | None = None
        self.safe_slugs: set[str] = set(COMPOSIO_SAFE_SLUG_SEED)

    # ── Persistence ──────────────────────────────────────────────

    def load(self) -> dict[str, Any]:
        if self._cache is None:
            raw = self._store.get(SettingsKeys.TOOLKIT_SCHEMA_REGISTRY)
            self._cache = raw if isinstance(raw, dict) and isinstance(raw.get("toolkits"), dict) else {"toolkits": {}}
        return self._cache

    def save(self) -> None:
        registry = self.load()
        entries = list(registry["toolkits"].items())
        if len(entries) > TOOLKIT_SCHEMA_MAX_TOOLKITS:
            entries.sort(key=lambda kv: kv[1].get("discovered_at") or 0, reverse=True)
            registry["toolkits"] = dict(entries[:TOOLKIT_SCHEMA_MAX_TOOLKITS])
        self._store.set(SettingsKeys.TOOLKIT_SCHEMA_REGISTRY, registry)

    def clear(self) -> None:
        self._cache = {"toolkits": {}}
        self._store.set(SettingsKeys.TOOLKIT_SCHEMA_REGISTRY, self._cache)

    def invalidate(self) -> None:
        self._cache = None

    # ── Lookup ───────────────────────────────────────────────────

    def toolkits(self) -> dict[str, Any]:
        return self.load()["toolkits"]

    def entry(self, toolkit: str) -> dict[str, Any] | None:
        return self.toolkits().get(str(toolkit or "").upper())

    def is_fresh(self, toolkit: str) -> bool:
        entry = self.entry(toolkit)
        return bool(entry) and self._clock() - (entry.get("discovered_at") or 0) < TOOLKIT_SCHEMA_REGISTRY_TTL_SECONDS

    def put(self, entry: dict[str, Any]) -> None:
        self.toolkits()[entry["toolkit"]] = entry
        self.save()
        self.populate_safe_slugs(entry)

    def tool_schema(self, slug: str) -> dict[str, Any] | None:
        key = str(slug or "").upper()
        for toolkit in self.toolkits().values():
            tool = (toolkit.get("tools") or {}).get(key)
            if tool:
                return tool
        return None

    def populate_safe_slugs(self, entry: dict[str, Any]) -> None:
        for slug in (entry.get("tools") or {}):
            upper = slug.upper()
            if len(self.safe_slugs) >= COMPOSIO_SAFE_SLUG_MAX:
                break
            if slug_is_allowlist_read_only(upper):
                self.safe_slugs.add(upper)

    def reset_safe_slugs(self) -> None:
        self.safe_slugs = set(COMPOSIO_SAFE_SLUG_SEED)

    def unknown_slugs(self, args: dict[str, Any] | None) -> list[str]:
        """Slugs in a multi-execute batch that are not on the safe allowlist."""
        batch = (args or {}).get("tools") if isinstance((args or {}).get("tools"), list) else []
        slugs = [str((t or {}).get("tool_slug") or "").strip().upper() for t in batch if isinstance(t, dict)]
        return [s for s in slugs if s and s not in self.safe_slugs]

    # ── Slug canonicalisation ────────────────────────────────────

    def canonicalise_slug(self, slug: Any) -> str:
        """
        Map a model-supplied slug onto a known one.

        Alias table, then exact registry hit, then containment within the
        inferred toolkit, then verb-aware word overlap (≥2 words and ≥60%).
        Two different action verbs never match each other.
        """
        raw = str(slug or "").strip().upper()
        if not raw:
            return ""
        alias = SLUG_ALIAS_BY_TOKEN.get(normalise_tool_slug_token(raw))
        if alias:
            return alias
        if self.tool_schema(raw):
            return raw

        toolkit = infer_toolkit_from_slug(raw)
        entry = self.entry(toolkit)
        candidates = list((entry or {}).get("tools") or {})
        if not candidates:
            return raw
        for candidate in candidates:
            if candidate in raw or raw in candidate:
                logger.debug("Slug fuzzy-corrected: %s → %s", raw, candidate)
                return candidate

        raw_parts = [p for p in raw.replace(toolkit + "_", "", 1).split("_") if p]
        raw_verb = raw_parts[0] if raw_parts else ""
        raw_words = set(raw_parts)
        for candidate in candidates:
            cand_parts = [p for p in candidate.replace(toolkit + "_", "", 1).split("_") if p]
            cand_verb = cand_parts[0] if cand_parts else ""
            if raw_verb in ACTION_VERBS and cand_verb in ACTION_VERBS and raw_verb != cand_verb:
                continue
            overlap = len(raw_words & set(cand_parts))
            if overlap >= 2 and overlap >= len(raw_words) * 0.6:
                logger.debug("Slug fuzzy-corrected: %s → %s", raw, candidate)
                return candidate
        return raw

    def normalise_multi_execute_args(self, args: dict[str, Any] | None) -> dict[str, Any]:
        """Canonicalise slugs and fold loose / ``parameters`` / ``params`` args into ``arguments``."""
        base = dict(args or {})
        batch = base.get("tools") if isinstance(base.get("tools"), list) else []
        if not batch:
            return base
        normalised = []
        for tool in batch:
            if not isinstance(tool, dict):
                normalised.append(tool)
                continue
            explicit = tool.get("arguments") if isinstance(tool.get("arguments"), dict) else {}
            if isinstance(tool.get("parameters"), dict):
                alt = tool["parameters"]
            elif isinstance(tool.get("params"), dict):
                alt = tool["params"]
            else:
                alt = {}
            loose = {}
            for key, value in tool.items():
                if key in MULTI_EXECUTE_META_KEYS:
                    continue
                if isinstance(value, dict) and value and all(k in SCHEMA_SHAPE_KEYS for k in value):
                    continue
                loose[key] = value
            merged = {**loose, **alt, **explicit}
            for key in RESULTS_FLOOR_KEYS:
                if key not in merged:
                    continue
                try:
                    value = float(merged[key])
                except (TypeError, ValueError):
                    break
                if value < RESULTS_FLOOR:
                    logger.debug("MULTI_EXECUTE: raising %s from %s to %d", key, merged[key], RESULTS_FLOOR)
                    merged[key] = RESULTS_FLOOR
                break
            normalised.append({
                "tool_slug": self.canonicalise_slug(tool.get("tool_slug")) or tool.get("tool_slug"),
                "arguments": merged,
            })
        base["tools"] = normalised
        return base

    # ── Response shapes ──────────────────────────────────────────

    def record_response_shape(self, slug: str, payload: Any) -> None:
        """Remember where the data sits in a slug's response, once."""
        schema = self.tool_schema(slug)
        if not schema or schema.get("response_shape") or not isinstance(payload, dict):
            return
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        results = data.get("results") if isinstance(data.get("results"), list) else []
        first = results[0] if results and isinstance(results[0], dict) else {}
        response = first.get("response") if isinstance(first.get("response"), dict) else {}
        for path, value in (
            ("data.results[0].response.data", response.get("data")),
            ("data.results[0].response.data_preview", response.get("data_preview")),
            ("data.results[0].response", response),
            ("data", data),
        ):
            if isinstance(value, dict) and value:
                top_keys = list(value)[:15]
                schema["response_shape"] = {
                    "data_path": path,
                    "top_keys": top_keys,
                    "array_keys": [k for k in top_keys if isinstance(value[k], list)],
                    "has_pagination": "nextPageToken" in top_keys or "pageToken" in top_keys,
                    "recorded_at": self._clock(),
                }
                self.save()
                return

    # ── Prompt section ───────────────────────────────────────────

    def build_prompt_section(
        self,
        installed_toolkits: set[str] | None = None,
        active_sections: set[str] | None = None,
    ) -> str:
        toolkits = list(self.toolkits().values())
        if not toolkits:
            return ""
        installed_toolkits = installed_toolkits or set()
        sections: list[str] = []
        total = 0
        for tk in toolkits:
            if total >= TOOLKIT_SCHEMA_MAX_PROMPT_CHARS:
                break
            if installed_toolkits and tk.get("toolkit") not in installed_toolkits:
                continue
            if active_sections is not None and f"toolkit_{tk.get('toolkit')}" not in active_sections:
                continue
            entries = [t for t in (tk.get("tools") or {}).values() if t.get("input_schema")]
            if not entries:
                continue

            lines = [f"### {tk['toolkit']}"]
            slug_list = []
            for t in entries:
                desc = _FIRST_CLAUSE_RE.split(t.get("description") or "")[0][:50].strip()
                slug_list.append(f"{t['slug']} ({desc})" if desc else t["slug"])
            lines.append(f"Available: {', '.join(slug_list)}")

            for pitfall in ((tk.get("plan") or {}).get("known_pitfalls") or [])[:2]:
                lines.append(f"⚠ {_PITFALL_PREFIX_RE.sub('', str(pitfall))[:100]}")

            primary = set(tk.get("primary_slugs") or [])
            key_tools = [t for t in entries if t["slug"] in primary][:5] or entries[:3]
            for tool in key_tools:
                lines.append(f"- `{tool['slug']}`")
                params = ((tool.get("input_schema") or {}).get("properties") or {}).items()
                shown = [(n, v) for n, v in params if "Deprecated" not in str((v or {}).get("description") or "")][:8]
                for name, spec in shown:
                    spec = spec or {}
                    default = f", default={_json_text(spec['default'])}" if "default" in spec else ""
                    desc = _FIRST_CLAUSE_RE.split(spec.get("description") or "")[0][:60]
                    lines.append(f"    {name}: {spec.get('type', 'any')}{default}{f' — {desc}' if desc else ''}")

            section = "\n".join(lines)
            if total + len(section) > TOOLKIT_SCHEMA_MAX_PROMPT_CHARS:
                break
            sections.append(section)
            total += len(section)

        if not sections:
            return ""
        first_tool = None
        for tk in toolkits:
            if tk.get("toolkit") in installed_toolkits:
                first_tool = next((t for t in (tk.get("tools") or {}).values() if t.get("input_schema")), None)
                break
        if first_tool:
            example = (
                "Example: call COMPOSIO_MULTI_EXECUTE_TOOL with:\n"
                f'  {{"tools": [{{"tool_slug": "{first_tool["slug"]}", "arguments": {{}}}}]}}'
            )
        else:
            example = 'Example: {"tools": [{"tool_slug": "TOOL_SLUG", "arguments": {}}]}'
        return (
            "## Connected Toolkit Schemas\n\n"
            "IMPORTANT: Call these tools directly via COMPOSIO_MULTI_EXECUTE_TOOL. Do NOT call "
            "COMPOSIO_SEARCH_TOOLS first — the schemas below are already cached and ready.\n\n"
            f"{example}\n\n"
            "Use the EXACT tool slugs listed below. Do not shorten or modify them.\n\n"
            + wrap_untrusted_with_injection_scan(
                "composio_schemas", "\n\n".join(sections), record_stat=self.record_stat
            )
        )


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


# ── Meta tool definitions ────────────────────────────────────────────────────

def composio_meta_tool_specs() -> list[dict[str, Any]]:
    """Fallback definitions used when the server's tool list omits a meta tool."""
    session_schema = {
        "type": "object",
        "properties": {"id": {"type": "string"}, "generate_id": {"type": "boolean"}},
    }
    return [
        {
            "name": COMPOSIO_SEARCH_TOOLS,
            "description": "Discover app-specific tool slugs and schemas for a use case.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "queries": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"use_case": {"type": "string"}},
                            "required": ["use_case"],
                        },
                    },
                    "session": session_schema,
                },
                "required": ["queries"],
            },
            "is_mutating": False,
        },
        {
            "name": COMPOSIO_GET_TOOL_SCHEMAS,
            "description": "Fetch full input schemas for specific Composio tool slugs.",
            "input_schema": {
                "type": "object",
                "properties": {"tool_slugs": {"type": "array", "items": {"type": "string"}}},
                "required": ["tool_slugs"],
            },
            "is_mutating": False,
        },
        {
            "name": COMPOSIO_MULTI_EXECUTE,
            "description": "Execute one or more Composio tool slugs with arguments.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "tools": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"tool_slug": {"type": "string"}, "arguments": {"type": "object"}},
                            "required": ["tool_slug"],
                        },
                    },
                    "session_id": {"type": "string"},
                },
                "required": ["tools"],
            },
            "is_mutating": None,
        },
        {
            "name": COMPOSIO_MANAGE_CONNECTIONS,
            "description": "List, connect or disconnect Composio toolkit connections.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "action": {"type": "string"},
                    "toolkits": {"type": "array", "items": {"type": "string"}},
                    "session_id": {"type": "string"},
                },
            },
            "is_mutating": None,
        },
    ]


# ── Client ───────────────────────────────────────────────────────────────────

class ComposioClient:
    """
    Composio session, installed-tool state and schema discovery.

    Usage:
        composio = ComposioClient(config, store, registry, pins)
        await composio.connect()
        await composio.install_tool("gmail")
        section = composio.build_prompt_section()
        await composio.disconnect()
    """

    def __init__(
        self,
        config: EngineConfig,
        store: KeyValueStore,
        registry: ToolRegistry,
        pins: SchemaPinStore,
        schemas: ToolkitSchemaRegistry | None = None,
        opener: SessionOpener | None = None,
        clock: Callable[[], float] = time.time,
        record_stat: StatRecorder | None = None,
    ):
        self._config = config
        self._store = store
        self._registry = registry
        self._pins = pins
        self.schemas = schemas or ToolkitSchemaRegistry(store, clock, record_stat=record_stat)
        self._opener = opener or open_streamable_http_session
        self._clock = clock
        self._session: Any = None
        self._stack: AsyncExitStack | None = None
        self._connect_task: asyncio.Task | None = None
        self._last_failure_at = 0.0
        self._session_id = ""
        self._installed_cache: tuple[float, list[dict[str, Any]]] | None = None

        registry.composio_schema_lookup = self.schemas.tool_schema
        registry.composio_args_normaliser = self.schemas.normalise_multi_execute_args

    # ── Connection ───────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def configured(self) -> bool:
        return bool(self._config.composio_mcp_url)

    async def connect(self) -> bool:
        if self._session is not None:
            return True
        if not self.configured:
            logger.debug("Composio MCP URL not configured")
            return False
        if self._connect_task is not None:
            return await asyncio.shield(self._connect_task)
        if self._last_failure_at and self._clock() - self._last_failure_at < COMPOSIO_CONNECT_BACKOFF_SECONDS:
            logger.debug("Composio connect skipped (backoff after recent failure)")
            return False
        self._connect_task = asyncio.ensure_future(self._connect())
        try:
            return await asyncio.shield(self._connect_task)
        finally:
            if self._connect_task is not None and self._connect_task.done():
                self._connect_task = None

    async def _connect(self) -> bool:
        headers = {"x-api-key": self._config.composio_api_key} if self._config.composio_api_key else {}
        try:
            session, _init, stack = await asyncio.wait_for(
                self._opener(self._config.composio_mcp_url, headers, COMPOSIO_CONNECT_TIMEOUT_SECONDS),
                timeout=COMPOSIO_CONNECT_TIMEOUT_SECONDS,
            )
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            self._last_failure_at = self._clock()
            logger.error("Failed to connect to Composio: %s", e)
            return False

        self._session, self._stack = session, stack
        self._last_failure_at = 0.0
        self._installed_cache = None
        await self._register_meta_tools()
        logger.info("Connected to Composio")
        try:
            await self.reconcile_installed_tools()
        except Exception as e:
            logger.warning("Composio installed-tool reconcile failed: %s", e)
        return True

    async def disconnect(self) -> None:
        stack, self._stack = self._stack, None
        self._session = None
        self._session_id = ""
        self._installed_cache = None
        self._registry.unregister_origin(ToolOrigin.COMPOSIO)
        if stack is not None:
            try:
                await stack.aclose()
            except Exception as e:
                logger.debug("Error closing Composio stack: %s", e)
        logger.info("Disconnected from Composio")

    async def reconnect(self) -> bool:
        await self.disconnect()
        self._last_failure_at = 0.0
        return await self.connect()

    async def _register_meta_tools(self) -> None:
        advertised: dict[str, Any] = {}
        try:
            listing = await self._session.list_tools()
            for tool in getattr(listing, "tools", None) or []:
                if tool.name.startswith("COMPOSIO_"):
                    advertised[tool.name] = tool
        except Exception as e:
            logger.debug("Composio list_tools failed, using built-in meta tool specs: %s", e)

        specs = {spec["name"]: spec for spec in composio_meta_tool_specs()}
        for name, tool in advertised.items():
            base = specs.get(name, {"is_mutating": None})
            specs[name] = {
                "name": name,
                "description": getattr(tool, "description", "") or base.get("description", ""),
                "input_schema": getattr(tool, "inputSchema", None) or base.get("input_schema")
                or {"type": "object", "properties": {}},
                "is_mutating": base["is_mutating"],
            }
        flagged = scan_tool_descriptions(list(specs.values()), "composio")
        if flagged:
            logger.warning("Composio meta tool descriptions flagged: %s", ", ".join(f.name for f in flagged))

        for spec in specs.values():
            self._registry.register(Tool(
                name=spec["name"],
                description=spec["description"],
                input_schema=spec["input_schema"],
                handler=self._make_handler(spec["name"]),
                is_mutating=spec["is_mutating"],
                origin=ToolOrigin.COMPOSIO,
                server_key="composio",
                server_name="composio",
            ))
        self._registry.register(Tool(
            name=COMPOSIO_GET_CONNECTED_ACCOUNTS,
            description="List the Composio toolkits this user has connected, with their auth status.",
            input_schema={"type": "object", "properties": {}},
            handler=lambda _args: self.connected_accounts(),
            is_mutating=False,
            origin=ToolOrigin.COMPOSIO,
            server_key="composio",
            server_name="composio",
        ))

    def _make_handler(self, name: str) -> Callable[[dict[str, Any]], Any]:
        async def _handler(args: dict[str, Any]) -> Any:
            return await self.execute_meta(name, args)
        return _handler

    # ── Calls ────────────────────────────────────────────────────

    async def call_tool(self, name: str, args: dict[str, Any] | None = None) -> Any:
        """Raw call; the first text content parsed as JSON."""
        if self._session is None:
            raise ConnectionError("Composio is not connected")
        result = await self._session.call_tool(name, with_composio_session_args(name, args, self._session_id))
        payload = normalise_call_result(result)
        session_id = extract_session_id(payload)
        if session_id:
            self._session_id = session_id
        return payload

    async def execute_meta(self, name: str, args: dict[str, Any]) -> Any:
        """Handler behind every registered Composio meta tool."""
        if self._session is None and not await self.connect():
            return {"error": "Composio is not connected"}
        try:
            payload = await self.call_tool(name, args)
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            logger.error("Composio call failed: %s — %s", name, e)
            return {"error": str(e) or f"Failed: {name}"}
        if name == COMPOSIO_MULTI_EXECUTE:
            for tool in (args or {}).get("tools") or []:
                if isinstance(tool, dict) and tool.get("tool_slug"):
                    self.schemas.record_response_shape(tool["tool_slug"], payload)
        return payload

    # ── Installed tools ──────────────────────────────────────────

    def installed_tools(self) -> list[dict[str, Any]]:
        raw = self._store.get(SettingsKeys.INSTALLED_TOOLS)
        records = [normalise_installed_tool_record(r, self._clock()) for r in raw] if isinstance(raw, list) else []
        return [r for r in records if r]

    def save_installed_tools(self, records: list[dict[str, Any]]) -> None:
        self._store.set(SettingsKeys.INSTALLED_TOOLS, records)

    def upsert_installed_tool(self, record: dict[str, Any]) -> dict[str, Any] | None:
        normalised = normalise_installed_tool_record(record, self._clock())
        if normalised is None:
            return None
        by_slug = {t["slug"]: t for t in self.installed_tools()}
        existing = by_slug.get(normalised["slug"], {})
        merged = {**existing, **normalised, "enabled": existing.get("enabled", True) is not False,
                  "updated_at": self._clock()}
        by_slug[normalised["slug"]] = merged
        self.save_installed_tools(list(by_slug.values()))
        return merged

    def installed_toolkits(self) -> set[str]:
        return {
            infer_toolkit_from_slug(t["slug"])
            for t in self.installed_tools()
            if t["enabled"] and t["install_state"] == "installed"
        }

    async def fetch_remote_installed_tools(self, force: bool = False) -> list[dict[str, Any]]:
        """Installed tools as Composio reports them, cached for a few seconds."""
        now = self._clock()
        if not force and self._installed_cache and self._installed_cache[0] > now:
            return self._installed_cache[1]
        records: list[dict[str, Any]] = []
        for name, args in ((COMPOSIO_GET_CONNECTED_ACCOUNTS, {}), (COMPOSIO_MANAGE_CONNECTIONS, {"action": "list"})):
            try:
                records = extract_installed_tool_records(await self.call_tool(name, args))
            except (asyncio.CancelledError, KeyboardInterrupt):
                raise
            except Exception as e:
                logger.debug("Composio slug lookup %s failed: %s", name, e)
                continue
            if records:
                break
        self._installed_cache = (now + INSTALLED_TOOLS_FETCH_TTL_SECONDS, records)
        return records

    async def reconcile_installed_tools(self) -> list[dict[str, Any]]:
        remote = await self.fetch_remote_installed_tools(force=True)
        if not remote:
            return self.installed_tools()
        by_slug = {t["slug"]: t for t in self.installed_tools()}
        now = self._clock()
        for record in remote:
            existing = by_slug.get(record["slug"], {})
            state = record.get("install_state") or existing.get("install_state") or "installed"
            by_slug[record["slug"]] = {
                **existing,
                **record,
                "enabled": existing.get("enabled", True) is not False,
                "install_state": state,
                "last_error": (record.get("last_error") or existing.get("last_error")
                               or "Composio reported a failed status") if state == "failed" else "",
                "updated_at": now,
            }
        records = list(by_slug.values())
        self.save_installed_tools(records)
        return records

    async def connected_accounts(self) -> dict[str, Any]:
        records = self.installed_tools()
        return {
            "connected": self.connected,
            "accounts": [
                {"slug": r["slug"], "status": r["install_state"], "connection_id": r["connection_id"]}
                for r in records
            ],
        }

    async def is_tool_connected(self, tool_slug: str, remote: list[dict[str, Any]] | None = None) -> bool:
        target = normalise_tool_slug_token(tool_slug)
        if not target:
            return False
        records = remote if remote is not None else await self.fetch_remote_installed_tools()
        if not records:
            try:
                payload = await self.call_tool(COMPOSIO_MANAGE_CONNECTIONS, {"action": "list", "toolkits": [tool_slug]})
            except (asyncio.CancelledError, KeyboardInterrupt):
                raise
            except Exception:
                return False
            records = extract_installed_tool_records(payload)
        match = next((r for r in records if normalise_tool_slug_token(r["slug"]) == target), None)
        return bool(match) and match["install_state"] == "installed"

    # ── Catalog cache ────────────────────────────────────────────

    def toolkit_catalog(self) -> dict[str, Any]:
        raw = self._store.get(SettingsKeys.COMPOSIO_TOOLKIT_CATALOG_CACHE)
        raw = raw if isinstance(raw, dict) else {}
        slugs: list[str] = []
        for value in raw.get("slugs") or []:
            slug = normalise_toolkit_slug(value)
            if slug and slug not in slugs:
                slugs.append(slug)
        fetched_at = raw.get("fetched_at")
        return {
            "fetched_at": fetched_at if isinstance(fetched_at, (int, float)) else 0,
            "slugs": slugs[:COMPOSIO_TOOLKIT_CATALOG_MAX_SLUGS],
        }

    def merge_toolkit_catalog(self, slugs: Iterable[Any], touch: bool = False) -> dict[str, Any]:
        current = self.toolkit_catalog()
        merged: list[str] = []
        for value in list(slugs) + current["slugs"]:
            slug = normalise_toolkit_slug(value)
            if slug and slug not in merged:
                merged.append(slug)
        catalog = {
            "fetched_at": self._clock() if touch else current["fetched_at"],
            "slugs": merged[:COMPOSIO_TOOLKIT_CATALOG_MAX_SLUGS],
        }
        self._store.set(SettingsKeys.COMPOSIO_TOOLKIT_CATALOG_CACHE, catalog)
        return catalog

    async def resolve_toolkit_slug(self, requested_slug: str) -> dict[str, Any]:
        requested = normalise_toolkit_slug(requested_slug)
        catalog = self.toolkit_catalog()
        age = self._clock() - catalog["fetched_at"]
        fresh = catalog["fetched_at"] > 0 and 0 <= age <= COMPOSIO_TOOLKIT_CATALOG_CACHE_TTL_SECONDS
        cached = resolve_toolkit_slug_from_suggestions(requested, catalog["slugs"])
        if fresh and cached["suggestions"] and cached["resolved_slug"] != requested:
            return cached
        try:
            payload = await self.call_tool(COMPOSIO_SEARCH_TOOLS, {"queries": [{"use_case": requested}]})
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            logger.debug("Composio toolkit search failed: %s", e)
            return cached
        discovered = extract_candidate_toolkit_slugs(payload)
        if not discovered:
            return cached
        merged = self.merge_toolkit_catalog(discovered, touch=True)
        return resolve_toolkit_slug_from_suggestions(requested, merged["slugs"])

    # ── Install / deregister / test ──────────────────────────────

    async def install_tool(self, requested_slug: str) -> dict[str, Any]:
        """
        Connect a toolkit.

        Returns ``{"slug", "state", "auth_urls", "message"}``; state is one of
        installed, pending_auth or failed.
        """
        tool_slug = normalise_toolkit_slug(requested_slug)
        if not tool_slug:
            return {"slug": "", "state": "failed", "auth_urls": [], "message": "No tool slug entered."}
        if not await self.connect():
            return {"slug": tool_slug, "state": "failed", "auth_urls": [], "message": "Composio is not connected."}

        resolution = await self.resolve_toolkit_slug(tool_slug)
        install_slug = resolution["resolved_slug"] or tool_slug
        self.merge_toolkit_catalog([tool_slug, install_slug])
        if install_slug != tool_slug:
            logger.info("Composio slug resolved: %s → %s", tool_slug, install_slug)

        try:
            payload = await self.call_tool(COMPOSIO_MANAGE_CONNECTIONS, {"toolkits": [install_slug]})
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            logger.error("Failed to install Composio tool %s: %s", install_slug, e)
            self.upsert_installed_tool({"slug": install_slug, "install_state": "failed",
                                        "last_error": str(e) or "Unknown install error"})
            return {"slug": install_slug, "state": "failed", "auth_urls": [],
                    "message": f"Could not install {install_slug}."}

        self._installed_cache = None
        auth_urls = extract_auth_redirect_urls(payload)
        if auth_urls:
            self.upsert_installed_tool({"slug": install_slug, "install_state": "pending_auth"})
            return {"slug": install_slug, "state": "pending_auth", "auth_urls": auth_urls,
                    "message": f"Finish {install_slug} setup: {', '.join(auth_urls)}"}

        await self.reconcile_installed_tools()
        self.upsert_installed_tool({"slug": install_slug, "install_state": "installed"})
        try:
            await self.discover_toolkit(infer_toolkit_from_slug(install_slug))
        except Exception as e:
            logger.warning("Schema discovery after install failed for %s: %s", install_slug, e)
        return {"slug": install_slug, "state": "installed", "auth_urls": [],
                "message": f"{install_slug} is now available."}

    async def deregister_tool(self, requested_slug: str) -> bool:
        tool_slug = str(requested_slug or "").strip().upper()
        if not tool_slug or not await self.connect():
            return False
        for action in DEREGISTER_ACTIONS:
            try:
                payload = await self.call_tool(COMPOSIO_MANAGE_CONNECTIONS, {"action": action, "toolkits": [tool_slug]})
            except (asyncio.CancelledError, KeyboardInterrupt):
                raise
            except Exception as e:
                logger.debug("Composio deregister %s via %s failed: %s", tool_slug, action, e)
                continue
            if composio_call_looks_successful(payload):
                self._installed_cache = None
                remaining = [t for t in self.installed_tools()
                             if normalise_tool_slug_token(t["slug"]) != normalise_tool_slug_token(tool_slug)]
                self.save_installed_tools(remaining)
                logger.info("Composio tool %s deregistered (%s)", tool_slug, action)
                return True
        self.upsert_installed_tool({"slug": tool_slug, "install_state": "failed",
                                    "last_error": "Deregister command failed"})
        return False

    async def test_tool(self, requested_slug: str) -> str:
        """``connected`` | ``uncertain`` | ``missing`` | ``offline``."""
        tool_slug = str(requested_slug or "").strip().upper()
        if not await self.connect():
            return "offline"
        if await self.is_tool_connected(tool_slug):
            return "connected"
        token = normalise_tool_slug_token(tool_slug)
        if any(normalise_tool_slug_token(t["slug"]) == token and t["install_state"] == "installed"
               for t in self.installed_tools()):
            return "uncertain"
        return "missing"

    async def refresh_auth_status(self) -> int:
        """Promote pending_auth tools that Composio now reports connected.  Returns the count."""
        pending = [t for t in self.installed_tools() if t["install_state"] == "pending_auth"]
        if not pending or not await self.connect():
            return 0
        remote = await self.fetch_remote_installed_tools(force=True)
        activated = 0
        for tool in pending:
            slug = tool["slug"].upper()
            if await self.is_tool_connected(slug, remote=remote):
                self.upsert_installed_tool({"slug": slug, "label": tool["label"], "install_state": "installed"})
                activated += 1
        return activated

    # ── Schema discovery ─────────────────────────────────────────

    async def discover_toolkit(self, toolkit: str, force: bool = False) -> dict[str, Any] | None:
        """Populate the schema registry for one toolkit; returns the (possibly stale) entry."""
        key = str(toolkit or "").upper()
        if not key:
            return None
        if not force and self.schemas.is_fresh(key):
            entry = self.schemas.entry(key)
            self.schemas.populate_safe_slugs(entry)
            return entry
        if self._session is None:
            return self.schemas.entry(key)

        tools: dict[str, dict[str, Any]] = {}
        plan = ToolkitPlan()
        primary: list[str] = []
        related: list[str] = []
        queries = TOOLKIT_QUERY_HINTS.get(key) or [key.lower(), f"{key.lower()} list read fetch send create"]
        for query in queries:
            try:
                payload = await self.call_tool(COMPOSIO_SEARCH_TOOLS, {"queries": [{"use_case": query}]})
            except (asyncio.CancelledError, KeyboardInterrupt):
                raise
            except Exception as e:
                logger.debug("Schema registry query failed: %s — %s", query, e)
                continue
            if not isinstance(payload, dict) or not payload.get("successful"):
                continue
            results = (payload.get("data") or {}).get("results") or [{}]
            result = results[0] if isinstance(results[0], dict) else {}
            q_primary = [s for s in result.get("primary_tool_slugs") or [] if isinstance(s, str)]
            q_related = [s for s in result.get("related_tool_slugs") or [] if isinstance(s, str)]
            primary += [s for s in q_primary if s not in primary]
            related += [s for s in q_related if s not in related]
            candidate_plan = ToolkitPlan(
                recommended_plan_steps=list(result.get("recommended_plan_steps") or []),
                known_pitfalls=list(result.get("known_pitfalls") or []),
                execution_guidance=result.get("execution_guidance") or plan.execution_guidance,
            )
            if candidate_plan.size > plan.size:
                plan = candidate_plan

            for slug, schema in (result.get("tool_schemas") or {}).items():
                schema = schema if isinstance(schema, dict) else {}
                if infer_toolkit_from_slug(slug) != key and slug not in q_primary:
                    continue
                if (tools.get(slug) or {}).get("input_schema") and not schema.get("input_schema"):
                    continue
                has_schema = bool(schema.get("input_schema")) and schema.get("hasFullSchema") is not False
                if has_schema or slug not in tools:
                    tools[slug] = {
                        "slug": slug,
                        "toolkit": schema.get("toolkit") or key,
                        "description": schema.get("description") or "",
                        "input_schema": schema.get("input_schema") if has_schema else None,
                        "fetched_at": self._clock() if has_schema else 0,
                    }

        for slug in primary + related:
            if infer_toolkit_from_slug(slug) != key and slug not in primary:
                continue
            tools.setdefault(slug, {"slug": slug, "toolkit": key, "description": "", "input_schema": None,
                                    "fetched_at": 0})
        if not tools:
            logger.debug("Schema registry: no tools found for %s", key)
            return self.schemas.entry(key)

        missing = [t["slug"] for t in tools.values() if not t["input_schema"]][:SCHEMA_FETCH_MAX]
        for i in range(0, len(missing), SCHEMA_FETCH_BATCH):
            batch = missing[i:i + SCHEMA_FETCH_BATCH]
            try:
                payload = await self.call_tool(COMPOSIO_GET_TOOL_SCHEMAS, {"tool_slugs": batch})
            except (asyncio.CancelledError, KeyboardInterrupt):
                raise
            except Exception as e:
                logger.debug("GET_TOOL_SCHEMAS batch failed: %s", e)
                continue
            fetched = ((payload or {}).get("data") or {}).get("tool_schemas") or {} if isinstance(payload, dict) else {}
            for slug, schema in fetched.items():
                if slug in tools and isinstance(schema, dict) and schema.get("input_schema"):
                    tools[slug]["input_schema"] = schema["input_schema"]
                    tools[slug]["description"] = schema.get("description") or tools[slug]["description"]
                    tools[slug]["fetched_at"] = self._clock()

        pinned_tools = [
            {"name": t["slug"], "description": t["description"], "input_schema": t["input_schema"]}
            for t in tools.values() if t["input_schema"]
        ]
        server_key = f"composio:{key}"
        flagged = scan_tool_descriptions(pinned_tools, key)
        pin = self._pins.check(server_key, pinned_tools, key)
        self._pins.update_bom(server_key, key, f"Composio toolkit {key}", pinned_tools, pin, flagged)
        if pin.suspended:
            logger.warning("Composio toolkit %s suspended: %s", key, pin.summary)
            return self.schemas.entry(key)

        entry = {
            "toolkit": key,
            "discovered_at": self._clock(),
            "plan": {
                "recommended_plan_steps": plan.recommended_plan_steps,
                "known_pitfalls": plan.known_pitfalls,
                "execution_guidance": plan.execution_guidance,
            },
            "primary_slugs": primary,
            "related_slugs": related,
            "tools": tools,
        }
        self.schemas.put(entry)
        logger.info(
            "Schema registry: discovered %s (%d tools, %d with schema)",
            key, len(tools), len(pinned_tools),
        )
        return entry

    async def discover_all_connected(self, force: bool = False) -> int:
        """Rediscover every installed toolkit, five at a time.  Returns the number discovered."""
        self.schemas.reset_safe_slugs()
        toolkits = sorted(self.installed_toolkits())
        discovered = 0
        for i in range(0, len(toolkits), DISCOVERY_CONCURRENCY):
            batch = toolkits[i:i + DISCOVERY_CONCURRENCY]
            results = await asyncio.gather(*(self.discover_toolkit(tk, force=force) for tk in batch),
                                           return_exceptions=True)
            for toolkit, outcome in zip(batch, results):
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception):
                    logger.warning("Toolkit schema discovery failed: %s — %s", toolkit, outcome)
                elif outcome:
                    discovered += 1
        return discovered

    async def accept_suspended(self, toolkit: str) -> dict[str, Any] | None:
        self._pins.unsuspend(f"composio:{toolkit.upper()}", accept=True)
        return await self.discover_toolkit(toolkit, force=True)

    def reject_suspended(self, toolkit: str) -> None:
        self._pins.unsuspend(f"composio:{toolkit.upper()}", accept=False)

    def build_prompt_section(self, active_sections: set[str] | None = None) -> str:
        return self.schemas.build_prompt_section(self.installed_toolkits(), active_sections)

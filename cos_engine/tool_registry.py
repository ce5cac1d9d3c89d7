"""
Tool Registry — one name → tool mapping over every tool origin.

Bridges the gap between:
- native graph tools, memory tools and scheduler tools
- Composio meta tools brokered over MCP streamable HTTP
- local MCP servers (direct tools, or routed behind LOCAL_MCP_ROUTE/EXECUTE)
- LiteLLM's OpenAI-compatible function calling format

Handles:
- Mutation classification (annotation, args-dependent meta tools, heuristics)
- Tool-name normalisation and Composio slug interception
- LOCAL_MCP_ROUTE / LOCAL_MCP_EXECUTE meta tools with key-parameter checks
- Prompt-relevance filtering of the visible tool set
- Result formatting for LLM consumption with injection-scanned wrapping
"""
import asyncio
import inspect
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from cos_engine.config import LOCAL_MCP_DIRECT_TOOL_THRESHOLD, MAX_TOOL_RESULT_CHARS
from cos_engine.exceptions import ToolError
from cos_engine.metrics import METRICS
from cos_engine.parse_utils import safe_json_stringify
from cos_engine.security import StatRecorder, wrap_untrusted_with_injection_scan

logger = logging.getLogger("cos.engine.tools")

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any] | Any]

LOCAL_MCP_ROUTE = "LOCAL_MCP_ROUTE"
LOCAL_MCP_EXECUTE = "LOCAL_MCP_EXECUTE"
COMPOSIO_MULTI_EXECUTE = "COMPOSIO_MULTI_EXECUTE_TOOL"
COMPOSIO_MANAGE_CONNECTIONS = "COMPOSIO_MANAGE_CONNECTIONS"

COMPOSIO_SLUG_RE = re.compile(r"^[A-Z][A-Z0-9]*_[A-Z0-9_]+$")

# \b treats _ as a word character, so "zotero_get_collections" would not match GET.
READ_ONLY_TOKEN_RE = re.compile(
    r"(?:^|[^a-zA-Z0-9])(GET|LIST|SEARCH|FETCH|STATUS|CHECK|READ|QUERY|FIND|DESCRIBE)(?:[^a-zA-Z0-9]|$)",
    re.IGNORECASE,
)
KEY_PARAM_RE = re.compile(r"(?:_key|_id|Key|Id)$", re.IGNORECASE)

SLUG_MUTATING_TOKENS = (
    "DELETE", "REMOVE", "SEND", "CREATE", "UPDATE", "MODIFY", "WRITE", "POST", "TRASH", "MOVE", "EXECUTE",
)
SLUG_READ_TOKENS = (
    "GET", "LIST", "SEARCH", "FIND", "FETCH", "READ", "QUERY", "LOOKUP", "RETRIEVE", "VIEW", "DESCRIBE",
    "DETAILS", "SHOW",
)
SENSITIVE_TOKENS = (
    "CREATE", "MODIFY", "UPDATE", "DELETE", "REMOVE", "SEND", "POST", "WRITE", "MUTATE", "DISCONNECT",
    "CONNECT", "EXECUTE",
)
SAFE_MANAGE_CONNECTION_ACTIONS = frozenset({"list", "status", "check", "get"})

# Tools an inbox-triggered (read-only) run may always call.
READ_ONLY_TOOL_ALLOWLIST = frozenset({
    "roam_search",
    "roam_get_page",
    "roam_get_daily_page",
    "roam_get_block_children",
    "cos_get_current_time",
    "cos_get_skill",
    "cos_cron_list",
    LOCAL_MCP_ROUTE,
    "COMPOSIO_SEARCH_TOOLS",
    "COMPOSIO_GET_TOOL_SCHEMAS",
})

EXTERNAL_DATA_TOOL_NAMES = frozenset({
    "COS_UPDATE_MEMORY",
    "COS_GET_SKILL",
    "ROAM_SEARCH",
    "ROAM_GET_PAGE",
    "ROAM_GET_DAILY_PAGE",
    "ROAM_GET_BLOCK_CHILDREN",
    LOCAL_MCP_ROUTE,
    LOCAL_MCP_EXECUTE,
})

# ── Relevance filter keyword gates ───────────────────────────────────────────
NEEDS_TASKS_RE = re.compile(r"\b(tasks?|todo|project|done|overdue|due|bt_|better\s*tasks?|assign|delegate|waiting.for)\b")
NEEDS_CRON_RE = re.compile(r"\b(cron|schedule[ds]?|recurring|every\s+\d+\s+(min|hour)|hourly|timer|remind\s+me\s+in)\b")
NEEDS_EMAIL_RE = re.compile(r"\b(email|gmail|inbox|unread|mail|messages?|send|draft|compose)\b")
NEEDS_CALENDAR_RE = re.compile(r"\b(cal[ea]n[dn]a?[rt]|event|meeting|appointment|agenda|gcal)\b")
NEEDS_COMPOSIO_RE = re.compile(r"\b(composio|connect|integration|install|deregister|connected\s+tools?)\b")
EMAIL_TOOL_RE = re.compile(r"(mail|inbox|message)", re.IGNORECASE)
CALENDAR_TOOL_RE = re.compile(r"(calendar|event|freebusy)", re.IGNORECASE)


class ToolOrigin(str, Enum):
    NATIVE = "native"
    COMPOSIO = "composio"
    LOCAL_MCP = "local-mcp"
    META = "meta-routed"


@dataclass
class Tool:
    """A tool that can be called by the LLM."""
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler | None = field(default=None, repr=False)
    is_mutating: bool | None = None
    origin: ToolOrigin = ToolOrigin.NATIVE
    server_key: str | None = None
    server_name: str | None = None
    is_direct: bool = True
    annotations: dict[str, Any] | None = field(default=None, repr=False)

    def to_llm(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or "",
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }

    async def execute(self, args: dict[str, Any]) -> Any:
        if self.handler is None:
            raise ToolError(f"No handler for tool: {self.name}")
        result = self.handler(args or {})
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class ToolResult:
    """Result of a tool execution."""
    tool_call_id: str
    name: str
    content: str
    result: Any = None
    success: bool = True
    duration_ms: int = 0

    def to_message(self) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}


def mutability_from_annotations(annotations: dict[str, Any] | None) -> bool | None:
    """readOnlyHint=True → False; destructiveHint=True or readOnlyHint=False → True; else unknown."""
    if not annotations:
        return None
    if annotations.get("readOnlyHint") is True:
        return False
    if annotations.get("destructiveHint") is True or annotations.get("readOnlyHint") is False:
        return True
    return None


def normalise_tool_name(name: Any) -> str:
    """Models sometimes emit hyphens in tool names (``cos_get-current-time``)."""
    return str(name or "").replace("-", "_")


def find_closest_tool_name(query: str, known_names: Iterable[str]) -> str | None:
    """
    Suggest the known name sharing the most ``_``-separated words with ``query``.

    Ties go to the name closest in length; at least two shared words are required.
    """
    known_names = list(known_names or [])
    if not query or not known_names:
        return None
    q_words = [w for w in query.lower().split("_") if w]
    best_name: str | None = None
    best_score = 0
    for name in known_names:
        n_words = [w for w in name.lower().split("_") if w]
        shared = sum(1 for w in q_words if w in n_words)
        closer = best_name is not None and abs(len(name) - len(query)) < abs(len(best_name) - len(query))
        if shared > best_score or (shared == best_score and closer):
            best_score = shared
            best_name = name
    return best_name if best_score >= 2 else None


def is_likely_read_only_tool_slug(slug: Any) -> bool:
    upper = str(slug or "").upper()
    if not upper:
        return False
    if any(token in upper for token in SLUG_MUTATING_TOKENS):
        return False
    return any(token in upper for token in SLUG_READ_TOKENS)


def is_successful_tool_result(result: Any) -> bool:
    if result is None:
        return False
    if not isinstance(result, dict):
        return True
    error = result.get("error")
    if isinstance(error, str):
        return not error.strip()
    return not error


def filter_tools_by_relevance(tools: list[Tool], prompt: str) -> list[Tool]:
    """
    Drop optional tool categories the prompt does not mention.

    Core tools are always kept; tasks, cron, email, calendar and Composio tools
    only appear when the prompt names them by keyword.
    """
    text = str(prompt or "").lower()
    needs_tasks = bool(NEEDS_TASKS_RE.search(text))
    needs_cron = bool(NEEDS_CRON_RE.search(text))
    needs_email = bool(NEEDS_EMAIL_RE.search(text))
    needs_calendar = bool(NEEDS_CALENDAR_RE.search(text))
    needs_composio = bool(NEEDS_COMPOSIO_RE.search(text))

    filtered = []
    for tool in tools:
        name = tool.name
        if name.startswith("roam_bt_"):
            keep = needs_tasks
        elif name.startswith("cos_cron_"):
            keep = needs_cron
        elif name.startswith("COMPOSIO_"):
            keep = needs_composio or needs_email or needs_calendar
        elif tool.origin is ToolOrigin.NATIVE:
            keep = True
        elif CALENDAR_TOOL_RE.search(name):
            keep = needs_calendar
        elif EMAIL_TOOL_RE.search(name):
            keep = needs_email
        else:
            keep = True
        if keep:
            filtered.append(tool)

    if len(filtered) < len(tools):
        logger.debug("Tool filtering: %d → %d tools", len(tools), len(filtered))
    return filtered


def format_tool_list_by_server(tools: list[Tool]) -> str:
    """Compact listing grouped by server, descriptions only."""
    by_server: dict[str, list[Tool]] = {}
    for tool in tools:
        by_server.setdefault(tool.server_name or "unknown", []).append(tool)
    sections = []
    for server_name, server_tools in by_server.items():
        lines = "\n".join(f"- **{t.name}**: {t.description or '(no description)'}" for t in server_tools)
        sections.append(f"### {server_name} ({len(server_tools)} tools)\n{lines}")
    if len(by_server) == 1:
        header = f"## {next(iter(by_server))} — {len(tools)} tools available"
    else:
        header = f"## {len(tools)} tools across {len(by_server)} servers"
    return header + "\n\n" + "\n\n".join(sections)


def format_server_tool_list(tools: list[Tool], server_name: str) -> dict[str, str]:
    """Full listing with input schemas, returned by LOCAL_MCP_ROUTE."""
    lines = []
    for tool in tools:
        schema = tool.input_schema or {}
        schema_text = f"\n  Input: {json.dumps(schema)}" if schema.get("properties") else ""
        lines.append(f"- **{tool.name}**: {tool.description or '(no description)'}{schema_text}")
    return {
        "text": (
            f"## {server_name} — {len(tools)} tools available\n\n"
            'Call these via LOCAL_MCP_EXECUTE({ "tool_name": "...", "arguments": {...} }).\n\n'
            + "\n\n".join(lines)
        )
    }


class ToolRegistry:
    """
    Registry of every tool visible to or reachable by the model.

    Usage:
        registry = ToolRegistry()
        registry.register(Tool(name="roam_search", ...))

        # Get tool definitions for LLM:
        tools = registry.tools_for_llm(prompt, read_only=False)

        # Execute a tool call:
        result = await registry.execute(tool_call_id, "roam_search", {"query": "x"})
    """

    def __init__(self, timeout_seconds: float = 120.0, record_stat: StatRecorder | None = None):
        self._tools: dict[str, Tool] = {}
        # Local MCP tools from servers over the direct threshold; reachable only via the meta tools.
        self._routed: dict[str, Tool] = {}
        self._timeout = timeout_seconds
        self.record_stat = record_stat
        self.on_local_mcp_used: Callable[[], None] | None = None
        # Composio slug → schema lookup, supplied by the Composio integration.
        self.composio_schema_lookup: Callable[[str], dict[str, Any] | None] | None = None
        self.composio_args_normaliser: Callable[[dict[str, Any]], dict[str, Any]] | None = None

    # ── Registration ─────────────────────────────────────────────

    def register(self, tool: Tool) -> None:
        if tool.origin is ToolOrigin.LOCAL_MCP and not tool.is_direct:
            self._routed[tool.name] = tool
        else:
            self._tools[tool.name] = tool
        if self._routed and LOCAL_MCP_ROUTE not in self._tools:
            self._register_local_mcp_meta_tools()

    def register_many(self, tools: Iterable[Tool]) -> int:
        count = 0
        for tool in tools:
            self.register(tool)
            count += 1
        return count

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._routed.pop(name, None)

    def unregister_server(self, server_key: str) -> int:
        removed = 0
        for bucket in (self._tools, self._routed):
            for name in [n for n, t in bucket.items() if t.server_key == server_key]:
                del bucket[name]
                removed += 1
        if not self._routed:
            self._tools.pop(LOCAL_MCP_ROUTE, None)
            self._tools.pop(LOCAL_MCP_EXECUTE, None)
        return removed

    def unregister_origin(self, origin: ToolOrigin) -> int:
        removed = 0
        for bucket in (self._tools, self._routed):
            for name in [n for n, t in bucket.items() if t.origin is origin]:
                del bucket[name]
                removed += 1
        return removed

    def _register_local_mcp_meta_tools(self) -> None:
        self._tools[LOCAL_MCP_ROUTE] = Tool(
            name=LOCAL_MCP_ROUTE,
            description=(
                "Discover available tools on a local MCP server. Call this FIRST for routed servers to see "
                "their tool names, descriptions, and input schemas. Then call LOCAL_MCP_EXECUTE with the "
                "specific tool."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "server_name": {"type": "string", "description": "Server name from the system prompt"},
                    "task_description": {
                        "type": "string",
                        "description": "Optional: brief description of what you want to accomplish",
                    },
                },
                "required": ["server_name"],
            },
            handler=self._local_mcp_route,
            is_mutating=False,
            origin=ToolOrigin.META,
        )
        self._tools[LOCAL_MCP_EXECUTE] = Tool(
            name=LOCAL_MCP_EXECUTE,
            description=(
                "Execute a tool discovered via LOCAL_MCP_ROUTE. Provide the exact tool_name and its arguments. "
                "IMPORTANT: key/ID parameters (e.g. collection_key, item_key) take a single alphanumeric "
                'identifier like "NADHRMVD" — never a path like "parent/child" or a display name.'
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "tool_name": {"type": "string", "description": "Exact tool name returned by LOCAL_MCP_ROUTE"},
                    "arguments": {"type": "object", "description": "Arguments for the tool"},
                },
                "required": ["tool_name"],
            },
            handler=self._local_mcp_execute,
            is_mutating=None,
            origin=ToolOrigin.META,
        )

    # ── Lookup ───────────────────────────────────────────────────

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def local_mcp_tools(self) -> list[Tool]:
        direct = [t for t in self._tools.values() if t.origin is ToolOrigin.LOCAL_MCP]
        return direct + list(self._routed.values())

    def find_local_mcp_tool(self, name: str) -> Tool | None:
        for tool in self.local_mcp_tools():
            if tool.name == name:
                return tool
        return None

    def routed_server_names(self) -> list[str]:
        return sorted({t.server_name or "unknown" for t in self._routed.values()})

    def tools_for_llm(self, prompt: str = "", read_only: bool = False, filter_relevance: bool = True) -> list[Tool]:
        """Visible tool set for one run: relevance-filtered, and mutating tools removed when read-only."""
        tools = self.all_tools()
        if filter_relevance:
            tools = filter_tools_by_relevance(tools, prompt)
        if read_only:
            tools = [t for t in tools if t.name in READ_ONLY_TOOL_ALLOWLIST or t.is_mutating is False]
        return tools

    # ── Classification ───────────────────────────────────────────

    def is_potentially_mutating(self, name: str, args: dict[str, Any] | None = None, tool: Tool | None = None) -> bool:
        """
        Classify a call as potentially side-effecting.

        Order: explicit ``is_mutating`` flag, args-dependent meta tools,
        token heuristics for unannotated MCP tools, then sensitive tokens.
        """
        upper = str(name or "").upper()
        if not upper:
            return False
        args = args or {}
        tool = tool or self.get(name)
        if tool is not None and isinstance(tool.is_mutating, bool):
            return tool.is_mutating

        if COMPOSIO_MANAGE_CONNECTIONS in upper:
            return str(args.get("action") or "").lower() not in SAFE_MANAGE_CONNECTION_ACTIONS

        if upper == COMPOSIO_MULTI_EXECUTE:
            batch = args.get("tools") if isinstance(args.get("tools"), list) else []
            if not batch:
                return True
            return not all(is_likely_read_only_tool_slug((t or {}).get("tool_slug")) for t in batch)

        if upper == LOCAL_MCP_EXECUTE:
            inner_name = str(args.get("tool_name") or "")
            if not inner_name:
                return True
            inner = self.find_local_mcp_tool(inner_name)
            if inner is not None and isinstance(inner.is_mutating, bool):
                return inner.is_mutating
            return not READ_ONLY_TOKEN_RE.search(inner_name)

        if any(t.name.upper() == upper for t in self.local_mcp_tools()):
            return not READ_ONLY_TOKEN_RE.search(name)

        return any(token in upper for token in SENSITIVE_TOKENS)

    def is_external_data_tool_call(self, name: str) -> bool:
        upper = str(name or "").upper()
        if not upper:
            return False
        if upper.startswith("COMPOSIO_") or upper.startswith("COS_CRON_") or upper in EXTERNAL_DATA_TOOL_NAMES:
            return True
        if self.find_local_mcp_tool(name) is not None:
            return True
        return bool(COMPOSIO_SLUG_RE.match(upper) and self._composio_schema(upper))

    def server_key_for_tool(self, name: str, args: dict[str, Any] | None = None,
                            suspended_keys: Iterable[str] = ()) -> str | None:
        """Resolve a call to its MCP server key (``local:PORT`` or ``composio:TOOLKIT``)."""
        args = args or {}
        tool = self.get(name)
        if tool is not None and tool.origin is ToolOrigin.LOCAL_MCP:
            return tool.server_key
        if name == LOCAL_MCP_EXECUTE:
            server_name = args.get("server_name")
            if server_name:
                for t in self.local_mcp_tools():
                    if t.server_name == server_name:
                        return t.server_key
            inner = self.find_local_mcp_tool(str(args.get("tool_name") or ""))
            return inner.server_key if inner is not None else None
        if name == COMPOSIO_MULTI_EXECUTE:
            slugs = [str((t or {}).get("tool_slug") or "") for t in (args.get("tools") or [])]
            slugs = [s for s in slugs if s]
            if slugs:
                for key in suspended_keys:
                    if key.startswith("composio:") and slugs[0].startswith(key[len("composio:"):] + "_"):
                        return key
        return None

    # ── Call resolution ──────────────────────────────────────────

    def _composio_schema(self, slug: str) -> dict[str, Any] | None:
        if self.composio_schema_lookup is None:
            return None
        return self.composio_schema_lookup(slug)

    def resolve_call(self, name: str, args: dict[str, Any] | None) -> tuple[str, dict[str, Any]]:
        """
        Normalise a model-issued call before gating.

        Hyphens become underscores, multi-execute args are normalised, and a
        Composio slug called directly is rewrapped as COMPOSIO_MULTI_EXECUTE_TOOL.
        """
        # MCP servers may register hyphenated names; only rewrite unknown ones.
        normalised = name if self.get(name) is not None else normalise_tool_name(name)
        if normalised != name:
            logger.debug("Tool name normalised: %r → %r", name, normalised)
        args = dict(args or {})
        upper = normalised.upper()

        if upper == COMPOSIO_MULTI_EXECUTE:
            if self.composio_args_normaliser is not None:
                args = self.composio_args_normaliser(args)
            return COMPOSIO_MULTI_EXECUTE, args

        if self.get(normalised) is None and COMPOSIO_SLUG_RE.match(upper) and self._composio_schema(upper):
            logger.debug("Composio slug interceptor: rewriting direct call %r → %s", normalised, COMPOSIO_MULTI_EXECUTE)
            wrapped = {"tools": [{"tool_slug": upper, "arguments": args}]}
            if self.composio_args_normaliser is not None:
                wrapped = self.composio_args_normaliser(wrapped)
            return COMPOSIO_MULTI_EXECUTE, wrapped

        return normalised, args

    @staticmethod
    def approval_key(name: str, args: dict[str, Any] | None) -> str:
        """Meta tools key approvals on the inner slug set / inner tool name."""
        args = args or {}
        if name == COMPOSIO_MULTI_EXECUTE:
            slugs = sorted(str((t or {}).get("tool_slug") or "") for t in (args.get("tools") or []))
            return f"{name}::{','.join(s for s in slugs if s)}"
        if name == LOCAL_MCP_EXECUTE:
            return f"{LOCAL_MCP_EXECUTE}::{args.get('tool_name') or ''}"
        return name

    # ── Meta tool handlers ───────────────────────────────────────

    def _mark_local_mcp_used(self) -> None:
        if self.on_local_mcp_used is not None:
            self.on_local_mcp_used()

    async def _local_mcp_route(self, args: dict[str, Any]) -> dict[str, Any]:
        self._mark_local_mcp_used()
        server_name = str(args.get("server_name") or "")
        if not server_name:
            return {"error": "server_name is required"}
        routed = list(self._routed.values())
        server_tools = [t for t in routed if t.server_name == server_name]
        if not server_tools:
            lower = server_name.lower()
            server_tools = [t for t in routed if (t.server_name or "").lower() == lower]
        if not server_tools:
            lower = server_name.lower()
            for t in self.all_tools():
                if t.origin is not ToolOrigin.LOCAL_MCP:
                    continue
                sn = (t.server_name or "").lower()
                if t.name.lower() == lower or sn == lower or lower in sn:
                    return {
                        "error": (
                            f'"{server_name}" is a DIRECT tool, not a routed server. Do NOT use LOCAL_MCP_ROUTE '
                            f'for it. Instead, call the tool "{t.name}" directly with its arguments — it is '
                            "already registered as a callable tool."
                        )
                    }
            available = ", ".join(self.routed_server_names()) or "(none)"
            return {"error": f'Server "{server_name}" not found. Available routed servers: {available}'}
        return format_server_tool_list(server_tools, server_tools[0].server_name or server_name)

    async def _local_mcp_execute(self, args: dict[str, Any]) -> Any:
        self._mark_local_mcp_used()
        inner_name = str(args.get("tool_name") or "")
        if not inner_name:
            return {"error": "LOCAL_MCP_EXECUTE requires tool_name"}
        tool = self.find_local_mcp_tool(inner_name)
        if tool is None and inner_name.find(".") > 0:
            stripped = inner_name.split(".", 1)[1]
            tool = self.find_local_mcp_tool(stripped)
            if tool is not None:
                logger.debug("LOCAL_MCP_EXECUTE normalised %r → %r", inner_name, stripped)
        if tool is None:
            closest = find_closest_tool_name(inner_name, [t.name for t in self.local_mcp_tools()])
            suggestion = f' Did you mean "{closest}"?' if closest else ""
            return {
                "error": f'Tool "{inner_name}" not found.{suggestion} Use LOCAL_MCP_ROUTE to discover available tools.'
            }

        inner_args = args.get("arguments") if isinstance(args.get("arguments"), dict) else {}
        properties = (tool.input_schema or {}).get("properties") or {}
        for param in properties:
            if not KEY_PARAM_RE.search(param):
                continue
            value = inner_args.get(param)
            if not isinstance(value, str):
                continue
            if "/" in value:
                kind, example = "a path", "not a path"
            elif " " in value:
                kind, example = "a display name", "not a name"
            else:
                continue
            logger.debug("Rejected %s key: %s=%r", kind, param, value)
            return {
                "error": (
                    f'Parameter "{param}" received "{value}" which looks like {kind}. '
                    f'This parameter expects a single alphanumeric identifier (e.g. "NADHRMVD"), {example}. '
                    "Check the collection tree or conversation context [Key reference: ...] for the correct key."
                )
            }
        return await tool.execute(inner_args)

    # ── Execution ────────────────────────────────────────────────

    def format_result(self, tool_call_id: str, name: str, result: Any) -> str:
        raw = safe_json_stringify(result, MAX_TOOL_RESULT_CHARS)
        if self.is_external_data_tool_call(name):
            return wrap_untrusted_with_injection_scan(f"tool:{name}", raw, self.record_stat)
        return raw

    async def execute(self, tool_call_id: str, name: str, args: dict[str, Any]) -> ToolResult:
        """
        Execute an already-gated call.

        Tool errors (raised or returned as ``{"error": ...}``) are packaged as
        results for the model, never raised.
        """
        start = time.monotonic()
        tool = self.get(name)
        if tool is None:
            closest = find_closest_tool_name(name, self.names())
            hint = f' Did you mean "{closest}"?' if closest else ""
            result: Any = {"error": f"Unknown tool: {name}.{hint}"}
        else:
            if tool.origin is ToolOrigin.LOCAL_MCP:
                self._mark_local_mcp_used()
            try:
                result = await asyncio.wait_for(tool.execute(args), timeout=self._timeout)
            except asyncio.TimeoutError:
                result = {"error": f"Tool timed out after {self._timeout:.0f}s"}
            except (asyncio.CancelledError, KeyboardInterrupt):
                raise
            except Exception as e:
                logger.error("Tool execution failed: %s — %s", name, e)
                result = {"error": str(e) or f"Failed: {name}"}

        success = is_successful_tool_result(result)
        METRICS.tool_calls_total.labels(tool=name, outcome="ok" if success else "error").inc()
        return ToolResult(
            tool_call_id=tool_call_id,
            name=name,
            content=self.format_result(tool_call_id, name, result),
            result=result,
            success=success,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    def list_tools(self) -> list[dict[str, Any]]:
        """Summary rows for diagnostics commands."""
        rows = []
        for tool in list(self._tools.values()) + list(self._routed.values()):
            rows.append({
                "name": tool.name,
                "origin": tool.origin.value,
                "mutating": tool.is_mutating,
                "server": tool.server_name or "",
                "direct": tool.is_direct,
            })
        return rows


def is_direct_server(tool_count: int) -> bool:
    return tool_count <= LOCAL_MCP_DIRECT_TOOL_THRESHOLD

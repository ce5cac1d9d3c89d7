"""
Test doubles for the engine's ports.

- FakeGraphHost: in-memory block tree implementing the GraphHost protocol
  (raw ``:block/*`` pull results, pull-watch callbacks on every change)
- ScriptedApprovalUI: approval prompts answered from a script
- FakeGateway: LLM gateway replaying scripted responses
- FakeMcpSession / FakeOpener: MCP sessions answering from a responder
- FakeClock: manually advanced clock
"""
import inspect
import json
from contextlib import AsyncExitStack
from datetime import date, datetime
from types import SimpleNamespace
from typing import Any, Callable

from cos_engine.approval import ApprovalDecision, ApprovalRequest
from cos_engine.host import format_page_date
from cos_engine.llm_gateway import LLMResponse, ToolCall
from cos_engine.model_catalog import Tier


class FakeClock:
    def __init__(self, start: float = 1_767_657_600.0):  # 2026-01-06 00:00:00 UTC
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Graph host
# ============================================================================

class FakeGraphHost:
    """In-memory graph. Pages and blocks share one uid space."""

    def __init__(self, today: date = date(2026, 1, 6)):
        self.today = today
        self.nodes: dict[str, dict[str, Any]] = {}
        self.pages: dict[str, str] = {}
        self.watchers: dict[str, list[Callable]] = {}
        self._snapshots: dict[str, Any] = {}
        self._counter = 0
        self.fail_writes = 0
        self.write_calls = 0
        self.opened: list[str] = []
        self.undo_count = 0
        self.redo_count = 0

    # ── Construction helpers ─────────────────────────────────────

    def add_page(self, title: str, children: list[Any] | None = None) -> str:
        uid = self._new_page(title)
        for child in children or []:
            self._add_tree(uid, child)
        self._notify()
        return uid

    def add_block(self, parent_uid: str, text: str, children: list[Any] | None = None) -> str:
        uid = self._insert(parent_uid, text, "last")
        for child in children or []:
            self._add_tree(uid, child)
        self._notify()
        return uid

    def _add_tree(self, parent_uid: str, spec: Any) -> str:
        if isinstance(spec, tuple):
            text, children = spec
        else:
            text, children = spec, []
        uid = self._insert(parent_uid, text, "last")
        for child in children:
            self._add_tree(uid, child)
        return uid

    def child_texts(self, uid: str) -> list[str]:
        return [self.nodes[c]["string"] for c in self.nodes[uid]["children"]]

    def page_children(self, title: str) -> list[str]:
        uid = self.pages.get(title)
        return self.child_texts(uid) if uid else []

    def daily_title(self) -> str:
        return format_page_date(self.today)

    # ── Internals ────────────────────────────────────────────────

    def generate_uid(self) -> str:
        self._counter += 1
        return f"uid{self._counter:05d}"

    def _new_page(self, title: str, uid: str | None = None) -> str:
        uid = uid or self.generate_uid()
        self.nodes[uid] = {"uid": uid, "title": title, "string": "", "children": [], "parent": None,
                           "heading": None, "props": {}}
        self.pages[title] = uid
        return uid

    def _insert(self, parent_uid: str, text: str, order: Any, uid: str | None = None,
                heading: int | None = None) -> str:
        if parent_uid not in self.nodes:
            raise ValueError(f"Parent not found: {parent_uid}")
        uid = uid or self.generate_uid()
        self.nodes[uid] = {"uid": uid, "title": None, "string": text, "children": [], "parent": parent_uid,
                           "heading": heading, "props": {}}
        self._attach(uid, parent_uid, order)
        return uid

    def _attach(self, uid: str, parent_uid: str, order: Any) -> None:
        siblings = self.nodes[parent_uid]["children"]
        if order == "first":
            siblings.insert(0, uid)
        elif isinstance(order, int):
            siblings.insert(order, uid)
        else:
            siblings.append(uid)
        self.nodes[uid]["parent"] = parent_uid

    def _raw(self, uid: str, order: int = 0) -> dict[str, Any]:
        node = self.nodes[uid]
        raw: dict[str, Any] = {":block/uid": uid, ":block/order": order}
        if node["title"] is not None:
            raw[":node/title"] = node["title"]
        else:
            raw[":block/string"] = node["string"]
        if node["heading"]:
            raw[":block/heading"] = node["heading"]
        if node["props"]:
            raw[":block/props"] = dict(node["props"])
        if node["children"]:
            raw[":block/children"] = [self._raw(c, i) for i, c in enumerate(node["children"])]
        return raw

    def _check_write(self) -> None:
        self.write_calls += 1
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise RuntimeError("transient write failure")

    def _notify(self) -> None:
        for title, callbacks in list(self.watchers.items()):
            uid = self.pages.get(title)
            after = self._raw(uid) if uid else None
            before = self._snapshots.get(title)
            if after == before:
                continue
            self._snapshots[title] = after
            for callback in list(callbacks):
                callback(before, after)

    # ── GraphHost protocol ───────────────────────────────────────

    async def q(self, query: str, *inputs: Any) -> Any:
        return []

    async def pull(self, pattern: str, eid: Any) -> dict[str, Any] | None:
        attr, value = eid
        uid = self.pages.get(value) if attr == ":node/title" else value
        if not uid or uid not in self.nodes:
            return None
        return self._raw(uid)

    async def search_blocks(self, text: str, limit: int) -> list[dict[str, str]]:
        needle = text.lower()
        rows = []
        for uid, node in self.nodes.items():
            if node["title"] is None and needle in node["string"].lower():
                rows.append({"uid": uid, "text": node["string"], "page": self._page_title_of(uid)})
        return rows[:limit]

    def _page_title_of(self, uid: str) -> str:
        current = uid
        while self.nodes[current]["parent"] is not None:
            current = self.nodes[current]["parent"]
        return self.nodes[current]["title"] or ""

    async def create_block(self, parent_uid: str, text: str, order: Any = "last",
                           uid: str | None = None, heading: int | None = None) -> str:
        self._check_write()
        new_uid = self._insert(parent_uid, text, order, uid, heading)
        self._notify()
        return new_uid

    async def update_block(self, uid: str, **fields: Any) -> None:
        self._check_write()
        node = self.nodes.get(uid)
        if node is None:
            raise ValueError(f"Block not found: {uid}")
        if "string" in fields:
            node["string"] = fields.pop("string")
        if "heading" in fields:
            node["heading"] = fields.pop("heading")
        if "props" in fields:
            node["props"] = fields.pop("props")
        node.setdefault("fields", {}).update(fields)
        self._notify()

    async def move_block(self, uid: str, parent_uid: str, order: Any = "last") -> None:
        self._check_write()
        if uid not in self.nodes or parent_uid not in self.nodes:
            raise ValueError(f"Block not found: {uid}")
        old_parent = self.nodes[uid]["parent"]
        if old_parent is not None:
            self.nodes[old_parent]["children"].remove(uid)
        self._attach(uid, parent_uid, order)
        self._notify()

    def _remove(self, uid: str) -> None:
        node = self.nodes.pop(uid)
        for child in list(node["children"]):
            self._remove(child)

    async def delete_block(self, uid: str) -> None:
        self._check_write()
        if uid not in self.nodes:
            raise ValueError(f"Block not found: {uid}")
        parent = self.nodes[uid]["parent"]
        if parent is not None:
            self.nodes[parent]["children"].remove(uid)
        self._remove(uid)
        self._notify()

    async def create_page(self, title: str, uid: str | None = None) -> str:
        self._check_write()
        if title in self.pages:
            return self.pages[title]
        new_uid = self._new_page(title, uid)
        self._notify()
        return new_uid

    async def delete_page(self, uid: str) -> None:
        self._check_write()
        title = self.nodes[uid]["title"]
        self.pages.pop(title, None)
        self._remove(uid)
        self._notify()

    async def get_page_uid(self, title: str) -> str | None:
        return self.pages.get(title)

    async def get_parent_uid(self, uid: str) -> str | None:
        node = self.nodes.get(uid)
        return node["parent"] if node else None

    async def get_page_title(self, uid: str) -> str | None:
        node = self.nodes.get(uid)
        return node["title"] if node else None

    def pull_watch(self, page_title: str, callback: Callable) -> Callable[[], None]:
        self.watchers.setdefault(page_title, []).append(callback)
        uid = self.pages.get(page_title)
        self._snapshots[page_title] = self._raw(uid) if uid else None

        def _unwatch() -> None:
            callbacks = self.watchers.get(page_title, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unwatch

    def date_to_page_title(self, value: date | datetime) -> str:
        return format_page_date(value)

    async def undo(self) -> None:
        self.undo_count += 1

    async def redo(self) -> None:
        self.redo_count += 1

    async def open_page(self, uid: str) -> None:
        self.opened.append(uid)


# ============================================================================
# Approval UI
# ============================================================================

class ScriptedApprovalUI:
    """Answers approval prompts from ``script`` in order, then with ``default``."""

    def __init__(self, script: list[bool] | None = None, default: bool = True):
        self.script = list(script or [])
        self.default = default
        self.requests: list[ApprovalRequest] = []

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision:
        self.requests.append(request)
        approved = self.script.pop(0) if self.script else self.default
        return ApprovalDecision(approved=approved, note="" if approved else "declined in test")


# ============================================================================
# LLM gateway
# ============================================================================

def text_response(text: str, cost: float = 0.0, model: str = "claude-haiku-4-5",
                  tier: Tier = Tier.MINI, **kwargs: Any) -> LLMResponse:
    return LLMResponse(content=text, provider="anthropic", model=model, tier=tier, input_tokens=100,
                       output_tokens=20, cost_usd=cost, **kwargs)


def tool_response(*calls: tuple[str, dict[str, Any]], cost: float = 0.0, text: str = "") -> LLMResponse:
    tool_calls = [ToolCall(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls)]
    return LLMResponse(content=text, tool_calls=tool_calls, provider="anthropic", model="claude-haiku-4-5",
                       input_tokens=100, output_tokens=20, cost_usd=cost)


class FakeGateway:
    """
    Replays scripted responses. A script item may be an LLMResponse, an
    exception (raised), or a callable ``(call) -> LLMResponse``.
    """

    def __init__(self, script: list[Any] | None = None):
        self.script = list(script or [])
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system, messages, tools=None, tier=Tier.MINI, primary=None, on_text_chunk=None,
                       abort=None, max_output_tokens=None, allow_ludicrous_escalation=True,
                       on_stream_reset=None) -> LLMResponse:
        call = {
            "system": system,
            "messages": [dict(m) for m in messages],
            "tools": [t["function"]["name"] if "function" in t else t.get("name") for t in tools or []],
            "tier": Tier.parse(tier),
            "max_output_tokens": max_output_tokens,
        }
        self.calls.append(call)
        if not self.script:
            raise AssertionError("FakeGateway script exhausted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = await item(call) if inspect.iscoroutinefunction(item) else item(call)
        if on_text_chunk is not None and item.content:
            on_text_chunk(item.content)
        return item

    def get_stats(self) -> dict[str, Any]:
        return {"calls": len(self.calls)}


# ============================================================================
# MCP
# ============================================================================

def mcp_result(payload: Any, is_error: bool = False) -> SimpleNamespace:
    """A ``CallToolResult``-shaped object with one text content item."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)], isError=is_error,
                           structuredContent=None)


def mcp_tool(name: str, description: str = "", properties: dict[str, Any] | None = None,
             annotations: dict[str, Any] | None = None) -> SimpleNamespace:
    return SimpleNamespace(name=name, description=description, annotations=annotations,
                           inputSchema={"type": "object", "properties": properties or {}})


class FakeMcpSession:
    """
    MCP client session stand-in. ``responder(name, args)`` returns a JSON
    payload (or raises); every call is recorded.
    """

    def __init__(self, name: str = "fake", tools: list[SimpleNamespace] | None = None,
                 responder: Callable[[str, dict[str, Any]], Any] | None = None, description: str = ""):
        self.name = name
        self.description = description
        self.tools = list(tools or [])
        self.responder = responder or (lambda tool, args: {"ok": True, "tool": tool})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def list_tools(self) -> SimpleNamespace:
        return SimpleNamespace(tools=list(self.tools))

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> SimpleNamespace:
        self.calls.append((name, dict(arguments or {})))
        return mcp_result(self.responder(name, dict(arguments or {})))

    async def send_ping(self) -> None:
        if self.closed:
            raise ConnectionError("closed")


class FakeOpener:
    """
    Session opener keyed by URL. A value may be a FakeMcpSession or an
    exception to raise; unknown URLs refuse the connection.
    """

    def __init__(self, sessions: dict[str, Any] | None = None):
        self.sessions = dict(sessions or {})
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def __call__(self, url: str, headers: dict[str, str], timeout: float):
        self.calls.append((url, dict(headers)))
        session = self.sessions.get(url)
        if session is None:
            raise ConnectionRefusedError(f"nothing listening at {url}")
        if isinstance(session, BaseException):
            raise session
        session.closed = False
        stack = AsyncExitStack()
        stack.callback(setattr, session, "closed", True)
        init = SimpleNamespace(serverInfo=SimpleNamespace(name=session.name), instructions=session.description)
        return session, init, stack

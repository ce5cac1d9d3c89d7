"""
MCP client — local MCP servers over SSE and the session opener shared with Composio.

Bridges MCP tool servers into the engine's ToolRegistry.  Each configured
local port gets one SSE connection held in an ``AsyncExitStack`` so the
transport and session are torn down cleanly on disconnect.

Handles:
- connect / reconnect with a 10s timeout, exponential backoff (2s → 60s)
  and deduplication of concurrent connects for the same port
- ``list_tools`` once per connection (5s timeout), cached until disconnect
- description scanning, schema pinning and the MCP BOM on every connect
- direct registration for small servers, routed registration otherwise
- tool results normalised to JSON (or ``{"text": …}`` / ``{"error": …}``)
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from cos_engine.config import (
    LOCAL_MCP_AUTO_CONNECT_RETRIES,
    LOCAL_MCP_CONNECT_TIMEOUT_SECONDS,
    LOCAL_MCP_INITIAL_BACKOFF_SECONDS,
    LOCAL_MCP_LIST_TOOLS_TIMEOUT_SECONDS,
    LOCAL_MCP_MAX_BACKOFF_SECONDS,
)
from cos_engine.exceptions import McpError
from cos_engine.parse_utils import parse_tool_result_text
from cos_engine.schema_pin import PinResult, SchemaPinStore
from cos_engine.security import scan_tool_descriptions
from cos_engine.tool_registry import Tool, ToolOrigin, ToolRegistry, is_direct_server, mutability_from_annotations

logger = logging.getLogger("cos.engine.mcp_client")

# (url, headers, timeout) → (session, initialize result, exit stack owning both)
SessionOpener = Callable[[str, dict[str, str], float], Awaitable[tuple[Any, Any, AsyncExitStack]]]


# ── Session openers ──────────────────────────────────────────────────────────

async def open_sse_session(url: str, headers: dict[str, str], timeout: float) -> tuple[ClientSession, Any, AsyncExitStack]:
    """Open an initialised MCP session over SSE."""
    stack = AsyncExitStack()
    try:
        read_stream, write_stream = await stack.enter_async_context(
            sse_client(url, headers=headers or None, timeout=timeout)
        )
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        init_result = await session.initialize()
    except BaseException:
        await stack.aclose()
        raise
    return session, init_result, stack


async def open_streamable_http_session(
    url: str, headers: dict[str, str], timeout: float
) -> tuple[ClientSession, Any, AsyncExitStack]:
    """Open an initialised MCP session over streamable HTTP (used for Composio)."""
    stack = AsyncExitStack()
    try:
        read_stream, write_stream, _get_session_id = await stack.enter_async_context(
            streamablehttp_client(url, headers=headers or None, timeout=timeout)
        )
        session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
        init_result = await session.initialize()
    except BaseException:
        await stack.aclose()
        raise
    return session, init_result, stack


def _server_info(init_result: Any) -> tuple[str, str]:
    info = getattr(init_result, "serverInfo", None)
    name = getattr(info, "name", "") or ""
    description = getattr(init_result, "instructions", "") or ""
    return name, description


def normalise_call_result(result: Any) -> Any:
    """MCP ``CallToolResult`` → JSON payload for the model."""
    content = getattr(result, "content", None) or []
    texts = [c.text for c in content if getattr(c, "text", None) is not None]
    if getattr(result, "isError", False):
        return {"error": " ".join(texts) or "MCP tool returned error"}
    structured = getattr(result, "structuredContent", None)
    if not texts and structured:
        return structured
    if not texts:
        return {"text": ""}
    return parse_tool_result_text(texts[0])


def _tool_annotations(mcp_tool: Any) -> dict[str, Any] | None:
    annotations = getattr(mcp_tool, "annotations", None)
    if annotations is None:
        return None
    if isinstance(annotations, dict):
        return annotations
    if hasattr(annotations, "model_dump"):
        return annotations.model_dump(exclude_none=True)
    return None


# ── Connection record ────────────────────────────────────────────────────────

@dataclass
class LocalMcpServer:
    """One live local MCP connection."""
    port: int
    server_key: str
    name: str
    description: str = ""
    session: Any = field(default=None, repr=False)
    stack: AsyncExitStack | None = field(default=None, repr=False)
    tools: list[Tool] = field(default_factory=list)
    raw_tools: list[dict[str, Any]] = field(default_factory=list, repr=False)
    is_direct: bool = True
    pin: PinResult | None = None
    connected_at: float = field(default_factory=time.time)

    @property
    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]


@dataclass
class _Backoff:
    failures: int = 0
    last_failure_at: float = 0.0

    def delay(self) -> float:
        if self.failures <= 0:
            return 0.0
        return min(
            LOCAL_MCP_INITIAL_BACKOFF_SECONDS * 2 ** (self.failures - 1),
            LOCAL_MCP_MAX_BACKOFF_SECONDS,
        )


# ── Local MCP manager ────────────────────────────────────────────────────────

class LocalMcpManager:
    """
    Local MCP servers on ``http://127.0.0.1:<port>/sse``.

    Lifecycle::

        manager = LocalMcpManager(registry, pins, ports=[8000, 8001])
        await manager.connect_all()
        # … small servers' tools are in the registry; large ones via LOCAL_MCP_ROUTE …
        await manager.disconnect_all()

    A server whose schema hash drifted since it was pinned is suspended and
    disconnected; its tools are not registered until the suspension is
    reviewed with ``accept_suspended`` / ``reject_suspended``.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        pins: SchemaPinStore,
        ports: list[int] | None = None,
        opener: SessionOpener | None = None,
        host: str = "127.0.0.1",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._pins = pins
        self.ports = list(ports or [])
        self._opener = opener or open_sse_session
        self._host = host
        self._clock = clock
        self._servers: dict[int, LocalMcpServer] = {}
        self._backoff: dict[int, _Backoff] = {}
        self._in_flight: dict[int, asyncio.Task] = {}

    # ── public API ───────────────────────────────────────────────────────

    @staticmethod
    def server_key(port: int) -> str:
        return f"local:{port}"

    def url_for(self, port: int) -> str:
        return f"http://{self._host}:{port}/sse"

    @property
    def connected_servers(self) -> list[LocalMcpServer]:
        return list(self._servers.values())

    def get_server(self, port: int) -> LocalMcpServer | None:
        return self._servers.get(port)

    async def connect_all(self, ports: list[int] | None = None) -> int:
        """Connect every configured port.  Returns the number of live servers."""
        if ports is not None:
            self.ports = list(ports)
        results = await asyncio.gather(*(self.connect(p) for p in self.ports), return_exceptions=True)
        for port, outcome in zip(self.ports, results):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning("Local MCP port %d failed: %s", port, outcome)
        return len(self._servers)

    async def auto_connect(self, retries: int = LOCAL_MCP_AUTO_CONNECT_RETRIES) -> int:
        """Connect at startup, retrying ports that are still down."""
        for attempt in range(retries):
            pending = [p for p in self.ports if p not in self._servers]
            if not pending:
                break
            for port in pending:
                await self.connect(port, force=attempt == 0)
            pending = [p for p in self.ports if p not in self._servers]
            if not pending or attempt == retries - 1:
                break
            wait = max((self._backoff_for(p).delay() for p in pending), default=0.0)
            logger.debug("Local MCP auto-connect retry %d/%d in %.0fs", attempt + 1, retries, wait)
            await asyncio.sleep(wait)
        return len(self._servers)

    async def connect(self, port: int, force: bool = False) -> LocalMcpServer | None:
        """
        Connect a single port, deduplicating concurrent callers.

        Returns None when the port is down, in backoff, or suspended.
        """
        existing = self._servers.get(port)
        if existing is not None:
            return existing
        task = self._in_flight.get(port)
        if task is None:
            backoff = self._backoff_for(port)
            if not force and backoff.failures and self._clock() - backoff.last_failure_at < backoff.delay():
                logger.debug("Local MCP port %d in backoff (%.0fs)", port, backoff.delay())
                return None
            task = asyncio.ensure_future(self._connect(port))
            self._in_flight[port] = task
            task.add_done_callback(lambda _t, p=port: self._in_flight.pop(p, None))
        return await asyncio.shield(task)

    async def reconnect(self, port: int) -> LocalMcpServer | None:
        await self.disconnect(port)
        self._backoff.pop(port, None)
        return await self.connect(port, force=True)

    async def disconnect(self, port: int) -> None:
        """Tear down one server and remove its tools from the registry."""
        server = self._servers.pop(port, None)
        self._registry.unregister_server(self.server_key(port))
        if server is not None and server.stack is not None:
            try:
                await server.stack.aclose()
            except Exception as e:
                logger.debug("Error closing local MCP stack for port %d: %s", port, e)
        if server is not None:
            logger.info("Local MCP server %s (port %d) disconnected", server.name, port)

    async def disconnect_all(self) -> None:
        for port in list(self._servers):
            await self.disconnect(port)
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()
        logger.info("Local MCP: disconnected all servers")

    async def accept_suspended(self, port: int) -> LocalMcpServer | None:
        """Re-pin to the new schema and reconnect."""
        self._pins.unsuspend(self.server_key(port), accept=True)
        return await self.reconnect(port)

    def reject_suspended(self, port: int) -> None:
        """Keep the old pin; the server stays disconnected."""
        self._pins.unsuspend(self.server_key(port), accept=False)

    async def call_tool(self, port: int, tool_name: str, arguments: dict[str, Any]) -> Any:
        """Execute a tool on a connected server."""
        server = self._servers.get(port)
        if server is None or server.session is None:
            return {"error": f"Local MCP server on port {port} not connected"}
        try:
            result = await server.session.call_tool(tool_name, arguments or {})
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            logger.error("Local MCP tool call failed: %s.%s — %s", server.name, tool_name, e)
            return {"error": str(e) or f"Failed: {tool_name}"}
        return normalise_call_result(result)

    async def health_check(self) -> dict[str, str]:
        """Ping each connected server.  Returns ``{name: status}``."""
        status: dict[str, str] = {}
        for server in self._servers.values():
            try:
                await asyncio.wait_for(server.session.send_ping(), timeout=5.0)
                status[server.name] = "healthy"
            except Exception:
                status[server.name] = "unhealthy"
        return status

    def stats(self) -> list[dict[str, Any]]:
        return [
            {
                "port": s.port,
                "name": s.name,
                "tools": len(s.tools),
                "direct": s.is_direct,
                "pin": s.pin.status if s.pin else "",
            }
            for s in self._servers.values()
        ]

    # ── private helpers ──────────────────────────────────────────────────

    def _backoff_for(self, port: int) -> _Backoff:
        return self._backoff.setdefault(port, _Backoff())

    def _record_failure(self, port: int, error: BaseException) -> None:
        backoff = self._backoff_for(port)
        backoff.failures += 1
        backoff.last_failure_at = self._clock()
        logger.warning(
            "Local MCP port %d connect failed (%d): %s; next attempt in %.0fs",
            port, backoff.failures, error, backoff.delay(),
        )

    async def _connect(self, port: int) -> LocalMcpServer | None:
        url = self.url_for(port)
        try:
            session, init_result, stack = await asyncio.wait_for(
                self._opener(url, {}, LOCAL_MCP_CONNECT_TIMEOUT_SECONDS),
                timeout=LOCAL_MCP_CONNECT_TIMEOUT_SECONDS,
            )
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            self._record_failure(port, e)
            return None

        try:
            return await self._discover_and_register(port, session, init_result, stack)
        except (asyncio.CancelledError, KeyboardInterrupt):
            await stack.aclose()
            raise
        except Exception as e:
            await stack.aclose()
            self._record_failure(port, e)
            return None

    async def _discover_and_register(
        self, port: int, session: Any, init_result: Any, stack: AsyncExitStack
    ) -> LocalMcpServer | None:
        server_key = self.server_key(port)
        name, description = _server_info(init_result)
        try:
            response = await asyncio.wait_for(session.list_tools(), timeout=LOCAL_MCP_LIST_TOOLS_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            raise McpError(f"list_tools timed out on port {port}") from e
        mcp_tools = list(getattr(response, "tools", None) or [])
        server_name = name or f"mcp-{port}"

        raw_tools = [
            {
                "name": t.name,
                "description": getattr(t, "description", "") or "",
                "input_schema": getattr(t, "inputSchema", None) or {"type": "object", "properties": {}},
                "annotations": _tool_annotations(t),
            }
            for t in mcp_tools
        ]
        flagged = scan_tool_descriptions(raw_tools, server_name)
        pin = self._pins.check(server_key, raw_tools, server_name)
        self._pins.update_bom(server_key, server_name, description, raw_tools, pin, flagged)
        if pin.suspended:
            logger.warning("Local MCP server %s suspended: %s", server_name, pin.summary)
            await stack.aclose()
            return None

        direct = is_direct_server(len(raw_tools))
        tools = [self._make_tool(port, server_key, server_name, raw, direct) for raw in raw_tools]
        self._registry.unregister_server(server_key)
        self._registry.register_many(tools)

        server = LocalMcpServer(
            port=port,
            server_key=server_key,
            name=server_name,
            description=description,
            session=session,
            stack=stack,
            tools=tools,
            raw_tools=raw_tools,
            is_direct=direct,
            pin=pin,
        )
        self._servers[port] = server
        self._backoff.pop(port, None)
        logger.info(
            "Local MCP server %s (port %d): %d tools, %s",
            server_name, port, len(tools), "direct" if direct else "routed",
        )
        return server

    def _make_tool(self, port: int, server_key: str, server_name: str, raw: dict[str, Any], direct: bool) -> Tool:
        tool_name = raw["name"]

        # Close over the correct names for the handler
        def _make_handler(p: int, tname: str) -> Callable[[dict[str, Any]], Awaitable[Any]]:
            async def _handler(args: dict[str, Any]) -> Any:
                return await self.call_tool(p, tname, args)
            return _handler

        return Tool(
            name=tool_name,
            description=raw["description"] or f"MCP tool from {server_name}",
            input_schema=raw["input_schema"],
            handler=_make_handler(port, tool_name),
            is_mutating=mutability_from_annotations(raw.get("annotations")),
            origin=ToolOrigin.LOCAL_MCP,
            server_key=server_key,
            server_name=server_name,
            is_direct=direct,
            annotations=raw.get("annotations"),
        )

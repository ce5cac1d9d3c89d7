"""
MCP supply-chain defence — schema pinning, suspension and the MCP BOM.

Every connected MCP server (``local:PORT`` or ``composio:TOOLKIT``) gets a
stable hash over its tool names, descriptions and canonicalised input
schemas.  A changed hash on reconnect suspends the server until the user
accepts the new pin (re-pin) or rejects it (old pin kept, server stays
disconnected).
"""
import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable

from cos_engine.metrics import METRICS
from cos_engine.store import KeyValueStore, SettingsKeys

logger = logging.getLogger("cos.engine.schema_pin")

MAX_CANONICAL_DEPTH = 6
DESCRIPTION_SNIPPET_CHARS = 200
HASH_CACHE_MAX = 20


def canonicalise_schema_for_hash(schema: Any, depth: int = 0) -> dict[str, Any] | None:
    """Order-independent view of a JSON schema tree; deeper than 6 levels collapses to None."""
    if not isinstance(schema, dict) or depth > MAX_CANONICAL_DEPTH:
        return None
    result: dict[str, Any] = {}
    for key in ("type", "description", "title"):
        if schema.get(key):
            result[key] = schema[key]
    for key in ("default", "const"):
        if key in schema:
            result[key] = schema[key]
    if isinstance(schema.get("enum"), list):
        result["enum"] = sorted(schema["enum"], key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(schema.get("examples"), list):
        result["examples"] = schema["examples"]
    if isinstance(schema.get("required"), list):
        result["required"] = sorted(str(r) for r in schema["required"])
    if isinstance(schema.get("properties"), dict):
        result["properties"] = {
            k: canonicalise_schema_for_hash(v, depth + 1) for k, v in sorted(schema["properties"].items())
        }
    if schema.get("items"):
        result["items"] = canonicalise_schema_for_hash(schema["items"], depth + 1)
    for combiner in ("oneOf", "anyOf", "allOf"):
        if isinstance(schema.get(combiner), list):
            result[combiner] = [canonicalise_schema_for_hash(v, depth + 1) for v in schema[combiner]]
    return result


def _tool_field(tool: Any, name: str, default: Any = None) -> Any:
    if isinstance(tool, dict):
        return tool.get(name, default)
    return getattr(tool, name, default)


def _tool_schema(tool: Any) -> dict[str, Any]:
    return _tool_field(tool, "input_schema") or _tool_field(tool, "inputSchema") or {}


_hash_cache: dict[str, str] = {}


def compute_schema_hash(tools: Iterable[Any]) -> str:
    """SHA-256 over the name-sorted ``{name, description, schema}`` list."""
    canonical = sorted(
        (
            {
                "name": _tool_field(t, "name"),
                "description": _tool_field(t, "description") or "",
                "schema": canonicalise_schema_for_hash(_tool_schema(t)),
            }
            for t in tools
        ),
        key=lambda entry: entry["name"] or "",
    )
    text = json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)
    cached = _hash_cache.get(text)
    if cached:
        return cached
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    if len(_hash_cache) > HASH_CACHE_MAX:
        _hash_cache.clear()
    _hash_cache[text] = digest
    return digest


def compute_tool_fingerprints(tools: Iterable[Any]) -> dict[str, dict[str, str]]:
    fingerprints = {}
    for tool in tools:
        props = _tool_schema(tool).get("properties") or {}
        keys = sorted(props)
        fingerprints[_tool_field(tool, "name")] = {
            "paramKeys": ",".join(keys),
            "paramTypes": ",".join(f"{k}:{(props[k] or {}).get('type', 'any') if isinstance(props[k], dict) else 'any'}"
                                   for k in keys),
            "descSnippet": (_tool_field(tool, "description") or "")[:DESCRIPTION_SNIPPET_CHARS],
        }
    return fingerprints


def summarise_schema_diff(added: list[str], removed: list[str], modified: list[dict[str, Any]]) -> str:
    parts = []
    if added:
        parts.append(f"+{len(added)} new")
    if removed:
        parts.append(f"-{len(removed)} removed")
    if modified:
        parts.append(f"~{len(modified)} modified")
    return ", ".join(parts) or "unknown change"


@dataclass
class SuspendedServer:
    """A server whose schema changed and awaits accept/reject."""
    server_key: str
    new_hash: str
    new_tool_names: list[str]
    new_fingerprints: dict[str, dict[str, str]]
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    modified: list[dict[str, Any]] = field(default_factory=list)
    summary: str = ""
    server_name: str = ""
    suspended_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PinResult:
    status: str  # "pinned" | "unchanged" | "changed" | "skipped"
    hash: str = ""
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    modified: list[dict[str, Any]] = field(default_factory=list)
    summary: str = ""

    @property
    def suspended(self) -> bool:
        return self.status == "changed"


class SchemaPinStore:
    """
    Per-server schema pins plus the in-memory suspension map.

    Usage:
        pins = SchemaPinStore(store)
        result = pins.check("local:8000", tools, "zotero")
        if result.suspended:
            ...  # surface Review Suspended MCP Servers
        pins.unsuspend("local:8000", accept=True)
    """

    def __init__(self, store: KeyValueStore, on_change: Callable[[SuspendedServer], None] | None = None):
        self._store = store
        self._suspended: dict[str, SuspendedServer] = {}
        self._on_change = on_change

    # ── Pins ─────────────────────────────────────────────────────

    def _pins(self) -> dict[str, Any]:
        stored = self._store.get(SettingsKeys.MCP_SCHEMA_HASHES)
        return stored if isinstance(stored, dict) else {}

    def pinned_hash(self, server_key: str) -> str | None:
        return self._pins().get(server_key)

    def check(self, server_key: str, tools: list[Any], server_name: str = "") -> PinResult:
        """Pin on first sight, compare on reconnect, suspend on drift."""
        new_hash = compute_schema_hash(tools)
        fingerprints = compute_tool_fingerprints(tools)
        stored = self._pins()
        old_hash = stored.get(server_key)

        if not old_hash:
            stored[server_key] = new_hash
            stored[f"{server_key}_tools"] = [_tool_field(t, "name") for t in tools]
            stored[f"{server_key}_fingerprints"] = fingerprints
            self._store.set(SettingsKeys.MCP_SCHEMA_HASHES, stored)
            logger.info("Schema pinned for %s: %s…", server_name or server_key, new_hash[:12])
            return PinResult(status="pinned", hash=new_hash)

        if old_hash == new_hash:
            logger.debug("Schema unchanged for %s", server_name or server_key)
            return PinResult(status="unchanged", hash=new_hash)

        old_names = list(stored.get(f"{server_key}_tools") or [])
        old_fingerprints = stored.get(f"{server_key}_fingerprints") or {}
        new_names = [_tool_field(t, "name") for t in tools]
        added = [n for n in new_names if n not in old_names]
        removed = [n for n in old_names if n not in new_names]
        modified = []
        for name in new_names:
            if name in added:
                continue
            old_fp, new_fp = old_fingerprints.get(name), fingerprints.get(name)
            if not old_fp or not new_fp:
                continue
            changes = []
            if old_fp.get("descSnippet") != new_fp["descSnippet"]:
                changes.append("description")
            if old_fp.get("paramKeys") != new_fp["paramKeys"]:
                changes.append("parameters")
            if old_fp.get("paramTypes") != new_fp["paramTypes"]:
                changes.append("param types")
            if changes:
                modified.append({"name": name, "changes": changes})
        summary = summarise_schema_diff(added, removed, modified)

        logger.warning(
            "Schema drift for %s: %s (old %s…, new %s…)",
            server_name or server_key, summary, old_hash[:12], new_hash[:12],
        )
        self.suspend(SuspendedServer(
            server_key=server_key,
            new_hash=new_hash,
            new_tool_names=new_names,
            new_fingerprints=fingerprints,
            added=added,
            removed=removed,
            modified=modified,
            summary=summary,
            server_name=server_name,
        ))
        return PinResult(status="changed", hash=new_hash, added=added, removed=removed,
                         modified=modified, summary=summary)

    # ── Suspension ───────────────────────────────────────────────

    def suspend(self, suspension: SuspendedServer) -> None:
        self._suspended[suspension.server_key] = suspension
        METRICS.suspended_mcp_servers.set(len(self._suspended))
        logger.warning("MCP server suspended: %s (%s)", suspension.server_key, suspension.summary)
        if self._on_change is not None:
            self._on_change(suspension)

    def unsuspend(self, server_key: str, accept: bool) -> bool:
        """Accept re-pins to the new schema; reject keeps the old pin."""
        suspension = self._suspended.pop(server_key, None)
        if suspension is None:
            return False
        if accept:
            stored = self._pins()
            stored[server_key] = suspension.new_hash
            stored[f"{server_key}_tools"] = suspension.new_tool_names
            stored[f"{server_key}_fingerprints"] = suspension.new_fingerprints
            self._store.set(SettingsKeys.MCP_SCHEMA_HASHES, stored)
            logger.info("Schema pin updated for %s: %s…", server_key, suspension.new_hash[:12])
        METRICS.suspended_mcp_servers.set(len(self._suspended))
        logger.info("MCP server unsuspended: %s (accepted: %s)", server_key, accept)
        return True

    def is_suspended(self, server_key: str | None) -> bool:
        return bool(server_key) and server_key in self._suspended

    def get(self, server_key: str) -> SuspendedServer | None:
        return self._suspended.get(server_key)

    def suspended_keys(self) -> list[str]:
        return list(self._suspended)

    def suspended_key_for_tool(self, tool_name: str) -> str | None:
        """Server key of a suspended server that advertises ``tool_name``."""
        for key, suspension in self._suspended.items():
            if tool_name and tool_name in suspension.new_tool_names:
                return key
        return None

    def suspended_servers(self) -> list[SuspendedServer]:
        return list(self._suspended.values())

    def clear(self) -> None:
        self._suspended.clear()
        METRICS.suspended_mcp_servers.set(0)

    # ── MCP BOM ──────────────────────────────────────────────────

    def update_bom(
        self,
        server_key: str,
        server_name: str,
        server_description: str,
        tools: list[Any],
        pin_result: PinResult,
        flagged_tools: list[Any],
    ) -> dict[str, Any]:
        """Record what a server advertises, its pin status and any flagged descriptions."""
        bom = self._store.get(SettingsKeys.MCP_BOM)
        bom = bom if isinstance(bom, dict) else {}
        entry = {
            "serverKey": server_key,
            "serverName": server_name,
            "description": (server_description or "")[:500],
            "toolCount": len(tools),
            "tools": [
                {"name": _tool_field(t, "name"), "isMutating": _tool_field(t, "is_mutating")}
                for t in tools
            ],
            "schemaHash": pin_result.hash,
            "pinStatus": pin_result.status,
            "flagged": [asdict(f) if hasattr(f, "__dataclass_fields__") else f for f in flagged_tools],
            "updatedAt": int(time.time() * 1000),
        }
        bom[server_key] = entry
        self._store.set(SettingsKeys.MCP_BOM, bom)
        return entry

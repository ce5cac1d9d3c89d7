"""
Key-value settings storage.

All persistent runtime state (conversation, cost history, cron jobs, schema
pins, the leader record) lives behind a tiny get/set port.  Every runtime
("tab") gets its own view onto a shared backing store; a write from one view
fires storage events in every *other* view, matching how browser storage
behaves across tabs.

Handles:
- KeyValueStore protocol consumed by the rest of the engine
- SharedStorage hub with per-tab StoreView instances
- JSON round-trip on write (stored values never alias caller objects)
- Debouncer for coalescing persistence writes
"""
import asyncio
import copy
import json
import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger("cos.engine.store")

StorageListener = Callable[[str, Any, Any], None]


class SettingsKeys:
    """Keys used in the settings store."""

    LLM_PROVIDER = "llm-provider"
    ASSISTANT_NAME = "assistant-name"
    USER_NAME = "user-name"
    ANTHROPIC_API_KEY = "anthropic-api-key"
    OPENAI_API_KEY = "openai-api-key"
    GEMINI_API_KEY = "gemini-api-key"
    MISTRAL_API_KEY = "mistral-api-key"
    COMPOSIO_MCP_URL = "composio-mcp-url"
    COMPOSIO_API_KEY = "composio-api-key"
    LOCAL_MCP_PORTS = "local-mcp-ports"
    DEBUG_LOGGING = "debug-logging"
    DRY_RUN_MODE = "dry-run-mode"
    PII_SCRUB_ENABLED = "pii-scrub-enabled"
    LUDICROUS_ENABLED = "ludicrous-mode-enabled"
    DAILY_SPENDING_CAP = "daily-spending-cap"
    AUDIT_LOG_RETENTION_DAYS = "audit-log-retention-days"
    TIMEZONE = "timezone"

    CONVERSATION_CONTEXT = "conversation-context"
    INSTALLED_TOOLS = "installed-tools"
    COMPOSIO_TOOLKIT_CATALOG_CACHE = "composio-toolkit-catalog-cache"
    TOOLKIT_SCHEMA_REGISTRY = "toolkit-schema-registry"
    COST_HISTORY = "cost-history"
    USAGE_STATS = "usage-stats"
    CRON_JOBS = "cron-jobs"
    CRON_LEADER = "chief-of-staff-cron-leader"
    MCP_SCHEMA_HASHES = "mcp-schema-hashes"
    MCP_BOM = "mcp-bom"
    SUSPENDED_MCP_SERVERS = "suspended-mcp-servers"


class KeyValueStore(Protocol):
    """Persistence port used by every stateful component."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def subscribe(self, listener: StorageListener) -> Callable[[], None]: ...


def _round_trip(value: Any) -> Any:
    """Serialise-and-parse so stored values are plain JSON trees."""
    if value is None:
        return None
    return json.loads(json.dumps(value))


class SharedStorage:
    """
    In-process backing store shared by several runtimes.

    Usage:
        shared = SharedStorage()
        tab_a = shared.view("tab-a")
        tab_b = shared.view("tab-b")
        tab_a.set("k", 1)          # tab_b listeners receive ("k", None, 1)
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = {k: _round_trip(v) for k, v in (initial or {}).items()}
        self._views: list["StoreView"] = []

    def view(self, tab_id: str) -> "StoreView":
        view = StoreView(self, tab_id)
        self._views.append(view)
        return view

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def _read(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    def _write(self, origin: "StoreView", key: str, value: Any) -> None:
        old = self._data.get(key)
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = _round_trip(value)
        new = self._data.get(key)
        for view in list(self._views):
            if view is not origin and not view.closed:
                view._emit(key, copy.deepcopy(old), copy.deepcopy(new))


class StoreView:
    """One runtime's handle on a SharedStorage."""

    def __init__(self, hub: SharedStorage, tab_id: str):
        self._hub = hub
        self.tab_id = tab_id
        self._listeners: list[StorageListener] = []
        self.closed = False

    def get(self, key: str, default: Any = None) -> Any:
        value = self._hub._read(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self._hub._write(self, key, value)

    def delete(self, key: str) -> None:
        self._hub._write(self, key, None)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def close(self) -> None:
        self.closed = True
        self._listeners.clear()

    def _emit(self, key: str, old: Any, new: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, old, new)
            except Exception as e:
                logger.warning("Storage listener failed for %s: %s", key, e)


class MemoryStore(StoreView):
    """Standalone single-tab store."""

    def __init__(self, initial: dict[str, Any] | None = None):
        hub = SharedStorage(initial)
        super().__init__(hub, "local")
        hub._views.append(self)


class Debouncer:
    """
    Coalesce bursts of calls into one trailing invocation.

    Usage:
        persist = Debouncer(3.0, save_to_store)
        persist.schedule()     # restart the 3s timer
        persist.flush()        # run now if pending (used on teardown)
    """

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._pending = False

    @property
    def pending(self) -> bool:
        return self._pending

    def schedule(self) -> None:
        self._pending = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): write through.
            self._fire()
            return
        self._handle = loop.call_later(self.delay, self._fire)

    def flush(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._pending:
            self._fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = False

    def _fire(self) -> None:
        self._handle = None
        self._pending = False
        try:
            self._callback()
        except Exception as e:
            logger.error("Debounced write failed: %s", e)

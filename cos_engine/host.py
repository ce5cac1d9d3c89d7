"""
Host graph port.

The engine never talks to the graph database directly; it goes through the
``GraphHost`` protocol.  Tree helpers here turn raw ``pull`` results into the
``{uid, text, order, children}`` shape every other module consumes.
"""
import asyncio
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Protocol, TypeVar

logger = logging.getLogger("cos.engine.host")

T = TypeVar("T")

MAX_BLOCK_CHARS = 100_000
WRITE_RETRIES = 2
WRITE_RETRY_BASE_DELAY = 0.3

PullWatchCallback = Callable[[dict[str, Any] | None, dict[str, Any] | None], Any]

_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


class GraphHost(Protocol):
    """Operations the engine consumes from the host knowledge graph."""

    async def q(self, query: str, *inputs: Any) -> Any: ...

    async def pull(self, pattern: str, eid: Any) -> dict[str, Any] | None: ...

    async def search_blocks(self, text: str, limit: int) -> list[dict[str, str]]: ...

    async def create_block(self, parent_uid: str, text: str, order: int | str = "last",
                           uid: str | None = None, heading: int | None = None) -> str: ...

    async def update_block(self, uid: str, **fields: Any) -> None: ...

    async def move_block(self, uid: str, parent_uid: str, order: int | str = "last") -> None: ...

    async def delete_block(self, uid: str) -> None: ...

    async def create_page(self, title: str, uid: str | None = None) -> str: ...

    async def delete_page(self, uid: str) -> None: ...

    async def get_page_uid(self, title: str) -> str | None: ...

    async def get_parent_uid(self, uid: str) -> str | None: ...

    async def get_page_title(self, uid: str) -> str | None: ...

    def pull_watch(self, page_title: str, callback: PullWatchCallback) -> Callable[[], None]: ...

    def generate_uid(self) -> str: ...

    def date_to_page_title(self, value: date | datetime) -> str: ...

    async def undo(self) -> None: ...

    async def redo(self) -> None: ...

    async def open_page(self, uid: str) -> None: ...


def format_page_date(value: date | datetime) -> str:
    """Daily-page title, e.g. ``January 6th, 2026``."""
    day = value.day
    if day in (1, 21, 31):
        suffix = "st"
    elif day in (2, 22):
        suffix = "nd"
    elif day in (3, 23):
        suffix = "rd"
    else:
        suffix = "th"
    return f"{_MONTHS[value.month - 1]} {day}{suffix}, {value.year}"


def truncate_block_text(text: Any) -> str:
    original = str(text or "")
    if len(original) > MAX_BLOCK_CHARS:
        logger.debug("Block text truncated from %d to %d chars", len(original), MAX_BLOCK_CHARS)
    return original[:MAX_BLOCK_CHARS]


async def with_write_retry(
    fn: Callable[[], Awaitable[T]],
    retries: int = WRITE_RETRIES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run a graph write, retrying transient failures (300 ms, 600 ms)."""
    for attempt in range(retries + 1):
        try:
            return await fn()
        except (asyncio.CancelledError, KeyboardInterrupt):
            raise
        except Exception as e:
            if attempt == retries:
                raise
            delay = WRITE_RETRY_BASE_DELAY * (2 ** attempt)
            logger.debug("Graph write failed (attempt %d/%d), retrying in %.1fs: %s",
                         attempt + 1, retries + 1, delay, e)
            await sleep(delay)
    raise AssertionError("unreachable")


# ── Tree helpers ─────────────────────────────────────────────────────────────

TREE_PULL_PATTERN = "[:block/uid :node/title :block/string :block/order :block/heading {:block/children ...}]"


def flatten_block_tree(block: dict[str, Any] | None) -> dict[str, Any]:
    block = block or {}
    order = block.get(":block/order", block.get("order"))
    children = block.get(":block/children", block.get("children"))
    node = {
        "uid": str(block.get(":block/uid") or block.get("uid") or ""),
        "text": str(block.get(":block/string") or block.get("string") or block.get("text") or ""),
        "order": order if isinstance(order, (int, float)) else 0,
        "children": sorted(
            (flatten_block_tree(c) for c in children), key=lambda c: c["order"]
        ) if isinstance(children, list) else [],
    }
    heading = block.get(":block/heading", block.get("heading"))
    if heading:
        node["heading"] = heading
    return node


async def get_page_tree(host: GraphHost, title: str | None = None, uid: str | None = None) -> dict[str, Any]:
    """``{title, uid, children}`` for a page; an unknown page yields ``uid=None`` and no children."""
    eid = (":block/uid", uid) if uid else (":node/title", title)
    raw = await host.pull(TREE_PULL_PATTERN, eid)
    if not raw:
        return {"title": title, "uid": None, "children": []}
    tree = flatten_block_tree(raw)
    return {
        "title": raw.get(":node/title") or title,
        "uid": tree["uid"] or None,
        "children": tree["children"],
    }


async def get_block_tree(host: GraphHost, uid: str) -> dict[str, Any] | None:
    raw = await host.pull(TREE_PULL_PATTERN, (":block/uid", uid))
    return flatten_block_tree(raw) if raw else None


def tree_to_text(nodes: list[dict[str, Any]], depth: int = 0) -> str:
    """Indented markdown rendering of a block tree."""
    lines = []
    for node in nodes:
        if node.get("text"):
            lines.append(f"{'  ' * depth}- {node['text']}")
        if node.get("children"):
            child_text = tree_to_text(node["children"], depth + 1)
            if child_text:
                lines.append(child_text)
    return "\n".join(lines)


async def ensure_page_uid(host: GraphHost, title: str) -> str:
    safe_title = str(title or "").strip()
    if not safe_title:
        raise ValueError("page title is required")
    uid = await host.get_page_uid(safe_title)
    if not uid:
        await with_write_retry(lambda: host.create_page(safe_title))
        uid = await host.get_page_uid(safe_title)
    if not uid:
        raise RuntimeError(f"Could not create page: {safe_title}")
    return uid


async def ensure_daily_page_uid(host: GraphHost, when: date | datetime | None = None) -> tuple[str, str]:
    title = host.date_to_page_title(when or datetime.now())
    return await ensure_page_uid(host, title), title


async def create_block(host: GraphHost, parent_uid: str, text: Any, order: int | str = "last",
                       heading: int | None = None) -> str:
    safe = truncate_block_text(text)
    return await with_write_retry(lambda: host.create_block(parent_uid, safe, order, heading=heading))


async def find_or_create_child(host: GraphHost, parent_uid: str, text: str, heading: int | None = None,
                               order: int | str = "last") -> str:
    """First child of ``parent_uid`` whose text equals ``text``, created if missing."""
    tree = await get_block_tree(host, parent_uid)
    for child in (tree or {}).get("children", []):
        if child["text"].strip() == text:
            return child["uid"]
    return await create_block(host, parent_uid, text, order, heading=heading)


async def page_uid_for_block(host: GraphHost, uid: str, max_depth: int = 64) -> str:
    """Walk parents up to the owning page; a page uid resolves to itself."""
    current = str(uid or "").strip()
    for _ in range(max_depth):
        if not current or await host.get_page_title(current):
            return current
        parent = await host.get_parent_uid(current)
        if not parent:
            return current
        current = parent
    return current

"""
Native graph tools.

Read and write operations against the host graph, exposed to the model with
explicit mutation flags so the approval gate never has to guess.

Features:
- Search, page/daily-page/block-tree reads, page navigation
- Block create (single and nested batches), update, move, delete
- Page delete, undo/redo
- Current time in the configured timezone
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cos_engine.exceptions import ValidationError
from cos_engine.host import (
    GraphHost,
    create_block,
    format_page_date,
    get_block_tree,
    get_page_tree,
    truncate_block_text,
    with_write_retry,
)
from cos_engine.tool_registry import Tool, ToolOrigin

logger = logging.getLogger("cos.engine.native_tools")

SEARCH_DEFAULT_RESULTS = 20
SEARCH_MAX_RESULTS = 500
MOVE_ANCESTOR_DEPTH = 30
NESTED_BLOCK_MAX_DEPTH = 3

HEADING_LEVELS = (0, 1, 2, 3)
CHILDREN_VIEW_TYPES = ("bullet", "numbered", "document")
TEXT_ALIGNMENTS = ("left", "center", "right", "justify")

_BLOCK_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "text": {"type": "string"},
        "children": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "text": {"type": "string"},
                    "children": {
                        "type": "array",
                        "items": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
                    },
                },
                "required": ["text"],
            },
        },
    },
    "required": ["text"],
}


def _text_arg(args: dict[str, Any], name: str) -> str:
    return str(args.get(name) or "").strip()


def _order_arg(value: Any) -> int | str:
    return 0 if str(value or "").strip().lower() == "first" else "last"


def _parse_iso_date(value: str) -> date:
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        raise ValidationError("Invalid date value") from None


class NativeTools:
    """
    Graph tool handlers bound to one host.

    Usage:
        natives = NativeTools(host, protected_pages=memory.system_page_titles)
        registry.register_many(natives.tools())
    """

    def __init__(
        self,
        host: GraphHost,
        protected_pages: Callable[[], Iterable[str]] | None = None,
        timezone: str = "",
        clock: Callable[[], datetime] | None = None,
    ):
        self.host = host
        self._protected_pages = protected_pages or (lambda: ())
        self._timezone = timezone
        self._clock = clock

    # ── Helpers ──────────────────────────────────────────────────

    async def _require_uid(self, uid: str, label: str) -> None:
        found = await self.host.pull("[:block/uid]", (":block/uid", uid))
        if not found:
            raise ValidationError(f"{label} not found: {uid}")

    def _zone(self) -> ZoneInfo | None:
        if not self._timezone:
            return None
        try:
            return ZoneInfo(self._timezone)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone %r, using local time", self._timezone)
            return None

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        zone = self._zone()
        return datetime.now(zone) if zone else datetime.now().astimezone()

    # ── Reads ────────────────────────────────────────────────────

    async def search(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        raw_query = _text_arg(args, "query")
        if not raw_query:
            return []
        query = raw_query.lower()
        try:
            limit = int(args.get("max_results") or SEARCH_DEFAULT_RESULTS)
        except (TypeError, ValueError):
            limit = SEARCH_DEFAULT_RESULTS
        limit = max(1, min(SEARCH_MAX_RESULTS, limit))

        rows = await self.host.search_blocks(raw_query, max(200, limit))
        matches = [r for r in rows or [] if query in str(r.get("text") or "").lower()]
        capped: list[dict[str, Any]] = [
            {"uid": r.get("uid"), "text": r.get("text"), "page": r.get("page")} for r in matches[:limit]
        ]
        if len(matches) > limit:
            capped.append({"_note": f"Showing {limit} of {len(matches)} matches. "
                                     f"Increase max_results (up to {SEARCH_MAX_RESULTS}) to see more."})
        elif not capped:
            capped.append({"_note": f'No matches found for "{raw_query[:80]}". Try a different or broader query.'})
        return capped

    async def get_page(self, args: dict[str, Any]) -> dict[str, Any]:
        title, uid = _text_arg(args, "title"), _text_arg(args, "uid")
        if not title and not uid:
            raise ValidationError("Either title or uid is required")
        return await get_page_tree(self.host, title=title or None, uid=uid or None)

    async def get_daily_page(self, args: dict[str, Any]) -> dict[str, Any]:
        raw = _text_arg(args, "date")
        target = _parse_iso_date(raw) if raw else self._now().date()
        return await get_page_tree(self.host, title=self.host.date_to_page_title(target))

    async def get_block_children(self, args: dict[str, Any]) -> dict[str, Any]:
        uid = _text_arg(args, "uid")
        if not uid:
            raise ValidationError("uid is required")
        tree = await get_block_tree(self.host, uid)
        return tree or {"uid": uid, "text": None, "children": []}

    async def open_page(self, args: dict[str, Any]) -> dict[str, Any]:
        title, uid = _text_arg(args, "title"), _text_arg(args, "uid")
        if not title and not uid:
            raise ValidationError("Either title or uid is required")
        if uid:
            await self.host.open_page(uid)
            return {"success": True, "opened": uid}
        resolved = await self.host.get_page_uid(title)
        if not resolved:
            raise ValidationError(f'Page not found: "{title}"')
        await self.host.open_page(resolved)
        return {"success": True, "opened": title, "uid": resolved}

    def current_time(self, args: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        today = now.date()
        return {
            "currentTime": now.strftime("%A, %B %d, %Y %I:%M %p"),
            "iso": now.isoformat(),
            "dayOfWeek": now.strftime("%A"),
            "today": format_page_date(today),
            "tomorrow": format_page_date(today + timedelta(days=1)),
            "yesterday": format_page_date(today - timedelta(days=1)),
            "timezone": self._timezone or str(now.tzinfo or "local"),
            "unix": int(now.timestamp()),
        }

    # ── Writes ───────────────────────────────────────────────────

    async def create_block(self, args: dict[str, Any]) -> dict[str, Any]:
        parent_uid = _text_arg(args, "parent_uid")
        if not parent_uid:
            raise ValidationError("parent_uid is required")
        await self._require_uid(parent_uid, "parent_uid")
        uid = await create_block(self.host, parent_uid, args.get("text") or "", _order_arg(args.get("order")))
        return {"success": True, "uid": uid, "parent_uid": parent_uid}

    async def _create_tree(self, parent_uid: str, blocks: list[Any], depth: int = 0) -> list[str]:
        created = []
        for block in blocks:
            if not isinstance(block, dict):
                block = {"text": str(block)}
            uid = await create_block(self.host, parent_uid, block.get("text") or "", "last")
            created.append(uid)
            children = block.get("children")
            if isinstance(children, list) and children and depth + 1 < NESTED_BLOCK_MAX_DEPTH:
                created.extend(await self._create_tree(uid, children, depth + 1))
        return created

    async def create_blocks(self, args: dict[str, Any]) -> dict[str, Any]:
        work: list[tuple[str, list[Any]]] = []
        batches = args.get("batches")
        if isinstance(batches, list) and batches:
            for batch in batches:
                parent_uid = str((batch or {}).get("parent_uid") or "").strip()
                if not parent_uid:
                    raise ValidationError("Each batch requires a parent_uid")
                blocks = (batch or {}).get("blocks")
                if not isinstance(blocks, list) or not blocks:
                    raise ValidationError(f"Batch for {parent_uid}: blocks must be a non-empty array")
                work.append((parent_uid, blocks))
        else:
            parent_uid = _text_arg(args, "parent_uid")
            if not parent_uid:
                raise ValidationError("parent_uid is required (or use batches)")
            blocks = args.get("blocks")
            if not isinstance(blocks, list) or not blocks:
                raise ValidationError("blocks must be a non-empty array")
            work.append((parent_uid, blocks))

        # All targets are validated before the first write.
        for parent_uid, _ in work:
            await self._require_uid(parent_uid, "parent_uid")

        results = []
        total = 0
        for parent_uid, blocks in work:
            created = await self._create_tree(parent_uid, blocks)
            total += len(created)
            results.append({"parent_uid": parent_uid, "created_count": len(created), "created_uids": created})
        return {"success": True, "total_created": total, "results": results}

    async def update_block(self, args: dict[str, Any]) -> dict[str, Any]:
        uid = _text_arg(args, "uid")
        if not uid:
            raise ValidationError("uid is required")
        await self._require_uid(uid, "uid")
        fields: dict[str, Any] = {}
        if args.get("text") is not None:
            fields["string"] = truncate_block_text(args["text"])
        if args.get("heading") is not None:
            try:
                heading = int(args["heading"])
            except (TypeError, ValueError):
                heading = -1
            if heading not in HEADING_LEVELS:
                raise ValidationError("heading must be 0, 1, 2, or 3")
            fields["heading"] = heading
        view_type = args.get("children-view-type")
        if view_type is not None:
            if view_type not in CHILDREN_VIEW_TYPES:
                raise ValidationError("children-view-type must be bullet, numbered, or document")
            fields["children-view-type"] = view_type
        align = args.get("text-align")
        if align is not None:
            if align not in TEXT_ALIGNMENTS:
                raise ValidationError("text-align must be left, center, right, or justify")
            fields["text-align"] = align
        if args.get("open") is not None:
            fields["open"] = bool(args["open"])
        props = args.get("props")
        if props is not None:
            if not isinstance(props, dict):
                raise ValidationError("props must be a plain object")
            # Read-merge-write keeps unrelated props on the block.
            current = await self.host.pull("[:block/props]", (":block/uid", uid)) or {}
            merged = {**(current.get(":block/props") or {}), **props}
            fields["props"] = {k: v for k, v in merged.items() if v is not None}
        if not fields:
            raise ValidationError(
                "At least one property to update must be provided "
                "(text, heading, children-view-type, text-align, open, or props)"
            )
        await with_write_retry(lambda: self.host.update_block(uid, **fields))
        return {"success": True, "updated_uid": uid}

    async def move_block(self, args: dict[str, Any]) -> dict[str, Any]:
        uid, parent_uid = _text_arg(args, "uid"), _text_arg(args, "parent_uid")
        if not uid:
            raise ValidationError("uid is required")
        if not parent_uid:
            raise ValidationError("parent_uid is required")
        if uid == parent_uid:
            raise ValidationError("Cannot move a block under itself")
        await self._require_uid(uid, "uid")
        await self._require_uid(parent_uid, "parent_uid")
        ancestor = parent_uid
        for _ in range(MOVE_ANCESTOR_DEPTH):
            ancestor = await self.host.get_parent_uid(ancestor)
            if not ancestor:
                break
            if ancestor == uid:
                raise ValidationError("Cannot move a block under its own descendant")
        order = _order_arg(args.get("order"))
        await with_write_retry(lambda: self.host.move_block(uid, parent_uid, order))
        return {"success": True, "moved_uid": uid, "new_parent_uid": parent_uid}

    async def delete_block(self, args: dict[str, Any]) -> dict[str, Any]:
        uid = _text_arg(args, "uid")
        if not uid:
            raise ValidationError("uid is required")
        await self._require_uid(uid, "uid")
        title = await self.host.get_page_title(uid)
        if title:
            if title in set(self._protected_pages()):
                raise ValidationError(f'Refusing to delete Chief of Staff system page: "{title}"')
            raise ValidationError(f'UID "{uid}" is a page ("{title}"). Use roam_delete_page to delete pages.')
        await with_write_retry(lambda: self.host.delete_block(uid))
        return {"success": True, "deleted_uid": uid}

    async def delete_page(self, args: dict[str, Any]) -> dict[str, Any]:
        title, uid = _text_arg(args, "title"), _text_arg(args, "uid")
        if not title and not uid:
            raise ValidationError("Either title or uid is required")
        if not uid:
            uid = await self.host.get_page_uid(title) or ""
            if not uid:
                raise ValidationError(f'Page not found: "{title}"')
        title = await self.host.get_page_title(uid) or ""
        if not title:
            raise ValidationError(f'UID "{uid}" is not a page')
        if title in set(self._protected_pages()):
            raise ValidationError(f'Refusing to delete Chief of Staff system page: "{title}"')
        await with_write_retry(lambda: self.host.delete_page(uid))
        return {"success": True, "deleted_page": title, "uid": uid}

    async def undo(self, args: dict[str, Any]) -> dict[str, Any]:
        await self.host.undo()
        return {"success": True, "action": "undo"}

    async def redo(self, args: dict[str, Any]) -> dict[str, Any]:
        await self.host.redo()
        return {"success": True, "action": "redo"}

    # ── Tool definitions ─────────────────────────────────────────

    def tools(self) -> list[Tool]:
        def tool(name: str, description: str, properties: dict[str, Any], handler, mutating: bool,
                 required: list[str] | None = None) -> Tool:
            schema: dict[str, Any] = {"type": "object", "properties": properties}
            if required:
                schema["required"] = required
            return Tool(name=name, description=description, input_schema=schema, handler=handler,
                        is_mutating=mutating, origin=ToolOrigin.NATIVE)

        uid_prop = {"uid": {"type": "string", "description": "Block UID."}}
        order_prop = {"type": "string", "description": '"first" or "last". Default "last".'}
        title_or_uid = {
            "title": {"type": "string", "description": "Exact page title."},
            "uid": {"type": "string", "description": "Page UID. Takes priority over title."},
        }
        return [
            tool("roam_search",
                 "Search block text content and return matching blocks with page context.",
                 {"query": {"type": "string", "description": "Case-insensitive text to search for."},
                  "max_results": {"type": "number", "description": "Maximum matches to return. Default 20."}},
                 self.search, False, ["query"]),
            tool("roam_get_page",
                 "Get a page block tree by exact page title or UID. Provide one of title or uid.",
                 title_or_uid, self.get_page, False),
            tool("roam_get_daily_page",
                 "Get today's daily page (or a provided date) with full block tree.",
                 {"date": {"type": "string", "description": "Optional ISO date string (YYYY-MM-DD)."}},
                 self.get_daily_page, False),
            tool("roam_get_block_children", "Get a block and its full child tree by UID.",
                 uid_prop, self.get_block_children, False, ["uid"]),
            tool("roam_open_page",
                 "Open a page in the main window by title or UID. Use this when the user asks to navigate to, "
                 "open, or go to a page.",
                 title_or_uid, self.open_page, False),
            tool("cos_get_current_time",
                 "Get the current date and time in the user's timezone, with today/tomorrow/yesterday "
                 "daily-page titles.",
                 {}, self.current_time, False),
            tool("roam_create_block", "Create a new block under a parent block/page UID.",
                 {"parent_uid": {"type": "string", "description": "Parent block or page UID."},
                  "text": {"type": "string", "description": "Block text content."},
                  "order": order_prop},
                 self.create_block, True, ["parent_uid", "text"]),
            tool("roam_create_blocks",
                 "Create multiple blocks (with optional nested children). Use parent_uid + blocks for a single "
                 "location, or batches for multiple independent locations in one call.",
                 {"parent_uid": {"type": "string", "description": "Parent block or page UID (single-location mode)."},
                  "blocks": {"type": "array", "description": "List of block definitions.", "items": _BLOCK_ITEM_SCHEMA},
                  "batches": {
                      "type": "array",
                      "description": "Array of { parent_uid, blocks } for writing to multiple locations in one call.",
                      "items": {
                          "type": "object",
                          "properties": {
                              "parent_uid": {"type": "string", "description": "Parent block or page UID."},
                              "blocks": {"type": "array", "items": _BLOCK_ITEM_SCHEMA},
                          },
                          "required": ["parent_uid", "blocks"],
                      },
                  }},
                 self.create_blocks, True),
            tool("roam_update_block",
                 "Update an existing block by UID. Can change text, heading level, children view type, text "
                 "alignment, open/collapsed state, and block props.",
                 {"uid": {"type": "string", "description": "Block UID to update."},
                  "text": {"type": "string", "description": "New text content. Omit to leave unchanged."},
                  "heading": {"type": "integer", "enum": list(HEADING_LEVELS),
                              "description": "0 = normal text, 1-3 = heading level."},
                  "children-view-type": {"type": "string", "enum": list(CHILDREN_VIEW_TYPES)},
                  "text-align": {"type": "string", "enum": list(TEXT_ALIGNMENTS)},
                  "open": {"type": "boolean", "description": "true = expanded, false = collapsed."},
                  "props": {"type": "object", "additionalProperties": True,
                            "description": "Block props merged with existing ones. Set a value to null to delete it."}},
                 self.update_block, True, ["uid"]),
            tool("roam_move_block", "Move an existing block to a new parent.",
                 {"uid": {"type": "string", "description": "Block UID to move."},
                  "parent_uid": {"type": "string", "description": "New parent block or page UID."},
                  "order": order_prop},
                 self.move_block, True, ["uid", "parent_uid"]),
            tool("roam_delete_block",
                 "Delete a block (and all its children) by UID. Pages are refused; use roam_delete_page.",
                 {"uid": {"type": "string", "description": "Block UID to delete."}},
                 self.delete_block, True, ["uid"]),
            tool("roam_delete_page",
                 "Delete a page by title or UID. Chief of Staff system pages are refused.",
                 title_or_uid, self.delete_page, True),
            tool("roam_undo", "Undo the last action in the graph.", {}, self.undo, True),
            tool("roam_redo", "Redo the last undone action in the graph.", {}, self.redo, True),
        ]

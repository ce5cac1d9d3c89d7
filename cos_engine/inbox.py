"""
Inbox watcher — graph blocks dropped on ``Chief of Staff/Inbox`` become agent runs.

Handles:
- Static-UID snapshot of the blocks already on the page at startup
  (instructions, never processed)
- Debounced pull-watch events (5s), before/after delta by UID
- Backpressure: 40 items queued plus in flight; a saturated queue skips scans
- Full-scan fallback when a delta finds nothing, gated by a
  ``count::queued::processing`` signature and a 60s cooldown; a catch-up
  scan 250ms after the queue drains
- Strictly sequential processing; each item is re-read live before and
  after its run
- Read-only agent runs; success moves the block under today's
  "Processed Chief of Staff items" heading with the answer as a child
"""
import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable

from cos_engine.config import (
    INBOX_CATCHUP_DELAY_SECONDS,
    INBOX_EVENT_DEBOUNCE_SECONDS,
    INBOX_FULL_SCAN_COOLDOWN_SECONDS,
    INBOX_MAX_ITEMS_PER_SCAN,
    INBOX_MAX_PENDING_ITEMS,
)
from cos_engine.exceptions import AgentBusyError
from cos_engine.host import (
    GraphHost,
    create_block,
    ensure_daily_page_uid,
    find_or_create_child,
    get_page_tree,
    with_write_retry,
)
from cos_engine.metrics import METRICS
from cos_engine.parse_utils import KEY_REFERENCE_PREFIX_RE

logger = logging.getLogger("cos.engine.inbox")

INBOX_PAGE_TITLE = "Chief of Staff/Inbox"
PROCESSED_HEADING = "Processed Chief of Staff items"
NO_RESPONSE_TEXT = "Processed (no text response)."
LUDICROUS_MIN_CHARS = 700
LUDICROUS_MIN_LINES = 10
LIVE_BLOCK_PATTERN = "[:block/string :node/title]"

_COMPLEXITY_SIGNALS = (
    re.compile(r"\bweekly review\b"),
    re.compile(r"\bweekly planning\b"),
    re.compile(r"\bend[- ]of[- ]day\b"),
    re.compile(r"\bretrospective\b"),
    re.compile(r"\bdaily briefing\b"),
    re.compile(r"\bcatch me up\b"),
    re.compile(r"\bresume context\b"),
    re.compile(r"\bdeep research\b"),
    re.compile(r"\bmulti[- ]step\b"),
    re.compile(r"\btriage\b"),
)
_KEY_REFERENCE_ANYWHERE_RE = re.compile(r"\[Key reference:[^\]]*\]\s*")

AskFn = Callable[[str, Any], Awaitable[Any]]


def inbox_tier_suffix(prompt: str) -> str:
    """``/ludicrous`` for long or synthesis-heavy items, else ``/power``."""
    text = str(prompt or "")
    lower = text.lower()
    looks_complex = (
        len(text) > LUDICROUS_MIN_CHARS
        or len(text.split("\n")) > LUDICROUS_MIN_LINES
        or any(p.search(lower) for p in _COMPLEXITY_SIGNALS)
    )
    return "/ludicrous" if looks_complex else "/power"


def collect_child_map(node: dict[str, Any] | None) -> dict[str, str]:
    """Top-level ``uid → string`` from a pull-watch payload (raw or flattened)."""
    result: dict[str, str] = {}
    if not node:
        return result
    children = node.get(":block/children", node.get("children")) or []
    for child in children:
        uid = child.get(":block/uid") or child.get("uid")
        text = child.get(":block/string", child.get("string", child.get("text")))
        if uid:
            result[str(uid)] = str(text or "")
    return result


def clean_response_text(text: Any) -> str:
    cleaned = _KEY_REFERENCE_ANYWHERE_RE.sub("", KEY_REFERENCE_PREFIX_RE.sub("", str(text or "").strip())).strip()
    return cleaned or NO_RESPONSE_TEXT


class InboxWatcher:
    """
    Backpressured job queue over the inbox page.

    Usage:
        watcher = InboxWatcher(host, ask=lambda p, o: loop.run(p, o, background=True),
                               make_options=lambda: RunOptions(read_only_tools=True, ...))
        await watcher.prime_static_uids()
        watcher.watch()
        ...
        await watcher.cleanup_inbox()
    """

    def __init__(
        self,
        host: GraphHost,
        ask: AskFn,
        make_options: Callable[[], Any],
        clear_context: Callable[[], None] | None = None,
        on_enqueue: Callable[[], None] | None = None,
        notify: Callable[[str, str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        debounce_seconds: float = INBOX_EVENT_DEBOUNCE_SECONDS,
        catchup_delay: float = INBOX_CATCHUP_DELAY_SECONDS,
    ):
        self.host = host
        self._ask = ask
        self._make_options = make_options
        self._clear_context = clear_context
        self._on_enqueue = on_enqueue
        self._notify = notify
        self._clock = clock
        self.debounce_seconds = debounce_seconds
        self.catchup_delay = catchup_delay

        self.static_uids: set[str] | None = None
        self.queued: set[str] = set()
        self.processing: set[str] = set()
        self.pending_count = 0
        self.last_full_scan_at: float | None = None
        self.last_full_scan_signature = ""
        self.closed = False

        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._debounce: asyncio.TimerHandle | None = None
        self._catchup: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unwatch: Callable[[], None] | None = None

    # ── Static UIDs ──────────────────────────────────────────────

    async def get_static_uids(self) -> set[str]:
        if self.static_uids is None:
            tree = await get_page_tree(self.host, title=INBOX_PAGE_TITLE)
            self.static_uids = {c["uid"] for c in tree["children"] if c.get("uid")}
            logger.debug("Inbox static UIDs: %d", len(self.static_uids))
        return self.static_uids

    async def prime_static_uids(self) -> None:
        """Snapshot as early as possible so items dropped right after load are not taken as static."""
        try:
            await self.get_static_uids()
        except Exception as e:
            logger.warning("Failed to prime inbox static UIDs: %s", e)

    # ── Watch ────────────────────────────────────────────────────

    def watch(self) -> None:
        if self._unwatch is None:
            self._unwatch = self.host.pull_watch(INBOX_PAGE_TITLE, self.on_pull_watch)

    def on_pull_watch(self, before: dict[str, Any] | None, after: dict[str, Any] | None) -> None:
        """Pull-watch callback; restarts the debounce timer."""
        if self.closed:
            return
        if self._debounce is not None:
            self._debounce.cancel()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.debounce_seconds, self._fire_debounced, before, after)

    def _fire_debounced(self, before: dict[str, Any] | None, after: dict[str, Any] | None) -> None:
        self._debounce = None
        self._spawn(lambda: self.handle_event(before, after))

    def _spawn(self, factory: Callable[[], Awaitable[Any]]) -> None:
        if self.closed:
            return
        task = asyncio.ensure_future(factory())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_event(self, before: dict[str, Any] | None, after: dict[str, Any] | None) -> int:
        """Debounced body of a watch event; returns the number of items accepted."""
        if self.closed:
            return 0
        if self.pending_count >= INBOX_MAX_PENDING_ITEMS:
            logger.debug("Inbox queue at capacity; skipping scan")
            return 0

        before_map = collect_child_map(before)
        after_map = collect_child_map(after)
        delta = [(uid, text) for uid, text in after_map.items() if uid not in before_map]
        candidates = await self.candidates(delta)
        accepted = 0
        if candidates:
            bounded = candidates[:INBOX_MAX_ITEMS_PER_SCAN]
            logger.debug("Inbox delta: %d new block(s), enqueueing %d", len(candidates), len(bounded))
            accepted = self.enqueue_candidates(bounded)

        if self.pending_count > 0:
            self.schedule_catchup_scan()
            return accepted
        if not candidates:
            if self.should_run_full_scan(len(after_map)):
                accepted += await self.run_full_scan("watch-full-fallback")
            else:
                logger.debug("Inbox full scan skipped (cooldown/signature gate)")
        return accepted

    # ── Candidates & scans ───────────────────────────────────────

    async def candidates(self, rows: list[tuple[str, str]]) -> list[dict[str, str]]:
        static = await self.get_static_uids()
        found = []
        for uid, text in rows:
            text = (text or "").strip()
            if not uid or not text:
                continue
            if uid in static or uid in self.processing or uid in self.queued:
                continue
            found.append({"uid": uid, "string": text})
        return found

    def signature(self, child_count: int) -> str:
        return f"{child_count}::{'|'.join(sorted(self.queued))}::{'|'.join(sorted(self.processing))}"

    def should_run_full_scan(self, child_count: int) -> bool:
        if self.last_full_scan_at is not None and self._clock() - self.last_full_scan_at < INBOX_FULL_SCAN_COOLDOWN_SECONDS:
            return False
        return self.signature(child_count) != self.last_full_scan_signature

    async def run_full_scan(self, reason: str = "watch") -> int:
        tree = await get_page_tree(self.host, title=INBOX_PAGE_TITLE)
        rows = [(c["uid"], c["text"]) for c in tree["children"]]
        self.last_full_scan_at = self._clock()
        candidates = await self.candidates(rows)
        accepted = 0
        if candidates:
            bounded = candidates[:INBOX_MAX_ITEMS_PER_SCAN]
            logger.debug("Inbox %s scan: %d new block(s), enqueueing %d", reason, len(candidates), len(bounded))
            accepted = self.enqueue_candidates(bounded)
        # Signature taken after enqueueing so the next gate check sees post-enqueue state.
        self.last_full_scan_signature = self.signature(len(rows))
        return accepted

    def schedule_catchup_scan(self, delay: float | None = None) -> None:
        if self.closed or self._catchup is not None:
            return
        loop = asyncio.get_running_loop()
        self._catchup = loop.call_later(self.catchup_delay if delay is None else delay, self._run_catchup)

    def _run_catchup(self) -> None:
        self._catchup = None
        if self.closed or self.pending_count > 0:
            return
        self._spawn(self._catchup_scan)

    async def _catchup_scan(self) -> None:
        try:
            await self.run_full_scan("catchup")
        except Exception as e:
            logger.warning("Inbox catch-up scan failed: %s", e)

    # ── Queue ────────────────────────────────────────────────────

    def enqueue_candidates(self, blocks: list[dict[str, str]]) -> int:
        if not blocks:
            return 0
        if self._on_enqueue is not None:
            self._on_enqueue()
        if self._queue is None:
            self._queue = asyncio.Queue()
        accepted = 0
        for block in blocks:
            uid = str(block.get("uid") or "").strip()
            if not uid or uid in self.processing or uid in self.queued:
                continue
            if self.pending_count >= INBOX_MAX_PENDING_ITEMS:
                logger.debug("Inbox queue at capacity; deferring remaining items")
                break
            self.queued.add(uid)
            self.pending_count += 1
            accepted += 1
            self._queue.put_nowait(block)
        if accepted < len(blocks):
            logger.debug("Inbox queue limited: accepted=%d dropped=%d", accepted, len(blocks) - accepted)
        METRICS.inbox_queue_depth.set(self.pending_count)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.ensure_future(self._drain_queue())
        return accepted

    async def _drain_queue(self) -> None:
        while self._queue is not None and not self._queue.empty():
            block = self._queue.get_nowait()
            try:
                await self.process_item(block)
            except Exception as e:
                logger.warning("Inbox queue error for block %s: %s", block.get("uid"), e)
            finally:
                self.queued.discard(block["uid"])
                self.pending_count = max(0, self.pending_count - 1)
                METRICS.inbox_queue_depth.set(self.pending_count)
                if self.pending_count == 0:
                    self.schedule_catchup_scan()

    async def drain(self) -> None:
        """Wait for the current processing chain to finish."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    # ── Processing ───────────────────────────────────────────────

    async def read_live_string(self, uid: str) -> str | None:
        """Current block text, or None when the block no longer exists."""
        data = await self.host.pull(LIVE_BLOCK_PATTERN, (":block/uid", uid))
        if not data or data.get(":node/title"):
            return None
        text = data.get(":block/string")
        return text if isinstance(text, str) else None

    async def process_item(self, block: dict[str, str]) -> bool:
        """Run one inbox item; True when it was answered and moved."""
        uid = block.get("uid") or ""
        if self.closed or not uid or uid in self.processing:
            return False
        if self._clear_context is not None:
            self._clear_context()

        self.processing.add(uid)
        try:
            live = await self.read_live_string(uid)
            if live is None or not live.strip():
                logger.debug("Inbox skip: block %s missing or empty", uid)
                METRICS.inbox_processed_total.labels(status="skipped").inc()
                return False
            prompt = live.strip()
            suffix = inbox_tier_suffix(prompt)
            logger.info("Inbox processing %s (%s): %s", uid, suffix, prompt[:120])
            self._toast("Inbox", f"Processing: {prompt[:80]}")
            try:
                result = await self._ask(f"{prompt} {suffix}", self._make_options())
            except AgentBusyError:
                logger.debug("Inbox skip: agent busy, will retry %s", uid)
                METRICS.inbox_processed_total.labels(status="busy").inc()
                return False
            if result is None:
                METRICS.inbox_processed_total.labels(status="busy").inc()
                return False

            response = clean_response_text(getattr(result, "text", result))
            if await self.read_live_string(uid) is None:
                logger.debug("Inbox skip move: block %s deleted during processing", uid)
                return False
            if self.closed:
                return False
            await self.move_to_daily_page(uid, response)
            METRICS.inbox_processed_total.labels(status="ok").inc()
            logger.info("Inbox processed and moved: %s", uid)
            self._toast("Inbox", f"Done: {prompt[:60]}")
            return True
        except Exception as e:
            METRICS.inbox_processed_total.labels(status="error").inc()
            logger.warning("Inbox processing failed for %s: %s", uid, e)
            message = str(e).lower()
            if not any(hint in message for hint in ("not found", "cannot move", "missing")):
                self._toast("Inbox error", f"Failed to process: {block.get('string', '')[:60]}")
            return False
        finally:
            self.processing.discard(uid)

    async def move_to_daily_page(self, uid: str, response: str) -> str:
        daily_uid, _title = await ensure_daily_page_uid(self.host)
        heading_uid = await find_or_create_child(self.host, daily_uid, PROCESSED_HEADING, heading=3)
        await with_write_retry(lambda: self.host.move_block(uid, heading_uid, "last"))
        if response:
            await create_block(self.host, uid, response)
        return heading_uid

    def _toast(self, title: str, message: str) -> None:
        if self._notify is not None:
            self._notify(title, message)

    # ── Teardown ─────────────────────────────────────────────────

    async def cleanup_inbox(self) -> None:
        """Reset all queue state; the processing chain is cancelled and awaited."""
        self.closed = True
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        for handle in (self._debounce, self._catchup):
            if handle is not None:
                handle.cancel()
        self._debounce = self._catchup = None
        tasks = [t for t in [self._worker, *self._tasks] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._worker = None
        self._tasks.clear()
        self._queue = None
        self.queued.clear()
        self.processing.clear()
        self.pending_count = 0
        self.last_full_scan_at = None
        self.last_full_scan_signature = ""
        self.static_uids = None
        METRICS.inbox_queue_depth.set(0)
        logger.info("Inbox watcher cleaned up")

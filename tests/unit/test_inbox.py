"""
Unit tests for cos_engine.inbox — delta detection, backpressure and processing.

Tests:
- Tier heuristic and payload helpers
- Static instruction blocks are never processed
- Full-scan fallback gating
- Item processing (move on success, untouched on busy/failure)
- Burst backpressure and teardown
"""
import asyncio
from collections import Counter
from types import SimpleNamespace

import pytest

from cos_engine.exceptions import AgentBusyError
from cos_engine.inbox import (
    INBOX_PAGE_TITLE,
    NO_RESPONSE_TEXT,
    PROCESSED_HEADING,
    InboxWatcher,
    clean_response_text,
    collect_child_map,
    inbox_tier_suffix,
)


class RecordingAsk:
    """Agent stand-in: records prompts, optionally waits on a gate."""

    def __init__(self, answer="Done.", gate: asyncio.Event | None = None, error: Exception | None = None):
        self.answer = answer
        self.gate = gate
        self.error = error
        self.prompts: list[str] = []

    async def __call__(self, prompt, options):
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=self.answer)


async def _snapshot(host):
    return await host.pull("", (":node/title", INBOX_PAGE_TITLE))


def _processed_heading(host):
    return next(uid for uid, node in host.nodes.items() if node["string"] == PROCESSED_HEADING)


@pytest.fixture
def inbox_page(host):
    return host.add_page(INBOX_PAGE_TITLE, ["Drop requests here. Chief of Staff answers them."])


@pytest.fixture
async def make_watcher(host, clock):
    watchers = []

    def _make(ask, **kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("debounce_seconds", 0.01)
        kwargs.setdefault("catchup_delay", 0.01)
        watcher = InboxWatcher(host, ask=ask, make_options=lambda: {"read_only_tools": True}, **kwargs)
        watchers.append(watcher)
        return watcher

    yield _make
    for watcher in watchers:
        await watcher.cleanup_inbox()


async def _wait_for(predicate, attempts: int = 200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:
    def test_tier_suffix(self):
        assert inbox_tier_suffix("What's on today?") == "/power"
        assert inbox_tier_suffix("Do my weekly review") == "/ludicrous"
        assert inbox_tier_suffix("x" * 701) == "/ludicrous"
        assert inbox_tier_suffix("\n".join(["line"] * 11)) == "/ludicrous"

    def test_child_map_raw_and_flat(self):
        raw = {":block/children": [{":block/uid": "a", ":block/string": "one"}]}
        flat = {"children": [{"uid": "b", "text": "two"}]}
        assert collect_child_map(raw) == {"a": "one"}
        assert collect_child_map(flat) == {"b": "two"}
        assert collect_child_map(None) == {}

    def test_clean_response(self):
        assert clean_response_text("[Key reference: x → Y] Answer [Key reference: a → B]") == "Answer"
        assert clean_response_text("  ") == NO_RESPONSE_TEXT


# ============================================================================
# Delta detection
# ============================================================================

class TestDelta:
    async def test_static_blocks_ignored(self, host, inbox_page, make_watcher):
        ask = RecordingAsk()
        watcher = make_watcher(ask)
        assert await watcher.handle_event(None, await _snapshot(host)) == 0
        assert ask.prompts == []

    async def test_new_block_processed_and_moved(self, host, inbox_page, make_watcher):
        ask = RecordingAsk(answer="[Key reference: a → B] Tomorrow is clear.")
        watcher = make_watcher(ask)
        await watcher.prime_static_uids()
        before = await _snapshot(host)
        uid = host.add_block(inbox_page, "What's on tomorrow?")
        assert await watcher.handle_event(before, await _snapshot(host)) == 1
        await watcher.drain()
        assert ask.prompts == ["What's on tomorrow? /power"]
        heading = _processed_heading(host)
        assert host.nodes[uid]["parent"] == heading
        assert host.nodes[heading]["heading"] == 3
        assert host.child_texts(uid) == ["Tomorrow is clear."]
        assert host.page_children(INBOX_PAGE_TITLE) == ["Drop requests here. Chief of Staff answers them."]

    async def test_empty_blocks_skipped(self, host, inbox_page, make_watcher):
        watcher = make_watcher(RecordingAsk())
        await watcher.prime_static_uids()
        before = await _snapshot(host)
        host.add_block(inbox_page, "   ")
        assert await watcher.handle_event(before, await _snapshot(host)) == 0

    async def test_watch_debounces_events(self, host, inbox_page, make_watcher):
        ask = RecordingAsk()
        watcher = make_watcher(ask)
        await watcher.prime_static_uids()
        watcher.watch()
        host.add_block(inbox_page, "Summarise my week")
        assert await _wait_for(lambda: len(ask.prompts) == 1)
        await watcher.cleanup_inbox()

    async def test_full_scan_gate(self, host, inbox_page, make_watcher, clock):
        ask = RecordingAsk()
        watcher = make_watcher(ask)
        await watcher.prime_static_uids()
        host.add_block(inbox_page, "missed by the delta")
        snapshot = await _snapshot(host)
        assert await watcher.handle_event(snapshot, snapshot) == 1
        await watcher.drain()
        await watcher.cleanup_inbox()

        watcher = make_watcher(ask)
        await watcher.prime_static_uids()
        assert watcher.should_run_full_scan(1)
        await watcher.run_full_scan()
        assert not watcher.should_run_full_scan(1)
        clock.advance(61)
        assert not watcher.should_run_full_scan(1)
        assert watcher.should_run_full_scan(2)


# ============================================================================
# Processing
# ============================================================================

class TestProcessing:
    async def test_busy_leaves_block(self, host, inbox_page, make_watcher):
        watcher = make_watcher(RecordingAsk(error=AgentBusyError("busy")))
        uid = host.add_block(inbox_page, "hello")
        assert not await watcher.process_item({"uid": uid, "string": "hello"})
        assert host.nodes[uid]["parent"] == inbox_page

    async def test_failure_leaves_block_and_notifies(self, host, inbox_page, make_watcher):
        toasts = []
        watcher = make_watcher(RecordingAsk(error=RuntimeError("provider down")),
                               notify=lambda title, msg: toasts.append(title))
        uid = host.add_block(inbox_page, "hello")
        assert not await watcher.process_item({"uid": uid, "string": "hello"})
        assert host.nodes[uid]["parent"] == inbox_page
        assert toasts[-1] == "Inbox error"

    async def test_deleted_during_run_not_moved(self, host, inbox_page, make_watcher):
        uid = host.add_block(inbox_page, "hello")

        class DeletingAsk(RecordingAsk):
            async def __call__(self, prompt, options):
                await host.delete_block(uid)
                return SimpleNamespace(text="answer")

        watcher = make_watcher(DeletingAsk())
        assert not await watcher.process_item({"uid": uid, "string": "hello"})
        assert not any(node["string"] == PROCESSED_HEADING for node in host.nodes.values())

    async def test_live_text_used(self, host, inbox_page, make_watcher):
        ask = RecordingAsk()
        watcher = make_watcher(ask)
        uid = host.add_block(inbox_page, "edited text")
        await watcher.process_item({"uid": uid, "string": "stale text"})
        assert ask.prompts == ["edited text /power"]

    async def test_clears_context_per_item(self, host, inbox_page, make_watcher):
        cleared = []
        watcher = make_watcher(RecordingAsk(), clear_context=lambda: cleared.append(True))
        uid = host.add_block(inbox_page, "hello")
        await watcher.process_item({"uid": uid, "string": "hello"})
        assert cleared == [True]


# ============================================================================
# Backpressure & teardown
# ============================================================================

class TestBackpressure:
    @pytest.mark.scenario
    async def test_burst_of_fifty(self, host, inbox_page, make_watcher):
        """50 blocks in one event: 8 accepted per event up to 40 pending, the rest picked up later, each processed once."""
        gate = asyncio.Event()
        ask = RecordingAsk(gate=gate)
        watcher = make_watcher(ask)
        await watcher.prime_static_uids()
        before = await _snapshot(host)
        for i in range(50):
            host.add_block(inbox_page, f"item {i}")
        after = await _snapshot(host)

        assert await watcher.handle_event(before, after) == 8
        assert watcher.pending_count == 8
        for _ in range(4):
            assert await watcher.handle_event(before, after) == 8
        assert watcher.pending_count == 40
        assert await watcher.handle_event(before, after) == 0

        gate.set()
        assert await _wait_for(lambda: len(ask.prompts) == 50 and watcher.pending_count == 0, attempts=500)
        counts = Counter(ask.prompts)
        assert len(counts) == 50
        assert set(counts.values()) == {1}
        assert host.page_children(INBOX_PAGE_TITLE) == ["Drop requests here. Chief of Staff answers them."]
        await watcher.cleanup_inbox()

    async def test_cleanup_resets_queue(self, host, inbox_page, make_watcher):
        ask = RecordingAsk(gate=asyncio.Event())
        watcher = make_watcher(ask)
        await watcher.prime_static_uids()
        before = await _snapshot(host)
        for i in range(3):
            host.add_block(inbox_page, f"item {i}")
        await watcher.handle_event(before, await _snapshot(host))
        await asyncio.sleep(0)
        worker = watcher._worker
        await watcher.cleanup_inbox()
        assert watcher.pending_count == 0
        assert not watcher.queued and not watcher.processing
        assert worker.done()
        assert watcher.static_uids is None
        assert await watcher.handle_event(before, await _snapshot(host)) == 0

"""
Unit tests for cos_engine.native_tools — graph reads and writes.
"""
from datetime import datetime

import pytest

from cos_engine.exceptions import ValidationError
from cos_engine.memory import MemoryManager
from cos_engine.native_tools import NativeTools


@pytest.fixture
def natives(host):
    return NativeTools(host, protected_pages=MemoryManager.system_page_titles,
                       clock=lambda: datetime(2026, 1, 6, 14, 30))


@pytest.fixture
def page(host):
    return host.add_page("Project Alpha", ["Kickoff with tea", ("Budget", ["tea and biscuits"])])


# ============================================================================
# Reads
# ============================================================================

class TestReads:
    async def test_search_matches(self, natives, page):
        rows = await natives.search({"query": "TEA"})
        assert [r["text"] for r in rows] == ["Kickoff with tea", "tea and biscuits"]
        assert rows[0]["page"] == "Project Alpha"

    async def test_search_cap_note(self, natives, page):
        rows = await natives.search({"query": "tea", "max_results": 1})
        assert len(rows) == 2
        assert rows[1]["_note"].startswith("Showing 1 of 2 matches")

    async def test_search_no_matches(self, natives, page):
        rows = await natives.search({"query": "coffee"})
        assert rows[0]["_note"].startswith('No matches found for "coffee"')

    async def test_search_empty_query(self, natives):
        assert await natives.search({"query": "  "}) == []

    async def test_get_page_by_title(self, natives, page):
        tree = await natives.get_page({"title": "Project Alpha"})
        assert tree["uid"] == page
        assert [c["text"] for c in tree["children"]] == ["Kickoff with tea", "Budget"]

    async def test_get_page_requires_target(self, natives):
        with pytest.raises(ValidationError):
            await natives.get_page({})

    async def test_daily_page(self, natives, host):
        uid = host.add_page("January 5th, 2026", ["standup"])
        tree = await natives.get_daily_page({"date": "2026-01-05"})
        assert tree["uid"] == uid

    async def test_daily_page_defaults_to_today(self, natives, host):
        tree = await natives.get_daily_page({})
        assert tree["title"] == "January 6th, 2026"
        assert tree["uid"] is None

    async def test_daily_page_bad_date(self, natives):
        with pytest.raises(ValidationError, match="Invalid date"):
            await natives.get_daily_page({"date": "yesterday-ish"})

    async def test_open_page(self, natives, host, page):
        assert (await natives.open_page({"title": "Project Alpha"}))["uid"] == page
        assert host.opened == [page]
        with pytest.raises(ValidationError, match="Page not found"):
            await natives.open_page({"title": "Nope"})

    def test_current_time(self, natives):
        result = natives.current_time({})
        assert result["today"] == "January 6th, 2026"
        assert result["tomorrow"] == "January 7th, 2026"
        assert result["yesterday"] == "January 5th, 2026"
        assert result["dayOfWeek"] == "Tuesday"


# ============================================================================
# Writes
# ============================================================================

class TestCreate:
    async def test_create_block_first(self, natives, host, page):
        result = await natives.create_block({"parent_uid": page, "text": "Agenda", "order": "first"})
        assert host.child_texts(page)[0] == "Agenda"
        assert result["uid"] == host.nodes[page]["children"][0]

    async def test_create_block_unknown_parent(self, natives, host):
        with pytest.raises(ValidationError, match="parent_uid not found"):
            await natives.create_block({"parent_uid": "missing", "text": "x"})
        assert host.write_calls == 0

    async def test_nested_depth_capped(self, natives, host, page):
        result = await natives.create_blocks({
            "parent_uid": page,
            "blocks": [{"text": "L1", "children": [{"text": "L2", "children": [
                {"text": "L3", "children": [{"text": "L4"}]},
            ]}]}],
        })
        assert result["total_created"] == 3
        l1 = host.nodes[page]["children"][-1]
        l2 = host.nodes[l1]["children"][0]
        l3 = host.nodes[l2]["children"][0]
        assert host.nodes[l3]["children"] == []

    async def test_batches_validated_before_writes(self, natives, host, page):
        with pytest.raises(ValidationError):
            await natives.create_blocks({"batches": [
                {"parent_uid": page, "blocks": ["ok"]},
                {"parent_uid": "missing", "blocks": ["never"]},
            ]})
        assert host.write_calls == 0

    async def test_batches(self, natives, host, page):
        other = host.add_page("Other")
        result = await natives.create_blocks({"batches": [
            {"parent_uid": page, "blocks": ["a"]},
            {"parent_uid": other, "blocks": ["b", "c"]},
        ]})
        assert result["total_created"] == 3
        assert host.page_children("Other") == ["b", "c"]

    async def test_empty_blocks_rejected(self, natives, page):
        with pytest.raises(ValidationError, match="non-empty"):
            await natives.create_blocks({"parent_uid": page, "blocks": []})


class TestUpdate:
    async def test_text_and_heading(self, natives, host, page):
        uid = host.nodes[page]["children"][0]
        await natives.update_block({"uid": uid, "text": "Kickoff", "heading": 2})
        assert host.nodes[uid]["string"] == "Kickoff"
        assert host.nodes[uid]["heading"] == 2

    async def test_props_merged(self, natives, host, page):
        uid = host.nodes[page]["children"][0]
        host.nodes[uid]["props"] = {"a": 1, "keep": True}
        await natives.update_block({"uid": uid, "props": {"b": 2, "a": None}})
        assert host.nodes[uid]["props"] == {"keep": True, "b": 2}

    @pytest.mark.parametrize("args,message", [
        ({"heading": 7}, "heading must be"),
        ({"children-view-type": "grid"}, "children-view-type"),
        ({"text-align": "middle"}, "text-align"),
        ({"props": ["x"]}, "plain object"),
        ({}, "At least one property"),
    ])
    async def test_invalid_fields(self, natives, host, page, args, message):
        uid = host.nodes[page]["children"][0]
        with pytest.raises(ValidationError, match=message):
            await natives.update_block({"uid": uid, **args})


class TestMoveDelete:
    async def test_move(self, natives, host, page):
        first, budget = host.nodes[page]["children"]
        await natives.move_block({"uid": first, "parent_uid": budget, "order": "first"})
        assert host.child_texts(budget) == ["Kickoff with tea", "tea and biscuits"]

    async def test_move_under_descendant_rejected(self, natives, host, page):
        budget = host.nodes[page]["children"][1]
        child = host.nodes[budget]["children"][0]
        with pytest.raises(ValidationError, match="own descendant"):
            await natives.move_block({"uid": budget, "parent_uid": child})

    async def test_move_under_itself_rejected(self, natives, page):
        with pytest.raises(ValidationError, match="under itself"):
            await natives.move_block({"uid": page, "parent_uid": page})

    async def test_delete_block(self, natives, host, page):
        uid = host.nodes[page]["children"][0]
        await natives.delete_block({"uid": uid})
        assert host.child_texts(page) == ["Budget"]

    async def test_delete_block_refuses_pages(self, natives, page):
        with pytest.raises(ValidationError, match="roam_delete_page"):
            await natives.delete_block({"uid": page})

    async def test_delete_page(self, natives, host, page):
        result = await natives.delete_page({"title": "Project Alpha"})
        assert result["deleted_page"] == "Project Alpha"
        assert "Project Alpha" not in host.pages

    async def test_system_page_protected(self, natives, host):
        host.add_page("Chief of Staff/Memory", ["x"])
        with pytest.raises(ValidationError, match="system page"):
            await natives.delete_page({"title": "Chief of Staff/Memory"})

    async def test_undo_redo(self, natives, host):
        await natives.undo({})
        await natives.redo({})
        assert (host.undo_count, host.redo_count) == (1, 1)


def test_mutation_flags(natives):
    tools = {t.name: t for t in natives.tools()}
    read_only = {"roam_search", "roam_get_page", "roam_get_daily_page", "roam_get_block_children",
                 "roam_open_page", "cos_get_current_time"}
    assert {name for name, t in tools.items() if not t.is_mutating} == read_only
    assert len(tools) == 14

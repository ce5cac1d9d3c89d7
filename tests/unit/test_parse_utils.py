"""
Unit tests for cos_engine.parse_utils.

Tests:
- Balanced JSON extraction and argument recovery
- Key-reference extraction from local MCP results
- Workflow suggestion indexing and follow-up matching
- Bounded stringify
"""
from cos_engine.parse_utils import (
    extract_balanced_json_objects,
    extract_mcp_key_reference,
    extract_workflow_suggestion_index,
    parse_workflow_suggestions,
    prompt_looks_like_workflow_draft_follow_up,
    safe_json_stringify,
    strip_key_reference_prefix,
    try_recover_json_args,
)


class TestJsonRecovery:
    """Tests for concatenated / malformed streamed arguments."""

    def test_concatenated_objects(self):
        found = extract_balanced_json_objects('{"a": 1}{"b": "}"}')
        assert [obj for obj, _, _ in found] == [{"a": 1}, {"b": "}"}]

    def test_unbalanced_stops(self):
        assert extract_balanced_json_objects('{"a": 1}{"b": ') == [({"a": 1}, 0, 8)]

    def test_schema_prefers_matching_object(self):
        schema = {"properties": {"query": {}}}
        assert try_recover_json_args('{"uid": "x"}{"query": "q"}', "roam_search", schema) == {"query": "q"}

    def test_first_object_without_schema(self):
        assert try_recover_json_args('{"uid": "x"}{"query": "q"}') == {"uid": "x"}

    def test_garbage(self):
        assert try_recover_json_args("not json") == {}


class TestKeyReference:
    def test_name_key_pattern(self):
        texts = ["- **Roadmap** (Key: ABC123)\n- Budget (Key: XYZ9)"]
        assert extract_mcp_key_reference(texts) == "[Key reference: Roadmap → ABC123; Budget → XYZ9]"

    def test_deduplicated(self):
        texts = ["Roadmap (Key: ABC123)", "Roadmap (Key: ABC123)"]
        assert extract_mcp_key_reference(texts).count("ABC123") == 1

    def test_empty(self):
        assert extract_mcp_key_reference([]) == ""

    def test_strip_prefix(self):
        assert strip_key_reference_prefix("[Key reference: a → B] Hello") == "Hello"


class TestWorkflowSuggestions:
    RESPONSE = (
        "Here are a few workflows you could set up to save time each week:\n\n"
        "1. **Morning Briefing** — summarise calendar and email every morning\n"
        "2. **Weekly Review** — collect open projects and decisions on Fridays\n"
        "3. **Inbox Zero** — triage unread email into tasks\n"
        "Let me know which one you'd like me to draft."
    )

    def test_index_built(self):
        index = extract_workflow_suggestion_index(self.RESPONSE)
        assert index == "[Workflow suggestions: 1. Morning Briefing; 2. Weekly Review; 3. Inbox Zero]"

    def test_short_text_ignored(self):
        assert extract_workflow_suggestion_index("1. **A thing**\n2. **B thing**") == ""

    def test_follow_up_by_number(self):
        suggestions = parse_workflow_suggestions(extract_workflow_suggestion_index(self.RESPONSE))
        assert prompt_looks_like_workflow_draft_follow_up("draft #2 please", suggestions)

    def test_follow_up_by_name(self):
        suggestions = parse_workflow_suggestions(extract_workflow_suggestion_index(self.RESPONSE))
        assert prompt_looks_like_workflow_draft_follow_up("set up the weekly review", suggestions)

    def test_unrelated_prompt(self):
        suggestions = parse_workflow_suggestions(extract_workflow_suggestion_index(self.RESPONSE))
        assert not prompt_looks_like_workflow_draft_follow_up("what time is it", suggestions)


class TestStringify:
    def test_truncated(self):
        out = safe_json_stringify({"a": "x" * 100}, max_chars=20)
        assert out.endswith("…[truncated]")
        assert len(out) == 20 + len("…[truncated]")

    def test_unserialisable_falls_back_to_str(self):
        assert safe_json_stringify({"a": object()}).startswith('{"a": "<object')

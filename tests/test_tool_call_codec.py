"""Tests for the text-embedded tool-call protocol."""

import re

from conftest import tool_block
from lm_dispatch.domain.models.conversation import ToolCall
from lm_dispatch.domain.tool.tool_call_codec import (
    GOAL_ACHIEVED_SENTINEL,
    CONTINUING_SENTINEL,
    build_tool_results_entry,
    format_tool_result,
    generate_batch_id,
    parse_tool_calls,
)


class TestParseToolCalls:
    """Tests for parse_tool_calls()."""

    def test_single_block(self):
        """One echo block parses into exactly one call with a call id."""
        text = "I'll echo.\n" + tool_block("echo", {"msg": "hi"})
        calls = parse_tool_calls(text)

        assert len(calls) == 1
        assert calls[0].name == "echo"
        assert calls[0].input == {"msg": "hi"}
        assert calls[0].call_id
        assert calls[0].source == "parsed"

    def test_call_ids_use_batch_id_and_ordinal(self):
        text = tool_block("a", {}) + "\nthen\n" + tool_block("b", {"n": 1})
        calls = parse_tool_calls(text, batch_id="call-1-2")
        assert [c.call_id for c in calls] == ["call-1-2-0", "call-1-2-1"]
        assert [c.name for c in calls] == ["a", "b"]

    def test_multiline_json_payload(self):
        text = 'BEGIN-TOOL-CALL\n{\n  "name": "read",\n  "input": {"path": "/tmp/x"}\n}\nEND-TOOL-CALL'
        calls = parse_tool_calls(text)
        assert calls[0].name == "read"
        assert calls[0].input == {"path": "/tmp/x"}

    def test_malformed_blocks_are_skipped(self):
        """Bad blocks yield no call; good blocks keep contiguous ordinals."""
        text = "\n".join([
            "BEGIN-TOOL-CALL\n{not json}\nEND-TOOL-CALL",
            "BEGIN-TOOL-CALL\n[1, 2]\nEND-TOOL-CALL",
            'BEGIN-TOOL-CALL\n{"input": {}}\nEND-TOOL-CALL',
            tool_block("ok", {"x": 1}),
        ])
        calls = parse_tool_calls(text, batch_id="b")
        assert len(calls) == 1
        assert calls[0].call_id == "b-0"

    def test_missing_input_defaults_to_empty(self):
        calls = parse_tool_calls('BEGIN-TOOL-CALL\n{"name": "list"}\nEND-TOOL-CALL')
        assert calls[0].input == {}

    def test_no_text(self):
        assert parse_tool_calls(None) == []
        assert parse_tool_calls("") == []
        assert parse_tool_calls("just prose") == []

    def test_batch_id_shape(self):
        assert re.fullmatch(r"call-\d{1,6}-\d{13,}", generate_batch_id())


class TestToolResults:
    """Tests for result wrapping and correlation."""

    def test_wrapper_text_is_stable(self):
        wrapped = format_tool_result("42")
        assert wrapped.startswith("TOOL RESULT: 42\n\n")
        assert "Analyze this result and continue toward the goal." in wrapped
        assert GOAL_ACHIEVED_SENTINEL in wrapped
        assert f"If not, say {CONTINUING_SENTINEL}, and adapt your approach based on the results." in wrapped

    def test_structured_output_is_json(self):
        assert format_tool_result({"files": 3}).startswith('TOOL RESULT: {"files": 3}')

    def test_entry_correlates_by_position(self):
        calls = [
            ToolCall(name="a", call_id="x-0"),
            ToolCall(name="b", call_id="x-1"),
        ]
        entry = build_tool_results_entry(calls, ["ra", "rb"], turn=2)

        assert entry.role == "tool-results"
        assert entry.turn == 2
        assert [(r.call_id, r.name, r.output) for r in entry.results] == [("x-0", "a", "ra"), ("x-1", "b", "rb")]

    def test_missing_outputs_become_errors(self):
        calls = [ToolCall(name="a", call_id="x-0"), ToolCall(name="b", call_id="x-1")]
        entry = build_tool_results_entry(calls, ["only one"], turn=1)
        assert entry.results[1].output["error"]

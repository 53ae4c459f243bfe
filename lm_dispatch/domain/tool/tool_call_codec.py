"""Text-embedded tool-call protocol.

Models that cannot return native tool calls are asked to write blocks like::

    BEGIN-TOOL-CALL
    {"name": "tool_name", "input": {"someParam": "value"}}
    END-TOOL-CALL

Tool outputs go back to the model wrapped in TOOL_RESULT_TEMPLATE. The wording
of that wrapper is part of the protocol and must stay stable.
"""

from typing import Any, List, Optional, Sequence
import json
import random
import re
import time

import structlog

from lm_dispatch.domain.models.conversation import ToolCall, ToolResult, ToolResultsEntry

logger = structlog.get_logger(__name__)

BEGIN_TOOL_CALL = "BEGIN-TOOL-CALL"
END_TOOL_CALL = "END-TOOL-CALL"

GOAL_ACHIEVED_SENTINEL = "~~~GOAL-ACHIEVED~~~"
CONTINUING_SENTINEL = "~~~CONTINUING~~~"

TOOL_CALL_PATTERN = re.compile(
    re.escape(BEGIN_TOOL_CALL) + r"\s*\n(.*?)\n\s*" + re.escape(END_TOOL_CALL),
    re.DOTALL,
)

TOOL_RESULT_TEMPLATE = (
    "TOOL RESULT: {result}\n\n"
    "Analyze this result and continue toward the goal. "
    "If the goal is achieved, state completion with the marker: " + GOAL_ACHIEVED_SENTINEL + "\n\n"
    "If not, say " + CONTINUING_SENTINEL + ", and adapt your approach based on the results."
)

TOOL_CALL_SYNTAX_HINT = (
    "For tool calls use this syntax:\n\n"
    f"{BEGIN_TOOL_CALL}\n"
    '{"name": "tool_name", "input": {"someParam": "value", "someOtherParam": ["value", 42]}}\n'
    f"{END_TOOL_CALL}\n\n"
    "The results from the tool call will be provided to you as part of the next step."
)


def generate_batch_id() -> str:
    """Unique id for one parse: random part plus a millisecond timestamp"""
    random_part = random.randint(0, 999999)
    timestamp_part = int(time.time() * 1000)
    return f"call-{random_part}-{timestamp_part}"


def extract_tool_call_blocks(text: Optional[str]) -> List[str]:
    """Raw payload strings of all tool call blocks in text"""
    if not text:
        return []
    return [match.strip() for match in TOOL_CALL_PATTERN.findall(text)]


def _decode_block(block: str) -> Optional[dict]:
    try:
        payload = json.loads(block)
    except json.JSONDecodeError as e:
        logger.warning("Skipping malformed tool call block", error=str(e), block=block[:200])
        return None

    if not isinstance(payload, dict) or not isinstance(payload.get("name"), str) or not payload["name"]:
        logger.warning("Skipping tool call block without a name", block=block[:200])
        return None

    tool_input = payload.get("input") or {}
    if not isinstance(tool_input, dict):
        logger.warning("Skipping tool call block with non-object input", tool=payload["name"])
        return None

    return {"name": payload["name"], "input": tool_input}


def parse_tool_calls(text: Optional[str], batch_id: Optional[str] = None) -> List[ToolCall]:
    """Parse tool call blocks from model text, assigning each a unique call id.

    Malformed blocks are skipped, so a bad block never aborts the turn.
    """
    blocks = extract_tool_call_blocks(text)
    if not blocks:
        return []

    batch_id = batch_id or generate_batch_id()
    calls = []
    for block in blocks:
        decoded = _decode_block(block)
        if decoded is None:
            continue
        calls.append(ToolCall(
            name=decoded["name"],
            input=decoded["input"],
            call_id=f"{batch_id}-{len(calls)}",
            source="parsed",
        ))
    return calls


def render_tool_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(output)


def format_tool_result(output: Any) -> str:
    """Wrap one tool output as the user-role text shown to the model"""
    return TOOL_RESULT_TEMPLATE.format(result=render_tool_output(output))


def build_tool_results_entry(calls: Sequence[ToolCall], outputs: Sequence[Any], turn: int) -> ToolResultsEntry:
    """Correlate outputs with calls by position into a single history entry"""
    if len(outputs) != len(calls):
        logger.warning("Tool output count mismatch", calls=len(calls), outputs=len(outputs), turn=turn)

    results = []
    for i, call in enumerate(calls):
        output = outputs[i] if i < len(outputs) else {"error": "Tool executor returned no result for this call"}
        results.append(ToolResult(call_id=call.call_id, name=call.name, output=output))
    return ToolResultsEntry(results=results, turn=turn)

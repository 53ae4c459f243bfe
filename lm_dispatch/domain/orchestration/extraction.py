from typing import Any, Dict, Iterable, List, Optional, Union
import json
import re

import structlog

from lm_dispatch.domain.models.conversation import (
    ConversationResult, ExtractionDebugInfo, ExtractionResult
)

logger = structlog.get_logger(__name__)

BEGIN_RESULTS_MARKER = "---BEGIN RESULTS---"
END_RESULTS_MARKER = "---END RESULTS---"

HistoryLike = Union[ConversationResult, Iterable[Any]]


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(name)
    return getattr(entry, name, None)


def _entries(history: HistoryLike) -> List[Any]:
    if isinstance(history, ConversationResult):
        return list(history.history)
    if isinstance(history, dict):
        return list(history.get("history") or [])
    return list(history or [])


def find_message_with_marker(assistant_messages: List[Any], marker: str) -> Optional[str]:
    """Newest assistant message content containing marker, or None"""
    for message in reversed(assistant_messages):
        content = _field(message, "content")
        if content and marker in content:
            return content
    return None


def extract_marked_content(history: HistoryLike, begin_marker: str, end_marker: str) -> ExtractionResult:
    """Extract the text between a marker pair from the newest assistant message holding it.

    Markers are matched literally. On failure the debug info tells whether
    the agent never produced the end marker or produced a malformed pair.
    """
    all_messages = _entries(history)
    assistant_messages = [m for m in all_messages if _field(m, "role") == "assistant"]

    message_with_content = find_message_with_marker(assistant_messages, end_marker)

    pattern = re.compile(re.escape(begin_marker) + r"\s*(.*?)\s*" + re.escape(end_marker), re.DOTALL)
    match = pattern.search(message_with_content) if message_with_content else None

    if match:
        return ExtractionResult(content=match.group(1).strip())

    has_begin_marker = any(begin_marker in (_field(m, "content") or "") for m in assistant_messages)
    debug_info = ExtractionDebugInfo(
        total_messages=len(all_messages),
        assistant_messages=len(assistant_messages),
        has_end_marker=message_with_content is not None,
        has_begin_marker=has_begin_marker,
    )
    logger.info("Marked content extraction failed", **debug_info.model_dump())
    return ExtractionResult(extraction_failed=True, debug_info=debug_info)


def extract_json_result(
    history: HistoryLike,
    begin_marker: str = BEGIN_RESULTS_MARKER,
    end_marker: str = END_RESULTS_MARKER,
) -> Optional[Dict[str, Any]]:
    """Parsed JSON object between the markers, or None if absent or not an object"""
    extraction = extract_marked_content(history, begin_marker, end_marker)
    if extraction.extraction_failed:
        return None

    content = extraction.content
    # Tolerate a fenced code block around the payload
    fenced = re.match(r"^```[\w-]*\s*\n(.*?)\n\s*```$", content, re.DOTALL)
    if fenced:
        content = fenced.group(1)

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning("Marked content is not valid JSON", error=str(e))
        return None
    return parsed if isinstance(parsed, dict) else None

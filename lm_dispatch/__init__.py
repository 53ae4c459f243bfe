"""Autonomous agent conversation orchestrator."""

from lm_dispatch.application.monitor.dispatch import AgentDispatcher
from lm_dispatch.config import Settings, get_settings
from lm_dispatch.domain.cancellation import CancellationToken
from lm_dispatch.domain.models.conversation import (
    AssistantEntry,
    Conversation,
    ConversationResult,
    ConversationStatus,
    ExtractionResult,
    Outcome,
    OutcomeReason,
    ToolCall,
    ToolResult,
    ToolResultsEntry,
    TurnError,
)
from lm_dispatch.domain.orchestration.completion import (
    HeuristicCompletionSignals,
    SentinelOnlySignals,
    determine_outcome,
)
from lm_dispatch.domain.orchestration.extraction import (
    BEGIN_RESULTS_MARKER,
    END_RESULTS_MARKER,
    extract_json_result,
    extract_marked_content,
)
from lm_dispatch.domain.orchestration.turn_loop import TurnLoop, build_agentic_messages
from lm_dispatch.domain.registry.conversation_registry import ConversationRegistry
from lm_dispatch.domain.tool.tool_call_codec import (
    CONTINUING_SENTINEL,
    GOAL_ACHIEVED_SENTINEL,
    parse_tool_calls,
)
from lm_dispatch.domain.tool.tool_executor import CallableToolExecutor
from lm_dispatch.domain.tool.tool_registry import ToolRegistry
from lm_dispatch.domain.transport import TransportRequest, TransportResponse

__version__ = "0.1.0"

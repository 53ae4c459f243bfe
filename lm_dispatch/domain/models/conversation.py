from typing import Annotated, Dict, Any, List, Optional, Literal, Union
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum

from lm_dispatch.domain.cancellation import CancellationToken


class ConversationStatus(str, Enum):
    """Conversation lifecycle status"""
    STARTED = "started"
    WORKING = "working"
    CONTINUING = "continuing"
    TOOLS_EXECUTING = "tools-executing"
    TASK_COMPLETE = "task-complete"
    AGENT_FINISHED = "agent-finished"
    MAX_TURNS_REACHED = "max-turns-reached"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ConversationStatus.TASK_COMPLETE,
    ConversationStatus.AGENT_FINISHED,
    ConversationStatus.MAX_TURNS_REACHED,
    ConversationStatus.ERROR,
    ConversationStatus.CANCELLED,
})


class OutcomeReason(str, Enum):
    """Why a turn continued or why a conversation ended"""
    TOOLS_EXECUTING = "tools-executing"
    AGENT_CONTINUING = "agent-continuing"
    TASK_COMPLETE = "task-complete"
    AGENT_FINISHED = "agent-finished"
    MAX_TURNS_REACHED = "max-turns-reached"
    ERROR = "error"
    CANCELLED = "cancelled"
    MODEL_NOT_FOUND = "model-not-found-error"

    def to_status(self) -> ConversationStatus:
        """Map a reason onto the status recorded in the registry"""
        if self == OutcomeReason.AGENT_CONTINUING:
            return ConversationStatus.CONTINUING
        if self == OutcomeReason.MODEL_NOT_FOUND:
            return ConversationStatus.ERROR
        return ConversationStatus(self.value)


class Conversation(BaseModel):
    """A tracked run of the turn loop toward a single goal"""
    model_config = ConfigDict(arbitrary_types_allowed=True, protected_namespaces=())

    id: int = Field(description="Unique, monotonically assigned identifier")
    goal: str = Field(description="Immutable task description")
    caller: str = Field(default="Unknown", description="Free-text origin label")
    title: Optional[str] = Field(None, description="Short label for the monitor")
    model_id: Optional[str] = Field(None, description="Language model identifier")
    max_turns: Optional[int] = Field(None, gt=0)
    status: ConversationStatus = Field(default=ConversationStatus.STARTED)
    current_turn: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0, description="Prompt tokens counted across all turns")
    started_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    error_message: Optional[str] = None
    cancelled: bool = False
    cancellation_token: Optional[CancellationToken] = Field(None, exclude=True)


class ToolCall(BaseModel):
    """A tool request extracted from model output or returned natively"""
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    call_id: str = Field(description="Unique per call: <batch-id>-<ordinal>")
    source: Literal["native", "parsed"] = "parsed"


class ToolResult(BaseModel):
    """Output of one tool call, correlated by call_id"""
    call_id: str
    name: str
    output: Any = None


class AssistantEntry(BaseModel):
    """Model text and tool calls produced in one turn"""
    role: Literal["assistant"] = "assistant"
    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    turn: int


class ToolResultsEntry(BaseModel):
    """All tool outputs of one turn, carried together"""
    role: Literal["tool-results"] = "tool-results"
    results: List[ToolResult] = Field(default_factory=list)
    turn: int


HistoryEntry = Annotated[Union[AssistantEntry, ToolResultsEntry], Field(discriminator="role")]


class TurnError(BaseModel):
    """Transport failure captured as the final response of a conversation"""
    message: str
    turn: int


class Outcome(BaseModel):
    """Decision taken after a completed turn"""
    model_config = ConfigDict(frozen=True)

    should_continue: bool
    reason: OutcomeReason

    @classmethod
    def stop(cls, reason: OutcomeReason) -> "Outcome":
        return cls(should_continue=False, reason=reason)

    @classmethod
    def proceed(cls, reason: OutcomeReason) -> "Outcome":
        return cls(should_continue=True, reason=reason)


class ExtractionDebugInfo(BaseModel):
    """Enough detail to tell 'never tried' from 'tried but malformed'"""
    total_messages: int
    assistant_messages: int
    has_end_marker: bool
    has_begin_marker: bool


class ExtractionResult(BaseModel):
    """Outcome of scanning history for a marker pair"""
    content: Optional[str] = None
    extraction_failed: bool = False
    debug_info: Optional[ExtractionDebugInfo] = None


class ConversationResult(BaseModel):
    """Result record returned to callers"""
    history: List[HistoryEntry] = Field(default_factory=list)
    reason: OutcomeReason
    final_response: Optional[Any] = None
    conversation_id: Optional[int] = None
    error_message: Optional[str] = None
    total_tokens: int = 0

    @property
    def is_error(self) -> bool:
        return self.reason in (OutcomeReason.ERROR, OutcomeReason.MODEL_NOT_FOUND)

    @property
    def assistant_turns(self) -> int:
        return sum(1 for entry in self.history if entry.role == "assistant")

    @property
    def final_text(self) -> Optional[str]:
        return getattr(self.final_response, "text", None)

from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

class EventType(str, Enum):
    """Monitor websocket event types sent to clients"""
    STATE_UPDATE = "state-update"
    RESULTS = "results"
    LOGS = "logs"
    ERROR = "error"

class CommandType(str, Enum):
    """Actions a monitor client can request"""
    CANCEL_CONVERSATION = "cancel-conversation"
    DELETE_CONVERSATION = "delete-conversation"
    SHOW_RESULTS = "show-results"
    SHOW_LOGS = "show-logs"

class BaseEvent(BaseModel):
    """Base event model for all monitor messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)

class StateData(BaseModel):
    conversations: List[Dict[str, Any]] = Field(default_factory=list)

class StateUpdateEvent(BaseEvent):
    """Full snapshot of every tracked conversation"""
    type: Literal[EventType.STATE_UPDATE] = EventType.STATE_UPDATE
    data: StateData


class ResultsData(BaseModel):
    """What the monitor shows for a finished conversation; never the full history"""
    id: int
    reason: Optional[str] = None
    error_message: Optional[str] = None
    final_text: Optional[str] = None
    assistant_turns: int = 0
    history_length: int = 0

class ResultsEvent(BaseEvent):
    type: Literal[EventType.RESULTS] = EventType.RESULTS
    data: ResultsData

class LogsEvent(BaseEvent):
    type: Literal[EventType.LOGS] = EventType.LOGS
    data: List[str]

class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None

class CommandData(BaseModel):
    id: Optional[int] = None

class MonitorCommand(BaseModel):
    """Command received from a monitor client"""
    type: CommandType
    data: CommandData = Field(default_factory=CommandData)
    timestamp: Optional[int] = None

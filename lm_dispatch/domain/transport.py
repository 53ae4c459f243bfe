from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from langchain_core.messages import BaseMessage

from lm_dispatch.domain.models.conversation import ToolCall
from lm_dispatch.domain.tool.tool_call_codec import generate_batch_id


class TransportRequest(BaseModel):
    """Everything the LM transport needs for one turn"""
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    system_prompt: str
    messages: List[BaseMessage]
    tool_options: Dict[str, Any] = Field(default_factory=dict)


class TransportResponse(BaseModel):
    """Aggregated response of one transport call"""
    text: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    turn: Optional[int] = None


# async transport(request) -> TransportResponse | dict
LanguageModelTransport = Callable[[TransportRequest], Awaitable[Union[TransportResponse, Dict[str, Any]]]]

# async executor(calls) -> outputs, correlated by position
ToolExecutorFn = Callable[[List[ToolCall]], Awaitable[List[Any]]]

# count(model_id, messages) -> prompt tokens; sync or async
TokenCounter = Callable[[str, List[BaseMessage]], Union[int, Awaitable[int]]]

# async lookup(model_id) -> model info or None
ModelLookup = Callable[[str], Awaitable[Optional[Any]]]


def coerce_response(raw: Union[TransportResponse, Dict[str, Any], None]) -> TransportResponse:
    """Normalize whatever the transport returned into a TransportResponse"""
    if isinstance(raw, TransportResponse):
        return raw
    if raw is None:
        return TransportResponse()

    data = dict(raw)
    native_calls = []
    batch_id = None
    for i, call in enumerate(data.pop("tool_calls", None) or []):
        if isinstance(call, ToolCall):
            native_calls.append(call.model_copy(update={"source": "native"}))
            continue
        call = dict(call)
        # Some providers use camelCase callId
        call_id = call.get("call_id") or call.get("callId")
        if not call_id:
            batch_id = batch_id or generate_batch_id()
            call_id = f"{batch_id}-{i}"
        native_calls.append(ToolCall(
            name=call["name"],
            input=call.get("input") or {},
            call_id=call_id,
            source="native",
        ))
    return TransportResponse(tool_calls=native_calls, **data)

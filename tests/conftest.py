import asyncio
import json
from typing import Any, List

import pytest

from lm_dispatch.application.monitor.dispatch import AgentDispatcher
from lm_dispatch.config import Settings
from lm_dispatch.domain.registry.conversation_registry import ConversationRegistry
from lm_dispatch.domain.transport import TransportRequest
from lm_dispatch.infrastructure.observability.dispatch_logging import clear_log


class ScriptedTransport:
    """Fake LM transport replaying canned responses in order.

    Items may be dicts, TransportResponse objects or exceptions (raised).
    Once the script runs out it keeps answering with plain text.
    """

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.requests: List[TransportRequest] = []

    async def __call__(self, request: TransportRequest):
        self.requests.append(request)
        item = self.responses.pop(0) if self.responses else {"text": "Nothing more to say."}
        if isinstance(item, Exception):
            raise item
        return item


class BlockingTransport:
    """Fake transport that holds every call until released"""

    def __init__(self, text: str = "Let me continue with the next step. ~~~CONTINUING~~~"):
        self.text = text
        self.calls = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, request: TransportRequest):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return {"text": self.text}


class RecordingExecutor:
    """Fake tool executor echoing each call's input"""

    def __init__(self):
        self.batches = []

    async def __call__(self, calls):
        self.batches.append(list(calls))
        return [{"echo": call.input} for call in calls]


def tool_block(name: str, tool_input: dict) -> str:
    return f"BEGIN-TOOL-CALL\n{json.dumps({'name': name, 'input': tool_input})}\nEND-TOOL-CALL"


@pytest.fixture(autouse=True)
def _clean_output_channel():
    """Every test starts with an empty shared log channel."""
    clear_log()
    yield
    clear_log()


@pytest.fixture
def settings():
    return Settings(default_model_id="test-model", default_max_turns=4, agentic_max_turns=5)


@pytest.fixture
def registry():
    return ConversationRegistry()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def make_dispatcher(registry, executor, settings):
    """Build a dispatcher around a given transport."""

    def factory(transport, **kwargs):
        kwargs.setdefault("tool_executor", executor)
        return AgentDispatcher(transport, registry=registry, settings=settings, **kwargs)

    return factory

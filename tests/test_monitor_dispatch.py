"""Tests for the monitored dispatcher."""

import asyncio

import pytest

from conftest import BlockingTransport, ScriptedTransport, tool_block
from lm_dispatch.application.monitor.dispatch import format_summary
from lm_dispatch.domain.models.conversation import (
    ConversationResult, ConversationStatus, OutcomeReason
)
from lm_dispatch.domain.tool.tool_registry import ToolRegistry
from lm_dispatch.infrastructure.observability.dispatch_logging import get_output_channel


def _channel_text():
    return "\n".join(get_output_channel().lines())


class TestStart:

    @pytest.mark.asyncio
    async def test_start_registers_logs_and_refreshes(self, make_dispatcher):
        refreshes = []
        dispatcher = make_dispatcher(ScriptedTransport([]), on_refresh=lambda: refreshes.append(1))

        conversation_id = await dispatcher.start({"goal": "Count files", "caller": None})
        conversation = await dispatcher.get_conversation(conversation_id)

        assert conversation.status == ConversationStatus.STARTED
        assert conversation.caller == "Unknown"
        assert f"[Conv-{conversation_id}] 🚀 Starting conversation: Count files" in _channel_text()
        assert refreshes == [1]

    @pytest.mark.asyncio
    async def test_async_refresh_hooks_and_failures(self, make_dispatcher):
        seen = []

        async def hook():
            seen.append("async")

        def broken():
            raise RuntimeError("monitor gone")

        dispatcher = make_dispatcher(ScriptedTransport([]), on_refresh=broken)
        dispatcher.add_refresh_hook(hook)
        await dispatcher.start({"goal": "x"})

        assert seen == ["async"]
        dispatcher.remove_refresh_hook(hook)
        await dispatcher.refresh()
        assert seen == ["async"]


class TestAgenticConversation:

    @pytest.mark.asyncio
    async def test_completed_conversation(self, make_dispatcher):
        transport = ScriptedTransport([
            {"text": tool_block("echo", {"msg": "hi"})},
            {"text": "All done. ~~~GOAL-ACHIEVED~~~"},
        ])
        dispatcher = make_dispatcher(transport)

        result = await dispatcher.agentic_conversation("Echo hi", caller="test", title="echo")
        conversation = await dispatcher.get_conversation(result.conversation_id)

        assert result.reason == OutcomeReason.TASK_COMPLETE
        assert conversation.status == ConversationStatus.TASK_COMPLETE
        assert conversation.current_turn == 2
        assert conversation.caller == "test"
        assert conversation.title == "echo"
        assert conversation.model_id == "test-model"
        assert conversation.max_turns == 5
        assert dispatcher.get_result(result.conversation_id) is result
        assert "🏁 Finished: task-complete" in _channel_text()
        assert "🤖 AI Agent says:" in _channel_text()

    @pytest.mark.asyncio
    async def test_transport_error_is_recorded(self, make_dispatcher):
        dispatcher = make_dispatcher(ScriptedTransport([ConnectionError("upstream closed")]))
        result = await dispatcher.agentic_conversation("x")
        conversation = await dispatcher.get_conversation(result.conversation_id)

        assert result.reason == OutcomeReason.ERROR
        assert conversation.status == ConversationStatus.ERROR
        assert conversation.error_message == "upstream closed"

    @pytest.mark.asyncio
    async def test_model_not_found(self, make_dispatcher):
        transport = ScriptedTransport([])

        async def lookup(model_id):
            return None if model_id == "ghost" else {"id": model_id}

        dispatcher = make_dispatcher(transport, model_lookup=lookup)
        result = await dispatcher.agentic_conversation("x", model_id="ghost")
        conversation = await dispatcher.get_conversation(result.conversation_id)

        assert result.reason == OutcomeReason.MODEL_NOT_FOUND
        assert result.error_message == "Model not found: ghost"
        assert conversation.status == ConversationStatus.ERROR
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_total_tokens_are_recorded(self, make_dispatcher):
        async def count_tokens(model_id, messages):
            return 10 * len(messages)

        transport = ScriptedTransport([{"text": "~~~CONTINUING~~~"}, {"text": "~~~GOAL-ACHIEVED~~~"}])
        dispatcher = make_dispatcher(transport, count_tokens=count_tokens)

        result = await dispatcher.agentic_conversation("x")
        conversation = await dispatcher.get_conversation(result.conversation_id)

        assert result.total_tokens == 30
        assert conversation.total_tokens == 30
        assert "📊 Turn 2/5 - Starting with 20 tokens (total: 30 tokens)" in _channel_text()
        assert "✓ Turn 2 completed (total: 30 tokens)" in _channel_text()

    @pytest.mark.asyncio
    async def test_tool_options_come_from_tool_registry(self, make_dispatcher):
        tools = ToolRegistry()
        tools.register_tool("ls", lambda: [], description="List files")
        tools.register_tool("rm", lambda path: None, unsafe=True)
        transport = ScriptedTransport([{"text": "ok"}])

        dispatcher = make_dispatcher(transport, tool_registry=tools)
        await dispatcher.agentic_conversation("x", tool_ids=["ls", "rm"])

        assert [t["name"] for t in transport.requests[0].tool_options["tools"]] == ["ls"]


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_turn_stops_at_next_boundary(self, make_dispatcher):
        transport = BlockingTransport()
        dispatcher = make_dispatcher(transport)

        conversation_id = await dispatcher.launch("Loop forever")
        await asyncio.wait_for(transport.started.wait(), timeout=5)

        assert await dispatcher.cancel(conversation_id) is True
        transport.release.set()
        result = await asyncio.wait_for(dispatcher.wait(conversation_id), timeout=5)
        conversation = await dispatcher.get_conversation(conversation_id)

        assert transport.calls == 1
        assert result.reason == OutcomeReason.CANCELLED
        assert conversation.status == ConversationStatus.CANCELLED
        assert conversation.cancelled is True
        assert conversation.cancellation_token.is_cancelled

    @pytest.mark.asyncio
    async def test_delete_mid_turn_stops_the_run(self, make_dispatcher):
        """Deleting a running conversation cancels it even though its record is gone."""
        transport = BlockingTransport()
        dispatcher = make_dispatcher(transport)

        conversation_id = await dispatcher.launch("Loop forever")
        await asyncio.wait_for(transport.started.wait(), timeout=5)
        task = dispatcher.tasks[conversation_id]

        assert await dispatcher.delete(conversation_id) is True
        transport.release.set()
        result = await asyncio.wait_for(task, timeout=5)

        assert transport.calls == 1
        assert result.reason == OutcomeReason.CANCELLED
        assert await dispatcher.get_conversation(conversation_id) is None
        assert dispatcher.get_result(conversation_id) is None

    @pytest.mark.asyncio
    async def test_deleted_before_run_sends_nothing(self, make_dispatcher):
        transport = ScriptedTransport([])
        dispatcher = make_dispatcher(transport)

        conversation_id = await dispatcher.start({"goal": "x"})
        await dispatcher.delete(conversation_id)
        result = await dispatcher.agentic_conversation("x", conversation_id=conversation_id)

        assert result.reason == OutcomeReason.CANCELLED
        assert transport.requests == []
        assert dispatcher.get_result(conversation_id) is None

    @pytest.mark.asyncio
    async def test_cancelled_before_run_sends_nothing(self, make_dispatcher):
        transport = ScriptedTransport([])
        dispatcher = make_dispatcher(transport)

        conversation_id = await dispatcher.start({"goal": "x"})
        await dispatcher.cancel(conversation_id)
        result = await dispatcher.agentic_conversation("x", conversation_id=conversation_id)

        assert result.reason == OutcomeReason.CANCELLED
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_conversation(self, make_dispatcher):
        dispatcher = make_dispatcher(ScriptedTransport([]))
        assert await dispatcher.cancel(12345) is False


class TestAutonomousConversation:

    @pytest.mark.asyncio
    async def test_summary_is_reported(self, make_dispatcher):
        progress = []
        dispatcher = make_dispatcher(ScriptedTransport([{"text": "~~~GOAL-ACHIEVED~~~"}]))

        result = await dispatcher.autonomous_conversation("x", progress_callback=progress.append)
        conversation = await dispatcher.get_conversation(result.conversation_id)

        assert progress[0] == "Turn 1/4"
        assert progress[-1] == "🎯 Agentic task COMPLETED successfully! (1 turns, 1 conversation steps)"
        assert conversation.max_turns == 4

    @pytest.mark.asyncio
    async def test_model_error_summary(self, make_dispatcher):
        progress = []

        async def lookup(model_id):
            return None

        dispatcher = make_dispatcher(ScriptedTransport([]), model_lookup=lookup)
        await dispatcher.autonomous_conversation("x", progress_callback=progress.append, model_id="ghost")

        assert progress == ["❌ Model error: Model not found: ghost"]

    def test_format_summary_labels(self):
        assert format_summary(ConversationResult(reason=OutcomeReason.MAX_TURNS_REACHED)).startswith(
            "🎯 Agentic task reached max turns"
        )
        assert format_summary(ConversationResult(reason=OutcomeReason.CANCELLED)).startswith(
            "🎯 Agentic task ended unexpectedly"
        )

    @pytest.mark.asyncio
    async def test_concurrent_launches(self, make_dispatcher):
        transport = ScriptedTransport([])
        dispatcher = make_dispatcher(transport)

        ids = [await dispatcher.launch(f"goal {i}") for i in range(3)]
        results = await asyncio.gather(*(dispatcher.wait(i) for i in ids))

        assert len(set(ids)) == 3
        assert [r.conversation_id for r in results] == ids
        assert all(r.reason == OutcomeReason.AGENT_FINISHED for r in results)
        for conversation_id in ids:
            assert f"[Conv-{conversation_id}] 🏁 Finished: agent-finished" in _channel_text()


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_finished_conversation(self, make_dispatcher):
        dispatcher = make_dispatcher(ScriptedTransport([]))
        result = await dispatcher.agentic_conversation("x")

        assert await dispatcher.delete(result.conversation_id) is True
        assert await dispatcher.get_conversation(result.conversation_id) is None
        assert dispatcher.get_result(result.conversation_id) is None
        assert await dispatcher.delete(result.conversation_id) is False

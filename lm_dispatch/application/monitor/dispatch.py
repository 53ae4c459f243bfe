from typing import Dict, Any, Optional, Callable, Iterable, List, Union
import asyncio
import inspect

import structlog
from pydantic import BaseModel

from lm_dispatch.config import Settings, get_settings
from lm_dispatch.domain.cancellation import CancellationToken
from lm_dispatch.domain.models.conversation import (
    Conversation, ConversationResult, ConversationStatus, OutcomeReason
)
from lm_dispatch.domain.orchestration.completion import CompletionSignals
from lm_dispatch.domain.orchestration.turn_loop import TurnLoop
from lm_dispatch.domain.registry.conversation_registry import ConversationRegistry
from lm_dispatch.domain.tool.tool_registry import ToolRegistry
from lm_dispatch.domain.transport import LanguageModelTransport, ModelLookup, TokenCounter, ToolExecutorFn
from lm_dispatch.infrastructure.observability.dispatch_logging import log_to_channel

logger = structlog.get_logger(__name__)

RefreshHook = Callable[[], Any]

_SUMMARY_LABELS = {
    OutcomeReason.TASK_COMPLETE: "COMPLETED successfully!",
    OutcomeReason.MAX_TURNS_REACHED: "reached max turns",
    OutcomeReason.AGENT_FINISHED: "finished",
}


def format_summary(result: ConversationResult) -> str:
    """One-line human summary of a finished conversation"""
    label = _SUMMARY_LABELS.get(result.reason, "ended unexpectedly")
    return (
        f"🎯 Agentic task {label} "
        f"({result.assistant_turns} turns, {len(result.history)} conversation steps)"
    )


class AgentDispatcher:
    """Entry point for running monitored agent conversations.

    Wraps the turn loop with conversation registration, cancellation tokens
    and log/monitor updates. Every registry mutation made through the
    dispatcher is paired with its log line and followed by the refresh hook.
    """

    def __init__(
        self,
        transport: LanguageModelTransport,
        tool_executor: Optional[ToolExecutorFn] = None,
        registry: Optional[ConversationRegistry] = None,
        tool_registry: Optional[ToolRegistry] = None,
        on_refresh: Optional[RefreshHook] = None,
        model_lookup: Optional[ModelLookup] = None,
        signals: Optional[CompletionSignals] = None,
        settings: Optional[Settings] = None,
        count_tokens: Optional[TokenCounter] = None,
    ):
        self.registry = registry or ConversationRegistry()
        self.tool_registry = tool_registry
        self.model_lookup = model_lookup
        self.settings = settings or get_settings()
        self.refresh_hooks: List[RefreshHook] = [on_refresh] if on_refresh else []
        self.turn_loop = TurnLoop(
            transport, tool_executor, reporter=self, signals=signals, count_tokens=count_tokens
        )
        self.results: Dict[int, ConversationResult] = {}
        self.tasks: Dict[int, asyncio.Task] = {}
        self._update_lock = asyncio.Lock()

    def add_refresh_hook(self, hook: RefreshHook):
        self.refresh_hooks.append(hook)

    def remove_refresh_hook(self, hook: RefreshHook):
        if hook in self.refresh_hooks:
            self.refresh_hooks.remove(hook)

    async def refresh(self):
        """Notify monitors that conversation state changed"""
        for hook in list(self.refresh_hooks):
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Error in monitor refresh hook", error=str(e))

    async def start(self, conversation_data: Union[Dict[str, Any], BaseModel]) -> int:
        """Register a conversation, log its start and refresh the monitor"""

        if isinstance(conversation_data, BaseModel):
            conversation_data = conversation_data.model_dump(exclude_unset=True)
        data = dict(conversation_data)
        if not data.get("caller"):
            data["caller"] = self.settings.default_caller

        conversation_id = await self.registry.register(data)
        log_to_channel(conversation_id, f"🚀 Starting conversation: {data.get('goal')}")
        await self.refresh()
        return conversation_id

    async def log_and_update(self, conversation_id: int, updates: Optional[Dict[str, Any]], message: Optional[str]):
        """Log a message and apply a registry update together, then refresh"""

        async with self._update_lock:
            if message:
                log_to_channel(conversation_id, message)
            if updates:
                await self.registry.update(conversation_id, updates)
        await self.refresh()

    async def cancel(self, conversation_id: int) -> bool:
        """Request cooperative cancellation; takes effect at the next turn boundary"""

        conversation = await self.registry.get(conversation_id)
        if conversation is None:
            logger.warning("Cancel requested for unknown conversation", conversation_id=conversation_id)
            return False

        if conversation.cancellation_token is not None:
            conversation.cancellation_token.cancel()
        async with self._update_lock:
            log_to_channel(conversation_id, "🛑 Cancellation requested")
            await self.registry.mark_cancelled(conversation_id)
        await self.refresh()
        return True

    async def delete(self, conversation_id: int) -> bool:
        """Forget a finished conversation (monitor UI action)"""

        conversation = await self.registry.get(conversation_id)
        if conversation is not None and not conversation.status.is_terminal:
            await self.cancel(conversation_id)
        self.results.pop(conversation_id, None)
        deleted = await self.registry.delete(conversation_id)
        if deleted:
            await self.refresh()
        return deleted

    async def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        return await self.registry.get(conversation_id)

    def get_result(self, conversation_id: int) -> Optional[ConversationResult]:
        return self.results.get(conversation_id)

    async def is_cancelled(self, conversation_id: int) -> bool:
        conversation = await self.registry.get(conversation_id)
        if conversation is None:
            return False
        token = conversation.cancellation_token
        return conversation.cancelled or (token is not None and token.is_cancelled)

    def _tool_options(self, tool_ids: Optional[Iterable[str]], allow_unsafe_tools: bool) -> Dict[str, Any]:
        if self.tool_registry is None:
            return {"tools": [{"name": tool_id} for tool_id in (tool_ids or [])], "tool_mode": "auto"}
        return self.tool_registry.tool_options(tool_ids, allow_unsafe_tools)

    async def agentic_conversation(
        self,
        goal: str,
        model_id: Optional[str] = None,
        max_turns: Optional[int] = None,
        tool_ids: Optional[Iterable[str]] = None,
        allow_unsafe_tools: bool = False,
        caller: Optional[str] = None,
        title: Optional[str] = None,
        progress_callback: Optional[Callable[[str], Any]] = None,
        system_prompt: Optional[str] = None,
        conversation_id: Optional[int] = None,
    ) -> ConversationResult:
        """Run a monitored autonomous conversation toward a goal.

        Registers the conversation unless `conversation_id` refers to one
        already started. Never raises: every failure becomes a result record.
        """

        model_id = model_id or self.settings.default_model_id
        max_turns = max_turns or self.settings.agentic_max_turns

        if conversation_id is None:
            conversation_id = await self.start({
                "goal": goal,
                "model_id": model_id,
                "max_turns": max_turns,
                "caller": caller,
                "title": title,
            })

        if self.model_lookup is not None:
            try:
                model_info = await self.model_lookup(model_id)
            except Exception as e:
                logger.error("Model lookup failed", model_id=model_id, error=str(e))
                model_info = None
            if not model_info:
                message = f"Model not found: {model_id}"
                result = ConversationResult(
                    reason=OutcomeReason.MODEL_NOT_FOUND,
                    conversation_id=conversation_id,
                    error_message=message,
                )
                await self._finish(conversation_id, result)
                return result

        token = CancellationToken()
        conversation = await self.registry.get(conversation_id)
        # A record deleted before the run starts counts as cancelled
        if conversation is None or conversation.cancelled:
            token.cancel()
        await self.registry.update(conversation_id, {"cancellation_token": token})

        async def cancelled() -> bool:
            # The token outlives the record when the monitor deletes a running conversation
            return token.is_cancelled or await self.is_cancelled(conversation_id)

        try:
            result = await self.turn_loop.run(
                goal=goal,
                model_id=model_id,
                max_turns=max_turns,
                tool_options=self._tool_options(tool_ids, allow_unsafe_tools),
                system_prompt=system_prompt,
                conversation_id=conversation_id,
                progress_callback=progress_callback,
                is_cancelled=cancelled,
            )
        except Exception as e:
            logger.exception("Agentic conversation crashed", conversation_id=conversation_id)
            result = ConversationResult(
                reason=OutcomeReason.ERROR,
                conversation_id=conversation_id,
                error_message=str(e) or e.__class__.__name__,
            )

        await self._finish(conversation_id, result)
        return result

    async def _finish(self, conversation_id: int, result: ConversationResult):
        if await self.registry.get(conversation_id) is None:
            log_to_channel(conversation_id, f"🏁 Finished after deletion: {result.reason.value}")
            return

        self.results[conversation_id] = result

        updates: Dict[str, Any] = {"status": result.reason.to_status()}
        if result.error_message:
            updates["error_message"] = result.error_message
        message = f"🏁 Finished: {result.reason.value}"
        if result.error_message:
            message += f" ({result.error_message})"
        await self.log_and_update(conversation_id, updates, message)

    async def autonomous_conversation(
        self,
        goal: str,
        progress_callback: Optional[Callable[[str], Any]] = None,
        **options,
    ) -> ConversationResult:
        """Start an autonomous conversation with default settings and report a summary"""

        options.setdefault("model_id", self.settings.default_model_id)
        options.setdefault("max_turns", self.settings.default_max_turns)
        progress_callback = progress_callback or (lambda status: logger.info("progress", status=status))

        result = await self.agentic_conversation(goal, progress_callback=progress_callback, **options)

        if result.reason == OutcomeReason.MODEL_NOT_FOUND:
            summary = f"❌ Model error: {result.error_message}"
        else:
            summary = format_summary(result)

        try:
            outcome = progress_callback(summary)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning("Progress callback failed", error=str(e))

        return result

    async def launch(self, goal: str, **options) -> int:
        """Register a conversation and run it in the background; returns its id"""

        model_id = options.setdefault("model_id", self.settings.default_model_id)
        max_turns = options.setdefault("max_turns", self.settings.default_max_turns)
        conversation_id = await self.start({
            "goal": goal,
            "model_id": model_id,
            "max_turns": max_turns,
            "caller": options.get("caller"),
            "title": options.get("title"),
        })
        task = asyncio.create_task(
            self.autonomous_conversation(goal, conversation_id=conversation_id, **options)
        )
        self.tasks[conversation_id] = task
        task.add_done_callback(lambda _: self.tasks.pop(conversation_id, None))
        return conversation_id

    async def wait(self, conversation_id: int) -> Optional[ConversationResult]:
        """Wait for a launched conversation to finish"""

        task = self.tasks.get(conversation_id)
        if task is not None:
            return await task
        return self.results.get(conversation_id)

    async def snapshot(self) -> List[Dict[str, Any]]:
        return await self.registry.snapshot()

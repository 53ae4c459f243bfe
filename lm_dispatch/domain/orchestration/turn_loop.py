from typing import TypedDict, List, Dict, Any, Optional, Literal, Callable, Protocol
import inspect

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import StateGraph, END

from lm_dispatch.domain.models.conversation import (
    AssistantEntry, ConversationResult, ConversationStatus, Outcome, OutcomeReason,
    ToolCall, TurnError
)
from lm_dispatch.domain.orchestration.completion import CompletionSignals, determine_outcome
from lm_dispatch.domain.tool.tool_call_codec import (
    build_tool_results_entry, format_tool_result, parse_tool_calls
)
from lm_dispatch.domain.transport import (
    LanguageModelTransport, TokenCounter, ToolExecutorFn, TransportRequest, TransportResponse,
    coerce_response
)

logger = structlog.get_logger(__name__)


AGENTIC_SYSTEM_PROMPT = """You are an autonomous AI agent with the ability to take initiative and drive conversations toward goals.

AGENTIC BEHAVIOR RULES:
1. When given a goal, break it down into steps and execute them
2. Use available tools proactively to gather information or take actions
3. After each tool use, analyze the results and decide your next action
4. If a tool returns unexpected results or fails, ADAPT your approach - don't repeat the same action
5. Continue working toward the goal, making your best judgment when information is missing
6. Provide progress updates as you work
7. Take creative initiative to solve problems

LEARNING FROM FAILURES:
- If tool results are not what you expected, try a different approach
- Don't repeat the exact same tool call if it didn't work the first time
- Explain what you learned and how you're adapting your strategy
- Consider the tool results as feedback to guide your next steps

CONVERSATION FLOW:
- Receive goal
- Plan your approach
- Execute tools and actions
- Analyze results and continue OR adapt if results weren't as expected
- Report progress and findings
- Suggest next steps or completion

Be proactive, creative, and goal-oriented. Drive the conversation forward!"""


def build_goal_message(goal: str) -> HumanMessage:
    """Goal reminder placed first in every turn's message list"""
    return HumanMessage(
        content=(
            f"GOAL: {goal}\n\n"
            "Please work autonomously toward this goal. "
            "Take initiative, use tools as needed, and continue "
            "until the goal is achieved."
        )
    )


def build_agentic_messages(history: List[Any], goal: str) -> List[BaseMessage]:
    """Build the message list for one turn.

    The goal is never part of history; it is re-derived here on every turn so
    it appears exactly once however long the conversation gets. Assistant
    entries become assistant messages and each individual tool result becomes
    its own user message.
    """
    messages: List[BaseMessage] = [build_goal_message(goal)]
    for entry in history:
        if entry.role == "assistant":
            messages.append(AIMessage(content=entry.content or ""))
        elif entry.role == "tool-results":
            messages.extend(HumanMessage(content=format_tool_result(result.output)) for result in entry.results)
    return messages


class TurnReporter(Protocol):
    async def log_and_update(self, conversation_id: int, updates: Optional[Dict[str, Any]], message: str) -> None:
        ...


class TurnState(TypedDict):
    """State for the turn loop graph"""
    conversation_id: Optional[int]
    model_id: str
    goal: str
    system_prompt: str
    max_turns: int
    tool_options: Dict[str, Any]
    history: List[Any]
    turn: int
    tool_calls: List[ToolCall]
    outcome: Optional[Outcome]
    final_response: Optional[Any]
    total_tokens: int


class TurnLoop:
    """Turn-based control loop driving a language model toward a goal"""

    def __init__(
        self,
        transport: LanguageModelTransport,
        tool_executor: Optional[ToolExecutorFn] = None,
        reporter: Optional[TurnReporter] = None,
        signals: Optional[CompletionSignals] = None,
        count_tokens: Optional[TokenCounter] = None,
    ):
        self.transport = transport
        self.tool_executor = tool_executor
        self.reporter = reporter
        self.signals = signals
        self.count_tokens = count_tokens
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the turn graph"""

        workflow = StateGraph(TurnState)

        workflow.add_node("begin_turn", self.begin_turn_node)
        workflow.add_node("call_model", self.call_model_node)
        workflow.add_node("execute_tools", self.tool_execution_node)
        workflow.add_node("decide", self.decide_node)

        workflow.set_entry_point("begin_turn")

        workflow.add_conditional_edges(
            "begin_turn",
            self.route_after_begin,
            {
                "call_model": "call_model",
                "stop": END
            }
        )

        workflow.add_conditional_edges(
            "call_model",
            self.route_after_model,
            {
                "execute_tools": "execute_tools",
                "decide": "decide",
                "stop": END
            }
        )

        workflow.add_conditional_edges(
            "execute_tools",
            self.route_after_tools,
            {
                "decide": "decide",
                "stop": END
            }
        )

        workflow.add_conditional_edges(
            "decide",
            self.route_after_decision,
            {
                "continue": "begin_turn",
                "stop": END
            }
        )

        return workflow.compile()

    async def begin_turn_node(self, state: TurnState, config: RunnableConfig) -> Dict[str, Any]:
        """Check cancellation and the turn budget before soliciting the model"""

        turn, max_turns = state["turn"], state["max_turns"]

        if await self._cancel_requested(config):
            await self._report(state, f"🛑 Cancelled before turn {turn}")
            return {"outcome": Outcome.stop(OutcomeReason.CANCELLED)}

        if turn > max_turns:
            await self._report(state, f"⏱️ Max turns reached ({max_turns})")
            return {"outcome": Outcome.stop(OutcomeReason.MAX_TURNS_REACHED)}

        progress = f"Turn {turn}/{max_turns}"
        await self._notify_progress(config, progress)
        updates: Dict[str, Any] = {"status": ConversationStatus.WORKING, "current_turn": turn}
        total_tokens = state.get("total_tokens", 0)

        if self.count_tokens is not None:
            turn_tokens = await self._count_turn_tokens(state)
            total_tokens += turn_tokens
            updates["total_tokens"] = total_tokens
            progress = f"📊 Turn {turn}/{max_turns} - Starting with {turn_tokens} tokens (total: {total_tokens} tokens)"

        await self._report(state, progress, updates)

        return {"outcome": None, "tool_calls": [], "total_tokens": total_tokens}

    async def call_model_node(self, state: TurnState, config: RunnableConfig) -> Dict[str, Any]:
        """Send the turn's messages to the transport and record the reply"""

        turn = state["turn"]
        request = TransportRequest(
            model_id=state["model_id"],
            system_prompt=state["system_prompt"],
            messages=build_agentic_messages(state["history"], state["goal"]),
            tool_options=state["tool_options"],
        )

        try:
            response = coerce_response(await self.transport(request))
        except Exception as e:
            message = getattr(e, "message", None) or str(e) or e.__class__.__name__
            # An aborted request after a cancel is a cancellation, not an error
            if await self._cancel_requested(config):
                logger.info("Transport call ended by cancellation", turn=turn, error=message)
                await self._report(state, "🛑 Conversation cancelled by user")
                return {"outcome": Outcome.stop(OutcomeReason.CANCELLED)}

            logger.error("Transport call failed", turn=turn, error=message)
            await self._report(state, f"❌ Error on turn {turn}: {message}", {"error_message": message})
            return {
                "outcome": Outcome.stop(OutcomeReason.ERROR),
                "final_response": TurnError(message=message, turn=turn),
            }

        response = response.model_copy(update={"turn": turn})
        tool_calls = list(response.tool_calls)
        if not tool_calls:
            tool_calls = parse_tool_calls(response.text)

        if response.text:
            await self._report(state, f"🤖 AI Agent says:\n{response.text}")

        entry = AssistantEntry(content=response.text, tool_calls=tool_calls, turn=turn)
        return {
            "history": state["history"] + [entry],
            "tool_calls": tool_calls,
            "final_response": response,
        }

    async def tool_execution_node(self, state: TurnState, config: RunnableConfig) -> Dict[str, Any]:
        """Execute the turn's tool calls and append their results"""

        calls = state["tool_calls"]
        turn = state["turn"]

        if await self._cancel_requested(config):
            await self._report(state, f"🛑 Cancelled before executing {len(calls)} tool(s)")
            return {"outcome": Outcome.stop(OutcomeReason.CANCELLED)}

        names = ", ".join(call.name for call in calls)
        await self._report(
            state,
            f"🔧 AI Agent executing {len(calls)} tool(s): {names}",
            {"status": ConversationStatus.TOOLS_EXECUTING},
        )

        if self.tool_executor is None:
            outputs = [{"error": "No tool executor is configured"} for _ in calls]
        else:
            try:
                outputs = list(await self.tool_executor(calls))
            except Exception as e:
                logger.error("Tool executor failed", turn=turn, error=str(e))
                outputs = [{"error": f"Tool execution failed: {e}"} for _ in calls]

        entry = build_tool_results_entry(calls, outputs, turn)
        await self._report(state, f"✅ Tools executed ({len(entry.results)} result(s))")

        return {"history": state["history"] + [entry]}

    async def decide_node(self, state: TurnState) -> Dict[str, Any]:
        """Ask the completion state machine what happens next"""

        response = state["final_response"]
        text = response.text if isinstance(response, TransportResponse) else None
        outcome = determine_outcome(text, state["tool_calls"], state["turn"], state["max_turns"], self.signals)

        if self.count_tokens is not None:
            await self._report(state, f"✓ Turn {state['turn']} completed (total: {state.get('total_tokens', 0)} tokens)")

        if outcome.should_continue:
            status = (ConversationStatus.TOOLS_EXECUTING
                      if outcome.reason == OutcomeReason.TOOLS_EXECUTING
                      else ConversationStatus.CONTINUING)
            await self._report(state, "↻ AI Agent continuing to next step...", {"status": status})
            return {"outcome": outcome, "turn": state["turn"] + 1}

        await self._report(state, f"🎯 Agentic conversation ended: {outcome.reason.value}")
        return {"outcome": outcome}

    def route_after_begin(self, state: TurnState) -> Literal["call_model", "stop"]:
        return "stop" if state.get("outcome") else "call_model"

    def route_after_model(self, state: TurnState) -> Literal["execute_tools", "decide", "stop"]:
        if state.get("outcome"):
            return "stop"
        if state.get("tool_calls"):
            return "execute_tools"
        return "decide"

    def route_after_tools(self, state: TurnState) -> Literal["decide", "stop"]:
        return "stop" if state.get("outcome") else "decide"

    def route_after_decision(self, state: TurnState) -> Literal["continue", "stop"]:
        outcome = state.get("outcome")
        return "continue" if outcome and outcome.should_continue else "stop"

    async def _report(self, state: TurnState, message: str, updates: Optional[Dict[str, Any]] = None):
        conversation_id = state.get("conversation_id")
        if self.reporter is None or conversation_id is None:
            logger.info(message, turn=state.get("turn"), **(updates or {}))
            return
        await self.reporter.log_and_update(conversation_id, updates, message)

    async def _notify_progress(self, config: RunnableConfig, status: str):
        callback = config.get("configurable", {}).get("progress_callback")
        if callback is None:
            return
        try:
            result = callback(status)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Progress callback failed", error=str(e))

    async def _count_turn_tokens(self, state: TurnState) -> int:
        """Prompt tokens of the messages this turn will send; 0 when counting fails"""
        messages = build_agentic_messages(state["history"], state["goal"])
        try:
            result = self.count_tokens(state["model_id"], messages)
            if inspect.isawaitable(result):
                result = await result
            return int(result or 0)
        except Exception as e:
            logger.warning("Token counting failed", turn=state["turn"], error=str(e))
            return 0

    async def _cancel_requested(self, config: RunnableConfig) -> bool:
        check = config.get("configurable", {}).get("is_cancelled")
        if check is None:
            return False
        result = check()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def run(
        self,
        goal: str,
        model_id: str,
        max_turns: int,
        tool_options: Optional[Dict[str, Any]] = None,
        system_prompt: Optional[str] = None,
        conversation_id: Optional[int] = None,
        progress_callback: Optional[Callable[[str], Any]] = None,
        is_cancelled: Optional[Callable[[], Any]] = None,
    ) -> ConversationResult:
        """Run turns until the state machine stops the conversation"""

        initial_state: TurnState = {
            "conversation_id": conversation_id,
            "model_id": model_id,
            "goal": goal,
            "system_prompt": system_prompt or AGENTIC_SYSTEM_PROMPT,
            "max_turns": max_turns,
            "tool_options": tool_options or {},
            "history": [],
            "turn": 1,
            "tool_calls": [],
            "outcome": None,
            "final_response": None,
            "total_tokens": 0,
        }
        config: RunnableConfig = {
            # begin, model, tools and decide per turn, plus the final check
            "recursion_limit": max_turns * 4 + 10,
            "configurable": {
                "progress_callback": progress_callback,
                "is_cancelled": is_cancelled,
            },
        }

        with structlog.contextvars.bound_contextvars(conversation_id=conversation_id):
            logger.info("Starting agentic conversation", model_id=model_id, max_turns=max_turns)
            final_state = await self.workflow.ainvoke(initial_state, config=config)

        return format_completion_result(final_state, conversation_id)


def format_completion_result(final_state: Dict[str, Any], conversation_id: Optional[int] = None) -> ConversationResult:
    """Format the final conversation result"""

    outcome = final_state["outcome"]
    final_response = final_state.get("final_response")
    error_message = final_response.message if isinstance(final_response, TurnError) else None

    return ConversationResult(
        history=final_state["history"],
        reason=outcome.reason,
        final_response=final_response,
        conversation_id=conversation_id,
        error_message=error_message,
        total_tokens=final_state.get("total_tokens", 0),
    )

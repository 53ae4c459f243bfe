from typing import Any, Dict, List, Optional
import asyncio
import inspect
import time

import structlog

from lm_dispatch.domain.models.conversation import ToolCall
from lm_dispatch.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)


class CallableToolExecutor:
    """Runs tool calls against a ToolRegistry.

    Failures never raise: they come back as {"error": ...} payloads so the
    model can see them and adapt on the next turn. Outputs are returned in
    the order of the calls.
    """

    def __init__(self, registry: ToolRegistry, execution_timeout: Optional[float] = None):
        self.registry = registry
        self.execution_timeout = execution_timeout

    async def __call__(self, calls: List[ToolCall]) -> List[Any]:
        outputs = []
        # One at a time, in call order
        for call in calls:
            outputs.append(await self.execute_tool(call))
        return outputs

    async def execute_tool(self, call: ToolCall) -> Any:
        tool = self.registry.get_tool_info(call.name)
        if tool is None:
            logger.warning("Unknown tool requested", tool_name=call.name, call_id=call.call_id)
            return {"error": f"Unknown tool: {call.name}"}

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self._invoke(tool["handler"], call.input), self.execution_timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool execution timeout", tool_name=call.name, call_id=call.call_id)
            return {"error": f"Tool execution timeout: {call.name}"}
        except Exception as e:
            logger.warning("Tool execution failed", tool_name=call.name, call_id=call.call_id, error=str(e))
            return {"error": str(e), "tool": call.name}

        logger.info(
            "tool_execution",
            tool_name=call.name,
            call_id=call.call_id,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return result

    async def _invoke(self, handler, tool_input: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(**tool_input)
        result = handler(**tool_input)
        if inspect.isawaitable(result):
            result = await result
        return result

from typing import Dict, Any, Optional, Callable, Iterable

import structlog

logger = structlog.get_logger(__name__)


class ToolRegistry:
    """Registry of callables the agent may invoke, keyed by tool id"""

    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}

    def register_tool(
        self,
        tool_id: str,
        handler: Callable[..., Any],
        description: str = "",
        unsafe: bool = False,
        input_schema: Optional[Dict[str, Any]] = None,
    ):
        """Register a tool. The handler receives the call input as keyword arguments."""

        self.tools[tool_id] = {
            "id": tool_id,
            "handler": handler,
            "description": description,
            "unsafe": unsafe,
            "input_schema": input_schema or {},
        }

    def tool(self, tool_id: str, **options):
        """Decorator form of register_tool"""

        def decorator(handler):
            self.register_tool(tool_id, handler, **options)
            return handler
        return decorator

    def get_tool_info(self, tool_id: str) -> Optional[Dict[str, Any]]:
        return self.tools.get(tool_id)

    def tool_options(self, tool_ids: Optional[Iterable[str]] = None, allow_unsafe: bool = False) -> Dict[str, Any]:
        """Tool enablement configuration handed to the transport.

        Unsafe tools are left out unless explicitly allowed; unknown ids are
        skipped with a warning.
        """

        selected = []
        for tool_id in (list(tool_ids) if tool_ids is not None else list(self.tools)):
            tool = self.tools.get(tool_id)
            if tool is None:
                logger.warning("Requested tool is not registered", tool_id=tool_id)
                continue
            if tool["unsafe"] and not allow_unsafe:
                logger.info("Skipping unsafe tool", tool_id=tool_id)
                continue
            selected.append({
                "name": tool_id,
                "description": tool["description"],
                "input_schema": tool["input_schema"],
            })

        return {"tools": selected, "tool_mode": "auto"}

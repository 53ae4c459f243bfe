"""Tests for the tool registry and the callable tool executor."""

import asyncio

import pytest

from lm_dispatch.domain.models.conversation import ToolCall
from lm_dispatch.domain.tool.tool_executor import CallableToolExecutor
from lm_dispatch.domain.tool.tool_registry import ToolRegistry


@pytest.fixture
def tools():
    registry = ToolRegistry()

    @registry.tool("add", description="Add two numbers")
    def add(a, b):
        return a + b

    @registry.tool("sleep", description="Sleep for a while")
    async def sleep(seconds):
        await asyncio.sleep(seconds)
        return "woke up"

    @registry.tool("rm", description="Delete a file", unsafe=True)
    def rm(path):
        raise PermissionError(f"refusing to delete {path}")

    return registry


def _call(name, call_id="c-0", **tool_input):
    return ToolCall(name=name, input=tool_input, call_id=call_id)


class TestToolRegistry:

    def test_lookup(self, tools):
        assert tools.get_tool_info("add")["description"] == "Add two numbers"
        assert tools.get_tool_info("rm")["unsafe"] is True
        assert tools.get_tool_info("missing") is None

    def test_tool_options_skip_unsafe_by_default(self, tools):
        names = [t["name"] for t in tools.tool_options()["tools"]]
        assert names == ["add", "sleep"]

    def test_tool_options_allow_unsafe(self, tools):
        options = tools.tool_options(["rm", "missing"], allow_unsafe=True)
        assert options == {
            "tools": [{"name": "rm", "description": "Delete a file", "input_schema": {}}],
            "tool_mode": "auto",
        }


class TestCallableToolExecutor:

    @pytest.mark.asyncio
    async def test_outputs_follow_call_order(self, tools):
        executor = CallableToolExecutor(tools)
        outputs = await executor([
            _call("add", "c-0", a=1, b=2),
            _call("sleep", "c-1", seconds=0),
        ])
        assert outputs == [3, "woke up"]

    @pytest.mark.asyncio
    async def test_failures_become_error_payloads(self, tools):
        executor = CallableToolExecutor(tools)
        unknown, failed = await executor([_call("nope"), _call("rm", "c-1", path="/etc")])

        assert unknown == {"error": "Unknown tool: nope"}
        assert failed["tool"] == "rm"
        assert "refusing to delete /etc" in failed["error"]

    @pytest.mark.asyncio
    async def test_timeout(self, tools):
        executor = CallableToolExecutor(tools, execution_timeout=0.01)
        [output] = await executor([_call("sleep", seconds=1)])
        assert output == {"error": "Tool execution timeout: sleep"}

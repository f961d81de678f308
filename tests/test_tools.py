import asyncio
import json
import time
import pytest

from llmrelay.tools import ToolInvoker, ToolRegistry
from llmrelay.types import ToolCallPart
from llmrelay.utils import create_tool


@pytest.fixture
def registry():
    registry = ToolRegistry()

    @registry.tool(description="Add two numbers", parameters={"a": {"type": "number"}, "b": {"type": "number"}},
                   required=["a", "b"])
    def add(args):
        return args["a"] + args["b"]

    @registry.tool(name="echo")
    async def echo_handler(args):
        return args.get("text", "")

    @registry.tool()
    def explode(args):
        raise RuntimeError("kaboom")

    return registry


class TestToolRegistry:
    def test_register_builds_spec(self, registry):
        spec = registry.get("add").spec
        assert spec.description == "Add two numbers"
        assert spec.parameter_schema["required"] == ["a", "b"]
        assert spec.parameter_schema["properties"]["a"] == {"type": "number"}

    def test_register_matches_create_tool(self, registry):
        assert registry.get("add").spec == create_tool(
            "add", "Add two numbers", {"a": {"type": "number"}, "b": {"type": "number"}}, required=["a", "b"],
        )
        assert registry.get("echo").spec == create_tool("echo", "", {})

    def test_decorator_names(self, registry):
        assert registry.names == ["add", "echo", "explode"]
        assert "echo" in registry
        assert "echo_handler" not in registry

    def test_duplicate_rejected(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.register("add", lambda args: None)

    def test_specs_in_registration_order(self, registry):
        assert [s.name for s in registry.specs] == ["add", "echo", "explode"]


class TestToolInvoker:
    @pytest.mark.asyncio
    async def test_sync_handler(self, registry):
        outcome = await ToolInvoker(registry).invoke(ToolCallPart("c1", "add", {"a": 2, "b": 3}))

        assert outcome.error is None
        result = outcome.message.tool_results[0]
        assert outcome.message.role == "tool"
        assert result.call_id == "c1"
        assert result.name == "add"
        assert result.content == "5"

    @pytest.mark.asyncio
    async def test_async_handler_string_result(self, registry):
        outcome = await ToolInvoker(registry).invoke(ToolCallPart("c1", "echo", {"text": "hi"}))
        assert outcome.message.tool_results[0].content == "hi"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self, registry):
        outcome = await ToolInvoker(registry).invoke(ToolCallPart("c9", "fetchWeather", {}))

        result = outcome.message.tool_results[0]
        assert result.is_error
        assert result.call_id == "c9"
        assert json.loads(result.content)["error"] == "UnknownToolError"
        assert outcome.error.kind == "UnknownToolError"

    @pytest.mark.asyncio
    async def test_handler_exception_is_error_result(self, registry):
        outcome = await ToolInvoker(registry).invoke(ToolCallPart("c1", "explode", {}))

        result = outcome.message.tool_results[0]
        assert result.is_error
        assert "kaboom" in json.loads(result.content)["message"]
        assert outcome.error.kind == "ToolExecutionError"

    @pytest.mark.asyncio
    async def test_timeout_is_error_result(self):
        registry = ToolRegistry()

        async def stuck(args):
            await asyncio.sleep(10)

        registry.register("stuck", stuck)
        start = time.perf_counter()
        outcome = await ToolInvoker(registry, timeout=0.05).invoke(ToolCallPart("c1", "stuck", {}))

        assert time.perf_counter() - start < 5
        assert outcome.message.tool_results[0].is_error
        assert "timed out" in outcome.error.message

    @pytest.mark.asyncio
    async def test_per_tool_timeout_overrides_default(self):
        registry = ToolRegistry()

        async def slowish(args):
            await asyncio.sleep(0.1)
            return "done"

        registry.register("slowish", slowish, timeout=1.0)
        outcome = await ToolInvoker(registry, timeout=0.01).invoke(ToolCallPart("c1", "slowish", {}))
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_batch_results_in_emission_order(self):
        registry = ToolRegistry()
        finished = []

        async def wait(args):
            await asyncio.sleep(args["delay"])
            finished.append(args["delay"])
            return args["delay"]

        registry.register("wait", wait)
        calls = [
            ToolCallPart("first", "wait", {"delay": 0.06}),
            ToolCallPart("second", "wait", {"delay": 0.0}),
            ToolCallPart("third", "wait", {"delay": 0.03}),
        ]

        outcomes = await ToolInvoker(registry).invoke_all(calls)

        assert finished == [0.0, 0.03, 0.06]
        assert [o.call.call_id for o in outcomes] == ["first", "second", "third"]
        assert [o.message.tool_results[0].call_id for o in outcomes] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_sequential_mode(self):
        registry = ToolRegistry()
        finished = []

        async def wait(args):
            await asyncio.sleep(args["delay"])
            finished.append(args["delay"])

        registry.register("wait", wait)
        calls = [ToolCallPart("a", "wait", {"delay": 0.03}), ToolCallPart("b", "wait", {"delay": 0.0})]

        await ToolInvoker(registry, parallel=False).invoke_all(calls)

        assert finished == [0.03, 0.0]

    @pytest.mark.asyncio
    async def test_status_callback(self, registry):
        seen = []

        async def on_status(call, status, detail):
            seen.append((call.call_id, status, detail is not None))

        await ToolInvoker(registry).invoke_all(
            [ToolCallPart("ok", "add", {"a": 1, "b": 1}), ToolCallPart("bad", "explode", {})],
            on_status=on_status,
        )

        assert ("ok", "finished", False) in seen
        assert ("bad", "failed", True) in seen
        assert sum(1 for _, status, _ in seen if status == "started") == 2

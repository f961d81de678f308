"""Tool registry and the invoker that runs a model's tool calls as a batch."""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ToolExecutionError, UnknownToolError
from .types import NormalizedMessage, ToolCallPart, ToolSpec
from .utils import create_tool, create_tool_result

LOGGER = logging.getLogger(__name__)

# A handler receives the parsed arguments and returns anything JSON-serializable.
# Sync handlers run in a worker thread so they never block the event loop.
ToolHandler = Callable[[Dict[str, Any]], Any]
StatusCallback = Callable[[ToolCallPart, str, Optional[str]], Awaitable[None]]


@dataclass(frozen=True)
class RegisteredTool:
    spec: ToolSpec
    handler: ToolHandler
    timeout: Optional[float] = None


class ToolRegistry:
    """
    Maps tool names to executable handlers.

    Populated by application code at startup and read-only while sessions run.

    Example:
        registry = ToolRegistry()

        @registry.tool(description="Current weather for a city",
                       parameters={"city": {"type": "string"}}, required=["city"])
        async def get_weather(args):
            return {"city": args["city"], "temp_c": 21}
    """

    def __init__(self) -> None:
        self._tools: Dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
        required: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> ToolSpec:
        """
        Register a handler and return the ToolSpec advertised to models.

        Raises:
            ValueError: If `name` is empty or already registered.
        """
        if not name:
            raise ValueError("Tool name is required")
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        spec = create_tool(name, description, parameters or {}, required)
        self._tools[name] = RegisteredTool(spec=spec, handler=handler, timeout=timeout)
        return spec

    def tool(self, name: Optional[str] = None, **kwargs: Any) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of `register`; the function name is the default tool name."""
        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(name or func.__name__, func, **kwargs)
            return func
        return decorator

    def get(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    @property
    def specs(self) -> Tuple[ToolSpec, ...]:
        return tuple(tool.spec for tool in self._tools.values())


@dataclass(frozen=True)
class ToolOutcome:
    call: ToolCallPart
    message: NormalizedMessage
    error: Optional[ToolExecutionError] = None
    duration_ms: float = 0.0


class ToolInvoker:
    """
    Executes tool calls and turns their outcomes into tool-result messages.

    Failures never abort the turn: unknown tools, handler exceptions and
    timeouts all become error-shaped results the model can react to.

    Args:
        registry (ToolRegistry): Handler lookup.
        timeout (float): Default per-call timeout in seconds.
        parallel (bool): Run calls from one model response concurrently.
            Results are always returned in the order the calls were emitted.
    """

    def __init__(self, registry: Optional[ToolRegistry] = None, *, timeout: float = 30.0, parallel: bool = True):
        self.registry = registry or ToolRegistry()
        self.timeout = timeout
        self.parallel = parallel

    async def invoke(self, call: ToolCallPart) -> ToolOutcome:
        """
        Execute one call. Only cancellation propagates.
        """
        start = time.perf_counter()
        tool = self.registry.get(call.name)
        error: Optional[ToolExecutionError] = None
        content = ""

        if tool is None:
            error = UnknownToolError(f"No handler registered for tool '{call.name}'")
        else:
            timeout = tool.timeout if tool.timeout is not None else self.timeout
            try:
                result = await asyncio.wait_for(self._call_handler(tool.handler, call.arguments), timeout)
                content = self._serialize(result)
            except asyncio.TimeoutError:
                error = ToolExecutionError(f"Tool '{call.name}' timed out after {timeout}s")
            except Exception as exc:
                error = ToolExecutionError(f"Error executing tool '{call.name}': {type(exc).__name__}: {exc}")

        duration_ms = (time.perf_counter() - start) * 1000.0
        if error is not None:
            LOGGER.warning("%s (call %s)", error.message, call.call_id)
            content = json.dumps({"error": error.kind, "message": error.message})

        message = create_tool_result(call.call_id, content, name=call.name, is_error=error is not None)
        return ToolOutcome(call=call, message=message, error=error, duration_ms=duration_ms)

    async def invoke_all(
        self,
        calls: Sequence[ToolCallPart],
        on_status: Optional[StatusCallback] = None,
    ) -> List[ToolOutcome]:
        """
        Execute a batch of calls from one model response.

        Args:
            calls: Calls in provider emission order.
            on_status: Awaited with (call, "started" | "finished" | "failed", detail).

        Returns:
            List[ToolOutcome]: One outcome per call, in emission order.
        """
        async def run(call: ToolCallPart) -> ToolOutcome:
            if on_status is not None:
                await on_status(call, "started", None)
            outcome = await self.invoke(call)
            if on_status is not None:
                status = "failed" if outcome.error else "finished"
                await on_status(call, status, outcome.error.message if outcome.error else None)
            return outcome

        if self.parallel and len(calls) > 1:
            # gather preserves argument order regardless of completion order
            return list(await asyncio.gather(*(run(call) for call in calls)))
        return [await run(call) for call in calls]

    @staticmethod
    async def _call_handler(handler: ToolHandler, arguments: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(arguments)
        result = await asyncio.to_thread(handler, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _serialize(result: Any) -> str:
        if isinstance(result, str):
            return result
        try:
            return json.dumps(result, default=str)
        except (TypeError, ValueError):
            return str(result)

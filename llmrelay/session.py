"""Generation session: one assistant turn from history load to persisted reply.

States::

    BUILDING -> DISPATCHING -> STREAMING -> (TOOL_ROUND_TRIP -> DISPATCHING)*
             -> FINALIZING -> COMPLETED | FAILED | CANCELLED

The session runs its state machine in a driver task that pushes
`CallerEvent`s into a bounded queue; `run()` drains that queue. A slow
consumer therefore slows the provider stream down instead of growing an
unbounded buffer.

Every suspension point (stream chunk, tool batch, backoff sleep, storage
call, queue put) races the awaited operation against the session's
`CancellationToken`. Stream reads additionally race an idle timeout that is
reported as a retryable transport failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence, Tuple, TypeVar

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential, wait_random,
)

from .compactor import HistoryCompactor, repair_history
from .errors import (
    ProviderRateLimited, ProviderTransportError, RelayError, SessionCancelled, StorageError,
    ToolLoopExceeded, error_from_kind,
)
from .storage import ConversationStore
from .tokens import TokenAccountant
from .tools import ToolInvoker
from .types import (
    Budget, CallerEvent, Completed, Failed, NormalizedMessage, NormalizedRequest, SamplingParams,
    TextDelta, TextPart, ToolCallPart, ToolCallRequested, ToolSpec, Usage, UsageReported,
)
from .utils import create_assistant_message_with_tool_calls, inline_remote_images

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class SessionStatus(str, Enum):
    BUILDING = "building"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    TOOL_ROUND_TRIP = "tool_round_trip"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


class CancelPolicy(str, Enum):
    """What happens to already-streamed text when a session is cancelled."""

    PERSIST = "persist"   # store it as an assistant message flagged incomplete
    DISCARD = "discard"   # store nothing


@dataclass(frozen=True)
class SessionOptions:
    max_attempts: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 8.0
    retry_jitter_seconds: float = 0.5
    idle_timeout: float = 60.0
    max_tool_round_trips: int = 8
    cancel_policy: CancelPolicy = CancelPolicy.PERSIST
    event_buffer: int = 32

    @classmethod
    def from_settings(cls, settings: Any) -> "SessionOptions":
        """Build options from a `llmrelay.config.Settings` instance."""
        return cls(
            max_attempts=settings.max_attempts,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            retry_jitter_seconds=settings.retry_jitter_seconds,
            idle_timeout=settings.idle_timeout_seconds,
            max_tool_round_trips=settings.max_tool_round_trips,
            cancel_policy=CancelPolicy(settings.cancel_policy),
            event_buffer=settings.event_buffer,
        )


class CancellationToken:
    """
    Caller-settable cancellation signal.

    Setting it is idempotent and safe from any coroutine on the session's loop.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class PendingToolCall:
    call_id: str
    name: str
    arguments: str = ""

    def to_part(self) -> ToolCallPart:
        try:
            parsed = json.loads(self.arguments) if self.arguments.strip() else {}
        except json.JSONDecodeError:
            LOGGER.warning("Tool call %s (%s) has malformed arguments", self.call_id, self.name)
            parsed = {"_raw": self.arguments}
        if not isinstance(parsed, dict):
            parsed = {"value": parsed}
        return ToolCallPart(call_id=self.call_id, name=self.name, arguments=parsed)


@dataclass
class DispatchResult:
    text: str = ""
    tool_calls: Dict[str, PendingToolCall] = field(default_factory=dict)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RelayError) and exc.retryable


async def _next_event(stream: AsyncIterator[Any]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


class GenerationSession:
    """
    Owns one request/response lifecycle against a resolved provider client.

    Args:
        conversation_id (str): Conversation whose history is loaded and extended.
        client (ResolvedClient): Adapter, model, limits and auth from the ClientRegistry.
        storage (ConversationStore): History source and final-message sink.
        user_message (NormalizedMessage, optional): New user turn appended after
            the loaded history. Omit when the store already holds it.
        invoker (ToolInvoker, optional): Executes tool calls. Without one every
            tool call is answered with an unknown-tool error result.
        accountant (TokenAccountant, optional): Token estimates.
        compactor (HistoryCompactor, optional): Defaults to one over `accountant`.
        options (SessionOptions, optional): Retry, timeout and cancellation policy.
        max_output_tokens (int, optional): Output cap; defaults to the model maximum.
        sampling (SamplingParams, optional): Provider-agnostic sampling parameters.
        tools (Sequence[ToolSpec], optional): Tools advertised to the model.
            Defaults to every tool in the invoker's registry.
        tool_choice (str, optional): "auto", "none", "required" or a tool name.

    Example:
        session = GenerationSession(conversation_id="c1", client=registry.resolve("openai"),
                                    storage=store, user_message=create_message("user", "Hi"))
        async for event in session.run():
            ...
    """

    def __init__(
        self,
        *,
        conversation_id: str,
        client: Any,
        storage: ConversationStore,
        user_message: Optional[NormalizedMessage] = None,
        invoker: Optional[ToolInvoker] = None,
        accountant: Optional[TokenAccountant] = None,
        compactor: Optional[HistoryCompactor] = None,
        options: Optional[SessionOptions] = None,
        max_output_tokens: Optional[int] = None,
        sampling: Optional[SamplingParams] = None,
        tools: Optional[Sequence[ToolSpec]] = None,
        tool_choice: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.conversation_id = conversation_id
        self.client = client
        self.adapter = client.adapter
        self.model: str = client.model
        self.storage = storage
        self.user_message = user_message
        self.invoker = invoker or ToolInvoker()
        self.accountant = accountant or TokenAccountant()
        self.compactor = compactor or HistoryCompactor(self.accountant)
        self.options = options or SessionOptions()
        self.sampling = sampling or SamplingParams()
        self.tools: Tuple[ToolSpec, ...] = tuple(tools) if tools is not None else self.invoker.registry.specs
        self.tool_choice = tool_choice

        limits = client.model_limits
        self.max_output_tokens = min(max_output_tokens or limits.max_output, limits.max_output)

        self.status = SessionStatus.BUILDING
        self.working_history: Tuple[NormalizedMessage, ...] = ()
        self.pending_tool_calls: Dict[str, PendingToolCall] = {}
        self.token_budget: Optional[Budget] = None
        self.usage = Usage()
        self.dispatch_attempts = 0
        self.committed_attempts: List[int] = []
        self.tool_round_trips = 0
        self.warnings: List[str] = []
        self.final_message: Optional[NormalizedMessage] = None
        self.error: Optional[RelayError] = None

        self._token = CancellationToken()
        self._events: "asyncio.Queue[CallerEvent]" = asyncio.Queue(maxsize=max(1, self.options.event_buffer))
        self._streamed_text: List[str] = []
        self._committed_text: List[str] = []
        self._started = False
        self._backoff = wait_exponential(
            multiplier=self.options.retry_min_seconds,
            min=self.options.retry_min_seconds,
            max=self.options.retry_max_seconds,
        ) + wait_random(0, self.options.retry_jitter_seconds)

    # ==========================================================================
    # Public API
    # ==========================================================================

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request cancellation. Observed at the next suspension point."""
        if not self.status.terminal:
            LOGGER.debug("Session %s cancellation requested: %s", self.session_id, reason)
        self._token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    async def run(self) -> AsyncIterator[CallerEvent]:
        """
        Run the turn and yield caller-facing events in order.

        Yields:
            CallerEvent: `delta`, `tool_status`, `usage`, then exactly one of
            `done` or `error`. Nothing is yielded after cancellation.

        Raises:
            RuntimeError: If the session was already run.
        """
        if self._started:
            raise RuntimeError("GenerationSession.run() can only be called once")
        self._started = True

        driver = asyncio.create_task(self._drive(), name=f"llmrelay-session-{self.session_id}")
        try:
            while not self._token.cancelled:
                if driver.done():
                    if self._events.empty():
                        break
                    yield self._events.get_nowait()
                    continue
                getter = asyncio.ensure_future(self._events.get())
                done, _ = await asyncio.wait({getter, driver}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    await asyncio.gather(getter, return_exceptions=True)
                if not getter.cancelled() and not self._token.cancelled:
                    yield getter.result()
            self._drop_queued_events()
            await driver
        finally:
            if not driver.done():
                # Consumer went away; treat like a caller cancellation
                self.cancel("event consumer closed")
                await asyncio.gather(driver, return_exceptions=True)

    # ==========================================================================
    # Driver
    # ==========================================================================

    async def _drive(self) -> None:
        try:
            await self._build()
            while True:
                result = await self._dispatch_with_retry()
                if not result.tool_calls:
                    break
                await self._tool_round_trip(result)
            await self._finalize(result)
        except SessionCancelled:
            await self._on_cancelled()
        except RelayError as exc:
            if self._token.cancelled:
                await self._on_cancelled()
            else:
                await self._fail(exc)
        except asyncio.CancelledError:
            self.status = SessionStatus.CANCELLED
            raise
        except Exception as exc:
            LOGGER.exception("Session %s crashed", self.session_id)
            await self._fail(RelayError(f"{type(exc).__name__}: {exc}"))
            raise

    def _transition(self, status: SessionStatus) -> None:
        if status != self.status:
            LOGGER.debug("Session %s: %s -> %s", self.session_id, self.status.value, status.value)
            self.status = status

    async def _guard(self, awaitable: Awaitable[T], *, timeout: Optional[float] = None) -> T:
        """
        Await `awaitable` unless cancellation or `timeout` comes first.

        Raises:
            SessionCancelled: If the token is set first; the awaitable is cancelled.
            ProviderTransportError: If `timeout` elapses first (idle stream);
                the awaitable is cancelled.
        """
        if self._token.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SessionCancelled(self._token.reason or "cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
            raise
        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        waiter.cancel()
        await asyncio.gather(task, waiter, return_exceptions=True)
        if waiter in done:
            raise SessionCancelled(self._token.reason or "cancelled")
        raise ProviderTransportError(f"no data from {self.adapter.kind} within {timeout}s")

    def _drop_queued_events(self) -> None:
        while not self._events.empty():
            self._events.get_nowait()

    async def _emit(self, event_type: str, **data: Any) -> None:
        if self._token.cancelled:
            return
        await self._guard(self._events.put(CallerEvent(event_type, data)))

    # ==========================================================================
    # Building
    # ==========================================================================

    async def _build(self) -> None:
        self._transition(SessionStatus.BUILDING)
        try:
            history = list(await self._guard(self.storage.load_history(self.conversation_id)))
        except RelayError:
            raise
        except Exception as exc:
            raise StorageError(f"loading history for {self.conversation_id} failed: {exc}") from exc
        if self.user_message is not None:
            history.append(self.user_message)

        self.token_budget = self._budget()
        self._compact(repair_history(history))

    def _budget(self) -> Budget:
        limits = self.client.model_limits
        tool_tokens = self.accountant.estimate_tools(self.tools, self.model) if self.tools else 0
        return Budget(
            model=self.model,
            context_window=limits.context_window,
            reserved_for_output=self.max_output_tokens + tool_tokens,
        )

    def _compact(self, history: Sequence[NormalizedMessage]) -> None:
        result = self.compactor.compact(history, self.token_budget)
        self.working_history = result.messages
        for warning in result.warnings:
            if warning not in self.warnings:
                self.warnings.append(warning)

    def _append(self, message: NormalizedMessage) -> None:
        self.working_history = self.working_history + (message,)

    def _request(self, messages: Tuple[NormalizedMessage, ...]) -> NormalizedRequest:
        return NormalizedRequest(
            model=self.model,
            messages=messages,
            max_output_tokens=self.max_output_tokens,
            sampling=self.sampling,
            tools=self.tools,
            tool_choice=self.tool_choice if self.tools else None,
        )

    # ==========================================================================
    # Dispatching & Streaming
    # ==========================================================================

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.options.max_attempts)),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._before_retry,
            reraise=True,
        )

    def _before_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            "Session %s: attempt %d/%d on %s/%s failed (%s); retrying in %.2fs",
            self.session_id,
            retry_state.attempt_number,
            self.options.max_attempts,
            self.adapter.kind,
            self.model,
            error.kind if isinstance(error, RelayError) else type(error).__name__,
            sleep,
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        delay = self._backoff(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, ProviderRateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)
        return delay

    async def _sleep(self, seconds: float) -> None:
        await self._guard(asyncio.sleep(seconds))

    async def _dispatch_with_retry(self) -> DispatchResult:
        request = self._request(self.working_history)
        result = DispatchResult()
        async for attempt in self._retrying():
            with attempt:
                self.dispatch_attempts += 1
                result = await self._stream_once(request, self.dispatch_attempts)
        self.usage = self.usage + result.usage
        self.committed_attempts.append(self.dispatch_attempts)
        if result.text:
            self._committed_text.append(result.text)
        self._streamed_text = []
        return result

    async def _stream_once(self, request: NormalizedRequest, attempt: int) -> DispatchResult:
        self._transition(SessionStatus.DISPATCHING)
        self._streamed_text = []

        if not self.adapter.capabilities.remote_images and any(
            not image.is_inline for msg in request.messages for image in msg.images
        ):
            try:
                messages = await self._guard(inline_remote_images(request.messages))
            except RelayError:
                raise
            except Exception as exc:
                raise ProviderTransportError(f"could not fetch remote image: {exc}") from exc
            request = self._request(messages)

        wire = self.adapter.build_request(request, self.client.auth_context)
        stream = self.adapter.stream_response(wire)
        result = DispatchResult()
        completed = False
        try:
            while True:
                try:
                    event = await self._guard(_next_event(stream), timeout=self.options.idle_timeout)
                except RelayError:
                    raise
                except Exception as exc:
                    # Adapters should yield Failed; classify anything they raise instead
                    event = self.adapter.map_error(exc)
                if event is _END:
                    break
                if self.status is SessionStatus.DISPATCHING:
                    self._transition(SessionStatus.STREAMING)

                if isinstance(event, TextDelta):
                    if not event.text:
                        continue
                    self._streamed_text.append(event.text)
                    await self._emit("delta", text=event.text, attempt=attempt)
                elif isinstance(event, ToolCallRequested):
                    self._buffer_tool_call(result.tool_calls, event)
                elif isinstance(event, UsageReported):
                    result.usage = result.usage + Usage(event.prompt_tokens, event.completion_tokens)
                elif isinstance(event, Completed):
                    result.finish_reason = event.finish_reason
                    completed = True
                    break
                elif isinstance(event, Failed):
                    raise error_from_kind(
                        event.error_kind,
                        event.message,
                        retryable=event.retryable,
                        retry_after=event.retry_after,
                    )
        finally:
            await stream.aclose()

        if not completed:
            raise ProviderTransportError(f"{self.adapter.kind} stream ended without completion")
        result.text = "".join(self._streamed_text)
        self.pending_tool_calls = dict(result.tool_calls)
        return result

    @staticmethod
    def _buffer_tool_call(calls: Dict[str, PendingToolCall], event: ToolCallRequested) -> None:
        pending = calls.get(event.call_id)
        if pending is None:
            pending = calls[event.call_id] = PendingToolCall(call_id=event.call_id, name=event.name)
        elif event.name and not pending.name:
            pending.name = event.name
        if event.complete:
            pending.arguments = event.arguments
        else:
            pending.arguments += event.arguments

    # ==========================================================================
    # Tool round trips
    # ==========================================================================

    async def _tool_round_trip(self, result: DispatchResult) -> None:
        self._transition(SessionStatus.TOOL_ROUND_TRIP)
        self.tool_round_trips += 1
        if self.tool_round_trips > self.options.max_tool_round_trips:
            raise ToolLoopExceeded(
                f"model requested tools more than {self.options.max_tool_round_trips} times in one turn"
            )

        calls = [pending.to_part() for pending in result.tool_calls.values()]
        self._append(create_assistant_message_with_tool_calls(result.text, calls))

        outcomes = await self._guard(self.invoker.invoke_all(calls, on_status=self._tool_status))
        for outcome in outcomes:
            self._append(outcome.message)
        self.pending_tool_calls.clear()

        if self.accountant.estimate(self.working_history, self.model) > self.token_budget.available:
            LOGGER.debug("Session %s: tool results exceed budget; re-compacting", self.session_id)
            self._compact(self.working_history)

    async def _tool_status(self, call: ToolCallPart, status: str, detail: Optional[str]) -> None:
        data: Dict[str, Any] = {"call_id": call.call_id, "name": call.name, "status": status}
        if detail:
            data["error"] = detail
        await self._emit("tool_status", **data)

    # ==========================================================================
    # Terminal states
    # ==========================================================================

    async def _persist(self, message: NormalizedMessage) -> None:
        try:
            await self.storage.persist_final_message(self.conversation_id, message, self.usage)
        except RelayError:
            raise
        except Exception as exc:
            raise StorageError(f"persisting reply to {self.conversation_id} failed: {exc}") from exc

    async def _finalize(self, result: DispatchResult) -> None:
        self._transition(SessionStatus.FINALIZING)
        # Text streamed ahead of earlier tool calls is part of the reply
        text = "".join(self._committed_text)
        self._append(NormalizedMessage(role="assistant", content=(TextPart(result.text),)))
        message = NormalizedMessage(role="assistant", content=(TextPart(text),))
        self.final_message = message

        persisted = True
        try:
            await self._guard(self._persist(message))
        except StorageError as exc:
            persisted = False
            warning = f"{exc.kind}: {exc.message}"
            self.warnings.append(warning)
            LOGGER.warning("Session %s: final message not persisted: %s", self.session_id, exc.message)

        self._transition(SessionStatus.COMPLETED)
        await self._emit("usage", **self.usage.as_dict())
        await self._emit(
            "done",
            text=text,
            finish_reason=result.finish_reason,
            usage=self.usage.as_dict(),
            attempts=self.dispatch_attempts,
            committed_attempts=list(self.committed_attempts),
            persisted=persisted,
            warnings=list(self.warnings),
        )

    async def _fail(self, error: RelayError) -> None:
        self.error = error
        self.pending_tool_calls.clear()
        self._transition(SessionStatus.FAILED)
        LOGGER.debug("Session %s failed: %s", self.session_id, error.kind)
        await self._emit(
            "error",
            kind=error.kind,
            message=error.message,
            retryable=False,
            attempts=self.dispatch_attempts,
        )

    async def _on_cancelled(self) -> None:
        self._transition(SessionStatus.CANCELLED)
        self.pending_tool_calls.clear()
        # Events not yet delivered are dropped; the caller sees nothing further
        self._drop_queued_events()

        partial = "".join(self._committed_text + self._streamed_text)
        if self.options.cancel_policy is not CancelPolicy.PERSIST or not partial:
            return
        message = NormalizedMessage(role="assistant", content=(TextPart(partial),), incomplete=True)
        self.final_message = message
        try:
            await self._persist(message)
        except StorageError as exc:
            LOGGER.warning("Session %s: partial message not persisted: %s", self.session_id, exc.message)

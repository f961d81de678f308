import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from .base import SAMPLING_FIELDS, ProviderAdapter, ProviderCapabilities, failed_from_error, retry_after_seconds
from ..errors import ProviderError, ProviderTransportError
from ..types import (
    AuthContext, Completed, Failed, ImagePart, NormalizedMessage, NormalizedRequest,
    ProviderWireRequest, StreamEvent, TextDelta, TextPart, ToolCallRequested, ToolResultPart,
    UsageReported,
)

LOGGER = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
}


class OpenAIAdapter(ProviderAdapter):
    """
    Adapter for the OpenAI Chat Completions API.
    """

    kind = "openai"
    capabilities = ProviderCapabilities(
        system_placement="inline",
        remote_images=True,
        images=True,
        tools=True,
        sampling=SAMPLING_FIELDS - {"top_k"},
    )
    # Newer OpenAI models reject `max_tokens`
    max_tokens_field = "max_completion_tokens"
    include_usage = True

    def _create_client(self, auth: AuthContext) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=auth.api_key, base_url=auth.base_url)

    def build_request(self, request: NormalizedRequest, auth: AuthContext) -> ProviderWireRequest:
        """
        Encode a request as Chat Completions keyword arguments.

        Handles:
        - Tool results (one "tool" message per result).
        - Assistant messages with tool calls (JSON-encoded arguments).
        - Multimodal content (text + image_url parts).
        - Sampling parameters (top_k is not supported and dropped).
        """
        self._check_tools(request)
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": self._convert_messages(request.messages),
            self.max_tokens_field: request.max_output_tokens,
            "stream": True,
        }
        if self.include_usage:
            payload["stream_options"] = {"include_usage": True}
        payload.update(self._sampling(request))

        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": dict(tool.parameter_schema),
                    },
                }
                for tool in request.tools
            ]
            if request.tool_choice in ("auto", "none", "required"):
                payload["tool_choice"] = request.tool_choice
            elif request.tool_choice:
                payload["tool_choice"] = {"type": "function", "function": {"name": request.tool_choice}}

        return ProviderWireRequest(provider=self.kind, model=request.model, payload=payload, auth=auth)

    def _convert_messages(self, messages) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                # OpenAI expects each result as its own message
                for result in msg.tool_results:
                    converted.append({
                        "role": "tool",
                        "tool_call_id": result.call_id,
                        "content": result.content,
                    })
                continue

            if msg.role == "assistant" and msg.tool_calls:
                converted.append({
                    "role": "assistant",
                    "content": msg.text or None,
                    "tool_calls": [
                        {
                            "id": tc.call_id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
                continue

            entry: Dict[str, Any] = {"role": msg.role, "content": self._convert_content(msg)}
            if msg.name:
                entry["name"] = msg.name
            converted.append(entry)
        return converted

    def _convert_content(self, msg: NormalizedMessage) -> Any:
        # Plain text stays a string; only multimodal content becomes a part list
        if not msg.images or msg.role != "user":
            return msg.text

        parts: List[Dict[str, Any]] = []
        for part in msg.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                image_url: Dict[str, Any] = {"url": part.url}
                if part.detail:
                    image_url["detail"] = part.detail
                parts.append({"type": "image_url", "image_url": image_url})
        return parts

    async def stream_response(self, wire: ProviderWireRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat completion.

        Tool call deltas arrive keyed by index; only the first fragment of a
        call carries its id and name, so they are remembered per index.
        """
        client = self.client_for(wire.auth)
        try:
            stream = await client.chat.completions.create(**wire.payload)
        except Exception as exc:
            yield self.map_error(exc)
            return

        calls: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        try:
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    yield UsageReported(
                        prompt_tokens=usage.prompt_tokens or 0,
                        completion_tokens=usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None:
                    if delta.content:
                        yield TextDelta(delta.content)
                    for tc in delta.tool_calls or []:
                        index = tc.index if tc.index is not None else len(calls)
                        slot = calls.setdefault(index, {"id": "", "name": ""})
                        if tc.id:
                            slot["id"] = tc.id
                        fn = tc.function
                        if fn is not None and fn.name:
                            slot["name"] = fn.name
                        yield ToolCallRequested(
                            call_id=slot["id"] or f"call_{index}",
                            name=slot["name"],
                            arguments=(fn.arguments or "") if fn is not None else "",
                        )
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except Exception as exc:
            yield self.map_error(exc)
            return
        finally:
            await stream.close()

        yield Completed(self.finish_reason(finish_reason, _FINISH_REASONS))

    def map_error(self, error: BaseException) -> Failed:
        if isinstance(error, APIStatusError):
            return self.failed_from_status(
                error.status_code,
                error.message,
                retry_after=retry_after_seconds(error.response.headers),
            )
        if isinstance(error, APIConnectionError):
            return failed_from_error(ProviderTransportError(f"{type(error).__name__}: {error}"))
        return self.failed_from_transport(error) or failed_from_error(ProviderError(str(error)))

    async def list_models(self, auth: AuthContext) -> List[str]:
        try:
            models = await self.client_for(auth).models.list()
            return [m.id for m in models.data]
        except Exception as exc:
            LOGGER.debug("%s model listing failed: %s", self.kind, exc)
            return []

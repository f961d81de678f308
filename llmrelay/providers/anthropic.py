import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic

from .base import ProviderAdapter, ProviderCapabilities, failed_from_error, retry_after_seconds
from ..errors import ProviderError, ProviderTransportError
from ..types import (
    AuthContext, Completed, Failed, ImagePart, NormalizedMessage, NormalizedRequest,
    ProviderWireRequest, StreamEvent, TextDelta, TextPart, ToolCallPart, ToolCallRequested,
    ToolResultPart, UsageReported,
)
from ..utils import parse_data_uri

LOGGER = logging.getLogger(__name__)

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}


class AnthropicAdapter(ProviderAdapter):
    """
    Adapter for the Anthropic Messages API.
    """

    kind = "anthropic"
    capabilities = ProviderCapabilities(
        system_placement="top_level",
        remote_images=True,
        images=True,
        tools=True,
        sampling=frozenset({"temperature", "top_p", "top_k", "stop"}),
    )

    def _create_client(self, auth: AuthContext) -> AsyncAnthropic:
        return AsyncAnthropic(api_key=auth.api_key, base_url=auth.base_url)

    def build_request(self, request: NormalizedRequest, auth: AuthContext) -> ProviderWireRequest:
        """
        Encode a request for `messages.create(stream=True)`.

        Anthropic differs from OpenAI in that:
        - System prompts are a top-level `system` parameter.
        - Tool results are `tool_result` blocks inside a user message.
        - Roles must alternate, so consecutive same-role messages are merged.
        - Tools use `input_schema` instead of `parameters`.
        """
        self._check_tools(request)
        system_text, rest = self.split_system(request.messages)

        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": self._convert_messages(rest),
            "max_tokens": request.max_output_tokens,
            "stream": True,
        }
        if system_text:
            payload["system"] = system_text

        sampling = self._sampling(request)
        if "stop" in sampling:
            sampling["stop_sequences"] = sampling.pop("stop")
        payload.update(sampling)

        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": dict(tool.parameter_schema),
                }
                for tool in request.tools
            ]
            choice = request.tool_choice
            if choice == "auto":
                payload["tool_choice"] = {"type": "auto"}
            elif choice == "none":
                payload["tool_choice"] = {"type": "none"}
            elif choice == "required":
                payload["tool_choice"] = {"type": "any"}
            elif choice:
                payload["tool_choice"] = {"type": "tool", "name": choice}

        return ProviderWireRequest(provider=self.kind, model=request.model, payload=payload, auth=auth)

    def _convert_messages(self, messages: List[NormalizedMessage]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            role = "assistant" if msg.role == "assistant" else "user"
            blocks = [b for b in (self._convert_part(p) for p in msg.content) if b is not None]
            if not blocks:
                continue
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})
        return converted

    @staticmethod
    def _convert_part(part) -> Optional[Dict[str, Any]]:
        if isinstance(part, TextPart):
            # Empty text blocks are rejected by the API
            return {"type": "text", "text": part.text} if part.text else None
        if isinstance(part, ImagePart):
            if part.is_inline:
                data, media_type = parse_data_uri(part.url)
                source = {"type": "base64", "media_type": media_type, "data": data}
            else:
                source = {"type": "url", "url": part.url}
            return {"type": "image", "source": source}
        if isinstance(part, ToolCallPart):
            return {"type": "tool_use", "id": part.call_id, "name": part.name, "input": part.arguments}
        if isinstance(part, ToolResultPart):
            block: Dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.call_id,
                "content": part.content,
            }
            if part.is_error:
                block["is_error"] = True
            return block
        return None

    async def stream_response(self, wire: ProviderWireRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream raw Messages API events.

        Input token usage arrives on `message_start`, output usage and the
        stop reason on `message_delta`.
        """
        client = self.client_for(wire.auth)
        try:
            stream = await client.messages.create(**wire.payload)
        except Exception as exc:
            yield self.map_error(exc)
            return

        blocks: Dict[int, Dict[str, str]] = {}
        prompt_tokens = completion_tokens = 0
        stop_reason: Optional[str] = None
        try:
            async for event in stream:
                event_type = getattr(event, "type", None)
                if event_type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    if usage is not None:
                        prompt_tokens = usage.input_tokens or 0
                elif event_type == "content_block_start":
                    block = event.content_block
                    if getattr(block, "type", None) == "tool_use":
                        blocks[event.index] = {"id": block.id, "name": block.name}
                        yield ToolCallRequested(call_id=block.id, name=block.name)
                elif event_type == "content_block_delta":
                    delta = event.delta
                    delta_type = getattr(delta, "type", None)
                    if delta_type == "text_delta" and delta.text:
                        yield TextDelta(delta.text)
                    elif delta_type == "input_json_delta" and event.index in blocks:
                        tool = blocks[event.index]
                        yield ToolCallRequested(
                            call_id=tool["id"], name=tool["name"], arguments=delta.partial_json or ""
                        )
                elif event_type == "message_delta":
                    stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
                    usage = getattr(event, "usage", None)
                    if usage is not None:
                        completion_tokens = usage.output_tokens or 0
        except Exception as exc:
            yield self.map_error(exc)
            return
        finally:
            await stream.close()

        yield UsageReported(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        yield Completed(self.finish_reason(stop_reason, _STOP_REASONS))

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
            LOGGER.debug("anthropic model listing failed: %s", exc)
            return []

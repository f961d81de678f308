import asyncio
import base64
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from .base import ProviderAdapter, ProviderCapabilities, failed_from_error
from ..errors import (
    ProviderAuthenticationError, ProviderError, ProviderRateLimited,
    ProviderTransportError, ProviderValidationError,
)
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
    "guardrail_intervened": "content_filter",
    "content_filtered": "content_filter",
}

# Error codes used both by ClientError responses and by in-stream exception events
_ERROR_CODES = {
    "ThrottlingException": ProviderRateLimited,
    "throttlingException": ProviderRateLimited,
    "ServiceUnavailableException": ProviderTransportError,
    "serviceUnavailableException": ProviderTransportError,
    "InternalServerException": ProviderTransportError,
    "internalServerException": ProviderTransportError,
    "ModelTimeoutException": ProviderTransportError,
    "modelStreamErrorException": ProviderTransportError,
    "ModelNotReadyException": ProviderTransportError,
    "ValidationException": ProviderValidationError,
    "validationException": ProviderValidationError,
    "ResourceNotFoundException": ProviderValidationError,
    "ModelErrorException": ProviderValidationError,
    "AccessDeniedException": ProviderAuthenticationError,
    "UnrecognizedClientException": ProviderAuthenticationError,
    "ExpiredTokenException": ProviderAuthenticationError,
}

_IMAGE_FORMATS = {"image/png": "png", "image/jpeg": "jpeg", "image/gif": "gif", "image/webp": "webp"}

_DONE = object()


class BedrockAdapter(ProviderAdapter):
    """
    Adapter for the Amazon Bedrock Converse API (boto3 `converse_stream`).

    boto3 is synchronous, so opening the stream and reading each event run in
    a worker thread; the event loop only awaits.
    """

    kind = "bedrock"
    capabilities = ProviderCapabilities(
        system_placement="top_level",
        remote_images=False,
        images=True,
        tools=True,
        sampling=frozenset({"temperature", "top_p", "stop"}),
    )

    def _create_client(self, auth: AuthContext) -> Any:
        kwargs: Dict[str, Any] = {"region_name": auth.region}
        if auth.base_url:
            kwargs["endpoint_url"] = auth.base_url
        # Explicit keys are optional; without them boto3 uses its default chain
        if auth.extra.get("aws_access_key_id"):
            kwargs["aws_access_key_id"] = auth.extra["aws_access_key_id"]
            kwargs["aws_secret_access_key"] = auth.api_key
            if auth.extra.get("aws_session_token"):
                kwargs["aws_session_token"] = auth.extra["aws_session_token"]
        return boto3.client("bedrock-runtime", **kwargs)

    def build_request(self, request: NormalizedRequest, auth: AuthContext) -> ProviderWireRequest:
        """
        Encode a request as `converse_stream` keyword arguments.
        """
        self._check_tools(request)
        system_text, rest = self.split_system(request.messages)

        inference: Dict[str, Any] = {"maxTokens": request.max_output_tokens}
        sampling = self._sampling(request)
        renamed = {"temperature": "temperature", "top_p": "topP", "stop": "stopSequences"}
        for key, value in sampling.items():
            inference[renamed[key]] = value

        payload: Dict[str, Any] = {
            "modelId": request.model,
            "messages": self._convert_messages(rest),
            "inferenceConfig": inference,
        }
        if system_text:
            payload["system"] = [{"text": system_text}]

        if request.tools:
            tool_config: Dict[str, Any] = {
                "tools": [
                    {
                        "toolSpec": {
                            "name": tool.name,
                            "description": tool.description or tool.name,
                            "inputSchema": {"json": dict(tool.parameter_schema)},
                        }
                    }
                    for tool in request.tools
                ]
            }
            choice = request.tool_choice
            if choice == "auto":
                tool_config["toolChoice"] = {"auto": {}}
            elif choice == "required":
                tool_config["toolChoice"] = {"any": {}}
            elif choice and choice != "none":
                tool_config["toolChoice"] = {"tool": {"name": choice}}
            elif choice == "none":
                # Converse has no "none"; tools must stay declared while history holds toolUse blocks
                LOGGER.debug("bedrock has no tool_choice=none; falling back to auto")
            payload["toolConfig"] = tool_config

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
            return {"text": part.text} if part.text else None
        if isinstance(part, ImagePart):
            data, mime_type = parse_data_uri(part.url)
            return {
                "image": {
                    "format": _IMAGE_FORMATS.get(mime_type, "jpeg"),
                    "source": {"bytes": base64.b64decode(data)},
                }
            }
        if isinstance(part, ToolCallPart):
            return {"toolUse": {"toolUseId": part.call_id, "name": part.name, "input": part.arguments}}
        if isinstance(part, ToolResultPart):
            return {
                "toolResult": {
                    "toolUseId": part.call_id,
                    "content": [{"text": part.content}],
                    "status": "error" if part.is_error else "success",
                }
            }
        return None

    async def stream_response(self, wire: ProviderWireRequest) -> AsyncIterator[StreamEvent]:
        client = self.client_for(wire.auth)
        try:
            response = await asyncio.to_thread(client.converse_stream, **wire.payload)
        except Exception as exc:
            yield self.map_error(exc)
            return

        stream = response["stream"]
        events = iter(stream)
        blocks: Dict[int, Dict[str, str]] = {}
        stop_reason: Optional[str] = None
        try:
            while True:
                event = await asyncio.to_thread(next, events, _DONE)
                if event is _DONE:
                    break
                if "contentBlockStart" in event:
                    start = event["contentBlockStart"]
                    tool = start.get("start", {}).get("toolUse")
                    if tool:
                        blocks[start["contentBlockIndex"]] = {"id": tool["toolUseId"], "name": tool["name"]}
                        yield ToolCallRequested(call_id=tool["toolUseId"], name=tool["name"])
                elif "contentBlockDelta" in event:
                    block = event["contentBlockDelta"]
                    delta = block.get("delta", {})
                    if delta.get("text"):
                        yield TextDelta(delta["text"])
                    elif "toolUse" in delta and block.get("contentBlockIndex") in blocks:
                        tool = blocks[block["contentBlockIndex"]]
                        yield ToolCallRequested(
                            call_id=tool["id"], name=tool["name"], arguments=delta["toolUse"].get("input", "")
                        )
                elif "messageStop" in event:
                    stop_reason = event["messageStop"].get("stopReason")
                elif "metadata" in event:
                    usage = event["metadata"].get("usage", {})
                    yield UsageReported(
                        prompt_tokens=usage.get("inputTokens", 0),
                        completion_tokens=usage.get("outputTokens", 0),
                    )
                else:
                    failure = self._stream_exception(event)
                    if failure is not None:
                        yield failure
                        return
        except Exception as exc:
            yield self.map_error(exc)
            return
        finally:
            stream.close()

        yield Completed(self.finish_reason(stop_reason, _STOP_REASONS))

    @staticmethod
    def _stream_exception(event: Dict[str, Any]) -> Optional[Failed]:
        for code, detail in event.items():
            cls = _ERROR_CODES.get(code)
            if cls is not None:
                message = detail.get("message", code) if isinstance(detail, dict) else str(detail)
                return failed_from_error(cls(message))
        return None

    def map_error(self, error: BaseException) -> Failed:
        if isinstance(error, ClientError):
            info = error.response.get("Error", {})
            code = info.get("Code", "")
            message = info.get("Message") or str(error)
            cls = _ERROR_CODES.get(code)
            if cls is not None:
                return failed_from_error(cls(message))
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            return self.failed_from_status(status, message)
        if isinstance(error, NoCredentialsError):
            return failed_from_error(ProviderAuthenticationError(str(error)))
        if isinstance(error, BotoCoreError):
            # EndpointConnectionError, ReadTimeoutError, ConnectTimeoutError, ...
            return failed_from_error(ProviderTransportError(f"{type(error).__name__}: {error}"))
        return self.failed_from_transport(error) or failed_from_error(ProviderError(str(error)))

    async def list_models(self, auth: AuthContext) -> List[str]:
        def _list() -> List[str]:
            control = boto3.client("bedrock", region_name=auth.region)
            summaries = control.list_foundation_models().get("modelSummaries", [])
            return [m["modelId"] for m in summaries]

        try:
            return await asyncio.to_thread(_list)
        except Exception as exc:
            LOGGER.debug("bedrock model listing failed: %s", exc)
            return []

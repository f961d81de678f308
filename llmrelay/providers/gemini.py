import base64
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from google import genai
from google.genai import errors as genai_errors

from .base import SAMPLING_FIELDS, ProviderAdapter, ProviderCapabilities, failed_from_error
from ..errors import ProviderError
from ..types import (
    AuthContext, Completed, Failed, ImagePart, NormalizedMessage, NormalizedRequest,
    ProviderWireRequest, StreamEvent, TextDelta, TextPart, ToolCallPart, ToolCallRequested,
    ToolResultPart, UsageReported,
)
from ..utils import parse_data_uri

LOGGER = logging.getLogger(__name__)

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "BLOCKLIST": "content_filter",
    "SPII": "content_filter",
    "MALFORMED_FUNCTION_CALL": "error",
}

_TOOL_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}


class GeminiAdapter(ProviderAdapter):
    """
    Adapter for the Google Gemini API (google-genai SDK).
    """

    kind = "gemini"
    capabilities = ProviderCapabilities(
        system_placement="top_level",
        remote_images=False,
        images=True,
        tools=True,
        sampling=SAMPLING_FIELDS,
    )

    def _create_client(self, auth: AuthContext) -> genai.Client:
        return genai.Client(api_key=auth.api_key)

    def build_request(self, request: NormalizedRequest, auth: AuthContext) -> ProviderWireRequest:
        """
        Encode a request for `client.aio.models.generate_content_stream`.

        Handles:
        - Role mapping (assistant -> model, tool -> user).
        - System prompt as `config.system_instruction`.
        - Function calls/responses as `function_call` / `function_response` parts.
        - Tool choice via `tool_config.function_calling_config`.
        """
        self._check_tools(request)
        system_text, rest = self.split_system(request.messages)

        config: Dict[str, Any] = {"max_output_tokens": request.max_output_tokens}
        if system_text:
            config["system_instruction"] = system_text
        sampling = self._sampling(request)
        if "stop" in sampling:
            sampling["stop_sequences"] = sampling.pop("stop")
        config.update(sampling)

        if request.tools:
            config["tools"] = [{
                "function_declarations": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": dict(tool.parameter_schema),
                    }
                    for tool in request.tools
                ]
            }]
            choice = request.tool_choice
            if choice in _TOOL_MODES:
                config["tool_config"] = {"function_calling_config": {"mode": _TOOL_MODES[choice]}}
            elif choice:
                config["tool_config"] = {
                    "function_calling_config": {"mode": "ANY", "allowed_function_names": [choice]}
                }

        payload = {
            "model": request.model,
            "contents": self._convert_messages(rest, self.tool_names_by_call(request.messages)),
            "config": config,
        }
        return ProviderWireRequest(provider=self.kind, model=request.model, payload=payload, auth=auth)

    def _convert_messages(
        self,
        messages: List[NormalizedMessage],
        call_names: Dict[str, str],
    ) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = []
        for msg in messages:
            role = "model" if msg.role == "assistant" else "user"
            parts = [p for p in (self._convert_part(part, call_names) for part in msg.content) if p is not None]
            if not parts:
                continue
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})
        return contents

    @staticmethod
    def _convert_part(part, call_names: Dict[str, str]) -> Optional[Dict[str, Any]]:
        if isinstance(part, TextPart):
            return {"text": part.text} if part.text else None
        if isinstance(part, ImagePart):
            # Remote URLs were inlined by the session; Gemini cannot fetch them
            data, mime_type = parse_data_uri(part.url)
            return {"inline_data": {"mime_type": mime_type, "data": base64.b64decode(data)}}
        if isinstance(part, ToolCallPart):
            return {"function_call": {"id": part.call_id, "name": part.name, "args": part.arguments}}
        if isinstance(part, ToolResultPart):
            key = "error" if part.is_error else "result"
            return {
                "function_response": {
                    "id": part.call_id,
                    "name": part.name or call_names.get(part.call_id, ""),
                    "response": {key: part.content},
                }
            }
        return None

    async def stream_response(self, wire: ProviderWireRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream generate_content chunks.

        Gemini delivers each function call whole, so calls are emitted with
        `complete=True`. It does not always provide call ids; missing ones
        are synthesized from the name and position.
        """
        client = self.client_for(wire.auth)
        try:
            stream = await client.aio.models.generate_content_stream(**wire.payload)
        except Exception as exc:
            yield self.map_error(exc)
            return

        usage = None
        finish: Optional[str] = None
        call_count = 0
        try:
            async for chunk in stream:
                if getattr(chunk, "usage_metadata", None) is not None:
                    usage = chunk.usage_metadata
                for candidate in (chunk.candidates or [])[:1]:
                    if candidate.finish_reason is not None:
                        finish = getattr(candidate.finish_reason, "name", str(candidate.finish_reason))
                    content = candidate.content
                    for part in (content.parts if content and content.parts else []):
                        if part.function_call is not None:
                            fc = part.function_call
                            call_id = fc.id or f"gemini_{fc.name}_{call_count}"
                            call_count += 1
                            yield ToolCallRequested(
                                call_id=call_id,
                                name=fc.name or "",
                                arguments=json.dumps(dict(fc.args or {})),
                                complete=True,
                            )
                        elif part.text and not getattr(part, "thought", False):
                            yield TextDelta(part.text)
        except Exception as exc:
            yield self.map_error(exc)
            return
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()

        if usage is not None:
            yield UsageReported(
                prompt_tokens=usage.prompt_token_count or 0,
                completion_tokens=usage.candidates_token_count or 0,
            )
        reason = "tool_calls" if call_count else self.finish_reason(finish, _FINISH_REASONS)
        yield Completed(reason)

    def map_error(self, error: BaseException) -> Failed:
        if isinstance(error, genai_errors.APIError):
            return self.failed_from_status(error.code, error.message or str(error))
        return self.failed_from_transport(error) or failed_from_error(ProviderError(str(error)))

    async def list_models(self, auth: AuthContext) -> List[str]:
        try:
            names = []
            async for m in await self.client_for(auth).aio.models.list():
                actions = getattr(m, "supported_actions", None)
                if not actions or "generateContent" in actions:
                    names.append(m.name)
            return names
        except Exception as exc:
            LOGGER.debug("gemini model listing failed: %s", exc)
            return []

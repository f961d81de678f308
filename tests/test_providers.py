import json
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from botocore.exceptions import ClientError, EndpointConnectionError

from conftest import text_message
from llmrelay.errors import ConfigurationError, ProviderValidationError
from llmrelay.providers import (
    AnthropicAdapter, BedrockAdapter, GeminiAdapter, OpenAIAdapter, OpenAICompatibleAdapter, ProviderCapabilities,
    create_adapter,
)
from llmrelay.types import (
    AuthContext, Completed, Failed, ImagePart, NormalizedMessage, NormalizedRequest, SamplingParams,
    TextDelta, TextPart, ToolCallPart, ToolCallRequested, ToolResultPart, ToolSpec, UsageReported,
)

PNG_URI = "data:image/png;base64,aGVsbG8="  # b"hello"
AUTH = AuthContext(api_key="sk-test")


class FakeStream:
    """Async SDK stream replaying fixed chunks."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True

    async def aclose(self):
        self.closed = True


class FakeEventStream:
    """Synchronous boto3 event stream."""

    def __init__(self, events):
        self.events = list(events)
        self.closed = False

    def __iter__(self):
        return iter(self.events)

    def close(self):
        self.closed = True


def tool_history():
    return (
        text_message("system", "be brief"),
        text_message("user", "weather?"),
        NormalizedMessage("assistant", (ToolCallPart("c1", "get_weather", {"city": "Oslo"}),)),
        NormalizedMessage("tool", (ToolResultPart("c1", "rainy", name="get_weather"),)),
    )


def request(messages, **kwargs):
    return NormalizedRequest(model="test-model", messages=tuple(messages), **kwargs)


WEATHER = ToolSpec("get_weather", "Weather for a city", {"type": "object", "properties": {"city": {"type": "string"}}})


async def collect(stream):
    return [event async for event in stream]


def status_error(cls, status, headers=None):
    response = httpx.Response(status, headers=headers or {}, request=httpx.Request("POST", "https://api.test"))
    return cls("boom", response=response, body=None)


class TestCreateAdapter:
    @pytest.mark.parametrize("tag, cls", [
        ("openai", OpenAIAdapter),
        ("Claude", AnthropicAdapter),
        ("google", GeminiAdapter),
        ("bedrock", BedrockAdapter),
        ("deepseek", OpenAICompatibleAdapter),
    ])
    def test_known_tags(self, tag, cls):
        assert isinstance(create_adapter(tag), cls)

    def test_unknown_tag(self):
        with pytest.raises(ConfigurationError, match="Unknown provider"):
            create_adapter("cohere-direct")


class TestOpenAIAdapter:
    def test_build_request_tool_messages(self):
        wire = OpenAIAdapter().build_request(request(tool_history()), AUTH)
        messages = wire.payload["messages"]

        assert messages[0] == {"role": "system", "content": "be brief"}
        assert messages[2]["tool_calls"][0]["function"] == {
            "name": "get_weather", "arguments": json.dumps({"city": "Oslo"})
        }
        assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "rainy"}
        assert wire.payload["stream_options"] == {"include_usage": True}
        assert wire.payload["max_completion_tokens"] == 1024

    def test_sampling_and_tool_choice(self):
        req = request(
            [text_message("user", "hi")],
            sampling=SamplingParams(temperature=0.2, top_k=5),
            tools=(WEATHER,),
            tool_choice="get_weather",
        )
        payload = OpenAIAdapter().build_request(req, AUTH).payload

        assert payload["temperature"] == 0.2
        assert "top_k" not in payload
        assert payload["tools"][0]["function"]["name"] == "get_weather"
        assert payload["tool_choice"] == {"type": "function", "function": {"name": "get_weather"}}

    def test_multimodal_content(self):
        msg = NormalizedMessage("user", (TextPart("what is it?"), ImagePart("https://x.test/cat.png", detail="low")))
        payload = OpenAIAdapter().build_request(request([msg]), AUTH).payload
        assert payload["messages"][0]["content"] == [
            {"type": "text", "text": "what is it?"},
            {"type": "image_url", "image_url": {"url": "https://x.test/cat.png", "detail": "low"}},
        ]

    @pytest.mark.asyncio
    async def test_stream_maps_chunks(self):
        def chunk(content=None, tool_calls=None, finish=None, usage=None):
            choices = [] if usage else [SimpleNamespace(
                delta=SimpleNamespace(content=content, tool_calls=tool_calls), finish_reason=finish
            )]
            return SimpleNamespace(choices=choices, usage=usage)

        def tool_delta(index, id=None, name=None, arguments=None):
            return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))

        stream = FakeStream([
            chunk(content="Hel"),
            chunk(content="lo"),
            chunk(tool_calls=[tool_delta(0, id="call_a", name="get_weather", arguments='{"ci')]),
            chunk(tool_calls=[tool_delta(0, arguments='ty": "Oslo"}')]),
            chunk(finish="tool_calls"),
            chunk(usage=SimpleNamespace(prompt_tokens=12, completion_tokens=7)),
        ])
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=stream)
        adapter = OpenAIAdapter(client=client)

        events = await collect(adapter.stream_response(adapter.build_request(request([text_message("user", "hi")]), AUTH)))

        assert events == [
            TextDelta("Hel"),
            TextDelta("lo"),
            ToolCallRequested("call_a", "get_weather", '{"ci'),
            ToolCallRequested("call_a", "get_weather", 'ty": "Oslo"}'),
            UsageReported(12, 7),
            Completed("tool_calls"),
        ]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_open_failure_becomes_failed_event(self):
        from openai import RateLimitError

        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            side_effect=status_error(RateLimitError, 429, {"retry-after": "3"})
        )
        adapter = OpenAIAdapter(client=client)

        events = await collect(adapter.stream_response(adapter.build_request(request([text_message("user", "hi")]), AUTH)))

        assert len(events) == 1
        assert events[0].error_kind == "ProviderRateLimited"
        assert events[0].retryable
        assert events[0].retry_after == 3.0

    @pytest.mark.asyncio
    async def test_mid_stream_failure(self):
        stream = FakeStream(
            [SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="par", tool_calls=None),
                                                      finish_reason=None)], usage=None)],
            error=httpx.ReadTimeout("read timed out"),
        )
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=stream)
        adapter = OpenAIAdapter(client=client)

        events = await collect(adapter.stream_response(adapter.build_request(request([text_message("user", "hi")]), AUTH)))

        assert events[0] == TextDelta("par")
        assert events[-1].error_kind == "ProviderTransportError"
        assert events[-1].retryable
        assert stream.closed

    @pytest.mark.parametrize("status, kind, retryable", [
        (429, "ProviderRateLimited", True),
        (500, "ProviderTransportError", True),
        (529, "ProviderTransportError", True),
        (401, "ProviderAuthenticationError", False),
        (400, "ProviderValidationError", False),
    ])
    def test_status_classification(self, status, kind, retryable):
        failed = OpenAIAdapter().failed_from_status(status, "nope")
        assert failed.error_kind == kind
        assert failed.retryable is retryable

    def test_map_error_reads_retry_after_ms(self):
        from openai import APIStatusError

        failed = OpenAIAdapter().map_error(status_error(APIStatusError, 429, {"retry-after-ms": "1500"}))
        assert failed.retry_after == 1.5

    def test_tools_rejected_without_capability(self):
        class NoTools(OpenAIAdapter):
            capabilities = ProviderCapabilities(
                system_placement="inline", remote_images=True, images=True, tools=False, sampling=frozenset()
            )

        with pytest.raises(ProviderValidationError):
            NoTools().build_request(request([text_message("user", "hi")], tools=(WEATHER,)), AUTH)


class TestOpenAICompatibleAdapter:
    def test_max_tokens_and_usage_opt_in(self):
        adapter = OpenAICompatibleAdapter()
        plain = adapter.build_request(request([text_message("user", "hi")]), AUTH).payload
        opted = adapter.build_request(
            request([text_message("user", "hi")]), AuthContext(extra={"include_usage": True})
        ).payload

        assert plain["max_tokens"] == 1024
        assert "max_completion_tokens" not in plain
        assert "stream_options" not in plain
        assert opted["stream_options"] == {"include_usage": True}

    @patch("llmrelay.providers.compatible.AsyncOpenAI")
    def test_keyless_client(self, mock_openai_cls):
        adapter = OpenAICompatibleAdapter(default_base_url="http://localhost:11434/v1")
        adapter.client_for(AuthContext())
        mock_openai_cls.assert_called_once_with(api_key="EMPTY", base_url="http://localhost:11434/v1")


class TestAnthropicAdapter:
    def test_system_top_level_and_tool_result(self):
        history = tool_history()[:3] + (
            NormalizedMessage("tool", (ToolResultPart("c1", "no data", is_error=True),)),
            text_message("user", "and tomorrow?"),
        )
        req = request(history, sampling=SamplingParams(stop=("END",), seed=1))
        payload = AnthropicAdapter().build_request(req, AUTH).payload

        assert payload["system"] == "be brief"
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
        assert payload["messages"][1]["content"][0] == {
            "type": "tool_use", "id": "c1", "name": "get_weather", "input": {"city": "Oslo"}
        }
        merged = payload["messages"][2]["content"]
        assert merged[0] == {"type": "tool_result", "tool_use_id": "c1", "content": "no data", "is_error": True}
        assert merged[1] == {"type": "text", "text": "and tomorrow?"}
        assert payload["stop_sequences"] == ["END"]
        assert "seed" not in payload

    def test_images_and_tool_choice(self):
        msg = NormalizedMessage("user", (ImagePart(PNG_URI), ImagePart("https://x.test/a.jpg")))
        payload = AnthropicAdapter().build_request(
            request([msg], tools=(WEATHER,), tool_choice="required"), AUTH
        ).payload

        blocks = payload["messages"][0]["content"]
        assert blocks[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "aGVsbG8="}
        assert blocks[1]["source"] == {"type": "url", "url": "https://x.test/a.jpg"}
        assert payload["tool_choice"] == {"type": "any"}
        assert payload["tools"][0]["input_schema"]["properties"]["city"] == {"type": "string"}

    @pytest.mark.asyncio
    async def test_stream_maps_events(self):
        ns = SimpleNamespace
        stream = FakeStream([
            ns(type="message_start", message=ns(usage=ns(input_tokens=20))),
            ns(type="content_block_start", index=0, content_block=ns(type="text")),
            ns(type="content_block_delta", index=0, delta=ns(type="text_delta", text="Checking")),
            ns(type="content_block_start", index=1, content_block=ns(type="tool_use", id="tu_1", name="get_weather")),
            ns(type="content_block_delta", index=1, delta=ns(type="input_json_delta", partial_json='{"city":')),
            ns(type="content_block_delta", index=1, delta=ns(type="input_json_delta", partial_json='"Oslo"}')),
            ns(type="message_delta", delta=ns(stop_reason="tool_use"), usage=ns(output_tokens=9)),
            ns(type="message_stop"),
        ])
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=stream)
        adapter = AnthropicAdapter(client=client)

        events = await collect(adapter.stream_response(adapter.build_request(request([text_message("user", "hi")]), AUTH)))

        assert events == [
            TextDelta("Checking"),
            ToolCallRequested("tu_1", "get_weather"),
            ToolCallRequested("tu_1", "get_weather", '{"city":'),
            ToolCallRequested("tu_1", "get_weather", '"Oslo"}'),
            UsageReported(20, 9),
            Completed("tool_calls"),
        ]

    def test_overloaded_is_retryable(self):
        from anthropic import APIStatusError

        failed = AnthropicAdapter().map_error(status_error(APIStatusError, 529))
        assert failed.error_kind == "ProviderTransportError"
        assert failed.retryable


class TestGeminiAdapter:
    def test_build_request_contents_and_config(self):
        history = tool_history() + (NormalizedMessage("user", (ImagePart(PNG_URI),)),)
        req = request(history, tools=(WEATHER,), tool_choice="auto", sampling=SamplingParams(top_k=3))
        payload = GeminiAdapter().build_request(req, AUTH).payload

        contents = payload["contents"]
        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[1]["parts"][0]["function_call"] == {
            "id": "c1", "name": "get_weather", "args": {"city": "Oslo"}
        }
        response, image = contents[2]["parts"]
        assert response["function_response"]["name"] == "get_weather"
        assert response["function_response"]["response"] == {"result": "rainy"}
        assert image == {"inline_data": {"mime_type": "image/png", "data": b"hello"}}

        config = payload["config"]
        assert config["system_instruction"] == "be brief"
        assert config["top_k"] == 3
        assert config["tool_config"] == {"function_calling_config": {"mode": "AUTO"}}

    def test_function_response_name_from_history(self):
        history = tool_history()[:3] + (NormalizedMessage("tool", (ToolResultPart("c1", "rainy"),)),)
        contents = GeminiAdapter().build_request(request(history), AUTH).payload["contents"]
        assert contents[-1]["parts"][0]["function_response"]["name"] == "get_weather"

    @pytest.mark.asyncio
    async def test_stream_maps_chunks(self):
        ns = SimpleNamespace

        def chunk(parts, finish=None, usage=None):
            candidate = ns(content=ns(parts=parts), finish_reason=finish)
            return ns(candidates=[candidate], usage_metadata=usage)

        text = ns(function_call=None, text="Looking", thought=None)
        call = ns(function_call=ns(id=None, name="get_weather", args={"city": "Oslo"}), text=None)
        stream = FakeStream([
            chunk([text]),
            chunk([call], finish=ns(name="STOP"), usage=ns(prompt_token_count=30, candidates_token_count=5)),
        ])
        client = MagicMock()
        client.aio.models.generate_content_stream = AsyncMock(return_value=stream)
        adapter = GeminiAdapter(client=client)

        events = await collect(adapter.stream_response(adapter.build_request(request([text_message("user", "hi")]), AUTH)))

        assert events == [
            TextDelta("Looking"),
            ToolCallRequested("gemini_get_weather_0", "get_weather", json.dumps({"city": "Oslo"}), complete=True),
            UsageReported(30, 5),
            Completed("tool_calls"),
        ]
        assert stream.closed


class TestBedrockAdapter:
    def test_build_request_converse_payload(self):
        req = request(
            tool_history(),
            tools=(WEATHER,),
            tool_choice="get_weather",
            sampling=SamplingParams(temperature=0.5, top_p=0.9, top_k=4, stop=("X",)),
        )
        payload = BedrockAdapter().build_request(req, AUTH).payload

        assert payload["modelId"] == "test-model"
        assert payload["system"] == [{"text": "be brief"}]
        assert payload["inferenceConfig"] == {
            "maxTokens": 1024, "temperature": 0.5, "topP": 0.9, "stopSequences": ["X"]
        }
        assert payload["messages"][1]["content"][0] == {
            "toolUse": {"toolUseId": "c1", "name": "get_weather", "input": {"city": "Oslo"}}
        }
        assert payload["messages"][2]["content"][0]["toolResult"]["status"] == "success"
        assert payload["toolConfig"]["toolChoice"] == {"tool": {"name": "get_weather"}}

    def test_image_bytes(self):
        payload = BedrockAdapter().build_request(
            request([NormalizedMessage("user", (ImagePart(PNG_URI),))]), AUTH
        ).payload
        assert payload["messages"][0]["content"][0] == {"image": {"format": "png", "source": {"bytes": b"hello"}}}

    @pytest.mark.asyncio
    async def test_stream_maps_events(self):
        events_in = FakeEventStream([
            {"messageStart": {"role": "assistant"}},
            {"contentBlockDelta": {"contentBlockIndex": 0, "delta": {"text": "Sure"}}},
            {"contentBlockStart": {"contentBlockIndex": 1,
                                   "start": {"toolUse": {"toolUseId": "t1", "name": "get_weather"}}}},
            {"contentBlockDelta": {"contentBlockIndex": 1, "delta": {"toolUse": {"input": '{"city":"Oslo"}'}}}},
            {"messageStop": {"stopReason": "tool_use"}},
            {"metadata": {"usage": {"inputTokens": 11, "outputTokens": 4}}},
        ])
        client = MagicMock()
        client.converse_stream.return_value = {"stream": events_in}
        adapter = BedrockAdapter(client=client)

        events = await collect(adapter.stream_response(adapter.build_request(request([text_message("user", "hi")]), AUTH)))

        assert events == [
            TextDelta("Sure"),
            ToolCallRequested("t1", "get_weather"),
            ToolCallRequested("t1", "get_weather", '{"city":"Oslo"}'),
            UsageReported(11, 4),
            Completed("tool_calls"),
        ]
        assert events_in.closed

    @pytest.mark.asyncio
    async def test_in_stream_exception_event(self):
        client = MagicMock()
        client.converse_stream.return_value = {"stream": FakeEventStream([
            {"contentBlockDelta": {"contentBlockIndex": 0, "delta": {"text": "Su"}}},
            {"throttlingException": {"message": "slow down"}},
        ])}
        adapter = BedrockAdapter(client=client)

        events = await collect(adapter.stream_response(adapter.build_request(request([text_message("user", "hi")]), AUTH)))

        assert events[-1] == Failed("ProviderRateLimited", "slow down", retryable=True)

    def test_map_client_errors(self):
        adapter = BedrockAdapter()
        throttled = ClientError({"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}}, "ConverseStream")
        denied = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "ConverseStream")

        assert adapter.map_error(throttled).error_kind == "ProviderRateLimited"
        assert adapter.map_error(denied).error_kind == "ProviderAuthenticationError"
        network = adapter.map_error(EndpointConnectionError(endpoint_url="https://bedrock.test"))
        assert network.error_kind == "ProviderTransportError"
        assert network.retryable

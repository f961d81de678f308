import asyncio
import pytest
from typing import Any, List, Sequence

from llmrelay.providers.base import ProviderAdapter, ProviderCapabilities, SAMPLING_FIELDS
from llmrelay.registry import ResolvedClient
from llmrelay.storage import InMemoryConversationStore
from llmrelay.types import (
    AuthContext, Failed, ModelLimits, NormalizedMessage, ProviderWireRequest, TextPart,
)


@pytest.fixture
def mock_env(monkeypatch):
    """Mock environment variables for API keys."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-anthropic")
    monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test-google")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")


class Hang:
    """Script step: block until cancelled."""


class Sleep:
    """Script step: pause before the next event."""

    def __init__(self, seconds: float):
        self.seconds = seconds


class ScriptedAdapter(ProviderAdapter):
    """
    Adapter whose streams replay scripted events, one script per dispatch.

    A script is a list of StreamEvents, `Sleep` or `Hang` steps. Exceptions
    in a script are raised from the stream.
    """

    kind = "scripted"
    capabilities = ProviderCapabilities(
        system_placement="inline",
        remote_images=True,
        images=True,
        tools=True,
        sampling=SAMPLING_FIELDS,
    )

    def __init__(self, scripts: Sequence[List[Any]]):
        super().__init__(client=object())
        self.scripts = list(scripts)
        self.requests: List[Any] = []
        self.opened = 0
        self.closed = 0

    def _create_client(self, auth):
        return object()

    def build_request(self, request, auth):
        self.requests.append(request)
        return ProviderWireRequest(provider=self.kind, model=request.model, payload={"request": request}, auth=auth)

    async def stream_response(self, wire):
        script = self.scripts.pop(0)
        self.opened += 1
        try:
            for step in script:
                if isinstance(step, Hang):
                    await asyncio.Event().wait()
                elif isinstance(step, Sleep):
                    await asyncio.sleep(step.seconds)
                elif isinstance(step, BaseException):
                    raise step
                else:
                    yield step
        finally:
            self.closed += 1

    def map_error(self, error):
        return Failed("ProviderError", str(error))


class CharAccountant:
    """One token per character of text or tool-result content. No overheads."""

    def estimate_message(self, message: NormalizedMessage, model: str) -> int:
        return len(message.text) + sum(len(r.content) for r in message.tool_results)

    def estimate(self, messages, model: str) -> int:
        return sum(self.estimate_message(m, model) for m in messages)

    def estimate_tools(self, tools, model: str) -> int:
        return 0


def make_client(adapter: ProviderAdapter, *, context_window: int = 100_000, max_output: int = 1_000) -> ResolvedClient:
    return ResolvedClient(
        endpoint="test",
        provider=adapter.kind,
        model="test-model",
        adapter=adapter,
        model_limits=ModelLimits(context_window=context_window, max_output=max_output),
        auth_context=AuthContext(api_key="sk-test"),
    )


def text_message(role: str, text: str) -> NormalizedMessage:
    return NormalizedMessage(role=role, content=(TextPart(text),))


@pytest.fixture
def char_accountant():
    return CharAccountant()


@pytest.fixture
def store():
    return InMemoryConversationStore()

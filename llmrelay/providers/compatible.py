from typing import Optional

from openai import AsyncOpenAI

from .base import SAMPLING_FIELDS, ProviderCapabilities
from .openai import OpenAIAdapter
from ..types import AuthContext


class OpenAICompatibleAdapter(OpenAIAdapter):
    """
    Adapter for OpenAI-compatible servers (DeepSeek, Hugging Face router,
    vLLM, Ollama, LM Studio, ...).

    Differences from OpenAI proper:
    - `max_tokens` instead of `max_completion_tokens`.
    - Remote image URLs are inlined before dispatch, since many servers
      cannot fetch them.
    - `stream_options.include_usage` only when the endpoint opts in through
      `AuthContext.extra["include_usage"]`.
    """

    kind = "openai_compatible"
    capabilities = ProviderCapabilities(
        system_placement="inline",
        remote_images=False,
        images=True,
        tools=True,
        sampling=SAMPLING_FIELDS - {"top_k"},
    )
    max_tokens_field = "max_tokens"
    include_usage = False

    def __init__(self, client: Optional[AsyncOpenAI] = None, default_base_url: Optional[str] = None):
        super().__init__(client)
        self.default_base_url = default_base_url

    def _create_client(self, auth: AuthContext) -> AsyncOpenAI:
        # Keyless local servers still need a non-empty key for the SDK
        return AsyncOpenAI(api_key=auth.api_key or "EMPTY", base_url=auth.base_url or self.default_base_url)

    def build_request(self, request, auth):
        wire = super().build_request(request, auth)
        if auth.extra.get("include_usage"):
            wire.payload["stream_options"] = {"include_usage": True}
        return wire

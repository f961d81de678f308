import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, ClassVar, Dict, FrozenSet, Hashable, List, Literal, Mapping, Optional, Tuple

import httpx

from ..errors import (
    ProviderAuthenticationError, ProviderError, ProviderRateLimited,
    ProviderTransportError, ProviderValidationError,
)
from ..types import (
    AuthContext, Failed, NormalizedMessage, NormalizedRequest, ProviderWireRequest,
    StreamEvent, ToolCallPart,
)

LOGGER = logging.getLogger(__name__)

SAMPLING_FIELDS = frozenset(
    {"temperature", "top_p", "top_k", "stop", "seed", "presence_penalty", "frequency_penalty"}
)


@dataclass(frozen=True)
class ProviderCapabilities:
    """
    What one provider's wire format can carry.

    Attributes:
        system_placement: "inline" when system prompts are ordinary messages,
            "top_level" when they travel in a separate request field.
        remote_images: Whether the provider fetches http(s) image URLs itself.
            When False, the session inlines them before `build_request`.
        images: Whether image parts are accepted at all.
        tools: Whether function/tool calling is supported.
        sampling: Names of the SamplingParams fields the provider accepts.
    """
    system_placement: Literal["inline", "top_level"]
    remote_images: bool
    images: bool
    tools: bool
    sampling: FrozenSet[str]


class ProviderAdapter(ABC):
    """
    Protocol translator between the normalized model and one provider.

    Adapters never see conversation-level concerns (compaction, tool
    execution). Each implements exactly three operations:

    - `build_request`: pure transform into the provider's schema.
    - `stream_response`: opens one network stream and yields StreamEvents.
      The iterator is finite and not restartable. Closing it closes the
      underlying connection.
    - `map_error`: classifies provider failures into a `Failed` event.
    """

    kind: ClassVar[str]
    capabilities: ClassVar[ProviderCapabilities]

    def __init__(self, client: Optional[Any] = None):
        # An injected client is used for every auth context (tests, custom transports)
        self._injected_client = client
        self._clients: Dict[Hashable, Any] = {}

    @abstractmethod
    def build_request(self, request: NormalizedRequest, auth: AuthContext) -> ProviderWireRequest:
        """
        Encode a normalized request in this provider's schema.

        Args:
            request (NormalizedRequest): The request to encode.
            auth (AuthContext): Credentials travelling with the wire request.

        Returns:
            ProviderWireRequest: Provider-specific payload.
        """

    @abstractmethod
    def stream_response(self, wire: ProviderWireRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream the provider's response as normalized events.

        Provider failures are yielded as a final `Failed` event instead of
        being raised. The iterator always ends with `Completed` or `Failed`.
        """

    @abstractmethod
    def map_error(self, error: BaseException) -> Failed:
        """
        Classify a provider-specific failure into the shared taxonomy.
        """

    async def list_models(self, auth: AuthContext) -> List[str]:
        """
        List model identifiers available with these credentials.

        Returns an empty list when the provider listing is unavailable.
        """
        return []

    def client_for(self, auth: AuthContext) -> Any:
        """
        Return the SDK client for `auth`, creating it on first use.
        """
        if self._injected_client is not None:
            return self._injected_client
        key = (auth.api_key, auth.base_url, auth.region, tuple(sorted(auth.extra.items())))
        client = self._clients.get(key)
        if client is None:
            client = self._create_client(auth)
            self._clients[key] = client
        return client

    @abstractmethod
    def _create_client(self, auth: AuthContext) -> Any:
        """Build a provider SDK client for one credential set."""

    async def aclose(self) -> None:
        """Close every SDK client this adapter created."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client, "close", None)
            if close is None:
                continue
            result = close()
            if asyncio.iscoroutine(result):
                await result

    # ==========================================================================
    # Shared helpers
    # ==========================================================================

    def _sampling(self, request: NormalizedRequest) -> Dict[str, Any]:
        """
        Sampling parameters this provider supports. Others are dropped.
        """
        params = request.sampling.as_dict()
        dropped = sorted(set(params) - self.capabilities.sampling)
        if dropped:
            LOGGER.debug("%s does not support %s; dropping", self.kind, ", ".join(dropped))
        return {k: v for k, v in params.items() if k in self.capabilities.sampling}

    def _check_tools(self, request: NormalizedRequest) -> None:
        if request.tools and not self.capabilities.tools:
            raise ProviderValidationError(f"{self.kind} does not support tool calling")

    @staticmethod
    def split_system(
        messages: Tuple[NormalizedMessage, ...],
    ) -> Tuple[Optional[str], List[NormalizedMessage]]:
        """
        Pull system messages out for providers that take them top-level.
        """
        system_parts = [m.text for m in messages if m.role == "system" and m.text]
        rest = [m for m in messages if m.role != "system"]
        return ("\n\n".join(system_parts) if system_parts else None), rest

    @staticmethod
    def tool_names_by_call(messages: Tuple[NormalizedMessage, ...]) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for msg in messages:
            for part in msg.content:
                if isinstance(part, ToolCallPart):
                    names[part.call_id] = part.name
        return names

    @staticmethod
    def finish_reason(raw: Optional[str], mapping: Mapping[str, str], default: str = "stop") -> str:
        if not raw:
            return default
        return mapping.get(raw, raw.lower())

    def failed_from_status(
        self,
        status: Optional[int],
        message: str,
        *,
        retry_after: Optional[float] = None,
    ) -> Failed:
        """
        Classify an HTTP-status-bearing failure.

        429 is rate limiting; 408, 5xx and 529 (overloaded) are transient;
        401/403 are authentication failures; other 4xx are validation errors.
        """
        if status == 429:
            err: ProviderError = ProviderRateLimited(message, retry_after=retry_after)
        elif status is not None and (status == 408 or status >= 500):
            err = ProviderTransportError(message)
        elif status in (401, 403):
            err = ProviderAuthenticationError(message)
        elif status is not None and 400 <= status < 500:
            err = ProviderValidationError(message)
        else:
            err = ProviderError(message)
        return failed_from_error(err)

    def failed_from_transport(self, error: BaseException) -> Optional[Failed]:
        """
        Classify generic network failures shared by every HTTP-based SDK.
        """
        if isinstance(error, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
            return failed_from_error(ProviderTransportError(f"{type(error).__name__}: {error}"))
        if isinstance(error, httpx.HTTPStatusError):
            return self.failed_from_status(
                error.response.status_code,
                str(error),
                retry_after=retry_after_seconds(error.response.headers),
            )
        return None


def failed_from_error(error: ProviderError) -> Failed:
    return Failed(
        error_kind=error.kind,
        message=error.message,
        retryable=error.retryable,
        retry_after=getattr(error, "retry_after", None),
    )


def retry_after_seconds(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    """
    Parse `retry-after-ms` / `retry-after` headers into seconds.
    """
    if not headers:
        return None
    try:
        value = headers.get("retry-after-ms")
        if value is not None:
            return float(value) / 1000.0
        value = headers.get("retry-after")
        if value is not None:
            return float(value)
    except (TypeError, ValueError):
        # HTTP-date form is not worth parsing; the session falls back to backoff
        return None
    return None

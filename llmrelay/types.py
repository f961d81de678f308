from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Literal, Mapping, Optional, Tuple, Union

# =============================================================================
# Message Model
# =============================================================================

Role = Literal["system", "user", "assistant", "tool"]

# Supported provider adapter variants
ProviderKind = Literal["openai", "anthropic", "gemini", "bedrock", "openai_compatible"]


@dataclass(frozen=True)
class TextPart:
    """
    Plain text content part.
    """
    text: str
    type: ClassVar[str] = "text"


@dataclass(frozen=True)
class ImagePart:
    """
    Image reference content part.

    `url` is either an http(s) URL or a data URI (data:image/png;base64,...).
    """
    url: str
    detail: Optional[Literal["auto", "low", "high"]] = None  # OpenAI-specific
    type: ClassVar[str] = "image"

    @property
    def is_inline(self) -> bool:
        return self.url.startswith("data:")


@dataclass(frozen=True)
class ToolCallPart:
    """
    A model-issued request to invoke a tool, as stored in an assistant message.
    """
    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    type: ClassVar[str] = "tool_call"


@dataclass(frozen=True)
class ToolResultPart:
    """
    The outcome of a tool call, as stored in a tool message.
    """
    call_id: str
    content: str
    name: Optional[str] = None
    is_error: bool = False
    type: ClassVar[str] = "tool_result"


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart]


@dataclass(frozen=True)
class NormalizedMessage:
    """
    Provider-independent chat message.

    Roles:
    - "system": System prompt / instructions
    - "user": User message
    - "assistant": Model response, optionally carrying tool calls
    - "tool": Tool execution results
    """
    role: Role
    content: Tuple[ContentPart, ...] = ()
    name: Optional[str] = None
    incomplete: bool = False  # partial output persisted after cancellation

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def images(self) -> Tuple[ImagePart, ...]:
        return tuple(p for p in self.content if isinstance(p, ImagePart))

    @property
    def tool_calls(self) -> Tuple[ToolCallPart, ...]:
        return tuple(p for p in self.content if isinstance(p, ToolCallPart))

    @property
    def tool_results(self) -> Tuple[ToolResultPart, ...]:
        return tuple(p for p in self.content if isinstance(p, ToolResultPart))


# =============================================================================
# Request Model
# =============================================================================

@dataclass(frozen=True)
class ToolSpec:
    """
    Declarative tool contract. Resolved to a handler only by the ToolInvoker.
    """
    name: str
    description: str = ""
    parameter_schema: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class SamplingParams:
    """
    Provider-agnostic sampling parameters. None means "provider default".
    """
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop: Tuple[str, ...] = ()
    seed: Optional[int] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        """Return only the parameters that were explicitly set."""
        values = {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "stop": list(self.stop) if self.stop else None,
            "seed": self.seed,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
        }
        return {k: v for k, v in values.items() if v is not None}


@dataclass(frozen=True)
class NormalizedRequest:
    """
    One dispatch worth of input. Built fresh per dispatch and never mutated.
    """
    model: str
    messages: Tuple[NormalizedMessage, ...]
    max_output_tokens: int = 1024
    sampling: SamplingParams = field(default_factory=SamplingParams)
    tools: Tuple[ToolSpec, ...] = ()
    tool_choice: Optional[str] = None  # "auto" | "none" | "required" | <tool name>
    stream: bool = True


@dataclass(frozen=True)
class AuthContext:
    """
    Opaque credential material for one endpoint. Never logged.
    """
    api_key: Optional[str] = field(default=None, repr=False)
    base_url: Optional[str] = None
    region: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ProviderWireRequest:
    """
    A request already encoded in one provider's schema.
    """
    provider: str
    model: str
    payload: Dict[str, Any]
    auth: AuthContext = field(default_factory=AuthContext, repr=False)


# =============================================================================
# Limits, Budgets & Usage
# =============================================================================

@dataclass(frozen=True)
class ModelLimits:
    context_window: int
    max_output: int


@dataclass(frozen=True)
class Budget:
    """
    Token allowance for one request's input after reserving room for output.
    """
    model: str
    context_window: int
    reserved_for_output: int

    @property
    def available(self) -> int:
        return max(0, self.context_window - self.reserved_for_output)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


# =============================================================================
# Stream Events
# =============================================================================
# The only vocabulary the GenerationSession understands. Every adapter maps
# its wire format onto exactly these five variants.

@dataclass(frozen=True)
class TextDelta:
    text: str
    type: ClassVar[str] = "text_delta"


@dataclass(frozen=True)
class ToolCallRequested:
    """
    A tool call, either as an argument fragment or with complete arguments.

    Fragments for the same `call_id` are concatenated in arrival order. A
    `complete=True` event replaces anything buffered for that call.
    """
    call_id: str
    name: str
    arguments: str = ""
    complete: bool = False
    type: ClassVar[str] = "tool_call"


@dataclass(frozen=True)
class UsageReported:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    type: ClassVar[str] = "usage"


@dataclass(frozen=True)
class Completed:
    finish_reason: str = "stop"
    type: ClassVar[str] = "completed"


@dataclass(frozen=True)
class Failed:
    error_kind: str
    message: str
    retryable: bool = False
    retry_after: Optional[float] = None
    type: ClassVar[str] = "failed"


StreamEvent = Union[TextDelta, ToolCallRequested, UsageReported, Completed, Failed]


# =============================================================================
# Caller-facing Events
# =============================================================================

CallerEventType = Literal["delta", "tool_status", "usage", "done", "error"]


@dataclass(frozen=True)
class CallerEvent:
    """
    Event emitted to whatever transport the caller uses.

    Examples:
        CallerEvent("delta", {"text": "Hel", "attempt": 1})
        CallerEvent("tool_status", {"call_id": "c1", "name": "search", "status": "started"})
        CallerEvent("done", {"text": "...", "finish_reason": "stop", "persisted": True})
    """
    type: CallerEventType
    data: Dict[str, Any] = field(default_factory=dict)

from .config import EndpointConfig, Settings, load_endpoints, parse_endpoints
from .errors import (
    BudgetExceeded,
    ConfigurationError,
    ProviderAuthenticationError,
    ProviderError,
    ProviderRateLimited,
    ProviderTransportError,
    ProviderValidationError,
    RelayError,
    SessionCancelled,
    StorageError,
    ToolExecutionError,
    ToolLoopExceeded,
    UnknownToolError,
)
from .compactor import HistoryCompactor, repair_history
from .log import configure_logging
from .registry import ClientRegistry, EnvCredentialProvider, RegistrySnapshot, ResolvedClient, StaticCredentialProvider
from .rich_printer import RichStreamPrinter
from .session import CancelPolicy, CancellationToken, GenerationSession, SessionOptions, SessionStatus
from .storage import ConversationStore, InMemoryConversationStore
from .tokens import TokenAccountant
from .tools import ToolInvoker, ToolRegistry
from .types import (
    CallerEvent,
    ImagePart,
    NormalizedMessage,
    NormalizedRequest,
    SamplingParams,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    ToolSpec,
    Usage,
)
from .utils import create_image_content, create_message, create_tool

__all__ = [
    "BudgetExceeded",
    "CallerEvent",
    "CancelPolicy",
    "CancellationToken",
    "ClientRegistry",
    "ConfigurationError",
    "ConversationStore",
    "EndpointConfig",
    "EnvCredentialProvider",
    "GenerationSession",
    "HistoryCompactor",
    "ImagePart",
    "InMemoryConversationStore",
    "NormalizedMessage",
    "NormalizedRequest",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderRateLimited",
    "ProviderTransportError",
    "ProviderValidationError",
    "RegistrySnapshot",
    "RelayError",
    "ResolvedClient",
    "RichStreamPrinter",
    "SamplingParams",
    "SessionCancelled",
    "SessionOptions",
    "SessionStatus",
    "Settings",
    "StaticCredentialProvider",
    "StorageError",
    "TextPart",
    "TokenAccountant",
    "ToolCallPart",
    "ToolExecutionError",
    "ToolInvoker",
    "ToolLoopExceeded",
    "ToolRegistry",
    "ToolResultPart",
    "ToolSpec",
    "UnknownToolError",
    "Usage",
    "configure_logging",
    "create_image_content",
    "create_message",
    "create_tool",
    "load_endpoints",
    "parse_endpoints",
    "repair_history",
]

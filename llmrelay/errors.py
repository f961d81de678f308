"""Error taxonomy shared by adapters, the tool invoker and the generation session."""

from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """Base exception for all llmrelay errors.

    Attributes:
        retryable: Whether the session may retry the dispatch that raised it.
        fatal: Whether the error terminates the current turn.
    """

    retryable: bool = False
    fatal: bool = True

    def __init__(self, message: str = "", *, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(RelayError):
    """Unknown endpoint/model or missing credential."""


class ProviderError(RelayError):
    """Unclassified provider failure."""


class ProviderTransportError(ProviderError):
    """Network/connection failure, 5xx responses and idle timeouts."""

    retryable = True


class ProviderRateLimited(ProviderError):
    """Provider throttled the request."""

    retryable = True

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderValidationError(ProviderError):
    """Malformed request rejected by the provider."""


class ProviderAuthenticationError(ProviderValidationError):
    """Credential rejected by the provider (401/403)."""


class ToolExecutionError(RelayError):
    """A tool handler raised or timed out. Folded into the conversation."""

    fatal = False


class UnknownToolError(ToolExecutionError):
    """No handler is registered for the requested tool name."""


class ToolLoopExceeded(RelayError):
    """The model kept requesting tools past the round-trip limit."""


class StorageError(RelayError):
    """The storage collaborator failed to persist or load."""


class BudgetExceeded(RelayError):
    """History did not fit the budget and was truncated. Reported as a warning."""

    fatal = False


class SessionCancelled(RelayError):
    """The caller cancelled the session."""


_ERROR_KINDS = {
    cls.__name__: cls
    for cls in (
        ConfigurationError,
        ProviderError,
        ProviderTransportError,
        ProviderRateLimited,
        ProviderValidationError,
        ProviderAuthenticationError,
        ToolExecutionError,
        UnknownToolError,
        ToolLoopExceeded,
        StorageError,
        BudgetExceeded,
        SessionCancelled,
    )
}


def error_from_kind(
    kind: str,
    message: str,
    *,
    retryable: bool = False,
    retry_after: Optional[float] = None,
) -> RelayError:
    """Rebuild an exception from a ``Failed`` stream event."""
    cls = _ERROR_KINDS.get(kind, ProviderError)
    if cls is ProviderRateLimited:
        err: RelayError = ProviderRateLimited(message, retry_after=retry_after)
    else:
        err = cls(message)
    err.retryable = retryable
    return err

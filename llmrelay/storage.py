"""Storage collaborator contract and an in-memory implementation."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import StorageError
from .types import NormalizedMessage, Usage


class ConversationStore(Protocol):
    """Persistence the generation core needs.

    The core calls `load_history` once while building a session and
    `persist_final_message` once when the session finalizes or is cancelled.
    Implementations raise `StorageError` on failure.
    """

    async def load_history(self, conversation_id: str) -> Sequence[NormalizedMessage]:
        ...

    async def persist_final_message(
        self,
        conversation_id: str,
        message: NormalizedMessage,
        usage: Usage,
    ) -> None:
        ...


class InMemoryConversationStore:
    """Dict-backed store for tests, demos and single-process tools."""

    def __init__(self, conversations: Optional[Dict[str, Sequence[NormalizedMessage]]] = None) -> None:
        self._conversations: Dict[str, List[NormalizedMessage]] = {
            key: list(messages) for key, messages in (conversations or {}).items()
        }
        self.usage_log: List[Tuple[str, Usage]] = []
        self._lock = asyncio.Lock()

    async def load_history(self, conversation_id: str) -> Sequence[NormalizedMessage]:
        async with self._lock:
            return tuple(self._conversations.get(conversation_id, ()))

    async def append(self, conversation_id: str, message: NormalizedMessage) -> None:
        """Record a caller-side message (typically the user's turn)."""
        async with self._lock:
            self._conversations.setdefault(conversation_id, []).append(message)

    async def persist_final_message(
        self,
        conversation_id: str,
        message: NormalizedMessage,
        usage: Usage,
    ) -> None:
        if message.role != "assistant":
            raise StorageError(f"Only assistant messages can be finalized, got '{message.role}'")
        async with self._lock:
            self._conversations.setdefault(conversation_id, []).append(message)
            self.usage_log.append((conversation_id, usage))

    def history(self, conversation_id: str) -> Tuple[NormalizedMessage, ...]:
        return tuple(self._conversations.get(conversation_id, ()))

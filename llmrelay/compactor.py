"""History compaction: fit a conversation into a model's token budget.

Selection policy, most recent first:

1. Always keep every system message and the newest turn.
2. Walk older turns from newest to oldest, keeping each whole turn while the
   running estimate stays within ``budget.available``. The first turn that
   does not fit ends the walk; it and everything older are dropped.
3. A turn is never split, so a tool call and its result travel together.
4. If the system messages plus the newest turn alone exceed the budget, the
   newest turn is truncated from the end (see ``_truncate_newest``) and a
   ``BudgetExceeded`` warning is reported instead of failing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from .errors import BudgetExceeded, ConfigurationError
from .types import Budget, ImagePart, NormalizedMessage, TextPart, ToolCallPart, ToolResultPart

LOGGER = logging.getLogger(__name__)

Turn = List[NormalizedMessage]
Summarizer = Callable[[Sequence[NormalizedMessage]], str]


class Estimator(Protocol):
    def estimate(self, messages: Sequence[NormalizedMessage], model: str) -> int:
        ...


@dataclass(frozen=True)
class CompactionResult:
    messages: Tuple[NormalizedMessage, ...]
    estimate: int
    dropped_turns: int = 0
    truncated: bool = False
    warnings: Tuple[str, ...] = ()


def split_turns(history: Sequence[NormalizedMessage]) -> Tuple[Turn, List[Turn]]:
    """
    Separate system messages and group the rest into turns.

    A turn starts at each user message and carries the assistant and tool
    messages that follow it. Messages before the first user message form a
    turn of their own.
    """
    system: Turn = []
    turns: List[Turn] = []
    for msg in history:
        if msg.role == "system":
            system.append(msg)
        elif msg.role == "user" or not turns:
            turns.append([msg])
        else:
            turns[-1].append(msg)
    return system, turns


def repair_history(history: Sequence[NormalizedMessage]) -> Tuple[NormalizedMessage, ...]:
    """
    Remove dangling tool calls and orphaned tool results.

    A call without a result (for example left by a cancelled turn) or a
    result without a call makes most providers reject the request. Messages
    left empty by the removal are dropped. Clean histories come back as the
    same message objects.
    """
    called = {p.call_id for m in history for p in m.content if isinstance(p, ToolCallPart)}
    answered = {p.call_id for m in history for p in m.content if isinstance(p, ToolResultPart)}
    paired = called & answered
    if called == paired and answered == paired:
        return tuple(history)

    repaired: List[NormalizedMessage] = []
    for msg in history:
        keep = tuple(
            p for p in msg.content
            if not isinstance(p, (ToolCallPart, ToolResultPart)) or p.call_id in paired
        )
        if len(keep) == len(msg.content):
            repaired.append(msg)
        elif keep:
            repaired.append(replace(msg, content=keep))
        else:
            LOGGER.debug("Dropping %s message left empty by tool-call repair", msg.role)
    return tuple(repaired)


class HistoryCompactor:
    """
    Selects and truncates conversation turns to fit a token budget.

    Args:
        accountant: Anything with `estimate(messages, model) -> int`.
        summarizer: Optional callable turning dropped messages into a short
            summary, inserted as a system note when it fits.
    """

    def __init__(self, accountant: Estimator, summarizer: Optional[Summarizer] = None):
        self.accountant = accountant
        self.summarizer = summarizer

    def _estimate(self, messages: Sequence[NormalizedMessage], budget: Budget) -> int:
        return self.accountant.estimate(list(messages), budget.model)

    def compact(self, full_history: Sequence[NormalizedMessage], budget: Budget) -> CompactionResult:
        """
        Produce the working history for one dispatch.

        Args:
            full_history (Sequence[NormalizedMessage]): Complete ordered history.
            budget (Budget): Budget of the target model.

        Returns:
            CompactionResult: Selected messages, their estimate and any warnings.
            Running it again on its own output returns that output unchanged.
        """
        system, turns = split_turns(full_history)
        if not turns:
            messages, truncated = self._truncate_newest(system, [], budget)
            return self._result(messages, budget, truncated=truncated)

        newest = turns[-1]
        if self._estimate(system + newest, budget) > budget.available:
            messages, _ = self._truncate_newest(system, newest, budget)
            return self._result(messages, budget, dropped=len(turns) - 1, truncated=True)

        kept: Turn = list(newest)
        index = len(turns) - 1
        while index > 0:
            candidate = turns[index - 1] + kept
            if self._estimate(system + candidate, budget) > budget.available:
                break
            kept = candidate
            index -= 1

        dropped_turns = turns[:index]
        if dropped_turns and self.summarizer is not None:
            note = self._summary_note([m for turn in dropped_turns for m in turn])
            if note is not None and self._estimate(system + [note] + kept, budget) <= budget.available:
                system = system + [note]

        return self._result(system + kept, budget, dropped=len(dropped_turns))

    def _result(
        self,
        messages: Sequence[NormalizedMessage],
        budget: Budget,
        *,
        dropped: int = 0,
        truncated: bool = False,
    ) -> CompactionResult:
        estimate = self._estimate(messages, budget)
        warnings: Tuple[str, ...] = ()
        if truncated:
            warning = BudgetExceeded(
                f"newest turn truncated to fit {budget.available} tokens for {budget.model}"
            )
            warnings = (f"{warning.kind}: {warning.message}",)
            LOGGER.warning("%s", warnings[0])
        if dropped:
            LOGGER.debug("Compaction dropped %d turn(s) for %s", dropped, budget.model)
        return CompactionResult(
            messages=tuple(messages),
            estimate=estimate,
            dropped_turns=dropped,
            truncated=truncated,
            warnings=warnings,
        )

    def _summary_note(self, dropped: Sequence[NormalizedMessage]) -> Optional[NormalizedMessage]:
        try:
            summary = self.summarizer(dropped)
        except Exception:
            LOGGER.warning("History summarizer failed; dropping turns without a summary", exc_info=True)
            return None
        if not summary:
            return None
        return NormalizedMessage(
            role="system",
            content=(TextPart(f"Summary of earlier conversation: {summary}"),),
        )

    # ==========================================================================
    # Truncation
    # ==========================================================================

    def _truncate_newest(
        self,
        system: Turn,
        turn: Turn,
        budget: Budget,
    ) -> Tuple[Turn, bool]:
        """
        Lossy, deterministic shrinking of the newest turn.

        The turn is cut from its end: messages are visited newest first, each
        keeping the longest text prefix that fits, with its images dropped if
        even empty text does not fit. The user's question at the start of the
        turn is therefore the last thing to go. System messages are cut only
        as a last resort. Tool call/result parts are never removed, only
        their content.

        Raises:
            ConfigurationError: If the budget cannot hold even emptied messages.
        """
        system = list(system)
        turn = list(turn)

        def fits() -> bool:
            return self._estimate(system + turn, budget) <= budget.available

        if fits():
            return system + turn, False

        for i in reversed(range(len(turn))):
            original = turn[i]
            turn[i] = self._shrink(turn, i, fits)
            if fits():
                return system + turn, True
            if original.images:
                turn[i] = replace(original, content=tuple(p for p in original.content if not isinstance(p, ImagePart)))
                turn[i] = self._shrink(turn, i, fits)
                if fits():
                    return system + turn, True

        for i in reversed(range(len(system))):
            system[i] = self._shrink(system, i, fits)
            if fits():
                return system + turn, True

        raise ConfigurationError(
            f"budget of {budget.available} tokens for {budget.model} cannot hold a request"
        )

    @staticmethod
    def _shrink(messages: Turn, index: int, fits: Callable[[], bool]) -> NormalizedMessage:
        """
        Binary-search the longest text prefix of messages[index] that fits.
        """
        original = messages[index]
        total = _text_length(original)
        lo, hi = 0, total
        best = _truncated(original, 0)
        while lo <= hi:
            mid = (lo + hi) // 2
            messages[index] = _truncated(original, mid)
            if fits():
                best = messages[index]
                lo = mid + 1
            else:
                hi = mid - 1
        messages[index] = best
        return best


def _text_length(message: NormalizedMessage) -> int:
    total = 0
    for part in message.content:
        if isinstance(part, TextPart):
            total += len(part.text)
        elif isinstance(part, ToolResultPart):
            total += len(part.content)
    return total


def _truncated(message: NormalizedMessage, keep: int) -> NormalizedMessage:
    """
    Keep the first `keep` characters of a message's text, dropping the rest.
    """
    remaining = keep
    parts = []
    for part in message.content:
        if isinstance(part, TextPart):
            text = part.text[:remaining]
            remaining -= len(text)
            if text:
                parts.append(TextPart(text))
        elif isinstance(part, ToolResultPart):
            content = part.content[:remaining]
            remaining -= len(content)
            parts.append(replace(part, content=content))
        else:
            parts.append(part)
    return replace(message, content=tuple(parts))

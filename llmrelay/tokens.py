"""Token accounting: per-model token estimates and context-window budgets.

Counting schemes by model family:

======================  ==========================================================
family                  scheme
======================  ==========================================================
openai (gpt-*, o1/o3/…) tiktoken, exact for text (``o200k_base``/``cl100k_base``)
anthropic / claude      characters / 3.0 (Claude averages ~3.5 chars per token)
gemini                  characters / 3.5 (Gemini averages ~4 chars per token)
everything else         characters / 3.0
======================  ==========================================================

The character ratios are deliberately below the observed averages so that
estimates err high. If tiktoken cannot load an encoding (no network access
on first use, unknown model) the family heuristic is used instead.

On top of the text count every message costs ``MESSAGE_OVERHEAD`` tokens,
every image ``IMAGE_TOKENS`` and every request ``REPLY_PRIMING``. All terms are
non-negative, so appending a message never lowers an estimate.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, Mapping, Optional, Protocol, Sequence

import tiktoken

from .types import (
    Budget, ImagePart, ModelLimits, NormalizedMessage, TextPart, ToolCallPart,
    ToolResultPart, ToolSpec,
)

LOGGER = logging.getLogger(__name__)

MESSAGE_OVERHEAD = 4
NAME_OVERHEAD = 1
REPLY_PRIMING = 3
IMAGE_TOKENS = 1600
TOOL_SPEC_OVERHEAD = 8

CHARS_PER_TOKEN = {
    "anthropic": 3.0,
    "gemini": 3.5,
    "default": 3.0,
}

DEFAULT_LIMITS = ModelLimits(context_window=8192, max_output=1024)

# Longest matching prefix wins; ids are normalized by `normalize_model_id`
MODEL_LIMITS: Mapping[str, ModelLimits] = {
    "gpt-5": ModelLimits(400_000, 128_000),
    "gpt-4.1": ModelLimits(1_047_576, 32_768),
    "gpt-4o": ModelLimits(128_000, 16_384),
    "gpt-4-turbo": ModelLimits(128_000, 4_096),
    "gpt-4": ModelLimits(8_192, 4_096),
    "gpt-3.5-turbo": ModelLimits(16_385, 4_096),
    "o1": ModelLimits(200_000, 100_000),
    "o3": ModelLimits(200_000, 100_000),
    "o4-mini": ModelLimits(200_000, 100_000),
    "claude-3-haiku": ModelLimits(200_000, 4_096),
    "claude-3-opus": ModelLimits(200_000, 4_096),
    "claude-3-5": ModelLimits(200_000, 8_192),
    "claude-3-7": ModelLimits(200_000, 64_000),
    "claude-sonnet-4": ModelLimits(200_000, 64_000),
    "claude-haiku-4": ModelLimits(200_000, 64_000),
    "claude-opus-4": ModelLimits(200_000, 32_000),
    "gemini-1.5-pro": ModelLimits(2_097_152, 8_192),
    "gemini-1.5-flash": ModelLimits(1_048_576, 8_192),
    "gemini-2.0": ModelLimits(1_048_576, 8_192),
    "gemini-2.5": ModelLimits(1_048_576, 65_536),
    "deepseek-chat": ModelLimits(65_536, 8_192),
    "deepseek-reasoner": ModelLimits(65_536, 8_192),
    "llama3": ModelLimits(8_192, 2_048),
    "llama3-1": ModelLimits(128_000, 2_048),
    "mistral-large": ModelLimits(128_000, 8_192),
    "nova": ModelLimits(300_000, 5_000),
}

_BEDROCK_REGIONS = ("us.", "eu.", "apac.", "global.")
_BEDROCK_VENDORS = ("anthropic.", "meta.", "amazon.", "mistral.", "cohere.", "ai21.")


class TokenCounter(Protocol):
    def count(self, text: str) -> int:
        ...


@dataclass(frozen=True)
class CharHeuristicCounter:
    """Conservative estimate from character length."""

    chars_per_token: float = CHARS_PER_TOKEN["default"]

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


class TiktokenCounter:
    """Exact text counts for OpenAI-family models."""

    def __init__(self, model: str) -> None:
        self.model = model
        self._encoding = self._load_encoding(model)

    @staticmethod
    def _load_encoding(model: str):
        try:
            return tiktoken.encoding_for_model(model)
        except KeyError:
            # Unknown to tiktoken; newer OpenAI models all use o200k_base
            return tiktoken.get_encoding("o200k_base")

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))


def normalize_model_id(model: str) -> str:
    """
    Lowercase and strip routing prefixes (``models/``, Bedrock region and vendor).

    Example:
        "us.anthropic.claude-3-5-sonnet-20241022-v2:0" -> "claude-3-5-sonnet-20241022-v2:0"
    """
    key = (model or "").strip().lower()
    if key.startswith("models/"):
        key = key[len("models/"):]
    for prefix in _BEDROCK_REGIONS:
        if key.startswith(prefix):
            key = key[len(prefix):]
            break
    for prefix in _BEDROCK_VENDORS:
        if key.startswith(prefix):
            key = key[len(prefix):]
            break
    return key


def model_family(model: str) -> str:
    key = normalize_model_id(model)
    if key.startswith(("gpt-", "o1", "o3", "o4", "chatgpt", "text-embedding")):
        return "openai"
    if key.startswith("claude"):
        return "anthropic"
    if key.startswith(("gemini", "gemma")):
        return "gemini"
    return "default"


@lru_cache(maxsize=256)
def counter_for(model: str) -> TokenCounter:
    """
    Best available counter for a model, cached per model id.
    """
    family = model_family(model)
    if family == "openai":
        try:
            return TiktokenCounter(normalize_model_id(model))
        except Exception as exc:
            LOGGER.warning("tiktoken unavailable for %s (%s); using character heuristic", model, exc)
    ratio = CHARS_PER_TOKEN.get(family, CHARS_PER_TOKEN["default"])
    return CharHeuristicCounter(chars_per_token=ratio)


def limits_for(model: str, overrides: Optional[Mapping[str, ModelLimits]] = None) -> ModelLimits:
    """
    Static limits for a model: exact override, then longest table prefix, then default.
    """
    if overrides and model in overrides:
        return overrides[model]
    key = normalize_model_id(model)
    best = ""
    for prefix in MODEL_LIMITS:
        if key.startswith(prefix) and len(prefix) > len(best):
            best = prefix
    return MODEL_LIMITS[best] if best else DEFAULT_LIMITS


class TokenAccountant:
    """
    Estimates token counts for messages and derives per-model budgets.

    Args:
        limits: Per-model limit overrides (exact model ids), typically from
            endpoint configuration. Consulted before the static table.
        counters: Per-model counter overrides.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, ModelLimits]] = None,
        counters: Optional[Mapping[str, TokenCounter]] = None,
    ) -> None:
        self._limits: Dict[str, ModelLimits] = dict(limits or {})
        self._counters: Dict[str, TokenCounter] = dict(counters or {})

    def counter(self, model: str) -> TokenCounter:
        return self._counters.get(model) or counter_for(model)

    def count_text(self, text: str, model: str) -> int:
        return self.counter(model).count(text)

    def estimate_message(self, message: NormalizedMessage, model: str) -> int:
        counter = self.counter(model)
        tokens = MESSAGE_OVERHEAD + (NAME_OVERHEAD if message.name else 0)
        for part in message.content:
            if isinstance(part, TextPart):
                tokens += counter.count(part.text)
            elif isinstance(part, ImagePart):
                tokens += IMAGE_TOKENS
            elif isinstance(part, ToolCallPart):
                tokens += counter.count(part.name) + counter.count(json.dumps(part.arguments))
            elif isinstance(part, ToolResultPart):
                tokens += counter.count(part.call_id) + counter.count(part.content)
        return tokens

    def estimate(self, messages: Iterable[NormalizedMessage], model: str) -> int:
        """
        Estimated prompt tokens for `messages` sent to `model`.

        Monotonic: appending a message never decreases the result.
        """
        return REPLY_PRIMING + sum(self.estimate_message(m, model) for m in messages)

    def estimate_tools(self, tools: Sequence[ToolSpec], model: str) -> int:
        counter = self.counter(model)
        return sum(
            TOOL_SPEC_OVERHEAD
            + counter.count(tool.name)
            + counter.count(tool.description)
            + counter.count(json.dumps(dict(tool.parameter_schema)))
            for tool in tools
        )

    def limits(self, model: str) -> ModelLimits:
        return limits_for(model, self._limits)

    def budget_for(self, model: str, max_output_tokens: Optional[int] = None) -> Budget:
        """
        Context window and output reservation for `model`.

        Args:
            model (str): Model id.
            max_output_tokens (int, optional): Requested output cap; the
                reservation is the smaller of this and the model maximum.
        """
        limits = self.limits(model)
        reserved = limits.max_output
        if max_output_tokens is not None:
            reserved = min(reserved, max_output_tokens)
        return Budget(model=model, context_window=limits.context_window, reserved_for_output=reserved)

"""Token counting for prompt sizing and usage estimates.

Prompt budgets use the character heuristic in :func:`estimate_tokens`. When a
provider omits usage, the stateless loop asks a :class:`TokenCounterRegistry`
for a model-specific counter instead.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Dict

import tiktoken

from ..ai_types import TokenCounterProtocol

LOGGER = logging.getLogger(__name__)

# Average bytes per token for GPT-style tokenization of English prose
CHARS_PER_TOKEN = 4.0

# Flat charge for one embedded image part (base tile plus two detail tiles)
IMAGE_PART_TOKENS = 85 + 2 * 170

_FALLBACK_ENCODING = "cl100k_base"


def estimate_tokens(text: str | None) -> int:
    """Estimate the number of tokens in ``text``.

    Args:
        text: The text to size. ``None`` and ``""`` count as zero.

    Returns:
        A ceiling of utf-8 bytes divided by ``CHARS_PER_TOKEN`` (at least 1 for
        non-empty text).
    """
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / CHARS_PER_TOKEN))


class HeuristicCounter(TokenCounterProtocol):
    """Counter backed by :func:`estimate_tokens` alone."""

    def __init__(self, model_name: str | None = None) -> None:
        self.model_name = model_name

    def count(self, text: str) -> int:
        return estimate_tokens(text)

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)


class TiktokenCounter(TokenCounterProtocol):
    """Exact counts from tiktoken; models it does not know use ``cl100k_base``."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        if encoding_name:
            self._encoding = tiktoken.get_encoding(encoding_name)
        else:
            try:
                self._encoding = tiktoken.encoding_for_model(model_name)
            except KeyError:
                LOGGER.debug("No tiktoken mapping for %s; using %s", model_name, _FALLBACK_ENCODING)
                self._encoding = tiktoken.get_encoding(_FALLBACK_ENCODING)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except ValueError:
            LOGGER.debug("tiktoken could not encode text for %s; estimating", self.model_name, exc_info=True)
            return estimate_tokens(text)

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)


CounterFactory = Callable[[str], TokenCounterProtocol]


class TokenCounterRegistry:
    """Per-model counters, built on first use by ``factory``.

    A model whose counter cannot be built is served by the heuristic counter
    from then on.
    """

    def __init__(self, *, factory: CounterFactory = TiktokenCounter) -> None:
        self._factory = factory
        self._counters: Dict[str, TokenCounterProtocol] = {}

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = _normalize(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def __contains__(self, model_name: object) -> bool:
        return isinstance(model_name, str) and _normalize(model_name) in self._counters

    def counter_for(self, model_name: str | None) -> TokenCounterProtocol:
        key = _normalize(model_name)
        if not key:
            return HeuristicCounter()
        counter = self._counters.get(key)
        if counter is None:
            try:
                counter = self._factory(key)
            except Exception:
                LOGGER.warning("Token counter for %s unavailable; using estimates", key, exc_info=True)
                counter = HeuristicCounter(key)
            self._counters[key] = counter
        return counter


def _normalize(model_name: str | None) -> str:
    return (model_name or "").strip().lower()


__all__ = [
    "CHARS_PER_TOKEN",
    "IMAGE_PART_TOKENS",
    "HeuristicCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "estimate_tokens",
]

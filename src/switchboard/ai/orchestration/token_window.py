"""Prompt budget selection and oldest-first message trimming."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Sequence

from ..errors import PromptTooLargeError
from ..utils.tokens import IMAGE_PART_TOKENS, estimate_tokens

LOGGER = logging.getLogger(__name__)

MESSAGE_OVERHEAD_TOKENS = 4
GLOBAL_DEFAULT_BUDGET = 25_000

# Substring matches per provider; the longest matching substring wins.
MODEL_BUDGETS: Mapping[str, Mapping[str, int]] = {
    "openai": {
        "gpt-4.1": 1_000_000,
        "gpt-4o": 128_000,
        "gpt-4-turbo": 120_000,
        "gpt-4": 8_192,
        "gpt-3.5-turbo": 16_385,
        "gpt-5": 400_000,
        "o3": 200_000,
        "o4-mini": 200_000,
    },
    "anthropic": {
        "claude": 200_000,
    },
    "google": {
        "gemini-2.5": 1_000_000,
        "gemini-1.5": 1_000_000,
        "gemini-1.0": 32_000,
    },
}

PROVIDER_DEFAULT_BUDGETS: Mapping[str, int] = {
    "openai": 128_000,
    "anthropic": 200_000,
    "google": 128_000,
}

__all__ = [
    "GLOBAL_DEFAULT_BUDGET",
    "MESSAGE_OVERHEAD_TOKENS",
    "MODEL_BUDGETS",
    "PROVIDER_DEFAULT_BUDGETS",
    "TrimResult",
    "estimate_message_tokens",
    "select_prompt_budget",
    "trim_to_window",
]


def select_prompt_budget(provider_key: str, model: str) -> int:
    """Return the prompt budget for ``model``.

    Lookup order: substring match in the provider's table, then the
    provider default, then :data:`GLOBAL_DEFAULT_BUDGET`.
    """

    provider = (provider_key or "").strip().lower()
    name = (model or "").strip().lower()
    table = MODEL_BUDGETS.get(provider, {})
    matches = [key for key in table if key in name]
    if matches:
        return table[max(matches, key=len)]
    if provider in PROVIDER_DEFAULT_BUDGETS:
        return PROVIDER_DEFAULT_BUDGETS[provider]
    return GLOBAL_DEFAULT_BUDGET


def estimate_message_tokens(message: Mapping[str, Any], count: Callable[[str], int] = estimate_tokens) -> int:
    """Size one chat message: content, tool-call arguments and fixed overhead.

    ``count`` sizes each text fragment; images are charged a flat rate.
    """

    total = MESSAGE_OVERHEAD_TOKENS
    content = message.get("content")
    if isinstance(content, str):
        total += count(content)
    elif isinstance(content, Sequence):
        for part in content:
            if not isinstance(part, Mapping):
                continue
            if part.get("type") == "text":
                total += count(str(part.get("text") or ""))
            elif part.get("type") in ("image_url", "image"):
                total += IMAGE_PART_TOKENS
    for call in message.get("tool_calls") or ():
        function = call.get("function") if isinstance(call, Mapping) else None
        if isinstance(function, Mapping):
            total += count(str(function.get("name") or ""))
            total += count(str(function.get("arguments") or ""))
    return total


@dataclass(slots=True)
class TrimResult:
    """Messages that fit the budget and their estimated size."""

    messages: List[dict[str, Any]]
    tokens: int
    dropped: int = 0
    images_dropped: bool = False


def trim_to_window(messages: Sequence[Mapping[str, Any]], max_tokens: int) -> TrimResult:
    """Drop the oldest non-system messages until the estimate fits ``max_tokens``.

    System messages and the newest user message are always kept and order is
    never changed. Tool results whose assistant tool-call message was dropped
    are dropped with it. When the kept messages alone exceed the budget, image
    parts of the newest user message are removed first.

    Raises:
        PromptTooLargeError: the system messages plus the newest user text
            exceed ``max_tokens``.
    """

    items = [dict(message) for message in messages]
    latest_user = _latest_user_index(items)
    pinned = {index for index, item in enumerate(items) if item.get("role") == "system"}
    if latest_user is not None:
        pinned.add(latest_user)

    costs = [estimate_message_tokens(item) for item in items]
    required = sum(costs[index] for index in pinned)
    images_dropped = False
    if required > max_tokens and latest_user is not None:
        text_only = _without_images(items[latest_user])
        if text_only is not None:
            items[latest_user] = text_only
            required -= costs[latest_user]
            costs[latest_user] = estimate_message_tokens(text_only)
            required += costs[latest_user]
            images_dropped = True
    if required > max_tokens:
        raise PromptTooLargeError(budget=max_tokens, required=required)

    keep = set(pinned)
    used = required
    # newest first so the most recent context survives
    for index in range(len(items) - 1, -1, -1):
        if index in keep:
            continue
        if used + costs[index] > max_tokens:
            break
        keep.add(index)
        used += costs[index]

    kept = _drop_orphan_tool_results(items, keep)
    used = sum(costs[index] for index in kept)
    result = [items[index] for index in sorted(kept)]
    dropped = len(items) - len(result)
    if dropped:
        LOGGER.debug("Trimmed %d message(s) to fit %d token budget (%d used)", dropped, max_tokens, used)
    return TrimResult(messages=result, tokens=used, dropped=dropped, images_dropped=images_dropped)


def _latest_user_index(items: Sequence[Mapping[str, Any]]) -> int | None:
    for index in range(len(items) - 1, -1, -1):
        if items[index].get("role") == "user":
            return index
    return None


def _without_images(message: Mapping[str, Any]) -> dict[str, Any] | None:
    content = message.get("content")
    if not isinstance(content, list):
        return None
    parts = [part for part in content if isinstance(part, Mapping) and part.get("type") == "text"]
    if len(parts) == len(content):
        return None
    updated = dict(message)
    updated["content"] = parts or [{"type": "text", "text": ""}]
    return updated


def _drop_orphan_tool_results(items: Sequence[Mapping[str, Any]], keep: set[int]) -> set[int]:
    announced: set[str] = set()
    kept: set[int] = set()
    for index in sorted(keep):
        item = items[index]
        if item.get("role") == "assistant":
            for call in item.get("tool_calls") or ():
                if isinstance(call, Mapping) and call.get("id"):
                    announced.add(str(call["id"]))
        if item.get("role") == "tool" and str(item.get("tool_call_id")) not in announced:
            continue
        kept.add(index)
    return kept

"""Cost accounting: pricing, usage records, sinks and summaries."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Any, Awaitable, Callable, Iterable, Literal, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

RequestType = Literal["streaming", "non-streaming", "stateless"]

# USD per 1K tokens: (input, output)
MODEL_PRICING: Mapping[str, tuple[float, float]] = {
    "gpt-5.2": (0.00175, 0.014),
    "gpt-5.2-pro": (0.021, 0.168),
    "gpt-5.1": (0.00125, 0.01),
    "gpt-5": (0.00125, 0.01),
    "gpt-5-mini": (0.00025, 0.002),
    "gpt-5-nano": (0.00005, 0.0004),
    "o3": (0.002, 0.008),
    "o3-pro": (0.02, 0.08),
    "o4-mini": (0.0011, 0.0044),
    "o3-mini": (0.0011, 0.0044),
    "gpt-4.1": (0.0025, 0.01),
    "gpt-4.1-mini": (0.00005, 0.0002),
    "gpt-4.1-nano": (0.0001, 0.0004),
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "claude-opus-4-5-20251101": (0.005, 0.025),
    "claude-sonnet-4-5-20250929": (0.003, 0.015),
    "claude-haiku-4-5-20251001": (0.001, 0.005),
    "claude-sonnet-4-20250514": (0.003, 0.015),
    "gemini-3-pro-preview": (0.00125, 0.01),
    "gemini-3-flash-preview": (0.0003, 0.0025),
    "gemini-2.5-pro": (0.00125, 0.01),
    "gemini-2.5-flash": (0.0003, 0.0025),
    "gemini-2.5-flash-lite": (0.00015, 0.001),
}
DEFAULT_PRICING: tuple[float, float] = (0.001, 0.002)

__all__ = [
    "DEFAULT_PRICING",
    "MODEL_PRICING",
    "CostAccountant",
    "CostBreakdown",
    "CostRecord",
    "CostSink",
    "CostSummary",
    "DailyCost",
    "GroupCost",
    "InMemoryCostSink",
    "RequestType",
    "calculate_cost",
    "daily_costs",
    "format_cost_message",
    "pricing_for",
    "summarize_costs",
]


def pricing_for(model: str) -> tuple[float, float]:
    """Per-1K pricing for ``model``: exact name, then longest known prefix, then the default."""

    name = (model or "").strip().lower().removeprefix("models/")
    if name in MODEL_PRICING:
        return MODEL_PRICING[name]
    prefixes = [key for key in MODEL_PRICING if name.startswith(f"{key}-")]
    if prefixes:
        return MODEL_PRICING[max(prefixes, key=len)]
    return DEFAULT_PRICING


@dataclass(slots=True, frozen=True)
class CostBreakdown:
    input_cost: float
    output_cost: float

    @property
    def total_cost(self) -> float:
        return round(self.input_cost + self.output_cost, 6)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> CostBreakdown:
    input_rate, output_rate = pricing_for(model)
    return CostBreakdown(
        input_cost=round(input_tokens / 1000 * input_rate, 6),
        output_cost=round(output_tokens / 1000 * output_rate, 6),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class CostRecord:
    """Usage and cost of one completed exchange."""

    company_id: str
    assistant_id: str
    user_id: str | None
    provider: str
    model_name: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float
    duration_ms: float
    tool_call_count: int
    cached: bool
    request_type: RequestType
    session_id: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def as_payload(self) -> dict[str, Any]:
        payload = {
            "companyId": self.company_id,
            "assistantId": self.assistant_id,
            "sessionId": self.session_id,
            "userId": self.user_id,
            "provider": self.provider,
            "modelName": self.model_name,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "inputCost": self.input_cost,
            "outputCost": self.output_cost,
            "totalCost": self.total_cost,
            "durationMs": round(self.duration_ms, 3),
            "toolCallCount": self.tool_call_count,
            "cached": self.cached,
            "requestType": self.request_type,
            "timestamp": self.timestamp.isoformat(),
        }
        return {key: value for key, value in payload.items() if value is not None}


def format_cost_message(record: CostRecord) -> str:
    return f"[COST] {record.model_name}: ${record.total_cost:.6f} ({record.total_tokens} tokens)"


# -----------------------------------------------------------------------------
# Sinks
# -----------------------------------------------------------------------------


class CostSink(Protocol):
    """Append-only destination for cost records; may be sync or async."""

    def record(self, record: CostRecord) -> None | Awaitable[None]:
        ...


class InMemoryCostSink:
    """Ring-buffer cost sink for local inspection and tests."""

    def __init__(self, capacity: int = 1_000) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[CostRecord] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, record: CostRecord) -> None:
        with self._lock:
            self._buffer.append(record)

    def tail(self, limit: int | None = None) -> list[CostRecord]:
        with self._lock:
            records = list(self._buffer)
        if limit is None or limit >= len(records):
            return records
        return records[-limit:]

    def query(
        self,
        *,
        company_id: str | None = None,
        assistant_id: str | None = None,
        provider: str | None = None,
        model_name: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        skip: int = 0,
    ) -> list[CostRecord]:
        """Matching records, newest first."""

        matches = [
            record
            for record in reversed(self.tail())
            if (company_id is None or record.company_id == company_id)
            and (assistant_id is None or record.assistant_id == assistant_id)
            and (provider is None or record.provider == provider)
            and (model_name is None or record.model_name == model_name)
            and (start is None or record.timestamp >= start)
            and (end is None or record.timestamp <= end)
        ]
        return matches[skip : skip + limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


# -----------------------------------------------------------------------------
# Accountant
# -----------------------------------------------------------------------------


class CostAccountant:
    """Prices exchanges and submits the resulting records to a sink.

    A failing sink is logged and never propagates to the caller.
    """

    def __init__(self, sink: CostSink | None = None, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._sink = sink
        self._clock = clock

    @property
    def sink(self) -> CostSink | None:
        return self._sink

    async def record_exchange(
        self,
        *,
        company_id: str,
        assistant_id: str,
        user_id: str | None,
        session_id: str | None,
        provider: str,
        model_name: str,
        input_tokens: int,
        output_tokens: int,
        duration_ms: float,
        tool_call_count: int,
        request_type: RequestType,
        cached: bool = False,
    ) -> CostRecord:
        breakdown = calculate_cost(model_name, input_tokens, output_tokens)
        record = CostRecord(
            company_id=company_id,
            assistant_id=assistant_id,
            session_id=session_id,
            user_id=user_id,
            provider=provider,
            model_name=model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            input_cost=breakdown.input_cost,
            output_cost=breakdown.output_cost,
            total_cost=breakdown.total_cost,
            duration_ms=duration_ms,
            tool_call_count=tool_call_count,
            cached=cached,
            request_type=request_type,
            timestamp=self._clock(),
        )
        LOGGER.info(format_cost_message(record))
        await self._submit(record)
        return record

    async def _submit(self, record: CostRecord) -> None:
        if self._sink is None:
            return
        try:
            result = self._sink.record(record)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.error("Failed to persist cost record for assistant %s", record.assistant_id, exc_info=True)


# -----------------------------------------------------------------------------
# Summaries
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class GroupCost:
    key: str
    cost: float = 0.0
    requests: int = 0
    tokens: int = 0

    def add(self, record: CostRecord) -> None:
        self.cost = round(self.cost + record.total_cost, 6)
        self.requests += 1
        self.tokens += record.total_tokens


@dataclass(slots=True)
class CostSummary:
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_requests: int = 0
    average_duration_ms: float = 0.0
    by_model: dict[str, GroupCost] = field(default_factory=dict)
    by_provider: dict[str, GroupCost] = field(default_factory=dict)
    by_assistant: list[GroupCost] = field(default_factory=list)


def summarize_costs(records: Iterable[CostRecord]) -> CostSummary:
    """Totals plus per-model, per-provider and per-assistant groups (assistants by cost, descending)."""

    summary = CostSummary()
    by_model: dict[str, GroupCost] = {}
    by_provider: dict[str, GroupCost] = {}
    by_assistant: dict[str, GroupCost] = {}
    total_duration = 0.0
    for record in records:
        summary.total_cost = round(summary.total_cost + record.total_cost, 6)
        summary.total_input_tokens += record.input_tokens
        summary.total_output_tokens += record.output_tokens
        summary.total_requests += 1
        total_duration += record.duration_ms
        by_model.setdefault(record.model_name, GroupCost(record.model_name)).add(record)
        by_provider.setdefault(record.provider, GroupCost(record.provider)).add(record)
        by_assistant.setdefault(record.assistant_id, GroupCost(record.assistant_id)).add(record)
    if summary.total_requests:
        summary.average_duration_ms = total_duration / summary.total_requests
    summary.by_model = by_model
    summary.by_provider = by_provider
    summary.by_assistant = sorted(by_assistant.values(), key=lambda group: group.cost, reverse=True)
    return summary


@dataclass(slots=True, frozen=True)
class DailyCost:
    day: date
    cost: float
    requests: int
    tokens: int


def daily_costs(records: Sequence[CostRecord], *, days: int = 30, now: datetime | None = None) -> list[DailyCost]:
    """Per-day totals over the last ``days`` days, oldest day first."""

    current = now or _utcnow()
    cutoff = current - timedelta(days=days)
    groups: dict[date, GroupCost] = defaultdict(lambda: GroupCost(""))
    for record in records:
        if cutoff <= record.timestamp <= current:
            groups[record.timestamp.date()].add(record)
    return [
        DailyCost(day=day, cost=group.cost, requests=group.requests, tokens=group.tokens)
        for day, group in sorted(groups.items())
    ]

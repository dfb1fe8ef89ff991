"""Value types produced by the orchestrators.

``ExecutionResponse`` is the shape handed to downstream consumers; its wire
keys (``responseText``, ``toolCalls``, ``toolErrors``) are stable.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

MessageType = Literal["text", "tool_calls", "json"]


@dataclass(slots=True)
class ToolCallRequest:
    """Tool call directive emitted by the model.

    Attributes:
        call_id: Provider-assigned id used to correlate the result.
        name: Tool name as the model spelled it.
        index: Position of the call within its step.
        arguments: Raw JSON argument string.
    """

    call_id: str
    name: str
    index: int = 0
    arguments: str | None = None


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counts reported by the provider (or estimated when absent)."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
            estimated=self.estimated or other.estimated,
        )

    @classmethod
    def from_openai(cls, usage: Any) -> TokenUsage | None:
        if usage is None:
            return None
        details = getattr(usage, "prompt_tokens_details", None)
        cached = getattr(details, "cached_tokens", None) if details is not None else None
        return cls(
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            cached_tokens=int(cached or 0),
        )


@dataclass(slots=True)
class ModelTurnResult:
    """One model call: its text, requested tool calls and usage."""

    assistant_message: dict[str, Any]
    response_text: str
    tool_calls: Sequence[ToolCallRequest] = ()
    usage: TokenUsage | None = None
    finish_reason: str | None = None


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Outcome of one tool call, correlated by ``tool_call_id``."""

    tool_call_id: str
    tool_name: str
    args: Mapping[str, Any]
    result: Any = None
    error: str | None = None
    output: str = field(default="", compare=False)
    duration_ms: float = field(default=0.0, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "args": dict(self.args),
        }
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        return payload


@dataclass(slots=True, frozen=True)
class ToolErrorEntry:
    tool_name: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"toolName": self.tool_name, "error": self.error}


def new_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(slots=True)
class ExecutionResponse:
    """Materialized result of one exchange.

    ``tool_errors`` is derived from ``tool_calls`` and cannot drift from it.
    """

    response_text: str | None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    data: Any | None = None
    usage: TokenUsage | None = None
    id: str = field(default_factory=new_message_id)
    steps: int = 0

    @property
    def tool_errors(self) -> list[ToolErrorEntry]:
        return [
            ToolErrorEntry(tool_name=record.tool_name, error=record.error)
            for record in self.tool_calls
            if record.error is not None
        ]

    @property
    def message_type(self) -> MessageType:
        if self.data is not None:
            return "json"
        if self.tool_calls:
            return "tool_calls"
        return "text"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "responseText": self.response_text,
            "toolCalls": [record.to_dict() for record in self.tool_calls],
            "toolErrors": [entry.to_dict() for entry in self.tool_errors],
            "messageType": self.message_type,
        }
        if self.data is not None:
            payload["data"] = self.data
        return payload


__all__ = [
    "MessageType",
    "ToolCallRequest",
    "TokenUsage",
    "ModelTurnResult",
    "ToolCallRecord",
    "ToolErrorEntry",
    "ExecutionResponse",
    "new_message_id",
]

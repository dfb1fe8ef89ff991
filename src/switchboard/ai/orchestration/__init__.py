"""Orchestrators for stateless exchanges and thread runs."""

from .types import (
    ExecutionResponse,
    ModelTurnResult,
    TokenUsage,
    ToolCallRecord,
    ToolCallRequest,
    ToolErrorEntry,
)

__all__ = [
    "ExecutionResponse",
    "ModelTurnResult",
    "TokenUsage",
    "ToolCallRecord",
    "ToolCallRequest",
    "ToolErrorEntry",
]

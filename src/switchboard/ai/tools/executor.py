"""Tool invocation shared by the stateless loop and the run state machine.

Failures stay tagged as :class:`ToolOutcome` values until the model boundary,
where :meth:`ToolOutcome.as_model_text` renders ``"Error: ..."`` or
``"Exception: ..."``.
"""

from __future__ import annotations

import ast
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Sequence

from pydantic import ValidationError

from ..orchestration.types import ToolCallRecord, ToolCallRequest
from .registry import BoundTool, BoundToolSet
from .schema import format_validation_error
from .types import ActionResult

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ExecutorConfig",
    "ToolExecutor",
    "ToolOutcome",
    "coerce_arguments",
    "serialize_result",
]

FailureKind = Literal["error", "exception"]


def serialize_result(result: Any) -> str:
    """Render a successful tool value as the text the model reads."""

    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


def coerce_arguments(raw_arguments: str | Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Parse model-supplied arguments into a mapping.

    JSON is tried first, then a Python literal. Anything that does not end up
    as a mapping raises ``ValueError``.
    """

    if raw_arguments is None:
        return {}
    if isinstance(raw_arguments, Mapping):
        return raw_arguments
    text = raw_arguments.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text, strict=False)
    except (ValueError, TypeError):
        try:
            parsed = ast.literal_eval(text)
        except (ValueError, SyntaxError) as exc:
            raise ValueError("arguments are not valid JSON") from exc
    if not isinstance(parsed, Mapping):
        raise ValueError("arguments must be a JSON object")
    return parsed


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Tagged result of one tool invocation."""

    ok: bool
    value: Any = None
    error: str | None = None
    kind: FailureKind | None = None

    @classmethod
    def success(cls, value: Any) -> ToolOutcome:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, message: str) -> ToolOutcome:
        return cls(ok=False, error=message or "Action failed", kind="error")

    @classmethod
    def exception(cls, message: str) -> ToolOutcome:
        return cls(ok=False, error=message or "Unknown error", kind="exception")

    def as_model_text(self) -> str:
        if self.ok:
            return serialize_result(self.value)
        prefix = "Exception" if self.kind == "exception" else "Error"
        return f"{prefix}: {self.error}"


@dataclass(slots=True)
class ExecutorConfig:
    """Configuration for tool invocation.

    Attributes:
        timeout: Seconds one tool may run; ``None`` disables the limit.
        log_arguments: Include arguments in debug logs.
        log_results: Include serialized results in debug logs.
    """

    timeout: float | None = 30.0
    log_arguments: bool = False
    log_results: bool = False


class ToolExecutor:
    """Runs model-requested tool calls against a :class:`BoundToolSet`."""

    def __init__(self, config: ExecutorConfig | None = None) -> None:
        self._config = config or ExecutorConfig()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(self, tools: BoundToolSet, call: ToolCallRequest) -> ToolCallRecord:
        """Execute one call; never raises for tool-level failures."""

        start = time.perf_counter()
        args: Mapping[str, Any] = {}
        try:
            args = coerce_arguments(call.arguments)
        except ValueError as exc:
            outcome = ToolOutcome.failure(f"Invalid arguments for tool {call.name}: {exc}")
        else:
            tool = tools.lookup(call.name)
            if tool is None:
                outcome = ToolOutcome.failure(f"Function {call.name} not implemented.")
            else:
                outcome = await self._run(tool, call, args)

        duration_ms = (time.perf_counter() - start) * 1000
        text = outcome.as_model_text()
        if self._config.log_results:
            LOGGER.debug("Tool %s (%s) output: %s", call.name, call.call_id, text[:500])
        return ToolCallRecord(
            tool_call_id=call.call_id,
            tool_name=call.name,
            args=dict(args),
            result=outcome.value if outcome.ok else None,
            error=None if outcome.ok else text,
            output=text,
            duration_ms=duration_ms,
        )

    async def execute_all(self, tools: BoundToolSet, calls: Sequence[ToolCallRequest]) -> list[ToolCallRecord]:
        """Execute every call of one step concurrently; records keep call order."""

        return list(await asyncio.gather(*(self.execute(tools, call) for call in calls)))

    @staticmethod
    def tool_message(record: ToolCallRecord) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": record.tool_call_id, "content": record.output}

    async def _run(self, tool: BoundTool, call: ToolCallRequest, args: Mapping[str, Any]) -> ToolOutcome:
        try:
            validated = tool.schema.validate(args)
        except ValidationError as exc:
            LOGGER.info("Rejected arguments for tool %s: %s", call.name, exc.error_count())
            return ToolOutcome.failure(f"Invalid arguments for tool {call.name}: {format_validation_error(exc)}")

        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (%s) with %s", call.name, call.call_id, validated)
        else:
            LOGGER.debug("Executing tool %s (%s)", call.name, call.call_id)

        try:
            if self._config.timeout is not None:
                raw = await asyncio.wait_for(tool.invoke(validated), timeout=self._config.timeout)
            else:
                raw = await tool.invoke(validated)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %ss", call.name, self._config.timeout)
            return ToolOutcome.exception(f"Tool {call.name} timed out after {self._config.timeout:g}s")
        except Exception as exc:
            LOGGER.exception("Tool %s raised", call.name)
            return ToolOutcome.exception(str(exc) or type(exc).__name__)

        result = ActionResult.coerce(raw)
        if not result.success:
            LOGGER.warning("Tool %s reported failure: %s", call.name, result.error_message)
            return ToolOutcome.failure(result.error_message)
        return ToolOutcome.success(result.data)

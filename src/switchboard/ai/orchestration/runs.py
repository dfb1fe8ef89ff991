"""Run state machine for the thread/run conversation API.

A run is polled until the provider reports a terminal status. Whenever it
asks for tool outputs, every pending call is executed through the shared
:class:`ToolExecutor` and the outputs are submitted as one batch. Giving up
after the timeout raises :class:`RunTimeoutError`, which callers can tell
apart from a provider-reported ``failed`` or ``expired`` run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Protocol, Sequence

import httpx
from openai import APIError, AsyncOpenAI

from ..errors import ProviderInvocationError, RunTimeoutError
from ..tools.executor import ToolExecutor
from ..tools.registry import BoundToolSet
from .types import TokenUsage, ToolCallRecord, ToolCallRequest

LOGGER = logging.getLogger(__name__)

_PROVIDER_ERRORS: tuple[type[BaseException], ...] = (APIError, httpx.HTTPError)

__all__ = [
    "OpenAIRunClient",
    "RunClient",
    "RunSnapshot",
    "RunState",
    "RunStateMachine",
    "TerminalRun",
]


class RunState(str, Enum):
    """Lifecycle of a run."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @classmethod
    def parse(cls, value: str | None) -> RunState:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            LOGGER.warning("Unknown run status %r; treating as in_progress", value)
            return cls.IN_PROGRESS


_TERMINAL_STATES = frozenset(
    {RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED, RunState.EXPIRED, RunState.INCOMPLETE}
)


@dataclass(slots=True, frozen=True)
class RunSnapshot:
    """One poll result."""

    run_id: str
    thread_id: str
    status: RunState
    required_tool_calls: tuple[ToolCallRequest, ...] = ()
    last_error: str | None = None
    usage: TokenUsage | None = None


@dataclass(slots=True)
class TerminalRun:
    """Final state of a run that reached a provider terminal status."""

    run_id: str
    thread_id: str
    status: RunState
    tool_rounds: int = 0
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    last_error: str | None = None
    usage: TokenUsage | None = None
    elapsed: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is RunState.COMPLETED


class RunClient(Protocol):
    """Transport for polling a run and submitting tool outputs."""

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        ...

    async def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: Sequence[Mapping[str, str]]
    ) -> None:
        ...


class RunStateMachine:
    """Drives a run to a terminal status.

    Args:
        run_client: Polling and submission transport.
        tool_executor: Shared tool execution contract.
        poll_interval: Seconds between polls.
        timeout: Default wall-clock limit in seconds.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        run_client: RunClient,
        tool_executor: ToolExecutor | None = None,
        *,
        poll_interval: float = 0.5,
        timeout: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._run_client = run_client
        self._executor = tool_executor or ToolExecutor()
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep

    async def run_to_completion(
        self,
        thread_id: str,
        run_id: str,
        poll_timeout_ms: int | None = None,
        *,
        tools: BoundToolSet | None = None,
    ) -> TerminalRun:
        """Poll until terminal, servicing tool-output requests along the way.

        Raises:
            RunTimeoutError: no terminal status within the timeout.
            ProviderInvocationError: polling or submission failed.
        """

        timeout = self._timeout if poll_timeout_ms is None else poll_timeout_ms / 1000
        bound = tools if tools is not None else BoundToolSet()
        started = self._clock()
        submitted: set[str] = set()
        records: List[ToolCallRecord] = []
        rounds = 0
        last_status: RunState | None = None

        while self._clock() - started <= timeout:
            snapshot = await self._call(self._run_client.retrieve_run(thread_id, run_id))
            last_status = snapshot.status
            LOGGER.debug("Run %s status: %s", run_id, snapshot.status.value)

            if snapshot.status.is_terminal:
                return TerminalRun(
                    run_id=run_id,
                    thread_id=thread_id,
                    status=snapshot.status,
                    tool_rounds=rounds,
                    tool_calls=records,
                    last_error=snapshot.last_error,
                    usage=snapshot.usage,
                    elapsed=self._clock() - started,
                )

            if snapshot.status is RunState.REQUIRES_ACTION:
                pending = [call for call in snapshot.required_tool_calls if call.call_id not in submitted]
                if pending:
                    round_records = await self._executor.execute_all(bound, pending)
                    outputs = [{"tool_call_id": record.tool_call_id, "output": record.output} for record in round_records]
                    await self._call(self._run_client.submit_tool_outputs(thread_id, run_id, outputs))
                    submitted.update(call.call_id for call in pending)
                    records.extend(round_records)
                    rounds += 1
                    LOGGER.debug("Submitted %d tool output(s) for run %s", len(outputs), run_id)

            remaining = timeout - (self._clock() - started)
            if remaining <= 0:
                break
            await self._sleep(min(self._poll_interval, remaining))

        raise RunTimeoutError(thread_id, run_id, timeout, last_status.value if last_status else None)

    @staticmethod
    async def _call(awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except _PROVIDER_ERRORS as exc:
            raise ProviderInvocationError("openai", "assistants", str(exc) or type(exc).__name__) from exc


class OpenAIRunClient:
    """:class:`RunClient` over the OpenAI Assistants threads API."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        run = await self._client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)
        return self._snapshot(run, thread_id)

    async def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: Sequence[Mapping[str, str]]
    ) -> None:
        await self._client.beta.threads.runs.submit_tool_outputs(
            run_id,
            thread_id=thread_id,
            tool_outputs=[dict(output) for output in outputs],
        )

    async def create_message(self, thread_id: str, content: str) -> None:
        await self._client.beta.threads.messages.create(thread_id, role="user", content=content)

    async def create_run(self, thread_id: str, assistant_id: str, *, instructions: str | None = None) -> str:
        kwargs: dict[str, Any] = {"assistant_id": assistant_id}
        if instructions:
            kwargs["instructions"] = instructions
        run = await self._client.beta.threads.runs.create(thread_id, **kwargs)
        return str(run.id)

    async def latest_assistant_text(self, thread_id: str) -> str | None:
        page = await self._client.beta.threads.messages.list(thread_id, order="desc", limit=10)
        for message in getattr(page, "data", None) or ():
            if getattr(message, "role", None) != "assistant":
                continue
            parts = []
            for part in getattr(message, "content", None) or ():
                text = getattr(part, "text", None)
                value = getattr(text, "value", None) if text is not None else None
                if value:
                    parts.append(value)
            return "\n".join(parts)
        return None

    async def aclose(self) -> None:
        await self._client.close()

    @staticmethod
    def _snapshot(run: Any, thread_id: str) -> RunSnapshot:
        calls: List[ToolCallRequest] = []
        required = getattr(run, "required_action", None)
        submit = getattr(required, "submit_tool_outputs", None) if required is not None else None
        for index, call in enumerate(getattr(submit, "tool_calls", None) or ()):
            function = getattr(call, "function", None)
            calls.append(
                ToolCallRequest(
                    call_id=str(call.id),
                    name=str(getattr(function, "name", "") or ""),
                    index=index,
                    arguments=getattr(function, "arguments", None),
                )
            )
        last_error = getattr(run, "last_error", None)
        return RunSnapshot(
            run_id=str(run.id),
            thread_id=thread_id,
            status=RunState.parse(getattr(run, "status", None)),
            required_tool_calls=tuple(calls),
            last_error=getattr(last_error, "message", None) if last_error is not None else None,
            usage=TokenUsage.from_openai(getattr(run, "usage", None)),
        )

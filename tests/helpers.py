"""Shared test helpers and stub classes."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from switchboard.ai.ai_types import ActionContext
from switchboard.ai.client import AIStreamEvent
from switchboard.ai.orchestration.runs import RunSnapshot
from switchboard.ai.orchestration.types import ModelTurnResult, TokenUsage, ToolCallRequest
from switchboard.ai.providers import ProviderKind
from switchboard.ai.tools import ActionDescriptor, ActionResult, FunctionActionProvider


def tool_call(call_id: str, name: str, arguments: Mapping[str, Any] | str | None = None, index: int = 0) -> ToolCallRequest:
    raw = arguments if isinstance(arguments, str) or arguments is None else json.dumps(arguments)
    return ToolCallRequest(call_id=call_id, name=name, index=index, arguments=raw)


def turn(
    text: str = "",
    tool_calls: Sequence[ToolCallRequest] = (),
    usage: TokenUsage | None = TokenUsage(prompt_tokens=100, completion_tokens=20),
) -> ModelTurnResult:
    message: dict[str, Any] = {"role": "assistant", "content": text or None}
    if tool_calls:
        message["tool_calls"] = [
            {"id": call.call_id, "type": "function", "function": {"name": call.name, "arguments": call.arguments or "{}"}}
            for call in tool_calls
        ]
    return ModelTurnResult(assistant_message=message, response_text=text, tool_calls=list(tool_calls), usage=usage)


class ScriptedChatClient:
    """Chat client stand-in that replays scripted turns (or raises scripted errors)."""

    def __init__(self, turns: Iterable[ModelTurnResult | BaseException], model: str = "gpt-4.1-mini") -> None:
        self._turns = list(turns)
        self.model = model
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def _next(self, messages: Sequence[Mapping[str, Any]], kwargs: Mapping[str, Any]) -> ModelTurnResult:
        self.calls.append({"messages": [dict(message) for message in messages], **kwargs})
        if not self._turns:
            raise AssertionError("model called more times than scripted")
        item = self._turns.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def complete_chat(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> ModelTurnResult:
        return self._next(messages, kwargs)

    async def stream_chat(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> AsyncIterator[AIStreamEvent]:
        result = self._next(messages, kwargs)
        for word in result.response_text.split(" "):
            if word:
                yield AIStreamEvent(type="content.delta", content=word + " ")
        yield AIStreamEvent(type="turn.done", content=result.response_text, parsed=result)

    async def aclose(self) -> None:
        self.closed = True


class RecordingClientFactory:
    """Client factory returning one scripted client and remembering its arguments."""

    def __init__(self, client: ScriptedChatClient) -> None:
        self.client = client
        self.calls: list[dict[str, Any]] = []

    def __call__(self, provider_key: str, model: str, api_key: str, **kwargs: Any) -> ScriptedChatClient:
        self.calls.append({"provider_key": provider_key, "model": model, "api_key": api_key, **kwargs})
        self.client.model = ProviderKind.parse(provider_key).normalize_model(model)
        return self.client


CREATE_EVENT_CONTRACT = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "Event title"},
        "date": {"type": "string", "description": "ISO date"},
        "attendees": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["title", "date"],
}


def calendar_provider(calls: list[dict] | None = None) -> FunctionActionProvider:
    """Calendar integration whose createEvent rejects dates it cannot parse."""

    recorded = calls if calls is not None else []

    async def create_event(args: Mapping[str, Any]) -> ActionResult:
        recorded.append(dict(args))
        if not str(args.get("date", "")).startswith("20"):
            return ActionResult(success=False, error="invalid date")
        return ActionResult(success=True, data={"eventId": f"evt-{len(recorded)}", "title": args["title"]})

    def list_events(args: Mapping[str, Any]) -> dict:
        return {"success": True, "data": [{"title": "Standup"}]}

    def factory(context: ActionContext) -> list[ActionDescriptor]:
        return [
            ActionDescriptor(
                name="createEvent",
                description="Create a calendar event",
                implementation=create_event,
                parameters=CREATE_EVENT_CONTRACT,
            ),
            ActionDescriptor(
                name="listEvents",
                description="List upcoming events",
                implementation=list_events,
                parameters={"type": "object", "properties": {}},
            ),
        ]

    return FunctionActionProvider("calendar", factory)


def crm_provider() -> FunctionActionProvider:
    async def lookup_contact(args: Mapping[str, Any]) -> dict:
        return {"success": True, "data": {"email": f"{args['name'].lower()}@example.com"}}

    async def factory(context: ActionContext) -> dict[str, ActionDescriptor]:
        return {
            "lookupContact": ActionDescriptor(
                name="lookupContact",
                description="Find a contact by name",
                implementation=lookup_contact,
                parameters={
                    "type": "object",
                    "properties": {"name": {"type": "string"}},
                    "required": ["name"],
                },
            )
        }

    return FunctionActionProvider("crm", factory)


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedRunClient:
    """Run client replaying snapshots; the last one repeats forever."""

    def __init__(self, statuses: Sequence[RunSnapshot | BaseException]) -> None:
        self._statuses = list(statuses)
        self.polls = 0
        self.submissions: list[list[dict]] = []

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunSnapshot:
        self.polls += 1
        item = self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: Sequence[Mapping[str, str]]) -> None:
        self.submissions.append([dict(output) for output in outputs])

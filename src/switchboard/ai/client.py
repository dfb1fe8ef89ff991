"""Async chat client over OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orchestration.types import ModelTurnResult, TokenUsage, ToolCallRequest

LOGGER = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIStatusError,
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    httpx.TimeoutException,
)

# Request options copied into the payload only when set
_OPTIONAL_FIELDS = ("temperature", "max_tokens", "response_format")

Messages = Iterable[Mapping[str, Any] | ChatCompletionMessageParam]


@dataclass(slots=True)
class ClientSettings:
    """Connection settings for one provider endpoint and model."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 1
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas.

    ``turn.done`` is always the last event of a stream; its ``parsed`` field
    carries the assembled :class:`ModelTurnResult`.
    """

    type: str
    content: str | None = None
    parsed: Any | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    tool_call_id: str | None = None


@dataclass(slots=True)
class _ToolCallAccumulator:
    index: int
    call_id: str = ""
    name: str = ""
    arguments: List[str] = field(default_factory=list)

    def absorb(self, tool_delta: Any) -> None:
        if getattr(tool_delta, "id", None):
            self.call_id = tool_delta.id
        function = getattr(tool_delta, "function", None)
        if function is None:
            return
        if getattr(function, "name", None):
            self.name = function.name
        if getattr(function, "arguments", None):
            self.arguments.append(function.arguments)

    def as_request(self) -> ToolCallRequest:
        return ToolCallRequest(call_id=self.call_id, name=self.name, index=self.index, arguments="".join(self.arguments))


class AIClient:
    """Async client issuing single-shot or streamed chat completions.

    Both modes accept the same keyword options: ``system`` is prepended as a
    system message, ``tools`` and ``response_format`` are forwarded as-is,
    ``metadata`` is merged over :attr:`ClientSettings.metadata` and anything
    else lands in the request body unchanged.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=dict(settings.default_headers) if settings.default_headers else None,
            max_retries=0,
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def raw_client(self) -> AsyncOpenAI:
        return self._client

    async def complete_chat(
        self,
        messages: Messages,
        *,
        system: str | None = None,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        **options: Any,
    ) -> ModelTurnResult:
        """Run one non-streamed completion and normalize it into a turn."""

        payload = self._request(messages, system, tools, options)
        completion = await self._create(payload, streamed=False)
        return _turn_from_completion(completion)

    async def stream_chat(
        self,
        messages: Messages,
        *,
        system: str | None = None,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        **options: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream a chat completion, ending with a ``turn.done`` event."""

        payload = self._request(messages, system, tools, options)
        payload.update(stream=True, stream_options={"include_usage": True})
        stream = await self._create(payload, streamed=True)

        pieces: List[str] = []
        pending: Dict[int, _ToolCallAccumulator] = {}
        usage: TokenUsage | None = None
        finish_reason: str | None = None
        async for chunk in stream:
            usage = TokenUsage.from_openai(getattr(chunk, "usage", None)) or usage
            for choice in getattr(chunk, "choices", None) or ():
                finish_reason = getattr(choice, "finish_reason", None) or finish_reason
                delta = getattr(choice, "delta", None)
                if delta is None:
                    continue
                if getattr(delta, "content", None):
                    pieces.append(delta.content)
                    yield AIStreamEvent(type="content.delta", content=delta.content)
                for tool_delta in getattr(delta, "tool_calls", None) or ():
                    slot = int(getattr(tool_delta, "index", 0) or 0)
                    pending.setdefault(slot, _ToolCallAccumulator(index=slot)).absorb(tool_delta)

        requests = [pending[slot].as_request() for slot in sorted(pending)]
        for request in requests:
            yield AIStreamEvent(
                type="tool_calls.function.arguments.done",
                tool_name=request.name,
                tool_index=request.index,
                tool_arguments=request.arguments,
                tool_call_id=request.call_id,
            )
        text = "".join(pieces)
        turn = ModelTurnResult(
            assistant_message=_assistant_message(text, requests),
            response_text=text,
            tool_calls=requests,
            usage=usage,
            finish_reason=finish_reason,
        )
        yield AIStreamEvent(type="turn.done", content=text, parsed=turn)

    async def aclose(self) -> None:
        """Release the HTTP resources held by the OpenAI client."""

        close = getattr(self._client, "close", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result

    def _request(
        self,
        messages: Messages,
        system: str | None,
        tools: Iterable[ChatCompletionToolParam] | None,
        options: Dict[str, Any],
    ) -> Dict[str, Any]:
        conversation: List[ChatCompletionMessageParam] = []
        if system:
            conversation.append(cast(ChatCompletionMessageParam, {"role": "system", "content": system}))
        for message in messages:
            try:
                conversation.append(cast(ChatCompletionMessageParam, dict(message)))
            except TypeError as exc:
                raise TypeError("Messages must be mapping-like objects") from exc
        if not conversation:
            raise ValueError("At least one message is required to start a chat")

        payload: Dict[str, Any] = {"model": self._settings.model, "messages": conversation}
        metadata = {**(self._settings.metadata or {}), **(options.pop("metadata", None) or {})}
        if metadata:
            payload["metadata"] = metadata
        tool_list = list(tools or ())
        if tool_list:
            payload["tools"] = tool_list
        for name in _OPTIONAL_FIELDS:
            value = options.pop(name, None)
            if value is not None:
                payload[name] = dict(value) if isinstance(value, Mapping) else value
        payload.update(options)
        return payload

    async def _create(self, payload: Dict[str, Any], *, streamed: bool) -> Any:
        LOGGER.debug(
            "Requesting %s chat completion from %s with %d message(s)",
            "streamed" if streamed else "single",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            LOGGER.debug("AI prompt payload:\n%s", json.dumps(payload, ensure_ascii=False, indent=2, default=repr))

        result: Any = None
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
        )
        async for attempt in retrying:
            with attempt:
                result = await self._client.chat.completions.create(**payload)
        return result


def _turn_from_completion(completion: Any) -> ModelTurnResult:
    usage = TokenUsage.from_openai(getattr(completion, "usage", None))
    choices = getattr(completion, "choices", None) or ()
    if not choices:
        return ModelTurnResult(assistant_message={"role": "assistant", "content": ""}, response_text="", usage=usage)
    choice = choices[0]
    message = getattr(choice, "message", None)
    text = getattr(message, "content", None) or ""
    requests = [
        ToolCallRequest(
            call_id=str(getattr(call, "id", "") or f"call_{index}"),
            name=str(getattr(call.function, "name", "") or "") if getattr(call, "function", None) else "",
            index=index,
            arguments=getattr(getattr(call, "function", None), "arguments", None),
        )
        for index, call in enumerate(getattr(message, "tool_calls", None) or ())
    ]
    return ModelTurnResult(
        assistant_message=_assistant_message(text, requests),
        response_text=text,
        tool_calls=requests,
        usage=usage,
        finish_reason=getattr(choice, "finish_reason", None),
    )


def _assistant_message(text: str, requests: Sequence[ToolCallRequest]) -> dict[str, Any]:
    """Assistant history entry; content is ``None`` only alongside tool calls."""

    if not requests:
        return {"role": "assistant", "content": text}
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [
            {
                "id": request.call_id,
                "type": "function",
                "function": {"name": request.name, "arguments": request.arguments or "{}"},
            }
            for request in requests
        ],
    }


__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "RETRYABLE_ERRORS"]

"""Stateless tool-calling loop.

One exchange resolves the assistant's tools, builds and trims the prompt, then
alternates model calls and tool execution for at most ``max_tool_steps``
steps. Tool failures are fed back to the model; provider failures propagate
as :class:`ProviderInvocationError`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, List, Literal, Mapping, Protocol, Sequence

import httpx
from openai import APIError

from ..ai_types import (
    ActionContext,
    ApiKeyResolver,
    AssistantConfig,
    Attachment,
    AttachmentFetcher,
    ResponseFormat,
    SessionRef,
)
from ..client import AIStreamEvent
from ..errors import MissingApiKeyError, ProviderInvocationError
from ..providers import ProviderKind, bare_model_name, get_client
from ..services.costs import CostAccountant, RequestType
from ..tools.executor import ExecutorConfig, ToolExecutor
from ..tools.registry import ActionRegistry, BoundToolSet
from ..utils.tokens import TokenCounterRegistry
from ...services.settings import EngineSettings
from .attachments import build_user_content
from .token_window import estimate_message_tokens, select_prompt_budget, trim_to_window
from .types import ExecutionResponse, ModelTurnResult, TokenUsage, ToolCallRecord

LOGGER = logging.getLogger(__name__)

_ACTION_TAG = re.compile(r"\[Action:\s*[^\]]+\]", re.IGNORECASE)
# "[ran action createEvent]": the word action followed by a dotted, snake or camel case tool name
_ACTION_MENTION = re.compile(r"\[[^\]\n]*\b[Aa]ction\b:?\s+(?:\w+(?:\.\w+)+|[a-z]+[A-Z]\w*|[A-Za-z0-9]+_\w+)\s*\]")
_HORIZONTAL_SPACE = re.compile(r"[ \t]+")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)
_PROVIDER_ERRORS: tuple[type[BaseException], ...] = (APIError, httpx.HTTPError, asyncio.TimeoutError)

__all__ = [
    "ChatClient",
    "StatelessExecutor",
    "StreamEvent",
    "StreamHandle",
    "clean_action_annotations",
    "parse_json_response",
]


def clean_action_annotations(text: str | None) -> str:
    """Remove bracketed action annotations the model echoes into its answer."""

    if not text:
        return ""
    cleaned = _ACTION_TAG.sub("", text)
    cleaned = _ACTION_MENTION.sub("", cleaned)
    return _HORIZONTAL_SPACE.sub(" ", cleaned).strip()


def parse_json_response(text: str) -> Any:
    """Parse model text as JSON, tolerating a surrounding markdown code fence."""

    candidate = text.strip()
    fenced = _CODE_FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        return json.loads(candidate)
    except ValueError:
        LOGGER.warning("Model response was not valid JSON (%d chars)", len(text))
        return {"error": "Failed to parse response as JSON", "raw": text}


class ChatClient(Protocol):
    """The subset of :class:`AIClient` the loop depends on."""

    @property
    def model(self) -> str:
        ...

    async def complete_chat(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> ModelTurnResult:
        ...

    def stream_chat(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> AsyncIterator[AIStreamEvent]:
        ...

    async def aclose(self) -> None:
        ...


ClientFactory = Callable[..., ChatClient]


@dataclass(slots=True)
class _Exchange:
    """Everything resolved before the first model call."""

    assistant: AssistantConfig
    provider: ProviderKind
    client: ChatClient
    tools: BoundToolSet
    messages: List[dict[str, Any]]
    system: str | None
    response_format: ResponseFormat | None
    user_id: str | None
    session_id: str | None
    started: float = field(default_factory=time.perf_counter)
    closed: bool = False

    @property
    def structured(self) -> bool:
        """A ``json_schema`` format with a schema gets one tool-free call."""

        fmt = self.response_format
        return fmt is not None and fmt.type == "json_schema" and bool(fmt.schema)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self.client.aclose()


@dataclass(slots=True)
class _LoopState:
    messages: List[dict[str, Any]]
    records: List[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    text: str = ""
    steps: int = 0


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """Incremental output of a streamed exchange."""

    type: Literal["text-delta", "tool-result", "finish"]
    text: str | None = None
    record: ToolCallRecord | None = None
    response: ExecutionResponse | None = None


class StreamHandle:
    """Async iterator of :class:`StreamEvent` with an awaitable final response."""

    def __init__(self) -> None:
        self._events: AsyncGenerator[StreamEvent, None] | None = None
        self._closer: Callable[[], Awaitable[None]] | None = None
        self._response: ExecutionResponse | None = None

    def _attach(self, events: AsyncGenerator[StreamEvent, None], closer: Callable[[], Awaitable[None]]) -> None:
        self._events = events
        self._closer = closer

    def _complete(self, response: ExecutionResponse) -> None:
        self._response = response

    @property
    def done(self) -> bool:
        return self._response is not None

    def __aiter__(self) -> StreamHandle:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._events is None:
            raise StopAsyncIteration
        return await self._events.__anext__()

    async def text_stream(self) -> AsyncIterator[str]:
        async for event in self:
            if event.type == "text-delta" and event.text:
                yield event.text

    async def response(self) -> ExecutionResponse:
        """Drain any remaining events and return the materialized response."""

        async for _ in self:
            pass
        if self._response is None:
            raise RuntimeError("Stream ended without producing a response")
        return self._response

    async def aclose(self) -> None:
        """Stop the exchange early and release its chat client.

        Safe to call on a handle that was never iterated or already finished.
        """

        if self._events is not None:
            await self._events.aclose()
        if self._closer is not None:
            await self._closer()

    async def __aenter__(self) -> StreamHandle:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class StatelessExecutor:
    """Runs stateless exchanges in single-shot or streaming mode.

    Args:
        registry: Resolves the assistant's bound tools.
        api_keys: Looks up the provider credential per tenant.
        settings: Engine tunables.
        tool_executor: Shared tool execution contract.
        accountant: Records one cost entry per exchange.
        fetcher: Loads attachment content.
        client_factory: Builds the chat client; defaults to :func:`get_client`.
        token_counters: Sizes replies whose provider reported no usage.
    """

    def __init__(
        self,
        *,
        registry: ActionRegistry,
        api_keys: ApiKeyResolver,
        settings: EngineSettings | None = None,
        tool_executor: ToolExecutor | None = None,
        accountant: CostAccountant | None = None,
        fetcher: AttachmentFetcher | None = None,
        client_factory: ClientFactory | None = None,
        token_counters: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._registry = registry
        self._api_keys = api_keys
        self._tool_executor = tool_executor or ToolExecutor(ExecutorConfig(timeout=self._settings.tool_timeout))
        self._accountant = accountant or CostAccountant()
        self._fetcher = fetcher
        self._client_factory: ClientFactory = client_factory or get_client
        self._token_counters = token_counters or TokenCounterRegistry()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def execute_stateless(
        self,
        assistant: AssistantConfig,
        user_input: str,
        *,
        attachments: Sequence[Attachment] = (),
        response_format: ResponseFormat | None = None,
        session: SessionRef | None = None,
        system_prompt_override: str | None = None,
        user_id: str | None = None,
        request_type: RequestType = "stateless",
    ) -> ExecutionResponse:
        """Run one exchange to completion and return the materialized response.

        Raises:
            PreconditionError: unknown provider, missing API key or a prompt
                that cannot fit the model budget.
            ProviderInvocationError: a model call failed.
        """

        exchange = await self._prepare(
            assistant, user_input, attachments, response_format, session, system_prompt_override, user_id
        )
        try:
            if exchange.structured:
                state = await self._structured_call(exchange)
            else:
                state = await self._run_loop(exchange)
            return await self._finish(exchange, state, request_type)
        finally:
            await exchange.close()

    async def execute_streaming(
        self,
        assistant: AssistantConfig,
        user_input: str,
        *,
        attachments: Sequence[Attachment] = (),
        response_format: ResponseFormat | None = None,
        session: SessionRef | None = None,
        system_prompt_override: str | None = None,
        user_id: str | None = None,
    ) -> StreamHandle:
        """Start a streamed exchange.

        Preconditions are checked before this returns; provider failures
        surface while iterating the handle.
        """

        exchange = await self._prepare(
            assistant, user_input, attachments, response_format, session, system_prompt_override, user_id
        )
        handle = StreamHandle()
        handle._attach(self._stream_events(exchange, handle), exchange.close)
        return handle

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------
    async def _prepare(
        self,
        assistant: AssistantConfig,
        user_input: str,
        attachments: Sequence[Attachment],
        response_format: ResponseFormat | None,
        session: SessionRef | None,
        system_prompt_override: str | None,
        user_id: str | None,
    ) -> _Exchange:
        provider = ProviderKind.parse(assistant.provider_key)
        api_key = await self._api_keys.get_api_key(assistant.company_id, provider.api_key_name)
        if not api_key:
            raise MissingApiKeyError(provider.value, tenant_id=assistant.company_id)

        context = ActionContext(
            company_id=assistant.company_id,
            assistant_id=assistant.assistant_id,
            language=assistant.language,
        )
        content, tools = await asyncio.gather(
            build_user_content(
                user_input,
                attachments,
                self._fetcher,
                char_limit=self._settings.attachment_char_limit,
            ),
            self._registry.resolve_for_assistant(assistant, context),
        )

        system = system_prompt_override or assistant.system_prompt or self._settings.default_system_prompt
        history = [dict(message) for message in (session.history if session else ())]
        messages: List[dict[str, Any]] = [*history, {"role": "user", "content": content}]
        side_system: str | None = system
        if provider.folds_system_prompt:
            messages = [{"role": "system", "content": system}] + [m for m in messages if m.get("role") != "system"]
            side_system = None

        model = assistant.model or self._settings.default_model
        budget = select_prompt_budget(provider.value, bare_model_name(provider.normalize_model(model)))
        if side_system:
            budget -= estimate_message_tokens({"role": "system", "content": side_system})
        trimmed = trim_to_window(messages, budget)

        client = self._client_factory(
            provider.value,
            model,
            api_key,
            request_timeout=self._settings.request_timeout,
            max_retries=self._settings.max_retries,
            retry_min_seconds=self._settings.retry_min_seconds,
            retry_max_seconds=self._settings.retry_max_seconds,
            default_headers=self._settings.default_headers or None,
            debug_logging=self._settings.debug_logging,
        )
        LOGGER.debug(
            "Prepared exchange for assistant %s: %d message(s), %d tool(s), ~%d prompt tokens",
            assistant.assistant_id,
            len(trimmed.messages),
            len(tools),
            trimmed.tokens,
        )
        return _Exchange(
            assistant=assistant,
            provider=provider,
            client=client,
            tools=tools,
            messages=trimmed.messages,
            system=side_system,
            response_format=response_format,
            user_id=user_id or (session.user_id if session else None),
            session_id=session.session_id if session else None,
        )

    # ------------------------------------------------------------------
    # Single-shot mode
    # ------------------------------------------------------------------
    async def _run_loop(self, exchange: _Exchange) -> _LoopState:
        state = _LoopState(messages=list(exchange.messages))
        for _ in range(self._settings.max_tool_steps):
            turn = await self._call_model(exchange, state.messages)
            if not await self._absorb_turn(exchange, state, turn):
                break
        else:
            LOGGER.info(
                "Assistant %s reached the %d step limit", exchange.assistant.assistant_id, self._settings.max_tool_steps
            )
        return state

    async def _structured_call(self, exchange: _Exchange) -> _LoopState:
        state = _LoopState(messages=list(exchange.messages))
        turn = await self._call_model(exchange, state.messages, with_tools=False)
        await self._absorb_turn(exchange, state, turn)
        return state

    async def _call_model(
        self,
        exchange: _Exchange,
        messages: Sequence[Mapping[str, Any]],
        *,
        with_tools: bool = True,
    ) -> ModelTurnResult:
        try:
            return await exchange.client.complete_chat(messages, **self._call_kwargs(exchange, with_tools))
        except _PROVIDER_ERRORS as exc:
            raise self._provider_error(exchange, exc) from exc

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------
    async def _stream_events(self, exchange: _Exchange, handle: StreamHandle) -> AsyncGenerator[StreamEvent, None]:
        state = _LoopState(messages=list(exchange.messages))
        steps = 1 if exchange.structured else self._settings.max_tool_steps
        try:
            for _ in range(steps):
                turn: ModelTurnResult | None = None
                try:
                    async for event in exchange.client.stream_chat(
                        state.messages, **self._call_kwargs(exchange, with_tools=not exchange.structured)
                    ):
                        if event.type == "content.delta" and event.content:
                            yield StreamEvent(type="text-delta", text=event.content)
                        elif event.type == "turn.done":
                            turn = event.parsed
                except _PROVIDER_ERRORS as exc:
                    raise self._provider_error(exchange, exc) from exc
                if turn is None:
                    break
                executed = len(state.records)
                more = await self._absorb_turn(exchange, state, turn)
                for record in state.records[executed:]:
                    yield StreamEvent(type="tool-result", record=record)
                if not more:
                    break
            response = await self._finish(exchange, state, "streaming")
            handle._complete(response)
            yield StreamEvent(type="finish", response=response)
        finally:
            await exchange.close()

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def _call_kwargs(self, exchange: _Exchange, with_tools: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"system": exchange.system}
        if with_tools and exchange.tools:
            kwargs["tools"] = exchange.tools.openai_tools()
        if exchange.response_format is not None:
            kwargs["response_format"] = exchange.response_format.as_openai_format()
        return kwargs

    async def _absorb_turn(self, exchange: _Exchange, state: _LoopState, turn: ModelTurnResult) -> bool:
        """Fold one model turn into ``state``; return whether another step is needed."""

        state.steps += 1
        state.text = turn.response_text or ""
        state.usage = state.usage + (turn.usage or self._estimate_usage(exchange, state.messages, turn))
        if not turn.tool_calls:
            return False
        records = await self._tool_executor.execute_all(exchange.tools, list(turn.tool_calls))
        state.records.extend(records)
        state.messages.append(turn.assistant_message)
        state.messages.extend(ToolExecutor.tool_message(record) for record in records)
        return True

    def _estimate_usage(
        self, exchange: _Exchange, messages: Sequence[Mapping[str, Any]], turn: ModelTurnResult
    ) -> TokenUsage:
        count = self._token_counters.counter_for(bare_model_name(exchange.client.model)).count
        prompt = sum(estimate_message_tokens(message, count) for message in messages)
        if exchange.system:
            prompt += count(exchange.system)
        completion = count(turn.response_text or "") + sum(count(call.arguments or "") for call in turn.tool_calls)
        return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, estimated=True)

    async def _finish(self, exchange: _Exchange, state: _LoopState, request_type: RequestType) -> ExecutionResponse:
        text = clean_action_annotations(state.text)
        data = None
        if exchange.response_format is not None:
            data = parse_json_response(state.text)
        response = ExecutionResponse(
            response_text=text or None,
            tool_calls=list(state.records),
            data=data,
            usage=state.usage,
            steps=state.steps,
        )
        await self._accountant.record_exchange(
            company_id=exchange.assistant.company_id,
            assistant_id=exchange.assistant.assistant_id,
            user_id=exchange.user_id,
            session_id=exchange.session_id,
            provider=exchange.provider.value,
            model_name=bare_model_name(exchange.client.model),
            input_tokens=state.usage.prompt_tokens,
            output_tokens=state.usage.completion_tokens,
            duration_ms=(time.perf_counter() - exchange.started) * 1000,
            tool_call_count=len(state.records),
            request_type=request_type,
            cached=state.usage.cached_tokens > 0,
        )
        return response

    @staticmethod
    def _provider_error(exchange: _Exchange, exc: BaseException) -> ProviderInvocationError:
        LOGGER.warning("Provider call failed for assistant %s: %s", exchange.assistant.assistant_id, exc)
        return ProviderInvocationError(exchange.provider.value, exchange.client.model, str(exc) or type(exc).__name__)

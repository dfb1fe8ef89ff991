"""Entry points exposed to the host application."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence

from openai import AsyncOpenAI

from ..ai_types import (
    ActionContext,
    ApiKeyResolver,
    AssistantConfig,
    Attachment,
    AttachmentFetcher,
    ResponseFormat,
    SessionRef,
)
from ..errors import AssistantNotFoundError, MissingApiKeyError
from ..providers import ProviderKind
from ..services.costs import CostAccountant, CostSink
from ..tools.executor import ExecutorConfig, ToolExecutor
from ..tools.registry import ActionRegistry
from ..tools.types import ActionProvider
from ..utils.tokens import TokenCounterRegistry
from ...services.settings import EngineSettings
from .runs import OpenAIRunClient, RunStateMachine, TerminalRun
from .stateless import ClientFactory, StatelessExecutor, StreamHandle, clean_action_annotations
from .types import ExecutionResponse

LOGGER = logging.getLogger(__name__)

RunClientFactory = Callable[[str], OpenAIRunClient]

__all__ = ["AssistantEngine", "ThreadReply"]


@dataclass(slots=True)
class ThreadReply:
    """Assistant reply produced through the thread/run API."""

    text: str | None
    run: TerminalRun


class AssistantEngine:
    """Facade over the stateless loop and the legacy run state machine.

    Both paths share one :class:`ToolExecutor` and one :class:`CostAccountant`.
    """

    def __init__(
        self,
        *,
        registry: ActionRegistry,
        api_keys: ApiKeyResolver,
        settings: EngineSettings | None = None,
        cost_sink: CostSink | None = None,
        fetcher: AttachmentFetcher | None = None,
        client_factory: ClientFactory | None = None,
        token_counters: TokenCounterRegistry | None = None,
        run_client_factory: RunClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._registry = registry
        self._api_keys = api_keys
        self._tool_executor = ToolExecutor(ExecutorConfig(timeout=self._settings.tool_timeout))
        self._accountant = CostAccountant(cost_sink)
        self._run_client_factory = run_client_factory or self._default_run_client
        self._clock = clock
        self._sleep = sleep
        self._stateless = StatelessExecutor(
            registry=registry,
            api_keys=api_keys,
            settings=self._settings,
            tool_executor=self._tool_executor,
            accountant=self._accountant,
            fetcher=fetcher,
            client_factory=client_factory,
            token_counters=token_counters,
        )

    @classmethod
    def from_settings(
        cls,
        providers: Iterable[ActionProvider],
        *,
        api_keys: ApiKeyResolver,
        settings: EngineSettings | None = None,
        **kwargs: Any,
    ) -> AssistantEngine:
        """Build an engine whose registry follows the allow-list and contract settings."""

        settings = settings or EngineSettings()
        registry = ActionRegistry(
            providers,
            empty_allow_list_policy=settings.empty_allow_list_policy,
            strict_contracts=settings.strict_contracts,
        )
        return cls(registry=registry, api_keys=api_keys, settings=settings, **kwargs)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

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
    ) -> ExecutionResponse:
        return await self._stateless.execute_stateless(
            assistant,
            user_input,
            attachments=attachments,
            response_format=response_format,
            session=session,
            system_prompt_override=system_prompt_override,
            user_id=user_id,
        )

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
        return await self._stateless.execute_streaming(
            assistant,
            user_input,
            attachments=attachments,
            response_format=response_format,
            session=session,
            system_prompt_override=system_prompt_override,
            user_id=user_id,
        )

    async def run_legacy_thread(
        self,
        assistant: AssistantConfig,
        thread_id: str,
        run_id: str,
        *,
        poll_timeout_ms: int | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> TerminalRun:
        """Drive an existing run to a terminal status and record its cost."""

        run_client = await self._open_run_client(assistant)
        try:
            return await self._drive_run(
                run_client, assistant, thread_id, run_id, poll_timeout_ms, user_id, session_id
            )
        finally:
            await run_client.aclose()

    async def send_thread_message(
        self,
        assistant: AssistantConfig,
        thread_id: str,
        user_input: str,
        *,
        system_prompt_override: str | None = None,
        poll_timeout_ms: int | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ThreadReply:
        """Post ``user_input`` to a thread, run the remote assistant and return its reply."""

        if not assistant.remote_assistant_id:
            raise AssistantNotFoundError(assistant.assistant_id)
        run_client = await self._open_run_client(assistant)
        try:
            await run_client.create_message(thread_id, user_input)
            run_id = await run_client.create_run(
                thread_id, assistant.remote_assistant_id, instructions=system_prompt_override
            )
            run = await self._drive_run(
                run_client, assistant, thread_id, run_id, poll_timeout_ms, user_id, session_id
            )
            text = None
            if run.succeeded:
                text = clean_action_annotations(await run_client.latest_assistant_text(thread_id)) or None
            return ThreadReply(text=text, run=run)
        finally:
            await run_client.aclose()

    async def _open_run_client(self, assistant: AssistantConfig) -> OpenAIRunClient:
        provider = ProviderKind.OPENAI
        api_key = await self._api_keys.get_api_key(assistant.company_id, provider.api_key_name)
        if not api_key:
            raise MissingApiKeyError(provider.value, tenant_id=assistant.company_id)
        return self._run_client_factory(api_key)

    async def _drive_run(
        self,
        run_client: OpenAIRunClient,
        assistant: AssistantConfig,
        thread_id: str,
        run_id: str,
        poll_timeout_ms: int | None,
        user_id: str | None,
        session_id: str | None,
    ) -> TerminalRun:
        context = ActionContext(
            company_id=assistant.company_id,
            assistant_id=assistant.assistant_id,
            language=assistant.language,
        )
        tools = await self._registry.resolve_for_assistant(assistant, context)
        machine = RunStateMachine(
            run_client,
            self._tool_executor,
            poll_interval=self._settings.run_poll_interval,
            timeout=self._settings.run_timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
        run = await machine.run_to_completion(thread_id, run_id, poll_timeout_ms, tools=tools)
        usage = run.usage
        await self._accountant.record_exchange(
            company_id=assistant.company_id,
            assistant_id=assistant.assistant_id,
            user_id=user_id,
            session_id=session_id,
            provider=ProviderKind.OPENAI.value,
            model_name=assistant.model or self._settings.default_model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            duration_ms=run.elapsed * 1000,
            tool_call_count=len(run.tool_calls),
            request_type="non-streaming",
            cached=bool(usage and usage.cached_tokens),
        )
        return run

    def _default_run_client(self, api_key: str) -> OpenAIRunClient:
        return OpenAIRunClient(
            AsyncOpenAI(
                api_key=api_key,
                base_url=ProviderKind.OPENAI.base_url,
                timeout=self._settings.request_timeout,
                max_retries=0,
            )
        )

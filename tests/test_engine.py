"""Tests for the engine facade and the legacy thread/run path."""

from __future__ import annotations

import dataclasses

import pytest

from switchboard.ai.errors import AssistantNotFoundError, MissingApiKeyError, RunTimeoutError
from switchboard.ai.orchestration.engine import AssistantEngine
from switchboard.ai.orchestration.runs import RunSnapshot, RunState
from switchboard.ai.orchestration.types import TokenUsage
from switchboard.ai.tools import EmptyAllowListPolicy
from switchboard.services.settings import EngineSettings, MappingApiKeyResolver

from tests.helpers import (
    FakeClock,
    RecordingClientFactory,
    ScriptedChatClient,
    ScriptedRunClient,
    calendar_provider,
    tool_call,
    turn,
)


class ThreadRunClient(ScriptedRunClient):
    def __init__(self, statuses, reply: str | None = "All set [Action: createEvent]") -> None:
        super().__init__(statuses)
        self.reply = reply
        self.messages: list[tuple[str, str]] = []
        self.runs: list[tuple[str, str, str | None]] = []
        self.closed = False
        self.api_keys: list[str] = []

    async def create_message(self, thread_id: str, content: str) -> None:
        self.messages.append((thread_id, content))

    async def create_run(self, thread_id: str, assistant_id: str, *, instructions: str | None = None) -> str:
        self.runs.append((thread_id, assistant_id, instructions))
        return "run_1"

    async def latest_assistant_text(self, thread_id: str) -> str | None:
        return self.reply

    async def aclose(self) -> None:
        self.closed = True


def _status(status: str, *calls, usage: TokenUsage | None = None) -> RunSnapshot:
    return RunSnapshot(run_id="run_1", thread_id="thread_1", status=RunState(status), required_tool_calls=tuple(calls), usage=usage)


def _engine(registry, api_keys, cost_sink, run_client: ThreadRunClient, clock: FakeClock, **kwargs) -> AssistantEngine:
    def factory(api_key: str) -> ThreadRunClient:
        run_client.api_keys.append(api_key)
        return run_client

    return AssistantEngine(
        registry=registry,
        api_keys=api_keys,
        settings=EngineSettings(run_poll_interval=0.5, run_timeout=3.0),
        cost_sink=cost_sink,
        run_client_factory=factory,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


class TestRunLegacyThread:
    @pytest.mark.asyncio
    async def test_services_tool_calls_and_records_cost(self, registry, api_keys, cost_sink, assistant, calendar_calls) -> None:
        run_client = ThreadRunClient(
            [
                _status("requires_action", tool_call("call_1", "createEvent", {"title": "Sync", "date": "2025-02-02"})),
                _status("completed", usage=TokenUsage(prompt_tokens=300, completion_tokens=60)),
            ]
        )
        engine = _engine(registry, api_keys, cost_sink, run_client, FakeClock())

        run = await engine.run_legacy_thread(assistant, "thread_1", "run_1", user_id="u-1", session_id="s-1")

        assert run.succeeded
        assert calendar_calls == [{"title": "Sync", "date": "2025-02-02"}]
        assert run_client.api_keys == ["sk-openai"]
        assert run_client.closed
        (record,) = cost_sink.tail()
        assert record.request_type == "non-streaming"
        assert (record.input_tokens, record.output_tokens) == (300, 60)
        assert record.tool_call_count == 1
        assert record.session_id == "s-1"

    @pytest.mark.asyncio
    async def test_disallowed_tool_is_not_implemented(self, registry, api_keys, cost_sink, assistant, calendar_calls) -> None:
        run_client = ThreadRunClient(
            [_status("requires_action", tool_call("call_1", "listEvents", {})), _status("completed")]
        )
        engine = _engine(registry, api_keys, cost_sink, run_client, FakeClock())

        await engine.run_legacy_thread(assistant, "thread_1", "run_1")

        assert run_client.submissions == [[{"tool_call_id": "call_1", "output": "Error: Function listEvents not implemented."}]]

    @pytest.mark.asyncio
    async def test_timeout_closes_client_and_skips_cost(self, registry, api_keys, cost_sink, assistant) -> None:
        run_client = ThreadRunClient([_status("in_progress")])
        engine = _engine(registry, api_keys, cost_sink, run_client, FakeClock())

        with pytest.raises(RunTimeoutError):
            await engine.run_legacy_thread(assistant, "thread_1", "run_1", poll_timeout_ms=1_000)

        assert run_client.closed
        assert len(cost_sink) == 0

    @pytest.mark.asyncio
    async def test_requires_openai_key(self, registry, cost_sink, assistant) -> None:
        keys = MappingApiKeyResolver({(None, "anthropic_api_key"): "sk-anthropic"})
        engine = _engine(registry, keys, cost_sink, ThreadRunClient([_status("completed")]), FakeClock())

        with pytest.raises(MissingApiKeyError):
            await engine.run_legacy_thread(assistant, "thread_1", "run_1")


class TestSendThreadMessage:
    @pytest.mark.asyncio
    async def test_posts_message_runs_and_returns_clean_reply(self, registry, api_keys, cost_sink, assistant) -> None:
        remote = dataclasses.replace(assistant, remote_assistant_id="asst_remote")
        run_client = ThreadRunClient([_status("in_progress"), _status("completed")])
        engine = _engine(registry, api_keys, cost_sink, run_client, FakeClock())

        reply = await engine.send_thread_message(remote, "thread_1", "Book a sync", system_prompt_override="Be brief")

        assert run_client.messages == [("thread_1", "Book a sync")]
        assert run_client.runs == [("thread_1", "asst_remote", "Be brief")]
        assert reply.text == "All set"
        assert reply.run.status is RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_run_has_no_text(self, registry, api_keys, cost_sink, assistant) -> None:
        remote = dataclasses.replace(assistant, remote_assistant_id="asst_remote")
        engine = _engine(registry, api_keys, cost_sink, ThreadRunClient([_status("failed")]), FakeClock())

        reply = await engine.send_thread_message(remote, "thread_1", "Hi")

        assert reply.text is None
        assert not reply.run.succeeded

    @pytest.mark.asyncio
    async def test_requires_remote_assistant(self, registry, api_keys, cost_sink, assistant) -> None:
        engine = _engine(registry, api_keys, cost_sink, ThreadRunClient([_status("completed")]), FakeClock())

        with pytest.raises(AssistantNotFoundError):
            await engine.send_thread_message(assistant, "thread_1", "Hi")


class TestStatelessFacade:
    @pytest.mark.asyncio
    async def test_stateless_and_legacy_share_cost_sink(self, registry, api_keys, cost_sink, assistant) -> None:
        chat = ScriptedChatClient([turn("Hello")])
        engine = _engine(
            registry,
            api_keys,
            cost_sink,
            ThreadRunClient([_status("completed")]),
            FakeClock(),
            client_factory=RecordingClientFactory(chat),
        )

        response = await engine.execute_stateless(assistant, "Hi")
        await engine.run_legacy_thread(assistant, "thread_1", "run_1")

        assert response.response_text == "Hello"
        assert [record.request_type for record in cost_sink.tail()] == ["stateless", "non-streaming"]

    @pytest.mark.asyncio
    async def test_streaming_delegates(self, registry, api_keys, cost_sink, assistant) -> None:
        chat = ScriptedChatClient([turn("Streamed reply")])
        engine = _engine(
            registry,
            api_keys,
            cost_sink,
            ThreadRunClient([_status("completed")]),
            FakeClock(),
            client_factory=RecordingClientFactory(chat),
        )

        handle = await engine.execute_streaming(assistant, "Hi")

        assert (await handle.response()).response_text == "Streamed reply"


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_registry_follows_settings(self, api_keys) -> None:
        settings = EngineSettings(empty_allow_list_policy="deny_all", strict_contracts=True)

        engine = AssistantEngine.from_settings([calendar_provider()], api_keys=api_keys, settings=settings)

        assert engine.registry.empty_allow_list_policy is EmptyAllowListPolicy.DENY_ALL
        assert engine.registry.integrations == ["calendar"]

"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest
from openai import APIConnectionError, AsyncOpenAI

from switchboard.ai.client import AIClient, ClientSettings


class _FakeChunkStream:
    def __init__(self, chunks: Iterable[Any]):
        self._iterator = iter(list(chunks))

    def __aiter__(self) -> "_FakeChunkStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class _FakeCompletions:
    def __init__(self, responses: Iterable[Any]):
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def _make_client(responses: Iterable[Any], **settings: Any) -> tuple[AIClient, _FakeCompletions]:
    completions = _FakeCompletions(responses)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    client = AIClient(
        ClientSettings(base_url="http://local", api_key="test", model="gpt-4.1-mini", **settings),
        client=cast(AsyncOpenAI, fake),
    )
    return client, completions


def _completion(content: str | None = None, tool_calls: list[Any] | None = None, usage: Any = None) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason="tool_calls" if tool_calls else "stop")],
        usage=usage,
    )


def _chunk(content: str | None = None, tool_calls: list[Any] | None = None, usage: Any = None, finish: str | None = None) -> SimpleNamespace:
    choices = []
    if content is not None or tool_calls is not None or finish is not None:
        choices.append(SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls), finish_reason=finish))
    return SimpleNamespace(choices=choices, usage=usage)


class TestCompleteChat:
    @pytest.mark.asyncio
    async def test_normalizes_tool_calls_and_usage(self) -> None:
        completion = _completion(
            tool_calls=[
                SimpleNamespace(id="call_1", function=SimpleNamespace(name="createEvent", arguments='{"title": "Sync"}')),
                SimpleNamespace(id="call_2", function=SimpleNamespace(name="createEvent", arguments='{"title": "Retro"}')),
            ],
            usage=SimpleNamespace(
                prompt_tokens=40,
                completion_tokens=12,
                prompt_tokens_details=SimpleNamespace(cached_tokens=8),
            ),
        )
        client, completions = _make_client([completion])

        result = await client.complete_chat(
            [{"role": "user", "content": "book it"}],
            system="Be brief.",
            tools=[{"type": "function", "function": {"name": "createEvent", "parameters": {}}}],
        )

        payload = completions.calls[0]
        assert payload["model"] == "gpt-4.1-mini"
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
        assert payload["messages"][1]["role"] == "user"
        assert payload["tools"][0]["function"]["name"] == "createEvent"
        assert [call.call_id for call in result.tool_calls] == ["call_1", "call_2"]
        assert result.assistant_message["tool_calls"][1]["function"]["arguments"] == '{"title": "Retro"}'
        assert result.usage is not None
        assert result.usage.prompt_tokens == 40
        assert result.usage.cached_tokens == 8

    @pytest.mark.asyncio
    async def test_plain_text_reply_has_no_tool_calls(self) -> None:
        client, completions = _make_client([_completion(content="Hi there")])

        result = await client.complete_chat([{"role": "user", "content": "hello"}])

        assert result.response_text == "Hi there"
        assert result.tool_calls == []
        assert result.usage is None
        assert "tools" not in completions.calls[0]
        assert completions.calls[0]["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_merges_metadata_and_forwards_options(self) -> None:
        client, completions = _make_client([_completion(content="{}")], metadata={"app": "switchboard"})

        await client.complete_chat(
            [{"role": "user", "content": "hello"}],
            metadata={"tenant": "acme"},
            response_format={"type": "json_object"},
            temperature=None,
            seed=7,
        )

        payload = completions.calls[0]
        assert payload["metadata"] == {"app": "switchboard", "tenant": "acme"}
        assert payload["response_format"] == {"type": "json_object"}
        assert payload["seed"] == 7
        assert "temperature" not in payload

    @pytest.mark.asyncio
    async def test_requires_at_least_one_message(self) -> None:
        client, _ = _make_client([])
        with pytest.raises(ValueError):
            await client.complete_chat([])

    @pytest.mark.asyncio
    async def test_single_attempt_by_default(self) -> None:
        error = APIConnectionError(request=httpx.Request("POST", "http://local/chat/completions"))
        client, completions = _make_client([error, _completion(content="late")])

        with pytest.raises(APIConnectionError):
            await client.complete_chat([{"role": "user", "content": "hi"}])
        assert len(completions.calls) == 1

    @pytest.mark.asyncio
    async def test_retries_when_configured(self) -> None:
        error = APIConnectionError(request=httpx.Request("POST", "http://local/chat/completions"))
        client, completions = _make_client(
            [error, _completion(content="ok")],
            max_retries=2,
            retry_min_seconds=0.001,
            retry_max_seconds=0.001,
        )

        result = await client.complete_chat([{"role": "user", "content": "hi"}])

        assert result.response_text == "ok"
        assert len(completions.calls) == 2


class TestStreamChat:
    @pytest.mark.asyncio
    async def test_assembles_text_and_tool_call_deltas(self) -> None:
        chunks = [
            _chunk(content="Hel"),
            _chunk(content="lo"),
            _chunk(
                tool_calls=[
                    SimpleNamespace(index=0, id="call_9", function=SimpleNamespace(name="lookupContact", arguments='{"name": '))
                ]
            ),
            _chunk(tool_calls=[SimpleNamespace(index=0, id=None, function=SimpleNamespace(name=None, arguments='"Ada"}'))]),
            _chunk(finish="tool_calls"),
            _chunk(usage=SimpleNamespace(prompt_tokens=9, completion_tokens=4, prompt_tokens_details=None)),
        ]
        client, completions = _make_client([_FakeChunkStream(chunks)])

        events = [event async for event in client.stream_chat([{"role": "user", "content": "who is Ada"}])]

        assert completions.calls[0]["stream"] is True
        assert completions.calls[0]["stream_options"] == {"include_usage": True}
        assert [event.content for event in events if event.type == "content.delta"] == ["Hel", "lo"]
        done = events[-1]
        assert done.type == "turn.done"
        turn = done.parsed
        assert turn.response_text == "Hello"
        assert turn.tool_calls[0].call_id == "call_9"
        assert turn.tool_calls[0].arguments == '{"name": "Ada"}'
        assert turn.finish_reason == "tool_calls"
        assert turn.usage.total_tokens == 13
        tool_events = [event for event in events if event.type == "tool_calls.function.arguments.done"]
        assert tool_events[0].tool_name == "lookupContact"


@pytest.mark.asyncio
async def test_aclose_awaits_underlying_close() -> None:
    closed: list[bool] = []

    async def close() -> None:
        closed.append(True)

    fake = SimpleNamespace(chat=SimpleNamespace(completions=_FakeCompletions([])), close=close)
    client = AIClient(
        ClientSettings(base_url="http://local", api_key="test", model="m"),
        client=cast(AsyncOpenAI, fake),
    )

    await client.aclose()

    assert closed == [True]

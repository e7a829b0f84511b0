"""Tests for ChatOrchestrator.send_chat: validation, retry, timeouts and cleanup."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from dalton.config import DaltonConfig, ProviderSpec, TimeoutLimits
from dalton.llm.errors import (
    ClassifiedError,
    ErrorCategory,
    ProviderHTTPError,
    RequestTimeoutError,
    StreamError,
    ValidationError,
)
from dalton.llm.orchestrator import ChatOrchestrator, get_orchestrator
from dalton.llm.providers import NativeStream
from dalton.llm.retry import RetryPolicy
from dalton.types import ChatOptions, Chunk

MESSAGES = [{"role": "user", "content": "Hi"}]


def _delta(content: str | None = None, finish: str | None = None, **extra) -> dict:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    delta.update(extra)
    return {"choices": [{"delta": delta, "finish_reason": finish}]}


class FakeProvider:
    """Provider whose streams are scripted per attempt.

    Each script entry is either an exception (raised by ``begin_stream``)
    or a callable returning an async iterator of native items.
    """

    wire_format = "openai"

    def __init__(self, *scripts, name: str = "fake"):
        self.name = name
        self._scripts = list(scripts)
        self.begin_calls: list[dict[str, Any]] = []
        self.released = 0
        self.closed = False

    async def begin_stream(self, messages, model, tools=None, tool_choice=None):
        self.begin_calls.append(
            {"messages": messages, "model": model, "tools": tools, "tool_choice": tool_choice},
        )
        script = self._scripts.pop(0) if len(self._scripts) > 1 else self._scripts[0]
        if isinstance(script, BaseException):
            raise script
        return NativeStream(script(messages), release=self._release)

    async def _release(self):
        self.released += 1

    async def aclose(self):
        self.closed = True


def _items(*items, hang: bool = False, fail: BaseException | None = None):
    async def gen(_messages):
        for item in items:
            await asyncio.sleep(0)
            yield item
        if fail is not None:
            raise fail
        if hang:
            await asyncio.Event().wait()

    return gen


def _orchestrator(provider, *, limits: TimeoutLimits | None = None, **kwargs) -> ChatOrchestrator:
    config = DaltonConfig(timeouts=limits or TimeoutLimits())
    kwargs.setdefault("sleep", AsyncMock())
    return ChatOrchestrator(provider.name, config, provider=provider, **kwargs)


_SHORT = TimeoutLimits(default_ms=200, min_ms=100, max_ms=5000)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    @pytest.mark.parametrize("messages,match", [
        ([], "cannot be empty"),
        ("hello", "must be a list"),
        ([{"content": "no role"}], "missing required field: role"),
        ([{"role": ""}], "invalid role"),
        (["text"], "index 0 is invalid"),
    ])
    @pytest.mark.asyncio
    async def test_bad_messages(self, messages, match):
        provider = FakeProvider(_items())
        orch = _orchestrator(provider)
        with pytest.raises(ValidationError, match=match) as exc_info:
            await orch.send_chat(messages, ChatOptions(model="m"))
        assert exc_info.value.is_retryable is False
        assert provider.begin_calls == []

    @pytest.mark.parametrize("options,match", [
        (ChatOptions(model=""), "Model must be specified"),
        (ChatOptions(model="m", tools="nope"), "Tools must be a list"),
        (ChatOptions(model="m", tool_choice="sometimes"), "Invalid tool_choice"),
        (ChatOptions(model="m", tool_choice={"type": "function"}), "Invalid tool_choice"),
        (ChatOptions(model="m", timeout_ms=10), "below the minimum"),
        (ChatOptions(model="m", timeout_ms=10_000_000), "exceeds the maximum"),
        (ChatOptions(model="m", timeout_ms=float("nan")), "Invalid timeout"),
        (ChatOptions(model="m", on_content="print"), "must be callable"),
    ])
    @pytest.mark.asyncio
    async def test_bad_options(self, options, match):
        provider = FakeProvider(_items())
        with pytest.raises(ValidationError, match=match):
            await _orchestrator(provider).send_chat(MESSAGES, options)
        assert provider.begin_calls == []

    @pytest.mark.asyncio
    async def test_unknown_mapping_option(self):
        provider = FakeProvider(_items())
        with pytest.raises(ValidationError, match="Unknown chat options: temperature"):
            await _orchestrator(provider).send_chat(MESSAGES, {"model": "m", "temperature": 1})

    @pytest.mark.asyncio
    async def test_named_function_tool_choice_accepted(self):
        provider = FakeProvider(_items(_delta("ok")))
        choice = {"type": "function", "function": {"name": "f"}}
        tools = [{"type": "function", "function": {"name": "f"}}]
        await _orchestrator(provider).send_chat(
            MESSAGES, ChatOptions(model="m", tools=tools, tool_choice=choice),
        )
        assert provider.begin_calls[0]["tool_choice"] == choice


# ---------------------------------------------------------------------------
# Successful calls
# ---------------------------------------------------------------------------

class TestSendChat:
    @pytest.mark.asyncio
    async def test_content_streamed_to_callback(self):
        seen: list[str] = []
        provider = FakeProvider(_items(
            {"model": "m-1", **_delta("Hello")},
            _delta(", "),
            _delta("world", finish="stop"),
        ))
        result = await _orchestrator(provider).send_chat(
            MESSAGES, ChatOptions(model="m", on_content=seen.append),
        )

        assert result.content == "Hello, world"
        assert seen == ["Hello", ", ", "world"]
        assert result.metadata["provider"] == "fake"
        assert result.metadata["model"] == "m-1"
        assert result.metadata["finish_reason"] == "stop"
        assert result.metadata["attempts"] == 1
        assert result.metadata["latency_ms"] >= 0
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_tool_calls_assembled(self):
        provider = FakeProvider(_items(
            _delta(tool_calls=[{"index": 0, "id": "call_a", "function": {"name": "get_weather", "arguments": ""}}]),
            _delta(tool_calls=[{"index": 0, "function": {"arguments": '{"city":'}}]),
            _delta(tool_calls=[{"index": 0, "function": {"arguments": '"Paris"}'}}]),
            _delta(tool_calls=[{"index": 1, "id": "call_b", "function": {"name": "search", "arguments": '{"q":"x"}'}}]),
            _delta(finish="tool_calls"),
        ))
        tools = [{"type": "function", "function": {"name": "get_weather"}}]
        result = await _orchestrator(provider).send_chat(
            MESSAGES, ChatOptions(model="m", tools=tools),
        )

        assert result.content == ""
        assert [(c.id, c.function_name) for c in result.tool_calls] == [
            ("call_a", "get_weather"), ("call_b", "search"),
        ]
        assert result.tool_calls[0].parsed_arguments() == {"city": "Paris"}
        # tool_choice defaults to "auto" once tools are given
        assert provider.begin_calls[0]["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_mapping_options(self):
        provider = FakeProvider(_items(_delta("ok")))
        result = await _orchestrator(provider).send_chat(MESSAGES, {"model": "m"})
        assert result.content == "ok"
        assert provider.begin_calls[0]["tool_choice"] is None

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        provider = FakeProvider(_items())
        result = await _orchestrator(provider).send_chat(MESSAGES, ChatOptions(model="m"))
        assert result.content == ""
        assert result.tool_calls == []
        assert result.metadata["model"] == "m"
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_canonical_chunks_pass_through(self):
        provider = FakeProvider(_items(Chunk(content="pre-normalized")))
        result = await _orchestrator(provider).send_chat(MESSAGES, ChatOptions(model="m"))
        assert result.content == "pre-normalized"

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_isolated(self):
        def echo(messages):
            text = messages[-1]["content"]

            async def gen():
                for ch in text:
                    await asyncio.sleep(0)
                    yield _delta(ch)

            return gen()

        provider = FakeProvider(echo)
        orch = _orchestrator(provider)
        first, second = await asyncio.gather(
            orch.send_chat([{"role": "user", "content": "aaaa"}], ChatOptions(model="m")),
            orch.send_chat([{"role": "user", "content": "bbbbbb"}], ChatOptions(model="m")),
        )
        assert first.content == "aaaa"
        assert second.content == "bbbbbb"
        assert provider.released == 2

    @pytest.mark.asyncio
    async def test_context_manager_closes_provider(self):
        provider = FakeProvider(_items())
        async with _orchestrator(provider) as orch:
            assert orch.provider_name == "fake"
        assert provider.closed


# ---------------------------------------------------------------------------
# Establishment retries
# ---------------------------------------------------------------------------

class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_network_failures_then_succeeds(self):
        sleep = AsyncMock()
        provider = FakeProvider(
            ConnectionResetError("ECONNRESET"),
            ConnectionResetError("ECONNRESET"),
            _items(_delta("recovered")),
        )
        policy = RetryPolicy(max_attempts=3, initial_delay_ms=1000, jitter_factor=0.1)
        result = await _orchestrator(provider, retry_policy=policy, sleep=sleep).send_chat(
            MESSAGES, ChatOptions(model="m", timeout_ms=30_000),
        )

        assert result.content == "recovered"
        assert result.metadata["attempts"] == 3
        assert len(provider.begin_calls) == 3
        waits = [c.args[0] * 1000 for c in sleep.await_args_list]
        assert 900 <= waits[0] <= 1100
        assert 1800 <= waits[1] <= 2200

    @pytest.mark.asyncio
    async def test_rate_limited_twice_then_succeeds(self):
        sleep = AsyncMock()
        provider = FakeProvider(
            ProviderHTTPError(429, "rate limited", "fake"),
            ProviderHTTPError(429, "rate limited", "fake"),
            _items(_delta("done")),
        )
        orch = _orchestrator(provider, retry_policy=RetryPolicy(max_attempts=3), sleep=sleep)
        result = await orch.send_chat(MESSAGES, ChatOptions(model="m"))
        assert result.content == "done"
        assert len(provider.begin_calls) == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_auth_failure_surfaces_immediately(self):
        sleep = AsyncMock()
        provider = FakeProvider(ProviderHTTPError(401, "invalid api key", "fake"))
        with pytest.raises(ClassifiedError) as exc_info:
            await _orchestrator(provider, sleep=sleep).send_chat(MESSAGES, ChatOptions(model="m"))

        err = exc_info.value
        assert err.category == ErrorCategory.AUTHENTICATION
        assert err.is_retryable is False
        assert err.attempts == 1
        assert err.provider == "fake"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_first_item_failure_is_retried(self):
        provider = FakeProvider(
            _items(fail=ConnectionResetError("reset before output")),
            _items(_delta("second try")),
        )
        result = await _orchestrator(provider).send_chat(MESSAGES, ChatOptions(model="m"))
        assert result.content == "second try"
        assert len(provider.begin_calls) == 2
        # both handles released, the failed one before the retry
        assert provider.released == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries(self):
        provider = FakeProvider(ProviderHTTPError(503, "unavailable"))
        orch = _orchestrator(provider, retry_policy=RetryPolicy(max_attempts=2))
        with pytest.raises(ClassifiedError) as exc_info:
            await orch.send_chat(MESSAGES, ChatOptions(model="m"))
        assert exc_info.value.category == ErrorCategory.SERVER
        assert exc_info.value.attempts == 2


# ---------------------------------------------------------------------------
# Mid-stream failures
# ---------------------------------------------------------------------------

class TestStreamFailures:
    @pytest.mark.asyncio
    async def test_mid_stream_failure_not_retried(self):
        provider = FakeProvider(
            _items(_delta("partial "), _delta("answer"), fail=ConnectionResetError("ECONNRESET")),
        )
        with pytest.raises(StreamError) as exc_info:
            await _orchestrator(provider).send_chat(MESSAGES, ChatOptions(model="m"))

        err = exc_info.value
        assert err.partial.content == "partial answer"
        assert err.category == ErrorCategory.NETWORK
        assert err.is_retryable is False
        assert len(provider.begin_calls) == 1
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_malformed_item_becomes_stream_error(self):
        provider = FakeProvider(_items(_delta("ok"), "garbage"))
        with pytest.raises(StreamError) as exc_info:
            await _orchestrator(provider).send_chat(MESSAGES, ChatOptions(model="m"))
        assert exc_info.value.partial.content == "ok"
        assert "Malformed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_object_usage_becomes_stream_error(self):
        provider = FakeProvider(_items(_delta("hi"), {"choices": [], "usage": 5}))
        with pytest.raises(StreamError) as exc_info:
            await _orchestrator(provider).send_chat(MESSAGES, ChatOptions(model="m"))
        assert exc_info.value.partial.content == "hi"
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_callback_error_propagates_unchanged(self):
        def boom(_text):
            raise KeyError("ui gone")

        provider = FakeProvider(_items(_delta("a"), _delta("b")))
        with pytest.raises(KeyError):
            await _orchestrator(provider).send_chat(
                MESSAGES, ChatOptions(model="m", on_content=boom),
            )
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_provider_timeout_error_is_not_a_deadline(self):
        provider = FakeProvider(_items(_delta("x"), fail=TimeoutError("socket read")))
        with pytest.raises(StreamError) as exc_info:
            await _orchestrator(provider).send_chat(MESSAGES, ChatOptions(model="m"))
        assert not isinstance(exc_info.value, RequestTimeoutError)
        assert exc_info.value.partial.content == "x"


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------

class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_after_partial_output(self):
        seen: list[str] = []
        provider = FakeProvider(_items(_delta("partial"), hang=True))
        orch = _orchestrator(provider, limits=_SHORT)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await orch.send_chat(
                MESSAGES, ChatOptions(model="m", timeout_ms=150, on_content=seen.append),
            )

        err = exc_info.value
        assert err.timeout_ms == 150
        assert err.partial.content == "partial"
        assert err.is_retryable is False
        assert err.category == ErrorCategory.NETWORK
        assert seen == ["partial"]
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_timeout_before_any_output_is_retryable(self):
        provider = FakeProvider(_items(hang=True))
        with pytest.raises(RequestTimeoutError) as exc_info:
            await _orchestrator(provider, limits=_SHORT).send_chat(
                MESSAGES, ChatOptions(model="m", timeout_ms=100),
            )
        assert exc_info.value.is_retryable is True
        assert exc_info.value.partial.content == ""
        assert exc_info.value.attempts == 1
        assert provider.released == 1

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(self):
        provider = FakeProvider(_items(hang=True))
        with pytest.raises(RequestTimeoutError) as exc_info:
            await _orchestrator(provider, limits=_SHORT).send_chat(
                MESSAGES, ChatOptions(model="m"),
            )
        assert exc_info.value.timeout_ms == 200

    @pytest.mark.asyncio
    async def test_deadline_covers_backoff(self):
        provider = FakeProvider(ConnectionResetError("down"))
        policy = RetryPolicy(max_attempts=5, initial_delay_ms=5000, max_delay_ms=5000)
        orch = _orchestrator(provider, limits=_SHORT, retry_policy=policy, sleep=asyncio.sleep)
        with pytest.raises(RequestTimeoutError):
            await orch.send_chat(MESSAGES, ChatOptions(model="m", timeout_ms=150))
        assert len(provider.begin_calls) == 1

    @pytest.mark.asyncio
    async def test_cancellation_releases_stream(self):
        provider = FakeProvider(_items(_delta("x"), hang=True))
        orch = _orchestrator(provider, limits=_SHORT)
        task = asyncio.create_task(
            orch.send_chat(MESSAGES, ChatOptions(model="m", timeout_ms=5000)),
        )
        for _ in range(20):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert provider.released == 1


# ---------------------------------------------------------------------------
# Factory, end to end over httpx
# ---------------------------------------------------------------------------

class TestGetOrchestrator:
    @pytest.mark.asyncio
    async def test_end_to_end_over_mock_transport(self):
        events = [
            {"model": "gpt-test", "choices": [{"delta": {"content": "Hi "}}]},
            {"choices": [{"delta": {"content": "there"}, "finish_reason": "stop"}],
             "usage": {"prompt_tokens": 2, "completion_tokens": 2, "total_tokens": 4}},
        ]
        body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body.encode())),
        )
        config = DaltonConfig(providers={"openai": ProviderSpec(base_url="http://llm.test/v1")})

        async with get_orchestrator("openai", config, client) as orch:
            result = await orch.send_chat(MESSAGES, ChatOptions(model="gpt-test"))

        assert result.content == "Hi there"
        assert result.metadata["usage"]["total_tokens"] == 4
        assert result.metadata["model"] == "gpt-test"

    def test_unconfigured_provider(self):
        with pytest.raises(ClassifiedError, match="not configured"):
            get_orchestrator("groq", DaltonConfig())

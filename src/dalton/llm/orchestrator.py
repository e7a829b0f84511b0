"""Request orchestrator, the public entry point of the chat core.

    validate → retry(establish stream) → normalize → assemble

One ``send_chat`` call owns all of its working state: the assembler, the
retry executor, the deadline and a :class:`CallScope` holding transport
handles.  Nothing is shared between concurrent calls.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections.abc import Mapping
from contextlib import aclosing
from typing import Any, Awaitable, Callable

import httpx

from dalton.config import DaltonConfig, TimeoutLimits
from dalton.types import AssembledResponse, ChatOptions, ToolChoice

from .assembler import ChunkAssembler
from .errors import (
    RequestTimeoutError,
    StreamError,
    ValidationError,
    classify_error,
)
from .normalizer import normalize_stream
from .providers import NativeStream, Provider, create_provider
from .retry import RetryExecutor, RetryPolicy
from .scope import CallScope

_logger = logging.getLogger(__name__)

_TOOL_CHOICES = ("auto", "none")


class ChatOrchestrator:
    """Unified ``send_chat`` over one configured provider.

    Parameters
    ----------
    provider_name:
        Identifier of the provider (``"openai"``, ``"ollama"``, ...).
    config:
        Loaded configuration; supplies the provider spec, timeout bounds
        and the default retry policy.
    provider:
        A ready provider variant.  When omitted, one is built from
        ``config.providers[provider_name]``.
    retry_policy:
        Overrides ``config.retry``.
    sleep, rng:
        Backoff wait coroutine and jitter source, passed to each call's
        :class:`RetryExecutor`.
    """

    def __init__(
        self,
        provider_name: str,
        config: DaltonConfig | None = None,
        *,
        provider: Provider | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        config = config or DaltonConfig()
        if provider is None:
            provider = create_provider(provider_name, config.provider_spec(provider_name))
        self._provider_name = provider_name
        self._provider = provider
        self._limits: TimeoutLimits = config.timeouts
        self._retry_policy = retry_policy or config.retry
        self._sleep = sleep
        self._rng = rng

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def provider_name(self) -> str:
        """Identifier of the resolved provider, for logging and diagnostics."""
        return self._provider_name

    async def send_chat(
        self,
        messages: list[dict[str, Any]],
        options: ChatOptions | Mapping[str, Any],
    ) -> AssembledResponse:
        """Send *messages* and return the fully assembled response.

        Raises
        ------
        ValidationError
            Invalid input; no request is made.
        ClassifiedError
            Stream establishment failed for good (after retries).
        StreamError
            The stream broke after it was established; ``partial`` holds
            what had been assembled.
        RequestTimeoutError
            The end-to-end deadline expired; ``partial`` as above.
        """
        if isinstance(options, Mapping):
            options = self._options_from_mapping(options)
        timeout_ms = self._validate(messages, options)
        tool_choice = options.tool_choice
        if options.tools and tool_choice is None:
            tool_choice = "auto"

        assembler = ChunkAssembler(options.on_content)
        executor = RetryExecutor(
            self._retry_policy,
            provider=self._provider_name,
            sleep=self._sleep,
            rng=self._rng,
        )
        start = time.monotonic()
        _logger.info(
            "%s: chat request model=%s messages=%d tools=%d timeout=%dms",
            self._provider_name, options.model, len(messages),
            len(options.tools or []), timeout_ms,
        )

        async with CallScope(self._provider_name) as scope:
            deadline = asyncio.timeout(timeout_ms / 1000)
            try:
                async with deadline:
                    stream = await executor.run(
                        lambda: self._establish(
                            scope, messages, options.model, options.tools, tool_choice,
                        ),
                    )
                    await self._drain(stream, assembler, executor)
            except TimeoutError as exc:
                if not deadline.expired():
                    raise self._stream_error(exc, assembler, executor) from exc
                await scope.abort("timeout")
                _logger.error(
                    "%s: request timed out after %dms (%d chunks received)",
                    self._provider_name, timeout_ms, assembler.chunks_seen,
                )
                raise RequestTimeoutError(
                    f"API request timed out after {timeout_ms:.0f}ms "
                    f"for {self._provider_name}",
                    timeout_ms=timeout_ms,
                    is_retryable=not assembler.delivered,
                    cause=exc,
                    attempts=executor.attempts,
                    provider=self._provider_name,
                    partial=assembler.snapshot(),
                ) from exc

        response = assembler.finalize()
        response.metadata.update({
            "provider": self._provider_name,
            "attempts": executor.attempts,
            "latency_ms": (time.monotonic() - start) * 1000,
        })
        response.metadata.setdefault("model", options.model)
        _logger.info(
            "%s: chat done content=%d chars tool_calls=%d attempts=%d",
            self._provider_name, len(response.content),
            len(response.tool_calls), executor.attempts,
        )
        return response

    async def aclose(self) -> None:
        """Close the provider's HTTP client unless the caller supplied it."""
        await self._provider.aclose()

    async def __aenter__(self) -> ChatOrchestrator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def _establish(
        self,
        scope: CallScope,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice | None,
    ) -> NativeStream:
        """Open the stream and pull its first item; nothing reaches the caller."""
        raw = await self._provider.begin_stream(messages, model, tools, tool_choice)
        stream = scope.adopt(NativeStream.wrap(raw))
        try:
            await stream.prime()
        except Exception:
            # The next attempt opens a fresh handle; release this one now
            await stream.aclose()
            raise
        return stream

    async def _drain(
        self,
        stream: NativeStream,
        assembler: ChunkAssembler,
        executor: RetryExecutor,
    ) -> None:
        """Feed every normalized chunk to *assembler*.

        Transport and format failures become a :class:`StreamError`;
        exceptions raised by the content callback propagate unchanged.
        """
        wire_format = getattr(self._provider, "wire_format", None)
        chunks = normalize_stream(self._provider_name, stream, wire_format)
        async with aclosing(chunks):
            while True:
                try:
                    chunk = await anext(chunks)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    # Left for the deadline handler to tell apart
                    raise
                except Exception as exc:
                    raise self._stream_error(exc, assembler, executor) from exc
                assembler.feed(chunk)

    def _stream_error(
        self,
        exc: BaseException,
        assembler: ChunkAssembler,
        executor: RetryExecutor,
    ) -> StreamError:
        classified = classify_error(exc, self._provider_name)
        _logger.error(
            "%s: stream failed after %d chunks (%s): %s",
            self._provider_name, assembler.chunks_seen,
            classified.category.value, classified,
        )
        return StreamError(
            f"Stream from {self._provider_name} failed: {classified.message}",
            classified.category,
            is_retryable=classified.is_retryable and not assembler.delivered,
            cause=exc,
            attempts=executor.attempts,
            provider=self._provider_name,
            partial=assembler.snapshot(),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _options_from_mapping(self, raw: Mapping[str, Any]) -> ChatOptions:
        known = set(ChatOptions.__dataclass_fields__)
        unknown = set(raw) - known
        if unknown:
            raise ValidationError(
                f"Unknown chat options: {', '.join(sorted(unknown))}",
                provider=self._provider_name,
            )
        if "model" not in raw:
            raise ValidationError(
                "Model must be specified as a non-empty string",
                provider=self._provider_name,
            )
        return ChatOptions(**raw)

    def _validate(self, messages: Any, options: ChatOptions) -> float:
        """Check inputs; return the effective timeout in milliseconds."""

        def fail(message: str) -> ValidationError:
            return ValidationError(message, provider=self._provider_name)

        if not isinstance(options.model, str) or not options.model.strip():
            raise fail("Model must be specified as a non-empty string")

        if not isinstance(messages, list):
            raise fail("Messages must be a list")
        if not messages:
            raise fail("Messages array cannot be empty")
        for i, msg in enumerate(messages):
            if not isinstance(msg, Mapping):
                raise fail(f"Message at index {i} is invalid")
            if "role" not in msg:
                raise fail(f"Message at index {i} is missing required field: role")
            role = msg["role"]
            if not isinstance(role, str) or not role.strip():
                raise fail(f"Message at index {i} has invalid role")

        if options.tools is not None and not isinstance(options.tools, list):
            raise fail("Tools must be a list if provided")

        choice = options.tool_choice
        if choice is not None and choice not in _TOOL_CHOICES:
            name = None
            if isinstance(choice, Mapping) and choice.get("type") == "function":
                function = choice.get("function")
                if isinstance(function, Mapping):
                    name = function.get("name")
            if not isinstance(name, str) or not name:
                raise fail("Invalid tool_choice value")

        if options.on_content is not None and not callable(options.on_content):
            raise fail("on_content must be callable")

        return self._validate_timeout(options.timeout_ms, fail)

    def _validate_timeout(
        self,
        timeout_ms: Any,
        fail: Callable[[str], ValidationError],
    ) -> float:
        limits = self._limits
        if timeout_ms is None:
            return float(limits.default_ms)
        if (
            isinstance(timeout_ms, bool)
            or not isinstance(timeout_ms, (int, float))
            or math.isnan(timeout_ms)
        ):
            raise fail(f"Invalid timeout value: {timeout_ms!r}")
        if timeout_ms < limits.min_ms:
            raise fail(
                f"Timeout {timeout_ms}ms is below the minimum of {limits.min_ms}ms",
            )
        if timeout_ms > limits.max_ms:
            raise fail(
                f"Timeout {timeout_ms}ms exceeds the maximum of {limits.max_ms}ms",
            )
        return float(timeout_ms)


def get_orchestrator(
    provider_name: str,
    config: DaltonConfig,
    client: httpx.AsyncClient | None = None,
) -> ChatOrchestrator:
    """Build a :class:`ChatOrchestrator` for a configured provider."""
    spec = config.provider_spec(provider_name)
    provider = create_provider(provider_name, spec, client)
    return ChatOrchestrator(provider_name, config, provider=provider)

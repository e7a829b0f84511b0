"""Adapt provider-native streaming items into canonical :class:`Chunk` objects.

Each provider speaks its own wire format.  ``normalize_stream`` maps one
native item to exactly one ``Chunk``, lazily and in order, so tool-call
fragments reach the assembler in the sequence the transport delivered them.
Items that are already ``Chunk`` instances pass through untouched.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, AsyncIterable, AsyncIterator, Callable

from dalton.types import Chunk, ToolCallFragment

from .errors import MalformedChunkError, ProviderHTTPError

_logger = logging.getLogger(__name__)

# Provider identifier -> wire format
_FORMATS: dict[str, str] = {
    "openai": "openai",
    "azure": "openai",
    "groq": "openai",
    "openrouter": "openai",
    "mistral": "openai",
    "ollama": "ollama",
    "google": "gemini",
    "gemini": "gemini",
}

Adapter = Callable[[Any], Chunk]


def stream_format(provider_name: str) -> str:
    """Return the wire format spoken by *provider_name* (``"openai"`` if unknown)."""
    return _FORMATS.get(provider_name, "openai")


async def normalize_stream(
    provider_name: str,
    native: AsyncIterable[Any],
    wire_format: str | None = None,
) -> AsyncIterator[Chunk]:
    """Yield one canonical ``Chunk`` per native item.

    Raises :class:`MalformedChunkError` for items that cannot be mapped, and
    :class:`ProviderHTTPError` for error objects embedded in the stream.
    """
    fmt = wire_format or stream_format(provider_name)
    try:
        adapter = _ADAPTERS[fmt](provider_name)
    except KeyError:
        raise ValueError(f"Unknown stream format: {fmt}") from None

    async for item in native:
        if isinstance(item, Chunk):
            yield item
            continue
        yield adapter(item)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _as_mapping(provider: str, item: Any) -> Mapping[str, Any]:
    if isinstance(item, Mapping):
        return item
    # SDK response objects (pydantic models) expose model_dump()
    dump = getattr(item, "model_dump", None)
    if callable(dump):
        data = dump()
        if isinstance(data, Mapping):
            return data
    raise MalformedChunkError(
        provider, f"expected an object, got {type(item).__name__}", item,
    )


def _optional_str(provider: str, data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise MalformedChunkError(
        provider, f"field '{key}' must be a string, got {type(value).__name__}", data,
    )


def _optional_mapping(
    provider: str, data: Mapping[str, Any], key: str,
) -> Mapping[str, Any] | None:
    value = data.get(key)
    if value is None or isinstance(value, Mapping):
        return value
    raise MalformedChunkError(
        provider, f"field '{key}' must be an object, got {type(value).__name__}", data,
    )


def _token_count(provider: str, data: Mapping[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise MalformedChunkError(provider, f"field '{key}' must be an integer", data)


def _list_field(provider: str, data: Mapping[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedChunkError(provider, f"field '{key}' must be a list", data)
    return value


def _raise_embedded_error(provider: str, data: Mapping[str, Any]) -> None:
    error = data.get("error")
    if not error:
        return
    if isinstance(error, Mapping):
        code = error.get("code") or error.get("status")
        message = str(error.get("message", error))
    else:
        code, message = None, str(error)
    status = code if isinstance(code, int) else None
    raise ProviderHTTPError(status, message, provider)


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions (SSE)
# ---------------------------------------------------------------------------

def _openai_adapter(provider: str) -> Adapter:
    def adapt(item: Any) -> Chunk:
        data = _as_mapping(provider, item)
        _raise_embedded_error(provider, data)

        choices = _list_field(provider, data, "choices")
        usage = _optional_mapping(provider, data, "usage")
        if usage is not None:
            usage = dict(usage) or None
        chunk = Chunk(model=_optional_str(provider, data, "model"), usage=usage)
        if not choices:
            return chunk

        choice = choices[0]
        if not isinstance(choice, Mapping):
            raise MalformedChunkError(provider, "choice must be an object", data)
        delta = choice.get("delta") or {}
        if not isinstance(delta, Mapping):
            raise MalformedChunkError(provider, "delta must be an object", data)

        chunk.content = _optional_str(provider, delta, "content")
        chunk.finish_reason = _optional_str(provider, choice, "finish_reason")

        for position, tc in enumerate(_list_field(provider, delta, "tool_calls")):
            if not isinstance(tc, Mapping):
                raise MalformedChunkError(provider, "tool call must be an object", data)
            index = tc.get("index", position)
            if not isinstance(index, int) or isinstance(index, bool):
                raise MalformedChunkError(provider, "tool call index must be an integer", data)
            func = tc.get("function") or {}
            if not isinstance(func, Mapping):
                raise MalformedChunkError(provider, "tool call function must be an object", data)
            chunk.tool_calls.append(
                ToolCallFragment(
                    index=index,
                    id=_optional_str(provider, tc, "id") or None,
                    function_name=_optional_str(provider, func, "name") or None,
                    arguments_fragment=_optional_str(provider, func, "arguments") or "",
                )
            )
        return chunk

    return adapt


# ---------------------------------------------------------------------------
# Ollama native /api/chat (NDJSON)
# ---------------------------------------------------------------------------

def _ollama_adapter(provider: str) -> Adapter:
    # Ollama sends each tool call whole and without ids
    next_index = 0

    def adapt(item: Any) -> Chunk:
        nonlocal next_index
        data = _as_mapping(provider, item)
        _raise_embedded_error(provider, data)

        message = data.get("message") or {}
        if not isinstance(message, Mapping):
            raise MalformedChunkError(provider, "message must be an object", data)

        chunk = Chunk(
            content=_optional_str(provider, message, "content"),
            model=_optional_str(provider, data, "model"),
        )

        for tc in _list_field(provider, message, "tool_calls"):
            if not isinstance(tc, Mapping):
                raise MalformedChunkError(provider, "tool call must be an object", data)
            func = tc.get("function") or {}
            if not isinstance(func, Mapping):
                raise MalformedChunkError(provider, "tool call function must be an object", data)
            index = func.get("index", next_index)
            if not isinstance(index, int) or isinstance(index, bool):
                raise MalformedChunkError(provider, "tool call index must be an integer", data)
            next_index = max(next_index, index + 1)

            args = func.get("arguments", {})
            if isinstance(args, str):
                arguments = args
            elif isinstance(args, Mapping):
                arguments = json.dumps(args)
            else:
                raise MalformedChunkError(provider, "tool call arguments must be an object", data)

            chunk.tool_calls.append(
                ToolCallFragment(
                    index=index,
                    id=_optional_str(provider, tc, "id") or f"call_{index}",
                    function_name=_optional_str(provider, func, "name"),
                    arguments_fragment=arguments,
                )
            )

        if data.get("done"):
            chunk.finish_reason = data.get("done_reason") or "stop"
            usage: dict[str, int] = {}
            if "prompt_eval_count" in data:
                usage["prompt_tokens"] = _token_count(provider, data, "prompt_eval_count")
            if "eval_count" in data:
                usage["completion_tokens"] = _token_count(provider, data, "eval_count")
            if usage:
                usage["total_tokens"] = usage.get("prompt_tokens", 0) + usage.get(
                    "completion_tokens", 0,
                )
                chunk.usage = usage
        return chunk

    return adapt


# ---------------------------------------------------------------------------
# Gemini streamGenerateContent (SSE)
# ---------------------------------------------------------------------------

def _gemini_adapter(provider: str) -> Adapter:
    # Gemini delivers each functionCall complete; indices are assigned here
    next_index = 0

    def adapt(item: Any) -> Chunk:
        nonlocal next_index
        data = _as_mapping(provider, item)
        _raise_embedded_error(provider, data)

        chunk = Chunk(model=_optional_str(provider, data, "modelVersion"))

        meta = _optional_mapping(provider, data, "usageMetadata")
        if meta is not None:
            chunk.usage = {
                "prompt_tokens": _token_count(provider, meta, "promptTokenCount"),
                "completion_tokens": _token_count(provider, meta, "candidatesTokenCount"),
                "total_tokens": _token_count(provider, meta, "totalTokenCount"),
            }

        candidates = _list_field(provider, data, "candidates")
        if not candidates:
            feedback = data.get("promptFeedback")
            if isinstance(feedback, Mapping) and feedback.get("blockReason"):
                chunk.finish_reason = "blocked"
            return chunk

        candidate = candidates[0]
        if not isinstance(candidate, Mapping):
            raise MalformedChunkError(provider, "candidate must be an object", data)
        reason = _optional_str(provider, candidate, "finishReason")
        if reason:
            chunk.finish_reason = reason.lower()

        content = candidate.get("content") or {}
        if not isinstance(content, Mapping):
            raise MalformedChunkError(provider, "content must be an object", data)

        texts: list[str] = []
        for part in _list_field(provider, content, "parts"):
            if not isinstance(part, Mapping):
                raise MalformedChunkError(provider, "part must be an object", data)
            if part.get("thought"):
                continue
            text = _optional_str(provider, part, "text")
            if text:
                texts.append(text)
            call = part.get("functionCall")
            if call is None:
                continue
            if not isinstance(call, Mapping):
                raise MalformedChunkError(provider, "functionCall must be an object", data)
            name = _optional_str(provider, call, "name")
            index = next_index
            next_index += 1
            chunk.tool_calls.append(
                ToolCallFragment(
                    index=index,
                    id=_optional_str(provider, call, "id") or f"{name or 'call'}_{index}",
                    function_name=name,
                    arguments_fragment=json.dumps(call.get("args") or {}),
                )
            )
        if texts:
            chunk.content = "".join(texts)
        return chunk

    return adapt


_ADAPTERS: dict[str, Callable[[str], Adapter]] = {
    "openai": _openai_adapter,
    "ollama": _ollama_adapter,
    "gemini": _gemini_adapter,
}

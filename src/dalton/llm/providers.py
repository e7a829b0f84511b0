"""Provider variants: one capability, *begin a streaming chat completion*.

Each variant opens an HTTP stream with ``httpx.AsyncClient`` and hands back
a :class:`NativeStream` of the provider's own JSON items; translating those
into canonical chunks is the normalizer's job.  Variants never retry and
never enforce deadlines; the orchestrator owns both.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Protocol

import httpx

from dalton.types import ToolChoice

from .errors import MalformedChunkError, ProviderConfigurationError, ProviderHTTPError

if TYPE_CHECKING:
    from dalton.config import ProviderSpec

_logger = logging.getLogger(__name__)

_DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "mistral": "https://api.mistral.ai/v1",
    "ollama": "http://localhost:11434",
    "google": "https://generativelanguage.googleapis.com/v1beta",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}

_AZURE_API_VERSION = "2024-06-01"

# connect/read limits guard the socket only; the call deadline lives upstream
_TRANSPORT_TIMEOUT = httpx.Timeout(None, connect=30, read=300)


# ---------------------------------------------------------------------------
# Native stream handle
# ---------------------------------------------------------------------------

class NativeStream:
    """One-shot, non-restartable handle over a provider's native items.

    ``prime()`` pulls the first item ahead of iteration so that failures
    before any output can be told apart from mid-stream failures.
    ``aclose()`` releases the transport exactly once, whether or not the
    stream was ever iterated.
    """

    _NOTHING = object()

    def __init__(
        self,
        items: AsyncIterator[Any],
        release: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self._items = items
        self._release = release
        self._buffered: Any = self._NOTHING
        self._exhausted = False
        self._closed = False

    @classmethod
    def wrap(cls, source: Any) -> NativeStream:
        """Adopt any async iterable as a ``NativeStream``."""
        if isinstance(source, NativeStream):
            return source
        return cls(aiter(source))

    @property
    def closed(self) -> bool:
        return self._closed

    async def prime(self) -> None:
        """Fetch the first item; an empty stream is simply marked exhausted."""
        if self._buffered is not self._NOTHING or self._exhausted:
            return
        try:
            self._buffered = await anext(self._items)
        except StopAsyncIteration:
            self._exhausted = True

    def __aiter__(self) -> NativeStream:
        return self

    async def __anext__(self) -> Any:
        if self._buffered is not self._NOTHING:
            item, self._buffered = self._buffered, self._NOTHING
            return item
        if self._exhausted or self._closed:
            raise StopAsyncIteration
        try:
            return await anext(self._items)
        except StopAsyncIteration:
            self._exhausted = True
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffered = self._NOTHING
        try:
            close = getattr(self._items, "aclose", None)
            if close is not None:
                await close()
        finally:
            if self._release is not None:
                await self._release()


class Provider(Protocol):
    """The begin-stream capability every backend implements."""

    name: str

    async def begin_stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> NativeStream:
        ...

    async def aclose(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Wire helpers
# ---------------------------------------------------------------------------

class _Endpoint:
    """Base URL and headers of one provider, bound to an httpx client.

    A client passed in by the caller is used as is: its own ``base_url``
    and headers are left alone and it is not closed here.  Without one,
    the endpoint creates and owns a client.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: dict[str, str],
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.headers = headers
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=_TRANSPORT_TIMEOUT)

    async def open_stream(
        self,
        path: str,
        payload: dict[str, Any],
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send the request and wait for response headers; raise on error status."""
        request = self.client.build_request(
            "POST", self.base_url + path, json=payload, params=params, headers=self.headers,
        )
        response = await self.client.send(request, stream=True)
        if response.status_code >= 400:
            try:
                body = (await response.aread()).decode(errors="replace")
            finally:
                await response.aclose()
            _logger.debug("%s: HTTP %d body: %s", self.provider, response.status_code, body)
            raise ProviderHTTPError(response.status_code, body.strip(), self.provider)
        return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


async def _iter_sse(response: httpx.Response, provider: str) -> AsyncIterator[Any]:
    """Yield decoded JSON payloads of ``data:`` lines until ``[DONE]``."""
    async for raw_line in response.aiter_lines():
        if not raw_line.startswith("data:"):
            continue
        data_str = raw_line[5:].strip()
        if not data_str:
            continue
        if data_str == "[DONE]":
            break
        yield _decode(data_str, provider)


async def _iter_ndjson(response: httpx.Response, provider: str) -> AsyncIterator[Any]:
    """Yield one decoded JSON object per non-empty line."""
    async for line in response.aiter_lines():
        if not line.strip():
            continue
        yield _decode(line, provider)


def _decode(text: str, provider: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        # Undecodable payloads are surfaced, not skipped
        raise MalformedChunkError(provider, f"invalid JSON ({e.msg})", text) from e


def _stream_handle(items: AsyncIterator[Any], response: httpx.Response) -> NativeStream:
    return NativeStream(items, release=response.aclose)


# ---------------------------------------------------------------------------
# OpenAI-compatible (openai, azure, groq, openrouter, mistral)
# ---------------------------------------------------------------------------

class OpenAICompatibleProvider:
    """Streaming ``/chat/completions`` over SSE."""

    wire_format = "openai"

    def __init__(
        self,
        name: str,
        spec: ProviderSpec,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self._spec = spec
        self._is_azure = (spec.type or name) == "azure"

        headers = {"Content-Type": "application/json", **spec.headers}
        api_key = spec.resolved_api_key()
        if self._is_azure:
            headers["api-key"] = api_key
        else:
            headers["Authorization"] = f"Bearer {api_key}"
        if (spec.type or name) == "openrouter":
            headers.setdefault("HTTP-Referer", "https://github.com/dalton-cli/dalton")
            headers.setdefault("X-Title", "dalton")

        base_url = spec.base_url or _DEFAULT_BASE_URLS.get(spec.type or name, "")
        if self._is_azure:
            if not base_url or not spec.deployment_name:
                raise ProviderConfigurationError(
                    "Azure requires base_url and deployment_name", provider=name,
                )
            base_url = (
                f"{base_url.rstrip('/')}/openai/deployments/{spec.deployment_name}"
            )
        if not base_url:
            raise ProviderConfigurationError(
                f"No base_url configured for provider '{name}'", provider=name,
            )
        self._endpoint = _Endpoint(name, base_url, headers, client)

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice
        if self._spec.extra_params:
            payload.update(self._spec.extra_params)
        return payload

    async def begin_stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> NativeStream:
        payload = self.build_payload(messages, model, tools, tool_choice)
        params = None
        if self._is_azure:
            params = {"api-version": self._spec.api_version or _AZURE_API_VERSION}
        response = await self._endpoint.open_stream("/chat/completions", payload, params)
        return _stream_handle(_iter_sse(response, self.name), response)

    async def aclose(self) -> None:
        await self._endpoint.aclose()


# ---------------------------------------------------------------------------
# Ollama native /api/chat
# ---------------------------------------------------------------------------

class OllamaProvider:
    """Streaming Ollama ``/api/chat`` over newline-delimited JSON."""

    wire_format = "ollama"

    def __init__(
        self,
        name: str,
        spec: ProviderSpec,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self._spec = spec
        # Ollama's native API lives beside the OpenAI shim, not under /v1
        base_url = (spec.base_url or _DEFAULT_BASE_URLS["ollama"]).rstrip("/")
        base_url = base_url.removesuffix("/v1")
        headers = {"Content-Type": "application/json", **spec.headers}
        if spec.api_key and spec.api_key != "no-key":
            headers["Authorization"] = f"Bearer {spec.api_key}"
        self._endpoint = _Endpoint(name, base_url, headers, client)

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [_ollama_message(m) for m in messages],
            "stream": True,
        }
        # Ollama has no tool_choice; "none" is honoured by omitting tools
        if tools and tool_choice != "none":
            payload["tools"] = tools
        if self._spec.extra_params:
            payload.update(self._spec.extra_params)
        return payload

    async def begin_stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> NativeStream:
        payload = self.build_payload(messages, model, tools, tool_choice)
        response = await self._endpoint.open_stream("/api/chat", payload)
        return _stream_handle(_iter_ndjson(response, self.name), response)

    async def aclose(self) -> None:
        await self._endpoint.aclose()


def _ollama_message(message: Mapping[str, Any]) -> dict[str, Any]:
    """Ollama expects tool-call arguments as objects, not JSON text."""
    converted = dict(message)
    calls = converted.get("tool_calls")
    if not calls:
        return converted
    fixed = []
    for call in calls:
        func = dict(call.get("function", {}))
        args = func.get("arguments")
        if isinstance(args, str):
            try:
                func["arguments"] = json.loads(args) if args else {}
            except json.JSONDecodeError:
                func["arguments"] = {}
        fixed.append({"function": func})
    converted["tool_calls"] = fixed
    return converted


# ---------------------------------------------------------------------------
# Google Gemini streamGenerateContent
# ---------------------------------------------------------------------------

_GEMINI_TOOL_MODES = {"auto": "AUTO", "none": "NONE"}


class GeminiProvider:
    """Streaming ``models/{model}:streamGenerateContent`` over SSE."""

    wire_format = "gemini"

    def __init__(
        self,
        name: str,
        spec: ProviderSpec,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self._spec = spec
        base_url = spec.base_url or _DEFAULT_BASE_URLS["google"]
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": spec.resolved_api_key(),
            **spec.headers,
        }
        self._endpoint = _Endpoint(name, base_url, headers, client)

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None,
        tool_choice: ToolChoice | None,
    ) -> dict[str, Any]:
        system_parts: list[dict[str, Any]] = []
        contents: list[dict[str, Any]] = []
        # Gemini keys function responses by name, tool messages by call id
        names_by_id: dict[str, str] = {}

        for message in messages:
            role = message.get("role")
            text = message.get("content") or ""
            if role == "system":
                system_parts.append({"text": text})
            elif role == "assistant":
                parts: list[dict[str, Any]] = [{"text": text}] if text else []
                for call in message.get("tool_calls") or []:
                    func = call.get("function", {})
                    names_by_id[call.get("id", "")] = func.get("name", "")
                    args = func.get("arguments") or "{}"
                    parts.append({
                        "functionCall": {
                            "name": func.get("name", ""),
                            "args": json.loads(args) if isinstance(args, str) else args,
                        },
                    })
                contents.append({"role": "model", "parts": parts})
            elif role == "tool":
                name = message.get("name") or names_by_id.get(
                    message.get("tool_call_id", ""), "",
                )
                contents.append({
                    "role": "user",
                    "parts": [{
                        "functionResponse": {
                            "name": name,
                            "response": {"content": text},
                        },
                    }],
                })
            else:
                contents.append({"role": "user", "parts": [{"text": text}]})

        payload: dict[str, Any] = {"contents": contents}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        if tools:
            payload["tools"] = [{
                "functionDeclarations": [t.get("function", t) for t in tools],
            }]
            if tool_choice:
                payload["toolConfig"] = {
                    "functionCallingConfig": _gemini_tool_config(tool_choice),
                }
        if self._spec.extra_params:
            payload.update(self._spec.extra_params)
        return payload

    async def begin_stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> NativeStream:
        payload = self.build_payload(messages, model, tools, tool_choice)
        url = f"/models/{model}:streamGenerateContent"
        response = await self._endpoint.open_stream(url, payload, {"alt": "sse"})
        return _stream_handle(_iter_sse(response, self.name), response)

    async def aclose(self) -> None:
        await self._endpoint.aclose()


def _gemini_tool_config(tool_choice: ToolChoice) -> dict[str, Any]:
    if isinstance(tool_choice, str):
        return {"mode": _GEMINI_TOOL_MODES.get(tool_choice, "AUTO")}
    name = tool_choice.get("function", {}).get("name", "")
    return {"mode": "ANY", "allowedFunctionNames": [name]}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

_VARIANTS: dict[str, type] = {
    "openai": OpenAICompatibleProvider,
    "azure": OpenAICompatibleProvider,
    "groq": OpenAICompatibleProvider,
    "openrouter": OpenAICompatibleProvider,
    "mistral": OpenAICompatibleProvider,
    "ollama": OllamaProvider,
    "google": GeminiProvider,
    "gemini": GeminiProvider,
}


def supported_provider_types() -> list[str]:
    return sorted(_VARIANTS)


def create_provider(
    name: str,
    spec: ProviderSpec,
    client: httpx.AsyncClient | None = None,
) -> Provider:
    """Instantiate the variant for *name* (or ``spec.type`` when set)."""
    kind = spec.type or name
    variant = _VARIANTS.get(kind)
    if variant is None:
        raise ProviderConfigurationError(
            f"Unknown or unsupported provider type: {kind}", provider=name,
        )
    _logger.debug("Resolved provider %s -> %s", name, variant.__name__)
    return variant(name, spec, client)

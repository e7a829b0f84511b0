"""Per-call resource arena.

A :class:`CallScope` owns every transport handle opened on behalf of one
chat call and releases them on every exit path.  Nothing is registered
globally: concurrent calls each hold their own scope.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from types import TracebackType
from typing import Any, Protocol, TypeVar

_logger = logging.getLogger(__name__)


class Closeable(Protocol):
    async def aclose(self) -> Any: ...


H = TypeVar("H", bound=Closeable)


class CallScope:
    """Scoped acquisition with guaranteed, idempotent release.

    Usage::

        async with CallScope("openai") as scope:
            stream = scope.adopt(await provider.begin_stream(...))
            ...
        # every adopted handle has been closed here

    ``abort()`` and ``aclose()`` may be called any number of times.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._stack = AsyncExitStack()
        self._closed = False
        self._abort_reason: str | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def adopt(self, handle: H) -> H:
        """Register *handle* so that it is closed when the scope ends."""
        if self._closed:
            raise RuntimeError(f"CallScope {self.name!r} is already closed")
        self._stack.push_async_callback(handle.aclose)
        return handle

    @property
    def aborted(self) -> bool:
        return self._abort_reason is not None

    @property
    def abort_reason(self) -> str | None:
        return self._abort_reason

    @property
    def closed(self) -> bool:
        return self._closed

    async def abort(self, reason: str) -> bool:
        """Mark the call aborted and release its resources.

        Returns ``True`` for the first request, ``False`` for repeats and
        for requests arriving after the scope has already closed.
        """
        if self._abort_reason is not None or self._closed:
            return False
        self._abort_reason = reason
        _logger.info("%s: call aborted (%s)", self.name or "call", reason)
        await self.aclose()
        return True

    async def aclose(self) -> None:
        """Release every adopted handle once, in reverse order of adoption."""
        if self._closed:
            return
        self._closed = True
        await self._stack.aclose()

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> CallScope:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and issubclass(exc_type, asyncio.CancelledError):
            await self.abort("cancelled")
        else:
            await self.aclose()

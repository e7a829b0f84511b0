"""Bounded, jittered exponential backoff around stream establishment."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ClassifiedError, classify_error

_logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, float, ClassifiedError], Any]


class RetryPolicy(BaseModel):
    """Immutable retry settings for one call.

    ``delay_ms(attempt)`` is the wait after failed attempt number *attempt*
    (1-based), i.e. before attempt ``attempt + 1``.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10000, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=1)
    jitter_factor: float = Field(default=0.1, ge=0, le=1)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> RetryPolicy:
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self

    def base_delay_ms(self, attempt: int) -> float:
        """Backoff before jitter, capped at ``max_delay_ms``."""
        raw = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return max(0.0, min(raw, float(self.max_delay_ms)))

    def delay_ms(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff with jitter drawn uniformly from ``[1 - j, 1 + j]``."""
        uniform = (rng or random).uniform
        jitter = max(
            0.0, uniform(1 - self.jitter_factor, 1 + self.jitter_factor),
        )
        return self.base_delay_ms(attempt) * jitter


class RetryExecutor:
    """Run an establishment operation under a :class:`RetryPolicy`.

    One executor serves one call; ``attempts`` reports how many attempts
    the last :meth:`run` made.

    Parameters
    ----------
    policy:
        Backoff settings.
    provider:
        Provider identifier, for logging and error annotation.
    sleep:
        Coroutine used to wait between attempts (``asyncio.sleep`` when omitted).
    rng:
        Random source for jitter.
    on_retry:
        Optional callback ``(attempt, delay_ms, error)`` invoked before each wait.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        provider: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
        on_retry: RetryCallback | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._provider = provider
        self._sleep = sleep
        self._rng = rng
        self._on_retry = on_retry
        self.attempts = 0
        self.delays_ms: list[float] = []

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Call *operation* until it succeeds or the failure is final.

        Raises the :class:`ClassifiedError` of the last failure, with
        ``attempts`` set.  Cancellation is never intercepted.
        """
        max_attempts = self.policy.max_attempts
        self.attempts = 0
        self.delays_ms = []

        for attempt in range(1, max_attempts + 1):
            self.attempts = attempt
            try:
                return await operation()
            except Exception as exc:
                error = classify_error(exc, self._provider)
                error.attempts = attempt

                if not error.is_retryable or attempt >= max_attempts:
                    _logger.warning(
                        "%s: giving up after attempt %d/%d (%s): %s",
                        self._provider or "provider", attempt, max_attempts,
                        error.category.value, error,
                    )
                    if error is exc:
                        raise
                    raise error from exc

                delay = self.policy.delay_ms(attempt, self._rng)
                self.delays_ms.append(delay)
                _logger.warning(
                    "%s: %s error (attempt %d/%d), retrying in %.0fms: %s",
                    self._provider or "provider", error.category.value,
                    attempt, max_attempts, delay, error,
                )
                if self._on_retry is not None:
                    self._on_retry(attempt, delay, error)
                sleep = self._sleep or asyncio.sleep
                await sleep(delay / 1000)

        # range() is never empty: max_attempts >= 1
        raise AssertionError("unreachable")

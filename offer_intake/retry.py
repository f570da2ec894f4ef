"""Tenacity-backed retry executor that returns typed outcomes.

Unlike a bare ``@retry`` decorator, :class:`RetryExecutor` never lets an
exception escape: the caller receives a :class:`RetryOutcome` and decides
whether to skip, log or abort the current unit of work.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import ErrorKind, classify_exception, is_transient

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a retried call: either ``value`` or ``error`` is set."""

    ok: bool
    value: T | None = None
    error: BaseException | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry_scheduled",
        operation=getattr(retry_state.fn, "__name__", repr(retry_state.fn)),
        attempt=retry_state.attempt_number,
        delay=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc),
    )


class RetryExecutor:
    """Retry transient failures with exponentially doubling delay.

    ``max_retries`` counts retries after the first attempt, so an
    operation is invoked at most ``max_retries + 1`` times.  Delays are
    ``initial_delay``, ``2 * initial_delay``, ``4 * initial_delay`` ...
    """

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        *,
        is_retryable: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._is_retryable = is_retryable
        self._sleep = sleep
        self._async_sleep = async_sleep

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: Any) -> RetryExecutor:
        return cls(config.max_retries, config.initial_delay_seconds, **kwargs)

    def _policy(self, max_retries: int | None, initial_delay: float | None) -> dict[str, Any]:
        retries = self.max_retries if max_retries is None else max_retries
        delay = self.initial_delay if initial_delay is None else initial_delay
        return {
            "stop": stop_after_attempt(retries + 1),
            "wait": wait_exponential(multiplier=delay, exp_base=2),
            "retry": retry_if_exception(self._is_retryable),
            "before_sleep": _log_before_sleep,
            "reraise": True,
        }

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def run(
        self,
        operation: Callable[[], T],
        max_retries: int | None = None,
        initial_delay: float | None = None,
    ) -> RetryOutcome[T]:
        """Invoke *operation* until it succeeds or retrying stops."""
        outcome: RetryOutcome[T] = RetryOutcome(ok=False)

        def _sleep(seconds: float) -> None:
            outcome.delays.append(seconds)
            self._sleep(seconds)

        def _attempt() -> T:
            outcome.attempts += 1
            return operation()

        _attempt.__name__ = getattr(operation, "__name__", "operation")
        retrying = Retrying(sleep=_sleep, **self._policy(max_retries, initial_delay))
        try:
            outcome.value = retrying(_attempt)
            outcome.ok = True
        except Exception as exc:
            self._fail(outcome, exc)
        return outcome

    # ------------------------------------------------------------------
    # Async
    # ------------------------------------------------------------------

    async def arun(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: int | None = None,
        initial_delay: float | None = None,
    ) -> RetryOutcome[T]:
        """Async counterpart of :meth:`run` for coroutine operations."""
        outcome: RetryOutcome[T] = RetryOutcome(ok=False)

        async def _sleep(seconds: float) -> None:
            outcome.delays.append(seconds)
            await self._async_sleep(seconds)

        async def _attempt() -> T:
            outcome.attempts += 1
            return await operation()

        _attempt.__name__ = getattr(operation, "__name__", "operation")
        retrying = AsyncRetrying(sleep=_sleep, **self._policy(max_retries, initial_delay))
        try:
            outcome.value = await retrying(_attempt)
            outcome.ok = True
        except Exception as exc:
            self._fail(outcome, exc)
        return outcome

    @staticmethod
    def _fail(outcome: RetryOutcome[Any], exc: Exception) -> None:
        outcome.error = exc
        outcome.error_kind = classify_exception(exc)
        logger.error(
            "retry_exhausted" if outcome.error_kind is ErrorKind.TRANSIENT_EXTERNAL else "retry_aborted",
            attempts=outcome.attempts,
            error_kind=outcome.error_kind.value,
            error=str(exc),
        )

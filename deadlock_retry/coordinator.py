"""Retry the outermost transaction of a unit of work on lock contention.

A transaction that hits a deadlock or a lock wait timeout has been rolled back
by the store, so the only safe recovery is to replay the *whole* unit of work
from the outermost transaction boundary.  Inner scopes never retry on their
own: their partial effects belong to the outer transaction and cannot be
replayed in isolation.  An inner failure therefore propagates to the outer
boundary, which decides whether to run everything again.

Each attempt produces a tagged :data:`AttemptOutcome`.  The retry loop itself
is a :class:`tenacity.Retrying` instance that retries while the outcome is a
:class:`RetryableFailure` and stops after ``BackoffPolicy.max_attempts()``
invocations.  Final failures re-raise the original exception object, so
callers keep handling the store's own error types.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
)

from .backoff import BackoffPolicy
from .classifier import ErrorClassifier
from .diagnostics import DiagnosticsCollector
from .nesting import NestingTracker

__all__ = [
    "AttemptOutcome",
    "FatalFailure",
    "RetryCoordinator",
    "RetryableFailure",
    "Success",
]

T = TypeVar("T")

HandleProvider = Callable[[], Any]


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    value: T

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class RetryableFailure:
    error: Exception

    def unwrap(self) -> Any:
        raise self.error


@dataclass(frozen=True, slots=True)
class FatalFailure:
    error: Exception

    def unwrap(self) -> Any:
        raise self.error


AttemptOutcome = Union[Success[Any], RetryableFailure, FatalFailure]


def _is_retryable(outcome: AttemptOutcome) -> bool:
    return isinstance(outcome, RetryableFailure)


def _last_outcome(retry_state: RetryCallState) -> AttemptOutcome:
    # Budget exhausted: hand back the final failure instead of tenacity's RetryError.
    if retry_state.outcome is None:
        raise RuntimeError("Retry loop finished without an attempt outcome")
    return retry_state.outcome.result()


class RetryCoordinator:
    """Run units of work inside tracked transaction scopes with bounded retries.

    Parameters
    ----------
    policy:
        Attempt budget and delay curve.
    classifier:
        Decides which failures are transient lock contention.
    diagnostics:
        Collects store lock status before each retry.  Its failures never
        reach the caller.
    tracker:
        Per-context scope depth.  Coordinators that wrap the same host must
        share a tracker so nested calls are recognised.
    handle_provider:
        Zero-argument callable returning the store handle used for
        diagnostics (an ``Engine``, ``Connection`` or ``Session``).
    sleep, async_sleep:
        Suspension used between attempts; tests inject no-op replacements.
    """

    def __init__(
        self,
        *,
        policy: BackoffPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        diagnostics: DiagnosticsCollector | None = None,
        tracker: NestingTracker | None = None,
        handle_provider: HandleProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._policy = policy or BackoffPolicy()
        self._classifier = classifier or ErrorClassifier()
        self._diagnostics = diagnostics or DiagnosticsCollector()
        self._tracker = tracker or NestingTracker()
        self._handle_provider = handle_provider
        self._sleep = sleep
        self._async_sleep = async_sleep
        self._logger = logger or logging.getLogger(__name__)

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    @property
    def diagnostics(self) -> DiagnosticsCollector:
        return self._diagnostics

    @property
    def tracker(self) -> NestingTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Synchronous entry points
    def run(self, work: Callable[[], T]) -> T:
        """Invoke *work*, retrying the outermost scope on lock contention."""

        if self._tracker.depth > 0:
            return self._run_nested(work)

        self._diagnostics.prepare(self._current_handle())
        retrying = Retrying(
            stop=stop_after_attempt(self._policy.max_attempts()),
            wait=self._policy.wait(),
            retry=retry_if_result(_is_retryable),
            before_sleep=self._before_sleep,
            retry_error_callback=_last_outcome,
            sleep=self._sleep,
        )
        outcome: AttemptOutcome = retrying(self._attempt, work)
        return outcome.unwrap()

    def wrap(self, func: Callable[..., T]) -> Callable[..., T]:
        """Return *func* routed through :meth:`run` with its signature preserved."""

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.run(functools.partial(func, *args, **kwargs))

        return wrapper

    def _run_nested(self, work: Callable[[], T]) -> T:
        with self._tracker.scope() as depth:
            try:
                return work()
            except Exception as error:
                self._logger.debug(
                    "Propagating %s from nested transaction at depth %d",
                    type(error).__name__,
                    depth,
                )
                raise

    def _attempt(self, work: Callable[[], T]) -> AttemptOutcome:
        with self._tracker.scope():
            try:
                return Success(work())
            except Exception as error:
                return self._failure(error)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        snapshot = self._diagnostics.collect_and_log(self._current_handle())
        self._log_retry(retry_state, snapshot)

    # ------------------------------------------------------------------
    # Asyncio entry points
    async def run_async(self, work: Callable[[], Awaitable[T]]) -> T:
        """Async counterpart of :meth:`run`; the backoff sleep is the only cancellation point."""

        if self._tracker.depth > 0:
            with self._tracker.scope():
                return await work()

        await self._diagnostics.aprepare(self._current_handle())
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_attempts()),
            wait=self._policy.wait(),
            retry=retry_if_result(_is_retryable),
            before_sleep=self._abefore_sleep,
            retry_error_callback=_last_outcome,
            sleep=self._async_sleep,
        )
        outcome: AttemptOutcome = await retrying(self._aattempt, work)
        return outcome.unwrap()

    def wrap_async(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.run_async(functools.partial(func, *args, **kwargs))

        return wrapper

    async def _aattempt(self, work: Callable[[], Awaitable[T]]) -> AttemptOutcome:
        with self._tracker.scope():
            try:
                return Success(await work())
            except Exception as error:
                return self._failure(error)

    async def _abefore_sleep(self, retry_state: RetryCallState) -> None:
        snapshot = await self._diagnostics.acollect_and_log(self._current_handle())
        self._log_retry(retry_state, snapshot)

    # ------------------------------------------------------------------
    # Internal helpers
    def _failure(self, error: Exception) -> AttemptOutcome:
        if self._classifier.is_retryable(error):
            return RetryableFailure(error)
        return FatalFailure(error)

    def _current_handle(self) -> Any:
        if self._handle_provider is None:
            return None
        try:
            return self._handle_provider()
        except Exception as exc:
            self._logger.info("Cannot log lock status: no store handle (%s)", exc)
            return None

    def _log_retry(self, retry_state: RetryCallState, snapshot: list[str]) -> None:
        if retry_state.outcome is None:
            raise RuntimeError("Retry callback invoked before any attempt completed")
        outcome: AttemptOutcome = retry_state.outcome.result()
        error = outcome.error if not isinstance(outcome, Success) else None
        attempt = retry_state.attempt_number
        delay = retry_state.upcoming_sleep
        self._logger.warning(
            "Lock contention on attempt %d of %d, restarting transaction in %.3fs: %s",
            attempt,
            self._policy.max_attempts(),
            delay,
            error,
            extra={
                "attempt": attempt,
                "max_attempts": self._policy.max_attempts(),
                "delay": delay,
                "error": str(error),
                "diagnostics": list(snapshot),
            },
        )

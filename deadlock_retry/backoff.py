"""Bounded, jittered backoff between retries of a transaction."""

from __future__ import annotations

import random

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, model_validator
from tenacity import RetryCallState
from tenacity.wait import wait_base

__all__ = ["BackoffPolicy"]


class BackoffPolicy(BaseModel):
    """Exponential backoff with multiplicative jitter and a hard ceiling.

    The delay before retry ``n`` is ``initial_backoff * multiplier ** (n - 1)``
    stretched by a random factor in ``[1, 1 + jitter)``.  The validator keeps
    the whole curve below ``max_backoff`` and requires ``multiplier`` to
    exceed the jitter stretch, so consecutive delays are strictly increasing
    whatever the random draw.
    """

    model_config = ConfigDict(frozen=True)

    attempts: PositiveInt = Field(
        4,
        description="Total invocations of the unit of work, including the first one.",
    )
    initial_backoff: PositiveFloat = Field(
        0.25,
        description="Seconds to wait before the first retry.",
    )
    multiplier: PositiveFloat = Field(
        2.0,
        description="Growth factor applied to the delay for every further retry.",
    )
    max_backoff: PositiveFloat = Field(
        5.0,
        description="Ceiling, in seconds, for any single delay.",
    )
    jitter: float = Field(
        0.25,
        ge=0.0,
        lt=1.0,
        description="Upper bound of the random stretch applied to each delay, as a ratio.",
    )

    @model_validator(mode="after")
    def _validate_curve(self) -> "BackoffPolicy":
        if self.multiplier <= 1.0 + self.jitter:
            raise ValueError("multiplier must be greater than 1 + jitter to keep delays increasing")
        peak = self.initial_backoff * self.multiplier ** (self.attempts - 1) * (1.0 + self.jitter)
        if peak > self.max_backoff:
            raise ValueError(
                f"backoff curve reaches {peak:.3f}s which exceeds max_backoff={self.max_backoff}s"
            )
        return self

    def max_attempts(self) -> int:
        return int(self.attempts)

    def delay_for(self, attempt_index: int) -> float:
        """Return the delay, in seconds, that precedes retry *attempt_index*."""

        if attempt_index < 1:
            raise ValueError("attempt_index starts at 1")
        base = self.initial_backoff * self.multiplier ** (attempt_index - 1)
        stretch = 1.0 + random.uniform(0.0, self.jitter) if self.jitter else 1.0
        return min(base * stretch, float(self.max_backoff))

    def wait(self) -> wait_base:
        """Return a tenacity wait strategy driven by this policy."""

        return _PolicyWait(self)


class _PolicyWait(wait_base):
    def __init__(self, policy: BackoffPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self._policy.delay_for(retry_state.attempt_number)

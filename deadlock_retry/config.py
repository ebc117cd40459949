"""Environment driven settings for the deadlock retry layer."""

from __future__ import annotations

import logging
from typing import Any, Callable, Tuple

from pydantic import Field, PositiveFloat, PositiveInt, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .backoff import BackoffPolicy
from .classifier import DEFAULT_LOCK_MESSAGES, ErrorClassifier
from .coordinator import RetryCoordinator
from .diagnostics import DiagnosticsCollector, StatusCommandRegistry, status_commands
from .nesting import NestingTracker

__all__ = ["DeadlockRetrySettings"]


class DeadlockRetrySettings(BaseSettings):
    """Tuning knobs read from ``DEADLOCK_RETRY_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="DEADLOCK_RETRY_", extra="ignore")

    max_attempts: PositiveInt = Field(
        4,
        description="Total invocations of a transaction before the last lock error is surfaced.",
    )
    initial_backoff: PositiveFloat = Field(
        0.25,
        description="Seconds to wait before the first retry.",
    )
    multiplier: PositiveFloat = Field(
        2.0,
        description="Growth factor of the delay between consecutive retries.",
    )
    max_backoff: PositiveFloat = Field(
        5.0,
        description="Ceiling, in seconds, for a single delay.",
    )
    jitter: float = Field(
        0.25,
        ge=0.0,
        lt=1.0,
        description="Upper bound of the random stretch applied to each delay.",
    )
    status_command: str | None = Field(
        default=None,
        min_length=1,
        description=(
            "Statement returning the store's lock status, e.g. 'SHOW ENGINE INNODB STATUS'. "
            "When omitted the command is probed from the server on first use."
        ),
    )
    collect_diagnostics: bool = Field(
        True,
        description="Log the store's lock status before every retry.",
    )
    retryable_messages: Tuple[str, ...] = Field(
        DEFAULT_LOCK_MESSAGES,
        min_length=1,
        description="Case-sensitive phrases identifying transient lock contention in error messages.",
    )

    @model_validator(mode="after")
    def _validate_backoff_curve(self) -> "DeadlockRetrySettings":
        try:
            self.build_policy()
        except ValidationError as exc:
            raise ValueError("; ".join(error["msg"] for error in exc.errors())) from exc
        return self

    def build_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            attempts=self.max_attempts,
            initial_backoff=self.initial_backoff,
            multiplier=self.multiplier,
            max_backoff=self.max_backoff,
            jitter=self.jitter,
        )

    def build_classifier(self) -> ErrorClassifier:
        return ErrorClassifier.from_messages(self.retryable_messages)

    def build_diagnostics(
        self,
        *,
        registry: StatusCommandRegistry | None = None,
        logger: logging.Logger | None = None,
    ) -> DiagnosticsCollector:
        """Return a collector, pushing an explicit ``status_command`` into *registry*."""

        registry = registry or status_commands
        if self.status_command is not None:
            registry.configure(self.status_command)
        return DiagnosticsCollector(registry, enabled=self.collect_diagnostics, logger=logger)

    def build_coordinator(
        self,
        *,
        handle_provider: Callable[[], Any] | None = None,
        tracker: NestingTracker | None = None,
        registry: StatusCommandRegistry | None = None,
        logger: logging.Logger | None = None,
        **overrides: Any,
    ) -> RetryCoordinator:
        """Assemble a :class:`RetryCoordinator` from these settings.

        ``overrides`` are forwarded to the coordinator, e.g. ``sleep=`` in tests.
        """

        return RetryCoordinator(
            policy=self.build_policy(),
            classifier=self.build_classifier(),
            diagnostics=self.build_diagnostics(registry=registry, logger=logger),
            tracker=tracker,
            handle_provider=handle_provider,
            logger=logger,
            **overrides,
        )

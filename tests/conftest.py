# SPDX-License-Identifier: MIT
"""Shared fixtures for the deadlock retry test-suite."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest

from deadlock_retry.backoff import BackoffPolicy
from deadlock_retry.coordinator import RetryCoordinator
from deadlock_retry.diagnostics import DiagnosticsCollector, StatusCommandRegistry, status_commands


class RecordingSleep:
    """Drop-in for ``time.sleep`` that only remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingAsyncSleep(RecordingSleep):
    async def __call__(self, seconds: float) -> None:  # type: ignore[override]
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def _reset_status_command() -> Iterator[None]:
    status_commands.reset()
    yield
    status_commands.reset()


@pytest.fixture()
def registry() -> StatusCommandRegistry:
    return StatusCommandRegistry()


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def async_sleep() -> RecordingAsyncSleep:
    return RecordingAsyncSleep()


@pytest.fixture()
def policy() -> BackoffPolicy:
    return BackoffPolicy(jitter=0.0)


@pytest.fixture()
def make_coordinator(
    policy: BackoffPolicy,
    registry: StatusCommandRegistry,
    sleep: RecordingSleep,
    async_sleep: RecordingAsyncSleep,
) -> Callable[..., RetryCoordinator]:
    """Build coordinators that never really sleep and use an isolated registry."""

    def _factory(**overrides: object) -> RetryCoordinator:
        options: dict[str, object] = {
            "policy": policy,
            "diagnostics": DiagnosticsCollector(registry),
            "sleep": sleep,
            "async_sleep": async_sleep,
        }
        options.update(overrides)
        return RetryCoordinator(**options)  # type: ignore[arg-type]

    return _factory

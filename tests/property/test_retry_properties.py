# SPDX-License-Identifier: MIT
"""Property-based checks of the retry coordinator's invariants."""

from __future__ import annotations

import pytest
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st
from pydantic import ValidationError

from deadlock_retry.backoff import BackoffPolicy
from deadlock_retry.classifier import MYSQL_LOCK_MESSAGES, Classification, ErrorClassifier
from deadlock_retry.coordinator import RetryCoordinator
from deadlock_retry.diagnostics import DiagnosticsCollector, StatusCommandRegistry
from tests.fakes import StatementInvalid

lock_messages = st.sampled_from(MYSQL_LOCK_MESSAGES)


def _coordinator(attempts: int) -> RetryCoordinator:
    return RetryCoordinator(
        policy=BackoffPolicy(attempts=attempts, initial_backoff=0.01, jitter=0.0),
        diagnostics=DiagnosticsCollector(StatusCommandRegistry(), enabled=False),
        sleep=lambda _: None,
    )


@settings(max_examples=100, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(
    errors=st.lists(lock_messages, max_size=10),
    attempts=st.integers(min_value=1, max_value=6),
)
def test_invocations_are_bounded_by_attempt_budget(errors: list[str], attempts: int) -> None:
    coordinator = _coordinator(attempts)
    pending = list(errors)
    raised: list[StatementInvalid] = []
    calls = 0

    def work() -> str:
        nonlocal calls
        calls += 1
        if pending:
            error = StatementInvalid(pending.pop(0))
            raised.append(error)
            raise error
        return "success"

    if len(errors) < attempts:
        assert coordinator.run(work) == "success"
        assert calls == len(errors) + 1
    else:
        with pytest.raises(StatementInvalid) as excinfo:
            coordinator.run(work)
        assert calls == attempts
        assert excinfo.value is raised[-1]
    assert coordinator.tracker.depth == 0


@settings(
    max_examples=50,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture, HealthCheck.filter_too_much],
)
@given(
    message=st.text(max_size=60).filter(lambda text: not any(phrase in text for phrase in MYSQL_LOCK_MESSAGES)),
    depth=st.integers(min_value=0, max_value=3),
)
def test_unrecognized_failures_run_once_at_any_depth(message: str, depth: int) -> None:
    coordinator = _coordinator(4)
    calls = 0

    def work() -> None:
        nonlocal calls
        calls += 1
        raise StatementInvalid(message)

    for _ in range(depth):
        coordinator.tracker.enter()
    try:
        with pytest.raises(StatementInvalid):
            coordinator.run(work)
    finally:
        for _ in range(depth):
            coordinator.tracker.exit()

    assert calls == 1
    assert coordinator.tracker.depth == 0


@settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(prefix=st.text(max_size=20), phrase=lock_messages, suffix=st.text(max_size=20))
def test_embedded_lock_phrases_are_retryable(prefix: str, phrase: str, suffix: str) -> None:
    error = StatementInvalid(f"{prefix}{phrase}{suffix}")

    assert ErrorClassifier().classify(error) is Classification.RETRYABLE


@settings(suppress_health_check=[HealthCheck.function_scoped_fixture, HealthCheck.filter_too_much])
@given(
    attempts=st.integers(min_value=1, max_value=8),
    initial=st.floats(min_value=0.001, max_value=1.0),
    multiplier=st.floats(min_value=1.1, max_value=4.0),
    jitter=st.floats(min_value=0.0, max_value=0.99),
    ceiling=st.floats(min_value=0.01, max_value=30.0),
)
def test_valid_policies_produce_increasing_bounded_delays(
    attempts: int, initial: float, multiplier: float, jitter: float, ceiling: float
) -> None:
    assume(multiplier > 1.0 + jitter + 0.01)
    try:
        policy = BackoffPolicy(
            attempts=attempts,
            initial_backoff=initial,
            multiplier=multiplier,
            jitter=jitter,
            max_backoff=ceiling,
        )
    except ValidationError:
        assume(False)
        return

    delays = [policy.delay_for(index) for index in range(1, attempts + 1)]

    assert all(0 < delay <= ceiling for delay in delays)
    assert all(earlier < later for earlier, later in zip(delays, delays[1:]))

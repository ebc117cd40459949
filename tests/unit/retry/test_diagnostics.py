"""Tests for lock status probing and best-effort collection."""

from __future__ import annotations

import logging
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.util import greenlet_spawn

from deadlock_retry.diagnostics import (
    MYSQL_VERSION_QUERY,
    POSTGRESQL_STATUS_COMMAND,
    DiagnosticsCollector,
    StatusCommandRegistry,
    configure_status_command,
    innodb_status_command,
    reset_status_command,
    status_commands,
)
from deadlock_retry.exceptions import DiagnosticsUnavailableError
from tests.fakes import INNODB_STATUS, FakeResult, FakeStoreHandle


class AsyncFakeStoreHandle(FakeStoreHandle):
    async def execute(self, statement: Any) -> FakeResult:  # type: ignore[override]
        return FakeStoreHandle.execute(self, statement)


@pytest.mark.parametrize(
    ("version", "expected"),
    [
        ("5.1.45", "SHOW INNODB STATUS"),
        ("5.0.96-log", "SHOW INNODB STATUS"),
        ("5.5.62", "SHOW ENGINE INNODB STATUS"),
        ("8.0.35", "SHOW ENGINE INNODB STATUS"),
        ("10.6.12-MariaDB", "SHOW ENGINE INNODB STATUS"),
        ("unknown", "SHOW ENGINE INNODB STATUS"),
    ],
)
def test_innodb_status_command_depends_on_version(version: str, expected: str) -> None:
    assert innodb_status_command(version) == expected


def test_probe_selects_command_from_server_version(registry: StatusCommandRegistry) -> None:
    handle = FakeStoreHandle(version="5.1.45")

    assert registry.resolve(handle) == "SHOW INNODB STATUS"
    assert handle.executed == [MYSQL_VERSION_QUERY, "SHOW INNODB STATUS"]


def test_probe_runs_once_until_reset(registry: StatusCommandRegistry) -> None:
    handle = FakeStoreHandle()

    registry.resolve(handle)
    registry.resolve(handle)
    registry.resolve(handle)

    assert registry.probes == 1
    assert handle.executed.count(MYSQL_VERSION_QUERY) == 1

    registry.reset()
    registry.resolve(handle)

    assert registry.probes == 1
    assert handle.executed.count(MYSQL_VERSION_QUERY) == 2


def test_denied_status_disables_collection(
    registry: StatusCommandRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    handle = FakeStoreHandle(denied={"SHOW ENGINE INNODB STATUS"})

    with caplog.at_level(logging.INFO, logger="deadlock_retry.diagnostics"):
        assert registry.resolve(handle) is None

    assert registry.command is False
    assert "Cannot log lock status" in caplog.text
    assert registry.resolve(handle) is None
    assert registry.probes == 1


def test_postgresql_uses_activity_query(registry: StatusCommandRegistry) -> None:
    handle = FakeStoreHandle("postgresql")

    assert registry.resolve(handle) == POSTGRESQL_STATUS_COMMAND
    assert handle.executed == [POSTGRESQL_STATUS_COMMAND]


def test_unsupported_dialect_disables_collection(registry: StatusCommandRegistry) -> None:
    handle = FakeStoreHandle("sqlite")

    assert registry.resolve(handle) is None
    assert handle.executed == []


def test_explicit_command_skips_probe(registry: StatusCommandRegistry) -> None:
    handle = FakeStoreHandle()
    registry.configure("SHOW ENGINE INNODB STATUS")

    assert registry.resolve(handle) == "SHOW ENGINE INNODB STATUS"
    assert registry.probes == 0
    assert handle.executed == []


def test_configure_rejects_true(registry: StatusCommandRegistry) -> None:
    with pytest.raises(ValueError):
        registry.configure(True)


def test_process_wide_helpers_update_default_registry() -> None:
    configure_status_command("SHOW ENGINE INNODB STATUS")
    assert status_commands.command == "SHOW ENGINE INNODB STATUS"

    reset_status_command()
    assert status_commands.command is None


def test_collect_and_log_emits_status_lines(
    registry: StatusCommandRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    collector = DiagnosticsCollector(registry)

    with caplog.at_level(logging.WARNING, logger="deadlock_retry.diagnostics"):
        lines = collector.collect_and_log(FakeStoreHandle())

    assert lines[0].startswith("InnoDB")
    assert lines[1:] == list(INNODB_STATUS[1:])
    assert "Lock status follows:" in caplog.messages
    assert "  LATEST DETECTED DEADLOCK" in caplog.messages


def test_collect_and_log_swallows_failures(
    registry: StatusCommandRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    registry.configure("SHOW ENGINE INNODB STATUS")
    collector = DiagnosticsCollector(registry)
    handle = FakeStoreHandle(denied={"SHOW ENGINE INNODB STATUS"})

    with caplog.at_level(logging.INFO, logger="deadlock_retry.diagnostics"):
        assert collector.collect_and_log(handle) == []

    assert any(
        record.levelno == logging.INFO and "Access denied" in record.getMessage()
        for record in caplog.records
    )
    assert not any(record.levelno >= logging.WARNING for record in caplog.records)


def test_snapshot_raises_when_disabled(registry: StatusCommandRegistry) -> None:
    registry.configure(False)

    with pytest.raises(DiagnosticsUnavailableError):
        DiagnosticsCollector(registry).snapshot(FakeStoreHandle())


def test_disabled_collector_never_touches_the_store(registry: StatusCommandRegistry) -> None:
    handle = FakeStoreHandle()
    collector = DiagnosticsCollector(registry, enabled=False)

    collector.prepare(handle)

    assert collector.collect_and_log(handle) == []
    assert handle.executed == []
    assert registry.probes == 0


def test_missing_handle_is_ignored(registry: StatusCommandRegistry) -> None:
    assert DiagnosticsCollector(registry).collect_and_log(None) == []


def test_engine_handles_use_a_short_lived_connection(registry: StatusCommandRegistry) -> None:
    engine = create_engine("sqlite://")
    registry.configure("SELECT 'first line' || char(10) || 'second line'")

    try:
        lines = DiagnosticsCollector(registry).snapshot(engine)
    finally:
        engine.dispose()

    assert lines == ["first line", "second line"]


@pytest.mark.asyncio
async def test_async_collection_awaits_handle(registry: StatusCommandRegistry) -> None:
    handle = AsyncFakeStoreHandle(version="5.7.44")
    collector = DiagnosticsCollector(registry)

    await collector.aprepare(handle)
    lines = await collector.acollect_and_log(handle)

    assert registry.command == "SHOW ENGINE INNODB STATUS"
    assert registry.probes == 1
    assert lines[-1] == INNODB_STATUS[-1]


@pytest.mark.asyncio
async def test_async_collection_swallows_failures(registry: StatusCommandRegistry) -> None:
    handle = AsyncFakeStoreHandle(denied={MYSQL_VERSION_QUERY})

    assert await DiagnosticsCollector(registry).acollect_and_log(handle) == []
    assert registry.command is False


@pytest.mark.asyncio
async def test_asyncio_extension_runtime_is_installed() -> None:
    # AsyncEngine handles drive their connections through greenlet.
    assert await greenlet_spawn(lambda: "bridged") == "bridged"

"""Best-effort capture of store lock status for retry logging.

When a transaction fails on lock contention the only way to see *why* is the
store's own status report (``SHOW ENGINE INNODB STATUS`` on MySQL, the lock
waiters in ``pg_stat_activity`` on PostgreSQL).  The command depends on the
engine and server version, so it is probed once per process and cached in a
:class:`StatusCommandRegistry`.  Deployments can also configure the command
explicitly or disable collection altogether.

Nothing in this module is allowed to fail a transaction: probe and collection
errors are logged at ``INFO`` and swallowed.
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Iterable, Sequence
from threading import Lock
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine

from .exceptions import DiagnosticsUnavailableError

__all__ = [
    "DiagnosticsCollector",
    "MYSQL_VERSION_QUERY",
    "POSTGRESQL_STATUS_COMMAND",
    "StatusCommandRegistry",
    "configure_status_command",
    "dialect_name",
    "innodb_status_command",
    "reset_status_command",
    "status_commands",
]

logger = logging.getLogger(__name__)

MYSQL_VERSION_QUERY = "SHOW VARIABLES LIKE 'version'"

POSTGRESQL_STATUS_COMMAND = (
    "SELECT pid, state, wait_event_type, wait_event, "
    "pg_blocking_pids(pid) AS blocked_by, query "
    "FROM pg_stat_activity WHERE wait_event_type = 'Lock'"
)

_MYSQL_DIALECTS = frozenset({"mysql", "mariadb"})
_VERSION_RE = re.compile(r"^(\d+)\.(\d+)")


def innodb_status_command(version: str) -> str:
    """Return the InnoDB status statement understood by MySQL *version*."""

    match = _VERSION_RE.match(version.strip())
    if match is not None and (int(match.group(1)), int(match.group(2))) < (5, 5):
        return "SHOW INNODB STATUS"
    return "SHOW ENGINE INNODB STATUS"


def dialect_name(handle: Any) -> str | None:
    """Return the SQLAlchemy dialect name behind *handle*, if it exposes one."""

    dialect = getattr(handle, "dialect", None)
    if dialect is None:
        get_bind = getattr(handle, "get_bind", None)
        if callable(get_bind):
            dialect = getattr(get_bind(), "dialect", None)
    name = getattr(dialect, "name", None)
    return str(name) if name is not None else None


def _fetch_rows(handle: Any, command: str) -> list[Any]:
    statement = text(command)
    if isinstance(handle, Engine):
        with handle.connect() as connection:
            return list(connection.execute(statement).fetchall())
    return list(handle.execute(statement).fetchall())


async def _afetch_rows(handle: Any, command: str) -> list[Any]:
    statement = text(command)
    if isinstance(handle, AsyncEngine):
        async with handle.connect() as connection:
            result = await connection.execute(statement)
            return list(result.fetchall())
    result = handle.execute(statement)
    if inspect.isawaitable(result):
        result = await result
    return list(result.fetchall())


def _status_lines(rows: Iterable[Any]) -> list[str]:
    lines: list[str] = []
    for row in rows:
        if isinstance(row, str):
            fields: Sequence[str] = (row,)
        else:
            fields = [str(value) for value in row if value not in (None, "")]
        for line in " | ".join(fields).splitlines():
            line = line.rstrip()
            if line:
                lines.append(line)
    return lines


def _version_from(rows: Sequence[Any]) -> str:
    if not rows:
        raise DiagnosticsUnavailableError("server did not report its version")
    row = rows[0]
    return str(row[1] if len(row) > 1 else row[0])


class StatusCommandRegistry:
    """Process-wide holder of the diagnostic status command.

    The cached value is ``None`` while undetermined, a command string once
    known, or ``False`` when collection is disabled for the process.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._command: str | bool | None = None
        self._probes = 0

    @property
    def command(self) -> str | bool | None:
        return self._command

    @property
    def probes(self) -> int:
        """Number of store probes performed since the last :meth:`reset`."""

        return self._probes

    def configure(self, command: str | bool | None) -> None:
        """Set an explicit command, disable collection with ``False`` or forget with ``None``."""

        if command is True:
            raise ValueError("pass a command string, False or None")
        with self._lock:
            self._command = command

    def reset(self) -> None:
        with self._lock:
            self._command = None
            self._probes = 0

    def resolve(self, handle: Any) -> str | None:
        """Return the usable status command, probing *handle* on first use."""

        with self._lock:
            if self._command is None:
                self._probes += 1
                self._command = self._probe(handle)
            return self._command or None

    async def aresolve(self, handle: Any) -> str | None:
        """Async counterpart of :meth:`resolve` for ``AsyncEngine``/``AsyncSession`` handles."""

        if self._command is not None:
            return self._command or None
        with self._lock:
            self._probes += 1
        command = await self._aprobe(handle)
        with self._lock:
            if self._command is None:
                self._command = command
            return self._command or None

    def _probe(self, handle: Any) -> str | bool:
        dialect = dialect_name(handle)
        try:
            if dialect in _MYSQL_DIALECTS:
                command = innodb_status_command(_version_from(_fetch_rows(handle, MYSQL_VERSION_QUERY)))
            elif dialect == "postgresql":
                command = POSTGRESQL_STATUS_COMMAND
            else:
                logger.info("Cannot log lock status: no status command for dialect %r", dialect)
                return False
            _fetch_rows(handle, command)
        except Exception as exc:
            logger.info("Cannot log lock status: %s", exc)
            return False
        logger.debug("Using %r for lock status diagnostics", command)
        return command

    async def _aprobe(self, handle: Any) -> str | bool:
        dialect = dialect_name(handle)
        try:
            if dialect in _MYSQL_DIALECTS:
                rows = await _afetch_rows(handle, MYSQL_VERSION_QUERY)
                command = innodb_status_command(_version_from(rows))
            elif dialect == "postgresql":
                command = POSTGRESQL_STATUS_COMMAND
            else:
                logger.info("Cannot log lock status: no status command for dialect %r", dialect)
                return False
            await _afetch_rows(handle, command)
        except Exception as exc:
            logger.info("Cannot log lock status: %s", exc)
            return False
        logger.debug("Using %r for lock status diagnostics", command)
        return command


status_commands = StatusCommandRegistry()


def configure_status_command(command: str | bool | None) -> None:
    """Configure the process-wide status command."""

    status_commands.configure(command)


def reset_status_command() -> None:
    """Forget the process-wide status command so the next transaction probes again."""

    status_commands.reset()


class DiagnosticsCollector:
    """Fetch and log the store's lock status without ever raising."""

    def __init__(
        self,
        registry: StatusCommandRegistry | None = None,
        *,
        enabled: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self._registry = registry or status_commands
        self._enabled = enabled
        self._logger = logger or logging.getLogger(__name__)

    @property
    def registry(self) -> StatusCommandRegistry:
        return self._registry

    @property
    def enabled(self) -> bool:
        return self._enabled

    def prepare(self, handle: Any) -> None:
        """Determine the status command ahead of the first transaction."""

        if not self._enabled or handle is None:
            return
        try:
            self._registry.resolve(handle)
        except Exception as exc:
            self._logger.info("Cannot log lock status: %s", exc)

    async def aprepare(self, handle: Any) -> None:
        if not self._enabled or handle is None:
            return
        try:
            await self._registry.aresolve(handle)
        except Exception as exc:
            self._logger.info("Cannot log lock status: %s", exc)

    def snapshot(self, handle: Any) -> list[str]:
        """Return the status lines reported by the store; raises on any failure."""

        command = self._registry.resolve(handle)
        if not command:
            raise DiagnosticsUnavailableError("lock status collection is disabled")
        return _status_lines(_fetch_rows(handle, command))

    async def asnapshot(self, handle: Any) -> list[str]:
        command = await self._registry.aresolve(handle)
        if not command:
            raise DiagnosticsUnavailableError("lock status collection is disabled")
        return _status_lines(await _afetch_rows(handle, command))

    def collect_and_log(self, handle: Any) -> list[str]:
        if not self._enabled or handle is None:
            return []
        try:
            lines = self.snapshot(handle)
        except Exception as exc:
            self._logger.info("Cannot log lock status: %s", exc)
            return []
        self._log(lines)
        return lines

    async def acollect_and_log(self, handle: Any) -> list[str]:
        if not self._enabled or handle is None:
            return []
        try:
            lines = await self.asnapshot(handle)
        except Exception as exc:
            self._logger.info("Cannot log lock status: %s", exc)
            return []
        self._log(lines)
        return lines

    def _log(self, lines: Sequence[str]) -> None:
        self._logger.warning("Lock status follows:")
        for line in lines:
            self._logger.warning("  %s", line)

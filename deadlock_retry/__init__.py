"""Retry outermost database transactions that fail on lock contention."""

from .backoff import BackoffPolicy
from .classifier import (
    DEFAULT_LOCK_MESSAGES,
    MYSQL_LOCK_MESSAGES,
    POSTGRESQL_LOCK_MESSAGES,
    Classification,
    ErrorClassifier,
)
from .config import DeadlockRetrySettings
from .coordinator import FatalFailure, RetryableFailure, RetryCoordinator, Success
from .diagnostics import (
    DiagnosticsCollector,
    StatusCommandRegistry,
    configure_status_command,
    reset_status_command,
    status_commands,
)
from .exceptions import DatabaseError, DiagnosticsUnavailableError
from .integration import install, is_installed, uninstall
from .nesting import NestingTracker
from .repository import SqlAlchemyRepository
from .session import SessionManager

__all__ = [
    "BackoffPolicy",
    "Classification",
    "DEFAULT_LOCK_MESSAGES",
    "DatabaseError",
    "DeadlockRetrySettings",
    "DiagnosticsCollector",
    "DiagnosticsUnavailableError",
    "ErrorClassifier",
    "FatalFailure",
    "MYSQL_LOCK_MESSAGES",
    "NestingTracker",
    "POSTGRESQL_LOCK_MESSAGES",
    "RetryCoordinator",
    "RetryableFailure",
    "SessionManager",
    "SqlAlchemyRepository",
    "StatusCommandRegistry",
    "Success",
    "configure_status_command",
    "install",
    "is_installed",
    "reset_status_command",
    "status_commands",
    "uninstall",
]

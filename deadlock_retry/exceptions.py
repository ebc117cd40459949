"""Exceptions raised by the deadlock retry layer."""

from __future__ import annotations

__all__ = ["DatabaseError", "DiagnosticsUnavailableError"]


class DatabaseError(RuntimeError):
    """Base class for store failures raised by hosts not built on SQLAlchemy."""


class DiagnosticsUnavailableError(DatabaseError):
    """Raised when no diagnostic status command is usable for the current store."""

"""Message based classification of store failures.

The supported stores report lock contention as unstructured text, so the
classifier matches known phrases against ``str(error)``.  The phrase table is
ordered and the first hit wins; anything without a hit is fatal.  Matching is
case-sensitive and literal, which keeps messages that only mention the word
"deadlock" in another context out of the retry path.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import DBAPIError

from .exceptions import DatabaseError

__all__ = [
    "Classification",
    "DEFAULT_LOCK_MESSAGES",
    "ErrorClassifier",
    "MYSQL_LOCK_MESSAGES",
    "POSTGRESQL_LOCK_MESSAGES",
]


class Classification(str, Enum):
    """Outcome of classifying a single failure."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


MYSQL_LOCK_MESSAGES: tuple[str, ...] = (
    "Deadlock found when trying to get lock",
    "Lock wait timeout exceeded",
)

POSTGRESQL_LOCK_MESSAGES: tuple[str, ...] = (
    "deadlock detected",
    "canceling statement due to lock timeout",
)

DEFAULT_LOCK_MESSAGES = MYSQL_LOCK_MESSAGES

DEFAULT_ERROR_TYPES: tuple[type[BaseException], ...] = (DBAPIError, DatabaseError)


def _table(phrases: Iterable[str]) -> tuple[tuple[str, Classification], ...]:
    return tuple((phrase, Classification.RETRYABLE) for phrase in phrases)


@dataclass(frozen=True, slots=True)
class ErrorClassifier:
    """Decide whether a failure represents transient lock contention.

    Parameters
    ----------
    patterns:
        Ordered ``(phrase, classification)`` pairs.  The first phrase contained
        in the failure message decides the result.
    error_types:
        Exception types raised by the store driver.  Failures of any other
        type are classified as fatal without inspecting the message.
    """

    patterns: tuple[tuple[str, Classification], ...] = field(
        default_factory=lambda: _table(DEFAULT_LOCK_MESSAGES)
    )
    error_types: tuple[type[BaseException], ...] = DEFAULT_ERROR_TYPES

    @classmethod
    def from_messages(
        cls,
        messages: Sequence[str],
        *,
        error_types: tuple[type[BaseException], ...] = DEFAULT_ERROR_TYPES,
    ) -> "ErrorClassifier":
        """Build a classifier treating every phrase in *messages* as retryable."""

        return cls(patterns=_table(messages), error_types=error_types)

    def extend(self, *pairs: tuple[str, Classification]) -> "ErrorClassifier":
        """Return a copy with *pairs* appended after the existing table."""

        return ErrorClassifier(patterns=self.patterns + tuple(pairs), error_types=self.error_types)

    def classify(self, failure: BaseException) -> Classification:
        if not isinstance(failure, self.error_types):
            return Classification.FATAL
        message = str(failure)
        for phrase, classification in self.patterns:
            if phrase in message:
                return classification
        return Classification.FATAL

    def is_retryable(self, failure: BaseException) -> bool:
        return self.classify(failure) is Classification.RETRYABLE

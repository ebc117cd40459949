"""Per-context tracking of open transaction scopes."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from itertools import count

__all__ = ["NestingTracker"]

_tracker_ids = count()


class NestingTracker:
    """Count the transaction scopes open in the current execution context.

    The counter lives in a :class:`~contextvars.ContextVar`, so each thread and
    each asyncio task sees its own depth.  Separate tracker instances never
    share state.
    """

    def __init__(self, name: str | None = None) -> None:
        label = name or f"deadlock_retry_depth_{next(_tracker_ids)}"
        self._depth: ContextVar[int] = ContextVar(label, default=0)

    @property
    def depth(self) -> int:
        return self._depth.get()

    def enter(self) -> int:
        """Open a scope and return the depth after entering it."""

        depth = self._depth.get() + 1
        self._depth.set(depth)
        return depth

    def exit(self) -> None:
        """Close the innermost scope."""

        depth = self._depth.get()
        # Clamped so an unbalanced exit cannot make the counter negative.
        self._depth.set(depth - 1 if depth > 0 else 0)

    @staticmethod
    def is_outermost(depth_after_enter: int) -> bool:
        return depth_after_enter == 1

    @contextmanager
    def scope(self) -> Iterator[int]:
        """Yield the depth of a scope that is closed on every exit path."""

        depth = self.enter()
        try:
            yield depth
        finally:
            self.exit()

"""SQLAlchemy session orchestration with deadlock-aware transactions."""

from __future__ import annotations

import functools
import itertools
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from threading import Lock
from typing import TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DeadlockRetrySettings
from .coordinator import RetryCoordinator
from .exceptions import DatabaseError

__all__ = ["SessionManager"]

T = TypeVar("T")


class SessionManager:
    """Route ORM sessions to writer or reader pools and retry whole transactions.

    :meth:`transaction` is the unit-of-work entry point.  Calls made while a
    transaction is already open in the current context reuse that session,
    so only the outermost call owns commit, rollback and retries.
    """

    def __init__(
        self,
        writer_engine: Engine,
        reader_engines: Sequence[Engine] | None = None,
        *,
        coordinator: RetryCoordinator | None = None,
        expire_on_commit: bool = False,
        owns_engines: bool = True,
    ) -> None:
        self._writer_engine = writer_engine
        self._reader_engines = tuple(reader_engines or ())
        self._writer_factory = sessionmaker(
            bind=self._writer_engine,
            autoflush=False,
            expire_on_commit=expire_on_commit,
        )
        self._reader_factories = tuple(
            sessionmaker(bind=engine, autoflush=False, expire_on_commit=expire_on_commit)
            for engine in self._reader_engines
        )
        self._reader_cycle = itertools.cycle(self._reader_factories) if self._reader_factories else None
        self._coordinator = coordinator or DeadlockRetrySettings().build_coordinator(
            handle_provider=lambda: self._writer_engine
        )
        self._active: ContextVar[tuple[Session, bool] | None] = ContextVar(
            f"deadlock_retry_session_{id(self)}", default=None
        )
        self._lock = Lock()
        self._owns_engines = owns_engines
        self._closed = False

    @contextmanager
    def session(self, *, read_only: bool = False) -> Iterator[Session]:
        """Yield a session bound to either the writer or a reader replica."""

        factory = self._select_factory(read_only=read_only)
        session: Session = factory()
        try:
            yield session
            # Read-only work is discarded by close(), which keeps loaded objects usable.
            if not read_only:
                session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def transaction(self, work: Callable[[Session], T], *, read_only: bool = False) -> T:
        """Run ``work(session)`` in a transaction, replaying it on lock contention."""

        return self._coordinator.run(functools.partial(self._run_in_session, work, read_only))

    @property
    def current_session(self) -> Session | None:
        active = self._active.get()
        return active[0] if active is not None else None

    @property
    def coordinator(self) -> RetryCoordinator:
        return self._coordinator

    def close(self) -> None:
        """Dispose all underlying SQLAlchemy engines if the manager owns them."""

        if not self._owns_engines:
            return
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._writer_engine.dispose()
        for engine in self._reader_engines:
            engine.dispose()

    @property
    def writer_engine(self) -> Engine:
        return self._writer_engine

    @property
    def reader_engines(self) -> tuple[Engine, ...]:
        return self._reader_engines

    def _run_in_session(self, work: Callable[[Session], T], read_only: bool) -> T:
        active = self._active.get()
        if active is not None:
            current, current_read_only = active
            if current_read_only and not read_only:
                raise DatabaseError("cannot write inside a read-only transaction")
            return work(current)
        with self.session(read_only=read_only) as session:
            token = self._active.set((session, read_only))
            try:
                return work(session)
            finally:
                self._active.reset(token)

    def _select_factory(self, *, read_only: bool) -> sessionmaker[Session]:
        if read_only and self._reader_cycle is not None:
            with self._lock:
                return next(self._reader_cycle)
        return self._writer_factory

"""Repository abstractions built on top of deadlock-aware sessions."""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from .session import SessionManager

__all__ = ["SqlAlchemyRepository"]

ModelT = TypeVar("ModelT")
T = TypeVar("T")


class SqlAlchemyRepository(Generic[ModelT]):
    """Base repository whose operations run as retryable transactions.

    Subclasses set :attr:`model`.  Calling repository methods from inside
    another ``SessionManager.transaction`` joins that transaction instead of
    opening a new one.
    """

    model: type[ModelT]

    def __init__(
        self,
        session_manager: SessionManager,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session_manager = session_manager
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    def get(self, ident: Any) -> ModelT | None:
        return self._execute(lambda session: session.get(self.model, ident), read_only=True)

    def list_all(self) -> list[ModelT]:
        def _list(session: Session) -> list[ModelT]:
            return list(session.execute(select(self.model)).scalars().all())

        return self._execute(_list, read_only=True)

    def add(self, instance: ModelT) -> ModelT:
        def _add(session: Session) -> ModelT:
            session.add(instance)
            session.flush()
            return instance

        return self._execute(_add, read_only=False)

    def delete(self, ident: Any) -> bool:
        def _delete(session: Session) -> bool:
            instance = session.get(self.model, ident)
            if instance is None:
                return False
            session.delete(instance)
            return True

        deleted = self._execute(_delete, read_only=False)
        if not deleted:
            self._logger.debug("No %s with id %r to delete", self.model.__name__, ident)
        return deleted

    def _execute(self, func: Callable[[Session], T], *, read_only: bool) -> T:
        return self._session_manager.transaction(func, read_only=read_only)

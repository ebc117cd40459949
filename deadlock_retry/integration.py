"""Install the retry coordinator around a host's transaction entry point.

``install(Model)`` swaps ``Model.transaction`` for a retry-aware wrapper while
keeping the original reachable as ``transaction_without_deadlock_handling``.
Works for plain functions, ``classmethod``/``staticmethod`` descriptors and
attributes set on instances or modules.
"""

from __future__ import annotations

import inspect
from typing import Any

from .config import DeadlockRetrySettings
from .coordinator import RetryCoordinator

__all__ = ["install", "is_installed", "uninstall"]


def _names(name: str) -> tuple[str, str]:
    return f"{name}_without_deadlock_handling", f"{name}_with_deadlock_handling"


def is_installed(owner: Any, name: str = "transaction") -> bool:
    _, with_name = _names(name)
    return inspect.getattr_static(owner, with_name, None) is not None


def install(
    owner: Any,
    name: str = "transaction",
    *,
    coordinator: RetryCoordinator | None = None,
) -> RetryCoordinator:
    """Route ``owner.<name>`` through *coordinator* and return the coordinator used."""

    without_name, with_name = _names(name)
    if is_installed(owner, name):
        return getattr(owner, "_deadlock_retry_coordinator")

    coordinator = coordinator or DeadlockRetrySettings().build_coordinator()
    raw = inspect.getattr_static(owner, name)

    if isinstance(raw, classmethod):
        wrapped: Any = classmethod(coordinator.wrap(raw.__func__))
    elif isinstance(raw, staticmethod):
        wrapped = staticmethod(coordinator.wrap(raw.__func__))
    elif isinstance(owner, type):
        wrapped = coordinator.wrap(raw)
    else:
        # Instances and modules: wrap the bound callable.
        raw = getattr(owner, name)
        wrapped = coordinator.wrap(raw)

    setattr(owner, without_name, raw)
    setattr(owner, with_name, wrapped)
    setattr(owner, name, wrapped)
    setattr(owner, "_deadlock_retry_coordinator", coordinator)
    return coordinator


def uninstall(owner: Any, name: str = "transaction") -> None:
    """Restore the original ``owner.<name>``; a no-op when not installed."""

    without_name, with_name = _names(name)
    if not is_installed(owner, name):
        return
    original = inspect.getattr_static(owner, without_name)
    if inspect.ismethod(original) and original.__self__ is owner:
        # Bound from the owner's class; drop the instance override instead.
        delattr(owner, name)
    else:
        setattr(owner, name, original)
    delattr(owner, without_name)
    delattr(owner, with_name)
    delattr(owner, "_deadlock_retry_coordinator")

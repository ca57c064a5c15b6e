"""Lazy singleton decorator for process-wide wiring."""

import threading
from typing import Any, Callable, TypeVar

T = TypeVar("T")

# Reset hooks of every singleton, used for test isolation
_singleton_registry: list[Callable[[], None]] = []


def lazy_singleton(func: Callable[[], T]) -> Callable[[], T]:
    """Build the wrapped factory's result on first call and cache it.

    Pipeline workers may ask for the same singleton concurrently, so the
    first construction happens under a lock.
    """
    _instance: Any = None
    _lock = threading.Lock()

    def reset() -> None:
        nonlocal _instance
        with _lock:
            _instance = None

    def wrapper() -> T:
        nonlocal _instance
        if _instance is None:
            with _lock:
                if _instance is None:
                    _instance = func()
        return _instance

    wrapper.reset = reset  # type: ignore[attr-defined]
    _singleton_registry.append(reset)

    return wrapper


def clear_all_singletons() -> None:
    """Reset all registered singletons."""
    for reset_fn in _singleton_registry:
        reset_fn()

from __future__ import annotations

import functools
from typing import Any, Callable, TypeVar

from .errors import ReentrantCall

F = TypeVar('F', bound=Callable[..., Any])


def external(func: F) -> F:
    """Run a public contract operation atomically and without re-entry."""

    @functools.wraps(func)
    def wrapper(self, *args: Any, **kwargs: Any) -> Any:
        if getattr(self, '_entered', False):
            raise ReentrantCall(func.__name__)
        self._entered = True
        try:
            with self.network.transaction():
                return func(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper  # type: ignore[return-value]

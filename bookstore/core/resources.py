import threading
from typing import Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class LazyResource(Generic[T]):
    """A process-wide handle that is created on first use.

    The factory runs at most once per process even when several request
    threads reach for the resource at the same moment. Components borrow the
    value through ``get()``; tests swap it with ``override()``.
    """

    def __init__(self, factory: Callable[[], T], name: str):
        self._factory = factory
        self._name = name
        self._value: Optional[T] = None
        self._lock = threading.Lock()

    def get(self) -> T:
        value = self._value
        if value is None:
            with self._lock:
                if self._value is None:
                    self._value = self._factory()
                    logger.debug("resource_initialised", resource=self._name)
                value = self._value
        return value

    def override(self, value: T) -> None:
        with self._lock:
            self._value = value

    def reset(self) -> None:
        with self._lock:
            self._value = None

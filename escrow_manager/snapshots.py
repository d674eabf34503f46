from __future__ import annotations

import threading
from typing import Generic, TypeVar

T = TypeVar("T")


class SnapshotCell(Generic[T]):
    """Holds the latest immutable snapshot. Writers swap, readers never block on each other."""

    def __init__(self, initial: T):
        self._value = initial
        self._lock = threading.Lock()
        self._version = 0

    def get(self) -> T:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value
            self._version += 1

"""Thread-safe build-once primitives used by the service registry."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

T = TypeVar("T")


class Empty:
    """Marker state for a slot that holds no value."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "Empty"


EMPTY: Final[Empty] = Empty()


@dataclass(frozen=True, slots=True)
class Built(Generic[T]):
    """State of a slot whose builder returned ``value`` (which may itself be ``None``)."""

    value: T


class OnceSlot(Generic[T]):
    """Holds a lazily built value; at most one build per slot until it is cleared.

    Reads of an already built slot take no lock. A build holds only this slot's
    lock, so unrelated slots never contend with each other.
    """

    __slots__ = ("_build_count", "_generation", "_lock", "_state", "name")

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._state: Empty | Built[T] = EMPTY
        self._build_count = 0
        self._generation = 0

    def peek(self) -> Built[T] | None:
        state = self._state
        return state if isinstance(state, Built) else None

    @property
    def is_built(self) -> bool:
        return isinstance(self._state, Built)

    @property
    def build_count(self) -> int:
        return self._build_count

    @property
    def generation(self) -> int:
        """Number of times the slot has been cleared while holding a value."""
        return self._generation

    def get_or_build(self, builder: Callable[[], T]) -> T:
        state = self._state
        if isinstance(state, Built):
            return state.value

        with self._lock:
            # Another thread may have finished the build while we waited.
            state = self._state
            if isinstance(state, Built):
                return state.value
            value = builder()
            self._build_count += 1
            self._state = Built(value)
            return value

    def clear(self, on_cleared: Callable[[], None] | None = None) -> bool:
        """Drop the cached value; returns ``True`` when a value was dropped.

        ``on_cleared`` runs under the slot lock, before any rebuild can start.
        """

        with self._lock:
            if not isinstance(self._state, Built):
                return False
            self._state = EMPTY
            self._generation += 1
            if on_cleared is not None:
                on_cleared()
            return True

    def snapshot(self) -> dict[str, object]:
        return {
            "name": self.name,
            "built": self.is_built,
            "build_count": self._build_count,
            "generation": self._generation,
        }


__all__ = [
    "EMPTY",
    "Built",
    "Empty",
    "OnceSlot",
]

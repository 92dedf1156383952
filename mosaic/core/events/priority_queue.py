"""Priority queue for pending events."""

import heapq
import itertools
from typing import Generic, TypeVar

T = TypeVar("T")


class PriorityQueue(Generic[T]):
    """Min-priority queue with FIFO ordering among equal priorities.

    Entries are ``(priority, sequence, item)`` heap tuples; the monotonically
    increasing sequence breaks ties so items themselves are never compared.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, T]] = []
        self._counter = itertools.count()

    def enqueue(self, item: T, priority: int) -> None:
        heapq.heappush(self._heap, (int(priority), next(self._counter), item))

    def dequeue(self) -> T | None:
        """Remove and return the most urgent item, or None when empty."""
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    def peek(self) -> T | None:
        if not self._heap:
            return None
        return self._heap[0][2]

    def size(self) -> int:
        return len(self._heap)

    def __len__(self) -> int:
        return len(self._heap)

    def is_empty(self) -> bool:
        return not self._heap

    def clear(self) -> None:
        self._heap.clear()

    def to_list(self) -> list[T]:
        """Items in the order they would be dequeued."""
        return [entry[2] for entry in sorted(self._heap, key=lambda e: (e[0], e[1]))]

from __future__ import annotations

from collections import OrderedDict

DEFAULT_SIGNAL_CAPACITY = 1024


class CancellationSignals:
    """Bounded, lossy set of task ids whose cancellation was requested.

    Consulted by the executor to abort early. Oldest ids are evicted once the
    capacity is reached; a missed signal only costs a provider call, the
    conditional status update still decides the outcome.
    """

    def __init__(self, capacity: int = DEFAULT_SIGNAL_CAPACITY) -> None:
        self._capacity = max(1, capacity)
        self._ids: OrderedDict[str, None] = OrderedDict()

    def notify(self, task_id: str) -> None:
        self._ids[task_id] = None
        self._ids.move_to_end(task_id)
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)

    def is_cancelled(self, task_id: str) -> bool:
        return task_id in self._ids

    def discard(self, task_id: str) -> None:
        self._ids.pop(task_id, None)

    def __len__(self) -> int:
        return len(self._ids)

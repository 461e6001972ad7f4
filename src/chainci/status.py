# status.py
from __future__ import annotations

import threading
from enum import Enum
from typing import Dict, Iterable, Mapping


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL

    def __str__(self) -> str:
        return self.value


TERMINAL = frozenset({Status.SUCCEEDED, Status.FAILED, Status.SKIPPED, Status.CANCELLED})

TRANSITIONS: Mapping[Status, frozenset] = {
    Status.PENDING: frozenset({Status.RUNNING, Status.CANCELLED, Status.SKIPPED}),
    Status.RUNNING: frozenset({Status.SUCCEEDED, Status.FAILED}),
}


class InvalidTransition(RuntimeError):
    pass


class StatusMap:
    """
    Status of every node in one pipeline run.

    Each transition is a single compare-and-set under the map's lock. Any
    thread may read; the scheduler is the only writer.
    """

    def __init__(self, node_ids: Iterable[str]):
        self._lock = threading.Lock()
        self._status: Dict[str, Status] = {n: Status.PENDING for n in node_ids}

    def get(self, node_id: str) -> Status:
        with self._lock:
            return self._status[node_id]

    def snapshot(self) -> Dict[str, Status]:
        with self._lock:
            return dict(self._status)

    def compare_and_set(self, node_id: str, expected: Status, new: Status) -> bool:
        """
        Move ``node_id`` from ``expected`` to ``new``.

        Returns False when the node is not in ``expected`` (another
        transition won). Raises ``InvalidTransition`` for edges the state
        machine does not have.
        """
        if new not in TRANSITIONS.get(expected, frozenset()):
            raise InvalidTransition(f"{node_id}: {expected} -> {new} is not a valid transition")
        with self._lock:
            if self._status[node_id] is not expected:
                return False
            self._status[node_id] = new
            return True

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._status

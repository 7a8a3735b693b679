"""Bounded in-memory telemetry log shared by every watcher."""

import copy
import itertools
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any

CONSOLE = "console"
NETWORK = "network"
NAVIGATION = "navigation"
VISITOR = "visitor"

DEFAULT_CAPACITY = 30


@dataclass
class LogEntry:
    key: int
    category: str
    value: Any


class EventLog:
    """Append-only store of recent telemetry, evicting oldest-first across all categories.

    Capacity is global rather than per category, so a flood of one category
    (console spam) pushes the others out. Eviction never raises.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self._capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._keys = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, category: str, value: Any) -> int:
        """Append *value* under *category* and return its key."""
        with self._lock:
            key = next(self._keys)
            self._entries.append(LogEntry(key, category, value))
            return key

    def get(self, category: str, key: int) -> Any | None:
        """Return the live value for *key*, or None once it has been evicted.

        The returned value is the stored object itself so callers can complete
        an entry in place (network requests finishing after they started).
        """
        with self._lock:
            for entry in self._entries:
                if entry.key == key and entry.category == category:
                    return entry.value
        return None

    def all(self, category: str) -> list:
        """Snapshot of the values in *category*, oldest first."""
        with self._lock:
            values = [entry.value for entry in self._entries if entry.category == category]
        return copy.deepcopy(values)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

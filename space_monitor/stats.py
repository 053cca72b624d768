"""
Bounded statistics map ordered by activity.

Queues, workers and schedules keep one statistics record per name. Only the
most recently active records are retained; touching a record moves it to the
most-recent end so eviction of the least recently active one is O(1).
"""

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional


DEFAULT_STATS_CAPACITY = 100


def format_timestamp(when: Optional[datetime] = None) -> str:
    """Format a timestamp for statistics display."""
    return (when or datetime.now()).isoformat(timespec="seconds")


class ActivityStats:
    """
    Fixed-capacity map of name -> statistics record.

    Records are plain dicts so they serialize directly to JSON. The map is
    observability data only; nothing in the pipeline reads it back.
    """

    def __init__(self, capacity: int = DEFAULT_STATS_CAPACITY):
        """
        Initialize statistics map.

        Args:
            capacity: Maximum number of records kept
        """
        if capacity < 1:
            raise ValueError(f"Statistics capacity must be positive: {capacity}")

        self.capacity = capacity
        self._records: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def touch(
        self,
        name: str,
        factory: Callable[[], Dict[str, Any]],
        update: Optional[Callable[[Dict[str, Any]], None]] = None
    ) -> Dict[str, Any]:
        """
        Mark a record as active, creating it if needed.

        Args:
            name: Record name
            factory: Builds a fresh record when the name is unknown
            update: Optional mutation applied to the record

        Returns:
            A copy of the record after the update
        """
        with self._lock:
            record = self._records.get(name)
            if record is None:
                record = factory()
                self._records[name] = record
            else:
                self._records.move_to_end(name)

            if update is not None:
                update(record)

            while len(self._records) > self.capacity:
                self._records.popitem(last=False)

            return dict(record)

    def get(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a copy of a record, or None."""
        with self._lock:
            record = self._records.get(name)
            return dict(record) if record is not None else None

    def names(self) -> List[str]:
        """Names ordered from least to most recently active."""
        with self._lock:
            return list(self._records.keys())

    def snapshot(self) -> List[Dict[str, Any]]:
        """Records ordered from most to least recently active."""
        with self._lock:
            return [dict(record) for record in reversed(self._records.values())]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._records

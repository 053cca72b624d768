"""
Priority Queue Store.

A process-wide set of independent named FIFO queues. Priority is not part of
the store: producers and consumers agree on ``{concern}-{priority}`` queue
names, and consumers poll those names in a fixed order.
"""

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from space_monitor.events import EventEmitter, emit
from space_monitor.models import PRIORITY_ORDER, Priority
from space_monitor.stats import ActivityStats, DEFAULT_STATS_CAPACITY, format_timestamp


logger = logging.getLogger(__name__)


# Queue names shared by the watcher and the processors
FILE_EVENTS = "file-events"
CACHE_UPDATES = "cache-updates"
CONTENT_PROCESSING = "content-processing"
SEARCH_INDEXING = "search-indexing"

DEAD_LETTER_SUFFIX = "dead-letter"


def priority_queue_name(concern: str, priority) -> str:
    """
    Build a priority-routed queue name.

    Args:
        concern: Queue family (e.g. "cache-updates")
        priority: Priority or its string value

    Returns:
        Queue name such as "cache-updates-high"
    """
    value = priority.value if isinstance(priority, Priority) else str(priority)
    return f"{concern}-{value}"


def priority_queue_names(concern: str) -> List[str]:
    """Queue names of a concern in strict polling order (high, medium, low)."""
    return [priority_queue_name(concern, priority) for priority in PRIORITY_ORDER]


def dead_letter_queue_name(concern: str) -> str:
    """Queue that receives items a processor gave up on."""
    return f"{concern}-{DEAD_LETTER_SUFFIX}"


class QueueStore:
    """
    In-memory named FIFO queues.

    Every operation is atomic under one lock, so callers never lock
    externally. ``dequeue`` never blocks; ``None`` means the queue is empty.
    """

    def __init__(
        self,
        emitter: Optional[EventEmitter] = None,
        stats_capacity: int = DEFAULT_STATS_CAPACITY
    ):
        """
        Initialize queue store.

        Args:
            emitter: Receives queue:enqueue / queue:dequeue events
            stats_capacity: Number of queues whose statistics are retained
        """
        self.emitter = emitter
        self._queues: Dict[str, Deque[Any]] = {}
        self._lock = threading.Lock()
        self._stats = ActivityStats(stats_capacity)

    def _get_queue(self, queue_name: str) -> Deque[Any]:
        """Get or create a queue. Caller holds the lock."""
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = deque()
            self._queues[queue_name] = queue
        return queue

    def enqueue(self, queue_name: str, item: Any) -> None:
        """
        Append an item to the tail of a queue.

        Args:
            queue_name: Queue to append to (created if absent)
            item: JSON-serializable task record
        """
        with self._lock:
            queue = self._get_queue(queue_name)
            queue.append(item)
            depth = len(queue)

        self._record_activity(queue_name, "enqueue")
        emit(self.emitter, "queue:enqueue", {"queueName": queue_name, "item": item, "size": depth})

    def dequeue(self, queue_name: str) -> Optional[Any]:
        """
        Remove and return the head of a queue.

        Args:
            queue_name: Queue to read from

        Returns:
            The oldest item, or None if the queue is empty
        """
        with self._lock:
            queue = self._get_queue(queue_name)
            if not queue:
                return None
            item = queue.popleft()

        self._record_activity(queue_name, "dequeue")
        emit(self.emitter, "queue:dequeue", {"queueName": queue_name, "item": item})
        return item

    def size(self, queue_name: str) -> int:
        """Current depth of a queue."""
        with self._lock:
            return len(self._get_queue(queue_name))

    def queue_names(self) -> List[str]:
        """Names of every queue created so far."""
        with self._lock:
            return sorted(self._queues.keys())

    def status(self) -> bool:
        """Liveness probe."""
        return True

    def get_queue_stats(self) -> List[Dict[str, Any]]:
        """Per-queue statistics, most recently active first."""
        return self._stats.snapshot()

    def _record_activity(self, queue_name: str, operation: str) -> None:
        now = format_timestamp()

        def factory():
            return {
                "queueName": queue_name,
                "messageCount": 0,
                "lastEnqueued": None,
                "lastDequeued": None,
                "created": now,
            }

        def update(record):
            if operation == "enqueue":
                record["messageCount"] += 1
                record["lastEnqueued"] = now
            else:
                record["lastDequeued"] = now

        self._stats.touch(queue_name, factory, update)

"""
Space Monitor - event-driven cache and search invalidation for content trees.

A watchdog-based watcher classifies changes under personal and named space
roots and fans them out through named priority queues:

- file-events              - raw classified events
- cache-updates-{p}        - cache invalidation (CacheProcessor)
- content-processing-{p}   - text extraction (ContentProcessor)
- search-indexing-{p}      - search index upkeep (SearchProcessor)

Long-running workers are kept alive by the Scheduler through per-task
execution engines.
"""

__version__ = "1.0.0"

from space_monitor.models import (
    Priority,
    Scope,
    FileEvent,
    CacheTask,
    ContentTask,
    SearchTask,
    MonitorConfig,
    MonitorSettings,
)

from space_monitor.config import ConfigManager, DEFAULT_CONFIG_FILE
from space_monitor.queueing import QueueStore
from space_monitor.caching import CacheStore, create_cache
from space_monitor.search import SearchIndex
from space_monitor.executor import ExecutionEngine, EngineBusyError
from space_monitor.scheduler import Scheduler
from space_monitor.watcher import WatcherManager, SpaceWatcher, EventPublisher
from space_monitor.processors import CacheProcessor, ContentProcessor, SearchProcessor

__all__ = [
    # Models
    "Priority",
    "Scope",
    "FileEvent",
    "CacheTask",
    "ContentTask",
    "SearchTask",
    "MonitorConfig",
    "MonitorSettings",
    # Config
    "ConfigManager",
    "DEFAULT_CONFIG_FILE",
    # Services
    "QueueStore",
    "CacheStore",
    "create_cache",
    "SearchIndex",
    "ExecutionEngine",
    "EngineBusyError",
    "Scheduler",
    # Pipeline
    "WatcherManager",
    "SpaceWatcher",
    "EventPublisher",
    "CacheProcessor",
    "ContentProcessor",
    "SearchProcessor",
]

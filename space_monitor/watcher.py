"""
Watchdog-based file system monitoring for content roots.

Classifies each change under a personal root or a named space by owner and
priority, and fans it out onto the priority queues the processors drain.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import posixpath
import threading
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Set, Tuple

from watchdog.observers import Observer
from watchdog.events import (
    FileSystemEventHandler, FileSystemEvent, FileCreatedEvent,
    FileModifiedEvent, FileDeletedEvent, FileMovedEvent
)

from space_monitor.models import (
    CacheAction, CacheTask, ContentAction, ContentTask, FileAction, FileEvent,
    MonitorConfig, MonitorSettings, Priority, Scope, SearchAction, SearchTask, now_ms
)
from space_monitor.queueing import (
    CACHE_UPDATES, CONTENT_PROCESSING, FILE_EVENTS, SEARCH_INDEXING,
    QueueStore, priority_queue_name
)


logger = logging.getLogger(__name__)


HIGH_PRIORITY_EXTENSIONS = {".json"}
MEDIUM_PRIORITY_EXTENSIONS = {".md", ".markdown"}
LOW_PRIORITY_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".pdf", ".log", ".txt"}

DEFAULT_IGNORE_PATTERNS = [
    ".git/", "node_modules/", ".DS_Store", "Thumbs.db", "*.tmp", "*.swp", "*.lock"
]

# How often pending writes are checked for stability
FLUSH_INTERVAL_SECONDS = 0.1


def classify_priority(relative_path: str) -> Priority:
    """
    Classify a file by its role.

    Configuration, templates and JSON are high; markdown content is medium;
    binary assets and logs are low; anything else is medium.

    Args:
        relative_path: Path relative to the owning root

    Returns:
        Processing priority
    """
    posix = relative_path.replace(os.sep, "/").lower()
    basename = posixpath.basename(posix)
    ext = os.path.splitext(basename)[1]

    if "config" in basename or posix.startswith("templates/") or "/templates/" in posix \
            or ext in HIGH_PRIORITY_EXTENSIONS:
        return Priority.HIGH

    if ext in MEDIUM_PRIORITY_EXTENSIONS:
        return Priority.MEDIUM

    if ext in LOW_PRIORITY_EXTENSIONS:
        return Priority.LOW

    return Priority.MEDIUM


def is_ignored(full_path: str, patterns: List[str], root: Optional[str] = None) -> bool:
    """
    Check a path against ignore patterns.

    Patterns ending in "/" match any directory segment below root (every
    segment when no root is given); other patterns are globs matched against
    the file name.
    """
    path = Path(full_path)
    if root is not None:
        try:
            path = path.relative_to(root)
        except ValueError:
            pass
    parts = path.parts
    name = parts[-1] if parts else ""

    for pattern in patterns:
        if pattern.endswith("/"):
            if pattern.rstrip("/") in parts:
                return True
        elif fnmatch.fnmatch(name, pattern):
            return True

    return False


@dataclass(frozen=True)
class SpaceRoot:
    """
    A watched content root.

    A personal root holds one folder per user; the first path segment is the
    owner. A space root belongs entirely to one named space.
    """

    path: str
    scope: Scope = Scope.PERSONAL
    space_name: Optional[str] = None
    access: Optional[str] = None

    @property
    def root_id(self) -> str:
        if self.scope == Scope.PERSONAL:
            return f"personal:{self.path}"
        return f"git:{self.space_name}"

    def resolve(self, full_path: str) -> Optional[Tuple[str, str]]:
        """
        Attribute a path to its owner.

        Args:
            full_path: Absolute path of the changed entry

        Returns:
            (identity, relative posix path), or None if the path is outside
            this root or not attributable
        """
        try:
            relative = Path(full_path).resolve().relative_to(Path(self.path).resolve())
        except ValueError:
            return None

        parts = relative.parts

        if self.scope == Scope.PERSONAL:
            # content/{username}/... - the user folder itself is not attributed
            if len(parts) < 2 or parts[0].startswith("."):
                return None
            return parts[0], str(PurePosixPath(*parts[1:]))

        if not parts:
            return None
        return self.space_name, str(PurePosixPath(*parts))


def build_roots(config: MonitorConfig) -> List[SpaceRoot]:
    """Watched roots for a configuration."""
    roots = []
    if config.personal_root:
        roots.append(SpaceRoot(path=config.personal_root, scope=Scope.PERSONAL))
    for space in config.spaces:
        roots.append(SpaceRoot(
            path=space.path,
            scope=Scope.GIT,
            space_name=space.name,
            access=space.access
        ))
    return roots


class EventPublisher:
    """
    Builds classified events and fans them out onto the queues.

    add/change    -> file-events, cache invalidate, content reindex (files only)
    unlink*       -> file-events, cache remove, search remove
    addDir        -> file-events, cache refresh-tree
    """

    def __init__(self, queue_store: QueueStore):
        self.queue_store = queue_store

    def build_event(
        self,
        root: SpaceRoot,
        action: FileAction,
        full_path: str,
        is_directory: bool = False
    ) -> Optional[FileEvent]:
        """
        Create the event record for a change.

        Returns:
            The event, or None if the path is not attributable to an owner
        """
        resolved = root.resolve(full_path)
        if resolved is None:
            return None

        identity, relative_path = resolved

        size = None
        mtime = None
        if action in (FileAction.ADD, FileAction.CHANGE, FileAction.ADD_DIR):
            try:
                stat = os.stat(full_path)
                size = stat.st_size
                mtime = stat.st_mtime
            except OSError:
                pass

        owner = {"username": identity} if root.scope == Scope.PERSONAL else {
            "space_name": identity,
            "space_access": root.access,
        }

        return FileEvent(
            action=action,
            path=relative_path,
            scope=root.scope,
            priority=classify_priority(relative_path),
            full_path=str(full_path),
            is_directory=is_directory,
            size=size,
            mtime=mtime,
            **owner
        )

    def publish(self, event: FileEvent) -> None:
        """Enqueue an event and the work derived from it."""
        owner = {"scope": event.scope, "username": event.username, "space_name": event.space_name}
        common = {"path": event.path, "timestamp": event.timestamp, **owner}
        action = FileAction(event.action)

        self.queue_store.enqueue(FILE_EVENTS, event.to_record())

        cache_queue = priority_queue_name(CACHE_UPDATES, event.priority)

        if action in (FileAction.ADD, FileAction.CHANGE):
            self.queue_store.enqueue(
                cache_queue,
                CacheTask(action=CacheAction.INVALIDATE, **common).to_record()
            )
            if not event.is_directory:
                self.queue_store.enqueue(
                    priority_queue_name(CONTENT_PROCESSING, event.priority),
                    ContentTask(action=ContentAction.REINDEX, full_path=event.full_path, **common).to_record()
                )

        elif action in (FileAction.UNLINK, FileAction.UNLINK_DIR):
            self.queue_store.enqueue(
                cache_queue,
                CacheTask(action=CacheAction.REMOVE, **common).to_record()
            )
            self.queue_store.enqueue(
                priority_queue_name(SEARCH_INDEXING, event.priority),
                SearchTask(action=SearchAction.REMOVE, **common).to_record()
            )

        elif action == FileAction.ADD_DIR:
            self.queue_store.enqueue(
                cache_queue,
                CacheTask(action=CacheAction.REFRESH_TREE, **common).to_record()
            )

        logger.debug(f"Published {event.action} {event.scope}:{event.identity}:{event.path} ({event.priority})")


class StabilityTracker:
    """
    Holds file writes until they have been quiet for a stability window.

    Every new write to a path restarts its window. A pending ``add`` that is
    followed by ``change`` is still published as ``add``.
    """

    def __init__(self, stability_ms: int = 2000, clock: Callable[[], float] = time.monotonic):
        """
        Initialize stability tracker.

        Args:
            stability_ms: Quiet period in milliseconds
            clock: Monotonic time source
        """
        self.window_seconds = stability_ms / 1000.0
        self.clock = clock
        self._pending: Dict[str, Tuple[FileAction, float]] = {}
        self._lock = threading.Lock()

    def record(self, path: str, action: FileAction) -> None:
        """Record a write to path."""
        with self._lock:
            previous = self._pending.get(path)
            if previous is not None and previous[0] == FileAction.ADD:
                action = FileAction.ADD
            self._pending[path] = (action, self.clock())

    def discard(self, path: str) -> bool:
        """Forget a pending write (the file was deleted)."""
        with self._lock:
            return self._pending.pop(path, None) is not None

    def pop_ready(self) -> List[Tuple[str, FileAction]]:
        """Remove and return writes that have been quiet long enough."""
        now = self.clock()
        with self._lock:
            ready = [
                (path, action)
                for path, (action, last_seen) in self._pending.items()
                if now - last_seen >= self.window_seconds
            ]
            for path, _ in ready:
                del self._pending[path]
        return ready

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()


class SpaceWatcher(FileSystemEventHandler):
    """
    Watches one content root and publishes classified events.

    File writes are debounced through a StabilityTracker; deletions and
    directory events are published immediately.
    """

    def __init__(
        self,
        root: SpaceRoot,
        publisher: EventPublisher,
        stability_ms: int = 2000,
        ignore_patterns: Optional[List[str]] = None,
        initial_scan: bool = False,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize space watcher.

        Args:
            root: Root to watch
            publisher: Receives classified events
            stability_ms: Quiet period before a write is published
            ignore_patterns: Patterns of paths never published
            initial_scan: Publish the existing tree when started
            clock: Monotonic time source for the stability window
        """
        super().__init__()

        self.root = root
        self.publisher = publisher
        self.ignore_patterns = list(ignore_patterns if ignore_patterns is not None else DEFAULT_IGNORE_PATTERNS)
        self.initial_scan = initial_scan
        self.tracker = StabilityTracker(stability_ms, clock)

        self._observer: Optional[Observer] = None
        self._flush_thread: Optional[threading.Thread] = None
        self._flush_stop = threading.Event()

        logger.debug(f"SpaceWatcher initialized for {root.root_id} at {root.path}")

    # watchdog callbacks

    def on_created(self, event: FileCreatedEvent) -> None:
        action = FileAction.ADD_DIR if event.is_directory else FileAction.ADD
        self.handle_change(action, os.fsdecode(event.src_path), event.is_directory)

    def on_modified(self, event: FileModifiedEvent) -> None:
        # Directory mtime changes are covered by the entries' own events
        if event.is_directory:
            return
        self.handle_change(FileAction.CHANGE, os.fsdecode(event.src_path), False)

    def on_deleted(self, event: FileDeletedEvent) -> None:
        action = FileAction.UNLINK_DIR if event.is_directory else FileAction.UNLINK
        self.handle_change(action, os.fsdecode(event.src_path), event.is_directory)

    def on_moved(self, event: FileMovedEvent) -> None:
        if event.is_directory:
            self.handle_change(FileAction.UNLINK_DIR, os.fsdecode(event.src_path), True)
            self.handle_change(FileAction.ADD_DIR, os.fsdecode(event.dest_path), True)
        else:
            self.handle_change(FileAction.UNLINK, os.fsdecode(event.src_path), False)
            self.handle_change(FileAction.ADD, os.fsdecode(event.dest_path), False)

    def handle_change(self, action: FileAction, full_path: str, is_directory: bool = False) -> None:
        """
        Route one file system change.

        Args:
            action: Change type
            full_path: Absolute path of the changed entry
            is_directory: Whether the entry is a directory
        """
        if is_ignored(full_path, self.ignore_patterns, self.root.path):
            return

        if action in (FileAction.ADD, FileAction.CHANGE) and not is_directory:
            self.tracker.record(full_path, action)
            return

        if action == FileAction.UNLINK:
            self.tracker.discard(full_path)

        self._publish(action, full_path, is_directory)

    def flush(self) -> int:
        """
        Publish writes whose stability window has elapsed.

        Returns:
            Number of events published
        """
        published = 0
        for full_path, action in self.tracker.pop_ready():
            if not os.path.isfile(full_path):
                logger.debug(f"Skipping vanished file: {full_path}")
                continue
            if self._publish(action, full_path, False):
                published += 1
        return published

    def scan_existing(self) -> int:
        """
        Publish the current tree as add/addDir events.

        Returns:
            Number of events published
        """
        published = 0
        for dirpath, dirnames, filenames in os.walk(self.root.path):
            dirnames[:] = sorted(
                d for d in dirnames
                if not is_ignored(os.path.join(dirpath, d), self.ignore_patterns, self.root.path)
            )
            for dirname in dirnames:
                if self._publish(FileAction.ADD_DIR, os.path.join(dirpath, dirname), True):
                    published += 1
            for filename in sorted(filenames):
                full_path = os.path.join(dirpath, filename)
                if is_ignored(full_path, self.ignore_patterns, self.root.path):
                    continue
                if self._publish(FileAction.ADD, full_path, False):
                    published += 1
        return published

    def _publish(self, action: FileAction, full_path: str, is_directory: bool) -> bool:
        event = self.publisher.build_event(self.root, action, full_path, is_directory)
        if event is None:
            return False

        logger.info(f"File {action.value}: {full_path}")
        try:
            self.publisher.publish(event)
        except Exception as e:
            logger.error(f"Failed to publish {action.value} for {full_path}: {e}", exc_info=True)
            return False
        return True

    def _flush_loop(self) -> None:
        while not self._flush_stop.wait(FLUSH_INTERVAL_SECONDS):
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Error flushing pending writes for '{self.root.root_id}': {e}", exc_info=True)

    def start(self) -> None:
        """
        Start watching the root.

        Creates and starts a watchdog observer plus the flush thread.
        """
        if self._observer is not None:
            logger.warning(f"Observer already running for '{self.root.root_id}'")
            return

        watch_path = Path(self.root.path)
        if not watch_path.exists():
            logger.error(f"Content root does not exist: {watch_path}")
            return

        if self.initial_scan:
            count = self.scan_existing()
            logger.info(f"Initial scan of '{self.root.root_id}' published {count} event(s)")

        self._observer = Observer()
        self._observer.schedule(
            event_handler=self,
            path=str(watch_path),
            recursive=True
        )
        self._observer.start()

        self._flush_stop.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name=f"flush-{self.root.root_id}",
            daemon=True
        )
        self._flush_thread.start()

        logger.info(f"Watching '{self.root.root_id}': {watch_path}")

    def stop(self) -> None:
        """Stop the observer and drop unpublished writes."""
        if self._observer is None:
            return

        self._flush_stop.set()

        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error stopping observer for '{self.root.root_id}': {e}", exc_info=True)
        finally:
            self._observer = None

        if self._flush_thread is not None:
            self._flush_thread.join(timeout=1.0)
            self._flush_thread = None

        self.tracker.clear()
        logger.debug(f"Stopped watching '{self.root.root_id}'")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


class WatcherManager:
    """
    Manages one SpaceWatcher per content root.
    """

    def __init__(self, publisher: EventPublisher, settings: Optional[MonitorSettings] = None):
        """
        Initialize watcher manager.

        Args:
            publisher: Shared event publisher
            settings: Watcher settings (defaults when omitted)
        """
        self.publisher = publisher
        self.settings = settings or MonitorSettings()
        self._watchers: Dict[str, SpaceWatcher] = {}
        self._lock = threading.Lock()

    def add_root(self, root: SpaceRoot, start: bool = False) -> SpaceWatcher:
        """
        Register a root to watch.

        Args:
            root: Content root
            start: Start watching immediately
        """
        with self._lock:
            watcher = self._watchers.get(root.root_id)
            if watcher is not None:
                logger.warning(f"Root '{root.root_id}' is already being watched")
                return watcher

            watcher = SpaceWatcher(
                root=root,
                publisher=self.publisher,
                stability_ms=self.settings.stability_ms,
                ignore_patterns=self.settings.ignore_patterns,
                initial_scan=self.settings.initial_scan
            )
            self._watchers[root.root_id] = watcher

        if start:
            watcher.start()
        return watcher

    def remove_root(self, root_id: str) -> None:
        with self._lock:
            watcher = self._watchers.pop(root_id, None)

        if watcher:
            watcher.stop()

    def start_all(self) -> None:
        """Start all registered watchers."""
        with self._lock:
            watchers = list(self._watchers.values())
        for watcher in watchers:
            if not watcher.is_running():
                watcher.start()

    def stop_all(self) -> None:
        """Stop all watchers; they stay registered for a later restart."""
        with self._lock:
            watchers = list(self._watchers.values())
        for watcher in watchers:
            watcher.stop()

    def is_watching(self, root_id: str) -> bool:
        with self._lock:
            watcher = self._watchers.get(root_id)
        return watcher is not None and watcher.is_running()

    def get_watched_roots(self) -> Set[str]:
        """Root ids whose observers are alive."""
        with self._lock:
            watchers = dict(self._watchers)
        return {root_id for root_id, watcher in watchers.items() if watcher.is_running()}

    def root_ids(self) -> List[str]:
        with self._lock:
            return list(self._watchers.keys())


# Liveness check period of the watcher task
WATCH_CHECK_SECONDS = 1.0


def watch_spaces(data, stop_event) -> str:
    """
    Task script keeping the watchers alive inside an execution engine.

    Args:
        data: Dict with the "manager" (WatcherManager) to run
        stop_event: Set when the task should stop

    Raises:
        RuntimeError: If an observer dies while the task is running
    """
    manager: WatcherManager = data["manager"]
    manager.start_all()

    try:
        while not stop_event.wait(WATCH_CHECK_SECONDS):
            expected = set(manager.root_ids())
            alive = manager.get_watched_roots()
            missing = expected - alive
            if missing:
                raise RuntimeError(f"Watcher stopped unexpectedly: {', '.join(sorted(missing))}")
    finally:
        manager.stop_all()

    return "stopped"

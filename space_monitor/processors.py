"""
Processing workers draining the priority queues.

Each processor polls ``{concern}-high``, ``-medium`` and ``-low`` in that
order and handles one item at a time:

- CacheProcessor keeps the Cache Store consistent with the content tree
- ContentProcessor reads changed files and derives cache/search updates
- SearchProcessor keeps the search index in step with the content tree

Items that fail are retried at the tail of their queue until
``max_attempts`` is reached, then moved to ``{concern}-dead-letter``.
"""

import logging
import os
import posixpath
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from space_monitor.caching import CacheStore, cache_keys_for, search_key, CONTENT, META, TREE
from space_monitor.extract import extract_title, process_file
from space_monitor.models import (
    CacheAction, CacheTask, ContentAction, ContentTask, Priority, SearchAction,
    SearchTask, TaskRecord, TaskValidationError
)
from space_monitor.queueing import (
    CACHE_UPDATES, CONTENT_PROCESSING, SEARCH_INDEXING,
    dead_letter_queue_name, priority_queue_name, priority_queue_names
)


logger = logging.getLogger(__name__)


# Outcomes of a single poll
EMPTY = "empty"
PROCESSED = "processed"
FAILED = "failed"


class QueueProcessor:
    """
    Base polling loop shared by every processor.

    Subclasses set ``concern``, ``task_model`` and ``name`` and implement
    ``process``.
    """

    concern = ""
    task_model = TaskRecord
    name = "processor"

    def __init__(
        self,
        queue_store,
        poll_interval: float = 1.0,
        error_backoff: float = 5.0,
        max_attempts: int = 3
    ):
        """
        Initialize processor.

        Args:
            queue_store: QueueStore or HttpQueueClient
            poll_interval: Sleep when every priority queue is empty (seconds)
            error_backoff: Sleep after a failed item or dequeue (seconds)
            max_attempts: Attempts before an item is dead-lettered
        """
        self.queue_store = queue_store
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.max_attempts = max_attempts
        self.queue_names = priority_queue_names(self.concern)

        self.stats = {
            "processed": 0,
            "failed": 0,
            "retried": 0,
            "deadLettered": 0,
        }

    def _dequeue_next(self) -> Optional[Tuple[str, Any]]:
        for queue_name in self.queue_names:
            item = self.queue_store.dequeue(queue_name)
            if item is not None:
                return queue_name, item
        return None

    def dequeue_with_priority(self) -> Optional[Any]:
        """
        Take the next item in strict priority order.

        Returns:
            The first item found scanning high, medium, low; None if all are empty
        """
        found = self._dequeue_next()
        return found[1] if found else None

    def poll_once(self) -> bool:
        """
        Process at most one item.

        Returns:
            True if an item was dequeued (processed or not)
        """
        return self._poll() != EMPTY

    def _poll(self) -> str:
        found = self._dequeue_next()
        if found is None:
            return EMPTY

        queue_name, record = found

        try:
            task = self.task_model.from_record(record)
            self.process(task)
        except Exception as e:
            self.stats["failed"] += 1
            logger.error(f"[{self.name}] Failed to process item from {queue_name}: {e}", exc_info=True)
            self._handle_failure(queue_name, record, e)
            return FAILED

        self.stats["processed"] += 1
        return PROCESSED

    def _handle_failure(self, queue_name: str, record: Any, error: Exception) -> None:
        """Retry at the tail of the source queue, or dead-letter."""
        if isinstance(error, TaskValidationError):
            self._dead_letter(queue_name, record, error)
            return

        attempts = int(record.get("attempts", 0)) + 1
        retry = dict(record, attempts=attempts)

        if attempts < self.max_attempts:
            self.stats["retried"] += 1
            self.queue_store.enqueue(queue_name, retry)
            logger.warning(f"[{self.name}] Re-queued item on {queue_name} (attempt {attempts}/{self.max_attempts})")
        else:
            self._dead_letter(queue_name, retry, error)

    def _dead_letter(self, queue_name: str, record: Any, error: Exception) -> None:
        target = dead_letter_queue_name(self.concern)
        self.stats["deadLettered"] += 1
        self.queue_store.enqueue(target, {
            "queueName": queue_name,
            "item": record,
            "error": str(error) or type(error).__name__,
            "failedAt": datetime.now().isoformat(),
        })
        logger.warning(f"[{self.name}] Moved item from {queue_name} to {target}")

    def process(self, task) -> None:
        raise NotImplementedError

    def run(self, stop_event) -> None:
        """
        Poll until stop_event is set.

        The item in progress always finishes; the stop event also cuts short
        the idle and backoff waits.
        """
        logger.info(f"[{self.name}] Started, monitoring queues: {', '.join(self.queue_names)}")

        while not stop_event.is_set():
            try:
                outcome = self._poll()
            except Exception as e:
                logger.error(f"[{self.name}] Error dequeuing: {e}", exc_info=True)
                stop_event.wait(self.error_backoff)
                continue

            if outcome == EMPTY:
                stop_event.wait(self.poll_interval)
            elif outcome == FAILED:
                stop_event.wait(self.error_backoff)

        logger.info(f"[{self.name}] Stopped")

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)


class CacheProcessor(QueueProcessor):
    """Applies cache operations from ``cache-updates-*``."""

    concern = CACHE_UPDATES
    task_model = CacheTask
    name = "cache-processor"

    def __init__(self, queue_store, cache: CacheStore, **kwargs):
        super().__init__(queue_store, **kwargs)
        self.cache = cache

    def process(self, task: CacheTask) -> None:
        keys = cache_keys_for(task.scope, task.identity, task.path)
        action = CacheAction(task.action)

        if action in (CacheAction.INVALIDATE, CacheAction.REMOVE):
            logger.info(f"[{self.name}] {action.value} {task.identity}:{task.path}")
            for key in keys.values():
                self.cache.delete(key)

        elif action == CacheAction.REFRESH_TREE:
            logger.info(f"[{self.name}] Refreshing tree for {task.identity}")
            self.cache.delete(keys[TREE])

        elif action == CacheAction.UPDATE:
            logger.info(f"[{self.name}] Updating cache for {task.identity}:{task.path}")
            self.cache.put(keys[CONTENT], task.content)
            self.cache.put(keys[META], task.metadata)


class ContentProcessor(QueueProcessor):
    """Extracts content from changed files (``content-processing-*``)."""

    concern = CONTENT_PROCESSING
    task_model = ContentTask
    name = "content-processor"

    def process(self, task: ContentTask) -> None:
        action = ContentAction(task.action)

        if action == ContentAction.REINDEX:
            self._reindex(task)
        elif action == ContentAction.BATCH_REINDEX:
            self._batch_reindex(task)

    def _reindex(self, task: ContentTask) -> None:
        owner = task.owner_fields()
        logger.info(f"[{self.name}] Processing content: {task.identity}:{task.path}")

        processed = process_file(task.full_path, task.path, owner)
        if processed is None:
            logger.warning(f"[{self.name}] Skipping missing or non-regular file: {task.full_path}")
            return

        common = {"path": task.path, "timestamp": task.timestamp, **owner}

        self.queue_store.enqueue(
            priority_queue_name(CACHE_UPDATES, Priority.MEDIUM),
            CacheTask(
                action=CacheAction.UPDATE,
                content=processed["content"],
                metadata=processed["metadata"],
                **common
            ).to_record()
        )
        self.queue_store.enqueue(
            priority_queue_name(SEARCH_INDEXING, Priority.MEDIUM),
            SearchTask(
                action=SearchAction.INDEX,
                searchable_text=processed["searchableText"],
                metadata=processed["metadata"],
                **common
            ).to_record()
        )

    def _batch_reindex(self, task: ContentTask) -> None:
        """Fan each listed file out as its own reindex task."""
        owner = task.owner_fields()
        base_dir = os.path.dirname(task.full_path)
        logger.info(f"[{self.name}] Processing batch {task.batch_id}: {len(task.files)} files")

        for file_path in task.files:
            self.queue_store.enqueue(
                priority_queue_name(CONTENT_PROCESSING, Priority.MEDIUM),
                ContentTask(
                    action=ContentAction.REINDEX,
                    path=file_path,
                    full_path=os.path.join(base_dir, file_path),
                    timestamp=task.timestamp,
                    **owner
                ).to_record()
            )


class SearchProcessor(QueueProcessor):
    """Maintains the search index (``search-indexing-*``)."""

    concern = SEARCH_INDEXING
    task_model = SearchTask
    name = "search-processor"

    def __init__(self, queue_store, search_index, **kwargs):
        super().__init__(queue_store, **kwargs)
        self.search_index = search_index

    def process(self, task: SearchTask) -> None:
        action = SearchAction(task.action)
        key = search_key(task.scope, task.identity, task.path)

        if action == SearchAction.INDEX:
            logger.info(f"[{self.name}] Indexing for search: {task.identity}:{task.path}")
            self._replace(key, self.build_document(task))

        elif action == SearchAction.REMOVE:
            logger.info(f"[{self.name}] Removing from search index: {task.identity}:{task.path}")
            self.search_index.remove(key)

        elif action == SearchAction.BULK_INDEX:
            logger.info(f"[{self.name}] Bulk indexing {len(task.items)} items for {task.identity}")
            for item in task.items:
                if "path" not in item:
                    raise ValueError(f"Bulk index item has no path: {item!r}")
                item_key = search_key(task.scope, task.identity, item["path"])
                self._replace(item_key, item.get("searchData") or {})

    def _replace(self, key: str, document: Dict[str, Any]) -> None:
        # The index rejects existing keys, so re-indexing is remove + add
        self.search_index.remove(key)
        if not self.search_index.add(key, document):
            raise RuntimeError(f"Search index rejected document: {key}")

    @staticmethod
    def build_document(task: SearchTask) -> Dict[str, Any]:
        """Search document for an indexed file."""
        metadata = task.metadata
        owner = {k: v for k, v in task.owner_fields().items() if k != "scope"}
        directory, _, filename = task.path.rpartition("/")

        return {
            "path": task.path,
            **owner,
            "content": task.searchable_text,
            "title": extract_title(task.searchable_text, task.path),
            "type": metadata.get("type"),
            "size": metadata.get("size"),
            "mtime": metadata.get("mtime"),
            "indexedAt": datetime.now().isoformat(),
            "filename": filename or posixpath.basename(task.path),
            "directory": directory,
            "extension": metadata.get("type"),
        }


def _run(data, stop_event) -> str:
    processor: QueueProcessor = data["processor"]
    processor.run(stop_event)
    return "stopped"


def run_cache_processor(data, stop_event) -> str:
    """Task script running a CacheProcessor (``data["processor"]``)."""
    return _run(data, stop_event)


def run_content_processor(data, stop_event) -> str:
    """Task script running a ContentProcessor (``data["processor"]``)."""
    return _run(data, stop_event)


def run_search_processor(data, stop_event) -> str:
    """Task script running a SearchProcessor (``data["processor"]``)."""
    return _run(data, stop_event)

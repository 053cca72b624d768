"""
In-memory search index.

Stands in for the external search service. The Search Processor only uses
add/remove; readers call search.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from space_monitor.events import EventEmitter, emit


logger = logging.getLogger(__name__)


def _contains_term(value: Any, term: str) -> bool:
    """Case-insensitive substring match over nested string values."""
    if isinstance(value, str):
        return term in value.lower()
    if isinstance(value, dict):
        return any(_contains_term(v, term) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_term(v, term) for v in value)
    return False


class SearchIndex:
    """Keyed JSON documents with substring search."""

    def __init__(self, emitter: Optional[EventEmitter] = None):
        self.emitter = emitter
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add(self, key: str, document: Dict[str, Any]) -> bool:
        """
        Add a document.

        Args:
            key: Search key ("{scope}:{identity}:{path}")
            document: JSON document

        Returns:
            True if added, False if the key already exists
        """
        with self._lock:
            if key in self._documents:
                added = False
            else:
                self._documents[key] = document
                added = True

        if added:
            emit(self.emitter, "search:add", {"key": key})
        else:
            emit(self.emitter, "search:add:error", {"key": key, "error": "Key already exists."})
        return added

    def remove(self, key: str) -> bool:
        """Remove a document; False if it was not indexed."""
        with self._lock:
            removed = self._documents.pop(key, None) is not None

        if removed:
            emit(self.emitter, "search:remove", {"key": key})
        return removed

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._documents.get(key)

    def search(self, term: str) -> List[Tuple[str, Dict[str, Any]]]:
        """
        Find documents containing a term in any string field.

        Args:
            term: Search term (case-insensitive)

        Returns:
            List of (key, document) pairs
        """
        results = []
        if term:
            needle = term.lower()
            with self._lock:
                items = list(self._documents.items())
            results = [(key, doc) for key, doc in items if _contains_term(doc, needle)]

        emit(self.emitter, "search:search", {"term": term, "count": len(results)})
        return results

    def status(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)

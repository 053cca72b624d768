"""
In-process observability events.

Stores, the execution engine and the scheduler report what they do through an
EventEmitter. Listeners are for logging and dashboards; a failing listener is
logged and never propagates into the component that emitted the event.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]


class EventEmitter:
    """Named-event publisher with per-event and wildcard listeners."""

    WILDCARD = "*"

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, event_name: str, listener: Listener) -> None:
        """
        Register a listener.

        Args:
            event_name: Event to listen for, or "*" for every event
            listener: Called as listener(event_name, payload)
        """
        with self._lock:
            self._listeners.setdefault(event_name, []).append(listener)

    def off(self, event_name: str, listener: Listener) -> None:
        """Remove a previously registered listener."""
        with self._lock:
            listeners = self._listeners.get(event_name, [])
            if listener in listeners:
                listeners.remove(listener)

    def emit(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Deliver an event to its listeners.

        Args:
            event_name: Event name (e.g. "queue:enqueue")
            payload: Event data
        """
        payload = payload or {}

        with self._lock:
            listeners = list(self._listeners.get(event_name, []))
            listeners.extend(self._listeners.get(self.WILDCARD, []))

        for listener in listeners:
            try:
                listener(event_name, payload)
            except Exception as e:
                logger.error(f"Listener for '{event_name}' failed: {e}", exc_info=True)


def emit(emitter: Optional[EventEmitter], event_name: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Emit on an optional emitter."""
    if emitter is not None:
        emitter.emit(event_name, payload)

"""
Task Execution Engine.

Runs one task script at a time in an isolated execution context and reports
status transitions through a callback. Long-running workers (watcher,
processors) and one-off scheduled jobs use the same engine.

A task script is a callable ``script(data, stop_event)``; its return value is
the result of the run. Scripts can be passed directly or as an import string
``"package.module:function"``.
"""

import importlib
import logging
import multiprocessing
import threading
from typing import Any, Callable, Optional, Union

from space_monitor.events import EventEmitter, emit
from space_monitor.models import EngineStatus
from space_monitor.stats import ActivityStats, DEFAULT_STATS_CAPACITY, format_timestamp


logger = logging.getLogger(__name__)

ScriptRef = Union[str, Callable[..., Any]]
StatusCallback = Callable[[str, Any], None]

THREAD = "thread"
PROCESS = "process"


class EngineBusyError(RuntimeError):
    """A task is already running in this engine."""


def resolve_script(script_ref: ScriptRef) -> Callable[..., Any]:
    """
    Resolve a script reference to a callable.

    Args:
        script_ref: Callable or "package.module:function"

    Returns:
        The task callable

    Raises:
        ValueError: If the reference is malformed or not callable
    """
    if callable(script_ref):
        return script_ref

    if not isinstance(script_ref, str) or ":" not in script_ref:
        raise ValueError(f"Invalid script reference: {script_ref!r}")

    module_name, _, attr = script_ref.partition(":")
    module = importlib.import_module(module_name)
    script = getattr(module, attr, None)
    if not callable(script):
        raise ValueError(f"Script is not callable: {script_ref}")
    return script


def script_name(script_ref: ScriptRef) -> str:
    """Name used for worker statistics."""
    if isinstance(script_ref, str):
        return script_ref.rpartition(":")[2] or "unknown-worker"
    return getattr(script_ref, "__name__", None) or "anonymous-worker"


def _process_entry(script_ref, data, stop_event, conn) -> None:
    """Child-process side of a process-isolated run."""
    try:
        script = resolve_script(script_ref)
        conn.send((EngineStatus.RUNNING.value, None))
        result = script(data, stop_event)
        conn.send((EngineStatus.COMPLETED.value, result))
    except Exception as e:
        conn.send((EngineStatus.ERROR.value, str(e) or type(e).__name__))
    finally:
        conn.close()


class ExecutionEngine:
    """
    Single-slot executor with status reporting.

    States: idle -> running -> completed | error -> idle. ``start`` fails fast
    when a run is in progress. On completion or error the context is torn
    down and the status callback fires exactly once. ``stop`` ends the run
    without a callback: a process context is terminated, a thread context is
    signalled through its stop event and detached.
    """

    def __init__(
        self,
        isolation: str = THREAD,
        emitter: Optional[EventEmitter] = None,
        stats_capacity: int = DEFAULT_STATS_CAPACITY
    ):
        """
        Initialize execution engine.

        Args:
            isolation: "thread" (shares process memory) or "process"
            emitter: Receives worker:* events
            stats_capacity: Number of task names whose statistics are retained
        """
        if isolation not in (THREAD, PROCESS):
            raise ValueError(f"Unknown isolation mode: {isolation}")

        self.isolation = isolation
        self.emitter = emitter

        self._lock = threading.Lock()
        self._status = EngineStatus.IDLE
        self._run_id = 0
        self._context = None
        self._stop_event = None
        self._on_status: Optional[StatusCallback] = None
        self._current_name: Optional[str] = None
        self._stats = ActivityStats(stats_capacity)

        # Outcome of the most recent finished run
        self.last_status: Optional[str] = None
        self.last_result: Any = None

    def start(
        self,
        script_ref: ScriptRef,
        data: Any = None,
        on_status: Optional[StatusCallback] = None
    ) -> None:
        """
        Run a task script.

        Args:
            script_ref: Callable or import string of the task script
            data: Passed to the script as its first argument
            on_status: Called once as on_status(status, result_or_error)

        Raises:
            EngineBusyError: If a task is already running
        """
        name = script_name(script_ref)

        with self._lock:
            if self._context is not None:
                emit(self.emitter, "worker:start:error", {"worker": name, "error": "Worker already running."})
                raise EngineBusyError(f"Engine already running '{self._current_name}'")

            self._run_id += 1
            run_id = self._run_id
            self._status = EngineStatus.RUNNING
            self._on_status = on_status
            self._current_name = name

            if self.isolation == THREAD:
                stop_event = threading.Event()
                context = threading.Thread(
                    target=self._run_in_thread,
                    args=(run_id, script_ref, data, stop_event),
                    name=f"engine-{name}",
                    daemon=True
                )
            else:
                stop_event = multiprocessing.Event()
                receiver, sender = multiprocessing.Pipe(duplex=False)
                context = multiprocessing.Process(
                    target=_process_entry,
                    args=(script_ref, data, stop_event, sender),
                    name=f"engine-{name}",
                    daemon=True
                )

            self._context = context
            self._stop_event = stop_event

        self._record(name, "start")
        emit(self.emitter, "worker:start", {"worker": name, "isolation": self.isolation})
        logger.debug(f"[engine] Starting '{name}' ({self.isolation})")

        context.start()

        if self.isolation == PROCESS:
            sender.close()
            threading.Thread(
                target=self._watch_process,
                args=(run_id, context, receiver),
                name=f"engine-watch-{name}",
                daemon=True
            ).start()

    def _run_in_thread(self, run_id: int, script_ref: ScriptRef, data: Any, stop_event) -> None:
        try:
            script = resolve_script(script_ref)
            result = script(data, stop_event)
        except Exception as e:
            logger.error(f"[engine] Task '{script_name(script_ref)}' failed: {e}", exc_info=True)
            self._finish(run_id, EngineStatus.ERROR, str(e) or type(e).__name__)
            return
        except SystemExit as e:
            message = f"Worker exited with code {e.code}"
            logger.error(f"[engine] Task '{script_name(script_ref)}': {message}")
            self._finish(run_id, EngineStatus.ERROR, message)
            return
        except BaseException as e:
            message = f"Worker interrupted: {type(e).__name__}"
            logger.error(f"[engine] Task '{script_name(script_ref)}': {message}")
            self._finish(run_id, EngineStatus.ERROR, message)
            return

        self._finish(run_id, EngineStatus.COMPLETED, result)

    def _watch_process(self, run_id: int, process, receiver) -> None:
        final = None
        try:
            while True:
                status, payload = receiver.recv()
                if status in (EngineStatus.COMPLETED.value, EngineStatus.ERROR.value):
                    final = (EngineStatus(status), payload)
                    break
                emit(self.emitter, "worker:status", {"status": status})
        except (EOFError, OSError):
            pass
        finally:
            receiver.close()

        process.join()

        with self._lock:
            if run_id != self._run_id:
                # Terminated by stop()
                return

        if final is None:
            message = f"Worker exited with code {process.exitcode}"
            logger.error(f"[engine] {message}")
            emit(self.emitter, "worker:exit:error", {"code": process.exitcode})
            final = (EngineStatus.ERROR, message)

        self._finish(run_id, *final)

    def _finish(self, run_id: int, status: EngineStatus, payload: Any) -> None:
        with self._lock:
            if run_id != self._run_id or self._context is None:
                # Stopped before it finished
                return
            callback = self._on_status
            name = self._current_name
            self._status = status
            self.last_status = status.value
            self.last_result = payload

        emit(self.emitter, "worker:status", {"worker": name, "status": status.value, "data": payload})
        if status == EngineStatus.ERROR:
            emit(self.emitter, "worker:error", {"worker": name, "error": payload})

        self._record(name, "end")

        with self._lock:
            if run_id == self._run_id:
                self._reset()

        if callback is not None:
            try:
                callback(status.value, payload)
            except Exception as e:
                logger.error(f"[engine] Status callback for '{name}' failed: {e}", exc_info=True)

    def _reset(self) -> None:
        """Return to idle. Caller holds the lock."""
        self._context = None
        self._stop_event = None
        self._on_status = None
        self._current_name = None
        self._status = EngineStatus.IDLE

    def stop(self, wait: float = 0.0) -> None:
        """
        Stop the running task and return to idle.

        Args:
            wait: Seconds to wait for the stopped context to exit
        """
        with self._lock:
            context = self._context
            if context is None:
                return

            name = self._current_name
            self._run_id += 1
            self._stop_event.set()
            self._reset()

        if isinstance(context, multiprocessing.Process) and context.is_alive():
            context.terminate()

        if wait > 0:
            context.join(timeout=wait)

        self._record(name, "end")
        emit(self.emitter, "worker:stop", {"worker": name})
        logger.debug(f"[engine] Stopped '{name}'")

    def get_status(self) -> str:
        """Current engine state."""
        with self._lock:
            return self._status.value

    def is_running(self) -> bool:
        with self._lock:
            return self._context is not None

    def get_worker_stats(self):
        """Per-task statistics, most recently active first."""
        return self._stats.snapshot()

    def _record(self, name: str, operation: str) -> None:
        now = format_timestamp()

        def factory():
            return {
                "workerName": name,
                "startRun": None,
                "endRun": None,
                "executions": 0,
                "lastRun": None,
                "created": now,
            }

        def update(record):
            if operation == "start":
                record["startRun"] = now
                record["executions"] += 1
            else:
                record["endRun"] = now
                record["lastRun"] = now

        self._stats.touch(name, factory, update)

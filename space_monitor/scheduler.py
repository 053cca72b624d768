"""
Scheduler for named, recurring tasks.

Keeps named tasks alive on an interval or cron-like cadence using the
Task Execution Engine. Each schedule owns its own engine, so a long-running
task never blocks another schedule's ticks.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from space_monitor.events import EventEmitter, emit
from space_monitor.executor import EngineBusyError, ExecutionEngine, ScriptRef, StatusCallback
from space_monitor.models import EngineStatus
from space_monitor.stats import ActivityStats, DEFAULT_STATS_CAPACITY, format_timestamp


logger = logging.getLogger(__name__)

Cadence = Union[int, float, str]

# Cron expressions are approximated by a fixed polling tick
CRON_TICK_SECONDS = 60.0


@dataclass
class ScheduledTask:
    """Runtime state of one schedule."""

    name: str
    cadence: Cadence
    interval: float
    immediate: bool
    script_ref: Optional[ScriptRef] = None
    on_status: Optional[StatusCallback] = None
    data: Any = None
    engine: Optional[ExecutionEngine] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


def parse_cadence(cadence: Cadence, cron_tick: float = CRON_TICK_SECONDS) -> Tuple[float, bool]:
    """
    Turn a cadence into (interval seconds, run immediately).

    Args:
        cadence: Interval in seconds, or a cron-like expression string
        cron_tick: Tick used to approximate cron expressions

    Returns:
        Tuple of interval and whether the first run happens immediately

    Raises:
        ValueError: If the cadence is not usable
    """
    if isinstance(cadence, bool):
        raise ValueError(f"Invalid cadence: {cadence!r}")

    if isinstance(cadence, (int, float)):
        if cadence <= 0:
            raise ValueError(f"Interval must be positive: {cadence}")
        return float(cadence), True

    if isinstance(cadence, str) and cadence.strip():
        return cron_tick, False

    raise ValueError(f"Invalid cadence: {cadence!r}")


class Scheduler:
    """
    Named task scheduler.

    Interval schedules run immediately and then every N seconds; cron
    schedules run on a fixed tick. A task reporting ``error`` is not
    restarted here: whether a task is critical is the orchestrator's call.
    """

    def __init__(
        self,
        engine_factory: Optional[Callable[[], ExecutionEngine]] = None,
        emitter: Optional[EventEmitter] = None,
        stats_capacity: int = DEFAULT_STATS_CAPACITY,
        cron_tick: float = CRON_TICK_SECONDS
    ):
        """
        Initialize scheduler.

        Args:
            engine_factory: Builds the execution engine of each schedule
            emitter: Receives scheduler:* events
            stats_capacity: Number of schedules whose statistics are retained
            cron_tick: Tick used for cron-like cadences (seconds)
        """
        self.emitter = emitter
        self.engine_factory = engine_factory or (
            lambda: ExecutionEngine(emitter=emitter, stats_capacity=stats_capacity)
        )
        self.cron_tick = cron_tick

        self._tasks: Dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._stats = ActivityStats(stats_capacity)

    def start(
        self,
        task_name: str,
        cadence: Cadence,
        script_ref: Optional[ScriptRef] = None,
        on_status: Optional[StatusCallback] = None,
        data: Any = None
    ) -> None:
        """
        Schedule a named task.

        Args:
            task_name: Unique schedule name
            cadence: Interval seconds or cron-like expression
            script_ref: Task script run on each tick (optional)
            on_status: Called with (status, result) after each run
            data: Passed to the task script

        Raises:
            ValueError: If the name is already scheduled or the cadence is invalid
        """
        interval, immediate = parse_cadence(cadence, self.cron_tick)

        with self._lock:
            if task_name in self._tasks:
                emit(self.emitter, "scheduler:start:error", {
                    "taskName": task_name,
                    "error": "Task already scheduled."
                })
                raise ValueError(f"Task already scheduled: {task_name}")

            task = ScheduledTask(
                name=task_name,
                cadence=cadence,
                interval=interval,
                immediate=immediate,
                script_ref=script_ref,
                on_status=on_status,
                data=data,
                engine=self.engine_factory() if script_ref is not None else None,
            )
            self._tasks[task_name] = task

        self._init_stats(task)

        task.thread = threading.Thread(
            target=self._run_schedule,
            args=(task,),
            name=f"schedule-{task_name}",
            daemon=True
        )
        task.thread.start()

        emit(self.emitter, "scheduler:started", {
            "taskName": task_name,
            "script": str(script_ref) if script_ref is not None else "cron-task",
            "schedule": cadence,
        })
        logger.info(f"[scheduler] Scheduled '{task_name}' ({cadence})")

    def _run_schedule(self, task: ScheduledTask) -> None:
        if task.immediate and not task.cancel_event.is_set():
            self._execute(task)

        while not task.cancel_event.wait(task.interval):
            self._execute(task)

    def _execute(self, task: ScheduledTask) -> None:
        if task.script_ref is None:
            self._update_stats(task)
            data = {"taskName": task.name, "executedAt": datetime.now().isoformat()}
            self._report(task, EngineStatus.COMPLETED.value, data)
            return

        if task.cancel_event.is_set():
            return

        try:
            task.engine.start(
                task.script_ref,
                task.data,
                lambda status, data: self._report(task, status, data)
            )
        except EngineBusyError:
            logger.warning(f"[scheduler] '{task.name}' still running, skipping tick")
            return
        except Exception as e:
            logger.error(f"[scheduler] Failed to launch '{task.name}': {e}", exc_info=True)
            self._report(task, EngineStatus.ERROR.value, str(e))
            return

        self._update_stats(task)

    def _report(self, task: ScheduledTask, status: str, data: Any) -> None:
        if task.on_status is not None:
            try:
                task.on_status(status, data)
            except Exception as e:
                logger.error(f"[scheduler] Callback for '{task.name}' failed: {e}", exc_info=True)

        emit(self.emitter, "scheduler:taskExecuted", {
            "taskName": task.name,
            "status": status,
            "data": data,
        })

    def stop(self, task_name: Optional[str] = None, wait: float = 0.0) -> None:
        """
        Cancel one schedule, or all of them. Statistics are kept.

        Args:
            task_name: Schedule to cancel; all schedules when None
            wait: Seconds to wait for each stopped task to exit
        """
        with self._lock:
            if task_name is None:
                tasks = list(self._tasks.values())
                self._tasks.clear()
            else:
                task = self._tasks.pop(task_name, None)
                tasks = [task] if task else []

        for task in tasks:
            task.cancel_event.set()
            if task.engine is not None:
                task.engine.stop(wait=wait)
            emit(self.emitter, "scheduler:stopped", {"taskName": task.name})
            logger.info(f"[scheduler] Stopped '{task.name}'")

    def cancel(self, task_name: Optional[str] = None, wait: float = 0.0) -> None:
        """Alias of stop."""
        self.stop(task_name, wait=wait)

    def is_running(self, task_name: Optional[str] = None) -> bool:
        """Whether a schedule (or any schedule) is active."""
        with self._lock:
            if task_name is not None:
                return task_name in self._tasks
            return bool(self._tasks)

    def scheduled_tasks(self) -> List[str]:
        with self._lock:
            return sorted(self._tasks.keys())

    def get_engine(self, task_name: str) -> Optional[ExecutionEngine]:
        with self._lock:
            task = self._tasks.get(task_name)
            return task.engine if task else None

    def get_schedule_stats(self) -> List[Dict[str, Any]]:
        """Schedule statistics ordered by latest run."""
        return self._stats.snapshot()

    def _next_run(self, task: ScheduledTask) -> str:
        return format_timestamp(datetime.now() + timedelta(seconds=task.interval))

    def _init_stats(self, task: ScheduledTask) -> None:
        now = format_timestamp()
        next_run = now if task.immediate else self._next_run(task)

        def factory():
            return {
                "scheduleName": task.name,
                "executions": 0,
                "lastRun": None,
                "nextRun": next_run,
                "schedule": task.cadence,
                "created": now,
            }

        def update(record):
            # A re-scheduled name keeps its history
            record["nextRun"] = next_run
            record["schedule"] = task.cadence

        self._stats.touch(task.name, factory, update)

    def _update_stats(self, task: ScheduledTask) -> None:
        def update(record):
            record["executions"] += 1
            record["lastRun"] = format_timestamp()
            record["nextRun"] = self._next_run(task)

        self._stats.touch(task.name, lambda: {
            "scheduleName": task.name,
            "executions": 0,
            "lastRun": None,
            "nextRun": None,
            "schedule": task.cadence,
            "created": format_timestamp(),
        }, update)

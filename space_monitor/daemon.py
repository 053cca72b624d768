"""
Orchestrator for the space monitoring pipeline.

Builds every service once, waits for them to answer, then keeps the watcher
and the three processors alive as scheduled tasks. A critical task that
reports an error is restarted after a delay.
"""

import sys
import signal
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from space_monitor.caching import CacheStore, create_cache
from space_monitor.config import ConfigManager, load_environment
from space_monitor.events import EventEmitter
from space_monitor.models import EngineStatus, MonitorConfig
from space_monitor.processors import (
    CacheProcessor, ContentProcessor, SearchProcessor,
    run_cache_processor, run_content_processor, run_search_processor
)
from space_monitor.queueing import QueueStore
from space_monitor.scheduler import Scheduler
from space_monitor.search import SearchIndex
from space_monitor.watcher import EventPublisher, WatcherManager, build_roots, watch_spaces


logger = logging.getLogger("space-monitor")


# Task names
SPACE_WATCHER = "space-watcher"
CACHE_PROCESSOR = "cache-processor"
CONTENT_PROCESSOR = "content-processor"
SEARCH_PROCESSOR = "search-processor"

# Long-running tasks are scheduled once a day; a healthy run never ends
WORKER_INTERVAL = 86400

# Seconds to wait for each task to exit on shutdown
SHUTDOWN_WAIT = 5.0

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class StartupError(RuntimeError):
    """A required service did not become ready."""


def configure_logging(level: int = logging.INFO) -> None:
    """Log to stdout and quieten watchdog internals."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Suppress verbose watchdog library logging
    logging.getLogger("watchdog.observers.inotify_buffer").setLevel(logging.WARNING)
    logging.getLogger("watchdog.observers").setLevel(logging.WARNING)


class SpaceMonitorDaemon:
    """
    Wires the pipeline together and supervises its tasks.

    Every component can be injected; anything omitted is built from the
    configuration.
    """

    def __init__(
        self,
        config: MonitorConfig,
        queue_store: Optional[QueueStore] = None,
        cache: Optional[CacheStore] = None,
        search_index: Optional[SearchIndex] = None,
        scheduler: Optional[Scheduler] = None,
        emitter: Optional[EventEmitter] = None
    ):
        """
        Initialize daemon.

        Args:
            config: Effective monitor configuration
            queue_store: Queue store (in-memory when omitted)
            cache: Cache store (built from the cache_backend setting when omitted)
            search_index: Search index (in-memory when omitted)
            scheduler: Scheduler (one engine per task when omitted)
            emitter: Observability event emitter
        """
        self.config = config
        self.settings = settings = config.settings

        self.emitter = emitter or EventEmitter()
        self.queue_store = queue_store or QueueStore(self.emitter, settings.stats_capacity)
        self.cache = cache or create_cache(settings.cache_backend, {"url": settings.redis_url}, self.emitter)
        self.search_index = search_index or SearchIndex(self.emitter)
        self.scheduler = scheduler or Scheduler(emitter=self.emitter, stats_capacity=settings.stats_capacity)

        # Watchers
        self.publisher = EventPublisher(self.queue_store)
        self.watcher_manager = WatcherManager(self.publisher, settings)
        for root in build_roots(config):
            self.watcher_manager.add_root(root)

        # Processors
        processor_options = {
            "poll_interval": settings.poll_interval,
            "error_backoff": settings.error_backoff,
            "max_attempts": settings.max_attempts,
        }
        self.cache_processor = CacheProcessor(self.queue_store, self.cache, **processor_options)
        self.content_processor = ContentProcessor(self.queue_store, **processor_options)
        self.search_processor = SearchProcessor(self.queue_store, self.search_index, **processor_options)

        self.tasks: Dict[str, Tuple[Callable, Dict[str, Any]]] = {
            SPACE_WATCHER: (watch_spaces, {"manager": self.watcher_manager}),
            CACHE_PROCESSOR: (run_cache_processor, {"processor": self.cache_processor}),
            CONTENT_PROCESSOR: (run_content_processor, {"processor": self.content_processor}),
            SEARCH_PROCESSOR: (run_search_processor, {"processor": self.search_processor}),
        }

        self.running = False
        self.shutdown_requested = threading.Event()

        self._restart_timers: Dict[str, threading.Timer] = {}
        self._timer_lock = threading.Lock()

        self._api_server = None
        self._api_thread: Optional[threading.Thread] = None

    # Readiness

    def _service_probes(self) -> List[Tuple[str, Callable[[], bool]]]:
        return [
            ("queue", self.queue_store.status),
            ("cache", self.cache.status),
            ("search", self.search_index.status),
        ]

    def wait_for_services(self) -> None:
        """
        Probe every service until it answers.

        Raises:
            StartupError: If a service is still down after health_retries probes
        """
        retries = self.settings.health_retries
        delay = self.settings.health_delay

        for name, probe in self._service_probes():
            for attempt in range(1, retries + 1):
                try:
                    ready = probe()
                except Exception as e:
                    logger.warning(f"[startup] {name} probe failed: {e}")
                    ready = False

                if ready:
                    logger.info(f"[startup] {name} service is ready")
                    break

                logger.info(f"[startup] Waiting for {name} service ({attempt}/{retries})")
                if attempt < retries and self.shutdown_requested.wait(delay):
                    raise StartupError("Shutdown requested during startup")
            else:
                raise StartupError(f"{name} service not ready after {retries} attempts")

    # Task supervision

    def start_tasks(self) -> None:
        """Schedule every long-running task."""
        for name in self.tasks:
            self._start_task(name)

    def _start_task(self, name: str) -> None:
        script, data = self.tasks[name]
        self.scheduler.start(
            name,
            WORKER_INTERVAL,
            script_ref=script,
            on_status=lambda status, result: self._on_task_status(name, status, result),
            data=data
        )

    def _on_task_status(self, name: str, status: str, result: Any) -> None:
        if status == EngineStatus.ERROR.value:
            logger.error(f"[{name}] Task failed: {result}")
            if name in self.settings.critical_tasks and not self.shutdown_requested.is_set():
                self._schedule_restart(name)
        else:
            logger.info(f"[{name}] Task {status}: {result}")

    def _schedule_restart(self, name: str) -> None:
        """Restart a task once after restart_delay; repeated errors share one timer."""
        with self._timer_lock:
            if name in self._restart_timers:
                return

            timer = threading.Timer(self.settings.restart_delay, self.restart_task, args=(name,))
            timer.daemon = True
            self._restart_timers[name] = timer

        logger.warning(f"[{name}] Critical task failed, restarting in {self.settings.restart_delay}s")
        timer.start()

    def restart_task(self, name: str) -> None:
        """Stop a task's schedule and start it again."""
        with self._timer_lock:
            self._restart_timers.pop(name, None)

        if self.shutdown_requested.is_set():
            return

        logger.info(f"[{name}] Restarting task")
        self.scheduler.stop(name, wait=SHUTDOWN_WAIT)
        self._start_task(name)

    # API server

    def create_app(self):
        from space_monitor.api import create_app
        return create_app(self.queue_store, self.cache, self.search_index, self.scheduler)

    def start_api(self) -> None:
        """Serve the HTTP API from a background thread."""
        import uvicorn

        config = uvicorn.Config(
            self.create_app(),
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_level="warning"
        )
        self._api_server = uvicorn.Server(config)
        self._api_thread = threading.Thread(target=self._api_server.run, name="api-server", daemon=True)
        self._api_thread.start()
        logger.info(f"API listening on http://{self.settings.api_host}:{self.settings.api_port}")

    def serve_api(self) -> None:
        """Serve the HTTP API in the foreground (no watcher or processors)."""
        import uvicorn

        uvicorn.run(
            self.create_app(),
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_level="info"
        )

    # Lifecycle

    def start(self, api_enabled: Optional[bool] = None) -> None:
        """
        Start the pipeline.

        Args:
            api_enabled: Override the api_enabled setting

        Raises:
            StartupError: If services do not become ready
        """
        logger.info("=" * 60)
        logger.info("Space Monitor Starting")
        logger.info("=" * 60)
        logger.info(f"Personal root: {self.config.personal_root}")
        logger.info(f"Spaces: {len(self.config.spaces)}")

        self.wait_for_services()

        if api_enabled is None:
            api_enabled = self.settings.api_enabled
        if api_enabled:
            self.start_api()

        self.start_tasks()
        self.running = True

    def request_shutdown(self, signum=None, frame=None) -> None:
        """Signal handler: ask run_forever to shut down."""
        if signum is not None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.shutdown_requested.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self.request_shutdown)
        signal.signal(signal.SIGINT, self.request_shutdown)

    def run_forever(self, api_enabled: Optional[bool] = None) -> None:
        """Start, block until a shutdown signal, then shut down."""
        self.install_signal_handlers()
        self.start(api_enabled)

        try:
            while not self.shutdown_requested.wait(1.0):
                pass
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Stop every task, watcher and the API server."""
        logger.info("=" * 60)
        logger.info("Space Monitor Shutting Down")
        logger.info("=" * 60)

        self.shutdown_requested.set()

        with self._timer_lock:
            timers = list(self._restart_timers.values())
            self._restart_timers.clear()
        for timer in timers:
            timer.cancel()

        self.scheduler.stop(wait=SHUTDOWN_WAIT)
        self.watcher_manager.stop_all()

        if self._api_server is not None:
            self._api_server.should_exit = True
            if self._api_thread is not None:
                self._api_thread.join(timeout=SHUTDOWN_WAIT)
            self._api_server = None
            self._api_thread = None

        self.running = False
        logger.info("Daemon stopped")


def load_config(config_file: Optional[Path] = None) -> MonitorConfig:
    """Load .env, the config file and environment overrides."""
    load_environment()
    return ConfigManager(config_file).effective_config()


def run_daemon(config_file: Optional[Path] = None, api_enabled: Optional[bool] = None) -> int:
    """
    Run the daemon until signalled.

    Returns:
        Process exit code
    """
    try:
        config = load_config(config_file)
    except ValueError as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    if not config.personal_root and not config.spaces:
        logger.error("No content roots configured. Use 'space-monitor init <personal_root>' first")
        return 1

    daemon = SpaceMonitorDaemon(config)
    try:
        daemon.run_forever(api_enabled)
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        return 1

    return 0


def main():
    """Daemon entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Space Monitor Daemon"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not serve the HTTP API"
    )

    args = parser.parse_args()

    configure_logging()
    sys.exit(run_daemon(args.config, api_enabled=False if args.no_api else None))


if __name__ == "__main__":
    main()

"""Tests for space_monitor.daemon module."""

import threading

import pytest
from unittest.mock import MagicMock, patch

from space_monitor.caching import RedisCacheBackend
from space_monitor.daemon import (
    CACHE_PROCESSOR, CONTENT_PROCESSOR, SEARCH_PROCESSOR, SPACE_WATCHER,
    SpaceMonitorDaemon, StartupError, run_daemon
)
from space_monitor.models import MonitorConfig, MonitorSettings


WAIT = 5.0


@pytest.fixture
def config(personal_root):
    config = MonitorConfig(settings=MonitorSettings(
        stability_ms=100,
        poll_interval=0.05,
        error_backoff=0.05,
        restart_delay=0.05,
        health_retries=2,
        health_delay=0.01,
        api_enabled=False,
    ))
    config.set_personal_root(str(personal_root))
    return config


@pytest.fixture
def daemon(config):
    daemon = SpaceMonitorDaemon(config)
    yield daemon
    daemon.shutdown()


class FlakyTask:
    """Task script failing a fixed number of times, then blocking until stopped."""

    def __init__(self, failures, error=RuntimeError):
        self.failures = failures
        self.error = error
        self.runs = 0
        self.recovered = threading.Event()

    def __call__(self, data, stop_event):
        self.runs += 1
        if self.runs <= self.failures:
            raise self.error(f"crash {self.runs}")
        self.recovered.set()
        stop_event.wait(WAIT)
        return "stopped"


class TestWiring:
    """Tests for component construction."""

    def test_builds_components(self, daemon, personal_root):
        assert daemon.cache_processor.cache is daemon.cache
        assert daemon.search_processor.search_index is daemon.search_index
        assert daemon.content_processor.queue_store is daemon.queue_store
        assert daemon.watcher_manager.root_ids() == [f"personal:{personal_root.resolve()}"]
        assert daemon.cache_processor.poll_interval == 0.05
        assert set(daemon.tasks) == {SPACE_WATCHER, CACHE_PROCESSOR, CONTENT_PROCESSOR, SEARCH_PROCESSOR}

    def test_injected_components(self, config, queue_store, cache):
        daemon = SpaceMonitorDaemon(config, queue_store=queue_store, cache=cache)
        assert daemon.queue_store is queue_store
        assert daemon.cache is cache

    def test_redis_backend(self, config):
        config.settings.cache_backend = "redis"
        config.settings.redis_url = "redis://cache:6379/0"
        with patch("redis.Redis.from_url"):
            daemon = SpaceMonitorDaemon(config)
        assert isinstance(daemon.cache.backend, RedisCacheBackend)


class TestReadiness:
    """Tests for wait_for_services."""

    def test_ready(self, daemon):
        daemon.wait_for_services()

    def test_retries_then_succeeds(self, config):
        cache = MagicMock()
        cache.status.side_effect = [False, True]
        daemon = SpaceMonitorDaemon(config, cache=cache)

        daemon.wait_for_services()

        assert cache.status.call_count == 2

    def test_not_ready(self, config):
        """Test startup aborts when a service never answers."""
        cache = MagicMock()
        cache.status.return_value = False
        daemon = SpaceMonitorDaemon(config, cache=cache)

        with pytest.raises(StartupError, match="cache service not ready after 2 attempts"):
            daemon.start()

        assert cache.status.call_count == 2
        assert daemon.scheduler.scheduled_tasks() == []

    def test_probe_exception_counts_as_down(self, config):
        search_index = MagicMock()
        search_index.status.side_effect = ConnectionError("refused")
        daemon = SpaceMonitorDaemon(config, search_index=search_index)

        with pytest.raises(StartupError):
            daemon.wait_for_services()


class TestLifecycle:
    """Tests for start and shutdown."""

    def test_start_schedules_all_tasks(self, daemon):
        daemon.start()

        assert daemon.running
        assert daemon.scheduler.scheduled_tasks() == sorted(daemon.tasks)

    def test_watcher_task_starts_watching(self, daemon, personal_root):
        daemon.start()

        for _ in range(100):
            if daemon.watcher_manager.get_watched_roots():
                break
            threading.Event().wait(0.05)

        assert daemon.watcher_manager.get_watched_roots() == set(daemon.watcher_manager.root_ids())

    def test_shutdown(self, daemon):
        daemon.start()
        daemon.shutdown()

        assert not daemon.running
        assert daemon.scheduler.scheduled_tasks() == []
        assert daemon.watcher_manager.get_watched_roots() == set()

    def test_request_shutdown(self, daemon):
        daemon.request_shutdown()
        assert daemon.shutdown_requested.is_set()

    def test_run_forever_exits_on_shutdown_request(self, daemon):
        daemon.install_signal_handlers = MagicMock()
        threading.Timer(0.2, daemon.request_shutdown).start()

        daemon.run_forever()

        assert not daemon.running
        daemon.install_signal_handlers.assert_called_once()


class TestCriticalRestart:
    """Tests for restarting critical tasks."""

    def test_critical_task_restarted(self, daemon):
        flaky = FlakyTask(failures=1)
        daemon.tasks[SPACE_WATCHER] = (flaky, {})

        daemon.start()

        assert flaky.recovered.wait(WAIT)
        assert flaky.runs == 2
        assert daemon.scheduler.is_running(SPACE_WATCHER)

    def test_critical_task_restarted_after_sys_exit(self, daemon):
        flaky = FlakyTask(failures=1, error=SystemExit)
        daemon.tasks[SPACE_WATCHER] = (flaky, {})

        daemon.start()

        assert flaky.recovered.wait(WAIT)
        assert flaky.runs == 2

    def test_non_critical_task_not_restarted(self, daemon):
        flaky = FlakyTask(failures=1)
        failed = threading.Event()
        daemon.tasks[CACHE_PROCESSOR] = (flaky, {})
        original = daemon._on_task_status

        def on_status(name, status, result):
            original(name, status, result)
            if name == CACHE_PROCESSOR:
                failed.set()

        daemon._on_task_status = on_status
        daemon.start()

        assert failed.wait(WAIT)
        assert not flaky.recovered.wait(0.3)
        assert flaky.runs == 1

    def test_repeated_errors_share_one_timer(self, daemon):
        daemon.settings.restart_delay = 60
        daemon._on_task_status(SPACE_WATCHER, "error", "boom")
        daemon._on_task_status(SPACE_WATCHER, "error", "boom again")

        assert list(daemon._restart_timers) == [SPACE_WATCHER]

    def test_shutdown_cancels_pending_restart(self, daemon):
        daemon.settings.restart_delay = 60
        daemon._on_task_status(SPACE_WATCHER, "error", "boom")
        timer = daemon._restart_timers[SPACE_WATCHER]

        daemon.shutdown()

        assert daemon._restart_timers == {}
        assert timer.finished.is_set()

    def test_no_restart_during_shutdown(self, daemon):
        daemon.shutdown_requested.set()
        daemon._on_task_status(SPACE_WATCHER, "error", "boom")
        assert daemon._restart_timers == {}


class TestRunDaemon:
    """Tests for run_daemon."""

    def test_no_roots_configured(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SPACE_MONITOR_PERSONAL_ROOT", raising=False)
        with patch("space_monitor.daemon.load_environment"):
            assert run_daemon(tmp_path / "config.json") == 1

    def test_startup_failure(self, tmp_path, monkeypatch, personal_root):
        monkeypatch.setenv("SPACE_MONITOR_PERSONAL_ROOT", str(personal_root))
        with patch("space_monitor.daemon.load_environment"), \
                patch.object(SpaceMonitorDaemon, "run_forever", side_effect=StartupError("down")):
            assert run_daemon(tmp_path / "config.json") == 1

    def test_runs(self, tmp_path, monkeypatch, personal_root):
        monkeypatch.setenv("SPACE_MONITOR_PERSONAL_ROOT", str(personal_root))
        with patch("space_monitor.daemon.load_environment"), \
                patch.object(SpaceMonitorDaemon, "run_forever") as run_forever:
            assert run_daemon(tmp_path / "config.json", api_enabled=False) == 0
        run_forever.assert_called_once_with(False)

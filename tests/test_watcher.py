"""Tests for space_monitor.watcher module."""

import threading
import time

import pytest
from unittest.mock import MagicMock
from watchdog.events import (
    DirCreatedEvent, DirDeletedEvent, DirModifiedEvent, FileCreatedEvent,
    FileDeletedEvent, FileModifiedEvent, FileMovedEvent
)

from conftest import FakeClock, drain
from space_monitor.models import FileAction, MonitorConfig, MonitorSettings, Priority, Scope
from space_monitor.watcher import (
    EventPublisher, SpaceRoot, SpaceWatcher, StabilityTracker, WatcherManager,
    build_roots, classify_priority, is_ignored, watch_spaces
)


class TestClassifyPriority:
    """Tests for classify_priority."""

    @pytest.mark.parametrize("path", [
        "settings.json", "app-config.yaml", "templates/page.html", "docs/templates/x.md", "CONFIG.txt",
        "deep/nested/site-config.md"
    ])
    def test_high(self, path):
        assert classify_priority(path) == Priority.HIGH

    @pytest.mark.parametrize("path", ["notes/today.md", "README.markdown", "script.py", "noext"])
    def test_medium(self, path):
        assert classify_priority(path) == Priority.MEDIUM

    @pytest.mark.parametrize("path", ["img/photo.PNG", "a.jpg", "b.jpeg", "c.gif", "d.pdf", "e.log", "f.txt"])
    def test_low(self, path):
        assert classify_priority(path) == Priority.LOW


class TestIsIgnored:
    """Tests for ignore patterns."""

    PATTERNS = [".git/", "node_modules/", ".DS_Store", "Thumbs.db", "*.tmp", "*.swp", "*.lock"]

    @pytest.mark.parametrize("path", [
        "/c/alice/.git/HEAD",
        "/c/alice/proj/node_modules/pkg/index.js",
        "/c/alice/.DS_Store",
        "/c/alice/Thumbs.db",
        "/c/alice/draft.md.tmp",
        "/c/alice/.note.md.swp",
        "/c/alice/package.lock",
    ])
    def test_ignored(self, path):
        assert is_ignored(path, self.PATTERNS)

    @pytest.mark.parametrize("path", ["/c/alice/notes.md", "/c/alice/gitnotes/a.md", "/c/alice/lockfile.md"])
    def test_not_ignored(self, path):
        assert not is_ignored(path, self.PATTERNS)

    def test_segments_above_root_not_matched(self):
        root = "/srv/node_modules/site/.git/content"
        assert not is_ignored(f"{root}/alice/notes.md", self.PATTERNS, root)
        assert is_ignored(f"{root}/alice/node_modules/x.js", self.PATTERNS, root)
        assert is_ignored(f"{root}/alice/draft.tmp", self.PATTERNS, root)

    def test_path_outside_root_checks_every_segment(self):
        assert is_ignored("/elsewhere/.git/HEAD", self.PATTERNS, "/srv/content")


class TestSpaceRoot:
    """Tests for SpaceRoot attribution."""

    def test_personal(self, personal_root):
        root = SpaceRoot(path=str(personal_root))
        full = personal_root / "alice" / "notes" / "a.md"
        assert root.resolve(str(full)) == ("alice", "notes/a.md")

    def test_personal_requires_user_and_file(self, personal_root):
        root = SpaceRoot(path=str(personal_root))
        assert root.resolve(str(personal_root / "alice")) is None
        assert root.resolve(str(personal_root / "toplevel.md")) is None

    def test_personal_dot_directory_is_not_a_user(self, personal_root):
        root = SpaceRoot(path=str(personal_root))
        assert root.resolve(str(personal_root / ".trash" / "a.md")) is None

    def test_outside_root(self, personal_root, temp_dir):
        root = SpaceRoot(path=str(personal_root))
        assert root.resolve(str(temp_dir / "elsewhere" / "a.md")) is None

    def test_space(self, space_root):
        root = SpaceRoot(path=str(space_root), scope=Scope.GIT, space_name="docs", access="readonly")
        assert root.resolve(str(space_root / "guide" / "intro.md")) == ("docs", "guide/intro.md")
        assert root.resolve(str(space_root)) is None
        assert root.root_id == "git:docs"

    def test_build_roots(self, personal_root, space_root):
        config = MonitorConfig()
        config.set_personal_root(str(personal_root))
        config.add_space("docs", str(space_root), access="readonly")

        roots = build_roots(config)

        assert [r.scope for r in roots] == [Scope.PERSONAL, Scope.GIT]
        assert roots[1].space_name == "docs"
        assert roots[1].access == "readonly"


class TestEventPublisher:
    """Tests for EventPublisher fan-out."""

    def _event(self, publisher, personal, personal_root, action, rel, is_directory=False):
        return publisher.build_event(personal, action, str(personal_root / "alice" / rel), is_directory)

    def test_add_markdown(self, publisher, personal, personal_root, queue_store):
        """Test add fans out to file-events, cache and content queues."""
        path = personal_root / "alice" / "notes" / "today.md"
        path.write_text("# Today")

        event = self._event(publisher, personal, personal_root, FileAction.ADD, "notes/today.md")
        publisher.publish(event)

        raw = drain(queue_store, "file-events")
        assert len(raw) == 1
        assert raw[0]["action"] == "add"
        assert raw[0]["path"] == "notes/today.md"
        assert raw[0]["username"] == "alice"
        assert raw[0]["scope"] == "personal"
        assert raw[0]["priority"] == "medium"
        assert raw[0]["fullPath"] == str(path)
        assert raw[0]["isDirectory"] is False
        assert raw[0]["size"] == len("# Today")

        cache_ops = drain(queue_store, "cache-updates-medium")
        assert [(op["action"], op["path"], op["username"]) for op in cache_ops] == [
            ("invalidate", "notes/today.md", "alice")
        ]

        content_ops = drain(queue_store, "content-processing-medium")
        assert content_ops[0]["action"] == "reindex"
        assert content_ops[0]["fullPath"] == str(path)

    def test_change_high_priority(self, publisher, personal, personal_root, queue_store):
        event = self._event(publisher, personal, personal_root, FileAction.CHANGE, "settings.json")
        publisher.publish(event)

        assert queue_store.size("cache-updates-high") == 1
        assert queue_store.size("content-processing-high") == 1
        assert queue_store.size("cache-updates-medium") == 0

    def test_unlink(self, publisher, personal, personal_root, queue_store):
        """Test unlink fans out cache remove and search remove."""
        event = self._event(publisher, personal, personal_root, FileAction.UNLINK, "notes/old.md")
        publisher.publish(event)

        assert drain(queue_store, "cache-updates-medium")[0]["action"] == "remove"
        assert drain(queue_store, "search-indexing-medium")[0]["action"] == "remove"
        assert queue_store.size("content-processing-medium") == 0

    def test_unlink_dir(self, publisher, personal, personal_root, queue_store):
        event = self._event(publisher, personal, personal_root, FileAction.UNLINK_DIR, "notes", True)
        publisher.publish(event)

        assert drain(queue_store, "cache-updates-medium")[0]["action"] == "remove"
        assert drain(queue_store, "search-indexing-medium")[0]["action"] == "remove"

    def test_add_dir(self, publisher, personal, personal_root, queue_store):
        """Test addDir only refreshes the tree."""
        event = self._event(publisher, personal, personal_root, FileAction.ADD_DIR, "notes", True)
        publisher.publish(event)

        assert drain(queue_store, "cache-updates-medium")[0]["action"] == "refresh-tree"
        assert queue_store.size("content-processing-medium") == 0
        assert queue_store.size("search-indexing-medium") == 0

    def test_space_event_carries_space_fields(self, publisher, space_root, queue_store):
        root = SpaceRoot(path=str(space_root), scope=Scope.GIT, space_name="docs", access="readonly")
        (space_root / "intro.md").write_text("x")

        publisher.publish(publisher.build_event(root, FileAction.ADD, str(space_root / "intro.md")))

        raw = queue_store.dequeue("file-events")
        assert raw["scope"] == "git"
        assert raw["spaceName"] == "docs"
        assert raw["spaceAccess"] == "readonly"
        assert "username" not in raw
        assert queue_store.dequeue("cache-updates-medium")["spaceName"] == "docs"

    def test_unattributable_path(self, publisher, personal, personal_root):
        assert publisher.build_event(personal, FileAction.ADD, str(personal_root / "stray.md")) is None


class TestStabilityTracker:
    """Tests for StabilityTracker class."""

    def test_not_ready_before_window(self, clock):
        tracker = StabilityTracker(2000, clock)
        tracker.record("/a.md", FileAction.ADD)
        clock.advance(1.9)
        assert tracker.pop_ready() == []

    def test_ready_after_window(self, clock):
        tracker = StabilityTracker(2000, clock)
        tracker.record("/a.md", FileAction.CHANGE)
        clock.advance(2.0)
        assert tracker.pop_ready() == [("/a.md", FileAction.CHANGE)]
        assert tracker.pending_count() == 0

    def test_new_write_restarts_window(self, clock):
        tracker = StabilityTracker(2000, clock)
        tracker.record("/a.md", FileAction.CHANGE)
        clock.advance(1.5)
        tracker.record("/a.md", FileAction.CHANGE)
        clock.advance(1.5)
        assert tracker.pop_ready() == []
        clock.advance(0.5)
        assert len(tracker.pop_ready()) == 1

    def test_add_then_change_stays_add(self, clock):
        tracker = StabilityTracker(2000, clock)
        tracker.record("/a.md", FileAction.ADD)
        tracker.record("/a.md", FileAction.CHANGE)
        clock.advance(2.0)
        assert tracker.pop_ready() == [("/a.md", FileAction.ADD)]

    def test_discard(self, clock):
        tracker = StabilityTracker(2000, clock)
        tracker.record("/a.md", FileAction.ADD)
        assert tracker.discard("/a.md") is True
        assert tracker.discard("/a.md") is False
        clock.advance(5)
        assert tracker.pop_ready() == []


class TestSpaceWatcher:
    """Tests for SpaceWatcher event handling (no observer)."""

    @pytest.fixture
    def watcher(self, personal, publisher, clock):
        return SpaceWatcher(personal, publisher, stability_ms=2000, clock=clock)

    def test_write_is_debounced(self, watcher, personal_root, queue_store, clock):
        """Test that a file write is published once after it settles."""
        path = personal_root / "alice" / "notes" / "a.md"
        path.write_text("v1")

        watcher.on_created(FileCreatedEvent(str(path)))
        watcher.on_modified(FileModifiedEvent(str(path)))
        watcher.on_modified(FileModifiedEvent(str(path)))

        assert watcher.flush() == 0
        assert queue_store.size("file-events") == 0

        clock.advance(2.0)
        assert watcher.flush() == 1

        raw = drain(queue_store, "file-events")
        assert [r["action"] for r in raw] == ["add"]

    def test_unlink_cancels_pending_write(self, watcher, personal_root, queue_store, clock):
        """Test a delete within the window publishes only the unlink."""
        path = personal_root / "alice" / "notes" / "a.md"
        path.write_text("v1")
        watcher.on_created(FileCreatedEvent(str(path)))

        watcher.on_deleted(FileDeletedEvent(str(path)))
        clock.advance(5.0)
        watcher.flush()

        assert [r["action"] for r in drain(queue_store, "file-events")] == ["unlink"]

    def test_vanished_file_is_skipped(self, watcher, personal_root, queue_store, clock):
        path = personal_root / "alice" / "notes" / "a.md"
        watcher.handle_change(FileAction.ADD, str(path))
        clock.advance(2.0)
        assert watcher.flush() == 0
        assert queue_store.size("file-events") == 0

    def test_directory_events_are_immediate(self, watcher, personal_root, queue_store):
        folder = personal_root / "alice" / "projects"
        folder.mkdir()

        watcher.on_created(DirCreatedEvent(str(folder)))
        watcher.on_deleted(DirDeletedEvent(str(folder)))

        assert [r["action"] for r in drain(queue_store, "file-events")] == ["addDir", "unlinkDir"]

    def test_directory_modified_ignored(self, watcher, personal_root, queue_store):
        watcher.on_modified(DirModifiedEvent(str(personal_root / "alice")))
        assert queue_store.size("file-events") == 0

    def test_move(self, watcher, personal_root, queue_store, clock):
        """Test a rename becomes unlink of the source and add of the destination."""
        src = personal_root / "alice" / "notes" / "old.md"
        dest = personal_root / "alice" / "notes" / "new.md"
        dest.write_text("moved")

        watcher.on_moved(FileMovedEvent(str(src), str(dest)))
        clock.advance(2.0)
        watcher.flush()

        raw = drain(queue_store, "file-events")
        assert [(r["action"], r["path"]) for r in raw] == [("unlink", "notes/old.md"), ("add", "notes/new.md")]

    def test_ignored_paths(self, watcher, personal_root, queue_store):
        git_file = personal_root / "alice" / ".git" / "HEAD"
        watcher.handle_change(FileAction.UNLINK, str(git_file))
        watcher.handle_change(FileAction.UNLINK, str(personal_root / "alice" / "x.swp"))
        assert queue_store.size("file-events") == 0

    def test_root_below_ignored_folder(self, publisher, temp_dir, queue_store, clock):
        """Test a root nested inside node_modules still publishes its changes."""
        content = temp_dir / "node_modules" / "site" / "content"
        (content / "alice").mkdir(parents=True)
        path = content / "alice" / "a.md"
        path.write_text("a")
        watcher = SpaceWatcher(SpaceRoot(path=str(content)), publisher, clock=clock)

        watcher.handle_change(FileAction.ADD, str(path))
        clock.advance(5.0)
        assert watcher.flush() == 1
        assert watcher.scan_existing() == 1

        raw = drain(queue_store, "file-events")
        assert [(r["action"], r["path"]) for r in raw] == [("add", "a.md"), ("add", "a.md")]

    def test_scan_existing(self, watcher, personal_root, queue_store):
        """Test initial scan publishes the current tree."""
        (personal_root / "alice" / "notes" / "a.md").write_text("a")
        (personal_root / "alice" / "b.txt").write_text("b")
        (personal_root / "alice" / ".DS_Store").write_text("")

        count = watcher.scan_existing()

        raw = drain(queue_store, "file-events")
        assert count == len(raw)
        assert {(r["action"], r["path"]) for r in raw} == {
            ("addDir", "notes"), ("add", "notes/a.md"), ("add", "b.txt")
        }

    def test_publish_failure_is_logged(self, personal, personal_root, clock):
        """Test a failing queue does not break the watcher."""
        publisher = MagicMock(spec=EventPublisher)
        publisher.build_event.return_value = MagicMock()
        publisher.publish.side_effect = ConnectionError("queue down")
        watcher = SpaceWatcher(personal, publisher, clock=clock)

        watcher.handle_change(FileAction.UNLINK, str(personal_root / "alice" / "a.md"))

        publisher.publish.assert_called_once()

    def test_start_stop(self, watcher):
        watcher.start()
        try:
            assert watcher.is_running()
        finally:
            watcher.stop()
        assert not watcher.is_running()

    def test_start_missing_root(self, publisher, temp_dir):
        watcher = SpaceWatcher(SpaceRoot(path=str(temp_dir / "missing")), publisher)
        watcher.start()
        assert not watcher.is_running()


class TestWatcherWithObserver:
    """End-to-end tests with a real watchdog observer."""

    def test_detects_new_file(self, personal, personal_root, queue_store):
        watcher = SpaceWatcher(personal, EventPublisher(queue_store), stability_ms=100)
        watcher.start()
        try:
            (personal_root / "alice" / "notes" / "live.md").write_text("hello")

            deadline = time.monotonic() + 10
            while queue_store.size("content-processing-medium") == 0 and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            watcher.stop()

        task = queue_store.dequeue("content-processing-medium")
        assert task["action"] == "reindex"
        assert task["path"] == "notes/live.md"


class TestWatcherManager:
    """Tests for WatcherManager class."""

    @pytest.fixture
    def manager(self, publisher):
        manager = WatcherManager(publisher, MonitorSettings(stability_ms=100))
        yield manager
        manager.stop_all()

    def test_add_root(self, manager, personal):
        watcher = manager.add_root(personal)
        assert manager.add_root(personal) is watcher
        assert manager.root_ids() == [personal.root_id]
        assert watcher.tracker.window_seconds == 0.1

    def test_start_stop_all(self, manager, personal, space_root):
        manager.add_root(personal)
        manager.add_root(SpaceRoot(path=str(space_root), scope=Scope.GIT, space_name="docs"))

        manager.start_all()
        assert manager.get_watched_roots() == {personal.root_id, "git:docs"}

        manager.stop_all()
        assert manager.get_watched_roots() == set()
        assert len(manager.root_ids()) == 2

    def test_remove_root(self, manager, personal):
        manager.add_root(personal, start=True)
        assert manager.is_watching(personal.root_id)

        manager.remove_root(personal.root_id)
        assert not manager.is_watching(personal.root_id)
        assert manager.root_ids() == []


class TestWatchSpaces:
    """Tests for the watch_spaces task script."""

    def test_runs_until_stopped(self, publisher, personal):
        manager = WatcherManager(publisher)
        manager.add_root(personal)
        stop_event = threading.Event()
        result = {}

        thread = threading.Thread(
            target=lambda: result.setdefault("value", watch_spaces({"manager": manager}, stop_event))
        )
        thread.start()

        deadline = time.monotonic() + 5
        while not manager.get_watched_roots() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert manager.get_watched_roots() == {personal.root_id}

        stop_event.set()
        thread.join(5)

        assert result["value"] == "stopped"
        assert manager.get_watched_roots() == set()

    def test_raises_when_observer_dies(self, publisher, personal):
        """Test a dead observer fails the task so it can be restarted."""
        manager = MagicMock(spec=WatcherManager)
        manager.root_ids.return_value = [personal.root_id]
        manager.get_watched_roots.return_value = set()
        stop_event = MagicMock()
        stop_event.wait.return_value = False

        with pytest.raises(RuntimeError, match="Watcher stopped unexpectedly"):
            watch_spaces({"manager": manager}, stop_event)

        manager.stop_all.assert_called_once()

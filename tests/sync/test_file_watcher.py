"""
Tests for ProjectFileWatcher filtering, sanitizing renames and event emission.

Most tests drive ``process_raw_event`` directly so they do not depend on
platform notification latency; one test runs the real watchdog observer.
"""

import asyncio
import platform

import pytest

from core.errors import SanitizationError
from core.models.config import WatcherConfig
from core.sync.events import SyncEventKind
from core.sync.queue import SyncEventQueue
from core.sync.watcher import ProjectFileWatcher, WatcherState

# Notification latency differs per platform
EVENT_TIMEOUT = 5.0 if platform.system() == "Darwin" else 3.0


@pytest.fixture
def files_dir(tmp_path):
    directory = tmp_path / "files"
    directory.mkdir()
    return directory


class TestWatcherFiltering:
    """Test which paths are watched"""

    def test_should_watch(self, files_dir):
        watcher = ProjectFileWatcher(files_dir)

        assert watcher.should_watch(files_dir / "App.tsx")
        assert watcher.should_watch(files_dir / "lib" / "util.ts")
        assert not watcher.should_watch(files_dir / "notes.txt")
        assert not watcher.should_watch(files_dir / ".hidden.ts")
        assert not watcher.should_watch(files_dir / ".git" / "config.json")
        assert not watcher.should_watch(files_dir.parent / "outside.ts")

    @pytest.mark.asyncio
    async def test_unsupported_extension_emits_nothing(self, files_dir):
        events = []
        watcher = ProjectFileWatcher(files_dir, event_callback=events.append)
        path = files_dir / "readme.txt"
        path.write_text("hello")

        assert await watcher.process_raw_event("add", path) is None
        assert events == []
        assert watcher.get_status()["events_ignored"] == 1


class TestWatcherEvents:
    """Test event emission for add, change and unlink"""

    @pytest.mark.asyncio
    async def test_add_reads_content(self, files_dir):
        queue = SyncEventQueue()
        await queue.start()
        watcher = ProjectFileWatcher(files_dir, event_queue=queue)

        path = files_dir / "App.tsx"
        path.write_text("export default () => null")

        event = await watcher.process_raw_event("add", path)
        assert event.kind is SyncEventKind.ADD
        assert event.relative_path == "App.tsx"
        assert event.content == "export default () => null"

        queued = await queue.dequeue(timeout=1.0)
        assert queued.event_id == event.event_id
        await queue.stop()

    @pytest.mark.asyncio
    async def test_nested_change(self, files_dir):
        (files_dir / "lib").mkdir()
        path = files_dir / "lib" / "util.ts"
        path.write_text("export const a = 1")

        watcher = ProjectFileWatcher(files_dir)
        event = await watcher.process_raw_event("change", path)

        assert event.kind is SyncEventKind.CHANGE
        assert event.relative_path == "lib/util.ts"

    @pytest.mark.asyncio
    async def test_unlink_has_no_content(self, files_dir):
        watcher = ProjectFileWatcher(files_dir)
        event = await watcher.process_raw_event("unlink", files_dir / "Gone.tsx")

        assert event.kind is SyncEventKind.UNLINK
        assert event.content is None

    @pytest.mark.asyncio
    async def test_vanished_file_is_dropped(self, files_dir):
        errors = []
        watcher = ProjectFileWatcher(files_dir, error_callback=errors.append)

        assert await watcher.process_raw_event("change", files_dir / "Missing.tsx") is None
        assert errors == []

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, files_dir):
        seen = []

        async def on_event(event):
            await asyncio.sleep(0)
            seen.append(event.relative_path)

        path = files_dir / "a.ts"
        path.write_text("x")
        watcher = ProjectFileWatcher(files_dir, event_callback=on_event)
        await watcher.process_raw_event("add", path)

        assert seen == ["a.ts"]


class TestSanitizingRename:
    """Test renaming of files whose names cannot be synced"""

    @pytest.mark.asyncio
    async def test_bad_name_is_renamed(self, files_dir):
        original = files_dir / "bad name!.tsx"
        original.write_text("content")
        watcher = ProjectFileWatcher(files_dir)

        event = await watcher.process_raw_event("add", original)

        assert event.relative_path == "bad_name_.tsx"
        assert event.content == "content"
        assert not original.exists()
        assert (files_dir / "bad_name_.tsx").read_text() == "content"
        assert watcher.get_status()["renames"] == 1

    @pytest.mark.asyncio
    async def test_unlink_from_own_rename_is_suppressed(self, files_dir):
        original = files_dir / "bad name!.tsx"
        original.write_text("content")
        watcher = ProjectFileWatcher(files_dir)

        await watcher.process_raw_event("add", original)
        assert await watcher.process_raw_event("unlink", original) is None

    @pytest.mark.asyncio
    async def test_collision_is_reported(self, files_dir):
        (files_dir / "bad_name_.tsx").write_text("existing")
        original = files_dir / "bad name!.tsx"
        original.write_text("new")
        errors = []
        watcher = ProjectFileWatcher(files_dir, error_callback=errors.append)

        assert await watcher.process_raw_event("add", original) is None
        assert original.exists()
        assert (files_dir / "bad_name_.tsx").read_text() == "existing"
        assert len(errors) == 1
        assert isinstance(errors[0], SanitizationError)

    @pytest.mark.asyncio
    async def test_existing_names_normalized_without_events(self, files_dir):
        (files_dir / "bad name!.tsx").write_text("one")
        (files_dir / "lib dir").mkdir()
        (files_dir / "lib dir" / "util.ts").write_text("two")
        (files_dir / "Good.tsx").write_text("three")
        events = []
        watcher = ProjectFileWatcher(files_dir, event_callback=events.append)

        assert await watcher.normalize_existing_names() == 2

        assert (files_dir / "bad_name_.tsx").read_text() == "one"
        assert (files_dir / "lib_dir" / "util.ts").read_text() == "two"
        assert (files_dir / "Good.tsx").read_text() == "three"
        assert not (files_dir / "bad name!.tsx").exists()
        assert events == []

    @pytest.mark.asyncio
    async def test_existing_collision_keeps_both_files(self, files_dir):
        (files_dir / "a b.tsx").write_text("spaced")
        (files_dir / "a_b.tsx").write_text("underscored")
        errors = []
        watcher = ProjectFileWatcher(files_dir, error_callback=errors.append)

        assert await watcher.normalize_existing_names() == 0

        assert (files_dir / "a b.tsx").read_text() == "spaced"
        assert (files_dir / "a_b.tsx").read_text() == "underscored"
        assert [type(e) for e in errors] == [SanitizationError]


class TestWatcherLifecycle:
    """Test start and close with the real observer"""

    @pytest.mark.asyncio
    async def test_start_fails_for_missing_directory(self, tmp_path):
        watcher = ProjectFileWatcher(tmp_path / "missing")
        assert await watcher.start() is False
        assert watcher.get_status()["error_count"] == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, files_dir):
        watcher = ProjectFileWatcher(files_dir, config=WatcherConfig(initial_scan=False))
        assert await watcher.start() is True
        await watcher.close()
        await watcher.close()

        assert watcher.state is WatcherState.CLOSED
        assert await watcher.start() is False

    @pytest.mark.asyncio
    async def test_initial_scan(self, files_dir):
        (files_dir / "A.tsx").write_text("a")
        (files_dir / "skip.txt").write_text("b")
        events = []

        async with ProjectFileWatcher(files_dir, event_callback=events.append):
            pass

        assert [e.relative_path for e in events] == ["A.tsx"]

    @pytest.mark.asyncio
    async def test_real_observer_reports_new_file(self, files_dir):
        events = []
        watcher = ProjectFileWatcher(
            files_dir,
            config=WatcherConfig(initial_scan=False),
            event_callback=events.append,
        )
        await watcher.start()
        try:
            (files_dir / "Fresh.tsx").write_text("hello")

            deadline = asyncio.get_running_loop().time() + EVENT_TIMEOUT
            while asyncio.get_running_loop().time() < deadline:
                if any(e.relative_path == "Fresh.tsx" and e.content == "hello" for e in events):
                    break
                await asyncio.sleep(0.05)

            assert any(e.relative_path == "Fresh.tsx" for e in events)
        finally:
            await watcher.close()

    @pytest.mark.asyncio
    async def test_real_observer_renames_bad_name(self, files_dir):
        events = []
        watcher = ProjectFileWatcher(
            files_dir,
            config=WatcherConfig(initial_scan=False),
            event_callback=events.append,
        )
        await watcher.start()
        try:
            (files_dir / "bad name!.tsx").write_text("export const X = 1;")

            deadline = asyncio.get_running_loop().time() + EVENT_TIMEOUT
            while asyncio.get_running_loop().time() < deadline:
                if any(e.relative_path == "bad_name_.tsx" for e in events):
                    break
                await asyncio.sleep(0.05)

            # Give the move notification caused by the rename time to arrive
            await asyncio.sleep(0.5)

            assert [(e.kind, e.relative_path) for e in events] == [(SyncEventKind.ADD, "bad_name_.tsx")]
            assert "export const X = 1;" in events[0].content
            assert sorted(p.name for p in files_dir.iterdir()) == ["bad_name_.tsx"]
            assert watcher.get_status()["renames"] == 1
        finally:
            await watcher.close()

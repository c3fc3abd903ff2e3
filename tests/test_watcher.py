"""Tests for the directory scanner."""

import os
import shutil
import threading
import time

import pytest
from watchdog.events import FileCreatedEvent, FileMovedEvent

from drop_sync.dispatcher import Dispatcher
from drop_sync.errors import DiscoveryError
from drop_sync.watcher import FileFilter, ScanTrigger, Watcher


def _touch(path, mtime, content=b"data"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


def _drain(dispatcher):
    items = []
    while dispatcher.qsize:
        items.append(dispatcher.dequeue())
    return items


@pytest.fixture
def clock():
    return [time.time()]


@pytest.fixture
def dispatcher():
    return Dispatcher(maxsize=100)


@pytest.fixture
def make_watcher(watch_root, registry, dispatcher, progress_dir, clock):
    def _make(**kwargs):
        kwargs.setdefault("suffix", ".pdf")
        kwargs.setdefault("prepared_time", 30)
        kwargs.setdefault("walk_interval", 0.05)
        return Watcher(
            str(watch_root),
            registry,
            dispatcher,
            skip_dirs=[str(progress_dir)],
            clock=lambda: clock[0],
            **kwargs,
        )

    return _make


class TestStabilityGating:
    def test_recent_file_is_not_enqueued(self, watch_root, make_watcher, dispatcher, registry, clock):
        path = _touch(watch_root / "a.pdf", clock[0] - 10)

        assert make_watcher().scan_once() == []
        assert dispatcher.qsize == 0
        assert str(path) not in registry

    def test_file_becomes_eligible_exactly_once(self, watch_root, make_watcher, dispatcher, clock):
        path = _touch(watch_root / "a.pdf", clock[0] - 10)
        watcher = make_watcher(prepared_time=30)

        assert watcher.scan_once() == []
        clock[0] += 31
        first = watcher.scan_once()
        second = watcher.scan_once()

        assert [t.path for t in first] == [str(path)]
        assert second == []
        assert dispatcher.qsize == 1

    def test_old_file_is_enqueued_with_metadata(self, watch_root, make_watcher, dispatcher, clock):
        path = _touch(watch_root / "a.pdf", clock[0] - 100, b"hello")

        make_watcher().scan_once()

        task = dispatcher.dequeue()
        assert task.path == str(path)
        assert task.size == 5
        assert task.last_modified == os.stat(path).st_mtime_ns

    def test_future_mtime_waits(self, watch_root, make_watcher, dispatcher, clock):
        _touch(watch_root / "a.pdf", clock[0] + 3600)

        assert make_watcher(prepared_time=0).scan_once() == []


class TestFiltering:
    def test_suffix_filter(self, watch_root, make_watcher, dispatcher, clock):
        old = clock[0] - 100
        _touch(watch_root / "a.pdf", old)
        _touch(watch_root / "b.PDF", old)
        _touch(watch_root / "c.txt", old)

        make_watcher().scan_once()

        names = sorted(os.path.basename(t.path) for t in _drain(dispatcher))
        assert names == ["a.pdf", "b.PDF"]

    def test_empty_suffix_accepts_all(self, watch_root, make_watcher, dispatcher, clock):
        old = clock[0] - 100
        _touch(watch_root / "a.pdf", old)
        _touch(watch_root / "c.txt", old)

        make_watcher(suffix="").scan_once()

        assert dispatcher.qsize == 2

    def test_nested_directories_are_scanned_in_order(self, watch_root, make_watcher, dispatcher, clock):
        old = clock[0] - 100
        _touch(watch_root / "z.pdf", old)
        _touch(watch_root / "sub" / "deeper" / "a.pdf", old)

        tasks = make_watcher().scan_once()

        assert [t.path for t in tasks] == sorted(t.path for t in tasks)
        assert len(tasks) == 2

    def test_checkpoint_directory_is_skipped(self, watch_root, progress_dir, make_watcher, dispatcher, clock):
        _touch(progress_dir / "x.pdf", clock[0] - 100)

        assert make_watcher(suffix="").scan_once() == []

    def test_exclude_patterns(self, watch_root, make_watcher, dispatcher, clock):
        old = clock[0] - 100
        _touch(watch_root / "~lock.pdf", old)
        _touch(watch_root / "keep.pdf", old)

        tasks = make_watcher(exclude_patterns=["~*"]).scan_once()

        assert [os.path.basename(t.path) for t in tasks] == ["keep.pdf"]

    def test_registered_path_is_not_requeued(self, watch_root, make_watcher, dispatcher, registry, clock):
        path = _touch(watch_root / "a.pdf", clock[0] - 100)
        registry.try_insert(str(path))

        assert make_watcher().scan_once() == []


class TestDiscoveryFailure:
    def test_missing_root_raises(self, watch_root, make_watcher):
        watcher = make_watcher()
        shutil.rmtree(watch_root)

        with pytest.raises(DiscoveryError):
            watcher.scan_once()

    def test_run_halts_on_missing_root(self, watch_root, make_watcher):
        watcher = make_watcher()
        shutil.rmtree(watch_root)

        watcher.run()

        assert isinstance(watcher.error, DiscoveryError)

    def test_start_requires_existing_root(self, watch_root, make_watcher):
        watcher = make_watcher()
        shutil.rmtree(watch_root)

        with pytest.raises(FileNotFoundError):
            watcher.start()


class TestLifecycle:
    def test_background_loop_picks_up_new_files(self, watch_root, make_watcher, dispatcher, clock):
        watcher = make_watcher()
        watcher.start()
        try:
            _touch(watch_root / "late.pdf", clock[0] - 100)
            task = dispatcher.dequeue()
        finally:
            dispatcher.close()
            watcher.stop()

        assert task is not None
        assert os.path.basename(task.path) == "late.pdf"
        assert not watcher.is_running

    def test_closed_dispatcher_releases_path(self, watch_root, registry, progress_dir, clock):
        path = _touch(watch_root / "a.pdf", clock[0] - 100)
        closed = Dispatcher(maxsize=1)
        closed.close()
        watcher = Watcher(str(watch_root), registry, closed, suffix=".pdf",
                          prepared_time=0, clock=lambda: clock[0])

        assert watcher.scan_once() == []
        assert str(path) not in registry


class TestScanTrigger:
    def test_matching_event_wakes_scanner(self):
        wake = threading.Event()
        trigger = ScanTrigger(FileFilter(".pdf"), wake)

        trigger.on_created(FileCreatedEvent("/in/a.pdf"))

        assert wake.is_set()

    def test_other_suffix_is_ignored(self):
        wake = threading.Event()
        trigger = ScanTrigger(FileFilter(".pdf"), wake)

        trigger.on_created(FileCreatedEvent("/in/a.tmp"))

        assert not wake.is_set()

    def test_move_into_folder_uses_destination(self):
        wake = threading.Event()
        trigger = ScanTrigger(FileFilter(".pdf"), wake)

        trigger.on_moved(FileMovedEvent("/in/a.tmp", "/in/a.pdf"))

        assert wake.is_set()

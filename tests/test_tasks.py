"""Unit tests for the task registry."""

import threading

from drop_sync.tasks import TaskRegistry


class TestTaskRegistry:
    def test_insert_once(self):
        registry = TaskRegistry()

        assert registry.try_insert("/in/a.pdf") is True
        assert registry.try_insert("/in/a.pdf") is False
        assert "/in/a.pdf" in registry
        assert len(registry) == 1

    def test_remove_allows_reinsert(self):
        registry = TaskRegistry()
        registry.try_insert("/in/a.pdf")

        registry.remove("/in/a.pdf")

        assert "/in/a.pdf" not in registry
        assert registry.try_insert("/in/a.pdf") is True

    def test_release_with_cooldown_blocks_until_elapsed(self):
        now = [100.0]
        registry = TaskRegistry(clock=lambda: now[0])
        registry.try_insert("/in/a.pdf")

        registry.release("/in/a.pdf", cooldown=30)

        assert "/in/a.pdf" not in registry
        now[0] = 129.0
        assert registry.try_insert("/in/a.pdf") is False
        now[0] = 130.0
        assert registry.try_insert("/in/a.pdf") is True

    def test_release_without_cooldown(self):
        registry = TaskRegistry()
        registry.try_insert("/in/a.pdf")

        registry.release("/in/a.pdf")

        assert registry.try_insert("/in/a.pdf") is True

    def test_paths_are_sorted(self):
        registry = TaskRegistry()
        for p in ("/b", "/a", "/c"):
            registry.try_insert(p)
        assert registry.paths == ["/a", "/b", "/c"]

    def test_concurrent_inserts_admit_exactly_one(self):
        registry = TaskRegistry()
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            ok = registry.try_insert("/in/same.pdf")
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

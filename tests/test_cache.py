import sys
import tempfile
import threading
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from npm_inspector.cache import MemoryCache, SqliteCache, build_cache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class CacheContract:
    """Shared checks for both cache backends; subclasses provide make_cache()."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = self.make_cache()

    def test_miss_returns_none(self):
        self.assertIsNone(self.cache.get("npm:nothing"))
        self.assertFalse(self.cache.has("npm:nothing"))

    def test_set_then_get(self):
        self.cache.set("npm:express", {"name": "express", "version": "4.18.2"})
        self.assertEqual(self.cache.get("npm:express"), {"name": "express", "version": "4.18.2"})
        self.assertTrue(self.cache.has("npm:express"))

    def test_entries_expire_after_default_ttl(self):
        self.cache.set("npm:express", {"name": "express"})
        self.clock.now += 3599
        self.assertIsNotNone(self.cache.get("npm:express"))
        self.clock.now += 1
        self.assertIsNone(self.cache.get("npm:express"))
        self.assertEqual(self.cache.size(), 0)

    def test_custom_ttl(self):
        self.cache.set("github:a/b", {"openIssues": 3}, ttl=900)
        self.clock.now += 901
        self.assertIsNone(self.cache.get("github:a/b"))

    def test_stats_and_clear(self):
        self.cache.set("a", [1])
        self.cache.set("b", [2], ttl=10)
        self.clock.now += 20
        self.assertEqual(self.cache.stats(), {"total": 2, "expired": 1, "valid": 1})
        self.cache.clear()
        self.assertEqual(self.cache.size(), 0)


class TestMemoryCache(CacheContract, unittest.TestCase):
    def make_cache(self):
        return MemoryCache(clock=self.clock)


class TestMemoryCacheThreads(unittest.TestCase):
    def test_size_under_concurrent_writers(self):
        cache = MemoryCache()

        def writer(offset):
            for i in range(200):
                cache.set(f"npm:pkg-{offset}-{i}", {"i": i})
                cache.size()

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(cache.size(), 800)
        self.assertEqual(cache.stats()["valid"], 800)


class TestSqliteCache(CacheContract, unittest.TestCase):
    def make_cache(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        return SqliteCache(Path(self.tmp_dir.name) / "cache.sqlite", clock=self.clock)

    def tearDown(self):
        self.cache.close()
        self.tmp_dir.cleanup()

    def test_values_survive_reopen(self):
        self.cache.set("osv:a@1.0.0", [{"id": "GHSA-1"}])
        self.cache.close()
        reopened = SqliteCache(self.cache.db_path, clock=self.clock)
        self.assertEqual(reopened.get("osv:a@1.0.0"), [{"id": "GHSA-1"}])
        reopened.close()


class TestBuildCache(unittest.TestCase):
    def test_backends(self):
        self.assertIsNone(build_cache("none"))
        self.assertIsInstance(build_cache("memory"), MemoryCache)
        self.assertIsInstance(build_cache(None), MemoryCache)
        self.assertIsInstance(build_cache("redis"), MemoryCache)


if __name__ == '__main__':
    unittest.main()

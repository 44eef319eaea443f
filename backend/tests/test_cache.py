from __future__ import annotations

import threading
from pathlib import Path

import pytest

from spacelens.cache import FuzzyHashCache


def test_cache_round_trip_and_persistence(tmp_path: Path):
    db_path = tmp_path / "nested" / "cache.db"
    key = (1, 42, 1024, 1700000000.5)

    with FuzzyHashCache(db_path) as cache:
        assert cache.get(key) is None
        cache.set(key, "3:abc:def")
        cache.set(key, "3:abc:xyz")
        assert len(cache) == 1

    with FuzzyHashCache(db_path) as reopened:
        assert reopened.get(key) == "3:abc:xyz"
        assert reopened.get((1, 42, 1024, 1700000001.0)) is None


def test_closed_cache_rejects_use(tmp_path: Path):
    cache = FuzzyHashCache(tmp_path / "cache.db")
    cache.close()
    cache.close()
    with pytest.raises(RuntimeError):
        cache.get((0, 0, 0, 0.0))


def test_cache_is_shared_across_threads(tmp_path: Path):
    with FuzzyHashCache(tmp_path / "cache.db") as cache:
        def writer(offset: int) -> None:
            for inode in range(offset, offset + 25):
                cache.set((1, inode, 10, 1.0), f"3:{inode}:x")

        threads = [threading.Thread(target=writer, args=(start,)) for start in (0, 25, 50, 75)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 100
        assert cache.get((1, 60, 10, 1.0)) == "3:60:x"

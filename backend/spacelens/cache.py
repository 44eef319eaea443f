from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Optional, Tuple

# (device, inode, size, mtime)
FileCacheKey = Tuple[int, int, int, float]

SCHEMA = """
CREATE TABLE IF NOT EXISTS fuzzy_hashes (
    device INTEGER NOT NULL,
    inode INTEGER NOT NULL,
    size INTEGER NOT NULL,
    mtime REAL NOT NULL,
    fuzzy_hash TEXT NOT NULL,
    PRIMARY KEY (device, inode, size, mtime)
)
"""


class FuzzyHashCache:
    """Fuzzy hashes keyed by file identity, persisted in SQLite.

    A single connection is shared between scanner threads and serialized
    with a lock. A changed size or mtime yields a new key, so stale entries
    are never returned.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute(SCHEMA)
        self._conn.commit()

    def __enter__(self) -> "FuzzyHashCache":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return self._connection().execute("SELECT COUNT(*) FROM fuzzy_hashes").fetchone()[0]

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError(f"Hash cache {self.db_path} is closed")
        return self._conn

    def get(self, key: FileCacheKey) -> Optional[str]:
        with self._lock:
            row = self._connection().execute(
                "SELECT fuzzy_hash FROM fuzzy_hashes WHERE device=? AND inode=? AND size=? AND mtime=?",
                key,
            ).fetchone()
        return row[0] if row else None

    def set(self, key: FileCacheKey, value: str) -> None:
        with self._lock:
            conn = self._connection()
            conn.execute("INSERT OR REPLACE INTO fuzzy_hashes VALUES (?, ?, ?, ?, ?)", (*key, value))
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

from __future__ import annotations

import fnmatch
import logging
import os
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pathspec

from .cache import FileCacheKey, FuzzyHashCache
from .domain import FileRecord
from .errors import HashError
from .models import MIB, AnalysisRequest, WarningRecord, WarningType
from .similarity import compute_fuzzy_hash

logger = logging.getLogger(__name__)

IGNORE_FILES = (".gitignore", ".ignore")


@dataclass
class ScanResult:
    files: List[FileRecord]
    paths: List[str]
    warnings: List[WarningRecord]
    stats: Dict[str, int]


class FileScanner:
    """Walks a root folder and produces one :class:`FileRecord` per file.

    Fuzzy hashes are only computed when clustering is requested and the file
    size lies within the configured hashing bounds.
    """

    def __init__(
        self,
        request: AnalysisRequest,
        cache: Optional[FuzzyHashCache] = None,
        hash_min_size: int = MIB,
        hash_max_size: Optional[int] = None,
        stats_sink: Optional[Dict[str, int]] = None,
        meta_sink: Optional[Dict[str, str]] = None,
    ) -> None:
        self.request = request
        self.cache = cache
        self.hash_min_size = max(hash_min_size, request.options.cluster_min_file_size)
        self.hash_max_size = hash_max_size
        self._stats_sink = stats_sink
        self._meta_sink = meta_sink
        self._warnings: List[WarningRecord] = []
        self._stats: Dict[str, int] = defaultdict(int)
        self._seen_inodes: Set[Tuple[int, int]] = set()
        self._ignore_specs: Dict[Path, pathspec.PathSpec] = {}
        self._lock = threading.RLock()
        self._set_stat("files_scanned", 0)
        self._set_stat("files_hashed", 0)
        self._set_stat("folders_scanned", 0)
        self._set_stat("bytes_scanned", 0)

    @property
    def hashing_enabled(self) -> bool:
        return self.request.options.enable_clustering

    def scan(self) -> ScanResult:
        root = self.request.root_path
        if not root.is_dir():
            raise FileNotFoundError(f"Root path {root} is not a directory")

        max_workers = self.request.concurrency or min(32, (os.cpu_count() or 4) * 2)
        self._set_stat("workers", max_workers)

        files: List[FileRecord] = []
        paths: List[str] = []
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for dirpath, dirnames, filenames in os.walk(root):
                current = Path(dirpath)
                rel_dir = current.relative_to(root)
                if self._meta_sink is not None:
                    self._meta_sink["last_path"] = str(current)
                if self.request.respect_ignore_files:
                    self._load_ignore_spec(current, rel_dir)

                depth = 0 if rel_dir == Path(".") else len(rel_dir.parts)
                if self.request.max_depth is not None and depth + 1 >= self.request.max_depth:
                    dirnames[:] = []
                else:
                    dirnames[:] = sorted(
                        name for name in dirnames if not self._is_skipped(rel_dir / name, name, is_dir=True)
                    )

                futures = []
                for filename in sorted(filenames):
                    rel_path = rel_dir / filename
                    if self._is_skipped(rel_path, filename):
                        continue
                    paths.append(str(current / filename))
                    futures.append(executor.submit(self._process_file, current / filename))
                for future in futures:
                    record = future.result()
                    if record is not None:
                        files.append(record)
                self._increment_stat("folders_scanned")

        logger.info(
            "Scanned %s: %d files, %d hashed, %d warnings",
            root,
            self._stats["files_scanned"],
            self._stats["files_hashed"],
            len(self._warnings),
        )
        return ScanResult(files=files, paths=paths, warnings=self._warnings, stats=dict(self._stats))

    def _is_skipped(self, rel: Path, name: str, is_dir: bool = False) -> bool:
        if not self.request.include_hidden and name.startswith("."):
            return True
        rel_posix = rel.as_posix()
        if any(fnmatch.fnmatch(rel_posix, pattern) for pattern in self.request.exclude):
            return True
        return self._is_ignored(rel, is_dir)

    def _load_ignore_spec(self, directory: Path, rel_dir: Path) -> None:
        """Read .gitignore and .ignore rules that apply below ``directory``."""
        lines: List[str] = []
        for name in IGNORE_FILES:
            candidate = directory / name
            if not candidate.is_file():
                continue
            try:
                lines.extend(candidate.read_text(encoding="utf-8", errors="replace").splitlines())
            except OSError as exc:
                self._add_warning(candidate, WarningType.IO_ERROR, f"I/O error: {exc}")
        if lines:
            self._ignore_specs[rel_dir] = pathspec.PathSpec.from_lines("gitwildmatch", lines)

    def _is_ignored(self, rel: Path, is_dir: bool) -> bool:
        for base, spec in self._ignore_specs.items():
            if base not in rel.parents:
                continue
            relative = rel.relative_to(base).as_posix()
            if spec.match_file(relative + "/" if is_dir else relative):
                return True
        return False

    def _process_file(self, path: Path) -> Optional[FileRecord]:
        try:
            stat = path.stat(follow_symlinks=False)
        except PermissionError:
            self._add_warning(path, WarningType.PERMISSION, "Permission denied")
            return None
        except OSError as exc:
            self._add_warning(path, WarningType.IO_ERROR, f"I/O error: {exc}")
            return None

        if path.is_symlink() or not path.is_file():
            return None

        inode_key = (stat.st_dev, stat.st_ino)
        with self._lock:
            if inode_key in self._seen_inodes:
                return None
            self._seen_inodes.add(inode_key)

        fuzzy_hash = None
        if self._should_hash(stat.st_size):
            fuzzy_hash = self._fuzzy_hash(path, stat)

        self._increment_stat("files_scanned")
        self._increment_stat("bytes_scanned", stat.st_size)
        return FileRecord(path=str(path), size_bytes=stat.st_size, fuzzy_hash=fuzzy_hash)

    def _should_hash(self, size: int) -> bool:
        if not self.hashing_enabled or size < self.hash_min_size:
            return False
        return self.hash_max_size is None or size <= self.hash_max_size

    def _fuzzy_hash(self, path: Path, stat: os.stat_result) -> Optional[str]:
        key = self._cache_key(stat)
        if self.cache:
            cached = self.cache.get(key)
            if cached:
                self._increment_stat("files_hashed")
                return cached
        try:
            value = compute_fuzzy_hash(path)
        except HashError as exc:
            self._add_warning(path, WarningType.HASH_FAILED, str(exc))
            return None
        if self.cache:
            self.cache.set(key, value)
        self._increment_stat("files_hashed")
        return value

    def _cache_key(self, stat: os.stat_result) -> FileCacheKey:
        return (int(stat.st_dev), int(stat.st_ino), int(stat.st_size), float(stat.st_mtime))

    def _add_warning(self, path: Path, kind: WarningType, message: str) -> None:
        logger.debug("Skipping %s: %s", path, message)
        with self._lock:
            self._warnings.append(WarningRecord(path=path, type=kind, message=message))

    def _increment_stat(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._stats[key] += amount
            if self._stats_sink is not None:
                self._stats_sink[key] = self._stats[key]

    def _set_stat(self, key: str, value: int) -> None:
        with self._lock:
            self._stats[key] = value
            if self._stats_sink is not None:
                self._stats_sink[key] = value

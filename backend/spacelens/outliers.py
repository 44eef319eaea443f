"""Storage outlier detection.

Three independent detectors run over the same file records:

* statistical large files (population z-score of sizes),
* hidden space consumers (directories such as ``node_modules`` or ``.git``),
* recurring name patterns (numbered or dated file series).

:func:`build_report` composes them, plus optional similarity clustering,
into one :class:`OutlierReport`.
"""

from __future__ import annotations

import logging
import math
import re
from collections import defaultdict
from pathlib import PurePath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .clustering import Comparator, detect_clusters_batched, validate_similarity
from .domain import FileRecord
from .models import (
    HiddenConsumer,
    LargeFileCluster,
    LargeFileOutlier,
    OutlierOptions,
    OutlierReport,
    PatternGroup,
)
from .similarity import similarity_safe

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024.0 * 1024.0
MIN_PATTERN_COUNT = 3
MAX_PATTERN_SAMPLES = 5

HIDDEN_CONSUMER_PATTERNS: Tuple[Tuple[str, str, str], ...] = (
    ("node_modules", "Node.js dependencies", "Consider using npm prune or clearing unused dependencies"),
    (".git", "Git repository data", "Run git gc to clean up unnecessary files"),
    ("target", "Rust build artifacts", "Run cargo clean to remove build artifacts"),
    ("build", "Build output directory", "Clean build artifacts if not needed"),
    ("dist", "Distribution files", "Remove old distribution builds"),
    (".venv", "Python virtual environment", "Recreate virtual environment if needed"),
    ("__pycache__", "Python cache files", "Safe to delete, will be regenerated"),
    (".cache", "Application cache", "Review and clean old cache files"),
    ("tmp", "Temporary files", "Clean up old temporary files"),
    ("logs", "Log files", "Archive or delete old logs"),
)

NUMBERED_PATTERN = re.compile(r"^(.+?)[-_]?(\d{2,})(\..+)?$")
DATED_PATTERN = re.compile(r"^(.+?)[-_]?(\d{4}[-_]?\d{2}[-_]?\d{2})(\..+)?$")


def detect_large_file_outliers(
    files: Sequence[FileRecord],
    total_size: int,
    options: OutlierOptions,
) -> List[LargeFileOutlier]:
    if not files:
        return []

    sizes = [float(record.size_bytes) for record in files]
    mean = sum(sizes) / len(sizes)
    variance = sum((size - mean) ** 2 for size in sizes) / len(sizes)
    std_dev = math.sqrt(variance)

    outliers: List[LargeFileOutlier] = []
    for record in files:
        if options.min_size is not None and record.size_bytes < options.min_size:
            continue
        z_score = (record.size_bytes - mean) / std_dev if std_dev > 0 else 0.0
        if z_score <= options.std_dev_threshold:
            continue
        percentage = (record.size_bytes / total_size) * 100.0 if total_size > 0 else 0.0
        outliers.append(
            LargeFileOutlier(
                path=record.path,
                size_bytes=record.size_bytes,
                size_mb=record.size_bytes / BYTES_PER_MB,
                percentage_of_total=percentage,
                std_devs_from_mean=z_score,
            )
        )

    outliers.sort(key=lambda outlier: outlier.size_bytes, reverse=True)
    if options.top_n is not None:
        outliers = outliers[: options.top_n]
    return outliers


def _matches_consumer(directory: PurePath, pattern: str) -> bool:
    if directory.name == pattern:
        return True
    pattern_parts = PurePath(pattern).parts
    return len(pattern_parts) <= len(directory.parts) and directory.parts[-len(pattern_parts) :] == pattern_parts


def detect_hidden_consumers(
    files: Sequence[FileRecord],
    paths: Optional[Iterable[str]] = None,
    patterns: Sequence[Tuple[str, str, str]] = HIDDEN_CONSUMER_PATTERNS,
) -> List[HiddenConsumer]:
    """Aggregate files sitting directly in known space-wasting directories.

    ``paths`` is the walker's candidate list; a path without a matching
    record (for example one whose metadata could not be read) is skipped.
    """
    sizes: Dict[str, int] = {record.path: record.size_bytes for record in files}
    candidates = list(paths) if paths is not None else list(sizes)

    by_directory: Dict[str, List[str]] = defaultdict(list)
    for path in candidates:
        parent = str(PurePath(path).parent)
        by_directory[parent].append(path)

    consumers: List[HiddenConsumer] = []
    for directory, contents in by_directory.items():
        directory_path = PurePath(directory)
        for pattern, description, recommendation in patterns:
            if not _matches_consumer(directory_path, pattern):
                continue
            total_size = 0
            file_count = 0
            for path in contents:
                if path in sizes:
                    total_size += sizes[path]
                    file_count += 1
            if total_size > 0:
                consumers.append(
                    HiddenConsumer(
                        path=directory,
                        pattern_type=description,
                        total_size_bytes=total_size,
                        file_count=file_count,
                        recommendation=recommendation,
                    )
                )
            break

    consumers.sort(key=lambda consumer: (-consumer.total_size_bytes, consumer.path))
    return consumers


def _split_pattern(regex: re.Pattern[str], filename: str) -> Optional[Tuple[str, str]]:
    match = regex.match(filename)
    if not match:
        return None
    return match.group(1), match.group(3) or ""


def detect_numbered_pattern(filename: str) -> Optional[Tuple[str, str]]:
    """``backup-001.tar`` -> ``("backup", ".tar")``."""
    return _split_pattern(NUMBERED_PATTERN, filename)


def detect_dated_pattern(filename: str) -> Optional[Tuple[str, str]]:
    """``log-2024-01-01.txt`` -> ``("log", ".txt")``."""
    return _split_pattern(DATED_PATTERN, filename)


def detect_pattern_groups(files: Sequence[FileRecord]) -> List[PatternGroup]:
    grouped: Dict[str, List[FileRecord]] = defaultdict(list)
    for record in files:
        filename = PurePath(record.path).name
        if not filename:
            continue
        parts = detect_numbered_pattern(filename) or detect_dated_pattern(filename)
        if parts is None:
            continue
        prefix, suffix = parts
        grouped[f"{prefix}*{suffix}"].append(record)

    groups = [
        PatternGroup(
            pattern=pattern,
            count=len(members),
            total_size_bytes=sum(member.size_bytes for member in members),
            sample_files=[member.path for member in members[:MAX_PATTERN_SAMPLES]],
        )
        for pattern, members in grouped.items()
        if len(members) >= MIN_PATTERN_COUNT
    ]
    groups.sort(key=lambda group: group.total_size_bytes, reverse=True)
    return groups


def detect_clusters_for_report(
    files: Sequence[FileRecord],
    options: OutlierOptions,
    compare: Comparator = similarity_safe,
) -> List[LargeFileCluster]:
    candidates = [
        record
        for record in files
        if record.hashable and record.size_bytes >= options.cluster_min_file_size
    ]
    return detect_clusters_batched(
        candidates,
        options.cluster_similarity_threshold,
        options.min_cluster_size,
        options.batch_size,
        compare=compare,
    )


def build_report(
    files: Sequence[FileRecord],
    options: Optional[OutlierOptions] = None,
    paths: Optional[Iterable[str]] = None,
    compare: Comparator = similarity_safe,
) -> OutlierReport:
    options = options or OutlierOptions()
    if options.enable_clustering:
        validate_similarity(options.cluster_similarity_threshold)

    total_size = sum(record.size_bytes for record in files)
    report = OutlierReport(total_size_analyzed=total_size, total_files_analyzed=len(files))
    if not files:
        return report

    if options.check_large_files:
        report.large_files = detect_large_file_outliers(files, total_size, options)
    if options.check_hidden_consumers:
        report.hidden_consumers = detect_hidden_consumers(files, paths)
    if options.check_patterns:
        report.pattern_groups = detect_pattern_groups(files)
    if options.enable_clustering:
        report.large_file_clusters = detect_clusters_for_report(files, options, compare=compare)

    logger.info(
        "Analyzed %d files (%d bytes): %d large, %d hidden consumers, %d patterns, %d clusters",
        report.total_files_analyzed,
        report.total_size_analyzed,
        len(report.large_files),
        len(report.hidden_consumers),
        len(report.pattern_groups),
        len(report.large_file_clusters),
    )
    return report

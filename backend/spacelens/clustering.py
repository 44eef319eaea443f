"""Density-based clustering of large files by fuzzy-hash similarity.

Pairwise similarities become a symmetric distance matrix
(``100 - similarity``), DBSCAN runs over that matrix, and the resulting
labels are folded into :class:`LargeFileCluster` values. Large inputs are
split into LSH buckets first so the quadratic matrix stays small.
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from .domain import ClusterLabels, FileRecord
from .errors import InsufficientFiles, InvalidSimilarity
from .models import FileEntry, LargeFileCluster
from .similarity import lsh_bucket_key, similarity_safe, similarity_to_distance

logger = logging.getLogger(__name__)

Comparator = Callable[[Optional[str], Optional[str]], int]
BucketKey = Tuple[int, str]

MIN_SIMILARITY = 50
MAX_SIMILARITY = 100
DENSE_EDGE_DISTANCE = 30.0
PARALLEL_ROW_THRESHOLD = 64


def validate_similarity(min_similarity: int) -> None:
    if not MIN_SIMILARITY <= min_similarity <= MAX_SIMILARITY:
        raise InvalidSimilarity(min_similarity)


def build_distance_matrix(
    files: Sequence[FileRecord],
    compare: Comparator = similarity_safe,
    max_workers: Optional[int] = None,
) -> np.ndarray:
    """Build the symmetric pairwise distance matrix for ``files``.

    Each row task computes the upper-triangle cells ``(i, j > i)`` from
    immutable inputs only; rows are gathered before the matrix is filled.
    """
    n = len(files)
    distances = np.zeros((n, n), dtype=np.float64)
    if n < 2:
        return distances

    hashes = [record.fuzzy_hash for record in files]

    def _row(i: int) -> List[float]:
        return [similarity_to_distance(compare(hashes[i], hashes[j])) for j in range(i + 1, n)]

    worker_cap = max_workers or min(32, (os.cpu_count() or 4) * 2)
    worker_count = min(worker_cap, n - 1)
    if n < PARALLEL_ROW_THRESHOLD or worker_count <= 1:
        rows = [_row(i) for i in range(n - 1)]
    else:
        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            rows = list(executor.map(_row, range(n - 1)))

    for i, row in enumerate(rows):
        if not row:
            continue
        distances[i, i + 1 :] = row
        distances[i + 1 :, i] = row
    return distances


def _region_query(distances: np.ndarray, point: int, epsilon: float) -> List[int]:
    return np.flatnonzero(distances[point] <= epsilon).tolist()


def dbscan(distances: np.ndarray, epsilon: float, min_points: int) -> ClusterLabels:
    """Label each index with a cluster id, or ``None`` for noise.

    Points are visited in ascending order. Cluster expansion walks a seed
    list by position; a border point keeps the label of the first cluster
    whose expansion reaches it.
    """
    if min_points < 1:
        raise ValueError("min_points must be at least 1")
    n = distances.shape[0]
    labels: ClusterLabels = [None] * n
    visited = [False] * n
    cluster_id = 0

    for point in range(n):
        if visited[point]:
            continue
        visited[point] = True
        neighbors = _region_query(distances, point, epsilon)
        if len(neighbors) < min_points:
            continue

        labels[point] = cluster_id
        seeds = list(neighbors)
        seen: Set[int] = set(seeds)
        position = 0
        while position < len(seeds):
            candidate = seeds[position]
            if not visited[candidate]:
                visited[candidate] = True
                candidate_neighbors = _region_query(distances, candidate, epsilon)
                if len(candidate_neighbors) >= min_points:
                    for neighbor in candidate_neighbors:
                        if neighbor not in seen:
                            seen.add(neighbor)
                            seeds.append(neighbor)
            if labels[candidate] is None:
                labels[candidate] = cluster_id
            position += 1
        cluster_id += 1

    return labels


def average_similarity(indices: Sequence[int], distances: np.ndarray) -> float:
    if len(indices) <= 1:
        return 100.0
    total = 0.0
    count = 0
    for a in range(len(indices)):
        for b in range(a + 1, len(indices)):
            total += 100.0 - float(distances[indices[a], indices[b]])
            count += 1
    return total / count


def cluster_density(indices: Sequence[int], distances: np.ndarray) -> float:
    """Fraction of member pairs closer than the dense-edge distance."""
    if len(indices) <= 1:
        return 1.0
    max_edges = len(indices) * (len(indices) - 1) // 2
    dense_edges = 0
    for a in range(len(indices)):
        for b in range(a + 1, len(indices)):
            if distances[indices[a], indices[b]] < DENSE_EDGE_DISTANCE:
                dense_edges += 1
    return dense_edges / max_edges


def aggregate_clusters(
    files: Sequence[FileRecord],
    labels: ClusterLabels,
    distances: np.ndarray,
) -> List[LargeFileCluster]:
    members: Dict[int, List[int]] = defaultdict(list)
    for index, label in enumerate(labels):
        if label is not None:
            members[label].append(index)

    clusters: List[LargeFileCluster] = []
    for cluster_id in sorted(members):
        indices = members[cluster_id]
        clusters.append(
            LargeFileCluster(
                cluster_id=cluster_id,
                files=[FileEntry.from_record(files[i]) for i in indices],
                total_size=sum(files[i].size_bytes for i in indices),
                avg_similarity=average_similarity(indices, distances),
                density=cluster_density(indices, distances),
            )
        )
    return clusters


def detect_large_file_clusters(
    files: Sequence[FileRecord],
    min_similarity: int,
    min_cluster_size: int,
    *,
    compare: Comparator = similarity_safe,
    strict: bool = False,
) -> List[LargeFileCluster]:
    """Group near-duplicate files with DBSCAN.

    ``epsilon`` is ``100 - min_similarity`` and ``min_cluster_size`` doubles
    as DBSCAN's ``min_points``. With ``strict`` set, too few qualifying
    files raise :class:`InsufficientFiles` instead of returning nothing.
    Clusters that end up smaller than ``min_cluster_size`` are dropped and
    the survivors renumbered from 0.
    """
    validate_similarity(min_similarity)
    if min_cluster_size < 1:
        raise ValueError("min_cluster_size must be at least 1")

    if len(files) < min_cluster_size:
        if strict:
            raise InsufficientFiles(len(files), min_cluster_size)
        return []

    hashable = [record for record in files if record.hashable]
    if len(hashable) < min_cluster_size:
        if strict:
            raise InsufficientFiles(len(hashable), min_cluster_size)
        return []

    distances = build_distance_matrix(hashable, compare=compare)
    epsilon = similarity_to_distance(min_similarity)
    labels = dbscan(distances, epsilon, min_cluster_size)
    clusters = aggregate_clusters(hashable, labels, distances)
    kept = [cluster for cluster in clusters if len(cluster.files) >= min_cluster_size]
    kept = [cluster.copy(update={"cluster_id": new_id}) for new_id, cluster in enumerate(kept)]
    logger.debug(
        "Clustered %d hashed files into %d clusters (epsilon=%.1f)",
        len(hashable),
        len(kept),
        epsilon,
    )
    return kept


def compute_lsh_buckets(files: Sequence[FileRecord]) -> Dict[BucketKey, List[FileRecord]]:
    buckets: Dict[BucketKey, List[FileRecord]] = {}
    for record in files:
        key = lsh_bucket_key(record.fuzzy_hash)
        if key is None:
            continue
        buckets.setdefault(key, []).append(record)
    return buckets


def detect_clusters_batched(
    files: Sequence[FileRecord],
    min_similarity: int,
    min_cluster_size: int,
    batch_size: int,
    *,
    compare: Comparator = similarity_safe,
) -> List[LargeFileCluster]:
    validate_similarity(min_similarity)
    if len(files) <= batch_size:
        return detect_large_file_clusters(files, min_similarity, min_cluster_size, compare=compare)

    buckets = [bucket for bucket in compute_lsh_buckets(files).values() if len(bucket) >= min_cluster_size]
    logger.info("Clustering %d files across %d LSH buckets", len(files), len(buckets))

    def _cluster(bucket: List[FileRecord]) -> List[LargeFileCluster]:
        return detect_large_file_clusters(bucket, min_similarity, min_cluster_size, compare=compare)

    all_clusters: List[LargeFileCluster] = []
    worker_count = min(32, (os.cpu_count() or 4) * 2, len(buckets))
    if worker_count <= 1:
        for bucket in buckets:
            all_clusters.extend(_cluster(bucket))
    else:
        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            for chunk in executor.map(_cluster, buckets):
                all_clusters.extend(chunk)

    return merge_overlapping_clusters(all_clusters, compare=compare)


def merge_overlapping_clusters(
    clusters: Sequence[LargeFileCluster],
    compare: Comparator = similarity_safe,
) -> List[LargeFileCluster]:
    """Union clusters that share any file path.

    Membership is deduplicated by path and ``total_size`` is recomputed from
    the union. Output ids are renumbered in output order.
    """
    if not clusters:
        return []

    parent = list(range(len(clusters)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    owner: Dict[str, int] = {}
    for index, cluster in enumerate(clusters):
        for entry in cluster.files:
            if entry.path in owner:
                root_a, root_b = find(owner[entry.path]), find(index)
                if root_a != root_b:
                    parent[max(root_a, root_b)] = min(root_a, root_b)
            else:
                owner[entry.path] = index

    groups: Dict[int, List[int]] = defaultdict(list)
    for index in range(len(clusters)):
        groups[find(index)].append(index)

    merged: List[LargeFileCluster] = []
    for new_id, root in enumerate(sorted(groups)):
        indices = groups[root]
        if len(indices) == 1:
            merged.append(clusters[root].copy(update={"cluster_id": new_id}))
            continue
        entries: List[FileEntry] = []
        seen: Set[str] = set()
        for index in indices:
            for entry in clusters[index].files:
                if entry.path not in seen:
                    seen.add(entry.path)
                    entries.append(entry)
        records = [entry.to_record() for entry in entries]
        distances = build_distance_matrix(records, compare=compare)
        positions = list(range(len(records)))
        merged.append(
            LargeFileCluster(
                cluster_id=new_id,
                files=entries,
                total_size=sum(entry.size_bytes for entry in entries),
                avg_similarity=average_similarity(positions, distances),
                density=cluster_density(positions, distances),
            )
        )
    return merged

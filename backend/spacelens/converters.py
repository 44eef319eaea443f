from __future__ import annotations

from typing import Iterable, List, Sequence

from .domain import FileRecord
from .models import ClusterResponse, ClusterSummary, FileEntry, LargeFileCluster, OutlierReport

FINDING_COLUMNS = ["category", "path", "size_bytes", "file_count", "score", "detail"]


def entries_to_records(entries: Iterable[FileEntry]) -> List[FileRecord]:
    return [entry.to_record() for entry in entries]


def summarize_clusters(clusters: Sequence[LargeFileCluster]) -> ClusterSummary:
    return ClusterSummary(
        total_clusters=len(clusters),
        total_files=sum(len(cluster.files) for cluster in clusters),
        total_size=sum(cluster.total_size for cluster in clusters),
    )


def clusters_to_response(clusters: Sequence[LargeFileCluster]) -> ClusterResponse:
    return ClusterResponse(clusters=list(clusters), summary=summarize_clusters(clusters))


def report_rows(report: OutlierReport) -> List[List[object]]:
    """Flatten a report into one row per finding, in ``FINDING_COLUMNS`` order."""
    rows: List[List[object]] = []
    for outlier in report.large_files:
        rows.append(
            [
                "large_file",
                outlier.path,
                outlier.size_bytes,
                1,
                round(outlier.std_devs_from_mean, 2),
                f"{outlier.percentage_of_total:.2f}% of total",
            ]
        )
    for consumer in report.hidden_consumers:
        rows.append(
            [
                "hidden_consumer",
                consumer.path,
                consumer.total_size_bytes,
                consumer.file_count,
                "",
                f"{consumer.pattern_type}: {consumer.recommendation}",
            ]
        )
    for group in report.pattern_groups:
        rows.append(
            [
                "pattern_group",
                group.pattern,
                group.total_size_bytes,
                group.count,
                "",
                ";".join(group.sample_files),
            ]
        )
    for cluster in report.large_file_clusters:
        rows.append(cluster_row(cluster))
    return rows


def cluster_row(cluster: LargeFileCluster) -> List[object]:
    return [
        "cluster",
        f"cluster-{cluster.cluster_id}",
        cluster.total_size,
        len(cluster.files),
        round(cluster.avg_similarity, 2),
        ";".join(entry.path for entry in cluster.files),
    ]


def format_bytes(value: int) -> str:
    if value < 1024:
        return f"{value} B"
    size = float(value)
    for unit in ("KB", "MB", "GB"):
        size /= 1024.0
        if size < 1024.0 or unit == "GB":
            break
    return f"{size:.1f} {unit}"

from __future__ import annotations

import argparse
import csv
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import uvicorn
from pydantic import ValidationError

from .cache import FuzzyHashCache
from .clustering import detect_clusters_batched, validate_similarity
from .config import AppConfig
from .converters import (
    FINDING_COLUMNS,
    cluster_row,
    clusters_to_response,
    format_bytes,
    report_rows,
    summarize_clusters,
)
from .errors import ClusteringError, InsufficientFiles
from .models import MIB, AnalysisRequest, LargeFileCluster, OutlierOptions, OutlierReport
from .outliers import build_report
from .scanner import FileScanner, ScanResult

logger = logging.getLogger("spacelens")

EXIT_USAGE = 2
SIZE_UNITS = (("KB", 1024), ("MB", 1024 * 1024), ("GB", 1024 * 1024 * 1024))


def parse_size(value: str) -> int:
    """Parse ``"100MB"`` style sizes (1024-based). A bare number is bytes."""
    text = value.strip().upper()
    for suffix, factor in SIZE_UNITS:
        if text.endswith(suffix):
            number = text[: -len(suffix)].strip()
            try:
                return int(float(number) * factor)
            except ValueError:
                raise argparse.ArgumentTypeError(f"Invalid size: {text}") from None
    if text.endswith("B"):
        try:
            return int(text[:-1].strip())
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid size: {text}") from None
    try:
        return int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid size: {text} (use B, KB, MB, or GB suffix)") from None


def _bounded(convert, minimum, inclusive=True):
    def parse(value: str):
        try:
            number = convert(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid number: {value}") from None
        if number < minimum or (not inclusive and number == minimum):
            bound = ">=" if inclusive else ">"
            raise argparse.ArgumentTypeError(f"must be {bound} {minimum}, got {value}")
        return number

    return parse


positive_int = _bounded(int, 1)
non_negative_int = _bounded(int, 0)
positive_float = _bounded(float, 0.0, inclusive=False)


def _add_scan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("path", type=Path, help="Directory to analyze")
    parser.add_argument("--exclude", action="append", default=[], help="Glob pattern to skip (repeatable)")
    parser.add_argument("--hidden", action="store_true", help="Include dot-files and dot-directories")
    parser.add_argument(
        "--respect-ignore", action="store_true", help="Skip paths matched by .gitignore and .ignore files"
    )
    parser.add_argument("--max-depth", type=positive_int, default=None, help="Limit directory recursion depth")
    parser.add_argument(
        "--format",
        choices=["table", "json", "csv"],
        default="table",
        help="Output format (default: %(default)s)",
    )
    parser.add_argument("--cache", type=Path, default=None, help="SQLite fuzzy-hash cache path")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spacelens", description="Find what is eating your disk space.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    outliers = subparsers.add_parser("outliers", help="Report large files, hidden consumers and file patterns")
    _add_scan_arguments(outliers)
    outliers.add_argument("--min-size", type=parse_size, default=None, help="Ignore smaller files, e.g. 100MB")
    outliers.add_argument("--top", type=non_negative_int, default=20, help="Maximum large files to report")
    outliers.add_argument("--std-dev", type=positive_float, default=2.0, help="Z-score threshold for large files")
    outliers.add_argument("--no-hidden-consumers", action="store_true", help="Skip hidden consumer detection")
    outliers.add_argument("--no-patterns", action="store_true", help="Skip file pattern detection")
    outliers.add_argument("--cluster", action="store_true", help="Also cluster similar large files")
    outliers.add_argument("--min-similarity", type=int, default=70, help="Cluster similarity threshold (50-100)")
    outliers.add_argument("--min-cluster-size", type=positive_int, default=2, help="Smallest cluster to report")
    outliers.add_argument(
        "--cluster-min-size",
        type=parse_size,
        default=MIB,
        help="Smallest file considered for clustering",
    )

    clusters = subparsers.add_parser("clusters", help="Cluster similar large files by fuzzy hash")
    _add_scan_arguments(clusters)
    clusters.add_argument("--min-size", type=parse_size, default=MIB, help="Smallest file to hash, e.g. 10MB")
    clusters.add_argument("--min-similarity", type=int, default=70, help="Similarity threshold (50-100)")
    clusters.add_argument("--min-cluster-size", type=positive_int, default=2, help="Smallest cluster to report")
    clusters.add_argument(
        "--batch-size", type=positive_int, default=None, help="Switch to LSH buckets above this many files"
    )
    clusters.add_argument("--strict", action="store_true", help="Fail when too few files qualify")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Listen address (default: SPL_LISTEN_HOST)")
    serve.add_argument("--port", type=positive_int, default=None, help="Listen port (default: SPL_LISTEN_PORT)")
    return parser


def _scan(args: argparse.Namespace, options: OutlierOptions, config: AppConfig) -> ScanResult:
    request = AnalysisRequest(
        root_path=args.path,
        exclude=args.exclude,
        include_hidden=args.hidden,
        respect_ignore_files=args.respect_ignore,
        max_depth=args.max_depth,
        options=options,
    )
    cache_path = args.cache or config.cache_db_path
    cache = FuzzyHashCache(cache_path) if cache_path else None
    scanner = FileScanner(
        request,
        cache=cache,
        hash_min_size=0,
        hash_max_size=config.hash_max_size,
    )
    try:
        result = scanner.scan()
    finally:
        if cache is not None:
            cache.close()
    for warning in result.warnings:
        logger.warning("%s: %s", warning.path, warning.message)
    return result


def _write_csv(rows: Sequence[Sequence[object]]) -> None:
    writer = csv.writer(sys.stdout)
    writer.writerow(FINDING_COLUMNS)
    writer.writerows(rows)


def render_report_table(report: OutlierReport) -> str:
    lines = [
        f"Analyzed {report.total_files_analyzed} files ({format_bytes(report.total_size_analyzed)})",
        "",
    ]
    if report.large_files:
        lines.append("Large files:")
        for outlier in report.large_files:
            lines.append(
                f"  {format_bytes(outlier.size_bytes):>10}  {outlier.std_devs_from_mean:5.2f} sd  "
                f"{outlier.percentage_of_total:5.1f}%  {outlier.path}"
            )
        lines.append("")
    if report.hidden_consumers:
        lines.append("Hidden space consumers:")
        for consumer in report.hidden_consumers:
            lines.append(
                f"  {format_bytes(consumer.total_size_bytes):>10}  {consumer.file_count:>6} files  "
                f"{consumer.path} ({consumer.pattern_type})"
            )
            lines.append(f"{'':14}{consumer.recommendation}")
        lines.append("")
    if report.pattern_groups:
        lines.append("File patterns:")
        for group in report.pattern_groups:
            lines.append(f"  {format_bytes(group.total_size_bytes):>10}  {group.count:>6} files  {group.pattern}")
        lines.append("")
    if report.large_file_clusters:
        lines.append(render_clusters_table(report.large_file_clusters))
    return "\n".join(lines).rstrip() + "\n"


def render_clusters_table(clusters: Sequence[LargeFileCluster]) -> str:
    summary = summarize_clusters(clusters)
    lines = [
        f"Found {summary.total_clusters} clusters with {summary.total_files} files "
        f"({format_bytes(summary.total_size)})",
    ]
    for cluster in clusters:
        lines.append(
            f"  Cluster {cluster.cluster_id}: {len(cluster.files)} files, {format_bytes(cluster.total_size)}, "
            f"avg similarity {cluster.avg_similarity:.1f}%, density {cluster.density:.2f}"
        )
        for entry in cluster.files:
            lines.append(f"    {format_bytes(entry.size_bytes):>10}  {entry.path}")
    return "\n".join(lines) + "\n"


def run_outliers(args: argparse.Namespace, config: AppConfig) -> int:
    options = OutlierOptions(
        min_size=args.min_size,
        top_n=args.top,
        std_dev_threshold=args.std_dev,
        check_hidden_consumers=not args.no_hidden_consumers,
        check_patterns=not args.no_patterns,
        enable_clustering=args.cluster,
        cluster_similarity_threshold=args.min_similarity,
        min_cluster_size=args.min_cluster_size,
        cluster_min_file_size=args.cluster_min_size,
        batch_size=config.batch_size,
    )
    if options.enable_clustering:
        validate_similarity(options.cluster_similarity_threshold)
    result = _scan(args, options, config)
    report = build_report(result.files, options, paths=result.paths)

    if args.format == "json":
        print(json.dumps(json.loads(report.json()), indent=2))
    elif args.format == "csv":
        _write_csv(report_rows(report))
    else:
        sys.stdout.write(render_report_table(report))
    return 0


def run_clusters(args: argparse.Namespace, config: AppConfig) -> int:
    validate_similarity(args.min_similarity)
    options = OutlierOptions(
        check_large_files=False,
        check_hidden_consumers=False,
        check_patterns=False,
        enable_clustering=True,
        cluster_similarity_threshold=args.min_similarity,
        min_cluster_size=args.min_cluster_size,
        cluster_min_file_size=args.min_size,
    )
    result = _scan(args, options, config)
    candidates = [record for record in result.files if record.hashable and record.size_bytes >= args.min_size]
    if args.strict and len(candidates) < args.min_cluster_size:
        raise InsufficientFiles(len(candidates), args.min_cluster_size)

    batch_size = args.batch_size or config.batch_size
    clusters = detect_clusters_batched(candidates, args.min_similarity, args.min_cluster_size, batch_size)

    if args.format == "json":
        print(json.dumps(json.loads(clusters_to_response(clusters).json()), indent=2))
    elif args.format == "csv":
        _write_csv([cluster_row(cluster) for cluster in clusters])
    else:
        sys.stdout.write(render_clusters_table(clusters))
    return 0


def run_serve(args: argparse.Namespace, config: AppConfig) -> int:
    uvicorn.run(
        "spacelens.main:app",
        host=args.host or config.listen_host,
        port=args.port or config.listen_port,
        log_level=config.log_level.lower(),
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()
    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)

    handlers = {"outliers": run_outliers, "clusters": run_clusters, "serve": run_serve}
    try:
        return handlers[args.command](args, config)
    except ClusteringError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except ValidationError as exc:
        print(f"error: invalid option value\n{exc}", file=sys.stderr)
        return EXIT_USAGE
    except FileNotFoundError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

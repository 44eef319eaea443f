from __future__ import annotations

import csv
import io
import json
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import HTTPException, status

from .cache import FuzzyHashCache
from .config import AppConfig
from .converters import FINDING_COLUMNS, format_bytes, report_rows
from .metrics import MetricsExporter
from .models import (
    AnalysisMetrics,
    AnalysisProgress,
    AnalysisRequest,
    AnalysisStatus,
    ExportHeader,
    LargeFileCluster,
    OutlierReport,
    PhaseProgress,
    PhaseTiming,
    WarningRecord,
    WarningType,
)
from .outliers import build_report
from .scanner import FileScanner

logger = logging.getLogger(__name__)

PHASE_NAMES = ["scanning", "analyzing"]


class AnalysisJob:
    def __init__(self, analysis_id: str, request: AnalysisRequest) -> None:
        self.analysis_id = analysis_id
        self.request = request
        self.status = AnalysisStatus.PENDING
        self.started_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None
        self.warnings: List[WarningRecord] = []
        self.stats: Dict[str, int] = {
            "files_scanned": 0,
            "files_hashed": 0,
            "folders_scanned": 0,
            "bytes_scanned": 0,
            "workers": 0,
        }
        self.report: Optional[OutlierReport] = None
        self.error: Optional[str] = None
        self.meta: Dict[str, str] = {"phase": "", "last_path": ""}
        self.phase_timings: Dict[str, PhaseTiming] = {}
        self.phase_sequence: List[str] = []
        self._current_phase: Optional[str] = None

    def set_phase(self, name: str) -> None:
        if self._current_phase == name:
            return
        if self._current_phase:
            self.finish_phase(self._current_phase)
        self.phase_timings[name] = PhaseTiming(phase=name, started_at=datetime.now(timezone.utc))
        self.phase_sequence.append(name)
        self.meta["phase"] = name
        self._current_phase = name

    def finish_phase(self, name: Optional[str] = None) -> None:
        target = name or self._current_phase
        if not target:
            return
        timing = self.phase_timings.get(target)
        if timing and timing.completed_at is None:
            now = datetime.now(timezone.utc)
            timing.completed_at = now
            timing.duration_seconds = (now - timing.started_at).total_seconds()
        if name is None or target == self._current_phase:
            self._current_phase = None

    def ordered_timings(self) -> List[PhaseTiming]:
        return [self.phase_timings[name] for name in self.phase_sequence if name in self.phase_timings]


class AnalysisManager:
    """Runs folder analyses as background jobs and keeps their results."""

    def __init__(
        self,
        app_config: AppConfig,
        executor_workers: Optional[int] = None,
        metrics_exporter: Optional[MetricsExporter] = None,
    ) -> None:
        self.config = app_config
        self.hash_cache = FuzzyHashCache(app_config.resolved_cache_path)
        self._jobs: Dict[str, AnalysisJob] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=executor_workers or app_config.executor_workers)
        self._metrics = metrics_exporter

    def start_analysis(self, request: AnalysisRequest) -> AnalysisJob:
        analysis_id = uuid.uuid4().hex[:12]
        job = AnalysisJob(analysis_id, request)
        with self._lock:
            self._jobs[analysis_id] = job
        logger.info("Queued analysis %s for %s", analysis_id, request.root_path)
        self._executor.submit(self._run_analysis, job)
        return job

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self.hash_cache.close()

    def list_jobs(self) -> List[AnalysisJob]:
        with self._lock:
            return list(self._jobs.values())

    def get_job(self, analysis_id: str) -> AnalysisJob:
        with self._lock:
            if analysis_id not in self._jobs:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Analysis not found")
            return self._jobs[analysis_id]

    def _completed_job(self, analysis_id: str) -> AnalysisJob:
        job = self.get_job(analysis_id)
        if job.status != AnalysisStatus.COMPLETED or job.report is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Analysis is not complete")
        return job

    def get_progress(self, analysis_id: str) -> AnalysisProgress:
        job = self.get_job(analysis_id)
        current_phase = job.meta.get("phase", "")

        def phase_status(name: str) -> str:
            if job.status == AnalysisStatus.COMPLETED:
                return "completed"
            if job.status == AnalysisStatus.PENDING:
                return "pending"
            if current_phase == name and job.status == AnalysisStatus.RUNNING:
                return "running"
            timing = job.phase_timings.get(name)
            if timing and timing.completed_at is not None:
                return "completed"
            return "pending"

        return AnalysisProgress(
            analysis_id=job.analysis_id,
            status=job.status,
            started_at=job.started_at,
            completed_at=job.completed_at,
            warnings=list(job.warnings),
            root_path=job.request.root_path,
            stats=dict(job.stats),
            phase=current_phase,
            last_path=job.meta.get("last_path") or None,
            phases=[PhaseProgress(name=name, status=phase_status(name)) for name in PHASE_NAMES],
            error=job.error,
        )

    def get_report(self, analysis_id: str) -> OutlierReport:
        return self._completed_job(analysis_id).report

    def get_clusters(self, analysis_id: str) -> List[LargeFileCluster]:
        return self.get_report(analysis_id).large_file_clusters

    def get_metrics(self, analysis_id: str) -> AnalysisMetrics:
        job = self.get_job(analysis_id)
        return AnalysisMetrics(
            analysis_id=job.analysis_id,
            root_path=job.request.root_path,
            started_at=job.started_at,
            completed_at=job.completed_at,
            worker_count=job.stats.get("workers", 0),
            files_scanned=job.stats.get("files_scanned", 0),
            files_hashed=job.stats.get("files_hashed", 0),
            bytes_scanned=job.stats.get("bytes_scanned", 0),
            phase_timings=job.ordered_timings(),
        )

    def export(self, analysis_id: str, fmt: str) -> bytes:
        job = self._completed_job(analysis_id)
        report = job.report
        header = ExportHeader(
            generated_at=datetime.now(timezone.utc),
            root=job.request.root_path,
            options=job.request.options,
        )
        if fmt == "json":
            payload = {
                "header": json.loads(header.json()),
                "report": json.loads(report.json()),
            }
            return json.dumps(payload, indent=2).encode("utf-8")
        if fmt == "csv":
            output = io.StringIO()
            writer = csv.writer(output)
            writer.writerow(FINDING_COLUMNS)
            writer.writerows(report_rows(report))
            return output.getvalue().encode("utf-8")
        if fmt == "md":
            return render_markdown(header, report).encode("utf-8")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown export format")

    def _update_active_metric(self) -> None:
        if not self._metrics:
            return
        with self._lock:
            active = sum(1 for job in self._jobs.values() if job.status == AnalysisStatus.RUNNING)
        self._metrics.set_active_analyses(active)

    def _record_metrics(self, job: AnalysisJob) -> None:
        if not self._metrics or job.report is None:
            return
        self._metrics.record_analysis(job.report, job.ordered_timings())

    def _run_analysis(self, job: AnalysisJob) -> None:
        job.status = AnalysisStatus.RUNNING
        self._update_active_metric()
        job.set_phase("scanning")
        try:
            scanner = FileScanner(
                job.request,
                cache=self.hash_cache,
                hash_min_size=self.config.hash_min_size,
                hash_max_size=self.config.hash_max_size,
                stats_sink=job.stats,
                meta_sink=job.meta,
            )
            result = scanner.scan()
            job.warnings = list(result.warnings)
            job.stats.update(result.stats)

            job.set_phase("analyzing")
            job.report = build_report(result.files, job.request.options, paths=result.paths)
            job.status = AnalysisStatus.COMPLETED
            job.completed_at = datetime.now(timezone.utc)
            job.finish_phase()
            self._record_metrics(job)
            logger.info(
                "Analysis %s completed: %d files, %d warnings",
                job.analysis_id,
                job.report.total_files_analyzed,
                len(job.warnings),
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Analysis %s failed", job.analysis_id)
            job.completed_at = datetime.now(timezone.utc)
            job.status = AnalysisStatus.FAILED
            job.error = str(exc)
            job.warnings.append(
                WarningRecord(
                    path=job.request.root_path,
                    type=WarningType.IO_ERROR,
                    message=str(exc),
                )
            )
        finally:
            job.finish_phase()
            self._update_active_metric()


def render_markdown(header: ExportHeader, report: OutlierReport) -> str:
    lines = [
        f"# Storage Outlier Report ({header.generated_at.isoformat()})",
        "",
        f"- Root: `{header.root}`",
        f"- Files analyzed: {report.total_files_analyzed:,}",
        f"- Total size: {format_bytes(report.total_size_analyzed)}",
        "",
    ]
    if report.large_files:
        lines.append("## Large files")
        for outlier in report.large_files:
            lines.append(
                f"- `{outlier.path}`: {format_bytes(outlier.size_bytes)}, "
                f"{outlier.std_devs_from_mean:.2f} std devs, {outlier.percentage_of_total:.2f}% of total"
            )
        lines.append("")
    if report.hidden_consumers:
        lines.append("## Hidden space consumers")
        for consumer in report.hidden_consumers:
            lines.append(
                f"- `{consumer.path}` ({consumer.pattern_type}): {format_bytes(consumer.total_size_bytes)} "
                f"in {consumer.file_count} files. {consumer.recommendation}"
            )
        lines.append("")
    if report.pattern_groups:
        lines.append("## Recurring file patterns")
        for group in report.pattern_groups:
            lines.append(
                f"- `{group.pattern}`: {group.count} files, {format_bytes(group.total_size_bytes)}"
            )
        lines.append("")
    if report.large_file_clusters:
        lines.append("## Similar file clusters")
        for cluster in report.large_file_clusters:
            lines.append(
                f"### Cluster {cluster.cluster_id}: {len(cluster.files)} files, "
                f"{format_bytes(cluster.total_size)}, avg similarity {cluster.avg_similarity:.1f}%"
            )
            for entry in cluster.files:
                lines.append(f"  - `{entry.path}`")
        lines.append("")
    return "\n".join(lines)

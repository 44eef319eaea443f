from __future__ import annotations

from typing import Iterable

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

from .models import OutlierReport, PhaseTiming


class MetricsExporter:
    def __init__(self) -> None:
        self.registry = CollectorRegistry()
        self._phase_duration = Gauge(
            "spl_analysis_phase_duration_seconds",
            "Duration of the most recently completed analysis per phase",
            ["phase"],
            registry=self.registry,
        )
        self._files_analyzed = Gauge(
            "spl_analysis_files_last",
            "Files analyzed in the most recently completed analysis",
            registry=self.registry,
        )
        self._bytes_analyzed = Gauge(
            "spl_analysis_bytes_last",
            "Total bytes analyzed in the most recently completed analysis",
            registry=self.registry,
        )
        self._clusters_found = Gauge(
            "spl_analysis_clusters_last",
            "Similarity clusters found in the most recently completed analysis",
            registry=self.registry,
        )
        self._active_analyses = Gauge(
            "spl_active_analyses",
            "Number of analyses currently running",
            registry=self.registry,
        )
        self._completed_analyses = Counter(
            "spl_analyses_completed_total",
            "Counter of completed analyses",
            registry=self.registry,
        )

    def set_active_analyses(self, count: int) -> None:
        self._active_analyses.set(count)

    def record_analysis(self, report: OutlierReport, phase_timings: Iterable[PhaseTiming]) -> None:
        self._files_analyzed.set(report.total_files_analyzed)
        self._bytes_analyzed.set(report.total_size_analyzed)
        self._clusters_found.set(len(report.large_file_clusters))
        for timing in phase_timings:
            if timing.duration_seconds is not None:
                self._phase_duration.labels(phase=timing.phase).set(timing.duration_seconds)
        self._completed_analyses.inc()

    def render(self) -> tuple[bytes, str]:
        payload = generate_latest(self.registry)
        return payload, CONTENT_TYPE_LATEST

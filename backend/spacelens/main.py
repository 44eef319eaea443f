from __future__ import annotations

import logging
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .clustering import detect_clusters_batched, detect_large_file_clusters
from .config import AppConfig
from .converters import clusters_to_response, entries_to_records
from .errors import ClusteringError
from .metrics import MetricsExporter
from .models import (
    AnalysisMetrics,
    AnalysisProgress,
    AnalysisRequest,
    ClusterRequest,
    ClusterResponse,
    LargeFileCluster,
    OutlierReport,
    OutlierRequest,
)
from .outliers import build_report
from .store import AnalysisManager

logger = logging.getLogger("spacelens")

config = AppConfig.from_env()
logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))
logger.setLevel(getattr(logging, config.log_level, logging.INFO))

try:
    config.config_path.mkdir(parents=True, exist_ok=True)
except PermissionError:
    fallback = Path.cwd() / ".config"
    fallback.mkdir(parents=True, exist_ok=True)
    logger.warning("Unable to write to %s; falling back to %s", config.config_path, fallback)
    config.config_path = fallback
metrics_exporter = MetricsExporter() if config.metrics_enabled else None
analysis_manager = AnalysisManager(config, metrics_exporter=metrics_exporter)

app = FastAPI(title="Storage Outlier Analyzer", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_analysis_manager() -> AnalysisManager:
    return analysis_manager


@app.on_event("shutdown")
def shutdown_event() -> None:
    analysis_manager.shutdown()


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/api/analyses", response_model=AnalysisProgress, status_code=status.HTTP_202_ACCEPTED)
def start_analysis(
    request: AnalysisRequest,
    manager: AnalysisManager = Depends(get_analysis_manager),
) -> AnalysisProgress:
    job = manager.start_analysis(request)
    return manager.get_progress(job.analysis_id)


@app.get("/api/analyses", response_model=list[AnalysisProgress])
def list_analyses(manager: AnalysisManager = Depends(get_analysis_manager)) -> list[AnalysisProgress]:
    return [manager.get_progress(job.analysis_id) for job in manager.list_jobs()]


@app.get("/api/analyses/{analysis_id}", response_model=AnalysisProgress)
def get_analysis(analysis_id: str, manager: AnalysisManager = Depends(get_analysis_manager)) -> AnalysisProgress:
    return manager.get_progress(analysis_id)


@app.get("/api/analyses/{analysis_id}/report", response_model=OutlierReport)
def get_report(analysis_id: str, manager: AnalysisManager = Depends(get_analysis_manager)) -> OutlierReport:
    return manager.get_report(analysis_id)


@app.get("/api/analyses/{analysis_id}/clusters", response_model=list[LargeFileCluster])
def get_clusters(
    analysis_id: str,
    manager: AnalysisManager = Depends(get_analysis_manager),
) -> list[LargeFileCluster]:
    return manager.get_clusters(analysis_id)


@app.get("/api/analyses/{analysis_id}/metrics", response_model=AnalysisMetrics)
def get_analysis_metrics(
    analysis_id: str,
    manager: AnalysisManager = Depends(get_analysis_manager),
) -> AnalysisMetrics:
    return manager.get_metrics(analysis_id)


@app.post("/api/analyses/{analysis_id}/export")
def export_report(
    analysis_id: str,
    fmt: str,
    manager: AnalysisManager = Depends(get_analysis_manager),
) -> Response:
    if fmt not in {"json", "csv", "md"}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported export format")
    payload = manager.export(analysis_id, fmt)
    media_type = {
        "json": "application/json",
        "csv": "text/csv",
        "md": "text/markdown",
    }[fmt]
    return Response(content=payload, media_type=media_type)


@app.post("/api/outliers", response_model=OutlierReport)
def analyze_outliers(payload: OutlierRequest) -> OutlierReport:
    return build_report(entries_to_records(payload.files), payload.options, paths=payload.paths)


@app.post("/api/clusters", response_model=ClusterResponse)
def analyze_clusters(payload: ClusterRequest) -> ClusterResponse:
    records = entries_to_records(payload.files)
    if payload.batch_size is not None:
        clusters = detect_clusters_batched(
            records,
            payload.min_similarity,
            payload.min_cluster_size,
            payload.batch_size,
        )
    else:
        clusters = detect_large_file_clusters(records, payload.min_similarity, payload.min_cluster_size)
    return clusters_to_response(clusters)


@app.get("/metrics")
def get_metrics_export() -> Response:
    if not config.metrics_enabled or not metrics_exporter:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
    payload, content_type = metrics_exporter.render()
    return Response(content=payload, media_type=content_type)


@app.exception_handler(ClusteringError)
async def clustering_exception_handler(request: Request, exc: ClusteringError):
    logger.info("Rejected %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):  # type: ignore[override]
    logger.exception("Unhandled exception on %s: %s", request.url, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )

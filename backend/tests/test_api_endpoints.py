from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi import HTTPException, status
from fastapi.testclient import TestClient

CONFIG_ROOT = Path(__file__).resolve().parents[2] / ".config-test"
os.environ.setdefault("SPL_CONFIG_PATH", str(CONFIG_ROOT))

import spacelens.main as main_app
from spacelens.main import app, get_analysis_manager
from spacelens.models import (
    AnalysisMetrics,
    AnalysisProgress,
    AnalysisStatus,
    FileEntry,
    LargeFileCluster,
    OutlierReport,
    PhaseTiming,
)


class _StubAnalysisManager:
    def __init__(self) -> None:
        generated_at = datetime.now(timezone.utc)
        self.started: list = []
        self.progress = AnalysisProgress(
            analysis_id="an-demo",
            status=AnalysisStatus.COMPLETED,
            started_at=generated_at,
            completed_at=generated_at,
            root_path=Path("/data"),
            stats={"files_scanned": 3},
        )
        cluster = LargeFileCluster(
            cluster_id=0,
            files=[
                FileEntry(path="/data/a.iso", size_bytes=100, fuzzy_hash="3:a:b"),
                FileEntry(path="/data/b.iso", size_bytes=200, fuzzy_hash="3:a:c"),
            ],
            total_size=300,
            avg_similarity=88.0,
            density=1.0,
        )
        self.report = OutlierReport(large_file_clusters=[cluster], total_size_analyzed=300, total_files_analyzed=2)
        timing = PhaseTiming(phase="scanning", started_at=generated_at, completed_at=generated_at, duration_seconds=0.1)
        self.metrics = AnalysisMetrics(
            analysis_id="an-demo",
            root_path=Path("/data"),
            started_at=generated_at,
            completed_at=generated_at,
            worker_count=4,
            files_scanned=3,
            files_hashed=2,
            bytes_scanned=300,
            phase_timings=[timing],
        )

    def start_analysis(self, request):
        self.started.append(request)
        return type("Job", (), {"analysis_id": "an-demo"})()

    def list_jobs(self):
        return [type("Job", (), {"analysis_id": "an-demo"})()]

    def _check(self, analysis_id: str) -> None:
        if analysis_id != "an-demo":
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Analysis not found")

    def get_progress(self, analysis_id: str):
        self._check(analysis_id)
        return self.progress

    def get_report(self, analysis_id: str):
        self._check(analysis_id)
        return self.report

    def get_clusters(self, analysis_id: str):
        return self.get_report(analysis_id).large_file_clusters

    def get_metrics(self, analysis_id: str):
        self._check(analysis_id)
        return self.metrics

    def export(self, analysis_id: str, fmt: str) -> bytes:
        self._check(analysis_id)
        return f"exported:{fmt}".encode("utf-8")


@pytest.fixture
def stub_client():
    stub = _StubAnalysisManager()
    original = app.dependency_overrides.get(get_analysis_manager)
    app.dependency_overrides[get_analysis_manager] = lambda: stub
    try:
        yield stub, TestClient(app)
    finally:
        if original is None:
            app.dependency_overrides.pop(get_analysis_manager, None)
        else:
            app.dependency_overrides[get_analysis_manager] = original


def test_health():
    client = TestClient(app)
    assert client.get("/api/health").json() == {"status": "ok"}


def test_start_analysis_returns_accepted(stub_client):
    stub, client = stub_client
    response = client.post(
        "/api/analyses",
        json={"root_path": "/data", "exclude": "*.tmp", "options": {"enable_clustering": True}},
    )
    assert response.status_code == 202
    assert response.json()["analysis_id"] == "an-demo"
    request = stub.started[0]
    assert request.exclude == ["*.tmp"]
    assert request.options.enable_clustering is True


def test_start_analysis_validates_payload(stub_client):
    _, client = stub_client
    response = client.post("/api/analyses", json={"root_path": "/data", "options": {"std_dev_threshold": 0}})
    assert response.status_code == 422


def test_list_and_get_analysis(stub_client):
    _, client = stub_client
    assert [item["analysis_id"] for item in client.get("/api/analyses").json()] == ["an-demo"]
    assert client.get("/api/analyses/an-demo").json()["stats"]["files_scanned"] == 3
    assert client.get("/api/analyses/unknown").status_code == 404


def test_report_and_clusters(stub_client):
    _, client = stub_client
    report = client.get("/api/analyses/an-demo/report").json()
    assert report["total_size_analyzed"] == 300
    clusters = client.get("/api/analyses/an-demo/clusters").json()
    assert [entry["path"] for entry in clusters[0]["files"]] == ["/data/a.iso", "/data/b.iso"]


def test_analysis_metrics_endpoint_returns_timings(stub_client):
    _, client = stub_client
    payload = client.get("/api/analyses/an-demo/metrics").json()
    assert payload["files_hashed"] == 2
    assert payload["phase_timings"][0]["phase"] == "scanning"


def test_export_formats(stub_client):
    _, client = stub_client
    response = client.post("/api/analyses/an-demo/export", params={"fmt": "csv"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text == "exported:csv"
    assert client.post("/api/analyses/an-demo/export", params={"fmt": "xml"}).status_code == 400


def test_outliers_endpoint_builds_report():
    client = TestClient(app)
    files = [{"path": f"/d/small{i}.dat", "size_bytes": 10_000} for i in range(9)]
    files.append({"path": "/d/node_modules/huge.bin", "size_bytes": 1_000_000})
    response = client.post("/api/outliers", json={"files": files, "options": {"std_dev_threshold": 1.5}})

    assert response.status_code == 200
    payload = response.json()
    assert [item["path"] for item in payload["large_files"]] == ["/d/node_modules/huge.bin"]
    assert payload["hidden_consumers"][0]["path"] == "/d/node_modules"
    assert payload["total_files_analyzed"] == 10


def test_clusters_endpoint_summarizes_identical_hashes():
    client = TestClient(app)
    files = [
        {"path": "/d/a.bin", "size_bytes": 100, "fuzzy_hash": "3:abcdefgh:ijk"},
        {"path": "/d/b.bin", "size_bytes": 200, "fuzzy_hash": "3:abcdefgh:ijk"},
        {"path": "/d/c.bin", "size_bytes": 400},
    ]
    response = client.post("/api/clusters", json={"files": files, "min_similarity": 90})

    assert response.status_code == 200
    payload = response.json()
    assert payload["summary"] == {"total_clusters": 1, "total_files": 2, "total_size": 300}
    assert payload["clusters"][0]["avg_similarity"] == pytest.approx(100.0)


def test_clustering_errors_map_to_bad_request():
    client = TestClient(app)
    response = client.post("/api/clusters", json={"files": [], "min_similarity": 101})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid similarity threshold: 101 (must be 50-100)"

    response = client.post(
        "/api/outliers",
        json={"files": [], "options": {"enable_clustering": True, "cluster_similarity_threshold": 10}},
    )
    assert response.status_code == 400


def test_metrics_endpoint(monkeypatch):
    class StubExporter:
        def render(self):
            return b"metric 1", "text/plain"

    monkeypatch.setattr(main_app, "metrics_exporter", StubExporter())
    monkeypatch.setattr(main_app.config, "metrics_enabled", True, raising=False)
    client = TestClient(main_app.app)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "metric" in response.text


def test_metrics_endpoint_disabled(monkeypatch):
    monkeypatch.setattr(main_app, "metrics_exporter", None)
    client = TestClient(main_app.app)
    assert client.get("/metrics").status_code == 404

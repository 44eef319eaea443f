from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, validator

from .domain import FileRecord

MIB = 1024 * 1024


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WarningType(str, Enum):
    PERMISSION = "permission"
    HASH_FAILED = "hash_failed"
    IO_ERROR = "io_error"


class FileEntry(BaseModel):
    path: str
    size_bytes: int = Field(..., ge=0)
    fuzzy_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileEntry":
        return cls(path=record.path, size_bytes=record.size_bytes, fuzzy_hash=record.fuzzy_hash)

    def to_record(self) -> FileRecord:
        return FileRecord(path=self.path, size_bytes=self.size_bytes, fuzzy_hash=self.fuzzy_hash)


class LargeFileCluster(BaseModel):
    cluster_id: int
    files: List[FileEntry]
    total_size: int
    avg_similarity: float
    density: float


class LargeFileOutlier(BaseModel):
    path: str
    size_bytes: int
    size_mb: float
    percentage_of_total: float
    std_devs_from_mean: float


class HiddenConsumer(BaseModel):
    path: str
    pattern_type: str
    total_size_bytes: int
    file_count: int
    recommendation: str


class PatternGroup(BaseModel):
    pattern: str
    count: int
    total_size_bytes: int
    sample_files: List[str]


class OutlierReport(BaseModel):
    large_files: List[LargeFileOutlier] = Field(default_factory=list)
    hidden_consumers: List[HiddenConsumer] = Field(default_factory=list)
    pattern_groups: List[PatternGroup] = Field(default_factory=list)
    large_file_clusters: List[LargeFileCluster] = Field(default_factory=list)
    total_size_analyzed: int = 0
    total_files_analyzed: int = 0


class OutlierOptions(BaseModel):
    min_size: Optional[int] = Field(default=None, ge=0, description="Ignore files smaller than this many bytes")
    top_n: Optional[int] = Field(default=20, ge=0)
    std_dev_threshold: float = Field(default=2.0, gt=0.0)
    check_large_files: bool = True
    check_hidden_consumers: bool = True
    check_patterns: bool = True
    enable_clustering: bool = False
    # Range is checked by the clustering engine so callers get InvalidSimilarity.
    cluster_similarity_threshold: int = 70
    min_cluster_size: int = Field(default=2, ge=1)
    cluster_min_file_size: int = Field(default=MIB, ge=0)
    batch_size: int = Field(default=1000, ge=1)


class AnalysisRequest(BaseModel):
    root_path: Path
    exclude: List[str] = Field(default_factory=list)
    include_hidden: bool = False
    respect_ignore_files: bool = False
    max_depth: Optional[int] = Field(default=None, ge=1)
    concurrency: Optional[int] = Field(default=None, ge=1, le=32)
    options: OutlierOptions = Field(default_factory=OutlierOptions)

    @validator("root_path", pre=True)
    def normalize_root(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()

    @validator("exclude", pre=True)
    def ensure_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return list(value)


class OutlierRequest(BaseModel):
    files: List[FileEntry]
    paths: Optional[List[str]] = None
    options: OutlierOptions = Field(default_factory=OutlierOptions)


class ClusterRequest(BaseModel):
    files: List[FileEntry]
    min_similarity: int = 70
    min_cluster_size: int = Field(default=2, ge=1)
    batch_size: Optional[int] = Field(default=None, ge=1)


class ClusterSummary(BaseModel):
    total_clusters: int
    total_files: int
    total_size: int


class ClusterResponse(BaseModel):
    clusters: List[LargeFileCluster]
    summary: ClusterSummary


class WarningRecord(BaseModel):
    path: Path
    type: WarningType
    message: str


class PhaseProgress(BaseModel):
    name: str
    status: Literal["pending", "running", "completed"]


class PhaseTiming(BaseModel):
    phase: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None


class AnalysisProgress(BaseModel):
    analysis_id: str
    status: AnalysisStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    warnings: List[WarningRecord] = Field(default_factory=list)
    root_path: Path
    stats: Dict[str, int] = Field(default_factory=dict)
    phase: str = ""
    last_path: Optional[str] = None
    phases: List[PhaseProgress] = Field(default_factory=list)
    error: Optional[str] = None


class AnalysisMetrics(BaseModel):
    analysis_id: str
    root_path: Path
    started_at: datetime
    completed_at: Optional[datetime]
    worker_count: int
    files_scanned: int
    files_hashed: int
    bytes_scanned: int
    phase_timings: List[PhaseTiming]


class ExportHeader(BaseModel):
    schema_version: int = 1
    generated_at: datetime
    root: Path
    options: OutlierOptions

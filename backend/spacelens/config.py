from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, validator

MIB = 1024 * 1024


class AppConfig(BaseModel):
    listen_host: str = Field(default="0.0.0.0")
    listen_port: int = Field(default=8080)
    config_path: Path = Field(default=Path("/config"))
    cache_db_path: Path | None = None
    log_level: str = Field(default="INFO")
    metrics_enabled: bool = Field(default=False)
    batch_size: int = Field(default=1000, ge=1)
    hash_min_size: int = Field(default=MIB, ge=0, description="Smallest file that gets a fuzzy hash")
    hash_max_size: int = Field(default=2 * 1024 * MIB, ge=0, description="Largest file that gets a fuzzy hash")
    executor_workers: int = Field(default=2, ge=1, le=32)

    @validator("log_level", pre=True)
    def normalize_level(cls, value):
        if not value:
            return "INFO"
        return str(value).upper()

    @validator("hash_max_size")
    def check_hash_bounds(cls, value, values):
        minimum = values.get("hash_min_size", 0)
        if value < minimum:
            raise ValueError("hash_max_size must not be below hash_min_size")
        return value

    @property
    def resolved_cache_path(self) -> Path:
        return self.cache_db_path if self.cache_db_path else self.config_path / "cache.db"

    @classmethod
    def from_env(cls) -> "AppConfig":
        root = os.getenv("SPL_CONFIG_PATH", "/config")
        cache = os.getenv("SPL_CACHE_DB")
        metrics_enabled = os.getenv("SPL_METRICS_ENABLED", "0") in {"1", "true", "TRUE"}
        return cls(
            listen_host=os.getenv("SPL_LISTEN_HOST", "0.0.0.0"),
            listen_port=int(os.getenv("SPL_LISTEN_PORT", "8080")),
            config_path=Path(root).expanduser().resolve(),
            cache_db_path=Path(cache).expanduser().resolve() if cache else None,
            log_level=os.getenv("SPL_LOG_LEVEL", "INFO"),
            metrics_enabled=metrics_enabled,
            batch_size=int(os.getenv("SPL_BATCH_SIZE", "1000")),
            hash_min_size=int(os.getenv("SPL_HASH_MIN_SIZE", str(MIB))),
            hash_max_size=int(os.getenv("SPL_HASH_MAX_SIZE", str(2 * 1024 * MIB))),
            executor_workers=int(os.getenv("SPL_EXECUTOR_WORKERS", "2")),
        )

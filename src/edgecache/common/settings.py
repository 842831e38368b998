"""Application configuration for the edgecache service."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


GIB = 1024 * 1024 * 1024


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def default_cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME")
    root = Path(base) if base else Path.home() / ".cache"
    return root / "edgecache"


class EdgeCacheSettings(BaseSettings):
    """Runtime settings for the caching proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    host: str = env_field("0.0.0.0", "EDGECACHE_HOST")
    port: int = env_field(8900, "PORT")
    cache_dir: Path = Field(default_factory=default_cache_dir, validation_alias="CACHE_DIR")
    max_size_gb: int = env_field(50, "CACHE_MAX_SIZE_GB")
    aws_region: str = env_field("us-east-1", "AWS_REGION")
    s3_endpoint_url: Optional[str] = env_field(None, "EDGECACHE_S3_ENDPOINT")
    fetch_timeout_seconds: float = env_field(300.0, "EDGECACHE_FETCH_TIMEOUT")
    s3_connect_timeout: float = env_field(10.0, "EDGECACHE_S3_CONNECT_TIMEOUT")
    s3_read_timeout: float = env_field(60.0, "EDGECACHE_S3_READ_TIMEOUT")
    s3_max_attempts: int = env_field(3, "EDGECACHE_S3_MAX_ATTEMPTS")
    download_chunk_bytes: int = env_field(1024 * 1024, "EDGECACHE_CHUNK_BYTES")
    metrics_token: Optional[SecretStr] = env_field(None, "EDGECACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "EDGECACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "EDGECACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "EDGECACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "EDGECACHE_OTEL_SAMPLER_RATIO")

    @field_validator("cache_dir", mode="before")
    @classmethod
    def _expand_cache_dir(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return default_cache_dir()
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        return value

    @field_validator("s3_endpoint_url", mode="before")
    @classmethod
    def _normalize_endpoint(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
        return value

    @field_validator("max_size_gb", "s3_max_attempts", "download_chunk_bytes")
    @classmethod
    def _reject_negative_ints(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("fetch_timeout_seconds", "s3_connect_timeout", "s3_read_timeout")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @property
    def max_size_bytes(self) -> int:
        return self.max_size_gb * GIB

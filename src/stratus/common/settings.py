"""Application configuration for the Stratus delivery server."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class CdnSettings(BaseSettings):
    """Runtime settings for the delivery server."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    host: str = env_field("0.0.0.0", "STRATUS_HOST")
    port: int = env_field(3000, "STRATUS_PORT")
    storage_path: Path = env_field(Path("./files"), "STRATUS_STORAGE_PATH")

    # Memory tier
    memory_cache_enabled: bool = env_field(True, "STRATUS_MEMORY_CACHE_ENABLED")
    memory_cache_max_bytes: int = env_field(64 * 1024 * 1024, "STRATUS_MEMORY_CACHE_MAX_BYTES")
    memory_cache_max_entry_bytes: int = env_field(10 * 1024 * 1024, "STRATUS_MEMORY_CACHE_MAX_ENTRY_BYTES")
    memory_cache_max_entries: int = env_field(100, "STRATUS_MEMORY_CACHE_MAX_ENTRIES")
    cache_ttl_seconds: int = env_field(300, "STRATUS_CACHE_TTL")

    # Disk tier
    disk_cache_path: Optional[Path] = env_field(None, "STRATUS_DISK_CACHE_PATH")
    disk_cache_max_bytes: int = env_field(1024 * 1024 * 1024, "STRATUS_DISK_CACHE_MAX_BYTES")

    # Delivery
    stream_chunk_bytes: int = env_field(64 * 1024, "STRATUS_STREAM_CHUNK_BYTES")
    compression_enabled: bool = env_field(True, "STRATUS_COMPRESSION_ENABLED")
    compression_min_bytes: int = env_field(256, "STRATUS_COMPRESSION_MIN_BYTES")
    compression_max_bytes: int = env_field(10 * 1024 * 1024, "STRATUS_COMPRESSION_MAX_BYTES")
    gzip_level: int = env_field(6, "STRATUS_GZIP_LEVEL")
    brotli_quality: int = env_field(5, "STRATUS_BROTLI_QUALITY")
    cache_control_max_age: int = env_field(3600, "STRATUS_CACHE_CONTROL_MAX_AGE")
    origin_timeout_seconds: float = env_field(30.0, "STRATUS_ORIGIN_TIMEOUT")
    max_upload_bytes: int = env_field(100 * 1024 * 1024, "STRATUS_MAX_UPLOAD_BYTES")

    # Auth and CORS
    jwt_secret: SecretStr = env_field(SecretStr("local-stratus-secret"), "STRATUS_JWT_SECRET")
    jwt_secret_fallbacks: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="STRATUS_JWT_SECRET_FALLBACKS")
    cors_allowed_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"], validation_alias="STRATUS_CORS_ORIGINS")
    cors_allowed_methods: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["GET", "HEAD", "OPTIONS"],
        validation_alias="STRATUS_CORS_METHODS",
    )

    # S3 origin
    s3_endpoint_url: Optional[str] = env_field(None, "STRATUS_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "STRATUS_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "STRATUS_S3_REGION")
    s3_max_retries: int = env_field(3, "STRATUS_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "STRATUS_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "STRATUS_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "STRATUS_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "STRATUS_S3_CIRCUIT_RESET")

    # Observability
    stats_database_url: Optional[str] = env_field(None, "STRATUS_STATS_DB")
    metrics_token: Optional[SecretStr] = env_field(None, "STRATUS_METRICS_TOKEN")
    log_level: str = env_field("INFO", "STRATUS_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "STRATUS_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "STRATUS_OTEL_SAMPLER_RATIO")

    @field_validator("jwt_secret_fallbacks", "cors_allowed_origins", mode="before")
    @classmethod
    def _split_lists(cls, value):
        return _split_csv(value)

    @field_validator("cors_allowed_methods", mode="before")
    @classmethod
    def _split_methods(cls, value):
        value = _split_csv(value)
        if isinstance(value, list):
            return [item.upper() for item in value]
        return value

    @field_validator("disk_cache_path", mode="before")
    @classmethod
    def _empty_disk_path(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("stream_chunk_bytes")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("stream chunk size must be positive")
        return value

    @field_validator("stats_database_url", mode="before")
    @classmethod
    def _normalize_stats_url(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            path = Path(value).expanduser().resolve()
            return f"sqlite+pysqlite:///{path.as_posix()}"
        return value

    @property
    def jwt_secrets(self) -> list[str]:
        return [self.jwt_secret.get_secret_value(), *self.jwt_secret_fallbacks]

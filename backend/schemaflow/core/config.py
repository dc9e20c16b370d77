from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "schemaflow-api"
    log_level: str = "INFO"
    api_prefix: str = "/api"
    allowed_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )

    database_url: str = "sqlite+pysqlite:///./schemaflow.db"
    upload_dir: str = "uploads"

    max_upload_size: int = 500 * 1024 * 1024
    allowed_extensions: List[str] = Field(default_factory=lambda: [".csv", ".xlsx"])
    allowed_mime_types: List[str] = Field(
        default_factory=lambda: [
            "text/csv",
            "application/vnd.ms-excel",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ]
    )

    ingest_batch_size: int = 1000
    large_file_batch_size: int = 200
    ingest_max_bytes: int = 50 * 1024 * 1024
    ingest_timeout_seconds: float = 300.0

    api_base_url: str = "http://localhost:8000/api"
    http_timeout: float = 30.0
    extraction_poll_interval: float = 1.0
    extraction_max_attempts: int = 10
    activation_poll_interval: float = 5.0
    activation_max_attempts: int = 24
    file_list_min_interval: float = 2.0
    synthetic_column_count: int = 10
    fingerprint_mode: Literal["metadata", "content"] = "metadata"

    @field_validator(
        "allowed_origins",
        "allowed_extensions",
        "allowed_mime_types",
        mode="before",
    )
    @classmethod
    def split_csv_values(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from schemaflow.models.file_error import ErrorSeverity, ErrorType
from schemaflow.models.uploaded_file import RETRYABLE_STATUSES, FileFormat, FileStatus


class IngestionProgress(BaseModel):
    processed: int = 0
    total: int | None = None
    percentage: int | None = None
    rows_per_second: float = 0.0
    elapsed_seconds: float = 0.0
    eta: int | None = None
    last_updated: datetime | None = None

    @classmethod
    def parse(cls, raw: Any) -> IngestionProgress | None:
        """Accept the stored progress as a JSON string, a mapping or a model."""
        if raw is None or raw == "":
            return None
        if isinstance(raw, IngestionProgress):
            return raw
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return None
        if not isinstance(raw, dict):
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError:
            return None


class FileMetadata(BaseModel):
    columns: list[str] | None = None
    ingestion_progress: IngestionProgress | None = None

    @field_validator("ingestion_progress", mode="before")
    @classmethod
    def normalize_progress(cls, value: Any) -> IngestionProgress | None:
        return IngestionProgress.parse(value)


class FilePublic(BaseModel):
    id: int
    project_id: int | None = None
    filename: str
    size_bytes: int
    format: FileFormat
    status: FileStatus
    fingerprint: str | None = None
    metadata: FileMetadata = Field(default_factory=FileMetadata)
    activation_error: str | None = None
    uploaded_at: datetime
    ingested_at: datetime | None = None


class UploadResponse(BaseModel):
    duplicate: bool
    file_id: int
    files: list[FilePublic]


class FileStatusResponse(BaseModel):
    file: FilePublic


class Pagination(BaseModel):
    page: int
    page_size: int
    total_count: int
    total_pages: int


class FileListResponse(BaseModel):
    files: list[FilePublic]
    pagination: Pagination


class ActivationResponse(BaseModel):
    file_id: int
    status: FileStatus
    message: str


class RetryIngestionRequest(BaseModel):
    file_id: int


class RetryIngestionResponse(BaseModel):
    message: str


class FileErrorPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: ErrorType
    severity: ErrorSeverity
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class FileErrorsResponse(BaseModel):
    file_id: int
    errors: list[FileErrorPublic]


class FileErrorCreate(BaseModel):
    type: ErrorType
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    message: str = Field(min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)
    status: FileStatus | None = None

    @field_validator("status")
    @classmethod
    def failure_status_only(cls, value: FileStatus | None) -> FileStatus | None:
        if value is not None and value not in RETRYABLE_STATUSES:
            raise ValueError("status must be one of: error, too_large, timeout")
        return value

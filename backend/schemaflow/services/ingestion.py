from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from schemaflow.core.config import get_settings
from schemaflow.models.file_error import ErrorSeverity, ErrorType
from schemaflow.models.file_row import FileRow
from schemaflow.models.uploaded_file import FileStatus, UploadedFile
from schemaflow.schemas.files import FileMetadata, FilePublic, IngestionProgress
from schemaflow.services.file_errors import clear_file_errors, record_file_error
from schemaflow.services.parser import (
    ParserError,
    count_file_rows,
    iter_file_rows,
    preview_file,
)
from schemaflow.services.schema_registry import get_latest_mapping

logger = logging.getLogger(__name__)


class IngestionTimeout(Exception):
    pass


def file_to_public(uploaded_file: UploadedFile) -> FilePublic:
    return FilePublic(
        id=uploaded_file.id,
        project_id=uploaded_file.project_id,
        filename=uploaded_file.filename,
        size_bytes=uploaded_file.size_bytes,
        format=uploaded_file.format,
        status=uploaded_file.status,
        fingerprint=uploaded_file.fingerprint,
        metadata=FileMetadata.model_validate(uploaded_file.metadata_json or {}),
        activation_error=uploaded_file.activation_error,
        uploaded_at=uploaded_file.uploaded_at,
        ingested_at=uploaded_file.ingested_at,
    )


def _update_metadata(uploaded_file: UploadedFile, **values: Any) -> None:
    # JSON columns only notice reassignment, not in-place mutation.
    uploaded_file.metadata_json = {**(uploaded_file.metadata_json or {}), **values}


def _fail(
    db: Session,
    uploaded_file: UploadedFile,
    file_status: FileStatus,
    error_type: ErrorType,
    severity: ErrorSeverity,
    message: str,
    details: dict[str, Any] | None = None,
) -> None:
    uploaded_file.status = file_status
    uploaded_file.activation_error = message
    record_file_error(db, uploaded_file.id, error_type, severity, message, details)
    db.commit()
    logger.warning("file %s moved to %s: %s", uploaded_file.id, file_status.value, message)


def build_progress(processed: int, total: int | None, started_at: float) -> dict[str, Any]:
    elapsed = max(time.monotonic() - started_at, 0.0)
    rows_per_second = processed / elapsed if elapsed > 0 else 0.0
    percentage = None
    eta = None
    if total:
        percentage = min(100, round(processed * 100 / total))
        if rows_per_second > 0:
            eta = round(max(total - processed, 0) / rows_per_second)
    progress = IngestionProgress(
        processed=processed,
        total=total,
        percentage=percentage,
        rows_per_second=round(rows_per_second, 2),
        elapsed_seconds=round(elapsed, 2),
        eta=eta,
        last_updated=datetime.now(timezone.utc),
    )
    return progress.model_dump(mode="json")


def project_row(row: dict[str, Any], mappings: dict[str, str]) -> dict[str, Any]:
    """Re-key a parsed row from file columns to schema columns."""
    return {
        schema_column: row.get(file_column, "")
        for file_column, schema_column in mappings.items()
    }


def run_header_extraction(session_factory: sessionmaker, file_id: int) -> None:
    with session_factory() as db:
        uploaded_file = db.get(UploadedFile, file_id)
        if not uploaded_file:
            return
        try:
            preview = preview_file(Path(uploaded_file.file_path), uploaded_file.format)
        except ParserError as exc:
            _fail(
                db,
                uploaded_file,
                FileStatus.ERROR,
                ErrorType.PARSING,
                ErrorSeverity.HIGH,
                f"Header extraction failed: {exc}",
            )
            return
        _update_metadata(uploaded_file, columns=preview.headers)
        if uploaded_file.status == FileStatus.PENDING:
            uploaded_file.status = FileStatus.HEADERS_EXTRACTED
        db.commit()
        logger.info(
            "extracted %d columns from file %s", len(preview.headers), file_id
        )


def reset_for_retry(db: Session, uploaded_file: UploadedFile) -> None:
    db.execute(delete(FileRow).where(FileRow.file_id == uploaded_file.id))
    clear_file_errors(db, uploaded_file.id)
    uploaded_file.status = FileStatus.PROCESSING
    uploaded_file.activation_error = None
    uploaded_file.ingested_at = None
    _update_metadata(uploaded_file, ingestion_progress=None)
    db.commit()


def run_ingestion(
    session_factory: sessionmaker,
    file_id: int,
    *,
    batch_size: int | None = None,
    large_file_mode: bool = False,
) -> None:
    """Project every row of a file through its latest mapping into file_rows."""
    settings = get_settings()
    batch_size = batch_size or settings.ingest_batch_size
    with session_factory() as db:
        uploaded_file = db.get(UploadedFile, file_id)
        if not uploaded_file:
            return

        mapping = get_latest_mapping(db, file_id)
        if not mapping:
            _fail(
                db,
                uploaded_file,
                FileStatus.ERROR,
                ErrorType.VALIDATION,
                ErrorSeverity.HIGH,
                "File has no column mapping.",
            )
            return

        if not large_file_mode and uploaded_file.size_bytes > settings.ingest_max_bytes:
            _fail(
                db,
                uploaded_file,
                FileStatus.TOO_LARGE,
                ErrorType.VALIDATION,
                ErrorSeverity.HIGH,
                "File is too large for standard ingestion; retry to use large-file settings.",
                {"size_bytes": uploaded_file.size_bytes, "limit": settings.ingest_max_bytes},
            )
            return

        uploaded_file.status = FileStatus.PROCESSING
        db.commit()

        file_path = Path(uploaded_file.file_path)
        started_at = time.monotonic()
        processed = 0
        try:
            total = count_file_rows(file_path, uploaded_file.format)
            batch: list[FileRow] = []
            for row_number, row in enumerate(
                iter_file_rows(file_path, uploaded_file.format), start=1
            ):
                batch.append(
                    FileRow(
                        file_id=file_id,
                        row_number=row_number,
                        data_json=project_row(row, mapping.mapping_json),
                    )
                )
                if len(batch) >= batch_size:
                    processed = _flush_batch(db, uploaded_file, batch, processed, total, started_at)
                    batch = []
                    if time.monotonic() - started_at > settings.ingest_timeout_seconds:
                        raise IngestionTimeout()
            processed = _flush_batch(db, uploaded_file, batch, processed, total, started_at)
        except IngestionTimeout:
            _fail(
                db,
                uploaded_file,
                FileStatus.TIMEOUT,
                ErrorType.SYSTEM,
                ErrorSeverity.MEDIUM,
                "Ingestion exceeded the time budget.",
                {"processed": processed, "timeout_seconds": settings.ingest_timeout_seconds},
            )
            return
        except ParserError as exc:
            db.rollback()
            _fail(
                db,
                uploaded_file,
                FileStatus.ERROR,
                ErrorType.PARSING,
                ErrorSeverity.HIGH,
                f"Unable to parse file: {exc}",
                {"processed": processed},
            )
            return
        except SQLAlchemyError as exc:
            db.rollback()
            _fail(
                db,
                uploaded_file,
                FileStatus.ERROR,
                ErrorType.DATABASE,
                ErrorSeverity.CRITICAL,
                f"Unable to store rows: {exc.__class__.__name__}",
                {"processed": processed},
            )
            return
        except Exception as exc:
            db.rollback()
            logger.exception("ingestion of file %s failed", file_id)
            _fail(
                db,
                uploaded_file,
                FileStatus.ERROR,
                ErrorType.SYSTEM,
                ErrorSeverity.CRITICAL,
                f"Ingestion failed: {exc.__class__.__name__}",
                {"processed": processed},
            )
            return

        uploaded_file.status = FileStatus.ACTIVE
        uploaded_file.ingested_at = datetime.now(timezone.utc)
        db.commit()
        logger.info("file %s active with %d rows", file_id, processed)


def _flush_batch(
    db: Session,
    uploaded_file: UploadedFile,
    batch: list[FileRow],
    processed: int,
    total: int | None,
    started_at: float,
) -> int:
    processed += len(batch)
    if batch:
        db.add_all(batch)
    _update_metadata(
        uploaded_file,
        ingestion_progress=build_progress(processed, total, started_at),
    )
    db.commit()
    return processed

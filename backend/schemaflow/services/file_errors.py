from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from schemaflow.models.file_error import ErrorSeverity, ErrorType, FileError
from schemaflow.schemas.files import FileErrorPublic


def record_file_error(
    db: Session,
    file_id: int,
    error_type: ErrorType,
    severity: ErrorSeverity,
    message: str,
    details: dict[str, Any] | None = None,
) -> FileError:
    error = FileError(
        file_id=file_id,
        type=error_type,
        severity=severity,
        message=message,
        details_json=details or {},
    )
    db.add(error)
    return error


def list_file_errors(db: Session, file_id: int) -> list[FileError]:
    return list(
        db.scalars(
            select(FileError)
            .where(FileError.file_id == file_id)
            .order_by(FileError.timestamp.desc(), FileError.id.desc())
        ).all()
    )


def clear_file_errors(db: Session, file_id: int) -> None:
    db.execute(delete(FileError).where(FileError.file_id == file_id))


def error_to_public(error: FileError) -> FileErrorPublic:
    return FileErrorPublic(
        type=error.type,
        severity=error.severity,
        message=error.message,
        details=error.details_json or {},
        timestamp=error.timestamp,
    )

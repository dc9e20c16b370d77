from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from schemaflow.db.base import Base


class FileFormat(str, Enum):
    CSV = "csv"
    XLSX = "xlsx"
    UNKNOWN = "unknown"


class FileStatus(str, Enum):
    PENDING = "pending"
    HEADERS_EXTRACTED = "headers_extracted"
    PROCESSING = "processing"
    ACTIVE = "active"
    ERROR = "error"
    TOO_LARGE = "too_large"
    TIMEOUT = "timeout"


RETRYABLE_STATUSES = frozenset(
    {FileStatus.ERROR, FileStatus.TOO_LARGE, FileStatus.TIMEOUT}
)


class UploadedFile(Base):
    __tablename__ = "files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    project_id: Mapped[int | None] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(512), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    format: Mapped[FileFormat] = mapped_column(
        SqlEnum(FileFormat, name="file_format"),
        nullable=False,
    )
    status: Mapped[FileStatus] = mapped_column(
        SqlEnum(FileStatus, name="file_status"),
        nullable=False,
        default=FileStatus.PENDING,
    )
    fingerprint: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    activation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    ingested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

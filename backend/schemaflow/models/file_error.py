from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, DateTime, Enum as SqlEnum, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from schemaflow.db.base import Base


class ErrorType(str, Enum):
    VALIDATION = "validation"
    PARSING = "parsing"
    CONVERSION = "conversion"
    DATABASE = "database"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FileError(Base):
    __tablename__ = "file_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    file_id: Mapped[int] = mapped_column(
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[ErrorType] = mapped_column(
        SqlEnum(ErrorType, name="file_error_type"),
        nullable=False,
    )
    severity: Mapped[ErrorSeverity] = mapped_column(
        SqlEnum(ErrorSeverity, name="file_error_severity"),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from schemaflow.db.base import Base


class SchemaVersion(Base):
    """Snapshot of a schema's columns, written on every create and update."""

    __tablename__ = "schema_versions"
    __table_args__ = (UniqueConstraint("schema_id", "version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    schema_id: Mapped[int] = mapped_column(
        ForeignKey("global_schemas.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    columns_json: Mapped[list[dict]] = mapped_column(JSON, nullable=False)
    change_log_json: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    comment: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

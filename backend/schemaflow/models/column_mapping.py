from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from schemaflow.db.base import Base


class ColumnMapping(Base):
    """One saved mapping per commit; re-mapping a file appends a new row."""

    __tablename__ = "column_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    file_id: Mapped[int] = mapped_column(
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    schema_id: Mapped[int] = mapped_column(
        ForeignKey("global_schemas.id", ondelete="CASCADE"),
        nullable=False,
    )
    mapping_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    new_columns_added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

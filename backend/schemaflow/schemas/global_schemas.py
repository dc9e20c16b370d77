from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ColumnType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"


class SchemaColumn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    type: ColumnType = ColumnType.TEXT
    is_required: bool = False
    description: str | None = None


def _ensure_unique_names(columns: list[SchemaColumn]) -> list[SchemaColumn]:
    seen: set[str] = set()
    for column in columns:
        if column.name in seen:
            raise ValueError(f"duplicate column name: {column.name}")
        seen.add(column.name)
    return columns


class SchemaCreate(BaseModel):
    name: str = Field(default="Auto-generated Schema", min_length=1, max_length=255)
    description: str | None = None
    project_id: int | None = None
    columns: list[SchemaColumn] = Field(default_factory=list)
    if_absent: bool = False

    unique_column_names = field_validator("columns")(_ensure_unique_names)


class SchemaUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    columns: list[SchemaColumn]
    is_active: bool | None = None

    unique_column_names = field_validator("columns")(_ensure_unique_names)


class SchemaPublic(BaseModel):
    id: int
    project_id: int | None = None
    name: str
    description: str | None = None
    columns: list[SchemaColumn]
    is_active: bool
    version: int
    created_at: datetime
    updated_at: datetime

    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]


class SchemasResponse(BaseModel):
    schemas: list[SchemaPublic]


class SchemaChangeType(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    MODIFY = "modify"


class SchemaChange(BaseModel):
    type: SchemaChangeType
    column_name: str
    before: SchemaColumn | None = None
    after: SchemaColumn | None = None


class SchemaVersionPublic(BaseModel):
    id: int
    schema_id: int
    version: int
    columns: list[SchemaColumn]
    changes: list[SchemaChange] = Field(default_factory=list)
    comment: str | None = None
    created_at: datetime


class SchemaVersionsResponse(BaseModel):
    schema_id: int
    versions: list[SchemaVersionPublic]

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ColumnMappingCreate(BaseModel):
    file_id: int
    schema_id: int
    mappings: dict[str, str] = Field(default_factory=dict)
    new_columns_added: int = Field(default=0, ge=0)


class ColumnMappingResult(BaseModel):
    success: bool
    mapping_id: int
    new_columns_added: int


class ColumnMappingPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    file_id: int
    schema_id: int
    mappings: dict[str, str]
    new_columns_added: int
    created_at: datetime

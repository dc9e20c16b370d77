from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import BaseModel

from schemaflow.pipeline.errors import MappingSaveError, PipelineError, SchemaFetchError
from schemaflow.schemas.global_schemas import (
    ColumnType,
    SchemaColumn,
    SchemaPublic,
    SchemaUpdate,
)
from schemaflow.schemas.mappings import ColumnMappingCreate

if TYPE_CHECKING:
    from schemaflow.pipeline.client import IngestionClient

logger = logging.getLogger(__name__)

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


class MappingEntry(BaseModel):
    file_column: str
    schema_column: str | None = None
    add_to_schema: bool = False


@dataclass
class MappingPlan:
    mappings: dict[str, str]
    new_columns: list[SchemaColumn]
    dropped: list[str]
    warnings: list[str]


@dataclass
class MappingCommit:
    mapping_id: int
    mapping: ColumnMappingCreate
    schema: SchemaPublic
    warnings: list[str] = field(default_factory=list)


def normalize_name(name: str) -> str:
    return _NON_ALPHANUMERIC.sub("", name.lower())


def suggest_column(file_column: str, schema_columns: list[SchemaColumn]) -> str | None:
    lowered = file_column.lower()
    for column in schema_columns:
        if column.name.lower() == lowered:
            return column.name

    normalized = normalize_name(file_column)
    for column in schema_columns:
        if normalize_name(column.name) == normalized:
            return column.name

    if not normalized:
        return None
    for column in schema_columns:
        candidate = normalize_name(column.name)
        if candidate and (candidate in normalized or normalized in candidate):
            return column.name
    return None


def suggest(file_columns: list[str], schema_columns: list[SchemaColumn]) -> dict[str, str | None]:
    """Non-binding pre-fill for the mapping form; ``None`` means no match."""
    return {column: suggest_column(column, schema_columns) for column in file_columns}


def default_entries(
    file_columns: list[str],
    schema: SchemaPublic,
    *,
    add_unmatched: bool = False,
) -> list[MappingEntry]:
    suggestions = suggest(file_columns, schema.columns)
    return [
        MappingEntry(
            file_column=column,
            schema_column=suggestions[column],
            add_to_schema=add_unmatched and suggestions[column] is None,
        )
        for column in file_columns
    ]


def plan_mapping(schema: SchemaPublic, entries: list[MappingEntry]) -> MappingPlan:
    existing = set(schema.column_names())
    mappings: dict[str, str] = {}
    new_columns: list[SchemaColumn] = []
    dropped: list[str] = []

    for entry in entries:
        if entry.schema_column:
            mappings[entry.file_column] = entry.schema_column
        elif entry.add_to_schema:
            if entry.file_column not in existing:
                existing.add(entry.file_column)
                new_columns.append(
                    SchemaColumn(
                        name=entry.file_column,
                        type=ColumnType.TEXT,
                        is_required=False,
                        description=f"Added from file column: {entry.file_column}",
                    )
                )
            mappings[entry.file_column] = entry.file_column
        else:
            dropped.append(entry.file_column)

    mapped_targets = set(mappings.values())
    warnings = [
        f"Required schema column '{column.name}' is not mapped."
        for column in schema.columns
        if column.is_required and column.name not in mapped_targets
    ]
    return MappingPlan(
        mappings=mappings,
        new_columns=new_columns,
        dropped=dropped,
        warnings=warnings,
    )


class ColumnMapper:
    """Suggests mappings and commits user-confirmed ones.

    Commits only ever append columns to the schema; existing columns keep
    their name, type and order.
    """

    def __init__(self, client: IngestionClient) -> None:
        self._client = client

    suggest = staticmethod(suggest)

    async def commit(
        self,
        file_id: int,
        schema: SchemaPublic,
        entries: list[MappingEntry],
    ) -> MappingCommit:
        try:
            schema = await self._client.get_schema(schema.id)
        except SchemaFetchError as exc:
            logger.warning("using cached schema %s for commit: %s", schema.id, exc)

        plan = plan_mapping(schema, entries)
        for warning in plan.warnings:
            logger.warning("file %s: %s", file_id, warning)

        if plan.new_columns:
            try:
                schema = await self._client.update_schema(
                    schema.id,
                    SchemaUpdate(columns=[*schema.columns, *plan.new_columns]),
                )
            except PipelineError as exc:
                raise MappingSaveError(
                    f"Unable to add columns to schema: {exc.message}",
                    file_id=file_id,
                    status_code=exc.status_code,
                ) from exc

        payload = ColumnMappingCreate(
            file_id=file_id,
            schema_id=schema.id,
            mappings=plan.mappings,
            new_columns_added=len(plan.new_columns),
        )
        result = await self._client.save_column_mapping(payload)
        logger.info(
            "saved mapping %s for file %s (%d columns, %d added)",
            result.mapping_id,
            file_id,
            len(plan.mappings),
            len(plan.new_columns),
        )
        return MappingCommit(
            mapping_id=result.mapping_id,
            mapping=payload,
            schema=schema,
            warnings=plan.warnings,
        )

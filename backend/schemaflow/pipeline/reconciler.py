from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from schemaflow.schemas.global_schemas import ColumnType, SchemaColumn, SchemaPublic


class ReconcileAction(str, Enum):
    CREATE_SCHEMA = "create_schema"
    AUTO_MAP = "auto_map"
    MAPPING_REQUIRED = "mapping_required"


@dataclass(frozen=True)
class ReconciliationResult:
    action: ReconcileAction
    new_columns: list[str] = field(default_factory=list)
    mapping: dict[str, str] = field(default_factory=dict)
    proposed_columns: list[SchemaColumn] = field(default_factory=list)

    @property
    def requires_manual_mapping(self) -> bool:
        return self.action == ReconcileAction.MAPPING_REQUIRED


def _unique(columns: list[str]) -> list[str]:
    return list(dict.fromkeys(columns))


def find_new_columns(file_columns: list[str], schema_column_names: list[str]) -> list[str]:
    """Exact, case-sensitive set difference, in file order."""
    known = set(schema_column_names)
    return [column for column in _unique(file_columns) if column not in known]


def reconcile(
    file_columns: list[str],
    active_schema: SchemaPublic | None,
) -> ReconciliationResult:
    columns = _unique(file_columns)
    identity = {column: column for column in columns}

    if active_schema is None:
        return ReconciliationResult(
            action=ReconcileAction.CREATE_SCHEMA,
            mapping=identity,
            proposed_columns=[
                SchemaColumn(
                    name=column,
                    type=ColumnType.TEXT,
                    is_required=False,
                    description=f"Auto-generated from column: {column}",
                )
                for column in columns
            ],
        )

    new_columns = find_new_columns(columns, active_schema.column_names())
    if new_columns:
        return ReconciliationResult(
            action=ReconcileAction.MAPPING_REQUIRED,
            new_columns=new_columns,
        )
    return ReconciliationResult(action=ReconcileAction.AUTO_MAP, mapping=identity)

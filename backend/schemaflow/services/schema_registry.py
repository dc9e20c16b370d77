from __future__ import annotations

import logging
import threading

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from schemaflow.models.column_mapping import ColumnMapping
from schemaflow.models.global_schema import GlobalSchema
from schemaflow.models.schema_version import SchemaVersion
from schemaflow.models.uploaded_file import UploadedFile
from schemaflow.schemas.global_schemas import (
    SchemaColumn,
    SchemaCreate,
    SchemaPublic,
    SchemaUpdate,
    SchemaVersionPublic,
)
from schemaflow.schemas.mappings import ColumnMappingCreate, ColumnMappingPublic

logger = logging.getLogger(__name__)

# Serializes check-then-insert for schema creation within one process.
_schema_creation_lock = threading.Lock()


def _project_clause(project_id: int | None):
    if project_id is None:
        return GlobalSchema.project_id.is_(None)
    return GlobalSchema.project_id == project_id


def schema_to_public(schema: GlobalSchema) -> SchemaPublic:
    return SchemaPublic(
        id=schema.id,
        project_id=schema.project_id,
        name=schema.name,
        description=schema.description,
        columns=[SchemaColumn.model_validate(column) for column in schema.columns_json],
        is_active=schema.is_active,
        version=schema.version,
        created_at=schema.created_at,
        updated_at=schema.updated_at,
    )


def list_schemas(db: Session, project_id: int | None) -> list[GlobalSchema]:
    return list(
        db.scalars(
            select(GlobalSchema)
            .where(_project_clause(project_id))
            .order_by(GlobalSchema.is_active.desc(), GlobalSchema.created_at.desc())
        ).all()
    )


def get_active_schema(db: Session, project_id: int | None) -> GlobalSchema | None:
    return db.scalar(
        select(GlobalSchema)
        .where(_project_clause(project_id), GlobalSchema.is_active.is_(True))
        .order_by(GlobalSchema.id.desc())
    )


def get_schema_or_404(db: Session, schema_id: int) -> GlobalSchema:
    schema = db.get(GlobalSchema, schema_id)
    if not schema:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Schema not found.",
        )
    return schema


def create_schema(db: Session, payload: SchemaCreate) -> tuple[GlobalSchema, bool]:
    """Create the project's active schema.

    With ``if_absent`` an existing active schema is returned untouched, which
    keeps concurrent first uploads from racing to two schemas. Without it the
    new schema replaces the active one.
    """
    with _schema_creation_lock:
        existing = get_active_schema(db, payload.project_id)
        if existing and payload.if_absent:
            return existing, False
        if existing:
            db.execute(
                update(GlobalSchema)
                .where(_project_clause(payload.project_id))
                .values(is_active=False)
            )
        schema = GlobalSchema(
            project_id=payload.project_id,
            name=payload.name,
            description=payload.description,
            columns_json=[column.model_dump(mode="json") for column in payload.columns],
            is_active=True,
            version=1,
        )
        db.add(schema)
        db.flush()
        record_schema_version(db, schema, "Schema created.")
        db.commit()
        db.refresh(schema)
    logger.info(
        "created schema %s for project %s with %d columns",
        schema.id,
        schema.project_id,
        len(payload.columns),
    )
    return schema, True


def update_schema(db: Session, schema: GlobalSchema, payload: SchemaUpdate) -> GlobalSchema:
    # Last writer wins; each write is kept as a schema_versions snapshot.
    schema.columns_json = [column.model_dump(mode="json") for column in payload.columns]
    if payload.name is not None:
        schema.name = payload.name
    if payload.description is not None:
        schema.description = payload.description
    if payload.is_active is True and not schema.is_active:
        db.execute(
            update(GlobalSchema)
            .where(_project_clause(schema.project_id), GlobalSchema.id != schema.id)
            .values(is_active=False)
        )
        schema.is_active = True
    elif payload.is_active is False:
        schema.is_active = False
    schema.version += 1
    record_schema_version(db, schema, "Schema updated.")
    db.commit()
    db.refresh(schema)
    return schema


def diff_columns(before: list[dict], after: list[dict]) -> list[dict]:
    """Change log entries turning the ``before`` columns into ``after``."""
    previous = {column["name"]: column for column in before}
    current = {column["name"]: column for column in after}
    changes: list[dict] = []
    for name, column in current.items():
        if name not in previous:
            changes.append({"type": "add", "column_name": name, "after": column})
        elif previous[name] != column:
            changes.append(
                {
                    "type": "modify",
                    "column_name": name,
                    "before": previous[name],
                    "after": column,
                }
            )
    for name, column in previous.items():
        if name not in current:
            changes.append({"type": "remove", "column_name": name, "before": column})
    return changes


def get_latest_version(db: Session, schema_id: int) -> SchemaVersion | None:
    return db.scalar(
        select(SchemaVersion)
        .where(SchemaVersion.schema_id == schema_id)
        .order_by(SchemaVersion.version.desc())
    )


def record_schema_version(
    db: Session,
    schema: GlobalSchema,
    comment: str | None = None,
) -> SchemaVersion:
    """Snapshot ``schema`` at its current version; the caller commits."""
    previous = get_latest_version(db, schema.id)
    snapshot = SchemaVersion(
        schema_id=schema.id,
        version=schema.version,
        columns_json=list(schema.columns_json),
        change_log_json=diff_columns(
            previous.columns_json if previous else [], schema.columns_json
        ),
        comment=comment,
    )
    db.add(snapshot)
    return snapshot


def list_schema_versions(db: Session, schema_id: int) -> list[SchemaVersion]:
    return list(
        db.scalars(
            select(SchemaVersion)
            .where(SchemaVersion.schema_id == schema_id)
            .order_by(SchemaVersion.version.desc())
        ).all()
    )


def version_to_public(snapshot: SchemaVersion) -> SchemaVersionPublic:
    return SchemaVersionPublic.model_validate(
        {
            "id": snapshot.id,
            "schema_id": snapshot.schema_id,
            "version": snapshot.version,
            "columns": snapshot.columns_json,
            "changes": snapshot.change_log_json or [],
            "comment": snapshot.comment,
            "created_at": snapshot.created_at,
        }
    )


def save_column_mapping(db: Session, payload: ColumnMappingCreate) -> ColumnMapping:
    uploaded_file = db.get(UploadedFile, payload.file_id)
    if not uploaded_file or uploaded_file.is_deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found.",
        )
    schema = get_schema_or_404(db, payload.schema_id)
    schema_names = {column["name"] for column in schema.columns_json}
    unknown = sorted(
        {target for target in payload.mappings.values() if target not in schema_names}
    )
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Schema has no columns named: {', '.join(unknown)}.",
        )

    mapping = ColumnMapping(
        file_id=payload.file_id,
        schema_id=payload.schema_id,
        mapping_json=dict(payload.mappings),
        new_columns_added=payload.new_columns_added,
    )
    db.add(mapping)
    db.commit()
    db.refresh(mapping)
    return mapping


def get_latest_mapping(db: Session, file_id: int) -> ColumnMapping | None:
    return db.scalar(
        select(ColumnMapping)
        .where(ColumnMapping.file_id == file_id)
        .order_by(ColumnMapping.id.desc())
    )


def mapping_to_public(mapping: ColumnMapping) -> ColumnMappingPublic:
    return ColumnMappingPublic(
        id=mapping.id,
        file_id=mapping.file_id,
        schema_id=mapping.schema_id,
        mappings=mapping.mapping_json,
        new_columns_added=mapping.new_columns_added,
        created_at=mapping.created_at,
    )

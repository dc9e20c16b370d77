from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from schemaflow.api.deps import ProjectScope, ensure_project
from schemaflow.db.session import get_db
from schemaflow.schemas.global_schemas import (
    SchemaCreate,
    SchemaPublic,
    SchemasResponse,
    SchemaUpdate,
    SchemaVersionsResponse,
)
from schemaflow.services.schema_registry import (
    create_schema,
    get_schema_or_404,
    list_schema_versions,
    list_schemas,
    schema_to_public,
    update_schema,
    version_to_public,
)

router = APIRouter(prefix="/schemas", tags=["schemas"])


@router.get("", response_model=SchemasResponse)
def get_schemas(
    project: ProjectScope,
    db: Session = Depends(get_db),
) -> SchemasResponse:
    project_id = project.id if project else None
    return SchemasResponse(
        schemas=[schema_to_public(schema) for schema in list_schemas(db, project_id)]
    )


@router.post("", response_model=SchemaPublic, status_code=status.HTTP_201_CREATED)
def post_schema(
    payload: SchemaCreate,
    response: Response,
    db: Session = Depends(get_db),
) -> SchemaPublic:
    if payload.project_id is not None:
        ensure_project(payload.project_id, db)
    schema, created = create_schema(db, payload)
    if not created:
        response.status_code = status.HTTP_200_OK
    return schema_to_public(schema)


@router.get("/{schema_id}", response_model=SchemaPublic)
def get_schema(schema_id: int, db: Session = Depends(get_db)) -> SchemaPublic:
    return schema_to_public(get_schema_or_404(db, schema_id))


@router.put("/{schema_id}", response_model=SchemaPublic)
def put_schema(
    schema_id: int,
    payload: SchemaUpdate,
    db: Session = Depends(get_db),
) -> SchemaPublic:
    schema = get_schema_or_404(db, schema_id)
    return schema_to_public(update_schema(db, schema, payload))


@router.get("/{schema_id}/versions", response_model=SchemaVersionsResponse)
def get_schema_versions(
    schema_id: int,
    db: Session = Depends(get_db),
) -> SchemaVersionsResponse:
    get_schema_or_404(db, schema_id)
    return SchemaVersionsResponse(
        schema_id=schema_id,
        versions=[
            version_to_public(snapshot) for snapshot in list_schema_versions(db, schema_id)
        ],
    )

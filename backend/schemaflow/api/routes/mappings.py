from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from schemaflow.db.session import get_db
from schemaflow.schemas.mappings import (
    ColumnMappingCreate,
    ColumnMappingPublic,
    ColumnMappingResult,
)
from schemaflow.services.schema_registry import (
    get_latest_mapping,
    mapping_to_public,
    save_column_mapping,
)

router = APIRouter(prefix="/column-mappings", tags=["column-mappings"])


@router.post(
    "",
    response_model=ColumnMappingResult,
    status_code=status.HTTP_201_CREATED,
)
def post_column_mapping(
    payload: ColumnMappingCreate,
    db: Session = Depends(get_db),
) -> ColumnMappingResult:
    mapping = save_column_mapping(db, payload)
    return ColumnMappingResult(
        success=True,
        mapping_id=mapping.id,
        new_columns_added=mapping.new_columns_added,
    )


@router.get("", response_model=ColumnMappingPublic)
def get_column_mapping(
    file_id: int = Query(...),
    db: Session = Depends(get_db),
) -> ColumnMappingPublic:
    mapping = get_latest_mapping(db, file_id)
    if not mapping:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Mapping not found.",
        )
    return mapping_to_public(mapping)

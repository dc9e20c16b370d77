from typing import Annotated

from fastapi import Depends, HTTPException, Query, status
from sqlalchemy.orm import Session, sessionmaker

from schemaflow.db.session import get_db, get_session_factory
from schemaflow.models.project import Project
from schemaflow.models.uploaded_file import UploadedFile


def get_optional_project(
    project_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
) -> Project | None:
    if project_id is None:
        return None
    return ensure_project(project_id, db)


def ensure_project(project_id: int, db: Session) -> Project:
    project = db.get(Project, project_id)
    if not project:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Project not found.",
        )
    return project


def get_file_or_404(file_id: int, db: Session) -> UploadedFile:
    uploaded_file = db.get(UploadedFile, file_id)
    if not uploaded_file or uploaded_file.is_deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found.",
        )
    return uploaded_file


ProjectScope = Annotated[Project | None, Depends(get_optional_project)]
SessionFactory = Annotated[sessionmaker, Depends(get_session_factory)]

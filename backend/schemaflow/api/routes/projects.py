from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from schemaflow.api.deps import ensure_project
from schemaflow.db.session import get_db
from schemaflow.models.project import Project
from schemaflow.schemas.projects import ProjectCreate, ProjectPublic, ProjectsResponse

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("", response_model=ProjectsResponse)
def list_projects(db: Session = Depends(get_db)) -> ProjectsResponse:
    projects = db.scalars(select(Project).order_by(Project.created_at.desc())).all()
    return ProjectsResponse(
        projects=[ProjectPublic.model_validate(project) for project in projects]
    )


@router.post("", response_model=ProjectPublic, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
) -> ProjectPublic:
    project = Project(name=payload.name, description=payload.description)
    db.add(project)
    db.commit()
    db.refresh(project)
    return ProjectPublic.model_validate(project)


@router.get("/{project_id}", response_model=ProjectPublic)
def get_project(project_id: int, db: Session = Depends(get_db)) -> ProjectPublic:
    return ProjectPublic.model_validate(ensure_project(project_id, db))

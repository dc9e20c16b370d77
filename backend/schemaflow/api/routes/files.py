from __future__ import annotations

import math
from pathlib import Path
from uuid import uuid4

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Response,
    UploadFile,
    status,
)
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from schemaflow.api.deps import SessionFactory, ensure_project, get_file_or_404
from schemaflow.core.config import get_settings
from schemaflow.db.session import get_db
from schemaflow.models.uploaded_file import (
    RETRYABLE_STATUSES,
    FileStatus,
    UploadedFile,
)
from schemaflow.schemas.files import (
    ActivationResponse,
    FileErrorCreate,
    FileErrorPublic,
    FileErrorsResponse,
    FileListResponse,
    FileStatusResponse,
    Pagination,
    RetryIngestionRequest,
    RetryIngestionResponse,
    UploadResponse,
)
from schemaflow.services.file_errors import (
    error_to_public,
    list_file_errors,
    record_file_error,
)
from schemaflow.services.ingestion import (
    file_to_public,
    reset_for_retry,
    run_header_extraction,
    run_ingestion,
)
from schemaflow.services.parser import detect_format
from schemaflow.services.schema_registry import get_latest_mapping

router = APIRouter(tags=["files"])

UPLOAD_CHUNK_SIZE = 1024 * 1024


def _find_duplicate(
    db: Session,
    project_id: int | None,
    fingerprint: str,
) -> UploadedFile | None:
    project_clause = (
        UploadedFile.project_id.is_(None)
        if project_id is None
        else UploadedFile.project_id == project_id
    )
    return db.scalar(
        select(UploadedFile)
        .where(
            project_clause,
            UploadedFile.fingerprint == fingerprint,
            UploadedFile.is_deleted.is_(False),
        )
        .order_by(UploadedFile.id.asc())
    )


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_file(
    response: Response,
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory,
    file: UploadFile = File(...),
    project_id: int | None = Form(default=None),
    fingerprint: str | None = Form(default=None),
    db: Session = Depends(get_db),
) -> UploadResponse:
    if project_id is not None:
        ensure_project(project_id, db)

    if fingerprint:
        existing = _find_duplicate(db, project_id, fingerprint)
        if existing:
            await file.close()
            response.status_code = status.HTTP_200_OK
            return UploadResponse(
                duplicate=True,
                file_id=existing.id,
                files=[file_to_public(existing)],
            )

    settings = get_settings()
    filename = file.filename or ""
    extension = Path(filename).suffix.lower()
    if extension not in settings.allowed_extensions:
        await file.close()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV or XLSX files are supported.",
        )

    project_dir = Path(settings.upload_dir) / f"project_{project_id or 'shared'}"
    project_dir.mkdir(parents=True, exist_ok=True)
    stored_path = project_dir / f"{uuid4().hex}{extension}"

    total_size = 0
    try:
        with stored_path.open("wb") as target:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > settings.max_upload_size:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail="File exceeds the maximum upload size.",
                    )
                target.write(chunk)
    except HTTPException:
        stored_path.unlink(missing_ok=True)
        raise
    finally:
        await file.close()

    uploaded_file = UploadedFile(
        project_id=project_id,
        filename=filename,
        file_path=str(stored_path),
        size_bytes=total_size,
        format=detect_format(filename),
        status=FileStatus.PENDING,
        fingerprint=fingerprint,
        metadata_json={},
    )
    db.add(uploaded_file)
    db.commit()
    db.refresh(uploaded_file)

    background_tasks.add_task(run_header_extraction, session_factory, uploaded_file.id)
    return UploadResponse(
        duplicate=False,
        file_id=uploaded_file.id,
        files=[file_to_public(uploaded_file)],
    )


@router.get("/files", response_model=FileListResponse)
def list_files(
    project_id: int | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
) -> FileListResponse:
    query = select(UploadedFile).where(UploadedFile.is_deleted.is_(False))
    if project_id is not None:
        query = query.where(UploadedFile.project_id == project_id)
    total_count = db.scalar(select(func.count()).select_from(query.subquery())) or 0
    files = db.scalars(
        query.order_by(UploadedFile.uploaded_at.desc(), UploadedFile.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return FileListResponse(
        files=[file_to_public(uploaded_file) for uploaded_file in files],
        pagination=Pagination(
            page=page,
            page_size=page_size,
            total_count=total_count,
            total_pages=math.ceil(total_count / page_size) if total_count else 0,
        ),
    )


@router.get("/files/{file_id}", response_model=FileStatusResponse)
def get_file(file_id: int, db: Session = Depends(get_db)) -> FileStatusResponse:
    return FileStatusResponse(file=file_to_public(get_file_or_404(file_id, db)))


@router.delete(
    "/files/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_model=None,
)
def delete_file(file_id: int, db: Session = Depends(get_db)) -> Response:
    uploaded_file = get_file_or_404(file_id, db)
    uploaded_file.is_deleted = True
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/files/{file_id}/activate",
    response_model=ActivationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def activate_file(
    file_id: int,
    response: Response,
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory,
    db: Session = Depends(get_db),
) -> ActivationResponse:
    uploaded_file = get_file_or_404(file_id, db)
    if uploaded_file.status == FileStatus.ACTIVE:
        response.status_code = status.HTTP_200_OK
        return ActivationResponse(
            file_id=file_id,
            status=uploaded_file.status,
            message="File is already active.",
        )
    if uploaded_file.status == FileStatus.PROCESSING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="File is already being processed.",
        )
    if uploaded_file.status in RETRYABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="File failed ingestion; use retry-ingestion instead.",
        )
    if not get_latest_mapping(db, file_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Save a column mapping before activating the file.",
        )

    uploaded_file.status = FileStatus.PROCESSING
    uploaded_file.activation_error = None
    db.commit()
    background_tasks.add_task(run_ingestion, session_factory, file_id)
    return ActivationResponse(
        file_id=file_id,
        status=FileStatus.PROCESSING,
        message="Activation started.",
    )


@router.post("/files/retry-ingestion", response_model=RetryIngestionResponse)
def retry_ingestion(
    payload: RetryIngestionRequest,
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory,
    db: Session = Depends(get_db),
) -> RetryIngestionResponse:
    uploaded_file = get_file_or_404(payload.file_id, db)
    if uploaded_file.status not in RETRYABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File is not in a retryable state ({uploaded_file.status.value}).",
        )
    reset_for_retry(db, uploaded_file)
    settings = get_settings()
    background_tasks.add_task(
        run_ingestion,
        session_factory,
        uploaded_file.id,
        batch_size=settings.large_file_batch_size,
        large_file_mode=True,
    )
    return RetryIngestionResponse(
        message=(
            "Ingestion restarted with batch size "
            f"{settings.large_file_batch_size}."
        )
    )


@router.get("/files/{file_id}/errors", response_model=FileErrorsResponse)
def get_file_errors(file_id: int, db: Session = Depends(get_db)) -> FileErrorsResponse:
    get_file_or_404(file_id, db)
    return FileErrorsResponse(
        file_id=file_id,
        errors=[error_to_public(error) for error in list_file_errors(db, file_id)],
    )


@router.post(
    "/files/{file_id}/errors",
    response_model=FileErrorPublic,
    status_code=status.HTTP_201_CREATED,
)
def post_file_error(
    file_id: int,
    payload: FileErrorCreate,
    db: Session = Depends(get_db),
) -> FileErrorPublic:
    uploaded_file = get_file_or_404(file_id, db)
    error = record_file_error(
        db,
        file_id,
        payload.type,
        payload.severity,
        payload.message,
        payload.details,
    )
    # A running or finished ingestion owns the status.
    if payload.status is not None and uploaded_file.status not in (
        FileStatus.ACTIVE,
        FileStatus.PROCESSING,
    ):
        uploaded_file.status = payload.status
        uploaded_file.activation_error = payload.message
    db.commit()
    db.refresh(error)
    return error_to_public(error)

from __future__ import annotations

import logging
from typing import Any

import httpx

from schemaflow.core.config import get_settings
from schemaflow.models.uploaded_file import FileStatus
from schemaflow.pipeline.errors import (
    ActivationError,
    MappingSaveError,
    PipelineError,
    SchemaFetchError,
    TransportError,
)
from schemaflow.schemas.files import (
    ActivationResponse,
    FileErrorPublic,
    FileErrorsResponse,
    FileListResponse,
    FilePublic,
    FileStatusResponse,
    RetryIngestionResponse,
    UploadResponse,
)
from schemaflow.schemas.global_schemas import (
    SchemaCreate,
    SchemaPublic,
    SchemasResponse,
    SchemaUpdate,
)
from schemaflow.schemas.mappings import (
    ColumnMappingCreate,
    ColumnMappingPublic,
    ColumnMappingResult,
)

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict) and "detail" in payload:
        detail = payload["detail"]
        return detail if isinstance(detail, str) else str(detail)
    return str(payload)


class IngestionClient:
    """Typed wrapper over the ingestion API.

    Every ``httpx`` failure is translated into the ``PipelineError`` subclass
    that matches the calling step, carrying the HTTP status when there is one.
    """

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout or settings.http_timeout,
        )

    async def __aenter__(self) -> IngestionClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        error_cls: type[PipelineError] = TransportError,
        file_id: int | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise error_cls(
                _detail(exc.response),
                file_id=file_id,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise error_cls(
                f"{method} {url} failed: {exc.__class__.__name__}",
                file_id=file_id,
            ) from exc
        return response

    async def upload(
        self,
        filename: str,
        content: bytes,
        *,
        content_type: str | None = None,
        fingerprint: str | None = None,
        project_id: int | None = None,
    ) -> UploadResponse:
        data: dict[str, str] = {}
        if fingerprint:
            data["fingerprint"] = fingerprint
        if project_id is not None:
            data["project_id"] = str(project_id)
        response = await self._request(
            "POST",
            "/upload",
            files={"file": (filename, content, content_type or "application/octet-stream")},
            data=data,
        )
        return UploadResponse.model_validate(response.json())

    async def get_file(self, file_id: int) -> FilePublic:
        response = await self._request("GET", f"/files/{file_id}", file_id=file_id)
        return FileStatusResponse.model_validate(response.json()).file

    async def list_files(
        self,
        project_id: int | None = None,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> FileListResponse:
        params: dict[str, Any] = {"page": page, "page_size": page_size}
        if project_id is not None:
            params["project_id"] = project_id
        response = await self._request("GET", "/files", params=params)
        return FileListResponse.model_validate(response.json())

    async def delete_file(self, file_id: int) -> None:
        await self._request("DELETE", f"/files/{file_id}", file_id=file_id)

    async def list_schemas(self, project_id: int | None = None) -> list[SchemaPublic]:
        params = {"project_id": project_id} if project_id is not None else None
        response = await self._request(
            "GET", "/schemas", params=params, error_cls=SchemaFetchError
        )
        return SchemasResponse.model_validate(response.json()).schemas

    async def get_active_schema(self, project_id: int | None = None) -> SchemaPublic | None:
        for schema in await self.list_schemas(project_id):
            if schema.is_active:
                return schema
        return None

    async def get_schema(self, schema_id: int) -> SchemaPublic:
        response = await self._request(
            "GET", f"/schemas/{schema_id}", error_cls=SchemaFetchError
        )
        return SchemaPublic.model_validate(response.json())

    async def create_schema(self, payload: SchemaCreate) -> tuple[SchemaPublic, bool]:
        """Returns the schema and whether this call created it (201 vs 200)."""
        response = await self._request(
            "POST",
            "/schemas",
            json=payload.model_dump(mode="json"),
            error_cls=MappingSaveError,
        )
        return SchemaPublic.model_validate(response.json()), response.status_code == 201

    async def update_schema(self, schema_id: int, payload: SchemaUpdate) -> SchemaPublic:
        response = await self._request(
            "PUT",
            f"/schemas/{schema_id}",
            json=payload.model_dump(mode="json", exclude_none=True),
            error_cls=MappingSaveError,
        )
        return SchemaPublic.model_validate(response.json())

    async def save_column_mapping(self, payload: ColumnMappingCreate) -> ColumnMappingResult:
        response = await self._request(
            "POST",
            "/column-mappings",
            json=payload.model_dump(mode="json"),
            error_cls=MappingSaveError,
            file_id=payload.file_id,
        )
        return ColumnMappingResult.model_validate(response.json())

    async def get_column_mapping(self, file_id: int) -> ColumnMappingPublic | None:
        try:
            response = await self._request(
                "GET",
                "/column-mappings",
                params={"file_id": file_id},
                file_id=file_id,
            )
        except TransportError as exc:
            if exc.status_code == 404:
                return None
            raise
        return ColumnMappingPublic.model_validate(response.json())

    async def activate_file(self, file_id: int) -> ActivationResponse:
        response = await self._request(
            "POST",
            f"/files/{file_id}/activate",
            error_cls=ActivationError,
            file_id=file_id,
        )
        return ActivationResponse.model_validate(response.json())

    async def retry_ingestion(self, file_id: int) -> RetryIngestionResponse:
        response = await self._request(
            "POST",
            "/files/retry-ingestion",
            json={"file_id": file_id},
            error_cls=ActivationError,
            file_id=file_id,
        )
        return RetryIngestionResponse.model_validate(response.json())

    async def get_file_errors(self, file_id: int) -> list[FileErrorPublic]:
        response = await self._request("GET", f"/files/{file_id}/errors", file_id=file_id)
        return FileErrorsResponse.model_validate(response.json()).errors

    async def record_error(
        self,
        file_id: int,
        error: PipelineError,
        *,
        status: FileStatus | None = None,
    ) -> FileErrorPublic:
        """Store ``error`` on the file, moving it to ``status`` when given."""
        payload: dict[str, Any] = {
            "type": error.error_type.value,
            "severity": error.severity.value,
            "message": error.message,
            "details": {"stage": error.stage, "status_code": error.status_code},
        }
        if status is not None:
            payload["status"] = status.value
        response = await self._request(
            "POST",
            f"/files/{file_id}/errors",
            json=payload,
            file_id=file_id,
        )
        return FileErrorPublic.model_validate(response.json())

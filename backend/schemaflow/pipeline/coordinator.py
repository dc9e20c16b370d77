from __future__ import annotations

import asyncio
import logging
import mimetypes
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from schemaflow.models.uploaded_file import RETRYABLE_STATUSES, FileStatus
from schemaflow.pipeline.client import IngestionClient
from schemaflow.pipeline.config import PipelineConfig
from schemaflow.pipeline.errors import (
    DuplicateDetectedError,
    FileValidationError,
    HeaderExtractionError,
    PipelineError,
    ProcessingTimeoutError,
    SchemaFetchError,
    TooLargeFileError,
    TransportError,
)
from schemaflow.pipeline.events import EventBus, EventType, Unsubscribe
from schemaflow.pipeline.fingerprint import compute_content_fingerprint, compute_fingerprint
from schemaflow.pipeline.headers import HeaderExtractor, synthetic_columns
from schemaflow.pipeline.mapper import ColumnMapper, MappingEntry, suggest
from schemaflow.pipeline.poller import StatusPoller
from schemaflow.pipeline.reconciler import ReconcileAction, ReconciliationResult, reconcile
from schemaflow.pipeline.refresh import FileListRefresher
from schemaflow.pipeline.tasks import ScheduledTask
from schemaflow.schemas.files import FileListResponse, FilePublic
from schemaflow.schemas.global_schemas import SchemaCreate, SchemaPublic
from schemaflow.schemas.mappings import ColumnMappingCreate
from schemaflow.services.parser import detect_format

logger = logging.getLogger(__name__)

MappingHandler = Callable[
    [int, list[str], dict[str, str | None], SchemaPublic],
    Awaitable[list[MappingEntry] | None],
]


class UploadState(str, Enum):
    VALIDATING = "validating"
    TRANSMITTING = "transmitting"
    EXTRACTING_HEADERS = "extracting_headers"
    RECONCILING_SCHEMA = "reconciling_schema"
    MAPPING_REQUIRED = "mapping_required"
    AUTO_MAPPED = "auto_mapped"
    ACTIVATING = "activating"
    POLLING_ACTIVATION = "polling_activation"
    DONE = "done"
    ERROR = "error"
    TOO_LARGE = "too_large"
    TIMEOUT = "timeout"


@dataclass
class UploadRequest:
    filename: str
    content: bytes
    content_type: str | None = None
    modified_at: datetime | float | None = None
    project_id: int | None = None

    @classmethod
    def from_path(cls, path: Path | str, project_id: int | None = None) -> UploadRequest:
        path = Path(path)
        return cls(
            filename=path.name,
            content=path.read_bytes(),
            content_type=mimetypes.guess_type(path.name)[0],
            modified_at=path.stat().st_mtime,
            project_id=project_id,
        )

    @property
    def size_bytes(self) -> int:
        return len(self.content)


@dataclass
class UploadOutcome:
    state: UploadState
    file_id: int | None = None
    duplicate: bool = False
    columns: list[str] = field(default_factory=list)
    schema: SchemaPublic | None = None
    reconciliation: ReconciliationResult | None = None
    mapping_id: int | None = None
    warnings: list[str] = field(default_factory=list)
    error: PipelineError | None = None
    activation: ScheduledTask[FileStatus | None] | None = field(default=None, repr=False)


class UploadCoordinator:
    """Drives one upload from validation through activation.

    Manual mapping is requested at most once per file id for the lifetime of
    the coordinator; activation watches run in the background until they
    finish or ``close()`` stops them.
    """

    def __init__(
        self,
        client: IngestionClient,
        *,
        events: EventBus | None = None,
        config: PipelineConfig | None = None,
        mapping_handler: MappingHandler | None = None,
        header_extractor: HeaderExtractor | None = None,
    ) -> None:
        self.client = client
        self.events = events or EventBus()
        self.config = config or PipelineConfig.from_settings()
        self.mapping_handler = mapping_handler
        self.header_extractor = header_extractor or HeaderExtractor()
        self.mapper = ColumnMapper(client)
        self.poller = StatusPoller(client, self.events, self.config)
        self.processed_file_ids: set[int] = set()
        self._schema_locks: dict[int | None, asyncio.Lock] = {}
        self._watches: dict[int, ScheduledTask[FileStatus | None]] = {}
        self._refreshers: list[tuple[FileListRefresher[FileListResponse], Unsubscribe]] = []

    # -- validation -----------------------------------------------------

    def validate(self, request: UploadRequest) -> None:
        if request.size_bytes > self.config.max_upload_size:
            raise FileValidationError(
                f"File exceeds the maximum upload size of {self.config.max_upload_size} bytes."
            )
        extension = Path(request.filename).suffix.lower()
        if request.content_type in self.config.allowed_mime_types:
            return
        # Browsers often misreport spreadsheet MIME types.
        if extension in self.config.allowed_extensions:
            return
        raise FileValidationError("Only CSV or XLSX files are supported.")

    def fingerprint(self, request: UploadRequest) -> str:
        if self.config.fingerprint_mode == "content" or request.modified_at is None:
            return compute_content_fingerprint(request.content)
        return compute_fingerprint(request.filename, request.size_bytes, request.modified_at)

    # -- main sequence --------------------------------------------------

    async def upload(self, request: UploadRequest) -> UploadOutcome:
        outcome = UploadOutcome(state=UploadState.VALIDATING)
        self.events.emit(
            EventType.UPLOAD_STARTED,
            file_name=request.filename,
            project_id=request.project_id,
            data={"size_bytes": request.size_bytes},
        )
        try:
            await self._run(request, outcome)
        except PipelineError as exc:
            await self._fail(request, outcome, exc)
        return outcome

    async def _run(self, request: UploadRequest, outcome: UploadOutcome) -> None:
        self.validate(request)

        outcome.state = UploadState.TRANSMITTING
        uploaded = await self._transmit(request, outcome)
        outcome.file_id = uploaded.id

        if outcome.duplicate and await self._resume_duplicate(request, uploaded, outcome):
            return

        outcome.state = UploadState.EXTRACTING_HEADERS
        outcome.columns = await self._extract_columns(request, uploaded.id, outcome)

        outcome.state = UploadState.RECONCILING_SCHEMA
        schema, result, created = await self._resolve_schema(request, outcome.columns)
        outcome.schema = schema
        outcome.reconciliation = result

        if result.requires_manual_mapping:
            outcome.state = UploadState.MAPPING_REQUIRED
            if not await self._manual_mapping(request, uploaded.id, schema, result, outcome):
                return
        else:
            outcome.state = UploadState.AUTO_MAPPED
            await self._auto_map(request, uploaded.id, schema, result, created, outcome)

        await self._activate(request, uploaded, outcome)
        self._complete(request, outcome)

    async def _transmit(self, request: UploadRequest, outcome: UploadOutcome) -> FilePublic:
        try:
            response = await self.client.upload(
                request.filename,
                request.content,
                content_type=request.content_type or mimetypes.guess_type(request.filename)[0],
                fingerprint=self.fingerprint(request),
                project_id=request.project_id,
            )
        except TransportError as exc:
            if exc.status_code == 413:
                raise TooLargeFileError(
                    exc.message, status_code=413, stage="transmission"
                ) from exc
            if exc.status_code in (400, 415):
                raise FileValidationError(exc.message, status_code=exc.status_code) from exc
            raise

        uploaded = response.files[0]
        if response.duplicate:
            outcome.duplicate = True
            notice = DuplicateDetectedError(
                f"{request.filename} was already uploaded as file {response.file_id}.",
                file_id=response.file_id,
            )
            logger.info(notice.message)
            self.events.emit(
                EventType.UPLOAD_PROGRESS,
                file_id=response.file_id,
                file_name=request.filename,
                project_id=request.project_id,
                data={"duplicate": True, "notice": notice},
            )
        return uploaded

    async def _resume_duplicate(
        self,
        request: UploadRequest,
        uploaded: FilePublic,
        outcome: UploadOutcome,
    ) -> bool:
        """Finish a duplicate that needs no reconciliation; False to reconcile it."""
        if uploaded.status == FileStatus.ACTIVE:
            outcome.columns = uploaded.metadata.columns or []
            self._complete(request, outcome)
            return True

        try:
            mapping = await self.client.get_column_mapping(uploaded.id)
        except PipelineError as exc:
            logger.warning("could not load mapping for duplicate %s: %s", uploaded.id, exc)
            mapping = None
        if mapping is None:
            return False

        outcome.columns = uploaded.metadata.columns or list(mapping.mappings)
        outcome.mapping_id = mapping.id
        if uploaded.status == FileStatus.PROCESSING:
            outcome.state = UploadState.POLLING_ACTIVATION
            outcome.activation = self._watch(uploaded.id, request.filename, request.project_id)
        else:
            await self._activate(request, uploaded, outcome)
        self._complete(request, outcome)
        return True

    async def _extract_columns(
        self,
        request: UploadRequest,
        file_id: int,
        outcome: UploadOutcome,
    ) -> list[str]:
        file_format = detect_format(request.filename)
        local_columns, server_file = await asyncio.gather(
            asyncio.to_thread(self.header_extractor.extract, request.content, file_format),
            self.poller.wait_for_headers(file_id),
        )
        server_columns = server_file.metadata.columns if server_file else None
        if server_columns:
            return list(server_columns)
        if local_columns:
            return local_columns

        notice = HeaderExtractionError(
            "No headers could be read; using synthetic column names.", file_id=file_id
        )
        logger.warning("file %s: %s", file_id, notice.message)
        outcome.warnings.append(notice.message)
        return synthetic_columns(self.config.synthetic_column_count)

    async def _active_schema(self, project_id: int | None) -> SchemaPublic | None:
        try:
            return await self.client.get_active_schema(project_id)
        except SchemaFetchError as exc:
            # Creation below is create-if-absent on the server, so this stays safe.
            logger.warning("could not fetch active schema for project %s: %s", project_id, exc)
            return None

    async def _resolve_schema(
        self,
        request: UploadRequest,
        columns: list[str],
    ) -> tuple[SchemaPublic, ReconciliationResult, bool]:
        active = await self._active_schema(request.project_id)
        result = reconcile(columns, active)
        if result.action != ReconcileAction.CREATE_SCHEMA:
            return active, result, False

        lock = self._schema_locks.setdefault(request.project_id, asyncio.Lock())
        async with lock:
            active = await self._active_schema(request.project_id)
            result = reconcile(columns, active)
            if result.action != ReconcileAction.CREATE_SCHEMA:
                return active, result, False

            schema, created = await self.client.create_schema(
                SchemaCreate(
                    project_id=request.project_id,
                    description=f"Auto-generated from {request.filename}",
                    columns=result.proposed_columns,
                    if_absent=True,
                )
            )

        if created:
            self.events.emit(
                EventType.SCHEMA_CREATED,
                file_name=request.filename,
                project_id=request.project_id,
                data={"schema_id": schema.id, "columns": schema.column_names()},
            )
            return schema, result, True
        # Another writer created the schema first; reconcile against theirs.
        return schema, reconcile(columns, schema), False

    async def _auto_map(
        self,
        request: UploadRequest,
        file_id: int,
        schema: SchemaPublic,
        result: ReconciliationResult,
        created: bool,
        outcome: UploadOutcome,
    ) -> None:
        saved = await self.client.save_column_mapping(
            ColumnMappingCreate(
                file_id=file_id,
                schema_id=schema.id,
                mappings=result.mapping,
                new_columns_added=len(result.proposed_columns) if created else 0,
            )
        )
        outcome.mapping_id = saved.mapping_id
        self.events.emit(
            EventType.MAPPING_COMPLETED,
            file_id=file_id,
            file_name=request.filename,
            project_id=request.project_id,
            data={"mapping_id": saved.mapping_id, "automatic": True},
        )

    async def _manual_mapping(
        self,
        request: UploadRequest,
        file_id: int,
        schema: SchemaPublic,
        result: ReconciliationResult,
        outcome: UploadOutcome,
    ) -> bool:
        """Ask the mapping handler once per file; True when a mapping was saved."""
        if file_id in self.processed_file_ids:
            logger.info("mapping for file %s already requested", file_id)
            return False
        self.processed_file_ids.add(file_id)

        suggestions = suggest(outcome.columns, schema.columns)
        self.events.emit(
            EventType.MAPPING_REQUIRED,
            file_id=file_id,
            file_name=request.filename,
            project_id=request.project_id,
            data={
                "columns": outcome.columns,
                "new_columns": result.new_columns,
                "suggestions": suggestions,
                "schema_id": schema.id,
            },
        )
        if self.mapping_handler is None:
            return False

        entries = await self.mapping_handler(file_id, outcome.columns, suggestions, schema)
        if entries is None:
            logger.info("mapping for file %s was dismissed", file_id)
            return False

        try:
            commit = await self.mapper.commit(file_id, schema, entries)
        except PipelineError:
            # No mapping was saved, so a later upload may ask again.
            self.processed_file_ids.discard(file_id)
            raise
        outcome.schema = commit.schema
        outcome.mapping_id = commit.mapping_id
        outcome.warnings.extend(commit.warnings)
        if commit.mapping.new_columns_added:
            self.events.emit(
                EventType.SCHEMA_UPDATED,
                file_id=file_id,
                file_name=request.filename,
                project_id=request.project_id,
                data={"schema_id": commit.schema.id, "columns": commit.schema.column_names()},
            )
        self.events.emit(
            EventType.MAPPING_COMPLETED,
            file_id=file_id,
            file_name=request.filename,
            project_id=request.project_id,
            data={
                "mapping_id": commit.mapping_id,
                "automatic": False,
                "new_columns_added": commit.mapping.new_columns_added,
                "warnings": commit.warnings,
            },
        )
        return True

    async def _activate(
        self,
        request: UploadRequest,
        uploaded: FilePublic,
        outcome: UploadOutcome,
    ) -> None:
        file_id = uploaded.id
        outcome.state = UploadState.ACTIVATING
        self.events.emit(
            EventType.ACTIVATION_STARTED,
            file_id=file_id,
            file_name=request.filename,
            project_id=request.project_id,
        )
        if uploaded.status in RETRYABLE_STATUSES:
            # Failed files only restart through retry-ingestion.
            retried = await self.client.retry_ingestion(file_id)
            status, message = FileStatus.PROCESSING, retried.message
        else:
            response = await self.client.activate_file(file_id)
            status, message = response.status, response.message
        self.events.emit(
            EventType.ACTIVATION_COMPLETED,
            file_id=file_id,
            file_name=request.filename,
            project_id=request.project_id,
            data={"status": status.value, "message": message},
        )
        outcome.state = UploadState.POLLING_ACTIVATION
        outcome.activation = self._watch(file_id, request.filename, request.project_id)

    def _watch(
        self,
        file_id: int,
        file_name: str | None,
        project_id: int | None,
    ) -> ScheduledTask[FileStatus | None]:
        previous = self._watches.pop(file_id, None)
        if previous is not None:
            previous.cancel()
        watch = self.poller.start_activation_watch(
            file_id,
            file_name=file_name,
            project_id=project_id,
        )
        self._watches[file_id] = watch
        watch.add_done_callback(lambda finished: self._forget_watch(file_id, finished))
        return watch

    def _forget_watch(self, file_id: int, watch: ScheduledTask[FileStatus | None]) -> None:
        if self._watches.get(file_id) is watch:
            del self._watches[file_id]

    def _complete(self, request: UploadRequest, outcome: UploadOutcome) -> None:
        outcome.state = UploadState.DONE
        self.events.emit(
            EventType.UPLOAD_COMPLETED,
            file_id=outcome.file_id,
            file_name=request.filename,
            project_id=request.project_id,
            data={
                "duplicate": outcome.duplicate,
                "columns": outcome.columns,
                "schema_id": outcome.schema.id if outcome.schema else None,
                "mapping_id": outcome.mapping_id,
                "warnings": outcome.warnings,
            },
        )

    async def _fail(
        self,
        request: UploadRequest,
        outcome: UploadOutcome,
        error: PipelineError,
    ) -> None:
        if error.file_id is None:
            error.file_id = outcome.file_id
        if isinstance(error, TooLargeFileError):
            outcome.state = UploadState.TOO_LARGE
        elif isinstance(error, ProcessingTimeoutError):
            outcome.state = UploadState.TIMEOUT
        else:
            outcome.state = UploadState.ERROR
        outcome.error = error
        logger.warning(
            "upload of %s failed at %s: %s", request.filename, error.stage, error.message
        )
        self.events.emit(
            EventType.ERROR,
            file_id=error.file_id,
            file_name=request.filename,
            project_id=request.project_id,
            error=error,
            stage=error.stage,
        )
        if error.fatal and error.file_id is not None:
            try:
                await self.client.record_error(error.file_id, error, status=FileStatus.ERROR)
            except PipelineError as exc:
                logger.warning("could not record error for file %s: %s", error.file_id, exc)

    # -- follow-up operations -------------------------------------------

    async def retry(
        self,
        file_id: int,
        *,
        file_name: str | None = None,
        project_id: int | None = None,
    ) -> ScheduledTask[FileStatus | None]:
        try:
            response = await self.client.retry_ingestion(file_id)
        except PipelineError as exc:
            self.events.emit(
                EventType.ERROR,
                file_id=file_id,
                file_name=file_name,
                project_id=project_id,
                error=exc,
                stage=exc.stage,
            )
            raise
        self.events.emit(
            EventType.PROCESSING_STARTED,
            file_id=file_id,
            file_name=file_name,
            project_id=project_id,
            data={"message": response.message},
        )
        return self._watch(file_id, file_name, project_id)

    async def delete(
        self,
        file_id: int,
        *,
        file_name: str | None = None,
        project_id: int | None = None,
    ) -> None:
        self.events.emit(
            EventType.DELETE_STARTED,
            file_id=file_id,
            file_name=file_name,
            project_id=project_id,
        )
        watch = self._watches.pop(file_id, None)
        if watch is not None:
            await watch.stop()
        try:
            await self.client.delete_file(file_id)
        except PipelineError as exc:
            self.events.emit(
                EventType.ERROR,
                file_id=file_id,
                file_name=file_name,
                project_id=project_id,
                error=exc,
                stage="delete",
            )
            raise
        self.processed_file_ids.discard(file_id)
        self.events.emit(
            EventType.DELETE_COMPLETED,
            file_id=file_id,
            file_name=file_name,
            project_id=project_id,
        )

    def file_list(
        self,
        project_id: int | None = None,
        *,
        page_size: int = 20,
        min_interval: float | None = None,
    ) -> FileListRefresher[FileListResponse]:
        """A file-list refresher that re-fetches as this coordinator's uploads change."""
        refresher: FileListRefresher[FileListResponse] = FileListRefresher(
            lambda: self.client.list_files(project_id, page_size=page_size),
            min_interval,
        )
        self._refreshers.append((refresher, refresher.follow(self.events)))
        return refresher

    async def close(self) -> None:
        watches = list(self._watches.values())
        self._watches.clear()
        await asyncio.gather(*(watch.stop() for watch in watches))
        refreshers, self._refreshers = self._refreshers, []
        for refresher, unsubscribe in refreshers:
            unsubscribe()
            await refresher.close()

from __future__ import annotations

import asyncio
import logging

from schemaflow.models.uploaded_file import FileStatus
from schemaflow.pipeline.client import IngestionClient
from schemaflow.pipeline.config import PipelineConfig
from schemaflow.pipeline.errors import (
    ActivationError,
    PipelineError,
    ProcessingTimeoutError,
    TooLargeFileError,
)
from schemaflow.pipeline.events import EventBus, EventType
from schemaflow.pipeline.tasks import CancellationToken, ScheduledTask
from schemaflow.schemas.files import FileErrorPublic, FilePublic, IngestionProgress

logger = logging.getLogger(__name__)

EXTRACTION_DONE_STATUSES = frozenset({FileStatus.ACTIVE, FileStatus.HEADERS_EXTRACTED})

_FAILURE_ERRORS: dict[FileStatus, type[PipelineError]] = {
    FileStatus.ERROR: ActivationError,
    FileStatus.TOO_LARGE: TooLargeFileError,
    FileStatus.TIMEOUT: ProcessingTimeoutError,
}


def _progress_key(progress: IngestionProgress | None) -> tuple | None:
    if progress is None:
        return None
    return (progress.processed, progress.total, progress.percentage)


class StatusPoller:
    """Bounded status polling for a single uploaded file.

    Both loops are cooperative: they check the token between requests and
    never publish anything once it is cancelled.
    """

    def __init__(
        self,
        client: IngestionClient,
        events: EventBus,
        config: PipelineConfig | None = None,
    ) -> None:
        self._client = client
        self._events = events
        self._config = config or PipelineConfig.from_settings()

    async def wait_for_headers(
        self,
        file_id: int,
        token: CancellationToken | None = None,
    ) -> FilePublic | None:
        """Poll until headers are extracted; returns the last file seen."""
        token = token or CancellationToken()
        policy = self._config.extraction_poll
        last: FilePublic | None = None
        for attempt in range(1, policy.max_attempts + 1):
            if token.cancelled:
                break
            try:
                last = await self._client.get_file(file_id)
            except PipelineError as exc:
                logger.debug("extraction poll %d for file %s failed: %s", attempt, file_id, exc)
            else:
                if last.status in EXTRACTION_DONE_STATUSES:
                    return last
                if last.status in _FAILURE_ERRORS:
                    return last
            if attempt < policy.max_attempts and await token.sleep(policy.interval):
                break
        if last is not None:
            logger.info(
                "file %s still %s after extraction wait", file_id, last.status.value
            )
        return last

    async def watch_activation(
        self,
        file_id: int,
        *,
        file_name: str | None = None,
        project_id: int | None = None,
        token: CancellationToken | None = None,
    ) -> FileStatus | None:
        """Follow ingestion until the file is active or has failed.

        Returns the final status, or None when the watch stopped early
        (attempts or time budget exhausted, cancelled, or the status request
        failed).
        """
        policy = self._config.activation_poll
        try:
            return await asyncio.wait_for(
                self._follow_activation(
                    file_id,
                    file_name=file_name,
                    project_id=project_id,
                    token=token or CancellationToken(),
                ),
                timeout=policy.budget,
            )
        except asyncio.TimeoutError:
            logger.info(
                "activation watch for file %s ran out of time after %.1fs",
                file_id,
                policy.budget,
            )
            return None

    async def _follow_activation(
        self,
        file_id: int,
        *,
        file_name: str | None,
        project_id: int | None,
        token: CancellationToken,
    ) -> FileStatus | None:
        policy = self._config.activation_poll
        last_progress = None
        for attempt in range(1, policy.max_attempts + 1):
            if token.cancelled:
                return None
            try:
                uploaded_file = await self._client.get_file(file_id)
            except PipelineError as exc:
                logger.info("activation watch for file %s stopped: %s", file_id, exc)
                return None
            if token.cancelled:
                return None

            progress = uploaded_file.metadata.ingestion_progress
            if _progress_key(progress) != last_progress and progress is not None:
                last_progress = _progress_key(progress)
                self._events.emit(
                    EventType.PROCESSING_PROGRESS,
                    file_id=file_id,
                    file_name=file_name,
                    project_id=project_id,
                    data={"progress": progress.model_dump(mode="json")},
                )

            if uploaded_file.status == FileStatus.ACTIVE:
                self._events.emit(
                    EventType.PROCESSING_COMPLETED,
                    file_id=file_id,
                    file_name=file_name,
                    project_id=project_id,
                    data={"file": uploaded_file.model_dump(mode="json")},
                )
                return FileStatus.ACTIVE

            if uploaded_file.status in _FAILURE_ERRORS:
                stored = await self._stored_errors(file_id)
                if token.cancelled:
                    return None
                self._publish_failure(uploaded_file, stored, file_name, project_id)
                return uploaded_file.status

            if attempt < policy.max_attempts and await token.sleep(policy.interval):
                return None

        logger.info(
            "activation watch for file %s gave up after %d attempts",
            file_id,
            policy.max_attempts,
        )
        return None

    async def _stored_errors(self, file_id: int) -> list[FileErrorPublic]:
        try:
            errors = await self._client.get_file_errors(file_id)
        except PipelineError as exc:
            logger.info("could not load errors for file %s: %s", file_id, exc)
            return []
        # The API lists newest first.
        return list(reversed(errors))

    def _publish_failure(
        self,
        uploaded_file: FilePublic,
        stored: list[FileErrorPublic],
        file_name: str | None,
        project_id: int | None,
    ) -> None:
        error_cls = _FAILURE_ERRORS[uploaded_file.status]
        fallback = (
            uploaded_file.activation_error
            or f"Ingestion ended with status {uploaded_file.status.value}."
        )
        for file_error in stored or [None]:
            error = error_cls(
                file_error.message if file_error else fallback,
                file_id=uploaded_file.id,
            )
            data: dict = {"status": uploaded_file.status.value}
            if file_error is not None:
                data["file_error"] = file_error.model_dump(mode="json")
            self._events.emit(
                EventType.ERROR,
                file_id=uploaded_file.id,
                file_name=file_name,
                project_id=project_id,
                error=error,
                stage=error.stage,
                data=data,
            )

    def start_activation_watch(
        self,
        file_id: int,
        *,
        file_name: str | None = None,
        project_id: int | None = None,
    ) -> ScheduledTask[FileStatus | None]:
        return ScheduledTask(
            lambda token: self.watch_activation(
                file_id,
                file_name=file_name,
                project_id=project_id,
                token=token,
            ),
            name=f"activation-watch-{file_id}",
        ).start()

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from schemaflow.models.file_error import ErrorSeverity, ErrorType
from schemaflow.models.uploaded_file import FileFormat, FileStatus
from schemaflow.pipeline.config import PipelineConfig, PollPolicy
from schemaflow.pipeline.errors import ProcessingTimeoutError, TooLargeFileError, TransportError
from schemaflow.pipeline.events import EventBus, EventType
from schemaflow.pipeline.poller import StatusPoller
from schemaflow.pipeline.tasks import CancellationToken, ScheduledTask
from schemaflow.schemas.files import FileErrorPublic, FileMetadata, FilePublic


def make_file(status: FileStatus, *, columns=None, progress=None, error=None) -> FilePublic:
    return FilePublic(
        id=1,
        filename="sales.csv",
        size_bytes=10,
        format=FileFormat.CSV,
        status=status,
        metadata=FileMetadata(columns=columns, ingestion_progress=progress),
        activation_error=error,
        uploaded_at=datetime.now(timezone.utc),
    )


class ScriptedClient:
    """Replays one response per get_file call, repeating the last one."""

    def __init__(self, *responses, errors=(), delay: float = 0) -> None:
        self.responses = list(responses)
        self.errors = errors
        self.delay = delay
        self.calls = 0

    async def get_file(self, file_id):
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses[min(self.calls, len(self.responses) - 1)]
        self.calls += 1
        if isinstance(response, Exception):
            raise response
        return response

    async def get_file_errors(self, file_id):
        if isinstance(self.errors, Exception):
            raise self.errors
        return list(self.errors)


def make_poller(client, bus, *, attempts: int = 5) -> StatusPoller:
    config = PipelineConfig(
        extraction_poll=PollPolicy(interval=0, max_attempts=attempts),
        activation_poll=PollPolicy(interval=0, max_attempts=attempts),
    )
    return StatusPoller(client, bus, config)


def collect(bus: EventBus) -> list:
    events = []
    bus.subscribe(EventType.ALL, events.append)
    return events


@pytest.mark.asyncio
async def test_extraction_wait_stops_on_headers_extracted() -> None:
    client = ScriptedClient(
        make_file(FileStatus.PENDING),
        TransportError("offline"),
        make_file(FileStatus.HEADERS_EXTRACTED, columns=["name"]),
    )

    result = await make_poller(client, EventBus()).wait_for_headers(1)

    assert result.status == FileStatus.HEADERS_EXTRACTED
    assert result.metadata.columns == ["name"]
    assert client.calls == 3


@pytest.mark.asyncio
async def test_extraction_wait_returns_last_file_when_budget_runs_out() -> None:
    client = ScriptedClient(make_file(FileStatus.PENDING))

    result = await make_poller(client, EventBus(), attempts=4).wait_for_headers(1)

    assert result.status == FileStatus.PENDING
    assert client.calls == 4


@pytest.mark.asyncio
async def test_extraction_wait_swallows_errors() -> None:
    client = ScriptedClient(TransportError("offline"))

    assert await make_poller(client, EventBus(), attempts=2).wait_for_headers(1) is None


@pytest.mark.asyncio
async def test_activation_watch_publishes_progress_and_completion() -> None:
    bus = EventBus()
    events = collect(bus)
    client = ScriptedClient(
        make_file(FileStatus.PROCESSING, progress={"processed": 10, "total": 20, "percentage": 50}),
        make_file(FileStatus.PROCESSING, progress='{"processed": 10, "total": 20, "percentage": 50}'),
        make_file(FileStatus.ACTIVE, progress={"processed": 20, "total": 20, "percentage": 100}),
    )

    status = await make_poller(client, bus).watch_activation(1, file_name="sales.csv")

    assert status == FileStatus.ACTIVE
    assert [event.type for event in events] == [
        EventType.PROCESSING_PROGRESS,
        EventType.PROCESSING_PROGRESS,
        EventType.PROCESSING_COMPLETED,
    ]
    assert events[0].data["progress"]["percentage"] == 50
    assert events[1].data["progress"]["processed"] == 20
    assert events[2].file_name == "sales.csv"


@pytest.mark.asyncio
async def test_activation_watch_reports_terminal_failure() -> None:
    bus = EventBus()
    events = collect(bus)
    client = ScriptedClient(make_file(FileStatus.TOO_LARGE, error="File is too large."))

    status = await make_poller(client, bus).watch_activation(1)

    assert status == FileStatus.TOO_LARGE
    assert len(events) == 1
    assert events[0].type == EventType.ERROR
    assert isinstance(events[0].error, TooLargeFileError)
    assert events[0].error.message == "File is too large."
    assert events[0].stage == "activation"


@pytest.mark.asyncio
async def test_activation_watch_publishes_stored_file_errors() -> None:
    bus = EventBus()
    events = collect(bus)
    now = datetime.now(timezone.utc)
    stored = [
        FileErrorPublic(
            type=ErrorType.SYSTEM,
            severity=ErrorSeverity.MEDIUM,
            message="Ingestion exceeded the time budget.",
            details={"processed": 200},
            timestamp=now,
        ),
        FileErrorPublic(
            type=ErrorType.PARSING,
            severity=ErrorSeverity.LOW,
            message="Row 12 has an extra field.",
            timestamp=now - timedelta(seconds=5),
        ),
    ]
    client = ScriptedClient(make_file(FileStatus.TIMEOUT, error="timed out"), errors=stored)

    status = await make_poller(client, bus).watch_activation(1, project_id=7)

    assert status == FileStatus.TIMEOUT
    assert [event.type for event in events] == [EventType.ERROR, EventType.ERROR]
    assert [event.error.message for event in events] == [
        "Row 12 has an extra field.",
        "Ingestion exceeded the time budget.",
    ]
    assert all(isinstance(event.error, ProcessingTimeoutError) for event in events)
    assert events[1].data["file_error"]["details"] == {"processed": 200}
    assert events[1].data["status"] == "timeout"
    assert events[0].project_id == 7


@pytest.mark.asyncio
async def test_activation_watch_falls_back_when_errors_are_unavailable() -> None:
    bus = EventBus()
    events = collect(bus)
    client = ScriptedClient(
        make_file(FileStatus.ERROR, error="Unable to parse file."),
        errors=TransportError("offline"),
    )

    status = await make_poller(client, bus).watch_activation(1)

    assert status == FileStatus.ERROR
    assert len(events) == 1
    assert events[0].error.message == "Unable to parse file."
    assert "file_error" not in events[0].data


@pytest.mark.asyncio
async def test_activation_watch_is_bounded_by_time_budget() -> None:
    bus = EventBus()
    events = collect(bus)
    config = PipelineConfig(activation_poll=PollPolicy(interval=0.01, max_attempts=3))
    client = ScriptedClient(make_file(FileStatus.ACTIVE), delay=5)
    poller = StatusPoller(client, bus, config)

    started = time.monotonic()
    status = await poller.watch_activation(1)

    assert status is None
    assert time.monotonic() - started < 1
    assert events == []


def test_poll_budget_covers_all_attempts() -> None:
    assert PollPolicy(interval=5.0, max_attempts=24).budget == 120.0
    assert PollPolicy(interval=0, max_attempts=5).budget is None


@pytest.mark.asyncio
async def test_activation_watch_stops_silently() -> None:
    bus = EventBus()
    events = collect(bus)

    exhausted = await make_poller(
        ScriptedClient(make_file(FileStatus.PROCESSING)), bus, attempts=3
    ).watch_activation(1)
    failed = await make_poller(
        ScriptedClient(TransportError("offline")), bus
    ).watch_activation(1)

    assert exhausted is None
    assert failed is None
    assert events == []


@pytest.mark.asyncio
async def test_cancelled_watch_emits_nothing() -> None:
    bus = EventBus()
    events = collect(bus)
    token = CancellationToken()
    token.cancel()

    status = await make_poller(
        ScriptedClient(make_file(FileStatus.ACTIVE)), bus
    ).watch_activation(1, token=token)

    assert status is None
    assert events == []


@pytest.mark.asyncio
async def test_scheduled_watch_can_be_stopped() -> None:
    bus = EventBus()
    events = collect(bus)
    config = PipelineConfig(activation_poll=PollPolicy(interval=60, max_attempts=24))
    poller = StatusPoller(ScriptedClient(make_file(FileStatus.PROCESSING)), bus, config)

    task = poller.start_activation_watch(1)
    await asyncio.sleep(0)
    await task.stop()

    assert task.done
    assert await task.wait() is None
    assert events == []


@pytest.mark.asyncio
async def test_cancellation_token_sleep() -> None:
    token = CancellationToken()

    assert await token.sleep(0) is False
    token.cancel()
    assert await token.sleep(10) is True


@pytest.mark.asyncio
async def test_scheduled_task_returns_result() -> None:
    async def work(token: CancellationToken) -> str:
        return "cancelled" if token.cancelled else "finished"

    task = ScheduledTask(work, name="work")
    assert await task.wait() is None

    task.start()
    assert await task.wait() == "finished"

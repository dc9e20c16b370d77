from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from schemaflow.core.config import get_settings
from schemaflow.models.file_row import FileRow
from schemaflow.services import ingestion
from schemaflow.services.ingestion import build_progress, project_row

SALES_CSV = (
    b"name,email,amount\n"
    b"Alice,alice@example.com,10\n"
    b"Bob,bob@example.com,20\n"
    b"\n"
    b"Carol,carol@example.com,30\n"
)


def prepare_file(client: TestClient, *, with_mapping: bool = True) -> int:
    upload_response = client.post(
        "/api/upload",
        files={"file": ("sales.csv", SALES_CSV, "text/csv")},
    )
    assert upload_response.status_code == 201
    file_id = upload_response.json()["file_id"]

    schema_response = client.post(
        "/api/schemas",
        json={"columns": [{"name": "customer"}, {"name": "email"}, {"name": "amount"}]},
    )
    assert schema_response.status_code == 201

    if with_mapping:
        mapping_response = client.post(
            "/api/column-mappings",
            json={
                "file_id": file_id,
                "schema_id": schema_response.json()["id"],
                "mappings": {"name": "customer", "amount": "amount"},
            },
        )
        assert mapping_response.status_code == 201
    return file_id


def get_status(client: TestClient, file_id: int) -> dict:
    response = client.get(f"/api/files/{file_id}")
    assert response.status_code == 200
    return response.json()["file"]


def test_activation_requires_mapping(client: TestClient) -> None:
    file_id = prepare_file(client, with_mapping=False)

    response = client.post(f"/api/files/{file_id}/activate")

    assert response.status_code == 409
    assert get_status(client, file_id)["status"] == "headers_extracted"


def test_activation_ingests_rows_through_mapping(
    client: TestClient, session_factory: sessionmaker
) -> None:
    file_id = prepare_file(client)

    response = client.post(f"/api/files/{file_id}/activate")

    assert response.status_code == 202
    assert response.json()["status"] == "processing"

    uploaded = get_status(client, file_id)
    assert uploaded["status"] == "active"
    assert uploaded["ingested_at"] is not None
    progress = uploaded["metadata"]["ingestion_progress"]
    assert progress["processed"] == 3
    assert progress["total"] == 3
    assert progress["percentage"] == 100

    with session_factory() as db:
        rows = db.scalars(
            select(FileRow).where(FileRow.file_id == file_id).order_by(FileRow.row_number)
        ).all()
    assert [row.data_json for row in rows] == [
        {"customer": "Alice", "amount": "10"},
        {"customer": "Bob", "amount": "20"},
        {"customer": "Carol", "amount": "30"},
    ]

    again = client.post(f"/api/files/{file_id}/activate")
    assert again.status_code == 200
    assert again.json()["message"] == "File is already active."


def test_oversized_file_can_be_retried(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "ingest_max_bytes", 10)
    file_id = prepare_file(client)

    assert client.post(f"/api/files/{file_id}/activate").status_code == 202

    uploaded = get_status(client, file_id)
    assert uploaded["status"] == "too_large"
    assert "too large" in uploaded["activation_error"]
    errors = client.get(f"/api/files/{file_id}/errors").json()["errors"]
    assert [error["type"] for error in errors] == ["validation"]

    blocked = client.post(f"/api/files/{file_id}/activate")
    assert blocked.status_code == 409

    retry = client.post("/api/files/retry-ingestion", json={"file_id": file_id})
    assert retry.status_code == 200
    assert retry.json()["message"] == "Ingestion restarted with batch size 200."

    uploaded = get_status(client, file_id)
    assert uploaded["status"] == "active"
    assert uploaded["activation_error"] is None
    assert client.get(f"/api/files/{file_id}/errors").json()["errors"] == []


def test_slow_ingestion_times_out(client: TestClient, monkeypatch) -> None:
    settings = get_settings()
    monkeypatch.setattr(settings, "ingest_batch_size", 1)
    monkeypatch.setattr(settings, "ingest_timeout_seconds", -1.0)
    file_id = prepare_file(client)

    client.post(f"/api/files/{file_id}/activate")

    uploaded = get_status(client, file_id)
    assert uploaded["status"] == "timeout"
    errors = client.get(f"/api/files/{file_id}/errors").json()["errors"]
    assert errors[0]["details"]["processed"] == 1


def test_retry_rejects_files_that_did_not_fail(client: TestClient) -> None:
    file_id = prepare_file(client)

    response = client.post("/api/files/retry-ingestion", json={"file_id": file_id})

    assert response.status_code == 400


def test_project_row_rekeys_to_schema_columns() -> None:
    row = {"name": "Alice", "email": "alice@example.com"}

    projected = project_row(row, {"name": "customer", "phone": "phone"})

    assert projected == {"customer": "Alice", "phone": ""}


def test_build_progress_reports_percentage_and_eta() -> None:
    progress = build_progress(50, 200, started_at=0.0)

    assert progress["processed"] == 50
    assert progress["total"] == 200
    assert progress["percentage"] == 25
    assert progress["eta"] is not None


def test_build_progress_without_total() -> None:
    progress = build_progress(10, None, started_at=0.0)

    assert progress["percentage"] is None
    assert progress["eta"] is None


def test_unexpected_reader_failure_moves_file_to_error(client: TestClient, monkeypatch) -> None:
    def broken_rows(path, file_format):
        yield {"name": "Alice"}
        raise KeyError("xl/worksheets/sheet1.xml")

    monkeypatch.setattr(ingestion, "iter_file_rows", broken_rows)
    file_id = prepare_file(client)

    assert client.post(f"/api/files/{file_id}/activate").status_code == 202

    uploaded = get_status(client, file_id)
    assert uploaded["status"] == "error"
    assert uploaded["activation_error"] == "Ingestion failed: KeyError"
    errors = client.get(f"/api/files/{file_id}/errors").json()["errors"]
    assert [(error["type"], error["severity"]) for error in errors] == [("system", "critical")]

    retry = client.post("/api/files/retry-ingestion", json={"file_id": file_id})
    assert retry.status_code == 200

from fastapi.testclient import TestClient

from schemaflow.core.config import get_settings

SALES_CSV = b"name,email,amount\nAlice,alice@example.com,10\nBob,bob@example.com,20\n"


def create_project(client: TestClient) -> int:
    response = client.post("/api/projects", json={"name": "Uploads"})
    assert response.status_code == 201
    return response.json()["id"]


def upload(
    client: TestClient,
    filename: str,
    content: bytes,
    *,
    project_id: int | None = None,
    fingerprint: str | None = None,
    expected_status: int = 201,
) -> dict:
    data = {}
    if project_id is not None:
        data["project_id"] = str(project_id)
    if fingerprint:
        data["fingerprint"] = fingerprint
    response = client.post(
        "/api/upload",
        data=data,
        files={"file": (filename, content, "text/csv")},
    )
    assert response.status_code == expected_status, response.text
    return response.json()


def test_upload_extracts_headers(client: TestClient) -> None:
    project_id = create_project(client)

    payload = upload(client, "sales.csv", SALES_CSV, project_id=project_id, fingerprint="fp-1")

    assert payload["duplicate"] is False
    file_id = payload["file_id"]
    assert payload["files"][0]["filename"] == "sales.csv"

    status_response = client.get(f"/api/files/{file_id}")
    assert status_response.status_code == 200
    uploaded = status_response.json()["file"]
    assert uploaded["status"] == "headers_extracted"
    assert uploaded["format"] == "csv"
    assert uploaded["metadata"]["columns"] == ["name", "email", "amount"]
    assert uploaded["size_bytes"] == len(SALES_CSV)


def test_duplicate_fingerprint_returns_existing_file(client: TestClient) -> None:
    project_id = create_project(client)
    first = upload(client, "sales.csv", SALES_CSV, project_id=project_id, fingerprint="same")

    second = upload(
        client,
        "sales.csv",
        SALES_CSV,
        project_id=project_id,
        fingerprint="same",
        expected_status=200,
    )

    assert second["duplicate"] is True
    assert second["file_id"] == first["file_id"]
    listing = client.get("/api/files", params={"project_id": project_id}).json()
    assert listing["pagination"]["total_count"] == 1


def test_deleted_file_is_not_a_duplicate(client: TestClient) -> None:
    first = upload(client, "sales.csv", SALES_CSV, fingerprint="again")
    assert client.delete(f"/api/files/{first['file_id']}").status_code == 204

    second = upload(client, "sales.csv", SALES_CSV, fingerprint="again")

    assert second["duplicate"] is False
    assert second["file_id"] != first["file_id"]
    assert client.get(f"/api/files/{first['file_id']}").status_code == 404


def test_upload_rejects_unsupported_extension(client: TestClient) -> None:
    response = client.post(
        "/api/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Only CSV or XLSX files are supported."


def test_upload_rejects_oversized_file(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "max_upload_size", 10)

    response = client.post(
        "/api/upload",
        files={"file": ("sales.csv", SALES_CSV, "text/csv")},
    )

    assert response.status_code == 413


def test_unreadable_workbook_is_marked_as_error(client: TestClient) -> None:
    response = client.post(
        "/api/upload",
        files={
            "file": (
                "broken.xlsx",
                b"definitely not a zip archive",
                "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            )
        },
    )
    assert response.status_code == 201
    file_id = response.json()["file_id"]

    uploaded = client.get(f"/api/files/{file_id}").json()["file"]
    assert uploaded["status"] == "error"

    errors = client.get(f"/api/files/{file_id}/errors").json()["errors"]
    assert len(errors) == 1
    assert errors[0]["type"] == "parsing"
    assert errors[0]["severity"] == "high"


def test_list_files_paginates(client: TestClient) -> None:
    for index in range(3):
        upload(client, f"part-{index}.csv", SALES_CSV, fingerprint=f"fp-{index}")

    response = client.get("/api/files", params={"page": 2, "page_size": 2})

    assert response.status_code == 200
    payload = response.json()
    assert len(payload["files"]) == 1
    assert payload["pagination"] == {
        "page": 2,
        "page_size": 2,
        "total_count": 3,
        "total_pages": 2,
    }


def test_record_client_side_error(client: TestClient) -> None:
    file_id = upload(client, "sales.csv", SALES_CSV)["file_id"]

    response = client.post(
        f"/api/files/{file_id}/errors",
        json={
            "type": "database",
            "severity": "high",
            "message": "Unable to save mapping",
            "details": {"stage": "mapping"},
        },
    )

    assert response.status_code == 201
    errors = client.get(f"/api/files/{file_id}/errors").json()
    assert errors["file_id"] == file_id
    assert errors["errors"][0]["message"] == "Unable to save mapping"
    assert errors["errors"][0]["details"] == {"stage": "mapping"}
    assert client.get(f"/api/files/{file_id}").json()["file"]["status"] == "headers_extracted"


def test_recorded_error_can_fail_the_file(client: TestClient) -> None:
    file_id = upload(client, "sales.csv", SALES_CSV)["file_id"]

    response = client.post(
        f"/api/files/{file_id}/errors",
        json={
            "type": "database",
            "message": "Unable to save mapping",
            "details": {"stage": "mapping"},
            "status": "error",
        },
    )

    assert response.status_code == 201
    uploaded = client.get(f"/api/files/{file_id}").json()["file"]
    assert uploaded["status"] == "error"
    assert uploaded["activation_error"] == "Unable to save mapping"
    retry = client.post("/api/files/retry-ingestion", json={"file_id": file_id})
    assert retry.status_code == 200


def test_recorded_error_only_moves_to_failure_statuses(client: TestClient) -> None:
    file_id = upload(client, "sales.csv", SALES_CSV)["file_id"]

    response = client.post(
        f"/api/files/{file_id}/errors",
        json={"type": "system", "message": "done?", "status": "active"},
    )

    assert response.status_code == 422

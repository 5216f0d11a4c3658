"""Tests for the capture upload API routes."""

import io
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from capture_upload.exceptions import GrantError
from capture_upload.main import create_app
from capture_upload.models.upload import ArtifactKind

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 4096


@pytest.fixture
def client(manager):
    """Test client serving an in-memory upload manager."""
    with TestClient(create_app(manager=manager)) as test_client:
        yield test_client


def wait_for_terminal(client, session_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/api/v1/captures/{session_id}").json()
        if data["state"] in ("completed", "failed", "cancelled", "confirmation_failed"):
            return data
        time.sleep(0.01)
    raise AssertionError(f"Session {session_id} did not finish")


def submit(client, **form):
    files = {"file": ("login.png", io.BytesIO(PNG_BYTES), "image/png")}
    data = {"case_id": "case-42", "kind": "screenshot", **form}
    return client.post("/api/v1/captures", files=files, data=data)


def test_submit_capture_and_poll_until_completed(client):
    response = submit(client, tags="login, auth", origin_url="https://app.example.test/login")

    assert response.status_code == 202
    session_id = response.json()["session_id"]

    data = wait_for_terminal(client, session_id)
    assert data["state"] == "completed"
    assert data["percentage"] == 100.0
    assert data["object_key"].startswith("cases/case-42/screenshot/")
    assert data["outcome"]["success"] is True


def test_submit_requires_case_id(client):
    response = submit(client, case_id="  ")

    assert response.status_code == 400
    assert "case_id" in response.json()["detail"]


def test_submit_rejects_unknown_kind(client):
    response = submit(client, kind="audio")

    assert response.status_code == 400
    assert "kind" in response.json()["detail"].lower()


def test_rejected_capture_reports_validation_failure(client):
    files = {"file": ("notes.txt", io.BytesIO(b"x" * 2048), "text/plain")}
    response = client.post(
        "/api/v1/captures", files=files, data={"case_id": "case-42", "kind": "screenshot"}
    )

    data = wait_for_terminal(client, response.json()["session_id"])
    assert data["state"] == "failed"
    assert data["outcome"]["error"]["kind"] == "validation"


def test_unknown_session_returns_404(client):
    response = client.get("/api/v1/captures/does-not-exist")

    assert response.status_code == 404


def test_cancel_unknown_session(client):
    response = client.delete("/api/v1/captures/does-not-exist")

    assert response.status_code == 200
    assert response.json() == {"session_id": "does-not-exist", "cancelled": False}


def test_history_and_stats(client):
    session_id = submit(client).json()["session_id"]
    wait_for_terminal(client, session_id)

    history = client.get("/api/v1/history", params={"case_id": "case-42"}).json()
    assert len(history) == 1
    assert history[0]["artifact_id"] == session_id
    assert history[0]["kind"] == "screenshot"

    assert client.get("/api/v1/history", params={"case_id": "other"}).json() == []

    stats = client.get("/api/v1/history/stats").json()
    assert stats["total_files"] == 1
    assert stats["by_kind"]["screenshot"] == 1
    assert stats["success_rate"] == 100.0


def test_submit_builds_upload_request():
    """The form is turned into an UploadRequest handed to the manager."""
    manager = MagicMock()
    manager.submit.return_value = "session-1"
    manager.close = AsyncMock()

    with TestClient(create_app(manager=manager)) as test_client:
        files = {"file": ("rec.webm", io.BytesIO(b"webm" * 512), "video/webm")}
        response = test_client.post(
            "/api/v1/captures",
            files=files,
            data={"case_id": " case-9 ", "kind": "VIDEO", "tags": "a,,b", "description": "Checkout bug"},
        )

    assert response.status_code == 202
    assert response.json() == {"session_id": "session-1"}
    request = manager.submit.call_args.args[0]
    assert request.case_id == "case-9"
    assert request.kind == ArtifactKind.VIDEO
    assert request.size_bytes == 2048
    assert request.content_type == "video/webm"
    assert request.file_name == "rec.webm"
    assert request.tags == ["a", "b"]
    assert request.description == "Checkout bug"


def test_delete_artifact_removes_it_from_history(client, broker):
    session_id = submit(client).json()["session_id"]
    object_key = wait_for_terminal(client, session_id)["object_key"]

    response = client.delete(f"/api/v1/history/{object_key}", params={"case_id": "case-42"})

    assert response.status_code == 200
    assert response.json() == {"object_key": object_key, "deleted": True, "removed_from_history": True}
    assert broker.deleted == [(object_key, "case-42")]
    assert client.get("/api/v1/history").json() == []


def test_delete_artifact_requires_case_id(client, broker):
    response = client.delete("/api/v1/history/cases/case-42/screenshot/x.png")

    assert response.status_code == 422
    assert broker.deleted == []


def test_delete_artifact_broker_failure_returns_502(client, broker):
    session_id = submit(client).json()["session_id"]
    object_key = wait_for_terminal(client, session_id)["object_key"]
    broker.delete_errors.append(GrantError("Failed to delete file: storage unavailable", status_code=503))

    response = client.delete(f"/api/v1/history/{object_key}", params={"case_id": "case-42"})

    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to delete file: storage unavailable"
    assert len(client.get("/api/v1/history").json()) == 1

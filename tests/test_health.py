"""Tests for the health check endpoint."""

from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from capture_upload.main import app, create_app

client = TestClient(app)


def test_health_endpoint():
    """Test that the health endpoint returns correct response."""
    response = client.get("/health")

    assert response.status_code == 200

    data = response.json()
    assert "status" in data
    assert "service" in data
    assert "version" in data
    assert data["status"] == "ok"


def test_health_endpoint_values():
    """Test that the health endpoint returns expected values."""
    response = client.get("/health")

    assert response.status_code == 200

    data = response.json()
    assert data["service"] == "capture-upload"
    assert data["version"] == "0.1.0"


def test_health_reports_unreachable_broker():
    manager = MagicMock()
    manager.broker.check_connection = AsyncMock(return_value=False)
    manager.close = AsyncMock()

    with TestClient(create_app(manager=manager)) as test_client:
        response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["broker"] == "unreachable"
    manager.close.assert_awaited_once()

"""Tests for health check endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from main import app


class TestHealthCheck:
    """Tests for basic health check endpoint."""

    def test_health_check_returns_success(self) -> None:
        """Test basic health check returns healthy status."""
        client = TestClient(app)
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["status"] == "healthy"
        assert "AuditLens" in data["data"]["message"]
        assert data["message"] == "Health check successful"

    def test_health_check_response_structure(self) -> None:
        """Test health check response matches ApiResponse schema."""
        client = TestClient(app)
        response = client.get("/api/v1/health")

        data = response.json()
        assert "success" in data
        assert "data" in data
        assert "message" in data
        assert isinstance(data["data"], dict)
        assert "status" in data["data"]

    def test_health_reports_missing_generation_key(self) -> None:
        """The test environment runs without a generation service key."""
        client = TestClient(app)
        response = client.get("/api/v1/health")

        assert response.json()["data"]["generation_service"] == "not_configured"

    @patch("api.v1.health.get_settings")
    def test_health_reports_configured_generation_key(
        self, mock_settings: MagicMock
    ) -> None:
        mock_settings.return_value.APP_NAME = "AuditLens"
        mock_settings.return_value.GENERATION_API_KEY = "placeholder"  # pragma: allowlist secret

        client = TestClient(app)
        response = client.get("/api/v1/health")

        assert response.json()["data"]["generation_service"] == "configured"

"""
Unit tests for FastAPI application.
"""

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client():
    """Create a test client for the FastAPI application."""
    from errorwatch.main import app
    return TestClient(app)


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data


def test_routes_registered(client):
    """Test error intake and listing routes are mounted."""
    paths = {route.path for route in client.app.routes}

    assert "/api/errors" in paths
    assert "/api/errors/batch" in paths
    assert "/api/projects/{project_id}/errors" in paths
    assert "/api/projects/{project_id}/errors/stats" in paths
    assert "/api/projects/{project_id}/errors/{error_id}" in paths

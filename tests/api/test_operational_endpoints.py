"""Tests for the health, metadata and root endpoints."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from fhir_vault.adapters.storage.memory_adapter import InMemoryLedger
from fhir_vault.api.dependencies import get_ledger
from fhir_vault.api.main import app
from fhir_vault.domain.ports import Result, StorageError


@pytest.fixture
def client():
    app.dependency_overrides[get_ledger] = lambda: InMemoryLedger()
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"]["status"] == "connected"
        assert "X-Process-Time" in response.headers

    def test_unhealthy_is_503(self):
        ledger = MagicMock()
        ledger.ping.return_value = Result.failure_result(StorageError("unreachable", operation="ping"))
        app.dependency_overrides[get_ledger] = lambda: ledger
        try:
            response = TestClient(app).get("/health")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["database"]["status"] == "disconnected"
        assert body["reason"] == "unreachable"


class TestMetadata:

    @pytest.mark.parametrize("path", ["/metadata", "/fhir/metadata"])
    def test_capability_statement(self, client, path):
        response = client.get(path)
        assert response.status_code == 200
        statement = response.json()
        assert statement["resourceType"] == "CapabilityStatement"
        (resource,) = statement["rest"][0]["resource"]
        assert resource["type"] == "Patient"
        assert {p["name"] for p in resource["searchParam"]} == {"name", "gender", "birthdate"}
        assert resource["versioning"] == "versioned"
        assert resource["conditionalUpdate"] is False


def test_root(client):
    body = client.get("/").json()
    assert body["fhir"] == "/fhir/Patient"

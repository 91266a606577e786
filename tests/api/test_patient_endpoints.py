"""Tests for the FHIR Patient REST endpoints.

The ledger dependency is replaced with a fresh in-memory ledger per test.
"""

import pytest
from fastapi.testclient import TestClient

from fhir_vault.adapters.storage.memory_adapter import InMemoryLedger
from fhir_vault.api.dependencies import get_ledger
from fhir_vault.api.main import app
from fhir_vault.api.responses import FHIR_MEDIA_TYPE
from fhir_vault.domain.ports import StorageError

BASE = "/fhir/Patient"


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def client(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def smith():
    return {
        "resourceType": "Patient",
        "name": [{"family": "Smith", "given": ["Anna"]}],
        "gender": "male",
        "birthDate": "1990-05-15",
    }


def create(client, document) -> dict:
    response = client.post(BASE, json=document)
    assert response.status_code == 201
    return response.json()


class TestCreate:

    def test_create_returns_201_with_headers(self, client, smith):
        response = client.post(BASE, json=smith)

        assert response.status_code == 201
        assert response.headers["content-type"].startswith(FHIR_MEDIA_TYPE)
        body = response.json()
        assert body["resourceType"] == "Patient"
        assert body["meta"]["versionId"] == "1"
        assert body["meta"]["lastUpdated"].endswith("Z")
        assert response.headers["ETag"] == 'W/"1"'
        assert response.headers["Location"] == f"http://testserver{BASE}/{body['id']}"
        assert response.headers["Last-Modified"].endswith("GMT")

    def test_create_ignores_client_id(self, client, smith):
        body = create(client, dict(smith, id="mine"))
        assert body["id"] != "mine"

    def test_invalid_document_is_400_with_issues(self, client, ledger):
        response = client.post(BASE, json={"resourceType": "Patient", "gender": "M", "birthDate": "1990-13-01"})

        assert response.status_code == 400
        outcome = response.json()
        assert outcome["resourceType"] == "OperationOutcome"
        assert len(outcome["issue"]) == 2
        assert all(issue["severity"] == "error" for issue in outcome["issue"])
        assert ledger.scan("Patient") == []

    def test_malformed_json_is_400(self, client):
        response = client.post(BASE, content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["issue"][0]["code"] == "structure"


class TestReadAndUpdate:

    def test_read(self, client, smith):
        created = create(client, smith)
        response = client.get(f"{BASE}/{created['id']}")
        assert response.status_code == 200
        assert response.json() == created
        assert response.headers["ETag"] == 'W/"1"'

    def test_read_unknown_is_404(self, client):
        response = client.get(f"{BASE}/missing")
        assert response.status_code == 404
        assert response.json()["issue"][0]["code"] == "not-found"

    def test_update_with_if_match(self, client, smith):
        created = create(client, smith)
        response = client.put(
            f"{BASE}/{created['id']}",
            json=dict(smith, birthDate="1990-05-16"),
            headers={"If-Match": 'W/"1"'},
        )
        assert response.status_code == 200
        assert response.json()["meta"]["versionId"] == "2"
        assert response.json()["birthDate"] == "1990-05-16"
        assert response.headers["ETag"] == 'W/"2"'

    def test_update_without_if_match(self, client, smith):
        created = create(client, smith)
        response = client.put(f"{BASE}/{created['id']}", json=smith)
        assert response.status_code == 200
        assert response.headers["ETag"] == 'W/"2"'

    def test_stale_if_match_is_409(self, client, smith):
        created = create(client, smith)
        client.put(f"{BASE}/{created['id']}", json=smith, headers={"If-Match": 'W/"1"'})

        response = client.put(f"{BASE}/{created['id']}", json=smith, headers={"If-Match": 'W/"1"'})

        assert response.status_code == 409
        assert response.json()["issue"][0]["code"] == "conflict"

    @pytest.mark.parametrize("header", ["version-one", '"1', 'W/1"'])
    def test_malformed_if_match_is_400(self, client, smith, header):
        created = create(client, smith)
        response = client.put(f"{BASE}/{created['id']}", json=smith, headers={"If-Match": header})
        assert response.status_code == 400

    def test_update_unknown_is_404(self, client, smith):
        assert client.put(f"{BASE}/missing", json=smith).status_code == 404

    def test_update_with_mismatched_body_id_is_400(self, client, smith):
        created = create(client, smith)
        response = client.put(f"{BASE}/{created['id']}", json=dict(smith, id="someone-else"))
        assert response.status_code == 400


class TestDelete:

    def test_delete_then_read_is_410(self, client, smith):
        created = create(client, smith)

        response = client.delete(f"{BASE}/{created['id']}")
        assert response.status_code == 204
        assert response.headers["ETag"] == 'W/"2"'

        gone = client.get(f"{BASE}/{created['id']}")
        assert gone.status_code == 410
        assert gone.headers["ETag"] == 'W/"2"'
        assert gone.json()["issue"][0]["code"] == "deleted"

    def test_second_delete_is_404(self, client, smith):
        created = create(client, smith)
        client.delete(f"{BASE}/{created['id']}")
        assert client.delete(f"{BASE}/{created['id']}").status_code == 404

    def test_update_after_delete_is_404(self, client, smith):
        created = create(client, smith)
        client.delete(f"{BASE}/{created['id']}")
        assert client.put(f"{BASE}/{created['id']}", json=smith).status_code == 404


class TestHistory:

    def test_history_bundle(self, client, smith):
        created = create(client, smith)
        resource_id = created["id"]
        client.put(f"{BASE}/{resource_id}", json=dict(smith, birthDate="1990-05-16"))
        client.delete(f"{BASE}/{resource_id}")

        response = client.get(f"{BASE}/{resource_id}/_history")

        assert response.status_code == 200
        bundle = response.json()
        assert bundle["type"] == "history"
        assert bundle["total"] == 3
        assert [e["resource"]["meta"]["versionId"] for e in bundle["entry"]] == ["3", "2", "1"]
        assert [e["request"]["method"] for e in bundle["entry"]] == ["DELETE", "PUT", "POST"]

    def test_history_paging(self, client, smith):
        created = create(client, smith)
        for _ in range(3):
            client.put(f"{BASE}/{created['id']}", json=smith)

        bundle = client.get(f"{BASE}/{created['id']}/_history", params={"_count": 2, "_offset": 1}).json()

        assert bundle["total"] == 4
        assert [e["resource"]["meta"]["versionId"] for e in bundle["entry"]] == ["3", "2"]
        assert {link["relation"] for link in bundle["link"]} == {"self", "next", "previous"}

    def test_history_unknown_is_404(self, client):
        assert client.get(f"{BASE}/missing/_history").status_code == 404

    def test_negative_history_count_is_400(self, client, smith):
        created = create(client, smith)
        assert client.get(f"{BASE}/{created['id']}/_history", params={"_count": -1}).status_code == 400

    def test_vread(self, client, smith):
        created = create(client, smith)
        client.put(f"{BASE}/{created['id']}", json=dict(smith, gender="female"))

        first = client.get(f"{BASE}/{created['id']}/_history/1")
        assert first.status_code == 200
        assert first.json()["gender"] == "male"
        assert first.headers["ETag"] == 'W/"1"'

    def test_vread_of_deletion_version_is_410(self, client, smith):
        created = create(client, smith)
        client.delete(f"{BASE}/{created['id']}")

        assert client.get(f"{BASE}/{created['id']}/_history/1").status_code == 200
        assert client.get(f"{BASE}/{created['id']}/_history/2").status_code == 410

    def test_vread_unknown_version_is_404(self, client, smith):
        created = create(client, smith)
        assert client.get(f"{BASE}/{created['id']}/_history/5").status_code == 404


class TestSearch:

    def test_search_bundle(self, client, smith):
        create(client, smith)
        create(client, dict(smith, name=[{"family": "Jones"}], gender="female"))

        response = client.get(BASE, params={"gender": "male"})

        assert response.status_code == 200
        bundle = response.json()
        assert bundle["resourceType"] == "Bundle"
        assert bundle["type"] == "searchset"
        assert bundle["total"] == 1
        assert bundle["entry"][0]["resource"]["name"][0]["family"] == "Smith"
        assert bundle["entry"][0]["fullUrl"].startswith(f"http://testserver{BASE}/")

    def test_lifecycle_search(self, client, smith):
        created = create(client, smith)
        client.put(f"{BASE}/{created['id']}", json=dict(smith, birthDate="1990-05-16"), headers={"If-Match": 'W/"1"'})

        params = {"gender": "male", "birthdate": "ge1990-01-01"}
        assert client.get(BASE, params=params).json()["total"] == 1

        client.delete(f"{BASE}/{created['id']}")
        assert client.get(BASE, params=params).json()["total"] == 0
        assert client.get(f"{BASE}/{created['id']}/_history").json()["total"] == 3

    def test_repeated_parameters(self, client, smith):
        create(client, smith)
        create(client, dict(smith, birthDate="2005-01-01"))

        response = client.get(f"{BASE}?birthdate=ge1990-01-01&birthdate=lt2000-01-01")

        assert response.json()["total"] == 1

    def test_paging_links_echo_the_query(self, client, smith):
        for _ in range(3):
            create(client, smith)

        bundle = client.get(BASE, params={"gender": "male", "_count": 2}).json()

        assert bundle["total"] == 3
        assert len(bundle["entry"]) == 2
        next_link = next(link["url"] for link in bundle["link"] if link["relation"] == "next")
        assert "gender=male" in next_link
        assert "_offset=2" in next_link

    def test_zero_count_page_links_only_itself(self, client, smith):
        for _ in range(3):
            create(client, smith)

        bundle = client.get(BASE, params={"_count": 0, "_offset": 2}).json()

        assert bundle["total"] == 3
        assert [link["relation"] for link in bundle["link"]] == ["self"]

    @pytest.mark.parametrize("query", ["address=Main", "birthdate=1990", "_count=-1", "_sort=address"])
    def test_invalid_search_is_400(self, client, query):
        response = client.get(f"{BASE}?{query}")
        assert response.status_code == 400
        assert response.json()["resourceType"] == "OperationOutcome"


class TestValidate:

    def test_valid_document(self, client, smith, ledger):
        response = client.post(f"{BASE}/$validate", json=smith)
        assert response.status_code == 200
        assert response.json()["issue"][0]["severity"] == "information"
        assert ledger.scan("Patient") == []

    def test_invalid_document(self, client):
        response = client.post(f"{BASE}/$validate", json={"resourceType": "Observation"})
        assert response.status_code == 400


class TestStorageFailure:

    def test_storage_error_is_500_without_detail(self, client, ledger, smith, monkeypatch):
        def broken_scan(resource_type, include_deleted=False):
            raise StorageError("connection refused to db.internal", operation="scan")

        monkeypatch.setattr(ledger, "scan", broken_scan)

        response = client.get(BASE)

        assert response.status_code == 500
        diagnostics = response.json()["issue"][0]["diagnostics"]
        assert "db.internal" not in diagnostics

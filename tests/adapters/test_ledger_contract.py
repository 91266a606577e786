"""LedgerPort contract tests, run against every embedded backend.

The same behaviour is required of the in-memory and DuckDB ledgers; the
PostgreSQL ledger is covered with a mocked pool in its own module.
"""

from datetime import timedelta

import pytest

from fhir_vault.adapters.storage.duckdb_adapter import DuckDBLedger
from fhir_vault.adapters.storage.memory_adapter import InMemoryLedger
from fhir_vault.domain.ports import AlreadyExists, NotFound, VersionConflict
from fhir_vault.domain.utils import utcnow


@pytest.fixture(params=["memory", "duckdb"])
def ledger(request):
    if request.param == "memory":
        instance = InMemoryLedger()
    else:
        instance = DuckDBLedger(db_path=":memory:")
        assert instance.initialize_schema().is_success()
    yield instance
    instance.close()


class TestPut:
    """Inserting new resources."""

    def test_put_creates_version_one(self, ledger):
        resource = ledger.put("p1", "Patient", {"gender": "male"})
        assert resource.version == 1
        assert resource.created_at == resource.updated_at
        assert resource.deleted_at is None

        current = ledger.current_state("p1")
        assert current.version == 1
        assert current.document == {"gender": "male"}

    def test_put_writes_first_history_entry(self, ledger):
        ledger.put("p1", "Patient", {"gender": "male"})
        (entry,) = ledger.history_of("p1")
        assert entry.version == 1
        assert entry.resource_type == "Patient"
        assert entry.document == {"gender": "male"}

    def test_put_existing_id_rejected(self, ledger):
        ledger.put("p1", "Patient", {"gender": "male"})
        with pytest.raises(AlreadyExists):
            ledger.put("p1", "Patient", {"gender": "female"})
        assert ledger.current_state("p1").document == {"gender": "male"}
        assert len(ledger.history_of("p1")) == 1

    def test_nested_documents_survive_storage(self, ledger):
        document = {
            "name": [{"family": "Smith", "given": ["John", "Q"]}],
            "extension": [{"url": "http://example.org", "valueBoolean": True}],
            "multipleBirthInteger": 2,
        }
        ledger.put("p1", "Patient", document)
        assert ledger.current_state("p1").document == document

    def test_timestamps_are_utc(self, ledger):
        ledger.put("p1", "Patient", {})
        current = ledger.current_state("p1")
        assert current.created_at.utcoffset() == timedelta(0)
        assert abs(utcnow() - current.created_at) < timedelta(minutes=1)


class TestAppendVersion:
    """Compare-and-swap appends."""

    def test_append_increments_version(self, ledger):
        created = ledger.put("p1", "Patient", {"gender": "male"})
        updated = ledger.append_version("p1", {"gender": "female"}, expected_version=1)

        assert updated.version == 2
        assert updated.created_at == created.created_at
        current = ledger.current_state("p1")
        assert current.version == 2
        assert current.document == {"gender": "female"}

    def test_current_row_matches_newest_history_entry(self, ledger):
        ledger.put("p1", "Patient", {"v": 1})
        for n in range(1, 5):
            ledger.append_version("p1", {"v": n + 1}, expected_version=n)

        current = ledger.current_state("p1")
        history = ledger.history_of("p1")
        assert [e.version for e in history] == [5, 4, 3, 2, 1]
        assert history[0].document == current.document
        assert history[0].created_at == current.updated_at

    def test_stale_expected_version(self, ledger):
        ledger.put("p1", "Patient", {"v": 1})
        ledger.append_version("p1", {"v": 2}, expected_version=1)

        with pytest.raises(VersionConflict) as exc_info:
            ledger.append_version("p1", {"v": 3}, expected_version=1)

        assert exc_info.value.current_version == 2
        assert ledger.current_state("p1").document == {"v": 2}
        assert len(ledger.history_of("p1")) == 2

    def test_unknown_id(self, ledger):
        with pytest.raises(NotFound):
            ledger.append_version("missing", {}, expected_version=1)

    def test_deleted_at_marks_a_deletion(self, ledger):
        ledger.put("p1", "Patient", {"gender": "male"})
        when = utcnow()
        deleted = ledger.append_version("p1", {"gender": "male", "deleted": True}, expected_version=1, deleted_at=when)

        assert deleted.is_deleted
        current = ledger.current_state("p1")
        assert current.is_deleted
        assert abs(current.deleted_at - when) < timedelta(milliseconds=1)
        assert abs(current.updated_at - when) < timedelta(milliseconds=1)
        assert ledger.history_of("p1")[0].is_deletion


class TestReads:
    """History, vread and scan."""

    def test_version_of(self, ledger):
        ledger.put("p1", "Patient", {"v": 1})
        ledger.append_version("p1", {"v": 2}, expected_version=1)
        assert ledger.version_of("p1", 1).document == {"v": 1}
        assert ledger.version_of("p1", 2).document == {"v": 2}

    @pytest.mark.parametrize("version", [0, 2, 10])
    def test_version_of_missing_version(self, ledger, version):
        ledger.put("p1", "Patient", {})
        with pytest.raises(NotFound):
            ledger.version_of("p1", version)

    def test_unknown_ids(self, ledger):
        with pytest.raises(NotFound):
            ledger.current_state("missing")
        with pytest.raises(NotFound):
            ledger.history_of("missing")
        with pytest.raises(NotFound):
            ledger.version_of("missing", 1)

    def test_scan_filters_type_and_deleted(self, ledger):
        ledger.put("p1", "Patient", {})
        ledger.put("p2", "Patient", {})
        ledger.put("o1", "Observation", {})
        ledger.append_version("p2", {"deleted": True}, expected_version=1, deleted_at=utcnow())

        assert sorted(r.id for r in ledger.scan("Patient")) == ["p1"]
        assert sorted(r.id for r in ledger.scan("Patient", include_deleted=True)) == ["p1", "p2"]
        assert [r.id for r in ledger.scan("Observation")] == ["o1"]
        assert ledger.scan("Encounter") == []

    def test_returned_documents_are_detached(self, ledger):
        ledger.put("p1", "Patient", {"name": [{"family": "Smith"}]})
        ledger.current_state("p1").document["name"][0]["family"] = "Changed"
        ledger.history_of("p1")[0].document["name"].append({"family": "Extra"})
        assert ledger.current_state("p1").document == {"name": [{"family": "Smith"}]}
        assert ledger.version_of("p1", 1).document == {"name": [{"family": "Smith"}]}

"""Tests for the fhir-vault command line interface.

Most commands run against one shared in-memory ledger patched in place of
the factory so state carries across invocations. TestConfiguredLedger goes
through the real factory, one ledger per command.
"""

import json
import re
from unittest.mock import patch

import pytest
import typer
from typer.testing import CliRunner

from fhir_vault import __version__
from fhir_vault.adapters.storage.memory_adapter import InMemoryLedger
from fhir_vault.cli import app, parse_params
from fhir_vault.infrastructure.config_manager import DatabaseConfig
from fhir_vault.infrastructure.settings import settings

runner = CliRunner()


@pytest.fixture
def ledger():
    instance = InMemoryLedger()
    with patch("fhir_vault.cli.create_ledger", return_value=instance):
        yield instance


@pytest.fixture
def patient_file(tmp_path):
    path = tmp_path / "patient.json"
    path.write_text(json.dumps({
        "resourceType": "Patient",
        "name": [{"family": "Smith"}],
        "gender": "male",
        "birthDate": "1990-05-15",
    }))
    return path


def created_id(output: str) -> str:
    return re.search(r"Patient/([0-9a-f-]+)", output).group(1)


class TestParseParams:

    def test_repeats_accumulate(self):
        assert parse_params(["birthdate=ge1990-01-01", "birthdate=lt2000-01-01", "name="]) == {
            "birthdate": ["ge1990-01-01", "lt2000-01-01"],
            "name": [""],
        }

    def test_missing_separator(self):
        with pytest.raises(typer.BadParameter):
            parse_params(["gender"])


class TestCommands:

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_db(self, ledger):
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0
        assert "Schema ready" in result.output

    def test_create_show_update_delete(self, ledger, patient_file, tmp_path):
        result = runner.invoke(app, ["create", str(patient_file)])
        assert result.exit_code == 0
        resource_id = created_id(result.output)

        shown = runner.invoke(app, ["show", resource_id])
        assert shown.exit_code == 0
        assert '"versionId": "1"' in shown.output

        replacement = tmp_path / "replacement.json"
        replacement.write_text(json.dumps({"resourceType": "Patient", "gender": "female"}))
        updated = runner.invoke(app, ["update", resource_id, str(replacement), "--if-match", "1"])
        assert updated.exit_code == 0
        assert "version 2" in updated.output

        stale = runner.invoke(app, ["update", resource_id, str(replacement), "--if-match", "1"])
        assert stale.exit_code == 1
        assert "VersionConflict" in stale.output

        deleted = runner.invoke(app, ["delete", resource_id])
        assert deleted.exit_code == 0
        assert "version 3" in deleted.output

        gone = runner.invoke(app, ["show", resource_id])
        assert gone.exit_code == 1
        assert "ResourceDeleted" in gone.output

        old = runner.invoke(app, ["show", resource_id, "--version", "1"])
        assert old.exit_code == 0
        assert '"gender": "male"' in old.output

        history = runner.invoke(app, ["history", resource_id])
        assert history.exit_code == 0
        assert "3 of 3 version(s)" in history.output

    def test_search(self, ledger, patient_file):
        runner.invoke(app, ["create", str(patient_file)])
        runner.invoke(app, ["create", str(patient_file)])

        result = runner.invoke(app, ["search", "gender=male", "_count=1"])

        assert result.exit_code == 0
        assert "1 of 2 match(es)" in result.output

    def test_search_rejects_bad_parameters(self, ledger):
        result = runner.invoke(app, ["search", "address=Main"])
        assert result.exit_code == 1
        assert "InvalidQuery" in result.output

    def test_create_invalid_document(self, ledger, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"resourceType": "Patient", "gender": "M"}))

        result = runner.invoke(app, ["create", str(path)])

        assert result.exit_code == 1
        assert "InvalidResource" in result.output
        assert ledger.scan("Patient") == []

    def test_create_non_json_file(self, ledger, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("not json")
        result = runner.invoke(app, ["create", str(path)])
        assert result.exit_code == 1

    def test_info(self, ledger):
        result = runner.invoke(app, ["info"])
        assert result.exit_code == 0
        assert "reachable" in result.output


class TestConfiguredLedger:

    def test_writes_survive_between_commands(self, monkeypatch, patient_file, tmp_path):
        db_path = tmp_path / "fhir.duckdb"
        monkeypatch.setattr(settings, "_db_config", DatabaseConfig(db_type="duckdb", db_path=str(db_path)))

        created = runner.invoke(app, ["create", str(patient_file)])
        assert created.exit_code == 0
        resource_id = created_id(created.output)

        shown = runner.invoke(app, ["show", resource_id])
        assert shown.exit_code == 0
        assert '"versionId": "1"' in shown.output
        assert db_path.exists()

    def test_memory_backend_warns(self, monkeypatch, patient_file):
        monkeypatch.setattr(settings, "_db_config", DatabaseConfig(db_type="memory"))

        created = runner.invoke(app, ["create", str(patient_file)])
        assert created.exit_code == 0
        assert "discarded" in created.output

        shown = runner.invoke(app, ["show", created_id(created.output)])
        assert shown.exit_code == 1
        assert "NotFound" in shown.output

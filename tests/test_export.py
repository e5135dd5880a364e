import copy
import json
import stat
from datetime import datetime, timezone
from zipfile import ZipFile

import pytest
from structlog.testing import capture_logs

from n8n_migrate.backup import BackupSource
from n8n_migrate.errors import PackageInvalid, SnapshotCorrupt
from n8n_migrate.export import (
    export_credentials,
    export_workflows,
    filter_by_allowlist,
    load_allowlist,
    run_export,
    run_full_database_export,
    sanitize_workflows,
)
from n8n_migrate.models import CredentialRecord
from n8n_migrate.package import (
    ACTIVE_MAP_FILE,
    CREDENTIALS_FILE,
    METADATA_FILE,
    WORKFLOWS_FILE,
    extract_package,
    read_activation_map,
    read_owner_map,
    verify_checksums,
)

from fakes import FakeN8n, FakeProcess, create_n8n_database, credential, workflow

FIXED_NOW = datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "workflows",
    [
        [],
        [workflow("A", active=True)],
        [workflow("A", active=True), workflow("B"), {"name": "C", "active": "true", "nodes": []}],
        [{"id": 7, "name": "Numeric id", "active": 1}],
    ],
)
def test_sanitize_drops_ids_and_deactivates(workflows):
    original = copy.deepcopy(workflows)
    sanitized = sanitize_workflows(workflows)

    assert len(sanitized) == len(workflows)
    assert all("id" not in item for item in sanitized)
    assert all(item["active"] is False for item in sanitized)
    assert workflows == original
    for before, after in zip(workflows, sanitized):
        assert after["name"] == before["name"]
        assert after.get("nodes") == before.get("nodes")


def _records(*names):
    return [CredentialRecord.from_export(credential(name)) for name in names]


def test_allowlist_selects_subset():
    records = _records("prod-db", "prod-api", "dev-db", "other")
    selected = filter_by_allowlist(records, ["prod-*", "other"])
    assert [record.name for record in selected] == ["prod-db", "prod-api", "other"]
    assert all(record in records for record in selected)


def test_allowlist_wildcard_and_missing_select_everything():
    records = _records("a", "b")
    assert filter_by_allowlist(records, ["*"]) == records
    with capture_logs() as logs:
        assert filter_by_allowlist(records, None) == records
    assert any(entry["event"] == "credential_allowlist_missing" for entry in logs)
    assert any(entry["log_level"] == "warning" for entry in logs)


def test_empty_allowlist_selects_nothing():
    assert filter_by_allowlist(_records("a", "b"), []) == []


def test_load_allowlist_skips_comments(tmp_path):
    path = tmp_path / "allowlist.txt"
    path.write_text("# production only\nprod-*\n\n  shared-smtp  \n", encoding="utf-8")
    assert load_allowlist(path) == ["prod-*", "shared-smtp"]
    assert load_allowlist(tmp_path / "absent.txt") is None


def test_export_workflows_builds_maps_sorted_by_name(tmp_path, source_n8n):
    result = export_workflows(source_n8n, tmp_path)

    assert [item["name"] for item in result.sanitized] == ["Lead Webhook", "Nightly Report", "Order Sync"]
    assert [(e.name, e.was_active, e.source_id) for e in result.activation_map] == [
        ("Lead Webhook", True, "id2"),
        ("Nightly Report", False, "id3"),
        ("Order Sync", True, "id1"),
    ]
    owners = {entry.name: entry for entry in result.owner_map}
    assert owners["Order Sync"].project_id == "p1"
    assert owners["Order Sync"].project_name == "Project p1"
    assert not (tmp_path / "workflows_raw.json").exists()


def test_export_workflows_removes_raw_file_on_bad_json(tmp_path):
    class BrokenExport(FakeN8n):
        def export_workflows(self, output_path):
            output_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PackageInvalid):
        export_workflows(BrokenExport(), tmp_path)
    assert not (tmp_path / "workflows_raw.json").exists()


def test_export_credentials_removes_cleartext_even_on_failure(tmp_path):
    class BrokenExport(FakeN8n):
        def export_credentials(self, output_path):
            output_path.write_text('"just a string"', encoding="utf-8")

    with pytest.raises(PackageInvalid):
        export_credentials(BrokenExport(), tmp_path, None)
    assert not (tmp_path / "credentials_raw.json").exists()


def test_export_credentials_reports_total(tmp_path, source_n8n):
    selected, total = export_credentials(source_n8n, tmp_path, ["prod-*"])
    assert total == 5
    assert sorted(record.name for record in selected) == ["prod-api", "prod-db"]


def test_run_export_builds_verified_package(tmp_path, source_n8n):
    migration_dir = tmp_path / "migration-temp"
    result = run_export(source_n8n, migration_dir, allowlist=["prod-*"], environment="dev", now=FIXED_NOW)

    assert result.package_path == migration_dir / "n8n_export_20240304_120000.zip"
    assert stat.S_IMODE(result.package_path.stat().st_mode) == 0o600
    assert (result.workflow_count, result.active_workflow_count) == (3, 2)
    assert (result.credential_count, result.total_credential_count) == (2, 5)
    assert not (result.staging_dir / CREDENTIALS_FILE).exists()
    assert not list(result.staging_dir.glob("*_raw.json"))

    extracted = extract_package(result.package_path, tmp_path / "check")
    verify_checksums(extracted)
    workflows = json.loads((extracted / WORKFLOWS_FILE).read_text(encoding="utf-8"))
    assert len(workflows) == 3
    assert all(item["active"] is False and "id" not in item for item in workflows)

    credentials = json.loads((extracted / CREDENTIALS_FILE).read_text(encoding="utf-8"))
    assert sorted(item["name"] for item in credentials) == ["prod-api", "prod-db"]
    assert credentials[0]["data"]["password"].startswith("secret-")

    active = [entry for entry in read_activation_map(extracted / ACTIVE_MAP_FILE) if entry.was_active]
    assert sorted(entry.name for entry in active) == ["Lead Webhook", "Order Sync"]
    assert len(read_owner_map(extracted / "workflows_owner_map.tsv")) == 3

    metadata = json.loads((extracted / METADATA_FILE).read_text(encoding="utf-8"))
    assert metadata["workflow_count"] == 3
    assert metadata["credential_count"] == 2
    assert metadata["total_credential_count"] == 5
    assert metadata["active_workflow_count"] == 2
    assert metadata["source_environment"] == "dev"
    assert metadata["n8n_version"] == "1.64.0"


def test_run_export_with_no_credentials_selected(tmp_path, source_n8n):
    result = run_export(source_n8n, tmp_path, allowlist=["nothing-*"], environment="dev", now=FIXED_NOW)
    extracted = extract_package(result.package_path, tmp_path / "check")
    assert json.loads((extracted / CREDENTIALS_FILE).read_text(encoding="utf-8")) == []
    assert result.credential_count == 0


def test_full_database_export_writes_snapshot_key_and_metadata(tmp_path):
    database = create_n8n_database(tmp_path / "live.sqlite", [{"id": "1", "name": "A", "active": True}])
    process = FakeProcess()
    source = BackupSource(environment="dev", service_id="n8n-dev", kind="sqlite", database_path=database)

    result = run_full_database_export(source, tmp_path / "out", process=process, cli=FakeN8n(key="k3y"), now=FIXED_NOW)

    assert result.directory.name == "n8n_full_db_20240304_120000"
    assert result.snapshot_path.exists()
    assert result.key_file.read_text(encoding="utf-8").strip() == "k3y"
    assert stat.S_IMODE(result.key_file.stat().st_mode) == 0o600
    metadata = json.loads(result.metadata_path.read_text(encoding="utf-8"))
    assert metadata["backup_method"] == "sqlite_backup"
    assert process.calls == [("stop", "n8n-dev"), ("start", "n8n-dev")]


def test_full_database_export_leaves_nothing_when_snapshot_corrupt(tmp_path, monkeypatch):
    database = create_n8n_database(tmp_path / "live.sqlite")
    source = BackupSource(environment="dev", service_id="n8n-dev", kind="sqlite", database_path=database)
    monkeypatch.setattr("n8n_migrate.snapshot.check_sqlite_integrity", lambda _path: ["page 4 is never used"])

    with pytest.raises(SnapshotCorrupt):
        run_full_database_export(source, tmp_path / "out", process=FakeProcess(), cli=FakeN8n(), now=FIXED_NOW)
    assert list((tmp_path / "out").iterdir()) == []


def test_package_zip_lists_expected_files(tmp_path, source_n8n):
    result = run_export(source_n8n, tmp_path, allowlist=None, environment="dev", now=FIXED_NOW)
    with ZipFile(result.package_path) as archive:
        assert sorted(archive.namelist()) == sorted(
            [
                "checksums.txt",
                CREDENTIALS_FILE,
                METADATA_FILE,
                ACTIVE_MAP_FILE,
                "workflows_owner_map.tsv",
                WORKFLOWS_FILE,
            ]
        )

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from n8n_migrate.adapters import SqlDatabase
from n8n_migrate.backup import BackupArtifact
from n8n_migrate.config import HealthSettings
from n8n_migrate.errors import (
    ACTIVATION_TARGET_MISSING,
    KEY_PROPAGATION_INCOMPLETE,
    PARTIAL_IMPORT_COUNT,
    POST_IMPORT_STEP_FAILED,
    BackupFailed,
    ChecksumMismatch,
    HealthCheckTimeout,
    MigrationWarning,
    PackageInvalid,
)
from n8n_migrate.importer import ImportPipeline, ImportReport, ImportState, import_full_database
from n8n_migrate.keysync import KeySyncResult
from n8n_migrate.models import ActivationEntry
from n8n_migrate.package import (
    CREDENTIALS_FILE,
    METADATA_FILE,
    PACKAGE_FILES,
    WORKFLOWS_FILE,
    extract_package,
    write_checksums,
)

from fakes import FakeN8n, FakeProcess, create_n8n_database, db_rows, workflow

FAST_HEALTH = HealthSettings(attempts=2, delay_seconds=0, timeout_seconds=1)


def _artifact(tmp_path: Path) -> BackupArtifact:
    path = tmp_path / "backups" / "manual" / "n8n_prod_20240304_120000_pre_import.sqlite.gz"
    return BackupArtifact(
        path=path,
        checksum_path=path.with_name(path.name + ".sha256"),
        metadata_path=path.with_name(path.name + ".meta"),
        bucket="manual",
        environment="prod",
        created_at=datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc),
        checksum="0" * 64,
        size_bytes=1,
        kind="sqlite",
    )


class Harness:
    """Wires an ImportPipeline to fakes over a real destination SQLite file."""

    def __init__(self, tmp_path: Path, destination: Path, *, mode: str = "replace", healthy: bool = True) -> None:
        self.tmp_path = tmp_path
        self.destination = destination
        self.events: list[str] = []
        self.sleeps: list[float] = []
        self.n8n = FakeN8n(destination, healthy=healthy)
        self.process = FakeProcess()
        self.database = SqlDatabase(f"sqlite:///{destination}")
        self.backup_error: BackupFailed | None = None
        self.confirm_answer = False
        self.prompts: list[str] = []
        self.key_sync = None
        self.pipeline = ImportPipeline(
            cli=self.n8n,
            database=self.database,
            process=self.process,
            service_id="n8n-prod",
            backup=self.backup,
            work_dir=tmp_path / "import",
            health=FAST_HEALTH,
            mode=mode,
            confirm=self.confirm,
            key_sync=self._key_sync,
            webhook_toggle_delay=0.25,
            sleep=self.sleeps.append,
        )

    def backup(self) -> BackupArtifact:
        self.events.append("backup")
        if self.backup_error is not None:
            raise self.backup_error
        return _artifact(self.tmp_path)

    def confirm(self, message: str) -> bool:
        self.prompts.append(message)
        return self.confirm_answer

    def _key_sync(self) -> KeySyncResult:
        self.events.append("key_sync")
        if self.key_sync is None:
            return KeySyncResult()
        return self.key_sync()

    def names(self, where: str = "") -> list[str]:
        return [row[0] for row in db_rows(self.destination, f"SELECT name FROM workflow_entity {where} ORDER BY name")]

    def close(self) -> None:
        self.database.dispose()


@pytest.fixture
def harness(tmp_path, destination_db):
    wired = Harness(tmp_path, destination_db)
    yield wired
    wired.close()


def test_replace_import_end_to_end(harness, export_package):
    stale = harness.tmp_path / "stale.json"
    stale.write_text(json.dumps([{"name": "Stale Flow", "nodes": []}]), encoding="utf-8")
    harness.n8n.import_workflows(stale)
    harness.n8n.calls.clear()

    report = harness.pipeline.run(export_package)

    assert report.status == "succeeded", report.warnings
    assert report.state is ImportState.VERIFIED
    assert harness.names() == ["Lead Webhook", "Nightly Report", "Order Sync"]
    assert harness.names("WHERE active = 1") == ["Lead Webhook", "Order Sync"]
    assert sorted(report.activated) == ["Lead Webhook", "Order Sync"]
    assert report.workflows_before == 1
    assert (report.actual_workflows, report.actual_active, report.actual_credentials) == (3, 2, 2)
    assert (report.expected_workflows, report.expected_active, report.expected_credentials) == (3, 2, 2)
    assert report.rollback_artifact.endswith("_pre_import.sqlite.gz")
    assert report.healthy is True
    assert sorted(c["name"] for c in harness.n8n.imported_credentials) == ["prod-api", "prod-db"]
    assert harness.n8n.calls.index("import_credentials") < harness.n8n.calls.index("import_workflows")

    written = json.loads(harness.pipeline.report_path.read_text(encoding="utf-8"))
    assert written["status"] == "succeeded"
    assert written["state"] == "Verified"
    assert not list((harness.tmp_path / "import").rglob(CREDENTIALS_FILE))


def test_webhook_owners_are_toggled_then_instance_restarted_once(harness, export_package):
    report = harness.pipeline.run(export_package)

    (lead_id,) = [row[0] for row in db_rows(harness.destination, "SELECT id FROM workflow_entity WHERE name = 'Lead Webhook'")]
    assert report.webhooks_toggled == [lead_id]
    assert harness.process.calls == [("restart", "n8n-prod")]
    assert 0.25 in harness.sleeps
    assert harness.names("WHERE active = 1") == ["Lead Webhook", "Order Sync"]


def test_replace_import_is_idempotent(harness, export_package):
    first = harness.pipeline.run(export_package)
    first_state = (harness.names(), harness.names("WHERE active = 1"))
    second = harness.pipeline.run(export_package)

    assert (harness.names(), harness.names("WHERE active = 1")) == first_state
    assert first.actual_workflows == second.actual_workflows == 3
    assert second.workflows_before == 3


def test_key_sync_runs_after_backup_and_before_credentials(harness, export_package):
    order = harness.events

    def key_sync():
        order.append(f"credentials_imported_yet={'import_credentials' in harness.n8n.calls}")
        return KeySyncResult(warnings=[MigrationWarning(KEY_PROPAGATION_INCOMPLETE, "no .env")])

    harness.key_sync = key_sync
    report = harness.pipeline.run(export_package)

    assert order[:3] == ["backup", "key_sync", "credentials_imported_yet=False"]
    assert report.status == "completed_with_warnings"
    assert [w.code for w in report.warnings] == [KEY_PROPAGATION_INCOMPLETE]
    assert report.key_sync == {"updated": [], "missing": [], "backups": []}


def test_backup_failure_halts_before_any_change(harness, export_package):
    stale = harness.tmp_path / "stale.json"
    stale.write_text(json.dumps([{"name": "Keep Me", "nodes": []}]), encoding="utf-8")
    harness.n8n.import_workflows(stale)
    harness.n8n.calls.clear()
    harness.backup_error = BackupFailed("disk full")

    with pytest.raises(BackupFailed):
        harness.pipeline.run(export_package)

    assert len(harness.prompts) == 1
    assert "import_credentials" not in harness.n8n.calls
    assert "import_workflows" not in harness.n8n.calls
    assert "key_sync" not in harness.events
    assert harness.names() == ["Keep Me"]
    written = json.loads(harness.pipeline.report_path.read_text(encoding="utf-8"))
    assert written["status"] == "failed"
    assert written["state"] == "ChecksumVerified"
    assert "disk full" in written["error"]
    assert not list((harness.tmp_path / "import").rglob(CREDENTIALS_FILE))


def test_backup_failure_override_proceeds_with_warning(harness, export_package):
    harness.backup_error = BackupFailed("disk full")
    harness.confirm_answer = True

    report = harness.pipeline.run(export_package)

    assert report.rollback_artifact is None
    assert report.status == "completed_with_warnings"
    assert any("without rollback artifact" in w.message for w in report.warnings)
    assert harness.names() == ["Lead Webhook", "Nightly Report", "Order Sync"]


def test_checksum_mismatch_halts_before_backup(harness, export_package):
    directory = extract_package(export_package, harness.tmp_path / "tampered")
    workflows = json.loads((directory / WORKFLOWS_FILE).read_text(encoding="utf-8"))
    workflows[0]["name"] = "Injected"
    (directory / WORKFLOWS_FILE).write_text(json.dumps(workflows), encoding="utf-8")

    with pytest.raises(ChecksumMismatch):
        harness.pipeline.run(directory)

    assert harness.events == []
    assert harness.n8n.calls == []
    assert harness.pipeline.report.state is ImportState.RECEIVED
    assert not (directory / CREDENTIALS_FILE).exists()


def test_missing_package_is_reported(harness, tmp_path):
    with pytest.raises(PackageInvalid):
        harness.pipeline.run(tmp_path / "nope.zip")
    assert json.loads(harness.pipeline.report_path.read_text(encoding="utf-8"))["status"] == "failed"


@pytest.mark.parametrize(
    "metadata",
    [{"workflow_count": None, "credential_count": 2}, {"credential_count": "2"}, [1, 2, 3], {"workflow_count": -1}],
)
def test_invalid_metadata_halts_with_failed_report(harness, export_package, metadata):
    directory = extract_package(export_package, harness.tmp_path / "edited")
    (directory / METADATA_FILE).write_text(json.dumps(metadata), encoding="utf-8")
    write_checksums(directory, PACKAGE_FILES)

    with pytest.raises(PackageInvalid):
        harness.pipeline.run(directory)

    assert harness.events == []
    assert harness.n8n.calls == []
    written = json.loads(harness.pipeline.report_path.read_text(encoding="utf-8"))
    assert written["status"] == "failed"
    assert written["state"] == "ChecksumVerified"
    assert "export_metadata.json" in written["error"]


def test_unexpected_error_is_reported_as_failed(harness, export_package):
    def broken_import(path):
        raise RuntimeError("n8n crashed")

    harness.n8n.import_credentials = broken_import

    with pytest.raises(RuntimeError):
        harness.pipeline.run(export_package)

    written = json.loads(harness.pipeline.report_path.read_text(encoding="utf-8"))
    assert written["status"] == "failed"
    assert written["state"] == "DestinationBackedUp"
    assert written["error"] == "RuntimeError: n8n crashed"


def test_report_never_claims_success_before_verification():
    report = ImportReport(package="p.zip", mode="replace")
    report.advance(ImportState.WORKFLOWS_IMPORTED)
    report.finish()
    assert report.status == "failed"
    assert "WorkflowsImported" in report.error


def test_instance_is_healthy_again_before_credentials_are_imported(harness, export_package):
    harness.pipeline.run(export_package)

    assert harness.events[0] == "backup"
    assert harness.n8n.calls[:2] == ["health_check", "import_credentials"]


def test_unhealthy_after_backup_halts_before_credentials(tmp_path, destination_db, export_package):
    harness = Harness(tmp_path, destination_db, healthy=False)
    try:
        with pytest.raises(HealthCheckTimeout):
            harness.pipeline.run(export_package)
    finally:
        harness.close()

    assert harness.n8n.calls == ["health_check", "health_check"]
    assert harness.names() == []
    written = json.loads(harness.pipeline.report_path.read_text(encoding="utf-8"))
    assert written["status"] == "failed"
    assert written["state"] == "ChecksumVerified"
    assert written["rollback_artifact"].endswith("_pre_import.sqlite.gz")


def test_workflows_dropped_by_destination_are_reported(harness, export_package):
    harness.n8n.dropped = {"Nightly Report"}

    report = harness.pipeline.run(export_package)

    assert harness.names() == ["Lead Webhook", "Order Sync"]
    assert report.state is ImportState.VERIFIED
    assert report.status == "completed_with_warnings"
    partial = [w.message for w in report.warnings if w.code == PARTIAL_IMPORT_COUNT]
    assert any("Nightly Report" in message for message in partial)
    assert report.actual_workflows == 2


def test_source_projects_are_carried_into_the_report(harness, export_package):
    report = harness.pipeline.run(export_package)

    assert report.source_projects == {"Order Sync": "Project p1"}
    written = json.loads(harness.pipeline.report_path.read_text(encoding="utf-8"))
    assert written["source_projects"] == {"Order Sync": "Project p1"}


def test_activation_joins_on_name_and_skips_missing(harness):
    staged = harness.tmp_path / "wf.json"
    staged.write_text(json.dumps([workflow("A"), workflow("B")]), encoding="utf-8")
    harness.n8n.import_workflows(staged)

    identifier_map = harness.pipeline.build_identifier_map()
    activated = harness.pipeline.activate(
        [
            ActivationEntry("A", True, "dev-1"),
            ActivationEntry("B", False, "dev-2"),
            ActivationEntry("C", True, "dev-3"),
        ],
        identifier_map,
    )

    assert activated == [identifier_map["A"]]
    assert harness.names("WHERE active = 1") == ["A"]
    assert harness.pipeline.report.skipped_activation == ["C"]
    assert [w.code for w in harness.pipeline.report.warnings] == [ACTIVATION_TARGET_MISSING]


def test_identifier_map_last_row_wins_for_duplicate_names(tmp_path):
    destination = create_n8n_database(
        tmp_path / "dup.sqlite",
        [{"id": "a1", "name": "Same"}, {"id": "b2", "name": "Same"}, {"id": "c3", "name": "Other"}],
    )
    harness = Harness(tmp_path, destination)
    try:
        assert harness.pipeline.build_identifier_map() == {"Same": "b2", "Other": "c3"}
    finally:
        harness.close()


def test_merge_mode_updates_existing_names_and_keeps_others(tmp_path, export_package):
    destination = create_n8n_database(
        tmp_path / "merge.sqlite",
        [
            {"id": "0001", "name": "Order Sync", "active": False},
            {"id": "0002", "name": "Prod Only", "active": True},
        ],
    )
    harness = Harness(tmp_path, destination, mode="merge")
    try:
        report = harness.pipeline.run(export_package)
    finally:
        harness.close()

    rows = dict(db_rows(destination, "SELECT name, id FROM workflow_entity"))
    assert rows["Order Sync"] == "0001"
    assert set(rows) == {"Order Sync", "Prod Only", "Lead Webhook", "Nightly Report"}
    assert report.updated == ["Order Sync"]
    assert sorted(report.created) == ["Lead Webhook", "Nightly Report"]
    assert report.workflows_before == 2
    assert report.actual_workflows == 4
    assert report.status == "succeeded", report.warnings


def test_unhealthy_instance_after_import_is_a_warning_not_a_crash(harness, export_package):
    import_workflows = harness.n8n.import_workflows

    def import_then_fall_over(path):
        output = import_workflows(path)
        harness.n8n.healthy = False
        return output

    harness.n8n.import_workflows = import_then_fall_over
    report = harness.pipeline.run(export_package)

    assert report.state is ImportState.VERIFIED
    assert report.healthy is False
    assert report.status == "completed_with_warnings"
    assert any(w.code == POST_IMPORT_STEP_FAILED for w in report.warnings)
    assert harness.names("WHERE active = 1") == ["Lead Webhook", "Order Sync"]


def test_unknown_mode_is_rejected(tmp_path, destination_db):
    with pytest.raises(ValueError):
        Harness(tmp_path, destination_db, mode="upsert")


def _full_db_kwargs(tmp_path, process, events, **overrides):
    def backup():
        events.append("backup")
        return _artifact(tmp_path)

    kwargs = dict(
        service_id="n8n-prod",
        process=process,
        backup=backup,
        health_check=lambda: True,
        health=FAST_HEALTH,
        sleep=lambda _seconds: None,
        report_path=tmp_path / "full_db_report.json",
    )
    kwargs.update(overrides)
    return kwargs


def test_full_database_import_replaces_destination(tmp_path):
    snapshot = create_n8n_database(tmp_path / "export" / "database.sqlite", [{"id": "s1", "name": "From Dev", "active": True}])
    destination = create_n8n_database(tmp_path / "prod" / "database.sqlite", [{"id": "p1", "name": "Old Prod"}])
    process = FakeProcess()
    events = []

    def key_sync():
        events.append(f"key_sync running={process.running}")
        return KeySyncResult(updated=[tmp_path / "config"])

    report = import_full_database(
        snapshot, database_path=destination, **_full_db_kwargs(tmp_path, process, events, key_sync=key_sync)
    )

    assert db_rows(destination, "SELECT id, name FROM workflow_entity") == [("s1", "From Dev")]
    assert events == ["backup", "key_sync running=False"]
    assert process.calls == [("stop", "n8n-prod"), ("start", "n8n-prod")]
    assert report.state is ImportState.VERIFIED
    assert report.status == "succeeded"
    assert (report.expected_workflows, report.actual_workflows) == (1, 1)
    assert json.loads((tmp_path / "full_db_report.json").read_text(encoding="utf-8"))["mode"] == "full-db"


def test_full_database_import_rejects_corrupt_snapshot(tmp_path):
    snapshot = tmp_path / "database.sqlite"
    snapshot.write_bytes(b"garbage" * 1000)
    destination = create_n8n_database(tmp_path / "prod" / "database.sqlite", [{"id": "p1", "name": "Old Prod"}])
    process = FakeProcess()
    events = []

    with pytest.raises(PackageInvalid):
        import_full_database(snapshot, database_path=destination, **_full_db_kwargs(tmp_path, process, events))

    assert events == []
    assert process.calls == []
    assert db_rows(destination, "SELECT name FROM workflow_entity") == [("Old Prod",)]
    assert json.loads((tmp_path / "full_db_report.json").read_text(encoding="utf-8"))["status"] == "failed"


def test_full_database_import_unhealthy_after_start(tmp_path):
    snapshot = create_n8n_database(tmp_path / "export" / "database.sqlite", [{"id": "s1", "name": "From Dev"}])
    destination = create_n8n_database(tmp_path / "prod" / "database.sqlite")
    report = import_full_database(
        snapshot,
        database_path=destination,
        **_full_db_kwargs(tmp_path, FakeProcess(), [], health_check=lambda: False),
    )
    assert report.healthy is False
    assert report.status == "completed_with_warnings"

"""Import assembler: apply a transfer package (or a full snapshot) to the destination.

A selective import walks a fixed sequence of states. Anything that fails
before workflows are written halts the run with the destination untouched or
restorable from the rollback artifact. Once workflows are in, later steps are
best-effort: failures become report warnings and the run still verifies.
"""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .adapters import AutomationServerCLI, DatabaseAccess, ProcessControl
from .backup import BackupArtifact
from .config import HealthSettings
from .errors import (
    ACTIVATION_TARGET_MISSING,
    PARTIAL_IMPORT_COUNT,
    POST_IMPORT_STEP_FAILED,
    BackupFailed,
    HealthCheckTimeout,
    MigrationError,
    MigrationWarning,
    PackageInvalid,
)
from .health import wait_for_healthy
from .keysync import KeySyncResult
from .models import UNKNOWN_WORKFLOW_NAME, ActivationEntry
from .package import (
    ACTIVE_MAP_FILE,
    CREDENTIALS_FILE,
    METADATA_FILE,
    OWNER_MAP_FILE,
    REQUIRED_FILES,
    WORKFLOWS_FILE,
    extract_package,
    load_json_list,
    read_activation_map,
    read_owner_map,
    read_package_metadata,
    verify_checksums,
)
from .snapshot import check_sqlite_integrity, restore_sqlite_snapshot

logger = structlog.get_logger("importer")

WEBHOOK_NODE_TYPES: frozenset[str] = frozenset({"n8n-nodes-base.webhook", "n8n-nodes-base.formTrigger"})
REPORT_FILE = "import_report.json"

T = TypeVar("T")


class ImportState(str, Enum):
    RECEIVED = "Received"
    CHECKSUM_VERIFIED = "ChecksumVerified"
    DESTINATION_BACKED_UP = "DestinationBackedUp"
    CREDENTIALS_IMPORTED = "CredentialsImported"
    WORKFLOWS_IMPORTED = "WorkflowsImported"
    IDENTIFIERS_MAPPED = "IdentifiersMapped"
    ACTIVATED = "Activated"
    WEBHOOKS_TOGGLED = "WebhooksToggled"
    VERIFIED = "Verified"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class ImportReport:
    """Structured outcome of one import run, written on success and on failure."""

    package: str
    mode: str
    state: ImportState = ImportState.RECEIVED
    status: str = "running"
    expected_workflows: Optional[int] = None
    expected_credentials: Optional[int] = None
    expected_active: Optional[int] = None
    workflows_before: Optional[int] = None
    workflows_after: Optional[int] = None
    actual_workflows: Optional[int] = None
    actual_active: Optional[int] = None
    actual_credentials: Optional[int] = None
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    activated: list[str] = field(default_factory=list)
    skipped_activation: list[str] = field(default_factory=list)
    webhooks_toggled: list[str] = field(default_factory=list)
    source_projects: dict[str, str] = field(default_factory=dict)
    warnings: list[MigrationWarning] = field(default_factory=list)
    rollback_artifact: Optional[str] = None
    key_sync: Optional[dict[str, Any]] = None
    healthy: Optional[bool] = None
    error: Optional[str] = None
    started_at: str = field(default_factory=_utcnow_iso)
    finished_at: Optional[str] = None

    def warn(self, code: str, message: str) -> None:
        self.warnings.append(MigrationWarning(code, message))
        logger.warning("import_warning", code=code, message=message)

    def advance(self, state: ImportState) -> None:
        self.state = state
        logger.info("import_state", state=state.value)

    def fail(self, exc: BaseException) -> None:
        self.status = "failed"
        self.error = f"{type(exc).__name__}: {exc}"

    def finish(self) -> None:
        if self.status == "running" and self.state is not ImportState.VERIFIED:
            self.status = "failed"
            self.error = self.error or f"Run stopped in state {self.state.value}"
        elif self.status == "running":
            self.status = "completed_with_warnings" if self.warnings else "succeeded"
        self.finished_at = _utcnow_iso()

    def as_dict(self) -> dict[str, Any]:
        return {
            "package": self.package,
            "mode": self.mode,
            "state": self.state.value,
            "status": self.status,
            "expected": {
                "workflows": self.expected_workflows,
                "credentials": self.expected_credentials,
                "active_workflows": self.expected_active,
            },
            "actual": {
                "workflows": self.actual_workflows,
                "credentials": self.actual_credentials,
                "active_workflows": self.actual_active,
            },
            "workflows_before": self.workflows_before,
            "workflows_after": self.workflows_after,
            "created": self.created,
            "updated": self.updated,
            "activated": self.activated,
            "skipped_activation": self.skipped_activation,
            "webhooks_toggled": self.webhooks_toggled,
            "source_projects": self.source_projects,
            "warnings": [w.as_dict() for w in self.warnings],
            "rollback_artifact": self.rollback_artifact,
            "key_sync": self.key_sync,
            "healthy": self.healthy,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.as_dict(), indent=2), encoding="utf-8")
        return path


def anchor_rollback(
    backup: Callable[[], BackupArtifact],
    confirm: Callable[[str], bool],
    report: ImportReport,
) -> Optional[BackupArtifact]:
    """Take the pre-change backup; without one, continue only on explicit confirmation."""
    try:
        artifact = backup()
    except BackupFailed as exc:
        logger.error("destination_backup_failed", error=str(exc))
        if not confirm(f"Destination backup failed ({exc}). Proceed WITHOUT a rollback artifact?"):
            raise
        report.warn(POST_IMPORT_STEP_FAILED, f"Proceeding without rollback artifact: {exc}")
        logger.critical("rollback_artifact_missing", reason=str(exc))
        return None
    report.rollback_artifact = str(artifact.path)
    logger.critical("rollback_artifact", path=str(artifact.path), checksum=artifact.checksum)
    return artifact


def _is_webhook_owner(nodes: Any) -> bool:
    if isinstance(nodes, (bytes, str)):
        try:
            nodes = json.loads(nodes)
        except json.JSONDecodeError:
            text = nodes.decode("utf-8", "replace") if isinstance(nodes, bytes) else nodes
            return any(f'"{node_type}"' in text for node_type in WEBHOOK_NODE_TYPES)
    if not isinstance(nodes, list):
        return False
    return any(isinstance(node, dict) and node.get("type") in WEBHOOK_NODE_TYPES for node in nodes)


class ImportPipeline:
    """Selective import of a transfer package into the destination instance.

    Collaborators are injected: ``backup`` produces the verified rollback
    artifact, ``confirm`` is asked before proceeding without one, and
    ``key_sync`` (optional) propagates and applies an encryption key before
    credentials are imported.
    """

    def __init__(
        self,
        *,
        cli: AutomationServerCLI,
        database: DatabaseAccess,
        process: ProcessControl,
        service_id: str,
        backup: Callable[[], BackupArtifact],
        work_dir: Path,
        health: HealthSettings,
        mode: str = "replace",
        confirm: Callable[[str], bool] = lambda _message: False,
        key_sync: Optional[Callable[[], KeySyncResult]] = None,
        webhook_toggle_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        report_path: Optional[Path] = None,
    ) -> None:
        if mode not in {"replace", "merge"}:
            raise ValueError(f"Unknown import mode {mode!r}")
        self.cli = cli
        self.database = database
        self.process = process
        self.service_id = service_id
        self._backup = backup
        self.work_dir = work_dir
        self.health = health
        self.mode = mode
        self._confirm = confirm
        self._key_sync = key_sync
        self.webhook_toggle_delay = webhook_toggle_delay
        self._sleep = sleep
        self.report_path = report_path or work_dir / REPORT_FILE
        self.report = ImportReport(package="", mode=mode)

    # -- pre-import (fatal) -------------------------------------------------

    def receive(self, package: Path) -> Path:
        if package.is_dir():
            directory = package
        elif package.is_file():
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            directory = extract_package(package, self.work_dir / f"package_{stamp}")
        else:
            raise PackageInvalid(f"Package not found: {package}")
        self.report.advance(ImportState.RECEIVED)
        return directory

    def verify_checksums(self, directory: Path) -> None:
        verified = set(verify_checksums(directory))
        missing = [name for name in REQUIRED_FILES if not (directory / name).exists()]
        if missing:
            raise PackageInvalid(f"Package is missing required files: {', '.join(missing)}")
        unverified = [name for name in REQUIRED_FILES if name not in verified]
        if unverified:
            raise PackageInvalid(f"Checksum manifest does not cover: {', '.join(unverified)}")
        self.report.advance(ImportState.CHECKSUM_VERIFIED)

    def backup_destination(self) -> Optional[BackupArtifact]:
        """Anchor the rollback artifact, then wait out the restart the embedded snapshot causes."""
        artifact = anchor_rollback(self._backup, self._confirm, self.report)
        wait_for_healthy(
            self.cli.health_check,
            attempts=self.health.attempts,
            delay=self.health.delay_seconds,
            sleep=self._sleep,
        )
        self.report.advance(ImportState.DESTINATION_BACKED_UP)
        return artifact

    def read_source_projects(self, directory: Path) -> dict[str, str]:
        """Source project per workflow name, carried into the report."""
        path = directory / OWNER_MAP_FILE
        if not path.exists():
            return {}
        projects = {entry.name: entry.project_name or entry.project_id for entry in read_owner_map(path) if entry.project_id}
        if projects:
            logger.info("source_projects_recorded", count=len(projects))
        return projects

    def synchronize_key(self) -> None:
        if self._key_sync is None:
            return
        result = self._key_sync()
        self.report.key_sync = result.as_dict()
        for warning in result.warnings:
            self.report.warn(warning.code, warning.message)

    def import_credentials(self, directory: Path) -> int:
        """Hand credentials to n8n's own importer so it re-encrypts them with its current key."""
        path = directory / CREDENTIALS_FILE
        try:
            count = len(load_json_list(path))
            if count:
                output = self.cli.import_credentials(path)
                logger.info("credentials_imported", count=count, output=output[-500:])
            else:
                logger.info("credentials_import_skipped", reason="package holds no credentials")
        finally:
            path.unlink(missing_ok=True)
        self.report.advance(ImportState.CREDENTIALS_IMPORTED)
        return count

    def _count(self, sql: str, params: Optional[dict[str, Any]] = None) -> int:
        rows = self.database.query(sql, params)
        if not rows:
            return 0
        return int(next(iter(rows[0].values())) or 0)

    def _reconcile(self, workflows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Merge mode: carry existing ids for names already present so n8n updates them in place."""
        existing: dict[str, str] = {}
        for row in self.database.query("SELECT id, name FROM workflow_entity ORDER BY id"):
            name = str(row["name"])
            if name in existing:
                logger.warning("destination_duplicate_name", name=name, kept=existing[name], other=str(row["id"]))
                continue
            existing[name] = str(row["id"])
        claimed: set[str] = set()
        prepared: list[dict[str, Any]] = []
        for workflow in workflows:
            name = str(workflow.get("name") or UNKNOWN_WORKFLOW_NAME)
            item = dict(workflow)
            item.pop("id", None)
            if name in existing and name not in claimed:
                item["id"] = existing[name]
                claimed.add(name)
                self.report.updated.append(name)
            else:
                self.report.created.append(name)
            prepared.append(item)
        return prepared

    def import_workflows(self, directory: Path, workflows: Sequence[dict[str, Any]]) -> int:
        before = self._count("SELECT COUNT(*) AS n FROM workflow_entity")
        self.report.workflows_before = before
        if self.mode == "replace":
            deleted = self.database.execute("DELETE FROM workflow_entity")
            logger.info("workflows_cleared", deleted=deleted)
            prepared = [dict(w) for w in workflows]
            self.report.created = [str(w.get("name") or UNKNOWN_WORKFLOW_NAME) for w in prepared]
        else:
            prepared = self._reconcile(workflows)

        staged = directory / "workflows_to_import.json"
        staged.write_text(json.dumps(prepared, indent=2), encoding="utf-8")
        try:
            if prepared:
                output = self.cli.import_workflows(staged)
                logger.info("workflows_imported", count=len(prepared), output=output[-500:])
        finally:
            staged.unlink(missing_ok=True)

        after = self._count("SELECT COUNT(*) AS n FROM workflow_entity")
        self.report.workflows_after = after
        self.report.advance(ImportState.WORKFLOWS_IMPORTED)

        present = {str(row["name"]) for row in self.database.query("SELECT name FROM workflow_entity")}
        missing = sorted({str(w.get("name") or UNKNOWN_WORKFLOW_NAME) for w in prepared} - present)
        if missing:
            self.report.warn(
                PARTIAL_IMPORT_COUNT,
                f"{len(missing)} workflow(s) not present after import: {', '.join(missing[:20])}",
            )
        elif self.mode == "replace" and after != len(prepared):
            self.report.warn(PARTIAL_IMPORT_COUNT, f"Expected {len(prepared)} workflows after import, found {after}")
        return after

    # -- post-import (best effort) -----------------------------------------

    def build_identifier_map(self) -> dict[str, str]:
        """Fresh ``name -> id`` map; with duplicate names the last row by id wins."""
        identifier_map: dict[str, str] = {}
        for row in self.database.query("SELECT id, name FROM workflow_entity ORDER BY id"):
            identifier_map[str(row["name"])] = str(row["id"])
        logger.info("identifier_map_built", count=len(identifier_map))
        return identifier_map

    def activate(self, activation_map: Sequence[ActivationEntry], identifier_map: dict[str, str]) -> list[str]:
        activated: list[str] = []
        for entry in activation_map:
            if not entry.was_active:
                continue
            target = identifier_map.get(entry.name)
            if target is None:
                self.report.skipped_activation.append(entry.name)
                self.report.warn(ACTIVATION_TARGET_MISSING, f"Workflow {entry.name!r} not found after import")
                continue
            try:
                self.database.execute(
                    "UPDATE workflow_entity SET active = :active WHERE id = :id", {"active": True, "id": target}
                )
            except SQLAlchemyError as exc:
                self.report.skipped_activation.append(entry.name)
                self.report.warn(POST_IMPORT_STEP_FAILED, f"Could not activate {entry.name!r}: {exc}")
                continue
            activated.append(target)
            self.report.activated.append(entry.name)
            logger.info("workflow_activated", name=entry.name, id=target, source_id=entry.source_id)
        return activated

    def toggle_webhook_owners(self) -> list[str]:
        """Deactivate/reactivate active webhook owners, then restart once so routes register."""
        rows = self.database.query(
            "SELECT id, name, nodes FROM workflow_entity WHERE active = :active ORDER BY name", {"active": True}
        )
        toggled: list[str] = []
        for row in rows:
            if not _is_webhook_owner(row.get("nodes")):
                continue
            workflow_id = str(row["id"])
            self.database.execute(
                "UPDATE workflow_entity SET active = :active WHERE id = :id", {"active": False, "id": workflow_id}
            )
            self._sleep(self.webhook_toggle_delay)
            self.database.execute(
                "UPDATE workflow_entity SET active = :active WHERE id = :id", {"active": True, "id": workflow_id}
            )
            toggled.append(workflow_id)
            logger.info("webhook_workflow_toggled", id=workflow_id, name=row.get("name"))
        self.report.webhooks_toggled = toggled
        if toggled:
            self.process.restart(self.service_id)
            wait_for_healthy(
                self.cli.health_check,
                attempts=self.health.attempts,
                delay=self.health.delay_seconds,
                sleep=self._sleep,
            )
        return toggled

    def verify(self) -> None:
        report = self.report
        report.healthy = self.cli.health_check()
        if not report.healthy:
            report.warn(POST_IMPORT_STEP_FAILED, "Health endpoint did not report healthy during verification")
        report.actual_workflows = self._count("SELECT COUNT(*) AS n FROM workflow_entity")
        report.actual_active = self._count(
            "SELECT COUNT(*) AS n FROM workflow_entity WHERE active = :active", {"active": True}
        )
        report.actual_credentials = self._count("SELECT COUNT(*) AS n FROM credentials_entity")

        if report.expected_workflows is not None:
            if self.mode == "replace" and report.actual_workflows != report.expected_workflows:
                report.warn(
                    PARTIAL_IMPORT_COUNT,
                    f"Workflow count {report.actual_workflows} differs from package {report.expected_workflows}",
                )
            elif self.mode == "merge" and report.actual_workflows < report.expected_workflows:
                report.warn(
                    PARTIAL_IMPORT_COUNT,
                    f"Workflow count {report.actual_workflows} below package {report.expected_workflows}",
                )
        if report.expected_credentials is not None and report.actual_credentials < report.expected_credentials:
            report.warn(
                PARTIAL_IMPORT_COUNT,
                f"Credential count {report.actual_credentials} below package {report.expected_credentials}",
            )
        if report.expected_active is not None and len(report.activated) != report.expected_active:
            report.warn(
                PARTIAL_IMPORT_COUNT,
                f"Activated {len(report.activated)} workflow(s), package marks {report.expected_active} active",
            )
        report.advance(ImportState.VERIFIED)

    def _best_effort(self, state: ImportState, step: Callable[..., T], *args: Any, default: T) -> T:
        try:
            result = step(*args)
        except HealthCheckTimeout as exc:
            self.report.healthy = False
            self.report.warn(POST_IMPORT_STEP_FAILED, f"{state.value}: {exc}")
            result = default
        except (MigrationError, SQLAlchemyError, OSError) as exc:
            logger.error("post_import_step_failed", state=state.value, error=str(exc))
            self.report.warn(POST_IMPORT_STEP_FAILED, f"{state.value}: {exc}")
            result = default
        if self.report.state != state:
            self.report.advance(state)
        return result

    # -- driver -------------------------------------------------------------

    def run(self, package: Path) -> ImportReport:
        report = self.report = ImportReport(package=str(package), mode=self.mode)
        directory: Optional[Path] = None
        try:
            try:
                directory = self.receive(package)
                self.verify_checksums(directory)
                metadata = read_package_metadata(directory / METADATA_FILE)
                workflows = load_json_list(directory / WORKFLOWS_FILE)
                activation_map = read_activation_map(directory / ACTIVE_MAP_FILE)
                report.expected_workflows = int(metadata.get("workflow_count", len(workflows)))
                report.expected_credentials = int(metadata.get("credential_count", 0))
                report.expected_active = sum(1 for entry in activation_map if entry.was_active)
                report.source_projects = self.read_source_projects(directory)

                self.backup_destination()
                self.synchronize_key()
                self.import_credentials(directory)
                self.import_workflows(directory, workflows)
            except Exception as exc:
                report.fail(exc)
                logger.error("import_halted", state=report.state.value, error=str(exc))
                if report.rollback_artifact:
                    logger.critical("rollback_artifact", path=report.rollback_artifact)
                raise
            finally:
                if directory is not None:
                    (directory / CREDENTIALS_FILE).unlink(missing_ok=True)

            identifier_map = self._best_effort(
                ImportState.IDENTIFIERS_MAPPED, self.build_identifier_map, default={}
            )
            self._best_effort(ImportState.ACTIVATED, self.activate, activation_map, identifier_map, default=[])
            self._best_effort(ImportState.WEBHOOKS_TOGGLED, self.toggle_webhook_owners, default=[])
            self._best_effort(ImportState.VERIFIED, self.verify, default=None)
            return report
        finally:
            report.finish()
            report.write(self.report_path)
            logger.info("import_report_written", path=str(self.report_path), status=report.status)


def _sqlite_counts(path: Path) -> tuple[Optional[int], Optional[int]]:
    try:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
    except sqlite3.Error:
        return None, None
    try:
        workflows = conn.execute("SELECT COUNT(*) FROM workflow_entity").fetchone()[0]
        credentials = conn.execute("SELECT COUNT(*) FROM credentials_entity").fetchone()[0]
    except sqlite3.Error:
        return None, None
    finally:
        conn.close()
    return int(workflows), int(credentials)


def import_full_database(
    snapshot: Path,
    *,
    database_path: Path,
    service_id: str,
    process: ProcessControl,
    backup: Callable[[], BackupArtifact],
    health_check: Callable[[], bool],
    health: HealthSettings,
    confirm: Callable[[str], bool] = lambda _message: False,
    key_sync: Optional[Callable[[], KeySyncResult]] = None,
    file_owner: str = "",
    report_path: Optional[Path] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ImportReport:
    """Replace the destination's SQLite database with a source snapshot.

    The destination keeps nothing of its own, so the source encryption key
    must be propagated (``key_sync``) before n8n starts on the new file.
    """
    report = ImportReport(package=str(snapshot), mode="full-db")
    try:
        try:
            if not snapshot.exists():
                raise PackageInvalid(f"Snapshot not found: {snapshot}")
            problems = check_sqlite_integrity(snapshot)
            if problems:
                raise PackageInvalid(f"Snapshot failed integrity check: {'; '.join(problems[:5])}")
            report.expected_workflows, report.expected_credentials = _sqlite_counts(snapshot)
            report.advance(ImportState.CHECKSUM_VERIFIED)

            anchor_rollback(backup, confirm, report)
            report.advance(ImportState.DESTINATION_BACKED_UP)

            process.stop(service_id)
            try:
                restore_sqlite_snapshot(snapshot, database_path, owner=file_owner)
                if key_sync is not None:
                    result = key_sync()
                    report.key_sync = result.as_dict()
                    for warning in result.warnings:
                        report.warn(warning.code, warning.message)
            finally:
                process.start(service_id)
            report.advance(ImportState.WORKFLOWS_IMPORTED)
        except Exception as exc:
            report.fail(exc)
            logger.error("full_import_halted", state=report.state.value, error=str(exc))
            if report.rollback_artifact:
                logger.critical("rollback_artifact", path=report.rollback_artifact)
            raise

        try:
            wait_for_healthy(health_check, attempts=health.attempts, delay=health.delay_seconds, sleep=sleep)
            report.healthy = True
        except HealthCheckTimeout as exc:
            report.healthy = False
            report.warn(POST_IMPORT_STEP_FAILED, str(exc))
        report.actual_workflows, report.actual_credentials = _sqlite_counts(database_path)
        if report.actual_workflows != report.expected_workflows:
            report.warn(
                PARTIAL_IMPORT_COUNT,
                f"Workflow count {report.actual_workflows} differs from snapshot {report.expected_workflows}",
            )
        report.advance(ImportState.VERIFIED)
        return report
    finally:
        report.finish()
        if report_path is not None:
            report.write(report_path)

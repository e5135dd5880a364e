"""Export assembler: read the source instance and build a transfer package."""

from __future__ import annotations

import json
import os
import shutil
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any, Optional, Sequence

import structlog

from .adapters import AutomationServerCLI, CommandRunner, ProcessControl, run_command
from .backup import BackupSource
from .errors import PackageInvalid
from .keysync import extract_key
from .models import ActivationEntry, CredentialRecord, OwnerEntry, WorkflowRecord
from .package import (
    ACTIVE_MAP_FILE,
    CHECKSUMS_FILE,
    CREDENTIALS_FILE,
    METADATA_FILE,
    OWNER_MAP_FILE,
    PACKAGE_FILES,
    WORKFLOWS_FILE,
    load_json_list,
    package_directory_as_zip,
    write_activation_map,
    write_checksums,
    write_owner_map,
)
from .snapshot import dump_relational_database, snapshot_embedded_database

logger = structlog.get_logger("export")

MATCH_EVERYTHING = "*"


def tool_version() -> str:
    try:
        return importlib_metadata.version("n8n-migrate")
    except importlib_metadata.PackageNotFoundError:  # pragma: no cover - dev installs
        return "0.0.0+local"


@dataclass(slots=True)
class WorkflowExport:
    sanitized: list[dict[str, Any]]
    activation_map: list[ActivationEntry]
    owner_map: list[OwnerEntry]


@dataclass(slots=True)
class ExportResult:
    package_path: Path
    staging_dir: Path
    workflow_count: int
    active_workflow_count: int
    credential_count: int
    total_credential_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FullDatabaseExport:
    directory: Path
    snapshot_path: Path
    key_file: Path
    metadata_path: Path


def _write_private(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)


def _load_export_file(path: Path) -> list[dict[str, Any]]:
    """n8n emits an array for ``--all``; a lone object is wrapped into one."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PackageInvalid(f"n8n export produced no file at {path}") from exc
    except json.JSONDecodeError as exc:
        raise PackageInvalid(f"n8n export {path.name} is not valid JSON: {exc}") from exc
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise PackageInvalid(f"n8n export {path.name} must be a list of objects")
    return data


def sanitize_workflows(workflows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Copies of ``workflows`` with ``id`` removed and ``active`` forced to False."""
    return [WorkflowRecord.from_export(workflow).to_sanitized() for workflow in workflows]


def export_workflows(cli: AutomationServerCLI, work_dir: Path) -> WorkflowExport:
    raw_path = work_dir / "workflows_raw.json"
    try:
        cli.export_workflows(raw_path)
        raw = _load_export_file(raw_path)
    finally:
        raw_path.unlink(missing_ok=True)

    records = sorted((WorkflowRecord.from_export(item) for item in raw), key=lambda record: record.name)
    activation_map = [ActivationEntry(r.name, r.active, r.identifier or "") for r in records]
    owner_map = [OwnerEntry(r.name, r.owner_project_ref or "", r.project_name) for r in records]
    logger.info(
        "workflows_exported",
        count=len(records),
        active=sum(1 for entry in activation_map if entry.was_active),
    )
    return WorkflowExport(
        sanitized=[record.to_sanitized() for record in records],
        activation_map=activation_map,
        owner_map=owner_map,
    )


def load_allowlist(path: Path) -> Optional[list[str]]:
    """Patterns from the allowlist file, or ``None`` when the file does not exist."""
    if not path.exists():
        return None
    patterns = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    return patterns


def filter_by_allowlist(
    records: Sequence[CredentialRecord],
    patterns: Optional[Sequence[str]],
) -> list[CredentialRecord]:
    """Keep records whose name matches at least one glob pattern.

    ``None`` (no allowlist file) selects everything, loudly.
    """
    if patterns is None:
        logger.warning(
            "credential_allowlist_missing",
            detail="no allowlist file found; ALL credentials will be transferred",
            count=len(records),
        )
        return list(records)
    if MATCH_EVERYTHING in patterns:
        logger.warning("credential_allowlist_wildcard", count=len(records))
        return list(records)
    selected = [record for record in records if any(fnmatchcase(record.name, p) for p in patterns)]
    logger.info("credentials_filtered", selected=len(selected), total=len(records), patterns=len(patterns))
    return selected


def export_credentials(
    cli: AutomationServerCLI,
    work_dir: Path,
    patterns: Optional[Sequence[str]],
) -> tuple[list[CredentialRecord], int]:
    """Decrypted credential export, filtered. Returns ``(selected, total_count)``."""
    raw_path = work_dir / "credentials_raw.json"
    try:
        cli.export_credentials(raw_path)
        raw = _load_export_file(raw_path)
    finally:
        raw_path.unlink(missing_ok=True)
    records = sorted((CredentialRecord.from_export(item) for item in raw), key=lambda record: record.name)
    return filter_by_allowlist(records, patterns), len(records)


def write_package(
    staging_dir: Path,
    package_dir: Path,
    *,
    workflows: WorkflowExport,
    credentials: Sequence[CredentialRecord],
    total_credential_count: int,
    metadata: dict[str, Any],
    timestamp: str,
) -> Path:
    """Write, validate, checksum and archive the package files.

    The staging copy of ``credentials_selected.json`` is removed once the
    archive exists, or on failure.
    """
    if len(credentials) > total_credential_count:
        raise PackageInvalid(
            f"Selected credential count {len(credentials)} exceeds exported total {total_credential_count}"
        )
    staging_dir.mkdir(parents=True, exist_ok=True)
    staging_dir.chmod(0o700)
    credentials_path = staging_dir / CREDENTIALS_FILE
    try:
        (staging_dir / WORKFLOWS_FILE).write_text(json.dumps(workflows.sanitized, indent=2), encoding="utf-8")
        _write_private(credentials_path, json.dumps([c.payload for c in credentials], indent=2))
        write_activation_map(staging_dir / ACTIVE_MAP_FILE, workflows.activation_map)
        write_owner_map(staging_dir / OWNER_MAP_FILE, workflows.owner_map)
        (staging_dir / METADATA_FILE).write_text(json.dumps(metadata, indent=2), encoding="utf-8")

        if len(load_json_list(staging_dir / WORKFLOWS_FILE)) != metadata.get("workflow_count"):
            raise PackageInvalid("workflow_count in metadata does not match the sanitized workflows")
        if len(load_json_list(credentials_path)) != metadata.get("credential_count"):
            raise PackageInvalid("credential_count in metadata does not match the selected credentials")

        write_checksums(staging_dir, PACKAGE_FILES)
        archive = package_directory_as_zip(
            staging_dir,
            package_dir / f"n8n_export_{timestamp}.zip",
            names=[*PACKAGE_FILES, CHECKSUMS_FILE],
        )
    finally:
        credentials_path.unlink(missing_ok=True)
    logger.info("package_written", path=str(archive))
    return archive


def run_export(
    cli: AutomationServerCLI,
    migration_dir: Path,
    *,
    allowlist: Optional[Sequence[str]],
    environment: str,
    now: Optional[datetime] = None,
) -> ExportResult:
    """Selective export: workflows, allowlisted credentials and activation state."""
    moment = now or datetime.now(timezone.utc)
    timestamp = moment.strftime("%Y%m%d_%H%M%S")
    staging_dir = migration_dir / "export" / timestamp
    if staging_dir.exists():
        shutil.rmtree(staging_dir)
    staging_dir.mkdir(parents=True)
    staging_dir.chmod(0o700)

    workflows = export_workflows(cli, staging_dir)
    credentials, total = export_credentials(cli, staging_dir, allowlist)
    active_count = sum(1 for entry in workflows.activation_map if entry.was_active)
    metadata = {
        "export_timestamp": moment.isoformat(),
        "source_environment": environment,
        "source_host": socket.gethostname(),
        "workflow_count": len(workflows.sanitized),
        "credential_count": len(credentials),
        "total_credential_count": total,
        "active_workflow_count": active_count,
        "n8n_version": cli.version(),
        "export_tool_version": tool_version(),
    }
    archive = write_package(
        staging_dir,
        migration_dir,
        workflows=workflows,
        credentials=credentials,
        total_credential_count=total,
        metadata=metadata,
        timestamp=timestamp,
    )
    return ExportResult(
        package_path=archive,
        staging_dir=staging_dir,
        workflow_count=len(workflows.sanitized),
        active_workflow_count=active_count,
        credential_count=len(credentials),
        total_credential_count=total,
        metadata=metadata,
    )


def run_full_database_export(
    source: BackupSource,
    output_dir: Path,
    *,
    process: ProcessControl,
    cli: AutomationServerCLI,
    runner: CommandRunner = run_command,
    now: Optional[datetime] = None,
) -> FullDatabaseExport:
    """Integrity-checked snapshot plus the source encryption key, in one directory.

    Nothing is left behind when the snapshot fails its check.
    """
    moment = now or datetime.now(timezone.utc)
    directory = output_dir / f"n8n_full_db_{moment:%Y%m%d_%H%M%S}"
    directory.mkdir(parents=True, exist_ok=False)
    directory.chmod(0o700)
    try:
        if source.kind == "sqlite":
            if source.database_path is None:
                raise PackageInvalid("Full-database export requires the SQLite database path.")
            snapshot_path = snapshot_embedded_database(
                process, source.service_id, source.database_path, directory / "database.sqlite"
            )
        else:
            snapshot_path = dump_relational_database(
                source.database_container,
                source.database_user,
                source.database_name,
                directory / "database.sql",
                runner=runner,
            )
        key_file = directory / "encryption_key.txt"
        _write_private(key_file, extract_key(cli) + "\n")
        metadata_path = directory / "backup_metadata.json"
        metadata_path.write_text(
            json.dumps(
                {
                    "backup_timestamp": moment.isoformat(),
                    "source_environment": source.environment,
                    "source_host": socket.gethostname(),
                    "backup_method": "sqlite_backup" if source.kind == "sqlite" else "pg_dump",
                    "database_size_bytes": snapshot_path.stat().st_size,
                    "n8n_version": cli.version(),
                    "export_tool_version": tool_version(),
                },
                indent=2,
            ),
            encoding="utf-8",
        )
    except BaseException:
        shutil.rmtree(directory, ignore_errors=True)
        raise
    logger.info("full_database_exported", directory=str(directory))
    logger.warning("full_database_export_contains_secrets", directory=str(directory))
    return FullDatabaseExport(
        directory=directory, snapshot_path=snapshot_path, key_file=key_file, metadata_path=metadata_path
    )

"""Verified, compressed database backups and the restore path they anchor."""

from __future__ import annotations

import gzip
import json
import shutil
import socket
import tempfile
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from .adapters import CommandRunner, ProcessControl, run_command
from .config import HealthSettings, RetentionSettings
from .errors import BackupFailed, MigrationError
from .health import wait_for_healthy
from .package import compute_sha256
from .snapshot import (
    PG_DUMP_TRAILER,
    check_sqlite_integrity,
    dump_relational_database,
    restore_sqlite_snapshot,
    snapshot_embedded_database,
)

logger = structlog.get_logger("backup")

BUCKETS: tuple[str, ...] = ("daily", "weekly", "manual")
SQLITE_SUFFIX = ".sqlite.gz"
SQL_SUFFIX = ".sql.gz"


@dataclass(slots=True, frozen=True)
class BackupSource:
    """What a backup copies: the n8n SQLite file, or a postgres database in a container."""

    environment: str
    service_id: str
    kind: str  # "sqlite" | "postgres"
    database_path: Optional[Path] = None
    database_container: str = ""
    database_user: str = "n8n"
    database_name: str = "n8n"
    file_owner: str = ""


@dataclass(slots=True, frozen=True)
class BackupArtifact:
    path: Path
    checksum_path: Path
    metadata_path: Path
    bucket: str
    environment: str
    created_at: datetime
    checksum: str
    size_bytes: int
    kind: str
    label: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "bucket": self.bucket,
            "environment": self.environment,
            "created_at": self.created_at.isoformat(),
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
            "kind": self.kind,
            "label": self.label,
        }


@dataclass(slots=True)
class RestoreResult:
    restored_from: Path
    safety_backup: Optional[BackupArtifact]
    health_attempts: int = 0
    notes: list[str] = field(default_factory=list)


def _checksum_path(path: Path) -> Path:
    return path.with_name(path.name + ".sha256")


def _metadata_path(path: Path) -> Path:
    return path.with_name(path.name + ".meta")


def _kind_for(path: Path) -> str:
    return "sqlite" if path.name.endswith(SQLITE_SUFFIX) else "postgres"


def select_bucket(moment: datetime, *, manual: bool = False) -> str:
    """``manual`` when requested, ``weekly`` for Sunday runs, ``daily`` otherwise."""
    if manual:
        return "manual"
    return "weekly" if moment.isoweekday() == 7 else "daily"


def _gzip_file(source: Path, destination: Path) -> None:
    with source.open("rb") as src, gzip.open(destination, "wb", compresslevel=6) as dst:
        shutil.copyfileobj(src, dst, length=1 << 20)


def _gunzip_file(source: Path, destination: Path) -> None:
    with gzip.open(source, "rb") as src, destination.open("wb") as dst:
        shutil.copyfileobj(src, dst, length=1 << 20)


def _remove_artifact(path: Path) -> None:
    for target in (path, _checksum_path(path), _metadata_path(path)):
        target.unlink(missing_ok=True)


def create_backup(
    source: BackupSource,
    backup_dir: Path,
    *,
    process: ProcessControl,
    runner: CommandRunner = run_command,
    manual: bool = False,
    label: str = "",
    now: Optional[datetime] = None,
    extra_metadata: Optional[dict[str, Any]] = None,
) -> BackupArtifact:
    """Snapshot, compress, checksum and verify one backup.

    Any failure along the way is reported as ``BackupFailed`` and leaves no
    partial artifact behind.
    """
    moment = now or datetime.now(timezone.utc).astimezone()
    bucket = select_bucket(moment, manual=manual)
    suffix = SQLITE_SUFFIX if source.kind == "sqlite" else SQL_SUFFIX
    stem = f"n8n_{source.environment}_{moment:%Y%m%d_%H%M%S}"
    if label:
        stem = f"{stem}_{label}"
    target_dir = backup_dir / bucket
    target_dir.mkdir(parents=True, exist_ok=True)
    destination = target_dir / f"{stem}{suffix}"
    if destination.exists():
        raise BackupFailed(f"Backup {destination} already exists; refusing to overwrite it.")

    log = logger.bind(environment=source.environment, bucket=bucket, kind=source.kind)
    log.info("backup_started", destination=str(destination))
    try:
        with tempfile.TemporaryDirectory(prefix="n8n-backup-") as temp_dir_str:
            raw = Path(temp_dir_str) / ("snapshot.sqlite" if source.kind == "sqlite" else "dump.sql")
            if source.kind == "sqlite":
                if source.database_path is None:
                    raise BackupFailed("SQLite backup requested without a database path.")
                snapshot_embedded_database(process, source.service_id, source.database_path, raw)
            else:
                dump_relational_database(
                    source.database_container,
                    source.database_user,
                    source.database_name,
                    raw,
                    runner=runner,
                )
            _gzip_file(raw, destination)
    except BackupFailed:
        _remove_artifact(destination)
        raise
    except (MigrationError, OSError) as exc:
        _remove_artifact(destination)
        raise BackupFailed(f"Backup of {source.environment} failed: {exc}") from exc

    destination.chmod(0o600)
    checksum = compute_sha256(destination)
    _checksum_path(destination).write_text(f"{checksum}  {destination.name}\n", encoding="utf-8")
    size_bytes = destination.stat().st_size
    metadata: dict[str, Any] = {
        "timestamp": moment.isoformat(),
        "environment": source.environment,
        "hostname": socket.gethostname(),
        "database": str(source.database_path) if source.kind == "sqlite" else source.database_name,
        "backup_type": bucket,
        "kind": source.kind,
        "label": label,
        "size_bytes": size_bytes,
        "checksum": checksum,
    }
    if extra_metadata:
        metadata.update(extra_metadata)
    _metadata_path(destination).write_text(json.dumps(metadata, indent=2), encoding="utf-8")

    try:
        artifact = verify_backup(destination)
    except BackupFailed:
        _remove_artifact(destination)
        raise
    log.info("backup_completed", path=str(destination), size=size_bytes)
    return artifact


def _load_artifact(path: Path) -> BackupArtifact:
    meta_path = _metadata_path(path)
    metadata: dict[str, Any] = {}
    if meta_path.exists():
        try:
            metadata = json.loads(meta_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("backup_metadata_unreadable", path=str(meta_path))
    created_at: Optional[datetime] = None
    raw_timestamp = metadata.get("timestamp")
    if isinstance(raw_timestamp, str):
        try:
            created_at = datetime.fromisoformat(raw_timestamp)
        except ValueError:
            created_at = None
    if created_at is None:
        created_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    checksum_file = _checksum_path(path)
    checksum = str(metadata.get("checksum") or "")
    if not checksum and checksum_file.exists():
        checksum = checksum_file.read_text(encoding="utf-8").split(" ", 1)[0].strip()
    environment = str(metadata.get("environment") or "")
    if not environment:
        parts = path.name.split("_")
        environment = parts[1] if len(parts) > 2 else ""
    return BackupArtifact(
        path=path,
        checksum_path=checksum_file,
        metadata_path=meta_path,
        bucket=path.parent.name,
        environment=environment,
        created_at=created_at,
        checksum=checksum,
        size_bytes=path.stat().st_size,
        kind=_kind_for(path),
        label=str(metadata.get("label") or ""),
    )


def verify_backup(path: Path) -> BackupArtifact:
    """Checksum, gzip stream and database-level checks for one artifact."""
    if not path.exists():
        raise BackupFailed(f"Backup file not found: {path}")
    checksum_file = _checksum_path(path)
    if checksum_file.exists():
        expected = checksum_file.read_text(encoding="utf-8").split(" ", 1)[0].strip().lower()
        actual = compute_sha256(path)
        if expected != actual:
            raise BackupFailed(f"Checksum mismatch for {path.name}: expected {expected}, got {actual}")
    else:
        logger.warning("backup_checksum_missing", path=str(path))

    kind = _kind_for(path)
    with tempfile.TemporaryDirectory(prefix="n8n-verify-") as temp_dir_str:
        expanded = Path(temp_dir_str) / ("check.sqlite" if kind == "sqlite" else "check.sql")
        try:
            _gunzip_file(path, expanded)
        except (OSError, EOFError, zlib.error) as exc:
            raise BackupFailed(f"Backup {path.name} is not a readable gzip stream: {exc}") from exc
        if kind == "sqlite":
            problems = check_sqlite_integrity(expanded)
            if problems:
                raise BackupFailed(f"Backup {path.name} failed integrity check: {'; '.join(problems[:5])}")
        else:
            with expanded.open("rb") as handle:
                handle.seek(max(0, expanded.stat().st_size - 512))
                tail = handle.read().decode("utf-8", errors="replace")
            if PG_DUMP_TRAILER not in tail:
                raise BackupFailed(f"Backup {path.name} is a truncated SQL dump.")
    logger.info("backup_verified", path=str(path))
    return _load_artifact(path)


def list_backups(backup_dir: Path) -> list[BackupArtifact]:
    """Every artifact under the bucket directories, newest first."""
    artifacts: list[BackupArtifact] = []
    for bucket in BUCKETS:
        bucket_dir = backup_dir / bucket
        if not bucket_dir.is_dir():
            continue
        for path in bucket_dir.iterdir():
            if path.is_file() and path.name.endswith((SQLITE_SUFFIX, SQL_SUFFIX)):
                artifacts.append(_load_artifact(path))
    artifacts.sort(key=lambda artifact: artifact.created_at, reverse=True)
    return artifacts


def rotate_backups(backup_dir: Path, retention: RetentionSettings) -> list[Path]:
    """Keep the newest N artifacts per bucket and delete the rest with their sidecars."""
    limits = {"daily": retention.daily, "weekly": retention.weekly, "manual": retention.manual}
    removed: list[Path] = []
    for bucket, keep in limits.items():
        bucket_dir = backup_dir / bucket
        if not bucket_dir.is_dir():
            continue
        candidates = sorted(
            (p for p in bucket_dir.iterdir() if p.is_file() and p.name.endswith((SQLITE_SUFFIX, SQL_SUFFIX))),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for stale in candidates[max(keep, 0):]:
            logger.info("backup_rotated", bucket=bucket, path=str(stale))
            _remove_artifact(stale)
            removed.append(stale)
    return removed


def restore_backup(
    artifact_path: Path,
    source: BackupSource,
    backup_dir: Path,
    *,
    process: ProcessControl,
    health_check: Callable[[], bool],
    health: HealthSettings,
    confirm: Callable[[str], bool],
    runner: CommandRunner = run_command,
    sleep: Callable[[float], None] = time.sleep,
) -> RestoreResult:
    """Restore ``artifact_path`` over the live database.

    The artifact is verified first and a safety backup of the current state is
    taken; if that safety backup fails the operator must confirm explicitly.
    """
    verify_backup(artifact_path)
    safety: Optional[BackupArtifact] = None
    try:
        safety = create_backup(source, backup_dir, process=process, runner=runner, manual=True, label="pre_restore")
        logger.critical("rollback_artifact", path=str(safety.path))
    except BackupFailed as exc:
        logger.error("safety_backup_failed", error=str(exc))
        if not confirm(f"Safety backup failed ({exc}). Continue without safety backup?"):
            raise

    result = RestoreResult(restored_from=artifact_path, safety_backup=safety)
    with tempfile.TemporaryDirectory(prefix="n8n-restore-") as temp_dir_str:
        expanded = Path(temp_dir_str) / ("restore.sqlite" if source.kind == "sqlite" else "restore.sql")
        _gunzip_file(artifact_path, expanded)
        process.stop(source.service_id)
        try:
            if source.kind == "sqlite":
                if source.database_path is None:
                    raise MigrationError("SQLite restore requested without a database path.")
                restore_sqlite_snapshot(expanded, source.database_path, owner=source.file_owner)
            else:
                _restore_sql_dump(expanded, source, runner)
        finally:
            process.start(source.service_id)
    result.health_attempts = wait_for_healthy(
        health_check, attempts=health.attempts, delay=health.delay_seconds, sleep=sleep
    )
    logger.info("restore_completed", path=str(artifact_path))
    return result


def _restore_sql_dump(dump: Path, source: BackupSource, runner: CommandRunner) -> None:
    container_path = "/tmp/restore.sql"
    runner(["docker", "cp", str(dump), f"{source.database_container}:{container_path}"])
    try:
        runner(
            [
                "docker",
                "exec",
                source.database_container,
                "psql",
                "-U",
                source.database_user,
                "-d",
                source.database_name,
                "-v",
                "ON_ERROR_STOP=1",
                "-f",
                container_path,
            ]
        )
    finally:
        runner(["docker", "exec", source.database_container, "rm", "-f", container_path], check=False)


def cleanup_old_packages(
    migration_dir: Path,
    max_age_days: int,
    *,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> list[Path]:
    """Delete export packages (zip archives and full-db export directories) older than the limit."""
    if not migration_dir.is_dir():
        return []
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
    stale: list[Path] = []
    for path in sorted(migration_dir.rglob("n8n_*")):
        is_package = path.is_file() and path.suffix == ".zip"
        is_full_db_export = path.is_dir() and path.name.startswith("n8n_full_db_")
        if not (is_package or is_full_db_export):
            continue
        modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        if modified < cutoff:
            stale.append(path)
    for path in stale:
        if dry_run:
            logger.info("package_would_be_removed", path=str(path))
            continue
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
        logger.info("package_removed", path=str(path))
    return stale

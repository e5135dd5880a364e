"""Integrity-checked database snapshots.

SQLite files are copied with the engine's own online backup API while n8n is
stopped, then checked with ``PRAGMA integrity_check``. Postgres databases are
dumped logically (roles first, then schema and data).
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import structlog

from .adapters import CommandRunner, ProcessControl, apply_file_owner, run_command
from .errors import MigrationError, SnapshotCorrupt, SnapshotError

logger = structlog.get_logger("snapshot")

PG_DUMP_TRAILER = "PostgreSQL database dump complete"


def create_sqlite_snapshot(source: Path, destination: Path, *, checkpoint: bool = True) -> Path:
    """Materialize a consistent single-file snapshot from a (possibly WAL-mode) SQLite database.

    Parameters
    ----------
    source:
        Path to the live SQLite database.
    destination:
        Where the snapshot is written. Parent directories are created; an
        existing file is never overwritten.
    checkpoint:
        Issue a passive WAL checkpoint first so pending frames land in the copy.
    """
    if not source.exists():
        raise SnapshotError(f"SQLite database not found at {source}")
    destination = destination.resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.exists():
        raise SnapshotError(
            f"Destination snapshot already exists at {destination}. Choose a new path or remove it manually."
        )

    source_conn = sqlite3.connect(str(source))
    try:
        if checkpoint:
            try:
                source_conn.execute("PRAGMA wal_checkpoint(PASSIVE);")
            except sqlite3.Error as exc:
                raise SnapshotError(f"Failed to run WAL checkpoint: {exc}") from exc
        dest_conn = sqlite3.connect(str(destination))
        try:
            source_conn.backup(dest_conn)
        except sqlite3.Error as exc:
            raise SnapshotError(f"Failed to create SQLite snapshot: {exc}") from exc
        finally:
            dest_conn.close()
    finally:
        source_conn.close()
    return destination


def check_sqlite_integrity(path: Path) -> list[str]:
    """Run ``PRAGMA integrity_check`` and return the problems it reports (empty when ok)."""
    try:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
    except sqlite3.Error as exc:
        return [f"cannot open database: {exc}"]
    try:
        rows = conn.execute("PRAGMA integrity_check").fetchall()
    except sqlite3.DatabaseError as exc:
        return [str(exc)]
    finally:
        conn.close()
    results = [str(row[0]) for row in rows]
    if results == ["ok"]:
        return []
    return results or ["integrity_check returned no rows"]


def snapshot_embedded_database(
    process: ProcessControl,
    service_id: str,
    database_path: Path,
    destination: Path,
) -> Path:
    """Stop n8n, copy its SQLite file through the backup API, restart, verify.

    A live file is never copied: if the owner cannot be stopped the snapshot is
    aborted. The owner is restarted on every path once it has been stopped.
    """
    log = logger.bind(service=service_id, source=str(database_path))
    try:
        process.stop(service_id)
    except MigrationError as exc:
        raise SnapshotError(f"Could not stop {service_id}; refusing to copy a live database: {exc}") from exc
    log.info("snapshot_owner_stopped")
    try:
        create_sqlite_snapshot(database_path, destination)
    finally:
        process.start(service_id)
        log.info("snapshot_owner_started")

    problems = check_sqlite_integrity(destination)
    if problems:
        destination.unlink(missing_ok=True)
        log.error("snapshot_corrupt", problems=problems[:5])
        raise SnapshotCorrupt(f"Snapshot of {database_path} failed integrity check: {'; '.join(problems[:5])}")
    log.info("snapshot_verified", destination=str(destination), size=destination.stat().st_size)
    return destination


def dump_relational_database(
    container: str,
    user: str,
    database: str,
    destination: Path,
    *,
    runner: CommandRunner = run_command,
) -> Path:
    """Logical dump of a postgres database running in ``container``.

    Roles come first so a restore recreates them before the objects that
    reference them. The dump must end with pg_dump's completion trailer.
    """
    if destination.exists():
        raise SnapshotError(f"Destination dump already exists at {destination}.")
    destination.parent.mkdir(parents=True, exist_ok=True)
    roles = runner(["docker", "exec", container, "pg_dumpall", "-U", user, "--roles-only"])
    data = runner(
        [
            "docker",
            "exec",
            container,
            "pg_dump",
            "-U",
            user,
            "-d",
            database,
            "--clean",
            "--if-exists",
            "--no-owner",
            "--no-acl",
        ]
    )
    destination.write_text(roles.stdout + "\n" + data.stdout, encoding="utf-8")
    destination.chmod(0o600)

    if PG_DUMP_TRAILER not in data.stdout[-512:]:
        destination.unlink(missing_ok=True)
        logger.error("dump_incomplete", container=container, database=database)
        raise SnapshotCorrupt(f"pg_dump output for {database} is truncated (no completion trailer).")
    logger.info("dump_written", destination=str(destination), size=destination.stat().st_size)
    return destination


def restore_sqlite_snapshot(snapshot: Path, database_path: Path, *, owner: str = "") -> Path:
    """Replace ``database_path`` with the contents of ``snapshot``.

    The owning process must already be stopped. Stale ``-wal``/``-shm`` files
    are removed first so the restored file is not replayed against an old log.
    """
    problems = check_sqlite_integrity(snapshot)
    if problems:
        raise SnapshotCorrupt(f"Refusing to restore {snapshot}: {'; '.join(problems[:5])}")
    for suffix in ("-wal", "-shm", "-journal"):
        Path(f"{database_path}{suffix}").unlink(missing_ok=True)
    database_path.unlink(missing_ok=True)
    database_path.parent.mkdir(parents=True, exist_ok=True)

    source_conn = sqlite3.connect(f"file:{snapshot}?mode=ro", uri=True)
    try:
        dest_conn = sqlite3.connect(str(database_path))
        try:
            source_conn.backup(dest_conn)
            dest_conn.execute("VACUUM")
        except sqlite3.Error as exc:
            raise SnapshotError(f"Failed to restore SQLite database into {database_path}: {exc}") from exc
        finally:
            dest_conn.close()
    finally:
        source_conn.close()

    problems = check_sqlite_integrity(database_path)
    if problems:
        raise SnapshotCorrupt(f"Restored database at {database_path} failed integrity check: {'; '.join(problems[:5])}")
    database_path.chmod(0o600)
    apply_file_owner(database_path, owner)
    logger.info("sqlite_restored", database=str(database_path), snapshot=str(snapshot))
    return database_path

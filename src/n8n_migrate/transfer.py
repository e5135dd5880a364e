"""Move packages between the source and destination hosts over ssh/scp."""

from __future__ import annotations

import shlex
from pathlib import Path

import structlog

from .adapters import RemoteExec
from .errors import MigrationError

logger = structlog.get_logger("transfer")


def find_latest_package(remote: RemoteExec, host: str, remote_dir: str, pattern: str = "n8n_export_*.zip") -> str:
    """Newest file matching ``pattern`` in ``remote_dir`` on ``host``."""
    command = f"ls -1t {shlex.quote(remote_dir.rstrip('/'))}/{pattern} 2>/dev/null | head -n 1"
    result = remote.run(host, command)
    latest = result.stdout.strip().splitlines()
    if result.returncode != 0 or not latest or not latest[0].strip():
        raise MigrationError(f"No export package matching {pattern} found in {remote_dir} on {host}")
    logger.info("remote_package_found", host=host, path=latest[0].strip())
    return latest[0].strip()


def fetch_package(remote: RemoteExec, host: str, remote_path: str, local_dir: Path) -> Path:
    local_dir.mkdir(parents=True, exist_ok=True)
    destination = local_dir / Path(remote_path).name
    remote.copy_from(host, destination, remote_path)
    if not destination.exists():
        raise MigrationError(f"Copy of {remote_path} from {host} produced no local file")
    destination.chmod(0o600)
    logger.info("package_fetched", host=host, remote=remote_path, local=str(destination))
    return destination


def push_file(remote: RemoteExec, host: str, local_path: Path, remote_dir: str) -> str:
    remote_path = f"{remote_dir.rstrip('/')}/{local_path.name}"
    result = remote.run(host, f"mkdir -p {shlex.quote(remote_dir)}")
    if result.returncode != 0:
        raise MigrationError(f"Could not create {remote_dir} on {host}: {result.stderr.strip()}")
    remote.copy_to(host, local_path, remote_path)
    logger.info("file_pushed", host=host, local=str(local_path), remote=remote_path)
    return remote_path

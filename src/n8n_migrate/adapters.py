"""Interfaces to the collaborators the engine drives, plus their docker/ssh adapters.

The engine only ever talks to the protocols below. The concrete classes shell
out to ``docker``, ``ssh`` and ``scp`` and are what the CLI wires up; tests swap
in fakes.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url

from .errors import CommandFailed, MigrationError
from .health import http_health_check

logger = structlog.get_logger("adapters")


@dataclass(slots=True, frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    returncode: int


class CommandRunner(Protocol):
    def __call__(
        self,
        cmd: Sequence[str],
        *,
        input_text: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult: ...


def run_command(
    cmd: Sequence[str],
    *,
    input_text: Optional[str] = None,
    check: bool = True,
) -> CommandResult:
    """Run ``cmd`` without a shell and capture its output."""
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=True, input=input_text)
    except FileNotFoundError as exc:
        raise CommandFailed(cmd, 127, f"{cmd[0]} not found in PATH") from exc
    if check and result.returncode != 0:
        raise CommandFailed(cmd, result.returncode, result.stderr or result.stdout)
    return CommandResult(stdout=result.stdout, stderr=result.stderr, returncode=result.returncode)


class ProcessControl(Protocol):
    def stop(self, service_id: str) -> None: ...

    def start(self, service_id: str) -> None: ...

    def restart(self, service_id: str) -> None: ...

    def is_running(self, service_id: str) -> bool: ...


class RemoteExec(Protocol):
    def run(self, host: str, command: str) -> CommandResult: ...

    def copy_to(self, host: str, local_path: Path, remote_path: str) -> None: ...

    def copy_from(self, host: str, local_path: Path, remote_path: str) -> None: ...


class AutomationServerCLI(Protocol):
    def export_workflows(self, output_path: Path) -> None: ...

    def import_workflows(self, input_path: Path) -> str: ...

    def export_credentials(self, output_path: Path) -> None: ...

    def import_credentials(self, input_path: Path) -> str: ...

    def health_check(self) -> bool: ...

    def version(self) -> str: ...

    def read_config(self) -> str: ...


class DatabaseAccess(Protocol):
    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> list[dict[str, Any]]: ...

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int: ...


class DockerProcessControl:
    """Start/stop the n8n container.

    When a compose declaration is configured, ``start`` goes through
    ``docker compose up -d`` so a changed declaration (new encryption key) is
    applied by recreating the container.
    """

    def __init__(self, runner: CommandRunner = run_command, compose_file: Optional[Path] = None) -> None:
        self._run = runner
        self._compose_file = compose_file

    def stop(self, service_id: str) -> None:
        logger.info("container_stop", container=service_id)
        self._run(["docker", "stop", service_id])

    def start(self, service_id: str) -> None:
        if self._compose_file is not None and self._compose_file.exists():
            logger.info("compose_up", compose_file=str(self._compose_file))
            self._run(["docker", "compose", "-f", str(self._compose_file), "up", "-d"])
            return
        logger.info("container_start", container=service_id)
        self._run(["docker", "start", service_id])

    def restart(self, service_id: str) -> None:
        logger.info("container_restart", container=service_id)
        self._run(["docker", "restart", service_id])

    def is_running(self, service_id: str) -> bool:
        result = self._run(
            ["docker", "inspect", "--format", "{{.State.Running}}", service_id],
            check=False,
        )
        return result.returncode == 0 and result.stdout.strip().lower() == "true"


class SshRemoteExec:
    """Remote commands and file copies over ssh/scp."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        *,
        user: str = "",
        options: Sequence[str] = (),
    ) -> None:
        self._run = runner
        self._user = user
        self._options: list[str] = []
        for option in options:
            self._options.extend(["-o", option])

    def _target(self, host: str) -> str:
        return f"{self._user}@{host}" if self._user else host

    def run(self, host: str, command: str) -> CommandResult:
        return self._run(["ssh", *self._options, self._target(host), command], check=False)

    def copy_to(self, host: str, local_path: Path, remote_path: str) -> None:
        self._run(["scp", *self._options, str(local_path), f"{self._target(host)}:{remote_path}"])

    def copy_from(self, host: str, local_path: Path, remote_path: str) -> None:
        self._run(["scp", *self._options, f"{self._target(host)}:{remote_path}", str(local_path)])


class N8nContainerCli:
    """The n8n command line, reached through ``docker exec``.

    Files cross the container boundary through ``/tmp`` inside the container;
    those copies are removed (as root) whether or not the n8n command succeeds.
    """

    def __init__(
        self,
        container: str,
        *,
        runner: CommandRunner = run_command,
        health_url: str = "http://localhost:5678/healthz",
        health_timeout: float = 5.0,
        data_dir: str = "/home/node/.n8n",
        file_owner: str = "1000:1000",
    ) -> None:
        self.container = container
        self._run = runner
        self._health_url = health_url
        self._health_timeout = health_timeout
        self._data_dir = data_dir.rstrip("/")
        self._file_owner = file_owner

    def _exec(self, *args: str, user: Optional[str] = None, check: bool = True) -> CommandResult:
        cmd = ["docker", "exec"]
        if user:
            cmd.extend(["-u", user])
        cmd.append(self.container)
        cmd.extend(args)
        return self._run(cmd, check=check)

    def _remove_in_container(self, path: str) -> None:
        result = self._exec("rm", "-f", path, user="root", check=False)
        if result.returncode != 0:
            logger.warning("container_temp_cleanup_failed", container=self.container, path=path)

    def _export(self, subcommand: str, output_path: Path, *extra: str) -> None:
        container_path = f"/tmp/{output_path.name}"
        try:
            self._exec("n8n", subcommand, "--all", *extra, f"--output={container_path}")
            output_path.parent.mkdir(parents=True, exist_ok=True)
            self._run(["docker", "cp", f"{self.container}:{container_path}", str(output_path)])
        finally:
            self._remove_in_container(container_path)

    def _import(self, subcommand: str, input_path: Path) -> str:
        container_path = f"/tmp/{input_path.name}"
        try:
            self._run(["docker", "cp", str(input_path), f"{self.container}:{container_path}"])
            self._exec("chown", self._file_owner, container_path, user="root", check=False)
            result = self._exec("n8n", subcommand, f"--input={container_path}")
            return (result.stdout + result.stderr).strip()
        finally:
            self._remove_in_container(container_path)

    def export_workflows(self, output_path: Path) -> None:
        self._export("export:workflow", output_path)

    def import_workflows(self, input_path: Path) -> str:
        return self._import("import:workflow", input_path)

    def export_credentials(self, output_path: Path) -> None:
        self._export("export:credentials", output_path, "--decrypted")

    def import_credentials(self, input_path: Path) -> str:
        return self._import("import:credentials", input_path)

    def health_check(self) -> bool:
        return http_health_check(self._health_url, timeout=self._health_timeout)

    def version(self) -> str:
        result = self._exec("n8n", "--version", check=False)
        lines = result.stdout.strip().splitlines()
        if result.returncode != 0 or not lines:
            return "unknown"
        return lines[0].strip()

    def read_config(self) -> str:
        return self._exec("cat", f"{self._data_dir}/config").stdout


class SqlDatabase:
    """``DatabaseAccess`` over a SQLAlchemy engine (sqlite file or postgres)."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self.url)
        return self._engine

    def query(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), dict(params or {}))
            return [dict(row._mapping) for row in result]

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(text(sql), dict(params or {}))
            return int(result.rowcount or 0)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


def resolve_sqlite_path(database_url: str) -> Path:
    """Return the filesystem path of a sqlite database URL."""
    url = make_url(database_url)
    if not url.get_backend_name().startswith("sqlite"):
        raise MigrationError(f"Expected a SQLite database URL (got backend '{url.get_backend_name()}').")
    database_path = url.database
    if not database_path:
        raise MigrationError("SQLite database path is empty; cannot resolve file on disk.")
    path = Path(database_path).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def detect_n8n_container(runner: CommandRunner = run_command) -> str:
    """Fallback: pick the first running container that looks like n8n (not its database)."""
    result = runner(["docker", "ps", "--format", "{{.Names}}"])
    for name in result.stdout.splitlines():
        lowered = name.strip().lower()
        if "n8n" in lowered and "postgres" not in lowered and "db" not in lowered:
            return name.strip()
    raise MigrationError("n8n container not found among running containers; set N8N_CONTAINER.")


def apply_file_owner(path: Path, owner: str) -> bool:
    """Best-effort ``chown uid:gid``; returns False when not permitted (e.g. not root)."""
    if not owner:
        return False
    uid_text, _, gid_text = owner.partition(":")
    try:
        uid = int(uid_text)
        gid = int(gid_text) if gid_text else -1
    except ValueError:
        logger.warning("file_owner_invalid", owner=owner)
        return False
    try:
        os.chown(path, uid, gid)
    except PermissionError:
        logger.warning("file_owner_not_applied", path=str(path), owner=owner)
        return False
    return True

"""Test doubles for the collaborators the engine drives, and a tiny n8n-shaped SQLite schema."""

import itertools
import json
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Optional

from n8n_migrate.errors import CommandFailed

N8N_SCHEMA = """
CREATE TABLE workflow_entity (
    id VARCHAR(36) PRIMARY KEY,
    name VARCHAR(128) NOT NULL,
    active BOOLEAN NOT NULL DEFAULT 0,
    nodes TEXT,
    connections TEXT,
    settings TEXT
);
CREATE TABLE credentials_entity (
    id VARCHAR(36) PRIMARY KEY,
    name VARCHAR(128) NOT NULL,
    type VARCHAR(128) NOT NULL,
    data TEXT
);
"""


def create_n8n_database(path: Path, workflows: Optional[list[dict[str, Any]]] = None) -> Path:
    """Create a SQLite file with the two n8n tables the engine touches."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(N8N_SCHEMA)
        for wf in workflows or []:
            conn.execute(
                "INSERT INTO workflow_entity (id, name, active, nodes, connections, settings) VALUES (?, ?, ?, ?, '{}', '{}')",
                (wf["id"], wf["name"], 1 if wf.get("active") else 0, json.dumps(wf.get("nodes", []))),
            )
        conn.commit()
    finally:
        conn.close()
    return path


def workflow(name: str, *, active: bool = False, wf_id: str = "", webhook: bool = False, project: str = "") -> dict[str, Any]:
    node_type = "n8n-nodes-base.webhook" if webhook else "n8n-nodes-base.manualTrigger"
    data: dict[str, Any] = {
        "id": wf_id or f"src-{name.lower().replace(' ', '-')}",
        "name": name,
        "active": active,
        "nodes": [{"name": "Trigger", "type": node_type, "parameters": {}}],
        "connections": {},
        "settings": {"executionOrder": "v1"},
    }
    if project:
        data["projectId"] = project
        data["project"] = {"id": project, "name": f"Project {project}"}
    return data


def credential(name: str, cred_type: str = "httpBasicAuth") -> dict[str, Any]:
    return {
        "id": f"cred-{name}",
        "name": name,
        "type": cred_type,
        "data": {"user": name, "password": f"secret-{name}"},
    }


def db_rows(path: Path, sql: str, params: tuple = ()) -> list[tuple]:
    conn = sqlite3.connect(str(path))
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


class FakeProcess:
    """ProcessControl that records calls; ``fail_stops`` makes the next N stops fail."""

    def __init__(self, *, fail_stops: int = 0) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_stops = fail_stops
        self.running = True

    def stop(self, service_id: str) -> None:
        self.calls.append(("stop", service_id))
        if self.fail_stops:
            self.fail_stops -= 1
            raise CommandFailed(["docker", "stop", service_id], 1, "cannot stop")
        self.running = False

    def start(self, service_id: str) -> None:
        self.calls.append(("start", service_id))
        self.running = True

    def restart(self, service_id: str) -> None:
        self.calls.append(("restart", service_id))
        self.running = True

    def is_running(self, service_id: str) -> bool:
        return self.running


class FakeN8n:
    """AutomationServerCLI double.

    Exports come from in-memory lists (the source side); imports are written
    into a real SQLite database (the destination side) with fresh ids, the
    way ``n8n import:*`` behaves. Names in ``dropped`` are skipped without
    an error, like rows n8n rejects inside an otherwise successful batch.
    """

    def __init__(
        self,
        database: Optional[Path] = None,
        *,
        workflows: Optional[list[dict[str, Any]]] = None,
        credentials: Optional[list[dict[str, Any]]] = None,
        key: str = "dev-encryption-key",
        healthy: bool = True,
        dropped: Iterable[str] = (),
    ) -> None:
        self.database = database
        self.workflows = workflows or []
        self.credentials = credentials or []
        self.key = key
        self.healthy = healthy
        self.dropped = set(dropped)
        self.calls: list[str] = []
        self.imported_credentials: list[dict[str, Any]] = []
        self._ids = itertools.count(100)

    def export_workflows(self, output_path: Path) -> None:
        self.calls.append("export_workflows")
        output_path.write_text(json.dumps(self.workflows), encoding="utf-8")

    def export_credentials(self, output_path: Path) -> None:
        self.calls.append("export_credentials")
        output_path.write_text(json.dumps(self.credentials), encoding="utf-8")

    def _connect(self) -> sqlite3.Connection:
        assert self.database is not None
        return sqlite3.connect(str(self.database))

    def import_workflows(self, input_path: Path) -> str:
        self.calls.append("import_workflows")
        items = json.loads(input_path.read_text(encoding="utf-8"))
        conn = self._connect()
        try:
            for item in items:
                if item["name"] in self.dropped:
                    continue
                values = (
                    item["name"],
                    1 if item.get("active") else 0,
                    json.dumps(item.get("nodes", [])),
                    json.dumps(item.get("connections", {})),
                    json.dumps(item.get("settings", {})),
                )
                existing = item.get("id")
                if existing and conn.execute("SELECT 1 FROM workflow_entity WHERE id = ?", (existing,)).fetchone():
                    conn.execute(
                        "UPDATE workflow_entity SET name = ?, active = ?, nodes = ?, connections = ?, settings = ? WHERE id = ?",
                        (*values, existing),
                    )
                else:
                    conn.execute(
                        "INSERT INTO workflow_entity (id, name, active, nodes, connections, settings) VALUES (?, ?, ?, ?, ?, ?)",
                        (f"wf-{next(self._ids)}", *values),
                    )
            conn.commit()
        finally:
            conn.close()
        return f"Successfully imported {len(items)} workflows."

    def import_credentials(self, input_path: Path) -> str:
        self.calls.append("import_credentials")
        items = json.loads(input_path.read_text(encoding="utf-8"))
        self.imported_credentials.extend(items)
        conn = self._connect()
        try:
            for item in items:
                conn.execute(
                    "INSERT INTO credentials_entity (id, name, type, data) VALUES (?, ?, ?, ?)",
                    (f"cr-{next(self._ids)}", item["name"], item["type"], "encrypted"),
                )
            conn.commit()
        finally:
            conn.close()
        return f"Successfully imported {len(items)} credentials."

    def health_check(self) -> bool:
        self.calls.append("health_check")
        return self.healthy

    def version(self) -> str:
        return "1.64.0"

    def read_config(self) -> str:
        return json.dumps({"encryptionKey": self.key})

